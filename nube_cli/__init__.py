"""Tienda Nube command-line client
Rate-limit aware API client with retries, circuit breaking and OAuth login
"""

__version__ = "0.2.0"

from .api_client import NubeClient, decode_response
from .circuit_breaker import CircuitBreaker
from .classifier import classify
from .exceptions import (
    APIError,
    AuthError,
    AuthorizationCancelledError,
    AuthorizationDeniedError,
    AuthorizationTimeoutError,
    CallbackServerError,
    CircuitOpenError,
    ConfigError,
    CredentialsMissingError,
    MissingCodeError,
    NoAccessTokenError,
    NotFoundError,
    NubeError,
    OAuthError,
    PaymentRequiredError,
    PermissionDeniedError,
    RateLimitError,
    StateMismatchError,
    StepOneComplete,
    TokenExchangeError,
    UsageError,
    ValidationError,
)
from .models import CircuitState, ClientCredentials, FlowKind, PageInfo, TokenResult
from .oauth import AuthorizationFlow, AuthorizeOptions, TokenExchanger, authorize, extract_code_from_url
from .pagination import collect_all, parse_link_header
from .retry import RetryTransport

__all__ = [
    "__version__",
    "NubeClient",
    "decode_response",
    "CircuitBreaker",
    "classify",
    "RetryTransport",
    "collect_all",
    "parse_link_header",
    "AuthorizationFlow",
    "AuthorizeOptions",
    "TokenExchanger",
    "authorize",
    "extract_code_from_url",
    "CircuitState",
    "ClientCredentials",
    "FlowKind",
    "PageInfo",
    "TokenResult",
    "NubeError",
    "ConfigError",
    "UsageError",
    "APIError",
    "AuthError",
    "NotFoundError",
    "PaymentRequiredError",
    "PermissionDeniedError",
    "ValidationError",
    "RateLimitError",
    "CircuitOpenError",
    "OAuthError",
    "CredentialsMissingError",
    "StateMismatchError",
    "MissingCodeError",
    "AuthorizationDeniedError",
    "TokenExchangeError",
    "NoAccessTokenError",
    "AuthorizationTimeoutError",
    "AuthorizationCancelledError",
    "StepOneComplete",
    "CallbackServerError",
]
