"""Stable exit codes and user-facing error messages"""

import asyncio
from typing import List, Tuple

import httpx

from .exceptions import (
    APIError,
    AuthError,
    AuthorizationCancelledError,
    AuthorizationTimeoutError,
    CircuitOpenError,
    ConfigError,
    CredentialsMissingError,
    NotFoundError,
    PaymentRequiredError,
    PermissionDeniedError,
    RateLimitError,
    UsageError,
    ValidationError,
)

# Scripts and agents rely on these values
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_AUTH_REQUIRED = 3
EXIT_NOT_FOUND = 4
EXIT_PERMISSION_DENIED = 5
EXIT_RATE_LIMITED = 6
EXIT_RETRYABLE = 7
EXIT_CONFIG = 8
EXIT_CANCELLED = 9
EXIT_PAYMENT_REQUIRED = 10
EXIT_VALIDATION = 11

EXIT_CODE_TABLE: List[Tuple[int, str, str]] = [
    (EXIT_OK, "ok", "Success"),
    (EXIT_ERROR, "error", "Generic error"),
    (EXIT_USAGE, "usage", "Invalid usage / bad arguments"),
    (EXIT_AUTH_REQUIRED, "auth_required", "Authentication required (HTTP 401)"),
    (EXIT_NOT_FOUND, "not_found", "Resource not found (HTTP 404)"),
    (EXIT_PERMISSION_DENIED, "permission_denied", "Permission denied (HTTP 403)"),
    (EXIT_RATE_LIMITED, "rate_limited", "Rate limited (HTTP 429)"),
    (EXIT_RETRYABLE, "retryable", "Retryable server error (HTTP 5xx)"),
    (EXIT_CONFIG, "config", "Missing config or credentials"),
    (EXIT_CANCELLED, "cancelled", "User cancelled"),
    (EXIT_PAYMENT_REQUIRED, "payment_required", "Payment required (HTTP 402)"),
    (EXIT_VALIDATION, "validation", "Validation error (HTTP 422)"),
]


def exit_code_for(error: BaseException) -> int:
    """Map an exception to its stable exit code"""
    if isinstance(error, UsageError):
        return EXIT_USAGE
    if isinstance(error, AuthError):
        return EXIT_AUTH_REQUIRED
    if isinstance(error, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(error, PermissionDeniedError):
        return EXIT_PERMISSION_DENIED
    if isinstance(error, RateLimitError):
        return EXIT_RATE_LIMITED
    if isinstance(error, CircuitOpenError):
        return EXIT_RETRYABLE
    if isinstance(error, PaymentRequiredError):
        return EXIT_PAYMENT_REQUIRED
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION
    if isinstance(error, APIError):
        return EXIT_RETRYABLE if error.is_server_error else EXIT_ERROR
    if isinstance(error, (CredentialsMissingError, ConfigError)):
        return EXIT_CONFIG
    if isinstance(error, (KeyboardInterrupt, asyncio.CancelledError, AuthorizationCancelledError)):
        return EXIT_CANCELLED
    if isinstance(error, httpx.TransportError):
        return EXIT_RETRYABLE
    return EXIT_ERROR


def format_error(error: BaseException) -> str:
    """One stable human-readable line (or two) per error condition"""
    if isinstance(error, CredentialsMissingError):
        return (
            "OAuth client credentials missing.\n"
            "Create an app at https://partners.tiendanube.com and save its "
            "client_id/client_secret as credentials.json, or pass --broker-url."
        )
    if isinstance(error, APIError):
        detail = error.message or error.code
        if detail:
            return f"API error (HTTP {error.status_code}): {detail}"
        return f"API error (HTTP {error.status_code})"
    if isinstance(error, AuthError):
        return "Authentication failed. Check your access token or run: nube login"
    if isinstance(error, RateLimitError):
        return f"Rate limit exceeded after {error.retries} retries. Try again in a few seconds."
    if isinstance(error, NotFoundError):
        return str(error)
    if isinstance(error, ValidationError):
        parts = [f"{name}: {', '.join(msgs)}" for name, msgs in sorted(error.fields.items())]
        return f"Validation error: {'; '.join(parts)}"
    if isinstance(error, PaymentRequiredError):
        return "Store access suspended (payment required). Check your Tienda Nube subscription."
    if isinstance(error, PermissionDeniedError):
        if error.message:
            return f"Permission denied: {error.message}"
        return "Permission denied"
    if isinstance(error, CircuitOpenError):
        return "API temporarily unavailable (circuit breaker open). Try again shortly."
    if isinstance(error, AuthorizationTimeoutError):
        return f"Authorization timed out after {error.timeout:.0f}s. Run the login again."
    if isinstance(error, (KeyboardInterrupt, asyncio.CancelledError, AuthorizationCancelledError)):
        return "Cancelled"
    return str(error) or error.__class__.__name__
