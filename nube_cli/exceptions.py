"""Custom exception classes for nube-cli"""

from pathlib import Path
from typing import Dict, List, Optional


class NubeError(Exception):
    """Base exception for nube-cli errors"""

    pass


class ConfigError(NubeError):
    """Raised when local configuration is invalid"""

    pass


class UsageError(NubeError):
    """Raised for invalid command-line input"""

    pass


# ---------------------------------------------------------------------------
# API errors (one class per classified response)
# ---------------------------------------------------------------------------


class APIError(NubeError):
    """Raised for a non-2xx response with no more specific classification"""

    def __init__(
        self,
        status_code: int,
        code: str = "",
        message: str = "",
        body: str = "",
    ):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.body = body
        if message:
            text = f"API error {status_code}: {message}"
        elif code:
            text = f"API error {status_code}: {code}"
        else:
            text = f"API error {status_code}"
        super().__init__(text)

    @property
    def is_server_error(self) -> bool:
        """True when the final status was 5xx (worth retrying later)"""
        return self.status_code >= 500


class AuthError(NubeError):
    """Raised on 401 Unauthorized"""

    def __init__(self, message: str = ""):
        self.message = message
        if message:
            super().__init__(f"authentication failed: {message}")
        else:
            super().__init__("authentication failed")


class PaymentRequiredError(NubeError):
    """Raised on 402 (store subscription suspended)"""

    def __init__(self, message: str = ""):
        self.message = message
        if message:
            super().__init__(f"payment required: {message}")
        else:
            super().__init__("payment required")


class PermissionDeniedError(NubeError):
    """Raised on 403 Forbidden"""

    def __init__(self, message: str = ""):
        self.message = message
        if message:
            super().__init__(f"permission denied: {message}")
        else:
            super().__init__("permission denied")


class NotFoundError(NubeError):
    """Raised on 404 Not Found"""

    def __init__(self, resource: str = "resource", resource_id: str = ""):
        self.resource = resource
        self.resource_id = resource_id
        if resource_id:
            super().__init__(f"{resource} not found: {resource_id}")
        else:
            super().__init__(f"{resource} not found")


class ValidationError(NubeError):
    """Raised on 422 with a field -> messages body"""

    def __init__(self, fields: Dict[str, List[str]], status_code: int = 422):
        self.fields = fields
        self.status_code = status_code
        parts = [f"{name}: {', '.join(msgs)}" for name, msgs in sorted(fields.items())]
        if parts:
            super().__init__(f"validation error: {'; '.join(parts)}")
        else:
            super().__init__(f"validation error {status_code}")


class RateLimitError(NubeError):
    """Raised when 429 responses persist after all retries"""

    def __init__(
        self,
        retries: int,
        reset: float = 0.0,
        limit: Optional[int] = None,
        remaining: Optional[int] = None,
    ):
        self.retries = retries
        self.reset = reset  # Seconds
        self.limit = limit
        self.remaining = remaining
        if reset > 0:
            super().__init__(
                f"rate limit exceeded, retry after {reset:.1f}s "
                f"(attempted {retries} retries)"
            )
        else:
            super().__init__(f"rate limit exceeded after {retries} retries")


class CircuitOpenError(NubeError):
    """Raised when circuit breaker is open"""

    def __init__(self, failures: int):
        self.failures = failures
        super().__init__(f"circuit breaker open after {failures} consecutive failures")


# ---------------------------------------------------------------------------
# Authorization errors
# ---------------------------------------------------------------------------


class OAuthError(NubeError):
    """Base exception for authorization flow failures"""

    pass


class CredentialsMissingError(OAuthError):
    """Raised when no OAuth client credentials are stored"""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        super().__init__("oauth credentials missing")


class StateMismatchError(OAuthError):
    """Raised when the callback state does not match (possible CSRF)"""

    def __init__(self, message: str = "state mismatch (possible CSRF attack)"):
        super().__init__(message)


class MissingCodeError(OAuthError):
    """Raised when the callback carries no authorization code"""

    def __init__(self, message: str = "missing authorization code"):
        super().__init__(message)


class AuthorizationDeniedError(OAuthError):
    """Raised when the provider reports an error on the callback"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"authorization error: {reason}")


class TokenExchangeError(OAuthError):
    """Raised when the code-for-token exchange fails"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class NoAccessTokenError(TokenExchangeError):
    """Raised when a token response carries no access token"""

    def __init__(self, message: str = "no access token in response"):
        super().__init__(message)


class AuthorizationTimeoutError(OAuthError):
    """Raised when no callback arrives before the flow deadline"""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"authorization timed out after {timeout:.0f}s")


class CallbackServerError(OAuthError):
    """Raised when the loopback callback listener cannot start"""

    pass


class AuthorizationCancelledError(OAuthError):
    """Raised when the user closes input instead of pasting a code"""

    def __init__(self, message: str = "authorization cancelled"):
        super().__init__(message)


class StepOneComplete(OAuthError):
    """
    Signals that `--remote --step 1` printed the authorization URL.

    Not a failure: the caller shows url and exits successfully.
    """

    def __init__(self, url: str):
        self.url = url
        super().__init__("step 1 complete")
