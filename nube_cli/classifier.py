"""Turn non-2xx API responses into typed exceptions"""

import json
from typing import Any, Dict, List, Optional, Union

from .config import MAX_ERROR_BODY
from .exceptions import (
    APIError,
    AuthError,
    NotFoundError,
    NubeError,
    PaymentRequiredError,
    PermissionDeniedError,
    ValidationError,
)

# Keys that mark a business-error object rather than a field map
_RESERVED_KEYS = ("code", "message")


def _load_json(body: Union[bytes, str]) -> Any:
    try:
        return json.loads(body)
    except (ValueError, TypeError):
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def parse_error_message(body: Union[bytes, str]) -> str:
    """
    Extract a human-readable message from an error body.

    Tries {"code", "message", "description"} first, then {"error": "..."}.
    Returns "" when neither shape yields text.
    """
    data = _load_json(body)
    if not isinstance(data, dict):
        return ""

    for key in ("message", "description"):
        text = _as_text(data.get(key))
        if text:
            return text

    error = data.get("error")
    if isinstance(error, str) and error:
        return error

    return ""


def parse_error_code(body: Union[bytes, str]) -> str:
    data = _load_json(body)
    if isinstance(data, dict):
        return _as_text(data.get("code"))
    return ""


def parse_validation_fields(body: Union[bytes, str]) -> Optional[Dict[str, List[str]]]:
    """
    Parse a {"field": ["msg", ...]} body.

    Returns None unless the body is a non-empty map of string lists without
    the reserved business-error keys.
    """
    data = _load_json(body)
    if not isinstance(data, dict) or not data:
        return None

    if any(key in data for key in _RESERVED_KEYS):
        return None

    fields: Dict[str, List[str]] = {}
    for name, messages in data.items():
        if not isinstance(messages, list) or not all(isinstance(m, str) for m in messages):
            return None
        fields[name] = list(messages)

    return fields


def classify(status_code: int, body: Union[bytes, str] = b"") -> NubeError:
    """
    Map a failed response to exactly one typed error.

    Args:
        status_code: HTTP status of the response
        body: Raw response body (may be empty or not JSON)

    Returns:
        The exception instance describing the failure (not raised)
    """
    if isinstance(body, str):
        body = body.encode("utf-8", errors="replace")
    body = body[:MAX_ERROR_BODY]

    message = parse_error_message(body)

    if status_code == 401:
        return AuthError(message)
    if status_code == 402:
        return PaymentRequiredError(message)
    if status_code == 403:
        return PermissionDeniedError(message)
    if status_code == 404:
        return NotFoundError()

    if status_code == 422:
        fields = parse_validation_fields(body)
        if fields is not None:
            return ValidationError(fields, status_code=status_code)

    return APIError(
        status_code=status_code,
        code=parse_error_code(body),
        message=message,
        body=body.decode("utf-8", errors="replace"),
    )
