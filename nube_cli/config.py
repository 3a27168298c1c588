"""Configuration constants and credential lookup for nube-cli"""

import json
import os
from pathlib import Path
from typing import Optional, Tuple

from loguru import logger

from .exceptions import ConfigError, CredentialsMissingError
from .models import ClientCredentials

# API Configuration
DEFAULT_BASE_URL = "https://api.tiendanube.com/v1"
DEFAULT_USER_AGENT = "nube-cli (https://github.com/gberlati/nube-cli)"  # API returns 400 without one
DEFAULT_HTTP_TIMEOUT = 30.0  # Seconds
AUTH_HEADER = "Authentication"  # Not "Authorization"
AUTH_SCHEME = "bearer"

# Rate limit headers (reset is in milliseconds)
HEADER_RATE_LIMIT_LIMIT = "X-Rate-Limit-Limit"
HEADER_RATE_LIMIT_REMAINING = "X-Rate-Limit-Remaining"
HEADER_RATE_LIMIT_RESET = "X-Rate-Limit-Reset"

# Retry configuration
MAX_RETRIES_429 = 5
MAX_RETRIES_5XX = 2
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 60.0
BACKOFF_MULTIPLIER = 2.0
JITTER_FRACTION = 0.5

# Circuit breaker configuration
CIRCUIT_BREAKER_THRESHOLD = 5  # Consecutive failures before opening
CIRCUIT_BREAKER_TIMEOUT = 30.0  # Seconds before letting requests through again

# Error bodies larger than this are truncated
MAX_ERROR_BODY = 1 << 20

# OAuth
AUTH_BASE_URL = "https://www.tiendanube.com/apps"
TOKEN_URL = "https://www.tiendanube.com/apps/authorize/token"
CALLBACK_HOST = "127.0.0.1"
CALLBACK_PORT = 8910
CALLBACK_PATH = "/callback"
DEFAULT_AUTH_TIMEOUT = 120.0  # Seconds
DEFAULT_BROKER_URL: Optional[str] = os.environ.get("NUBE_AUTH_BROKER_DEFAULT") or None

DEFAULT_CLIENT_NAME = "default"


def config_dir() -> Path:
    """Directory holding nube-cli configuration files"""
    override = os.environ.get("NUBE_CONFIG_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "nube-cli"


def client_credentials_path(client: str = DEFAULT_CLIENT_NAME) -> Path:
    """Path to the OAuth client credentials file for a named client"""
    client = (client or DEFAULT_CLIENT_NAME).strip().lower()
    if client == DEFAULT_CLIENT_NAME:
        return config_dir() / "credentials.json"
    return config_dir() / f"credentials-{client}.json"


def read_client_credentials(client: str = DEFAULT_CLIENT_NAME) -> ClientCredentials:
    """
    Load OAuth application credentials from disk.

    Args:
        client: Named OAuth client

    Returns:
        ClientCredentials with client_id and client_secret

    Raises:
        CredentialsMissingError: If the credentials file does not exist
        ConfigError: If the file is unreadable or incomplete
    """
    path = client_credentials_path(client)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise CredentialsMissingError(path) from e
    except OSError as e:
        raise ConfigError(f"read credentials {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"decode credentials {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"credentials {path} must be a JSON object")

    client_id = str(data.get("client_id") or "").strip()
    client_secret = str(data.get("client_secret") or "").strip()
    if not client_id or not client_secret:
        raise ConfigError(f"credentials {path} is missing client_id/client_secret")

    logger.debug(f"Loaded OAuth client credentials from {path}")
    return ClientCredentials(client_id=client_id, client_secret=client_secret)


def env_access_token() -> Tuple[Optional[str], str]:
    """Access token and store id from NUBE_ACCESS_TOKEN / NUBE_USER_ID"""
    token = os.environ.get("NUBE_ACCESS_TOKEN", "").strip() or None
    user_id = os.environ.get("NUBE_USER_ID", "").strip()
    if token and not user_id:
        logger.warning("NUBE_USER_ID not set; API calls that require a store ID will fail")
    return token, user_id
