"""API client for the Tienda Nube REST API"""

import json
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx
from loguru import logger

from .circuit_breaker import CircuitBreaker
from .config import (
    AUTH_HEADER,
    AUTH_SCHEME,
    DEFAULT_BASE_URL,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_USER_AGENT,
)
from .exceptions import NubeError
from .retry import RetryTransport

T = TypeVar("T")

QueryParams = Optional[Dict[str, Any]]


class NubeClient:
    """
    Store-scoped API client:
    - Authentication header injection ("Authentication: bearer <token>")
    - URL composition as <base_url>/<store_id>/<path>
    - Retries, rate limiting and circuit breaking via RetryTransport

    Non-2xx responses raise the typed exceptions in nube_cli.exceptions.
    """

    def __init__(
        self,
        store_id: str,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_transport: Optional[RetryTransport] = None,
    ):
        """
        Initialize API client.

        Args:
            store_id: Store (user) id the token belongs to
            access_token: OAuth access token
            base_url: API base URL
            user_agent: User-Agent header (required by the API)
            timeout: Request timeout in seconds
            transport: Underlying transport wrapped by RetryTransport
            breaker: Circuit breaker to share (one is created if omitted)
            retry_transport: Fully configured retry transport (overrides transport/breaker)
        """
        self.store_id = str(store_id)
        self.base_url = base_url
        self.user_agent = user_agent
        self.timeout = timeout
        self.retry_transport = retry_transport or RetryTransport(
            transport=transport, breaker=breaker
        )
        self.breaker = self.retry_transport.breaker
        self._access_token = access_token

        self._http = httpx.AsyncClient(
            transport=self.retry_transport,
            timeout=timeout,
            headers={
                AUTH_HEADER: f"{AUTH_SCHEME} {access_token}",
                "User-Agent": user_agent,
                "Content-Type": "application/json",
            },
        )

        logger.debug(f"API client initialized for store {self.store_id} ({base_url})")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def url(self, path: str) -> str:
        """Absolute URL for a store-relative path (absolute URLs pass through)"""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{self.store_id}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        params: QueryParams = None,
        json_body: Any = None,
    ) -> httpx.Response:
        """Send one request through the retry transport"""
        kwargs: Dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        if json_body is not None:
            kwargs["content"] = json.dumps(json_body).encode("utf-8")

        response = await self._http.request(method, self.url(path), **kwargs)
        logger.debug(f"{method} {response.request.url} -> {response.status_code}")
        return response

    async def get(self, path: str, params: QueryParams = None) -> httpx.Response:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_body: Any = None) -> httpx.Response:
        return await self.request("POST", path, json_body=json_body)

    async def put(self, path: str, json_body: Any = None) -> httpx.Response:
        return await self.request("PUT", path, json_body=json_body)

    async def delete(self, path: str) -> httpx.Response:
        return await self.request("DELETE", path)


def decode_response(
    response: httpx.Response,
    into: Optional[Callable[[Any], T]] = None,
) -> Any:
    """
    Decode a JSON response body.

    Args:
        response: Successful response
        into: Optional converter applied to the decoded JSON (e.g. a dataclass factory)

    Raises:
        NubeError: If the body is not valid JSON
    """
    try:
        data = response.json()
    except ValueError as e:
        raise NubeError(f"decode response: {e}") from e

    return into(data) if into is not None else data
