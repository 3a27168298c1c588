"""Retrying httpx transport with rate-limit aware backoff"""

import asyncio
import random
from typing import Optional

import httpx
from loguru import logger

from .circuit_breaker import CircuitBreaker
from .classifier import classify
from .config import (
    BACKOFF_MULTIPLIER,
    HEADER_RATE_LIMIT_LIMIT,
    HEADER_RATE_LIMIT_REMAINING,
    HEADER_RATE_LIMIT_RESET,
    INITIAL_BACKOFF,
    JITTER_FRACTION,
    MAX_BACKOFF,
    MAX_RETRIES_429,
    MAX_RETRIES_5XX,
)
from .exceptions import CircuitOpenError, RateLimitError


def _header_float(response: Optional[httpx.Response], name: str) -> Optional[float]:
    if response is None:
        return None
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _header_int(response: httpx.Response, name: str) -> Optional[int]:
    # Counters such as X-Rate-Limit-Remaining are legitimately 0
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


class RetryTransport(httpx.AsyncBaseTransport):
    """
    Transport that retries rate-limited, failing and unreachable requests:
    - 429: up to max_retries_429 retries, waiting X-Rate-Limit-Reset (ms)
      or Retry-After (s) when the server provides one
    - 5xx and network errors: up to max_retries_5xx retries
    - Any other non-2xx: classified and raised at once

    Failed requests raise the typed exceptions from nube_cli.exceptions.
    A shared CircuitBreaker short-circuits requests after repeated failures.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_retries_429: int = MAX_RETRIES_429,
        max_retries_5xx: int = MAX_RETRIES_5XX,
        base_delay: float = INITIAL_BACKOFF,
        max_delay: float = MAX_BACKOFF,
    ):
        """
        Initialize retry transport.

        Args:
            transport: Transport that actually sends requests
            breaker: Circuit breaker shared by all requests of one client
            max_retries_429: Retries for rate limited responses
            max_retries_5xx: Retries for server errors and network failures
            base_delay: Initial backoff in seconds
            max_delay: Upper bound for exponential backoff
        """
        self.transport = transport or httpx.AsyncHTTPTransport()
        self.breaker = breaker or CircuitBreaker()
        self.max_retries_429 = max_retries_429
        self.max_retries_5xx = max_retries_5xx
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_backoff(
        self,
        attempt: int,
        response: Optional[httpx.Response] = None,
        honor_reset: bool = True,
    ) -> float:
        """
        Seconds to wait before retry number attempt (0-based).

        Priority: X-Rate-Limit-Reset (milliseconds, only when honor_reset),
        Retry-After (seconds), then exponential backoff with up to 50% jitter.
        """
        if honor_reset:
            reset_ms = _header_float(response, HEADER_RATE_LIMIT_RESET)
            if reset_ms is not None:
                return reset_ms / 1000.0

        retry_after = _header_float(response, "Retry-After")
        if retry_after is not None:
            return retry_after

        delay = min(self.base_delay * (BACKOFF_MULTIPLIER ** attempt), self.max_delay)
        jitter = random.uniform(0, delay * JITTER_FRACTION)
        return delay + jitter

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.breaker.is_open():
            raise CircuitOpenError(self.breaker.failures)

        # Buffer the body so every attempt sends the same bytes
        await request.aread()

        retries_429 = 0
        retries_5xx = 0

        while True:
            try:
                response = await self.transport.handle_async_request(request)
            except httpx.TransportError as e:
                self.breaker.record_failure()
                if retries_5xx >= self.max_retries_5xx:
                    logger.error(
                        f"{request.method} {request.url.path} failed after "
                        f"{retries_5xx} retries: {e!r}"
                    )
                    raise

                wait = self.calculate_backoff(retries_5xx)
                retries_5xx += 1
                logger.warning(
                    f"{request.method} {request.url.path} network error ({e!r}), "
                    f"retry {retries_5xx}/{self.max_retries_5xx} in {wait:.2f}s"
                )
                await asyncio.sleep(wait)
                continue

            status = response.status_code

            if 200 <= status < 300:
                self.breaker.record_success()
                return response

            if status == 429:
                if retries_429 >= self.max_retries_429:
                    await response.aread()
                    await response.aclose()
                    self.breaker.record_failure()
                    reset_ms = _header_float(response, HEADER_RATE_LIMIT_RESET)
                    logger.error(
                        f"{request.method} {request.url.path} still rate limited "
                        f"after {retries_429} retries"
                    )
                    raise RateLimitError(
                        retries=retries_429,
                        reset=(reset_ms or 0.0) / 1000.0,
                        limit=_header_int(response, HEADER_RATE_LIMIT_LIMIT),
                        remaining=_header_int(response, HEADER_RATE_LIMIT_REMAINING),
                    )

                wait = self.calculate_backoff(retries_429, response)
                retries_429 += 1
                logger.warning(
                    f"{request.method} {request.url.path} rate limited "
                    f"(limit={response.headers.get(HEADER_RATE_LIMIT_LIMIT, '?')}, "
                    f"remaining={response.headers.get(HEADER_RATE_LIMIT_REMAINING, '?')}), "
                    f"retry {retries_429}/{self.max_retries_429} in {wait:.2f}s"
                )
                await response.aclose()
                await asyncio.sleep(wait)
                continue

            if status >= 500:
                if retries_5xx >= self.max_retries_5xx:
                    body = await response.aread()
                    await response.aclose()
                    self.breaker.record_failure()
                    logger.error(
                        f"{request.method} {request.url.path} returned {status} "
                        f"after {retries_5xx} retries"
                    )
                    raise classify(status, body)

                wait = self.calculate_backoff(retries_5xx, response, honor_reset=False)
                retries_5xx += 1
                logger.warning(
                    f"{request.method} {request.url.path} returned {status}, "
                    f"retry {retries_5xx}/{self.max_retries_5xx} in {wait:.2f}s"
                )
                await response.aclose()
                await asyncio.sleep(wait)
                continue

            # Client errors are final and do not count against the breaker
            body = await response.aread()
            await response.aclose()
            logger.debug(f"{request.method} {request.url.path} returned {status}")
            raise classify(status, body)

    async def aclose(self) -> None:
        await self.transport.aclose()
