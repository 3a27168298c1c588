"""Circuit breaker pattern implementation"""

import threading
import time
from typing import Callable, Optional

from loguru import logger

from .config import CIRCUIT_BREAKER_THRESHOLD, CIRCUIT_BREAKER_TIMEOUT
from .models import CircuitState


class CircuitBreaker:
    """
    Circuit breaker to prevent cascading failures.
    Opens after threshold consecutive failures. Once the cooldown has
    passed, the next is_open() check closes it and clears the count.

    One instance is shared by every request made through a client, so
    all state lives behind a single lock.
    """

    def __init__(
        self,
        failure_threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: float = CIRCUIT_BREAKER_TIMEOUT,
        name: str = "api",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening circuit
            timeout: Seconds before letting requests through again
            name: Name for logging purposes
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock
        self._failures = 0
        self._open = False
        self._last_failure_time: Optional[float] = None
        self._lock = threading.Lock()

        logger.debug(
            f"Circuit breaker '{name}' initialized: "
            f"threshold={failure_threshold}, timeout={timeout}s"
        )

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return CircuitState.OPEN if self._open else CircuitState.CLOSED

    def record_success(self) -> None:
        """Reset the failure count and close the circuit"""
        with self._lock:
            was_open = self._open
            self._failures = 0
            self._open = False

        if was_open:
            logger.info(f"Circuit '{self.name}' reset")

    def record_failure(self) -> bool:
        """
        Count one failure.

        Returns:
            True if this failure opened the circuit
        """
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            failures = self._failures

            if failures >= self.failure_threshold:
                self._open = True

        if failures >= self.failure_threshold:
            logger.warning(f"Circuit '{self.name}' OPEN after {failures} failures")
            return True

        logger.debug(
            f"Circuit '{self.name}' failure {failures}/{self.failure_threshold}"
        )
        return False

    def is_open(self) -> bool:
        """True while requests should be rejected"""
        with self._lock:
            if not self._open:
                return False

            elapsed = self._clock() - (self._last_failure_time or 0.0)
            if elapsed > self.timeout:
                self._open = False
                self._failures = 0
                reset = True
            else:
                reset = False

        if reset:
            logger.info(
                f"Circuit '{self.name}' attempting reset after {self.timeout:.0f}s cooldown"
            )
            return False

        return True
