"""Circuit breaker guarding the language oracle.

After ``failure_threshold`` consecutive failed calls the circuit opens and
calls fail fast. Once ``recovery_timeout`` has passed a single trial call
is let through; its outcome closes or re-opens the circuit. Calls run on
one event loop, so state changes need no locking.
"""

import enum
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling the service while the circuit is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit open for {name}; retry in {retry_after:.0f}s")


class CircuitBreaker:
    """Consecutive-failure breaker for one async dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._retry_after() <= 0:
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit %s half-open, allowing a trial call", self.name)
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _retry_after(self) -> float:
        return self._opened_at + self.recovery_timeout - self._clock()

    def _acquire(self) -> bool:
        """Admit a call; returns True when it is the half-open trial."""
        state = self.state
        if state is CircuitState.CLOSED:
            return False
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        raise CircuitOpenError(self.name, max(self._retry_after(), 0.0))

    def _on_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.warning("Circuit %s closed after a successful trial call", self.name)
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0

    def _on_failure(self, trial: bool) -> None:
        self._consecutive_failures += 1
        if trial or self._consecutive_failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit %s opened after %d consecutive failure(s)",
                    self.name,
                    self._consecutive_failures,
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()

    async def call_async(self, func: Callable[..., Awaitable[T]], *args: object, **kwargs: object) -> T:
        """Await ``func(*args, **kwargs)`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with a
                trial call already running.
        """
        trial = self._acquire()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure(trial)
            raise
        finally:
            if trial:
                self._trial_in_flight = False
        self._on_success()
        return result
