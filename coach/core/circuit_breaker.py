"""
CircuitBreaker - Backend Call Protection
========================================

Guards calls to the knowledge retriever and the text-generation backend.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Circuit tripped, requests fail fast as "backend unavailable"
- HALF_OPEN: Recovery trial, a single call in flight; concurrent calls fail fast

Configuration:
- failure_threshold: failures within ``failure_window`` that open the circuit
- recovery_timeout: seconds before a recovery trial is allowed

Every call runs under a hard timeout; a timeout counts as a failure and
is reported as unavailability, never retried inside the same call.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from coach.core.errors import BackendUnavailableError

logger = logging.getLogger(__name__)


class CircuitBreakerOpen(BackendUnavailableError):
    """Raised when the circuit is open and the call is skipped."""

    def __init__(self, name: str, recovery_in: float):
        self.name = name
        self.recovery_in = recovery_in
        super().__init__(
            f"CircuitBreaker '{name}' is OPEN. Recovery in {recovery_in:.1f}s"
        )


@dataclass
class FailureRecord:
    timestamp: float
    error_type: str = "unknown"


class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker(name="generation", failure_threshold=5)
        text = await breaker.call(
            lambda: backend.generate(prompt),
            timeout=20.0,
            unavailable=GenerationUnavailableError,
        )
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        failure_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_window = failure_window
        self._clock = clock

        self._state = "CLOSED"
        self._failures: List[FailureRecord] = []
        self._opened_at: float = 0.0
        self._trial_in_flight = False

        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        """Current state, moving OPEN -> HALF_OPEN once the recovery timeout passed."""
        if self._state == "OPEN" and self._clock() - self._opened_at >= self.recovery_timeout:
            self._state = "HALF_OPEN"
            logger.info(
                f"CircuitBreaker '{self.name}' transitioned to HALF_OPEN "
                f"after {self.recovery_timeout}s recovery timeout"
            )
        return self._state

    @property
    def failure_count(self) -> int:
        self._clean_old_failures()
        return len(self._failures)

    @property
    def is_open(self) -> bool:
        return self.state == "OPEN"

    def check_state(self) -> None:
        """Raise CircuitBreakerOpen if requests are not allowed."""
        if self.state == "OPEN":
            recovery_in = max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))
            raise CircuitBreakerOpen(name=self.name, recovery_in=recovery_in)

    def record_failure(self, error_type: str = "unknown") -> None:
        now = self._clock()
        self._failures.append(FailureRecord(timestamp=now, error_type=error_type))
        self._total_failures += 1
        self._clean_old_failures()

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            self._opened_at = now
            logger.warning(
                f"CircuitBreaker '{self.name}' REOPENED from HALF_OPEN. Error: {error_type}"
            )
        elif self._state == "CLOSED" and len(self._failures) >= self.failure_threshold:
            self._state = "OPEN"
            self._opened_at = now
            logger.warning(
                f"CircuitBreaker '{self.name}' OPENED after "
                f"{len(self._failures)} failures. Last error: {error_type}"
            )

    def record_success(self) -> None:
        self._total_successes += 1
        if self._state == "HALF_OPEN":
            logger.info(f"CircuitBreaker '{self.name}' CLOSED after successful recovery")
        self._state = "CLOSED"
        self._failures.clear()

    def _clean_old_failures(self) -> None:
        cutoff = self._clock() - self.failure_window
        self._failures = [f for f in self._failures if f.timestamp >= cutoff]

    async def call(
        self,
        factory: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
        unavailable: Type[BackendUnavailableError] = BackendUnavailableError,
    ) -> Any:
        """
        Run ``factory()`` through the breaker.

        Raises:
            CircuitBreakerOpen: circuit is open or a recovery trial is running;
                nothing was called
            unavailable: the call timed out or raised
        """
        self.check_state()
        trial = self.state == "HALF_OPEN"
        if trial:
            if self._trial_in_flight:
                raise CircuitBreakerOpen(name=self.name, recovery_in=0.0)
            self._trial_in_flight = True
        try:
            try:
                result = await asyncio.wait_for(factory(), timeout=timeout)
            except asyncio.TimeoutError as e:
                self.record_failure("Timeout")
                raise unavailable(f"{self.name} timed out after {timeout}s") from e
            except Exception as e:
                self.record_failure(type(e).__name__)
                raise unavailable(f"{self.name} failed: {type(e).__name__}: {e}") from e
            self.record_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
            "recovery_timeout": self.recovery_timeout,
        }

    def reset(self) -> None:
        self._state = "CLOSED"
        self._failures.clear()
        self._opened_at = 0.0
        self._trial_in_flight = False
        logger.info(f"CircuitBreaker '{self.name}' manually reset to CLOSED")

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name='{self.name}', state='{self.state}', "
            f"failures={self.failure_count}/{self.failure_threshold})"
        )
