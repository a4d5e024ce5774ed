"""Circuit breaker guarding the primary response generator.

State lives in the process. Each worker instance keeps its own counters, so a
fleet of N workers may need up to N x threshold failures before every instance
has opened. That is accepted: the breaker is a per-instance bulkhead.
"""

import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, Tuple, TypeVar

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("circuit_breaker")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class CircuitBreaker:
    def __init__(
        self,
        name: str = "default",
        failure_threshold: Optional[int] = None,
        reset_timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.name = name
        self.failure_threshold = failure_threshold or settings.circuit_breaker_failure_threshold
        self.reset_timeout_ms = reset_timeout_ms or settings.circuit_breaker_reset_timeout_ms
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.success_count = 0
        self.failure_count = 0
        self.last_error: Optional[str] = None
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state; an expired open circuit moves to half-open on read."""
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.opened_at is not None:
            if self._clock() - self.opened_at >= self.reset_timeout_ms:
                self._state = CircuitState.HALF_OPEN
                logger.info(f"Circuit {self.name} half-open, allowing a trial call")
        return self._state

    def _admit(self) -> Tuple[bool, bool]:
        """Return (allowed, is_trial). Half-open lets exactly one caller through at a time."""
        with self._lock:
            state = self._current_state()
            if state == CircuitState.OPEN:
                return False, False
            if state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    return False, False
                self._trial_in_flight = True
                return True, True
            return True, False

    def record_success(self) -> None:
        with self._lock:
            self.success_count += 1
            self.consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self.opened_at = None
                logger.info(f"Circuit {self.name} closed after successful trial")

    def record_failure(self, error: Any = None) -> None:
        with self._lock:
            self.failure_count += 1
            self.consecutive_failures += 1
            self.last_error = str(error) if error is not None else None

            if self._state == CircuitState.HALF_OPEN:
                self._open()
            elif self._state == CircuitState.CLOSED and self.consecutive_failures >= self.failure_threshold:
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self.opened_at = self._clock()
        logger.warning(
            f"Circuit {self.name} opened",
            extra={
                "context": {
                    "consecutive_failures": self.consecutive_failures,
                    "last_error": self.last_error,
                }
            },
        )

    def execute_with_fallback(
        self,
        primary: Callable[[], T],
        fallback: Callable[[], T],
    ) -> Tuple[T, bool]:
        """Run `primary` unless the circuit is open; use `fallback` otherwise or on failure.

        Returns (result, used_fallback). An exception from `fallback` propagates unchanged.
        """
        allowed, is_trial = self._admit()
        if not allowed:
            logger.debug(f"Circuit {self.name} open or trial in flight, skipping primary")
            return fallback(), True

        try:
            try:
                result = primary()
            except Exception as exc:
                self.record_failure(exc)
                logger.warning(f"Primary call failed on circuit {self.name}: {exc}")
                return fallback(), True
            self.record_success()
            return result, False
        finally:
            if is_trial:
                with self._lock:
                    self._trial_in_flight = False

    def get_metrics(self) -> dict:
        with self._lock:
            state = self._current_state()
            total = self.success_count + self.failure_count
            health = round(self.success_count / total * 100) if total else 100
            return {
                "name": self.name,
                "state": state.value,
                "consecutive_failures": self.consecutive_failures,
                "success_count": self.success_count,
                "failure_count": self.failure_count,
                "last_error": self.last_error,
                "health_percentage": health,
            }

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self.consecutive_failures = 0
            self.success_count = 0
            self.failure_count = 0
            self.last_error = None
            self.opened_at = None
            self._trial_in_flight = False


_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(name: str = "response_generation") -> CircuitBreaker:
    with _registry_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name=name)
            _breakers[name] = breaker
        return breaker


def get_all_metrics() -> list[dict]:
    with _registry_lock:
        breakers = list(_breakers.values())
    return [breaker.get_metrics() for breaker in breakers]
