"""
Circuit breaker around Deep Classifier calls.

3 consecutive failures open the circuit for a cooldown (30s by default).
While open, callers route the email to review without calling the model.
After the cooldown one half-open trial call is let through: success closes
the circuit, failure reopens it with a doubled cooldown (capped).
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation, calls allowed
    OPEN = "open"            # Failing, calls rejected
    HALF_OPEN = "half_open"  # One trial call allowed


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot returned by CircuitBreaker.status()."""
    state: CircuitState
    failures: int
    max_failures: int
    open_until: Optional[float]
    cooldown_seconds: float
    total_calls: int
    total_failures: int

    def to_dict(self, now: Optional[float] = None) -> Dict:
        result = {
            "state": self.state.value,
            "failures": self.failures,
            "max_failures": self.max_failures,
            "open_until": self.open_until,
            "cooldown_seconds": self.cooldown_seconds,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
        }
        if self.state == CircuitState.OPEN and self.open_until is not None:
            remaining = self.open_until - (now if now is not None else time.time())
            result["recovery_in_seconds"] = max(0.0, remaining)
        return result


class CircuitBreaker:
    """
    Single breaker for one Deep Classifier endpoint.

    Usage:
        breaker = CircuitBreaker()

        if breaker.allow():
            try:
                result = deep.classify(...)
                breaker.record_success()
            except ProviderError:
                breaker.record_failure()
        else:
            route_to_review()
    """

    def __init__(
        self,
        max_failures: int = 3,
        cooldown_seconds: float = 30.0,
        max_cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        name: str = "deep",
    ):
        self.max_failures = max_failures
        self.base_cooldown = cooldown_seconds
        self.max_cooldown = max(max_cooldown_seconds, cooldown_seconds)
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._open_until: Optional[float] = None
        self._cooldown = cooldown_seconds
        self._trial_in_flight = False
        self._total_calls = 0
        self._total_failures = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[Dict] = None, **kwargs) -> "CircuitBreaker":
        config = config or {}
        return cls(
            max_failures=config.get("max_failures", 3),
            cooldown_seconds=config.get("cooldown_seconds", 30.0),
            max_cooldown_seconds=config.get("max_cooldown_seconds", 300.0),
            **kwargs,
        )

    def allow(self) -> bool:
        """
        Whether a call may be attempted now.

        The first call after the cooldown elapses moves the breaker to
        HALF_OPEN and is the only one allowed until it reports back.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._clock() < self._open_until:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info(f"Circuit HALF_OPEN for {self.name} (testing recovery)")
                return True

            # HALF_OPEN: only the trial call
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        """
        A success only closes the circuit from HALF_OPEN. While OPEN it is a
        late report from a call admitted before the circuit opened, and the
        cooldown stands.
        """
        with self._lock:
            self._total_calls += 1
            if self._state == CircuitState.OPEN:
                logger.debug(f"Late success ignored for {self.name}, circuit stays OPEN")
                return
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit CLOSED for {self.name} (recovered)")
                self._close()

    def record_failure(self) -> None:
        with self._lock:
            self._total_calls += 1
            self._total_failures += 1
            self._failures += 1

            if self._state == CircuitState.HALF_OPEN:
                self._cooldown = min(self._cooldown * 2, self.max_cooldown)
                self._open()
                logger.warning(
                    f"Circuit OPEN for {self.name} (recovery failed), "
                    f"cooldown {self._cooldown:.0f}s"
                )
            elif self._state == CircuitState.CLOSED and self._failures >= self.max_failures:
                self._open()
                logger.warning(
                    f"Circuit OPEN for {self.name} after {self._failures} consecutive failures"
                )

    def status(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                state=self._state,
                failures=self._failures,
                max_failures=self.max_failures,
                open_until=self._open_until,
                cooldown_seconds=self._cooldown,
                total_calls=self._total_calls,
                total_failures=self._total_failures,
            )

    def retry_in(self) -> float:
        with self._lock:
            if self._state != CircuitState.OPEN or self._open_until is None:
                return 0.0
            return max(0.0, self._open_until - self._clock())

    def reset(self) -> None:
        """Manual override: force-close regardless of the timer."""
        with self._lock:
            self._failures = 0
            self._close()
            logger.info(f"Circuit manually reset for {self.name}")

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._open_until = self._clock() + self._cooldown
        self._trial_in_flight = False

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._open_until = None
        self._cooldown = self.base_cooldown
        self._trial_in_flight = False


# Global circuit breaker instance
_circuit_breaker: Optional[CircuitBreaker] = None
_circuit_lock = threading.Lock()


def get_circuit_breaker(config: Optional[Dict] = None) -> CircuitBreaker:
    """
    Get or create the process-wide breaker for the Deep Classifier.

    Args:
        config: `circuit_breaker` config section, used on first creation only
    """
    global _circuit_breaker

    with _circuit_lock:
        if _circuit_breaker is None:
            _circuit_breaker = CircuitBreaker.from_config(config)
        return _circuit_breaker


def reset_circuit_breaker() -> None:
    """Drop the global circuit breaker (mainly for testing)."""
    global _circuit_breaker
    with _circuit_lock:
        _circuit_breaker = None
