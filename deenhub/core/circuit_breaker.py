"""Per-host circuit breakers for upstream APIs.

A host that keeps failing with transient errors is cut off for
``recovery_timeout`` seconds, after which one trial call is let through:

    closed     failure_threshold consecutive failures    -> open
    open       recovery_timeout elapsed, next call       -> half_open
    half_open  success_threshold successes               -> closed
    half_open  any failure                               -> open
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 1


class CircuitBreaker:
    """Breaker for a single upstream host; safe to share between threads."""

    def __init__(self, name: str, config: CircuitBreakerConfig | None = None) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.RLock()
        self._close()

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._trial_successes = 0
        self._opened_at: float | None = None

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._trial_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def can_execute(self) -> bool:
        """Whether a call may go out now; moves an expired open breaker to half-open."""
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return True
            waited = time.monotonic() - (self._opened_at or 0.0)
            if waited < self.config.recovery_timeout:
                return False
            self._state = CircuitState.HALF_OPEN
            self._trial_successes = 0
            logger.info(f"Breaker {self.name}: trying a call after {waited:.0f}s open")
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.success_threshold:
                    logger.info(f"Breaker {self.name}: upstream recovered, closing")
                    self._close()
            else:
                self._consecutive_failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                logger.warning(f"Breaker {self.name}: trial call failed, reopening")
                self._trip()
            elif (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                logger.error(
                    f"Breaker {self.name}: opening after "
                    f"{self._consecutive_failures} consecutive failures"
                )
                self._trip()


class CircuitBreakerRegistry:
    """One breaker per host, created on first use."""

    def __init__(self, config: CircuitBreakerConfig | None = None) -> None:
        self.config = config or CircuitBreakerConfig()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def for_url(self, url: str) -> CircuitBreaker:
        host = urlsplit(url).netloc or url
        with self._lock:
            breaker = self._breakers.get(host)
            if breaker is None:
                breaker = self._breakers[host] = CircuitBreaker(host, self.config)
            return breaker

    def snapshot(self) -> dict[str, str]:
        """Host -> state name, for the detailed health check."""
        with self._lock:
            breakers = list(self._breakers.items())
        return {host: breaker.state.value for host, breaker in breakers}
