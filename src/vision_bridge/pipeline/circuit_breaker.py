"""Per-endpoint circuit breakers.

A breaker moves CLOSED -> OPEN after ``failure_threshold`` consecutive
failures, rejects calls while OPEN, and admits one trial call (HALF_OPEN)
once ``recovery_timeout`` has elapsed. The trial's outcome closes or reopens
it. All state changes happen under a lock that is never held across an
``await``: callers check ``before_call()``, make the call, then report.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
import logging
import threading
import time

from vision_bridge.constants import DEFAULT_FAILURE_THRESHOLD, DEFAULT_RECOVERY_TIMEOUT
from vision_bridge.core.exceptions import BreakerOpenError

log = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class BreakerPolicy:
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold: must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout: must be non-negative")


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    """Point-in-time view of a breaker, safe to hand out."""

    endpoint: str
    state: CircuitState
    failure_count: int
    last_failure_at: float | None


class CircuitBreaker:
    """Failure-counting gate for one logical upstream endpoint."""

    def __init__(
        self,
        endpoint: str,
        policy: BreakerPolicy | None = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self._policy = policy or BreakerPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: float | None = None
        self._trial_in_flight = False
        self._trial_started_at: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            self._refresh()
            return BreakerSnapshot(
                endpoint=self.endpoint,
                state=self._state,
                failure_count=self._failures,
                last_failure_at=self._last_failure_at,
            )

    def before_call(self) -> bool:
        """Admit a call or raise ``BreakerOpenError`` without side effects upstream.

        Returns True when the admitted call is the half-open trial. Its caller
        must then report an outcome, or ``release_trial()`` when the call ends
        without one (cancelled or abandoned).
        """
        with self._lock:
            self._refresh()
            if self._state is CircuitState.CLOSED:
                return False
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                self._trial_started_at = self._clock()
                log.info("Circuit breaker half-open, admitting trial call: %s", self.endpoint)
                return True
            retry_in = self._retry_in()
        raise BreakerOpenError(self.endpoint, retry_in=retry_in)

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                log.info("Circuit breaker closed: %s", self.endpoint)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> bool:
        """Count a failure; returns True when this failure opened the breaker."""
        with self._lock:
            self._last_failure_at = self._clock()
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                log.warning("Circuit breaker trial failed, reopening: %s", self.endpoint)
                return True
            self._failures += 1
            if (
                self._state is CircuitState.CLOSED
                and self._failures >= self._policy.failure_threshold
            ):
                self._state = CircuitState.OPEN
                log.warning(
                    "Circuit breaker tripped after %d failures: %s",
                    self._failures,
                    self.endpoint,
                )
                return True
            return False

    def release_trial(self) -> None:
        """Free the half-open trial slot without counting an outcome."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._trial_in_flight:
                log.info("Circuit breaker trial abandoned: %s", self.endpoint)
                self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_at = None
            self._trial_in_flight = False

    # Callers hold self._lock for the helpers below.

    def _refresh(self) -> None:
        now = self._clock()
        if (
            self._state is CircuitState.HALF_OPEN
            and self._trial_in_flight
            and self._trial_started_at is not None
            and self._policy.recovery_timeout > 0
            and now - self._trial_started_at >= self._policy.recovery_timeout
        ):
            # A trial that never reported back no longer holds the slot.
            self._trial_in_flight = False
        if (
            self._state is CircuitState.OPEN
            and self._last_failure_at is not None
            and now - self._last_failure_at >= self._policy.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

    def _retry_in(self) -> float | None:
        if self._last_failure_at is None:
            return None
        elapsed = self._clock() - self._last_failure_at
        return max(self._policy.recovery_timeout - elapsed, 0.0)


class BreakerRegistry:
    """Owns one breaker per ``(base_url, model_id)`` endpoint.

    Instances are injected into the invoker rather than held globally, so a
    test can start from a fresh registry.
    """

    def __init__(
        self,
        policy: BreakerPolicy | None = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._policy = policy or BreakerPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}

    @property
    def policy(self) -> BreakerPolicy:
        return self._policy

    def get(self, base_url: str, model_id: str) -> CircuitBreaker:
        key = (base_url.rstrip("/"), model_id)
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    f"{key[0]}#{model_id}", self._policy, clock=self._clock
                )
                self._breakers[key] = breaker
            return breaker

    def snapshots(self) -> tuple[BreakerSnapshot, ...]:
        with self._lock:
            breakers = tuple(self._breakers.values())
        return tuple(b.snapshot() for b in breakers)

    def reset_all(self) -> None:
        with self._lock:
            breakers = tuple(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
