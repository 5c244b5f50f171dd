"""Per-adapter circuit breakers."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from .errors import CircuitOpen


logger = logging.getLogger(__name__)


class CircuitBreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitState:
    adapter_name: str
    state: CircuitBreakerState
    failure_count: int
    last_failure_at: Optional[float]
    opened_until: Optional[float]

    def to_dict(self) -> Dict[str, object]:
        return {
            "adapter": self.adapter_name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
            "opened_until": self.opened_until,
        }


@dataclass(frozen=True)
class CircuitPermit:
    """Handed out by ``acquire``; a trial permit is the single half-open trial call."""

    adapter_name: str
    trial: bool = False
    generation: int = 0


class CircuitBreaker:
    def __init__(
        self,
        adapter_name: str,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 60.0,
        max_cooldown_seconds: float = 600.0,
        backoff_multiplier: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.adapter_name = adapter_name
        self.failure_threshold = max(1, failure_threshold)
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.max_cooldown_seconds = max(cooldown_seconds, max_cooldown_seconds)
        self.backoff_multiplier = backoff_multiplier
        self.clock = clock

        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._opened_until: Optional[float] = None
        self._current_cooldown = cooldown_seconds
        self._trial_in_flight = False
        self._generation = 0

    def acquire(self) -> CircuitPermit:
        """Return a permit to call upstream, or raise CircuitOpen."""
        with self._lock:
            now = self.clock()
            if self._state == CircuitBreakerState.OPEN:
                if self._opened_until is not None and now >= self._opened_until:
                    self._state = CircuitBreakerState.HALF_OPEN
                    self._trial_in_flight = False
                    self._generation += 1
                    logger.info("Circuit breaker half-open adapter=%s", self.adapter_name)
                else:
                    raise self._open_error()

            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise self._open_error()
                self._trial_in_flight = True
                return CircuitPermit(self.adapter_name, trial=True, generation=self._generation)

            return CircuitPermit(self.adapter_name, trial=False, generation=self._generation)

    def record_success(self, permit: CircuitPermit) -> None:
        with self._lock:
            if self._is_current_trial(permit):
                self._state = CircuitBreakerState.CLOSED
                self._failure_count = 0
                self._opened_until = None
                self._current_cooldown = self.cooldown_seconds
                self._trial_in_flight = False
                self._generation += 1
                logger.info("Circuit breaker closed after successful trial adapter=%s", self.adapter_name)
            elif self._state == CircuitBreakerState.CLOSED:
                self._failure_count = 0

    def record_failure(self, permit: CircuitPermit) -> None:
        with self._lock:
            now = self.clock()
            if self._is_current_trial(permit):
                self._current_cooldown = min(
                    self._current_cooldown * self.backoff_multiplier, self.max_cooldown_seconds
                )
                self._failure_count += 1
                self._last_failure_at = now
                self._open(now)
                return

            if self._state != CircuitBreakerState.CLOSED:
                return

            if self._last_failure_at is not None and now - self._last_failure_at > self.window_seconds:
                self._failure_count = 0
            self._failure_count += 1
            self._last_failure_at = now
            if self._failure_count >= self.failure_threshold:
                self._current_cooldown = self.cooldown_seconds
                self._open(now)

    def release(self, permit: CircuitPermit) -> None:
        """Give back a trial permit that never reached the upstream call."""
        with self._lock:
            if self._is_current_trial(permit):
                self._trial_in_flight = False

    def snapshot(self) -> CircuitState:
        with self._lock:
            return CircuitState(
                adapter_name=self.adapter_name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                opened_until=self._opened_until,
            )

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _is_current_trial(self, permit: CircuitPermit) -> bool:
        return (
            permit.trial
            and self._state == CircuitBreakerState.HALF_OPEN
            and permit.generation == self._generation
        )

    def _open(self, now: float) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_until = now + self._current_cooldown
        self._trial_in_flight = False
        self._generation += 1
        logger.warning(
            "Circuit breaker opened adapter=%s failures=%s cooldown=%ss",
            self.adapter_name,
            self._failure_count,
            self._current_cooldown,
        )

    def _open_error(self) -> CircuitOpen:
        return CircuitOpen(
            f"Circuit breaker for adapter '{self.adapter_name}' is open",
            details={
                "adapter": self.adapter_name,
                "state": self._state.value,
                "retry_at": self._opened_until,
            },
        )


class CircuitBreakerManager:
    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 60.0,
        max_cooldown_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.max_cooldown_seconds = max_cooldown_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, adapter_name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(adapter_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    adapter_name,
                    failure_threshold=self.failure_threshold,
                    window_seconds=self.window_seconds,
                    cooldown_seconds=self.cooldown_seconds,
                    max_cooldown_seconds=self.max_cooldown_seconds,
                    clock=self.clock,
                )
                self._breakers[adapter_name] = breaker
            return breaker

    def snapshots(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.adapter_name: b.snapshot().to_dict() for b in breakers}

    def prune(self, active_names: Iterable[str]) -> None:
        """Forget breakers for adapters that are no longer registered."""
        keep = set(active_names)
        with self._lock:
            for name in [n for n in self._breakers if n not in keep]:
                del self._breakers[name]
