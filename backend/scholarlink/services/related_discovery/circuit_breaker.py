"""Three-state circuit breaker guarding one external provider."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitSnapshot:
    state: CircuitState
    consecutive_failures: int
    window_calls: int
    window_failures: int
    opened_at: Optional[float]


class CircuitBreaker:
    """Mutex-guarded CLOSED -> OPEN -> HALF_OPEN state machine.

    CLOSED trips to OPEN when either ``failure_threshold`` consecutive calls
    fail, or the rolling window holds at least ``min_window_calls`` outcomes
    with a failure fraction of ``failure_rate_threshold`` or more. OPEN
    rejects everything until ``cooldown_seconds`` have passed, then moves to
    HALF_OPEN on the next admission check. HALF_OPEN lets through at most
    ``half_open_max_probes`` concurrent probes: the first success closes the
    circuit, any failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        failure_rate_threshold: float = 0.5,
        min_window_calls: int = 10,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 60.0,
        half_open_max_probes: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.failure_rate_threshold = failure_rate_threshold
        self.min_window_calls = max(1, min_window_calls)
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.half_open_max_probes = max(1, half_open_max_probes)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._probes_in_flight = 0
        self._window: Deque[Tuple[float, bool]] = deque()

    # ----------------------------------------------------------------- helpers

    def _prune_locked(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _refresh_locked(self, now: float) -> None:
        if self._state is CircuitState.OPEN and self._opened_at is not None:
            if now - self._opened_at >= self.cooldown_seconds:
                self._state = CircuitState.HALF_OPEN
                self._probes_in_flight = 0
                logger.info("[RateLimit] %s circuit HALF_OPEN after %.0fs cooldown", self.name, self.cooldown_seconds)

    def _trip_locked(self, now: float, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probes_in_flight = 0
        logger.warning("[RateLimit] %s circuit OPEN: %s", self.name, reason)

    def _window_tripped_locked(self) -> bool:
        calls = len(self._window)
        if calls < self.min_window_calls:
            return False
        failures = sum(1 for _, ok in self._window if not ok)
        return failures / calls >= self.failure_rate_threshold

    # ------------------------------------------------------------------ public

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_locked(self._clock())
            return self._state

    def would_allow(self) -> bool:
        """Admission check that does not reserve a half-open probe slot."""
        with self._lock:
            self._refresh_locked(self._clock())
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN:
                return self._probes_in_flight < self.half_open_max_probes
            return False

    def allow_request(self) -> bool:
        with self._lock:
            self._refresh_locked(self._clock())
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN and self._probes_in_flight < self.half_open_max_probes:
                self._probes_in_flight += 1
                return True
            return False

    def release_probe(self) -> None:
        """Give back a probe slot for a request that was admitted but never sent."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and self._probes_in_flight > 0:
                self._probes_in_flight -= 1

    def record_success(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh_locked(now)
            self._prune_locked(now)
            self._window.append((now, True))
            self._consecutive_failures = 0
            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._opened_at = None
                self._probes_in_flight = 0
                self._window.clear()
                logger.info("[RateLimit] %s circuit CLOSED after successful probe", self.name)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh_locked(now)
            self._prune_locked(now)
            self._window.append((now, False))
            self._consecutive_failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._trip_locked(now, "probe failed")
            elif self._state is CircuitState.CLOSED:
                if self._consecutive_failures >= self.failure_threshold:
                    self._trip_locked(now, f"{self._consecutive_failures} consecutive failures")
                elif self._window_tripped_locked():
                    self._trip_locked(now, "failure rate over rolling window exceeded")

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._probes_in_flight = 0
            self._window.clear()
        logger.info("[RateLimit] %s circuit manually reset", self.name)

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            now = self._clock()
            self._refresh_locked(now)
            self._prune_locked(now)
            return CircuitSnapshot(
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                window_calls=len(self._window),
                window_failures=sum(1 for _, ok in self._window if not ok),
                opened_at=self._opened_at,
            )
