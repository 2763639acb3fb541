"""Per-provider admission control: token buckets, circuit breakers and usage counters."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from scholarlink.core.config import Settings, get_settings

from .circuit_breaker import CircuitBreaker, CircuitState
from .models import DiscoverySource
from .usage import APIUsageStats

logger = logging.getLogger(__name__)


class RateLimitError(Exception):
    """Raised when a request to a provider is refused before being sent."""

    def __init__(self, source: DiscoverySource, message: str):
        super().__init__(message)
        self.source = source


class RateLimitExceededError(RateLimitError):
    pass


class CircuitOpenError(RateLimitError):
    pass


@dataclass(frozen=True)
class RateLimitPolicy:
    requests_per_second: float
    burst: int


class TokenBucket:
    """Classic token bucket refilled continuously at ``rate`` tokens per second."""

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._rate = rate
        self._capacity = max(1, capacity)
        self._tokens = float(self._capacity)
        self._clock = clock
        self._updated = clock()
        self._lock = threading.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    def _refill_locked(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self._capacity), self._tokens + elapsed * self._rate)
        self._updated = now

    def available(self) -> float:
        with self._lock:
            self._refill_locked()
            return self._tokens

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill_locked()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def seconds_until_available(self) -> float:
        with self._lock:
            self._refill_locked()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._rate

    async def acquire(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for a token."""
        deadline = self._clock() + max(0.0, timeout)
        while True:
            if self.try_acquire():
                return True
            wait = self.seconds_until_available()
            if self._clock() + wait > deadline:
                return False
            await asyncio.sleep(wait)

    def update_rate(self, rate: float) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        with self._lock:
            self._refill_locked()
            self._rate = rate


class _UsageCounters:
    """Lock-protected running counters for one provider."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.total = 0
            self.successful = 0
            self.failed = 0
            self.rejected = 0
            self._response_time_total = 0.0
            self._response_time_samples = 0
            self.last_request_time: Optional[datetime] = None
            self._recent: Deque[float] = deque()

    def _mark_request_locked(self) -> None:
        now = self._clock()
        self.total += 1
        self.last_request_time = datetime.now(timezone.utc)
        self._recent.append(now)
        self._prune_locked(now)

    def _prune_locked(self, now: float) -> None:
        cutoff = now - 60.0
        while self._recent and self._recent[0] < cutoff:
            self._recent.popleft()

    def _add_response_time_locked(self, response_time_ms: Optional[float]) -> None:
        if response_time_ms is not None and response_time_ms >= 0:
            self._response_time_total += response_time_ms
            self._response_time_samples += 1

    def success(self, response_time_ms: Optional[float]) -> None:
        with self._lock:
            self._mark_request_locked()
            self.successful += 1
            self._add_response_time_locked(response_time_ms)

    def failure(self, response_time_ms: Optional[float]) -> None:
        with self._lock:
            self._mark_request_locked()
            self.failed += 1
            self._add_response_time_locked(response_time_ms)

    def rejection(self) -> None:
        with self._lock:
            self.rejected += 1

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            self._prune_locked(self._clock())
            average = (
                self._response_time_total / self._response_time_samples
                if self._response_time_samples else 0.0
            )
            return {
                "total": self.total,
                "successful": self.successful,
                "failed": self.failed,
                "rejected": self.rejected,
                "recent": len(self._recent),
                "average": average,
                "last": self.last_request_time,
            }


def _default_policies(settings: Settings) -> Dict[DiscoverySource, RateLimitPolicy]:
    return {
        DiscoverySource.CROSSREF: RateLimitPolicy(settings.CROSSREF_RATE_LIMIT_RPS, settings.CROSSREF_BURST),
        DiscoverySource.SEMANTIC_SCHOLAR: RateLimitPolicy(
            settings.SEMANTIC_SCHOLAR_RATE_LIMIT_RPS, settings.SEMANTIC_SCHOLAR_BURST
        ),
        DiscoverySource.PERPLEXITY: RateLimitPolicy(settings.PERPLEXITY_RATE_LIMIT_RPS, settings.PERPLEXITY_BURST),
    }


class APIRateLimitManager:
    """Shared per-source limiter instance used by every concurrent discovery request."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        policies: Optional[Dict[DiscoverySource, RateLimitPolicy]] = None,
        overflow_policy: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.overflow_policy = overflow_policy or self.settings.RATE_LIMIT_OVERFLOW_POLICY
        self._clock = clock
        resolved = _default_policies(self.settings)
        if policies:
            resolved.update(policies)

        self._buckets: Dict[DiscoverySource, TokenBucket] = {}
        self._breakers: Dict[DiscoverySource, CircuitBreaker] = {}
        self._usage: Dict[DiscoverySource, _UsageCounters] = {}
        for source, policy in resolved.items():
            self._buckets[source] = TokenBucket(policy.requests_per_second, policy.burst, clock=clock)
            self._breakers[source] = CircuitBreaker(
                source.value,
                failure_threshold=self.settings.CIRCUIT_FAILURE_THRESHOLD,
                failure_rate_threshold=self.settings.CIRCUIT_FAILURE_RATE_THRESHOLD,
                min_window_calls=self.settings.CIRCUIT_MIN_WINDOW_CALLS,
                window_seconds=self.settings.CIRCUIT_WINDOW_SECONDS,
                cooldown_seconds=self.settings.CIRCUIT_COOLDOWN_SECONDS,
                half_open_max_probes=self.settings.CIRCUIT_HALF_OPEN_MAX_PROBES,
                clock=clock,
            )
            self._usage[source] = _UsageCounters(clock)

    def circuit_breaker(self, source: DiscoverySource) -> CircuitBreaker:
        return self._breakers[source]

    def circuit_state(self, source: DiscoverySource) -> CircuitState:
        return self._breakers[source].state

    def can_execute_immediately(self, source: DiscoverySource) -> bool:
        """Non-reserving check: circuit admits and a token is available right now."""
        return self._breakers[source].would_allow() and self._buckets[source].available() >= 1.0

    def try_acquire(self, source: DiscoverySource) -> bool:
        breaker = self._breakers[source]
        if not breaker.allow_request():
            self._usage[source].rejection()
            logger.debug("[RateLimit] %s rejected: circuit %s", source.value, breaker.state.value)
            return False
        if not self._buckets[source].try_acquire():
            breaker.release_probe()
            self._usage[source].rejection()
            logger.debug("[RateLimit] %s rejected: request rate cap reached", source.value)
            return False
        return True

    async def acquire(self, source: DiscoverySource, timeout: Optional[float] = None) -> None:
        """Reserve permission for one request or raise a ``RateLimitError``.

        With the ``reject`` policy an exhausted bucket fails immediately; with
        ``queue`` the caller waits up to ``timeout`` (or the configured queue
        bound) for a token.
        """
        breaker = self._breakers[source]
        if not breaker.allow_request():
            self._usage[source].rejection()
            raise CircuitOpenError(source, f"{source.display_name} circuit breaker is {breaker.state.value}")

        bucket = self._buckets[source]
        if self.overflow_policy == "queue":
            wait = self.settings.RATE_LIMIT_QUEUE_TIMEOUT if timeout is None else timeout
            try:
                granted = await bucket.acquire(wait)
            except BaseException:
                breaker.release_probe()
                raise
        else:
            granted = bucket.try_acquire()

        if not granted:
            breaker.release_probe()
            self._usage[source].rejection()
            raise RateLimitExceededError(source, f"{source.display_name} request rate cap reached")

    def release(self, source: DiscoverySource) -> None:
        """Hand back a permit whose request was abandoned before an outcome was known."""
        self._breakers[source].release_probe()

    def record_success(self, source: DiscoverySource, response_time_ms: Optional[float] = None) -> None:
        self._usage[source].success(response_time_ms)
        self._breakers[source].record_success()

    def record_failure(
        self,
        source: DiscoverySource,
        response_time_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        self._usage[source].failure(response_time_ms)
        self._breakers[source].record_failure()
        if error:
            logger.debug("[RateLimit] %s failure recorded: %s", source.value, error)

    def get_usage_stats(self, source: DiscoverySource) -> APIUsageStats:
        counters = self._usage[source].snapshot()
        return APIUsageStats(
            source=source,
            total_requests=counters["total"],
            successful_requests=counters["successful"],
            failed_requests=counters["failed"],
            rejected_requests=counters["rejected"],
            circuit_state=self._breakers[source].state,
            requests_last_minute=counters["recent"],
            average_response_time_ms=counters["average"],
            rate_limit_rps=self._buckets[source].rate,
            last_request_time=counters["last"],
        )

    def get_all_usage_stats(self) -> Dict[DiscoverySource, APIUsageStats]:
        return {source: self.get_usage_stats(source) for source in self._usage}

    def update_rate_limit(self, source: DiscoverySource, requests_per_second: float) -> None:
        if requests_per_second <= 0:
            raise ValueError("Rate limit must be positive")
        self._buckets[source].update_rate(requests_per_second)
        logger.info("[RateLimit] %s rate limit updated to %.3f req/s", source.value, requests_per_second)

    def reset_circuit_breaker(self, source: DiscoverySource) -> None:
        self._breakers[source].reset()

    def reset_usage_stats(self, source: DiscoverySource) -> None:
        self._usage[source].reset()
        logger.info("[RateLimit] %s usage statistics reset by operator", source.value)
