"""
Admission control: circuit breaker state machine, token buckets and the
per-source rate limit manager.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from scholarlink.services.related_discovery.circuit_breaker import CircuitBreaker, CircuitState
from scholarlink.services.related_discovery.models import DiscoverySource
from scholarlink.services.related_discovery.rate_limiter import (
    APIRateLimitManager,
    CircuitOpenError,
    RateLimitExceededError,
    RateLimitPolicy,
    TokenBucket,
)


def _breaker(clock, **overrides) -> CircuitBreaker:
    options = dict(
        failure_threshold=5,
        failure_rate_threshold=0.5,
        min_window_calls=100,
        window_seconds=60.0,
        cooldown_seconds=60.0,
        half_open_max_probes=1,
        clock=clock,
    )
    options.update(overrides)
    return CircuitBreaker("crossref", **options)


class TestCircuitBreaker:
    def test_trips_after_consecutive_failures_and_recovers(self, clock):
        breaker = _breaker(clock)
        for _ in range(4):
            breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow_request()

        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert not breaker.allow_request()

        clock.advance(59)
        assert breaker.state is CircuitState.OPEN
        assert not breaker.allow_request()

        clock.advance(1)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request()
        assert not breaker.allow_request()

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow_request()

    def test_success_resets_consecutive_count(self, clock):
        breaker = _breaker(clock)
        for _ in range(4):
            breaker.record_failure()
        breaker.record_success()
        for _ in range(4):
            breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot().consecutive_failures == 4

    def test_failed_probe_reopens(self, clock):
        breaker = _breaker(clock)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(60)
        assert breaker.allow_request()
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

        clock.advance(30)
        assert breaker.state is CircuitState.OPEN
        clock.advance(30)
        assert breaker.state is CircuitState.HALF_OPEN

    def test_failure_rate_over_window_trips(self, clock):
        breaker = _breaker(clock, failure_threshold=100, min_window_calls=10)
        for _ in range(4):
            breaker.record_success()
            breaker.record_failure()
        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN

    def test_old_outcomes_leave_the_window(self, clock):
        breaker = _breaker(clock, failure_threshold=100, min_window_calls=4)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(61)
        for _ in range(3):
            breaker.record_success()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot().window_calls == 4

    def test_release_probe_frees_slot(self, clock):
        breaker = _breaker(clock)
        for _ in range(5):
            breaker.record_failure()
        clock.advance(60)
        assert breaker.allow_request()
        assert not breaker.would_allow()
        breaker.release_probe()
        assert breaker.would_allow()
        assert breaker.allow_request()

    def test_reset(self, clock):
        breaker = _breaker(clock)
        for _ in range(5):
            breaker.record_failure()
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.snapshot().window_calls == 0


class TestTokenBucket:
    def test_burst_then_refill(self, clock):
        bucket = TokenBucket(rate=2.0, capacity=2, clock=clock)
        assert bucket.try_acquire()
        assert bucket.try_acquire()
        assert not bucket.try_acquire()
        assert bucket.seconds_until_available() == pytest.approx(0.5)
        clock.advance(0.5)
        assert bucket.try_acquire()

    def test_never_exceeds_capacity(self, clock):
        bucket = TokenBucket(rate=10.0, capacity=3, clock=clock)
        clock.advance(100)
        assert bucket.available() == pytest.approx(3.0)

    def test_rejects_non_positive_rate(self, clock):
        with pytest.raises(ValueError):
            TokenBucket(rate=0, capacity=1, clock=clock)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_token(self):
        bucket = TokenBucket(rate=20.0, capacity=1)
        assert bucket.try_acquire()
        started = time.monotonic()
        assert await bucket.acquire(timeout=1.0)
        assert time.monotonic() - started < 1.0


def _manager(settings, clock, **kwargs) -> APIRateLimitManager:
    policies = {
        DiscoverySource.CROSSREF: RateLimitPolicy(1.0, 1),
        DiscoverySource.SEMANTIC_SCHOLAR: RateLimitPolicy(100.0, 100),
        DiscoverySource.PERPLEXITY: RateLimitPolicy(100.0, 100),
    }
    return APIRateLimitManager(settings, policies=policies, clock=clock, **kwargs)


class TestAPIRateLimitManager:
    @pytest.mark.asyncio
    async def test_reject_policy_raises_when_bucket_empty(self, settings, clock):
        manager = _manager(settings, clock)
        await manager.acquire(DiscoverySource.CROSSREF)
        with pytest.raises(RateLimitExceededError):
            await manager.acquire(DiscoverySource.CROSSREF)
        assert manager.get_usage_stats(DiscoverySource.CROSSREF).rejected_requests == 1

        clock.advance(1.0)
        await manager.acquire(DiscoverySource.CROSSREF)

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_before_bucket(self, settings, clock):
        manager = _manager(settings, clock)
        for _ in range(5):
            manager.record_failure(DiscoverySource.SEMANTIC_SCHOLAR, 10.0, "HTTP 500")
        assert manager.circuit_state(DiscoverySource.SEMANTIC_SCHOLAR) is CircuitState.OPEN
        assert not manager.can_execute_immediately(DiscoverySource.SEMANTIC_SCHOLAR)
        with pytest.raises(CircuitOpenError):
            await manager.acquire(DiscoverySource.SEMANTIC_SCHOLAR)
        assert manager.circuit_state(DiscoverySource.CROSSREF) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_probe_released_on_abandon(self, settings, clock):
        manager = _manager(settings, clock)
        source = DiscoverySource.PERPLEXITY
        for _ in range(5):
            manager.record_failure(source)
        clock.advance(60)

        await manager.acquire(source)
        with pytest.raises(CircuitOpenError):
            await manager.acquire(source)
        manager.release(source)
        await manager.acquire(source)
        manager.record_success(source, 50.0)
        assert manager.circuit_state(source) is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_queue_policy_waits_for_token(self, settings):
        manager = APIRateLimitManager(
            settings,
            policies={DiscoverySource.CROSSREF: RateLimitPolicy(20.0, 1)},
            overflow_policy="queue",
        )
        await manager.acquire(DiscoverySource.CROSSREF)
        await manager.acquire(DiscoverySource.CROSSREF, timeout=1.0)
        assert manager.get_usage_stats(DiscoverySource.CROSSREF).rejected_requests == 0

    @pytest.mark.asyncio
    async def test_queue_policy_gives_up_after_timeout(self, settings, clock):
        manager = _manager(settings, clock, overflow_policy="queue")
        await manager.acquire(DiscoverySource.CROSSREF)
        with pytest.raises(RateLimitExceededError):
            await manager.acquire(DiscoverySource.CROSSREF, timeout=0.0)

    def test_try_acquire_is_non_raising(self, settings, clock):
        manager = _manager(settings, clock)
        assert manager.can_execute_immediately(DiscoverySource.CROSSREF)
        assert manager.try_acquire(DiscoverySource.CROSSREF)
        assert not manager.try_acquire(DiscoverySource.CROSSREF)
        assert not manager.can_execute_immediately(DiscoverySource.CROSSREF)

    def test_usage_counters(self, settings, clock):
        manager = _manager(settings, clock)
        manager.record_success(DiscoverySource.CROSSREF, 100.0)
        manager.record_failure(DiscoverySource.CROSSREF, 300.0, "timeout")
        stats = manager.get_usage_stats(DiscoverySource.CROSSREF)
        assert stats.total_requests == 2
        assert stats.successful_requests == 1
        assert stats.failed_requests == 1
        assert stats.success_rate == pytest.approx(50.0)
        assert stats.average_response_time_ms == pytest.approx(200.0)
        assert stats.requests_last_minute == 2
        assert stats.last_request_time is not None

        clock.advance(61)
        assert manager.get_usage_stats(DiscoverySource.CROSSREF).requests_last_minute == 0

        manager.reset_usage_stats(DiscoverySource.CROSSREF)
        assert manager.get_usage_stats(DiscoverySource.CROSSREF).total_requests == 0

    def test_counters_stay_exact_under_threads(self, settings, clock):
        manager = _manager(settings, clock)
        source = DiscoverySource.SEMANTIC_SCHOLAR

        def worker(_):
            granted = 0
            for i in range(500):
                if manager.try_acquire(source):
                    granted += 1
                if i % 2:
                    manager.record_failure(source, 10.0, "HTTP 503")
                else:
                    manager.record_success(source, 10.0)
            return granted

        with ThreadPoolExecutor(max_workers=8) as pool:
            granted = sum(pool.map(worker, range(8)))

        stats = manager.get_usage_stats(source)
        assert stats.total_requests == stats.successful_requests + stats.failed_requests == 8 * 500
        assert stats.successful_requests == stats.failed_requests == 8 * 250
        assert granted + stats.rejected_requests == 8 * 500
        # Frozen clock: no refill beyond the initial burst.
        assert granted <= 100

    def test_half_open_admits_only_configured_requests_under_threads(self, settings, clock):
        manager = _manager(settings.model_copy(update={"CIRCUIT_HALF_OPEN_MAX_PROBES": 3}), clock)
        source = DiscoverySource.PERPLEXITY
        for _ in range(settings.CIRCUIT_FAILURE_THRESHOLD):
            manager.record_failure(source)
        clock.advance(settings.CIRCUIT_COOLDOWN_SECONDS + 1)
        assert manager.circuit_state(source) is CircuitState.HALF_OPEN

        def worker(_):
            return sum(1 for _ in range(500) if manager.try_acquire(source))

        with ThreadPoolExecutor(max_workers=8) as pool:
            granted = sum(pool.map(worker, range(8)))

        assert granted == 3
        stats = manager.get_usage_stats(source)
        assert stats.rejected_requests == 8 * 500 - 3
        assert stats.circuit_state is CircuitState.HALF_OPEN

    def test_fresh_source_reports_healthy(self, settings, clock):
        stats = _manager(settings, clock).get_usage_stats(DiscoverySource.SEMANTIC_SCHOLAR)
        assert stats.success_rate == 100.0
        assert stats.is_healthy
        assert stats.status_description == "Healthy - Operating normally"
        assert stats.recommended_action == "Continue current usage pattern"

    def test_open_circuit_reported(self, settings, clock):
        manager = _manager(settings, clock)
        for _ in range(5):
            manager.record_failure(DiscoverySource.CROSSREF)
        stats = manager.get_usage_stats(DiscoverySource.CROSSREF)
        assert stats.has_issues
        assert stats.status_description == "Unhealthy - Circuit breaker OPEN"
        assert "circuit breaker" in stats.recommended_action
        assert "Circuit Breaker: OPEN" in stats.detailed_report()

        manager.reset_circuit_breaker(DiscoverySource.CROSSREF)
        assert manager.circuit_state(DiscoverySource.CROSSREF) is CircuitState.CLOSED

    def test_update_rate_limit(self, settings, clock):
        manager = _manager(settings, clock)
        manager.update_rate_limit(DiscoverySource.CROSSREF, 5.0)
        assert manager.get_usage_stats(DiscoverySource.CROSSREF).rate_limit_rps == 5.0
        with pytest.raises(ValueError):
            manager.update_rate_limit(DiscoverySource.CROSSREF, 0)
        with pytest.raises(ValueError):
            manager.update_rate_limit(DiscoverySource.CROSSREF, -1.0)
