"""
Fan-out/join behaviour of the discovery coordinator with fake sources.
"""

from __future__ import annotations

import asyncio
import time
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from scholarlink.services.related_discovery.config import DiscoveryConfiguration
from scholarlink.services.related_discovery.coordinator import DiscoveryCoordinator
from scholarlink.services.related_discovery.interfaces import DiscoverySourceClient
from scholarlink.services.related_discovery.models import (
    DiscoveredPaper,
    DiscoverySource,
    RelationshipType,
    SourcePaper,
)
from scholarlink.services.related_discovery.rate_limiter import APIRateLimitManager
from scholarlink.services.related_discovery.sources import CrossrefDiscoveryClient, SemanticScholarDiscoveryClient
from scholarlink.services.related_discovery.synthesis import AISynthesisEngine


SOURCE = SourcePaper(id="paper-1", title="Deep Residual Learning for Image Recognition", doi="10.1109/CVPR.2016.90")

BOTH = frozenset({DiscoverySource.CROSSREF, DiscoverySource.SEMANTIC_SCHOLAR})


def _paper(title: str, source: DiscoverySource, *, doi: str | None = None, relevance: float = 0.6) -> DiscoveredPaper:
    return DiscoveredPaper(
        title=title,
        source=source,
        authors=("K. He",),
        doi=doi,
        relevance_score=relevance,
        relationship_type=RelationshipType.SEMANTIC_SIMILARITY,
    )


class _StaticClient(DiscoverySourceClient):
    def __init__(self, source: DiscoverySource, papers: List[DiscoveredPaper], delay: float = 0.0):
        self._source = source
        self._papers = papers
        self._delay = delay
        self.calls = 0

    @property
    def source(self) -> DiscoverySource:
        return self._source

    async def discover(self, paper, config) -> List[DiscoveredPaper]:
        _ = (paper, config)
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        return list(self._papers)


class _FailingClient(DiscoverySourceClient):
    def __init__(self, source: DiscoverySource):
        self._source = source

    @property
    def source(self) -> DiscoverySource:
        return self._source

    async def discover(self, paper, config):
        raise RuntimeError("service unavailable")


class _ConcurrencyTracker:
    def __init__(self):
        self.active = 0
        self.peak = 0


class _TrackedClient(_StaticClient):
    def __init__(self, source: DiscoverySource, tracker: _ConcurrencyTracker):
        super().__init__(source, [_paper(f"Tracked result from {source.value}", source, doi=f"10.1/{source.value}")])
        self.tracker = tracker

    async def discover(self, paper, config):
        self.tracker.active += 1
        self.tracker.peak = max(self.tracker.peak, self.tracker.active)
        try:
            await asyncio.sleep(0.05)
            return list(self._papers)
        finally:
            self.tracker.active -= 1


def _coordinator(settings, clients, rate_limiter=None, engine=None) -> DiscoveryCoordinator:
    return DiscoveryCoordinator(
        clients,
        engine or AISynthesisEngine(settings=settings),
        rate_limiter=rate_limiter,
        settings=settings,
    )


@pytest.mark.asyncio
async def test_failed_source_degrades_gracefully(settings):
    crossref = _StaticClient(
        DiscoverySource.CROSSREF,
        [
            _paper("Identity mappings in deep residual networks", DiscoverySource.CROSSREF, doi="10.1/a"),
            _paper("Wide residual networks for vision", DiscoverySource.CROSSREF, doi="10.1/b"),
        ],
    )
    coordinator = _coordinator(settings, [crossref, _FailingClient(DiscoverySource.SEMANTIC_SCHOLAR)])

    result = await coordinator.coordinate_discovery(SOURCE, DiscoveryConfiguration(enabled_sources=BOTH))

    assert result.total_papers == 2
    assert not result.requires_user_review
    assert result.errors == ()
    assert "Semantic Scholar: service unavailable" in result.warnings
    assert result.statistics["raw_crossref"] == 2
    assert result.statistics["raw_semantic_scholar"] == 0


@pytest.mark.asyncio
async def test_all_sources_failing_returns_partial(settings):
    coordinator = _coordinator(
        settings,
        [_FailingClient(DiscoverySource.CROSSREF), _FailingClient(DiscoverySource.SEMANTIC_SCHOLAR)],
    )

    result = await coordinator.coordinate_discovery(SOURCE, DiscoveryConfiguration(enabled_sources=BOTH))

    assert result.requires_user_review
    assert result.total_papers == 0
    assert result.confidence_score == 0.0
    assert result.errors == ("All discovery sources failed",)
    assert len(result.warnings) == 2


@pytest.mark.asyncio
async def test_sources_with_no_results_are_not_failures(settings):
    coordinator = _coordinator(
        settings,
        [_StaticClient(DiscoverySource.CROSSREF, []), _StaticClient(DiscoverySource.SEMANTIC_SCHOLAR, [])],
    )

    result = await coordinator.coordinate_discovery(SOURCE, DiscoveryConfiguration(enabled_sources=BOTH))

    assert result.total_papers == 0
    assert not result.requires_user_review
    assert result.warnings == ()


@pytest.mark.asyncio
async def test_overall_timeout_returns_what_arrived(settings):
    fast = _StaticClient(
        DiscoverySource.CROSSREF,
        [_paper("Fast arriving related paper", DiscoverySource.CROSSREF, doi="10.1/fast")],
    )
    slow = _StaticClient(
        DiscoverySource.SEMANTIC_SCHOLAR,
        [_paper("Too late to be included", DiscoverySource.SEMANTIC_SCHOLAR, doi="10.1/slow")],
        delay=10,
    )
    config = DiscoveryConfiguration(enabled_sources=BOTH, timeout_seconds=0.2, min_source_timeout_seconds=5)
    coordinator = _coordinator(settings, [fast, slow])

    started = time.monotonic()
    result = await coordinator.coordinate_discovery(SOURCE, config)

    assert time.monotonic() - started < 1.0
    assert [p.doi for p in result.discovered_papers] == ["10.1/fast"]
    assert "Semantic Scholar: no response within overall timeout" in result.warnings


@pytest.mark.asyncio
async def test_per_source_timeout(settings):
    fast = _StaticClient(
        DiscoverySource.CROSSREF,
        [_paper("Fast arriving related paper", DiscoverySource.CROSSREF, doi="10.1/fast")],
    )
    slow = _StaticClient(DiscoverySource.SEMANTIC_SCHOLAR, [], delay=10)
    config = DiscoveryConfiguration(enabled_sources=BOTH, timeout_seconds=0.2, min_source_timeout_seconds=0.1)

    started = time.monotonic()
    result = await _coordinator(settings, [fast, slow]).coordinate_discovery(SOURCE, config)

    assert time.monotonic() - started < 1.0
    assert result.total_papers == 1
    assert any(w.startswith("Semantic Scholar: timed out") for w in result.warnings)


@pytest.mark.asyncio
async def test_without_synthesis_concatenates_filters_and_caps(settings):
    crossref = _StaticClient(
        DiscoverySource.CROSSREF,
        [
            _paper("Crossref kept result one", DiscoverySource.CROSSREF, doi="10.1/a", relevance=0.4),
            _paper("Crossref dropped result", DiscoverySource.CROSSREF, doi="10.1/low", relevance=0.1),
        ],
    )
    scholar = _StaticClient(
        DiscoverySource.SEMANTIC_SCHOLAR,
        [
            _paper("Crossref kept result one", DiscoverySource.SEMANTIC_SCHOLAR, doi="10.1/a", relevance=0.9),
            _paper("Scholar result two here", DiscoverySource.SEMANTIC_SCHOLAR, doi="10.1/c", relevance=0.9),
        ],
    )
    config = DiscoveryConfiguration(enabled_sources=BOTH, enable_ai_synthesis=False, max_total_papers=2)

    result = await _coordinator(settings, [crossref, scholar]).coordinate_discovery(SOURCE, config)

    assert not result.used_ai_synthesis
    assert [(p.source, p.doi) for p in result.discovered_papers] == [
        (DiscoverySource.CROSSREF, "10.1/a"),
        (DiscoverySource.SEMANTIC_SCHOLAR, "10.1/a"),
    ]
    assert result.statistics["original_total"] == 4


@pytest.mark.asyncio
async def test_synthesis_caps_total(settings):
    papers = [
        _paper(f"Candidate related paper {i:02d}", DiscoverySource.CROSSREF, doi=f"10.1/{i}")
        for i in range(40)
    ]
    config = DiscoveryConfiguration(enabled_sources=frozenset({DiscoverySource.CROSSREF}), max_total_papers=15)

    result = await _coordinator(
        settings, [_StaticClient(DiscoverySource.CROSSREF, papers)]
    ).coordinate_discovery(SOURCE, config)

    assert result.total_papers == 15
    assert result.statistics["raw_crossref"] == 40
    assert result.statistics["original_total"] == 40


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_partial_result(settings):
    engine = MagicMock()
    engine.synthesize_results = AsyncMock(side_effect=RuntimeError("boom"))
    crossref = _StaticClient(
        DiscoverySource.CROSSREF,
        [_paper("Result that reaches synthesis", DiscoverySource.CROSSREF, doi="10.1/a")],
    )
    config = DiscoveryConfiguration(enabled_sources=frozenset({DiscoverySource.CROSSREF}))

    result = await _coordinator(settings, [crossref], engine=engine).coordinate_discovery(SOURCE, config)

    assert result.requires_user_review
    assert result.errors == ("Discovery coordination failed: boom",)


@pytest.mark.asyncio
async def test_sequential_execution_runs_one_source_at_a_time(settings):
    tracker = _ConcurrencyTracker()
    clients = [_TrackedClient(source, tracker) for source in DiscoverySource]
    config = DiscoveryConfiguration(enabled_sources=frozenset(DiscoverySource), parallel_execution=False)

    result = await _coordinator(settings, clients).coordinate_discovery(SOURCE, config)

    assert tracker.peak == 1
    assert result.total_papers == 3


@pytest.mark.asyncio
async def test_parallel_execution_overlaps_sources(settings):
    tracker = _ConcurrencyTracker()
    clients = [_TrackedClient(source, tracker) for source in DiscoverySource]
    config = DiscoveryConfiguration(enabled_sources=frozenset(DiscoverySource))

    await _coordinator(settings, clients).coordinate_discovery(SOURCE, config)

    assert tracker.peak == 3


@pytest.mark.asyncio
async def test_open_circuit_and_missing_client_are_skipped(settings, clock):
    limiter = APIRateLimitManager(settings, clock=clock)
    for _ in range(settings.CIRCUIT_FAILURE_THRESHOLD):
        limiter.record_failure(DiscoverySource.CROSSREF)
    crossref = _StaticClient(DiscoverySource.CROSSREF, [])
    scholar = _StaticClient(
        DiscoverySource.SEMANTIC_SCHOLAR,
        [_paper("Scholar only related paper", DiscoverySource.SEMANTIC_SCHOLAR, doi="10.1/s")],
    )
    config = DiscoveryConfiguration(enabled_sources=frozenset(DiscoverySource))

    result = await _coordinator(settings, [crossref, scholar], rate_limiter=limiter).coordinate_discovery(
        SOURCE, config
    )

    assert crossref.calls == 0
    assert result.total_papers == 1
    assert "Crossref: circuit breaker open, source skipped" in result.warnings
    assert "Perplexity: no client configured" in result.warnings


class _UnavailableResponse:
    status = 500

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return "Internal Server Error"


class _UnavailableSession:
    """aiohttp stand-in whose every GET answers 500."""

    def __init__(self):
        self.calls = 0

    def get(self, url, params=None, headers=None, timeout=None):
        _ = (url, params, headers, timeout)
        self.calls += 1
        return _UnavailableResponse()


@pytest.mark.asyncio
async def test_provider_outage_reported_through_real_clients(settings):
    limiter = APIRateLimitManager(settings)
    session = _UnavailableSession()
    clients = [
        CrossrefDiscoveryClient(session, limiter, settings=settings),
        SemanticScholarDiscoveryClient(session, limiter, settings=settings),
    ]

    result = await _coordinator(settings, clients, rate_limiter=limiter).coordinate_discovery(
        SOURCE, DiscoveryConfiguration.default()
    )

    crossref_failed = limiter.get_usage_stats(DiscoverySource.CROSSREF).failed_requests
    scholar_failed = limiter.get_usage_stats(DiscoverySource.SEMANTIC_SCHOLAR).failed_requests
    assert session.calls == crossref_failed + scholar_failed
    assert crossref_failed > 0 and scholar_failed > 0
    assert result.requires_user_review
    assert result.errors == ("All discovery sources failed",)
    assert f"Crossref: all {crossref_failed} provider requests failed" in result.warnings
    assert f"Semantic Scholar: all {scholar_failed} provider requests failed" in result.warnings


class _RecordingClient(_StaticClient):
    """Returns its papers but reports provider failures to the limiter first."""

    def __init__(self, source, papers, limiter, failures):
        super().__init__(source, papers)
        self.limiter = limiter
        self.failures = failures

    async def discover(self, paper, config):
        for _ in range(self.failures):
            self.limiter.record_failure(self.source, 5.0, "HTTP 503")
        self.limiter.record_success(self.source, 5.0)
        return await super().discover(paper, config)


@pytest.mark.asyncio
async def test_partial_provider_failures_are_warnings(settings):
    limiter = APIRateLimitManager(settings)
    crossref = _RecordingClient(
        DiscoverySource.CROSSREF,
        [_paper("Result from the surviving strategy", DiscoverySource.CROSSREF, doi="10.1/ok")],
        limiter,
        failures=2,
    )
    config = DiscoveryConfiguration(enabled_sources=frozenset({DiscoverySource.CROSSREF}))

    result = await _coordinator(settings, [crossref], rate_limiter=limiter).coordinate_discovery(SOURCE, config)

    assert result.total_papers == 1
    assert not result.requires_user_review
    assert result.errors == ()
    assert "Crossref: 2 provider requests failed" in result.warnings
