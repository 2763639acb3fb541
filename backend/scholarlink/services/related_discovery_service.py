"""
Related Paper Discovery Service - entry point used by the application layer
"""

import logging
from typing import Dict, List, Optional

import aiohttp

from scholarlink.core.config import Settings, get_settings
from scholarlink.services.related_discovery.cache import InMemoryDiscoveryResultStore
from scholarlink.services.related_discovery.config import DiscoveryConfiguration
from scholarlink.services.related_discovery.coordinator import DiscoveryCoordinator
from scholarlink.services.related_discovery.interfaces import (
    DiscoveryResultStore,
    DiscoverySourceClient,
    RelevanceScorer,
)
from scholarlink.services.related_discovery.models import (
    DiscoverySource,
    RelatedPaperDiscoveryResult,
    SourcePaper,
)
from scholarlink.services.related_discovery.rankers import LlmRelevanceScorer
from scholarlink.services.related_discovery.rate_limiter import APIRateLimitManager
from scholarlink.services.related_discovery.sources import (
    CrossrefDiscoveryClient,
    PerplexityDiscoveryClient,
    SemanticScholarDiscoveryClient,
)
from scholarlink.services.related_discovery.synthesis import AISynthesisEngine

logger = logging.getLogger(__name__)


class RelatedPaperDiscoveryServiceFactory:
    """Factory for creating the discovery service"""

    @staticmethod
    async def create(
        settings: Optional[Settings] = None,
        rate_limiter: Optional[APIRateLimitManager] = None,
        result_store: Optional[DiscoveryResultStore] = None,
        scorer: Optional[RelevanceScorer] = None,
    ) -> "RelatedPaperDiscoveryService":
        """Create a configured discovery service with its own HTTP session"""
        settings = settings or get_settings()

        timeout = aiohttp.ClientTimeout(
            total=settings.DISCOVERY_HTTP_TIMEOUT * 4,
            connect=settings.DISCOVERY_HTTP_CONNECT_TIMEOUT,
        )
        connector = aiohttp.TCPConnector(
            limit=settings.DISCOVERY_HTTP_POOL_LIMIT,
            limit_per_host=settings.DISCOVERY_HTTP_POOL_LIMIT_PER_HOST,
        )
        session = aiohttp.ClientSession(timeout=timeout, connector=connector)

        # One limiter per process: every request shares the per-source state.
        rate_limiter = rate_limiter or APIRateLimitManager(settings)

        clients: List[DiscoverySourceClient] = [
            CrossrefDiscoveryClient(session, rate_limiter, settings),
            SemanticScholarDiscoveryClient(session, rate_limiter, settings),
            PerplexityDiscoveryClient(rate_limiter, settings),
        ]

        if scorer is None and settings.OPENAI_API_KEY:
            scorer = LlmRelevanceScorer(settings)
        elif scorer is None:
            logger.info("[Discovery] OPENAI_API_KEY not set; synthesis runs without model scoring")

        engine = AISynthesisEngine(scorer=scorer, settings=settings)
        coordinator = DiscoveryCoordinator(clients, engine, rate_limiter=rate_limiter, settings=settings)

        store = result_store or InMemoryDiscoveryResultStore(
            max_size=settings.DISCOVERY_CACHE_MAX_SIZE,
            ttl_seconds=settings.DISCOVERY_CACHE_TTL_SECONDS,
        )

        return RelatedPaperDiscoveryService(
            coordinator=coordinator,
            rate_limiter=rate_limiter,
            result_store=store,
            session=session,
            owns_session=True,
        )


class RelatedPaperDiscoveryService:
    """Discovery entry point: validation, stored-result lookup and coordination"""

    def __init__(
        self,
        coordinator: DiscoveryCoordinator,
        rate_limiter: APIRateLimitManager,
        result_store: Optional[DiscoveryResultStore] = None,
        session: Optional[aiohttp.ClientSession] = None,
        owns_session: bool = False,
    ):
        self.coordinator = coordinator
        self.rate_limiter = rate_limiter
        self.result_store = result_store
        self.session = session
        self._owns_session = owns_session

    async def discover_related_papers(
        self,
        paper: SourcePaper,
        config: Optional[DiscoveryConfiguration] = None,
        *,
        force_refresh: bool = False,
    ) -> RelatedPaperDiscoveryResult:
        """Discover papers related to ``paper``; always returns a result object"""
        config = config or DiscoveryConfiguration.default()

        issues = config.validate()
        if issues:
            logger.warning("[Discovery] rejected configuration for %s: %s", paper.id, "; ".join(issues))
            return RelatedPaperDiscoveryResult.partial(
                paper.id,
                [],
                [f"Invalid discovery configuration: {issue}" for issue in issues],
                configuration_summary=config.summary(),
            )

        if self.result_store is not None and not force_refresh:
            try:
                cached = await self.result_store.get(paper.id, config)
            except Exception as e:
                logger.warning(f"Discovery result lookup failed: {e}")
                cached = None
            if cached is not None:
                logger.info("[Discovery] using stored result for paper %s", paper.id)
                return cached

        result = await self.coordinator.coordinate_discovery(paper, config)

        if self.result_store is not None:
            try:
                await self.result_store.put(result, config)
            except Exception as e:
                logger.warning(f"Failed to store discovery result: {e}")
        return result

    async def invalidate(self, paper_id: str) -> None:
        if self.result_store is not None:
            await self.result_store.invalidate(paper_id)

    def health_report(self) -> Dict[str, Dict[str, object]]:
        report: Dict[str, Dict[str, object]] = {}
        for source, stats in self.rate_limiter.get_all_usage_stats().items():
            cost = stats.estimated_cost()
            report[source.value] = {
                "status": stats.status_description,
                "healthy": stats.is_healthy,
                "circuit_state": stats.circuit_state.value,
                "total_requests": stats.total_requests,
                "success_rate": round(stats.success_rate, 1),
                "requests_last_minute": stats.requests_last_minute,
                "average_response_time_ms": round(stats.average_response_time_ms, 1),
                "recommended_action": stats.recommended_action,
                "estimated_monthly_cost": round(cost.total_cost, 4),
                "cost_tier": cost.tier,
            }
        return report

    def usage_report(self, source: DiscoverySource) -> str:
        return self.rate_limiter.get_usage_stats(source).detailed_report()

    async def close(self):
        """Clean up resources"""
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
