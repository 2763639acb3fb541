"""Fan-out/join orchestration across discovery sources."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from scholarlink.core.config import Settings, get_settings

from .circuit_breaker import CircuitState
from .config import DiscoveryConfiguration
from .interfaces import DiscoverySourceClient
from .models import DiscoveredPaper, DiscoverySource, RelatedPaperDiscoveryResult, SourcePaper
from .rate_limiter import APIRateLimitManager
from .synthesis import AISynthesisEngine
from .usage import APIUsageStats

logger = logging.getLogger(__name__)


# (source, papers, error counted as a source failure, warning only)
SourceOutcome = Tuple[DiscoverySource, List[DiscoveredPaper], Optional[str], Optional[str]]


class DiscoveryCoordinator:
    """Runs every enabled source concurrently and hands the union to synthesis.

    Each source runs in its own task bounded by the per-source timeout; the
    join is bounded by the configuration's overall timeout. Whatever has
    arrived when the overall timeout fires is used and the stragglers are
    cancelled. Nothing raised below this class reaches the caller.
    """

    def __init__(
        self,
        clients: Sequence[DiscoverySourceClient],
        synthesis_engine: AISynthesisEngine,
        rate_limiter: Optional[APIRateLimitManager] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clients: Dict[DiscoverySource, DiscoverySourceClient] = {c.source: c for c in clients}
        self.synthesis_engine = synthesis_engine
        self.rate_limiter = rate_limiter
        self._pool = asyncio.Semaphore(max(1, self.settings.DISCOVERY_MAX_CONCURRENT_SOURCES))

    def source_health(self) -> Dict[DiscoverySource, APIUsageStats]:
        if self.rate_limiter is None:
            return {}
        return self.rate_limiter.get_all_usage_stats()

    def _request_counts(self, source: DiscoverySource) -> Tuple[int, int]:
        if self.rate_limiter is None:
            return 0, 0
        stats = self.rate_limiter.get_usage_stats(source)
        return stats.failed_requests, stats.successful_requests

    def _request_delta(self, source: DiscoverySource, before: Tuple[int, int]) -> Tuple[int, int]:
        """Failed and successful provider requests recorded since ``before``."""
        failed, succeeded = self._request_counts(source)
        return max(0, failed - before[0]), max(0, succeeded - before[1])

    def _select_clients(self, config: DiscoveryConfiguration, warnings: List[str]) -> List[DiscoverySourceClient]:
        active: List[DiscoverySourceClient] = []
        for source in DiscoverySource:
            if not config.is_source_enabled(source):
                continue
            client = self.clients.get(source)
            if client is None:
                warnings.append(f"{source.display_name}: no client configured")
                continue
            if self.rate_limiter is not None:
                stats = self.rate_limiter.get_usage_stats(source)
                if stats.circuit_state is CircuitState.OPEN:
                    warnings.append(f"{source.display_name}: circuit breaker open, source skipped")
                    continue
                if stats.has_issues:
                    logger.warning("[Discovery] %s degraded: %s", source.value, stats.status_description)
            active.append(client)
        return active

    async def coordinate_discovery(
        self,
        paper: SourcePaper,
        config: DiscoveryConfiguration,
    ) -> RelatedPaperDiscoveryResult:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            warnings: List[str] = []
            active = self._select_clients(config, warnings)
            if not config.enabled_sources:
                warnings.append("No discovery sources enabled")

            per_source_timeout = config.per_source_timeout()
            gate = self._pool if config.parallel_execution else asyncio.Semaphore(1)
            logger.info(
                "[Discovery] START paper=%s sources=%s per_source_timeout=%.0fs overall_timeout=%.0fs",
                paper.id, [c.source.value for c in active], per_source_timeout, config.timeout_seconds,
            )

            async def run_source(client: DiscoverySourceClient) -> SourceOutcome:
                source = client.source
                source_start = time.monotonic()
                async with gate:
                    before = self._request_counts(source)
                    try:
                        papers = await asyncio.wait_for(client.discover(paper, config), timeout=per_source_timeout)
                        papers = list(papers or [])
                    except asyncio.TimeoutError:
                        logger.warning("[Discovery] %s timed out after %.0fs", source.value, per_source_timeout)
                        return source, [], f"{source.display_name}: timed out after {per_source_timeout:.0f}s", None
                    except Exception as exc:
                        logger.warning("[Discovery] %s failed: %s", source.value, exc)
                        return source, [], f"{source.display_name}: {str(exc)[:200]}", None

                elapsed_ms = int((time.monotonic() - source_start) * 1000)
                logger.debug("[Discovery] %s returned %d papers in %dms", source.value, len(papers), elapsed_ms)
                # Provider errors are swallowed by the clients but still counted by the limiter.
                failed, succeeded = self._request_delta(source, before)
                if failed and not succeeded and not papers:
                    logger.warning("[Discovery] %s: all %d provider requests failed", source.value, failed)
                    return source, [], f"{source.display_name}: all {failed} provider requests failed", None
                note = f"{source.display_name}: {failed} provider requests failed" if failed else None
                return source, papers, None, note

            tasks = {asyncio.create_task(run_source(client)): client.source for client in active}
            raw: Dict[DiscoverySource, List[DiscoveredPaper]] = {}
            failures: List[str] = []
            if tasks:
                done, pending = await asyncio.wait(tasks, timeout=config.timeout_seconds)
                for task in pending:
                    task.cancel()
                    source = tasks[task]
                    logger.warning("[Discovery] %s still running at overall timeout; cancelled", source.value)
                    failures.append(f"{source.display_name}: no response within overall timeout")
                for task in done:
                    source, papers, error, note = task.result()
                    raw[source] = papers
                    if error:
                        failures.append(error)
                    elif note:
                        warnings.append(note)
            warnings.extend(failures)

            raw_stats = {f"raw_{s.value}": len(raw.get(s, [])) for s in DiscoverySource if config.is_source_enabled(s)}
            combined = [p for s in DiscoverySource for p in raw.get(s, [])]

            if active and not combined and len(failures) == len(active):
                result = RelatedPaperDiscoveryResult.partial(
                    paper.id,
                    [],
                    ["All discovery sources failed"],
                    started_at=started_at,
                    configuration_summary=config.summary(),
                )
            elif config.enable_ai_synthesis and combined:
                result = await self.synthesis_engine.synthesize_results(
                    paper, combined, config, started_at=started_at
                )
            else:
                result = self._concatenate(paper, combined, config, started_at)

            result = result.with_context(warnings=warnings, statistics=raw_stats)
            logger.info(
                "[Discovery] COMPLETE paper=%s raw=%d returned=%d confidence=%.2f review=%s elapsed=%dms",
                paper.id,
                len(combined),
                result.total_papers,
                result.confidence_score,
                result.requires_user_review,
                int((time.monotonic() - started) * 1000),
            )
            return result
        except Exception as exc:
            logger.error("[Discovery] coordination failed for paper %s: %s", paper.id, exc, exc_info=True)
            return RelatedPaperDiscoveryResult.partial(
                paper.id,
                [],
                [f"Discovery coordination failed: {exc}"],
                started_at=started_at,
            )

    @staticmethod
    def _concatenate(
        paper: SourcePaper,
        combined: List[DiscoveredPaper],
        config: DiscoveryConfiguration,
        started_at: datetime,
    ) -> RelatedPaperDiscoveryResult:
        """Fallback without synthesis: keep source order, apply the floor and the cap only."""
        kept = [p for p in combined if p.relevance_score >= config.minimum_relevance_score]
        return RelatedPaperDiscoveryResult.success(
            paper.id,
            kept[:config.effective_max_total_papers],
            started_at=started_at,
            statistics={"original_total": len(combined)},
            configuration_summary=config.summary(),
        )
