"""Deduplicate, enrich, filter and rank multi-source discovery results."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from scholarlink.core.config import Settings, get_settings

from .config import DiscoveryConfiguration
from .interfaces import RelevanceScorer
from .models import DiscoveredPaper, RelatedPaperDiscoveryResult, SourcePaper
from .rankers import CompositeRanker

logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 10


def _preference(paper: DiscoveredPaper) -> Tuple:
    """Total order used to pick the surviving record among duplicates.

    Higher relevance wins, then richer metadata, then the more reliable
    source; the trailing content fields make the order total so the winner
    never depends on input order.
    """
    return (
        paper.relevance_score,
        paper.completeness,
        paper.source.reliability_weight,
        paper.title,
        paper.doi or "",
        paper.url or "",
        paper.source.value,
        paper.relationship_type.value,
        paper.external_id or "",
        paper.year or 0,
        paper.citation_count or 0,
        paper.authors,
        paper.journal or "",
        paper.abstract or "",
    )


def _relationship_preference(paper: DiscoveredPaper) -> Tuple:
    return (paper.relationship_type.importance_weight, paper.relationship_type.value, _preference(paper))


def deduplicate_papers(papers: Iterable[DiscoveredPaper]) -> List[DiscoveredPaper]:
    """Collapse records sharing an identity key into one.

    The surviving record is the preferred one of its group and carries the
    most important relationship type seen for that key. The result is sorted
    by identity key, so any permutation of the same input yields the same
    list.
    """
    groups: Dict[str, List[DiscoveredPaper]] = {}
    for paper in papers:
        groups.setdefault(paper.get_unique_key(), []).append(paper)

    merged: List[DiscoveredPaper] = []
    for key in sorted(groups):
        group = groups[key]
        winner = max(group, key=_preference)
        strongest = max(group, key=_relationship_preference)
        if strongest.relationship_type is not winner.relationship_type:
            winner = dataclasses.replace(
                winner,
                relationship_type=strongest.relationship_type,
                relationship_description=strongest.relationship_description,
            )
        merged.append(winner)
    return merged


def filter_papers(papers: Iterable[DiscoveredPaper], minimum_relevance: float) -> List[DiscoveredPaper]:
    return [
        p for p in papers
        if len(p.title.strip()) >= MIN_TITLE_LENGTH and p.relevance_score >= minimum_relevance
    ]


class AISynthesisEngine:
    """Turns raw multi-source candidates into a bounded, ranked list."""

    def __init__(
        self,
        scorer: Optional[RelevanceScorer] = None,
        settings: Optional[Settings] = None,
        ranker: Optional[CompositeRanker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.scorer = scorer
        self.ranker = ranker or CompositeRanker()
        self.batch_size = max(1, self.settings.SYNTHESIS_BATCH_SIZE)
        self.batch_timeout = self.settings.SYNTHESIS_BATCH_TIMEOUT
        self.max_concurrent_batches = max(1, self.settings.SYNTHESIS_MAX_CONCURRENT_BATCHES)

    async def synthesize_results(
        self,
        paper: SourcePaper,
        discovered: Sequence[DiscoveredPaper],
        config: DiscoveryConfiguration,
        *,
        started_at: Optional[datetime] = None,
    ) -> RelatedPaperDiscoveryResult:
        try:
            unique = deduplicate_papers(discovered)
            enhanced, used_ai = await self.enhance_relevance(paper, unique)
            filtered = filter_papers(enhanced, config.minimum_relevance_score)
            ranked = self.ranker.rank(filtered)
            final = ranked[:config.effective_max_total_papers]
            logger.info(
                "[Synthesis] %d raw -> %d unique -> %d kept -> %d returned (ai=%s)",
                len(discovered), len(unique), len(filtered), len(final), used_ai,
            )
            return RelatedPaperDiscoveryResult.success(
                paper.id,
                final,
                started_at=started_at or datetime.now(timezone.utc),
                statistics={
                    "original_total": len(discovered),
                    "deduplicated": len(unique),
                    "filtered_out": len(unique) - len(filtered),
                },
                used_ai_synthesis=used_ai,
                configuration_summary=config.summary(),
            )
        except Exception as exc:
            logger.error("[Synthesis] failed for paper %s: %s", paper.id, exc, exc_info=True)
            return RelatedPaperDiscoveryResult.partial(
                paper.id,
                [],
                [f"AI synthesis failed: {exc}"],
                started_at=started_at,
                configuration_summary=config.summary(),
            )

    async def enhance_relevance(
        self,
        paper: SourcePaper,
        papers: Sequence[DiscoveredPaper],
    ) -> Tuple[List[DiscoveredPaper], bool]:
        """Apply model scores batch by batch; returns the papers and whether any score changed."""
        if self.scorer is None or not papers:
            return list(papers), False

        batches = [papers[i:i + self.batch_size] for i in range(0, len(papers), self.batch_size)]
        sem = asyncio.Semaphore(self.max_concurrent_batches)

        async def score(index: int, batch: Sequence[DiscoveredPaper]) -> Dict[int, float]:
            async with sem:
                try:
                    return await asyncio.wait_for(self.scorer.score_batch(paper, batch), timeout=self.batch_timeout)
                except asyncio.TimeoutError:
                    logger.warning("[Synthesis] batch %d timed out after %.0fs", index, self.batch_timeout)
                except Exception as exc:
                    logger.warning("[Synthesis] batch %d scoring failed: %s", index, exc)
                return {}

        batch_scores = await asyncio.gather(*(score(i, b) for i, b in enumerate(batches)))

        enhanced: List[DiscoveredPaper] = []
        applied = False
        for batch, scores in zip(batches, batch_scores):
            for index, candidate in enumerate(batch):
                if index in scores:
                    enhanced.append(candidate.with_relevance(scores[index]))
                    applied = True
                else:
                    enhanced.append(candidate)
        return enhanced, applied
