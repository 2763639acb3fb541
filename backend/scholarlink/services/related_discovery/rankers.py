"""Scoring strategies used by synthesis: composite ranking and LLM relevance."""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence

from scholarlink.core.config import Settings, get_settings

from .interfaces import RelevanceScorer
from .models import DiscoveredPaper, SourcePaper

logger = logging.getLogger(__name__)


RANKING_WEIGHTS: Dict[str, float] = {
    "relevance": 0.40,
    "relationship": 0.25,
    "citations": 0.20,
    "completeness": 0.10,
    "source": 0.05,
}

# Citation counts at or above this saturate the citation-impact term.
CITATION_SATURATION = 1000


def citation_impact(citation_count: Optional[int]) -> float:
    """Log-scaled citation signal in [0, 1]; missing or zero counts give 0."""
    if not citation_count or citation_count <= 0:
        return 0.0
    return min(math.log(citation_count + 1) / math.log(CITATION_SATURATION), 1.0)


def composite_score(paper: DiscoveredPaper) -> float:
    weights = RANKING_WEIGHTS
    score = (
        weights["relevance"] * paper.relevance_score
        + weights["relationship"] * paper.relationship_type.importance_weight
        + weights["citations"] * citation_impact(paper.citation_count)
        + weights["completeness"] * paper.completeness
        + weights["source"] * paper.source.reliability_weight
    )
    return min(score, 1.0)


class CompositeRanker:
    """Deterministic weighted ranking over already-scored papers."""

    def sort_key(self, paper: DiscoveredPaper):
        return (
            -composite_score(paper),
            -paper.relevance_score,
            -paper.source.reliability_weight,
            paper.get_unique_key(),
        )

    def rank(self, papers: Sequence[DiscoveredPaper]) -> List[DiscoveredPaper]:
        return sorted(papers, key=self.sort_key)


# ----------------------------------------------------------------------------
# LLM relevance scoring
# ----------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "You are a research paper relevance analyst. Rate how relevant each discovered paper is to the "
    "source paper on a scale from 0.0 (unrelated) to 1.0 (essential reading). Consider topic overlap, "
    "methodology and the stated relationship."
)

_ENTRY_PATTERN = re.compile(r"paper\s*#?\s*(\d+)\s*[:.)\-–]\s*(.*)$", re.IGNORECASE)
_SCORE_PATTERN = re.compile(r"score\s*[:=]?\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_DECIMAL_PATTERN = re.compile(r"(?<![\d.])(\d*\.\d+)(?![\d.])")
_BARE_SCORE_PATTERN = re.compile(r"(?<![\d.])([01](?:\.\d+)?)(?![\d.])")


def build_relevance_prompt(paper: SourcePaper, candidates: Sequence[DiscoveredPaper]) -> str:
    lines = [
        "Source Paper:",
        f"Title: {paper.title}",
        f"Abstract: {(paper.abstract or 'Not available')[:500]}",
        "",
        "Discovered Papers to Analyze:",
    ]
    for number, candidate in enumerate(candidates, start=1):
        lines.append(f"{number}. Title: {candidate.title}")
        lines.append(f"   Abstract: {(candidate.abstract or 'Not available')[:300]}")
        lines.append(f"   Relationship: {candidate.relationship_type.display_name}")
        lines.append("")
    lines.append("Rate each paper's relevance to the source paper from 0.0 to 1.0.")
    lines.append("Respond with one line per paper in the form: Paper X: Score Y.YY")
    return "\n".join(lines)


def parse_relevance_scores(text: Optional[str], count: int) -> Dict[int, float]:
    """Extract ``{zero_based_index: score}`` from "Paper N: Score Y.YY" lines.

    Lines that do not follow the pattern, reference a paper outside the batch,
    or carry a score outside [0, 1] are skipped. The first score for a paper wins.
    """
    scores: Dict[int, float] = {}
    for raw_line in (text or "").splitlines():
        line = raw_line.replace("*", "").strip()
        entry = _ENTRY_PATTERN.search(line)
        if not entry:
            continue
        number = int(entry.group(1))
        rest = entry.group(2)
        match = (
            _SCORE_PATTERN.search(rest) or _DECIMAL_PATTERN.search(rest) or _BARE_SCORE_PATTERN.search(rest)
        )
        if not match:
            continue
        try:
            value = float(match.group(1))
        except ValueError:
            continue
        if not 1 <= number <= count or not 0.0 <= value <= 1.0:
            continue
        scores.setdefault(number - 1, value)
    return scores


class LlmRelevanceScorer(RelevanceScorer):
    """Score candidate batches with an OpenAI chat model."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Any = None,
        model_name: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.model_name = model_name or self.settings.DISCOVERY_SYNTHESIS_MODEL
        self._client = client
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(api_key=self.settings.OPENAI_API_KEY)

    async def score_batch(
        self,
        paper: SourcePaper,
        candidates: Sequence[DiscoveredPaper],
    ) -> Dict[int, float]:
        if not candidates:
            return {}
        resp = await self._client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_relevance_prompt(paper, candidates)},
            ],
        )
        content = (resp.choices[0].message.content or "").strip()
        scores = parse_relevance_scores(content, len(candidates))
        if len(scores) < len(candidates):
            logger.debug(
                "[Synthesis] model scored %d of %d papers; the rest keep their scores",
                len(scores), len(candidates),
            )
        return scores
