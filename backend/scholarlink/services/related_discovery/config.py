"""Per-request configuration for related-paper discovery."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from .models import DiscoverySource, RelationshipType


DEFAULT_MAX_TOTAL_PAPERS = 100
MIN_SOURCE_TIMEOUT_SECONDS = 30.0
PRIORITIES = ("LOW", "NORMAL", "HIGH")


@dataclass(frozen=True)
class DiscoveryConfiguration:
    """Immutable policy object built once per discovery request."""

    enabled_sources: FrozenSet[DiscoverySource] = field(
        default_factory=lambda: frozenset({DiscoverySource.CROSSREF, DiscoverySource.SEMANTIC_SCHOLAR})
    )
    target_relationship_types: FrozenSet[RelationshipType] = field(default_factory=frozenset)
    max_papers_per_source: int = 25
    max_total_papers: Optional[int] = DEFAULT_MAX_TOTAL_PAPERS
    minimum_relevance_score: float = 0.3
    enable_ai_synthesis: bool = True
    timeout_seconds: float = 300.0
    min_source_timeout_seconds: float = MIN_SOURCE_TIMEOUT_SECONDS
    parallel_execution: bool = True
    priority: str = "NORMAL"

    def __post_init__(self) -> None:
        object.__setattr__(self, "enabled_sources", frozenset(self.enabled_sources))
        object.__setattr__(self, "target_relationship_types", frozenset(self.target_relationship_types))

    # ------------------------------------------------------------------ presets

    @classmethod
    def default(cls) -> "DiscoveryConfiguration":
        return cls(
            target_relationship_types=frozenset({
                RelationshipType.CITES,
                RelationshipType.CITED_BY,
                RelationshipType.SEMANTIC_SIMILARITY,
                RelationshipType.KEYWORD_OVERLAP,
            }),
        )

    @classmethod
    def comprehensive(cls) -> "DiscoveryConfiguration":
        return cls(
            enabled_sources=frozenset(DiscoverySource),
            max_papers_per_source=50,
            max_total_papers=200,
            minimum_relevance_score=0.2,
            timeout_seconds=600.0,
            priority="HIGH",
        )

    @classmethod
    def fast(cls) -> "DiscoveryConfiguration":
        return cls(
            enabled_sources=frozenset({DiscoverySource.CROSSREF}),
            target_relationship_types=frozenset({
                RelationshipType.CITES,
                RelationshipType.CITED_BY,
                RelationshipType.KEYWORD_OVERLAP,
            }),
            max_papers_per_source=10,
            max_total_papers=25,
            minimum_relevance_score=0.5,
            enable_ai_synthesis=False,
            timeout_seconds=60.0,
            priority="LOW",
        )

    @classmethod
    def citation_focused(cls) -> "DiscoveryConfiguration":
        return cls(
            target_relationship_types=frozenset({
                RelationshipType.CITES,
                RelationshipType.CITED_BY,
                RelationshipType.CO_CITATION,
                RelationshipType.BIBLIOGRAPHIC_COUPLING,
            }),
            max_papers_per_source=30,
            max_total_papers=120,
            minimum_relevance_score=0.4,
            timeout_seconds=240.0,
        )

    # ------------------------------------------------------------------ queries

    @property
    def effective_max_total_papers(self) -> int:
        return self.max_total_papers if self.max_total_papers else DEFAULT_MAX_TOTAL_PAPERS

    def is_source_enabled(self, source: DiscoverySource) -> bool:
        return source in self.enabled_sources

    def max_papers_for_source(self, source: DiscoverySource) -> int:
        return self.max_papers_per_source if self.is_source_enabled(source) else 0

    def should_discover_relationship(self, relationship: RelationshipType) -> bool:
        """An empty target set means every relationship type is wanted."""
        if not self.target_relationship_types:
            return True
        return relationship in self.target_relationship_types

    def wants_any(self, *relationships: RelationshipType) -> bool:
        return any(self.should_discover_relationship(r) for r in relationships)

    def per_source_timeout(self) -> float:
        """Overall timeout split across enabled sources, never below the floor."""
        count = max(1, len(self.enabled_sources))
        return max(self.timeout_seconds / count, self.min_source_timeout_seconds)

    def validate(self) -> List[str]:
        issues: List[str] = []
        if not self.enabled_sources:
            issues.append("At least one discovery source must be enabled")
        if self.max_papers_per_source <= 0:
            issues.append("Max papers per source must be positive")
        if self.max_total_papers is not None and self.max_total_papers <= 0:
            issues.append("Max total papers must be positive")
        if not 0.0 <= self.minimum_relevance_score <= 1.0:
            issues.append("Minimum relevance score must be between 0.0 and 1.0")
        if self.timeout_seconds <= 0:
            issues.append("Timeout must be positive")
        if self.min_source_timeout_seconds <= 0:
            issues.append("Minimum per-source timeout must be positive")
        if self.priority not in PRIORITIES:
            issues.append(f"Priority must be one of {', '.join(PRIORITIES)}")
        return issues

    @property
    def is_valid(self) -> bool:
        return not self.validate()

    def summary(self) -> str:
        sources = ", ".join(sorted(s.display_name for s in self.enabled_sources)) or "none"
        return (
            f"Sources: {sources}; max {self.max_papers_per_source}/source, "
            f"{self.effective_max_total_papers} total; min relevance {self.minimum_relevance_score:.2f}; "
            f"AI synthesis {'on' if self.enable_ai_synthesis else 'off'}; timeout {self.timeout_seconds:g}s"
        )

    def cache_key(self) -> str:
        """Stable digest of every field, used to key stored results."""
        payload = {
            "sources": sorted(s.value for s in self.enabled_sources),
            "relationships": sorted(r.value for r in self.target_relationship_types),
            "per_source": self.max_papers_per_source,
            "total": self.effective_max_total_papers,
            "min_relevance": round(self.minimum_relevance_score, 6),
            "ai": self.enable_ai_synthesis,
            "timeout": self.timeout_seconds,
            "min_source_timeout": self.min_source_timeout_seconds,
            "parallel": self.parallel_execution,
            "priority": self.priority,
        }
        return hashlib.sha1(json.dumps(payload, sort_keys=True).encode()).hexdigest()[:16]
