"""Domain models used by related-paper discovery."""

from __future__ import annotations

import dataclasses
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


class DiscoverySource(Enum):
    """External providers queried for related papers."""

    CROSSREF = "crossref"
    SEMANTIC_SCHOLAR = "semantic_scholar"
    PERPLEXITY = "perplexity"

    @property
    def display_name(self) -> str:
        return _SOURCE_DISPLAY_NAMES[self]

    @property
    def reliability_weight(self) -> float:
        """Fixed trust constant reflecting how rigorously the provider verifies metadata."""
        return _SOURCE_RELIABILITY[self]

    @classmethod
    def from_value(cls, value: str) -> Optional["DiscoverySource"]:
        normalized = (value or "").strip().lower().replace("-", "_")
        for source in cls:
            if source.value == normalized:
                return source
        return None


_SOURCE_DISPLAY_NAMES = {
    DiscoverySource.CROSSREF: "Crossref",
    DiscoverySource.SEMANTIC_SCHOLAR: "Semantic Scholar",
    DiscoverySource.PERPLEXITY: "Perplexity",
}

_SOURCE_RELIABILITY = {
    DiscoverySource.CROSSREF: 0.95,
    DiscoverySource.SEMANTIC_SCHOLAR: 0.90,
    DiscoverySource.PERPLEXITY: 0.75,
}


class RelationshipType(Enum):
    """Why a discovered paper is considered related to the source paper."""

    CITES = "cites"
    CITED_BY = "cited-by"
    SEMANTIC_SIMILARITY = "semantic-similarity"
    CO_CITATION = "co-citation"
    BIBLIOGRAPHIC_COUPLING = "bibliographic-coupling"
    METHODOLOGICAL = "methodological"
    AUTHOR_NETWORK = "author-network"
    DATASET_RELATED = "dataset-related"
    FIELD_RELATED = "field-related"
    TRENDING = "trending"
    KEYWORD_OVERLAP = "keyword-overlap"
    VENUE_SIMILARITY = "venue-similarity"
    OPEN_ACCESS = "open-access"
    TEMPORAL_PROXIMITY = "temporal-proximity"
    UNKNOWN = "unknown"

    @property
    def importance_weight(self) -> float:
        return _RELATIONSHIP_WEIGHTS[self]

    @property
    def display_name(self) -> str:
        return self.value.replace("-", " ").title()

    @property
    def is_citation_link(self) -> bool:
        return self in (RelationshipType.CITES, RelationshipType.CITED_BY)

    @classmethod
    def from_value(cls, value: Optional[str]) -> "RelationshipType":
        normalized = (value or "").strip().lower().replace("_", "-")
        for relationship in cls:
            if relationship.value == normalized:
                return relationship
        return cls.UNKNOWN


_RELATIONSHIP_WEIGHTS = {
    RelationshipType.CITES: 0.95,
    RelationshipType.CITED_BY: 0.95,
    RelationshipType.SEMANTIC_SIMILARITY: 0.90,
    RelationshipType.CO_CITATION: 0.85,
    RelationshipType.BIBLIOGRAPHIC_COUPLING: 0.85,
    RelationshipType.METHODOLOGICAL: 0.80,
    RelationshipType.AUTHOR_NETWORK: 0.75,
    RelationshipType.DATASET_RELATED: 0.75,
    RelationshipType.FIELD_RELATED: 0.70,
    RelationshipType.TRENDING: 0.70,
    RelationshipType.KEYWORD_OVERLAP: 0.65,
    RelationshipType.VENUE_SIMILARITY: 0.60,
    RelationshipType.OPEN_ACCESS: 0.50,
    RelationshipType.TEMPORAL_PROXIMITY: 0.45,
    RelationshipType.UNKNOWN: 0.30,
}


def _normalize_doi(doi: Optional[str]) -> Optional[str]:
    """Normalize DOI to a consistent lowercase format without URL prefix."""
    if not doi:
        return None
    doi = doi.strip().lower()
    for prefix in ['https://doi.org/', 'http://doi.org/', 'https://dx.doi.org/', 'http://dx.doi.org/', 'doi:', 'doi.org/']:
        if doi.startswith(prefix):
            doi = doi[len(prefix):]
    doi = doi.strip()
    return doi if doi else None


def _normalize_title(title: Optional[str]) -> str:
    """Normalize title for matching - removes punctuation, normalizes whitespace."""
    if not title:
        return ""
    title = title.lower().strip()
    title = unicodedata.normalize('NFKD', title)
    title = ''.join(c for c in title if not unicodedata.combining(c))
    title = re.sub(r'[^\w\s]', '', title)
    title = re.sub(r'\s+', ' ', title).strip()
    return title


def _normalize_author(name: Optional[str]) -> str:
    return _normalize_title(name).replace(' ', '')


def clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score != score:  # NaN
        return 0.0
    return max(0.0, min(1.0, score))


@dataclass(frozen=True)
class SourcePaper:
    """The persisted paper related papers are discovered for."""

    id: str
    title: str
    doi: Optional[str] = None
    authors: Tuple[str, ...] = ()
    abstract: Optional[str] = None
    venue: Optional[str] = None
    year: Optional[int] = None
    keywords: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "authors", tuple(a for a in self.authors if a))
        object.__setattr__(self, "keywords", tuple(k for k in self.keywords if k))

    @property
    def normalized_doi(self) -> Optional[str]:
        return _normalize_doi(self.doi)

    def matches(self, paper: "DiscoveredPaper") -> bool:
        """True when ``paper`` is the source paper itself."""
        own_doi = self.normalized_doi
        if own_doi and _normalize_doi(paper.doi) == own_doi:
            return True
        return bool(self.title) and _normalize_title(self.title) == _normalize_title(paper.title)


@dataclass(frozen=True)
class DiscoveredPaper:
    """A candidate related paper returned by one discovery source."""

    title: str
    source: DiscoverySource
    authors: Tuple[str, ...] = ()
    relationship_type: RelationshipType = RelationshipType.UNKNOWN
    relevance_score: float = 0.0
    abstract: Optional[str] = None
    journal: Optional[str] = None
    year: Optional[int] = None
    doi: Optional[str] = None
    url: Optional[str] = None
    external_id: Optional[str] = None
    citation_count: Optional[int] = None
    influential_citation_count: Optional[int] = None
    keywords: Tuple[str, ...] = ()
    published_date: Optional[str] = None
    relationship_description: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "title", (self.title or "").strip())
        object.__setattr__(self, "authors", tuple(a.strip() for a in self.authors if a and a.strip()))
        object.__setattr__(self, "keywords", tuple(self.keywords))
        object.__setattr__(self, "relevance_score", clamp_score(self.relevance_score))

    def get_unique_key(self) -> str:
        """Return a key used to deduplicate entries across sources.

        Uses the normalized DOI when present, otherwise the normalized title
        combined with the normalized first author. The key only depends on
        the record's content so it is stable across runs.
        """
        normalized_doi = _normalize_doi(self.doi)
        if normalized_doi:
            return f"doi:{normalized_doi}"
        first_author = _normalize_author(self.authors[0]) if self.authors else ""
        return f"title:{_normalize_title(self.title)}|author:{first_author}"

    def with_relevance(self, score: float) -> "DiscoveredPaper":
        return dataclasses.replace(self, relevance_score=clamp_score(score))

    def with_relationship(self, relationship: RelationshipType) -> "DiscoveredPaper":
        return dataclasses.replace(self, relationship_type=relationship)

    @property
    def venue(self) -> Optional[str]:
        return self.journal

    @property
    def completeness(self) -> float:
        """Fraction of the seven expected metadata fields that are populated."""
        populated = [
            bool(self.title),
            bool(self.authors),
            bool(self.doi or self.external_id),
            bool(self.journal),
            self.year is not None,
            bool(self.abstract and self.abstract.strip()),
            bool(self.url),
        ]
        return sum(populated) / len(populated)

    @property
    def display_authors(self) -> str:
        if not self.authors:
            return "Unknown authors"
        if len(self.authors) <= 3:
            return ", ".join(self.authors)
        return ", ".join(self.authors[:3]) + " et al."

    @property
    def display_title(self) -> str:
        if len(self.title) <= 100:
            return self.title
        return self.title[:97] + "..."

    @property
    def formatted_citation(self) -> str:
        parts = [self.display_authors]
        if self.year:
            parts[0] += f" ({self.year})"
        parts.append(self.title)
        if self.journal:
            parts.append(self.journal)
        citation = ". ".join(p.rstrip(".") for p in parts if p) + "."
        if self.doi:
            citation += f" https://doi.org/{_normalize_doi(self.doi)}"
        elif self.url:
            citation += f" {self.url}"
        return citation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "authors": list(self.authors),
            "abstract": self.abstract,
            "journal": self.journal,
            "year": self.year,
            "doi": self.doi,
            "url": self.url,
            "external_id": self.external_id,
            "source": self.source.value,
            "relationship_type": self.relationship_type.value,
            "relationship_description": self.relationship_description,
            "relevance_score": round(self.relevance_score, 4),
            "citation_count": self.citation_count,
            "influential_citation_count": self.influential_citation_count,
            "keywords": list(self.keywords),
            "published_date": self.published_date,
        }


def build_statistics(papers: Sequence[DiscoveredPaper], extra: Optional[Mapping[str, int]] = None) -> Dict[str, int]:
    """Count papers overall, per source and per relationship type."""
    stats: Dict[str, int] = {"total": len(papers)}
    for source in DiscoverySource:
        stats[f"source_{source.value}"] = 0
    for paper in papers:
        stats[f"source_{paper.source.value}"] += 1
        key = f"relationship_{paper.relationship_type.value}"
        stats[key] = stats.get(key, 0) + 1
    if extra:
        stats.update(extra)
    return stats


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RelatedPaperDiscoveryResult:
    """Immutable outcome of one discovery invocation."""

    source_paper_id: str
    discovered_papers: Tuple[DiscoveredPaper, ...]
    statistics: Mapping[str, int]
    confidence_score: float
    started_at: datetime
    completed_at: datetime
    warnings: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    requires_user_review: bool = False
    used_ai_synthesis: bool = False
    configuration_summary: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "discovered_papers", tuple(self.discovered_papers))
        object.__setattr__(self, "statistics", MappingProxyType(dict(self.statistics)))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        object.__setattr__(self, "errors", tuple(self.errors))
        object.__setattr__(self, "confidence_score", clamp_score(self.confidence_score))

    @staticmethod
    def _confidence(papers: Sequence[DiscoveredPaper]) -> float:
        if not papers:
            return 0.0
        return sum(p.relevance_score for p in papers) / len(papers)

    @classmethod
    def success(
        cls,
        source_paper_id: str,
        papers: Sequence[DiscoveredPaper],
        *,
        started_at: datetime,
        statistics: Optional[Mapping[str, int]] = None,
        warnings: Iterable[str] = (),
        used_ai_synthesis: bool = False,
        configuration_summary: str = "",
    ) -> "RelatedPaperDiscoveryResult":
        papers = tuple(papers)
        return cls(
            source_paper_id=source_paper_id,
            discovered_papers=papers,
            statistics=build_statistics(papers, statistics),
            confidence_score=cls._confidence(papers),
            started_at=started_at,
            completed_at=_utcnow(),
            warnings=tuple(warnings),
            used_ai_synthesis=used_ai_synthesis,
            configuration_summary=configuration_summary,
        )

    @classmethod
    def partial(
        cls,
        source_paper_id: str,
        papers: Sequence[DiscoveredPaper],
        errors: Iterable[str],
        *,
        started_at: Optional[datetime] = None,
        statistics: Optional[Mapping[str, int]] = None,
        warnings: Iterable[str] = (),
        configuration_summary: str = "",
    ) -> "RelatedPaperDiscoveryResult":
        papers = tuple(papers)
        return cls(
            source_paper_id=source_paper_id,
            discovered_papers=papers,
            statistics=build_statistics(papers, statistics),
            confidence_score=cls._confidence(papers),
            started_at=started_at or _utcnow(),
            completed_at=_utcnow(),
            warnings=tuple(warnings),
            errors=tuple(errors),
            requires_user_review=True,
            configuration_summary=configuration_summary,
        )

    @classmethod
    def empty(
        cls,
        source_paper_id: str,
        *,
        started_at: Optional[datetime] = None,
        warnings: Iterable[str] = (),
        statistics: Optional[Mapping[str, int]] = None,
        configuration_summary: str = "",
    ) -> "RelatedPaperDiscoveryResult":
        return cls.success(
            source_paper_id,
            (),
            started_at=started_at or _utcnow(),
            statistics=statistics,
            warnings=warnings,
            configuration_summary=configuration_summary,
        )

    def with_context(
        self,
        *,
        warnings: Iterable[str] = (),
        statistics: Optional[Mapping[str, int]] = None,
        started_at: Optional[datetime] = None,
        configuration_summary: Optional[str] = None,
    ) -> "RelatedPaperDiscoveryResult":
        """Return a copy carrying coordinator-level warnings and counts."""
        merged_stats = dict(self.statistics)
        if statistics:
            merged_stats.update(statistics)
        return dataclasses.replace(
            self,
            statistics=merged_stats,
            warnings=tuple(warnings) + self.warnings,
            started_at=started_at or self.started_at,
            configuration_summary=self.configuration_summary if configuration_summary is None else configuration_summary,
        )

    @property
    def processing_time_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def total_papers(self) -> int:
        return len(self.discovered_papers)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def papers_by_source(self) -> Dict[DiscoverySource, List[DiscoveredPaper]]:
        grouped: Dict[DiscoverySource, List[DiscoveredPaper]] = {}
        for paper in self.discovered_papers:
            grouped.setdefault(paper.source, []).append(paper)
        return grouped

    def papers_by_relationship(self) -> Dict[RelationshipType, List[DiscoveredPaper]]:
        grouped: Dict[RelationshipType, List[DiscoveredPaper]] = {}
        for paper in self.discovered_papers:
            grouped.setdefault(paper.relationship_type, []).append(paper)
        return grouped

    def top_papers(self, limit: int) -> List[DiscoveredPaper]:
        ranked = sorted(self.discovered_papers, key=lambda p: p.relevance_score, reverse=True)
        return ranked[:max(0, limit)]

    def summary(self) -> str:
        sources = ", ".join(
            f"{source.display_name}: {len(papers)}"
            for source, papers in sorted(self.papers_by_source().items(), key=lambda kv: kv[0].value)
        ) or "none"
        text = (
            f"Discovered {self.total_papers} related papers "
            f"(confidence {self.confidence_score:.0%}, {self.processing_time_ms} ms; sources: {sources})"
        )
        if self.requires_user_review:
            text += " - partial results, review recommended"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_paper_id": self.source_paper_id,
            "papers": [p.to_dict() for p in self.discovered_papers],
            "statistics": dict(self.statistics),
            "confidence_score": round(self.confidence_score, 4),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "processing_time_ms": self.processing_time_ms,
            "requires_user_review": self.requires_user_review,
            "used_ai_synthesis": self.used_ai_synthesis,
            "configuration_summary": self.configuration_summary,
        }
