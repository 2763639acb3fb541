"""Provider-specific discovery clients for related papers."""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from scholarlink.core.config import Settings, get_settings

from .circuit_breaker import CircuitState
from .config import DiscoveryConfiguration
from .interfaces import DiscoverySourceClient
from .models import (
    DiscoveredPaper,
    DiscoverySource,
    RelationshipType,
    SourcePaper,
    _normalize_author,
    _normalize_doi,
    _normalize_title,
)
from .rate_limiter import APIRateLimitManager, RateLimitError

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A provider answered with an error status or an unusable payload."""

    def __init__(self, source: DiscoverySource, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status = status


STOP_WORDS = frozenset({
    "the", "and", "for", "with", "from", "into", "onto", "that", "this", "these", "those",
    "using", "based", "towards", "toward", "study", "analysis", "approach", "method",
    "methods", "paper", "new", "novel", "via", "over", "under", "between", "their",
    "its", "our", "are", "was", "were", "been", "being", "have", "has", "had", "not",
})


def extract_key_terms(text: Optional[str], limit: int = 5) -> List[str]:
    """Pick the first distinctive words of a title for keyword queries."""
    terms: List[str] = []
    for word in re.findall(r"[A-Za-z0-9][A-Za-z0-9\-]*", text or ""):
        lowered = word.lower()
        if len(lowered) <= 3 or lowered in STOP_WORDS or lowered in terms:
            continue
        terms.append(lowered)
        if len(terms) >= limit:
            break
    return terms


def author_overlap(source_authors: Sequence[str], candidate_authors: Sequence[str]) -> float:
    """Share of the source paper's authors that also author the candidate."""
    if not source_authors or not candidate_authors:
        return 0.0
    own = {_normalize_author(a) for a in source_authors if a}
    theirs = {_normalize_author(a) for a in candidate_authors if a}
    own.discard("")
    if not own:
        return 0.0
    return len(own & theirs) / len(own)


def _strip_markup(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = re.sub(r"<[^>]+>", " ", text)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or None


def _merge_source_results(
    source: DiscoverySource,
    paper: SourcePaper,
    config: DiscoveryConfiguration,
    named_results: Sequence[Tuple[str, Any]],
) -> List[DiscoveredPaper]:
    """Combine strategy outputs: drop failures and the source paper, dedupe, cap."""
    by_key: Dict[str, DiscoveredPaper] = {}
    for name, outcome in named_results:
        if isinstance(outcome, RateLimitError):
            logger.info("[Discovery] %s %s skipped: %s", source.value, name, outcome)
            continue
        if isinstance(outcome, BaseException):
            logger.warning("[Discovery] %s %s failed: %s", source.value, name, outcome)
            continue
        for candidate in outcome:
            if paper.matches(candidate):
                continue
            key = candidate.get_unique_key()
            existing = by_key.get(key)
            if existing is None or candidate.relevance_score > existing.relevance_score:
                by_key[key] = candidate

    ranked = sorted(by_key.values(), key=lambda p: (-p.relevance_score, p.get_unique_key()))
    return ranked[:config.max_papers_for_source(source)]


async def _run_strategies(
    source: DiscoverySource,
    paper: SourcePaper,
    config: DiscoveryConfiguration,
    strategies: List[Tuple[str, Awaitable[List[DiscoveredPaper]]]],
) -> List[DiscoveredPaper]:
    if not strategies:
        logger.debug("[Discovery] %s has no strategy for the targeted relationship types", source.value)
        return []
    outcomes = await asyncio.gather(*(coro for _, coro in strategies), return_exceptions=True)
    named = [(name, outcome) for (name, _), outcome in zip(strategies, outcomes)]
    return _merge_source_results(source, paper, config, named)


class GuardedHttpClient:
    """aiohttp GET wrapper that asks the rate limiter first and reports every outcome."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        rate_limiter: APIRateLimitManager,
        source: DiscoverySource,
        *,
        headers: Optional[Dict[str, str]] = None,
        request_timeout: float = 30.0,
    ) -> None:
        self.session = session
        self.rate_limiter = rate_limiter
        self.source = source
        self.headers = headers or {}
        self.request_timeout = request_timeout

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        await self.rate_limiter.acquire(self.source)
        started = time.monotonic()
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with self.session.get(url, params=params, headers=self.headers, timeout=timeout) as resp:
                if resp.status == 404 and allow_not_found:
                    self.rate_limiter.record_success(self.source, (time.monotonic() - started) * 1000)
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    raise ProviderError(self.source, f"HTTP {resp.status}: {text[:200]}", status=resp.status)
                data = await resp.json(content_type=None)
        except asyncio.CancelledError:
            self.rate_limiter.release(self.source)
            raise
        except ProviderError as exc:
            self.rate_limiter.record_failure(self.source, (time.monotonic() - started) * 1000, str(exc))
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.rate_limiter.record_failure(self.source, (time.monotonic() - started) * 1000, str(exc))
            raise ProviderError(self.source, f"{type(exc).__name__}: {exc}") from exc

        elapsed_ms = (time.monotonic() - started) * 1000
        if not isinstance(data, dict):
            self.rate_limiter.record_failure(self.source, elapsed_ms, "malformed payload")
            raise ProviderError(self.source, "Malformed payload: expected a JSON object")
        self.rate_limiter.record_success(self.source, elapsed_ms)
        return data


def _circuit_is_open(rate_limiter: APIRateLimitManager, source: DiscoverySource) -> bool:
    if rate_limiter.circuit_state(source) is CircuitState.OPEN:
        logger.info("[Discovery] %s circuit open; returning no results", source.value)
        return True
    return False


# ----------------------------------------------------------------------------
# Crossref
# ----------------------------------------------------------------------------


class CrossrefDiscoveryClient(DiscoverySourceClient):
    """Bibliographic-index client backed by the Crossref REST API."""

    SELECT_FIELDS = ",".join([
        "DOI", "title", "author", "issued", "URL", "abstract",
        "container-title", "is-referenced-by-count", "subject",
    ])

    def __init__(
        self,
        session: aiohttp.ClientSession,
        rate_limiter: APIRateLimitManager,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter
        self.mailto = self.settings.CROSSREF_MAILTO or "contact@example.com"
        self.base_url = self.settings.CROSSREF_BASE_URL.rstrip("/")
        self.http = GuardedHttpClient(
            session,
            rate_limiter,
            DiscoverySource.CROSSREF,
            headers={"User-Agent": f"ScholarLink/1.0 (mailto:{self.mailto})"},
            request_timeout=self.settings.DISCOVERY_HTTP_TIMEOUT,
        )

    @property
    def source(self) -> DiscoverySource:
        return DiscoverySource.CROSSREF

    async def discover(self, paper: SourcePaper, config: DiscoveryConfiguration) -> List[DiscoveredPaper]:
        if not config.is_source_enabled(self.source) or _circuit_is_open(self.rate_limiter, self.source):
            return []
        try:
            limit = config.max_papers_for_source(self.source)
            strategies: List[Tuple[str, Awaitable[List[DiscoveredPaper]]]] = []
            doi = paper.normalized_doi
            if doi and config.should_discover_relationship(RelationshipType.CITES):
                strategies.append(("citing works", self._find_citing_works(paper, doi, limit)))
            if doi and config.should_discover_relationship(RelationshipType.CITED_BY):
                strategies.append(("references", self._find_references(paper, doi, limit)))
            if config.should_discover_relationship(RelationshipType.KEYWORD_OVERLAP):
                terms = extract_key_terms(paper.title)
                if terms:
                    strategies.append(("keywords", self._search_works(
                        paper,
                        {"query": " ".join(terms)},
                        limit,
                        RelationshipType.KEYWORD_OVERLAP,
                        f"Shares key terms: {', '.join(terms)}",
                    )))
            if paper.authors and config.should_discover_relationship(RelationshipType.AUTHOR_NETWORK):
                per_author = max(1, limit // min(3, len(paper.authors)))
                for author in paper.authors[:3]:
                    strategies.append((f"author {author}", self._search_works(
                        paper,
                        {"query.author": author},
                        per_author,
                        RelationshipType.AUTHOR_NETWORK,
                        f"Also authored by {author}",
                    )))
            if paper.venue and config.should_discover_relationship(RelationshipType.VENUE_SIMILARITY):
                query: Dict[str, Any] = {"query.container-title": paper.venue}
                terms = extract_key_terms(paper.title, limit=3)
                if terms:
                    query["query"] = " ".join(terms)
                strategies.append(("venue", self._search_works(
                    paper, query, limit, RelationshipType.VENUE_SIMILARITY, f"Published in {paper.venue}",
                )))

            papers = await _run_strategies(self.source, paper, config, strategies)
            logger.info("[Crossref] %d related papers for '%s'", len(papers), paper.title[:60])
            return papers
        except Exception as exc:
            logger.error("[Crossref] discovery failed: %s", exc)
            return []

    async def _find_citing_works(self, paper: SourcePaper, doi: str, limit: int) -> List[DiscoveredPaper]:
        return await self._search_works(
            paper,
            {"query": f'"{doi}"'},
            limit,
            RelationshipType.CITES,
            "Cites the source paper",
        )

    async def _search_works(
        self,
        paper: SourcePaper,
        query: Dict[str, Any],
        rows: int,
        relationship: RelationshipType,
        description: str,
    ) -> List[DiscoveredPaper]:
        params = dict(query)
        params.update({
            "rows": max(1, min(int(rows), 100)),
            "select": self.SELECT_FIELDS,
            "mailto": self.mailto,
        })
        data = await self.http.get_json(f"{self.base_url}/works", params)
        items = ((data or {}).get("message") or {}).get("items") or []
        logger.debug("[Crossref] %s query returned %d items", relationship.value, len(items))
        return [
            p for p in (self._parse_item(it, paper, relationship, description) for it in items)
            if p is not None
        ]

    async def _find_references(self, paper: SourcePaper, doi: str, limit: int) -> List[DiscoveredPaper]:
        data = await self.http.get_json(
            f"{self.base_url}/works/{doi}", {"mailto": self.mailto}, allow_not_found=True
        )
        references = ((data or {}).get("message") or {}).get("reference") or []
        papers: List[DiscoveredPaper] = []
        for ref in references:
            if len(papers) >= limit:
                break
            if not isinstance(ref, dict):
                continue
            title = ref.get("article-title") or ref.get("volume-title") or ref.get("unstructured")
            if not title:
                continue
            year = None
            try:
                year = int(str(ref.get("year"))[:4]) if ref.get("year") else None
            except ValueError:
                year = None
            ref_doi = ref.get("DOI")
            authors = (ref.get("author"),) if ref.get("author") else ()
            candidate = DiscoveredPaper(
                title=_strip_markup(title) or "",
                source=self.source,
                authors=authors,
                relationship_type=RelationshipType.CITED_BY,
                journal=ref.get("journal-title"),
                year=year,
                doi=ref_doi,
                url=f"https://doi.org/{ref_doi}" if ref_doi else None,
                relationship_description="Cited by the source paper",
            )
            papers.append(candidate.with_relevance(self._calculate_relevance(candidate, paper)))
        return papers

    def _parse_item(
        self,
        item: Dict[str, Any],
        paper: SourcePaper,
        relationship: RelationshipType,
        description: str,
    ) -> Optional[DiscoveredPaper]:
        try:
            title_list = item.get("title") or []
            title = (title_list[0] if title_list else "") or ""
            if not title:
                return None
            authors = []
            for a in item.get("author") or []:
                name = " ".join(filter(None, [a.get("given"), a.get("family")])).strip()
                if name:
                    authors.append(name)
            year = None
            parts = ((item.get("issued") or {}).get("date-parts") or [[]])[0]
            if parts and parts[0] is not None:
                year = int(parts[0])
            journal_list = item.get("container-title") or []
            citations = item.get("is-referenced-by-count")
            doi = item.get("DOI") or None
            candidate = DiscoveredPaper(
                title=_strip_markup(title) or title,
                source=self.source,
                authors=tuple(authors),
                relationship_type=relationship,
                abstract=_strip_markup(item.get("abstract")),
                journal=journal_list[0] if journal_list else None,
                year=year,
                doi=doi,
                url=item.get("URL") or (f"https://doi.org/{doi}" if doi else None),
                citation_count=citations if isinstance(citations, int) else None,
                keywords=tuple(item.get("subject") or ()),
                published_date="-".join(str(p) for p in parts) if parts else None,
                relationship_description=description,
            )
        except (TypeError, ValueError, AttributeError):
            logger.debug("Failed parsing Crossref item", exc_info=True)
            return None
        return candidate.with_relevance(self._calculate_relevance(candidate, paper))

    @staticmethod
    def _calculate_relevance(candidate: DiscoveredPaper, paper: SourcePaper) -> float:
        score = 0.5
        if candidate.citation_count:
            score += min(candidate.citation_count / 100.0, 0.3)
        if candidate.year:
            age = datetime.now(timezone.utc).year - candidate.year
            if 0 <= age <= 5:
                score += (5 - age) / 25.0
        score += author_overlap(paper.authors, candidate.authors) * 0.2
        if paper.venue and candidate.journal and _normalize_title(paper.venue) == _normalize_title(candidate.journal):
            score += 0.1
        return min(score, 1.0)


# ----------------------------------------------------------------------------
# Semantic Scholar
# ----------------------------------------------------------------------------


class SemanticScholarDiscoveryClient(DiscoverySourceClient):
    """Academic-graph client backed by the Semantic Scholar Graph and Recommendations APIs."""

    PAPER_FIELDS = (
        "paperId,title,authors,year,venue,url,externalIds,abstract,"
        "citationCount,influentialCitationCount,publicationDate"
    )

    def __init__(
        self,
        session: aiohttp.ClientSession,
        rate_limiter: APIRateLimitManager,
        settings: Optional[Settings] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter
        self.base_url = self.settings.SEMANTIC_SCHOLAR_BASE_URL.rstrip("/")
        headers = {"User-Agent": "ScholarLink/1.0"}
        key = api_key or self.settings.SEMANTIC_SCHOLAR_API_KEY
        if key:
            headers["x-api-key"] = key
        self.http = GuardedHttpClient(
            session,
            rate_limiter,
            DiscoverySource.SEMANTIC_SCHOLAR,
            headers=headers,
            request_timeout=self.settings.DISCOVERY_HTTP_TIMEOUT,
        )

    @property
    def source(self) -> DiscoverySource:
        return DiscoverySource.SEMANTIC_SCHOLAR

    @property
    def graph_url(self) -> str:
        return f"{self.base_url}/graph/v1"

    async def discover(self, paper: SourcePaper, config: DiscoveryConfiguration) -> List[DiscoveredPaper]:
        if not config.is_source_enabled(self.source) or _circuit_is_open(self.rate_limiter, self.source):
            return []
        try:
            limit = config.max_papers_for_source(self.source)
            strategies: List[Tuple[str, Awaitable[List[DiscoveredPaper]]]] = []
            if paper.title and config.should_discover_relationship(RelationshipType.SEMANTIC_SIMILARITY):
                strategies.append(("title search", self._search(
                    paper, paper.title, limit, RelationshipType.SEMANTIC_SIMILARITY, "Semantically similar title",
                )))
            if paper.normalized_doi and config.wants_any(
                RelationshipType.CITES, RelationshipType.CITED_BY, RelationshipType.SEMANTIC_SIMILARITY
            ):
                strategies.append(("citation graph", self._citation_graph(paper, config, limit)))
            if paper.authors and config.should_discover_relationship(RelationshipType.AUTHOR_NETWORK):
                strategies.append(("author network", self._author_network(paper, limit)))

            papers = await _run_strategies(self.source, paper, config, strategies)
            logger.info("[SemanticScholar] %d related papers for '%s'", len(papers), paper.title[:60])
            return papers
        except Exception as exc:
            logger.error("[SemanticScholar] discovery failed: %s", exc)
            return []

    async def _search(
        self,
        paper: SourcePaper,
        query: str,
        limit: int,
        relationship: RelationshipType,
        description: str,
    ) -> List[DiscoveredPaper]:
        params = {"query": query[:300], "limit": max(1, min(limit, 100)), "fields": self.PAPER_FIELDS}
        data = await self.http.get_json(f"{self.graph_url}/paper/search", params)
        return self._parse_items((data or {}).get("data") or [], paper, relationship, description)

    async def _lookup_paper_id(self, doi: str) -> Optional[str]:
        data = await self.http.get_json(
            f"{self.graph_url}/paper/DOI:{doi}", {"fields": "paperId"}, allow_not_found=True
        )
        return (data or {}).get("paperId")

    async def _citation_graph(
        self,
        paper: SourcePaper,
        config: DiscoveryConfiguration,
        limit: int,
    ) -> List[DiscoveredPaper]:
        paper_id = await self._lookup_paper_id(paper.normalized_doi or "")
        if not paper_id:
            logger.debug("[SemanticScholar] DOI %s not found", paper.normalized_doi)
            return []

        calls: List[Awaitable[List[DiscoveredPaper]]] = []
        if config.should_discover_relationship(RelationshipType.CITES):
            calls.append(self._linked_papers(
                paper, paper_id, "citations", "citingPaper", limit,
                RelationshipType.CITES, "Cites the source paper",
            ))
        if config.should_discover_relationship(RelationshipType.CITED_BY):
            calls.append(self._linked_papers(
                paper, paper_id, "references", "citedPaper", limit,
                RelationshipType.CITED_BY, "Cited by the source paper",
            ))
        if config.should_discover_relationship(RelationshipType.SEMANTIC_SIMILARITY):
            calls.append(self._recommendations(paper, paper_id, limit))

        results = await asyncio.gather(*calls, return_exceptions=True)
        papers: List[DiscoveredPaper] = []
        for outcome in results:
            if isinstance(outcome, BaseException):
                logger.warning("[SemanticScholar] citation graph call failed: %s", outcome)
                continue
            papers.extend(outcome)
        return papers

    async def _linked_papers(
        self,
        paper: SourcePaper,
        paper_id: str,
        endpoint: str,
        key: str,
        limit: int,
        relationship: RelationshipType,
        description: str,
    ) -> List[DiscoveredPaper]:
        params = {"fields": self.PAPER_FIELDS, "limit": max(1, min(limit, 1000))}
        data = await self.http.get_json(f"{self.graph_url}/paper/{paper_id}/{endpoint}", params)
        items = [entry.get(key) for entry in (data or {}).get("data") or [] if isinstance(entry, dict)]
        return self._parse_items([it for it in items if it], paper, relationship, description)

    async def _recommendations(self, paper: SourcePaper, paper_id: str, limit: int) -> List[DiscoveredPaper]:
        params = {"fields": self.PAPER_FIELDS, "limit": max(1, min(limit, 500))}
        data = await self.http.get_json(
            f"{self.base_url}/recommendations/v1/papers/forpaper/{paper_id}", params
        )
        return self._parse_items(
            (data or {}).get("recommendedPapers") or [],
            paper,
            RelationshipType.SEMANTIC_SIMILARITY,
            "Recommended as similar by Semantic Scholar",
        )

    async def _author_network(self, paper: SourcePaper, limit: int) -> List[DiscoveredPaper]:
        lead = paper.authors[0]
        papers = await self._search(
            paper, lead, limit, RelationshipType.AUTHOR_NETWORK, f"Also authored by {lead}",
        )
        if len(paper.authors) > 1:
            second = paper.authors[1]
            papers += await self._search(
                paper, second, max(1, limit // 2), RelationshipType.AUTHOR_NETWORK, f"Also authored by {second}",
            )
        return papers

    def _parse_items(
        self,
        items: Sequence[Any],
        paper: SourcePaper,
        relationship: RelationshipType,
        description: str,
    ) -> List[DiscoveredPaper]:
        papers: List[DiscoveredPaper] = []
        for item in items:
            if not isinstance(item, dict) or not item.get("title"):
                continue
            authors = tuple(
                a.get("name") for a in item.get("authors") or [] if isinstance(a, dict) and a.get("name")
            )
            external_ids = item.get("externalIds") or {}
            citations = item.get("citationCount")
            influential = item.get("influentialCitationCount")
            candidate = DiscoveredPaper(
                title=item.get("title") or "",
                source=self.source,
                authors=authors,
                relationship_type=relationship,
                abstract=item.get("abstract"),
                journal=item.get("venue") or None,
                year=item.get("year"),
                doi=external_ids.get("DOI"),
                url=item.get("url"),
                external_id=item.get("paperId"),
                citation_count=citations if isinstance(citations, int) else None,
                influential_citation_count=influential if isinstance(influential, int) else None,
                published_date=item.get("publicationDate"),
                relationship_description=description,
            )
            papers.append(candidate.with_relevance(self._calculate_relevance(candidate, paper)))
        return papers

    @staticmethod
    def _calculate_relevance(candidate: DiscoveredPaper, paper: SourcePaper) -> float:
        score = 0.5
        if candidate.influential_citation_count:
            score += min(candidate.influential_citation_count / 50.0, 0.4)
        if candidate.citation_count:
            score += min(candidate.citation_count / 100.0, 0.3)
        score += author_overlap(paper.authors, candidate.authors) * 0.3
        return min(score, 1.0)


# ----------------------------------------------------------------------------
# Perplexity
# ----------------------------------------------------------------------------


DOI_PATTERN = re.compile(r"\b(10\.\d{4,9}/[^\s\"'<>\]]+)", re.IGNORECASE)
ARXIV_PATTERN = re.compile(r"arxiv[:\s/]*(?:abs/)?(\d{4}\.\d{4,5}(?:v\d+)?)", re.IGNORECASE)
YEAR_PATTERN = re.compile(r"\b(19[5-9]\d|20\d{2})\b")
URL_PATTERN = re.compile(r"https?://[^\s<>\"'\]]+")
PMID_PATTERN = re.compile(r"\bPMID[:\s]*(\d{5,9})\b", re.IGNORECASE)
VENUE_PATTERN = re.compile(r"^(?:venue|journal|published in|conference|source)\s*:\s*(.+)$", re.IGNORECASE)
AUTHORS_PATTERN = re.compile(r"^(?:authors?|by)\s*:\s*(.+)$", re.IGNORECASE)
SUMMARY_PATTERN = re.compile(
    r"^(?:summary|abstract|description|why (?:it is |it's )?relevant|relevance|key findings?)\s*:\s*(.+)$",
    re.IGNORECASE,
)
NUMBERED_ENTRY = re.compile(r"^\s*(?:#+\s*)?\d{1,3}[.)]\s+(.+)$")
BOLD_ENTRY = re.compile(r"^\s*(?:[-*•]\s+)?\*\*(.+?)\*\*(.*)$")
FIELD_LINE = re.compile(r"^\s*[-*•]?\s*\**\s*([A-Za-z][A-Za-z ']{1,30})\s*\**\s*:")

_KNOWN_FIELDS = {
    "author", "authors", "by", "year", "published", "venue", "journal", "published in", "conference",
    "source", "doi", "url", "link", "pmid", "arxiv", "summary", "abstract", "description", "relevance",
    "why relevant", "why it is relevant", "why it's relevant", "key finding", "key findings", "title",
}


def _clean_doi(value: Optional[str]) -> Optional[str]:
    doi = _normalize_doi(value)
    if not doi:
        return None
    doi = doi.rstrip(".,;:)]}>*")
    return doi or None


def _clean_url(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    url = value.strip().rstrip(".,;:)]}>*")
    return url or None


def _clean_title(value: str) -> str:
    title = value.strip()
    title = re.sub(r"^title\s*:\s*", "", title, flags=re.IGNORECASE)
    title = title.replace("**", "").replace("__", "")
    title = title.strip().strip("\"'“”‘’").strip()
    # Drop a trailing "(2023)" or " - Authors" tail written on the same line.
    title = re.sub(r"\s*\((?:19|20)\d{2}\)\s*$", "", title)
    title = re.split(r"\s+[-–—]\s+", title, maxsplit=1)[0]
    return title.strip().rstrip(".").strip()


def _split_authors(value: str) -> Tuple[str, ...]:
    value = re.sub(r"\bet al\.?", "", value, flags=re.IGNORECASE)
    parts = re.split(r";|,|\band\b|&", value)
    return tuple(p.strip().strip(".") for p in parts if p.strip().strip("."))


def is_new_paper_line(line: str) -> bool:
    """True when ``line`` starts a new entry in a numbered or bulleted paper list."""
    if NUMBERED_ENTRY.match(line):
        return True
    match = BOLD_ENTRY.match(line)
    if match and not FIELD_LINE.match(line):
        return True
    return False


def _entry_title(line: str) -> str:
    numbered = NUMBERED_ENTRY.match(line)
    text = numbered.group(1) if numbered else line
    bold = BOLD_ENTRY.match(text)
    if bold:
        text = bold.group(1)
    return _clean_title(text)


def parse_research_listing(
    text: str,
    relationship: RelationshipType,
    source_paper: Optional[SourcePaper] = None,
) -> List[DiscoveredPaper]:
    """Turn a free-text list of papers into ``DiscoveredPaper`` records.

    The realtime research provider answers in prose, usually a numbered list
    where each entry's first line holds the title and following lines carry
    labelled details (authors, year, venue, DOI, URL). Identifiers are also
    picked up anywhere in the entry. Entries without a usable title are
    dropped. Citation relationships are never inferred here: the provider
    has no citation linkage, so a requested CITES/CITED_BY degrades to
    semantic similarity.
    """
    if relationship.is_citation_link:
        relationship = RelationshipType.SEMANTIC_SIMILARITY

    entries: List[Tuple[str, List[str]]] = []
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if is_new_paper_line(line):
            entries.append((line, []))
        elif entries:
            entries[-1][1].append(line)

    papers: List[DiscoveredPaper] = []
    for header, lines in entries:
        paper = _build_perplexity_paper(header, lines, relationship)
        if paper is None:
            continue
        if source_paper is not None and source_paper.matches(paper):
            continue
        papers.append(paper)
    return papers


def _build_perplexity_paper(
    header: str,
    lines: List[str],
    relationship: RelationshipType,
) -> Optional[DiscoveredPaper]:
    title = _entry_title(header)
    if len(title) < 3:
        return None
    authors: Tuple[str, ...] = ()
    venue = None
    summary_parts: List[str] = []
    for line in lines:
        stripped = re.sub(r"^[-*•]\s*", "", line).replace("**", "").strip()
        if AUTHORS_PATTERN.match(stripped):
            authors = _split_authors(AUTHORS_PATTERN.match(stripped).group(1))
        elif VENUE_PATTERN.match(stripped):
            venue = VENUE_PATTERN.match(stripped).group(1).strip().rstrip(".")
        elif SUMMARY_PATTERN.match(stripped):
            summary_parts.append(SUMMARY_PATTERN.match(stripped).group(1).strip())
        else:
            field = FIELD_LINE.match(line)
            if not field or field.group(1).strip().lower() not in _KNOWN_FIELDS:
                summary_parts.append(stripped)

    blob = " ".join([header] + lines)
    doi_match = DOI_PATTERN.search(blob)
    doi = _clean_doi(doi_match.group(1)) if doi_match else None
    arxiv_match = ARXIV_PATTERN.search(blob)
    arxiv_id = arxiv_match.group(1) if arxiv_match else None
    year_match = YEAR_PATTERN.search(" ".join(lines)) or YEAR_PATTERN.search(header)
    year = int(year_match.group(1)) if year_match else None
    url_match = URL_PATTERN.search(blob)
    url = _clean_url(url_match.group(0)) if url_match else None
    pmid_match = PMID_PATTERN.search(blob)

    if url is None and doi:
        url = f"https://doi.org/{doi}"
    elif url is None and arxiv_id:
        url = f"https://arxiv.org/abs/{arxiv_id}"
    elif url is None and pmid_match:
        url = f"https://pubmed.ncbi.nlm.nih.gov/{pmid_match.group(1)}/"

    if doi:
        external_id = f"perplexity-{doi}"
    else:
        external_id = f"perplexity-{uuid.uuid5(uuid.NAMESPACE_URL, _normalize_title(title))}"

    score = relationship.importance_weight
    if doi:
        score += 0.1
    if url:
        score += 0.05
    if venue:
        score += 0.05
    if len(authors) > 1:
        score += 0.05

    summary = " ".join(summary_parts).strip() or None
    return DiscoveredPaper(
        title=title,
        source=DiscoverySource.PERPLEXITY,
        authors=authors,
        relationship_type=relationship,
        relevance_score=min(score, 1.0),
        abstract=summary,
        journal=venue,
        year=year,
        doi=doi,
        url=url,
        external_id=external_id,
        relationship_description=(
            "Currently trending in related research" if relationship is RelationshipType.TRENDING
            else relationship.display_name
        ),
    )


TREND_PROMPT = (
    "List up to {limit} recent research papers (preferably from the last three years) that are "
    "currently gaining attention and are closely related to the paper below.\n\n{paper}\n\n"
    "Answer as a numbered list. For each paper put the title on the numbered line, then add lines "
    "'Authors:', 'Year:', 'Venue:', 'DOI:', 'URL:' and 'Summary:' when known. Do not invent DOIs."
)

OPEN_ACCESS_PROMPT = (
    "List up to {limit} freely available (open access) research papers or preprints closely related "
    "to the paper below.\n\n{paper}\n\n"
    "Answer as a numbered list. For each paper put the title on the numbered line, then add lines "
    "'Authors:', 'Year:', 'Venue:', 'DOI:', 'URL:' and 'Summary:' when known. Do not invent DOIs."
)


def _describe_source_paper(paper: SourcePaper) -> str:
    lines = [f"Title: {paper.title}"]
    if paper.authors:
        lines.append(f"Authors: {', '.join(paper.authors[:5])}")
    if paper.year:
        lines.append(f"Year: {paper.year}")
    if paper.doi:
        lines.append(f"DOI: {paper.doi}")
    if paper.abstract:
        lines.append(f"Abstract: {paper.abstract[:800]}")
    return "\n".join(lines)


class PerplexityDiscoveryClient(DiscoverySourceClient):
    """Realtime-research client using Perplexity's OpenAI-compatible chat API."""

    def __init__(
        self,
        rate_limiter: APIRateLimitManager,
        settings: Optional[Settings] = None,
        client: Any = None,
        api_key: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter
        self.model_name = self.settings.PERPLEXITY_MODEL
        self._client = client
        key = api_key or self.settings.PERPLEXITY_API_KEY
        if self._client is None and key:
            import openai

            self._client = openai.AsyncOpenAI(
                api_key=key,
                base_url=self.settings.PERPLEXITY_BASE_URL,
                timeout=self.settings.DISCOVERY_HTTP_TIMEOUT * 2,
            )

    @property
    def source(self) -> DiscoverySource:
        return DiscoverySource.PERPLEXITY

    async def discover(self, paper: SourcePaper, config: DiscoveryConfiguration) -> List[DiscoveredPaper]:
        if not config.is_source_enabled(self.source) or _circuit_is_open(self.rate_limiter, self.source):
            return []
        if self._client is None:
            logger.info("[Perplexity] no API key configured; skipping")
            return []
        try:
            limit = config.max_papers_for_source(self.source)
            wants_trending = config.should_discover_relationship(RelationshipType.TRENDING)
            wants_open_access = config.should_discover_relationship(RelationshipType.OPEN_ACCESS)
            if not (wants_trending or wants_open_access):
                # Enabled but untargeted: run both queries.
                logger.info(
                    "[Perplexity] no targeted relationship type applies; running trending and open-access queries"
                )
                wants_trending = wants_open_access = True
            strategies: List[Tuple[str, Awaitable[List[DiscoveredPaper]]]] = []
            if wants_trending:
                strategies.append(("trending", self._ask(paper, TREND_PROMPT, limit, RelationshipType.TRENDING)))
            if wants_open_access:
                strategies.append((
                    "open access",
                    self._ask(paper, OPEN_ACCESS_PROMPT, max(1, limit // 2), RelationshipType.OPEN_ACCESS),
                ))
            papers = await _run_strategies(self.source, paper, config, strategies)
            logger.info("[Perplexity] %d related papers for '%s'", len(papers), paper.title[:60])
            return papers
        except Exception as exc:
            logger.error("[Perplexity] discovery failed: %s", exc)
            return []

    async def _ask(
        self,
        paper: SourcePaper,
        template: str,
        limit: int,
        relationship: RelationshipType,
    ) -> List[DiscoveredPaper]:
        await self.rate_limiter.acquire(self.source)
        started = time.monotonic()
        try:
            resp = await self._client.chat.completions.create(
                model=self.model_name,
                messages=[
                    {
                        "role": "system",
                        "content": "You are a research assistant that recommends real, verifiable academic papers.",
                    },
                    {"role": "user", "content": template.format(limit=limit, paper=_describe_source_paper(paper))},
                ],
                temperature=0.2,
            )
            content = resp.choices[0].message.content or ""
        except asyncio.CancelledError:
            self.rate_limiter.release(self.source)
            raise
        except Exception as exc:
            self.rate_limiter.record_failure(self.source, (time.monotonic() - started) * 1000, str(exc))
            raise ProviderError(self.source, f"{type(exc).__name__}: {exc}") from exc

        self.rate_limiter.record_success(self.source, (time.monotonic() - started) * 1000)
        papers = parse_research_listing(content, relationship, paper)
        logger.debug("[Perplexity] %s query parsed %d papers", relationship.value, len(papers))
        return papers[:limit]
