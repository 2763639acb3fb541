"""Abstract base classes defining the discovery contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from .config import DiscoveryConfiguration
from .models import DiscoveredPaper, DiscoverySource, RelatedPaperDiscoveryResult, SourcePaper


class DiscoverySourceClient(ABC):
    """Interface implemented by each external provider integration."""

    @property
    @abstractmethod
    def source(self) -> DiscoverySource:  # pragma: no cover - interface only
        """Return the provider this client talks to."""

    @abstractmethod
    async def discover(self, paper: SourcePaper, config: DiscoveryConfiguration) -> List[DiscoveredPaper]:
        """Return papers related to ``paper``; never raises, never returns None."""


class RelevanceScorer(ABC):
    """Interface for AI-backed relevance estimation over a batch of candidates."""

    @abstractmethod
    async def score_batch(
        self,
        paper: SourcePaper,
        candidates: Sequence[DiscoveredPaper],
    ) -> Dict[int, float]:
        """Map zero-based candidate index to a score in [0, 1].

        Indices missing from the mapping keep their existing score.
        """


class DiscoveryResultStore(ABC):
    """Keyed store for previously computed discovery results."""

    @abstractmethod
    async def get(self, paper_id: str, config: DiscoveryConfiguration) -> Optional[RelatedPaperDiscoveryResult]:
        """Return a stored result for this paper and configuration, if any."""

    @abstractmethod
    async def put(self, result: RelatedPaperDiscoveryResult, config: DiscoveryConfiguration) -> None:
        """Remember ``result`` for later lookups."""

    @abstractmethod
    async def invalidate(self, paper_id: str) -> None:
        """Drop every stored result for ``paper_id``."""
