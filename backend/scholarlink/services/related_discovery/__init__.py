"""Related-paper discovery package exposing the public API."""

from .config import DiscoveryConfiguration
from .coordinator import DiscoveryCoordinator
from .models import (
    DiscoveredPaper,
    DiscoverySource,
    RelatedPaperDiscoveryResult,
    RelationshipType,
    SourcePaper,
)
from .rate_limiter import APIRateLimitManager
from .synthesis import AISynthesisEngine

__all__ = [
    "AISynthesisEngine",
    "APIRateLimitManager",
    "DiscoveredPaper",
    "DiscoveryConfiguration",
    "DiscoveryCoordinator",
    "DiscoverySource",
    "RelatedPaperDiscoveryResult",
    "RelationshipType",
    "SourcePaper",
]
