from .related_discovery_service import RelatedPaperDiscoveryService, RelatedPaperDiscoveryServiceFactory

__all__ = [
    "RelatedPaperDiscoveryService",
    "RelatedPaperDiscoveryServiceFactory",
]
