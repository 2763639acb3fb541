"""Async-safe in-memory store for discovery results."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional

from .config import DiscoveryConfiguration
from .interfaces import DiscoveryResultStore
from .models import RelatedPaperDiscoveryResult

logger = logging.getLogger(__name__)


class InMemoryDiscoveryResultStore(DiscoveryResultStore):
    """A lock-protected LRU with TTL keyed by source paper id and configuration digest.

    Results flagged for user review are not stored so a degraded run is
    retried on the next request.
    """

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: float = 6 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: "OrderedDict[str, RelatedPaperDiscoveryResult]" = OrderedDict()
        self._timestamps: Dict[str, float] = {}
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(paper_id: str, config: DiscoveryConfiguration) -> str:
        return f"{paper_id}:{config.cache_key()}"

    def __len__(self) -> int:
        return len(self._cache)

    async def get(self, paper_id: str, config: DiscoveryConfiguration) -> Optional[RelatedPaperDiscoveryResult]:
        key = self._key(paper_id, config)
        async with self._lock:
            if key not in self._cache:
                return None

            if self._clock() - self._timestamps[key] > self._ttl:
                del self._cache[key]
                del self._timestamps[key]
                return None

            self._cache.move_to_end(key)
            return self._cache[key]

    async def put(self, result: RelatedPaperDiscoveryResult, config: DiscoveryConfiguration) -> None:
        if result.requires_user_review:
            logger.debug("Not caching partial discovery result for %s", result.source_paper_id)
            return
        key = self._key(result.source_paper_id, config)
        async with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            elif len(self._cache) >= self._max_size:
                oldest = next(iter(self._cache))
                del self._cache[oldest]
                del self._timestamps[oldest]
            self._cache[key] = result
            self._timestamps[key] = self._clock()

    async def invalidate(self, paper_id: str) -> None:
        async with self._lock:
            # Ids may contain ":"; the configuration digest never does.
            for key in [k for k in self._cache if k.rsplit(":", 1)[0] == paper_id]:
                del self._cache[key]
                del self._timestamps[key]

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()
            self._timestamps.clear()
