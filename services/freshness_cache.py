"""In-memory view cache whose entry lifetime depends on market state."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from prometheus_client import Counter

logger = logging.getLogger(__name__)

cache_hits = Counter("optionflow_cache_hits_total", "View cache hits")
cache_misses = Counter("optionflow_cache_misses_total", "View cache misses")


@dataclass
class CacheEntry:
    key: str
    payload: Any
    written_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.written_at + self.ttl


class FreshnessCache:
    """Key/value store with a TTL fixed at write time.

    Expiry is lazy: entries are dropped when read past ``written_at + ttl``.
    """

    def __init__(
        self,
        market_open_ttl: float,
        closed_market_ttl: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.market_open_ttl = float(market_open_ttl)
        self.closed_market_ttl = float(closed_market_ttl)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def _live(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._entries.pop(key, None)
            logger.debug("cache_expired key=%s", key)
            return None
        return entry

    def get(self, key: str) -> Any:
        entry = self._live(key)
        if entry is None:
            cache_misses.inc()
            return None
        cache_hits.inc()
        logger.debug("cache_hit key=%s", key)
        return entry.payload

    def has(self, key: str) -> bool:
        return self._live(key) is not None

    def set(self, key: str, payload: Any, market_open: bool) -> CacheEntry:
        ttl = self.market_open_ttl if market_open else self.closed_market_ttl
        entry = CacheEntry(key=key, payload=payload, written_at=self._clock(), ttl=ttl)
        self._entries[key] = entry
        logger.info("cache_set key=%s ttl=%.0fs market_open=%s", key, ttl, market_open)
        return entry

    def clear(self) -> None:
        """Drop every entry.  Mainly used in tests."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["CacheEntry", "FreshnessCache"]
