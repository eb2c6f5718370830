"""
Extraction result cache.

Keeps recent extraction results keyed by a content hash so re-running the
pipeline over identical text does not pay for a second LLM call.
"""

import hashlib
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

import structlog

from substack_intel.core.models import ExtractionResult

logger = structlog.get_logger(__name__)


class CacheStats:
    """Track cache performance metrics."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class ExtractionCache:
    """
    TTL + LRU cache of ``ExtractionResult`` objects.

    Args:
        max_size: Maximum number of entries
        ttl_seconds: Lifetime of an entry
    """

    def __init__(self, max_size: int = 1000, ttl_seconds: int = 7 * 24 * 3600):
        self._entries: "OrderedDict[str, Tuple[ExtractionResult, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.stats = CacheStats()

    @staticmethod
    def make_key(model: str, newsletter_name: str, text: str) -> str:
        digest = hashlib.sha256()
        for part in (model or "", newsletter_name or "", text or ""):
            digest.update(part.encode("utf-8"))
            digest.update(b"\x00")
        return f"extraction:{digest.hexdigest()}"

    def get(self, key: str) -> Optional[ExtractionResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None

            result, expiry = entry
            if time.time() >= expiry:
                del self._entries[key]
                self.stats.evictions += 1
                self.stats.misses += 1
                logger.debug("Extraction cache entry expired", key=key[:24])
                return None

            self._entries.move_to_end(key)
            self.stats.hits += 1
            return result.model_copy(deep=True)

    def set(self, key: str, result: ExtractionResult, ttl: Optional[int] = None) -> None:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (result.model_copy(deep=True), time.time() + (ttl or self.ttl_seconds))
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.stats.evictions += 1

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Extraction cache cleared", entries=count)
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {**self.stats.to_dict(), "size": len(self._entries), "max_size": self.max_size}
