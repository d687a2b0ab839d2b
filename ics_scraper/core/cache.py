"""In-memory read-through cache for fetched page content.

Entries expire after a TTL and the cache holds at most ``max_size`` entries,
evicting the oldest insertion first. One cache instance is created per process
(or per run) and passed to the fetcher explicitly.
"""

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from ..config_models import CacheConfiguration

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    content: str
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


def create_cache_key(
    url: str, headers: Optional[dict[str, str]] = None, user_agent: Optional[str] = None
) -> str:
    """Build a cache key from everything that can change the response body."""
    headers_part = json.dumps(headers or {}, sort_keys=True)
    return f"{url}::{headers_part}::{user_agent or ''}"


class ResponseCache:
    """Bounded TTL cache keyed by URL + request headers."""

    def __init__(
        self,
        config: Optional[CacheConfiguration] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfiguration()
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.config.max_size > 0

    def get(self, key: str) -> Optional[str]:
        """Return cached content, or None when missing or expired."""
        if not self.enabled:
            return None

        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            logger.debug("Cache entry expired: %s", key)
            return None

        self.hits += 1
        return entry.content

    def set(self, key: str, content: str, ttl: Optional[float] = None) -> None:
        """Store content, evicting the oldest entries beyond ``max_size``."""
        if not self.enabled:
            return

        if key in self._entries:
            del self._entries[key]

        while len(self._entries) >= self.config.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Cache full; evicted oldest entry: %s", evicted)

        self._entries[key] = CacheEntry(
            content=content,
            stored_at=self._clock(),
            ttl=ttl if ttl is not None else self.config.ttl,
        )

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}
