"""
Analytics Cache Store

In-memory analytics cache with:
- TTL expiry checked at read time (no background sweeper)
- Version stamping (entries written under an old version read as misses)
- Tag index for invalidation without knowing exact keys
- LRU size bound
- AI/heuristic variant matching per read
- Statistics tracking

The cache is advisory: discarding it at any time never affects correctness,
so every failure inside it is logged and treated as a miss.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from compass_analytics.models import AnalyticsResults


logger = logging.getLogger(__name__)

VARIANT_AI = "ai"
VARIANT_HEURISTIC = "heuristic"

# Tag applied when a caller hands over an empty tag set
DEFAULT_TAG = "analytics"


@dataclass
class CacheStats:
    """Cache operation statistics."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "size": self.size,
            "hit_rate_percent": round(self.hit_rate * 100, 2),
        }


@dataclass
class CacheEntry:
    """A cached value; replaced wholesale on overwrite, never mutated."""
    key: str
    value: Any
    timestamp: float
    tags: Set[str] = field(default_factory=set)
    version: str = ""
    variant: str = VARIANT_HEURISTIC
    ttl: Optional[timedelta] = None


def variant_of(value: Any) -> str:
    """Classify a cached value as AI-produced or heuristic."""
    if isinstance(value, AnalyticsResults):
        return VARIANT_AI if value.is_ai else VARIANT_HEURISTIC
    if isinstance(value, dict):
        provider = (value.get("ai") or {}).get("provider")
        if isinstance(provider, str) and provider.lower() != VARIANT_HEURISTIC:
            return VARIANT_AI
    return VARIANT_HEURISTIC


def _matches_preference(entry: CacheEntry, prefer_ai: Optional[bool]) -> bool:
    if prefer_ai is None:
        return True
    if prefer_ai:
        return entry.variant == VARIANT_AI
    return entry.variant == VARIANT_HEURISTIC


class AnalyticsCache:
    """
    TTL + LRU + tag-indexed cache for analytics results.

    All operations are synchronous single-map mutations, so they are atomic
    with respect to the asyncio event loop.
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=10),
        max_size: int = 50,
        version: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.version = version
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = {}
        self._stats = CacheStats()

    # =========================================================================
    # Core Operations
    # =========================================================================

    def get(self, key: str, prefer_ai: Optional[bool] = None) -> Optional[CacheEntry]:
        """
        Get a live entry.

        Returns None if:
        - Key doesn't exist
        - Entry is older than its TTL
        - Entry was written under a different version
        - Entry variant does not satisfy prefer_ai (entry is kept)
        """
        try:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if self._is_expired(entry) or entry.version != self.version:
                self._remove(key)
                self._stats.misses += 1
                return None

            if not _matches_preference(entry, prefer_ai):
                self._stats.misses += 1
                return None

            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry

        except Exception as e:
            logger.error(f"Cache get error for {key}: {e}")
            self._stats.misses += 1
            return None

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Entry lookup without stats, recency or expiry side effects."""
        return self._entries.get(key)

    def set(
        self,
        key: str,
        value: Any,
        tags: Optional[Iterable[str]] = None,
        ttl: Optional[timedelta] = None,
    ) -> bool:
        """
        Store a value, overwriting any entry at the same key.

        Tags of the previous entry are unioned into the new one so earlier
        invalidation targets still reach it.
        """
        try:
            new_tags = set(tags or ())
            previous = self._entries.get(key)
            if previous is not None:
                new_tags |= previous.tags
                self._remove(key)

            if not new_tags:
                logger.warning(f"Cache set without tags for {key}, tagging as '{DEFAULT_TAG}'")
                new_tags.add(DEFAULT_TAG)

            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                timestamp=self._clock(),
                tags=new_tags,
                version=self.version,
                variant=variant_of(value),
                ttl=ttl,
            )
            for tag in new_tags:
                self._tag_index.setdefault(tag, set()).add(key)
            self._stats.sets += 1
            self._evict_overflow()
            return True

        except Exception as e:
            logger.error(f"Cache set error for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        """Delete a key from cache."""
        if key not in self._entries:
            return False
        self._remove(key)
        return True

    def invalidate_by_tag(self, tag: str) -> int:
        """Remove every entry carrying `tag`. Returns the number removed."""
        keys = list(self._tag_index.get(tag, ()))
        for key in keys:
            self._remove(key)
        self._stats.invalidations += len(keys)
        if keys:
            logger.debug(f"Invalidated {len(keys)} cache entries for tag {tag}")
        return len(keys)

    def clear(self, reset_stats: bool = False) -> int:
        """Remove all entries. Returns the number removed."""
        removed = len(self._entries)
        self._entries.clear()
        self._tag_index.clear()
        if reset_stats:
            self._stats = CacheStats()
        else:
            self._stats.invalidations += removed
        return removed

    def resize(self, max_size: int) -> int:
        """Change the capacity, evicting least recently used entries. Returns the number evicted."""
        self.max_size = max_size
        return self._evict_overflow()

    def set_version(self, version: str) -> None:
        """Bump the store version; older entries become misses."""
        if version != self.version:
            logger.info(f"Cache version {self.version!r} -> {version!r}")
            self.version = version

    # =========================================================================
    # Introspection
    # =========================================================================

    def stats(self) -> CacheStats:
        return replace(self._stats, size=len(self._entries))

    @property
    def size(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def tags_for(self, key: str) -> Set[str]:
        entry = self._entries.get(key)
        return set(entry.tags) if entry else set()

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_expired(self, entry: CacheEntry) -> bool:
        ttl = entry.ttl or self.ttl
        return self._clock() - entry.timestamp >= ttl.total_seconds()

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]

    def _evict_overflow(self) -> int:
        evicted = 0
        while len(self._entries) > self.max_size:
            oldest_key = next(iter(self._entries))
            self._remove(oldest_key)
            self._stats.evictions += 1
            evicted += 1
            logger.debug(f"Evicted cache entry {oldest_key}")
        return evicted
