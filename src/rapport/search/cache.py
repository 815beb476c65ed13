"""Bounded LRU caches with a TTL staleness rule.

Both caches are constructed explicitly and injected into the generator and
search engine.  Each guards its state with a :class:`threading.Lock`; no lock
is ever held across an await.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from rapport.search.types import SimilarityResult

logger = logging.getLogger(__name__)

K = TypeVar("K", bound="Hashable")
V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[V]):
    """A cached value with its insertion time (clock seconds)."""

    value: V
    inserted_at: float


class TTLCache(Generic[K, V]):
    """LRU cache where entries older than *ttl* seconds read as a miss.

    Eviction is by recency of access.  Expired entries are dropped lazily
    when looked up.
    """

    def __init__(
        self,
        *,
        max_size: int,
        ttl: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            msg = f"max_size must be positive, got {max_size}"
            raise ValueError(msg)
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_entry(self, key: K) -> CacheEntry[V] | None:
        """Return the fresh entry for *key* and mark it most recently used."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if now - entry.inserted_at >= self._ttl:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def get(self, key: K) -> V | None:
        entry = self.get_entry(key)
        return None if entry is None else entry.value

    def put(self, key: K, value: V) -> CacheEntry[V]:
        """Insert or overwrite *key*, evicting the least recently used entry if full."""
        entry = CacheEntry(value=value, inserted_at=self._clock())
        with self._lock:
            self._insert(key, entry)
        return entry

    def _insert(self, key: K, entry: CacheEntry[V]) -> None:
        # Caller holds the lock
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = entry
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    def discard(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        """Presence check that ignores the TTL and does not touch recency."""
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl(self) -> float:
        return self._ttl


class EmbeddingCache(TTLCache[str, list[float]]):
    """Fingerprint → embedding vector.  Default capacity 10,000, TTL one hour."""

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        ttl: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(max_size=max_size, ttl=ttl, clock=clock)


class QueryResultCache(TTLCache[tuple, list["SimilarityResult"]]):
    """(owner, query, options) → ranked results.  Default capacity 1,000, TTL 30 minutes.

    Keys are tuples whose first element is the owner id, so one owner's
    entries can be dropped after that owner's data changes.  Each owner also
    has a generation number, bumped on invalidation: a search reads it before
    querying the store and stores its results with :meth:`put_if_current`,
    which refuses results computed before the owner's last write.
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        ttl: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(max_size=max_size, ttl=ttl, clock=clock)
        self._generations: dict[str, int] = {}

    def generation(self, owner_id: str) -> int:
        with self._lock:
            return self._generations.get(owner_id, 0)

    def put_if_current(
        self, key: tuple, value: list[SimilarityResult], generation: int
    ) -> bool:
        """Insert *value* only if the key's owner is still at *generation*."""
        entry = CacheEntry(value=value, inserted_at=self._clock())
        with self._lock:
            if self._generations.get(key[0], 0) != generation:
                return False
            self._insert(key, entry)
        return True

    def invalidate_owner(self, owner_id: str) -> int:
        """Drop every cached result list for *owner_id*.  Returns the number dropped."""
        with self._lock:
            self._generations[owner_id] = self._generations.get(owner_id, 0) + 1
            stale = [key for key in self._entries if key and key[0] == owner_id]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Invalidated %d cached queries for owner", len(stale))
        return len(stale)
