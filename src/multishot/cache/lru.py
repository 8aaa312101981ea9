# Copyright 2025 KTTC AI (https://github.com/kttc-ai)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Bounded least-recently-used cache with hit/miss accounting.

Backed by an OrderedDict: the first key is always the least recently
accessed entry and is the one evicted when the cache is full.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from multishot.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[K, V]):
    """A cached value with access bookkeeping.

    Only the owning cache mutates entries.
    """

    key: K
    value: V
    created_at: float
    last_accessed: float
    access_count: int = 0


@dataclass(frozen=True)
class CacheStats:
    """Snapshot of cache counters."""

    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    hit_ratio: float
    oldest_entry_age: float | None = None


class LRUCache(Generic[K, V]):
    """Generic LRU cache.

    Example:
        >>> cache: LRUCache[str, int] = LRUCache(max_size=2)
        >>> cache.set("a", 1)
        >>> cache.get("a")
        1

    Thread Safety:
        Mutations are serialized by an internal lock.
    """

    def __init__(self, max_size: int = 20, clock: Callable[[], float] = time.monotonic) -> None:
        if max_size <= 0:
            raise ConfigurationError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[K, V]] = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def hits(self) -> int:
        return self._hits

    @property
    def misses(self) -> int:
        return self._misses

    @property
    def evictions(self) -> int:
        return self._evictions

    @property
    def hit_ratio(self) -> float:
        """Hits over total lookups (0.0-1.0)."""
        total = self._hits + self._misses
        if total == 0:
            return 0.0
        return self._hits / total

    def get(self, key: K, default: V | None = None) -> V | None:
        """Return the cached value and mark it most recently used.

        Like dict.get, a stored None and a miss both return None when no
        default is given. Use `has` or a sentinel default to tell them apart;
        hit and miss counters always reflect the real lookup.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            self._entries.move_to_end(key)
            entry.last_accessed = self._clock()
            entry.access_count += 1
            self._hits += 1
            return entry.value

    def set(self, key: K, value: V) -> None:
        """Insert or update a value, evicting the LRU entry if full."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None:
                entry.value = value
                entry.last_accessed = now
                self._entries.move_to_end(key)
                return

            if len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"LRU cache evicted {evicted!r}")

            self._entries[key] = CacheEntry(key=key, value=value, created_at=now, last_accessed=now)

    def get_or_set(self, key: K, factory: Callable[[], V]) -> V:
        """Return the cached value, computing and storing it on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                entry.last_accessed = self._clock()
                entry.access_count += 1
                self._hits += 1
                return entry.value
            self._misses += 1
            value = factory()
            self.set(key, value)
            return value

    def has(self, key: K) -> bool:
        """Check membership without touching recency or counters."""
        with self._lock:
            return key in self._entries

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    def values(self) -> list[V]:
        with self._lock:
            return [entry.value for entry in self._entries.values()]

    def entry(self, key: K) -> CacheEntry[K, V] | None:
        """Access bookkeeping for a key, without touching recency."""
        with self._lock:
            return self._entries.get(key)

    def least_recently_used(self, count: int = 1) -> list[K]:
        with self._lock:
            return list(self._entries)[:count]

    def evict_older_than(self, max_age: float) -> int:
        """Remove entries not accessed within max_age seconds.

        Returns:
            Number of entries removed
        """
        with self._lock:
            cutoff = self._clock() - max_age
            stale = [key for key, entry in self._entries.items() if entry.last_accessed < cutoff]
            for key in stale:
                del self._entries[key]
            self._evictions += len(stale)
            return len(stale)

    def stats(self) -> CacheStats:
        with self._lock:
            oldest = min((entry.created_at for entry in self._entries.values()), default=None)
            return CacheStats(
                size=len(self._entries),
                max_size=self.max_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                hit_ratio=self.hit_ratio,
                oldest_entry_age=None if oldest is None else self._clock() - oldest,
            )
