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

"""Unit tests for the LRU cache."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from multishot.cache.lru import LRUCache
from multishot.core.errors import ConfigurationError

pytestmark = pytest.mark.unit


class TestLRUCacheBasics:
    """Lookups, updates and accounting."""

    def test_rejects_non_positive_size(self) -> None:
        with pytest.raises(ConfigurationError):
            LRUCache(max_size=0)

    def test_get_hit_and_miss(self) -> None:
        cache: LRUCache[str, int] = LRUCache(max_size=3)
        cache.set("a", 1)

        assert cache.get("a") == 1
        assert cache.get("missing") is None
        assert cache.get("missing", 7) == 7
        assert cache.hits == 1
        assert cache.misses == 2
        assert cache.hit_ratio == pytest.approx(1 / 3)

    def test_stored_none_is_a_hit(self) -> None:
        cache: LRUCache[str, int | None] = LRUCache(max_size=3)
        cache.set("empty", None)
        missing = object()

        assert cache.get("empty", missing) is None
        assert cache.get("absent", missing) is missing
        assert cache.has("empty")
        assert not cache.has("absent")
        assert cache.hits == 1
        assert cache.misses == 1

    def test_update_replaces_value_without_eviction(self) -> None:
        cache: LRUCache[str, int] = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)

        assert len(cache) == 2
        assert cache.get("a") == 10
        assert cache.evictions == 0

    def test_get_or_set_calls_factory_once(self) -> None:
        cache: LRUCache[str, int] = LRUCache()
        calls = 0

        def factory() -> int:
            nonlocal calls
            calls += 1
            return 42

        assert cache.get_or_set("answer", factory) == 42
        assert cache.get_or_set("answer", factory) == 42
        assert calls == 1
        assert cache.hits == 1
        assert cache.misses == 1

    def test_has_does_not_touch_recency(self) -> None:
        cache: LRUCache[str, int] = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.has("a")
        assert "b" in cache
        assert cache.keys() == ["a", "b"]
        assert cache.hits == 0

    def test_delete_and_clear(self) -> None:
        cache: LRUCache[str, int] = LRUCache()
        cache.set("a", 1)
        cache.get("a")

        assert cache.delete("a")
        assert not cache.delete("a")

        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0
        assert cache.hits == 0
        assert cache.misses == 0


class TestLRUEviction:
    """Least recently used entries go first."""

    def test_evicts_least_recently_inserted(self) -> None:
        cache: LRUCache[str, int] = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert "a" not in cache
        assert cache.keys() == ["b", "c"]
        assert cache.evictions == 1

    def test_get_refreshes_recency(self) -> None:
        """Reading an entry protects it from the next eviction."""
        cache: LRUCache[str, int] = LRUCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.keys() == ["a", "c"]
        assert cache.least_recently_used() == ["a"]

    def test_evict_older_than(self, manual_clock) -> None:
        cache: LRUCache[str, int] = LRUCache(max_size=10, clock=manual_clock)
        cache.set("old", 1)
        manual_clock.advance(30.0)
        cache.set("new", 2)
        manual_clock.advance(30.0)

        removed = cache.evict_older_than(45.0)

        assert removed == 1
        assert cache.keys() == ["new"]
        assert cache.evictions == 1

    def test_access_bookkeeping(self, manual_clock) -> None:
        cache: LRUCache[str, int] = LRUCache(clock=manual_clock)
        cache.set("a", 1)
        manual_clock.advance(5.0)
        cache.get("a")
        cache.get("a")

        entry = cache.entry("a")
        assert entry is not None
        assert entry.access_count == 2
        assert entry.last_accessed - entry.created_at == 5.0

    def test_stats(self, manual_clock) -> None:
        cache: LRUCache[str, int] = LRUCache(max_size=1, clock=manual_clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("b")
        cache.get("a")
        manual_clock.advance(2.0)

        stats = cache.stats()
        assert stats.size == 1
        assert stats.max_size == 1
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.evictions == 1
        assert stats.hit_ratio == 0.5
        assert stats.oldest_entry_age == 2.0

    def test_empty_stats(self) -> None:
        stats = LRUCache().stats()
        assert stats.size == 0
        assert stats.hit_ratio == 0.0
        assert stats.oldest_entry_age is None


class TestLRUProperties:
    """Property-based checks against a reference model."""

    @given(
        max_size=st.integers(min_value=1, max_value=8),
        operations=st.lists(
            st.tuples(st.sampled_from(["get", "set"]), st.integers(min_value=0, max_value=12)),
            max_size=60,
        ),
    )
    @settings(max_examples=100)
    def test_matches_reference_model(
        self, max_size: int, operations: list[tuple[str, int]]
    ) -> None:
        """Size never exceeds max_size and contents follow LRU order."""
        cache: LRUCache[int, int] = LRUCache(max_size=max_size)
        model: list[int] = []

        for operation, key in operations:
            if operation == "set":
                cache.set(key, key)
                if key in model:
                    model.remove(key)
                elif len(model) >= max_size:
                    model.pop(0)
                model.append(key)
            else:
                value = cache.get(key)
                if key in model:
                    assert value == key
                    model.remove(key)
                    model.append(key)
                else:
                    assert value is None

            assert len(cache) <= max_size
            assert cache.keys() == model
