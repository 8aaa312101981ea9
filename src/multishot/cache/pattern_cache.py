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

"""Compiled regular expression cache.

Compiling the same patterns over and over (intent matching, response
post-processing) is wasteful, so compiled patterns are memoized in an
LRUCache keyed by (pattern, flags).
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from multishot.cache.lru import LRUCache
from multishot.core.errors import PatternError

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Outcome of matching one pattern against some content.

    Attributes:
        matched: Whether the pattern matched at all
        match: First match object (None if unmatched)
        all_matches: Every matched substring (find_all only)
        match_time: Seconds spent compiling and matching
        from_cache: Whether the compiled pattern came from the cache
        error: Compilation error message for invalid patterns
    """

    matched: bool
    match: re.Match[str] | None = None
    all_matches: list[str] = field(default_factory=list)
    match_time: float = 0.0
    from_cache: bool = False
    error: str | None = None


@dataclass
class BatchMatchResult:
    """Outcome of matching many patterns against the same content."""

    results: dict[str, MatchResult]
    total_time: float
    cache_hits: int

    @property
    def matched_patterns(self) -> list[str]:
        return [pattern for pattern, result in self.results.items() if result.matched]

    @property
    def errors(self) -> dict[str, str]:
        return {
            pattern: result.error
            for pattern, result in self.results.items()
            if result.error is not None
        }


@dataclass(frozen=True)
class PatternCacheStats:
    """Pattern cache counters."""

    size: int
    max_size: int
    total_lookups: int
    hits: int
    misses: int
    hit_ratio: float
    total_compilation_time: float

    @property
    def average_compilation_time(self) -> float:
        if self.misses == 0:
            return 0.0
        return self.total_compilation_time / self.misses


class PatternCache:
    """Memoizes compiled patterns.

    Example:
        >>> patterns = PatternCache()
        >>> patterns.test(r"\\bcompare\\b", "Compare these answers").matched
        True
    """

    def __init__(self, max_size: int = 100, default_flags: int = re.IGNORECASE) -> None:
        self.default_flags = default_flags
        self._cache: LRUCache[tuple[str, int], re.Pattern[str]] = LRUCache(max_size=max_size)
        self._compilation_time = 0.0

    def _lookup(self, pattern: str, flags: int | None) -> tuple[re.Pattern[str], bool]:
        key = (pattern, self.default_flags if flags is None else flags)
        compiled = self._cache.get(key)
        if compiled is not None:
            return compiled, True

        started = time.perf_counter()
        try:
            compiled = re.compile(key[0], key[1])
        except re.error as e:
            raise PatternError(f"Invalid regex pattern {pattern!r}: {e}") from e
        finally:
            self._compilation_time += time.perf_counter() - started

        self._cache.set(key, compiled)
        return compiled, False

    def compile(self, pattern: str, flags: int | None = None) -> re.Pattern[str]:
        """Return the compiled pattern, compiling at most once per key.

        Raises:
            PatternError: If the pattern is invalid
        """
        compiled, _ = self._lookup(pattern, flags)
        return compiled

    def _match(
        self, pattern: str, content: str, flags: int | None, *, collect_all: bool
    ) -> MatchResult:
        started = time.perf_counter()
        try:
            compiled, from_cache = self._lookup(pattern, flags)
        except PatternError as e:
            logger.warning(str(e))
            return MatchResult(
                matched=False, match_time=time.perf_counter() - started, error=str(e)
            )

        match = compiled.search(content)
        all_matches = [m.group(0) for m in compiled.finditer(content)] if collect_all else []
        return MatchResult(
            matched=match is not None,
            match=match,
            all_matches=all_matches,
            match_time=time.perf_counter() - started,
            from_cache=from_cache,
        )

    def test(self, pattern: str, content: str, flags: int | None = None) -> MatchResult:
        """Check whether pattern matches anywhere in content."""
        return self._match(pattern, content, flags, collect_all=False)

    def search(self, pattern: str, content: str, flags: int | None = None) -> re.Match[str] | None:
        return self._match(pattern, content, flags, collect_all=False).match

    def find_all(self, pattern: str, content: str, flags: int | None = None) -> MatchResult:
        """Match and collect every matched substring."""
        return self._match(pattern, content, flags, collect_all=True)

    def count(self, pattern: str, content: str, flags: int | None = None) -> int:
        return len(self.find_all(pattern, content, flags).all_matches)

    def batch_match(
        self, patterns: Iterable[str], content: str, flags: int | None = None
    ) -> BatchMatchResult:
        """Match several patterns; an invalid pattern only affects its own entry."""
        started = time.perf_counter()
        results = {pattern: self.test(pattern, content, flags) for pattern in patterns}
        return BatchMatchResult(
            results=results,
            total_time=time.perf_counter() - started,
            cache_hits=sum(1 for result in results.values() if result.from_cache),
        )

    def preload(self, patterns: Iterable[str], flags: int | None = None) -> int:
        """Compile patterns ahead of time; invalid ones are logged and skipped."""
        loaded = 0
        for pattern in patterns:
            try:
                self.compile(pattern, flags)
            except PatternError as e:
                logger.warning(f"Skipping pattern during preload: {e}")
                continue
            loaded += 1
        return loaded

    def clear(self) -> None:
        self._cache.clear()
        self._compilation_time = 0.0

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> PatternCacheStats:
        cache_stats = self._cache.stats()
        return PatternCacheStats(
            size=cache_stats.size,
            max_size=cache_stats.max_size,
            total_lookups=cache_stats.hits + cache_stats.misses,
            hits=cache_stats.hits,
            misses=cache_stats.misses,
            hit_ratio=cache_stats.hit_ratio,
            total_compilation_time=self._compilation_time,
        )
