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

"""Chunked, paginated and streamed processing of large item lists.

Three ways to push a large collection through an async processing function:

- Pagination: process one page, addressed by page number or opaque cursor
- Streaming: process every chunk with bounded concurrency, collecting results
- Iteration: lazily yield chunk results in order, restartable from the start

A failing chunk is recorded and the remaining chunks continue.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import sys
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from multishot.concurrency.admission import AdmissionController
from multishot.core.errors import ChunkProcessingError, ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_CURSOR_PREFIX = "offset:"


@dataclass
class StreamConfig:
    """Configuration for stream processing.

    Attributes:
        chunk_size: Items per chunk
        concurrency_limit: Chunks processed at once
        timeout: Per-chunk timeout in seconds
        stream_threshold: Item count above which process_auto streams
    """

    chunk_size: int = 50
    concurrency_limit: int = 3
    timeout: float = 30.0
    stream_threshold: int = 1000

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.concurrency_limit <= 0:
            raise ConfigurationError(
                f"concurrency_limit must be positive, got {self.concurrency_limit}"
            )
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")


@dataclass
class PageRequest:
    """Which page to process.

    When cursor is set it takes precedence over page.
    """

    page: int = 0
    page_size: int = 50
    cursor: str | None = None


@dataclass
class PageInfo:
    """Pagination metadata returned with a page."""

    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool
    next_cursor: str | None = None
    previous_cursor: str | None = None


@dataclass
class ChunkError:
    """Failure of one chunk."""

    chunk_index: int
    error: str
    item_count: int


@dataclass
class ChunkResult(Generic[R]):
    """Output of one chunk, yielded by ChunkStream."""

    index: int
    items: list[R]
    error: ChunkError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class StreamMetrics:
    """Metrics for one processing run.

    Attributes:
        items_processed: Output items produced by successful chunks
        chunks_processed: Chunks that succeeded
        chunks_failed: Chunks that raised or timed out
        processing_time: Wall time in seconds
        peak_memory: Estimated bytes of results retained at once
        errors: Per-chunk failures
    """

    items_processed: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0
    processing_time: float = 0.0
    peak_memory: int = 0
    errors: list[ChunkError] = field(default_factory=list)
    _retained: int = field(default=0, repr=False)

    @property
    def average_chunk_time(self) -> float:
        chunks = self.chunks_processed + self.chunks_failed
        if chunks == 0:
            return 0.0
        return self.processing_time / chunks

    def retain(self, size: int) -> None:
        self._retained += size
        self.peak_memory = max(self.peak_memory, self._retained)

    def drop(self, size: int) -> None:
        self._retained = max(0, self._retained - size)


@dataclass
class StreamResult(Generic[R]):
    """Results of a full stream run, in chunk order."""

    items: list[R]
    metrics: StreamMetrics

    @property
    def completed(self) -> bool:
        """True when no chunk failed."""
        return not self.metrics.errors


@dataclass
class PaginatedResult(Generic[R]):
    """Results of one page."""

    items: list[R]
    pagination: PageInfo
    metrics: StreamMetrics


def encode_cursor(offset: int) -> str:
    """Encode an item offset as an opaque cursor."""
    return base64.urlsafe_b64encode(f"{_CURSOR_PREFIX}{offset}".encode()).decode("ascii")


def decode_cursor(cursor: str) -> int:
    """Decode a cursor produced by encode_cursor.

    Raises:
        ValueError: If the cursor is malformed
    """
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise ValueError(f"Invalid cursor: {cursor!r}") from e
    if not raw.startswith(_CURSOR_PREFIX):
        raise ValueError(f"Invalid cursor: {cursor!r}")
    try:
        offset = int(raw[len(_CURSOR_PREFIX) :])
    except ValueError as e:
        raise ValueError(f"Invalid cursor: {cursor!r}") from e
    if offset < 0:
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return offset


def _estimate_size(items: Sequence[Any]) -> int:
    return sys.getsizeof(items) + sum(sys.getsizeof(item) for item in items)


class StreamProcessor(Generic[T, R]):
    """Pushes item lists through an async chunk function.

    Example:
        >>> async def summarize(batch: list[str]) -> list[str]:
        ...     return [text[:20] for text in batch]
        >>> processor = StreamProcessor(summarize, StreamConfig(chunk_size=100))
        >>> result = await processor.process_stream(documents)
        >>> async for chunk in processor.iter_chunks(documents):
        ...     handle(chunk.items)
    """

    def __init__(
        self,
        process: Callable[[list[T]], Awaitable[list[R]]],
        config: StreamConfig | None = None,
        on_error: Callable[[ChunkError], None] | None = None,
    ) -> None:
        self._process = process
        self.config = config or StreamConfig()
        self._on_error = on_error

    def reconfigure(self, **changes: Any) -> None:
        """Replace configuration fields, validating the result."""
        values = {**self.config.__dict__, **changes}
        self.config = StreamConfig(**values)

    @staticmethod
    def chunk(items: Sequence[T], size: int) -> list[list[T]]:
        """Split items into consecutive chunks of at most size items."""
        if size <= 0:
            raise ConfigurationError(f"chunk size must be positive, got {size}")
        return [list(items[start : start + size]) for start in range(0, len(items), size)]

    async def _run_chunk(self, index: int, chunk: list[T]) -> ChunkResult[R]:
        """Process one chunk, converting any failure into a ChunkError."""
        try:
            items = await asyncio.wait_for(self._process(chunk), self.config.timeout)
        except TimeoutError:
            failure = ChunkProcessingError(
                f"Chunk {index} timed out after {self.config.timeout}s", index
            )
        except Exception as e:
            failure = ChunkProcessingError(f"Chunk {index} failed: {e}", index)
        else:
            return ChunkResult(index=index, items=list(items))

        error = ChunkError(chunk_index=index, error=str(failure), item_count=len(chunk))
        logger.warning(str(failure))
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception as e:
                logger.warning(f"Error callback failed for chunk {index}: {e}")
        return ChunkResult(index=index, items=[], error=error)

    async def _run_bounded(
        self, chunks: list[list[T]], metrics: StreamMetrics
    ) -> list[ChunkResult[R]]:
        """Run chunks under concurrency_limit permits, returning results in chunk order."""
        controller = AdmissionController(self.config.concurrency_limit, name="stream")

        async def run(index: int, chunk: list[T]) -> ChunkResult[R]:
            async with controller.permit():
                result = await self._run_chunk(index, chunk)
            metrics.retain(_estimate_size(result.items))
            return result

        return list(
            await asyncio.gather(*(run(index, chunk) for index, chunk in enumerate(chunks)))
        )

    def _record(self, metrics: StreamMetrics, result: ChunkResult[R]) -> None:
        if result.error is not None:
            metrics.chunks_failed += 1
            metrics.errors.append(result.error)
            return
        metrics.chunks_processed += 1
        metrics.items_processed += len(result.items)

    async def process_page(
        self, items: Sequence[T], request: PageRequest | None = None
    ) -> PaginatedResult[R]:
        """Process a single page of items.

        Raises:
            ValueError: If the cursor is malformed
            ConfigurationError: If page_size is not positive
        """
        request = request or PageRequest(page_size=self.config.chunk_size)
        if request.page_size <= 0:
            raise ConfigurationError(f"page_size must be positive, got {request.page_size}")

        total_items = len(items)
        if request.cursor is not None:
            start = decode_cursor(request.cursor)
        else:
            start = max(request.page, 0) * request.page_size
        end = min(start + request.page_size, total_items)
        page = start // request.page_size
        total_pages = -(-total_items // request.page_size)

        metrics = StreamMetrics()
        started = time.perf_counter()
        page_items = list(items[start:end])
        page_results: list[R] = []
        chunks = self.chunk(page_items, self.config.chunk_size)
        for result in await self._run_bounded(chunks, metrics):
            self._record(metrics, result)
            page_results.extend(result.items)
        metrics.processing_time = time.perf_counter() - started

        has_next = end < total_items
        has_previous = start > 0
        info = PageInfo(
            page=page,
            page_size=request.page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=has_next,
            has_previous=has_previous,
            next_cursor=encode_cursor(end) if has_next else None,
            previous_cursor=(
                encode_cursor(max(0, start - request.page_size)) if has_previous else None
            ),
        )
        return PaginatedResult(items=page_results, pagination=info, metrics=metrics)

    async def process_stream(self, items: Sequence[T]) -> StreamResult[R]:
        """Process every chunk with bounded concurrency.

        Results are assembled in chunk order, not completion order.
        """
        chunks = self.chunk(items, self.config.chunk_size)
        metrics = StreamMetrics()
        started = time.perf_counter()

        results = await self._run_bounded(chunks, metrics)

        collected: list[R] = []
        for result in results:
            self._record(metrics, result)
            collected.extend(result.items)
        metrics.processing_time = time.perf_counter() - started

        logger.debug(
            f"Processed {metrics.items_processed} items in {len(chunks)} chunks "
            f"({metrics.chunks_failed} failed) in {metrics.processing_time:.3f}s"
        )
        return StreamResult(items=collected, metrics=metrics)

    def iter_chunks(self, items: Sequence[T]) -> ChunkStream[T, R]:
        """Lazily process items chunk by chunk."""
        return ChunkStream(self, items)

    async def process_auto(
        self,
        items: Sequence[T],
        pagination: PageRequest | None = None,
        prefer_streaming: bool = False,
        stream_threshold: int | None = None,
    ) -> StreamResult[R] | PaginatedResult[R]:
        """Pick pagination or streaming based on the request and item count.

        stream_threshold overrides StreamConfig.stream_threshold for this call.
        """
        threshold = self.config.stream_threshold if stream_threshold is None else stream_threshold
        if pagination is not None and not prefer_streaming:
            return await self.process_page(items, pagination)
        if prefer_streaming or len(items) > threshold:
            return await self.process_stream(items)
        return await self.process_page(items, PageRequest(page=0, page_size=max(len(items), 1)))


class ChunkStream(Generic[T, R]):
    """Finite async iterable of chunk results.

    Each `async for` starts again from the first chunk. At most
    `concurrency_limit` chunks are in flight; the next chunk is only started
    once the consumer takes a result.
    """

    def __init__(self, processor: StreamProcessor[T, R], items: Sequence[T]) -> None:
        self._processor = processor
        self._items = items
        self.metrics = StreamMetrics()

    def __aiter__(self) -> AsyncIterator[ChunkResult[R]]:
        return self._generate()

    async def _generate(self) -> AsyncIterator[ChunkResult[R]]:
        processor = self._processor
        metrics = StreamMetrics()
        self.metrics = metrics
        chunks = iter(enumerate(processor.chunk(self._items, processor.config.chunk_size)))
        window: deque[asyncio.Task[ChunkResult[R]]] = deque()
        started = time.perf_counter()

        def fill() -> None:
            while len(window) < processor.config.concurrency_limit:
                nxt = next(chunks, None)
                if nxt is None:
                    return
                window.append(asyncio.create_task(processor._run_chunk(*nxt)))

        try:
            fill()
            while window:
                result = await window.popleft()
                fill()
                processor._record(metrics, result)
                size = _estimate_size(result.items)
                metrics.retain(size)
                yield result
                metrics.drop(size)
        finally:
            for task in window:
                task.cancel()
            metrics.processing_time = time.perf_counter() - started
