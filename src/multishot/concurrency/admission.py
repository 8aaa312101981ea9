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

"""Admission control for concurrent backend calls.

A counting semaphore with explicit permits, FIFO waiters, acquisition
timeouts and over-release detection. Each release wakes at most one waiter
by handing its permit over directly, so the number of outstanding permits
never exceeds the configured maximum.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

from multishot.core.errors import (
    AdmissionTimeoutError,
    ConfigurationError,
    PermitReleaseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Permit:
    """Token proving a caller holds one admission slot."""

    controller: str
    serial: int


@dataclass
class AdmissionMetrics:
    """Metrics for admission monitoring.

    Attributes:
        total_acquired: Permits handed out
        total_waited: Acquisitions that had to queue
        timeouts: Acquisitions that gave up
        peak_outstanding: Highest number of permits held at once
        total_wait_time: Seconds spent queued across all callers
    """

    total_acquired: int = 0
    total_waited: int = 0
    timeouts: int = 0
    peak_outstanding: int = 0
    total_wait_time: float = 0.0

    @property
    def average_wait_time(self) -> float:
        if self.total_waited == 0:
            return 0.0
        return self.total_wait_time / self.total_waited


class AdmissionController:
    """Bounded permit pool with FIFO fairness.

    Example:
        >>> controller = AdmissionController(max_permits=2)
        >>> async with controller.permit(timeout=5.0):
        ...     await call_backend()
        >>> # Or wrap a coroutine function
        >>> result = await controller.execute(call_backend, prompt)

    Thread Safety:
        Counter updates never await between check and update, so this is
        async-safe. It is not thread-safe.
    """

    def __init__(self, max_permits: int, name: str = "admission") -> None:
        """Initialize the controller.

        Args:
            max_permits: Maximum permits outstanding at once (must be > 0)
            name: Identifier used in logs and status

        Raises:
            ConfigurationError: If max_permits is not positive
        """
        if max_permits <= 0:
            raise ConfigurationError(f"max_permits must be positive, got {max_permits}")

        self.name = name
        self._max_permits = max_permits
        self._available = max_permits
        self._outstanding: set[int] = set()
        self._waiters: deque[asyncio.Future[Permit]] = deque()
        self._serials = itertools.count(1)
        self._metrics = AdmissionMetrics()

    @property
    def max_permits(self) -> int:
        return self._max_permits

    @property
    def available_permits(self) -> int:
        return self._available

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    @property
    def queue_length(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def utilization(self) -> float:
        """Fraction of permits currently held (0.0-1.0)."""
        return self.outstanding / self._max_permits

    @property
    def is_fully_utilized(self) -> bool:
        return self._available == 0

    @property
    def metrics(self) -> AdmissionMetrics:
        return self._metrics

    def _issue(self) -> Permit:
        permit = Permit(controller=self.name, serial=next(self._serials))
        self._outstanding.add(permit.serial)
        self._metrics.total_acquired += 1
        self._metrics.peak_outstanding = max(self._metrics.peak_outstanding, self.outstanding)
        return permit

    async def acquire(self, timeout: float | None = None) -> Permit:
        """Acquire a permit, queueing in FIFO order if none is free.

        Args:
            timeout: Maximum seconds to wait (None waits forever)

        Returns:
            The permit, to be passed back to release()

        Raises:
            AdmissionTimeoutError: If no permit was granted within timeout
        """
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return self._issue()

        waiter: asyncio.Future[Permit] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._metrics.total_waited += 1
        started = time.monotonic()

        try:
            return await asyncio.wait_for(waiter, timeout)
        except TimeoutError as e:
            self._abandon(waiter)
            self._metrics.timeouts += 1
            logger.debug(f"Admission '{self.name}' timed out after {timeout}s")
            raise AdmissionTimeoutError(
                f"Admission '{self.name}' acquire timeout after {timeout}s"
            ) from e
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise
        finally:
            self._metrics.total_wait_time += time.monotonic() - started

    def _abandon(self, waiter: asyncio.Future[Permit]) -> None:
        """Drop a waiter that gave up, returning a permit it was handed late."""
        if waiter.done() and not waiter.cancelled():
            self.release(waiter.result())
            return
        waiter.cancel()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    def release(self, permit: Permit) -> None:
        """Return a permit, handing it to the oldest waiter if any.

        Raises:
            PermitReleaseError: If the permit is not currently outstanding
        """
        if permit.controller != self.name or permit.serial not in self._outstanding:
            raise PermitReleaseError(
                f"Cannot release permit {permit.serial} on '{self.name}': not outstanding"
            )
        self._outstanding.discard(permit.serial)

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(self._issue())
                return

        self._available += 1

    @asynccontextmanager
    async def permit(self, timeout: float | None = None) -> AsyncIterator[Permit]:
        """Hold a permit for the duration of an async with block."""
        acquired = await self.acquire(timeout)
        try:
            yield acquired
        finally:
            self.release(acquired)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> T:
        """Run a coroutine function while holding a permit."""
        async with self.permit(timeout):
            return await func(*args, **kwargs)

    def get_status(self) -> dict[str, Any]:
        """Get detailed status for monitoring."""
        return {
            "name": self.name,
            "max_permits": self._max_permits,
            "available_permits": self._available,
            "outstanding": self.outstanding,
            "queue_length": self.queue_length,
            "utilization": f"{self.utilization * 100:.1f}%",
            "metrics": {
                "total_acquired": self._metrics.total_acquired,
                "total_waited": self._metrics.total_waited,
                "timeouts": self._metrics.timeouts,
                "peak_outstanding": self._metrics.peak_outstanding,
                "average_wait_time": round(self._metrics.average_wait_time, 4),
            },
        }
