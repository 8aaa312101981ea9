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

"""Unit tests for the admission controller."""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from multishot.concurrency.admission import AdmissionController, Permit
from multishot.core.errors import (
    AdmissionTimeoutError,
    ConfigurationError,
    PermitReleaseError,
)

pytestmark = pytest.mark.unit


class TestAdmissionBasics:
    """Acquire and release without contention."""

    def test_rejects_non_positive_max(self) -> None:
        """Zero or negative permits is a configuration error."""
        with pytest.raises(ConfigurationError):
            AdmissionController(0)
        with pytest.raises(ConfigurationError):
            AdmissionController(-3)

    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        """Permits are counted out and back in."""
        controller = AdmissionController(2)

        first = await controller.acquire()
        second = await controller.acquire()
        assert controller.available_permits == 0
        assert controller.outstanding == 2
        assert controller.is_fully_utilized
        assert controller.utilization == 1.0

        controller.release(first)
        controller.release(second)
        assert controller.available_permits == 2
        assert controller.outstanding == 0

    @pytest.mark.asyncio
    async def test_double_release_detected(self) -> None:
        """Releasing the same permit twice raises."""
        controller = AdmissionController(1)
        permit = await controller.acquire()
        controller.release(permit)

        with pytest.raises(PermitReleaseError):
            controller.release(permit)
        assert controller.available_permits == 1

    @pytest.mark.asyncio
    async def test_foreign_permit_rejected(self) -> None:
        """A permit from another controller cannot be released here."""
        first = AdmissionController(1, name="first")
        second = AdmissionController(1, name="second")
        permit = await first.acquire()

        with pytest.raises(PermitReleaseError):
            second.release(permit)

    def test_unknown_permit_rejected(self) -> None:
        """Releasing a fabricated permit raises without changing counts."""
        controller = AdmissionController(1)
        with pytest.raises(PermitReleaseError):
            controller.release(Permit(controller=controller.name, serial=99))
        assert controller.available_permits == 1


class TestAdmissionQueueing:
    """FIFO waiting, timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_waiters_are_served_in_fifo_order(self) -> None:
        """Waiters acquire in arrival order."""
        controller = AdmissionController(1)
        holder = await controller.acquire()
        order: list[int] = []

        async def waiter(index: int) -> None:
            permit = await controller.acquire()
            order.append(index)
            controller.release(permit)

        tasks = [asyncio.create_task(waiter(i)) for i in range(5)]
        await asyncio.sleep(0)
        assert controller.queue_length == 5

        controller.release(holder)
        await asyncio.gather(*tasks)

        assert order == [0, 1, 2, 3, 4]
        assert controller.available_permits == 1

    @pytest.mark.asyncio
    async def test_release_hands_permit_to_waiter(self) -> None:
        """A release with waiters never raises the available count."""
        controller = AdmissionController(1)
        holder = await controller.acquire()
        task = asyncio.create_task(controller.acquire())
        await asyncio.sleep(0)

        controller.release(holder)
        assert controller.available_permits == 0

        handed = await task
        assert controller.outstanding == 1
        controller.release(handed)
        assert controller.available_permits == 1

    @pytest.mark.asyncio
    async def test_timeout_removes_waiter(self) -> None:
        """A timed-out waiter leaves the queue and later releases are unaffected."""
        controller = AdmissionController(1)
        holder = await controller.acquire()

        with pytest.raises(AdmissionTimeoutError):
            await controller.acquire(timeout=0.01)

        assert controller.queue_length == 0
        assert controller.metrics.timeouts == 1

        controller.release(holder)
        assert controller.available_permits == 1

    @pytest.mark.asyncio
    async def test_admission_timeout_is_a_timeout_error(self) -> None:
        """Callers can catch the builtin TimeoutError."""
        controller = AdmissionController(1)
        await controller.acquire()

        with pytest.raises(TimeoutError):
            await controller.acquire(timeout=0.01)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak(self) -> None:
        """Cancelling a queued acquire leaves the permit count intact."""
        controller = AdmissionController(1)
        holder = await controller.acquire()
        task = asyncio.create_task(controller.acquire())
        await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        controller.release(holder)
        assert controller.available_permits == 1
        assert controller.outstanding == 0


class TestAdmissionScopes:
    """Scoped usage releases on every exit path."""

    @pytest.mark.asyncio
    async def test_permit_context_releases_on_error(self) -> None:
        """The permit is returned when the block raises."""
        controller = AdmissionController(1)

        with pytest.raises(ValueError):
            async with controller.permit():
                assert controller.available_permits == 0
                raise ValueError("boom")

        assert controller.available_permits == 1

    @pytest.mark.asyncio
    async def test_execute_returns_result(self) -> None:
        """execute runs the coroutine function under a permit."""
        controller = AdmissionController(1)

        async def double(value: int) -> int:
            assert controller.outstanding == 1
            return value * 2

        assert await controller.execute(double, 21) == 42
        assert controller.outstanding == 0

    @pytest.mark.asyncio
    async def test_status_reports_counts(self) -> None:
        """get_status exposes counts for monitoring."""
        controller = AdmissionController(4, name="status")
        permit = await controller.acquire()

        status = controller.get_status()
        assert status["name"] == "status"
        assert status["outstanding"] == 1
        assert status["available_permits"] == 3
        assert status["utilization"] == "25.0%"

        controller.release(permit)


class TestAdmissionProperties:
    """Property-based checks of the permit invariant."""

    @given(
        max_permits=st.integers(min_value=1, max_value=5),
        tasks=st.integers(min_value=1, max_value=20),
    )
    @settings(max_examples=30, deadline=None)
    def test_never_more_than_max_in_flight(self, max_permits: int, tasks: int) -> None:
        """At most max_permits holders at once, and all permits come back."""

        async def scenario() -> tuple[int, int]:
            controller = AdmissionController(max_permits)
            in_flight = 0
            peak = 0

            async def work() -> None:
                nonlocal in_flight, peak
                async with controller.permit():
                    in_flight += 1
                    peak = max(peak, in_flight)
                    await asyncio.sleep(0)
                    in_flight -= 1

            await asyncio.gather(*(work() for _ in range(tasks)))
            assert controller.available_permits + controller.outstanding == max_permits
            return peak, controller.available_permits

        peak, available = asyncio.run(scenario())
        assert peak <= max_permits
        assert available == max_permits
