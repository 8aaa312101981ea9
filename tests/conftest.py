"""Shared pytest fixtures for multishot tests.

Provides a configurable mock engine, backend configs and common helpers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from multishot.core.errors import EngineError
from multishot.core.models import BackendConfig, PromptRequest, TokenUsage
from multishot.engines.base import BaseEngine, CostClass, EngineCapabilities, EngineResponse

# ============================================================================
# Mock Engine
# ============================================================================


class MockEngine(BaseEngine):
    """Mock engine for testing without real backend calls.

    Args:
        name: Backend name
        response: Text returned on success
        delay: Seconds to sleep before answering
        fail_count: Number of initial calls that fail
        fail_with: Exception type raised for failing calls
        always_fail: Fail every call
        available: Result of is_available()
    """

    def __init__(
        self,
        name: str = "mock",
        response: str = "mock response",
        delay: float = 0.0,
        fail_count: int = 0,
        fail_with: type[Exception] = EngineError,
        always_fail: bool = False,
        available: bool = True,
    ) -> None:
        super().__init__(BackendConfig(name=name, provider="mock", model=f"{name}-model"))
        self.response = response
        self.delay = delay
        self.fail_count = fail_count
        self.fail_with = fail_with
        self.always_fail = always_fail
        self.available = available
        self.call_count = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self.last_request: PromptRequest | None = None

    async def _complete(self, request: PromptRequest) -> EngineResponse:
        self.call_count += 1
        self.last_request = request
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.always_fail or self.call_count <= self.fail_count:
                raise self.fail_with(f"{self.name} failure #{self.call_count}")
            return EngineResponse(
                content=self.response,
                usage=TokenUsage(prompt_tokens=10, completion_tokens=len(self.response.split())),
            )
        finally:
            self.in_flight -= 1

    async def is_available(self) -> bool:
        return self.available

    def describe_capabilities(self) -> EngineCapabilities:
        return EngineCapabilities(max_context_size=4096, cost_class=CostClass.FREE)


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_delay: float) -> None:
    """Backoff sleep replacement that only yields to the loop."""
    await asyncio.sleep(0)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mock_engine_class() -> type[MockEngine]:
    """Provide MockEngine for tests that need custom instances."""
    return MockEngine


@pytest.fixture
def backend_config() -> Callable[..., BackendConfig]:
    """Build a BackendConfig for the mock provider."""

    def make(name: str, **kwargs: object) -> BackendConfig:
        return BackendConfig(name=name, provider="mock", model=f"{name}-model", **kwargs)  # type: ignore[arg-type]

    return make


@pytest.fixture
def request_message() -> PromptRequest:
    """A simple request shared by all backends."""
    return PromptRequest(message="Explain backpressure in one paragraph.")


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def instant_sleep() -> Callable[[float], object]:
    """Sleep function that skips backoff delays."""
    return no_sleep
