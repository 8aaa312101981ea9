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

"""Retry with exponential backoff, layered above the circuit breaker.

The breaker decides whether an attempt happens at all; the retry policy
decides how many attempts are made. Once the breaker rejects a call the
retry loop stops immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from multishot.core.errors import is_retryable
from multishot.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry configuration with exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry in seconds
        max_delay: Cap on the exponential part of the delay
        jitter: Upper bound of random jitter as a fraction of base_delay
    """

    max_retries: int = 1
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the retry following `attempt` (0-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.base_delay * self.jitter)  # nosec B311
        return delay


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried operation.

    Attributes:
        value: Return value of the successful attempt
        error: Exception that ended the loop, if no attempt succeeded
        attempts: Number of times the operation was actually invoked
    """

    value: T | None = None
    error: Exception | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryExecutor:
    """Runs an operation under a RetryPolicy and an optional breaker.

    Example:
        >>> executor = RetryExecutor(RetryPolicy(max_retries=2, base_delay=0.5))
        >>> outcome = await executor.run(lambda: engine.execute(request), breaker=breaker)
        >>> if outcome.ok:
        ...     print(outcome.value)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        breaker: CircuitBreaker | None = None,
        label: str = "operation",
    ) -> RetryOutcome[T]:
        """Run operation until it succeeds or retries are exhausted.

        Failures are returned in the outcome, never raised. Cancellation
        propagates. When the breaker opens after a failed attempt, the loop
        stops without sleeping and returns that attempt's error.
        """
        attempts = 0

        async def invoke() -> T:
            nonlocal attempts
            attempts += 1
            return await operation()

        last_error: Exception | None = None
        for attempt in range(self.policy.max_attempts):
            try:
                if breaker is not None:
                    value = await breaker.call(invoke)
                else:
                    value = await invoke()
                return RetryOutcome(value=value, attempts=attempts)
            except Exception as e:
                last_error = e

            if not is_retryable(last_error):
                logger.debug(f"{label}: {type(last_error).__name__} is not retryable")
                break
            if attempt + 1 >= self.policy.max_attempts:
                break
            if breaker is not None and not breaker.can_execute():
                # Keep the backend's own error rather than a rejection
                logger.debug(f"{label}: circuit '{breaker.name}' is open, not retrying")
                break

            delay = self.policy.get_delay(attempt)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{self.policy.max_attempts}): "
                f"{last_error}. Retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

        return RetryOutcome(error=last_error, attempts=attempts)
