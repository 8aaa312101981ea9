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

"""Per-backend circuit breaker.

Stops calling a backend that keeps failing and probes it again after a
recovery window. The circuit breaker has three states:

- CLOSED: Normal operation, calls are allowed
- OPEN: Backend is failing, calls are rejected without being made
- HALF_OPEN: Probing whether the backend has recovered

State transitions:
    CLOSED → OPEN: After `failure_threshold` consecutive failures
    OPEN → HALF_OPEN: On the first call at or after `next_attempt_time`
    HALF_OPEN → CLOSED: After `success_threshold` consecutive successes
    HALF_OPEN → OPEN: On any failure

Breakers are owned by a CircuitBreakerRegistry instance, one per backend
name, so unrelated orchestrators never share failure state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, TypeVar

from multishot.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting calls
    HALF_OPEN = "half_open"  # Probing recovery


_ALLOWED_TRANSITIONS: dict[CircuitState, frozenset[CircuitState]] = {
    CircuitState.CLOSED: frozenset({CircuitState.OPEN}),
    CircuitState.OPEN: frozenset({CircuitState.HALF_OPEN}),
    CircuitState.HALF_OPEN: frozenset({CircuitState.CLOSED, CircuitState.OPEN}),
}


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring.

    Attributes:
        total_calls: Calls that reached the breaker
        successful_calls: Calls that succeeded
        failed_calls: Calls that failed and were counted
        rejected_calls: Calls rejected while OPEN
        state_changes: Number of state transitions
        last_failure_time: Monotonic time of the last counted failure
        last_success_time: Monotonic time of the last success
        next_attempt_time: Monotonic time after which an OPEN breaker probes
        consecutive_failures: Failures since the last success
        consecutive_successes: Successes since the last failure
    """

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    next_attempt_time: float | None = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_calls + self.failed_calls
        if total == 0:
            return 0.0
        return (self.failed_calls / total) * 100


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior.

    Attributes:
        failure_threshold: Consecutive failures before opening (default: 5)
        success_threshold: Successes in HALF_OPEN needed to close (default: 3)
        recovery_timeout: Seconds an OPEN breaker waits before probing (default: 60)
        excluded_exceptions: Exception types that are not counted as failures
    """

    failure_threshold: int = 5
    success_threshold: int = 3
    recovery_timeout: float = 60.0
    excluded_exceptions: tuple[type[BaseException], ...] = field(default_factory=tuple)


class CircuitBreaker:
    """Circuit breaker guarding one backend.

    Example:
        >>> breaker = CircuitBreaker(name="gpt-4o")
        >>> result = await breaker.call(engine.execute, request)
        >>>
        >>> async with breaker:
        ...     result = await engine.execute(request)

    Thread Safety:
        This implementation is async-safe but not thread-safe.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            name: Identifier for this breaker (usually the backend name)
            config: Configuration options (uses defaults if None)
            clock: Monotonic time source, replaceable in tests
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._state_changed_at = clock()
        self._metrics = CircuitBreakerMetrics()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def metrics(self) -> CircuitBreakerMetrics:
        return self._metrics

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    @property
    def seconds_until_retry(self) -> float:
        """Seconds until an OPEN breaker lets the next call through."""
        if self._state != CircuitState.OPEN or self._metrics.next_attempt_time is None:
            return 0.0
        return max(0.0, self._metrics.next_attempt_time - self._clock())

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Illegal circuit transition for '{self.name}': "
                f"{old_state.value} → {new_state.value}"
            )

        self._state = new_state
        self._state_changed_at = self._clock()
        self._metrics.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._metrics.next_attempt_time = self._state_changed_at + self.config.recovery_timeout
        elif new_state == CircuitState.HALF_OPEN:
            self._metrics.consecutive_successes = 0
        else:
            self._metrics.consecutive_failures = 0
            self._metrics.consecutive_successes = 0
            self._metrics.next_attempt_time = None

        logger.info(
            f"Circuit breaker '{self.name}' state change: {old_state.value} → {new_state.value}"
        )

    def can_execute(self) -> bool:
        """Check whether a call would be let through right now."""
        if self._state != CircuitState.OPEN:
            return True
        return self.seconds_until_retry <= 0.0

    async def _before_call(self) -> None:
        async with self._lock:
            self._metrics.total_calls += 1
            if self._state != CircuitState.OPEN:
                return
            if self.seconds_until_retry <= 0.0:
                self._transition_to(CircuitState.HALF_OPEN)
                return

            error = self.reject()
        raise error

    def reject(self) -> CircuitOpenError:
        """Count a rejected call and build the error describing it."""
        self._metrics.rejected_calls += 1
        retry_after = self.seconds_until_retry
        return CircuitOpenError(
            f"Circuit breaker '{self.name}' is OPEN. Retry after {retry_after:.1f}s",
            engine=self.name,
            retry_after=retry_after,
        )

    async def record_success(self) -> None:
        """Record a successful call."""
        async with self._lock:
            self._metrics.successful_calls += 1
            self._metrics.last_success_time = self._clock()
            self._metrics.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                self._metrics.consecutive_successes += 1
                if self._metrics.consecutive_successes >= self.config.success_threshold:
                    recovered_after = self._metrics.consecutive_successes
                    self._transition_to(CircuitState.CLOSED)
                    logger.info(
                        f"Circuit breaker '{self.name}' recovered after "
                        f"{recovered_after} successful calls"
                    )

    async def record_failure(self, exception: BaseException | None = None) -> None:
        """Record a failed call.

        Args:
            exception: The exception that caused the failure (for filtering)
        """
        if exception is not None and isinstance(exception, self.config.excluded_exceptions):
            logger.debug(
                f"Circuit breaker '{self.name}' ignoring excluded exception: "
                f"{type(exception).__name__}"
            )
            return

        async with self._lock:
            self._metrics.failed_calls += 1
            self._metrics.last_failure_time = self._clock()
            self._metrics.consecutive_failures += 1
            self._metrics.consecutive_successes = 0

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                logger.warning(
                    f"Circuit breaker '{self.name}' reopened due to failure in HALF_OPEN"
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._metrics.consecutive_failures >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after "
                    f"{self._metrics.consecutive_failures} consecutive failures"
                )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke a coroutine function under breaker protection.

        Raises:
            CircuitOpenError: If the breaker is OPEN (func is not called)
        """
        async with self:
            return await func(*args, **kwargs)

    async def __aenter__(self) -> CircuitBreaker:
        await self._before_call()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        _exc_tb: Any,
    ) -> bool:
        if exc_type is None:
            await self.record_success()
        elif isinstance(exc_val, Exception):
            await self.record_failure(exc_val)
        return False

    def protect(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorator to protect a coroutine function with this breaker."""

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.call(func, *args, **kwargs)

        return wrapper

    def reset(self) -> None:
        """Reinitialize the breaker to CLOSED with fresh metrics (manual override)."""
        self._state = CircuitState.CLOSED
        self._state_changed_at = self._clock()
        self._metrics = CircuitBreakerMetrics()
        logger.info(f"Circuit breaker '{self.name}' reset to CLOSED state")

    def get_status(self) -> dict[str, Any]:
        """Get detailed status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "metrics": {
                "total_calls": self._metrics.total_calls,
                "successful_calls": self._metrics.successful_calls,
                "failed_calls": self._metrics.failed_calls,
                "rejected_calls": self._metrics.rejected_calls,
                "failure_rate": f"{self._metrics.failure_rate:.1f}%",
                "consecutive_failures": self._metrics.consecutive_failures,
                "consecutive_successes": self._metrics.consecutive_successes,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "success_threshold": self.config.success_threshold,
                "recovery_timeout": self.config.recovery_timeout,
            },
            "seconds_until_retry": self.seconds_until_retry,
            "time_in_current_state": self._clock() - self._state_changed_at,
        }

    def status_message(self) -> str:
        """One-line human readable status."""
        if self._state == CircuitState.OPEN:
            return f"{self.name}: OPEN, retry in {self.seconds_until_retry:.0f}s"
        if self._state == CircuitState.HALF_OPEN:
            return (
                f"{self.name}: HALF_OPEN, {self._metrics.consecutive_successes}/"
                f"{self.config.success_threshold} probe successes"
            )
        return f"{self.name}: CLOSED, {self._metrics.consecutive_failures} recent failures"


class CircuitBreakerRegistry:
    """Owns one CircuitBreaker per backend name.

    Example:
        >>> registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=3))
        >>> breaker = registry.get_or_create("gpt-4o")
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(
        self, name: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, config or self.config, clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def names(self) -> list[str]:
        return list(self._breakers)

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
