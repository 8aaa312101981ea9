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

"""Fan-out/fan-in orchestration across backend engines.

One request goes to every configured backend (optionally several runs each).
Every task is passed through, in order:

1. Circuit pre-check: an OPEN breaker fails the task without taking a permit
2. Admission: a permit from the run's AdmissionController (parallel mode)
3. Retry: exponential backoff for retryable failures
4. Circuit breaker: records the outcome of every backend invocation
5. Timeout: each invocation races asyncio.wait_for

Backend failures are recorded in the AggregateResult, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from multishot.concurrency.admission import AdmissionController
from multishot.core.errors import (
    AdmissionTimeoutError,
    EngineReportedError,
    EngineTimeoutError,
    FailureKind,
)
from multishot.core.models import (
    AggregateResult,
    BackendConfig,
    BackendResult,
    ExecutionMode,
    FailureDescriptor,
    ProgressStatus,
    ProgressUpdate,
    PromptRequest,
    RunOptions,
)
from multishot.engines.base import BaseEngine
from multishot.engines.factory import EngineFactory
from multishot.orchestration.metrics import BackendStats, RunCounters
from multishot.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from multishot.resilience.retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


def _reported_failure(name: str, result: BackendResult) -> EngineReportedError:
    """Turn a failed result returned by an engine into a raisable error."""
    if result.error is None:
        return EngineReportedError(
            f"Backend '{name}' returned a failed result without an error", engine=name
        )
    return EngineReportedError(
        result.error.message,
        engine=name,
        retryable=result.error.retryable,
        reported_type=result.error.error_type,
    )


@dataclass
class _RunState:
    """Mutable bookkeeping for one run."""

    request: PromptRequest
    options: RunOptions
    aggregate: AggregateResult
    counters: RunCounters
    executor: RetryExecutor
    total: int
    progress: ProgressCallback | None = None
    unavailable: set[str] = field(default_factory=set)
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    completed: int = 0

    def emit(
        self,
        backend: str,
        run_index: int,
        status: ProgressStatus,
        result: BackendResult | None = None,
    ) -> None:
        if self.progress is None:
            return
        update = ProgressUpdate(
            backend=backend,
            run_index=run_index,
            status=status,
            completed=self.completed,
            total=self.total,
            result=result,
        )
        try:
            self.progress(update)
        except Exception as e:
            logger.warning(f"Progress callback failed for {backend}#{run_index}: {e}")


class Orchestrator:
    """Runs one request across many backends.

    Features:
    - Parallel execution bounded by an AdmissionController
    - Sequential execution for rate-sensitive setups
    - Per-backend circuit breakers shared across runs of this orchestrator
    - Retries with exponential backoff and jitter
    - Partial failure tolerance with deterministic result ordering

    Example:
        >>> orchestrator = Orchestrator()
        >>> options = RunOptions(backends=[...], max_concurrency=2, retries=1)
        >>> aggregate = await orchestrator.run(PromptRequest(message="Hi"), options)
        >>> print(aggregate.succeeded, aggregate.failed)
    """

    def __init__(
        self,
        engines: Mapping[str, BaseEngine] | None = None,
        *,
        factory: Callable[[BackendConfig], BaseEngine] | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize orchestrator.

        Args:
            engines: Pre-built engines keyed by backend name
            factory: Builds engines for backends without a registered engine
            breakers: Breaker registry (a new one is created if None)
            breaker_config: Config for a newly created registry
            sleep: Sleep function used for backoff and sequential pacing
        """
        self._engines: dict[str, BaseEngine] = dict(engines or {})
        self._built: dict[BackendConfig, BaseEngine] = {}
        self._factory = factory or EngineFactory()
        self.breakers = breakers or CircuitBreakerRegistry(breaker_config)
        self._sleep = sleep
        self._stats: dict[str, BackendStats] = {}

    def register_engine(self, engine: BaseEngine, name: str | None = None) -> None:
        """Use engine for every backend with this name."""
        self._engines[name or engine.name] = engine
        logger.info(f"Registered engine '{name or engine.name}'")

    def resolve_engine(self, config: BackendConfig) -> BaseEngine:
        """Return the engine for a backend, building it if needed.

        Raises:
            ConfigurationError: If the engine cannot be built
        """
        engine = self._engines.get(config.name) or self._built.get(config)
        if engine is None:
            engine = self._factory(config)
            self._built[config] = engine
        return engine

    async def check_availability(self, backends: list[BackendConfig]) -> dict[str, bool]:
        """Probe all backends concurrently. A probe that raises counts as unavailable."""

        async def probe(config: BackendConfig) -> bool:
            try:
                return await self.resolve_engine(config).is_available()
            except Exception as e:
                logger.warning(f"Availability probe for '{config.name}' failed: {e}")
                return False

        statuses = await asyncio.gather(*(probe(config) for config in backends))
        return {config.name: status for config, status in zip(backends, statuses, strict=True)}

    async def run(
        self,
        request: PromptRequest,
        options: RunOptions,
        progress_callback: ProgressCallback | None = None,
    ) -> AggregateResult:
        """Send request to every backend in options.

        Args:
            request: The request shared by all backends
            options: Validated run options
            progress_callback: Called on every task start, finish and skip

        Returns:
            AggregateResult with one result per (backend, run_index) attempted

        Raises:
            ConfigurationError: If an engine cannot be built (before any work)
        """
        engines = {config.name: self.resolve_engine(config) for config in options.backends}
        runs = options.effective_runs(request)

        counters = RunCounters(
            mode=options.mode.value,
            max_concurrency=options.max_concurrency,
            timeout=options.timeout,
            retries=options.retries,
            total_tasks=len(options.backends) * runs,
        )
        aggregate = AggregateResult(
            backend_order=[config.name for config in options.backends],
            runs_per_backend=runs,
            require_success=options.require_success,
            counters=counters,
        )
        if not options.backends:
            return aggregate

        policy = RetryPolicy(
            max_retries=options.retries,
            base_delay=options.retry_base_delay,
            max_delay=options.retry_max_delay,
            jitter=options.retry_jitter,
        )
        state = _RunState(
            request=request,
            options=options,
            aggregate=aggregate,
            counters=counters,
            executor=RetryExecutor(policy, sleep=self._sleep),
            total=counters.total_tasks,
            progress=progress_callback,
        )

        started = time.perf_counter()
        if options.check_availability:
            statuses = await self.check_availability(options.backends)
            state.unavailable = {name for name, ok in statuses.items() if not ok}

        tasks = [(config, index) for config in options.backends for index in range(runs)]
        if options.mode == ExecutionMode.PARALLEL:
            admission = AdmissionController(
                options.max_concurrency, name=f"run-{counters.run_id[:8]}"
            )
            await asyncio.gather(
                *(
                    self._run_task(state, config, engines[config.name], index, admission)
                    for config, index in tasks
                )
            )
        else:
            for position, (config, index) in enumerate(tasks):
                if position > 0 and options.sequential_delay > 0 and not state.stop.is_set():
                    await self._sleep(options.sequential_delay)
                await self._run_task(state, config, engines[config.name], index, None)

        aggregate.wall_time = counters.wall_time = time.perf_counter() - started
        logger.info(
            f"Run {counters.run_id[:8]}: {aggregate.succeeded}/{aggregate.total} succeeded, "
            f"{len(aggregate.skipped)} skipped in {aggregate.wall_time:.2f}s"
        )
        return aggregate

    async def _run_task(
        self,
        state: _RunState,
        config: BackendConfig,
        engine: BaseEngine,
        run_index: int,
        admission: AdmissionController | None,
    ) -> None:
        name = config.name
        if state.stop.is_set():
            self._skip(state, name, run_index)
            return

        if name in state.unavailable:
            self._finish(
                state,
                BackendResult(
                    backend=name,
                    run_index=run_index,
                    success=False,
                    attempts=0,
                    model=config.model,
                    error=FailureDescriptor(
                        kind=FailureKind.UNAVAILABLE,
                        message=f"Backend '{name}' failed the availability probe",
                        error_type="AvailabilityCheck",
                        retryable=True,
                    ),
                ),
            )
            return

        breaker = self.breakers.get_or_create(name)
        if not breaker.can_execute():
            self._finish(
                state,
                BackendResult.failure(name, run_index, breaker.reject(), model=config.model),
            )
            return

        permit = None
        if admission is not None:
            waited = time.perf_counter()
            try:
                permit = await admission.acquire(state.options.admission_timeout)
            except AdmissionTimeoutError as e:
                self._finish(
                    state,
                    BackendResult.failure(
                        name,
                        run_index,
                        e,
                        latency=time.perf_counter() - waited,
                        model=config.model,
                    ),
                )
                return

        try:
            if state.stop.is_set():
                self._skip(state, name, run_index)
                return
            result = await self._invoke(state, config, engine, run_index, breaker)
        finally:
            if permit is not None and admission is not None:
                admission.release(permit)

        self._finish(state, result)

    async def _invoke(
        self,
        state: _RunState,
        config: BackendConfig,
        engine: BaseEngine,
        run_index: int,
        breaker: CircuitBreaker,
    ) -> BackendResult:
        name = config.name
        timeout = config.timeout or state.options.timeout

        async def attempt() -> BackendResult:
            try:
                result = await asyncio.wait_for(engine.execute(state.request), timeout)
            except TimeoutError as e:
                raise EngineTimeoutError(
                    f"Backend '{name}' timed out after {timeout}s", engine=name
                ) from e
            if not result.success:
                raise _reported_failure(name, result)
            return result

        state.counters.task_started()
        state.emit(name, run_index, ProgressStatus.STARTED)
        started = time.perf_counter()
        try:
            outcome = await state.executor.run(attempt, breaker=breaker, label=f"{name}#{run_index}")
        finally:
            state.counters.task_finished()
        latency = time.perf_counter() - started

        if outcome.ok:
            assert outcome.value is not None
            return outcome.value.model_copy(
                update={
                    "backend": name,
                    "run_index": run_index,
                    "attempts": outcome.attempts,
                    "latency": latency,
                }
            )

        error = outcome.error
        assert error is not None
        logger.debug(f"{name}#{run_index} failed after {outcome.attempts} attempts: {error}")
        return BackendResult.failure(
            name,
            run_index,
            error,
            latency=latency,
            attempts=outcome.attempts,
            model=config.model,
        )

    def _finish(self, state: _RunState, result: BackendResult) -> None:
        state.aggregate.record(result)
        state.counters.record(result)
        self._stats.setdefault(result.backend, BackendStats()).record(result)
        state.completed += 1
        status = ProgressStatus.COMPLETED if result.success else ProgressStatus.FAILED
        state.emit(result.backend, result.run_index, status, result)

        if not result.success and not state.options.continue_on_error and not state.stop.is_set():
            logger.warning(
                f"{result.backend}#{result.run_index} failed and continue_on_error is off; "
                f"not starting remaining tasks"
            )
            state.stop.set()
            state.aggregate.aborted = True

    def _skip(self, state: _RunState, backend: str, run_index: int) -> None:
        state.aggregate.mark_skipped(backend, run_index)
        state.counters.skipped += 1
        state.completed += 1
        state.emit(backend, run_index, ProgressStatus.SKIPPED)

    def get_status(self) -> dict[str, Any]:
        """Get breaker state and rolling statistics for every backend seen."""
        backends: dict[str, Any] = {}
        for name in sorted(set(self._stats) | set(self.breakers.names())):
            stats = self._stats.get(name, BackendStats())
            breaker = self.breakers.get(name)
            backends[name] = {
                "circuit_breaker": breaker.get_status() if breaker else None,
                "metrics": {
                    "success_count": stats.success_count,
                    "failure_count": stats.failure_count,
                    "average_latency": f"{stats.average_latency:.3f}s",
                    "last_error": stats.last_error,
                },
            }
        return {"backends": backends}

    def reset_all(self) -> None:
        """Reset every breaker and drop rolling statistics."""
        self.breakers.reset_all()
        self._stats.clear()
        logger.info("Orchestrator reset: all circuit breakers and statistics cleared")
