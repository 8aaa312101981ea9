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

"""Core data models for multishot.

This module defines the data structures shared by every component:
- Backend configuration and the request sent to all backends
- Per-backend results and the aggregate of a whole run
- The structured options object that drives a run
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from multishot.core.errors import (
    EngineError,
    EngineReportedError,
    FailureKind,
    OrchestrationError,
    classify_error,
)

if TYPE_CHECKING:
    from multishot.orchestration.metrics import RunCounters


class ExecutionMode(str, Enum):
    """How backend tasks are scheduled within a run."""

    PARALLEL = "parallel"  # Bounded by max_concurrency
    SEQUENTIAL = "sequential"  # One task at a time


class BackendConfig(BaseModel):
    """Static description of one backend engine.

    Immutable after construction so it can be shared safely across tasks.
    """

    name: str = Field(..., min_length=1, description="Unique backend name within a run")
    provider: str = Field(
        default="openai", description="Engine type tag (openai, anthropic, local, ...)"
    )
    model: str = Field(..., min_length=1, description="Model identifier sent to the backend")
    endpoint: str | None = Field(default=None, description="Base URL of the backend")
    format: str | None = Field(
        default=None, description="Wire format for local engines (ollama, llamacpp, custom)"
    )
    api_key: str | None = Field(
        default=None, description="Credential for the backend", repr=False, exclude=True
    )
    temperature: float = Field(default=0.7, description="Sampling temperature", ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, description="Maximum output tokens", gt=0)
    timeout: float | None = Field(
        default=None, description="Per-call timeout override in seconds", gt=0
    )

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "name": "gpt-4o-mini",
                "provider": "openai",
                "model": "gpt-4o-mini",
                "temperature": 0.7,
                "max_tokens": 4000,
            }
        },
    )


class PromptRequest(BaseModel):
    """The single logical request fanned out to every backend."""

    message: str = Field(..., min_length=1, description="User message")
    context: str | None = Field(default=None, description="Context prepended to the message")
    system_prompt: str | None = Field(default=None, description="System instructions")
    temperature: float | None = Field(
        default=None, description="Overrides the backend temperature", ge=0.0, le=2.0
    )
    max_tokens: int | None = Field(
        default=None, description="Overrides the backend max output tokens", gt=0
    )
    runs: int = Field(default=1, description="Repeated runs per backend", ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    model_config = ConfigDict(frozen=True)

    def render_prompt(self) -> str:
        """Combine context and message into the prompt text."""
        if self.context:
            return f"Context:\n{self.context}\n\n{self.message}"
        return self.message


class TokenUsage(BaseModel):
    """Token counts reported by a backend."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


class FailureDescriptor(BaseModel):
    """Why a backend task failed."""

    kind: FailureKind
    message: str
    error_type: str
    retryable: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_exception(cls, error: BaseException) -> FailureDescriptor:
        """Build a descriptor from the exception that ended a task."""
        retryable = error.retryable if isinstance(error, EngineError) else False
        error_type = type(error).__name__
        if isinstance(error, EngineReportedError) and error.reported_type:
            error_type = error.reported_type
        return cls(
            kind=classify_error(error),
            message=str(error) or type(error).__name__,
            error_type=error_type,
            retryable=retryable,
        )


class BackendResult(BaseModel):
    """Outcome of one (backend, run_index) task.

    Produced exactly once per key and never modified afterwards.
    """

    backend: str
    run_index: int = Field(default=0, ge=0)
    success: bool
    response: str | None = None
    error: FailureDescriptor | None = None
    latency: float = Field(default=0.0, ge=0.0, description="Wall time in seconds")
    attempts: int = Field(default=1, ge=0, description="Backend invocations made")
    usage: TokenUsage | None = None
    model: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> tuple[str, int]:
        """Result identity within an aggregate."""
        return (self.backend, self.run_index)

    @classmethod
    def failure(
        cls,
        backend: str,
        run_index: int,
        error: BaseException,
        *,
        latency: float = 0.0,
        attempts: int = 0,
        model: str | None = None,
    ) -> BackendResult:
        """Build a failed result from the exception that ended the task."""
        return cls(
            backend=backend,
            run_index=run_index,
            success=False,
            error=FailureDescriptor.from_exception(error),
            latency=latency,
            attempts=attempts,
            model=model,
        )


class RunOptions(BaseModel):
    """Structured options for one orchestrated run.

    Invalid values raise a ValidationError at construction, before any work.
    """

    backends: list[BackendConfig] = Field(default_factory=list)
    mode: ExecutionMode = Field(default=ExecutionMode.PARALLEL)
    max_concurrency: int = Field(default=5, description="Parallel task limit", ge=1)
    timeout: float = Field(default=60.0, description="Per-call timeout in seconds", gt=0)
    retries: int = Field(default=1, description="Retries after the first attempt", ge=0)
    continue_on_error: bool = Field(
        default=True, description="Keep scheduling tasks after a failure"
    )
    runs_per_backend: int | None = Field(
        default=None, description="Overrides PromptRequest.runs", ge=1
    )
    check_availability: bool = Field(
        default=False, description="Probe backends before scheduling tasks"
    )
    require_success: bool = Field(
        default=False, description="Treat a run with zero successes as failed"
    )
    admission_timeout: float | None = Field(
        default=None, description="Maximum wait for a permit in seconds", gt=0
    )
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)
    retry_jitter: float = Field(
        default=0.1, description="Random jitter as a fraction of base delay", ge=0.0
    )
    sequential_delay: float = Field(
        default=0.0, description="Pause between tasks in sequential mode", ge=0.0
    )

    @model_validator(mode="after")
    def _check_unique_backends(self) -> RunOptions:
        seen: set[str] = set()
        for backend in self.backends:
            if backend.name in seen:
                raise ValueError(f"Duplicate backend name: {backend.name}")
            seen.add(backend.name)
        return self

    def effective_runs(self, request: PromptRequest) -> int:
        """Number of runs per backend for the given request."""
        return self.runs_per_backend or request.runs


class ProgressStatus(str, Enum):
    """Lifecycle events reported to a progress callback."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProgressUpdate:
    """Progress event emitted while a run is in flight."""

    backend: str
    run_index: int
    status: ProgressStatus
    completed: int
    total: int
    result: BackendResult | None = None

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return self.completed / self.total * 100


@dataclass
class AggregateResult:
    """All results of one run, keyed by (backend, run_index).

    Results are stored by key rather than arrival order, so iteration order is
    deterministic: backends in the order given, then run index.

    Attributes:
        backend_order: Backend names in caller order
        runs_per_backend: Runs scheduled per backend
        require_success: Whether zero successes makes the run fail
        skipped: Tasks that never started because a stop was signalled
        aborted: True when continue_on_error=False stopped scheduling
        wall_time: Seconds from start to the last task finishing
        counters: Performance counters for the run
    """

    backend_order: list[str] = field(default_factory=list)
    runs_per_backend: int = 1
    require_success: bool = False
    skipped: list[tuple[str, int]] = field(default_factory=list)
    aborted: bool = False
    wall_time: float = 0.0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    counters: RunCounters | None = None
    _results: dict[tuple[str, int], BackendResult] = field(default_factory=dict, repr=False)

    def record(self, result: BackendResult) -> None:
        """Store a result under its key.

        Raises:
            ValueError: If a result for the same key was already recorded
        """
        if result.key in self._results:
            raise ValueError(f"Result already recorded for {result.key}")
        self._results[result.key] = result

    def mark_skipped(self, backend: str, run_index: int) -> None:
        self.skipped.append((backend, run_index))

    def _sort_key(self, key: tuple[str, int]) -> tuple[int, int]:
        backend, run_index = key
        try:
            position = self.backend_order.index(backend)
        except ValueError:
            position = len(self.backend_order)
        return (position, run_index)

    @property
    def results(self) -> list[BackendResult]:
        """All recorded results in deterministic order."""
        return [self._results[key] for key in sorted(self._results, key=self._sort_key)]

    def __iter__(self) -> Iterator[BackendResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, key: object) -> bool:
        return key in self._results

    @property
    def total(self) -> int:
        return len(self._results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self._results.values() if result.success)

    @property
    def failed(self) -> int:
        return sum(1 for result in self._results.values() if not result.success)

    @property
    def ok(self) -> bool:
        """False only when at least one success was required and none happened."""
        return not (self.require_success and self.succeeded == 0)

    def get(self, backend: str, run_index: int = 0) -> BackendResult | None:
        return self._results.get((backend, run_index))

    def for_backend(self, backend: str) -> list[BackendResult]:
        return [result for result in self.results if result.backend == backend]

    def successful(self) -> list[BackendResult]:
        return [result for result in self.results if result.success]

    def failures(self) -> list[BackendResult]:
        return [result for result in self.results if not result.success]

    def raise_for_status(self) -> None:
        """Raise OrchestrationError if the run did not meet its requirements."""
        if not self.ok:
            reasons = "; ".join(
                f"{result.backend}#{result.run_index}: {result.error.message}"
                for result in self.failures()
                if result.error is not None
            )
            raise OrchestrationError(f"No backend succeeded ({reasons or 'no results'})")

    def summary(self) -> dict[str, Any]:
        """Plain-data summary for presentation and storage layers."""
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": len(self.skipped),
            "aborted": self.aborted,
            "ok": self.ok,
            "wall_time": round(self.wall_time, 4),
            "started_at": self.started_at.isoformat(),
            "results": [
                {
                    "backend": result.backend,
                    "run_index": result.run_index,
                    "success": result.success,
                    "latency": round(result.latency, 4),
                    "attempts": result.attempts,
                    "error": result.error.kind.value if result.error else None,
                }
                for result in self.results
            ],
        }
