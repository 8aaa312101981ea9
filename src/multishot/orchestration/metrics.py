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

"""Performance counters for orchestrated runs.

RunCounters describe a single run and are attached to its AggregateResult.
BackendStats accumulate across runs of one Orchestrator.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from multishot.core.errors import FailureKind
from multishot.core.models import BackendResult


@dataclass
class BackendCounters:
    """Per-backend counters within one run."""

    runs: int = 0
    successes: int = 0
    failures: int = 0
    attempts: int = 0
    total_latency: float = 0.0
    min_latency: float | None = None
    max_latency: float | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def average_latency(self) -> float:
        if self.runs == 0:
            return 0.0
        return self.total_latency / self.runs

    @property
    def success_rate(self) -> float:
        """Successes as percentage of runs."""
        if self.runs == 0:
            return 0.0
        return self.successes / self.runs * 100

    def record(self, result: BackendResult) -> None:
        self.runs += 1
        self.attempts += result.attempts
        self.total_latency += result.latency
        self.min_latency = (
            result.latency if self.min_latency is None else min(self.min_latency, result.latency)
        )
        self.max_latency = (
            result.latency if self.max_latency is None else max(self.max_latency, result.latency)
        )
        if result.success:
            self.successes += 1
        else:
            self.failures += 1
        if result.usage is not None:
            self.prompt_tokens += result.usage.prompt_tokens
            self.completion_tokens += result.usage.completion_tokens


@dataclass
class RunCounters:
    """Counters for one orchestrated run.

    Attributes:
        run_id: Unique identifier of the run
        mode: Execution mode used
        max_concurrency: Configured concurrency bound
        timeout: Configured per-call timeout in seconds
        retries: Configured retries per task
        total_tasks: Tasks scheduled (backends x runs)
        attempts: Backend invocations across all tasks
        circuit_rejections: Tasks rejected by an open breaker
        admission_timeouts: Tasks that never obtained a permit
        unavailable: Tasks failed by the availability probe
        skipped: Tasks never started after a stop signal
        peak_concurrency: Most backend tasks running at once
        wall_time: Seconds for the whole run
    """

    mode: str = "parallel"
    max_concurrency: int = 1
    timeout: float = 0.0
    retries: int = 0
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    total_tasks: int = 0
    succeeded: int = 0
    failed: int = 0
    attempts: int = 0
    invoked_tasks: int = 0
    circuit_rejections: int = 0
    admission_timeouts: int = 0
    unavailable: int = 0
    skipped: int = 0
    peak_concurrency: int = 0
    wall_time: float = 0.0
    per_backend: dict[str, BackendCounters] = field(default_factory=dict)
    _running: int = field(default=0, repr=False)

    def task_started(self) -> None:
        self._running += 1
        self.peak_concurrency = max(self.peak_concurrency, self._running)

    def task_finished(self) -> None:
        self._running -= 1

    def record(self, result: BackendResult) -> None:
        if result.success:
            self.succeeded += 1
        else:
            self.failed += 1
        self.attempts += result.attempts
        if result.attempts > 0:
            self.invoked_tasks += 1
        if result.error is not None:
            if result.error.kind == FailureKind.CIRCUIT_OPEN:
                self.circuit_rejections += 1
            elif result.error.kind == FailureKind.ADMISSION_TIMEOUT:
                self.admission_timeouts += 1
            elif result.error.kind == FailureKind.UNAVAILABLE:
                self.unavailable += 1
        self.per_backend.setdefault(result.backend, BackendCounters()).record(result)

    @property
    def retries_used(self) -> int:
        """Invocations beyond the first, summed over tasks."""
        return self.attempts - self.invoked_tasks

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "context": {
                "mode": self.mode,
                "max_concurrency": self.max_concurrency,
                "timeout": self.timeout,
                "retries": self.retries,
            },
            "total_tasks": self.total_tasks,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "attempts": self.attempts,
            "retries_used": self.retries_used,
            "circuit_rejections": self.circuit_rejections,
            "admission_timeouts": self.admission_timeouts,
            "unavailable": self.unavailable,
            "peak_concurrency": self.peak_concurrency,
            "wall_time": round(self.wall_time, 4),
            "backends": {
                name: {
                    "runs": counters.runs,
                    "successes": counters.successes,
                    "failures": counters.failures,
                    "attempts": counters.attempts,
                    "success_rate": f"{counters.success_rate:.1f}%",
                    "average_latency": round(counters.average_latency, 4),
                    "prompt_tokens": counters.prompt_tokens,
                    "completion_tokens": counters.completion_tokens,
                }
                for name, counters in self.per_backend.items()
            },
        }


@dataclass
class BackendStats:
    """Rolling statistics for one backend across runs."""

    success_count: int = 0
    failure_count: int = 0
    latency_history: list[float] = field(default_factory=list)
    last_error: str | None = None

    @property
    def average_latency(self) -> float:
        """Average of the last 10 latencies."""
        if not self.latency_history:
            return 0.0
        recent = self.latency_history[-10:]
        return sum(recent) / len(recent)

    def record(self, result: BackendResult) -> None:
        if result.success:
            self.success_count += 1
            self.latency_history.append(result.latency)
            # Keep only last 100 measurements
            if len(self.latency_history) > 100:
                self.latency_history = self.latency_history[-100:]
        else:
            self.failure_count += 1
            self.last_error = result.error.message if result.error else None
