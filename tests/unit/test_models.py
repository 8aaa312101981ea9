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

"""Unit tests for core data models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from multishot.core.errors import (
    AdmissionTimeoutError,
    EngineRateLimitError,
    FailureKind,
    OrchestrationError,
)
from multishot.core.models import (
    AggregateResult,
    BackendConfig,
    BackendResult,
    FailureDescriptor,
    ProgressStatus,
    ProgressUpdate,
    PromptRequest,
    RunOptions,
    TokenUsage,
)

pytestmark = pytest.mark.unit


class TestBackendConfig:
    """Backend configuration validation."""

    def test_defaults(self) -> None:
        config = BackendConfig(name="gpt", model="gpt-4o")
        assert config.provider == "openai"
        assert config.temperature == 0.7
        assert config.max_tokens == 4000
        assert config.timeout is None

    def test_frozen(self) -> None:
        config = BackendConfig(name="gpt", model="gpt-4o")
        with pytest.raises(ValidationError):
            config.name = "other"  # type: ignore[misc]

    def test_api_key_hidden(self) -> None:
        config = BackendConfig(name="gpt", model="gpt-4o", api_key="sk-secret")
        assert "sk-secret" not in repr(config)
        assert "api_key" not in config.model_dump()

    @pytest.mark.parametrize(
        "field,value",
        [("name", ""), ("temperature", 2.5), ("max_tokens", 0), ("timeout", 0)],
    )
    def test_invalid_values(self, field: str, value: object) -> None:
        values: dict[str, object] = {"name": "gpt", "model": "gpt-4o", field: value}
        with pytest.raises(ValidationError):
            BackendConfig(**values)  # type: ignore[arg-type]


class TestPromptRequest:
    """Request rendering and validation."""

    def test_render_without_context(self) -> None:
        assert PromptRequest(message="Hello").render_prompt() == "Hello"

    def test_render_with_context(self) -> None:
        request = PromptRequest(message="Summarize", context="Long text")
        assert request.render_prompt() == "Context:\nLong text\n\nSummarize"

    def test_empty_message_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PromptRequest(message="")

    def test_runs_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            PromptRequest(message="hi", runs=0)


class TestBackendResult:
    """Results and failure descriptors."""

    def test_failure_from_retryable_error(self) -> None:
        result = BackendResult.failure(
            "gpt", 1, EngineRateLimitError("slow down"), latency=0.5, attempts=2
        )

        assert not result.success
        assert result.key == ("gpt", 1)
        assert result.error == FailureDescriptor(
            kind=FailureKind.TRANSIENT,
            message="slow down",
            error_type="EngineRateLimitError",
            retryable=True,
        )

    def test_failure_from_admission_timeout(self) -> None:
        descriptor = FailureDescriptor.from_exception(AdmissionTimeoutError())
        assert descriptor.kind == FailureKind.ADMISSION_TIMEOUT
        assert descriptor.message == "AdmissionTimeoutError"
        assert not descriptor.retryable

    def test_token_usage_total(self) -> None:
        assert TokenUsage(prompt_tokens=3, completion_tokens=4).total_tokens == 7


class TestRunOptions:
    """Run options defaults and validation."""

    def test_defaults(self) -> None:
        options = RunOptions()
        assert options.max_concurrency == 5
        assert options.retries == 1
        assert options.continue_on_error

    def test_effective_runs(self) -> None:
        request = PromptRequest(message="hi", runs=4)
        assert RunOptions().effective_runs(request) == 4
        assert RunOptions(runs_per_backend=2).effective_runs(request) == 2

    def test_admission_timeout_positive(self) -> None:
        with pytest.raises(ValidationError):
            RunOptions(admission_timeout=0)


class TestAggregateResult:
    """Keyed storage and summaries."""

    def _aggregate(self) -> AggregateResult:
        aggregate = AggregateResult(backend_order=["b", "a"], runs_per_backend=2)
        aggregate.record(BackendResult(backend="a", run_index=1, success=True, response="x"))
        aggregate.record(
            BackendResult.failure("b", 0, EngineRateLimitError("limited"), attempts=2)
        )
        aggregate.record(BackendResult(backend="a", run_index=0, success=True, response="y"))
        return aggregate

    def test_deterministic_order(self) -> None:
        aggregate = self._aggregate()
        assert [result.key for result in aggregate] == [("b", 0), ("a", 0), ("a", 1)]

    def test_duplicate_key_rejected(self) -> None:
        aggregate = self._aggregate()
        with pytest.raises(ValueError):
            aggregate.record(BackendResult(backend="a", run_index=0, success=True))

    def test_counts_and_lookup(self) -> None:
        aggregate = self._aggregate()
        assert len(aggregate) == 3
        assert aggregate.succeeded == 2
        assert aggregate.failed == 1
        assert ("b", 0) in aggregate
        assert aggregate.get("a", 1) is not None
        assert aggregate.get("c") is None
        assert [result.run_index for result in aggregate.for_backend("a")] == [0, 1]

    def test_require_success(self) -> None:
        aggregate = AggregateResult(backend_order=["a"], require_success=True)
        aggregate.record(BackendResult.failure("a", 0, EngineRateLimitError("limited")))

        assert not aggregate.ok
        with pytest.raises(OrchestrationError, match="limited"):
            aggregate.raise_for_status()

    def test_partial_failure_is_ok(self) -> None:
        aggregate = self._aggregate()
        aggregate.require_success = True
        assert aggregate.ok
        aggregate.raise_for_status()

    def test_summary(self) -> None:
        summary = self._aggregate().summary()
        assert summary["total"] == 3
        assert summary["failed"] == 1
        assert summary["results"][0]["error"] == "transient"
        assert summary["results"][1]["error"] is None


class TestProgressUpdate:
    def test_percentage(self) -> None:
        update = ProgressUpdate(
            backend="a", run_index=0, status=ProgressStatus.COMPLETED, completed=1, total=4
        )
        assert update.percentage == 25.0

    def test_percentage_empty_run(self) -> None:
        update = ProgressUpdate(
            backend="a", run_index=0, status=ProgressStatus.SKIPPED, completed=0, total=0
        )
        assert update.percentage == 100.0
