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

"""Core data models and error taxonomy."""

from .errors import (
    AdmissionTimeoutError,
    ChunkProcessingError,
    CircuitOpenError,
    ConfigurationError,
    EngineAuthenticationError,
    EngineError,
    EngineInvalidRequestError,
    EngineReportedError,
    EngineQuotaExceededError,
    EngineRateLimitError,
    EngineTimeoutError,
    EngineUnavailableError,
    FailureKind,
    MultishotError,
    OrchestrationError,
    PatternError,
    PermitReleaseError,
    classify_error,
    is_retryable,
)
from .models import (
    AggregateResult,
    BackendConfig,
    BackendResult,
    ExecutionMode,
    FailureDescriptor,
    ProgressStatus,
    ProgressUpdate,
    PromptRequest,
    RunOptions,
    TokenUsage,
)

__all__ = [
    # Errors
    "MultishotError",
    "ConfigurationError",
    "EngineError",
    "EngineTimeoutError",
    "EngineRateLimitError",
    "EngineUnavailableError",
    "EngineAuthenticationError",
    "EngineQuotaExceededError",
    "EngineInvalidRequestError",
    "EngineReportedError",
    "CircuitOpenError",
    "AdmissionTimeoutError",
    "PermitReleaseError",
    "ChunkProcessingError",
    "PatternError",
    "OrchestrationError",
    "FailureKind",
    "classify_error",
    "is_retryable",
    # Models
    "AggregateResult",
    "BackendConfig",
    "BackendResult",
    "ExecutionMode",
    "FailureDescriptor",
    "ProgressStatus",
    "ProgressUpdate",
    "PromptRequest",
    "RunOptions",
    "TokenUsage",
]
