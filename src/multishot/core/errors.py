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

"""Error taxonomy for multishot.

Every failure an engine can produce is mapped onto one of these types so
that the retry layer and the circuit breaker can make decisions without
knowing anything about provider SDKs:

- Retryable: timeouts, rate limits, transient service unavailability
- Non-retryable: authentication, quota exhaustion, invalid requests
- Circuit open: fast rejection, never retried within the same task
- Admission timeout: waiting for a permit took too long (not a backend fault)
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Category recorded in a failed BackendResult."""

    TRANSIENT = "transient"  # Retryable backend failure
    PERMANENT = "permanent"  # Non-retryable backend failure
    CIRCUIT_OPEN = "circuit_open"  # Rejected by the breaker
    ADMISSION_TIMEOUT = "admission_timeout"  # No permit in time
    UNAVAILABLE = "unavailable"  # Failed the availability probe
    UNEXPECTED = "unexpected"  # Anything outside the taxonomy


class MultishotError(Exception):
    """Base exception for all multishot errors."""


class ConfigurationError(MultishotError, ValueError):
    """Raised when options or backend configuration are invalid.

    Always raised before any backend work starts.
    """


class EngineError(MultishotError):
    """Base exception for backend engine failures.

    Attributes:
        engine: Name of the backend that failed (if known)
        retryable: Whether retrying the same call may succeed
    """

    retryable: bool = False

    def __init__(self, message: str, engine: str | None = None) -> None:
        super().__init__(message)
        self.engine = engine


class EngineTimeoutError(EngineError):
    """Raised when a backend call exceeds its timeout."""

    retryable = True


class EngineRateLimitError(EngineError):
    """Raised when a backend reports rate limiting."""

    retryable = True


class EngineUnavailableError(EngineError):
    """Raised when a backend is temporarily unreachable or overloaded."""

    retryable = True


class EngineAuthenticationError(EngineError):
    """Raised when backend credentials are rejected."""


class EngineQuotaExceededError(EngineError):
    """Raised when the account quota for a backend is exhausted."""


class EngineInvalidRequestError(EngineError):
    """Raised when a backend rejects the request itself."""


class EngineReportedError(EngineError):
    """Raised for an engine that returned a failed result instead of raising.

    Carries the reported error type and retryability so the breaker, the
    retry loop and the recorded failure treat it like a raised error.
    """

    def __init__(
        self,
        message: str,
        engine: str | None = None,
        retryable: bool = False,
        reported_type: str | None = None,
    ) -> None:
        super().__init__(message, engine=engine)
        self.retryable = retryable
        self.reported_type = reported_type


class CircuitOpenError(EngineError):
    """Raised when a circuit breaker is open and the call is rejected.

    Signals "service unavailable, retry later". The retry layer never retries
    it within the same task; the breaker decides when the next attempt happens.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        engine: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, engine=engine)
        self.retry_after = retry_after


class AdmissionTimeoutError(MultishotError, TimeoutError):
    """Raised when a permit could not be acquired within the timeout."""


class PermitReleaseError(MultishotError, RuntimeError):
    """Raised when a permit is released that is not outstanding."""


class ChunkProcessingError(MultishotError):
    """Raised when one chunk of a stream fails to process."""

    def __init__(self, message: str, chunk_index: int) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index


class PatternError(MultishotError, ValueError):
    """Raised when a pattern cannot be compiled."""


class OrchestrationError(MultishotError):
    """Raised by AggregateResult.raise_for_status when a run did not succeed."""


def classify_error(error: BaseException) -> FailureKind:
    """Map an exception onto the failure category recorded for it.

    Args:
        error: Exception raised while running a backend task

    Returns:
        The matching FailureKind
    """
    if isinstance(error, CircuitOpenError):
        return FailureKind.CIRCUIT_OPEN
    if isinstance(error, AdmissionTimeoutError):
        return FailureKind.ADMISSION_TIMEOUT
    if isinstance(error, EngineError):
        return FailureKind.TRANSIENT if error.retryable else FailureKind.PERMANENT
    if isinstance(error, TimeoutError):
        return FailureKind.TRANSIENT
    return FailureKind.UNEXPECTED


def is_retryable(error: BaseException) -> bool:
    """Check whether a failed call may be retried within the same task.

    Circuit-open rejections are never retried here even though they carry a
    retryable signal for callers outside the run.
    """
    if isinstance(error, CircuitOpenError | AdmissionTimeoutError):
        return False
    if isinstance(error, EngineError):
        return error.retryable
    return isinstance(error, TimeoutError)
