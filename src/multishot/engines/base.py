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

"""Base abstract class for backend engines.

Defines the single contract the orchestrator relies on. Concrete engines
translate their transport errors into the EngineError taxonomy so that the
orchestrator never needs to know which kind of engine it is talking to.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from multishot.core.errors import ConfigurationError
from multishot.core.models import BackendConfig, BackendResult, PromptRequest, TokenUsage


class CostClass(str, Enum):
    """Coarse relative cost of calling a backend."""

    FREE = "free"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EngineCapabilities(BaseModel):
    """What a backend supports."""

    max_context_size: int = Field(..., gt=0, description="Context window in tokens")
    supports_streaming: bool = False
    supports_system_prompt: bool = True
    cost_class: CostClass = CostClass.MEDIUM

    model_config = ConfigDict(frozen=True)


class EngineResponse(BaseModel):
    """Raw completion produced by an engine before it is wrapped in a result."""

    content: str
    model: str | None = None
    usage: TokenUsage | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BaseEngine(ABC):
    """Abstract base class for backend engines.

    Subclasses implement `_complete`, `is_available` and
    `describe_capabilities`. `execute` is shared: it times the call and wraps
    the response in a BackendResult. Failures propagate as EngineError
    subclasses.
    """

    def __init__(self, config: BackendConfig) -> None:
        if not config.name or not config.model:
            raise ConfigurationError("Engine configuration requires a name and a model")
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def display_name(self) -> str:
        return f"{self.config.name} ({self.config.model})"

    def safe_config(self) -> dict[str, Any]:
        """Configuration without credentials."""
        return self.config.model_dump()

    def resolve_temperature(self, request: PromptRequest) -> float:
        if request.temperature is not None:
            return request.temperature
        return self.config.temperature

    def resolve_max_tokens(self, request: PromptRequest) -> int:
        if request.max_tokens is not None:
            return request.max_tokens
        return self.config.max_tokens

    async def execute(self, request: PromptRequest) -> BackendResult:
        """Send the request to the backend.

        Returns:
            A successful BackendResult for run index 0

        Raises:
            EngineError: Typed failure (retryable or not)
        """
        started = time.perf_counter()
        response = await self._complete(request)
        return BackendResult(
            backend=self.name,
            success=True,
            response=response.content,
            latency=time.perf_counter() - started,
            usage=response.usage,
            model=response.model or self.model,
            metadata=response.metadata,
        )

    @abstractmethod
    async def _complete(self, request: PromptRequest) -> EngineResponse:
        """Perform one backend call."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap reachability probe. Must not raise."""

    @abstractmethod
    def describe_capabilities(self) -> EngineCapabilities:
        """Static capability description."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, model={self.model!r})"
