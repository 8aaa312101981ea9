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

"""Anthropic engine implementation.

Uses the messages API of the official Anthropic Python SDK.
"""

from __future__ import annotations

import logging

import anthropic

from multishot.core.errors import (
    ConfigurationError,
    EngineAuthenticationError,
    EngineError,
    EngineInvalidRequestError,
    EngineRateLimitError,
    EngineTimeoutError,
    EngineUnavailableError,
)
from multishot.core.models import BackendConfig, PromptRequest, TokenUsage

from .base import BaseEngine, CostClass, EngineCapabilities, EngineResponse

logger = logging.getLogger(__name__)


class AnthropicEngine(BaseEngine):
    """Anthropic Claude engine.

    Example:
        >>> engine = AnthropicEngine(
        ...     BackendConfig(
        ...         name="claude-haiku", provider="anthropic", model="claude-3-5-haiku-latest"
        ...     ),
        ...     api_key="sk-ant-...",
        ... )
        >>> result = await engine.execute(PromptRequest(message="Hello"))
    """

    def __init__(
        self,
        config: BackendConfig,
        api_key: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        super().__init__(config)
        self.api_key = api_key or config.api_key
        if not self.api_key:
            raise ConfigurationError(
                "Anthropic API key not configured. Set MULTISHOT_ANTHROPIC_API_KEY"
            )
        self.client = anthropic.AsyncAnthropic(
            api_key=self.api_key,
            base_url=config.endpoint,
            timeout=config.timeout or timeout,
            max_retries=0,
        )

    async def _complete(self, request: PromptRequest) -> EngineResponse:
        params: dict[str, object] = {
            "model": self.model,
            "max_tokens": self.resolve_max_tokens(request),
            "temperature": min(self.resolve_temperature(request), 1.0),
            "messages": [{"role": "user", "content": request.render_prompt()}],
        }
        if request.system_prompt:
            params["system"] = request.system_prompt

        try:
            response = await self.client.messages.create(**params)  # type: ignore[call-overload]
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise EngineAuthenticationError(
                f"Anthropic authentication failed: {e}", engine=self.name
            ) from e
        except anthropic.RateLimitError as e:
            raise EngineRateLimitError(
                f"Anthropic rate limit exceeded: {e}", engine=self.name
            ) from e
        except anthropic.APITimeoutError as e:
            raise EngineTimeoutError(f"Anthropic request timed out: {e}", engine=self.name) from e
        except anthropic.APIConnectionError as e:
            raise EngineUnavailableError(
                f"Anthropic connection failed: {e}", engine=self.name
            ) from e
        except (anthropic.BadRequestError, anthropic.NotFoundError) as e:
            raise EngineInvalidRequestError(
                f"Anthropic rejected the request: {e}", engine=self.name
            ) from e
        except anthropic.APIStatusError as e:
            if e.status_code >= 500:
                raise EngineUnavailableError(
                    f"Anthropic service error ({e.status_code}): {e}", engine=self.name
                ) from e
            raise EngineError(
                f"Anthropic API error ({e.status_code}): {e}", engine=self.name
            ) from e
        except anthropic.APIError as e:
            raise EngineError(f"Anthropic API error: {e}", engine=self.name) from e

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not content:
            raise EngineUnavailableError("Anthropic returned empty response", engine=self.name)

        return EngineResponse(
            content=content,
            model=response.model,
            usage=TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
            metadata={"stop_reason": response.stop_reason},
        )

    async def is_available(self) -> bool:
        try:
            await self.client.models.retrieve(self.model)
        except anthropic.APIError as e:
            logger.debug(f"Anthropic availability probe for '{self.name}' failed: {e}")
            return False
        return True

    def describe_capabilities(self) -> EngineCapabilities:
        if "haiku" in self.model:
            cost = CostClass.LOW
        elif "opus" in self.model:
            cost = CostClass.HIGH
        else:
            cost = CostClass.MEDIUM
        return EngineCapabilities(
            max_context_size=200_000,
            supports_streaming=True,
            cost_class=cost,
        )
