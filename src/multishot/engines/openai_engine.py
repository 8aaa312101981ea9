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

"""OpenAI engine implementation.

Uses the chat completions API of the official OpenAI Python SDK (v1.0+).
Any OpenAI-compatible server can be targeted through `endpoint`.
"""

from __future__ import annotations

import logging

import openai

from multishot.core.errors import (
    ConfigurationError,
    EngineAuthenticationError,
    EngineError,
    EngineInvalidRequestError,
    EngineQuotaExceededError,
    EngineRateLimitError,
    EngineTimeoutError,
    EngineUnavailableError,
)
from multishot.core.models import BackendConfig, PromptRequest, TokenUsage

from .base import BaseEngine, CostClass, EngineCapabilities, EngineResponse

logger = logging.getLogger(__name__)

# Context windows in tokens for known model families (prefix match)
_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4.1": 1_047_576,
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
    "o1": 200_000,
    "o3": 200_000,
}


class OpenAIEngine(BaseEngine):
    """OpenAI chat completions engine.

    Example:
        >>> engine = OpenAIEngine(
        ...     BackendConfig(name="gpt-4o-mini", provider="openai", model="gpt-4o-mini"),
        ...     api_key="sk-...",
        ... )
        >>> result = await engine.execute(PromptRequest(message="Hello"))
    """

    def __init__(
        self,
        config: BackendConfig,
        api_key: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize OpenAI engine.

        Args:
            config: Backend configuration
            api_key: API key (falls back to config.api_key)
            timeout: SDK request timeout in seconds
        """
        super().__init__(config)
        self.api_key = api_key or config.api_key
        if not self.api_key:
            if config.endpoint is None:
                raise ConfigurationError(
                    "OpenAI API key not configured. Set MULTISHOT_OPENAI_API_KEY"
                )
            # OpenAI-compatible servers usually ignore the key
            self.api_key = "not-needed"
        # Retries are handled by the orchestrator, not the SDK
        self.client = openai.AsyncOpenAI(
            api_key=self.api_key,
            base_url=config.endpoint,
            timeout=config.timeout or timeout,
            max_retries=0,
        )

    async def _complete(self, request: PromptRequest) -> EngineResponse:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.render_prompt()})

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                temperature=self.resolve_temperature(request),
                max_tokens=self.resolve_max_tokens(request),
            )
        except openai.AuthenticationError as e:
            raise EngineAuthenticationError(
                f"OpenAI authentication failed: {e}", engine=self.name
            ) from e
        except openai.PermissionDeniedError as e:
            raise EngineAuthenticationError(
                f"OpenAI permission denied: {e}", engine=self.name
            ) from e
        except openai.RateLimitError as e:
            if getattr(e, "code", None) == "insufficient_quota":
                raise EngineQuotaExceededError(
                    f"OpenAI quota exceeded: {e}", engine=self.name
                ) from e
            raise EngineRateLimitError(f"OpenAI rate limit exceeded: {e}", engine=self.name) from e
        except openai.APITimeoutError as e:
            raise EngineTimeoutError(f"OpenAI request timed out: {e}", engine=self.name) from e
        except openai.APIConnectionError as e:
            raise EngineUnavailableError(f"OpenAI connection failed: {e}", engine=self.name) from e
        except (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError) as e:
            raise EngineInvalidRequestError(
                f"OpenAI rejected the request: {e}", engine=self.name
            ) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise EngineUnavailableError(
                    f"OpenAI service error ({e.status_code}): {e}", engine=self.name
                ) from e
            raise EngineError(f"OpenAI API error ({e.status_code}): {e}", engine=self.name) from e
        except openai.APIError as e:
            raise EngineError(f"OpenAI API error: {e}", engine=self.name) from e

        if not response.choices:
            raise EngineUnavailableError("OpenAI returned no choices", engine=self.name)
        content = response.choices[0].message.content
        if content is None:
            raise EngineUnavailableError("OpenAI returned empty response", engine=self.name)

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return EngineResponse(
            content=content,
            model=response.model,
            usage=usage,
            metadata={"finish_reason": response.choices[0].finish_reason},
        )

    async def is_available(self) -> bool:
        try:
            await self.client.models.retrieve(self.model)
        except openai.APIError as e:
            logger.debug(f"OpenAI availability probe for '{self.name}' failed: {e}")
            return False
        return True

    def describe_capabilities(self) -> EngineCapabilities:
        context = next(
            (size for prefix, size in _CONTEXT_WINDOWS.items() if self.model.startswith(prefix)),
            128_000,
        )
        cheap = any(marker in self.model for marker in ("mini", "nano", "3.5"))
        return EngineCapabilities(
            max_context_size=context,
            supports_streaming=True,
            cost_class=CostClass.LOW if cheap else CostClass.HIGH,
        )
