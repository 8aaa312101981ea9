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

"""Local model server engine.

Talks plain HTTP to a model server on the local machine or network.
Supported wire formats:

- ollama: POST {endpoint}/api/generate
- llamacpp: POST {endpoint}/completion
- custom: POST {endpoint} with {prompt, temperature, max_tokens}
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

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

LOCAL_FORMATS = ("ollama", "llamacpp", "custom")

_HEALTH_PATHS = {"ollama": "/api/tags", "llamacpp": "/health", "custom": ""}


class LocalEngine(BaseEngine):
    """Engine for self-hosted model servers.

    Example:
        >>> engine = LocalEngine(
        ...     BackendConfig(
        ...         name="llama",
        ...         provider="local",
        ...         model="llama3",
        ...         endpoint="http://localhost:11434",
        ...         format="ollama",
        ...     )
        ... )
    """

    def __init__(
        self,
        config: BackendConfig,
        timeout: float = 60.0,
        probe_timeout: float = 5.0,
    ) -> None:
        super().__init__(config)
        if not config.endpoint:
            raise ConfigurationError(f"Local engine '{config.name}' requires an endpoint")
        self.format = config.format or "ollama"
        if self.format not in LOCAL_FORMATS:
            raise ConfigurationError(
                f"Unknown local format '{self.format}'. Expected one of {', '.join(LOCAL_FORMATS)}"
            )
        self.endpoint = config.endpoint.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=config.timeout or timeout)
        self.probe_timeout = aiohttp.ClientTimeout(total=probe_timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _build_call(self, request: PromptRequest) -> tuple[str, dict[str, Any]]:
        """URL and JSON payload for the configured format."""
        prompt = request.render_prompt()
        temperature = self.resolve_temperature(request)
        max_tokens = self.resolve_max_tokens(request)

        if self.format == "ollama":
            payload: dict[str, Any] = {
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"num_predict": max_tokens, "temperature": temperature},
            }
            if request.system_prompt:
                payload["system"] = request.system_prompt
            return f"{self.endpoint}/api/generate", payload

        if request.system_prompt:
            prompt = f"{request.system_prompt}\n\n{prompt}"
        if self.format == "llamacpp":
            return f"{self.endpoint}/completion", {
                "prompt": prompt,
                "temperature": temperature,
                "n_predict": max_tokens,
                "stop": ["</s>", "Human:", "User:"],
            }
        return self.endpoint, {
            "model": self.model,
            "prompt": prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    async def _check_response_status(self, response: aiohttp.ClientResponse) -> None:
        """Raise the matching EngineError for a non-200 response."""
        if response.status == 200:
            return
        error_text = await response.text()
        if response.status in (401, 403):
            raise EngineAuthenticationError(
                f"Local server authentication failed ({response.status})", engine=self.name
            )
        if response.status == 429:
            raise EngineRateLimitError("Local server rate limit exceeded", engine=self.name)
        if response.status in (400, 404, 422):
            raise EngineInvalidRequestError(
                f"Local server rejected the request ({response.status}): {error_text}",
                engine=self.name,
            )
        if response.status >= 500:
            raise EngineUnavailableError(
                f"Local server error ({response.status}): {error_text}", engine=self.name
            )
        raise EngineError(
            f"Local server error (status {response.status}): {error_text}", engine=self.name
        )

    def _parse(self, data: dict[str, Any]) -> EngineResponse:
        if self.format == "ollama":
            content = data.get("response")
            usage = TokenUsage(
                prompt_tokens=data.get("prompt_eval_count") or 0,
                completion_tokens=data.get("eval_count") or 0,
            )
        elif self.format == "llamacpp":
            content = data.get("content")
            usage = TokenUsage(
                prompt_tokens=data.get("tokens_evaluated") or 0,
                completion_tokens=data.get("tokens_predicted") or 0,
            )
        else:
            content = data.get("content") or data.get("response") or data.get("text")
            usage = None

        if not isinstance(content, str):
            raise EngineUnavailableError(
                f"Unexpected {self.format} response format: {data}", engine=self.name
            )
        return EngineResponse(
            content=content.strip(),
            model=data.get("model") or self.model,
            usage=usage,
            metadata={"format": self.format},
        )

    async def _complete(self, request: PromptRequest) -> EngineResponse:
        url, payload = self._build_call(request)
        try:
            async with (
                aiohttp.ClientSession(timeout=self.timeout) as session,
                session.post(url, json=payload, headers=self._headers()) as response,
            ):
                await self._check_response_status(response)
                data = await response.json(content_type=None)
        except TimeoutError as e:
            raise EngineTimeoutError(f"Local request timed out: {e}", engine=self.name) from e
        except aiohttp.ClientConnectionError as e:
            raise EngineUnavailableError(
                f"Local server unreachable at {self.endpoint}: {e}", engine=self.name
            ) from e
        except (aiohttp.ContentTypeError, json.JSONDecodeError) as e:
            raise EngineUnavailableError(
                f"Local server returned invalid JSON: {e}", engine=self.name
            ) from e
        except aiohttp.ClientError as e:
            raise EngineError(f"Local request failed: {e}", engine=self.name) from e

        if not isinstance(data, dict):
            raise EngineUnavailableError(
                f"Unexpected {self.format} response format: {data}", engine=self.name
            )
        return self._parse(data)

    async def is_available(self) -> bool:
        url = f"{self.endpoint}{_HEALTH_PATHS[self.format]}"
        try:
            async with (
                aiohttp.ClientSession(timeout=self.probe_timeout) as session,
                session.get(url, headers=self._headers()) as response,
            ):
                return response.status < 500
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.debug(f"Local availability probe for '{self.name}' failed: {e}")
            return False

    def describe_capabilities(self) -> EngineCapabilities:
        return EngineCapabilities(
            max_context_size=8_192,
            supports_streaming=self.format != "custom",
            cost_class=CostClass.FREE,
        )
