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

"""Engine construction from BackendConfig.

The factory maps provider tags to builder functions. Each Orchestrator owns
its own factory, so registering a custom engine type never leaks into
unrelated code.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from multishot.core.errors import ConfigurationError
from multishot.core.models import BackendConfig
from multishot.utils.config import Settings, get_settings

from .anthropic_engine import AnthropicEngine
from .base import BaseEngine
from .local_engine import LocalEngine
from .openai_engine import OpenAIEngine

logger = logging.getLogger(__name__)

EngineBuilder = Callable[[BackendConfig, Settings], BaseEngine]


def _build_openai(config: BackendConfig, settings: Settings) -> BaseEngine:
    if config.endpoint is None and settings.openai_base_url:
        config = config.model_copy(update={"endpoint": settings.openai_base_url})
    return OpenAIEngine(
        config,
        api_key=config.api_key or settings.openai_api_key,
        timeout=settings.request_timeout,
    )


def _build_anthropic(config: BackendConfig, settings: Settings) -> BaseEngine:
    return AnthropicEngine(
        config,
        api_key=config.api_key or settings.anthropic_api_key,
        timeout=settings.request_timeout,
    )


def _build_local(config: BackendConfig, settings: Settings) -> BaseEngine:
    updates: dict[str, str] = {}
    if config.endpoint is None:
        updates["endpoint"] = settings.local_endpoint
    if config.format is None:
        updates["format"] = settings.local_format
    if updates:
        config = config.model_copy(update=updates)
    return LocalEngine(config, timeout=settings.request_timeout)


class EngineFactory:
    """Builds engines from configuration.

    Example:
        >>> factory = EngineFactory()
        >>> factory.register("echo", lambda config, settings: EchoEngine(config))
        >>> engine = factory.create(BackendConfig(name="e", provider="echo", model="x"))
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._builders: dict[str, EngineBuilder] = {
            "openai": _build_openai,
            "anthropic": _build_anthropic,
            "local": _build_local,
        }

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def providers(self) -> list[str]:
        return sorted(self._builders)

    def register(self, provider: str, builder: EngineBuilder) -> None:
        """Register or replace the builder for a provider tag."""
        self._builders[provider] = builder
        logger.debug(f"Registered engine builder for provider '{provider}'")

    def create(self, config: BackendConfig) -> BaseEngine:
        """Build an engine for config.

        Raises:
            ConfigurationError: If the provider is unknown or misconfigured
        """
        builder = self._builders.get(config.provider)
        if builder is None:
            raise ConfigurationError(
                f"Unknown provider '{config.provider}' for backend '{config.name}'. "
                f"Available: {', '.join(self.providers)}"
            )
        return builder(config, self.settings)

    __call__ = create


def default_backend_configs() -> list[BackendConfig]:
    """Backends used when the caller does not pick any."""
    return [
        BackendConfig(name="gpt-4o", provider="openai", model="gpt-4o"),
        BackendConfig(name="gpt-4o-mini", provider="openai", model="gpt-4o-mini"),
        BackendConfig(name="claude-sonnet", provider="anthropic", model="claude-sonnet-4-0"),
        BackendConfig(name="claude-haiku", provider="anthropic", model="claude-3-5-haiku-latest"),
    ]
