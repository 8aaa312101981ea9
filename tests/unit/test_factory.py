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

"""Unit tests for the engine factory."""

from __future__ import annotations

import pytest

from multishot.core.errors import ConfigurationError
from multishot.core.models import BackendConfig
from multishot.engines.anthropic_engine import AnthropicEngine
from multishot.engines.factory import EngineFactory, default_backend_configs
from multishot.engines.local_engine import LocalEngine
from multishot.engines.openai_engine import OpenAIEngine
from multishot.utils.config import Settings

pytestmark = pytest.mark.unit


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        openai_api_key="sk-test",
        anthropic_api_key="sk-ant-test",
        local_endpoint="http://models.internal:8080",
        local_format="llamacpp",
        request_timeout=12.0,
    )


class TestEngineFactory:
    """Provider dispatch and settings fallbacks."""

    def test_builtin_providers(self, settings: Settings) -> None:
        assert EngineFactory(settings).providers == ["anthropic", "local", "openai"]

    def test_builds_openai_with_settings_key(self, settings: Settings) -> None:
        engine = EngineFactory(settings).create(
            BackendConfig(name="gpt", provider="openai", model="gpt-4o")
        )
        assert isinstance(engine, OpenAIEngine)
        assert engine.api_key == "sk-test"

    def test_config_key_wins(self, settings: Settings) -> None:
        engine = EngineFactory(settings).create(
            BackendConfig(name="gpt", provider="openai", model="gpt-4o", api_key="sk-own")
        )
        assert isinstance(engine, OpenAIEngine)
        assert engine.api_key == "sk-own"

    def test_builds_anthropic(self, settings: Settings) -> None:
        engine = EngineFactory(settings)(
            BackendConfig(name="claude", provider="anthropic", model="claude-sonnet-4-0")
        )
        assert isinstance(engine, AnthropicEngine)

    def test_local_fills_endpoint_and_format(self, settings: Settings) -> None:
        engine = EngineFactory(settings).create(
            BackendConfig(name="llama", provider="local", model="llama3")
        )
        assert isinstance(engine, LocalEngine)
        assert engine.endpoint == "http://models.internal:8080"
        assert engine.format == "llamacpp"
        assert engine.timeout.total == 12.0

    def test_missing_key_is_configuration_error(self) -> None:
        factory = EngineFactory(Settings(_env_file=None, anthropic_api_key=None))  # type: ignore[call-arg]
        with pytest.raises(ConfigurationError):
            factory.create(
                BackendConfig(name="claude", provider="anthropic", model="claude-sonnet-4-0")
            )

    def test_unknown_provider(self, settings: Settings) -> None:
        with pytest.raises(ConfigurationError, match="Unknown provider 'grpc'"):
            EngineFactory(settings).create(BackendConfig(name="x", provider="grpc", model="m"))

    def test_register_custom_builder(self, settings: Settings, mock_engine_class) -> None:
        factory = EngineFactory(settings)
        factory.register("mock", lambda config, _settings: mock_engine_class(config.name))

        engine = factory.create(BackendConfig(name="fake", provider="mock", model="m"))

        assert isinstance(engine, mock_engine_class)
        assert engine.name == "fake"
        assert "mock" in factory.providers

    def test_registration_is_per_instance(self, settings: Settings, mock_engine_class) -> None:
        first = EngineFactory(settings)
        first.register("mock", lambda config, _settings: mock_engine_class(config.name))

        assert "mock" not in EngineFactory(settings).providers

    def test_default_backends_are_unique(self) -> None:
        names = [config.name for config in default_backend_configs()]
        assert len(names) == len(set(names))
        assert len(names) >= 2
