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

"""Backend engines.

Every engine implements BaseEngine: execute, is_available and
describe_capabilities. Engines are usually built from a BackendConfig by an
EngineFactory.
"""

from .anthropic_engine import AnthropicEngine
from .base import BaseEngine, CostClass, EngineCapabilities, EngineResponse
from .factory import EngineFactory, default_backend_configs
from .local_engine import LocalEngine
from .openai_engine import OpenAIEngine

__all__ = [
    "AnthropicEngine",
    "BaseEngine",
    "CostClass",
    "EngineCapabilities",
    "EngineFactory",
    "EngineResponse",
    "LocalEngine",
    "OpenAIEngine",
    "default_backend_configs",
]
