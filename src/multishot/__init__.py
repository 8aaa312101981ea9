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

"""
multishot - one prompt, many backends

Fans a single request out to many AI model backends under bounded
concurrency, tolerates the ones that fail, and compares what comes back.
"""

__version__ = "0.1.0"
__author__ = "KTTC Development"
__email__ = "dev@kt.tc"

from multishot.core.errors import (
    ConfigurationError,
    EngineError,
    MultishotError,
)
from multishot.core.models import (
    AggregateResult,
    BackendConfig,
    BackendResult,
    ExecutionMode,
    PromptRequest,
    RunOptions,
)
from multishot.orchestration import Orchestrator

__all__ = [
    "AggregateResult",
    "BackendConfig",
    "BackendResult",
    "ConfigurationError",
    "EngineError",
    "ExecutionMode",
    "MultishotError",
    "Orchestrator",
    "PromptRequest",
    "RunOptions",
    "__version__",
]
