"""Configuration management for multishot.

Handles API keys, run defaults and infrastructure tuning using Pydantic Settings.
Supports environment variables and .env files.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from multishot.core.models import BackendConfig, ExecutionMode, RunOptions
from multishot.resilience.circuit_breaker import CircuitBreakerConfig
from multishot.streaming.processor import StreamConfig


class Settings(BaseSettings):
    """Application settings.

    Loads configuration from environment variables or .env file.
    All settings can be overridden via environment variables with MULTISHOT_ prefix.

    Example .env file:
        MULTISHOT_OPENAI_API_KEY=sk-...
        MULTISHOT_ANTHROPIC_API_KEY=sk-ant-...
        MULTISHOT_MAX_CONCURRENCY=3
        MULTISHOT_LOCAL_ENDPOINT=http://localhost:11434

    Example usage:
        >>> settings = Settings()
        >>> options = settings.run_options(backends)
    """

    # API Keys
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
        json_schema_extra={"env": "MULTISHOT_OPENAI_API_KEY"},
    )

    anthropic_api_key: str | None = Field(
        default=None,
        description="Anthropic API key",
        json_schema_extra={"env": "MULTISHOT_ANTHROPIC_API_KEY"},
    )

    openai_base_url: str | None = Field(
        default=None,
        description="Base URL for OpenAI-compatible servers",
        json_schema_extra={"env": "MULTISHOT_OPENAI_BASE_URL"},
    )

    # Local model server
    local_endpoint: str = Field(
        default="http://localhost:11434",
        description="Default endpoint for local engines",
        json_schema_extra={"env": "MULTISHOT_LOCAL_ENDPOINT"},
    )

    local_format: str = Field(
        default="ollama",
        description="Default wire format for local engines (ollama, llamacpp, custom)",
        json_schema_extra={"env": "MULTISHOT_LOCAL_FORMAT"},
    )

    # Run defaults
    default_mode: ExecutionMode = Field(
        default=ExecutionMode.PARALLEL,
        description="Default execution mode (parallel, sequential)",
        json_schema_extra={"env": "MULTISHOT_DEFAULT_MODE"},
    )

    max_concurrency: int = Field(
        default=5,
        description="Maximum backend calls in flight",
        ge=1,
        json_schema_extra={"env": "MULTISHOT_MAX_CONCURRENCY"},
    )

    request_timeout: float = Field(
        default=60.0,
        description="Per-call timeout (seconds)",
        gt=0,
        json_schema_extra={"env": "MULTISHOT_REQUEST_TIMEOUT"},
    )

    max_retries: int = Field(
        default=1,
        description="Retries after the first attempt",
        ge=0,
        json_schema_extra={"env": "MULTISHOT_MAX_RETRIES"},
    )

    retry_base_delay: float = Field(
        default=1.0,
        description="Backoff base delay (seconds)",
        ge=0.0,
        json_schema_extra={"env": "MULTISHOT_RETRY_BASE_DELAY"},
    )

    # Circuit breaker
    circuit_failure_threshold: int = Field(
        default=5,
        description="Consecutive failures before a breaker opens",
        ge=1,
        json_schema_extra={"env": "MULTISHOT_CIRCUIT_FAILURE_THRESHOLD"},
    )

    circuit_success_threshold: int = Field(
        default=3,
        description="Probe successes before a breaker closes",
        ge=1,
        json_schema_extra={"env": "MULTISHOT_CIRCUIT_SUCCESS_THRESHOLD"},
    )

    circuit_recovery_timeout: float = Field(
        default=60.0,
        description="Seconds an open breaker waits before probing",
        gt=0,
        json_schema_extra={"env": "MULTISHOT_CIRCUIT_RECOVERY_TIMEOUT"},
    )

    # Infrastructure
    pattern_cache_size: int = Field(
        default=100,
        description="Compiled pattern cache capacity",
        ge=1,
        json_schema_extra={"env": "MULTISHOT_PATTERN_CACHE_SIZE"},
    )

    stream_chunk_size: int = Field(
        default=50,
        description="Items per chunk for stream processing",
        ge=1,
        json_schema_extra={"env": "MULTISHOT_STREAM_CHUNK_SIZE"},
    )

    stream_concurrency: int = Field(
        default=3,
        description="Chunks processed at once",
        ge=1,
        json_schema_extra={"env": "MULTISHOT_STREAM_CONCURRENCY"},
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        json_schema_extra={"env": "MULTISHOT_LOG_LEVEL"},
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MULTISHOT_",
        case_sensitive=False,
        extra="ignore",
    )

    def get_api_key(self, provider: str) -> str | None:
        """Get the configured API key for a provider tag, if any."""
        if provider == "openai":
            return self.openai_api_key
        if provider == "anthropic":
            return self.anthropic_api_key
        return None

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.circuit_failure_threshold,
            success_threshold=self.circuit_success_threshold,
            recovery_timeout=self.circuit_recovery_timeout,
        )

    def stream_config(self) -> StreamConfig:
        return StreamConfig(
            chunk_size=self.stream_chunk_size,
            concurrency_limit=self.stream_concurrency,
            timeout=self.request_timeout,
        )

    def run_options(self, backends: list[BackendConfig], **overrides: Any) -> RunOptions:
        """Build RunOptions from these defaults.

        Args:
            backends: Backends for the run
            **overrides: Any RunOptions field

        Raises:
            pydantic.ValidationError: If the resulting options are invalid
        """
        values: dict[str, Any] = {
            "backends": backends,
            "mode": self.default_mode,
            "max_concurrency": self.max_concurrency,
            "timeout": self.request_timeout,
            "retries": self.max_retries,
            "retry_base_delay": self.retry_base_delay,
        }
        values.update(overrides)
        return RunOptions(**values)


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure_logging(level: str | int | None = None) -> None:
    """Configure root logging for applications embedding multishot.

    Args:
        level: Logging level name or number (defaults to Settings.log_level)
    """
    resolved = level if level is not None else get_settings().log_level
    if isinstance(resolved, str):
        resolved = getattr(logging, resolved.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
