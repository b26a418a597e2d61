from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nodeflow.logging import get_logger

logger = get_logger(__name__)

# Retry defaults: 3 retries after the first attempt, backoff 1s, 2s, 4s
DEFAULT_NODE_MAX_RETRIES = 3
DEFAULT_BACKOFF_MS = 1000
MAX_RETRIES_HARD_CAP = 5
DEFAULT_NODE_TIMEOUT_MS = 30000
DEFAULT_FLOW_TIMEOUT_MS = 600000
DEFAULT_MAX_PARALLEL_NODES = 8


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the flow engine and its built-in processors."""

    node_max_retries: int = env_field(
        DEFAULT_NODE_MAX_RETRIES,
        "NODE_MAX_RETRIES",
        description="Retries after the first failed attempt of a node",
    )
    node_retry_backoff_ms: int = env_field(
        DEFAULT_BACKOFF_MS,
        "NODE_RETRY_BACKOFF_MS",
        description="Initial backoff between attempts; doubles each retry",
    )
    node_timeout_ms: int = env_field(DEFAULT_NODE_TIMEOUT_MS, "NODE_TIMEOUT_MS")
    flow_timeout_ms: int = env_field(
        DEFAULT_FLOW_TIMEOUT_MS,
        "FLOW_TIMEOUT_MS",
        description="Wall clock cap for a whole run, checked between batches (0 disables)",
    )
    max_parallel_nodes: int = env_field(
        DEFAULT_MAX_PARALLEL_NODES,
        "MAX_PARALLEL_NODES",
        description="Concurrent node executions within one ready batch (0 means unbounded)",
    )
    llm_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    llm_base_url: str = env_field("https://api.openai.com/v1", "OPENAI_BASE_URL")
    llm_default_model: str = env_field("gpt-4o-mini", "LLM_DEFAULT_MODEL")
    llm_timeout_seconds: float = env_field(60.0, "LLM_TIMEOUT_SECONDS")
    api_node_timeout_seconds: float = env_field(30.0, "API_NODE_TIMEOUT_SECONDS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: no backoff sleeps, placeholder LLM",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("node_max_retries")
    @classmethod
    def _cap_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("node_max_retries must be >= 0")
        if value > MAX_RETRIES_HARD_CAP:
            logger.warning(
                "node_max_retries_capped",
                requested=value,
                cap=MAX_RETRIES_HARD_CAP,
            )
            return MAX_RETRIES_HARD_CAP
        return value

    @field_validator(
        "node_retry_backoff_ms", "node_timeout_ms", "flow_timeout_ms", "max_parallel_nodes"
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must be >= 0")
        return value

    @field_validator("llm_api_key")
    @classmethod
    def _blank_key_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
