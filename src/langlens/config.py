from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from langlens.utils import float_env, int_env

DEFAULT_API_URL = "http://localhost:2024"

# Tool names that write (replace) the agent's todo list.
TODO_TOOL_NAMES: List[str] = ["write_todos", "todo_write"]


class LangLensConfig(BaseModel):
    api_url: str = Field(default=DEFAULT_API_URL)
    # Seconds.
    timeout: float = Field(default=30.0)
    max_retries: int = Field(default=3)
    # Seconds; doubled after every failed attempt.
    retry_delay: float = Field(default=1.0)
    history_limit: int = Field(default=1000)
    stream_subgraphs: bool = Field(default=True)
    stream_resumable: bool = Field(default=True)
    # Seconds a cached list query is served without reloading.
    stale_time: float = Field(default=5.0)
    todo_tool_names: List[str] = Field(default_factory=lambda: list(TODO_TOOL_NAMES))
    preferences_db: Optional[str] = Field(default=None)
    # Snapshots kept per thread for SSE replay.
    event_buffer_size: int = Field(default=256)

    @field_validator("api_url")
    @classmethod
    def _validate_api_url(cls, value: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"Unsupported api_url: {value}")
        return value.rstrip("/")

    @field_validator("timeout", "stale_time")
    @classmethod
    def _validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("retry_delay")
    @classmethod
    def _validate_retry_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("retry_delay must not be negative")
        return value

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, value: int) -> int:
        """Validate that the retry count is a non-negative integer."""
        if not isinstance(value, int) or value < 0:
            raise ValueError("max_retries must be a non-negative integer")
        return value

    @field_validator("history_limit", "event_buffer_size")
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if not isinstance(value, int) or value <= 0:
            raise ValueError("Value must be a positive integer")
        return value

    @field_validator("todo_tool_names")
    @classmethod
    def _validate_todo_tool_names(cls, value: List[str]) -> List[str]:
        names = [name for name in value if isinstance(name, str) and name]
        if not names:
            raise ValueError("todo_tool_names must name at least one tool")
        return names


def default_config() -> LangLensConfig:
    """Build the default LangLensConfig."""
    return LangLensConfig()


def load_config() -> LangLensConfig:
    """Build a config from the environment, ignoring unparsable values."""
    base = default_config()
    data = base.model_dump(mode="json")
    data["api_url"] = os.environ.get("LANGGRAPH_API_URL") or base.api_url
    data["timeout"] = float_env("LANGLENS_TIMEOUT", base.timeout)
    data["max_retries"] = int_env("LANGLENS_MAX_RETRIES", base.max_retries)
    data["retry_delay"] = float_env("LANGLENS_RETRY_DELAY", base.retry_delay)
    data["history_limit"] = int_env("LANGLENS_HISTORY_LIMIT", base.history_limit)
    data["stale_time"] = float_env("LANGLENS_STALE_TIME", base.stale_time)
    data["event_buffer_size"] = int_env("LANGLENS_EVENT_BUFFER_SIZE", base.event_buffer_size)
    preferences_db = os.environ.get("LANGLENS_PREFERENCES_DB")
    if preferences_db:
        data["preferences_db"] = preferences_db
    return coerce_config(data)


def coerce_config(payload: Optional[dict]) -> LangLensConfig:
    """Coerce a loose dict payload into a validated LangLensConfig."""
    base = default_config()
    if not isinstance(payload, dict):
        return base

    data = base.model_dump(mode="json")
    # Only apply known fields.
    for key in LangLensConfig.model_fields:
        if key in payload and payload.get(key) is not None:
            data[key] = payload.get(key)
    for key in ("stream_subgraphs", "stream_resumable"):
        if key in payload:
            data[key] = bool(payload.get(key))

    return LangLensConfig.model_validate(data)
