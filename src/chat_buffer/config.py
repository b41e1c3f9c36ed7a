"""YAML configuration with ${VAR} expansion, validated by pydantic models."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    db_path: str = "./data/chat_buffer.db"
    busy_timeout_ms: int = Field(default=5000, ge=0)


class BufferConfig(BaseModel):
    # Sliding window: a buffer closes this long after its *last* message.
    window_seconds: float = Field(default=30.0, gt=0)


class SchedulerConfig(BaseModel):
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    timezone: str = "UTC"
    batch_limit: int = Field(default=50, gt=0)
    max_concurrent_dispatches: int = Field(default=5, gt=0)
    cleanup_hour: int = Field(default=3, ge=0, le=23)


class RetentionConfig(BaseModel):
    completed_buffer_days: int = Field(default=30, gt=0)
    log_days: int = Field(default=7, gt=0)


class ProcessingConfig(BaseModel):
    safety_timeout_minutes: float = Field(default=5.0, gt=0)
    # 1 means a failed hand-off is final (at-most-once).
    max_attempts: int = Field(default=1, ge=1)
    retry_delay_seconds: float = Field(default=30.0, ge=0)
    processor_timeout_seconds: float = Field(default=30.0, gt=0)


class ProcessorConfig(BaseModel):
    backend: str = "log"  # "log" | "http"
    url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 30.0


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    processor: ProcessorConfig = Field(default_factory=ProcessorConfig)
    feature_flags: dict[str, bool] = Field(default_factory=dict)


# ${NAME} or ${NAME:-fallback}
_PLACEHOLDER = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Expand placeholders from ``extra`` first, then the environment.

    Unresolved placeholders without a fallback are left as written so that
    pydantic reports them against the field that needed them.
    """
    lookup = {**os.environ, **(extra or {})}

    def _expand(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        if name in lookup:
            return lookup[name]
        return fallback if fallback is not None else match.group(0)

    return _PLACEHOLDER.sub(_expand, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Read ``.env`` (if present), then the YAML file, and validate it."""
    if Path(env_path).exists():
        load_dotenv(env_path)

    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    text = path.read_text(encoding="utf-8")

    # first pass only to learn data_dir, which other values may reference
    first_pass = yaml.safe_load(text) or {}
    data_dir = _interpolate_env_vars(str(first_pass.get("data_dir", "./data")))

    data = yaml.safe_load(_interpolate_env_vars(text, extra={"data_dir": data_dir})) or {}
    return AppConfig.model_validate(data)
