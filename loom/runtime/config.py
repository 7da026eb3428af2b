from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ConfigError

CONFIG_RELATIVE_PATH = Path(".loom") / "config" / "runtime.json"
LOG_LEVEL_ENV = "LOOM_LOG_LEVEL"

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class RuntimeConfig(BaseModel):
    """
    Conversation runtime settings.

    Loaded from `<project>/.loom/config/runtime.json`; every key is optional.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    max_tabs: int = 100
    default_tab_title: str = "New Chat"

    # Seconds between pending-diff polls while a diff confirmation is open.
    diff_poll_interval_s: float = 1.0

    # Hold back a trailing partial inline-call marker until the next delta arrives.
    # False reproduces the older behaviour where a marker split across deltas is
    # rendered as plain text.
    buffer_marker_prefixes: bool = True

    log_level: str = "WARNING"

    @field_validator("max_tabs")
    @classmethod
    def _validate_max_tabs(cls, v: int) -> int:
        if v < 1 or v > 1000:
            raise ValueError("max_tabs must be between 1 and 1000.")
        return v

    @field_validator("default_tab_title")
    @classmethod
    def _validate_title(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("default_tab_title must be a non-empty string.")
        return cleaned

    @field_validator("diff_poll_interval_s")
    @classmethod
    def _validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("diff_poll_interval_s must be > 0.")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(_LOG_LEVELS)}.")
        return level


def runtime_config_path(project_root: Path) -> Path:
    return (project_root / CONFIG_RELATIVE_PATH).expanduser().resolve()


def load_runtime_config(project_root: Path | None = None, *, env: dict[str, str] | None = None) -> RuntimeConfig:
    raw: dict[str, Any] = {}
    if project_root is not None:
        path = runtime_config_path(project_root)
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to read runtime config {path}: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError(f"Runtime config {path} must contain a JSON object.")
            raw.update(loaded)

    environ = os.environ if env is None else env
    level = environ.get(LOG_LEVEL_ENV)
    if isinstance(level, str) and level.strip():
        raw["log_level"] = level

    try:
        return RuntimeConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid runtime config: {e}") from e


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
