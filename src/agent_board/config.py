"""Load board settings from ``<data_dir>/settings.yaml`` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    DATA_DIR_ENV,
    DEFAULT_API_BASE_URL,
    DEFAULT_DATA_DIR,
    DEFAULT_DELETED_TASK_RETENTION_HOURS,
    DEFAULT_STDERR_TAIL_BYTES,
    DEFAULT_UNDO_WINDOW_SECONDS,
    EXECUTION_PARALLEL,
    EXECUTION_SEQUENTIAL,
    SETTINGS_FILE,
)
from .io_utils import _load_data_with_error

VALID_EXECUTION_MODES = {EXECUTION_SEQUENTIAL, EXECUTION_PARALLEL}

_ENV_OVERRIDES = {
    "CLAUDE_BIN": "agent_bin",
    "AGENT_BOARD_MODEL": "default_model",
    "AGENT_BOARD_API_URL": "api_base_url",
}


@dataclass
class BoardSettings:
    agent_bin: str = "claude"
    default_model: str = ""
    system_prompt_additions: str = ""
    execution_mode: str = EXECUTION_SEQUENTIAL
    api_base_url: str = DEFAULT_API_BASE_URL
    auto_commit: bool = True
    deleted_task_retention_hours: float = DEFAULT_DELETED_TASK_RETENTION_HOURS
    undo_window_seconds: float = DEFAULT_UNDO_WINDOW_SECONDS
    stderr_tail_bytes: int = DEFAULT_STDERR_TAIL_BYTES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BoardSettings":
        known = {f.name: f for f in fields(cls)}
        defaults = cls()
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known or value is None:
                continue
            expected = type(getattr(defaults, key))
            try:
                if expected is bool:
                    kwargs[key] = bool(value)
                else:
                    kwargs[key] = expected(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid setting {}={!r}", key, value)
        settings = cls(**kwargs)
        if settings.execution_mode not in VALID_EXECUTION_MODES:
            logger.warning("Unknown execution_mode '{}', using sequential", settings.execution_mode)
            settings.execution_mode = EXECUTION_SEQUENTIAL
        return settings


def resolve_data_dir(data_dir: Optional[Path] = None) -> Path:
    if data_dir is not None:
        return Path(data_dir).expanduser().resolve()
    return Path(os.environ.get(DATA_DIR_ENV) or DEFAULT_DATA_DIR).expanduser().resolve()


def load_settings(data_dir: Path) -> BoardSettings:
    """Load settings, falling back to defaults when the file is missing or corrupt.

    Args:
        data_dir: Board data directory.

    Returns:
        Resolved settings with environment overrides applied.
    """
    path = data_dir / SETTINGS_FILE
    raw, err = _load_data_with_error(path, {})
    if err:
        logger.warning("Unable to read {}: {}; using defaults", path, err)
        raw = {}
    merged = dict(raw)
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            merged[key] = value
    return BoardSettings.from_dict(merged)
