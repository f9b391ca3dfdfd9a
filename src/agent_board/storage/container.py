from __future__ import annotations

import os
import shutil
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import BoardSettings, load_settings, resolve_data_dir
from ..constants import LOGS_DIR, PROJECTS_DIR, PROMPTS_DIR, WORKSPACE_FILE
from ..utils import short_id
from .board_store import TaskStore
from .locks import KeyedLock, project_key
from .project_registry import ProjectRegistry


class Container:
    """Process-wide handle on every store; built once at startup and passed around."""

    def __init__(self, data_dir: Optional[Path] = None, settings: Optional[BoardSettings] = None) -> None:
        self.data_dir = resolve_data_dir(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.settings = settings or load_settings(self.data_dir)
        self.locks = KeyedLock()
        self.projects = ProjectRegistry(
            self.data_dir / WORKSPACE_FILE,
            self.locks,
            on_rename=self._rename_board,
            on_delete=self._drop_board,
        )
        self._boards: dict[str, TaskStore] = {}
        self._boards_lock = threading.Lock()

    def board_path(self, project_id: str) -> Path:
        return self.data_dir / PROJECTS_DIR / f"{project_id}.json"

    def board(self, project_id: str) -> TaskStore:
        with self._boards_lock:
            store = self._boards.get(project_id)
            if store is None:
                store = TaskStore(
                    self.board_path(project_id),
                    project_id,
                    self.locks,
                    retention_hours=self.settings.deleted_task_retention_hours,
                    undo_window_seconds=self.settings.undo_window_seconds,
                    default_execution_mode=self.settings.execution_mode,
                )
                self._boards[project_id] = store
            return store

    def log_path(self, project_id: str, task_id: str) -> Path:
        return self.data_dir / LOGS_DIR / project_id / f"{short_id(task_id)}.jsonl"

    def prompt_path(self, project_id: str, task_id: str) -> Path:
        return self.data_dir / PROMPTS_DIR / project_id / f"{short_id(task_id)}.md"

    def forget_board(self, project_id: str) -> None:
        with self._boards_lock:
            self._boards.pop(project_id, None)

    def _rename_board(self, old_id: str, new_id: str) -> None:
        old_path = self.board_path(old_id)
        with self.locks.hold(project_key(old_id)):
            if old_path.exists():
                os.replace(old_path, self.board_path(new_id))
            old_logs = self.data_dir / LOGS_DIR / old_id
            if old_logs.exists():
                os.replace(old_logs, self.data_dir / LOGS_DIR / new_id)
        self.forget_board(old_id)
        logger.info("Renamed project board {} -> {}", old_id, new_id)

    def _drop_board(self, project_id: str) -> None:
        board_path = self.board_path(project_id)
        with self.locks.hold(project_key(project_id)):
            for path in (board_path, board_path.with_suffix(".lock")):
                if path.exists():
                    path.unlink()
            for root in (LOGS_DIR, PROMPTS_DIR):
                shutil.rmtree(self.data_dir / root / project_id, ignore_errors=True)
        self.forget_board(project_id)
        logger.info("Dropped board, logs and prompts of project {}", project_id)
