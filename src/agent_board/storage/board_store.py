"""File-backed task board for one project.

The board lives in a single JSON file (``projects/<id>.json``) holding the
four status columns, the chat log, the execution mode and the undo buffer.
All writes go through :meth:`TaskStore.transaction`, which takes the
project's key in the shared :class:`KeyedLock` plus a file lock, so at most
one mutation per project is in flight.  Reads never take the lock: files are
replaced atomically, so a reader sees either the old or the new board.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from loguru import logger

from ..constants import (
    DEFAULT_DELETED_TASK_RETENTION_HOURS,
    DEFAULT_UNDO_WINDOW_SECONDS,
    DISPATCH_NONE,
    EXECUTION_SEQUENTIAL,
    TASK_STATUS_TODO,
    TASK_STATUSES,
)
from ..domain.models import (
    ChatLogEntry,
    DeletedTaskEntry,
    MergeConflict,
    ProjectState,
    Task,
    TaskEvent,
)
from ..io_utils import FileLock, _atomic_write_json, _load_data
from ..utils import _parse_iso
from .locks import KeyedLock, project_key

# Fields a caller may change through update(); id, events and created_at are
# owned by the store.
UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "mode",
    "findings",
    "human_steps",
    "agent_log",
    "locked",
    "dispatch",
    "attachments",
    "worktree_path",
    "branch",
    "merge_conflict",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _legacy_order(item: dict[str, Any]) -> float:
    try:
        return float(item.get("order") or 0)
    except (TypeError, ValueError):
        return 0.0


def migrate_flat_tasks(raw: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Convert a legacy flat ``tasks`` list into status columns.

    Tasks are bucketed by status and sorted by their ``order`` field, which is
    then dropped.  Unknown statuses land in ``todo`` so no task is lost.
    Returns ``(data, migrated)``; already-columnar data is returned untouched.
    """
    if "columns" in raw or not isinstance(raw.get("tasks"), list):
        return raw, False
    data = {k: v for k, v in raw.items() if k != "tasks"}
    columns: dict[str, list[dict[str, Any]]] = {status: [] for status in TASK_STATUSES}
    items = [t for t in raw["tasks"] if isinstance(t, dict)]
    items.sort(key=_legacy_order)
    for item in items:
        task = {k: v for k, v in item.items() if k != "order"}
        status = task.get("status")
        if status not in columns:
            status = TASK_STATUS_TODO
            task["status"] = status
        columns[status].append(task)
    data["columns"] = columns
    return data, True


class _BoardTx:
    """In-memory transaction over one project's board."""

    def __init__(self, state: ProjectState) -> None:
        self.state = state
        self.dirty = False

    def find(self, task_id: str) -> Optional[tuple[Task, str, int]]:
        return self.state.find(task_id)


class TaskStore:
    """Thread-safe, file-backed board for one project.

    Parameters
    ----------
    path:
        The project's board file.
    project_id:
        Project id; selects the write lock key.
    locks:
        Lock registry shared by every store in the process.
    default_execution_mode:
        Mode reported for a board that has never saved one.
    """

    def __init__(
        self,
        path: Path,
        project_id: str,
        locks: KeyedLock,
        *,
        retention_hours: float = DEFAULT_DELETED_TASK_RETENTION_HOURS,
        undo_window_seconds: float = DEFAULT_UNDO_WINDOW_SECONDS,
        default_execution_mode: str = EXECUTION_SEQUENTIAL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.path = path
        self.project_id = project_id
        self._locks = locks
        self._key = project_key(project_id)
        self._file_lock = FileLock(path.with_suffix(".lock"))
        self._retention = timedelta(hours=retention_hours)
        self._undo_window = timedelta(seconds=undo_window_seconds)
        self._clock = clock
        self._default_mode = default_execution_mode

    # -- internal helpers ---------------------------------------------------

    def _read_raw(self) -> dict[str, Any]:
        return _load_data(self.path, {"columns": {}, "chat_log": []})

    def _load_locked(self) -> ProjectState:
        raw = self._read_raw()
        raw, migrated = migrate_flat_tasks(raw)
        state = ProjectState.from_dict(raw, self._default_mode)
        if migrated:
            logger.info("Migrated flat task list to columns for project {}", self.project_id)
            self._save(state)
        return state

    def _save(self, state: ProjectState) -> None:
        self._prune_deleted(state)
        _atomic_write_json(self.path, state.to_dict())

    def _prune_deleted(self, state: ProjectState) -> None:
        cutoff = self._clock() - self._retention
        kept = []
        for entry in state.recently_deleted:
            deleted_at = _parse_iso(entry.deleted_at)
            if deleted_at is not None and deleted_at > cutoff:
                kept.append(entry)
        state.recently_deleted = kept

    @contextmanager
    def transaction(self) -> Iterator[_BoardTx]:
        """Acquire the project lock, load the board, yield it, and save if dirty."""
        with self._locks.hold(self._key):
            with self._file_lock:
                tx = _BoardTx(self._load_locked())
                yield tx
                if tx.dirty:
                    self._save(tx.state)

    # -- reads ----------------------------------------------------------------

    def snapshot(self) -> ProjectState:
        raw = self._read_raw()
        if "columns" not in raw and isinstance(raw.get("tasks"), list):
            # Let a writer persist the migration so it never races a save.
            with self.transaction() as tx:
                return tx.state
        return ProjectState.from_dict(raw, self._default_mode)

    def columns(self) -> dict[str, list[Task]]:
        return self.snapshot().columns

    def get(self, task_id: str) -> Optional[Task]:
        found = self.snapshot().find(task_id)
        return found[0] if found else None

    def get_execution_mode(self) -> str:
        return self.snapshot().execution_mode

    def chat_log(self) -> list[ChatLogEntry]:
        return self.snapshot().chat_log

    # -- task mutations -------------------------------------------------------

    def create(
        self,
        description: str,
        title: Optional[str] = None,
        priority: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> Task:
        task = Task(title=title or "", description=description, priority=priority, mode=mode)  # type: ignore[arg-type]
        task.record("created")
        with self.transaction() as tx:
            tx.state.columns[TASK_STATUS_TODO].insert(0, task)
            tx.dirty = True
        logger.debug("Created task {} in project {}", task.id, self.project_id)
        return task

    def move(self, task_id: str, to_status: str, to_index: int) -> Optional[Task]:
        if to_status not in TASK_STATUSES:
            raise ValueError(f"Unknown status '{to_status}'")
        with self.transaction() as tx:
            found = tx.find(task_id)
            if found is None:
                return None
            task, from_status, from_index = found
            tx.state.columns[from_status].pop(from_index)
            if from_status != to_status:
                task.record("status_changed", from_=from_status, to=to_status)
            task.status = to_status  # type: ignore[assignment]
            task.touch()
            target = tx.state.columns[to_status]
            target.insert(max(0, min(to_index, len(target))), task)
            tx.dirty = True
            return task

    def update(self, task_id: str, changes: dict[str, Any]) -> Optional[Task]:
        """Apply a partial update; a status change moves the task to the head of its new column."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        new_status = changes.get("status")
        if new_status is not None and new_status not in TASK_STATUSES:
            raise ValueError(f"Unknown status '{new_status}'")

        with self.transaction() as tx:
            found = tx.find(task_id)
            if found is None:
                return None
            task, current, index = found

            if new_status is not None and new_status != current:
                task.record("status_changed", from_=current, to=new_status)
                tx.state.columns[current].pop(index)
                tx.state.columns[new_status].insert(0, task)

            if "dispatch" in changes:
                new_dispatch = changes["dispatch"] or DISPATCH_NONE
                changes = {**changes, "dispatch": new_dispatch}
                if new_dispatch != task.dispatch:
                    if new_dispatch == DISPATCH_NONE:
                        task.record("dispatch_cleared", from_=task.dispatch)
                    else:
                        task.record("dispatched", from_=task.dispatch, to=new_dispatch)

            for key, value in changes.items():
                if key == "merge_conflict" and isinstance(value, dict):
                    value = MergeConflict.from_dict(value)
                setattr(task, key, value)
            task.touch()
            tx.dirty = True
            return task

    def append_event(self, task_id: str, event: TaskEvent) -> bool:
        with self.transaction() as tx:
            found = tx.find(task_id)
            if found is None:
                return False
            found[0].events.append(event)
            tx.dirty = True
            return True

    def reorder(self, status: str, ordered_ids: list[str]) -> bool:
        """Reorder one column to match *ordered_ids*; unmentioned tasks keep their place at the end."""
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown status '{status}'")
        with self.transaction() as tx:
            column = tx.state.columns[status]
            by_id = {t.id: t for t in column}
            ordered = [by_id[tid] for tid in dict.fromkeys(ordered_ids) if tid in by_id]
            mentioned = {t.id for t in ordered}
            ordered.extend(t for t in column if t.id not in mentioned)
            tx.state.columns[status] = ordered
            tx.dirty = True
        return True

    def delete(self, task_id: str) -> bool:
        with self.transaction() as tx:
            found = tx.find(task_id)
            if found is None:
                return False
            task, column, index = found
            tx.state.recently_deleted.append(
                DeletedTaskEntry(
                    task=Task.from_dict(task.to_dict()),
                    column=column,  # type: ignore[arg-type]
                    index=index,
                    deleted_at=self._clock().isoformat(),
                )
            )
            tx.state.columns[column].pop(index)
            tx.dirty = True
        logger.debug("Deleted task {} from {} (index {})", task_id, column, index)
        return True

    def _latest_undoable(self, entries: list[DeletedTaskEntry]) -> Optional[int]:
        cutoff = self._clock() - self._undo_window
        for idx in range(len(entries) - 1, -1, -1):
            deleted_at = _parse_iso(entries[idx].deleted_at)
            if deleted_at is not None and deleted_at > cutoff:
                return idx
        return None

    def peek_deleted(self) -> Optional[DeletedTaskEntry]:
        entries = self.snapshot().recently_deleted
        idx = self._latest_undoable(entries)
        return entries[idx] if idx is not None else None

    def restore_last(self) -> Optional[DeletedTaskEntry]:
        with self.transaction() as tx:
            idx = self._latest_undoable(tx.state.recently_deleted)
            if idx is None:
                return None
            entry = tx.state.recently_deleted.pop(idx)
            if tx.find(entry.task.id) is not None:
                # Already back on the board; just drop the stale entry.
                tx.dirty = True
                return None
            column = tx.state.columns[entry.column]
            entry.task.status = entry.column
            column.insert(min(entry.index, len(column)), entry.task)
            tx.dirty = True
            return entry

    # -- project-level state --------------------------------------------------

    def set_execution_mode(self, mode: str) -> None:
        if mode not in ("sequential", "parallel"):
            raise ValueError("mode must be 'sequential' or 'parallel'")
        with self.transaction() as tx:
            tx.state.execution_mode = mode  # type: ignore[assignment]
            tx.dirty = True

    def add_chat_message(
        self,
        role: str,
        message: str,
        tool_calls: Optional[list[dict[str, Any]]] = None,
    ) -> ChatLogEntry:
        entry = ChatLogEntry(role=role, message=message, tool_calls=tool_calls)
        with self.transaction() as tx:
            tx.state.chat_log.append(entry)
            tx.dirty = True
        return entry
