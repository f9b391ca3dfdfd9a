from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from ..constants import DISPATCH_NONE, EXECUTION_SEQUENTIAL, TASK_STATUSES
from ..utils import _new_task_id, _now_iso

TaskStatus = Literal["todo", "in-progress", "verify", "done"]
DispatchState = Literal["none", "queued", "starting", "running"]
ExecutionMode = Literal["sequential", "parallel"]
Priority = Literal["low", "medium", "high"]
ProjectStatus = Literal["active", "review", "idle", "error"]
TaskEventType = Literal["created", "status_changed", "dispatched", "dispatch_cleared"]

now_iso = _now_iso


def empty_columns() -> dict[str, list["Task"]]:
    return {status: [] for status in TASK_STATUSES}


@dataclass
class TaskEvent:
    type: TaskEventType
    timestamp: str = field(default_factory=now_iso)
    from_: Optional[str] = None
    to: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "timestamp": self.timestamp}
        if self.from_ is not None:
            data["from"] = self.from_
        if self.to is not None:
            data["to"] = self.to
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskEvent":
        return cls(
            type=str(data.get("type") or "created"),  # type: ignore[arg-type]
            timestamp=str(data.get("timestamp") or now_iso()),
            from_=data.get("from"),
            to=data.get("to"),
        )


@dataclass
class MergeConflict:
    error: str = ""
    files: list[str] = field(default_factory=list)
    branch: str = ""
    detected_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergeConflict":
        return cls(
            error=str(data.get("error") or ""),
            files=[str(f) for f in list(data.get("files") or [])],
            branch=str(data.get("branch") or ""),
            detected_at=str(data.get("detected_at") or now_iso()),
        )


@dataclass
class Task:
    id: str = field(default_factory=_new_task_id)
    title: str = ""
    description: str = ""
    status: TaskStatus = "todo"
    priority: Optional[Priority] = None
    mode: Optional[ExecutionMode] = None

    findings: str = ""
    human_steps: str = ""
    agent_log: str = ""

    locked: bool = False
    dispatch: DispatchState = "none"
    attachments: list[dict[str, Any]] = field(default_factory=list)

    # Set only while the task runs in an isolated worktree.
    worktree_path: Optional[str] = None
    branch: Optional[str] = None
    merge_conflict: Optional[MergeConflict] = None

    events: list[TaskEvent] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def is_isolated(self) -> bool:
        return bool(self.worktree_path and self.branch)

    def record(self, event_type: TaskEventType, *, from_: Optional[str] = None, to: Optional[str] = None) -> TaskEvent:
        event = TaskEvent(type=event_type, from_=from_, to=to)
        self.events.append(event)
        return event

    def touch(self) -> None:
        self.updated_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["events"] = [e.to_dict() for e in self.events]
        data["merge_conflict"] = self.merge_conflict.to_dict() if self.merge_conflict else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        conflict_raw = data.get("merge_conflict")
        status = str(data.get("status") or "todo")
        return cls(
            id=str(data.get("id") or _new_task_id()),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=status if status in TASK_STATUSES else "todo",  # type: ignore[arg-type]
            priority=data.get("priority"),
            mode=data.get("mode"),
            findings=str(data.get("findings") or ""),
            human_steps=str(data.get("human_steps") or ""),
            agent_log=str(data.get("agent_log") or ""),
            locked=bool(data.get("locked", False)),
            dispatch=str(data.get("dispatch") or DISPATCH_NONE),  # type: ignore[arg-type]
            attachments=list(data.get("attachments") or []),
            worktree_path=data.get("worktree_path"),
            branch=data.get("branch"),
            merge_conflict=MergeConflict.from_dict(conflict_raw) if isinstance(conflict_raw, dict) else None,
            events=[TaskEvent.from_dict(e) for e in list(data.get("events") or []) if isinstance(e, dict)],
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class DeletedTaskEntry:
    task: Task
    column: TaskStatus
    index: int
    deleted_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "column": self.column,
            "index": self.index,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeletedTaskEntry":
        return cls(
            task=Task.from_dict(dict(data.get("task") or {})),
            column=str(data.get("column") or "todo"),  # type: ignore[arg-type]
            index=int(data.get("index") or 0),
            deleted_at=str(data.get("deleted_at") or now_iso()),
        )


@dataclass
class ChatLogEntry:
    role: str
    message: str
    timestamp: str = field(default_factory=now_iso)
    tool_calls: Optional[list[dict[str, Any]]] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatLogEntry":
        tool_calls = data.get("tool_calls")
        return cls(
            role=str(data.get("role") or "user"),
            message=str(data.get("message") or ""),
            timestamp=str(data.get("timestamp") or now_iso()),
            tool_calls=list(tool_calls) if isinstance(tool_calls, list) else None,
        )


@dataclass
class ProjectState:
    """One project's board: four ordered columns plus chat and undo history."""

    columns: dict[str, list[Task]] = field(default_factory=empty_columns)
    chat_log: list[ChatLogEntry] = field(default_factory=list)
    execution_mode: ExecutionMode = EXECUTION_SEQUENTIAL  # type: ignore[assignment]
    recently_deleted: list[DeletedTaskEntry] = field(default_factory=list)

    def find(self, task_id: str) -> Optional[tuple[Task, str, int]]:
        for status in TASK_STATUSES:
            for idx, task in enumerate(self.columns[status]):
                if task.id == task_id:
                    return task, status, idx
        return None

    def all_tasks(self) -> list[Task]:
        return [task for status in TASK_STATUSES for task in self.columns[status]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns": {status: [t.to_dict() for t in self.columns[status]] for status in TASK_STATUSES},
            "chat_log": [entry.to_dict() for entry in self.chat_log],
            "execution_mode": self.execution_mode,
            "recently_deleted": [entry.to_dict() for entry in self.recently_deleted],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_mode: str = EXECUTION_SEQUENTIAL) -> "ProjectState":
        """Build a board from its JSON form; *default_mode* applies when none was saved."""
        columns = empty_columns()
        raw_columns = data.get("columns") if isinstance(data.get("columns"), dict) else {}
        for status in TASK_STATUSES:
            for item in list(raw_columns.get(status) or []):
                if isinstance(item, dict):
                    task = Task.from_dict(item)
                    task.status = status  # type: ignore[assignment]
                    columns[status].append(task)
        mode = str(data.get("execution_mode") or default_mode)
        return cls(
            columns=columns,
            chat_log=[ChatLogEntry.from_dict(e) for e in list(data.get("chat_log") or []) if isinstance(e, dict)],
            execution_mode=mode if mode in ("sequential", "parallel") else EXECUTION_SEQUENTIAL,  # type: ignore[arg-type]
            recently_deleted=[
                DeletedTaskEntry.from_dict(e) for e in list(data.get("recently_deleted") or []) if isinstance(e, dict)
            ],
        )


@dataclass
class Project:
    id: str
    name: str
    path: str
    status: Optional[ProjectStatus] = None
    server_url: Optional[str] = None
    order: int = 0
    created_at: str = field(default_factory=now_iso)

    @property
    def resolved_path(self) -> str:
        return str(Path(self.path).expanduser())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            path=str(data.get("path") or ""),
            status=data.get("status"),
            server_url=data.get("server_url"),
            order=int(data.get("order") or 0),
            created_at=str(data.get("created_at") or now_iso()),
        )
