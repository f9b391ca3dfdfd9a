"""HTTP surface for the board.

``PATCH /api/projects/{id}/tasks/{task_id}`` doubles as the agent's completion
callback: the dispatched agent is told to send ``{"status": "verify",
"locked": false, ...}`` there when it is done.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException
from loguru import logger
from pydantic import BaseModel, Field

from ..dispatch.controller import DispatchController
from ..domain.models import Task
from ..storage.board_store import TaskStore
from ..storage.container import Container
from ..workers.process import AgentSpawnError

StatusValue = Literal["todo", "in-progress", "verify", "done"]
DispatchValue = Literal["none", "queued", "starting", "running"]
ModeValue = Literal["sequential", "parallel"]
PriorityValue = Literal["low", "medium", "high"]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1)
    path: str = Field(min_length=1)
    server_url: Optional[str] = None


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    path: Optional[str] = None
    status: Optional[Literal["active", "review", "idle", "error"]] = None
    server_url: Optional[str] = None


class ReorderProjectsRequest(BaseModel):
    ids: list[str]


class ExecutionModeRequest(BaseModel):
    mode: ModeValue


class CreateTaskRequest(BaseModel):
    description: str = ""
    title: Optional[str] = None
    priority: Optional[PriorityValue] = None
    mode: Optional[ModeValue] = None


class UpdateTaskRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[StatusValue] = None
    priority: Optional[PriorityValue] = None
    mode: Optional[ModeValue] = None
    findings: Optional[str] = None
    human_steps: Optional[str] = None
    agent_log: Optional[str] = None
    locked: Optional[bool] = None
    dispatch: Optional[DispatchValue] = None
    attachments: Optional[list[dict[str, Any]]] = None
    merge_conflict: Optional[dict[str, Any]] = None


class MoveTaskRequest(BaseModel):
    status: StatusValue
    index: int = Field(default=0, ge=0)


class ReorderItem(BaseModel):
    id: str
    order: int = 0
    status: Optional[StatusValue] = None


class ReorderTasksRequest(BaseModel):
    items: list[ReorderItem]


class ReplyRequest(BaseModel):
    message: str


class ChatMessageRequest(BaseModel):
    role: str = "user"
    message: str = Field(min_length=1)
    tool_calls: Optional[list[dict[str, Any]]] = None


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_board_router(container: Container, controller: DispatchController) -> APIRouter:
    """Create the project/task router.

    Handlers are plain ``def`` so FastAPI runs them in its threadpool: they
    take file locks, run git and start or stop processes.
    """
    router = APIRouter(prefix="/api/projects", tags=["board"])

    def _board(project_id: str) -> TaskStore:
        if container.projects.get(project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return container.board(project_id)

    def _task(store: TaskStore, task_id: str) -> Task:
        task = store.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    # -- projects ------------------------------------------------------------

    @router.get("")
    def list_projects() -> dict[str, Any]:
        return {"projects": [p.to_dict() for p in container.projects.list()]}

    @router.post("", status_code=201)
    def create_project(body: CreateProjectRequest) -> dict[str, Any]:
        project = container.projects.create(body.name, body.path, server_url=body.server_url)
        return {"project": project.to_dict()}

    @router.post("/reorder")
    def reorder_projects(body: ReorderProjectsRequest) -> dict[str, Any]:
        return {"projects": [p.to_dict() for p in container.projects.reorder(body.ids)]}

    @router.get("/{project_id}")
    def get_project(project_id: str) -> dict[str, Any]:
        project = container.projects.get(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return {"project": project.to_dict()}

    @router.patch("/{project_id}")
    def update_project(project_id: str, body: UpdateProjectRequest) -> dict[str, Any]:
        project = container.projects.update(project_id, body.model_dump(exclude_unset=True))
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return {"project": project.to_dict()}

    @router.delete("/{project_id}")
    def delete_project(project_id: str) -> dict[str, Any]:
        if not controller.delete_project(project_id):
            raise HTTPException(status_code=404, detail="Project not found")
        return {"success": True}

    @router.get("/{project_id}/execution-mode")
    def get_execution_mode(project_id: str) -> dict[str, Any]:
        return {"mode": _board(project_id).get_execution_mode()}

    @router.patch("/{project_id}/execution-mode")
    def set_execution_mode(project_id: str, body: ExecutionModeRequest) -> dict[str, Any]:
        _board(project_id)
        return {"mode": controller.set_execution_mode(project_id, body.mode)}

    @router.get("/{project_id}/chat")
    def get_chat(project_id: str) -> dict[str, Any]:
        return {"chat_log": [entry.to_dict() for entry in _board(project_id).chat_log()]}

    @router.post("/{project_id}/chat", status_code=201)
    def add_chat(project_id: str, body: ChatMessageRequest) -> dict[str, Any]:
        entry = _board(project_id).add_chat_message(body.role, body.message, body.tool_calls)
        return {"entry": entry.to_dict()}

    # -- tasks ---------------------------------------------------------------

    @router.get("/{project_id}/tasks")
    def list_tasks(project_id: str) -> dict[str, Any]:
        state = _board(project_id).snapshot()
        return {
            "columns": {status: [t.to_dict() for t in tasks] for status, tasks in state.columns.items()},
            "execution_mode": state.execution_mode,
        }

    @router.post("/{project_id}/tasks", status_code=201)
    def create_task(project_id: str, body: CreateTaskRequest) -> dict[str, Any]:
        task = _board(project_id).create(body.description, title=body.title, priority=body.priority, mode=body.mode)
        return {"task": task.to_dict()}

    @router.post("/{project_id}/tasks/reorder")
    def reorder_tasks(project_id: str, body: ReorderTasksRequest) -> dict[str, Any]:
        _board(project_id)
        columns = controller.reorder_tasks(project_id, [item.model_dump() for item in body.items])
        return {"columns": {status: [t.to_dict() for t in tasks] for status, tasks in columns.items()}}

    @router.get("/{project_id}/tasks/undo")
    def peek_undo(project_id: str) -> dict[str, Any]:
        entry = _board(project_id).peek_deleted()
        if entry is None:
            raise HTTPException(status_code=404, detail="Nothing to undo")
        return {"entry": entry.to_dict()}

    @router.post("/{project_id}/tasks/undo")
    def restore_undo(project_id: str) -> dict[str, Any]:
        entry = _board(project_id).restore_last()
        if entry is None:
            raise HTTPException(status_code=404, detail="Nothing to undo")
        return {"task": entry.task.to_dict(), "column": entry.column, "index": entry.index}

    @router.get("/{project_id}/tasks/{task_id}")
    def get_task(project_id: str, task_id: str) -> dict[str, Any]:
        return {"task": _task(_board(project_id), task_id).to_dict()}

    @router.patch("/{project_id}/tasks/{task_id}")
    def update_task(project_id: str, task_id: str, body: UpdateTaskRequest) -> dict[str, Any]:
        _board(project_id)
        try:
            task = controller.update_task(project_id, task_id, body.model_dump(exclude_unset=True))
        except AgentSpawnError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"task": task.to_dict()}

    @router.delete("/{project_id}/tasks/{task_id}")
    def delete_task(project_id: str, task_id: str) -> dict[str, Any]:
        _board(project_id)
        if not controller.delete_task(project_id, task_id):
            raise HTTPException(status_code=404, detail="Task not found")
        return {"success": True}

    @router.post("/{project_id}/tasks/{task_id}/move")
    def move_task(project_id: str, task_id: str, body: MoveTaskRequest) -> dict[str, Any]:
        _board(project_id)
        try:
            task = controller.move_task(project_id, task_id, body.status, body.index)
        except AgentSpawnError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"task": task.to_dict()}

    @router.post("/{project_id}/tasks/{task_id}/dispatch")
    def dispatch_task(project_id: str, task_id: str) -> dict[str, Any]:
        store = _board(project_id)
        _task(store, task_id)
        try:
            handle = controller.dispatch(project_id, task_id)
        except AgentSpawnError as exc:
            logger.error("Dispatch failed for {}: {}", task_id, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if handle is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"dispatch": handle.to_dict(), "task": _task(store, task_id).to_dict()}

    @router.post("/{project_id}/tasks/{task_id}/abort")
    def abort_task(project_id: str, task_id: str) -> dict[str, Any]:
        _board(project_id)
        if not controller.abort(project_id, task_id):
            raise HTTPException(status_code=404, detail="Task not found")
        return {"success": True}

    @router.post("/{project_id}/tasks/{task_id}/reply")
    def reply_to_task(project_id: str, task_id: str, body: ReplyRequest) -> dict[str, Any]:
        _board(project_id)
        if not body.message.strip():
            raise HTTPException(status_code=400, detail="Message is required")
        try:
            outcome = controller.reply(project_id, task_id, body.message)
        except AgentSpawnError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if outcome is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"success": outcome != "cancelled", "queued": outcome == "queued"}

    @router.post("/{project_id}/tasks/{task_id}/complete")
    def complete_task(project_id: str, task_id: str) -> dict[str, Any]:
        _board(project_id)
        task = controller.complete(project_id, task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"task": task.to_dict()}

    @router.get("/{project_id}/tasks/{task_id}/log")
    def task_log(project_id: str, task_id: str) -> dict[str, Any]:
        _task(_board(project_id), task_id)
        return {"blocks": [block.to_dict() for block in controller.blocks(project_id, task_id)]}

    return router
