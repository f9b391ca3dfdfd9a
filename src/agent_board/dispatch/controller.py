"""Drive tasks through the dispatch lifecycle.

``none -> queued -> starting -> running -> (verify | aborted)``

The controller decides where a task runs (the shared project tree in
sequential mode, a dedicated worktree in parallel mode), launches the agent,
streams its output into a parser and the task's log file on a background
thread, and writes the outcome back to the board.  Status changes made through
the task-update surface are routed through :meth:`DispatchController.on_task_updated`
so their side effects (dispatch, abort, merge-back, queue advance) happen in
one place.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..constants import (
    CANCEL_JOIN_SECONDS,
    DISPATCH_ACTIVE_STATES,
    DISPATCH_NONE,
    DISPATCH_QUEUED,
    DISPATCH_RUNNING,
    DISPATCH_STARTING,
    EXECUTION_PARALLEL,
    EXECUTION_SEQUENTIAL,
    TASK_STATUS_DONE,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_TODO,
    TASK_STATUS_VERIFY,
    TASK_STATUSES,
)
from ..domain.models import MergeConflict, Project, Task
from ..io_utils import _append_jsonl_line
from ..storage.container import Container
from ..utils import short_id
from ..workers.config import AgentCommandSpec, command_spec_from_settings
from ..workers.process import AgentProcessRunner, AgentRun, AgentRunResult, AgentSpawnError, CancellationToken
from ..workers.stream import (
    RenderBlock,
    StreamEventParser,
    first_session_id,
    render_blocks_text,
    replay_log,
)
from ..worktree import MergeResult, WorktreeError, WorktreeManager, branch_name, is_git_repo
from .prompts import build_reply_prompt, build_task_prompt


@dataclass
class DispatchHandle:
    """Lightweight handle returned as soon as a dispatch has been acknowledged."""

    project_id: str
    task_id: str
    state: str = DISPATCH_QUEUED
    cwd: Optional[Path] = None
    isolated: bool = False
    error: Optional[str] = None
    run: Optional[AgentRun] = None
    result: Optional[AgentRunResult] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    parser: StreamEventParser = field(default_factory=StreamEventParser)
    pending_replies: list[str] = field(default_factory=list)
    thread: Optional[threading.Thread] = None

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the background consumer; True once it has finished."""
        if self.thread is None:
            return True
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "task_id": self.task_id,
            "state": self.state,
            "cwd": str(self.cwd) if self.cwd else None,
            "isolated": self.isolated,
            "error": self.error,
            "pid": self.run.pid if self.run else None,
        }


def _error_line(message: str) -> str:
    return json.dumps({"type": "result", "subtype": "error", "is_error": True, "result": message})


class DispatchController:
    def __init__(
        self,
        container: Container,
        *,
        runner: Optional[AgentProcessRunner] = None,
        worktrees: Optional[WorktreeManager] = None,
        command: Optional[AgentCommandSpec] = None,
    ) -> None:
        self.container = container
        self.runner = runner or AgentProcessRunner(container.settings.stderr_tail_bytes)
        self.worktrees = worktrees or WorktreeManager()
        self.command = command or command_spec_from_settings(container.settings)
        self._active: dict[tuple[str, str], DispatchHandle] = {}
        self._active_lock = threading.Lock()
        self._project_locks: dict[str, threading.RLock] = {}
        self._project_locks_guard = threading.Lock()

    # -- bookkeeping ------------------------------------------------------------

    def _project_lock(self, project_id: str) -> threading.RLock:
        with self._project_locks_guard:
            lock = self._project_locks.get(project_id)
            if lock is None:
                lock = threading.RLock()
                self._project_locks[project_id] = lock
            return lock

    def _register(self, handle: DispatchHandle) -> None:
        with self._active_lock:
            self._active[(handle.project_id, handle.task_id)] = handle

    def _unregister(self, handle: DispatchHandle) -> list[str]:
        """Drop *handle* if it is still the active one; returns replies queued for it."""
        with self._active_lock:
            key = (handle.project_id, handle.task_id)
            if self._active.get(key) is handle:
                del self._active[key]
            pending = list(handle.pending_replies)
            handle.pending_replies.clear()
            return pending

    def active_handle(self, project_id: str, task_id: str) -> Optional[DispatchHandle]:
        with self._active_lock:
            return self._active.get((project_id, task_id))

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Join every background consumer (used by the CLI and tests)."""
        while True:
            with self._active_lock:
                handles = list(self._active.values())
            if not handles:
                return True
            for handle in handles:
                if not handle.join(timeout):
                    return False

    def _project(self, project_id: str) -> Optional[Project]:
        return self.container.projects.get(project_id)

    def _log_path(self, project_id: str, task_id: str) -> Path:
        return self.container.log_path(project_id, task_id)

    def _should_queue(self, project_id: str, task_id: str) -> bool:
        store = self.container.board(project_id)
        state = store.snapshot()
        if state.execution_mode != EXECUTION_SEQUENTIAL:
            return False
        return any(
            t.id != task_id and t.dispatch in DISPATCH_ACTIVE_STATES
            for t in state.columns[TASK_STATUS_IN_PROGRESS]
        )

    # -- dispatch ---------------------------------------------------------------

    def dispatch(self, project_id: str, task_id: str) -> Optional[DispatchHandle]:
        """Put the task in progress and start (or queue) its agent.

        Returns ``None`` if the project or task does not exist.  A task that
        already has a running agent or sits in the queue gets that handle
        back; it never gets a second agent.

        Raises:
            AgentSpawnError: if the agent binary cannot be started.
        """
        project = self._project(project_id)
        if project is None:
            return None
        store = self.container.board(project_id)

        with self._project_lock(project_id):
            task = store.get(task_id)
            if task is None:
                return None
            existing = self.active_handle(project_id, task_id)
            if existing is not None:
                logger.debug("Task {} is already dispatched", short_id(task_id))
                return existing
            if task.dispatch == DISPATCH_QUEUED and task.status == TASK_STATUS_IN_PROGRESS:
                return DispatchHandle(project_id=project_id, task_id=task_id, state=DISPATCH_QUEUED)

            changes: dict[str, Any] = {"locked": True}
            if task.status != TASK_STATUS_IN_PROGRESS:
                changes["status"] = TASK_STATUS_IN_PROGRESS
            store.update(task_id, changes)

            if self._should_queue(project_id, task_id):
                store.update(task_id, {"dispatch": DISPATCH_QUEUED})
                logger.info("Queued task {} in project {}", short_id(task_id), project_id)
                return DispatchHandle(project_id=project_id, task_id=task_id, state=DISPATCH_QUEUED)
            return self._launch(project, task_id)

    def dispatch_next_queued(self, project_id: str) -> list[DispatchHandle]:
        """Start queued in-progress tasks, in column order, as far as the execution mode allows."""
        project = self._project(project_id)
        if project is None:
            return []
        store = self.container.board(project_id)
        started: list[DispatchHandle] = []
        with self._project_lock(project_id):
            queued = [t.id for t in store.columns()[TASK_STATUS_IN_PROGRESS] if t.dispatch == DISPATCH_QUEUED]
            for task_id in queued:
                current = store.get(task_id)
                if current is None or current.status != TASK_STATUS_IN_PROGRESS or current.dispatch != DISPATCH_QUEUED:
                    continue
                if self._should_queue(project_id, task_id):
                    break
                try:
                    started.append(self._launch(project, task_id))
                except AgentSpawnError as exc:
                    logger.error("Could not start queued task {}: {}", short_id(task_id), exc)
        return started

    def _launch(self, project: Project, task_id: str) -> DispatchHandle:
        store = self.container.board(project.id)
        task = store.get(task_id)
        handle = DispatchHandle(project_id=project.id, task_id=task_id, state=DISPATCH_STARTING)
        if task is None:
            handle.state = "failed"
            handle.error = "Task not found"
            return handle
        store.update(task_id, {"dispatch": DISPATCH_STARTING})

        project_path = Path(project.resolved_path)
        sid = short_id(task_id)
        cwd = project_path
        mode = task.mode or store.get_execution_mode()
        if task.is_isolated and Path(str(task.worktree_path)).is_dir():
            cwd = Path(str(task.worktree_path))
            handle.isolated = True
        elif mode == EXECUTION_PARALLEL:
            if is_git_repo(project_path):
                try:
                    cwd = self.worktrees.create_isolated(project_path, sid)
                except WorktreeError as exc:
                    return self._fail(handle, str(exc))
                handle.isolated = True
                task = store.update(
                    task_id,
                    {"worktree_path": str(cwd), "branch": branch_name(sid), "merge_conflict": None},
                ) or task
            else:
                logger.warning("{} is not a git repository; task {} runs in the project root", project_path, sid)
        handle.cwd = cwd

        prompt = build_task_prompt(
            task.description,
            api_base_url=self.container.settings.api_base_url,
            project_id=project.id,
            task_id=task_id,
            title=task.title,
            branch=task.branch if handle.isolated else None,
            auto_commit=self.container.settings.auto_commit,
        )
        prompt_path = self.container.prompt_path(project.id, task_id)
        prompt_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path.write_text(prompt)

        log_path = self._log_path(project.id, task_id)
        if log_path.exists():
            log_path.unlink()

        try:
            handle.run = self.runner.run(self.command.binary, self.command.build_args(prompt), cwd, token=handle.token)
        except AgentSpawnError as exc:
            self._fail(handle, str(exc))
            raise

        handle.state = DISPATCH_RUNNING
        store.update(task_id, {"dispatch": DISPATCH_RUNNING})
        self._start_consumer(handle)
        logger.info(
            "Dispatched task {} in project {} ({})",
            sid,
            project.id,
            "isolated" if handle.isolated else "shared tree",
        )
        return handle

    def _fail(self, handle: DispatchHandle, message: str) -> DispatchHandle:
        """Record a dispatch that never got going: error block, dispatch cleared, task unlocked."""
        logger.error("Dispatch of task {} failed: {}", short_id(handle.task_id), message)
        handle.state = "failed"
        handle.error = message
        handle.parser.add_error(message)
        _append_jsonl_line(self._log_path(handle.project_id, handle.task_id), _error_line(message))
        self.container.board(handle.project_id).update(
            handle.task_id,
            {
                "dispatch": DISPATCH_NONE,
                "locked": False,
                "agent_log": render_blocks_text(handle.parser.blocks),
            },
        )
        self.dispatch_next_queued(handle.project_id)
        return handle

    def _start_consumer(self, handle: DispatchHandle) -> None:
        self._register(handle)
        handle.thread = threading.Thread(
            target=self._consume,
            args=(handle,),
            name=f"dispatch-{short_id(handle.task_id)}",
            daemon=True,
        )
        handle.thread.start()

    def _consume(self, handle: DispatchHandle) -> None:
        assert handle.run is not None
        log_path = self._log_path(handle.project_id, handle.task_id)
        pending: list[str] = []
        try:
            for line in handle.run.lines():
                if line.strip():
                    _append_jsonl_line(log_path, line)
                handle.parser.feed_line(line)
            handle.parser.finish()
            result = handle.run.wait()
            handle.result = result
            if result.error:
                handle.parser.add_error(result.error)
                _append_jsonl_line(log_path, _error_line(result.error))
            exit_line = json.dumps({"type": "exit", "code": result.exit_code})
            _append_jsonl_line(log_path, exit_line)
            handle.parser.feed_line(exit_line)
        except Exception as exc:
            logger.exception("Agent stream for task {} failed: {}", short_id(handle.task_id), exc)
            result = AgentRunResult(exit_code=-1, error=str(exc))
            handle.result = result
        finally:
            pending = self._unregister(handle)
        try:
            self._finish_run(handle, result, pending)
        except Exception as exc:
            logger.exception("Finishing task {} failed: {}", short_id(handle.task_id), exc)
            handle.state = "failed"
            handle.error = str(exc)
            self.container.board(handle.project_id).update(
                handle.task_id,
                {"dispatch": DISPATCH_NONE, "locked": False},
            )

    def _finish_run(self, handle: DispatchHandle, result: AgentRunResult, pending: list[str]) -> None:
        project_id, task_id = handle.project_id, handle.task_id
        sid = short_id(task_id)
        if result.cancelled:
            handle.state = "aborted"
            logger.info("Agent for task {} was cancelled", sid)
            return
        store = self.container.board(project_id)
        if result.error:
            handle.state = "failed"
            handle.error = result.error
            logger.warning("Agent for task {} exited with code {}", sid, result.exit_code)
            store.update(
                task_id,
                {"dispatch": DISPATCH_NONE, "locked": False, "agent_log": render_blocks_text(handle.parser.blocks)},
            )
            self.dispatch_next_queued(project_id)
        else:
            handle.state = "complete"
            self.complete(project_id, task_id, parser=handle.parser)
        if pending:
            try:
                self._start_reply(project_id, task_id, "\n\n".join(pending), CancellationToken())
            except AgentSpawnError as exc:
                logger.error("Queued reply for task {} could not start: {}", sid, exc)

    # -- completion and merge-back -------------------------------------------------

    def complete(
        self,
        project_id: str,
        task_id: str,
        parser: Optional[StreamEventParser] = None,
    ) -> Optional[Task]:
        """Write the agent's outcome back: verify, unlocked, findings from the result block.

        An isolated task is merged back here; a conflict leaves it in verify
        with ``merge_conflict`` recorded.
        """
        store = self.container.board(project_id)
        task = store.get(task_id)
        if task is None:
            return None
        if parser is None:
            parser = replay_log(self._log_path(project_id, task_id))

        changes: dict[str, Any] = {
            "dispatch": DISPATCH_NONE,
            "locked": False,
            "agent_log": render_blocks_text(parser.blocks),
        }
        final = parser.final_result()
        if final is not None and final.text and not final.is_error:
            changes["findings"] = final.text
        if task.status != TASK_STATUS_DONE:
            changes["status"] = TASK_STATUS_VERIFY
        if task.is_isolated:
            changes.update(self._merge_changes(project_id, task))

        updated = store.update(task_id, changes)
        logger.info("Task {} completed -> {}", short_id(task_id), changes.get("status", task.status))
        if task.status == TASK_STATUS_IN_PROGRESS:
            self.dispatch_next_queued(project_id)
        return updated

    def _merge_changes(self, project_id: str, task: Task) -> dict[str, Any]:
        project = self._project(project_id)
        if project is None:
            return {}
        result = self.worktrees.merge(Path(project.resolved_path), short_id(task.id))
        return self._changes_for_merge(result)

    @staticmethod
    def _changes_for_merge(result: MergeResult) -> dict[str, Any]:
        if result.success:
            return {"worktree_path": None, "branch": None, "merge_conflict": None}
        return {
            "status": TASK_STATUS_VERIFY,
            "merge_conflict": MergeConflict(
                error=result.error or "Merge failed",
                files=list(result.conflict_files),
                branch=result.branch,
            ),
        }

    def merge_back(self, project_id: str, task_id: str) -> Optional[MergeResult]:
        """Merge an isolated task's branch; on conflict the task returns to verify."""
        project = self._project(project_id)
        store = self.container.board(project_id)
        task = store.get(task_id)
        if project is None or task is None or not task.is_isolated:
            return None
        result = self.worktrees.merge(Path(project.resolved_path), short_id(task_id))
        store.update(task_id, self._changes_for_merge(result))
        return result

    # -- abort ------------------------------------------------------------------------

    def _cancel(self, project_id: str, task_id: str) -> bool:
        with self._active_lock:
            handle = self._active.pop((project_id, task_id), None)
        if handle is None:
            return False
        handle.token.cancel()
        return True

    def abort(self, project_id: str, task_id: str) -> bool:
        """Stop the task's agent and clear its dispatch state; the worktree is left alone."""
        store = self.container.board(project_id)
        task = store.get(task_id)
        if task is None:
            return False
        if self._cancel(project_id, task_id):
            logger.info("Aborted agent for task {}", short_id(task_id))
        store.update(task_id, {"dispatch": DISPATCH_NONE, "locked": False})
        if task.status == TASK_STATUS_IN_PROGRESS:
            self.dispatch_next_queued(project_id)
        return True

    # -- status-driven side effects -----------------------------------------------------

    def on_task_updated(self, project_id: str, previous: Task, current: Task) -> Optional[DispatchHandle]:
        """Apply the side effects of a status change; returns the dispatch handle if one started."""
        if previous.status == current.status:
            return None
        store = self.container.board(project_id)
        handle: Optional[DispatchHandle] = None

        if current.status == TASK_STATUS_IN_PROGRESS:
            handle = self.dispatch(project_id, current.id)
        elif current.status == TASK_STATUS_TODO:
            self._cancel(project_id, current.id)
            store.update(
                current.id,
                {
                    "locked": False,
                    "dispatch": DISPATCH_NONE,
                    "findings": "",
                    "human_steps": "",
                    "agent_log": "",
                },
            )
        elif current.status == TASK_STATUS_DONE and current.is_isolated:
            self.merge_back(project_id, current.id)

        if previous.status == TASK_STATUS_IN_PROGRESS and current.status != TASK_STATUS_IN_PROGRESS:
            self.dispatch_next_queued(project_id)
        return handle

    def update_task(self, project_id: str, task_id: str, changes: dict[str, Any]) -> Optional[Task]:
        store = self.container.board(project_id)
        previous = store.get(task_id)
        if previous is None:
            return None
        current = store.update(task_id, changes)
        if current is None:
            return None
        self.on_task_updated(project_id, previous, current)
        return store.get(task_id)

    def move_task(self, project_id: str, task_id: str, status: str, index: int) -> Optional[Task]:
        store = self.container.board(project_id)
        previous = store.get(task_id)
        if previous is None:
            return None
        current = store.move(task_id, status, index)
        if current is None:
            return None
        self.on_task_updated(project_id, previous, current)
        return store.get(task_id)

    def reorder_tasks(self, project_id: str, items: list[dict[str, Any]]) -> dict[str, list[Task]]:
        """Apply ``{id, order, status?}`` items: status changes first, then column order."""
        store = self.container.board(project_id)
        before = {t.id: t for t in store.snapshot().all_tasks()}
        targets: dict[str, list[tuple[int, str]]] = {status: [] for status in TASK_STATUSES}
        changed: list[str] = []
        for item in items:
            task = before.get(str(item.get("id")))
            if task is None:
                continue
            status = item.get("status") or task.status
            if status not in TASK_STATUSES:
                raise ValueError(f"Unknown status '{status}'")
            targets[status].append((int(item.get("order") or 0), task.id))
            if status != task.status:
                store.update(task.id, {"status": status})
                changed.append(task.id)
        for status, entries in targets.items():
            if entries:
                store.reorder(status, [tid for _, tid in sorted(entries)])
        for tid in changed:
            current = store.get(tid)
            if current is not None:
                self.on_task_updated(project_id, before[tid], current)
        return store.columns()

    def delete_task(self, project_id: str, task_id: str) -> bool:
        store = self.container.board(project_id)
        task = store.get(task_id)
        if task is None:
            return False
        if self._cancel(project_id, task_id) or task.dispatch != DISPATCH_NONE:
            store.update(task_id, {"dispatch": DISPATCH_NONE, "locked": False})
        deleted = store.delete(task_id)
        if deleted and task.status == TASK_STATUS_IN_PROGRESS:
            self.dispatch_next_queued(project_id)
        return deleted

    def delete_project(self, project_id: str) -> bool:
        """Stop the project's agents, then remove it along with its board and logs."""
        with self._active_lock:
            handles = [h for (pid, _), h in self._active.items() if pid == project_id]
        for handle in handles:
            self._cancel(project_id, handle.task_id)
        for handle in handles:
            # The consumer still appends to the log until the process is gone.
            handle.join(CANCEL_JOIN_SECONDS)
        return self.container.projects.delete(project_id)

    def set_execution_mode(self, project_id: str, mode: str) -> str:
        self.container.board(project_id).set_execution_mode(mode)
        if mode == EXECUTION_PARALLEL:
            self.dispatch_next_queued(project_id)
        return mode

    # -- follow-up replies ------------------------------------------------------------

    def reply(
        self,
        project_id: str,
        task_id: str,
        message: str,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """Send a follow-up message to the task's agent.

        Returns ``"queued"`` when the agent is still running (the message is
        sent once it exits), ``"started"`` when a resumed run was launched,
        ``"cancelled"`` if *token* fired first, or ``None`` if the task or
        project is unknown.
        """
        message = message.strip()
        if not message:
            raise ValueError("Message is required")
        project = self._project(project_id)
        task = self.container.board(project_id).get(task_id)
        if project is None or task is None:
            return None
        token = token or CancellationToken()

        _append_jsonl_line(
            self._log_path(project_id, task_id),
            json.dumps({"type": "user-follow-up", "message": message}),
        )
        with self._active_lock:
            handle = self._active.get((project_id, task_id))
            if handle is not None:
                handle.pending_replies.append(message)
                handle.parser.add_local_user_message(message)
                logger.info("Queued reply for running task {}", short_id(task_id))
                return "queued"
        if token.cancelled:
            return "cancelled"
        self._start_reply(project_id, task_id, message, token)
        return "started"

    def _start_reply(self, project_id: str, task_id: str, message: str, token: CancellationToken) -> DispatchHandle:
        project = self._project(project_id)
        store = self.container.board(project_id)
        task = store.get(task_id)
        handle = DispatchHandle(project_id=project_id, task_id=task_id, state=DISPATCH_STARTING, token=token)
        if project is None or task is None:
            handle.state = "failed"
            handle.error = "Task not found"
            return handle

        cwd = Path(project.resolved_path)
        if task.worktree_path and Path(task.worktree_path).is_dir():
            cwd = Path(task.worktree_path)
            handle.isolated = True
        handle.cwd = cwd
        log_path = self._log_path(project_id, task_id)
        handle.parser = replay_log(log_path)
        session_id = first_session_id(log_path)
        args = self.command.build_args(
            build_reply_prompt(message),
            resume_session=session_id,
            continue_last=session_id is None,
        )
        try:
            handle.run = self.runner.run(self.command.binary, args, cwd, token=token)
        except AgentSpawnError as exc:
            self._fail(handle, str(exc))
            raise
        handle.state = DISPATCH_RUNNING
        store.update(task_id, {"dispatch": DISPATCH_RUNNING, "locked": True})
        self._start_consumer(handle)
        logger.info("Resumed task {} (session {})", short_id(task_id), session_id or "latest")
        return handle

    # -- history and housekeeping ---------------------------------------------------------

    def blocks(self, project_id: str, task_id: str) -> list[RenderBlock]:
        handle = self.active_handle(project_id, task_id)
        if handle is not None:
            return list(handle.parser.blocks)
        return replay_log(self._log_path(project_id, task_id)).blocks

    def cleanup_worktrees(self, project_id: str) -> list[str]:
        """Remove worktrees that no task on the board owns any more."""
        project = self._project(project_id)
        if project is None:
            return []
        live = [short_id(t.id) for t in self.container.board(project_id).snapshot().all_tasks() if t.is_isolated]
        return self.worktrees.cleanup_orphans(Path(project.resolved_path), live)
