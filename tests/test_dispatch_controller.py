from __future__ import annotations

import json
import subprocess
import threading
import time
from pathlib import Path

import pytest

from agent_board.config import BoardSettings
from agent_board.dispatch.controller import DispatchController
from agent_board.storage.container import Container
from agent_board.utils import short_id
from agent_board.workers.process import AgentSpawnError
from agent_board.worktree import WorktreeManager, branch_name
from conftest import agent_calls, git_init


def _project(container: Container, path: Path, name: str = "Demo") -> str:
    path.mkdir(parents=True, exist_ok=True)
    return container.projects.create(name, str(path)).id


def _git(path: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True).stdout


def test_dispatch_runs_agent_and_moves_task_to_verify(
    tmp_path: Path, container: Container, controller: DispatchController
) -> None:
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Fix the login bug", title="Login")

    handle = controller.dispatch(pid, task.id)
    assert handle is not None
    assert handle.state == "running"
    assert handle.isolated is False
    assert handle.join(15)
    assert handle.state == "complete"

    done = store.get(task.id)
    assert done.status == "verify"
    assert done.locked is False
    assert done.dispatch == "none"
    assert done.findings == "Fixed the bug"
    assert "[result] Fixed the bug" in done.agent_log
    assert [(e.type, e.from_, e.to) for e in done.events] == [
        ("created", None, None),
        ("status_changed", "todo", "in-progress"),
        ("dispatched", "none", "starting"),
        ("dispatched", "starting", "running"),
        ("status_changed", "in-progress", "verify"),
        ("dispatch_cleared", "running", None),
    ]

    call = agent_calls(tmp_path)[0]
    assert Path(call["cwd"]).resolve() == (tmp_path / "repo").resolve()
    assert "--output-format" in call["args"]
    prompt = call["args"][call["args"].index("-p") + 1]
    assert prompt.startswith("# Login\n\nFix the login bug")
    assert f"/api/projects/{pid}/tasks/{task.id}" in prompt
    assert container.prompt_path(pid, task.id).read_text() == prompt

    log_lines = [json.loads(line) for line in container.log_path(pid, task.id).read_text().splitlines()]
    assert log_lines[0]["type"] == "system"
    assert log_lines[-1] == {"type": "exit", "code": 0}
    assert [b.type for b in controller.blocks(pid, task.id)] == ["tool-call", "result"]


def test_dispatch_unknown_task_or_project(container: Container, controller: DispatchController, tmp_path: Path) -> None:
    pid = _project(container, tmp_path / "repo")
    assert controller.dispatch(pid, "missing") is None
    assert controller.dispatch("ghost", "missing") is None


def test_sequential_mode_queues_second_task(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "0.5")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    first = store.create("first")
    second = store.create("second")

    h1 = controller.dispatch(pid, first.id)
    h2 = controller.dispatch(pid, second.id)
    assert h1.state == "running"
    assert h2.state == "queued"
    queued = store.get(second.id)
    assert (queued.status, queued.dispatch, queued.locked) == ("in-progress", "queued", True)

    assert controller.wait_idle(20)
    assert store.get(first.id).status == "verify"
    assert store.get(second.id).status == "verify"
    assert store.get(second.id).dispatch == "none"
    assert len(agent_calls(tmp_path)) == 2


def test_switching_to_parallel_starts_queued_tasks(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "1")
    pid = _project(container, tmp_path / "plain")
    store = container.board(pid)
    first = store.create("first")
    second = store.create("second")
    controller.dispatch(pid, first.id)
    controller.dispatch(pid, second.id)
    assert store.get(second.id).dispatch == "queued"

    controller.set_execution_mode(pid, "parallel")
    assert store.get(second.id).dispatch == "running"
    assert controller.active_handle(pid, second.id) is not None

    assert controller.wait_idle(20)
    assert store.get_execution_mode() == "parallel"
    # Not a git repository, so both ran in the project root.
    assert all(
        Path(call["cwd"]).resolve() == (tmp_path / "plain").resolve() for call in agent_calls(tmp_path)
    )


def test_parallel_mode_uses_worktree_and_merges_back(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    git_init(repo)
    monkeypatch.setenv("FAKE_AGENT_WRITE", "feature.txt=hello")
    pid = _project(container, repo)
    controller.set_execution_mode(pid, "parallel")
    store = container.board(pid)
    task = store.create("Add a feature")

    handle = controller.dispatch(pid, task.id)
    sid = short_id(task.id)
    assert handle.isolated is True
    assert handle.cwd == repo / ".agent-worktrees" / sid
    assert handle.join(15)

    done = store.get(task.id)
    assert done.status == "verify"
    assert done.worktree_path is None
    assert done.branch is None
    assert done.merge_conflict is None
    assert (repo / "feature.txt").read_text() == "hello"
    assert not (repo / ".agent-worktrees" / sid).exists()

    call = agent_calls(tmp_path)[0]
    assert Path(call["cwd"]).resolve() == (repo / ".agent-worktrees" / sid).resolve()
    prompt = call["args"][call["args"].index("-p") + 1]
    assert f"branch `agent/{sid}`" in prompt


def test_merge_conflict_keeps_task_in_verify(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    repo = tmp_path / "repo"
    git_init(repo)
    pid = _project(container, repo)
    store = container.board(pid)
    task = store.create("Rewrite the readme", mode="parallel")
    sid = short_id(task.id)

    # Existing worktree is reused; main moves on underneath it.
    path = WorktreeManager().create_isolated(repo, sid)
    store.update(task.id, {"worktree_path": str(path), "branch": branch_name(sid)})
    (repo / "README.md").write_text("# main\n")
    _git(repo, "commit", "-am", "main edit")
    monkeypatch.setenv("FAKE_AGENT_WRITE", "README.md=# agent\n")

    handle = controller.dispatch(pid, task.id)
    assert handle.cwd == path
    assert handle.join(15)

    conflicted = store.get(task.id)
    assert conflicted.status == "verify"
    assert conflicted.merge_conflict is not None
    assert conflicted.merge_conflict.files == ["README.md"]
    assert conflicted.merge_conflict.branch == f"agent/{sid}"
    assert conflicted.worktree_path == str(path)
    assert (repo / "README.md").read_text() == "# main\n"

    # Approving still cannot merge, so the task bounces back to verify.
    moved = controller.move_task(pid, task.id, "done", 0)
    assert moved.status == "verify"
    assert moved.merge_conflict is not None


def test_agent_failure_unlocks_task(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_EXIT", "1")
    monkeypatch.setenv("FAKE_AGENT_ERROR", "authentication failed")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Will fail")

    handle = controller.dispatch(pid, task.id)
    assert handle.join(15)
    assert handle.state == "failed"
    assert handle.error == "authentication failed"

    failed = store.get(task.id)
    assert failed.status == "in-progress"
    assert failed.dispatch == "none"
    assert failed.locked is False
    assert "[error] authentication failed" in failed.agent_log
    last = controller.blocks(pid, task.id)[-1]
    assert last.type == "result" and last.is_error is True


def test_spawn_failure_is_reported(tmp_path: Path) -> None:
    container = Container(tmp_path / "data", settings=BoardSettings(agent_bin=str(tmp_path / "missing-agent")))
    controller = DispatchController(container)
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Cannot start")

    with pytest.raises(AgentSpawnError):
        controller.dispatch(pid, task.id)

    failed = store.get(task.id)
    assert failed.dispatch == "none"
    assert failed.locked is False
    assert failed.status == "in-progress"
    blocks = controller.blocks(pid, task.id)
    assert blocks[-1].is_error is True
    assert "Failed to spawn" in blocks[-1].text


def test_abort_stops_agent_and_keeps_status(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "30")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Long job")

    handle = controller.dispatch(pid, task.id)
    started = time.monotonic()
    assert controller.abort(pid, task.id) is True
    assert handle.join(15)
    assert time.monotonic() - started < 15

    assert handle.state == "aborted"
    assert handle.result is not None and handle.result.cancelled
    aborted = store.get(task.id)
    assert aborted.status == "in-progress"
    assert aborted.dispatch == "none"
    assert aborted.locked is False
    assert aborted.findings == ""
    assert controller.abort(pid, "missing") is False


def test_moving_back_to_todo_cancels_and_resets(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Reset me")
    controller.dispatch(pid, task.id).join(15)
    assert store.get(task.id).findings == "Fixed the bug"

    monkeypatch.setenv("FAKE_AGENT_SLEEP", "30")
    moved = controller.move_task(pid, task.id, "in-progress", 0)
    assert moved is not None and moved.status == "in-progress"
    running = controller.active_handle(pid, task.id)
    assert running is not None

    reset = controller.move_task(pid, task.id, "todo", 0)
    assert running.join(15)
    assert running.state == "aborted"
    assert reset.status == "todo"
    assert (reset.findings, reset.agent_log, reset.human_steps) == ("", "", "")
    assert (reset.dispatch, reset.locked) == ("none", False)


def test_update_task_to_in_progress_dispatches(
    tmp_path: Path, container: Container, controller: DispatchController
) -> None:
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Via patch")

    updated = controller.update_task(pid, task.id, {"status": "in-progress"})
    assert updated is not None
    assert controller.wait_idle(15)
    assert store.get(task.id).status == "verify"
    assert controller.update_task(pid, "missing", {"title": "x"}) is None


def test_reply_after_run_resumes_session(
    tmp_path: Path, container: Container, controller: DispatchController
) -> None:
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Needs follow-up")
    controller.dispatch(pid, task.id).join(15)

    assert controller.reply(pid, task.id, "  also add tests  ") == "started"
    assert controller.wait_idle(15)

    calls = agent_calls(tmp_path)
    assert len(calls) == 2
    args = calls[1]["args"]
    assert args[args.index("--resume") + 1] == "sess-123"
    assert "also add tests" in args[args.index("-p") + 1]

    blocks = controller.blocks(pid, task.id)
    assert [b.text for b in blocks if b.type == "user-message"] == ["also add tests"]
    assert [b.type for b in blocks].count("result") == 2
    done = store.get(task.id)
    assert done.status == "verify"
    assert done.locked is False


def test_reply_while_running_is_queued(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "0.5")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Busy")
    handle = controller.dispatch(pid, task.id)

    assert controller.reply(pid, task.id, "one more thing") == "queued"
    assert controller.wait_idle(20)

    calls = agent_calls(tmp_path)
    assert len(calls) == 2
    assert "--resume" in calls[1]["args"]


def test_reply_validation(tmp_path: Path, container: Container, controller: DispatchController) -> None:
    pid = _project(container, tmp_path / "repo")
    task = container.board(pid).create("x")
    with pytest.raises(ValueError):
        controller.reply(pid, task.id, "   ")
    assert controller.reply(pid, "missing", "hi") is None


def test_delete_cancels_running_agent(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "30")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Doomed")
    handle = controller.dispatch(pid, task.id)

    assert controller.delete_task(pid, task.id) is True
    assert handle.join(15)
    assert store.get(task.id) is None

    entry = store.restore_last()
    assert entry is not None
    assert entry.task.dispatch == "none"
    assert entry.task.locked is False
    assert controller.delete_task(pid, "missing") is False


def test_complete_endpoint_replays_log(tmp_path: Path, container: Container, controller: DispatchController) -> None:
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Finish by hand")
    controller.dispatch(pid, task.id).join(15)
    store.update(task.id, {"status": "in-progress", "findings": ""})

    completed = controller.complete(pid, task.id)
    assert completed.status == "verify"
    assert completed.findings == "Fixed the bug"
    assert controller.complete(pid, "missing") is None


def test_reorder_with_status_change_applies_side_effects(
    tmp_path: Path, container: Container, controller: DispatchController
) -> None:
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    a = store.create("a")
    b = store.create("b")

    columns = controller.reorder_tasks(pid, [{"id": a.id, "order": 0}, {"id": b.id, "order": 1}])
    assert [t.id for t in columns["todo"]] == [a.id, b.id]

    controller.reorder_tasks(pid, [{"id": b.id, "order": 0, "status": "in-progress"}])
    assert controller.wait_idle(15)
    assert store.get(b.id).status == "verify"
    assert [t.id for t in store.columns()["todo"]] == [a.id]


def test_cleanup_worktrees_removes_orphans(
    tmp_path: Path, container: Container, controller: DispatchController
) -> None:
    repo = tmp_path / "repo"
    git_init(repo)
    pid = _project(container, repo)
    store = container.board(pid)
    task = store.create("Owns a worktree")
    sid = short_id(task.id)
    manager = WorktreeManager()
    path = manager.create_isolated(repo, sid)
    store.update(task.id, {"worktree_path": str(path), "branch": branch_name(sid)})
    manager.create_isolated(repo, "orphan01")

    assert controller.cleanup_worktrees(pid) == ["orphan01"]
    assert manager.list_short_ids(repo) == [sid]
    assert controller.cleanup_worktrees("ghost") == []


def test_concurrent_dispatch_starts_one_agent(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "1.5")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    task = store.create("Only once")
    barrier = threading.Barrier(2)
    handles: list = []

    def dispatch() -> None:
        barrier.wait(5)
        handles.append(controller.dispatch(pid, task.id))

    threads = [threading.Thread(target=dispatch) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(15)

    assert len(handles) == 2
    assert handles[0] is handles[1]
    assert controller.wait_idle(20)
    assert len(agent_calls(tmp_path)) == 1
    assert store.get(task.id).status == "verify"


def test_dispatching_a_queued_task_again_keeps_it_queued(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "0.5")
    pid = _project(container, tmp_path / "repo")
    store = container.board(pid)
    first = store.create("first")
    second = store.create("second")
    controller.dispatch(pid, first.id)
    assert controller.dispatch(pid, second.id).state == "queued"

    again = controller.dispatch(pid, second.id)
    assert again.state == "queued"
    assert store.get(second.id).dispatch == "queued"

    assert controller.wait_idle(20)
    assert len(agent_calls(tmp_path)) == 2


class _BrokenMergeWorktrees(WorktreeManager):
    def merge(self, project_path, short_id):
        raise RuntimeError("merge crashed")


def test_failure_while_finishing_still_unlocks_task(tmp_path: Path, container: Container) -> None:
    repo = tmp_path / "repo"
    git_init(repo)
    controller = DispatchController(container, worktrees=_BrokenMergeWorktrees())
    pid = _project(container, repo)
    controller.set_execution_mode(pid, "parallel")
    store = container.board(pid)
    task = store.create("Merge will blow up")

    handle = controller.dispatch(pid, task.id)
    assert handle.isolated is True
    assert handle.join(15)

    assert handle.state == "failed"
    assert handle.error == "merge crashed"
    stuck = store.get(task.id)
    assert stuck.dispatch == "none"
    assert stuck.locked is False
    assert controller.active_handle(pid, task.id) is None


def test_delete_project_stops_agents_and_drops_board(
    tmp_path: Path, container: Container, controller: DispatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FAKE_AGENT_SLEEP", "30")
    pid = _project(container, tmp_path / "repo")
    task = container.board(pid).create("Still running")
    handle = controller.dispatch(pid, task.id)

    assert controller.delete_project(pid) is True
    assert handle.state == "aborted"
    assert not container.board_path(pid).exists()
    assert not container.log_path(pid, task.id).parent.exists()
    assert not container.prompt_path(pid, task.id).parent.exists()

    again = _project(container, tmp_path / "repo")
    assert again == pid
    assert all(tasks == [] for tasks in container.board(again).columns().values())
    assert controller.delete_project("ghost") is False
