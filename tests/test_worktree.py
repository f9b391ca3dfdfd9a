from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from agent_board.worktree import WorktreeError, WorktreeManager, branch_name, is_git_repo, worktree_path
from conftest import git_init


def _git(path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(["git", *args], cwd=path, check=True, capture_output=True, text=True)


def _commit_file(path: Path, name: str, content: str, message: str) -> None:
    (path / name).write_text(content)
    _git(path, "add", "-A")
    _git(path, "commit", "-m", message)


def _branches(path: Path) -> list[str]:
    out = _git(path, "branch", "--format=%(refname:short)").stdout
    return [line.strip() for line in out.splitlines() if line.strip()]


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    git_init(path)
    return path


def test_naming_helpers(tmp_path: Path) -> None:
    assert branch_name("abcd1234") == "agent/abcd1234"
    assert worktree_path(tmp_path, "abcd1234") == tmp_path / ".agent-worktrees" / "abcd1234"


def test_is_git_repo(repo: Path, tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    assert is_git_repo(repo) is True
    assert is_git_repo(plain) is False


def test_ensure_gitignore_appends_once(repo: Path) -> None:
    (repo / ".gitignore").write_text("node_modules")
    manager = WorktreeManager()
    manager.ensure_gitignore(repo)
    manager.ensure_gitignore(repo)
    assert (repo / ".gitignore").read_text() == "node_modules\n.agent-worktrees/\n"


def test_create_isolated_worktree(repo: Path) -> None:
    manager = WorktreeManager()
    path = manager.create_isolated(repo, "abcd1234")

    assert path == repo / ".agent-worktrees" / "abcd1234"
    assert (path / "README.md").exists()
    assert "agent/abcd1234" in _branches(repo)
    assert manager.list_short_ids(repo) == ["abcd1234"]
    assert ".agent-worktrees/" in (repo / ".gitignore").read_text()


def test_create_isolated_twice_raises(repo: Path) -> None:
    manager = WorktreeManager()
    manager.create_isolated(repo, "abcd1234")
    with pytest.raises(WorktreeError):
        manager.create_isolated(repo, "abcd1234")


def test_clean_merge_removes_worktree_and_branch(repo: Path) -> None:
    manager = WorktreeManager()
    path = manager.create_isolated(repo, "abcd1234")
    _commit_file(path, "feature.txt", "hello\n", "add feature")

    result = manager.merge(repo, "abcd1234")

    assert result.success is True
    assert result.branch == "agent/abcd1234"
    assert (repo / "feature.txt").read_text() == "hello\n"
    assert not path.exists()
    assert "agent/abcd1234" not in _branches(repo)
    log = _git(repo, "log", "-1", "--format=%s").stdout.strip()
    assert log == "Merge agent/abcd1234"


def test_conflicting_merge_lists_files_and_aborts(repo: Path) -> None:
    manager = WorktreeManager()
    path = manager.create_isolated(repo, "abcd1234")
    _commit_file(path, "README.md", "# from agent\n", "agent edit")
    _commit_file(repo, "README.md", "# from main\n", "main edit")

    result = manager.merge(repo, "abcd1234")

    assert result.success is False
    assert result.conflict_files == ["README.md"]
    assert result.error and "agent/abcd1234" in result.error
    # Merge was aborted; the worktree and branch are kept for a retry.
    assert (repo / "README.md").read_text() == "# from main\n"
    assert not (repo / ".git" / "MERGE_HEAD").exists()
    assert path.exists()
    assert "agent/abcd1234" in _branches(repo)


@pytest.mark.parametrize("error", [subprocess.TimeoutExpired(["git", "merge"], 30), FileNotFoundError("git")])
def test_merge_reports_git_that_cannot_run(repo: Path, monkeypatch: pytest.MonkeyPatch, error: Exception) -> None:
    manager = WorktreeManager()
    path = manager.create_isolated(repo, "abcd1234")

    def broken_git(project_path: Path, *args: str):
        raise error

    monkeypatch.setattr("agent_board.worktree._git", broken_git)
    result = manager.merge(repo, "abcd1234")

    assert result.success is False
    assert result.branch == "agent/abcd1234"
    assert result.error.startswith("Merge of agent/abcd1234 failed")
    assert result.conflict_files == []
    assert path.exists()


def test_remove_tolerates_missing_worktree(repo: Path) -> None:
    WorktreeManager().remove(repo, "deadbeef")


def test_cleanup_orphans_keeps_live_worktrees(repo: Path) -> None:
    manager = WorktreeManager()
    manager.create_isolated(repo, "live0001")
    manager.create_isolated(repo, "dead0001")

    removed = manager.cleanup_orphans(repo, ["live0001"])

    assert removed == ["dead0001"]
    assert manager.list_short_ids(repo) == ["live0001"]
    assert "agent/dead0001" not in _branches(repo)
    assert "agent/live0001" in _branches(repo)
