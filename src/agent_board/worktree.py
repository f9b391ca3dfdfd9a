"""Run tasks in isolated git worktrees and merge them back.

Every isolated task gets exactly one worktree at
``<project>/.agent-worktrees/<short-id>`` on branch ``agent/<short-id>``, so
both can be located (and orphans detected) from task ids alone.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from .constants import BRANCH_PREFIX, GIT_TIMEOUT_SECONDS, WORKTREE_DIR_NAME


class WorktreeError(RuntimeError):
    """Raised when an isolated worktree cannot be created."""


@dataclass
class MergeResult:
    success: bool
    error: Optional[str] = None
    conflict_files: list[str] = field(default_factory=list)
    branch: str = ""


def branch_name(short_id: str) -> str:
    return f"{BRANCH_PREFIX}/{short_id}"


def worktree_path(project_path: Path, short_id: str) -> Path:
    return Path(project_path) / WORKTREE_DIR_NAME / short_id


def _git(project_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=project_path,
        capture_output=True,
        text=True,
        check=False,
        timeout=GIT_TIMEOUT_SECONDS,
    )


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().strip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().strip("/") in lines


def _append_ignore_entry(path: Path, ignore_entry: str) -> None:
    contents = ""
    if path.exists():
        contents = path.read_text()
    if contents and not contents.endswith("\n"):
        contents += "\n"
    contents += ignore_entry + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents)


def is_git_repo(project_path: Path) -> bool:
    try:
        return _git(Path(project_path), "rev-parse", "--git-dir").returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


class WorktreeManager:
    def ensure_gitignore(self, project_path: Path) -> None:
        """Append the worktree root to ``.gitignore`` once."""
        gitignore_path = Path(project_path) / ".gitignore"
        try:
            if _ignore_file_has_entry(gitignore_path, WORKTREE_DIR_NAME):
                return
            _append_ignore_entry(gitignore_path, f"{WORKTREE_DIR_NAME}/")
            logger.info("Added {}/ to {}", WORKTREE_DIR_NAME, gitignore_path)
        except OSError as exc:
            logger.warning("Unable to update .gitignore: {}", exc)

    def create_isolated(self, project_path: Path, short_id: str) -> Path:
        project_path = Path(project_path)
        self.ensure_gitignore(project_path)
        path = worktree_path(project_path, short_id)
        branch = branch_name(short_id)
        try:
            result = _git(project_path, "worktree", "add", "-b", branch, str(path))
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise WorktreeError(f"git worktree add failed for {branch}: {exc}") from exc
        if result.returncode != 0:
            raise WorktreeError(f"git worktree add failed for {branch}: {result.stderr.strip()}")
        logger.info("Created worktree {} on branch {}", path, branch)
        return path

    def merge(self, project_path: Path, short_id: str) -> MergeResult:
        """Merge the task branch into the checked-out branch of *project_path*.

        Conflicting paths are listed before the merge is aborted. The listing
        is best-effort: another process mutating the repository in between can
        change what it reports.  A git that cannot run or times out yields a
        failed result rather than an exception.
        """
        project_path = Path(project_path)
        branch = branch_name(short_id)
        try:
            result = _git(project_path, "merge", branch, "--no-ff", "-m", f"Merge {branch}")
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Merge of {} could not run: {}", branch, exc)
            return MergeResult(success=False, error=f"Merge of {branch} failed: {exc}", branch=branch)
        if result.returncode == 0:
            logger.info("Merged {} in {}", branch, project_path)
            self.remove(project_path, short_id)
            return MergeResult(success=True, branch=branch)

        conflict_files: list[str] = []
        try:
            diff = _git(project_path, "diff", "--name-only", "--diff-filter=U")
            if diff.returncode == 0:
                conflict_files = [line for line in diff.stdout.splitlines() if line.strip()]
            _git(project_path, "merge", "--abort")
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not inspect or abort the merge of {}: {}", branch, exc)
        logger.warning(
            "Merge of {} failed ({} conflicting files): {}",
            branch,
            len(conflict_files),
            (result.stderr or result.stdout).strip(),
        )
        return MergeResult(
            success=False,
            error=f"Merge conflict merging {branch}",
            conflict_files=conflict_files,
            branch=branch,
        )

    def remove(self, project_path: Path, short_id: str) -> None:
        """Force-remove the worktree and delete its branch; missing pieces are not errors."""
        project_path = Path(project_path)
        path = worktree_path(project_path, short_id)
        branch = branch_name(short_id)
        try:
            removed = _git(project_path, "worktree", "remove", str(path), "--force")
            if removed.returncode != 0:
                logger.debug("git worktree remove {}: {}", path, removed.stderr.strip())
            deleted = _git(project_path, "branch", "-D", branch)
            if deleted.returncode != 0:
                logger.debug("git branch -D {}: {}", branch, deleted.stderr.strip())
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Failed to clean up worktree {}: {}", path, exc)

    def list_short_ids(self, project_path: Path) -> list[str]:
        root = Path(project_path) / WORKTREE_DIR_NAME
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir())

    def cleanup_orphans(self, project_path: Path, live_short_ids: Iterable[str]) -> list[str]:
        """Remove worktrees whose short id is not in *live_short_ids*; returns the removed ids."""
        live = set(live_short_ids)
        removed = []
        for sid in self.list_short_ids(project_path):
            if sid in live:
                continue
            self.remove(project_path, sid)
            removed.append(sid)
        if removed:
            try:
                _git(Path(project_path), "worktree", "prune")
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning("git worktree prune failed in {}: {}", project_path, exc)
            logger.info("Removed {} orphaned worktrees from {}", len(removed), project_path)
        return removed
