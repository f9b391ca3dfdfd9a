"""Workspace-wide list of projects (``workspace.json``)."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from loguru import logger

from ..constants import WORKSPACE_LOCK_KEY
from ..domain.models import Project
from ..io_utils import FileLock, _atomic_write_json, _load_data
from ..utils import slugify, unique_slug
from .locks import KeyedLock

_UPDATABLE = {"name", "path", "status", "server_url", "order"}


class ProjectRegistry:
    """Projects keyed by slug id, serialized under the ``workspace`` lock key.

    ``on_rename(old_id, new_id)`` is invoked after a rename is persisted so the
    owner can move the project's board file along with it; ``on_delete(id)``
    after a removal, so the board does not come back if the name is reused.
    """

    def __init__(
        self,
        path: Path,
        locks: KeyedLock,
        on_rename: Optional[Callable[[str, str], None]] = None,
        on_delete: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.path = path
        self._locks = locks
        self._file_lock = FileLock(path.with_suffix(".lock"))
        self._on_rename = on_rename
        self._on_delete = on_delete

    def _read(self) -> list[Project]:
        raw = _load_data(self.path, {"projects": []})
        items = raw.get("projects") if isinstance(raw.get("projects"), list) else []
        return [Project.from_dict(item) for item in items if isinstance(item, dict) and item.get("id")]

    @contextmanager
    def _edit(self) -> Iterator[list[Project]]:
        with self._locks.hold(WORKSPACE_LOCK_KEY):
            with self._file_lock:
                projects = self._read()
                yield projects
                _atomic_write_json(self.path, {"projects": [p.to_dict() for p in projects]})

    def list(self) -> list[Project]:
        return sorted(self._read(), key=lambda p: p.order)

    def get(self, project_id: str) -> Optional[Project]:
        for project in self._read():
            if project.id == project_id:
                return project
        return None

    def create(self, name: str, path: str, server_url: Optional[str] = None) -> Project:
        with self._edit() as projects:
            project_id = unique_slug(slugify(name), [p.id for p in projects])
            order = max((p.order for p in projects), default=-1) + 1
            project = Project(id=project_id, name=name, path=path, server_url=server_url, order=order)
            projects.append(project)
        logger.info("Registered project {} at {}", project.id, project.path)
        return project

    def update(self, project_id: str, changes: dict[str, Any]) -> Optional[Project]:
        """Apply *changes*; a new name regenerates the slug id."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        renamed_from: Optional[str] = None
        with self._edit() as projects:
            project = next((p for p in projects if p.id == project_id), None)
            if project is None:
                return None
            for key, value in changes.items():
                setattr(project, key, value)
            if "name" in changes:
                others = [p.id for p in projects if p is not project]
                new_id = unique_slug(slugify(project.name), others)
                if new_id != project.id:
                    renamed_from, project.id = project.id, new_id
        if renamed_from and self._on_rename:
            self._on_rename(renamed_from, project.id)
        return project

    def delete(self, project_id: str) -> bool:
        with self._edit() as projects:
            before = len(projects)
            projects[:] = [p for p in projects if p.id != project_id]
            removed = len(projects) != before
        if removed:
            logger.info("Removed project {}", project_id)
            if self._on_delete:
                self._on_delete(project_id)
        return removed

    def reorder(self, ordered_ids: list[str]) -> list[Project]:
        """Assign ``order`` by position in *ordered_ids*; unlisted projects follow in their old order."""
        with self._edit() as projects:
            position = {pid: idx for idx, pid in enumerate(dict.fromkeys(ordered_ids))}
            rest = sorted((p for p in projects if p.id not in position), key=lambda p: p.order)
            listed = sorted((p for p in projects if p.id in position), key=lambda p: position[p.id])
            for idx, project in enumerate(listed + rest):
                project.order = idx
        return self.list()
