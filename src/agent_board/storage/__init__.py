from .board_store import TaskStore, migrate_flat_tasks
from .container import Container
from .locks import KeyedLock, project_key
from .project_registry import ProjectRegistry

__all__ = [
    "Container",
    "KeyedLock",
    "ProjectRegistry",
    "TaskStore",
    "migrate_flat_tasks",
    "project_key",
]
