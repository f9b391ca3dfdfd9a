from .models import ChatLogEntry, DeletedTaskEntry, MergeConflict, Project, ProjectState, Task, TaskEvent

__all__ = [
    "Task",
    "TaskEvent",
    "MergeConflict",
    "DeletedTaskEntry",
    "ChatLogEntry",
    "ProjectState",
    "Project",
]
