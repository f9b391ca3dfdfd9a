from .controller import DispatchController, DispatchHandle
from .prompts import build_reply_prompt, build_task_prompt

__all__ = [
    "DispatchController",
    "DispatchHandle",
    "build_reply_prompt",
    "build_task_prompt",
]
