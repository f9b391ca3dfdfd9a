"""Build the prompts handed to the coding agent."""

from __future__ import annotations

import json
import shlex
from typing import Optional


def task_callback_url(api_base_url: str, project_id: str, task_id: str) -> str:
    return f"{api_base_url.rstrip('/')}/api/projects/{project_id}/tasks/{task_id}"


def _callback_command(url: str) -> str:
    body = json.dumps({"status": "verify", "locked": False, "findings": "<summary of what you changed>"})
    return f"curl -s -X PATCH {url} -H 'Content-Type: application/json' -d {shlex.quote(body)}"


def build_task_prompt(
    description: str,
    *,
    api_base_url: str,
    project_id: str,
    task_id: str,
    title: str = "",
    branch: Optional[str] = None,
    auto_commit: bool = True,
) -> str:
    """Embed the task description plus the completion contract the agent must honour."""
    heading = f"# {title}\n\n" if title else ""
    branch_block = ""
    if branch:
        branch_block = (
            f"\nYou are working in an isolated git worktree on branch `{branch}`. "
            "Commit your work on this branch; it is merged back after review.\n"
        )
    steps = []
    if auto_commit:
        steps.append('git add -A && git commit -m "<descriptive message>"')
    steps.append(
        "Run this to update the task board (replace the findings text with a short summary):\n"
        f"   {_callback_command(task_callback_url(api_base_url, project_id, task_id))}"
    )
    numbered = "\n".join(f"{idx}. {step}" for idx, step in enumerate(steps, start=1))
    return f"""{heading}{description.strip()}
{branch_block}
When completely finished:
{numbered}
"""


def build_reply_prompt(message: str) -> str:
    return f"""The user sent a follow-up message about the task you were working on:

{message.strip()}

Address it, then report back through the task board exactly as before.
"""
