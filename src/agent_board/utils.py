"""Provide small helpers for timestamps, ids and slugs."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from .constants import SHORT_ID_LENGTH


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _new_task_id() -> str:
    return str(uuid.uuid4())


def short_id(task_id: str) -> str:
    """Return the short id used to name a task's worktree, branch and log."""
    return task_id[:SHORT_ID_LENGTH]


_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_STRIP_RE.sub("-", name.strip().lower()).strip("-")
    return slug or "project"


def unique_slug(base: str, existing: list[str]) -> str:
    if base not in existing:
        return base
    i = 2
    while f"{base}-{i}" in existing:
        i += 1
    return f"{base}-{i}"
