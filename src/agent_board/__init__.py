"""Kanban board that dispatches coding agents into shared or isolated git worktrees."""

__version__ = "0.1.0"
