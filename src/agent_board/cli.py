from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .constants import LIVE_MAX_RETRIES, TASK_STATUSES
from .dispatch.controller import DispatchController
from .storage.container import Container
from .utils import short_id
from .workers.follow import LiveStreamFollower
from .workers.process import AgentSpawnError
from .workers.stream import render_blocks_text


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _ctx(data_dir: Optional[str]) -> tuple[Container, DispatchController]:
    container = Container(Path(data_dir) if data_dir else None)
    return container, DispatchController(container)


def _emit(payload: dict) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _project_add(args: argparse.Namespace) -> int:
    container, _ = _ctx(args.data_dir)
    path = Path(args.path).expanduser().resolve()
    if not path.is_dir():
        sys.stderr.write(f"Invalid path: {path}\n")
        return 1
    project = container.projects.create(args.name, str(path), server_url=args.server_url)
    _emit({"project": project.to_dict()})
    return 0


def _project_list(args: argparse.Namespace) -> int:
    container, _ = _ctx(args.data_dir)
    projects = container.projects.list()
    if args.json:
        _emit({"projects": [p.to_dict() for p in projects]})
        return 0
    table = Table(title="Projects")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Path", style="dim")
    table.add_column("Mode")
    for project in projects:
        table.add_row(project.id, project.name, project.path, container.board(project.id).get_execution_mode())
    Console().print(table)
    return 0


def _project_remove(args: argparse.Namespace) -> int:
    _, controller = _ctx(args.data_dir)
    removed = controller.delete_project(args.project_id)
    _emit({"removed": removed, "project_id": args.project_id})
    return 0 if removed else 1


def _project_cleanup(args: argparse.Namespace) -> int:
    _, controller = _ctx(args.data_dir)
    removed = controller.cleanup_worktrees(args.project_id)
    _emit({"removed_worktrees": removed})
    return 0


def _task_create(args: argparse.Namespace) -> int:
    container, _ = _ctx(args.data_dir)
    if container.projects.get(args.project_id) is None:
        sys.stderr.write(f"Unknown project: {args.project_id}\n")
        return 1
    task = container.board(args.project_id).create(args.description, title=args.title, priority=args.priority)
    _emit({"task": task.to_dict()})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    container, _ = _ctx(args.data_dir)
    if container.projects.get(args.project_id) is None:
        sys.stderr.write(f"Unknown project: {args.project_id}\n")
        return 1
    columns = container.board(args.project_id).columns()
    if args.json:
        _emit({"columns": {status: [t.to_dict() for t in tasks] for status, tasks in columns.items()}})
        return 0
    table = Table(title=f"Board: {args.project_id}")
    for status in TASK_STATUSES:
        table.add_column(f"{status} ({len(columns[status])})")
    depth = max((len(tasks) for tasks in columns.values()), default=0)
    for row in range(depth):
        cells = []
        for status in TASK_STATUSES:
            tasks = columns[status]
            if row >= len(tasks):
                cells.append("")
                continue
            task = tasks[row]
            label = task.title or (task.description.strip().splitlines() or [""])[0]
            marker = f" [{task.dispatch}]" if task.dispatch != "none" else ""
            cells.append(f"{short_id(task.id)} {label}{marker}")
        table.add_row(*cells)
    Console().print(table)
    return 0


def _task_move(args: argparse.Namespace) -> int:
    _, controller = _ctx(args.data_dir)
    try:
        task = controller.move_task(args.project_id, args.task_id, args.status, args.index)
    except AgentSpawnError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    if task is None:
        sys.stderr.write("Task not found\n")
        return 1
    if args.wait:
        controller.wait_idle()
        task = controller.container.board(args.project_id).get(args.task_id) or task
    _emit({"task": task.to_dict()})
    return 0


def _task_dispatch(args: argparse.Namespace) -> int:
    _, controller = _ctx(args.data_dir)
    try:
        handle = controller.dispatch(args.project_id, args.task_id)
    except AgentSpawnError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    if handle is None:
        sys.stderr.write("Task not found\n")
        return 1
    # The agent runs on a daemon thread, so this process has to outlive it.
    controller.wait_idle()
    task = controller.container.board(args.project_id).get(args.task_id)
    _emit({"dispatch": handle.to_dict(), "task": task.to_dict() if task else None})
    return 0 if handle.state != "failed" else 1


def _task_follow(args: argparse.Namespace) -> int:
    console = Console()
    follower = LiveStreamFollower(Path(args.socket), max_retries=args.max_retries)
    with console.status(f"Following {args.socket}"):
        parser = follower.run()
    transcript = render_blocks_text(parser.blocks)
    if transcript:
        console.print(transcript, markup=False, highlight=False, soft_wrap=True)
    if not parser.got_valid_event:
        sys.stderr.write(f"No agent events received from {args.socket}\n")
        return 1
    return 0


def _server(args: argparse.Namespace) -> int:
    try:
        import uvicorn
    except ImportError:
        sys.stderr.write("Install server extras: pip install 'agent-board[server]'\n")
        return 1
    from .server import create_app

    app = create_app(Path(args.data_dir) if args.data_dir else None)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agent board: kanban tasks dispatched to coding agents")
    parser.add_argument("--data-dir", default=None, help="Board data directory (default: $AGENT_BOARD_DATA_DIR or ./data)")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    server = subparsers.add_parser("server", help="Start the web server")
    server.add_argument("--host", default="127.0.0.1")
    server.add_argument("--port", default=1337, type=int)
    server.set_defaults(func=_server)

    project = subparsers.add_parser("project", help="Manage projects")
    project_sub = project.add_subparsers(dest="project_cmd", required=True)
    padd = project_sub.add_parser("add", help="Register a project directory")
    padd.add_argument("name")
    padd.add_argument("path")
    padd.add_argument("--server-url", default=None)
    padd.set_defaults(func=_project_add)
    plist = project_sub.add_parser("list", help="List projects")
    plist.add_argument("--json", action="store_true")
    plist.set_defaults(func=_project_list)
    premove = project_sub.add_parser("remove", help="Remove a project by ID")
    premove.add_argument("project_id")
    premove.set_defaults(func=_project_remove)
    pclean = project_sub.add_parser("cleanup", help="Remove worktrees no task owns")
    pclean.add_argument("project_id")
    pclean.set_defaults(func=_project_cleanup)

    task = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="task_cmd", required=True)
    tcreate = task_sub.add_parser("create", help="Create a task at the top of todo")
    tcreate.add_argument("project_id")
    tcreate.add_argument("description")
    tcreate.add_argument("--title", default=None)
    tcreate.add_argument("--priority", default=None, choices=["low", "medium", "high"])
    tcreate.set_defaults(func=_task_create)
    tlist = task_sub.add_parser("list", help="Show the board")
    tlist.add_argument("project_id")
    tlist.add_argument("--json", action="store_true")
    tlist.set_defaults(func=_task_list)
    tmove = task_sub.add_parser("move", help="Move a task to a column")
    tmove.add_argument("project_id")
    tmove.add_argument("task_id")
    tmove.add_argument("status", choices=list(TASK_STATUSES))
    tmove.add_argument("--index", default=0, type=int)
    tmove.add_argument("--wait", action="store_true", help="Wait for a dispatched agent to finish")
    tmove.set_defaults(func=_task_move)
    tdispatch = task_sub.add_parser("dispatch", help="Run the agent on a task and wait for it")
    tdispatch.add_argument("project_id")
    tdispatch.add_argument("task_id")
    tdispatch.set_defaults(func=_task_dispatch)
    tfollow = task_sub.add_parser("follow", help="Watch an agent stream re-broadcast on a Unix socket")
    tfollow.add_argument("socket")
    tfollow.add_argument("--max-retries", default=LIVE_MAX_RETRIES, type=int)
    tfollow.set_defaults(func=_task_follow)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    return int(handler(args) or 0)


if __name__ == "__main__":
    sys.exit(main())
