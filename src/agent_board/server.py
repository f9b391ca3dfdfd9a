"""FastAPI application for the agent board."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api.router import create_board_router
from .dispatch.controller import DispatchController
from .storage.container import Container


def create_app(
    data_dir: Optional[Path] = None,
    *,
    container: Optional[Container] = None,
    controller: Optional[DispatchController] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        data_dir: Board data directory; ignored when *container* is given.
        container: Pre-built store container (tests pass their own).
        controller: Pre-built dispatch controller.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured app with ``state.container`` and ``state.controller`` set.
    """
    container = container or Container(data_dir)
    controller = controller or DispatchController(container)

    app = FastAPI(
        title="Agent Board",
        description="Kanban board that dispatches coding agents against tasks",
        version=__version__,
    )
    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.container = container
    app.state.controller = controller

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": "Agent Board", "version": __version__, "status": "running"}

    app.include_router(create_board_router(container, controller))
    return app
