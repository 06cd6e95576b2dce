"""FastAPI web server for the task board."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ..config import (
    get_conflict_tolerance_ms,
    get_elevated_roles,
    get_high_priority,
    load_board_config,
)
from ..constants import STATE_DIR_NAME
from ..constraints import ConstraintEvaluator
from ..reconciler import MoveReconciler
from .board_api import BoardContext, create_board_router
from .ws_hub import hub


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Taskboard",
        description="Kanban board with server-reconciled task ordering",
        version="1.0.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir
    app.state.contexts = {}

    def _get_project_dir(project_dir_param: Optional[str] = None) -> Path:
        """Get project directory from parameter or default."""
        if project_dir_param:
            return Path(project_dir_param)
        if app.state.default_project_dir:
            return app.state.default_project_dir
        return Path.cwd()

    def _get_context(project_dir_param: Optional[str] = None) -> BoardContext:
        proj = _get_project_dir(project_dir_param).resolve()
        cached: dict[Path, BoardContext] = app.state.contexts
        if proj in cached:
            return cached[proj]
        config, err = load_board_config(proj)
        if err:
            logger.warning("Ignoring unreadable board config for {}: {}", proj, err)
        reconciler = MoveReconciler(
            proj / STATE_DIR_NAME,
            evaluator=ConstraintEvaluator(high_priority=get_high_priority(config)),
            tolerance_ms=get_conflict_tolerance_ms(config),
            publisher=hub.publish_sync,
        )
        ctx = BoardContext(reconciler=reconciler, elevated_roles=get_elevated_roles(config))
        cached[proj] = ctx
        logger.info("Serving boards from {} (tolerance={}ms)", proj, reconciler.tolerance_ms)
        return ctx

    app.include_router(create_board_router(_get_context))

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "name": "Taskboard",
            "version": "1.0.0",
            "status": "running",
        }

    @app.get("/api/events")
    async def recent_events(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> dict[str, Any]:
        """Most recent board events from the JSONL log, oldest first."""
        events = _get_context(project_dir).reconciler.get_recent_events(limit=limit)
        return {"events": events, "total": len(events)}

    @app.websocket("/ws")
    async def board_updates(websocket: WebSocket) -> None:
        await hub.handle_connection(websocket)

    return app
