"""Board API endpoints: the Move API, board snapshots and maintenance.

This module provides a FastAPI router mounted under ``/api/boards`` by the
main ``create_app`` factory.  Board errors are returned with the status code
their class declares; conflicts carry the canonical state so the client can
resynchronise without a second round trip.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..errors import BoardError, ConflictError, PolicyRejection
from ..reconciler import MoveReconciler
from .actors import Actor, actor_from_headers


@dataclass
class BoardContext:
    """Per-project services resolved for a request."""

    reconciler: MoveReconciler
    elevated_roles: frozenset[str]


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class MoveRequest(BaseModel):
    destination_column_id: str
    destination_position: int
    idempotency_token: Optional[str] = None
    client_observed_timestamp_ms: Optional[int] = None


class ColumnSpec(BaseModel):
    id: str
    title: str = ""
    order: Optional[int] = None
    max_tasks: Optional[int] = Field(None, ge=0)
    accepts_from: Optional[list[str]] = None
    locked: bool = False
    terminal: Optional[bool] = None


class CreateBoardRequest(BaseModel):
    name: str
    id: Optional[str] = None
    columns: list[ColumnSpec]


class CreateTaskRequest(BaseModel):
    column_id: str
    title: str
    description: str = ""
    priority: str = "medium"
    locked: bool = False
    can_move_to: Optional[list[str]] = None


class MoveResponse(BaseModel):
    task: dict[str, Any]
    server_timestamp_ms: int
    board_state: dict[str, Any]
    replayed: bool = False


class BoardStateResponse(BaseModel):
    board_state: dict[str, Any]


class BoardListResponse(BaseModel):
    boards: list[dict[str, Any]]


class TaskResponse(BaseModel):
    task: dict[str, Any]
    board_state: dict[str, Any]


class ConstraintsResponse(BaseModel):
    allowed_columns: list[str]
    blocked_columns: list[str]
    reason: Optional[str] = None
    reasons: dict[str, str] = Field(default_factory=dict)


class AuditResponse(BaseModel):
    entries: list[dict[str, Any]]
    total: int


class RepairResponse(BaseModel):
    repaired_columns: list[str]
    board_state: dict[str, Any]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_response(exc: BoardError) -> JSONResponse:
    if isinstance(exc, (ConflictError, PolicyRejection)):
        logger.info("Board request rejected ({}): {}", exc.status_code, exc.message)
    else:
        logger.debug("Board request failed ({}): {}", exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _forbidden(actor: Actor, perm: str) -> Optional[JSONResponse]:
    if actor.has_permission(perm):
        return None
    return _error_response(PolicyRejection(f"Role '{actor.role}' may not {perm.replace('_', ' ')}"))


def _column_dicts(columns: list[ColumnSpec]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for idx, col in enumerate(columns):
        data = col.model_dump()
        if data["order"] is None:
            data["order"] = idx
        if data["terminal"] is None:
            data.pop("terminal")
        out.append(data)
    return out


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_board_router(get_context: Callable[[Optional[str]], BoardContext]) -> APIRouter:
    """Create the board API router.

    Parameters
    ----------
    get_context:
        A callable ``(project_dir_param: str | None) -> BoardContext`` that
        resolves the reconciler for the current request's project directory.
    """
    router = APIRouter(prefix="/api/boards", tags=["boards"])

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    @router.get("", response_model=BoardListResponse)
    async def list_boards(project_dir: Optional[str] = Query(None)) -> BoardListResponse:
        ctx = get_context(project_dir)
        return BoardListResponse(boards=ctx.reconciler.list_boards())

    @router.post("", response_model=BoardStateResponse, status_code=201)
    async def create_board(
        body: CreateBoardRequest,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "edit")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            board = ctx.reconciler.create_board(body.name, _column_dicts(body.columns), board_id=body.id)
        except BoardError as exc:
            return _error_response(exc)
        return BoardStateResponse(board_state=board.state())

    @router.get("/{board_id}", response_model=BoardStateResponse)
    async def get_board(board_id: str, project_dir: Optional[str] = Query(None)) -> Any:
        ctx = get_context(project_dir)
        try:
            return BoardStateResponse(board_state=ctx.reconciler.board_state(board_id))
        except BoardError as exc:
            return _error_response(exc)

    @router.post("/{board_id}/archive", response_model=BoardStateResponse)
    async def archive_board(
        board_id: str,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "manage_boards")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            state = ctx.reconciler.archive_board(board_id, origin=actor.session_id)
        except BoardError as exc:
            return _error_response(exc)
        return BoardStateResponse(board_state=state)

    @router.post("/{board_id}/restore", response_model=BoardStateResponse)
    async def restore_board(
        board_id: str,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "manage_boards")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            state = ctx.reconciler.restore_board(board_id, origin=actor.session_id)
        except BoardError as exc:
            return _error_response(exc)
        return BoardStateResponse(board_state=state)

    @router.post("/{board_id}/repair", response_model=RepairResponse)
    async def repair_board(
        board_id: str,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "manage_boards")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            repaired = ctx.reconciler.repair(board_id, actor=actor.name)
            state = ctx.reconciler.board_state(board_id)
        except BoardError as exc:
            return _error_response(exc)
        return RepairResponse(repaired_columns=repaired, board_state=state)

    @router.get("/{board_id}/audit", response_model=AuditResponse)
    async def get_audit(
        board_id: str,
        project_dir: Optional[str] = Query(None),
        task_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=2000),
    ) -> Any:
        ctx = get_context(project_dir)
        try:
            entries = ctx.reconciler.audit_log(board_id, task_id=task_id, limit=limit)
        except BoardError as exc:
            return _error_response(exc)
        return AuditResponse(entries=entries, total=len(entries))

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @router.post("/{board_id}/tasks", response_model=TaskResponse, status_code=201)
    async def create_task(
        board_id: str,
        body: CreateTaskRequest,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "edit")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            task = ctx.reconciler.create_task(
                board_id,
                body.column_id,
                body.title,
                description=body.description,
                priority=body.priority,
                locked=body.locked,
                can_move_to=body.can_move_to,
                actor=actor.name,
                elevated=actor.is_elevated(ctx.elevated_roles),
                origin=actor.session_id,
            )
            state = ctx.reconciler.board_state(board_id)
        except BoardError as exc:
            return _error_response(exc)
        return TaskResponse(task=task.to_dict(), board_state=state)

    @router.delete("/{board_id}/tasks/{task_id}", response_model=BoardStateResponse)
    async def delete_task(
        board_id: str,
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "edit")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            state = ctx.reconciler.delete_task(board_id, task_id, actor=actor.name, origin=actor.session_id)
        except BoardError as exc:
            return _error_response(exc)
        return BoardStateResponse(board_state=state)

    @router.post("/{board_id}/tasks/{task_id}/duplicate", response_model=TaskResponse, status_code=201)
    async def duplicate_task(
        board_id: str,
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "edit")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            task = ctx.reconciler.duplicate_task(
                board_id,
                task_id,
                actor=actor.name,
                elevated=actor.is_elevated(ctx.elevated_roles),
                origin=actor.session_id,
            )
            state = ctx.reconciler.board_state(board_id)
        except BoardError as exc:
            return _error_response(exc)
        return TaskResponse(task=task.to_dict(), board_state=state)

    @router.get("/{board_id}/tasks/{task_id}/constraints", response_model=ConstraintsResponse)
    async def get_constraints(
        board_id: str,
        task_id: str,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        ctx = get_context(project_dir)
        try:
            constraints = ctx.reconciler.constraints_for(
                board_id, task_id, elevated=actor.is_elevated(ctx.elevated_roles),
            )
        except BoardError as exc:
            return _error_response(exc)
        return ConstraintsResponse(**constraints.to_dict())

    # ------------------------------------------------------------------
    # Move API
    # ------------------------------------------------------------------

    @router.post("/{board_id}/tasks/{task_id}/move", response_model=MoveResponse)
    async def move_task(
        board_id: str,
        task_id: str,
        body: MoveRequest,
        project_dir: Optional[str] = Query(None),
        actor: Actor = Depends(actor_from_headers),
    ) -> Any:
        denied = _forbidden(actor, "move")
        if denied is not None:
            return denied
        ctx = get_context(project_dir)
        try:
            result = ctx.reconciler.move(
                board_id,
                task_id,
                body.destination_column_id,
                body.destination_position,
                actor=actor.name,
                elevated=actor.is_elevated(ctx.elevated_roles),
                idempotency_token=body.idempotency_token,
                client_observed_timestamp_ms=body.client_observed_timestamp_ms,
                origin=actor.session_id,
            )
        except BoardError as exc:
            return _error_response(exc)
        return MoveResponse(**result.to_dict())

    return router
