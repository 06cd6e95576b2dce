"""Drag session controller: the client-side drag-and-drop state machine.

Lifecycle::

    IDLE --begin--> DRAGGING --drop--> DROPPED_VALID   --> IDLE
                        |        \\--> DROPPED_INVALID --> IDLE
                        \\--cancel--> IDLE

A valid drop commits the spliced view to the cache as an optimistic overlay
and schedules the move request with :func:`asyncio.create_task`; the drop
itself returns immediately.  When the request resolves, the cache is
replaced with whatever the server reports as canonical.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from loguru import logger

from ..config import get_drag_distance_px, get_elevated_roles, get_high_priority
from ..constants import DEFAULT_DRAG_DISTANCE_PX
from ..constraints import ConstraintEvaluator, MoveCheck, MoveConstraints
from ..errors import BoardError, ConflictError, NotFoundError, TransportFailure
from ..io_utils import _now_iso
from .api_client import MoveApiClient
from .board_view import BoardView
from .cache import ReconciliationCache


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    DROPPED_VALID = "dropped_valid"
    DROPPED_INVALID = "dropped_invalid"


_VALID_TRANSITIONS: dict[DragState, set[DragState]] = {
    DragState.IDLE: {DragState.DRAGGING},
    DragState.DRAGGING: {DragState.DROPPED_VALID, DragState.DROPPED_INVALID, DragState.IDLE},
    DragState.DROPPED_VALID: {DragState.IDLE},
    DragState.DROPPED_INVALID: {DragState.IDLE},
}


class IllegalDragTransition(RuntimeError):
    def __init__(self, current: DragState, target: DragState) -> None:
        super().__init__(f"Illegal drag transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass
class DragSession:
    task_id: str
    baseline: BoardView
    constraints: MoveConstraints
    cancel_only: bool = False
    hover_column: Optional[str] = None
    hover_index: Optional[int] = None
    target_valid: bool = True
    target_reason: Optional[str] = None
    # provisional splice shown while hovering
    overlay: Optional[BoardView] = None


@dataclass
class DropOutcome:
    state: DragState
    reason: Optional[str] = None
    move: Optional["asyncio.Task[Optional[dict[str, Any]]]"] = field(default=None, repr=False)

    @property
    def valid(self) -> bool:
        return self.state == DragState.DROPPED_VALID


def _log_notice(message: str) -> None:
    logger.warning("Board notice: {}", message)


class DragSessionController:
    """Drive one board's drag interactions against the reconciliation cache.

    Parameters
    ----------
    board_id:
        Board whose cached view is being dragged over.
    cache / api:
        Snapshot cache and Move API client.
    elevated:
        Whether the current user holds an elevated role.
    notifier:
        Called with a human-readable message whenever a drop is blocked or a
        move fails on the server.
    """

    def __init__(
        self,
        board_id: str,
        cache: ReconciliationCache,
        api: MoveApiClient,
        *,
        evaluator: Optional[ConstraintEvaluator] = None,
        elevated: bool = False,
        min_distance_px: int = DEFAULT_DRAG_DISTANCE_PX,
        notifier: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.board_id = board_id
        self.cache = cache
        self.api = api
        self.evaluator = evaluator or ConstraintEvaluator()
        self.elevated = elevated
        self.min_distance_px = min_distance_px
        self.notifier = notifier or _log_notice
        self.state = DragState.IDLE
        self.session: Optional[DragSession] = None
        self.pending: set[asyncio.Task[Optional[dict[str, Any]]]] = set()

    @classmethod
    def from_config(
        cls,
        board_id: str,
        cache: ReconciliationCache,
        api: MoveApiClient,
        config: dict[str, Any],
        *,
        role: Optional[str] = None,
        notifier: Optional[Callable[[str], None]] = None,
    ) -> "DragSessionController":
        """Build a controller from a loaded `.taskboard/config.yaml` mapping."""
        return cls(
            board_id,
            cache,
            api,
            evaluator=ConstraintEvaluator(high_priority=get_high_priority(config)),
            elevated=(role or "").strip().lower() in get_elevated_roles(config),
            min_distance_px=get_drag_distance_px(config),
            notifier=notifier,
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: DragState) -> None:
        if target not in _VALID_TRANSITIONS[self.state]:
            raise IllegalDragTransition(self.state, target)
        self.state = target

    def _require_session(self) -> DragSession:
        if self.state != DragState.DRAGGING or self.session is None:
            raise IllegalDragTransition(self.state, DragState.DRAGGING)
        return self.session

    def _current_view(self) -> BoardView:
        view = self.cache.view(self.board_id)
        if view is None:
            raise NotFoundError(f"Board {self.board_id} is not loaded")
        return view

    def preview(self) -> Optional[BoardView]:
        """What to render right now: the hover splice if any, else the cache view."""
        if self.session is not None and self.session.overlay is not None:
            return self.session.overlay
        return self.cache.view(self.board_id)

    # ------------------------------------------------------------------
    # Interaction
    # ------------------------------------------------------------------

    def begin(self, task_id: str, movement_px: float) -> bool:
        """Start dragging *task_id* once the pointer moved far enough.

        Returns False (and stays idle) below the activation distance.
        """
        if self.state != DragState.IDLE:
            raise IllegalDragTransition(self.state, DragState.DRAGGING)
        if movement_px < self.min_distance_px:
            return False
        view = self._current_view()
        task = view.task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} is not on board {self.board_id}")
        constraints = self.evaluator.evaluate(
            task, list(view.columns), view.counts(), elevated=self.elevated,
        )
        self._transition(DragState.DRAGGING)
        self.session = DragSession(
            task_id=task_id,
            baseline=view,
            constraints=constraints,
            cancel_only=constraints.all_blocked,
        )
        if constraints.all_blocked and constraints.reason:
            self.notifier(constraints.reason)
        return True

    def _check(self, view: BoardView, task_id: str, column_id: str) -> MoveCheck:
        task = view.task(task_id)
        if task is None:
            return MoveCheck(False, "Task no longer exists")
        return self.evaluator.check_move(
            task, column_id, list(view.columns), view.counts(), elevated=self.elevated,
        )

    def hover(self, column_id: str, index: int) -> MoveCheck:
        session = self._require_session()
        session.hover_column, session.hover_index = column_id, index
        if session.cancel_only:
            check = MoveCheck(False, session.constraints.reason)
        else:
            check = self._check(session.baseline, session.task_id, column_id)
        session.target_valid = check.allowed
        session.target_reason = check.reason
        if not check.allowed:
            return check
        task = session.baseline.task(session.task_id)
        if task is not None and column_id != task.column_id:
            session.overlay = session.baseline.splice(session.task_id, column_id, index)
        else:
            session.overlay = None
        return check

    def drop(self, column_id: str, index: int) -> DropOutcome:
        """Finish the drag. A valid drop schedules the move and returns at once.

        Must be called while an event loop is running.
        """
        session = self._require_session()
        latest = self._current_view()
        if session.cancel_only:
            check = MoveCheck(False, session.constraints.reason)
        else:
            check = self._check(latest, session.task_id, column_id)

        if not check.allowed:
            # The cache overlay belongs to moves still in flight.
            self._transition(DragState.DROPPED_INVALID)
            if check.reason:
                self.notifier(check.reason)
            self._settle()
            return DropOutcome(DragState.DROPPED_INVALID, check.reason)

        task = latest.task(session.task_id)
        if task is None:
            raise NotFoundError(f"Task {session.task_id} is not on board {self.board_id}")
        same_column = column_id == task.column_id
        limit = len(latest.tasks_by_column.get(column_id, ())) - (1 if same_column else 0)
        index = max(0, min(index, limit))

        self._transition(DragState.DROPPED_VALID)
        if same_column and index == task.position:
            self._settle()
            return DropOutcome(DragState.DROPPED_VALID)

        # Follow-up drags of this card observe the request time.
        optimistic = latest.splice(task.id, column_id, index, updated_at=_now_iso())
        self.cache.apply_optimistic(self.board_id, optimistic)
        move = asyncio.create_task(self._submit(
            task.id,
            column_id,
            index,
            idempotency_token=uuid.uuid4().hex,
            observed_ms=task.updated_at_ms,
        ))
        self.pending.add(move)
        move.add_done_callback(self.pending.discard)
        self._settle()
        return DropOutcome(DragState.DROPPED_VALID, move=move)

    def cancel(self) -> None:
        """Abandon the drag; nothing is sent to the server."""
        self._require_session()
        self.session = None
        self._transition(DragState.IDLE)

    def _settle(self) -> None:
        self.session = None
        self._transition(DragState.IDLE)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _submit(
        self,
        task_id: str,
        column_id: str,
        index: int,
        *,
        idempotency_token: str,
        observed_ms: int,
    ) -> Optional[dict[str, Any]]:
        try:
            result = await self.api.move_task(
                self.board_id,
                task_id,
                column_id,
                index,
                idempotency_token=idempotency_token,
                client_observed_timestamp_ms=observed_ms,
            )
        except ConflictError as exc:
            logger.info("Move of {} conflicted ({} ms)", task_id, exc.time_difference_ms)
            await self._resync(exc.board_state)
            self.notifier(exc.message)
            return None
        except TransportFailure as exc:
            logger.warning("Move of {} could not be delivered: {}", task_id, exc.message)
            await self._resync(None)
            self.notifier(exc.message)
            return None
        except BoardError as exc:
            logger.info("Move of {} rejected: {}", task_id, exc.message)
            await self._resync(getattr(exc, "board_state", None))
            self.notifier(exc.message)
            return None

        state = result.get("board_state")
        if state:
            self.cache.replace(self.board_id, state)
        else:
            await self._resync(None)
        return result

    async def _resync(self, state: Optional[dict[str, Any]]) -> None:
        if state:
            self.cache.replace(self.board_id, state)
            return
        try:
            await self.cache.refresh(self.board_id)
        except BoardError as exc:
            # Keep showing the last server snapshot and retry on the next event.
            logger.warning("Could not refresh board {}: {}", self.board_id, exc.message)
            self.cache.discard_optimistic(self.board_id)
            self.cache.invalidate(self.board_id)

    async def wait_idle(self) -> None:
        """Await every in-flight move (useful for tests and shutdown)."""
        if self.pending:
            await asyncio.gather(*list(self.pending), return_exceptions=True)
