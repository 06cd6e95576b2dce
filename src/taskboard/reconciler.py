"""Move reconciler: the only writer of the position ledger.

Every operation that changes column membership or positions (moves, creates,
deletes, duplicates) runs inside one :meth:`BoardStore.transaction`, so its
range updates are applied as a single unit with respect to other writers on
the same board.  Boards are locked independently and never block each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .constants import ARTIFACTS_DIR, CONFLICT_TOLERANCE_MS, EVENTS_FILE
from .constraints import ConstraintEvaluator, MoveConstraints, counts_from_tasks
from .errors import ConflictError, NotFoundError, PolicyRejection, ValidationError
from .io_utils import _append_event, _now_ms, _read_events
from .ledger.invariants import capacity_overflows, check_invariant
from .ledger.model import AuditAction, AuditEntry, Board, Column, Task, TaskPriority
from .ledger.store import BoardStore, _BoardTx

logger = logging.getLogger(__name__)

Publisher = Callable[[dict[str, Any]], None]


@dataclass
class MoveResult:
    task: dict[str, Any]
    board_state: dict[str, Any]
    server_timestamp_ms: int
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "server_timestamp_ms": self.server_timestamp_ms,
            "board_state": self.board_state,
            "replayed": self.replayed,
        }


@dataclass
class _Transition:
    """What a committed mutation did, for logging and notifications."""

    event: str
    task_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


class MoveReconciler:
    """Apply moves and structural changes to the ledger.

    Parameters
    ----------
    state_dir:
        Path to the ``.taskboard/`` directory.
    evaluator:
        Constraint evaluator used for the authoritative server-side check.
    tolerance_ms:
        How far the server's ``updated_at`` may run ahead of the client's
        observed timestamp before a move is rejected as a conflict.
    publisher:
        Optional callback receiving board-scoped change notifications after
        each committed mutation.
    """

    def __init__(
        self,
        state_dir: Path,
        *,
        evaluator: Optional[ConstraintEvaluator] = None,
        tolerance_ms: int = CONFLICT_TOLERANCE_MS,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self.store = BoardStore(state_dir)
        self.evaluator = evaluator or ConstraintEvaluator()
        self.tolerance_ms = tolerance_ms
        self.publisher = publisher
        self._events_path = state_dir / ARTIFACTS_DIR / EVENTS_FILE

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, board_id: str, transition: _Transition, origin: Optional[str] = None) -> None:
        payload: dict[str, Any] = {
            "board_id": board_id,
            "event": transition.event,
            "task_id": transition.task_id,
            "origin": origin,
        }
        if transition.details:
            payload["details"] = transition.details
        try:
            _append_event(self._events_path, payload)
        except OSError:
            logger.exception("Failed to append board event %s for %s", transition.event, board_id)
        if self.publisher is not None:
            try:
                self.publisher(payload)
            except Exception:
                logger.exception("Failed to publish board event %s for %s", transition.event, board_id)

    def get_recent_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return _read_events(self._events_path, limit=limit)

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    def create_board(
        self,
        name: str,
        columns: Sequence[Column | dict[str, Any]],
        *,
        board_id: Optional[str] = None,
    ) -> Board:
        """Create and persist a new, empty board."""
        cols = [c if isinstance(c, Column) else Column.from_dict(c) for c in columns]
        if not cols:
            raise ValidationError("A board needs at least one column")
        board = Board(name=name, columns=cols)
        if board_id:
            board.id = board_id
        self.store.create(board)
        logger.info("Created board %s with %d columns", board.id, len(cols))
        return board

    def get_board(self, board_id: str) -> Board:
        board = self.store.read_snapshot(board_id)
        if board is None:
            raise NotFoundError(f"Board {board_id} not found")
        return board

    def board_state(self, board_id: str) -> dict[str, Any]:
        """Canonical snapshot used for initial load and post-conflict resync."""
        with self.store.transaction(board_id) as tx:
            return tx.board.state()

    def list_boards(self) -> list[dict[str, Any]]:
        boards: list[dict[str, Any]] = []
        for board_id in self.store.list_board_ids():
            board = self.store.read_snapshot(board_id)
            if board is not None:
                boards.append({"id": board.id, "name": board.name, "archived": board.archived})
        return boards

    def _set_archived(self, board_id: str, archived: bool, origin: Optional[str]) -> dict[str, Any]:
        with self.store.transaction(board_id) as tx:
            if tx.board.archived != archived:
                tx.board.archived = archived
                tx.dirty = True
            state = tx.board.state()
        event = "board_archived" if archived else "board_restored"
        logger.info("Board %s %s", board_id, "archived" if archived else "restored")
        self._notify(board_id, _Transition(event), origin)
        return state

    def archive_board(self, board_id: str, *, origin: Optional[str] = None) -> dict[str, Any]:
        return self._set_archived(board_id, True, origin)

    def restore_board(self, board_id: str, *, origin: Optional[str] = None) -> dict[str, Any]:
        return self._set_archived(board_id, False, origin)

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def constraints_for(self, board_id: str, task_id: str, *, elevated: bool) -> MoveConstraints:
        board = self.get_board(board_id)
        task = board.task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found on board {board_id}")
        return self.evaluator.evaluate(
            task, board.columns, counts_from_tasks(board.tasks), elevated=elevated,
        )

    def _enforce(self, tx: _BoardTx, task: Task, column_id: str, elevated: bool) -> None:
        check = self.evaluator.check_move(
            task,
            column_id,
            tx.board.columns,
            counts_from_tasks(tx.board.tasks),
            elevated=elevated,
        )
        if not check.allowed:
            raise PolicyRejection(check.reason or "Move not allowed", column_id=column_id)

    @staticmethod
    def _require_writable(tx: _BoardTx) -> None:
        if tx.board.archived:
            raise ValidationError(f"Board {tx.board.id} is archived")

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def move(
        self,
        board_id: str,
        task_id: str,
        destination_column_id: str,
        destination_position: int,
        *,
        actor: Optional[str] = None,
        elevated: bool = False,
        idempotency_token: Optional[str] = None,
        client_observed_timestamp_ms: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> MoveResult:
        """Move a task to ``destination_position`` of ``destination_column_id``.

        Raises :class:`ConflictError` when the task changed on the server
        more than ``tolerance_ms`` after the client's observed timestamp,
        :class:`ValidationError` for malformed requests and
        :class:`PolicyRejection` when a constraint rule blocks the move.
        Nothing is persisted unless the whole move succeeds.
        """
        with self.store.transaction(board_id) as tx:
            if idempotency_token:
                prior = tx.recall_move(idempotency_token)
                if prior is not None:
                    if prior.get("task", {}).get("id") != task_id:
                        raise ValidationError("Idempotency token was already used for another task")
                    logger.info("Replaying move %s for task %s", idempotency_token, task_id)
                    return MoveResult(
                        task=dict(prior["task"]),
                        board_state=tx.board.state(),
                        server_timestamp_ms=int(prior.get("server_timestamp_ms") or _now_ms()),
                        replayed=True,
                    )

            task = tx.require_task(task_id)

            if client_observed_timestamp_ms is not None:
                difference = task.updated_at_ms - int(client_observed_timestamp_ms)
                if difference > self.tolerance_ms:
                    logger.warning(
                        "Move conflict on %s: server is %d ms ahead of client", task_id, difference,
                    )
                    raise ConflictError(
                        "Task was modified by another user",
                        current_state=task.to_dict(),
                        board_state=tx.board.state(),
                        time_difference_ms=difference,
                    )

            self._require_writable(tx)
            dest = tx.get_column(destination_column_id)
            if dest is None:
                raise ValidationError(
                    f"Column {destination_column_id} does not belong to board {board_id}"
                )
            if isinstance(destination_position, bool) or not isinstance(destination_position, int):
                raise ValidationError("Destination position must be an integer")
            limit = tx.column_count(dest.id, exclude=task.id)
            if destination_position < 0 or destination_position > limit:
                raise ValidationError(
                    f"Destination position {destination_position} is outside [0, {limit}]"
                )

            self._enforce(tx, task, dest.id, elevated)

            old_column, old_position = task.column_id, task.position
            if dest.id != old_column:
                tx.remove_at(task)
                tx.insert_at(task, dest.id, destination_position)
            elif destination_position > old_position:
                tx.shift(old_column, old_position + 1, destination_position, -1, exclude=task.id)
                task.position = destination_position
            elif destination_position < old_position:
                tx.shift(old_column, destination_position, old_position - 1, 1, exclude=task.id)
                task.position = destination_position

            changed = (task.column_id, task.position) != (old_column, old_position)
            if changed:
                task.touch()
                tx.record(AuditEntry(
                    task_id=task.id,
                    action=AuditAction.MOVED,
                    actor=actor,
                    from_column=old_column,
                    from_position=old_position,
                    to_column=task.column_id,
                    to_position=task.position,
                ))
                tx.dirty = True

            server_ms = _now_ms()
            result = MoveResult(
                task=task.to_dict(),
                board_state=tx.board.state(),
                server_timestamp_ms=server_ms,
            )
            if idempotency_token:
                tx.remember_move(idempotency_token, {"task": result.task, "server_timestamp_ms": server_ms})

        if changed:
            logger.info(
                "Moved task %s from %s@%d to %s@%d",
                task_id, old_column, old_position, task.column_id, task.position,
            )
            self._notify(
                board_id,
                _Transition(
                    "task_moved",
                    task_id,
                    {
                        "from": {"column_id": old_column, "position": old_position},
                        "to": {"column_id": task.column_id, "position": task.position},
                        "actor": actor,
                    },
                ),
                origin,
            )
        return result

    # ------------------------------------------------------------------
    # Create / delete cascades
    # ------------------------------------------------------------------

    def _check_room(self, tx: _BoardTx, column_id: str, elevated: bool) -> Column:
        column = tx.get_column(column_id)
        if column is None:
            raise ValidationError(f"Column {column_id} does not belong to board {tx.board.id}")
        if column.locked and not elevated:
            raise PolicyRejection(
                f'Column "{column.title}" is locked and requires admin permissions', column_id=column_id,
            )
        if column.is_full(tx.column_count(column_id)):
            raise PolicyRejection(
                f'Column "{column.title}" has reached maximum capacity ({column.max_tasks})',
                column_id=column_id,
            )
        return column

    def create_task(
        self,
        board_id: str,
        column_id: str,
        title: str,
        *,
        description: str = "",
        priority: str = "medium",
        locked: bool = False,
        can_move_to: Optional[list[str]] = None,
        actor: Optional[str] = None,
        elevated: bool = False,
        origin: Optional[str] = None,
    ) -> Task:
        """Append a new task at the end of *column_id*."""
        if not title or not title.strip():
            raise ValidationError("Task title is required")
        try:
            tier = TaskPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority {priority!r}") from None

        with self.store.transaction(board_id) as tx:
            self._require_writable(tx)
            self._check_room(tx, column_id, elevated)
            if can_move_to is not None:
                unknown = [c for c in can_move_to if tx.get_column(c) is None]
                if unknown:
                    raise ValidationError(f"Unknown columns in can_move_to: {unknown}")
            task = Task(
                board_id=board_id,
                column_id=column_id,
                position=tx.column_count(column_id),
                title=title.strip(),
                description=description,
                priority=tier,
                locked=locked,
                can_move_to=list(can_move_to) if can_move_to is not None else None,
                created_by=actor,
            )
            tx.add_task(task)
            tx.record(AuditEntry(
                task_id=task.id,
                action=AuditAction.CREATED,
                actor=actor,
                to_column=column_id,
                to_position=task.position,
            ))

        logger.info("Created task %s in %s@%d", task.id, column_id, task.position)
        self._notify(board_id, _Transition("task_created", task.id), origin)
        return task

    def duplicate_task(
        self,
        board_id: str,
        task_id: str,
        *,
        actor: Optional[str] = None,
        elevated: bool = False,
        origin: Optional[str] = None,
    ) -> Task:
        """Copy a task to the end of its own column."""
        with self.store.transaction(board_id) as tx:
            self._require_writable(tx)
            source = tx.require_task(task_id)
            self._check_room(tx, source.column_id, elevated)
            copy = Task(
                board_id=board_id,
                column_id=source.column_id,
                position=tx.column_count(source.column_id),
                title=f"{source.title} (Copy)",
                description=source.description,
                priority=source.priority,
                locked=source.locked,
                can_move_to=list(source.can_move_to) if source.can_move_to is not None else None,
                created_by=actor,
            )
            tx.add_task(copy)
            tx.record(AuditEntry(
                task_id=copy.id,
                action=AuditAction.CREATED,
                actor=actor,
                to_column=copy.column_id,
                to_position=copy.position,
            ))

        logger.info("Duplicated task %s as %s", task_id, copy.id)
        self._notify(board_id, _Transition("task_created", copy.id, {"duplicate_of": task_id}), origin)
        return copy

    def delete_task(
        self,
        board_id: str,
        task_id: str,
        *,
        actor: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> dict[str, Any]:
        """Remove a task and close the gap it leaves. Returns the board state."""
        with self.store.transaction(board_id) as tx:
            self._require_writable(tx)
            task = tx.require_task(task_id)
            tx.drop_task(task)
            tx.record(AuditEntry(
                task_id=task.id,
                action=AuditAction.DELETED,
                actor=actor,
                from_column=task.column_id,
                from_position=task.position,
            ))
            state = tx.board.state()

        logger.info("Deleted task %s from %s@%d", task_id, task.column_id, task.position)
        self._notify(board_id, _Transition("task_deleted", task_id), origin)
        return state

    # ------------------------------------------------------------------
    # Audit & maintenance
    # ------------------------------------------------------------------

    def audit_log(self, board_id: str, *, task_id: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        board = self.get_board(board_id)
        entries = [a for a in board.audit if task_id is None or a.task_id == task_id]
        if limit < 1:
            return []
        return [a.to_dict() for a in entries[-limit:]]

    def verify(self, board_id: str) -> dict[str, list[int]]:
        return check_invariant(self.get_board(board_id))

    def capacity_report(self, board_id: str) -> dict[str, int]:
        """Columns holding more tasks than their ``max_tasks``; ``repair`` leaves these alone."""
        return capacity_overflows(self.get_board(board_id))

    def repair(self, board_id: str, *, actor: Optional[str] = None) -> list[str]:
        """Reindex every column whose positions drifted from ``0..n-1``."""
        with self.store.transaction(board_id) as tx:
            repaired = [c.id for c in tx.board.columns if tx.reindex(c.id)]
            for column_id in repaired:
                tx.record(AuditEntry(task_id="", action=AuditAction.REPAIRED, actor=actor, to_column=column_id))
        if repaired:
            logger.warning("Reindexed columns %s on board %s", repaired, board_id)
        return repaired
