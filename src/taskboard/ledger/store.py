"""File-based position ledger with per-board locking.

Each board lives in its own YAML document (``boards/<board_id>.yaml``) inside
the project's ``.taskboard/`` directory.  All reads and writes go through
:meth:`BoardStore.transaction`, which holds an exclusive lock on the board's
``.lock`` file.  Changes are written back atomically only when the
transaction block exits cleanly, so a failure half-way through a move leaves
the document untouched.
"""

from __future__ import annotations

import re
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock

from ..constants import (
    BOARD_FILE_SUFFIX,
    BOARD_LOCK_SUFFIX,
    BOARDS_DIR,
    MAX_AUDIT_ENTRIES,
    MAX_IDEMPOTENCY_RECORDS,
)
from ..errors import NotFoundError, ValidationError
from ..io_utils import _atomic_write_yaml, _load_data_with_error, _now_iso
from .model import AuditEntry, Board, Column, Task

_BOARD_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def _check_board_id(board_id: str) -> str:
    if not _BOARD_ID_RE.match(board_id or "") or board_id.startswith("."):
        raise ValidationError(f"Invalid board id: {board_id!r}")
    return board_id


# ---------------------------------------------------------------------------
# BoardStore
# ---------------------------------------------------------------------------

class BoardStore:
    """Thread- and process-safe, file-backed store for :class:`Board` documents.

    Parameters
    ----------
    state_dir:
        Path to the ``.taskboard/`` directory for the project.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._boards_dir = state_dir / BOARDS_DIR

    # -- internal helpers ---------------------------------------------------

    def _board_path(self, board_id: str) -> Path:
        return self._boards_dir / f"{_check_board_id(board_id)}{BOARD_FILE_SUFFIX}"

    def _lock(self, board_id: str) -> FileLock:
        self._boards_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self._boards_dir / f"{_check_board_id(board_id)}{BOARD_LOCK_SUFFIX}"))

    def _load(self, board_id: str) -> Optional[Board]:
        path = self._board_path(board_id)
        if not path.exists():
            return None
        data, err = _load_data_with_error(path, {})
        if err:
            # Refuse to continue rather than overwrite a corrupted document.
            raise RuntimeError(f"Cannot load board {board_id}: {err}")
        return Board.from_dict(data)

    def _save(self, board: Board) -> None:
        board.updated_at = _now_iso()
        _atomic_write_yaml(self._board_path(board.id), board.to_dict())

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self, board_id: str) -> Iterator[_BoardTx]:
        """Lock the board, load it, yield a transaction, and save on clean exit.

        Usage::

            with store.transaction("board-1") as tx:
                task = tx.get_task("task-abc123")
                tx.remove_at(task)
                tx.insert_at(task, "doing", 0)

        Raises :class:`NotFoundError` if the board does not exist.  Any
        exception raised inside the block discards every change.
        """
        with self._lock(board_id):
            board = self._load(board_id)
            if board is None:
                raise NotFoundError(f"Board {board_id} not found")
            tx = _BoardTx(board)
            yield tx
            if tx.dirty:
                self._save(tx.board)

    def create(self, board: Board) -> Board:
        """Persist a brand-new board document."""
        with self._lock(board.id):
            if self._board_path(board.id).exists():
                raise ValidationError(f"Board {board.id} already exists")
            seen: set[str] = set()
            for col in board.columns:
                if col.id in seen:
                    raise ValidationError(f"Duplicate column id {col.id!r}")
                seen.add(col.id)
            self._save(board)
        return board

    def read_snapshot(self, board_id: str) -> Optional[Board]:
        """Return a consistent snapshot (no lock held after return)."""
        with self._lock(board_id):
            return self._load(board_id)

    def list_board_ids(self) -> list[str]:
        if not self._boards_dir.exists():
            return []
        return sorted(p.stem for p in self._boards_dir.glob(f"*{BOARD_FILE_SUFFIX}"))


class _BoardTx:
    """In-memory transaction over one board document.

    The primitive mutations are range updates over a single column; the move
    reconciler composes them.  Mutations are flushed to disk when the
    ``transaction`` context-manager exits.
    """

    def __init__(self, board: Board) -> None:
        self.board = board
        self.dirty = False

    # -- lookups ------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.board.task(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self.board.task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found on board {self.board.id}")
        return task

    def get_column(self, column_id: str) -> Optional[Column]:
        return self.board.column(column_id)

    def tasks_in_column(self, column_id: str) -> list[Task]:
        return self.board.tasks_in_column(column_id)

    def column_count(self, column_id: str, *, exclude: Optional[str] = None) -> int:
        return sum(1 for t in self.board.tasks if t.column_id == column_id and t.id != exclude)

    # -- primitive mutations -------------------------------------------------

    def shift(
        self,
        column_id: str,
        lo: int,
        hi: Optional[int],
        delta: int,
        *,
        exclude: Optional[str] = None,
    ) -> int:
        """Add *delta* to every position in ``[lo, hi]`` of *column_id*.

        ``hi=None`` means unbounded.  Returns the number of tasks touched.
        """
        touched = 0
        for t in self.board.tasks:
            if t.column_id != column_id or t.id == exclude:
                continue
            if t.position < lo or (hi is not None and t.position > hi):
                continue
            t.position += delta
            touched += 1
        if touched:
            self.dirty = True
        return touched

    def remove_at(self, task: Task) -> None:
        """Close the gap *task* leaves in its current column."""
        self.shift(task.column_id, task.position + 1, None, -1, exclude=task.id)
        self.dirty = True

    def insert_at(self, task: Task, column_id: str, position: int) -> None:
        """Open a slot at *position* in *column_id* and place *task* there."""
        self.shift(column_id, position, None, 1, exclude=task.id)
        task.column_id = column_id
        task.position = position
        self.dirty = True

    def reindex(self, column_id: str) -> bool:
        """Renumber *column_id* to ``0..n-1`` keeping the current order."""
        changed = False
        for idx, t in enumerate(self.board.tasks_in_column(column_id)):
            if t.position != idx:
                t.position = idx
                changed = True
        if changed:
            self.dirty = True
        return changed

    def add_task(self, task: Task) -> Task:
        if self.board.task(task.id) is not None:
            raise ValidationError(f"Task {task.id} already exists")
        task.board_id = self.board.id
        self.board.tasks.append(task)
        self.dirty = True
        return task

    def drop_task(self, task: Task) -> None:
        self.remove_at(task)
        self.board.tasks = [t for t in self.board.tasks if t.id != task.id]
        self.dirty = True

    # -- bookkeeping ----------------------------------------------------------

    def record(self, entry: AuditEntry) -> None:
        self.board.audit.append(entry)
        if len(self.board.audit) > MAX_AUDIT_ENTRIES:
            self.board.audit = self.board.audit[-MAX_AUDIT_ENTRIES:]
        self.dirty = True

    def recall_move(self, token: str) -> Optional[dict[str, Any]]:
        return self.board.applied_moves.get(token)

    def remember_move(self, token: str, result: dict[str, Any]) -> None:
        moves = self.board.applied_moves
        moves[token] = result
        while len(moves) > MAX_IDEMPOTENCY_RECORDS:
            # dicts keep insertion order
            moves.pop(next(iter(moves)))
        self.dirty = True
