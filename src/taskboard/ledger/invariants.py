"""Ordering-invariant checks over a board snapshot."""

from __future__ import annotations

from .model import Board


def column_violation(positions: list[int]) -> bool:
    """True unless *positions* is exactly ``0..n-1`` with no duplicates."""
    return sorted(positions) != list(range(len(positions)))


def check_invariant(board: Board) -> dict[str, list[int]]:
    """Return ``{column_id: positions}`` for every column breaking the invariant.

    Tasks that reference a column missing from the board are reported under
    their dangling column id.  Capacity overflows are not reported here; see
    :func:`capacity_overflows`.
    """
    by_column: dict[str, list[int]] = {}
    for task in board.tasks:
        by_column.setdefault(task.column_id, []).append(task.position)
    known = {c.id for c in board.columns}
    violations: dict[str, list[int]] = {}
    for column_id, positions in by_column.items():
        if column_id not in known or column_violation(positions):
            violations[column_id] = sorted(positions)
    return violations


def capacity_overflows(board: Board) -> dict[str, int]:
    """Return ``{column_id: task_count}`` for columns holding more than ``max_tasks``."""
    overflows: dict[str, int] = {}
    for col in board.columns:
        count = sum(1 for t in board.tasks if t.column_id == col.id)
        if col.max_tasks is not None and count > col.max_tasks:
            overflows[col.id] = count
    return overflows
