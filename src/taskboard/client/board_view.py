"""Client-side, read-only view of a board snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from ..ledger.model import Column, Task


@dataclass(frozen=True)
class BoardView:
    """Columns in order plus each column's ordered tasks.

    Views are never mutated; :meth:`splice` returns a new view.
    """

    board_id: str
    name: str = ""
    archived: bool = False
    columns: tuple[Column, ...] = ()
    tasks_by_column: dict[str, tuple[Task, ...]] = field(default_factory=dict)

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "BoardView":
        columns: list[Column] = []
        tasks_by_column: dict[str, tuple[Task, ...]] = {}
        for raw in state.get("columns") or []:
            col = Column.from_dict(raw)
            columns.append(col)
            tasks = sorted(
                (Task.from_dict(t) for t in raw.get("tasks") or []),
                key=lambda t: t.position,
            )
            tasks_by_column[col.id] = tuple(tasks)
        columns.sort(key=lambda c: (c.order, c.id))
        return cls(
            board_id=str(state.get("board_id") or ""),
            name=str(state.get("name") or ""),
            archived=bool(state.get("archived", False)),
            columns=tuple(columns),
            tasks_by_column=tasks_by_column,
        )

    def to_state(self) -> dict[str, Any]:
        return {
            "board_id": self.board_id,
            "name": self.name,
            "archived": self.archived,
            "columns": [
                {**col.to_dict(), "tasks": [t.to_dict() for t in self.tasks_by_column.get(col.id, ())]}
                for col in self.columns
            ],
        }

    def column(self, column_id: str) -> Optional[Column]:
        return next((c for c in self.columns if c.id == column_id), None)

    def task(self, task_id: str) -> Optional[Task]:
        for tasks in self.tasks_by_column.values():
            for t in tasks:
                if t.id == task_id:
                    return t
        return None

    def task_ids(self, column_id: str) -> list[str]:
        return [t.id for t in self.tasks_by_column.get(column_id, ())]

    def counts(self) -> dict[str, int]:
        return {col_id: len(tasks) for col_id, tasks in self.tasks_by_column.items()}

    def splice(
        self, task_id: str, column_id: str, index: int, *, updated_at: Optional[str] = None,
    ) -> "BoardView":
        """Return a view with *task_id* moved to *index* of *column_id*.

        *index* is clamped to the destination's bounds.  Both affected
        columns are renumbered ``0..n-1``.  When *updated_at* is given the
        moved task carries it.
        """
        task = self.task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} is not on board {self.board_id}")
        if self.column(column_id) is None:
            raise ValidationError(f"Column {column_id} is not on board {self.board_id}")
        source = [t for t in self.tasks_by_column.get(task.column_id, ()) if t.id != task_id]
        if column_id == task.column_id:
            dest = source
        else:
            dest = list(self.tasks_by_column.get(column_id, ()))
        index = max(0, min(index, len(dest)))
        dest.insert(index, replace(task, column_id=column_id, updated_at=updated_at or task.updated_at))

        updated = dict(self.tasks_by_column)
        updated[task.column_id] = tuple(replace(t, position=i) for i, t in enumerate(source))
        updated[column_id] = tuple(replace(t, position=i) for i, t in enumerate(dest))
        return replace(self, tasks_by_column=updated)
