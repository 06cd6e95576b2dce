"""Board, column and task model for the position ledger.

Every object here is serializable to the YAML board document persisted by
:mod:`taskboard.ledger.store`.  Positions are plain integers; the ledger
guarantees that, per column, they form ``0..n-1``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import DEFAULT_TERMINAL_COLUMN
from ..io_utils import _iso_to_ms, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskPriority(str, Enum):
    """Priority tier shown on the card."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuditAction(str, Enum):
    CREATED = "created"
    MOVED = "moved"
    DELETED = "deleted"
    REPAIRED = "repaired"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _coerce_priority(raw: Any) -> TaskPriority:
    if isinstance(raw, TaskPriority):
        return raw
    try:
        return TaskPriority(str(raw).lower())
    except ValueError:
        return TaskPriority.MEDIUM


def _optional_list(raw: Any) -> Optional[list[str]]:
    if raw is None:
        return None
    return [str(item) for item in list(raw)]


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A card on the board.

    ``can_move_to`` is an explicit allow-list of destination columns; ``None``
    means "no task-level restriction".
    """

    id: str = field(default_factory=lambda: _generate_id("task"))
    board_id: str = ""
    column_id: str = ""
    position: int = 0
    title: str = ""
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    locked: bool = False
    can_move_to: Optional[list[str]] = None
    created_by: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def updated_at_ms(self) -> int:
        return _iso_to_ms(self.updated_at)

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["updated_at_ms"] = self.updated_at_ms
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=str(data.get("id") or _generate_id("task")),
            board_id=str(data.get("board_id") or ""),
            column_id=str(data.get("column_id") or ""),
            position=int(data.get("position") or 0),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            priority=_coerce_priority(data.get("priority")),
            locked=bool(data.get("locked", False)),
            can_move_to=_optional_list(data.get("can_move_to")),
            created_by=data.get("created_by"),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )


@dataclass
class Column:
    id: str = field(default_factory=lambda: _generate_id("col"))
    title: str = ""
    order: int = 0
    max_tasks: Optional[int] = None
    accepts_from: Optional[list[str]] = None
    locked: bool = False
    terminal: bool = False

    def is_full(self, task_count: int) -> bool:
        return self.max_tasks is not None and task_count >= self.max_tasks

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Column":
        column_id = str(data.get("id") or _generate_id("col"))
        max_tasks = data.get("max_tasks")
        terminal = data.get("terminal")
        return cls(
            id=column_id,
            title=str(data.get("title") or column_id),
            order=int(data.get("order") or 0),
            max_tasks=int(max_tasks) if max_tasks is not None else None,
            accepts_from=_optional_list(data.get("accepts_from")),
            locked=bool(data.get("locked", False)),
            # Boards written before the flag existed treat "done" as terminal.
            terminal=bool(terminal) if terminal is not None else column_id == DEFAULT_TERMINAL_COLUMN,
        )


@dataclass(frozen=True)
class AuditEntry:
    """Record of one ledger transition; boards keep the newest ``MAX_AUDIT_ENTRIES``."""

    task_id: str
    action: AuditAction
    actor: Optional[str] = None
    from_column: Optional[str] = None
    from_position: Optional[int] = None
    to_column: Optional[str] = None
    to_position: Optional[int] = None
    id: str = field(default_factory=lambda: _generate_id("audit"))
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        def _int(key: str) -> Optional[int]:
            value = data.get(key)
            return int(value) if value is not None else None

        return cls(
            id=str(data.get("id") or _generate_id("audit")),
            task_id=str(data.get("task_id") or ""),
            action=AuditAction(str(data.get("action") or "moved")),
            actor=data.get("actor"),
            from_column=data.get("from_column"),
            from_position=_int("from_position"),
            to_column=data.get("to_column"),
            to_position=_int("to_position"),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class Board:
    """A board document: ordered columns, their tasks and the move history."""

    id: str = field(default_factory=lambda: _generate_id("board"))
    name: str = ""
    archived: bool = False
    columns: list[Column] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    audit: list[AuditEntry] = field(default_factory=list)
    # idempotency token -> stored move result
    applied_moves: dict[str, dict[str, Any]] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def ordered_columns(self) -> list[Column]:
        return sorted(self.columns, key=lambda c: (c.order, c.id))

    def column(self, column_id: str) -> Optional[Column]:
        for col in self.columns:
            if col.id == column_id:
                return col
        return None

    def task(self, task_id: str) -> Optional[Task]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    def tasks_in_column(self, column_id: str) -> list[Task]:
        return sorted(
            (t for t in self.tasks if t.column_id == column_id),
            key=lambda t: (t.position, t.created_at, t.id),
        )

    def state(self) -> dict[str, Any]:
        """Canonical board state: every column with its ordered task list."""
        return {
            "board_id": self.id,
            "name": self.name,
            "archived": self.archived,
            "columns": [
                {
                    **col.to_dict(),
                    "tasks": [t.to_dict() for t in self.tasks_in_column(col.id)],
                }
                for col in self.ordered_columns()
            ],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "archived": self.archived,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "columns": [c.to_dict() for c in self.ordered_columns()],
            "tasks": [
                {k: v for k, v in t.to_dict().items() if k != "updated_at_ms"}
                for t in sorted(self.tasks, key=lambda t: (t.column_id, t.position, t.id))
            ],
            "audit": [a.to_dict() for a in self.audit],
            "applied_moves": dict(self.applied_moves),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Board":
        return cls(
            id=str(data.get("id") or _generate_id("board")),
            name=str(data.get("name") or ""),
            archived=bool(data.get("archived", False)),
            columns=[Column.from_dict(c) for c in list(data.get("columns") or []) if isinstance(c, dict)],
            tasks=[Task.from_dict(t) for t in list(data.get("tasks") or []) if isinstance(t, dict)],
            audit=[AuditEntry.from_dict(a) for a in list(data.get("audit") or []) if isinstance(a, dict)],
            applied_moves=dict(data.get("applied_moves") or {}),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )
