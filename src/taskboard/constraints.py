"""Move constraints: which destination columns a task may be dropped into.

The evaluator is a pure function of ``(task, columns, counts, elevated)``.
The client runs it before and during a drag to gate interaction; the move
reconciler runs it again server-side, because the client's pass is advisory.

Rules are an ordered list of independent predicates.  Each one looks at a
single candidate column and either returns a human-readable reason (the
column is blocked) or ``None``.  Rule order is the precedence used to pick
the one reason surfaced to the user; every rule is still enforced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .constants import DEFAULT_HIGH_PRIORITY
from .ledger.model import Column, Task


@dataclass(frozen=True)
class RuleContext:
    task: Task
    current: Optional[Column]
    counts: Mapping[str, int]
    elevated: bool
    high_priority: str = DEFAULT_HIGH_PRIORITY


Rule = Callable[[RuleContext, Column], Optional[str]]


@dataclass
class MoveConstraints:
    allowed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    # column id -> reason from the highest-precedence rule blocking it
    reasons: dict[str, str] = field(default_factory=dict)

    @property
    def all_blocked(self) -> bool:
        return not self.allowed

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed_columns": list(self.allowed),
            "blocked_columns": list(self.blocked),
            "reason": self.reason,
            "reasons": dict(self.reasons),
        }


@dataclass(frozen=True)
class MoveCheck:
    allowed: bool
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def task_locked(ctx: RuleContext, column: Column) -> Optional[str]:
    if ctx.task.locked and not ctx.elevated:
        return "Task is locked and requires admin permissions"
    return None


def task_allow_list(ctx: RuleContext, column: Column) -> Optional[str]:
    allow = ctx.task.can_move_to
    if allow and column.id not in allow:
        return f"Task can only be moved to: {', '.join(allow)}"
    return None


def column_locked(ctx: RuleContext, column: Column) -> Optional[str]:
    if column.locked and not ctx.elevated:
        return f'Column "{column.title}" is locked and requires admin permissions'
    return None


def column_accepts_from(ctx: RuleContext, column: Column) -> Optional[str]:
    if column.accepts_from is not None and ctx.task.column_id not in column.accepts_from:
        source = ctx.current.title if ctx.current else ctx.task.column_id
        return f'Column "{column.title}" doesn\'t accept tasks from "{source}"'
    return None


def column_capacity(ctx: RuleContext, column: Column) -> Optional[str]:
    if column.id != ctx.task.column_id and column.is_full(ctx.counts.get(column.id, 0)):
        return f'Column "{column.title}" has reached maximum capacity ({column.max_tasks})'
    return None


def priority_gate(ctx: RuleContext, column: Column) -> Optional[str]:
    if column.terminal and not ctx.elevated and ctx.task.priority.value == ctx.high_priority:
        return "High priority tasks require admin approval to complete"
    return None


def workflow_direction(ctx: RuleContext, column: Column) -> Optional[str]:
    if ctx.current is not None and column.order < ctx.current.order and not ctx.elevated:
        return "Moving tasks backwards requires admin permissions"
    return None


DEFAULT_RULES: tuple[Rule, ...] = (
    task_locked,
    task_allow_list,
    column_locked,
    column_accepts_from,
    column_capacity,
    priority_gate,
    workflow_direction,
)

# Reordering inside the current column only answers to these.
REORDER_RULES: tuple[Rule, ...] = (task_locked,)


def counts_from_tasks(tasks: Iterable[Task]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for t in tasks:
        counts[t.column_id] = counts.get(t.column_id, 0) + 1
    return counts


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

class ConstraintEvaluator:
    """Evaluate move constraints for one task against a column set.

    Stateless apart from its configuration; every call is side-effect free.
    """

    def __init__(
        self,
        rules: Sequence[Rule] = DEFAULT_RULES,
        *,
        reorder_rules: Sequence[Rule] = REORDER_RULES,
        high_priority: str = DEFAULT_HIGH_PRIORITY,
    ) -> None:
        self.rules = tuple(rules)
        self.reorder_rules = tuple(reorder_rules)
        self.high_priority = high_priority

    def _context(
        self,
        task: Task,
        columns: Sequence[Column],
        counts: Mapping[str, int],
        elevated: bool,
    ) -> RuleContext:
        current = next((c for c in columns if c.id == task.column_id), None)
        return RuleContext(
            task=task,
            current=current,
            counts=counts,
            elevated=elevated,
            high_priority=self.high_priority,
        )

    @staticmethod
    def _first_reason(rules: Sequence[Rule], ctx: RuleContext, column: Column) -> Optional[tuple[int, str]]:
        for rank, rule in enumerate(rules):
            reason = rule(ctx, column)
            if reason:
                return rank, reason
        return None

    def evaluate(
        self,
        task: Task,
        columns: Sequence[Column],
        counts: Mapping[str, int],
        *,
        elevated: bool,
    ) -> MoveConstraints:
        """Compute allowed/blocked columns for *task*, in column order.

        The task's current column is judged by the reorder rules only.
        """
        ctx = self._context(task, columns, counts, elevated)
        result = MoveConstraints()
        best: Optional[tuple[int, str]] = None
        for column in sorted(columns, key=lambda c: (c.order, c.id)):
            rules = self.reorder_rules if column.id == task.column_id else self.rules
            hit = self._first_reason(rules, ctx, column)
            if hit is None:
                result.allowed.append(column.id)
                continue
            result.blocked.append(column.id)
            result.reasons[column.id] = hit[1]
            if best is None or hit[0] < best[0]:
                best = hit
        if best is not None:
            result.reason = best[1]
        return result

    def check_move(
        self,
        task: Task,
        target_column_id: str,
        columns: Sequence[Column],
        counts: Mapping[str, int],
        *,
        elevated: bool,
    ) -> MoveCheck:
        """Decide whether *task* may be dropped into *target_column_id*."""
        target = next((c for c in columns if c.id == target_column_id), None)
        if target is None:
            return MoveCheck(False, "Invalid task or column")
        ctx = self._context(task, columns, counts, elevated)
        rules = self.reorder_rules if target.id == task.column_id else self.rules
        hit = self._first_reason(rules, ctx, target)
        if hit is None:
            return MoveCheck(True)
        return MoveCheck(False, hit[1])
