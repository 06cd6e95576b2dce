from __future__ import annotations

import argparse
import json
import sys
from itertools import zip_longest
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.table import Table

from .config import (
    get_conflict_tolerance_ms,
    get_elevated_roles,
    get_high_priority,
    load_board_config,
)
from .constants import STATE_DIR_NAME
from .constraints import ConstraintEvaluator
from .errors import BoardError
from .reconciler import MoveReconciler
from .server import create_app

DEFAULT_COLUMNS = [
    {"id": "todo", "title": "To Do"},
    {"id": "in-progress", "title": "In Progress"},
    {"id": "review", "title": "Review"},
    {"id": "done", "title": "Done", "terminal": True},
]


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> tuple[MoveReconciler, bool]:
    project = _resolve_project_dir(args.project_dir)
    config, err = load_board_config(project)
    if err:
        sys.stderr.write(f"Ignoring unreadable config: {err}\n")
    reconciler = MoveReconciler(
        project / STATE_DIR_NAME,
        evaluator=ConstraintEvaluator(high_priority=get_high_priority(config)),
        tolerance_ms=get_conflict_tolerance_ms(config),
    )
    elevated = (args.role or "").strip().lower() in get_elevated_roles(config)
    return reconciler, elevated


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _parse_column(spec: str, order: int) -> dict[str, Any]:
    """``id[:title[:max_tasks]]`` -> column dict."""
    parts = spec.split(":")
    column: dict[str, Any] = {"id": parts[0], "title": parts[1] if len(parts) > 1 and parts[1] else parts[0], "order": order}
    if len(parts) > 2 and parts[2]:
        column["max_tasks"] = int(parts[2])
    return column


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def _server(args: argparse.Namespace) -> int:
    import uvicorn

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload)
    return 0


def _board_create(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    if args.column:
        columns = [_parse_column(spec, idx) for idx, spec in enumerate(args.column)]
    else:
        columns = [{**col, "order": idx} for idx, col in enumerate(DEFAULT_COLUMNS)]
    board = reconciler.create_board(args.name, columns, board_id=args.board_id)
    _emit({"board_state": board.state()})
    return 0


def _board_list(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    _emit({"boards": reconciler.list_boards()})
    return 0


def _board_show(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    state = reconciler.board_state(args.board_id)
    if args.json:
        _emit({"board_state": state})
        return 0
    title = state["name"] or state["board_id"]
    if state.get("archived"):
        title += " (archived)"
    table = Table(title=title)
    for col in state["columns"]:
        cap = f"/{col['max_tasks']}" if col.get("max_tasks") is not None else ""
        flags = " [locked]" if col.get("locked") else ""
        table.add_column(f"{col['title']} {len(col['tasks'])}{cap}{flags}")
    cells = [
        [f"{t['title']} ({t['id']}){' [H]' if t['priority'] == 'high' else ''}{' [L]' if t['locked'] else ''}" for t in col["tasks"]]
        for col in state["columns"]
    ]
    for row in zip_longest(*cells, fillvalue=""):
        table.add_row(*row)
    Console().print(table)
    return 0


def _board_archive(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    _emit({"board_state": reconciler.archive_board(args.board_id)})
    return 0


def _board_restore(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    _emit({"board_state": reconciler.restore_board(args.board_id)})
    return 0


def _board_check(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    violations = reconciler.verify(args.board_id)
    repaired: list[str] = []
    if violations and args.repair:
        repaired = reconciler.repair(args.board_id, actor=args.actor)
        violations = reconciler.verify(args.board_id)
    overflows = reconciler.capacity_report(args.board_id)
    ok = not violations and not overflows
    _emit({"ok": ok, "violations": violations, "overflows": overflows, "repaired": repaired})
    return 0 if ok else 1


def _board_audit(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    entries = reconciler.audit_log(args.board_id, task_id=args.task_id, limit=args.limit)
    _emit({"entries": entries, "total": len(entries)})
    return 0


def _task_create(args: argparse.Namespace) -> int:
    reconciler, elevated = _ctx(args)
    task = reconciler.create_task(
        args.board_id,
        args.column_id,
        args.title,
        description=args.description or "",
        priority=args.priority,
        locked=args.locked,
        can_move_to=args.can_move_to,
        actor=args.actor,
        elevated=elevated,
    )
    _emit({"task": task.to_dict()})
    return 0


def _task_move(args: argparse.Namespace) -> int:
    reconciler, elevated = _ctx(args)
    result = reconciler.move(
        args.board_id,
        args.task_id,
        args.column_id,
        args.position,
        actor=args.actor,
        elevated=elevated,
        idempotency_token=args.token,
    )
    _emit(result.to_dict() if args.full else {"task": result.task, "replayed": result.replayed})
    return 0


def _task_duplicate(args: argparse.Namespace) -> int:
    reconciler, elevated = _ctx(args)
    task = reconciler.duplicate_task(args.board_id, args.task_id, actor=args.actor, elevated=elevated)
    _emit({"task": task.to_dict()})
    return 0


def _task_delete(args: argparse.Namespace) -> int:
    reconciler, _ = _ctx(args)
    reconciler.delete_task(args.board_id, args.task_id, actor=args.actor)
    _emit({"deleted": args.task_id})
    return 0


def _task_constraints(args: argparse.Namespace) -> int:
    reconciler, elevated = _ctx(args)
    _emit(reconciler.constraints_for(args.board_id, args.task_id, elevated=elevated).to_dict())
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Taskboard CLI')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--actor', default=None, help='Name recorded in the audit log')
    parser.add_argument('--role', default='member', help='Actor role; roles listed in constraints.elevated_roles are elevated')
    subparsers = parser.add_subparsers(dest='command', required=True)

    server = subparsers.add_parser('server', help='Start the web server')
    server.add_argument('--host', default='127.0.0.1')
    server.add_argument('--port', default=8000, type=int)
    server.add_argument('--reload', action='store_true')
    server.set_defaults(func=_server)

    board = subparsers.add_parser('board', help='Manage boards')
    board_sub = board.add_subparsers(dest='board_cmd', required=True)
    bcreate = board_sub.add_parser('create', help='Create a board')
    bcreate.add_argument('name')
    bcreate.add_argument('--board-id', default=None)
    bcreate.add_argument('--column', action='append', default=None, help='id[:title[:max_tasks]]; repeat in display order')
    bcreate.set_defaults(func=_board_create)
    blist = board_sub.add_parser('list', help='List boards')
    blist.set_defaults(func=_board_list)
    bshow = board_sub.add_parser('show', help='Print a board')
    bshow.add_argument('board_id')
    bshow.add_argument('--json', action='store_true')
    bshow.set_defaults(func=_board_show)
    barchive = board_sub.add_parser('archive', help='Archive a board')
    barchive.add_argument('board_id')
    barchive.set_defaults(func=_board_archive)
    brestore = board_sub.add_parser('restore', help='Restore an archived board')
    brestore.add_argument('board_id')
    brestore.set_defaults(func=_board_restore)
    bcheck = board_sub.add_parser('check', help='Verify positions and column capacity')
    bcheck.add_argument('board_id')
    bcheck.add_argument('--repair', action='store_true')
    bcheck.set_defaults(func=_board_check)
    baudit = board_sub.add_parser('audit', help='Show the move history')
    baudit.add_argument('board_id')
    baudit.add_argument('--task-id', default=None)
    baudit.add_argument('--limit', default=50, type=int)
    baudit.set_defaults(func=_board_audit)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tcreate = task_sub.add_parser('create', help='Append a task to a column')
    tcreate.add_argument('board_id')
    tcreate.add_argument('column_id')
    tcreate.add_argument('title')
    tcreate.add_argument('--description', default='')
    tcreate.add_argument('--priority', default='medium', choices=['low', 'medium', 'high'])
    tcreate.add_argument('--locked', action='store_true')
    tcreate.add_argument('--can-move-to', action='append', default=None)
    tcreate.set_defaults(func=_task_create)
    tmove = task_sub.add_parser('move', help='Move a task')
    tmove.add_argument('board_id')
    tmove.add_argument('task_id')
    tmove.add_argument('column_id')
    tmove.add_argument('position', type=int)
    tmove.add_argument('--token', default=None, help='Idempotency token')
    tmove.add_argument('--full', action='store_true', help='Include the board state')
    tmove.set_defaults(func=_task_move)
    tdup = task_sub.add_parser('duplicate', help='Copy a task to the end of its column')
    tdup.add_argument('board_id')
    tdup.add_argument('task_id')
    tdup.set_defaults(func=_task_duplicate)
    tdelete = task_sub.add_parser('delete', help='Delete a task')
    tdelete.add_argument('board_id')
    tdelete.add_argument('task_id')
    tdelete.set_defaults(func=_task_delete)
    tcons = task_sub.add_parser('constraints', help='Show allowed destination columns')
    tcons.add_argument('board_id')
    tcons.add_argument('task_id')
    tcons.set_defaults(func=_task_constraints)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler: Optional[Callable[[argparse.Namespace], int]] = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except BoardError as exc:
        sys.stderr.write(json.dumps({"error": exc.__class__.__name__, **exc.to_dict()}) + "\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
