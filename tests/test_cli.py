from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskboard.cli import main
from taskboard.constants import STATE_DIR_NAME
from taskboard.reconciler import MoveReconciler


def _run(capsys: pytest.CaptureFixture[str], tmp_path: Path, *argv: str) -> tuple[int, dict]:
    rc = main(['--project-dir', str(tmp_path), *argv])
    out = capsys.readouterr().out
    return rc, json.loads(out) if out.strip() else {}


def test_board_create_with_default_columns(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, payload = _run(capsys, tmp_path, 'board', 'create', 'Sprint', '--board-id', 'b1')
    assert rc == 0
    columns = payload['board_state']['columns']
    assert [c['id'] for c in columns] == ['todo', 'in-progress', 'review', 'done']

    rc, payload = _run(capsys, tmp_path, 'board', 'list')
    assert payload['boards'] == [{'id': 'b1', 'name': 'Sprint', 'archived': False}]


def test_task_create_move_and_audit(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, 'board', 'create', 'Sprint', '--board-id', 'b1', '--column', 'todo:Todo', '--column', 'doing:Doing:2')
    rc, payload = _run(capsys, tmp_path, '--actor', 'alice', 'task', 'create', 'b1', 'todo', 'Write docs')
    assert rc == 0
    task_id = payload['task']['id']

    rc, payload = _run(capsys, tmp_path, '--actor', 'alice', 'task', 'move', 'b1', task_id, 'doing', '0', '--token', 'tok-1')
    assert rc == 0
    assert payload['task']['column_id'] == 'doing'
    assert payload['replayed'] is False

    rc, payload = _run(capsys, tmp_path, 'task', 'move', 'b1', task_id, 'doing', '0', '--token', 'tok-1')
    assert payload['replayed'] is True

    rc, payload = _run(capsys, tmp_path, 'board', 'audit', 'b1', '--task-id', task_id)
    assert rc == 0
    assert payload['total'] >= 1


def test_policy_rejection_exit_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, 'board', 'create', 'Sprint', '--board-id', 'b1')
    _, payload = _run(capsys, tmp_path, 'task', 'create', 'b1', 'review', 'A')
    task_id = payload['task']['id']

    rc = main(['--project-dir', str(tmp_path), 'task', 'move', 'b1', task_id, 'todo', '0'])
    err = json.loads(capsys.readouterr().err)
    assert rc == 2
    assert err['error'] == 'PolicyRejection'

    rc, payload = _run(capsys, tmp_path, '--role', 'admin', 'task', 'move', 'b1', task_id, 'todo', '0')
    assert rc == 0
    assert payload['task']['column_id'] == 'todo'


def test_board_check_and_repair(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, 'board', 'create', 'Sprint', '--board-id', 'b1')
    _run(capsys, tmp_path, 'task', 'create', 'b1', 'todo', 'A')
    _run(capsys, tmp_path, 'task', 'create', 'b1', 'todo', 'B')

    rc, payload = _run(capsys, tmp_path, 'board', 'check', 'b1')
    assert (rc, payload['ok']) == (0, True)

    store = MoveReconciler(tmp_path.resolve() / STATE_DIR_NAME).store
    with store.transaction('b1') as tx:
        for task in tx.tasks_in_column('todo'):
            task.position += 5
        tx.dirty = True

    rc, payload = _run(capsys, tmp_path, 'board', 'check', 'b1')
    assert rc == 1
    assert payload['violations'] == {'todo': [5, 6]}

    rc, payload = _run(capsys, tmp_path, 'board', 'check', 'b1', '--repair')
    assert rc == 0
    assert payload['repaired'] == ['todo']


def test_board_show_renders_table(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, 'board', 'create', 'Sprint', '--board-id', 'b1')
    _run(capsys, tmp_path, 'task', 'create', 'b1', 'todo', 'Ship it', '--priority', 'high')
    assert main(['--project-dir', str(tmp_path), 'board', 'show', 'b1']) == 0
    out = capsys.readouterr().out
    assert 'Sprint' in out
    assert 'Ship' in out


def test_unknown_board_reports_not_found(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(['--project-dir', str(tmp_path), 'board', 'show', 'missing', '--json'])
    assert rc == 2
    assert json.loads(capsys.readouterr().err)['error'] == 'NotFoundError'


def test_board_check_reports_capacity_overflow(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, 'board', 'create', 'Sprint', '--board-id', 'b1', '--column', 'todo:Todo:3')
    for title in ('A', 'B', 'C'):
        _run(capsys, tmp_path, 'task', 'create', 'b1', 'todo', title)

    store = MoveReconciler(tmp_path.resolve() / STATE_DIR_NAME).store
    with store.transaction('b1') as tx:
        tx.get_column('todo').max_tasks = 1
        tx.dirty = True

    rc, payload = _run(capsys, tmp_path, 'board', 'check', 'b1', '--repair')
    assert rc == 1
    assert payload['violations'] == {}
    assert payload['overflows'] == {'todo': 3}
    assert payload['repaired'] == []
