"""Tests for the client-side board view and reconciliation cache."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from taskboard.client.board_view import BoardView
from taskboard.client.cache import ReconciliationCache
from taskboard.errors import NotFoundError, ValidationError
from taskboard.ledger.model import Board, Column, Task


def _state(**columns: list[str]) -> dict[str, Any]:
    board = Board(id="b1", name="Sprint")
    for order, (col_id, titles) in enumerate(columns.items()):
        board.columns.append(Column(id=col_id, title=col_id.title(), order=order))
        for pos, title in enumerate(titles):
            board.tasks.append(Task(id=title.lower(), board_id="b1", column_id=col_id, position=pos, title=title))
    return board.state()


class _FakeApi:
    session_id = "me"

    def __init__(self, state: dict[str, Any]) -> None:
        self.state = state
        self.fetches = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_board(self, board_id: str) -> dict[str, Any]:
        self.fetches += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return self.state


class TestBoardView:
    def test_from_state(self) -> None:
        view = BoardView.from_state(_state(todo=["A", "B"], doing=["D"]))
        assert view.board_id == "b1"
        assert [c.id for c in view.columns] == ["todo", "doing"]
        assert view.task_ids("todo") == ["a", "b"]
        assert view.counts() == {"todo": 2, "doing": 1}
        assert view.task("d").column_id == "doing"

    def test_splice_across_columns(self) -> None:
        view = BoardView.from_state(_state(todo=["A", "B", "C"], doing=["D", "E"]))
        moved = view.splice("b", "doing", 1)
        assert moved.task_ids("todo") == ["a", "c"]
        assert moved.task_ids("doing") == ["d", "b", "e"]
        assert [t.position for t in moved.tasks_by_column["doing"]] == [0, 1, 2]
        assert moved.task("b").column_id == "doing"
        # the source view is untouched
        assert view.task_ids("todo") == ["a", "b", "c"]

    def test_splice_within_column(self) -> None:
        view = BoardView.from_state(_state(todo=["A", "B", "C", "D"]))
        assert view.splice("a", "todo", 2).task_ids("todo") == ["b", "c", "a", "d"]

    def test_splice_clamps_index(self) -> None:
        view = BoardView.from_state(_state(todo=["A"], doing=["D"]))
        assert view.splice("a", "doing", 99).task_ids("doing") == ["d", "a"]
        assert view.splice("a", "doing", -3).task_ids("doing") == ["a", "d"]

    def test_splice_stamps_moved_task(self) -> None:
        view = BoardView.from_state(_state(todo=["A", "B"], doing=[]))
        moved = view.splice("a", "doing", 0, updated_at="2030-01-01T00:00:00+00:00")
        assert moved.task("a").updated_at == "2030-01-01T00:00:00+00:00"
        assert moved.task("b").updated_at == view.task("b").updated_at

    def test_splice_unknown_ids(self) -> None:
        view = BoardView.from_state(_state(todo=["A"]))
        with pytest.raises(NotFoundError):
            view.splice("zzz", "todo", 0)
        with pytest.raises(ValidationError):
            view.splice("a", "nowhere", 0)

    def test_to_state_round_trip(self) -> None:
        view = BoardView.from_state(_state(todo=["A"], doing=["D"]))
        assert BoardView.from_state(view.to_state()) == view


class TestReconciliationCache:
    def test_replace_and_view(self) -> None:
        cache = ReconciliationCache()
        assert cache.view("b1") is None
        assert cache.is_stale("b1")
        cache.replace("b1", _state(todo=["A"]))
        assert cache.view("b1").task_ids("todo") == ["a"]
        assert cache.generation("b1") == 1
        assert not cache.is_stale("b1")

    def test_optimistic_overlay(self) -> None:
        cache = ReconciliationCache()
        base = cache.replace("b1", _state(todo=["A", "B"], doing=[]))
        cache.apply_optimistic("b1", base.splice("a", "doing", 0))
        assert cache.has_overlay("b1")
        assert cache.view("b1").task_ids("doing") == ["a"]
        assert cache.baseline("b1").task_ids("doing") == []

        cache.discard_optimistic("b1")
        assert cache.view("b1").task_ids("todo") == ["a", "b"]
        assert cache.generation("b1") == 3

    def test_server_snapshot_wins_over_overlay(self) -> None:
        cache = ReconciliationCache()
        base = cache.replace("b1", _state(todo=["A", "B"], doing=[]))
        cache.apply_optimistic("b1", base.splice("a", "doing", 0))
        cache.replace("b1", _state(todo=["B", "A"], doing=[]))
        assert not cache.has_overlay("b1")
        assert cache.view("b1").task_ids("todo") == ["b", "a"]

    def test_invalidate(self) -> None:
        cache = ReconciliationCache()
        cache.replace("b1", _state(todo=[]))
        cache.invalidate("b1")
        assert cache.is_stale("b1")
        assert cache.view("b1") is not None

    @pytest.mark.anyio
    async def test_refresh_is_serialised_per_board(self) -> None:
        api = _FakeApi(_state(todo=["A"]))
        cache = ReconciliationCache(api)
        cache.invalidate("b1")
        await asyncio.gather(*(cache.refresh("b1") for _ in range(3)))
        assert api.fetches == 3
        assert api.max_in_flight == 1
        assert not cache.is_stale("b1")
        assert cache.generation("b1") == 3

    @pytest.mark.anyio
    async def test_refresh_without_api(self) -> None:
        with pytest.raises(RuntimeError):
            await ReconciliationCache().refresh("b1")

    @pytest.mark.anyio
    async def test_notification_from_other_session_refreshes(self) -> None:
        api = _FakeApi(_state(todo=["B", "A"]))
        cache = ReconciliationCache(api)
        cache.replace("b1", _state(todo=["A", "B"]))

        assert await cache.handle_notification({"board_id": "b1", "event": "task_moved", "origin": "other"})
        assert cache.view("b1").task_ids("todo") == ["b", "a"]
        assert api.fetches == 1

    @pytest.mark.anyio
    async def test_notification_ignored_for_own_session_and_unknown_board(self) -> None:
        api = _FakeApi(_state(todo=[]))
        cache = ReconciliationCache(api)
        assert cache.session_id == "me"
        cache.replace("b1", _state(todo=["A"]))

        assert not await cache.handle_notification({"board_id": "b1", "event": "task_moved", "origin": "me"})
        assert not await cache.handle_notification({"board_id": "b9", "event": "task_moved", "origin": "x"})
        assert api.fetches == 0
