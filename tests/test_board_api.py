"""Tests for the board API endpoints."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from taskboard.server.api import create_app

COLUMNS = [
    {"id": "todo", "title": "Todo"},
    {"id": "doing", "title": "Doing", "max_tasks": 2},
    {"id": "review", "title": "Review"},
    {"id": "done", "title": "Done"},
]
ADMIN = {"X-Actor": "root", "X-Actor-Role": "admin"}


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "test_project"
    (project / ".taskboard").mkdir(parents=True)
    return project


@pytest.fixture
def app(project_dir: Path):
    return create_app(project_dir=project_dir, enable_cors=False)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _board(client: AsyncClient, board_id: str = "b1") -> dict[str, Any]:
    resp = await client.post("/api/boards", json={"id": board_id, "name": "Sprint", "columns": COLUMNS})
    assert resp.status_code == 201
    return resp.json()["board_state"]


async def _task(client: AsyncClient, column_id: str, title: str, **fields: Any) -> dict[str, Any]:
    resp = await client.post(
        "/api/boards/b1/tasks", json={"column_id": column_id, "title": title, **fields}, headers=ADMIN,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["task"]


def _titles(state: dict[str, Any], column_id: str) -> list[str]:
    col = next(c for c in state["columns"] if c["id"] == column_id)
    return [t["title"] for t in col["tasks"]]


@pytest.mark.anyio
class TestBoards:
    async def test_create_and_get(self, client: AsyncClient) -> None:
        state = await _board(client)
        assert [c["id"] for c in state["columns"]] == ["todo", "doing", "review", "done"]
        assert [c["order"] for c in state["columns"]] == [0, 1, 2, 3]
        # "done" is terminal unless stated otherwise
        assert state["columns"][3]["terminal"] is True

        resp = await client.get("/api/boards/b1")
        assert resp.status_code == 200
        assert resp.json()["board_state"]["name"] == "Sprint"

        resp = await client.get("/api/boards")
        assert resp.json()["boards"] == [{"id": "b1", "name": "Sprint", "archived": False}]

    async def test_get_unknown_board(self, client: AsyncClient) -> None:
        resp = await client.get("/api/boards/nope")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]

    async def test_duplicate_board_id(self, client: AsyncClient) -> None:
        await _board(client)
        resp = await client.post("/api/boards", json={"id": "b1", "name": "Again", "columns": COLUMNS})
        assert resp.status_code == 400

    async def test_archive_and_restore(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")

        resp = await client.post("/api/boards/b1/archive")
        assert resp.status_code == 403  # members cannot manage boards

        resp = await client.post("/api/boards/b1/archive", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["board_state"]["archived"] is True

        resp = await client.post(
            f"/api/boards/b1/tasks/{task['id']}/move",
            json={"destination_column_id": "doing", "destination_position": 0},
        )
        assert resp.status_code == 400

        resp = await client.post("/api/boards/b1/restore", headers=ADMIN)
        assert resp.json()["board_state"]["archived"] is False


@pytest.mark.anyio
class TestMoveApi:
    async def test_cross_column_move(self, client: AsyncClient) -> None:
        await _board(client)
        await _task(client, "todo", "A")
        b = await _task(client, "todo", "B")
        await _task(client, "doing", "D")

        resp = await client.post(
            f"/api/boards/b1/tasks/{b['id']}/move",
            json={"destination_column_id": "doing", "destination_position": 0},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["replayed"] is False
        assert data["task"]["column_id"] == "doing"
        assert data["server_timestamp_ms"] > 0
        assert _titles(data["board_state"], "todo") == ["A"]
        assert _titles(data["board_state"], "doing") == ["B", "D"]

    async def test_conflict(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")
        resp = await client.post(
            f"/api/boards/b1/tasks/{task['id']}/move",
            json={
                "destination_column_id": "doing",
                "destination_position": 0,
                "client_observed_timestamp_ms": task["updated_at_ms"] - 3000,
            },
        )
        assert resp.status_code == 409
        data = resp.json()
        assert data["conflict"] is True
        assert data["time_difference_ms"] == 3000
        assert data["current_state"]["id"] == task["id"]
        assert _titles(data["board_state"], "todo") == ["A"]
        assert data["message"]

    async def test_idempotent_retry(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")
        body = {"destination_column_id": "doing", "destination_position": 0, "idempotency_token": "tok-1"}
        first = await client.post(f"/api/boards/b1/tasks/{task['id']}/move", json=body)
        second = await client.post(f"/api/boards/b1/tasks/{task['id']}/move", json=body)
        assert first.status_code == second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["task"] == first.json()["task"]

    async def test_backward_move_requires_admin(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "review", "R")
        url = f"/api/boards/b1/tasks/{task['id']}/move"
        body = {"destination_column_id": "todo", "destination_position": 0}

        resp = await client.post(url, json=body, headers={"X-Actor": "bob"})
        assert resp.status_code == 403
        assert resp.json()["reason"] == "Moving tasks backwards requires admin permissions"
        assert resp.json()["detail"] == resp.json()["reason"]

        resp = await client.post(url, json=body, headers=ADMIN)
        assert resp.status_code == 200

    async def test_capacity(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")
        await _task(client, "doing", "D")
        await _task(client, "doing", "E")
        resp = await client.post(
            f"/api/boards/b1/tasks/{task['id']}/move",
            json={"destination_column_id": "doing", "destination_position": 1},
        )
        assert resp.status_code == 403
        assert "maximum capacity" in resp.json()["reason"]

    async def test_validation_errors(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")
        url = f"/api/boards/b1/tasks/{task['id']}/move"

        resp = await client.post(url, json={"destination_column_id": "nowhere", "destination_position": 0})
        assert resp.status_code == 400

        resp = await client.post(url, json={"destination_column_id": "doing", "destination_position": 5})
        assert resp.status_code == 400

        resp = await client.post(
            "/api/boards/b1/tasks/task-missing/move",
            json={"destination_column_id": "doing", "destination_position": 0},
        )
        assert resp.status_code == 404

    async def test_viewer_cannot_move(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")
        resp = await client.post(
            f"/api/boards/b1/tasks/{task['id']}/move",
            json={"destination_column_id": "doing", "destination_position": 0},
            headers={"X-Actor-Role": "viewer"},
        )
        assert resp.status_code == 403

    async def test_constraints_endpoint(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "review", "R", priority="high")

        resp = await client.get(f"/api/boards/b1/tasks/{task['id']}/constraints")
        assert resp.status_code == 200
        data = resp.json()
        assert data["allowed_columns"] == ["review"]
        assert data["blocked_columns"] == ["todo", "doing", "done"]
        assert data["reasons"]["done"] == "High priority tasks require admin approval to complete"

        resp = await client.get(f"/api/boards/b1/tasks/{task['id']}/constraints", headers=ADMIN)
        assert resp.json()["blocked_columns"] == []


@pytest.mark.anyio
class TestTaskMaintenance:
    async def test_create_appends(self, client: AsyncClient) -> None:
        await _board(client)
        a = await _task(client, "todo", "A")
        b = await _task(client, "todo", "B")
        assert (a["position"], b["position"]) == (0, 1)
        assert a["created_by"] == "root"

    async def test_create_into_full_column(self, client: AsyncClient) -> None:
        await _board(client)
        await _task(client, "doing", "D")
        await _task(client, "doing", "E")
        resp = await client.post("/api/boards/b1/tasks", json={"column_id": "doing", "title": "F"})
        assert resp.status_code == 403

    async def test_delete_closes_gap(self, client: AsyncClient) -> None:
        await _board(client)
        a = await _task(client, "todo", "A")
        await _task(client, "todo", "B")
        resp = await client.delete(f"/api/boards/b1/tasks/{a['id']}")
        assert resp.status_code == 200
        todo = resp.json()["board_state"]["columns"][0]["tasks"]
        assert [(t["title"], t["position"]) for t in todo] == [("B", 0)]

        resp = await client.delete(f"/api/boards/b1/tasks/{a['id']}")
        assert resp.status_code == 404

    async def test_duplicate(self, client: AsyncClient) -> None:
        await _board(client)
        a = await _task(client, "todo", "A")
        resp = await client.post(f"/api/boards/b1/tasks/{a['id']}/duplicate")
        assert resp.status_code == 201
        assert resp.json()["task"]["title"] == "A (Copy)"
        assert _titles(resp.json()["board_state"], "todo") == ["A", "A (Copy)"]

    async def test_audit_and_events(self, client: AsyncClient) -> None:
        await _board(client)
        task = await _task(client, "todo", "A")
        await client.post(
            f"/api/boards/b1/tasks/{task['id']}/move",
            json={"destination_column_id": "doing", "destination_position": 0},
            headers={"X-Actor": "alice", "X-Session-Id": "s-1"},
        )
        resp = await client.get("/api/boards/b1/audit", params={"task_id": task["id"]})
        entries = resp.json()["entries"]
        assert [e["action"] for e in entries] == ["created", "moved"]
        assert entries[-1]["actor"] == "alice"

        resp = await client.get("/api/events")
        moved = [e for e in resp.json()["events"] if e["event"] == "task_moved"]
        assert moved and moved[0]["origin"] == "s-1"

    async def test_repair(self, client: AsyncClient) -> None:
        await _board(client)
        resp = await client.post("/api/boards/b1/repair", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["repaired_columns"] == []


@pytest.mark.anyio
class TestConfiguration:
    async def test_custom_elevated_role(self, project_dir: Path, app) -> None:
        (project_dir / ".taskboard" / "config.yaml").write_text(
            "constraints:\n  elevated_roles: [lead]\n", encoding="utf-8",
        )
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            await _board(client)
            task = await _task(client, "review", "R")
            resp = await client.post(
                f"/api/boards/b1/tasks/{task['id']}/move",
                json={"destination_column_id": "todo", "destination_position": 0},
                headers={"X-Actor-Role": "lead"},
            )
            assert resp.status_code == 200

    async def test_tolerance_from_environment(
        self, project_dir: Path, app, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("TASKBOARD_CONFLICT_TOLERANCE_MS", "10000")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            await _board(client)
            task = await _task(client, "todo", "A")
            resp = await client.post(
                f"/api/boards/b1/tasks/{task['id']}/move",
                json={
                    "destination_column_id": "doing",
                    "destination_position": 0,
                    "client_observed_timestamp_ms": task["updated_at_ms"] - 3000,
                },
            )
            assert resp.status_code == 200
