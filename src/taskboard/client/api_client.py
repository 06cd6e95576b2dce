"""Async Move API client.

Maps the server's HTTP status signals back onto the board error taxonomy so
callers handle one set of exceptions whether a failure was detected locally
or by the server.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger

from ..errors import (
    BoardError,
    ConflictError,
    NotFoundError,
    PolicyRejection,
    TransportFailure,
    ValidationError,
)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_TIMEOUT = 10.0


def _body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _detail(body: dict[str, Any], fallback: str) -> str:
    detail = body.get("detail")
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(detail, list) and detail:
        # pydantic validation errors
        first = detail[0]
        if isinstance(first, dict):
            return str(first.get("msg") or fallback)
        return str(first)
    return fallback


def error_from_response(response: httpx.Response) -> BoardError:
    """Translate a non-2xx response into the matching :class:`BoardError`."""
    status = response.status_code
    body = _body(response)
    if status == 409:
        return ConflictError(
            str(body.get("message") or "Task was modified by another user"),
            current_state=body.get("current_state"),
            board_state=body.get("board_state"),
            time_difference_ms=int(body.get("time_difference_ms") or 0),
        )
    if status == 403:
        reason = body.get("reason") or _detail(body, "Move not allowed")
        return PolicyRejection(str(reason), column_id=body.get("column_id"))
    if status == 404:
        return NotFoundError(_detail(body, "Not found"))
    if status in (400, 422):
        return ValidationError(_detail(body, "Invalid request"))
    return TransportFailure(f"Server error {status}: {_detail(body, response.reason_phrase)}")


class MoveApiClient:
    """Thin async client for the board API.

    Pass ``client`` to reuse an existing :class:`httpx.AsyncClient` (for
    example one bound to an in-process ASGI transport); otherwise the client
    owns its connection pool and closes it in :meth:`aclose`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        actor: Optional[str] = None,
        role: Optional[str] = None,
        session_id: Optional[str] = None,
        project_dir: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.session_id = session_id
        self._headers: dict[str, str] = {}
        if actor:
            self._headers["X-Actor"] = actor
        if role:
            self._headers["X-Actor-Role"] = role
        if session_id:
            self._headers["X-Session-Id"] = session_id
        self._params: dict[str, str] = {"project_dir": project_dir} if project_dir else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self) -> "MoveApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, *, json: Any = None) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method, path, json=json, headers=self._headers, params=self._params,
            )
        except httpx.RequestError as exc:
            logger.warning("{} {} failed: {}", method, path, exc)
            raise TransportFailure(f"Could not reach board server: {exc}") from exc
        if response.status_code >= 400:
            error = error_from_response(response)
            logger.debug("{} {} -> {} ({})", method, path, response.status_code, error.message)
            raise error
        return _body(response)

    # -- Move API ---------------------------------------------------------

    async def move_task(
        self,
        board_id: str,
        task_id: str,
        destination_column_id: str,
        destination_position: int,
        *,
        idempotency_token: Optional[str] = None,
        client_observed_timestamp_ms: Optional[int] = None,
    ) -> dict[str, Any]:
        """Submit a move. Returns ``{task, server_timestamp_ms, board_state, replayed}``."""
        payload: dict[str, Any] = {
            "destination_column_id": destination_column_id,
            "destination_position": destination_position,
        }
        if idempotency_token is not None:
            payload["idempotency_token"] = idempotency_token
        if client_observed_timestamp_ms is not None:
            payload["client_observed_timestamp_ms"] = client_observed_timestamp_ms
        return await self._request("POST", f"/api/boards/{board_id}/tasks/{task_id}/move", json=payload)

    async def fetch_board(self, board_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/api/boards/{board_id}")
        return data.get("board_state") or {}

    async def fetch_constraints(self, board_id: str, task_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/boards/{board_id}/tasks/{task_id}/constraints")

    # -- maintenance ------------------------------------------------------

    async def create_task(self, board_id: str, column_id: str, title: str, **fields: Any) -> dict[str, Any]:
        return await self._request(
            "POST", f"/api/boards/{board_id}/tasks", json={"column_id": column_id, "title": title, **fields},
        )

    async def delete_task(self, board_id: str, task_id: str) -> dict[str, Any]:
        data = await self._request("DELETE", f"/api/boards/{board_id}/tasks/{task_id}")
        return data.get("board_state") or {}
