"""Board-scoped WebSocket change channel.

A single WebSocket connection at ``/ws`` may follow any number of boards:

Protocol (client → server):
    {"action": "subscribe", "board_ids": ["board-1", "board-2"]}
    {"action": "unsubscribe", "board_ids": ["board-2"]}
    {"action": "ping"}

Protocol (server → client):
    {"board_id": "board-1", "event": "task_moved", "task_id": "...", "origin": "...", "seq": 7}
    {"board_id": null, "event": "subscribed", "board_ids": [...], "seq": 8}

Events are hints: clients re-fetch the board snapshot when one arrives.
"""

from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket
from loguru import logger


BOARD_EVENTS = {
    "task_moved",
    "task_created",
    "task_deleted",
    "board_archived",
    "board_restored",
}


@dataclass
class _WsClient:
    ws: WebSocket
    board_ids: set[str] = field(default_factory=set)


def _board_ids(message: dict[str, Any]) -> set[str]:
    ids = {str(b).strip() for b in message.get("board_ids", []) if str(b).strip()}
    single = str(message.get("board_id") or "").strip()
    if single:
        ids.add(single)
    return ids


class BoardWebSocketHub:
    """Fan out board change notifications to subscribed WebSocket clients.

    Usage::

        hub = BoardWebSocketHub()

        # In a FastAPI WebSocket endpoint:
        await hub.handle_connection(websocket)

        # From synchronous code (e.g. the move reconciler's publisher):
        hub.publish_sync({"board_id": "board-1", "event": "task_moved", "task_id": "t-1"})
    """

    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    def _next_seq(self) -> int:
        self._counter += 1
        return self._counter

    async def _send_system(self, client: _WsClient, event: str) -> None:
        await client.ws.send_text(json.dumps({
            "board_id": None,
            "event": event,
            "board_ids": sorted(client.board_ids),
            "seq": self._next_seq(),
        }))

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Accept a connection and serve subscribe/unsubscribe/ping until it closes."""
        # Remember the serving loop so worker threads can publish safely.
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        logger.debug("Board hub: client connected (total={})", self.client_count)
        try:
            await self._send_system(client, "connected")
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(message, dict):
                    continue
                action = message.get("action")
                if action == "subscribe":
                    client.board_ids |= _board_ids(message)
                    await self._send_system(client, "subscribed")
                elif action == "unsubscribe":
                    client.board_ids -= _board_ids(message)
                    await self._send_system(client, "unsubscribed")
                elif action == "ping":
                    await self._send_system(client, "pong")
        except Exception as exc:
            logger.debug("Board hub: connection closed ({})", exc.__class__.__name__)
        finally:
            self._clients.pop(cid, None)
            logger.debug("Board hub: client disconnected (total={})", self.client_count)

    async def publish(self, event: dict[str, Any]) -> None:
        """Send *event* to every client subscribed to its board."""
        board_id = str(event.get("board_id") or "")
        payload = json.dumps({**event, "seq": self._next_seq()})
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if board_id not in client.board_ids:
                continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)
        if stale:
            logger.debug("Board hub: dropped {} stale client(s)", len(stale))

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Fire-and-forget publish from synchronous code or another thread."""
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                loop.create_task(self.publish(event))
            else:
                asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to deliver on; subscribers resync from the snapshot.
            return
        self.attach_loop(loop)
        loop.create_task(self.publish(event))


hub = BoardWebSocketHub()
