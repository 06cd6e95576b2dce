"""Reconciliation cache: last-known-good board snapshots plus optimistic overlays.

Each board keeps a *baseline* (the most recent server snapshot) and at most
one optimistic *overlay* produced by a drop that has not been confirmed yet.
Any server snapshot replaces both, so the server always wins.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

from .api_client import MoveApiClient
from .board_view import BoardView


@dataclass
class _CacheEntry:
    baseline: Optional[BoardView] = None
    overlay: Optional[BoardView] = None
    generation: int = 0
    stale: bool = False


class ReconciliationCache:
    """Per-board snapshot cache used by the drag session controller.

    Not thread-safe; meant to live on one asyncio event loop.
    """

    def __init__(self, api: Optional[MoveApiClient] = None, *, session_id: Optional[str] = None) -> None:
        self.api = api
        self.session_id = session_id if session_id is not None else getattr(api, "session_id", None)
        self._entries: dict[str, _CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _entry(self, board_id: str) -> _CacheEntry:
        return self._entries.setdefault(board_id, _CacheEntry())

    # -- reads ------------------------------------------------------------

    def view(self, board_id: str) -> Optional[BoardView]:
        """The view to render: the overlay when present, else the baseline."""
        entry = self._entries.get(board_id)
        if entry is None:
            return None
        return entry.overlay or entry.baseline

    def baseline(self, board_id: str) -> Optional[BoardView]:
        entry = self._entries.get(board_id)
        return entry.baseline if entry else None

    def has_overlay(self, board_id: str) -> bool:
        entry = self._entries.get(board_id)
        return bool(entry and entry.overlay is not None)

    def generation(self, board_id: str) -> int:
        entry = self._entries.get(board_id)
        return entry.generation if entry else 0

    def is_stale(self, board_id: str) -> bool:
        entry = self._entries.get(board_id)
        return entry.stale if entry else True

    def boards(self) -> list[str]:
        return sorted(self._entries)

    # -- writes -----------------------------------------------------------

    def replace(self, board_id: str, state: dict[str, Any]) -> BoardView:
        """Install a server snapshot, dropping any optimistic overlay."""
        entry = self._entry(board_id)
        entry.baseline = BoardView.from_state(state)
        entry.overlay = None
        entry.stale = False
        entry.generation += 1
        return entry.baseline

    def apply_optimistic(self, board_id: str, view: BoardView) -> None:
        entry = self._entry(board_id)
        entry.overlay = view
        entry.generation += 1

    def discard_optimistic(self, board_id: str) -> None:
        entry = self._entries.get(board_id)
        if entry is not None and entry.overlay is not None:
            entry.overlay = None
            entry.generation += 1

    def invalidate(self, board_id: str) -> None:
        self._entry(board_id).stale = True

    async def refresh(self, board_id: str) -> BoardView:
        """Re-fetch *board_id* from the server; concurrent calls are serialised."""
        if self.api is None:
            raise RuntimeError("ReconciliationCache has no API client to refresh from")
        lock = self._locks.setdefault(board_id, asyncio.Lock())
        async with lock:
            state = await self.api.fetch_board(board_id)
            logger.debug("Refreshed board {}", board_id)
            return self.replace(board_id, state)

    async def handle_notification(self, event: dict[str, Any]) -> bool:
        """React to a change-channel event. Returns True when a refresh ran."""
        board_id = str(event.get("board_id") or "")
        if not board_id or board_id not in self._entries:
            return False
        origin = event.get("origin")
        if origin is not None and origin == self.session_id:
            return False
        self.invalidate(board_id)
        await self.refresh(board_id)
        return True
