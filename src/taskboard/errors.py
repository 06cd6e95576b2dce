"""Error taxonomy shared by the ledger, the HTTP surface and the client."""

from __future__ import annotations

from typing import Any, Optional


class BoardError(Exception):
    """Base class for every board-level failure.

    ``message`` is always human-readable and safe to show to the user.
    """

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message}


class ValidationError(BoardError, ValueError):
    """Malformed request: unknown column, cross-board reference, bad position."""

    status_code = 400


class NotFoundError(ValidationError):
    status_code = 404


class PolicyRejection(BoardError):
    """A lock, capacity, accepts-from, workflow or priority rule blocked the move."""

    status_code = 403

    def __init__(self, reason: str, *, column_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.column_id = column_id

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "reason": self.reason, "column_id": self.column_id}


class ConflictError(BoardError):
    """The task changed on the server after the client last observed it."""

    status_code = 409

    def __init__(
        self,
        message: str,
        *,
        current_state: Optional[dict[str, Any]] = None,
        board_state: Optional[dict[str, Any]] = None,
        time_difference_ms: int = 0,
    ) -> None:
        super().__init__(message)
        self.current_state = current_state
        self.board_state = board_state
        self.time_difference_ms = time_difference_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict": True,
            "message": self.message,
            "current_state": self.current_state,
            "board_state": self.board_state,
            "time_difference_ms": self.time_difference_ms,
        }


class TransportFailure(BoardError):
    """The server could not be reached or answered with an unexpected failure."""

    status_code = 503
