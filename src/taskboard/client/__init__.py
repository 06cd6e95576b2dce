"""Client tier: Move API client, reconciliation cache and drag sessions."""

from .api_client import MoveApiClient
from .board_view import BoardView
from .cache import ReconciliationCache
from .drag import DragSessionController, DragState, IllegalDragTransition

__all__ = [
    "BoardView",
    "DragSessionController",
    "DragState",
    "IllegalDragTransition",
    "MoveApiClient",
    "ReconciliationCache",
]
