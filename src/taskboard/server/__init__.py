"""HTTP and WebSocket surface for the task board."""

from .api import create_app

__all__ = ["create_app"]
