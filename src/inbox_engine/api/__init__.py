"""HTTP and WebSocket surface of the inbox engine."""

from .app import create_app

__all__ = ["create_app"]
