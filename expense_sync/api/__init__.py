"""HTTP and WebSocket surface."""

from expense_sync.api.app import create_app

__all__ = ["create_app"]
