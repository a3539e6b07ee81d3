"""Table host package: serves card sessions to WebSocket clients."""

from .server import TableHost

__all__ = ["TableHost"]
