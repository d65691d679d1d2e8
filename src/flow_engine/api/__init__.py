"""
HTTP and WebSocket surface of the flow engine.
"""

from .routes import router, set_dependencies
from .websocket import ConnectionManager, manager, websocket_endpoint, send_run_update

__all__ = [
    "router",
    "set_dependencies",
    "ConnectionManager",
    "manager",
    "websocket_endpoint",
    "send_run_update",
]
