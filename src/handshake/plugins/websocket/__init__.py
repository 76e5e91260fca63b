"""WebSocket connections with handshake auth, heartbeat and reconnection.

Exports:
    :class:`WebSocketModule` -- the ``websocket`` protocol module.
    :class:`ConnectionManager` -- the asyncio connection manager it drives.
"""

from handshake.plugins.websocket.connection import ConnectionManager, get_close_reason
from handshake.plugins.websocket.plugin import WebSocketModule, config_from_credentials

__all__ = [
    "WebSocketModule",
    "ConnectionManager",
    "config_from_credentials",
    "get_close_reason",
]
