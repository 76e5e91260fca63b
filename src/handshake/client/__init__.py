"""Network transports for handshake.

Protocol modules depend on these small capability interfaces rather than
on a concrete library, so they can run against fakes in tests.

Classes:
    :class:`HttpTransport` -- request/response over :class:`httpx.AsyncClient`.
    :class:`SocketTransport` -- WebSocket factory; :class:`AiohttpSocketTransport`
    is the :mod:`aiohttp` implementation.

Example::

    from handshake.client import HttpTransport

    async with HttpTransport() as transport:
        resp = await transport.request("GET", "https://api.example.com/users")
"""

from handshake.client.transport import HttpTransport
from handshake.client.websocket import (
    AiohttpSocketTransport,
    SocketConnection,
    SocketMessage,
    SocketTransport,
)

__all__ = [
    "HttpTransport",
    "SocketTransport",
    "SocketConnection",
    "SocketMessage",
    "AiohttpSocketTransport",
]
