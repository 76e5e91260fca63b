"""WebSocket transport used by the WebSocket protocol module.

The connection manager never talks to a socket library directly. It asks a
:class:`SocketTransport` to :meth:`~SocketTransport.open` a
:class:`SocketConnection` and then only sends strings or bytes and awaits
:class:`SocketMessage` values. :class:`AiohttpSocketTransport` is the real
implementation, backed by :meth:`aiohttp.ClientSession.ws_connect`; tests
provide an in-memory fake.

Ping/pong in handshake is application-level JSON, so the RFC 6455 control
frames aiohttp handles internally are invisible at this layer.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import aiohttp

from handshake.exceptions import TransportError

logger = logging.getLogger(__name__)


@dataclass
class SocketMessage:
    """One event read from a socket.

    ``kind`` is ``"text"``, ``"binary"``, ``"close"`` or ``"error"``. Close
    events carry ``close_code``, ``reason`` and ``was_clean``.
    """

    kind: str
    data: str | bytes | None = None
    close_code: Optional[int] = None
    reason: str = ""
    was_clean: bool = True


class SocketConnection(ABC):
    """An open WebSocket."""

    @property
    @abstractmethod
    def protocol(self) -> Optional[str]:
        """The subprotocol the server selected, if any."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def send(self, data: str | bytes) -> None:
        """Send one text or binary frame."""
        ...

    @abstractmethod
    async def receive(self) -> SocketMessage:
        """Wait for the next frame or for the socket to close."""
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...


class SocketTransport(ABC):
    """Factory for :class:`SocketConnection` objects."""

    @abstractmethod
    async def open(
        self,
        url: str,
        protocols: Sequence[str] = (),
        timeout: float = 30.0,
    ) -> SocketConnection:
        """Open a connection to *url*.

        Raises:
            TransportError: If the handshake fails or times out.
        """
        ...


# ------------------------------------------------------------------ #
# aiohttp implementation
# ------------------------------------------------------------------ #


class AiohttpSocketConnection(SocketConnection):
    """:class:`SocketConnection` over an :class:`aiohttp.ClientWebSocketResponse`.

    Owns its :class:`aiohttp.ClientSession` and closes it with the socket.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
    ) -> None:
        self._session = session
        self._ws = ws

    @property
    def protocol(self) -> Optional[str]:
        return self._ws.protocol

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, data: str | bytes) -> None:
        try:
            if isinstance(data, bytes):
                await self._ws.send_bytes(data)
            else:
                await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportError(f"WebSocket send failed: {exc}") from exc

    async def receive(self) -> SocketMessage:
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return SocketMessage(kind="text", data=msg.data)
        if msg.type == aiohttp.WSMsgType.BINARY:
            return SocketMessage(kind="binary", data=msg.data)
        if msg.type == aiohttp.WSMsgType.ERROR:
            await self._close_session()
            return SocketMessage(
                kind="close",
                close_code=1006,
                reason=str(self._ws.exception() or "connection error"),
                was_clean=False,
            )

        # CLOSE, CLOSING and CLOSED all end the connection.
        code = self._ws.close_code or 1006
        reason = msg.extra if isinstance(msg.extra, str) else ""
        await self._close_session()
        return SocketMessage(
            kind="close",
            close_code=code,
            reason=reason,
            was_clean=msg.type == aiohttp.WSMsgType.CLOSE and code != 1006,
        )

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._ws.closed:
            await self._ws.close(code=code, message=reason.encode("utf-8"))
        await self._close_session()

    async def _close_session(self) -> None:
        if not self._session.closed:
            await self._session.close()


class AiohttpSocketTransport(SocketTransport):
    """Open WebSockets with :meth:`aiohttp.ClientSession.ws_connect`."""

    def __init__(self, verify_ssl: bool = True) -> None:
        self._verify_ssl = verify_ssl

    async def open(
        self,
        url: str,
        protocols: Sequence[str] = (),
        timeout: float = 30.0,
    ) -> SocketConnection:
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(
                    url,
                    protocols=tuple(protocols),
                    ssl=None if self._verify_ssl else False,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            await session.close()
            raise TransportError("Connection timeout", timeout=True) from exc
        except (aiohttp.ClientError, OSError) as exc:
            await session.close()
            raise TransportError(f"WebSocket connection failed: {exc}") from exc

        logger.debug("WebSocket opened: %s (protocol=%s)", url.split("?")[0], ws.protocol)
        return AiohttpSocketConnection(session, ws)
