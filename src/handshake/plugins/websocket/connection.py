"""Managed WebSocket connection: handshake auth, heartbeat and reconnection.

:class:`ConnectionManager` owns one socket at a time and drives it through::

    disconnected -> connecting -> connected -> [authenticating ->] authenticated
                 -> reconnecting | disconnected | error

On top of the raw socket it provides:

* authentication by query parameter, first message or subprotocol;
* an application-level JSON heartbeat (``{"type": "ping"}`` every
  ``ping_interval`` ms) that force-closes the socket with code 1001 when no
  ping/pong has been seen for ``ping_interval + pong_timeout`` ms;
* reconnection after unclean closes, with exponential backoff plus up to
  one second of jitter, capped at 30 seconds;
* a bounded send queue that is flushed in order once the connection is
  authenticated again;
* request/response correlation by message ``id``, channel subscriptions
  and connection statistics.

Everything runs on the current asyncio event loop. The socket itself comes
from a :class:`~handshake.client.websocket.SocketTransport`, so tests run
against an in-memory fake.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import quote

from handshake.client.websocket import (
    AiohttpSocketTransport,
    SocketConnection,
    SocketMessage,
    SocketTransport,
)
from handshake.exceptions import ConfigurationError, ProtocolError, TransportError
from handshake.models import ConnectionState, ConnectionStats, WebSocketConfig

logger = logging.getLogger(__name__)

MAX_RECONNECT_DELAY_MS = 30000
DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_AUTH_TEMPLATE = '{"type": "{{type}}", "token": "{{token}}"}'

SubscriptionCallback = Callable[[Any], None]


def _now_ms() -> float:
    return time.time() * 1000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class ConnectionHandlers:
    """Optional callbacks fired by :class:`ConnectionManager`."""

    on_open: Optional[Callable[[], None]] = None
    on_close: Optional[Callable[[SocketMessage], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_message: Optional[Callable[[Any], None]] = None
    on_state_change: Optional[Callable[[ConnectionState], None]] = None
    on_reconnect: Optional[Callable[[int], None]] = None


@dataclass
class Subscription:
    id: str
    channel: str
    callback: SubscriptionCallback
    filter: Optional[Callable[[Any], bool]] = None


@dataclass(order=True)
class QueuedMessage:
    """A message waiting for the connection. Orders by priority (high first), then age."""

    sort_key: tuple[int, int] = field(init=False, repr=False)
    priority: int = field(compare=False)
    seq: int = field(compare=False)
    data: Any = field(compare=False)

    def __post_init__(self) -> None:
        self.sort_key = (-self.priority, self.seq)


class ConnectionManager:
    """Manage one authenticated WebSocket connection.

    Args:
        config: Connection settings; can also be given later through
            :meth:`configure`.
        transport: Opens the sockets. Defaults to
            :class:`~handshake.client.websocket.AiohttpSocketTransport`.
        jitter: Returns the random reconnect offset in milliseconds.
            Defaults to ``random.uniform(0, 1000)``.
    """

    def __init__(
        self,
        config: Optional[WebSocketConfig] = None,
        transport: Optional[SocketTransport] = None,
        jitter: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config
        self._transport = transport or AiohttpSocketTransport()
        self._jitter = jitter or (lambda: random.uniform(0, 1000))
        self._handlers = ConnectionHandlers()

        self._state = ConnectionState.DISCONNECTED
        self._socket: Optional[SocketConnection] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._heartbeat: Optional[asyncio.Task[None]] = None
        self._pong_check: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

        self._reconnect_attempts = 0
        self._last_pong = 0.0
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._queue: list[QueuedMessage] = []
        self._queue_seq = 0
        self._queue_enabled = True
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._wildcard: list[Subscription] = []
        self._stats = ConnectionStats()

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    def configure(self, config: WebSocketConfig) -> None:
        self._config = config

    def set_handlers(self, **handlers: Optional[Callable[..., None]]) -> None:
        """Replace individual callbacks, e.g. ``set_handlers(on_message=print)``.

        Raises:
            TypeError: For an unknown handler name.
        """
        for name, callback in handlers.items():
            if not hasattr(self._handlers, name):
                raise TypeError(f"Unknown handler: {name}")
            setattr(self._handlers, name, callback)

    def set_queue_config(self, enabled: bool, max_size: Optional[int] = None) -> None:
        self._queue_enabled = enabled
        if max_size is not None and self._config is not None:
            self._config = self._config.model_copy(update={"max_queue_size": max_size})

    @property
    def config(self) -> Optional[WebSocketConfig]:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """``True`` when the socket is open and authenticated."""
        return (
            self._socket is not None
            and not self._socket.closed
            and self._state == ConnectionState.AUTHENTICATED
        )

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_request_count(self) -> int:
        return len(self._pending)

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def selected_protocol(self) -> Optional[str]:
        return self._socket.protocol if self._socket else None

    def get_stats(self) -> ConnectionStats:
        return self._stats.model_copy()

    def reset_stats(self) -> None:
        connected_at = self._stats.connected_at if self.is_connected else None
        self._stats = ConnectionStats(connected_at=connected_at)

    def clear_queue(self) -> None:
        self._queue.clear()

    # ------------------------------------------------------------------ #
    # URL and subprotocols
    # ------------------------------------------------------------------ #

    def build_url(self) -> str:
        """Return the URL to open, with the token appended for ``query-param`` auth."""
        config = self._require_config()
        url = config.url
        if config.auth_method == "query-param" and config.auth_token:
            name = config.token_param_name or "token"
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{name}={quote(config.auth_token, safe='')}"
        return url

    def get_subprotocols(self) -> list[str]:
        """Configured subprotocols, plus the token itself for ``subprotocol`` auth."""
        config = self._require_config()
        protocols = [p.strip() for p in (config.subprotocols or "").split(",") if p.strip()]
        if config.auth_method == "subprotocol" and config.auth_token:
            protocols.append(config.auth_token)
        return protocols

    def _require_config(self) -> WebSocketConfig:
        if self._config is None:
            raise ConfigurationError("WebSocket connection is not configured")
        return self._config

    # ------------------------------------------------------------------ #
    # Connection lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self) -> None:
        """Open and authenticate the connection.

        Does nothing when already connected.

        Raises:
            ConfigurationError: If :meth:`configure` was never called.
            TransportError: If the socket cannot be opened.
            ProtocolError: If the first-message authentication cannot be sent.
        """
        config = self._require_config()
        if self.is_connected:
            return

        self._set_state(ConnectionState.CONNECTING)
        try:
            socket = await self._transport.open(
                self.build_url(),
                self.get_subprotocols(),
                timeout=config.connect_timeout / 1000,
            )
        except TransportError as exc:
            self._set_state(ConnectionState.ERROR)
            self._fire("on_error", exc)
            raise

        self._socket = socket
        self._reconnect_attempts = 0
        self._stats.reconnect_count = 0
        self._stats.connected_at = _now_ms()
        self._stats.disconnected_at = None
        self._set_state(ConnectionState.CONNECTED)
        self._fire("on_open")
        self._reader = asyncio.create_task(self._read_loop(socket))

        if config.auth_method == "first-message":
            self._set_state(ConnectionState.AUTHENTICATING)
            if not await self._send_auth_message():
                await self._drop_socket(1008, "Authentication failed")
                self._set_state(ConnectionState.ERROR)
                raise ProtocolError("Authentication failed")

        self._set_state(ConnectionState.AUTHENTICATED)
        logger.info("WebSocket connected to %s", config.url)
        self._start_heartbeat()
        await self._flush_queue()

    async def disconnect(self, code: int = 1000, reason: str = "Client disconnect") -> None:
        """Close the connection for good.

        Cancels the heartbeat and any scheduled reconnect, resets the attempt
        counter and fails every pending :meth:`request`.
        """
        self._cancel(self._reconnect_task)
        self._reconnect_task = None
        self._reconnect_attempts = 0
        self._stop_heartbeat()

        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError("Connection closed"))
        self._pending.clear()

        await self._drop_socket(code, reason)
        self._stats.disconnected_at = _now_ms()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _drop_socket(self, code: int, reason: str) -> None:
        socket, self._socket = self._socket, None
        self._cancel(self._reader)
        self._reader = None
        if socket is not None and not socket.closed:
            try:
                await socket.close(code, reason)
            except TransportError as exc:
                logger.debug("Error while closing socket: %s", exc)

    async def _read_loop(self, socket: SocketConnection) -> None:
        while True:
            message = await socket.receive()
            if socket is not self._socket:
                return
            if message.kind == "close":
                self._socket = None
                self._reader = None
                self._on_closed(message)
                return
            if message.kind == "error":
                self._fire("on_error", TransportError(message.reason or "WebSocket error"))
                continue
            await self._handle_frame(message.data)

    def _on_closed(self, message: SocketMessage) -> None:
        logger.info(
            "WebSocket closed: %s (%s)",
            message.close_code,
            message.reason or get_close_reason(message.close_code or 1006),
        )
        self._stop_heartbeat()
        self._stats.disconnected_at = _now_ms()
        self._set_state(ConnectionState.DISCONNECTED)
        self._fire("on_close", message)

        config = self._config
        if config is not None and config.auto_reconnect and not message.was_clean:
            self._schedule_reconnect()

    # ------------------------------------------------------------------ #
    # Reconnection
    # ------------------------------------------------------------------ #

    def reconnect_delay(self, attempt: int) -> float:
        """Delay in ms before reconnect *attempt* (1-based)."""
        base = self._config.reconnect_delay if self._config else 1000
        return min(base * 2 ** (attempt - 1) + self._jitter(), MAX_RECONNECT_DELAY_MS)

    def _schedule_reconnect(self) -> None:
        limit = self._config.max_reconnect_attempts if self._config else 0
        if limit > 0 and self._reconnect_attempts >= limit:
            logger.warning("Giving up after %d reconnect attempts", self._reconnect_attempts)
            self._set_state(ConnectionState.ERROR)
            return

        self._reconnect_attempts += 1
        self._stats.reconnect_count = self._reconnect_attempts
        self._set_state(ConnectionState.RECONNECTING)
        self._fire("on_reconnect", self._reconnect_attempts)

        delay = self.reconnect_delay(self._reconnect_attempts)
        logger.debug("Reconnect attempt %d in %.0f ms", self._reconnect_attempts, delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay / 1000))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.connect()
        except (TransportError, ProtocolError) as exc:
            logger.warning("Reconnect attempt %d failed: %s", self._reconnect_attempts, exc)
            self._schedule_reconnect()

    # ------------------------------------------------------------------ #
    # Heartbeat
    # ------------------------------------------------------------------ #

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        config = self._require_config()
        if config.ping_interval <= 0:
            return
        self._last_pong = _monotonic_ms()
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(config))

    def _stop_heartbeat(self) -> None:
        self._cancel(self._heartbeat)
        self._cancel(self._pong_check)
        self._heartbeat = None
        self._pong_check = None

    async def _heartbeat_loop(self, config: WebSocketConfig) -> None:
        while True:
            await asyncio.sleep(config.ping_interval / 1000)
            if not self.is_connected:
                continue
            if self._pong_overdue(config):
                await self._pong_timed_out(config)
                return
            await self._transmit(
                {"type": "ping", "id": str(uuid.uuid4()), "timestamp": int(_now_ms())}
            )
            # One outstanding check at a time; a pong or ping from the peer cancels it.
            if self._pong_check is None or self._pong_check.done():
                self._pong_check = asyncio.create_task(self._check_pong(config))

    async def _check_pong(self, config: WebSocketConfig) -> None:
        await asyncio.sleep(config.pong_timeout / 1000)
        if self._pong_overdue(config):
            await self._pong_timed_out(config)

    def _pong_overdue(self, config: WebSocketConfig) -> bool:
        return _monotonic_ms() - self._last_pong > config.ping_interval + config.pong_timeout

    async def _pong_timed_out(self, config: WebSocketConfig) -> None:
        logger.warning("No pong within %d ms, closing", config.ping_interval + config.pong_timeout)
        self._stop_heartbeat()
        await self._drop_socket(1001, "Pong timeout")
        self._on_closed(
            SocketMessage(kind="close", close_code=1001, reason="Pong timeout", was_clean=False)
        )

    # ------------------------------------------------------------------ #
    # Incoming messages
    # ------------------------------------------------------------------ #

    async def _handle_frame(self, raw: Any) -> None:
        self._stats.messages_received += 1
        self._stats.bytes_received += len(raw) if isinstance(raw, (str, bytes)) else 0
        self._stats.last_message_at = _now_ms()

        data = raw
        if self._config is not None and self._config.message_format == "json" and isinstance(raw, str):
            try:
                data = json.loads(raw)
            except ValueError:
                data = raw

        if isinstance(data, dict):
            kind = data.get("type")
            if kind == "pong":
                self._last_pong = _monotonic_ms()
                self._cancel(self._pong_check)
                self._pong_check = None
                if isinstance(data.get("timestamp"), (int, float)):
                    self._stats.latency_ms = _now_ms() - data["timestamp"]
                return
            if kind == "ping":
                self._last_pong = _monotonic_ms()
                self._cancel(self._pong_check)
                self._pong_check = None
                await self._transmit(
                    {"type": "pong", "id": data.get("id"), "timestamp": data.get("timestamp")}
                )
                return

            request_id = data.get("id")
            if isinstance(request_id, str) and request_id in self._pending:
                future = self._pending.pop(request_id)
                if not future.done():
                    if kind == "error":
                        payload = data.get("payload")
                        message = payload.get("message") if isinstance(payload, dict) else None
                        future.set_exception(ProtocolError(message or "Request failed"))
                    else:
                        future.set_result(data.get("payload"))
                return

        self._fire("on_message", data)
        self._dispatch(data)

    def _dispatch(self, data: Any) -> None:
        channel = "*"
        if isinstance(data, dict):
            channel = str(data.get("channel") or data.get("type") or data.get("event") or "*")

        for sub in [*self._subscriptions.get(channel, []), *self._wildcard]:
            if sub.filter is not None and not sub.filter(data):
                continue
            try:
                sub.callback(data)
            except Exception:
                logger.exception("Subscription callback for %r failed", sub.channel)

    # ------------------------------------------------------------------ #
    # Outgoing messages
    # ------------------------------------------------------------------ #

    async def send(self, data: Any, priority: int = 0) -> bool:
        """Send *data*, or queue it until the connection is authenticated.

        Mappings and lists are sent as JSON text, bytes as a binary frame.

        Returns:
            ``True`` if the message went out now, ``False`` if it was queued
            or the send failed.
        """
        if not self.is_connected:
            if self._queue_enabled:
                self._enqueue(data, priority)
            return False
        return await self._transmit(data)

    async def _transmit(self, data: Any) -> bool:
        socket = self._socket
        if socket is None or socket.closed:
            return False
        payload = encode_message(data)
        try:
            await socket.send(payload)
        except TransportError as exc:
            logger.warning("WebSocket send failed: %s", exc)
            self._fire("on_error", exc)
            return False
        self._stats.messages_sent += 1
        self._stats.bytes_sent += len(payload)
        return True

    def _enqueue(self, data: Any, priority: int = 0) -> None:
        limit = self._config.max_queue_size if self._config else 1000
        if len(self._queue) >= limit:
            # Evict the newest of the lowest-priority messages.
            victim = max(self._queue)
            self._queue.remove(victim)
            logger.debug("Send queue full, dropped one message")
        self._queue_seq += 1
        self._queue.append(QueuedMessage(priority=priority, seq=self._queue_seq, data=data))

    async def _flush_queue(self) -> None:
        self._queue.sort()
        while self._queue and self.is_connected:
            item = self._queue.pop(0)
            if not await self._transmit(item.data):
                self._queue.insert(0, item)
                break

    async def _send_auth_message(self) -> bool:
        config = self._require_config()
        if not config.auth_token:
            return False
        template = config.auth_message_template or DEFAULT_AUTH_TEMPLATE
        # Substitute JSON-escaped values so tokens with quotes keep the template valid.
        text = template.replace(
            "{{type}}", json.dumps(config.auth_message_type or "authenticate")[1:-1]
        ).replace("{{token}}", json.dumps(config.auth_token)[1:-1])
        try:
            message = json.loads(text)
        except ValueError:
            logger.warning("Auth message template is not valid JSON")
            return False
        return await self._transmit(message)

    async def request(
        self,
        type: str,
        payload: Any = None,
        timeout: Optional[int] = None,
    ) -> Any:
        """Send ``{type, id, payload, timestamp}`` and wait for the reply with the same ``id``.

        Args:
            type: Message type.
            payload: Message payload.
            timeout: Milliseconds to wait (30 seconds by default).

        Returns:
            The reply's ``payload``.

        Raises:
            TransportError: If not connected, the send fails, the wait times
                out, or the connection is closed meanwhile.
            ProtocolError: If the reply has ``type == "error"``.
        """
        if not self.is_connected:
            raise TransportError("Not connected")

        request_id = str(uuid.uuid4())
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"type": type, "id": request_id, "payload": payload, "timestamp": int(_now_ms())}
        try:
            if not await self._transmit(message):
                raise TransportError("Failed to send request")
            return await asyncio.wait_for(
                future, (timeout or DEFAULT_REQUEST_TIMEOUT_MS) / 1000
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Request timeout: {type}", timeout=True) from exc
        finally:
            self._pending.pop(request_id, None)

    # ------------------------------------------------------------------ #
    # Pub/sub
    # ------------------------------------------------------------------ #

    def subscribe(
        self,
        channel: str,
        callback: SubscriptionCallback,
        filter: Optional[Callable[[Any], bool]] = None,
    ) -> str:
        """Call *callback* for messages on *channel* (``"*"`` for all messages).

        A message's channel is its ``channel``, ``type`` or ``event`` member.

        Returns:
            The subscription id for :meth:`unsubscribe`.
        """
        sub = Subscription(id=str(uuid.uuid4()), channel=channel, callback=callback, filter=filter)
        if channel == "*":
            self._wildcard.append(sub)
        else:
            self._subscriptions.setdefault(channel, []).append(sub)
        return sub.id

    def unsubscribe(self, subscription_id: str) -> bool:
        for index, sub in enumerate(self._wildcard):
            if sub.id == subscription_id:
                del self._wildcard[index]
                return True
        for channel, subs in self._subscriptions.items():
            for index, sub in enumerate(subs):
                if sub.id == subscription_id:
                    del subs[index]
                    if not subs:
                        del self._subscriptions[channel]
                    return True
        return False

    def unsubscribe_all(self) -> None:
        self._subscriptions.clear()
        self._wildcard.clear()

    async def publish(self, channel: str, payload: Any) -> bool:
        return await self.send(
            {"type": "publish", "channel": channel, "payload": payload, "timestamp": int(_now_ms())}
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug("WebSocket state: %s -> %s", self._state.value, state.value)
        self._state = state
        self._fire("on_state_change", state)

    def _fire(self, name: str, *args: Any) -> None:
        callback = getattr(self._handlers, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("WebSocket %s handler failed", name)

    @staticmethod
    def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()


def encode_message(data: Any) -> str | bytes:
    """Serialise an outgoing message: JSON for containers, raw for str/bytes."""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        return data
    if isinstance(data, (dict, list)):
        return json.dumps(data)
    return str(data)


CLOSE_REASONS = {
    1000: "Normal closure",
    1001: "Going away (page unload)",
    1002: "Protocol error",
    1003: "Unsupported data type",
    1005: "No status received",
    1006: "Abnormal closure (no close frame)",
    1007: "Invalid payload data",
    1008: "Policy violation",
    1009: "Message too big",
    1010: "Missing extension",
    1011: "Internal server error",
    1012: "Service restart",
    1013: "Try again later",
    1014: "Bad gateway",
    1015: "TLS handshake failed",
}


def get_close_reason(code: int) -> str:
    """Human-readable meaning of a WebSocket close code."""
    return CLOSE_REASONS.get(code, f"Unknown ({code})")
