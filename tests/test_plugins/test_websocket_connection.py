"""Tests for handshake.plugins.websocket.connection.ConnectionManager."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from handshake.exceptions import ConfigurationError, ProtocolError, TransportError
from handshake.models import ConnectionState, WebSocketConfig
from handshake.plugins.websocket import ConnectionManager, get_close_reason
from handshake.plugins.websocket.connection import encode_message


URL = "wss://stream.example.com/ws"


def _config(**overrides: Any) -> WebSocketConfig:
    values: dict[str, Any] = {
        "url": URL,
        "auth_method": "none",
        "ping_interval": 0,
        "auto_reconnect": False,
    }
    values.update(overrides)
    return WebSocketConfig(**values)


def _make_manager(socket_transport, **overrides: Any) -> ConnectionManager:
    return ConnectionManager(_config(**overrides), transport=socket_transport, jitter=lambda: 0)


# ---------------------------------------------------------------------------
# URL and subprotocols
# ---------------------------------------------------------------------------


class TestBuildUrl:
    @pytest.mark.parametrize(
        "overrides, expected",
        [
            ({}, URL),
            ({"auth_method": "query-param", "auth_token": "abc"}, f"{URL}?token=abc"),
            ({"auth_method": "query-param", "auth_token": "a b/c"}, f"{URL}?token=a%20b%2Fc"),
            (
                {"auth_method": "query-param", "auth_token": "abc", "token_param_name": "access_token"},
                f"{URL}?access_token=abc",
            ),
            (
                {"url": f"{URL}?v=2", "auth_method": "query-param", "auth_token": "abc"},
                f"{URL}?v=2&token=abc",
            ),
            ({"auth_method": "query-param"}, URL),
            ({"auth_method": "first-message", "auth_token": "abc"}, URL),
        ],
    )
    def test_build_url(self, socket_transport, overrides: dict, expected: str) -> None:
        assert _make_manager(socket_transport, **overrides).build_url() == expected

    def test_subprotocols(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, subprotocols="graphql-ws, v2.chat ,")
        assert manager.get_subprotocols() == ["graphql-ws", "v2.chat"]

    def test_subprotocol_auth_appends_token(self, socket_transport) -> None:
        manager = _make_manager(
            socket_transport, subprotocols="v1", auth_method="subprotocol", auth_token="tok"
        )
        assert manager.get_subprotocols() == ["v1", "tok"]

    def test_not_configured(self, socket_transport) -> None:
        manager = ConnectionManager(transport=socket_transport)
        with pytest.raises(ConfigurationError, match="not configured"):
            manager.build_url()


# ---------------------------------------------------------------------------
# Connecting
# ---------------------------------------------------------------------------


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_without_auth(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, connect_timeout=5000)
        states: list[ConnectionState] = []
        opened: list[bool] = []
        manager.set_handlers(on_state_change=states.append, on_open=lambda: opened.append(True))

        await manager.connect()

        assert manager.is_connected is True
        assert manager.state == ConnectionState.AUTHENTICATED
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.AUTHENTICATED,
        ]
        assert opened == [True]
        assert socket_transport.opened == [(URL, [], 5.0)]
        assert manager.get_stats().connected_at is not None
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()
        await manager.connect()
        assert len(socket_transport.opened) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_query_param_auth(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, auth_method="query-param", auth_token="t-1")
        await manager.connect()
        assert socket_transport.opened[0][0] == f"{URL}?token=t-1"
        assert socket_transport.last.sent == []
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_subprotocol_auth(self, socket_transport) -> None:
        socket_transport.selected_protocol = "tok"
        manager = _make_manager(socket_transport, auth_method="subprotocol", auth_token="tok")

        await manager.connect()

        assert socket_transport.opened[0][1] == ["tok"]
        assert manager.selected_protocol == "tok"
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_first_message_auth(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, auth_method="first-message", auth_token="t-1")
        states: list[ConnectionState] = []
        manager.set_handlers(on_state_change=states.append)

        await manager.connect()

        assert socket_transport.last.sent_json() == [{"type": "authenticate", "token": "t-1"}]
        assert ConnectionState.AUTHENTICATING in states
        assert manager.state == ConnectionState.AUTHENTICATED
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_first_message_template_escapes_token(self, socket_transport) -> None:
        manager = _make_manager(
            socket_transport,
            auth_method="first-message",
            auth_token='to"ken',
            auth_message_type="auth",
            auth_message_template='{"op": "{{type}}", "args": {"key": "{{token}}"}}',
        )

        await manager.connect()

        assert socket_transport.last.sent_json() == [{"op": "auth", "args": {"key": 'to"ken'}}]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_first_message_without_token(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, auth_method="first-message")

        with pytest.raises(ProtocolError, match="Authentication failed"):
            await manager.connect()

        assert manager.state == ConnectionState.ERROR
        assert manager.is_connected is False
        assert socket_transport.last.close_args == (1008, "Authentication failed")

    @pytest.mark.asyncio
    async def test_invalid_template(self, socket_transport) -> None:
        manager = _make_manager(
            socket_transport,
            auth_method="first-message",
            auth_token="t",
            auth_message_template="not json {{token}}",
        )
        with pytest.raises(ProtocolError):
            await manager.connect()

    @pytest.mark.asyncio
    async def test_open_failure(self, socket_transport) -> None:
        socket_transport.failures.append(TransportError("Connection timeout", timeout=True))
        manager = _make_manager(socket_transport)
        errors: list[Exception] = []
        manager.set_handlers(on_error=errors.append)

        with pytest.raises(TransportError) as exc_info:
            await manager.connect()

        assert exc_info.value.code == "TIMEOUT"
        assert manager.state == ConnectionState.ERROR
        assert errors == [exc_info.value]

    @pytest.mark.asyncio
    async def test_connect_requires_config(self, socket_transport) -> None:
        with pytest.raises(ConfigurationError):
            await ConnectionManager(transport=socket_transport).connect()

    def test_unknown_handler(self, socket_transport) -> None:
        with pytest.raises(TypeError, match="Unknown handler: on_banana"):
            _make_manager(socket_transport).set_handlers(on_banana=print)


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, auto_reconnect=True)
        await manager.connect()
        connection = socket_transport.last

        await manager.disconnect()

        assert connection.close_args == (1000, "Client disconnect")
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.is_connected is False
        assert manager.get_stats().disconnected_at is not None
        assert len(socket_transport.opened) == 1

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_requests(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()

        pending = asyncio.create_task(manager.request("slow", timeout=5000))
        await settle(until=lambda: manager.pending_request_count == 1)
        await manager.disconnect()

        with pytest.raises(TransportError, match="Connection closed"):
            await pending
        assert manager.pending_request_count == 0


# ---------------------------------------------------------------------------
# Reconnection
# ---------------------------------------------------------------------------


class TestReconnect:
    def test_delay_doubles_and_caps(self, socket_transport) -> None:
        manager = ConnectionManager(
            _config(reconnect_delay=1000), transport=socket_transport, jitter=lambda: 250
        )
        assert manager.reconnect_delay(1) == 1250
        assert manager.reconnect_delay(2) == 2250
        assert manager.reconnect_delay(3) == 4250
        assert manager.reconnect_delay(10) == 30000

    def test_default_jitter_is_bounded(self, socket_transport) -> None:
        manager = ConnectionManager(_config(reconnect_delay=100), transport=socket_transport)
        for _ in range(20):
            assert 100 <= manager.reconnect_delay(1) <= 1100

    @pytest.mark.asyncio
    async def test_unclean_close_reconnects(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport, auto_reconnect=True, reconnect_delay=1)
        attempts: list[int] = []
        closes: list[Any] = []
        manager.set_handlers(on_reconnect=attempts.append, on_close=closes.append)
        await manager.connect()

        socket_transport.last.server_close(1006)
        await settle(until=lambda: len(socket_transport.connections) == 2 and manager.is_connected)

        assert attempts == [1]
        assert closes[0].close_code == 1006
        assert manager.reconnect_attempts == 0
        assert manager.state == ConnectionState.AUTHENTICATED
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_clean_close_does_not_reconnect(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport, auto_reconnect=True, reconnect_delay=1)
        await manager.connect()

        socket_transport.last.server_close(1000, "bye", was_clean=True)
        await settle(until=lambda: manager.state == ConnectionState.DISCONNECTED)
        await asyncio.sleep(0.02)

        assert len(socket_transport.opened) == 1
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_auto_reconnect_disabled(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport, reconnect_delay=1)
        await manager.connect()

        socket_transport.last.server_close(1006)
        await settle(until=lambda: manager.state == ConnectionState.DISCONNECTED)
        await asyncio.sleep(0.02)

        assert len(socket_transport.opened) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, socket_transport, settle) -> None:
        manager = _make_manager(
            socket_transport, auto_reconnect=True, reconnect_delay=1, max_reconnect_attempts=2
        )
        await manager.connect()
        socket_transport.failures.extend([TransportError("refused"), TransportError("refused")])

        socket_transport.last.server_close(1006)
        await settle(
            until=lambda: len(socket_transport.opened) == 3
            and manager.state == ConnectionState.ERROR
        )

        assert manager.reconnect_attempts == 2
        assert manager.get_stats().reconnect_count == 2
        await manager.disconnect()


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_sends_ping(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport, ping_interval=10, pong_timeout=1000)
        await manager.connect()
        connection = socket_transport.last

        await settle(until=lambda: connection.sent)

        ping = connection.sent_json()[0]
        assert ping["type"] == "ping"
        assert isinstance(ping["id"], str)
        assert isinstance(ping["timestamp"], int)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_pong_timeout_closes_and_reconnects(
        self, socket_transport, settle, monkeypatch
    ) -> None:
        clock = {"now": 0.0}
        monkeypatch.setattr(
            "handshake.plugins.websocket.connection._monotonic_ms", lambda: clock["now"]
        )
        manager = _make_manager(
            socket_transport,
            ping_interval=10,
            pong_timeout=10,
            auto_reconnect=True,
            reconnect_delay=1,
        )
        await manager.connect()
        first = socket_transport.last
        clock["now"] = 60_000.0

        await settle(until=lambda: first.close_args is not None)

        assert first.close_args == (1001, "Pong timeout")
        await settle(until=lambda: len(socket_transport.connections) == 2)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_pong_timeout_longer_than_ping_interval(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport, ping_interval=20, pong_timeout=30)
        await manager.connect()
        connection = socket_transport.last

        await settle(until=lambda: connection.close_args is not None)

        assert connection.close_args == (1001, "Pong timeout")
        assert len(connection.sent_json()) >= 2
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_pongs_keep_connection_open(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, ping_interval=10, pong_timeout=30)
        await manager.connect()
        connection = socket_transport.last

        for _ in range(15):
            connection.feed({"type": "pong"})
            await asyncio.sleep(0.01)

        assert connection.close_args is None
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_pong_records_latency(self, socket_transport, settle, monkeypatch) -> None:
        monkeypatch.setattr("handshake.plugins.websocket.connection._now_ms", lambda: 5_000.0)
        manager = _make_manager(socket_transport)
        await manager.connect()

        socket_transport.last.feed({"type": "pong", "timestamp": 4_750})
        await settle(until=lambda: manager.get_stats().latency_ms is not None)

        assert manager.get_stats().latency_ms == 250.0
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_answers_server_ping(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        received: list[Any] = []
        manager.set_handlers(on_message=received.append)
        await manager.connect()
        connection = socket_transport.last

        connection.feed({"type": "ping", "id": "p-1", "timestamp": 123})
        await settle(until=lambda: connection.sent)

        assert connection.sent_json() == [{"type": "pong", "id": "p-1", "timestamp": 123}]
        assert received == []
        await manager.disconnect()


# ---------------------------------------------------------------------------
# Sending and queueing
# ---------------------------------------------------------------------------


class TestSend:
    @pytest.mark.asyncio
    async def test_send_when_connected(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()

        assert await manager.send({"op": "hello"}) is True
        assert await manager.send(b"\x00\x01") is True

        assert socket_transport.last.sent == ['{"op": "hello"}', b"\x00\x01"]
        stats = manager.get_stats()
        assert stats.messages_sent == 2
        assert stats.bytes_sent == len('{"op": "hello"}') + 2
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_send_failure(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        errors: list[Exception] = []
        manager.set_handlers(on_error=errors.append)
        await manager.connect()
        socket_transport.last.fail_sends = True

        assert await manager.send("x") is False
        assert isinstance(errors[0], TransportError)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_queued_until_connected(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)

        assert await manager.send("low") is False
        assert await manager.send("high", priority=10) is False
        assert await manager.send("low-2") is False
        assert manager.queue_size == 3

        await manager.connect()

        assert socket_transport.last.sent == ["high", "low", "low-2"]
        assert manager.queue_size == 0
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_queue_after_auth_message(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, auth_method="first-message", auth_token="t")
        await manager.send({"op": "subscribe"})

        await manager.connect()

        assert socket_transport.last.sent_json() == [
            {"type": "authenticate", "token": "t"},
            {"op": "subscribe"},
        ]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_full_queue_drops_newest_lowest_priority(self, socket_transport) -> None:
        manager = _make_manager(socket_transport, max_queue_size=2)

        await manager.send("a")
        await manager.send("b")
        await manager.send("urgent", priority=5)
        await manager.send("c")

        await manager.connect()
        assert socket_transport.last.sent == ["urgent", "c"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_queue_disabled(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        manager.set_queue_config(False)

        assert await manager.send("x") is False
        assert manager.queue_size == 0

    @pytest.mark.asyncio
    async def test_clear_queue(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        await manager.send("x")
        manager.clear_queue()
        assert manager.queue_size == 0

    @pytest.mark.asyncio
    async def test_publish(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()

        assert await manager.publish("room-1", {"text": "hi"}) is True

        message = socket_transport.last.sent_json()[0]
        assert message["type"] == "publish"
        assert message["channel"] == "room-1"
        assert message["payload"] == {"text": "hi"}
        await manager.disconnect()


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


class TestRequest:
    @pytest.mark.asyncio
    async def test_correlates_reply(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        received: list[Any] = []
        manager.set_handlers(on_message=received.append)
        await manager.connect()
        connection = socket_transport.last

        task = asyncio.create_task(manager.request("getUser", {"id": 1}, timeout=2000))
        await settle(until=lambda: connection.sent)
        sent = connection.sent_json()[0]
        connection.feed({"type": "getUser", "id": sent["id"], "payload": {"name": "Ada"}})

        assert await task == {"name": "Ada"}
        assert sent["type"] == "getUser"
        assert sent["payload"] == {"id": 1}
        assert received == []
        assert manager.pending_request_count == 0
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_error_reply(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()
        connection = socket_transport.last

        task = asyncio.create_task(manager.request("getUser", timeout=2000))
        await settle(until=lambda: connection.sent)
        request_id = connection.sent_json()[0]["id"]
        connection.feed({"type": "error", "id": request_id, "payload": {"message": "No such user"}})

        with pytest.raises(ProtocolError, match="No such user"):
            await task
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_timeout(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()

        with pytest.raises(TransportError, match="Request timeout: getUser") as exc_info:
            await manager.request("getUser", timeout=10)

        assert exc_info.value.timeout is True
        assert manager.pending_request_count == 0
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_not_connected(self, socket_transport) -> None:
        with pytest.raises(TransportError, match="Not connected"):
            await _make_manager(socket_transport).request("x")


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_routes_by_channel_type_and_event(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        trades: list[Any] = []
        updates: list[Any] = []
        everything: list[Any] = []
        manager.subscribe("trades", trades.append)
        manager.subscribe("update", updates.append)
        manager.subscribe("*", everything.append)
        await manager.connect()
        connection = socket_transport.last

        connection.feed({"channel": "trades", "price": 1})
        connection.feed({"type": "update", "n": 2})
        connection.feed({"event": "trades", "price": 3})
        connection.feed("plain text")
        await settle(until=lambda: len(everything) == 4)

        assert trades == [{"channel": "trades", "price": 1}, {"event": "trades", "price": 3}]
        assert updates == [{"type": "update", "n": 2}]
        assert everything[-1] == "plain text"
        assert manager.get_stats().messages_received == 4
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_filter(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        big: list[Any] = []
        seen: list[Any] = []
        manager.subscribe("trades", big.append, filter=lambda m: m["size"] > 10)
        manager.subscribe("*", seen.append)
        await manager.connect()

        socket_transport.last.feed({"channel": "trades", "size": 5})
        socket_transport.last.feed({"channel": "trades", "size": 50})
        await settle(until=lambda: len(seen) == 2)

        assert big == [{"channel": "trades", "size": 50}]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        seen: list[Any] = []

        def explode(message: Any) -> None:
            raise RuntimeError("bad subscriber")

        manager.subscribe("news", explode)
        manager.subscribe("news", seen.append)
        await manager.connect()

        socket_transport.last.feed({"channel": "news"})
        await settle(until=lambda: seen)
        assert seen == [{"channel": "news"}]
        await manager.disconnect()

    def test_unsubscribe(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        first = manager.subscribe("news", print)
        wildcard = manager.subscribe("*", print)

        assert manager.unsubscribe(first) is True
        assert manager.unsubscribe(first) is False
        assert manager.unsubscribe(wildcard) is True
        assert manager.unsubscribe("missing") is False

    @pytest.mark.asyncio
    async def test_unsubscribe_all(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport)
        seen: list[Any] = []
        received: list[Any] = []
        manager.subscribe("*", seen.append)
        manager.set_handlers(on_message=received.append)
        manager.unsubscribe_all()
        await manager.connect()

        socket_transport.last.feed({"type": "x"})
        await settle(until=lambda: received)

        assert seen == []
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_text_format_is_not_decoded(self, socket_transport, settle) -> None:
        manager = _make_manager(socket_transport, message_format="text")
        seen: list[Any] = []
        manager.subscribe("*", seen.append)
        await manager.connect()

        socket_transport.last.feed('{"type": "x"}')
        await settle(until=lambda: seen)

        assert seen == ['{"type": "x"}']
        await manager.disconnect()


# ---------------------------------------------------------------------------
# Stats and helpers
# ---------------------------------------------------------------------------


class TestStats:
    def test_stats_are_copies(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        stats = manager.get_stats()
        stats.messages_sent = 99
        assert manager.get_stats().messages_sent == 0

    @pytest.mark.asyncio
    async def test_reset_keeps_connected_at(self, socket_transport) -> None:
        manager = _make_manager(socket_transport)
        await manager.connect()
        await manager.send("x")
        connected_at = manager.get_stats().connected_at

        manager.reset_stats()

        assert manager.get_stats().messages_sent == 0
        assert manager.get_stats().connected_at == connected_at
        await manager.disconnect()


class TestHelpers:
    @pytest.mark.parametrize(
        "data, expected",
        [
            ({"a": 1}, '{"a": 1}'),
            ([1, 2], "[1, 2]"),
            ("raw", "raw"),
            (b"\x01", b"\x01"),
            (bytearray(b"\x02"), b"\x02"),
            (42, "42"),
        ],
    )
    def test_encode_message(self, data: Any, expected: Any) -> None:
        assert encode_message(data) == expected

    @pytest.mark.parametrize(
        "code, reason",
        [
            (1000, "Normal closure"),
            (1006, "Abnormal closure (no close frame)"),
            (1008, "Policy violation"),
            (4001, "Unknown (4001)"),
        ],
    )
    def test_close_reason(self, code: int, reason: str) -> None:
        assert get_close_reason(code) == reason
