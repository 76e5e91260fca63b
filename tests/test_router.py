"""Tests for handshake.router.ExecutionRouter."""

from __future__ import annotations

from typing import Any, Optional

import httpx
import pytest

from handshake.exceptions import TokenError
from handshake.models import (
    InjectedAuth,
    LogEntry,
    LogLevel,
    ProtocolAuthenticationFlow,
    ProtocolExecutionContext,
    ProtocolFieldDefinition,
    ProtocolModuleMetadata,
    RouterContext,
)
from handshake.protocols.base import ProtocolModule
from handshake.protocols.registry import ProtocolRegistry
from handshake.router import (
    CURL_TIMEOUT_MS,
    PROTOCOL_DISPLAY_NAMES,
    ExecutionRouter,
    get_supported_protocols,
    is_protocol_supported,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _HeaderModule(ProtocolModule):
    """Adds a static header taken from the ``token`` credential."""

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return ProtocolModuleMetadata(type="static-header", display_name="Static Header")

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [ProtocolFieldDefinition(id="token", label="Token", required=True)]

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        raise NotImplementedError

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        if not context.credentials.get("token"):
            raise TokenError("No token")
        return InjectedAuth(headers={"X-Token": context.credentials["token"]})


def _curl_context(command: str, **credentials: Any) -> RouterContext:
    return RouterContext(
        auth_type="curl-default",
        credentials={"curlCommand": command, **credentials},
        serial="HS-1",
    )


def _contexts(entries: list[LogEntry]) -> list[str]:
    return [e.context for e in entries]


# ---------------------------------------------------------------------------
# Protocol table
# ---------------------------------------------------------------------------


class TestSupportedProtocols:
    def test_display_names(self) -> None:
        protocols = get_supported_protocols()
        assert len(protocols) == len(PROTOCOL_DISPLAY_NAMES) == 11
        assert {"type": "curl-default", "name": "cURL Command"} in protocols
        assert {"type": "oauth2-pkce", "name": "OAuth 2.0 PKCE"} in protocols

    def test_is_supported(self) -> None:
        assert is_protocol_supported("soap-xml") is True
        assert is_protocol_supported("carrier-pigeon") is False

    def test_router_also_accepts_registered_types(self, recorder) -> None:
        registry = ProtocolRegistry()
        registry.register("static-header", _HeaderModule)
        _, transport = recorder()
        router = ExecutionRouter(registry=registry, transport=transport)

        assert router.is_protocol_supported("static-header") is True
        assert router.display_name("static-header") == "Static Header"
        assert router.display_name("graphql") == "GraphQL"
        assert router.display_name("nope") == "nope"


# ---------------------------------------------------------------------------
# Validation failures
# ---------------------------------------------------------------------------


class TestValidationFailures:
    @pytest.mark.asyncio
    async def test_no_protocol(self, recorder) -> None:
        handler, transport = recorder()
        result = await ExecutionRouter(transport=transport).execute_protocol(RouterContext())

        assert result.success is False
        assert result.error_code == "NO_PROTOCOL"
        assert result.error == "No protocol selected"
        assert _contexts(result.logs) == ["Execute.Start", "Execute.Validate"]
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_unknown_protocol(self, recorder) -> None:
        _, transport = recorder()
        result = await ExecutionRouter(transport=transport).execute_protocol(
            RouterContext(auth_type="carrier-pigeon")
        )

        assert result.error_code == "UNKNOWN_PROTOCOL"
        assert result.error == "Unknown protocol: carrier-pigeon"
        assert result.logs[-1].level == LogLevel.ERROR

    @pytest.mark.asyncio
    async def test_known_protocol_without_module(self, recorder) -> None:
        _, transport = recorder()
        result = await ExecutionRouter(transport=transport).execute_protocol(
            RouterContext(auth_type="soap-xml")
        )

        assert result.error_code == "EXECUTION_ERROR"
        assert result.error == "SOAP/XML execution is not implemented"
        assert "Execute.Prepare" in _contexts(result.logs)

    @pytest.mark.asyncio
    async def test_start_label_falls_back(self, recorder) -> None:
        _, transport = recorder()
        result = await ExecutionRouter(transport=transport).execute_protocol(
            RouterContext(handshake_id="abc")
        )
        assert result.logs[0].message == "Starting execution for abc"


# ---------------------------------------------------------------------------
# cURL execution
# ---------------------------------------------------------------------------


class TestCurlExecution:
    @pytest.mark.asyncio
    async def test_success(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(200, json={"id": 42}))
        router = ExecutionRouter(transport=transport)

        result = await router.execute_protocol(
            _curl_context(
                "curl https://api.example.com/users/{{id}} -H 'Authorization: Bearer {{token}}'",
                placeholderValues={"id": "42", "token": "abc"},
            )
        )

        assert result.success is True
        assert result.status_code == 200
        assert result.body == {"id": 42}
        assert result.error is None
        assert str(handler.last.url) == "https://api.example.com/users/42"
        assert handler.last.headers["authorization"] == "Bearer abc"
        assert _contexts(result.logs) == [
            "Execute.Start",
            "Execute.Protocol",
            "Execute.Prepare",
            "cURL.Parse",
            "cURL.Request",
            "cURL.Send",
            "cURL.Complete",
        ]
        assert result.logs[0].message == "Starting execution for HS-1"
        assert result.logs[-1].level == LogLevel.SUCCESS
        assert result.logs[-1].message == "200 OK"

    @pytest.mark.asyncio
    async def test_placeholder_values_as_json_string(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(200))

        await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://{{host}}/", placeholderValues='{"host": "h.example.com"}')
        )

        assert handler.last.url.host == "h.example.com"

    @pytest.mark.asyncio
    async def test_post_body_is_sent(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(201))

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://api.example.com/items -d '{\"a\": 1}'")
        )

        assert result.success is True
        assert handler.last.method == "POST"
        assert handler.last.content == b'{"a": 1}'

    @pytest.mark.asyncio
    async def test_get_body_is_dropped(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(200))

        await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl -X GET https://api.example.com/items -d 'ignored'")
        )

        assert handler.last.content == b""

    @pytest.mark.asyncio
    async def test_non_2xx(self, recorder) -> None:
        _, transport = recorder(httpx.Response(404, text="no such user"))

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://api.example.com/users/1")
        )

        assert result.success is False
        assert result.status_code == 404
        assert result.error == "HTTP 404 Not Found"
        assert result.error_code is None
        assert result.body == "no such user"
        assert result.logs[-1].commentary == "no such user"

    @pytest.mark.asyncio
    async def test_parse_error(self, recorder) -> None:
        handler, transport = recorder()

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl -X POST {{base}}/items")
        )

        assert result.error_code == "PARSE_ERROR"
        assert result.status_code == 0
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_invalid_placeholder_values(self, recorder) -> None:
        _, transport = recorder()

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://a.example.com", placeholderValues="[1, 2]")
        )

        assert result.error_code == "PARSE_ERROR"
        assert result.error == "Placeholder values must be a JSON object"

    @pytest.mark.asyncio
    async def test_timeout(self, recorder) -> None:
        handler, transport = recorder(httpx.ReadTimeout("slow"))

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://api.example.com/slow")
        )

        assert result.error_code == "TIMEOUT"
        error_entry = result.logs[-1]
        assert error_entry.context == "cURL.Error"
        assert error_entry.message == "Request timed out"
        assert handler.last.extensions["timeout"]["read"] == CURL_TIMEOUT_MS / 1000

    @pytest.mark.asyncio
    async def test_network_error(self, recorder) -> None:
        _, transport = recorder(httpx.ConnectError("refused"))

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://api.example.com/")
        )

        assert result.error_code == "NETWORK_ERROR"
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_curl_without_command_uses_module(self, recorder) -> None:
        _, transport = recorder()

        result = await ExecutionRouter(transport=transport).execute_protocol(
            RouterContext(auth_type="curl-default")
        )

        assert result.error_code == "NO_COMMAND"


# ---------------------------------------------------------------------------
# Log callback
# ---------------------------------------------------------------------------


class TestLogCallback:
    @pytest.mark.asyncio
    async def test_callback_receives_every_entry(self, recorder) -> None:
        _, transport = recorder(httpx.Response(200))
        seen: list[LogEntry] = []

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://api.example.com/"), on_log=seen.append
        )

        assert seen == result.logs
        assert all(entry.timestamp for entry in seen)

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort(self, recorder) -> None:
        _, transport = recorder(httpx.Response(200))

        def explode(entry: LogEntry) -> None:
            raise RuntimeError("display broke")

        result = await ExecutionRouter(transport=transport).execute_protocol(
            _curl_context("curl https://api.example.com/"), on_log=explode
        )

        assert result.success is True


# ---------------------------------------------------------------------------
# Module delegation
# ---------------------------------------------------------------------------


class TestModuleDelegation:
    def _router(self, transport) -> ExecutionRouter:
        registry = ProtocolRegistry()
        registry.register("static-header", _HeaderModule)
        return ExecutionRouter(registry=registry, transport=transport)

    @pytest.mark.asyncio
    async def test_delegates_with_merged_credentials(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(200, json={"ok": True}))

        result = await self._router(transport).execute_protocol(
            RouterContext(
                auth_type="static-header",
                credentials={"token": "t-1"},
                request=ProtocolExecutionContext(url="https://api.example.com/me"),
            )
        )

        assert result.success is True
        assert result.body == {"ok": True}
        assert handler.last.headers["x-token"] == "t-1"
        assert _contexts(result.logs)[-2:] == ["Execute.Send", "Execute.Complete"]

    @pytest.mark.asyncio
    async def test_request_credentials_override_context(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(200))

        await self._router(transport).execute_protocol(
            RouterContext(
                auth_type="static-header",
                credentials={"token": "outer"},
                request=ProtocolExecutionContext(
                    url="https://api.example.com/me", credentials={"token": "inner"}
                ),
            )
        )

        assert handler.last.headers["x-token"] == "inner"

    @pytest.mark.asyncio
    async def test_module_failure_is_reported(self, recorder) -> None:
        handler, transport = recorder()

        result = await self._router(transport).execute_protocol(
            RouterContext(
                auth_type="static-header",
                request=ProtocolExecutionContext(url="https://api.example.com/me"),
            )
        )

        assert result.success is False
        assert result.error == "No token"
        assert result.error_code == "TOKEN_ERROR"
        assert result.logs[-1].level == LogLevel.ERROR
        assert handler.requests == []


class _CountingModule(_HeaderModule):
    released = 0

    async def release(self) -> None:
        type(self).released += 1


class TestModuleRelease:
    @pytest.mark.asyncio
    async def test_websocket_is_disconnected_after_execution(
        self, recorder, socket_transport
    ) -> None:
        from handshake.plugins.websocket import WebSocketModule

        handler, transport = recorder(httpx.Response(200, text="pong"))
        registry = ProtocolRegistry()
        registry.register(
            "websocket", lambda t: WebSocketModule(t, socket_transport=socket_transport)
        )
        router = ExecutionRouter(registry=registry, transport=transport)

        result = await router.execute_protocol(
            RouterContext(
                auth_type="websocket",
                credentials={
                    "url": "wss://stream.example.com/ws",
                    "authMethod": "none",
                    "pingInterval": 50,
                },
                request=ProtocolExecutionContext(url="", body={"type": "hello"}),
            )
        )

        connection = socket_transport.last
        assert result.success is True
        assert connection.sent_json() == [{"type": "hello"}]
        assert connection.closed
        assert connection.close_args == (1000, "Client disconnect")

        # The shared HTTP transport is still open for the next execution.
        follow_up = await router.execute_protocol(_curl_context("curl https://api.example.com/ping"))
        assert follow_up.success is True
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_released_when_module_fails(self, recorder) -> None:
        _, transport = recorder()
        registry = ProtocolRegistry()
        registry.register("static-header", _CountingModule)
        _CountingModule.released = 0

        result = await ExecutionRouter(registry=registry, transport=transport).execute_protocol(
            RouterContext(
                auth_type="static-header",
                request=ProtocolExecutionContext(url="https://api.example.com/me"),
            )
        )

        assert result.error_code == "TOKEN_ERROR"
        assert _CountingModule.released == 1
