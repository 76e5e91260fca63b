"""WebSocket protocol module.

:class:`WebSocketModule` implements the ``websocket`` protocol on top of a
:class:`~handshake.plugins.websocket.connection.ConnectionManager`.
"Authenticating" means opening the socket with the configured auth method,
and "executing a request" means sending one message over it. There are no
tokens to refresh; revoking credentials simply closes the connection.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Optional

from handshake.client.response import elapsed_ms, failure_result
from handshake.client.transport import HttpTransport
from handshake.client.websocket import SocketTransport
from handshake.exceptions import HandshakeError
from handshake.models import (
    ConnectionState,
    FieldGroup,
    FieldOption,
    FieldType,
    FlowStepType,
    InjectedAuth,
    ModuleStatus,
    ProtocolAuthenticationFlow,
    ProtocolCapabilities,
    ProtocolExecutionContext,
    ProtocolExecutionResult,
    ProtocolFieldDefinition,
    ProtocolHealthCheckResult,
    ProtocolModuleMetadata,
    RevocationResult,
    ShowWhen,
    TokenStatus,
    WebSocketConfig,
)
from handshake.plugins.websocket.connection import ConnectionManager, get_close_reason
from handshake.protocols.base import ProtocolModule

logger = logging.getLogger(__name__)

_METADATA = ProtocolModuleMetadata(
    type="websocket",
    display_name="WebSocket",
    description=(
        "Real-time bidirectional communication with automatic reconnection "
        "and heartbeat."
    ),
    version="1.0.0",
    documentation_url="https://datatracker.ietf.org/doc/html/rfc6455",
    icon="zap",
    capabilities=ProtocolCapabilities(
        supports_redirect_flow=False,
        supports_token_refresh=False,
        supports_token_revocation=False,
        supports_scopes=False,
        supports_incremental_auth=False,
        supports_offline_access=False,
        supports_pkce=False,
        requires_server_side=False,
        browser_compatible=True,
        supports_request_signing=False,
        supports_auto_injection=True,
    ),
    use_cases=[
        "Real-time notifications",
        "Live chat applications",
        "Collaborative editing",
        "Live dashboards",
        "Gaming",
        "Financial tickers",
        "IoT device communication",
    ],
    example_platforms=[
        "Slack RTM API",
        "Discord Gateway",
        "Binance WebSocket",
        "Coinbase WebSocket",
        "Pusher",
        "Ably",
        "Socket.io servers",
    ],
)


def _int(value: Any, default: int) -> int:
    if isinstance(value, bool) or value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def config_from_credentials(credentials: dict[str, Any]) -> WebSocketConfig:
    """Build a :class:`WebSocketConfig` from the camelCase credential fields."""
    return WebSocketConfig(
        url=str(credentials.get("url") or ""),
        auth_method=credentials.get("authMethod") or "query-param",
        auth_token=credentials.get("authToken") or None,
        token_param_name=credentials.get("tokenParamName") or "token",
        auth_message_type=credentials.get("authMessageType") or "authenticate",
        auth_message_template=credentials.get("authMessageTemplate") or None,
        subprotocols=credentials.get("subprotocols") or None,
        message_format=credentials.get("messageFormat") or "json",
        ping_interval=_int(credentials.get("pingInterval"), 30000),
        pong_timeout=_int(credentials.get("pongTimeout"), 5000),
        auto_reconnect=credentials.get("autoReconnect") is not False,
        max_reconnect_attempts=_int(credentials.get("maxReconnectAttempts"), 10),
        reconnect_delay=_int(credentials.get("reconnectDelay"), 1000),
    )


class WebSocketModule(ProtocolModule):
    """Authenticated WebSocket connections.

    Args:
        transport: Unused HTTP transport, accepted so the registry can build
            every module the same way.
        socket_transport: Opens the sockets; see
            :class:`~handshake.plugins.websocket.connection.ConnectionManager`.
        manager: A pre-built connection manager (tests inject one).
    """

    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        socket_transport: Optional[SocketTransport] = None,
        manager: Optional[ConnectionManager] = None,
    ) -> None:
        super().__init__(transport)
        self._manager = manager or ConnectionManager(transport=socket_transport)

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return _METADATA

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    @property
    def connection_state(self) -> ConnectionState:
        return self._manager.state

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="url",
                label="WebSocket URL",
                type=FieldType.URL,
                required=True,
                description="The WebSocket server URL (ws:// or wss://).",
                placeholder="wss://api.example.com/ws",
                group="connection",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="authMethod",
                label="Authentication Method",
                type=FieldType.SELECT,
                required=True,
                default_value="query-param",
                options=[
                    FieldOption(value="query-param", label="Query Parameter (Most Common)"),
                    FieldOption(value="first-message", label="First Message"),
                    FieldOption(value="subprotocol", label="Subprotocol Header"),
                    FieldOption(value="none", label="No Authentication"),
                ],
                pattern=r"^(query-param|first-message|subprotocol|none)$",
                pattern_error="Unsupported authentication method",
                group="authentication",
                order=1,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="messageFormat",
                label="Message Format",
                type=FieldType.SELECT,
                default_value="json",
                options=[
                    FieldOption(value="json", label="JSON"),
                    FieldOption(value="text", label="Plain Text"),
                    FieldOption(value="binary", label="Binary"),
                ],
                pattern=r"^(json|text|binary)$",
                pattern_error="Unsupported message format",
                group="messages",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="authToken",
                label="Auth Token",
                type=FieldType.SECRET,
                sensitive=True,
                description="Token used to authenticate the connection.",
                show_when=ShowWhen(field="authMethod", value="none", operator="not_equals"),
                group="authentication",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="tokenParamName",
                label="Token Parameter Name",
                type=FieldType.TEXT,
                default_value="token",
                placeholder="token",
                show_when=ShowWhen(field="authMethod", value="query-param"),
                group="authentication",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="authMessageType",
                label="Auth Message Type",
                type=FieldType.TEXT,
                default_value="authenticate",
                show_when=ShowWhen(field="authMethod", value="first-message"),
                group="authentication",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="authMessageTemplate",
                label="Auth Message Template",
                type=FieldType.TEXTAREA,
                description="JSON template with {{type}} and {{token}} placeholders.",
                placeholder='{"type": "{{type}}", "token": "{{token}}"}',
                show_when=ShowWhen(field="authMethod", value="first-message"),
                group="authentication",
                order=5,
            ),
            ProtocolFieldDefinition(
                id="subprotocols",
                label="Subprotocols",
                type=FieldType.TEXT,
                description="Comma-separated list of subprotocols.",
                placeholder="graphql-ws, v1.json",
                group="connection",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="pingInterval",
                label="Ping Interval (ms)",
                type=FieldType.NUMBER,
                default_value=30000,
                description="Heartbeat interval; 0 disables the heartbeat.",
                min=0,
                max=300000,
                group="keepalive",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="pongTimeout",
                label="Pong Timeout (ms)",
                type=FieldType.NUMBER,
                default_value=5000,
                min=1000,
                max=60000,
                group="keepalive",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="autoReconnect",
                label="Auto Reconnect",
                type=FieldType.CHECKBOX,
                default_value=True,
                group="reconnection",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="maxReconnectAttempts",
                label="Max Reconnect Attempts",
                type=FieldType.NUMBER,
                default_value=10,
                description="0 retries forever.",
                min=0,
                max=100,
                show_when=ShowWhen(field="autoReconnect", value=True),
                group="reconnection",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="reconnectDelay",
                label="Reconnect Delay (ms)",
                type=FieldType.NUMBER,
                default_value=1000,
                description="Base delay, doubled on every attempt.",
                min=100,
                max=30000,
                show_when=ShowWhen(field="autoReconnect", value=True),
                group="reconnection",
                order=3,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(id="connection", label="Connection", description="WebSocket server details."),
            FieldGroup(id="authentication", label="Authentication"),
            FieldGroup(id="messages", label="Messages"),
            FieldGroup(
                id="keepalive",
                label="Keep-Alive",
                collapsible=True,
                default_collapsed=True,
            ),
            FieldGroup(
                id="reconnection",
                label="Reconnection",
                collapsible=True,
                default_collapsed=True,
            ),
        ]

    # ------------------------------------------------------------------ #
    # Connection
    # ------------------------------------------------------------------ #

    async def connect(self, credentials: dict[str, Any]) -> Optional[str]:
        """Configure the manager from *credentials* and connect.

        Returns:
            ``None`` on success, otherwise the error message.
        """
        self._manager.configure(config_from_credentials(credentials))
        try:
            await self._manager.connect()
        except HandshakeError as exc:
            logger.debug("WebSocket connect failed: %s", exc)
            self._status = ModuleStatus.ERROR
            return str(exc)
        self._status = ModuleStatus.AUTHENTICATED
        return None

    async def disconnect(self) -> None:
        await self._manager.disconnect()
        self._status = ModuleStatus.UNINITIALIZED

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        validation = self.validate_credentials(credentials)
        if not validation.valid:
            return self._error_step(
                1, 1, "Configuration Error",
                "Please fix the configuration errors.", validation.error_summary(),
            )

        error = await self.connect(credentials)
        if error is not None:
            return self._error_step(
                1, 1, "Connection Failed", "Could not connect to WebSocket server.", error
            )

        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=1,
            type=FlowStepType.COMPLETE,
            title="WebSocket Connected",
            description="Successfully connected to WebSocket server.",
            data={
                "url": credentials.get("url"),
                "auth_method": credentials.get("authMethod") or "query-param",
                "state": self._manager.state.value,
            },
        )

    async def revoke_tokens(self, credentials: dict[str, Any]) -> RevocationResult:
        await self.disconnect()
        return RevocationResult(success=True)

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        # Authentication happens while connecting.
        return InjectedAuth()

    async def execute_request(self, context: ProtocolExecutionContext) -> ProtocolExecutionResult:
        """Send ``context.body`` as one message, connecting first if needed."""
        started = time.perf_counter()
        if not self._manager.is_connected:
            error = await self.connect(context.credentials)
            if error is not None:
                return failure_result(error, "NOT_CONNECTED", started)

        sent = await self._manager.send(context.body)
        return ProtocolExecutionResult(
            success=sent,
            status_code=200 if sent else 500,
            body={"sent": sent, "connection_state": self._manager.state.value},
            duration_ms=elapsed_ms(started),
            error=None if sent else "Failed to send message",
        )

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        started = time.perf_counter()
        if self._manager.is_connected:
            return ProtocolHealthCheckResult(
                healthy=True,
                message="WebSocket connected",
                token_status=TokenStatus.VALID,
                token_expires_in=-1,
                details={
                    "connection_state": self._manager.state.value,
                    "reconnect_attempts": self._manager.reconnect_attempts,
                },
            )

        error = await self.connect(credentials)
        latency = elapsed_ms(started)
        if error is None:
            return ProtocolHealthCheckResult(
                healthy=True,
                message="WebSocket connection established",
                latency_ms=latency,
                token_status=TokenStatus.VALID,
                token_expires_in=-1,
                details={"connection_state": self._manager.state.value},
            )
        return ProtocolHealthCheckResult(
            healthy=False,
            message=error or "Connection failed",
            latency_ms=latency,
            token_status=TokenStatus.INVALID,
            token_expires_in=0,
            details={"connection_state": self._manager.state.value},
        )

    async def release(self) -> None:
        await self._manager.disconnect()

    # ------------------------------------------------------------------ #
    # Message helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def create_message(
        type: str, payload: Any = None, id: Optional[str] = None
    ) -> dict[str, Any]:
        """Build a ``{type, payload, id, timestamp}`` envelope."""
        return {
            "type": type,
            "payload": payload,
            "id": id or str(uuid.uuid4()),
            "timestamp": int(time.time() * 1000),
        }

    @staticmethod
    def parse_message(data: Any) -> Optional[dict[str, Any]]:
        """Decode a JSON text frame; mappings pass through, anything else is ``None``."""
        if isinstance(data, (str, bytes)):
            try:
                parsed = json.loads(data)
            except ValueError:
                return None
            return parsed if isinstance(parsed, dict) else None
        if isinstance(data, dict):
            return data
        return None

    @staticmethod
    def get_close_reason(code: int) -> str:
        return get_close_reason(code)
