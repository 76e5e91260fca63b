"""Canonical Pydantic models shared across all handshake modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into three groups:

**Protocol contract models** -- describe what a protocol module needs and what
it produces:
    :class:`FieldType`, :class:`ShowWhen`, :class:`FieldOption`,
    :class:`ProtocolFieldDefinition`, :class:`FieldGroup`,
    :class:`ProtocolCapabilities`, :class:`ProtocolModuleMetadata`,
    :class:`ValidationResult`, :class:`ProtocolAuthenticationFlow`,
    :class:`InjectedAuth`, :class:`ProtocolExecutionContext`,
    :class:`ProtocolExecutionResult`, :class:`ProtocolTokenRefreshResult`,
    :class:`RevocationResult`, :class:`IntrospectionResult`, and
    :class:`ProtocolHealthCheckResult`.

**Router and WebSocket models** -- :class:`ParsedCurlCommand`,
:class:`LogEntry`, :class:`RouterContext`,
:class:`RouterResult`, :class:`ConnectionState`,
:class:`WebSocketConfig`, and :class:`ConnectionStats`.

**Configuration models** -- serialised as JSON in the user's config directory:
    :class:`RequestConfig`, :class:`OutputConfig`, :class:`LoggingConfig`,
    :class:`GlobalConfig`, and :class:`CredentialProfile`.

Credentials themselves are deliberately *not* a model: they are a flat
``dict[str, Any]`` keyed by the camelCase field ids each module declares
(``clientId``, ``accessToken``, ``tokenExpiresAt``...), which is the only shape
the persistence layer ever sees.
"""

from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


Credentials = dict[str, Any]
"""A flat credential mapping keyed by protocol field id."""


# --- Field definitions ---


class FieldType(str, enum.Enum):
    """Input types a :class:`ProtocolFieldDefinition` can declare."""

    TEXT = "text"
    PASSWORD = "password"
    URL = "url"
    EMAIL = "email"
    NUMBER = "number"
    SELECT = "select"
    MULTISELECT = "multiselect"
    TEXTAREA = "textarea"
    JSON = "json"
    SECRET = "secret"
    SCOPES = "scopes"
    CHECKBOX = "checkbox"
    HIDDEN = "hidden"


class ShowWhen(BaseModel):
    """Visibility condition: the field is only shown (and validated) when another field matches."""

    field: str
    value: Any = None
    operator: str = Field(
        default="equals", description="equals, not_equals, contains, exists"
    )


class FieldOption(BaseModel):
    """One choice of a ``select`` / ``multiselect`` field."""

    value: str
    label: str


class ProtocolFieldDefinition(BaseModel):
    """Declares one configuration field a protocol module needs.

    Collections of these are owned by each module and consumed by forms and
    by :meth:`~handshake.protocols.base.ProtocolModule.validate_credentials`;
    the core never mutates them.

    Example::

        ProtocolFieldDefinition(
            id="clientId",
            label="Client ID",
            type=FieldType.TEXT,
            required=True,
            pattern=r"^[\\w.-]+$",
        )
    """

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: Optional[str] = None
    placeholder: Optional[str] = None
    default_value: Any = None
    options: list[FieldOption] = Field(default_factory=list)
    pattern: Optional[str] = Field(
        default=None, description="Regex the value must match"
    )
    pattern_error: Optional[str] = None
    min: Optional[float] = Field(
        default=None, description="Minimum length (strings) or value (numbers)"
    )
    max: Optional[float] = Field(
        default=None, description="Maximum length (strings) or value (numbers)"
    )
    sensitive: bool = False
    show_when: Optional[ShowWhen] = None
    group: Optional[str] = None
    order: int = 0


class FieldGroup(BaseModel):
    """A named section that groups related fields."""

    id: str
    label: str
    description: Optional[str] = None
    collapsible: bool = False
    default_collapsed: bool = False


# --- Metadata ---


class ProtocolCapabilities(BaseModel):
    """Feature flags a protocol module advertises."""

    model_config = ConfigDict(frozen=True)

    supports_redirect_flow: bool = False
    supports_token_refresh: bool = False
    supports_token_revocation: bool = False
    supports_scopes: bool = False
    supports_incremental_auth: bool = False
    supports_offline_access: bool = False
    supports_pkce: bool = False
    requires_server_side: bool = False
    browser_compatible: bool = True
    supports_request_signing: bool = False
    supports_auto_injection: bool = True


class ProtocolModuleMetadata(BaseModel):
    """Static descriptor of a protocol module. Created once per module instance."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(description="Protocol identifier, e.g. oauth2-pkce")
    display_name: str
    description: str = ""
    version: str = "1.0.0"
    author: str = "handshake"
    documentation_url: Optional[str] = None
    icon: Optional[str] = None
    capabilities: ProtocolCapabilities = Field(default_factory=ProtocolCapabilities)
    use_cases: list[str] = Field(default_factory=list)
    example_platforms: list[str] = Field(default_factory=list)


class ModuleStatus(str, enum.Enum):
    """Coarse lifecycle status of a protocol module instance."""

    UNINITIALIZED = "uninitialized"
    CONFIGURED = "configured"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"
    EXPIRED = "expired"


# --- Validation and authentication flow ---


class ValidationResult(BaseModel):
    """Outcome of :meth:`~handshake.protocols.base.ProtocolModule.validate_credentials`."""

    valid: bool = True
    field_errors: dict[str, str] = Field(default_factory=dict)
    general_errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def error_summary(self) -> str:
        """Join every field and general error into one line."""
        return ", ".join([*self.field_errors.values(), *self.general_errors])


class FlowStepType(str, enum.Enum):
    """Kinds of step an authentication flow can report."""

    REDIRECT = "redirect"
    INPUT = "input"
    CALLBACK = "callback"
    TOKEN_EXCHANGE = "token-exchange"
    COMPLETE = "complete"
    ERROR = "error"


class ProtocolAuthenticationFlow(BaseModel):
    """One snapshot of a module's authentication state machine.

    The caller persists :attr:`step` across suspensions (a browser redirect,
    a process restart) and passes it back into
    :meth:`~handshake.protocols.base.ProtocolModule.authenticate`.
    """

    step: int
    total_steps: int
    type: FlowStepType
    title: str
    description: str = ""
    redirect_url: Optional[str] = None
    input_fields: Optional[list[ProtocolFieldDefinition]] = None
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.type == FlowStepType.ERROR


# --- Execution ---


class InjectedAuth(BaseModel):
    """Headers, query parameters and optional body a module adds to a request."""

    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class ProtocolExecutionContext(BaseModel):
    """Input of one authenticated call.

    ``timeout`` is expressed in milliseconds; ``None`` means the transport's
    default (30 s).
    """

    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    query_params: dict[str, str] = Field(default_factory=dict)
    timeout: Optional[int] = None
    credentials: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetryInfo(BaseModel):
    """How many times a request was retried, and why the last attempt failed."""

    attempted: bool = False
    count: int = 0
    reason: Optional[str] = None


class ProtocolExecutionResult(BaseModel):
    """Output of one authenticated call.

    When :attr:`credentials_refreshed` is ``True`` the caller should merge
    :attr:`updated_credentials` into its stored credentials.
    """

    success: bool
    status_code: int = 0
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    raw_body: str = ""
    duration_ms: float = 0.0
    error: Optional[str] = None
    error_code: Optional[str] = None
    credentials_refreshed: bool = False
    updated_credentials: Optional[dict[str, Any]] = None
    retry: Optional[RetryInfo] = None


class ProtocolTokenRefreshResult(BaseModel):
    """Outcome of a refresh attempt.

    ``requires_reauth=True`` means the refresh token itself is invalid and the
    full authorization flow must be restarted; it is never retried.
    """

    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = Field(
        default=None, description="Unix timestamp (seconds)"
    )
    token_type: Optional[str] = None
    scopes: Optional[list[str]] = None
    error: Optional[str] = None
    requires_reauth: bool = False

    def as_credentials(self) -> dict[str, Any]:
        """Return the credential delta the caller should persist."""
        delta: dict[str, Any] = {"accessToken": self.access_token}
        if self.refresh_token:
            delta["refreshToken"] = self.refresh_token
        if self.expires_at is not None:
            delta["tokenExpiresAt"] = self.expires_at
        return delta


class RevocationResult(BaseModel):
    """Outcome of a revocation attempt."""

    success: bool
    error: Optional[str] = None


class IntrospectionResult(BaseModel):
    """Token introspection response (:rfc:`7662`)."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    exp: Optional[int] = None
    sub: Optional[str] = None
    error: Optional[str] = Field(
        default=None, description="Why introspection was inconclusive"
    )


class TokenStatus(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INVALID = "invalid"


class ProtocolHealthCheckResult(BaseModel):
    """Result of a module health check."""

    healthy: bool
    message: str
    latency_ms: float = 0.0
    token_status: TokenStatus = TokenStatus.MISSING
    token_expires_in: Optional[int] = Field(
        default=None, description="Seconds until expiry, -1 when unknown"
    )
    can_refresh: bool = False
    details: Optional[dict[str, Any]] = None


# --- cURL and router ---


class ParsedCurlCommand(BaseModel):
    """Request extracted from a cURL command line."""

    method: str = "GET"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class LogEntry(BaseModel):
    """A structured progress event emitted by the execution router."""

    timestamp: str
    level: LogLevel
    context: str = Field(description="Dotted tag, e.g. cURL.Send")
    message: str
    commentary: Optional[str] = None
    data: Any = None


class RouterContext(BaseModel):
    """Input to :meth:`~handshake.router.ExecutionRouter.execute_protocol`."""

    auth_type: Optional[str] = Field(default=None, description="Protocol identifier")
    credentials: dict[str, Any] = Field(default_factory=dict)
    handshake_id: str = ""
    serial: str = ""
    request: Optional[ProtocolExecutionContext] = Field(
        default=None,
        description="The request to run for protocols other than curl-default",
    )


class RouterResult(BaseModel):
    """Outcome of :meth:`~handshake.router.ExecutionRouter.execute_protocol`."""

    success: bool
    status_code: Optional[int] = None
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    raw_body: str = ""
    duration_ms: float = 0.0
    error: Optional[str] = None
    error_code: Optional[str] = None
    credentials_refreshed: bool = False
    updated_credentials: Optional[dict[str, Any]] = None
    logs: list[LogEntry] = Field(default_factory=list)


# --- WebSocket ---


class ConnectionState(str, enum.Enum):
    """Lifecycle of a managed WebSocket connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class WebSocketConfig(BaseModel):
    """Connection settings for :class:`~handshake.plugins.websocket.connection.ConnectionManager`.

    Durations are in milliseconds, matching the credential fields they are
    built from.
    """

    url: str
    auth_method: str = Field(
        default="query-param",
        description="query-param, first-message, subprotocol, none",
    )
    auth_token: Optional[str] = None
    token_param_name: str = "token"
    auth_message_type: str = "authenticate"
    auth_message_template: Optional[str] = None
    subprotocols: Optional[str] = Field(
        default=None, description="Comma-separated subprotocol list"
    )
    message_format: str = Field(default="json", description="json, text, binary")
    ping_interval: int = 30000
    pong_timeout: int = 5000
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=10, description="0 means unlimited")
    reconnect_delay: int = 1000
    connect_timeout: int = 30000
    max_queue_size: int = 1000


class ConnectionStats(BaseModel):
    """Counters maintained by a WebSocket connection manager."""

    messages_sent: int = 0
    messages_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    reconnect_count: int = 0
    connected_at: Optional[float] = None
    disconnected_at: Optional[float] = None
    last_message_at: Optional[float] = None
    latency_ms: Optional[float] = None


# --- Config ---


class RequestConfig(BaseModel):
    """Default HTTP request settings applied to every call made by the CLI."""

    timeout: int = Field(default=30, description="Request timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")


class OutputConfig(BaseModel):
    """Default output format preferences stored in :class:`GlobalConfig`."""

    format: str = Field(
        default="auto", description="Output format: auto, json, plain, rich"
    )


class LoggingConfig(BaseModel):
    """Log level and traceback style for the ``handshake`` logger."""

    level: str = Field(default="WARNING", description="Standard logging level name")
    rich_tracebacks: bool = True


class GlobalConfig(BaseModel):
    """User-wide configuration persisted at ``~/.config/handshake/config.json``.

    Loaded and saved by :func:`~handshake.config.load_global_config` and
    :func:`~handshake.config.save_global_config`. Command-line flags take
    precedence over every setting here.
    """

    default_profile: Optional[str] = None
    request: RequestConfig = Field(default_factory=RequestConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class CredentialProfile(BaseModel):
    """A named credential mapping bound to one protocol.

    Stored as JSON under the ``profiles/`` config directory. Credential values
    may be literals or ``env:`` / ``file:`` references resolved by
    :func:`~handshake.config.resolve_credentials`.

    Extra fields are preserved and accessible via ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    name: str
    protocol: str = Field(description="Protocol identifier, e.g. oauth2-pkce")
    credentials: dict[str, Any] = Field(default_factory=dict)
