"""Abstract base class for protocol modules.

This module defines :class:`ProtocolModule`, the single polymorphic surface
every protocol (OAuth2 PKCE, OAuth2 Authorization Code, Client Credentials,
REST API key, GraphQL, WebSocket, cURL) implements. Forms, storage and the
execution router only ever talk to this interface.

To implement a new protocol, subclass :class:`ProtocolModule` and provide:

1. :attr:`~ProtocolModule.metadata` -- a
   :class:`~handshake.models.ProtocolModuleMetadata` whose ``type`` is the
   protocol identifier.
2. :meth:`~ProtocolModule.get_required_fields` (and optionally
   :meth:`~ProtocolModule.get_optional_fields`).
3. :meth:`~ProtocolModule.authenticate` -- the step-based state machine.
4. :meth:`~ProtocolModule.inject_authentication` -- a pure transform that
   adds auth headers / query parameters to a request.

Everything else has a working default: field validation, request execution,
"not supported" token management, a health check based on token expiry,
diagnostics and credential masking.

Failure semantics:
    Validation problems are *reported* in a
    :class:`~handshake.models.ValidationResult`, never raised. Transport
    failures during :meth:`~ProtocolModule.execute_request` are converted into
    a failed :class:`~handshake.models.ProtocolExecutionResult` with
    ``status_code=0``.

See Also:
    :mod:`handshake.protocols.registry` for registration and lookup.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from handshake.client.response import build_result, failure_result
from handshake.client.transport import HttpTransport
from handshake.exceptions import ConfigurationError, HandshakeError
from handshake.models import (
    FieldGroup,
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
    ProtocolTokenRefreshResult,
    RevocationResult,
    TokenStatus,
    ValidationResult,
)
from handshake.protocols.flow import FlowState, Idle, dump_flow_state, load_flow_state

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = frozenset({"GET", "HEAD"})
_URL_SCHEMES = frozenset({"http", "https", "ws", "wss"})


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _fmt_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


class ProtocolModule(ABC):
    """Abstract base class for protocol modules.

    Args:
        transport: HTTP transport used for every outgoing request. A default
            :class:`~handshake.client.transport.HttpTransport` is created when
            omitted.

    A module instance owns its own ephemeral flow state. It is not meant to be
    shared across unrelated concurrent flows: a second
    :meth:`authenticate` call overwrites any flow already in progress.
    """

    def __init__(self, transport: Optional[HttpTransport] = None) -> None:
        self._transport = transport or HttpTransport()
        self._status = ModuleStatus.UNINITIALIZED
        self._flow: FlowState = Idle()

    # ------------------------------------------------------------------ #
    # Metadata and fields
    # ------------------------------------------------------------------ #

    @property
    @abstractmethod
    def metadata(self) -> ProtocolModuleMetadata:
        """Return the static descriptor of this module."""
        ...

    @property
    def protocol_type(self) -> str:
        """The protocol identifier (e.g. ``"oauth2-pkce"``)."""
        return self.metadata.type

    @property
    def status(self) -> ModuleStatus:
        return self._status

    @property
    def flow_state(self) -> FlowState:
        return self._flow

    def get_metadata(self) -> ProtocolModuleMetadata:
        return self.metadata

    def get_capabilities(self) -> ProtocolCapabilities:
        return self.metadata.capabilities

    @abstractmethod
    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        """Return the fields that must be filled in before authenticating."""
        ...

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return []

    def get_all_fields(self) -> list[ProtocolFieldDefinition]:
        return [*self.get_required_fields(), *self.get_optional_fields()]

    def get_field(self, field_id: str) -> Optional[ProtocolFieldDefinition]:
        for field in self.get_all_fields():
            if field.id == field_id:
                return field
        return None

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(
                id="required",
                label="Required Settings",
                description="These fields must be configured for authentication to work.",
            ),
            FieldGroup(
                id="optional",
                label="Optional Settings",
                collapsible=True,
                default_collapsed=True,
            ),
        ]

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #

    def validate_credentials(self, credentials: dict[str, Any]) -> ValidationResult:
        """Check *credentials* against this module's field definitions.

        Required fields must be present and non-empty. Any present value is
        checked against the field's ``pattern``, ``min`` and ``max``, and
        ``json`` / ``url`` fields must parse. Fields hidden by their
        ``show_when`` condition are skipped. Never performs I/O.
        """
        field_errors: dict[str, str] = {}
        for field in self.get_all_fields():
            if not self._is_visible(field, credentials):
                continue
            error = self._check_field(field, credentials.get(field.id))
            if error:
                field_errors[field.id] = error

        return ValidationResult(valid=not field_errors, field_errors=field_errors)

    def validate_field(self, field_id: str, value: Any) -> Optional[str]:
        """Validate a single value.

        Returns:
            The error message, or ``None`` when the value is acceptable (or
            the field is unknown).
        """
        field = self.get_field(field_id)
        if field is None:
            return None
        return self._check_field(field, value)

    def is_configuration_complete(self, credentials: dict[str, Any]) -> bool:
        return self.validate_credentials(credentials).valid

    def _check_field(self, field: ProtocolFieldDefinition, value: Any) -> Optional[str]:
        if _is_empty(value):
            return f"{field.label} is required" if field.required else None

        if field.pattern and not re.search(field.pattern, str(value)):
            return field.pattern_error or f"{field.label} is invalid"

        if field.min is not None:
            if isinstance(value, str) and len(value) < field.min:
                return f"{field.label} must be at least {_fmt_bound(field.min)} characters"
            if _is_number(value) and value < field.min:
                return f"{field.label} must be at least {_fmt_bound(field.min)}"

        if field.max is not None:
            if isinstance(value, str) and len(value) > field.max:
                return f"{field.label} must be at most {_fmt_bound(field.max)} characters"
            if _is_number(value) and value > field.max:
                return f"{field.label} must be at most {_fmt_bound(field.max)}"

        if field.type == FieldType.JSON and isinstance(value, str):
            try:
                json.loads(value)
            except ValueError:
                return f"{field.label} must be valid JSON"

        if field.type == FieldType.URL:
            parsed = urlparse(str(value))
            if parsed.scheme not in _URL_SCHEMES or not parsed.netloc:
                return f"{field.label} must be a valid URL"

        return None

    @staticmethod
    def _is_visible(field: ProtocolFieldDefinition, credentials: dict[str, Any]) -> bool:
        cond = field.show_when
        if cond is None:
            return True
        actual = credentials.get(cond.field)
        if cond.operator == "not_equals":
            return actual != cond.value
        if cond.operator == "contains":
            return actual is not None and str(cond.value) in str(actual)
        if cond.operator == "exists":
            return not _is_empty(actual)
        return actual == cond.value

    # ------------------------------------------------------------------ #
    # Authentication flow
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        """Start or advance the authentication state machine.

        Args:
            credentials: The (possibly partial) credential mapping.
            step: The step to run; ``None`` means step 1.
        """
        ...

    async def handle_callback(
        self, params: dict[str, str], expected_state: Optional[str] = None
    ) -> ProtocolAuthenticationFlow:
        """Handle a redirect callback. Protocols without redirects complete immediately."""
        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=1,
            type=FlowStepType.COMPLETE,
            title="Authentication Complete",
            description="No callback handling required for this protocol.",
        )

    def restore_flow_state(self, data: dict[str, Any]) -> None:
        """Reinstate a flow saved with :meth:`dump_flow_state` (e.g. after a redirect)."""
        self._flow = load_flow_state(data)

    def dump_flow_state(self) -> dict[str, Any]:
        """Serialise the current flow state, secrets included."""
        return dump_flow_state(self._flow)

    @staticmethod
    def _error_step(
        step: int,
        total_steps: int,
        title: str,
        description: str,
        error: str,
    ) -> ProtocolAuthenticationFlow:
        return ProtocolAuthenticationFlow(
            step=step,
            total_steps=total_steps,
            type=FlowStepType.ERROR,
            title=title,
            description=description,
            error=error,
        )

    # ------------------------------------------------------------------ #
    # Token management
    # ------------------------------------------------------------------ #

    async def refresh_tokens(self, credentials: dict[str, Any]) -> ProtocolTokenRefreshResult:
        return ProtocolTokenRefreshResult(
            success=False, error="Token refresh not supported by this protocol"
        )

    async def revoke_tokens(self, credentials: dict[str, Any]) -> RevocationResult:
        return RevocationResult(
            success=False, error="Token revocation not supported by this protocol"
        )

    def is_token_expired(self, credentials: dict[str, Any]) -> bool:
        return False

    def get_token_expiration_time(self, credentials: dict[str, Any]) -> Optional[datetime]:
        return None

    # ------------------------------------------------------------------ #
    # Request execution
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        """Return the headers, query parameters and body to add to *context*.

        Must not mutate *context* or any module state.
        """
        ...

    async def execute_request(self, context: ProtocolExecutionContext) -> ProtocolExecutionResult:
        """Inject auth, send one request, and classify the response.

        2xx responses are successful. Transport failures come back as a failed
        result with ``status_code=0`` and the failure's error code.
        """
        started = time.perf_counter()
        try:
            auth = await self.inject_authentication(context)
            response = await self._send(context, auth)
        except HandshakeError as exc:
            logger.debug("%s request failed: %s", self.protocol_type, exc)
            return failure_result(str(exc), exc.code, started)
        return build_result(response, started)

    async def _send(
        self,
        context: ProtocolExecutionContext,
        auth: InjectedAuth,
        extra_headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """Merge *auth* into *context* and send the request through the transport."""
        headers = {**context.headers, **auth.headers, **(extra_headers or {})}
        params = {**context.query_params, **auth.query_params}
        method = context.method.upper()

        content: Optional[str] = None
        body = auth.body if auth.body is not None else context.body
        if body is not None and method not in _BODYLESS_METHODS:
            if isinstance(body, (dict, list)):
                content = json.dumps(body)
                if not any(k.lower() == "content-type" for k in headers):
                    headers["Content-Type"] = "application/json"
            else:
                content = str(body)

        return await self._transport.request(
            method,
            context.url,
            headers=headers,
            params=params,
            content=content,
            timeout_ms=context.timeout,
        )

    # ------------------------------------------------------------------ #
    # Health and diagnostics
    # ------------------------------------------------------------------ #

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        expired = self.is_token_expired(credentials)
        return ProtocolHealthCheckResult(
            healthy=not expired,
            message="Token expired" if expired else "Credentials valid",
            token_status=TokenStatus.EXPIRED if expired else TokenStatus.VALID,
            token_expires_in=self._seconds_until_expiry(credentials),
            can_refresh=self.get_capabilities().supports_token_refresh,
        )

    async def get_diagnostics(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """Collect a JSON-compatible snapshot for troubleshooting (secrets masked)."""
        metadata = self.metadata
        health = await self.health_check(credentials)
        return {
            "protocol": metadata.type,
            "version": metadata.version,
            "status": self._status.value,
            "health_check": health.model_dump(mode="json"),
            "capabilities": self.get_capabilities().model_dump(),
            "configured_fields": sorted(credentials),
            "configuration_complete": self.is_configuration_complete(credentials),
            "credentials": self.get_masked_credentials(credentials),
        }

    def _seconds_until_expiry(self, credentials: dict[str, Any]) -> int:
        expires = self.get_token_expiration_time(credentials)
        if expires is None:
            return -1
        return math.floor(expires.timestamp() - time.time())

    # ------------------------------------------------------------------ #
    # Serialisation
    # ------------------------------------------------------------------ #

    def serialize_credentials(self, credentials: dict[str, Any]) -> str:
        return json.dumps(credentials)

    def deserialize_credentials(self, serialized: str) -> dict[str, Any]:
        return json.loads(serialized)

    def sensitive_field_ids(self) -> set[str]:
        return {
            f.id
            for f in self.get_all_fields()
            if f.sensitive or f.type in (FieldType.PASSWORD, FieldType.SECRET)
        }

    def get_masked_credentials(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *credentials* with sensitive string values masked.

        Values longer than 8 characters keep their first and last four
        characters; shorter ones are fully masked.
        """
        sensitive = self.sensitive_field_ids()
        masked: dict[str, Any] = {}
        for key, value in credentials.items():
            if key in sensitive and isinstance(value, str):
                masked[key] = mask_secret(value)
            else:
                masked[key] = value
        return masked

    async def release(self) -> None:
        """Free what one execution left open, such as sockets and background tasks.

        The HTTP transport is left alone so a shared one stays usable.
        """

    async def aclose(self) -> None:
        """Release the module and close its transport."""
        await self.release()
        await self._transport.aclose()


def mask_secret(value: str) -> str:
    """Mask *value*, keeping the first and last four characters of long values."""
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    return "*" * len(value)


def expiry_datetime(expires_at: Any) -> Optional[datetime]:
    """Convert a unix-seconds ``tokenExpiresAt`` value into an aware datetime."""
    if not _is_number(expires_at) or not expires_at:
        return None
    return datetime.fromtimestamp(expires_at, tz=timezone.utc)


def json_mapping(value: Any, label: str) -> dict[str, str]:
    """Read a mapping field given either as a dict or as a JSON object string.

    Raises:
        ConfigurationError: If the value is not a JSON object.
    """
    if not value:
        return {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ConfigurationError(f"{label} must be a JSON object") from exc
    if not isinstance(value, dict):
        raise ConfigurationError(f"{label} must be a JSON object")
    return {str(k): str(v) for k, v in value.items()}
