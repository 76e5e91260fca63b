"""Execution router -- one entry point for running any configured protocol.

:class:`ExecutionRouter` takes a :class:`~handshake.models.RouterContext`
(protocol id, credentials, optional request) and:

1. resolves the protocol id against the display-name table and the
   :class:`~handshake.protocols.registry.ProtocolRegistry`;
2. runs ``curl-default`` commands directly (placeholder substitution,
   parse, send with a 30 second timeout);
3. delegates every other registered protocol to its module's
   :meth:`~handshake.protocols.base.ProtocolModule.execute_request`.

Failures never raise; they come back as a failed
:class:`~handshake.models.RouterResult` with an ``error_code`` of
``NO_PROTOCOL``, ``UNKNOWN_PROTOCOL``, ``PARSE_ERROR``, ``TIMEOUT``,
``NETWORK_ERROR`` or ``EXECUTION_ERROR``.

Every step is reported as a :class:`~handshake.models.LogEntry` tagged with
a dotted context (``Execute.Start``, ``cURL.Send``...). Entries go to the
caller's ``on_log`` callback, to the ``handshake.router`` logger, and into
:attr:`RouterResult.logs <handshake.models.RouterResult.logs>`.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from handshake.client.response import elapsed_ms, extract_response_data
from handshake.client.transport import HttpTransport
from handshake.curl import parse_curl_command, substitute_placeholders
from handshake.exceptions import ConfigurationError, HandshakeError, ParseError, TransportError
from handshake.models import (
    LogEntry,
    LogLevel,
    ProtocolExecutionContext,
    RouterContext,
    RouterResult,
)
from handshake.protocols.base import json_mapping
from handshake.protocols.registry import ProtocolRegistry, create_default_registry

logger = logging.getLogger(__name__)

CURL_TIMEOUT_MS = 30000

PROTOCOL_DISPLAY_NAMES: dict[str, str] = {
    "curl-default": "cURL Command",
    "oauth2-pkce": "OAuth 2.0 PKCE",
    "oauth2-auth-code": "OAuth 2.0 Auth Code",
    "oauth2-implicit": "OAuth 2.0 Implicit",
    "oauth2-client-credentials": "Client Credentials",
    "rest-api-key": "REST API Key",
    "graphql": "GraphQL",
    "websocket": "WebSocket",
    "soap-xml": "SOAP/XML",
    "github-repo-runner": "GitHub Repo Runner",
    "keyless-scraper": "Keyless Scraper",
}

_LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

LogCallback = Callable[[LogEntry], None]


def get_supported_protocols() -> list[dict[str, str]]:
    """Every known protocol as ``{"type": id, "name": display name}``."""
    return [{"type": t, "name": n} for t, n in PROTOCOL_DISPLAY_NAMES.items()]


def is_protocol_supported(auth_type: str) -> bool:
    return auth_type in PROTOCOL_DISPLAY_NAMES


class _RunLog:
    """Collects the entries of one execution and forwards them."""

    def __init__(self, callback: Optional[LogCallback]) -> None:
        self._callback = callback
        self.entries: list[LogEntry] = []

    def __call__(
        self,
        level: LogLevel,
        context: str,
        message: str,
        commentary: Optional[str] = None,
        data: Any = None,
    ) -> None:
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            context=context,
            message=message,
            commentary=commentary,
            data=data,
        )
        self.entries.append(entry)
        logger.log(_LOG_LEVELS[level], "[%s] %s", context, message)
        if self._callback is not None:
            try:
                self._callback(entry)
            except Exception:
                logger.exception("Log callback failed for %s", context)


class ExecutionRouter:
    """Route executions to the cURL runner or to protocol modules.

    Args:
        registry: Protocol modules to delegate to. Defaults to
            :func:`~handshake.protocols.registry.create_default_registry`.
        transport: HTTP transport for cURL commands and for the modules the
            router creates.
    """

    def __init__(
        self,
        registry: Optional[ProtocolRegistry] = None,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self._registry = registry or create_default_registry()
        self._transport = transport or HttpTransport()

    @property
    def registry(self) -> ProtocolRegistry:
        return self._registry

    def get_supported_protocols(self) -> list[dict[str, str]]:
        return get_supported_protocols()

    def is_protocol_supported(self, auth_type: str) -> bool:
        return is_protocol_supported(auth_type) or self._registry.is_registered(auth_type)

    def display_name(self, auth_type: str) -> str:
        if auth_type in PROTOCOL_DISPLAY_NAMES:
            return PROTOCOL_DISPLAY_NAMES[auth_type]
        if self._registry.is_registered(auth_type):
            return self._registry.get_metadata(auth_type).display_name
        return auth_type

    async def aclose(self) -> None:
        await self._transport.aclose()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute_protocol(
        self, context: RouterContext, on_log: Optional[LogCallback] = None
    ) -> RouterResult:
        """Run *context* and report every step through *on_log*."""
        started = time.perf_counter()
        log = _RunLog(on_log)
        label = context.serial or context.handshake_id or "request"
        log(LogLevel.INFO, "Execute.Start", f"Starting execution for {label}",
            "Initializing protocol handler...")

        auth_type = context.auth_type
        if not auth_type:
            log(LogLevel.ERROR, "Execute.Validate", "No protocol selected",
                "Select a protocol before executing")
            return self._failure("No protocol selected", "NO_PROTOCOL", started, log)

        name = self.display_name(auth_type)
        log(LogLevel.INFO, "Execute.Protocol", f"Protocol: {name}", "Loading protocol executor...")
        if not self.is_protocol_supported(auth_type):
            log(LogLevel.ERROR, "Execute.Protocol", f"Unknown protocol: {auth_type}",
                "This protocol type is not recognised")
            return self._failure(f"Unknown protocol: {auth_type}", "UNKNOWN_PROTOCOL", started, log)

        log(LogLevel.INFO, "Execute.Prepare", "Building request from configuration...",
            "Assembling headers, body, and credentials")

        command = context.credentials.get("curlCommand")
        if auth_type == "curl-default" and command:
            return await self._execute_curl(str(command), context, log)

        if not self._registry.is_registered(auth_type):
            message = f"{name} execution is not implemented"
            log(LogLevel.ERROR, "Execute.Error", message)
            return self._failure(message, "EXECUTION_ERROR", started, log)

        return await self._execute_module(auth_type, name, context, log, started)

    async def _execute_module(
        self,
        auth_type: str,
        name: str,
        context: RouterContext,
        log: _RunLog,
        started: float,
    ) -> RouterResult:
        request = context.request or ProtocolExecutionContext(url="")
        request = request.model_copy(
            update={"credentials": {**context.credentials, **request.credentials}}
        )
        module = self._registry.create(auth_type, self._transport)
        log(LogLevel.INFO, "Execute.Send", f"Sending {name} request...",
            "Awaiting response from endpoint")
        try:
            result = await module.execute_request(request)
        except HandshakeError as exc:
            log(LogLevel.ERROR, "Execute.Error", str(exc),
                "Check credentials and endpoint configuration")
            return self._failure(str(exc), exc.code, started, log)
        finally:
            # The transport is shared with later executions; only the module goes.
            await module.release()

        if result.success:
            log(LogLevel.SUCCESS, "Execute.Complete", f"{result.status_code} {name} request succeeded",
                f"Response received in {round(result.duration_ms)}ms")
        else:
            log(LogLevel.ERROR, "Execute.Complete", result.error or "Request failed",
                result.error_code)
        if result.credentials_refreshed:
            log(LogLevel.INFO, "Execute.Credentials", "Credentials were refreshed",
                "Store the updated credentials")

        return RouterResult(
            success=result.success,
            status_code=result.status_code,
            headers=result.headers,
            body=result.body,
            raw_body=result.raw_body,
            duration_ms=elapsed_ms(started),
            error=result.error,
            error_code=result.error_code,
            credentials_refreshed=result.credentials_refreshed,
            updated_credentials=result.updated_credentials,
            logs=log.entries,
        )

    async def _execute_curl(
        self, command: str, context: RouterContext, log: _RunLog
    ) -> RouterResult:
        started = time.perf_counter()
        log(LogLevel.INFO, "cURL.Parse", "Parsing cURL command...",
            "Extracting method, URL, headers, and body")
        try:
            values = json_mapping(context.credentials.get("placeholderValues"), "Placeholder values")
            parsed = parse_curl_command(substitute_placeholders(command, values))
        except (ParseError, ConfigurationError) as exc:
            log(LogLevel.ERROR, "cURL.Parse", str(exc), "Check command format")
            return self._failure(str(exc), "PARSE_ERROR", started, log)

        log(LogLevel.INFO, "cURL.Request", f"{parsed.method} {parsed.url}",
            f"Headers: {len(parsed.headers)}, Body: {'yes' if parsed.body else 'no'}")
        log(LogLevel.INFO, "cURL.Send", "Sending HTTP request...",
            f"Timeout: {CURL_TIMEOUT_MS // 1000}s")

        body = parsed.body if parsed.method not in ("GET", "HEAD") else None
        try:
            response = await self._transport.request(
                parsed.method,
                parsed.url,
                headers=parsed.headers,
                content=body,
                timeout_ms=CURL_TIMEOUT_MS,
            )
        except TransportError as exc:
            log(LogLevel.ERROR, "cURL.Error",
                "Request timed out" if exc.timeout else str(exc),
                "Check network and endpoint availability")
            return self._failure(str(exc), exc.code, started, log)

        duration = elapsed_ms(started)
        status = f"{response.status_code} {response.reason_phrase}"
        if response.is_success:
            log(LogLevel.SUCCESS, "cURL.Complete", status,
                f"Response received in {round(duration)}ms")
        else:
            log(LogLevel.ERROR, "cURL.Complete", status, response.text[:200])

        return RouterResult(
            success=response.is_success,
            status_code=response.status_code,
            headers=dict(response.headers),
            body=extract_response_data(response),
            raw_body=response.text,
            duration_ms=duration,
            error=None if response.is_success else f"HTTP {status}",
            logs=log.entries,
        )

    @staticmethod
    def _failure(error: str, code: str, started: float, log: _RunLog) -> RouterResult:
        return RouterResult(
            success=False,
            status_code=0,
            error=error,
            error_code=code,
            duration_ms=elapsed_ms(started),
            logs=log.entries,
        )
