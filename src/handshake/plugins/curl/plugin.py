"""cURL command protocol module.

:class:`CurlModule` implements ``curl-default``: the credential mapping holds
a cURL command template (``curlCommand``) plus the values for its
``{{placeholders}}``, and executing a request means parsing the template,
substituting the values and sending it. Only transport failures (timeouts,
refused connections) are retried; any HTTP response, including 5xx, is
returned as is.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from handshake.client.response import build_result, failure_result
from handshake.client.transport import HttpTransport
from handshake.curl import (
    extract_placeholders,
    parse_curl_command,
    substitute_command,
    substitute_placeholders,
)
from handshake.exceptions import ConfigurationError, ParseError, TransportError
from handshake.models import (
    FieldGroup,
    FieldType,
    FlowStepType,
    InjectedAuth,
    ModuleStatus,
    ParsedCurlCommand,
    ProtocolAuthenticationFlow,
    ProtocolCapabilities,
    ProtocolExecutionContext,
    ProtocolExecutionResult,
    ProtocolFieldDefinition,
    ProtocolHealthCheckResult,
    ProtocolModuleMetadata,
    RetryInfo,
    ShowWhen,
    TokenStatus,
)
from handshake.protocols.base import ProtocolModule, json_mapping

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000

_METADATA = ProtocolModuleMetadata(
    type="curl-default",
    display_name="cURL Command",
    description=(
        "Execute any API request using a cURL command template with dynamic "
        "placeholder substitution."
    ),
    version="1.0.0",
    documentation_url="https://curl.se/docs/manpage.html",
    icon="terminal",
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
        "Universal API access",
        "Quick API testing",
        "Legacy API integration",
        "Custom authentication schemes",
        "Webhook endpoints",
    ],
    example_platforms=[
        "Any REST API",
        "GraphQL endpoints",
        "SOAP services",
        "Custom internal APIs",
    ],
)


def _number(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def rebase_url(url: str, base_url: str) -> str:
    """Move *url*'s path and query onto *base_url*'s origin.

    Unparseable or relative URLs leave *url* unchanged.
    """
    try:
        original = httpx.URL(url)
        base = httpx.URL(base_url)
    except httpx.InvalidURL:
        return url
    if not base.scheme or not base.host:
        return url
    return str(original.copy_with(scheme=base.scheme, host=base.host, port=base.port))


class CurlModule(ProtocolModule):
    """Run templated cURL commands."""

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return _METADATA

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="curlCommand",
                label="cURL Command Template",
                type=FieldType.TEXTAREA,
                required=True,
                description=(
                    "Paste your cURL command here. Use {{placeholder}} syntax for "
                    "dynamic values."
                ),
                placeholder=(
                    "curl -X POST 'https://api.example.com/v1/endpoint' \\\n"
                    "  -H 'Authorization: Bearer {{access_token}}' \\\n"
                    "  -H 'Content-Type: application/json' \\\n"
                    "  -d '{\"key\": \"{{value}}\"}'"
                ),
                group="command",
                order=1,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="baseUrl",
                label="Base URL Override",
                type=FieldType.URL,
                description="Override the URL origin in the cURL command. Useful for environment switching.",
                placeholder="https://api.example.com",
                group="overrides",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="defaultHeaders",
                label="Default Headers",
                type=FieldType.JSON,
                description="Headers added to every request unless the command sets them.",
                placeholder='{"Accept": "application/json"}',
                group="overrides",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="placeholderValues",
                label="Placeholder Values",
                type=FieldType.JSON,
                description="JSON object with values for {{placeholders}} in the command template.",
                placeholder='{"access_token": "your-token-here", "value": "example"}',
                group="placeholders",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="timeout",
                label="Timeout (ms)",
                type=FieldType.NUMBER,
                default_value=DEFAULT_TIMEOUT_MS,
                min=1000,
                max=300000,
                group="advanced",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="followRedirects",
                label="Follow Redirects",
                type=FieldType.CHECKBOX,
                default_value=True,
                group="advanced",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="validateSsl",
                label="Validate SSL",
                type=FieldType.CHECKBOX,
                description="Disable only for self-signed certificates in development.",
                default_value=True,
                group="advanced",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="userAgent",
                label="User Agent",
                type=FieldType.TEXT,
                placeholder="handshake/0.1",
                group="advanced",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="retryOnFailure",
                label="Retry on Failure",
                type=FieldType.CHECKBOX,
                description="Retry requests that fail before any response arrives.",
                default_value=True,
                group="retry",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="maxRetries",
                label="Max Retries",
                type=FieldType.NUMBER,
                default_value=DEFAULT_MAX_RETRIES,
                min=0,
                max=10,
                show_when=ShowWhen(field="retryOnFailure", value=False, operator="not_equals"),
                group="retry",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="retryDelay",
                label="Retry Delay (ms)",
                type=FieldType.NUMBER,
                description="Multiplied by the attempt number.",
                default_value=DEFAULT_RETRY_DELAY_MS,
                min=100,
                max=30000,
                show_when=ShowWhen(field="retryOnFailure", value=False, operator="not_equals"),
                group="retry",
                order=3,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(id="command", label="cURL Command", description="The cURL command template to execute."),
            FieldGroup(
                id="placeholders",
                label="Placeholder Values",
                description="Values to substitute into {{placeholders}} in the command.",
                collapsible=True,
            ),
            FieldGroup(id="overrides", label="Overrides", collapsible=True, default_collapsed=True),
            FieldGroup(id="advanced", label="Advanced Options", collapsible=True, default_collapsed=True),
            FieldGroup(id="retry", label="Retry Configuration", collapsible=True, default_collapsed=True),
        ]

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        """Parse the command; there is nothing else to authenticate."""
        validation = self.validate_credentials(credentials)
        if not validation.valid:
            return self._error_step(
                1, 1, "Configuration Error",
                "Please fix the configuration errors.", validation.error_summary(),
            )

        try:
            parsed = parse_curl_command(credentials["curlCommand"])
        except ParseError as exc:
            return self._error_step(
                1, 1, "Invalid cURL Command", "Failed to parse the cURL command.", str(exc)
            )

        self._status = ModuleStatus.CONFIGURED
        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=1,
            type=FlowStepType.COMPLETE,
            title="Configuration Complete",
            description=f"cURL command configured for {parsed.method} {parsed.url}",
            data=_summary(parsed),
        )

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        """Default headers and user agent; the command carries its own auth."""
        headers = json_mapping(context.credentials.get("defaultHeaders"), "Default headers")
        if context.credentials.get("userAgent"):
            headers["User-Agent"] = str(context.credentials["userAgent"])
        return InjectedAuth(headers=headers)

    def prepare_command(self, credentials: dict[str, Any]) -> ParsedCurlCommand:
        """Parse the template and apply placeholder values, base URL and default headers.

        Headers already in the command always win over ``defaultHeaders``
        and ``userAgent``.

        Raises:
            ParseError: If the command has no URL.
            ConfigurationError: If ``placeholderValues`` or ``defaultHeaders``
                is not a JSON object.
        """
        values = json_mapping(credentials.get("placeholderValues"), "Placeholder values")
        parsed = substitute_command(parse_curl_command(credentials["curlCommand"]), values)

        url = parsed.url
        if credentials.get("baseUrl"):
            url = rebase_url(url, str(credentials["baseUrl"]))

        headers = dict(parsed.headers)
        present = {k.lower() for k in headers}
        defaults = json_mapping(credentials.get("defaultHeaders"), "Default headers")
        for key, value in defaults.items():
            if key.lower() not in present:
                headers[key] = substitute_placeholders(str(value), values)
        if credentials.get("userAgent") and "user-agent" not in present:
            headers["User-Agent"] = str(credentials["userAgent"])

        return ParsedCurlCommand(method=parsed.method, url=url, headers=headers, body=parsed.body)

    async def execute_request(self, context: ProtocolExecutionContext) -> ProtocolExecutionResult:
        started = time.perf_counter()
        credentials = context.credentials
        if not credentials.get("curlCommand"):
            return failure_result("No cURL command configured", "NO_COMMAND", started)

        try:
            command = self.prepare_command(credentials)
        except (ParseError, ConfigurationError) as exc:
            return failure_result(
                f"Failed to parse cURL command: {exc}", "PARSE_ERROR", started
            )

        timeout_ms = _number(credentials.get("timeout"), context.timeout or DEFAULT_TIMEOUT_MS)
        max_retries = (
            _number(credentials.get("maxRetries"), DEFAULT_MAX_RETRIES)
            if credentials.get("retryOnFailure") is not False
            else 0
        )
        retry_delay = _number(credentials.get("retryDelay"), DEFAULT_RETRY_DELAY_MS)
        body = command.body if command.method not in ("GET", "HEAD") else None

        transport = self._transport
        if credentials.get("validateSsl") is False:
            transport = HttpTransport(verify_ssl=False)

        attempt = 0
        try:
            while True:
                try:
                    response = await transport.request(
                        command.method,
                        command.url,
                        headers=command.headers,
                        content=body,
                        timeout_ms=timeout_ms,
                        follow_redirects=credentials.get("followRedirects") is not False,
                    )
                except TransportError as exc:
                    if attempt < max_retries:
                        attempt += 1
                        logger.debug(
                            "cURL request failed (%s), retry %d/%d", exc, attempt, max_retries
                        )
                        await asyncio.sleep(retry_delay * attempt / 1000)
                        continue
                    result = failure_result(str(exc), exc.code, started)
                    if attempt:
                        result.retry = RetryInfo(attempted=True, count=attempt, reason=str(exc))
                    return result
                break
        finally:
            if transport is not self._transport:
                await transport.aclose()

        result = build_result(response, started)
        if attempt:
            result.retry = RetryInfo(attempted=True, count=attempt)
        return result

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        command = credentials.get("curlCommand")
        if not command:
            return ProtocolHealthCheckResult(
                healthy=False,
                message="No cURL command configured",
                token_status=TokenStatus.MISSING,
                token_expires_in=-1,
            )
        try:
            parsed = parse_curl_command(command)
        except ParseError as exc:
            return ProtocolHealthCheckResult(
                healthy=False,
                message=f"Invalid cURL command: {exc}",
                token_status=TokenStatus.INVALID,
                token_expires_in=-1,
            )
        return ProtocolHealthCheckResult(
            healthy=True,
            message=f"Command configured for {parsed.method} {parsed.url}",
            token_status=TokenStatus.VALID,
            token_expires_in=-1,
            details=_summary(parsed),
        )

    # ------------------------------------------------------------------ #
    # Template helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def extract_placeholders(command: str) -> list[str]:
        return extract_placeholders(command)

    @staticmethod
    def generate_command_preview(
        command: str, values: dict[str, Any]
    ) -> tuple[str, list[str], list[str]]:
        """Fill in the known placeholders of *command*.

        Returns:
            ``(preview, missing, substituted)`` where *missing* and
            *substituted* are placeholder names in order of appearance.
        """
        names = extract_placeholders(command)
        substituted = [n for n in names if values.get(n) is not None]
        missing = [n for n in names if values.get(n) is None]
        return substitute_placeholders(command, values), missing, substituted


def _summary(parsed: ParsedCurlCommand) -> dict[str, Any]:
    return {
        "method": parsed.method,
        "url": parsed.url,
        "header_count": len(parsed.headers),
        "has_body": bool(parsed.body),
    }
