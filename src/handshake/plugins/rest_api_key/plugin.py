"""REST API key protocol module -- header, query parameter or cookie placement.

This module provides :class:`RestApiKeyModule`, which implements the
``rest-api-key`` protocol. There is no token endpoint and nothing to
refresh: the key is read from ``apiKey`` and placed on every request at the
configured ``placement`` under ``keyName``, optionally behind a ``prefix``
such as ``"Bearer "``. An optional ``apiSecret`` is sent alongside the key
for APIs that require a key pair.

Example credentials::

    {"apiKey": "sk_live_...", "keyName": "X-API-Key", "placement": "header"}
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from handshake.exceptions import TokenError
from handshake.models import (
    FieldGroup,
    FieldOption,
    FieldType,
    FlowStepType,
    InjectedAuth,
    ModuleStatus,
    ProtocolAuthenticationFlow,
    ProtocolCapabilities,
    ProtocolExecutionContext,
    ProtocolFieldDefinition,
    ProtocolHealthCheckResult,
    ProtocolModuleMetadata,
    ShowWhen,
    TokenStatus,
    ValidationResult,
)
from handshake.protocols.base import ProtocolModule

logger = logging.getLogger(__name__)

PLACEMENTS = ("header", "query", "cookie")

_DEFAULT_KEY_NAMES = {"header": "X-API-Key", "query": "api_key", "cookie": "api_key"}
_DEFAULT_SECRET_NAMES = {"header": "X-API-Secret", "query": "api_secret", "cookie": "api_secret"}

_METADATA = ProtocolModuleMetadata(
    type="rest-api-key",
    display_name="REST API Key",
    description="Simple API key authentication in a header, query parameter or cookie.",
    version="1.0.0",
    icon="key-round",
    capabilities=ProtocolCapabilities(
        supports_redirect_flow=False,
        supports_token_refresh=False,
        supports_token_revocation=False,
        supports_scopes=False,
        supports_offline_access=True,
        browser_compatible=True,
        supports_auto_injection=True,
    ),
    use_cases=[
        "Server-to-server integrations",
        "Public data APIs",
        "Internal services",
    ],
    example_platforms=["Stripe", "SendGrid", "OpenWeatherMap", "Mailgun"],
)


class RestApiKeyModule(ProtocolModule):
    """Authenticate every request with a static API key."""

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return _METADATA

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="apiKey",
                label="API Key",
                type=FieldType.SECRET,
                required=True,
                sensitive=True,
                description="The key issued by the API provider.",
                group="credentials",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="keyName",
                label="Key Name",
                type=FieldType.TEXT,
                required=True,
                description="Header, query parameter or cookie name that carries the key.",
                placeholder="X-API-Key",
                default_value="X-API-Key",
                group="credentials",
                order=2,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="placement",
                label="Key Placement",
                type=FieldType.SELECT,
                description="Where the key goes on each request.",
                default_value="header",
                options=[
                    FieldOption(value="header", label="Request Header"),
                    FieldOption(value="query", label="Query Parameter"),
                    FieldOption(value="cookie", label="Cookie"),
                ],
                pattern=r"^(header|query|cookie)$",
                pattern_error="Placement must be header, query or cookie",
                group="placement",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="prefix",
                label="Value Prefix",
                type=FieldType.TEXT,
                description="Text placed before the key, e.g. 'Bearer ' or 'ApiKey '.",
                placeholder="Bearer ",
                show_when=ShowWhen(field="placement", value="query", operator="not_equals"),
                group="placement",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="apiSecret",
                label="API Secret",
                type=FieldType.SECRET,
                sensitive=True,
                description="Second credential for APIs that expect a key pair.",
                group="advanced",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="secretName",
                label="Secret Name",
                type=FieldType.TEXT,
                description="Name the secret is sent under.",
                placeholder="X-API-Secret",
                show_when=ShowWhen(field="apiSecret", operator="exists"),
                group="advanced",
                order=2,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(id="credentials", label="API Key"),
            FieldGroup(id="placement", label="Placement"),
            FieldGroup(
                id="advanced",
                label="Advanced Settings",
                collapsible=True,
                default_collapsed=True,
            ),
        ]

    def validate_credentials(self, credentials: dict[str, Any]) -> ValidationResult:
        """Field checks, plus a warning when the key travels in the URL."""
        result = super().validate_credentials(credentials)
        if credentials.get("placement") == "query":
            result.warnings.append("API keys in query parameters may be logged in server access logs")
        return result

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        validation = self.validate_credentials(credentials)
        if not validation.valid:
            self._status = ModuleStatus.ERROR
            return self._error_step(
                1, 1, "Configuration Error",
                "Please fix the configuration errors.", validation.error_summary(),
            )

        self._status = ModuleStatus.AUTHENTICATED
        placement = credentials.get("placement") or "header"
        logger.debug("API key will be sent as %s %r", placement, credentials["keyName"])
        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=1,
            type=FlowStepType.COMPLETE,
            title="API Key Configured",
            description=f"The key will be sent as {placement} '{credentials['keyName']}'.",
            data={"placement": placement, "keyName": credentials["keyName"]},
        )

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        """Place the key (and the optional secret) according to ``placement``.

        Raises:
            TokenError: If no ``apiKey`` is configured.
        """
        credentials = context.credentials
        api_key = credentials.get("apiKey")
        if not api_key:
            raise TokenError("API key not provided")

        placement = credentials.get("placement") or "header"
        if placement not in PLACEMENTS:
            placement = "header"
        key_name = str(credentials.get("keyName") or _DEFAULT_KEY_NAMES[placement])
        prefix = "" if placement == "query" else str(credentials.get("prefix") or "")

        values = {key_name: f"{prefix}{api_key}"}
        if credentials.get("apiSecret"):
            secret_name = str(credentials.get("secretName") or _DEFAULT_SECRET_NAMES[placement])
            values[secret_name] = str(credentials["apiSecret"])

        if placement == "query":
            return InjectedAuth(query_params=values)
        if placement == "cookie":
            pairs = [f"{name}={value}" for name, value in values.items()]
            header = "Cookie"
            for name, value in context.headers.items():
                if name.lower() == "cookie":
                    header = name
                    pairs.insert(0, value)
                    break
            return InjectedAuth(headers={header: "; ".join(pairs)})
        return InjectedAuth(headers=values)

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        """Report whether a key is configured; API keys cannot be checked without a target URL."""
        configured = bool(credentials.get("apiKey"))
        return ProtocolHealthCheckResult(
            healthy=configured,
            message="API key configured" if configured else "API key not configured",
            token_status=TokenStatus.VALID if configured else TokenStatus.MISSING,
            token_expires_in=-1,
            can_refresh=False,
        )
