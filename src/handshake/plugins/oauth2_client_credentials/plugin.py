"""OAuth 2.0 Client Credentials protocol module.

This module provides :class:`ClientCredentialsModule`, which implements the
``oauth2-client-credentials`` protocol: the non-interactive Client
Credentials grant (:rfc:`6749` section 4.4), exchanging ``clientId`` and
``clientSecret`` for an access token at ``tokenUrl``.

There is no user, no redirect and no refresh token. "Refreshing" means
asking for a new token with the same client credentials, which
:meth:`ClientCredentialsModule.execute_request` does by itself when the
stored token is missing, within 60 seconds of expiry, or rejected with a
401. New tokens are handed back in ``updated_credentials``.

See Also:
    :mod:`handshake.plugins.oauth2_auth_code` for the interactive
    Authorization Code flow.
"""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime
from typing import Any, Optional

from handshake.client.response import (
    build_result,
    elapsed_ms,
    failure_result,
    json_or_empty,
    provider_error,
)
from handshake.exceptions import ConfigurationError, HandshakeError, TokenError
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
    ProtocolExecutionResult,
    ProtocolFieldDefinition,
    ProtocolHealthCheckResult,
    ProtocolModuleMetadata,
    ProtocolTokenRefreshResult,
    TokenStatus,
)
from handshake.protocols.base import ProtocolModule, expiry_datetime, json_mapping
from handshake.protocols.oauth2 import EXPIRY_BUFFER_MS, expires_at_seconds, parse_scopes

logger = logging.getLogger(__name__)

_METADATA = ProtocolModuleMetadata(
    type="oauth2-client-credentials",
    display_name="Client Credentials",
    description="Machine-to-machine authentication without user context.",
    version="1.0.0",
    documentation_url="https://datatracker.ietf.org/doc/html/rfc6749#section-4.4",
    icon="server",
    capabilities=ProtocolCapabilities(
        supports_redirect_flow=False,
        supports_token_refresh=True,
        supports_token_revocation=False,
        supports_scopes=True,
        supports_offline_access=True,
        requires_server_side=True,
        browser_compatible=False,
        supports_auto_injection=True,
    ),
    use_cases=[
        "Backend services and daemons",
        "Scheduled jobs",
        "Service-to-service APIs",
    ],
    example_platforms=["Auth0", "Okta", "Microsoft Entra ID", "Keycloak"],
)


def _now() -> float:
    return time.time()


def _basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}"
    return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")


class ClientCredentialsModule(ProtocolModule):
    """Obtain and inject client-credentials access tokens."""

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return _METADATA

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="clientId",
                label="Client ID",
                type=FieldType.TEXT,
                required=True,
                description="The client identifier issued by the provider",
                group="credentials",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="clientSecret",
                label="Client Secret",
                type=FieldType.SECRET,
                required=True,
                sensitive=True,
                description="Keep it out of shared profiles; env: references work here.",
                group="credentials",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="tokenUrl",
                label="Token URL",
                type=FieldType.URL,
                required=True,
                placeholder="https://provider.com/oauth/token",
                group="credentials",
                order=3,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="scopes",
                label="Scopes",
                type=FieldType.SCOPES,
                placeholder="read:users write:users",
                group="authorization",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="audience",
                label="Audience",
                type=FieldType.TEXT,
                description="API identifier some providers require (Auth0).",
                group="authorization",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="clientAuthMethod",
                label="Client Authentication Method",
                type=FieldType.SELECT,
                default_value="client_secret_post",
                options=[
                    FieldOption(value="client_secret_post", label="POST Body"),
                    FieldOption(value="client_secret_basic", label="HTTP Basic Auth"),
                ],
                pattern=r"^client_secret_(basic|post)$",
                pattern_error="Unsupported client authentication method",
                group="credentials",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="additionalTokenParams",
                label="Additional Token Parameters",
                type=FieldType.JSON,
                group="advanced",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="accessToken",
                label="Access Token",
                type=FieldType.SECRET,
                sensitive=True,
                group="tokens",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="tokenExpiresAt",
                label="Token Expires At",
                type=FieldType.HIDDEN,
                group="tokens",
                order=2,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(id="credentials", label="Client Credentials"),
            FieldGroup(id="authorization", label="Authorization"),
            FieldGroup(
                id="tokens", label="Tokens", collapsible=True, default_collapsed=True
            ),
            FieldGroup(
                id="advanced", label="Advanced", collapsible=True, default_collapsed=True
            ),
        ]

    # ------------------------------------------------------------------ #
    # Token endpoint
    # ------------------------------------------------------------------ #

    async def fetch_token(self, credentials: dict[str, Any]) -> dict[str, Any]:
        """Run the client-credentials grant.

        Returns:
            The credential delta to persist: ``accessToken``, plus
            ``tokenExpiresAt``, ``tokenType`` and ``scopes`` when the
            provider sends them.

        Raises:
            ConfigurationError: If ``tokenUrl`` is missing or
                ``additionalTokenParams`` is not a JSON object.
            TokenError: If the provider rejects the request or answers
                without an ``access_token``.
            TransportError: If the token endpoint cannot be reached.
        """
        token_url = str(credentials.get("tokenUrl") or "")
        if not token_url:
            raise ConfigurationError("Token URL is required")

        client_id = str(credentials.get("clientId") or "")
        client_secret = str(credentials.get("clientSecret") or "")
        body: dict[str, str] = {"grant_type": "client_credentials"}
        headers: dict[str, str] = {}
        if credentials.get("clientAuthMethod") == "client_secret_basic":
            headers["Authorization"] = _basic_auth(client_id, client_secret)
        else:
            body["client_id"] = client_id
            body["client_secret"] = client_secret

        scopes = parse_scopes(credentials.get("scopes"))
        if scopes:
            body["scope"] = " ".join(scopes)
        if credentials.get("audience"):
            body["audience"] = str(credentials["audience"])
        body.update(
            json_mapping(credentials.get("additionalTokenParams"), "Additional token parameters")
        )

        response = await self._transport.post_form(token_url, body, headers=headers)
        if not response.is_success:
            self._status = ModuleStatus.ERROR
            raise TokenError(
                provider_error(response, f"Token request failed: {response.status_code}"),
                requires_reauth=response.status_code in (400, 401),
            )

        data = json_or_empty(response)
        if not data.get("access_token"):
            raise TokenError("Token response did not include an access_token")

        self._status = ModuleStatus.AUTHENTICATED
        logger.info("Client credentials token obtained from %s", token_url)
        delta: dict[str, Any] = {"accessToken": data["access_token"]}
        if data.get("expires_in"):
            delta["tokenExpiresAt"] = int(_now()) + int(data["expires_in"])
        if data.get("token_type"):
            delta["tokenType"] = data["token_type"]
        if data.get("scope"):
            delta["scopes"] = data["scope"]
        return delta

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        """Validate the configuration and fetch a token in a single step."""
        validation = self.validate_credentials(credentials)
        if not validation.valid:
            return self._error_step(
                1, 1, "Configuration Error",
                "Please fix the configuration errors.", validation.error_summary(),
            )

        try:
            delta = await self.fetch_token(credentials)
        except HandshakeError as exc:
            self._status = ModuleStatus.ERROR
            return self._error_step(
                1, 1, "Token Request Failed",
                "The token endpoint did not issue an access token.", str(exc),
            )

        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=1,
            type=FlowStepType.COMPLETE,
            title="Authentication Successful",
            description="Access token obtained.",
            data={"credentials": delta},
        )

    async def refresh_tokens(self, credentials: dict[str, Any]) -> ProtocolTokenRefreshResult:
        """Request a new token with the same client credentials."""
        try:
            delta = await self.fetch_token(credentials)
        except TokenError as exc:
            return ProtocolTokenRefreshResult(
                success=False, error=str(exc), requires_reauth=exc.requires_reauth
            )
        except HandshakeError as exc:
            return ProtocolTokenRefreshResult(success=False, error=str(exc))

        scope = delta.get("scopes")
        return ProtocolTokenRefreshResult(
            success=True,
            access_token=delta["accessToken"],
            expires_at=delta.get("tokenExpiresAt"),
            token_type=delta.get("tokenType"),
            scopes=scope.split(" ") if isinstance(scope, str) else None,
        )

    # ------------------------------------------------------------------ #
    # Expiry
    # ------------------------------------------------------------------ #

    def is_token_expired(self, credentials: dict[str, Any]) -> bool:
        expires_at = expires_at_seconds(credentials)
        if expires_at is None:
            return False
        return _now() * 1000 > expires_at * 1000 - EXPIRY_BUFFER_MS

    def get_token_expiration_time(self, credentials: dict[str, Any]) -> Optional[datetime]:
        return expiry_datetime(expires_at_seconds(credentials))

    # ------------------------------------------------------------------ #
    # Request execution
    # ------------------------------------------------------------------ #

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        token = context.credentials.get("accessToken")
        if not token:
            raise TokenError("No access token available")
        token_type = str(context.credentials.get("tokenType") or "Bearer")
        if token_type.lower() == "bearer":
            token_type = "Bearer"
        return InjectedAuth(headers={"Authorization": f"{token_type} {token}"})

    async def execute_request(self, context: ProtocolExecutionContext) -> ProtocolExecutionResult:
        """Send an authenticated request, fetching a token first when needed.

        A token is requested before sending when none is stored or it is
        about to expire. When a *stored* token is answered with 401, one new
        token is requested and the request is retried once.
        """
        started = time.perf_counter()
        credentials = dict(context.credentials)
        delta: Optional[dict[str, Any]] = None

        if not credentials.get("accessToken") or self.is_token_expired(credentials):
            try:
                delta = await self.fetch_token(credentials)
            except HandshakeError as exc:
                logger.warning("Client credentials token request failed: %s", exc)
                return failure_result(str(exc), exc.code, started, status_code=401)
            credentials.update(delta)

        ctx = context.model_copy(update={"credentials": credentials})
        try:
            response = await self._send(ctx, await self.inject_authentication(ctx))
        except HandshakeError as exc:
            result = failure_result(str(exc), exc.code, started)
            if delta is not None:
                result.credentials_refreshed = True
                result.updated_credentials = delta
            return result

        if response.status_code == 401 and delta is None:
            logger.info("Stored client credentials token rejected, requesting a new one")
            try:
                delta = await self.fetch_token(credentials)
            except HandshakeError as exc:
                result = build_result(response, started)
                result.error = f"{result.error} (token request failed: {exc})"
                result.error_code = exc.code
                return result
            credentials.update(delta)
            ctx = context.model_copy(update={"credentials": credentials})
            try:
                response = await self._send(ctx, await self.inject_authentication(ctx))
            except HandshakeError as exc:
                result = failure_result(str(exc), exc.code, started)
                result.credentials_refreshed = True
                result.updated_credentials = delta
                return result

        return build_result(
            response, started,
            credentials_refreshed=delta is not None, updated_credentials=delta,
        )

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        """Check the client credentials by requesting a token."""
        started = time.perf_counter()
        try:
            delta = await self.fetch_token(credentials)
        except HandshakeError as exc:
            return ProtocolHealthCheckResult(
                healthy=False,
                message=str(exc),
                latency_ms=elapsed_ms(started),
                token_status=TokenStatus.INVALID,
                token_expires_in=0,
                can_refresh=True,
                details={"code": exc.code},
            )
        return ProtocolHealthCheckResult(
            healthy=True,
            message="Successfully obtained access token",
            latency_ms=elapsed_ms(started),
            token_status=TokenStatus.VALID,
            token_expires_in=self._seconds_until_expiry(delta),
            can_refresh=True,
        )
