"""OAuth 2.0 Authorization Code protocol module for confidential clients.

This module provides :class:`OAuth2AuthCodeModule`, which implements the
``oauth2-auth-code`` protocol (:rfc:`6749` section 4.1) for clients that can
keep a ``client_secret`` on a server:

1. Step 1 generates a hex ``state`` (256 bits) and an OpenID Connect
   ``nonce`` (128 bits, only sent when the scopes include ``openid``) and
   returns the authorization URL.
2. :meth:`~OAuth2AuthCodeModule.handle_callback` requires the ``state`` to
   match exactly.
3. The code is exchanged with the client authenticating by one of:

   * ``client_secret_basic`` (default) -- ``Authorization: Basic``.
   * ``client_secret_post`` -- ``client_id`` / ``client_secret`` in the body.
   * ``client_secret_jwt`` -- an HS256 ``client_assertion`` signed with the
     secret.

Health checks prefer token introspection (:rfc:`7662`) when an endpoint is
configured, then the user info endpoint, then the token's expiry.

See Also:
    :class:`handshake.protocols.oauth2.OAuth2Module` for the shared flow,
    refresh, revocation and execution logic.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any

from handshake.client.response import json_or_empty
from handshake.exceptions import CsrfError, HandshakeError
from handshake.models import (
    FieldGroup,
    FieldOption,
    FieldType,
    IntrospectionResult,
    ProtocolCapabilities,
    ProtocolFieldDefinition,
    ProtocolHealthCheckResult,
    ProtocolModuleMetadata,
    ShowWhen,
    TokenStatus,
)
from handshake.pkce import base64url_encode
from handshake.protocols.flow import FlowSecrets
from handshake.protocols.oauth2 import OAuth2Module, parse_scopes

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
CLIENT_ASSERTION_LIFETIME = 300

_METADATA = ProtocolModuleMetadata(
    type="oauth2-auth-code",
    display_name="OAuth 2.0 Authorization Code",
    description=(
        "OAuth 2.0 Authorization Code flow for confidential clients holding a "
        "client_secret. Requires a server-side component."
    ),
    version="1.0.0",
    documentation_url="https://datatracker.ietf.org/doc/html/rfc6749#section-4.1",
    icon="key-round",
    capabilities=ProtocolCapabilities(
        supports_redirect_flow=True,
        supports_token_refresh=True,
        supports_token_revocation=True,
        supports_scopes=True,
        supports_incremental_auth=True,
        supports_offline_access=True,
        supports_pkce=False,
        requires_server_side=True,
        browser_compatible=False,
        supports_request_signing=False,
        supports_auto_injection=True,
    ),
    use_cases=[
        "Server-side web applications",
        "Backend API integrations",
        "Service-to-service authentication",
        "Traditional web app authentication",
        "Enterprise integrations",
    ],
    example_platforms=[
        "Salesforce",
        "HubSpot",
        "Stripe Connect",
        "QuickBooks",
        "Xero",
        "DocuSign",
        "Box",
        "Mailchimp",
    ],
)


def build_client_assertion(client_id: str, client_secret: str, audience: str) -> str:
    """Build an HS256 ``client_secret_jwt`` assertion.

    The claims are ``iss`` and ``sub`` (the client id), ``aud`` (the token
    endpoint), a random ``jti``, ``iat`` and ``exp = iat + 300``.

    Note:
        Only the symmetric HS256 variant is supported; ``private_key_jwt``
        (RS256) is not.
    """
    now = int(time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": secrets.token_hex(32),
        "exp": now + CLIENT_ASSERTION_LIFETIME,
        "iat": now,
    }
    signing_input = ".".join(
        base64url_encode(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (header, payload)
    )
    signature = hmac.new(
        client_secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256
    ).digest()
    return f"{signing_input}.{base64url_encode(signature)}"


def _basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}"
    return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")


class OAuth2AuthCodeModule(OAuth2Module):
    """OAuth 2.0 Authorization Code flow for confidential clients."""

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
                description="The client secret. Keep it server-side.",
                group="credentials",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="authorizationUrl",
                label="Authorization URL",
                type=FieldType.URL,
                required=True,
                placeholder="https://provider.com/oauth/authorize",
                group="endpoints",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="tokenUrl",
                label="Token URL",
                type=FieldType.URL,
                required=True,
                placeholder="https://provider.com/oauth/token",
                group="endpoints",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="redirectUri",
                label="Redirect URI",
                type=FieldType.URL,
                required=True,
                description="Must match the URI registered with the provider",
                group="credentials",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="scopes",
                label="Scopes",
                type=FieldType.SCOPES,
                required=True,
                placeholder="openid profile email offline_access",
                group="authorization",
                order=1,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="clientAuthMethod",
                label="Client Authentication Method",
                type=FieldType.SELECT,
                default_value="client_secret_basic",
                options=[
                    FieldOption(value="client_secret_basic", label="HTTP Basic Auth"),
                    FieldOption(value="client_secret_post", label="POST Body"),
                    FieldOption(value="client_secret_jwt", label="JWT Assertion"),
                ],
                pattern=r"^client_secret_(basic|post|jwt)$",
                pattern_error="Unsupported client authentication method",
                group="credentials",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="userInfoUrl",
                label="User Info URL",
                type=FieldType.URL,
                group="endpoints",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="revocationUrl",
                label="Revocation URL",
                type=FieldType.URL,
                group="endpoints",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="introspectionUrl",
                label="Introspection URL",
                type=FieldType.URL,
                description="Endpoint to introspect/validate tokens.",
                placeholder="https://provider.com/oauth/introspect",
                group="endpoints",
                order=5,
            ),
            ProtocolFieldDefinition(
                id="audience",
                label="Audience",
                type=FieldType.TEXT,
                group="authorization",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="additionalAuthParams",
                label="Additional Authorization Parameters",
                type=FieldType.JSON,
                group="advanced",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="additionalTokenParams",
                label="Additional Token Parameters",
                type=FieldType.JSON,
                group="advanced",
                order=2,
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
                id="refreshToken",
                label="Refresh Token",
                type=FieldType.SECRET,
                sensitive=True,
                group="tokens",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="tokenExpiresAt",
                label="Token Expires At",
                type=FieldType.HIDDEN,
                group="tokens",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="idToken",
                label="ID Token",
                type=FieldType.SECRET,
                sensitive=True,
                show_when=ShowWhen(field="scopes", value="openid", operator="contains"),
                group="tokens",
                order=4,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(
                id="credentials",
                label="Client Credentials",
                description="Never expose the client secret in browser code.",
            ),
            FieldGroup(id="endpoints", label="OAuth Endpoints"),
            FieldGroup(id="authorization", label="Authorization"),
            FieldGroup(
                id="tokens", label="Tokens", collapsible=True, default_collapsed=True
            ),
            FieldGroup(
                id="advanced", label="Advanced", collapsible=True, default_collapsed=True
            ),
        ]

    # ------------------------------------------------------------------ #
    # OAuth2Module hooks
    # ------------------------------------------------------------------ #

    def _begin_authorization(
        self, credentials: dict[str, Any]
    ) -> tuple[FlowSecrets, str, dict[str, Any]]:
        state = secrets.token_hex(32)
        nonce = secrets.token_hex(16)
        scopes = parse_scopes(credentials.get("scopes"))
        redirect_uri = str(credentials["redirectUri"])

        params = {
            "client_id": str(credentials["clientId"]),
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
        }
        if "openid" in scopes:
            params["nonce"] = nonce

        flow = FlowSecrets(
            state=state,
            started_at=int(time.time() * 1000),
            redirect_uri=redirect_uri,
            scopes=scopes,
            nonce=nonce,
        )
        return flow, self._authorization_url(credentials, params), {"state": state}

    def _check_state(self, received: str, expected: str) -> None:
        if not hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8")):
            raise CsrfError("State validation failed")

    def _client_auth(
        self, credentials: dict[str, Any], endpoint: str
    ) -> tuple[dict[str, str], dict[str, str]]:
        client_id = str(credentials.get("clientId") or "")
        client_secret = str(credentials.get("clientSecret") or "")
        method = credentials.get("clientAuthMethod") or "client_secret_basic"

        if method == "client_secret_post":
            return {}, {"client_id": client_id, "client_secret": client_secret}
        if method == "client_secret_jwt":
            audience = str(credentials.get("tokenUrl") or endpoint)
            return {}, {
                "client_id": client_id,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": build_client_assertion(client_id, client_secret, audience),
            }
        return {"Authorization": _basic_auth(client_id, client_secret)}, {}

    # ------------------------------------------------------------------ #
    # Introspection and health
    # ------------------------------------------------------------------ #

    async def introspect_token(self, credentials: dict[str, Any]) -> IntrospectionResult:
        """Ask the introspection endpoint whether the access token is active.

        The request always authenticates with HTTP Basic, whatever
        ``clientAuthMethod`` says.

        Returns:
            The introspection answer. ``error`` is set when the endpoint is
            missing, unreachable, or answers with a non-2xx status.
        """
        url = credentials.get("introspectionUrl")
        if not url:
            return IntrospectionResult(active=False, error="No introspection endpoint configured")

        headers = {
            "Authorization": _basic_auth(
                str(credentials.get("clientId") or ""),
                str(credentials.get("clientSecret") or ""),
            )
        }
        body = {
            "token": str(credentials.get("accessToken") or ""),
            "token_type_hint": "access_token",
        }
        try:
            response = await self._transport.post_form(str(url), body, headers=headers)
        except HandshakeError as exc:
            return IntrospectionResult(active=False, error=str(exc))

        if not response.is_success:
            return IntrospectionResult(
                active=False, error=f"Introspection failed: {response.status_code}"
            )

        data = json_or_empty(response)
        return IntrospectionResult(
            active=data.get("active") is True,
            scope=data.get("scope"),
            client_id=data.get("client_id"),
            exp=data.get("exp"),
            sub=data.get("sub"),
        )

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        can_refresh = bool(credentials.get("refreshToken"))
        if (
            credentials.get("introspectionUrl")
            and self._token_status(credentials) == TokenStatus.VALID
        ):
            started = time.perf_counter()
            introspection = await self.introspect_token(credentials)
            latency = (time.perf_counter() - started) * 1000
            if introspection.active:
                expires_in = (
                    introspection.exp - int(time.time())
                    if introspection.exp
                    else self._seconds_until_expiry(credentials)
                )
                return ProtocolHealthCheckResult(
                    healthy=True,
                    message="Token is valid (verified via introspection)",
                    latency_ms=latency,
                    token_status=TokenStatus.VALID,
                    token_expires_in=expires_in,
                    can_refresh=can_refresh,
                )
            if introspection.error is None:
                return ProtocolHealthCheckResult(
                    healthy=False,
                    message="Token is inactive",
                    latency_ms=latency,
                    token_status=TokenStatus.INVALID,
                    token_expires_in=0,
                    can_refresh=can_refresh,
                )
            logger.debug("Introspection inconclusive: %s", introspection.error)

        return await super().health_check(credentials)
