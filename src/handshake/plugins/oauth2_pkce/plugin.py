"""OAuth 2.0 Authorization Code + PKCE protocol module.

This module provides :class:`OAuth2PkceModule`, which implements the
``oauth2-pkce`` protocol:

1. Step 1 validates the configuration, generates a ``code_verifier``, its
   ``S256`` challenge and a self-describing ``state`` token
   (:mod:`handshake.pkce`), and returns the authorization URL.
2. Step 2 waits for the provider to redirect back.
3. :meth:`~OAuth2PkceModule.handle_callback` checks the ``state`` (exact
   match and 10-minute age limit) and
   :meth:`~OAuth2PkceModule.perform_token_exchange` redeems the code with
   the verifier.

The client authenticates with ``client_id`` only; no secret is ever sent.

See Also:
    :class:`handshake.protocols.oauth2.OAuth2Module` for the shared flow,
    refresh, revocation and execution logic.
"""

from __future__ import annotations

import time
from typing import Any, Optional

from handshake.exceptions import TokenError
from handshake.models import (
    FieldGroup,
    FieldType,
    ProtocolCapabilities,
    ProtocolFieldDefinition,
    ProtocolModuleMetadata,
)
from handshake.pkce import generate_pkce_values, generate_state, validate_state
from handshake.protocols.flow import FlowSecrets, flow_secrets
from handshake.protocols.oauth2 import OAuth2Module, parse_scopes

_METADATA = ProtocolModuleMetadata(
    type="oauth2-pkce",
    display_name="OAuth 2.0 with PKCE",
    description=(
        "OAuth 2.0 Authorization Code flow with Proof Key for Code Exchange "
        "(PKCE). Recommended for public clients that cannot keep a secret."
    ),
    version="1.0.0",
    documentation_url="https://datatracker.ietf.org/doc/html/rfc7636",
    icon="shield-check",
    capabilities=ProtocolCapabilities(
        supports_redirect_flow=True,
        supports_token_refresh=True,
        supports_token_revocation=True,
        supports_scopes=True,
        supports_incremental_auth=True,
        supports_offline_access=True,
        supports_pkce=True,
        requires_server_side=False,
        browser_compatible=True,
        supports_request_signing=False,
        supports_auto_injection=True,
    ),
    use_cases=[
        "Single-page applications",
        "Mobile and desktop applications",
        "Public clients without a client secret",
    ],
    example_platforms=["Google", "Microsoft", "Auth0", "Okta", "Spotify", "Twitter/X"],
)


class OAuth2PkceModule(OAuth2Module):
    """OAuth 2.0 Authorization Code flow with PKCE for public clients."""

    @property
    def metadata(self) -> ProtocolModuleMetadata:
        return _METADATA

    def get_required_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="authorizationUrl",
                label="Authorization URL",
                type=FieldType.URL,
                required=True,
                description="The provider's authorization endpoint",
                placeholder="https://auth.example.com/oauth/authorize",
                group="endpoints",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="tokenUrl",
                label="Token URL",
                type=FieldType.URL,
                required=True,
                description="The provider's token endpoint",
                placeholder="https://auth.example.com/oauth/token",
                group="endpoints",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="clientId",
                label="Client ID",
                type=FieldType.TEXT,
                required=True,
                description="The public client identifier issued by the provider",
                group="credentials",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="redirectUri",
                label="Redirect URI",
                type=FieldType.URL,
                required=True,
                description="Where the provider sends the user after authorization",
                placeholder="http://localhost:8765/callback",
                group="credentials",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="scopes",
                label="Scopes",
                type=FieldType.SCOPES,
                required=True,
                description="Permissions to request, separated by spaces or commas",
                placeholder="openid profile email",
                group="authorization",
                order=1,
            ),
        ]

    def get_optional_fields(self) -> list[ProtocolFieldDefinition]:
        return [
            ProtocolFieldDefinition(
                id="userInfoUrl",
                label="User Info URL",
                type=FieldType.URL,
                description="Endpoint used to verify the access token in health checks",
                group="endpoints",
                order=3,
            ),
            ProtocolFieldDefinition(
                id="revocationUrl",
                label="Revocation URL",
                type=FieldType.URL,
                description="Token revocation endpoint (RFC 7009)",
                group="endpoints",
                order=4,
            ),
            ProtocolFieldDefinition(
                id="audience",
                label="Audience",
                type=FieldType.TEXT,
                description="API audience, required by some providers such as Auth0",
                group="authorization",
                order=2,
            ),
            ProtocolFieldDefinition(
                id="additionalAuthParams",
                label="Additional Authorization Parameters",
                type=FieldType.JSON,
                description="Extra query parameters for the authorization URL",
                placeholder='{"prompt": "consent"}',
                group="advanced",
                order=1,
            ),
            ProtocolFieldDefinition(
                id="additionalTokenParams",
                label="Additional Token Parameters",
                type=FieldType.JSON,
                description="Extra body parameters for the token request",
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
                group="tokens",
                order=4,
            ),
        ]

    def get_field_groups(self) -> list[FieldGroup]:
        return [
            FieldGroup(id="credentials", label="Client Credentials"),
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
        pkce = generate_pkce_values()
        state = generate_state()
        scopes = parse_scopes(credentials.get("scopes"))
        redirect_uri = str(credentials["redirectUri"])

        url = self._authorization_url(
            credentials,
            {
                "client_id": str(credentials["clientId"]),
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(scopes),
                "state": state,
                "code_challenge": pkce.code_challenge,
                "code_challenge_method": pkce.code_challenge_method,
            },
        )
        secrets = FlowSecrets(
            state=state,
            started_at=int(time.time() * 1000),
            redirect_uri=redirect_uri,
            scopes=scopes,
            code_verifier=pkce.code_verifier,
        )
        data = {
            "state": state,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": pkce.code_challenge_method,
        }
        return secrets, url, data

    def _check_state(self, received: str, expected: str) -> None:
        validate_state(received, expected)

    def _client_auth(
        self, credentials: dict[str, Any], endpoint: str
    ) -> tuple[dict[str, str], dict[str, str]]:
        return {}, {"client_id": str(credentials.get("clientId") or "")}

    def _token_exchange_fields(
        self, credentials: dict[str, Any], code_verifier: Optional[str]
    ) -> dict[str, str]:
        secrets = flow_secrets(self._flow)
        verifier = code_verifier or (secrets.code_verifier if secrets else None)
        if not verifier:
            raise TokenError(
                "No code verifier available. Start the authentication flow first."
            )
        return {"code_verifier": verifier}
