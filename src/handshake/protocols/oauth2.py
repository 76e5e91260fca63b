"""Shared behaviour of the OAuth 2.0 authorization-code modules.

:class:`OAuth2Module` implements everything the PKCE (public client) and
Authorization Code (confidential client) modules have in common:

- the 3-step state machine (redirect, await callback, complete) on top of
  :mod:`handshake.protocols.flow`;
- callback validation (provider ``error``, ``state`` binding, ``code``);
- the token-endpoint calls for code exchange, refresh and revocation;
- expiry checks with a 60-second safety buffer;
- bearer injection and execution with *one* refresh-and-retry on 401.

Subclasses decide how the flow starts (:meth:`OAuth2Module._begin_authorization`),
how the ``state`` is verified (:meth:`OAuth2Module._check_state`) and how the
client authenticates to the token and revocation endpoints
(:meth:`OAuth2Module._client_auth`).

See Also:
    :mod:`handshake.plugins.oauth2_pkce` and
    :mod:`handshake.plugins.oauth2_auth_code`.
"""

from __future__ import annotations

import logging
import math
import re
import time
from abc import abstractmethod
from datetime import datetime
from typing import Any, Optional

import httpx

from handshake.client.response import (
    build_result,
    elapsed_ms,
    failure_result,
    json_or_empty,
    provider_error,
)
from handshake.exceptions import (
    AuthorizationDeniedError,
    ConfigurationError,
    CsrfError,
    HandshakeError,
    TokenError,
)
from handshake.models import (
    FlowStepType,
    InjectedAuth,
    ModuleStatus,
    ProtocolAuthenticationFlow,
    ProtocolExecutionContext,
    ProtocolExecutionResult,
    ProtocolHealthCheckResult,
    ProtocolTokenRefreshResult,
    RevocationResult,
    TokenStatus,
)
from handshake.protocols.base import ProtocolModule, expiry_datetime, json_mapping
from handshake.protocols.flow import (
    AwaitingCallback,
    AwaitingRedirect,
    Authenticated,
    Failed,
    FlowSecrets,
    Idle,
    flow_secrets,
)

logger = logging.getLogger(__name__)

TOTAL_STEPS = 3
EXPIRY_BUFFER_MS = 60_000


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_scopes(scopes: Any) -> list[str]:
    """Normalise a scope value given as a list or a whitespace/comma separated string."""
    if not scopes:
        return []
    if isinstance(scopes, (list, tuple)):
        return [str(s) for s in scopes if s]
    if isinstance(scopes, str):
        return [s for s in re.split(r"[\s,]+", scopes) if s]
    return []


def expires_at_seconds(credentials: dict[str, Any]) -> Optional[float]:
    """Return ``tokenExpiresAt`` as unix seconds, or ``None`` when unset or unreadable."""
    raw = credentials.get("tokenExpiresAt")
    if raw in (None, "", 0):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class OAuth2Module(ProtocolModule):
    """Base class for OAuth 2.0 authorization-code protocol modules."""

    # ------------------------------------------------------------------ #
    # Subclass hooks
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _begin_authorization(
        self, credentials: dict[str, Any]
    ) -> tuple[FlowSecrets, str, dict[str, Any]]:
        """Generate flow secrets and return ``(secrets, authorization_url, step_data)``."""
        ...

    @abstractmethod
    def _check_state(self, received: str, expected: str) -> None:
        """Raise :class:`~handshake.exceptions.CsrfError` unless *received* is acceptable."""
        ...

    @abstractmethod
    def _client_auth(
        self, credentials: dict[str, Any], endpoint: str
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Return ``(headers, body_fields)`` authenticating the client to *endpoint*."""
        ...

    def _token_exchange_fields(
        self, credentials: dict[str, Any], code_verifier: Optional[str]
    ) -> dict[str, str]:
        """Extra body fields for the authorization-code grant."""
        return {}

    # ------------------------------------------------------------------ #
    # Authentication flow
    # ------------------------------------------------------------------ #

    async def authenticate(
        self, credentials: dict[str, Any], step: Optional[int] = None
    ) -> ProtocolAuthenticationFlow:
        step = step or 1
        if step == 1:
            return self._start(credentials)
        if step == 2:
            return self._await_callback()
        if step == 3:
            return self._complete(credentials)
        return self._error_step(
            1, TOTAL_STEPS, "Invalid Step", "Unknown authentication step.",
            f"Invalid step: {step}",
        )

    def _start(self, credentials: dict[str, Any]) -> ProtocolAuthenticationFlow:
        validation = self.validate_credentials(credentials)
        if not validation.valid:
            self._flow = Failed(validation.error_summary())
            return self._error_step(
                1, TOTAL_STEPS, "Configuration Error",
                "Please fix the configuration errors.", validation.error_summary(),
            )

        try:
            secrets, url, data = self._begin_authorization(credentials)
        except HandshakeError as exc:
            self._flow = Failed(str(exc))
            self._status = ModuleStatus.ERROR
            return self._error_step(
                1, TOTAL_STEPS, "Authorization Setup Failed",
                "Failed to prepare the authorization request.", str(exc),
            )

        if not isinstance(self._flow, Idle):
            logger.debug("%s: replacing in-progress flow", self.protocol_type)
        self._flow = AwaitingRedirect(secrets=secrets)
        self._status = ModuleStatus.AUTHENTICATING
        logger.info("%s: authorization flow started", self.protocol_type)
        return ProtocolAuthenticationFlow(
            step=1,
            total_steps=TOTAL_STEPS,
            type=FlowStepType.REDIRECT,
            title="Authorize Application",
            description="Open the link below to authorize with your OAuth provider.",
            redirect_url=url,
            data=data,
        )

    def _await_callback(self) -> ProtocolAuthenticationFlow:
        if isinstance(self._flow, AwaitingRedirect):
            self._flow = AwaitingCallback(secrets=self._flow.secrets)
        return ProtocolAuthenticationFlow(
            step=2,
            total_steps=TOTAL_STEPS,
            type=FlowStepType.CALLBACK,
            title="Awaiting Authorization",
            description="Complete the authorization in your browser.",
        )

    def _complete(self, credentials: dict[str, Any]) -> ProtocolAuthenticationFlow:
        if not credentials.get("accessToken"):
            self._flow = Failed("Missing access token")
            return self._error_step(
                3, TOTAL_STEPS, "Authentication Failed",
                "No access token received.", "Missing access token",
            )
        self._flow = Authenticated()
        self._status = ModuleStatus.AUTHENTICATED
        return ProtocolAuthenticationFlow(
            step=3,
            total_steps=TOTAL_STEPS,
            type=FlowStepType.COMPLETE,
            title="Authentication Successful",
            description="You are now authenticated.",
            data={
                "has_access_token": True,
                "has_refresh_token": bool(credentials.get("refreshToken")),
                "scopes": parse_scopes(credentials.get("scopes")),
            },
        )

    async def handle_callback(
        self, params: dict[str, str], expected_state: Optional[str] = None
    ) -> ProtocolAuthenticationFlow:
        """Validate the provider redirect.

        Rejects provider errors (user denial), a missing or mismatched
        ``state`` and a missing ``code``. On success returns a
        ``token-exchange`` step carrying the code; the exchange itself is a
        separate call to :meth:`perform_token_exchange`.

        Args:
            params: Query parameters of the redirect.
            expected_state: The state to compare against. Defaults to the
                state of the flow in progress.
        """
        if params.get("error"):
            denied = AuthorizationDeniedError(params["error"], params.get("error_description"))
            self._flow = Failed(str(denied))
            self._status = ModuleStatus.ERROR
            return self._error_step(
                2, TOTAL_STEPS, "Authorization Denied",
                params.get("error_description") or "The user denied authorization.",
                str(denied),
            )

        secrets = flow_secrets(self._flow)
        expected = expected_state or (secrets.state if secrets else None)
        received = params.get("state")
        try:
            if not received:
                raise CsrfError("Missing state parameter")
            if not expected:
                raise CsrfError("No authorization flow in progress")
            self._check_state(received, expected)
        except CsrfError as exc:
            logger.warning("%s: state validation failed: %s", self.protocol_type, exc)
            return self._error_step(
                2, TOTAL_STEPS, "Invalid State",
                "State parameter mismatch. This could indicate a CSRF attack.", str(exc),
            )

        code = params.get("code")
        if not code:
            return self._error_step(
                2, TOTAL_STEPS, "Missing Authorization Code",
                "No authorization code received from provider.", "Missing code parameter",
            )

        if isinstance(self._flow, AwaitingRedirect):
            self._flow = AwaitingCallback(secrets=self._flow.secrets)
        return ProtocolAuthenticationFlow(
            step=2,
            total_steps=TOTAL_STEPS,
            type=FlowStepType.TOKEN_EXCHANGE,
            title="Authorization Received",
            description="Exchanging authorization code for tokens...",
            data={"code": code, "state": received},
        )

    def _authorization_url(self, credentials: dict[str, Any], params: dict[str, str]) -> str:
        params = dict(params)
        if credentials.get("audience"):
            params["audience"] = str(credentials["audience"])
        params.update(
            json_mapping(credentials.get("additionalAuthParams"), "Additional auth parameters")
        )
        url = httpx.URL(str(credentials["authorizationUrl"]))
        return str(url.copy_merge_params(params))

    # ------------------------------------------------------------------ #
    # Token endpoint
    # ------------------------------------------------------------------ #

    async def perform_token_exchange(
        self,
        credentials: dict[str, Any],
        code: str,
        code_verifier: Optional[str] = None,
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Returns:
            The credential delta to persist (``accessToken``, and when the
            provider sends them ``refreshToken``, ``tokenExpiresAt``,
            ``idToken``, ``tokenType``, ``scopes``).

        Raises:
            TokenError: If the provider rejects the exchange.
            TransportError: If the token endpoint cannot be reached.
        """
        token_url = str(credentials.get("tokenUrl") or "")
        if not token_url:
            raise ConfigurationError("Token URL is required")

        body: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": str(credentials.get("redirectUri") or ""),
        }
        body.update(self._token_exchange_fields(credentials, code_verifier))
        headers, auth_fields = self._client_auth(credentials, token_url)
        body.update(auth_fields)
        body.update(
            json_mapping(credentials.get("additionalTokenParams"), "Additional token parameters")
        )

        response = await self._transport.post_form(token_url, body, headers=headers)
        if not response.is_success:
            self._status = ModuleStatus.ERROR
            raise TokenError(
                provider_error(response, f"Token exchange failed: {response.status_code}")
            )

        data = json_or_empty(response)
        if not data.get("access_token"):
            raise TokenError("Token response did not include an access_token")

        self._flow = Authenticated()
        self._status = ModuleStatus.AUTHENTICATED
        logger.info("%s: authorization code exchanged", self.protocol_type)
        return self._token_delta(data)

    async def refresh_tokens(self, credentials: dict[str, Any]) -> ProtocolTokenRefreshResult:
        """Use ``refreshToken`` to obtain a new access token.

        A 400/401 answer means the refresh token itself is dead and is
        reported with ``requires_reauth=True``; any other failure is
        transient.
        """
        refresh_token = credentials.get("refreshToken")
        if not refresh_token:
            return ProtocolTokenRefreshResult(
                success=False, error="No refresh token available", requires_reauth=True
            )

        token_url = str(credentials.get("tokenUrl") or "")
        body: dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": str(refresh_token),
        }
        headers, auth_fields = self._client_auth(credentials, token_url)
        body.update(auth_fields)

        try:
            response = await self._transport.post_form(token_url, body, headers=headers)
        except HandshakeError as exc:
            logger.warning("%s: token refresh failed: %s", self.protocol_type, exc)
            return ProtocolTokenRefreshResult(success=False, error=str(exc))

        if not response.is_success:
            if response.status_code in (400, 401):
                self._status = ModuleStatus.EXPIRED
                return ProtocolTokenRefreshResult(
                    success=False,
                    error=provider_error(response, "Refresh token expired"),
                    requires_reauth=True,
                )
            return ProtocolTokenRefreshResult(
                success=False,
                error=provider_error(response, f"Refresh failed: {response.status_code}"),
            )

        data = json_or_empty(response)
        if not data.get("access_token"):
            return ProtocolTokenRefreshResult(
                success=False, error="Refresh response did not include an access_token"
            )

        expires_in = data.get("expires_in")
        scope = data.get("scope")
        logger.info("%s: access token refreshed", self.protocol_type)
        return ProtocolTokenRefreshResult(
            success=True,
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=int(_now_ms() / 1000) + int(expires_in) if expires_in else None,
            token_type=data.get("token_type"),
            scopes=scope.split(" ") if isinstance(scope, str) and scope else None,
        )

    async def revoke_tokens(self, credentials: dict[str, Any]) -> RevocationResult:
        """Revoke the access token. Any 2xx answer, including for an already revoked token, is success."""
        revocation_url = credentials.get("revocationUrl")
        if not revocation_url:
            return RevocationResult(success=False, error="No revocation endpoint configured")
        token = credentials.get("accessToken")
        if not token:
            return RevocationResult(success=False, error="No access token to revoke")

        body = {"token": str(token), "token_type_hint": "access_token"}
        headers, auth_fields = self._client_auth(credentials, str(revocation_url))
        body.update(auth_fields)
        try:
            response = await self._transport.post_form(str(revocation_url), body, headers=headers)
        except HandshakeError as exc:
            return RevocationResult(success=False, error=str(exc))

        if response.is_success:
            self._flow = Idle()
            self._status = ModuleStatus.UNINITIALIZED
            return RevocationResult(success=True)
        return RevocationResult(success=False, error=provider_error(response, "Revocation failed"))

    def _token_delta(self, data: dict[str, Any]) -> dict[str, Any]:
        delta: dict[str, Any] = {"accessToken": data["access_token"]}
        if data.get("refresh_token"):
            delta["refreshToken"] = data["refresh_token"]
        if data.get("expires_in"):
            delta["tokenExpiresAt"] = int(_now_ms() / 1000) + int(data["expires_in"])
        if data.get("id_token"):
            delta["idToken"] = data["id_token"]
        if data.get("token_type"):
            delta["tokenType"] = data["token_type"]
        if data.get("scope"):
            delta["scopes"] = data["scope"]
        return delta

    # ------------------------------------------------------------------ #
    # Expiry
    # ------------------------------------------------------------------ #

    def is_token_expired(self, credentials: dict[str, Any]) -> bool:
        """``True`` once we are within 60 seconds of ``tokenExpiresAt``.

        Credentials without an expiry are treated as not expired.
        """
        expires_at = expires_at_seconds(credentials)
        if expires_at is None:
            return False
        return _now_ms() > expires_at * 1000 - EXPIRY_BUFFER_MS

    def get_token_expiration_time(self, credentials: dict[str, Any]) -> Optional[datetime]:
        return expiry_datetime(expires_at_seconds(credentials))

    def _seconds_until_expiry(self, credentials: dict[str, Any]) -> int:
        expires_at = expires_at_seconds(credentials)
        if expires_at is None:
            return -1
        return math.floor(expires_at - _now_ms() / 1000)

    # ------------------------------------------------------------------ #
    # Request execution
    # ------------------------------------------------------------------ #

    async def inject_authentication(self, context: ProtocolExecutionContext) -> InjectedAuth:
        token = context.credentials.get("accessToken")
        if not token:
            raise TokenError("No access token available")
        return InjectedAuth(headers={"Authorization": f"Bearer {token}"})

    async def execute_request(self, context: ProtocolExecutionContext) -> ProtocolExecutionResult:
        """Send an authenticated request, refreshing tokens at most once.

        1. If the token is already expired, refresh before sending; a failed
           refresh returns a 401 ``TOKEN_EXPIRED`` result without sending.
        2. Otherwise send, and on a 401 with a refresh token present, refresh
           once and retry with the new token. The retry's outcome is
           returned as-is, even if it is another 401.

        Rotated tokens are returned in ``updated_credentials``; the caller's
        ``context.credentials`` is left untouched.
        """
        started = time.perf_counter()
        credentials = dict(context.credentials)
        delta: Optional[dict[str, Any]] = None

        if self.is_token_expired(credentials):
            refreshed = await self.refresh_tokens(credentials)
            if not refreshed.success:
                return failure_result(
                    "Token expired and refresh failed",
                    "REAUTH_REQUIRED" if refreshed.requires_reauth else "TOKEN_EXPIRED",
                    started,
                    status_code=401,
                )
            delta = refreshed.as_credentials()
            credentials.update(delta)

        ctx = context.model_copy(update={"credentials": credentials})
        try:
            auth = await self.inject_authentication(ctx)
            response = await self._send(ctx, auth)
        except HandshakeError as exc:
            result = failure_result(str(exc), exc.code, started)
            return self._with_delta(result, delta)

        if response.status_code != 401 or delta is not None or not credentials.get("refreshToken"):
            return build_result(
                response, started,
                credentials_refreshed=delta is not None, updated_credentials=delta,
            )

        logger.info("%s: got 401, refreshing token and retrying once", self.protocol_type)
        refreshed = await self.refresh_tokens(credentials)
        if not refreshed.success:
            result = build_result(response, started)
            result.error = f"{result.error} (refresh failed: {refreshed.error})"
            result.error_code = "REAUTH_REQUIRED" if refreshed.requires_reauth else "TOKEN_EXPIRED"
            return result

        delta = refreshed.as_credentials()
        credentials.update(delta)
        try:
            retry = await self._send(
                ctx, auth, extra_headers={"Authorization": f"Bearer {refreshed.access_token}"}
            )
        except HandshakeError as exc:
            return self._with_delta(failure_result(str(exc), exc.code, started), delta)
        return build_result(retry, started, credentials_refreshed=True, updated_credentials=delta)

    @staticmethod
    def _with_delta(
        result: ProtocolExecutionResult, delta: Optional[dict[str, Any]]
    ) -> ProtocolExecutionResult:
        if delta is not None:
            result.credentials_refreshed = True
            result.updated_credentials = delta
        return result

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    def _token_status(self, credentials: dict[str, Any]) -> TokenStatus:
        if not credentials.get("accessToken"):
            return TokenStatus.MISSING
        return TokenStatus.EXPIRED if self.is_token_expired(credentials) else TokenStatus.VALID

    async def _probe_user_info(
        self, credentials: dict[str, Any]
    ) -> Optional[ProtocolHealthCheckResult]:
        """GET ``userInfoUrl`` with the access token; ``None`` when inconclusive."""
        url = credentials.get("userInfoUrl")
        if not url or self._token_status(credentials) != TokenStatus.VALID:
            return None

        started = time.perf_counter()
        try:
            response = await self._transport.request(
                "GET", str(url),
                headers={"Authorization": f"Bearer {credentials['accessToken']}"},
            )
        except HandshakeError as exc:
            logger.debug("%s: user info probe failed: %s", self.protocol_type, exc)
            return None

        can_refresh = bool(credentials.get("refreshToken"))
        if response.is_success:
            return ProtocolHealthCheckResult(
                healthy=True,
                message="Token is valid and working",
                latency_ms=elapsed_ms(started),
                token_status=TokenStatus.VALID,
                token_expires_in=self._seconds_until_expiry(credentials),
                can_refresh=can_refresh,
            )
        if response.status_code == 401:
            return ProtocolHealthCheckResult(
                healthy=False,
                message="Token is invalid or expired",
                latency_ms=elapsed_ms(started),
                token_status=TokenStatus.INVALID,
                token_expires_in=0,
                can_refresh=can_refresh,
            )
        return None

    def _token_health(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        status = self._token_status(credentials)
        messages = {
            TokenStatus.VALID: "Token appears valid",
            TokenStatus.EXPIRED: "Token is expired",
        }
        return ProtocolHealthCheckResult(
            healthy=status == TokenStatus.VALID,
            message=messages.get(status, "No valid token"),
            token_status=status,
            token_expires_in=self._seconds_until_expiry(credentials),
            can_refresh=bool(credentials.get("refreshToken")),
        )

    async def health_check(self, credentials: dict[str, Any]) -> ProtocolHealthCheckResult:
        probed = await self._probe_user_info(credentials)
        return probed or self._token_health(credentials)
