"""Tests for the oauth2-client-credentials module."""

from __future__ import annotations

import base64
import time
from typing import Any

import httpx
import pytest

from handshake.exceptions import TokenError
from handshake.models import FlowStepType, ProtocolExecutionContext, TokenStatus
from handshake.plugins.oauth2_client_credentials import ClientCredentialsModule


TOKEN_URL = "https://idp.example.com/oauth/token"
API_URL = "https://api.example.com/reports"


def _make_credentials(**overrides: Any) -> dict[str, Any]:
    credentials: dict[str, Any] = {
        "clientId": "svc-reporter",
        "clientSecret": "m2m-secret",
        "tokenUrl": TOKEN_URL,
    }
    credentials.update(overrides)
    return credentials


def _token(access_token: str = "at-1", **extra: Any) -> httpx.Response:
    return httpx.Response(200, json={"access_token": access_token, **extra})


def _context(**credentials: Any) -> ProtocolExecutionContext:
    return ProtocolExecutionContext(url=API_URL, credentials=_make_credentials(**credentials))


# ---------------------------------------------------------------------------
# Token request
# ---------------------------------------------------------------------------


class TestFetchToken:
    @pytest.mark.asyncio
    async def test_post_body_is_default(self, recorder) -> None:
        handler, transport = recorder(
            _token(expires_in=3600, token_type="Bearer", scope="read:reports")
        )
        before = int(time.time())

        delta = await ClientCredentialsModule(transport).fetch_token(
            _make_credentials(scopes="read:reports, write:reports", audience="https://api")
        )

        assert str(handler.last.url) == TOKEN_URL
        assert handler.form() == {
            "grant_type": "client_credentials",
            "client_id": "svc-reporter",
            "client_secret": "m2m-secret",
            "scope": "read:reports write:reports",
            "audience": "https://api",
        }
        assert "authorization" not in handler.last.headers
        assert delta["accessToken"] == "at-1"
        assert delta["tokenType"] == "Bearer"
        assert delta["scopes"] == "read:reports"
        assert before + 3600 <= delta["tokenExpiresAt"] <= int(time.time()) + 3600

    @pytest.mark.asyncio
    async def test_basic_auth(self, recorder) -> None:
        handler, transport = recorder(_token())

        await ClientCredentialsModule(transport).fetch_token(
            _make_credentials(clientAuthMethod="client_secret_basic")
        )

        expected = "Basic " + base64.b64encode(b"svc-reporter:m2m-secret").decode("ascii")
        assert handler.last.headers["authorization"] == expected
        assert handler.form() == {"grant_type": "client_credentials"}

    @pytest.mark.asyncio
    async def test_additional_params(self, recorder) -> None:
        handler, transport = recorder(_token())
        await ClientCredentialsModule(transport).fetch_token(
            _make_credentials(additionalTokenParams='{"resource": "reports"}')
        )
        assert handler.form()["resource"] == "reports"

    @pytest.mark.asyncio
    async def test_provider_rejects(self, recorder) -> None:
        _, transport = recorder(
            httpx.Response(401, json={"error": "invalid_client", "error_description": "Bad secret"})
        )

        with pytest.raises(TokenError, match="Bad secret") as excinfo:
            await ClientCredentialsModule(transport).fetch_token(_make_credentials())
        assert excinfo.value.requires_reauth is True

    @pytest.mark.asyncio
    async def test_missing_access_token(self, recorder) -> None:
        _, transport = recorder(httpx.Response(200, json={"token_type": "Bearer"}))
        with pytest.raises(TokenError, match="did not include an access_token"):
            await ClientCredentialsModule(transport).fetch_token(_make_credentials())


# ---------------------------------------------------------------------------
# Authentication and refresh
# ---------------------------------------------------------------------------


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_single_step(self, recorder) -> None:
        _, transport = recorder(_token("at-9"))

        flow = await ClientCredentialsModule(transport).authenticate(_make_credentials())

        assert flow.type == FlowStepType.COMPLETE
        assert flow.total_steps == 1
        assert flow.data == {"credentials": {"accessToken": "at-9"}}

    @pytest.mark.asyncio
    async def test_invalid_configuration(self, recorder) -> None:
        handler, transport = recorder()
        flow = await ClientCredentialsModule(transport).authenticate(
            _make_credentials(clientSecret="")
        )
        assert flow.is_error
        assert flow.error == "Client Secret is required"
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_token_request_fails(self, recorder) -> None:
        _, transport = recorder(httpx.ConnectError("refused"))
        flow = await ClientCredentialsModule(transport).authenticate(_make_credentials())
        assert flow.is_error
        assert flow.title == "Token Request Failed"

    @pytest.mark.asyncio
    async def test_refresh_requests_new_token(self, recorder) -> None:
        handler, transport = recorder(_token("at-2", expires_in=60, scope="a b"))

        result = await ClientCredentialsModule(transport).refresh_tokens(
            _make_credentials(accessToken="at-1")
        )

        assert result.success is True
        assert result.access_token == "at-2"
        assert result.scopes == ["a", "b"]
        assert result.refresh_token is None
        assert handler.form()["grant_type"] == "client_credentials"

    @pytest.mark.asyncio
    async def test_refresh_failure(self, recorder) -> None:
        _, transport = recorder(httpx.Response(400, json={"error": "invalid_client"}))
        result = await ClientCredentialsModule(transport).refresh_tokens(_make_credentials())
        assert result.success is False
        assert result.error == "invalid_client"
        assert result.requires_reauth is True


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecuteRequest:
    @pytest.mark.asyncio
    async def test_fetches_token_before_first_request(self, recorder) -> None:
        handler, transport = recorder(
            _token("at-1", expires_in=3600), httpx.Response(200, json={"rows": 3})
        )

        result = await ClientCredentialsModule(transport).execute_request(_context())

        assert result.success is True
        assert result.body == {"rows": 3}
        assert [str(r.url) for r in handler.requests] == [TOKEN_URL, API_URL]
        assert handler.last.headers["authorization"] == "Bearer at-1"
        assert result.credentials_refreshed is True
        assert result.updated_credentials["accessToken"] == "at-1"

    @pytest.mark.asyncio
    async def test_stored_token_is_reused(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(200))
        expires = int(time.time()) + 3600

        result = await ClientCredentialsModule(transport).execute_request(
            _context(accessToken="stored", tokenExpiresAt=expires, tokenType="bearer")
        )

        assert result.success is True
        assert result.credentials_refreshed is False
        assert len(handler.requests) == 1
        assert handler.last.headers["authorization"] == "Bearer stored"

    @pytest.mark.asyncio
    async def test_expired_token_is_replaced(self, recorder) -> None:
        handler, transport = recorder(_token("fresh"), httpx.Response(200))

        result = await ClientCredentialsModule(transport).execute_request(
            _context(accessToken="old", tokenExpiresAt=int(time.time()) + 30)
        )

        assert result.updated_credentials == {"accessToken": "fresh"}
        assert handler.last.headers["authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_rejected_token_retries_once(self, recorder) -> None:
        handler, transport = recorder(
            httpx.Response(401), _token("fresh"), httpx.Response(200, json={"ok": True})
        )

        result = await ClientCredentialsModule(transport).execute_request(
            _context(accessToken="revoked")
        )

        assert result.success is True
        assert result.credentials_refreshed is True
        assert len(handler.requests) == 3
        assert handler.requests[0].headers["authorization"] == "Bearer revoked"
        assert handler.last.headers["authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_new_token_rejected_is_not_retried(self, recorder) -> None:
        handler, transport = recorder(_token("fresh"), httpx.Response(401))

        result = await ClientCredentialsModule(transport).execute_request(_context())

        assert result.success is False
        assert result.status_code == 401
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_token_failure_is_not_sent(self, recorder) -> None:
        handler, transport = recorder(httpx.Response(401, json={"error": "invalid_client"}))

        result = await ClientCredentialsModule(transport).execute_request(_context())

        assert result.success is False
        assert result.status_code == 401
        assert result.error == "invalid_client"
        assert result.error_code == "TOKEN_ERROR"
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_token_endpoint_unreachable(self, recorder) -> None:
        _, transport = recorder(httpx.ConnectError("refused"))
        result = await ClientCredentialsModule(transport).execute_request(_context())
        assert result.success is False
        assert result.error_code == "NETWORK_ERROR"


# ---------------------------------------------------------------------------
# Expiry and health
# ---------------------------------------------------------------------------


class TestExpiryAndHealth:
    def test_expiry_buffer(self) -> None:
        module = ClientCredentialsModule()
        now = int(time.time())
        assert module.is_token_expired({"tokenExpiresAt": now + 30}) is True
        assert module.is_token_expired({"tokenExpiresAt": now + 600}) is False
        assert module.is_token_expired({}) is False

    def test_secret_and_token_are_masked(self) -> None:
        masked = ClientCredentialsModule().get_masked_credentials(
            _make_credentials(accessToken="abcd1234efgh")
        )
        assert masked["clientSecret"] == "m2m-**cret"
        assert masked["accessToken"] == "abcd****efgh"
        assert masked["clientId"] == "svc-reporter"

    @pytest.mark.asyncio
    async def test_healthy(self, recorder) -> None:
        _, transport = recorder(_token(expires_in=600))

        health = await ClientCredentialsModule(transport).health_check(_make_credentials())

        assert health.healthy is True
        assert health.token_status == TokenStatus.VALID
        assert 590 <= health.token_expires_in <= 600

    @pytest.mark.asyncio
    async def test_unhealthy(self, recorder) -> None:
        _, transport = recorder(httpx.Response(401, json={"error": "invalid_client"}))

        health = await ClientCredentialsModule(transport).health_check(_make_credentials())

        assert health.healthy is False
        assert health.message == "invalid_client"
        assert health.details == {"code": "TOKEN_ERROR"}
