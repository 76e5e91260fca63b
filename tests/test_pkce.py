"""Tests for handshake.pkce -- verifiers, challenges, state tokens and the flow holder."""

from __future__ import annotations

import hashlib

import pytest

from handshake import pkce
from handshake.exceptions import ConfigurationError, CsrfError
from handshake.pkce import (
    CODE_VERIFIER_CHARSET,
    PkceStateManager,
    base64url_decode,
    base64url_encode,
    generate_code_challenge,
    generate_code_challenge_plain,
    generate_code_verifier,
    generate_code_verifier_from_bytes,
    generate_nonce,
    generate_pkce_values,
    generate_state,
    parse_state,
    validate_code_verifier,
    validate_state,
    verify_code_challenge,
)


# RFC 7636 Appendix B
RFC_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def _freeze_clock(monkeypatch: pytest.MonkeyPatch, now_ms: int) -> None:
    monkeypatch.setattr(pkce, "_now_ms", lambda: now_ms)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


class TestBase64Url:
    def test_no_padding_or_unsafe_characters(self) -> None:
        encoded = base64url_encode(b"\xfb\xff\xfe")
        assert encoded == "-__-"
        assert "=" not in base64url_encode(b"a")

    def test_decode_restores_padding(self) -> None:
        assert base64url_decode("YQ") == b"a"

    def test_decode_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            base64url_decode("a")


# ---------------------------------------------------------------------------
# Verifier and challenge
# ---------------------------------------------------------------------------


class TestCodeVerifier:
    def test_default_length(self) -> None:
        assert len(generate_code_verifier()) == 43

    @pytest.mark.parametrize("length", [43, 64, 128])
    def test_requested_length_and_charset(self, length: int) -> None:
        verifier = generate_code_verifier(length)
        assert len(verifier) == length
        assert set(verifier) <= set(CODE_VERIFIER_CHARSET)

    @pytest.mark.parametrize("length", [0, 42, 129])
    def test_out_of_range_length(self, length: int) -> None:
        with pytest.raises(ConfigurationError, match="between 43 and 128"):
            generate_code_verifier(length)

    def test_verifiers_are_unique(self) -> None:
        assert len({generate_code_verifier() for _ in range(50)}) == 50

    def test_from_bytes(self) -> None:
        verifier = generate_code_verifier_from_bytes()
        assert len(verifier) == 43
        assert validate_code_verifier(verifier) == []

    def test_from_too_few_bytes(self) -> None:
        with pytest.raises(ConfigurationError):
            generate_code_verifier_from_bytes(16)

    def test_validate_reports_each_problem(self) -> None:
        assert validate_code_verifier("short") == [
            "Code verifier must be at least 43 characters"
        ]
        problems = validate_code_verifier("!" * 129)
        assert "Code verifier must be at most 128 characters" in problems
        assert "Code verifier contains invalid characters" in problems


class TestCodeChallenge:
    def test_rfc_vector(self) -> None:
        assert generate_code_challenge(RFC_VERIFIER) == RFC_CHALLENGE

    def test_custom_digest(self) -> None:
        calls = []

        def digest(data: bytes) -> bytes:
            calls.append(data)
            return hashlib.sha256(data).digest()

        assert generate_code_challenge(RFC_VERIFIER, digest) == RFC_CHALLENGE
        assert calls == [RFC_VERIFIER.encode("ascii")]

    def test_plain_is_identity(self) -> None:
        assert generate_code_challenge_plain(RFC_VERIFIER) == RFC_VERIFIER

    def test_verify(self) -> None:
        assert verify_code_challenge(RFC_VERIFIER, RFC_CHALLENGE) is True
        assert verify_code_challenge(RFC_VERIFIER, RFC_VERIFIER, "plain") is True
        assert verify_code_challenge(RFC_VERIFIER, "wrong") is False

    def test_verify_unknown_method(self) -> None:
        with pytest.raises(ConfigurationError, match="Unsupported"):
            verify_code_challenge(RFC_VERIFIER, RFC_CHALLENGE, "S512")

    def test_generate_pkce_values(self) -> None:
        values = generate_pkce_values(64)
        assert len(values.code_verifier) == 64
        assert values.code_challenge_method == "S256"
        assert verify_code_challenge(values.code_verifier, values.code_challenge)


# ---------------------------------------------------------------------------
# State tokens
# ---------------------------------------------------------------------------


class TestState:
    def test_nonce_is_unpadded(self) -> None:
        nonce = generate_nonce()
        assert len(nonce) == 22
        assert "=" not in nonce

    def test_state_payload(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _freeze_clock(monkeypatch, 1_700_000_000_000)
        payload = parse_state(generate_state({"returnTo": "/dashboard"}))

        assert payload is not None
        assert payload["ts"] == 1_700_000_000_000
        assert payload["returnTo"] == "/dashboard"
        assert isinstance(payload["nonce"], str)

    @pytest.mark.parametrize("value", ["%%%", "bm90IGpzb24", "WzEsMl0"])
    def test_parse_invalid_returns_none(self, value: str) -> None:
        # "not json" and "[1,2]" respectively
        assert parse_state(value) is None

    def test_validate_returns_custom_data(self) -> None:
        state = generate_state({"tenant": "acme"})
        assert validate_state(state, state) == {"tenant": "acme"}

    def test_validate_mismatch(self) -> None:
        with pytest.raises(CsrfError, match="State mismatch"):
            validate_state(generate_state(), generate_state())

    def test_validate_empty(self) -> None:
        with pytest.raises(CsrfError, match="State mismatch"):
            validate_state("", "")

    def test_validate_invalid_format(self) -> None:
        with pytest.raises(CsrfError, match="Invalid state format"):
            validate_state("opaque-value", "opaque-value")

    def test_validate_expired(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _freeze_clock(monkeypatch, 1_000_000)
        state = generate_state()
        _freeze_clock(monkeypatch, 1_000_000 + 600_001)
        with pytest.raises(CsrfError, match="State expired"):
            validate_state(state, state)

    def test_validate_at_max_age_boundary(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _freeze_clock(monkeypatch, 1_000_000)
        state = generate_state()
        _freeze_clock(monkeypatch, 1_000_000 + 600_000)
        assert validate_state(state, state) == {}


# ---------------------------------------------------------------------------
# PkceStateManager
# ---------------------------------------------------------------------------


class TestPkceStateManager:
    def test_complete_returns_verifier_once(self) -> None:
        manager = PkceStateManager()
        values, state = manager.initialize()
        assert manager.has_active_flow()

        assert manager.complete(state) == values.code_verifier
        assert not manager.has_active_flow()
        with pytest.raises(CsrfError, match="No PKCE flow in progress"):
            manager.complete(state)

    def test_failed_validation_still_clears(self) -> None:
        manager = PkceStateManager()
        manager.initialize()
        with pytest.raises(CsrfError):
            manager.complete("forged")
        assert not manager.has_active_flow()

    def test_initialize_replaces_pending_flow(self) -> None:
        manager = PkceStateManager()
        _, first = manager.initialize()
        values, second = manager.initialize({"step": "2"})
        with pytest.raises(CsrfError):
            manager.complete(first)

        values, second = manager.initialize()
        assert manager.complete(second) == values.code_verifier

    def test_clear(self) -> None:
        manager = PkceStateManager()
        manager.initialize()
        manager.clear()
        assert not manager.has_active_flow()
