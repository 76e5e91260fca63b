"""PKCE (:rfc:`7636`) verifier/challenge generation and CSRF ``state`` tokens.

Public OAuth clients cannot keep a static secret, so they prove ownership of
an authorization code with a one-time ``code_verifier``: only its SHA-256
derivative (the ``code_challenge``) travels in the authorization request, and
the verifier itself is revealed once, at token exchange.

This module provides:

* :func:`generate_code_verifier` / :func:`generate_code_verifier_from_bytes`
  -- fresh verifiers over the unreserved alphabet ``[A-Za-z0-9-._~]``.
* :func:`generate_code_challenge` -- ``base64url(SHA-256(verifier))`` without
  padding; :func:`generate_code_challenge_plain` for the ``plain`` method.
* :func:`generate_state` / :func:`parse_state` / :func:`validate_state` --
  self-describing CSRF tokens carrying a nonce, a timestamp and optional
  caller data.
* :func:`verify_code_challenge` -- recompute and compare, for self-tests.
* :class:`PkceStateManager` -- holds one pending verifier/state pair and
  hands the verifier out exactly once.

The digest is a plain ``Callable[[bytes], bytes]`` so tests (or hosts
without :mod:`hashlib`) can substitute their own.

See Also:
    :mod:`handshake.plugins.oauth2_pkce` -- the module that consumes these.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from handshake.exceptions import ConfigurationError, CsrfError

logger = logging.getLogger(__name__)

CODE_VERIFIER_CHARSET = string.ascii_letters + string.digits + "-._~"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 43
DEFAULT_STATE_MAX_AGE_MS = 600_000

Digest = Callable[[bytes], bytes]


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _now_ms() -> int:
    return int(time.time() * 1000)


# ------------------------------------------------------------------ #
# Encoding
# ------------------------------------------------------------------ #


def base64url_encode(data: bytes) -> str:
    """Encode *data* as unpadded base64url (``-`` and ``_`` instead of ``+`` and ``/``)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(value: str) -> bytes:
    """Decode unpadded base64url text.

    Raises:
        ValueError: If *value* is not valid base64url.
    """
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


# ------------------------------------------------------------------ #
# Verifier and challenge
# ------------------------------------------------------------------ #


def generate_code_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        length: Number of characters, between 43 and 128 inclusive.

    Returns:
        A string of *length* characters drawn from ``[A-Za-z0-9-._~]``.

    Raises:
        ConfigurationError: If *length* is outside ``[43, 128]``.
    """
    if length < MIN_VERIFIER_LENGTH or length > MAX_VERIFIER_LENGTH:
        raise ConfigurationError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH}, got {length}"
        )
    return "".join(secrets.choice(CODE_VERIFIER_CHARSET) for _ in range(length))


def generate_code_verifier_from_bytes(num_bytes: int = 32) -> str:
    """Generate a verifier by base64url-encoding *num_bytes* random bytes.

    32 bytes yields the minimum 43-character verifier.
    """
    verifier = base64url_encode(secrets.token_bytes(num_bytes))
    if not MIN_VERIFIER_LENGTH <= len(verifier) <= MAX_VERIFIER_LENGTH:
        raise ConfigurationError(
            f"{num_bytes} random bytes produce a {len(verifier)}-character verifier"
        )
    return verifier


def generate_code_challenge(verifier: str, digest: Digest = _sha256) -> str:
    """Derive the ``S256`` code challenge: ``base64url(SHA-256(verifier))``."""
    return base64url_encode(digest(verifier.encode("ascii")))


def generate_code_challenge_plain(verifier: str) -> str:
    """Return the ``plain`` challenge, which is the verifier itself."""
    return verifier


def validate_code_verifier(verifier: str) -> list[str]:
    """Check a verifier against :rfc:`7636` section 4.1.

    Returns:
        A list of problems; empty when the verifier is valid.
    """
    problems: list[str] = []
    if len(verifier) < MIN_VERIFIER_LENGTH:
        problems.append(f"Code verifier must be at least {MIN_VERIFIER_LENGTH} characters")
    if len(verifier) > MAX_VERIFIER_LENGTH:
        problems.append(f"Code verifier must be at most {MAX_VERIFIER_LENGTH} characters")
    if any(ch not in CODE_VERIFIER_CHARSET for ch in verifier):
        problems.append("Code verifier contains invalid characters")
    return problems


def verify_code_challenge(
    verifier: str,
    challenge: str,
    method: str = "S256",
    digest: Digest = _sha256,
) -> bool:
    """Recompute the challenge for *verifier* and compare it with *challenge*.

    Raises:
        ConfigurationError: If *method* is neither ``S256`` nor ``plain``.
    """
    if method == "S256":
        expected = generate_code_challenge(verifier, digest)
    elif method == "plain":
        expected = generate_code_challenge_plain(verifier)
    else:
        raise ConfigurationError(f"Unsupported code challenge method: {method}")
    return hmac.compare_digest(expected.encode("utf-8"), challenge.encode("utf-8"))


@dataclass(frozen=True)
class PkceValues:
    """A verifier together with its derived challenge."""

    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def generate_pkce_values(
    length: int = DEFAULT_VERIFIER_LENGTH, digest: Digest = _sha256
) -> PkceValues:
    """Generate a fresh verifier and its ``S256`` challenge in one call."""
    verifier = generate_code_verifier(length)
    return PkceValues(
        code_verifier=verifier,
        code_challenge=generate_code_challenge(verifier, digest),
    )


# ------------------------------------------------------------------ #
# State and nonce
# ------------------------------------------------------------------ #


def generate_nonce(num_bytes: int = 16) -> str:
    """Return *num_bytes* of randomness as unpadded base64url."""
    return base64url_encode(secrets.token_bytes(num_bytes))


def generate_state(custom_data: Optional[dict[str, Any]] = None) -> str:
    """Create a CSRF state token.

    The token is ``base64url(JSON({"nonce": <128 random bits>, "ts": <ms>,
    ...custom_data}))`` so it carries its own creation time and any data the
    caller wants back after the redirect.
    """
    payload: dict[str, Any] = {"nonce": generate_nonce(16), "ts": _now_ms()}
    payload.update(custom_data or {})
    return base64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def parse_state(state: str) -> Optional[dict[str, Any]]:
    """Decode a state token produced by :func:`generate_state`.

    Returns:
        The decoded payload, or ``None`` if *state* is not a valid token.
    """
    try:
        payload = json.loads(base64url_decode(state).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def validate_state(
    received: str,
    stored: str,
    max_age_ms: int = DEFAULT_STATE_MAX_AGE_MS,
) -> dict[str, Any]:
    """Validate a state echoed back by the provider.

    Args:
        received: The ``state`` query parameter from the callback.
        stored: The state generated when the flow started.
        max_age_ms: Maximum token age in milliseconds (10 minutes by default).

    Returns:
        The custom data embedded by :func:`generate_state` (the payload minus
        ``nonce`` and ``ts``).

    Raises:
        CsrfError: On mismatch, an undecodable token, or an expired token.
    """
    if not received or not stored or not hmac.compare_digest(
        received.encode("utf-8"), stored.encode("utf-8")
    ):
        raise CsrfError("State mismatch - possible CSRF attack")

    payload = parse_state(received)
    if payload is None or not isinstance(payload.get("ts"), (int, float)):
        raise CsrfError("Invalid state format")

    age = _now_ms() - payload["ts"]
    if age > max_age_ms:
        raise CsrfError("State expired")

    return {k: v for k, v in payload.items() if k not in ("nonce", "ts")}


# ------------------------------------------------------------------ #
# Pending-flow holder
# ------------------------------------------------------------------ #


class PkceStateManager:
    """Keeps one pending verifier/state pair and releases the verifier once.

    Example::

        manager = PkceStateManager()
        values, state = manager.initialize()
        # ... redirect, provider calls back with ?state=...&code=...
        verifier = manager.complete(callback_state)
    """

    def __init__(self, max_age_ms: int = DEFAULT_STATE_MAX_AGE_MS) -> None:
        self._max_age_ms = max_age_ms
        self._values: Optional[PkceValues] = None
        self._state: Optional[str] = None

    def initialize(
        self,
        custom_data: Optional[dict[str, Any]] = None,
        length: int = DEFAULT_VERIFIER_LENGTH,
    ) -> tuple[PkceValues, str]:
        """Start a new flow, replacing any pending one."""
        if self._values is not None:
            logger.debug("Discarding pending PKCE flow")
        self._values = generate_pkce_values(length)
        self._state = generate_state(custom_data)
        return self._values, self._state

    def complete(self, received_state: str) -> str:
        """Validate *received_state* and return the verifier, ending the flow.

        The pending flow is cleared whether or not validation succeeds.

        Raises:
            CsrfError: If there is no pending flow or the state is invalid.
        """
        values, state = self._values, self._state
        self.clear()
        if values is None or state is None:
            raise CsrfError("No PKCE flow in progress")
        validate_state(received_state, state, self._max_age_ms)
        return values.code_verifier

    def clear(self) -> None:
        self._values = None
        self._state = None

    def has_active_flow(self) -> bool:
        return self._values is not None
