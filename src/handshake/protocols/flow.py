"""Explicit authentication flow state for interactive protocol modules.

Each module instance owns exactly one :data:`FlowState` value and replaces it
as the flow advances::

    Idle --start--> AwaitingRedirect --step 2--> AwaitingCallback
        --token exchange--> Authenticated
    any --failure--> Failed

:class:`AwaitingRedirect` and :class:`AwaitingCallback` carry the ephemeral
:class:`FlowSecrets` (state, verifier, nonce) that bind the callback to the
request that started the flow. They are consumed once at token exchange and
never written anywhere unless the caller asks for them through
:func:`dump_flow_state`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Union


@dataclass(frozen=True)
class FlowSecrets:
    """Per-flow secret material generated at step 1."""

    state: str
    started_at: int
    redirect_uri: str = ""
    scopes: list[str] = field(default_factory=list)
    code_verifier: Optional[str] = None
    nonce: Optional[str] = None


@dataclass(frozen=True)
class Idle:
    kind: str = "idle"


@dataclass(frozen=True)
class AwaitingRedirect:
    secrets: FlowSecrets
    kind: str = "awaiting_redirect"


@dataclass(frozen=True)
class AwaitingCallback:
    secrets: FlowSecrets
    kind: str = "awaiting_callback"


@dataclass(frozen=True)
class Authenticated:
    kind: str = "authenticated"


@dataclass(frozen=True)
class Failed:
    message: str
    kind: str = "failed"


FlowState = Union[Idle, AwaitingRedirect, AwaitingCallback, Authenticated, Failed]


def flow_secrets(state: FlowState) -> Optional[FlowSecrets]:
    """Return the secrets of an in-progress flow, or ``None``."""
    if isinstance(state, (AwaitingRedirect, AwaitingCallback)):
        return state.secrets
    return None


def dump_flow_state(state: FlowState) -> dict[str, Any]:
    """Serialise *state* to a JSON-compatible dict (includes secrets)."""
    return asdict(state)


def load_flow_state(data: dict[str, Any]) -> FlowState:
    """Rebuild a :data:`FlowState` from :func:`dump_flow_state` output.

    Raises:
        ValueError: If ``data["kind"]`` is unknown.
    """
    kind = data.get("kind")
    if kind == "idle":
        return Idle()
    if kind == "authenticated":
        return Authenticated()
    if kind == "failed":
        return Failed(message=str(data.get("message", "")))
    if kind in ("awaiting_redirect", "awaiting_callback"):
        secrets = FlowSecrets(**data["secrets"])
        if kind == "awaiting_redirect":
            return AwaitingRedirect(secrets=secrets)
        return AwaitingCallback(secrets=secrets)
    raise ValueError(f"Unknown flow state kind: {kind!r}")
