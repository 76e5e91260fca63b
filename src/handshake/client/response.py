"""Helpers that turn :class:`httpx.Response` objects into protocol results.

Every module classifies responses the same way: 2xx is success, the body is
decoded as JSON when possible and kept as text otherwise, and error
responses from OAuth providers are summarised from their
``error_description`` / ``error`` fields. Keeping that here means the
modules only decide *what* to send and *when* to retry.

See Also:
    :class:`~handshake.models.ProtocolExecutionResult` -- the result model.
"""

from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from handshake.models import ProtocolExecutionResult


def extract_response_data(response: httpx.Response) -> Any:
    """Extract the body from an HTTP response.

    Attempts to parse the body as JSON first.  If that fails (e.g. the
    response is HTML or plain text), returns the raw text.  Returns
    ``None`` for responses with no content.
    """
    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        return response.text


def json_or_empty(response: httpx.Response) -> dict[str, Any]:
    """Return the JSON object body, or ``{}`` when the body is not a JSON object."""
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def provider_error(response: httpx.Response, default: str) -> str:
    """Summarise an OAuth error response.

    Prefers ``error_description``, then ``error``, then *default*.
    """
    data = json_or_empty(response)
    return str(data.get("error_description") or data.get("error") or default)


def elapsed_ms(started: float) -> float:
    """Milliseconds since *started* (a :func:`time.perf_counter` value)."""
    return (time.perf_counter() - started) * 1000


def build_result(
    response: httpx.Response,
    started: float,
    credentials_refreshed: bool = False,
    updated_credentials: Optional[dict[str, Any]] = None,
) -> ProtocolExecutionResult:
    """Classify *response* into a :class:`~handshake.models.ProtocolExecutionResult`.

    Args:
        response: The response to classify.
        started: :func:`time.perf_counter` value taken before the request.
        credentials_refreshed: Whether tokens were rotated to get here.
        updated_credentials: The credential delta to hand back.
    """
    ok = response.is_success
    body = extract_response_data(response)
    return ProtocolExecutionResult(
        success=ok,
        status_code=response.status_code,
        headers=dict(response.headers),
        body=body,
        raw_body=response.text,
        duration_ms=elapsed_ms(started),
        error=None if ok else f"HTTP {response.status_code}: {response.reason_phrase}",
        credentials_refreshed=credentials_refreshed,
        updated_credentials=updated_credentials,
    )


def failure_result(
    error: str,
    error_code: str,
    started: float,
    status_code: int = 0,
) -> ProtocolExecutionResult:
    """Build a failed result for errors that never produced a usable response."""
    return ProtocolExecutionResult(
        success=False,
        status_code=status_code,
        error=error,
        error_code=error_code,
        duration_ms=elapsed_ms(started),
    )
