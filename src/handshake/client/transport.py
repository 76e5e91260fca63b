"""Asynchronous HTTP transport shared by every protocol module.

:class:`HttpTransport` is the only place handshake touches the network for
HTTP. It wraps :class:`httpx.AsyncClient` and adds:

- **Per-request timeouts** in milliseconds, the unit the credential fields
  use, falling back to the transport default (30 s).
- **Error mapping** -- :class:`httpx.TimeoutException` becomes a
  :class:`~handshake.exceptions.TransportError` with ``code="TIMEOUT"`` and
  other :class:`httpx.TransportError` subclasses become ``NETWORK_ERROR``.
  HTTP error statuses are *not* raised; modules classify them.
- **Optional retry** with exponential backoff on 5xx and network errors
  (off by default so that a request is sent exactly once unless the caller
  asks otherwise).

Protocol modules receive a transport through their constructor, which keeps
them host-agnostic; tests inject one built on :class:`httpx.MockTransport`.

Example::

    async with HttpTransport() as transport:
        response = await transport.request("GET", "https://api.example.com/me")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from handshake.exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpTransport:
    """Asynchronous HTTP transport backed by :class:`httpx.AsyncClient`.

    Args:
        client: An existing client to use. When ``None`` a client is created
            lazily on first use and closed by :meth:`aclose`.
        timeout: Default timeout in seconds.
        verify_ssl: Verify TLS certificates for the owned client.
        follow_redirects: Follow redirects for the owned client.
        max_retries: Extra attempts on 5xx responses or network errors.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        verify_ssl: bool = True,
        follow_redirects: bool = True,
        max_retries: int = 0,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._verify_ssl = verify_ssl
        self._follow_redirects = follow_redirects
        self._max_retries = max_retries

    # ------------------------------------------------------------------ #
    # Async context manager
    # ------------------------------------------------------------------ #

    async def __aenter__(self) -> HttpTransport:
        self._get_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
        content: Optional[str | bytes] = None,
        data: Optional[dict[str, Any]] = None,
        json: Any = None,
        timeout_ms: Optional[int] = None,
        follow_redirects: Optional[bool] = None,
    ) -> httpx.Response:
        """Send one HTTP request and return the response, whatever its status.

        Args:
            method: HTTP method.
            url: Absolute URL.
            headers: Request headers.
            params: Query parameters, merged with any already in *url*.
            content: Raw body.
            data: Form-encoded body (``application/x-www-form-urlencoded``).
            json: JSON-serialisable body.
            timeout_ms: Timeout for this request in milliseconds.
            follow_redirects: Override the transport's redirect policy.

        Returns:
            The :class:`httpx.Response`.

        Raises:
            TransportError: On timeouts and network failures after all
                retries are exhausted.
        """
        client = self._get_client()
        timeout = timeout_ms / 1000 if timeout_ms else self._timeout
        target = httpx.URL(url)
        if params:
            # Passing params to the client would replace the query already in url.
            target = target.copy_merge_params(params)
        kwargs: dict[str, Any] = {
            "method": method.upper(),
            "url": target,
            "headers": headers or {},
            "timeout": timeout,
        }
        if data is not None:
            kwargs["data"] = data
        elif json is not None:
            kwargs["json"] = json
        elif content is not None:
            kwargs["content"] = content
        if follow_redirects is not None:
            kwargs["follow_redirects"] = follow_redirects

        for attempt in range(self._max_retries + 1):
            try:
                logger.debug("%s %s (attempt %d)", kwargs["method"], url, attempt + 1)
                response = await client.request(**kwargs)
            except httpx.TimeoutException as exc:
                if attempt < self._max_retries:
                    await self._backoff(attempt, exc)
                    continue
                raise TransportError(
                    f"Request timed out after {timeout:g}s: {url}", timeout=True
                ) from exc
            except httpx.TransportError as exc:
                if attempt < self._max_retries:
                    await self._backoff(attempt, exc)
                    continue
                raise TransportError(f"Network error: {exc}") from exc

            if response.status_code >= 500 and attempt < self._max_retries:
                await self._backoff(attempt, f"server error {response.status_code}")
                continue
            return response

        raise TransportError("Request failed after all retries")  # pragma: no cover

    async def post_form(
        self,
        url: str,
        data: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> httpx.Response:
        """POST an ``application/x-www-form-urlencoded`` body expecting JSON back."""
        merged = {"Accept": "application/json", **(headers or {})}
        return await self.request(
            "POST", url, headers=merged, data=data, timeout_ms=timeout_ms
        )

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                verify=self._verify_ssl,
                follow_redirects=self._follow_redirects,
            )
            self._owns_client = True
        return self._client

    async def _backoff(self, attempt: int, reason: object) -> None:
        delay = 2 ** attempt
        logger.debug(
            "Retrying in %ss (attempt %d/%d): %s",
            delay, attempt + 1, self._max_retries, reason,
        )
        await asyncio.sleep(delay)
