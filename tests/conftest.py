"""Shared test fixtures for handshake.

Provides isolated config environments, output state management, a CLI
runner, HTTP transports backed by :class:`httpx.MockTransport` and an
in-memory WebSocket transport so that protocol modules can be exercised
without a network. These fixtures are
automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qsl

import httpx
import pytest

from handshake.client.transport import HttpTransport
from handshake.client.websocket import SocketConnection, SocketMessage, SocketTransport
from handshake.exceptions import TransportError
from handshake.output import OutputFormat, OutputManager, reset_output, set_output


Handler = Callable[[httpx.Request], httpx.Response]


# ---------------------------------------------------------------------------
# Auto-reset global state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time.  When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file").  Resetting forces a fresh manager
    to be created on next use.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _reset_handshake_logger() -> None:
    """Drop handlers the CLI callback installs on the ``handshake`` logger."""
    yield
    logger = logging.getLogger("handshake")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path
    (and HOME to tmp_path for platforms without XDG) so that tests never
    touch real user config. Clears HANDSHAKE_PROFILE and changes the
    working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("HANDSHAKE_PROFILE", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def json_output() -> OutputManager:
    """Install a JSON-format OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.JSON)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _make_transport(handler: Handler) -> HttpTransport:
    """Build an :class:`HttpTransport` whose client answers through *handler*."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(client=client)


class RecordingHandler:
    """A MockTransport handler that records requests and replays canned responses.

    Responses are consumed in order; the last one repeats. An exception in
    the list is raised instead of answering.
    """

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses) or [httpx.Response(200)]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def form(self, index: int = -1) -> dict[str, str]:
        """Decode the form-encoded body of a recorded request."""
        return dict(parse_qsl(self.requests[index].content.decode("utf-8")))

    def json(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content.decode("utf-8"))


@pytest.fixture
def recorder() -> Callable[..., tuple[RecordingHandler, HttpTransport]]:
    """Factory fixture: ``handler, transport = recorder(response, ...)``."""

    def _make(*responses: httpx.Response | Exception) -> tuple[RecordingHandler, HttpTransport]:
        handler = RecordingHandler(*responses)
        return handler, _make_transport(handler)

    return _make


# ---------------------------------------------------------------------------
# WebSocket fixtures
# ---------------------------------------------------------------------------


class FakeSocketConnection(SocketConnection):
    """An in-memory socket: the test plays the server through :meth:`feed`."""

    def __init__(self, protocol: str | None = None) -> None:
        self._protocol = protocol
        self._inbox: asyncio.Queue[SocketMessage] = asyncio.Queue()
        self._closed = False
        self.sent: list[str | bytes] = []
        self.close_args: tuple[int, str] | None = None
        self.fail_sends = False

    @property
    def protocol(self) -> str | None:
        return self._protocol

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: str | bytes) -> None:
        if self._closed or self.fail_sends:
            raise TransportError("socket is closed")
        self.sent.append(data)

    async def receive(self) -> SocketMessage:
        return await self._inbox.get()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._closed = True
        self.close_args = (code, reason)
        self._inbox.put_nowait(SocketMessage(kind="close", close_code=code, reason=reason))

    def feed(self, data: Any) -> None:
        """Deliver a frame from the server; mappings are sent as JSON text."""
        if isinstance(data, bytes):
            self._inbox.put_nowait(SocketMessage(kind="binary", data=data))
        else:
            text = data if isinstance(data, str) else json.dumps(data)
            self._inbox.put_nowait(SocketMessage(kind="text", data=text))

    def server_close(self, code: int = 1006, reason: str = "", was_clean: bool = False) -> None:
        self._closed = True
        self._inbox.put_nowait(
            SocketMessage(kind="close", close_code=code, reason=reason, was_clean=was_clean)
        )

    def sent_json(self) -> list[Any]:
        return [json.loads(s) for s in self.sent if isinstance(s, str)]


class FakeSocketTransport(SocketTransport):
    """Hands out :class:`FakeSocketConnection` objects and records every open.

    Exceptions appended to ``failures`` are raised by the next opens, in order.
    """

    def __init__(self, selected_protocol: str | None = None) -> None:
        self.selected_protocol = selected_protocol
        self.opened: list[tuple[str, list[str], float]] = []
        self.connections: list[FakeSocketConnection] = []
        self.failures: list[Exception] = []

    async def open(self, url, protocols=(), timeout=30.0) -> SocketConnection:
        self.opened.append((url, list(protocols), timeout))
        if self.failures:
            raise self.failures.pop(0)
        connection = FakeSocketConnection(self.selected_protocol)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeSocketConnection:
        return self.connections[-1]


@pytest.fixture
def socket_transport() -> FakeSocketTransport:
    return FakeSocketTransport()


@pytest.fixture
def settle() -> Callable[..., Any]:
    """Let background tasks run: ``await settle()`` or ``await settle(until=predicate)``."""

    async def _settle(until: Callable[[], bool] | None = None, timeout: float = 2.0) -> None:
        if until is None:
            for _ in range(10):
                await asyncio.sleep(0)
            return
        deadline = asyncio.get_running_loop().time() + timeout
        while not until():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.005)

    return _settle


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner.

    Returns a CliRunner instance that captures stdout/stderr and
    provides a consistent interface for invoking Typer apps in tests.
    """
    from typer.testing import CliRunner

    return CliRunner()
