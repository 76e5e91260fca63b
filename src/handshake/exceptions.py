"""Exception hierarchy for handshake.

All exceptions inherit from :class:`HandshakeError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`handshake.exit_codes`
and a short machine-readable ``code`` that protocol modules copy into
:attr:`~handshake.models.ProtocolExecutionResult.error_code` when they turn a
failure into a result instead of raising it.

Protocol modules rarely let these escape: configuration and CSRF problems
become ``error`` flow steps, and transport/protocol failures become failed
execution results. They are raised at the edges (the PKCE helpers, token
exchange, the cURL parser) and by the CLI layer, whose entry point in
:func:`handshake.app.main` catches ``HandshakeError`` and exits with the
matching code.

Subclass hierarchy::

    HandshakeError               (exit 1)
    +-- ConfigurationError       (exit 2)
    +-- CsrfError                (exit 3)
    +-- AuthorizationDeniedError (exit 3)
    +-- TokenError               (exit 3)
    +-- ProtocolError            (exit 5)
    +-- TransportError           (exit 6)
    +-- ParseError               (exit 7)
    +-- ConfigError              (exit 1)
"""

from __future__ import annotations

from typing import Optional

from handshake.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONFIGURATION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_PARSE_ERROR,
    EXIT_PROTOCOL_ERROR,
    EXIT_TRANSPORT_ERROR,
)


class HandshakeError(Exception):
    """Base exception for all handshake errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`handshake.exit_codes`, and a ``code`` string used
    as the ``error_code`` of failed execution results.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE
    code: str = "EXECUTION_ERROR"

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigurationError(HandshakeError):
    """Raised when required fields are missing or invalid, before any network call."""

    exit_code = EXIT_CONFIGURATION_ERROR
    code = "CONFIGURATION_ERROR"


class CsrfError(HandshakeError):
    """Raised when an OAuth ``state`` value does not match, is malformed, or has expired."""

    exit_code = EXIT_AUTH_FAILURE
    code = "CSRF_ERROR"


class AuthorizationDeniedError(HandshakeError):
    """Raised when the provider redirects back with an ``error`` parameter.

    Args:
        error: The provider's ``error`` value (e.g. ``access_denied``).
        description: The provider's ``error_description``, if any.
    """

    exit_code = EXIT_AUTH_FAILURE
    code = "AUTHORIZATION_DENIED"

    def __init__(self, error: str, description: Optional[str] = None):
        super().__init__(f"{error}: {description or 'No description'}")
        self.error = error
        self.description = description


class TokenError(HandshakeError):
    """Raised for expired, invalid, or missing tokens and failed token exchanges.

    Args:
        message: Human-readable error description.
        requires_reauth: ``True`` when the refresh token itself is dead and
            the caller must restart the full authorization flow.
    """

    exit_code = EXIT_AUTH_FAILURE
    code = "TOKEN_ERROR"

    def __init__(self, message: str, requires_reauth: bool = False):
        super().__init__(message)
        self.requires_reauth = requires_reauth


class ProtocolError(HandshakeError):
    """Raised on a non-2xx HTTP status or a GraphQL ``errors`` array.

    Args:
        message: Human-readable error description.
        status_code: The HTTP status that triggered the error, when known.
    """

    exit_code = EXIT_PROTOCOL_ERROR
    code = "PROTOCOL_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(HandshakeError):
    """Raised on network-level failures (timeout, DNS resolution, connection refused).

    ``code`` is ``"TIMEOUT"`` for timeouts and ``"NETWORK_ERROR"`` otherwise,
    matching the error codes the execution router reports.

    Args:
        message: Human-readable error description.
        timeout: Whether the failure was a timeout.
    """

    exit_code = EXIT_TRANSPORT_ERROR
    code = "NETWORK_ERROR"

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout
        if timeout:
            self.code = "TIMEOUT"


class ParseError(HandshakeError):
    """Raised when a cURL command or a response body cannot be parsed."""

    exit_code = EXIT_PARSE_ERROR
    code = "PARSE_ERROR"


class ConfigError(HandshakeError):
    """Raised for configuration file problems (missing profiles, invalid JSON, bad credential sources)."""

    exit_code = EXIT_GENERIC_FAILURE
    code = "CONFIG_ERROR"
