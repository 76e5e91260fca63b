"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~handshake.exceptions.HandshakeError` subclass.
Shell wrappers can inspect the exit code to tell a bad configuration from
a rejected token or a dead network without parsing stderr.

Example::

    $ handshake curl run "curl https://api.example.com/{{missing}}"
    $ echo $?
    6   # EXIT_TRANSPORT_ERROR -- the request never reached the server
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_CONFIGURATION_ERROR = 2
"""Required protocol fields are missing or invalid."""

EXIT_AUTH_FAILURE = 3
"""Authorization was denied, the CSRF state did not match, or a token is unusable."""

EXIT_PROTOCOL_ERROR = 5
"""The remote endpoint answered with a non-2xx status or a GraphQL ``errors`` array."""

EXIT_TRANSPORT_ERROR = 6
"""A network-level error occurred (timeout, DNS failure, connection refused)."""

EXIT_PARSE_ERROR = 7
"""A cURL command or a response body could not be parsed."""
