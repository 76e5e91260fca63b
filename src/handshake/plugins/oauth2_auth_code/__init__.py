"""OAuth 2.0 Authorization Code for confidential clients.

Implements the ``oauth2-auth-code`` protocol: a full authorization code
grant where the client authenticates to the token endpoint with its
``client_secret`` (HTTP Basic, POST body, or an HS256 JWT assertion).

Exports:
    :class:`OAuth2AuthCodeModule` -- the protocol module.
    :func:`build_client_assertion` -- the ``client_secret_jwt`` assertion
    builder.

See Also:
    :mod:`handshake.plugins.oauth2_pkce` for public clients.
"""

from handshake.plugins.oauth2_auth_code.plugin import (
    OAuth2AuthCodeModule,
    build_client_assertion,
)

__all__ = ["OAuth2AuthCodeModule", "build_client_assertion"]
