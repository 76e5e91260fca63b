"""OAuth 2.0 Authorization Code with PKCE (:rfc:`7636`).

Implements the ``oauth2-pkce`` protocol for public clients (SPAs, mobile
and desktop apps) that cannot keep a client secret.

Exports:
    :class:`OAuth2PkceModule` -- the protocol module.
"""

from handshake.plugins.oauth2_pkce.plugin import OAuth2PkceModule

__all__ = ["OAuth2PkceModule"]
