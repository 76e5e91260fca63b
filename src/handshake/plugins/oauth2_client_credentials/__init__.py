"""OAuth 2.0 Client Credentials grant for machine-to-machine access.

Exports:
    :class:`ClientCredentialsModule` -- the ``oauth2-client-credentials``
    protocol module.
"""

from handshake.plugins.oauth2_client_credentials.plugin import ClientCredentialsModule

__all__ = ["ClientCredentialsModule"]
