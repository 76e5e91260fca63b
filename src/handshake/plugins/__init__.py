"""Built-in protocol modules.

Each subpackage holds one :class:`~handshake.protocols.base.ProtocolModule`
implementation in its ``plugin`` module and re-exports it from its
``__init__``:

* :mod:`handshake.plugins.oauth2_pkce` -- OAuth 2.0 Authorization Code + PKCE.
* :mod:`handshake.plugins.oauth2_auth_code` -- OAuth 2.0 Authorization Code
  for confidential clients.
* :mod:`handshake.plugins.oauth2_client_credentials` -- OAuth 2.0 Client
  Credentials for machine-to-machine access.
* :mod:`handshake.plugins.rest_api_key` -- static API keys.
* :mod:`handshake.plugins.graphql` -- GraphQL over HTTP.
* :mod:`handshake.plugins.websocket` -- authenticated WebSocket connections.
* :mod:`handshake.plugins.curl` -- templated cURL commands.

Modules are looked up by identifier through
:func:`handshake.protocols.create_default_registry`, which imports these
subpackages lazily.
"""
