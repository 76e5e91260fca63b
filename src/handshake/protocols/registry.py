"""Protocol registry -- maps protocol identifiers to module constructors.

The :class:`ProtocolRegistry` is the central lookup of the protocol
subsystem. It maps identifier strings (``"oauth2-pkce"``, ``"graphql"``,
``"websocket"``...) to *factories* rather than instances, because each
module instance owns its own flow state and must not be shared between
unrelated flows. :meth:`~ProtocolRegistry.create` hands out a fresh module
every time.

For most use cases, call :func:`create_default_registry` to get a registry
pre-loaded with every built-in module.

See Also:
    :class:`~handshake.protocols.base.ProtocolModule` -- the module interface.
    :class:`~handshake.router.ExecutionRouter` -- dispatches through this
    registry.
"""

from __future__ import annotations

from typing import Callable, Optional

from handshake.client.transport import HttpTransport
from handshake.exceptions import ConfigurationError
from handshake.models import ProtocolModuleMetadata
from handshake.protocols.base import ProtocolModule

ModuleFactory = Callable[[Optional[HttpTransport]], ProtocolModule]


class ProtocolRegistry:
    """Registry of protocol module factories keyed by protocol identifier.

    Example::

        from handshake.protocols import ProtocolRegistry
        from handshake.plugins.graphql import GraphQLModule

        registry = ProtocolRegistry()
        registry.register("graphql", GraphQLModule)
        module = registry.create("graphql")
    """

    def __init__(self) -> None:
        self._factories: dict[str, ModuleFactory] = {}
        self._metadata: dict[str, ProtocolModuleMetadata] = {}

    def register(self, protocol_type: str, factory: ModuleFactory) -> None:
        """Register *factory* under *protocol_type*.

        If a factory for the same identifier is already registered it is
        silently replaced.

        Args:
            protocol_type: The protocol identifier.
            factory: A callable taking an optional transport and returning
                a new module (module classes qualify).
        """
        self._factories[protocol_type] = factory
        self._metadata.pop(protocol_type, None)

    def create(
        self, protocol_type: str, transport: Optional[HttpTransport] = None
    ) -> ProtocolModule:
        """Build a fresh module for *protocol_type*.

        Raises:
            ConfigurationError: If no module is registered for *protocol_type*.
        """
        factory = self._factories.get(protocol_type)
        if factory is None:
            available = ", ".join(sorted(self._factories)) or "(none)"
            raise ConfigurationError(
                f"No protocol module registered for '{protocol_type}'. "
                f"Available protocols: {available}"
            )
        return factory(transport)

    def get_metadata(self, protocol_type: str) -> ProtocolModuleMetadata:
        """Return the metadata of *protocol_type* without keeping a module around."""
        if protocol_type not in self._metadata:
            self._metadata[protocol_type] = self.create(protocol_type).metadata
        return self._metadata[protocol_type]

    def is_registered(self, protocol_type: str) -> bool:
        return protocol_type in self._factories

    def list_types(self) -> list[str]:
        """Return the identifiers of all registered protocols, sorted."""
        return sorted(self._factories)


def create_default_registry() -> ProtocolRegistry:
    """Create a :class:`ProtocolRegistry` pre-loaded with all built-in modules.

    The following protocols are registered:

    - ``curl-default`` -- templated cURL commands.
    - ``oauth2-pkce`` -- OAuth 2.0 Authorization Code with PKCE (public client).
    - ``oauth2-auth-code`` -- OAuth 2.0 Authorization Code (confidential client).
    - ``oauth2-client-credentials`` -- OAuth 2.0 Client Credentials (machine to machine).
    - ``rest-api-key`` -- a static API key in a header, query parameter or cookie.
    - ``graphql`` -- GraphQL over HTTP POST.
    - ``websocket`` -- authenticated WebSocket connections.

    Returns:
        A fully initialised :class:`ProtocolRegistry`.
    """
    from handshake.plugins.curl import CurlModule
    from handshake.plugins.graphql import GraphQLModule
    from handshake.plugins.oauth2_auth_code import OAuth2AuthCodeModule
    from handshake.plugins.oauth2_client_credentials import ClientCredentialsModule
    from handshake.plugins.oauth2_pkce import OAuth2PkceModule
    from handshake.plugins.rest_api_key import RestApiKeyModule
    from handshake.plugins.websocket import WebSocketModule

    registry = ProtocolRegistry()
    registry.register("curl-default", CurlModule)
    registry.register("oauth2-pkce", OAuth2PkceModule)
    registry.register("oauth2-auth-code", OAuth2AuthCodeModule)
    registry.register("oauth2-client-credentials", ClientCredentialsModule)
    registry.register("rest-api-key", RestApiKeyModule)
    registry.register("graphql", GraphQLModule)
    registry.register("websocket", WebSocketModule)
    return registry
