"""Protocol module contract and registry.

Re-exports the public surface of the protocol subsystem:

- :class:`ProtocolModule` -- abstract base every protocol implements.
- :class:`ProtocolRegistry` / :func:`create_default_registry` -- identifier
  to constructor mapping.
"""

from handshake.protocols.base import ProtocolModule
from handshake.protocols.registry import ProtocolRegistry, create_default_registry

__all__ = ["ProtocolModule", "ProtocolRegistry", "create_default_registry"]
