"""Static API key authentication.

Exports:
    :class:`RestApiKeyModule` -- the ``rest-api-key`` protocol module.
"""

from handshake.plugins.rest_api_key.plugin import RestApiKeyModule

__all__ = ["RestApiKeyModule"]
