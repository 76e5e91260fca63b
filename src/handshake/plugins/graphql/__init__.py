"""GraphQL over HTTP.

Exports:
    :class:`GraphQLModule` -- the ``graphql`` protocol module.
    :class:`GraphQLRequest`, :class:`GraphQLResponse`, :class:`GraphQLError`
    -- the wire models.
"""

from handshake.plugins.graphql.plugin import (
    GraphQLError,
    GraphQLModule,
    GraphQLRequest,
    GraphQLResponse,
)

__all__ = ["GraphQLModule", "GraphQLRequest", "GraphQLResponse", "GraphQLError"]
