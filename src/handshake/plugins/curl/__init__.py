"""Templated cURL commands.

Exports:
    :class:`CurlModule` -- the ``curl-default`` protocol module.
"""

from handshake.plugins.curl.plugin import CurlModule, rebase_url

__all__ = ["CurlModule", "rebase_url"]
