"""Built-in CLI sub-commands for handshake.

This package groups the Typer sub-applications that form the CLI's
top-level command tree:

* :mod:`~handshake.commands.protocols` -- list modules, show their fields,
  validate a credential profile.
* :mod:`~handshake.commands.pkce` -- generate PKCE values and state tokens.
* :mod:`~handshake.commands.curl` -- parse and execute cURL commands through
  the execution router.
* :mod:`~handshake.commands.profiles` -- list, show and delete stored
  credential profiles.
"""

from __future__ import annotations

from typing import Optional


def parse_key_values(pairs: Optional[list[str]], option: str) -> dict[str, str]:
    """Turn repeated ``key=value`` options into a mapping.

    Raises:
        ValueError: If an item has no ``=`` or an empty key.
    """
    result: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid {option} value '{pair}': expected key=value")
        result[key.strip()] = value
    return result
