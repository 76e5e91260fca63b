"""PKCE commands -- generate verifiers, challenges and state tokens.

Useful when stepping through an OAuth flow by hand or checking a provider
against known values::

    handshake pkce generate
    handshake pkce generate --length 128 --json
    handshake pkce state --data returnTo=/dashboard
"""

from __future__ import annotations

from typing import Optional

import typer

from handshake.output import error, format_response


pkce_app = typer.Typer(no_args_is_help=True)


@pkce_app.command("generate")
def pkce_generate(
    length: int = typer.Option(
        43, "--length", "-l", help="Verifier length (43-128 characters)."
    ),
) -> None:
    """Generate a code verifier, its S256 challenge and a state token.

    Raises:
        typer.Exit: With code 2 if *length* is out of range.
    """
    from handshake.exceptions import ConfigurationError
    from handshake.pkce import generate_pkce_values, generate_state

    try:
        values = generate_pkce_values(length)
    except ConfigurationError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None

    format_response(
        {
            "code_verifier": values.code_verifier,
            "code_challenge": values.code_challenge,
            "code_challenge_method": values.code_challenge_method,
            "state": generate_state(),
        }
    )


@pkce_app.command("state")
def pkce_state(
    data: Optional[list[str]] = typer.Option(
        None, "--data", "-d", help="Custom key=value to embed (repeatable)."
    ),
) -> None:
    """Generate a CSRF state token, optionally carrying custom data.

    The decoded payload (nonce, timestamp and custom data) is printed next
    to the token.
    """
    from handshake.commands import parse_key_values
    from handshake.pkce import generate_state, parse_state

    try:
        custom = parse_key_values(data, "--data")
    except ValueError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None

    state = generate_state(custom or None)
    format_response({"state": state, "payload": parse_state(state)})
