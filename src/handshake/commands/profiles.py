"""Profile commands -- manage stored credential profiles.

A profile is a JSON file under ``<config_dir>/profiles/`` holding a protocol
id and its credential mapping. Values may be ``env:VAR`` or ``file:/path``
references instead of literal secrets.

Example::

    handshake profiles list
    handshake profiles show github
    handshake profiles delete github --yes
"""

from __future__ import annotations

from typing import Any

import typer

from handshake.output import error, format_response, info, print_table, success


profiles_app = typer.Typer(no_args_is_help=True)


@profiles_app.command("list")
def profiles_list() -> None:
    """List stored profiles with their protocol."""
    from handshake.config import list_profiles, load_global_config, load_profile
    from handshake.exceptions import ConfigError

    names = list_profiles()
    if not names:
        info("No profiles stored.")
        return

    default = load_global_config().default_profile
    rows = []
    for name in names:
        try:
            protocol = load_profile(name).protocol
        except ConfigError:
            protocol = "(invalid)"
        rows.append([name, protocol, "*" if name == default else ""])
    print_table(["name", "protocol", "default"], rows, title="Profiles")


@profiles_app.command("show")
def profiles_show(
    name: str = typer.Argument(help="Profile name."),
) -> None:
    """Show a profile with sensitive values masked.

    ``env:`` and ``file:`` references are shown as written, since they
    name a secret's location rather than the secret itself.

    Raises:
        typer.Exit: With code 2 if the profile cannot be loaded.
    """
    from handshake.config import load_profile
    from handshake.exceptions import ConfigError

    try:
        profile = load_profile(name)
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None

    format_response(
        {
            "name": profile.name,
            "protocol": profile.protocol,
            "credentials": mask_profile_credentials(profile.protocol, profile.credentials),
        }
    )


@profiles_app.command("delete")
def profiles_delete(
    name: str = typer.Argument(help="Profile name."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
) -> None:
    """Delete a stored profile.

    Raises:
        typer.Exit: With code 2 if the profile does not exist.
    """
    from handshake.config import delete_profile
    from handshake.exceptions import ConfigError

    if not yes and not typer.confirm(f"Delete profile '{name}'?"):
        info("Cancelled.")
        raise typer.Exit()

    try:
        delete_profile(name)
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None
    success(f"Deleted profile '{name}'.")


def mask_profile_credentials(protocol: str, credentials: dict[str, Any]) -> dict[str, Any]:
    """Mask *credentials* using the sensitive fields of *protocol*'s module.

    Profiles for protocols without a module get every literal string
    masked.
    """
    from handshake.protocols.base import mask_secret
    from handshake.protocols.registry import create_default_registry

    registry = create_default_registry()
    if registry.is_registered(protocol):
        masked = registry.create(protocol).get_masked_credentials(credentials)
    else:
        masked = {
            key: mask_secret(value) if isinstance(value, str) else value
            for key, value in credentials.items()
        }

    for key, value in credentials.items():
        if isinstance(value, str) and value.startswith(("env:", "file:")):
            masked[key] = value
    return masked
