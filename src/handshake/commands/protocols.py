"""Protocol commands -- inspect the registered protocol modules.

Provides the ``handshake protocols`` sub-command group:

* ``list`` shows every known protocol id and whether a module backs it.
* ``fields`` prints the configuration fields a module declares.
* ``validate`` checks a stored credential profile against a module's
  field rules without touching the network.

Typical workflow::

    handshake protocols list
    handshake protocols fields oauth2-pkce
    handshake protocols validate oauth2-pkce --profile github
"""

from __future__ import annotations

from typing import Optional

import typer

from handshake.output import error, format_response, print_table, success, suggest, warning


protocols_app = typer.Typer(no_args_is_help=True)


@protocols_app.command("list")
def protocols_list() -> None:
    """List every known protocol and whether it can be executed.

    Example::

        handshake protocols list
        handshake --json protocols list
    """
    from handshake.protocols.registry import create_default_registry
    from handshake.router import get_supported_protocols

    registry = create_default_registry()
    rows = []
    for entry in get_supported_protocols():
        registered = registry.is_registered(entry["type"])
        description = registry.get_metadata(entry["type"]).description if registered else ""
        rows.append([entry["type"], entry["name"], "yes" if registered else "no", description])
    print_table(["type", "name", "module", "description"], rows, title="Protocols")


@protocols_app.command("fields")
def protocols_fields(
    protocol: str = typer.Argument(help="Protocol id, e.g. 'graphql'."),
) -> None:
    """Show the required and optional fields of a protocol module.

    Raises:
        typer.Exit: With code 2 if no module is registered for *protocol*.
    """
    from handshake.exceptions import ConfigurationError
    from handshake.protocols.registry import create_default_registry

    try:
        module = create_default_registry().create(protocol)
    except ConfigurationError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None

    rows = [
        [
            field.id,
            field.label,
            field.type.value,
            "yes" if field.required else "no",
            field.group or "",
            "yes" if field.id in module.sensitive_field_ids() else "no",
        ]
        for field in module.get_all_fields()
    ]
    print_table(
        ["id", "label", "type", "required", "group", "sensitive"],
        rows,
        title=module.metadata.display_name,
    )


@protocols_app.command("validate")
def protocols_validate(
    ctx: typer.Context,
    protocol: str = typer.Argument(help="Protocol id to validate against."),
    profile_name: Optional[str] = typer.Option(
        None, "--profile", "-p", help="Credential profile to validate."
    ),
) -> None:
    """Validate a credential profile against a protocol's field rules.

    The profile comes from ``--profile``, then the root ``--profile``
    option, ``HANDSHAKE_PROFILE`` and finally the global default.
    ``env:`` and ``file:`` references are resolved before validation.

    Raises:
        typer.Exit: With code 2 if the profile cannot be loaded or the
            credentials are invalid.

    Example::

        handshake protocols validate graphql --profile countries
    """
    from handshake.config import load_profile, resolve_credentials, resolve_profile_name
    from handshake.exceptions import ConfigError, ConfigurationError
    from handshake.protocols.registry import create_default_registry

    name = resolve_profile_name(profile_name or (ctx.obj or {}).get("profile"))
    if not name:
        error("No profile selected.")
        suggest("Pass --profile or set HANDSHAKE_PROFILE.")
        raise typer.Exit(code=2)

    try:
        module = create_default_registry().create(protocol)
        profile = load_profile(name)
        credentials = resolve_credentials(profile.credentials)
    except (ConfigurationError, ConfigError) as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None

    if profile.protocol != protocol:
        warning(f"Profile '{name}' is stored for '{profile.protocol}', not '{protocol}'.")

    result = module.validate_credentials(credentials)
    for message in result.warnings:
        warning(message)

    if not result.valid:
        format_response(result.model_dump(mode="json"))
        error(f"Profile '{name}' is not valid for {protocol}: {result.error_summary()}")
        raise typer.Exit(code=2)

    success(f"Profile '{name}' is valid for {protocol}.")
