"""cURL commands -- parse and execute cURL command lines.

Provides the ``handshake curl`` sub-command group. ``parse`` shows what a
command would send without sending it; ``run`` executes it through the
:class:`~handshake.router.ExecutionRouter`, streaming the router's progress
log to stderr and the response body to stdout.

``{{name}}`` placeholders are filled from repeated ``--var name=value``
options. When no command is given, ``run`` falls back to the
``curlCommand`` and ``placeholderValues`` of the active profile.

Example::

    handshake curl parse "curl -X POST https://api.example.com/items -d '{}'"
    handshake curl run "curl https://api.example.com/users/{{id}}" --var id=42
    handshake --profile staging curl run
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import typer

from handshake.exit_codes import (
    EXIT_GENERIC_FAILURE,
    EXIT_PARSE_ERROR,
    EXIT_PROTOCOL_ERROR,
    EXIT_TRANSPORT_ERROR,
)
from handshake.output import error, format_response, info, log_entry, suggest, warning


curl_app = typer.Typer(no_args_is_help=True)

_ERROR_EXIT_CODES = {
    "PARSE_ERROR": EXIT_PARSE_ERROR,
    "TIMEOUT": EXIT_TRANSPORT_ERROR,
    "NETWORK_ERROR": EXIT_TRANSPORT_ERROR,
}


def _variables(var: Optional[list[str]]) -> dict[str, str]:
    from handshake.commands import parse_key_values

    try:
        return parse_key_values(var, "--var")
    except ValueError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None


@curl_app.command("parse")
def curl_parse(
    command: str = typer.Argument(help="The cURL command line, quoted."),
    var: Optional[list[str]] = typer.Option(
        None, "--var", help="Placeholder value as name=value (repeatable)."
    ),
) -> None:
    """Parse a cURL command and print its method, URL, headers and body.

    Placeholders without a ``--var`` value are listed under
    ``missing_placeholders`` and left in place.

    Raises:
        typer.Exit: With code 7 if no URL can be found in the command.
    """
    from handshake.curl import extract_placeholders, parse_curl_command, substitute_placeholders
    from handshake.exceptions import ParseError

    values = _variables(var)
    substituted = substitute_placeholders(command, values)
    try:
        parsed = parse_curl_command(substituted)
    except ParseError as exc:
        error(str(exc))
        raise typer.Exit(code=EXIT_PARSE_ERROR) from None

    missing = extract_placeholders(substituted)
    if missing:
        warning(f"Unfilled placeholders: {', '.join(missing)}")

    data: dict[str, Any] = parsed.model_dump(mode="json")
    data["placeholders"] = extract_placeholders(command)
    data["missing_placeholders"] = missing
    format_response(data)


@curl_app.command("run")
def curl_run(
    ctx: typer.Context,
    command: Optional[str] = typer.Argument(
        None, help="The cURL command line. Defaults to the profile's curlCommand."
    ),
    var: Optional[list[str]] = typer.Option(
        None, "--var", help="Placeholder value as name=value (repeatable)."
    ),
) -> None:
    """Execute a cURL command and print the response body.

    The transport honours the ``request`` section of the global config
    (timeout and TLS verification).

    Exit codes follow the failure: 5 for a non-2xx response, 6 for a
    network error or timeout, 7 for an unparseable command.
    """
    from handshake.client.transport import HttpTransport
    from handshake.models import GlobalConfig, RouterContext
    from handshake.router import ExecutionRouter

    credentials = _profile_credentials(ctx) if command is None else {}
    if command is not None:
        credentials["curlCommand"] = command
    if not credentials.get("curlCommand"):
        error("No cURL command given.")
        suggest("Pass a command or select a curl-default profile with --profile.")
        raise typer.Exit(code=2)

    values = _variables(var)
    if values:
        stored = credentials.get("placeholderValues")
        if isinstance(stored, dict):
            values = {**stored, **values}
        credentials["placeholderValues"] = values

    context = RouterContext(
        auth_type="curl-default",
        credentials=credentials,
        serial=(ctx.obj or {}).get("profile") or "",
    )

    settings = (ctx.obj or {}).get("config") or GlobalConfig()

    async def _run() -> Any:
        transport = HttpTransport(
            timeout=settings.request.timeout, verify_ssl=settings.request.verify_ssl
        )
        router = ExecutionRouter(transport=transport)
        try:
            return await router.execute_protocol(context, on_log=log_entry)
        finally:
            await router.aclose()

    result = asyncio.run(_run())

    if result.body is not None or result.raw_body:
        format_response(result.body if result.body is not None else result.raw_body)

    if result.success:
        info(f"{result.status_code} in {round(result.duration_ms)}ms")
        return

    error(result.error or "Request failed")
    if result.error_code:
        code = _ERROR_EXIT_CODES.get(result.error_code, EXIT_GENERIC_FAILURE)
    else:
        code = EXIT_PROTOCOL_ERROR
    raise typer.Exit(code=code)


def _profile_credentials(ctx: typer.Context) -> dict[str, Any]:
    from handshake.config import load_profile, resolve_credentials, resolve_profile_name
    from handshake.exceptions import ConfigError

    name = resolve_profile_name((ctx.obj or {}).get("profile"))
    if not name:
        return {}
    try:
        profile = load_profile(name)
        credentials = resolve_credentials(profile.credentials)
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=2) from None
    if profile.protocol != "curl-default":
        warning(f"Profile '{name}' is a {profile.protocol} profile; using its curlCommand only.")
    return credentials
