"""Typer application and CLI entry point for handshake.

This module wires together the top-level Typer application and registers the
built-in sub-command groups (``protocols``, ``pkce``, ``curl``,
``profiles``).

The :func:`main` function is the console-script entry point declared in
``pyproject.toml``. It installs signal handlers, registers commands and
invokes the Typer app. :class:`~handshake.exceptions.HandshakeError`
becomes a clean exit with the error's ``exit_code``; anything else is
written to a crash log under the data directory.

See Also:
    :mod:`handshake.output`: Output formatting initialised in :func:`main_callback`.
    :mod:`handshake.logs`: Logging configured in :func:`main_callback`.
"""

from __future__ import annotations

import logging
import signal
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

import typer

from handshake import __version__
from handshake.exit_codes import EXIT_GENERIC_FAILURE


app = typer.Typer(
    name="handshake",
    help="Configure, authenticate and execute API protocols from the terminal.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_registered = False


def _version_callback(value: bool) -> None:
    """Print version and exit when --version is passed."""
    if value:
        typer.echo(f"handshake {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    profile: Optional[str] = typer.Option(
        None, "--profile", "-p", help="Credential profile to use."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="JSON output format."
    ),
    plain_output: bool = typer.Option(
        False, "--plain", help="Plain text output."
    ),
    no_color: bool = typer.Option(
        False, "--no-color", help="Disable color output."
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress non-essential output."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug output."
    ),
) -> None:
    """Root callback executed before every sub-command.

    Installs the global :class:`~handshake.output.OutputManager` (flags win
    over the config file's ``output.format``), configures
    the ``handshake`` logger (``DEBUG`` with ``--verbose``, otherwise the
    level from the global config) and stores shared options in ``ctx.obj``.
    """
    from handshake.config import load_global_config
    from handshake.exceptions import ConfigError
    from handshake.logs import configure_logging
    from handshake.output import OutputFormat, OutputManager, set_output

    config_error: Optional[ConfigError] = None
    try:
        global_config = load_global_config()
    except ConfigError as exc:
        config_error = exc
        global_config = None

    if json_output:
        fmt = OutputFormat.JSON
    elif plain_output:
        fmt = OutputFormat.PLAIN
    elif global_config is not None:
        fmt = _configured_format(global_config.output.format)
    else:
        fmt = OutputFormat.AUTO

    output = OutputManager(format=fmt, no_color=no_color, quiet=quiet, verbose=verbose)
    set_output(output)
    if config_error is not None:
        output.warning(str(config_error))

    if verbose:
        level: Any = logging.DEBUG
    elif global_config is not None:
        level = global_config.logging.level
    else:
        level = logging.WARNING
    rich_tracebacks = global_config.logging.rich_tracebacks if global_config else True
    configure_logging(level, rich_tracebacks=rich_tracebacks, no_color=no_color)

    ctx.ensure_object(dict)
    ctx.obj["profile"] = profile
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = global_config


def _configured_format(value: str) -> Any:
    """Map the config file's ``output.format`` to an OutputFormat; unknown values mean AUTO."""
    from handshake.output import OutputFormat

    try:
        return OutputFormat(value.lower())
    except ValueError:
        return OutputFormat.AUTO


def _register_commands() -> None:
    """Attach the built-in command groups to :data:`app` (once)."""
    global _registered
    if _registered:
        return

    from handshake.commands.curl import curl_app
    from handshake.commands.pkce import pkce_app
    from handshake.commands.profiles import profiles_app
    from handshake.commands.protocols import protocols_app

    app.add_typer(protocols_app, name="protocols", help="Inspect and validate protocol modules.")
    app.add_typer(pkce_app, name="pkce", help="Generate PKCE verifiers and state tokens.")
    app.add_typer(curl_app, name="curl", help="Parse and execute cURL commands.")
    app.add_typer(profiles_app, name="profiles", help="Manage stored credential profiles.")
    _registered = True


def _setup_signal_handlers() -> None:
    """Install a SIGINT handler so Ctrl-C exits cleanly."""

    def _handler(signum: int, frame: Any) -> None:  # noqa: ANN401
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)

    signal.signal(signal.SIGINT, _handler)


def _write_crash_log(exc: Exception) -> str:
    """Write a crash traceback to disk and return the log file path."""
    from handshake.config import get_data_dir

    logs_dir = get_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = logs_dir / f"crash-{timestamp}.log"
    log_path.write_text(
        "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    )
    return str(log_path)


def main() -> None:
    """CLI entry point invoked by the ``handshake`` console script.

    Raises:
        SystemExit: Always raised (either by Typer or explicitly).
    """
    _setup_signal_handlers()
    try:
        _register_commands()
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled.\n")
        sys.exit(130)
    except Exception as exc:
        from handshake.exceptions import HandshakeError
        from handshake.output import error

        if isinstance(exc, HandshakeError):
            error(str(exc))
            sys.exit(exc.exit_code)
        else:
            log_path = _write_crash_log(exc)
            error(f"Unexpected error. Debug log: {log_path}")
            sys.exit(EXIT_GENERIC_FAILURE)
