"""Terminal output for the handshake CLI, with strict stdout/stderr discipline.

* **stdout** carries data only: protocol listings, parsed commands, response
  bodies, generated PKCE values. This is what scripts pipe and parse.
* **stderr** carries everything else: router progress logs, status lines,
  warnings and errors.
* ``AUTO`` format renders with Rich when stdout is a TTY and colour is
  allowed, and as plain text otherwise. ``NO_COLOR``, ``TERM=dumb`` and
  ``--no-color`` all disable colour.

:class:`OutputManager` holds the consoles and flags. The CLI callback builds
one and installs it with :func:`set_output`; commands fetch it with
:func:`get_output`. Tests call :func:`reset_output` between cases.
"""

from __future__ import annotations

import json
import os
import sys
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from handshake.models import LogEntry, LogLevel

_LEVEL_STYLES = {
    LogLevel.DEBUG: "dim",
    LogLevel.INFO: "cyan",
    LogLevel.SUCCESS: "green",
    LogLevel.WARN: "yellow",
    LogLevel.ERROR: "bold red",
}


class OutputFormat(str, Enum):
    """Supported output formats; ``AUTO`` resolves to ``RICH`` or ``PLAIN``."""

    AUTO = "auto"
    JSON = "json"
    PLAIN = "plain"
    RICH = "rich"


class OutputManager:
    """Route CLI output to stdout (data) or stderr (diagnostics).

    Args:
        format: Desired output format. ``AUTO`` resolves based on TTY
            detection.
        no_color: Disable all colour and Rich markup.
        quiet: Suppress informational messages on stderr.
        verbose: Show debug messages and debug-level router logs.
    """

    def __init__(
        self,
        format: OutputFormat = OutputFormat.AUTO,
        no_color: bool = False,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self._no_color = no_color or _should_disable_color()
        self._quiet = quiet
        self._verbose = verbose

        if format == OutputFormat.AUTO:
            self._format = (
                OutputFormat.RICH if _is_tty() and not self._no_color else OutputFormat.PLAIN
            )
        else:
            self._format = format

        # No file argument: rich resolves sys.stdout and sys.stderr on every write.
        self._stdout = Console(
            no_color=self._no_color,
            force_terminal=(self._format == OutputFormat.RICH),
        )
        self._stderr = Console(no_color=self._no_color, stderr=True)

    @property
    def format(self) -> OutputFormat:
        return self._format

    @property
    def is_quiet(self) -> bool:
        return self._quiet

    @property
    def is_verbose(self) -> bool:
        return self._verbose

    # ------------------------------------------------------------------ #
    # Data output (stdout)
    # ------------------------------------------------------------------ #

    def format_response(self, data: Any) -> None:
        """Print a payload (mapping, list or text) in the active format."""
        if self._format == OutputFormat.JSON:
            self.print_data(_to_json(data))
        elif self._format == OutputFormat.PLAIN:
            self._print_plain(data)
        else:
            self._print_rich(data)

    def print_data(self, text: str) -> None:
        print(text, file=sys.stdout, flush=True)

    def print_table(
        self,
        headers: list[str],
        rows: list[list[str]],
        title: Optional[str] = None,
    ) -> None:
        """Print rows as a Rich table, a JSON array of objects, or TSV."""
        if self._format == OutputFormat.JSON:
            records = [dict(zip(headers, row)) for row in rows]
            self.print_data(json.dumps(records, indent=2, ensure_ascii=False))
        elif self._format == OutputFormat.PLAIN:
            self.print_data("\t".join(headers))
            for row in rows:
                self.print_data("\t".join(row))
        else:
            table = Table(title=title, show_header=True, header_style="bold cyan")
            for h in headers:
                table.add_column(h)
            for row in rows:
                table.add_row(*row)
            self._stdout.print(table)

    # ------------------------------------------------------------------ #
    # Diagnostics (stderr)
    # ------------------------------------------------------------------ #

    def info(self, message: str) -> None:
        if not self._quiet:
            self._emit(message)

    def success(self, message: str) -> None:
        if not self._quiet:
            self._emit(message, "green")

    def warning(self, message: str) -> None:
        """Print a warning. Not suppressed by ``--quiet``."""
        self._emit(f"Warning: {message}", "yellow")

    def error(self, message: str) -> None:
        """Print an error. Never suppressed."""
        self._emit(f"Error: {message}", "bold red")

    def suggest(self, message: str) -> None:
        if not self._quiet:
            self._emit(f"→ {message}", "dim")

    def debug(self, message: str) -> None:
        if self._verbose:
            self._emit(f"[debug] {message}", "dim")

    def log_entry(self, entry: LogEntry) -> None:
        """Render one router :class:`~handshake.models.LogEntry` on stderr.

        Debug entries need ``--verbose``; errors and warnings always show.
        """
        if entry.level == LogLevel.DEBUG and not self._verbose:
            return
        if self._quiet and entry.level not in (LogLevel.ERROR, LogLevel.WARN):
            return
        line = f"{entry.context:<16} {entry.message}"
        if entry.commentary:
            line = f"{line}  ({entry.commentary})"
        self._emit(line, _LEVEL_STYLES[entry.level])

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _emit(self, message: str, style: Optional[str] = None) -> None:
        if self._no_color or style is None:
            print(message, file=sys.stderr, flush=True)
        else:
            self._stderr.print(message, style=style, markup=False, highlight=False)

    def _print_plain(self, data: Any) -> None:
        if isinstance(data, dict):
            for key, value in data.items():
                rendered = value if isinstance(value, str) else json.dumps(value, default=str)
                self.print_data(f"{key}\t{rendered}")
        elif isinstance(data, list):
            for item in data:
                self.print_data(item if isinstance(item, str) else json.dumps(item, default=str))
        elif data is None:
            return
        else:
            self.print_data(str(data))

    def _print_rich(self, data: Any) -> None:
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                self._stdout.print(data, markup=False, highlight=False)
                return
        syntax = Syntax(_to_json(data), "json", theme="monokai", word_wrap=True)
        self._stdout.print(syntax)


def _to_json(data: Any) -> str:
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return data
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _is_tty() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _should_disable_color() -> bool:
    """True when ``NO_COLOR`` is set (any value) or ``TERM=dumb``."""
    return os.environ.get("NO_COLOR") is not None or os.environ.get("TERM") == "dumb"


# ------------------------------------------------------------------ #
# Global output instance (set during app startup)
# ------------------------------------------------------------------ #

_output: Optional[OutputManager] = None


def get_output() -> OutputManager:
    """Return the installed :class:`OutputManager`, creating a default one lazily."""
    global _output
    if _output is None:
        _output = OutputManager()
    return _output


def set_output(output: OutputManager) -> None:
    global _output
    _output = output


def reset_output() -> None:
    """Drop the global manager so the next :func:`get_output` builds a fresh one."""
    global _output
    _output = None


# ------------------------------------------------------------------ #
# Convenience functions that use the global instance
# ------------------------------------------------------------------ #


def format_response(data: Any) -> None:
    get_output().format_response(data)


def print_data(text: str) -> None:
    get_output().print_data(text)


def print_table(
    headers: list[str],
    rows: list[list[str]],
    title: Optional[str] = None,
) -> None:
    get_output().print_table(headers, rows, title)


def info(message: str) -> None:
    get_output().info(message)


def error(message: str) -> None:
    get_output().error(message)


def success(message: str) -> None:
    get_output().success(message)


def warning(message: str) -> None:
    get_output().warning(message)


def suggest(message: str) -> None:
    get_output().suggest(message)


def debug(message: str) -> None:
    get_output().debug(message)


def log_entry(entry: LogEntry) -> None:
    """Render a router log entry via the global :class:`OutputManager`."""
    get_output().log_entry(entry)
