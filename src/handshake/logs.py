"""Logging setup for the ``handshake`` logger hierarchy.

Library modules only ever call ``logging.getLogger(__name__)``; nothing is
printed unless an application configures handlers. The CLI calls
:func:`configure_logging` once from its root callback, which attaches a
:class:`rich.logging.RichHandler` writing to stderr so log lines never mix
with data on stdout.
"""

from __future__ import annotations

import logging
from typing import Union

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "handshake"


def configure_logging(
    level: Union[int, str] = logging.WARNING,
    rich_tracebacks: bool = True,
    no_color: bool = False,
) -> logging.Logger:
    """Install a stderr :class:`~rich.logging.RichHandler` on the ``handshake`` logger.

    Calling it again replaces the handler installed by the previous call
    instead of adding a second one.

    Args:
        level: A :mod:`logging` level or its name (``"DEBUG"``, ``"info"``...).
        rich_tracebacks: Render exception tracebacks with Rich.
        no_color: Disable colour in log output.

    Returns:
        The configured ``handshake`` logger.

    Raises:
        ValueError: If *level* is not a known level name.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_handshake_handler", False):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True, no_color=no_color),
        rich_tracebacks=rich_tracebacks,
        show_path=False,
        markup=False,
    )
    handler._handshake_handler = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
