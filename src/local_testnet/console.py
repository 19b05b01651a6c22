"""
Console logging shared by the orchestrator CLI and the mock relay.

Every line carries the component that produced it, so the output of the
orchestrator and of a relay started by hand can be told apart::

    12:04:31 INFO     [testnet] lifecycle.controller: Lifecycle STARTING -> RUNNING
    12:04:31 INFO     [relay]   relay.server: Builder relay for network 4242 listening on ...
"""

from __future__ import annotations

import logging
from typing import Final

PACKAGE_PREFIX: Final = "local_testnet."
"""Stripped from logger names; every logger of the package shares it."""

TIME_FORMAT: Final = "%H:%M:%S"

COMPONENT_WIDTH: Final = 9
"""Width of the bracketed component tag, so messages line up across components."""

HANDLER_NAME: Final = "local-testnet-console"
"""Name of the handler installed by setup_logging."""

_RESET: Final = "\x1b[0m"

_LEVEL_COLORS: Final = {
    logging.DEBUG: "\x1b[38;5;244m",
    logging.INFO: "\x1b[38;5;40m",
    logging.WARNING: "\x1b[38;5;220m",
    logging.ERROR: "\x1b[38;5;196m",
    logging.CRITICAL: "\x1b[38;5;196;1m",
}

_COMPONENT_COLORS: Final = {
    "testnet": "\x1b[38;5;39m",
    "relay": "\x1b[38;5;171m",
}


class ConsoleFormatter(logging.Formatter):
    """Formats records as ``time level [component] module: message``, optionally colored."""

    def __init__(self, component: str, color: bool = True) -> None:
        super().__init__(datefmt=TIME_FORMAT)
        self.component = component
        self.color = color

    def _paint(self, text: str, code: str | None) -> str:
        if not self.color or code is None:
            return text
        return f"{code}{text}{_RESET}"

    def format(self, record: logging.LogRecord) -> str:
        name = record.name.removeprefix(PACKAGE_PREFIX)
        tag = f"[{self.component}]".ljust(COMPONENT_WIDTH)

        line = " ".join(
            (
                self._paint(self.formatTime(record, self.datefmt), "\x1b[38;5;51m"),
                self._paint(f"{record.levelname:8}", _LEVEL_COLORS.get(record.levelno)),
                self._paint(tag, _COMPONENT_COLORS.get(self.component)),
                f"{name}: {record.getMessage()}",
            )
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(component: str, verbose: bool = False, no_color: bool = False) -> None:
    """
    Send log records to stderr.

    Calling it again replaces the handler installed by the previous call.

    Args:
        component: Tag printed on every line, e.g. ``testnet`` or ``relay``.
        verbose: Log at DEBUG instead of INFO.
        no_color: Disable ANSI colors.
    """
    level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.set_name(HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(ConsoleFormatter(component, color=not no_color))

    root = logging.getLogger()
    for previous in [h for h in root.handlers if h.get_name() == HANDLER_NAME]:
        root.removeHandler(previous)
    root.setLevel(level)
    root.addHandler(handler)
