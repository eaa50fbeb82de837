"""Library-wide diagnostic logging with a pluggable output function."""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import Callable, Optional


class LogLevel(IntEnum):
    """Verbosity levels, from silent to most detailed."""

    NONE = 0
    ERR = 1
    WARN = 2
    INFO = 3
    DEBG = 4
    VERB = 5
    TRACE = 6


LogOutput = Callable[[LogLevel, str, int, str], None]

_MAX_MESSAGE = 1023

_level: LogLevel = LogLevel.ERR
_output: Optional[LogOutput] = None


def set_debug(level: int, output: Optional[LogOutput]) -> None:
    """Set the active log level and the function that receives messages.

    ``output`` is called as ``output(level, file, line, message)``;
    pass ``None`` to discard all messages.
    """
    global _level, _output
    _level = LogLevel(level)
    _output = output


def get_level() -> LogLevel:
    """Return the active log level."""
    return _level


def log(level: int, message: str, *args: object) -> None:
    """Emit ``message % args`` if ``level`` is enabled and an output is set."""
    level = LogLevel(level)
    if level > _level or _output is None:
        return
    text = message % args if args else message
    caller = sys._getframe(1)
    _output(level, caller.f_code.co_filename, caller.f_lineno, text[:_MAX_MESSAGE])