"""Minimal leveled logging to standard error."""

from __future__ import annotations

import enum
import sys
import threading


class LogLevel(enum.IntEnum):
    """Verbosity levels, ordered from least to most verbose."""

    ERROR = 0
    INFO = 1
    DEBUG = 2

    @classmethod
    def parse(cls, value: str) -> "LogLevel":
        """Parse a configuration value into a level."""
        match value:
            case "error":
                return cls.ERROR
            case "info":
                return cls.INFO
            case "debug":
                return cls.DEBUG
        raise ValueError(
            f"invalid log_level value: {value} (expected: error|info|debug)"
        )

    def as_str(self) -> str:
        """Return the configuration spelling of this level."""
        return self.name.lower()


_configured: LogLevel | None = None
_init_lock = threading.Lock()


def init(level: LogLevel) -> None:
    """Set the process-wide level; only the first call has an effect."""
    global _configured
    with _init_lock:
        if _configured is None:
            _configured = level


def enabled(level: LogLevel) -> bool:
    """Return whether messages at ``level`` are emitted."""
    configured = LogLevel.INFO if _configured is None else _configured
    return level <= configured


def _emit(level: LogLevel, component: str, message: str) -> None:
    if enabled(level):
        print(f"[{component}] {level.name} {message}", file=sys.stderr)


def error(component: str, message: str) -> None:
    _emit(LogLevel.ERROR, component, message)


def info(component: str, message: str) -> None:
    _emit(LogLevel.INFO, component, message)


def debug(component: str, message: str) -> None:
    _emit(LogLevel.DEBUG, component, message)