"""Centralized logging for guidedflow.

Four verbosity levels:
- QUIET (0): Warnings + errors
- NORMAL (1): Info + warnings + errors
- VERBOSE (2): Detailed info (debounce scheduling, coalesced saves)
- DEBUG (3): Everything including discarded stale results

Every emitted line is also published on the LogBus so a UI layer can show
recent save/pricing errors without parsing console output.

Usage:
    from guidedflow.core.logging import get_logger, set_verbosity

    logger = get_logger(__name__)
    set_verbosity(2)  # VERBOSE

    logger.verbose("pricing recompute scheduled")
    logger.warning("autosave failed")
"""

from __future__ import annotations

import contextlib
import sys
import traceback
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum

from guidedflow.core.config import LoggingPolicy


class VerbosityLevel(IntEnum):
    """Verbosity levels for guidedflow."""

    QUIET = 0  # Warnings + errors
    NORMAL = 1  # Info + warnings + errors
    VERBOSE = 2  # Detailed info
    DEBUG = 3  # Everything


_VERBOSITY: VerbosityLevel = VerbosityLevel.NORMAL

_USE_COLORS: bool = True


@dataclass(frozen=True)
class LogRecord:
    level_name: str
    plain: str
    logger_name: str


class LogBus:
    """Fail-safe fan-out of log records with a bounded tail."""

    def __init__(self, tail_size: int = 200) -> None:
        self._subs: list[Callable[[LogRecord], None]] = []
        self._tail: deque[LogRecord] = deque(maxlen=tail_size)

    def subscribe(self, cb: Callable[[LogRecord], None]) -> Callable[[], None]:
        self._subs.append(cb)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subs.remove(cb)

        return _unsubscribe

    def publish(self, record: LogRecord) -> None:
        self._tail.append(record)
        for cb in list(self._subs):
            try:
                cb(record)
            except Exception:
                # Never route through the logger here (recursion).
                msg = "LogBus subscriber raised; suppressed.\n" + traceback.format_exc()
                with contextlib.suppress(Exception):
                    sys.stderr.write(msg)

    def recent(self, level_name: str | None = None) -> list[LogRecord]:
        if level_name is None:
            return list(self._tail)
        return [r for r in self._tail if r.level_name == level_name]

    def clear(self) -> None:
        self._subs.clear()
        self._tail.clear()


_LOG_BUS = LogBus()


def get_log_bus() -> LogBus:
    return _LOG_BUS


def set_verbosity(level: int | VerbosityLevel) -> None:
    """Set global verbosity level.

    Args:
        level: Verbosity level (0-3 or VerbosityLevel enum)
    """
    global _VERBOSITY

    if isinstance(level, int):
        level = VerbosityLevel(level)

    _VERBOSITY = level


def get_verbosity() -> VerbosityLevel:
    return _VERBOSITY


def apply_logging_policy(policy: LoggingPolicy) -> None:
    """Apply a resolved LoggingPolicy to the global verbosity."""
    if policy.emit_debug:
        set_verbosity(VerbosityLevel.DEBUG if policy.level_name == "debug" else VerbosityLevel.VERBOSE)
    elif policy.emit_info:
        set_verbosity(VerbosityLevel.NORMAL)
    else:
        set_verbosity(VerbosityLevel.QUIET)


def set_colors(enabled: bool) -> None:
    global _USE_COLORS
    _USE_COLORS = enabled


class GuidedFlowLogger:
    """Logger with verbosity support."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "VERBOSE": "\033[34m",  # Blue
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "RESET": "\033[0m",
    }

    def __init__(self, name: str):
        self.name = name

    def _format_message(self, level: str, message: str) -> str:
        stream = sys.stderr if level == "ERROR" else sys.stdout
        if _USE_COLORS and stream.isatty():
            color = self.COLORS.get(level, "")
            reset = self.COLORS["RESET"]
            return f"{color}[{level.lower()}]{reset} {message}"
        return f"[{level.lower()}] {message}"

    def _log(self, level: VerbosityLevel, level_name: str, message: str) -> None:
        if level > _VERBOSITY:
            return

        plain = f"[{level_name.lower()}] {message}"
        _LOG_BUS.publish(LogRecord(level_name=level_name, plain=plain, logger_name=self.name))

        formatted = self._format_message(level_name, message)
        print(formatted, file=sys.stderr if level_name == "ERROR" else sys.stdout)

    def debug(self, message: str) -> None:
        self._log(VerbosityLevel.DEBUG, "DEBUG", message)

    def verbose(self, message: str) -> None:
        self._log(VerbosityLevel.VERBOSE, "VERBOSE", message)

    def info(self, message: str) -> None:
        self._log(VerbosityLevel.NORMAL, "INFO", message)

    def warning(self, message: str) -> None:
        self._log(VerbosityLevel.QUIET, "WARNING", message)

    def error(self, message: str) -> None:
        """Log error message (always shown)."""
        self._log(VerbosityLevel.QUIET, "ERROR", message)


_LOGGERS: dict[str, GuidedFlowLogger] = {}


def get_logger(name: str = __name__) -> GuidedFlowLogger:
    """Get logger instance for module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    if name not in _LOGGERS:
        _LOGGERS[name] = GuidedFlowLogger(name)

    return _LOGGERS[name]
