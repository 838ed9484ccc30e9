"""
Structured Logging for the "persist" Logger Tree

Every session and load binds its store name and key once; those fields
then ride along on each line, either as a `(store: "...", key: "..."):`
prefix in text output or as top-level fields in JSON output.

LogLevel.NONE silences the library completely. Logging never changes
library behavior.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, TextIO

ROOT_LOGGER_NAME = "persist"

# Fields rendered into the text prefix, in this order.
_PREFIX_FIELDS = ("store", "key")

# Attributes every logging.LogRecord carries; anything else came in via extra=.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL
    NONE = 100

    @classmethod
    def parse(cls, name: str) -> LogLevel:
        """Look a level up by name, case-insensitively."""
        member = cls.__members__.get(name.strip().upper())
        if member is None:
            raise ValueError(f"Unknown log level {name!r}")
        return member


def bound_fields(record: logging.LogRecord) -> dict[str, Any]:
    """The non-standard attributes attached to a record."""
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; bound fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(bound_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFormatter(logging.Formatter):
    """Text lines of the form `time | LEVEL | logger | (store: "players", key: "p1"): message`."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(prefix)s%(message)s")

    def formatMessage(self, record: logging.LogRecord) -> str:
        fields = bound_fields(record)
        shown = [f'{name}: "{fields[name]}"' for name in _PREFIX_FIELDS if name in fields]
        record.prefix = f"({', '.join(shown)}): " if shown else ""
        return super().formatMessage(record)


class StructuredLogger:
    """
    Wraps a stdlib logger and merges bound fields into each call's extras.

    Usage:
        log = StructuredLogger("persist.store").with_extra(store="players", key="p1")
        log.info("Loading session.", attempt=2)
    """

    __slots__ = ("_logger", "_fields")

    def __init__(self, name: str, level: Optional[LogLevel] = None, **fields: Any) -> None:
        self._logger = logging.getLogger(name)
        if level is not None:
            self._logger.setLevel(level)
        self._fields = fields

    @property
    def name(self) -> str:
        return self._logger.name

    def with_extra(self, **fields: Any) -> StructuredLogger:
        """A logger for the same name with more fields bound."""
        return StructuredLogger(self._logger.name, **{**self._fields, **fields})

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, message, extra={**self._fields, **fields})


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def set_log_level(level: LogLevel) -> None:
    """Set the threshold for every persist logger. LogLevel.NONE silences them."""
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(level)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Replace the handlers on the "persist" logger with a single stream handler.

    Args:
        level: Threshold for the whole library
        json_output: Emit JSON lines instead of text
        stream: Destination (default: stderr)
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for old in root.handlers[:]:
        root.removeHandler(old)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else ContextFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
