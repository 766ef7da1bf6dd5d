"""
Structured logging for the security core.

This module provides:
- JSON-formatted logs for production
- Human-readable logs for development
- Request ID tracking across logs
- LogSink, a bounded in-memory log trail fed by the standard logging tree

Every component logs through a named child of the ``fieldops`` logger, so
the logger name is the component tag recorded in the trail:

    logger = logging.getLogger("fieldops.audit")
    logger.warning("[AUDIT] Critical entry queued", extra={"entry_id": entry.id})

Usage:
    from fieldops_security.logging import LogSink, attach_log_sink, setup_logging

    setup_logging(level="DEBUG")
    sink = attach_log_sink(LogSink(max_entries=10_000))
    sink.get_recent_logs(20)
"""

import json
import logging
import sys
import threading
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from .timeutil import from_epoch, isoformat_z, utc_now

ROOT_LOGGER_NAME = "fieldops"

# Context variable for request ID tracking
_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName", "request_id",
})


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return _request_id_ctx.get()


def set_request_id(request_id: str | None = None) -> str:
    """
    Set the request ID in context.

    Args:
        request_id: Optional request ID. If not provided, generates a new one.

    Returns:
        The request ID that was set.
    """
    if request_id is None:
        request_id = str(uuid.uuid4())[:8]
    _request_id_ctx.set(request_id)
    return request_id


class RequestContextManager:
    """Context manager for request ID tracking."""

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id
        self._token = None

    def __enter__(self) -> str:
        if self.request_id is None:
            self.request_id = str(uuid.uuid4())[:8]
        self._token = _request_id_ctx.set(self.request_id)
        return self.request_id

    def __exit__(self, *args):
        _request_id_ctx.reset(self._token)


def request_context(request_id: str | None = None) -> RequestContextManager:
    """
    Create a context manager for request ID tracking.

    Usage:
        with request_context() as request_id:
            logger.info("Processing")  # Includes request_id automatically
    """
    return RequestContextManager(request_id)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    Outputs one JSON object per line for log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": isoformat_z(from_epoch(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        log_data["location"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter for development.

    Includes colors for different log levels.
    """

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        level = f"{color}{record.levelname:8}{self.RESET}"

        request_id = get_request_id()
        req_str = f"[{request_id}] " if request_id else ""

        timestamp = from_epoch(record.created).strftime("%H:%M:%S")

        msg = f"{timestamp} {level} {req_str}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += f"\n{self.formatException(record.exc_info)}"

        return msg


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    module_levels: dict[str, str] | None = None,
) -> None:
    """
    Configure application logging.

    Args:
        level: Default log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for development)
        module_levels: Optional dict of logger names to log levels
            Example: {"fieldops.events": "INFO", "httpx": "WARNING"}
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        if not isinstance(handler, LogSink):
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    root_logger.addHandler(handler)

    if module_levels:
        for module, mod_level in module_levels.items():
            logging.getLogger(module).setLevel(getattr(logging, mod_level.upper()))

    for module in ("httpx", "httpcore", "asyncio", "multipart"):
        if module_levels is None or module not in module_levels:
            logging.getLogger(module).setLevel(logging.WARNING)


# =============================================================================
# LOG SINK
# =============================================================================


class LogLevel(str, Enum):
    """Levels retained in the log trail."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def from_levelno(cls, levelno: int) -> "LogLevel":
        if levelno >= logging.ERROR:
            return cls.ERROR
        if levelno >= logging.WARNING:
            return cls.WARN
        if levelno >= logging.INFO:
            return cls.INFO
        return cls.DEBUG


_LEVEL_ORDER = {LogLevel.DEBUG: 0, LogLevel.INFO: 1, LogLevel.WARN: 2, LogLevel.ERROR: 3}


@dataclass(frozen=True)
class LogEntry:
    """One retained log record."""

    timestamp: datetime
    level: LogLevel
    message: str
    component: str
    meta: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "timestamp": isoformat_z(self.timestamp),
            "level": self.level.value,
            "message": self.message,
            "module": self.component,
        }
        if self.meta:
            data["meta"] = self.meta
        if self.error:
            data["error"] = self.error
        return data


class LogSink(logging.Handler):
    """
    Bounded in-memory log trail.

    Attach it to the ``fieldops`` logger (see attach_log_sink); every record
    emitted below that logger is retained until the trail is full, after
    which the oldest entry is evicted.
    """

    def __init__(self, max_entries: int = 10_000, level: int = logging.DEBUG):
        super().__init__(level=level)
        self.max_entries = max_entries
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            meta = _extra_fields(record)
            request_id = get_request_id()
            if request_id:
                meta["request_id"] = request_id

            error = None
            if record.exc_info and record.exc_info[1] is not None:
                exc = record.exc_info[1]
                error = f"{type(exc).__name__}: {exc}"

            entry = LogEntry(
                timestamp=from_epoch(record.created),
                level=LogLevel.from_levelno(record.levelno),
                message=record.getMessage(),
                component=record.name,
                meta=meta,
                error=error,
            )
            with self._entries_lock:
                self._entries.append(entry)
        except Exception:
            self.handleError(record)

    def _snapshot(self) -> list[LogEntry]:
        with self._entries_lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_recent_logs(self, limit: int = 100) -> list[LogEntry]:
        """Most recent entries, oldest first."""
        entries = self._snapshot()
        return entries[-limit:] if limit > 0 else []

    def get_logs_by_level(self, level: LogLevel | str, limit: int = 100) -> list[LogEntry]:
        """Most recent entries at or above a level."""
        threshold = _LEVEL_ORDER[LogLevel(level)]
        matching = [e for e in self._snapshot() if _LEVEL_ORDER[e.level] >= threshold]
        return matching[-limit:] if limit > 0 else []

    def get_logs_by_time_range(self, start: datetime, end: datetime) -> list[LogEntry]:
        return [e for e in self._snapshot() if start <= e.timestamp <= end]

    def get_security_logs(self) -> list[LogEntry]:
        """Entries about security, auth or permissions, plus every error."""
        result = []
        for entry in self._snapshot():
            message = entry.message.lower()
            if (
                entry.level == LogLevel.ERROR
                or "security" in message
                or "auth" in message
                or "permission" in message
            ):
                result.append(entry)
        return result

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def export_log_trail(self, format: Literal["json", "csv"] = "json") -> str:
        """
        Export the whole trail.

        Args:
            format: "json" for a pretty-printed array, "csv" for
                timestamp,level,message,module,error rows

        Returns:
            The serialized trail
        """
        entries = self._snapshot()
        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2, default=str)
        if format != "csv":
            raise ValueError(f"Unsupported export format: {format}")

        lines = ["timestamp,level,message,module,error"]
        for e in entries:
            message = e.message.replace('"', '""')
            error = (e.error or "").replace('"', '""')
            lines.append(
                f'{isoformat_z(e.timestamp)},{e.level.value},"{message}",{e.component},"{error}"'
            )
        return "\n".join(lines)

    def stats(self) -> dict[str, Any]:
        entries = self._snapshot()
        by_level = {level.value: 0 for level in LogLevel}
        for entry in entries:
            by_level[entry.level.value] += 1
        return {
            "total_entries": len(entries),
            "max_entries": self.max_entries,
            "by_level": by_level,
            "oldest": isoformat_z(entries[0].timestamp) if entries else None,
            "newest": isoformat_z(entries[-1].timestamp) if entries else None,
            "captured_at": isoformat_z(utc_now()),
        }


def attach_log_sink(sink: LogSink, logger_name: str = ROOT_LOGGER_NAME) -> LogSink:
    """Attach a sink to a logger subtree (idempotent) and return it."""
    logger = logging.getLogger(logger_name)
    if sink not in logger.handlers:
        logger.addHandler(sink)
    if logger.level == logging.NOTSET or logger.level > sink.level:
        logger.setLevel(sink.level)
    return sink


def detach_log_sink(sink: LogSink, logger_name: str = ROOT_LOGGER_NAME) -> None:
    logging.getLogger(logger_name).removeHandler(sink)
