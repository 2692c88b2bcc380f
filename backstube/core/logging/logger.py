"""
Backstube Logging Subsystem

Purpose
-------
Structured, non-blocking logging for the gateway runtime:

- JSON records for aggregation (production) or colored text (development)
- Gateway context carried through ContextVars: session, sequence, event,
  handler, guild, user, command, correlation id
- QueueHandler + QueueListener so handler threads and the event loop never
  block on console or file I/O
- Bounded queue; records are dropped (and counted) rather than stalling the
  gateway during a log storm
- Daily rotating JSON file next to the console stream

Usage
-----
>>> setup_logging()                       # once, from the entry point
>>> logger = get_logger(__name__)
>>> async with LogContext(event_name="VOICE_STATE_UPDATE", sequence=42):
...     logger.info("Voice state applied", extra={"channel_id": 123})

Notes
-----
- `extra={...}` keys end up under "extra" in JSON output; context fields are
  promoted to the top level.
- Explicit `extra=` values win over ambient context.
- `setup_logging()` is not run at import so tests and library users keep
  control of the root logger.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

# ============================================================================
# Gateway Context (ContextVars)
# ============================================================================

CONTEXT_FIELDS: Tuple[str, ...] = (
    "session_id",
    "sequence",
    "event_name",
    "handler_id",
    "guild_id",
    "user_id",
    "command",
    "correlation_id",
    "component",
)

_gateway_context: ContextVar[Dict[str, Any]] = ContextVar("gateway_context", default={})

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _context_value(name: str, value: Any) -> Any:
    # Snowflakes are logged as strings so JSON consumers never lose precision
    if name in ("guild_id", "user_id") and value is not None:
        return str(value)
    return value


def _merge_context(base: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for name, value in fields.items():
        if value is None:
            continue
        merged[name] = _context_value(name, value)
    return merged


# ============================================================================
# Settings
# ============================================================================


@dataclass(frozen=True, slots=True)
class LoggingSettings:
    level: int = logging.INFO
    json_output: bool = False
    colors: bool = False
    logs_dir: Optional[Path] = None
    queue_max_size: int = 10_000
    file_basename: str = "backstube.json.log"
    file_backup_count: int = 1

    CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-36s | %(message)s%(context_suffix)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    @classmethod
    def from_config(cls) -> "LoggingSettings":
        """Derive settings from the static `Config` (environment)."""
        # Imported lazily: the config package logs through this module.
        from backstube.core.config.config import Config

        level = getattr(logging, str(Config.LOG_LEVEL).upper(), logging.INFO)
        production = Config.is_production()
        json_output = production if Config.LOG_JSON is None else bool(Config.LOG_JSON)
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_output=json_output,
            colors=not json_output and sys.stdout.isatty(),
            logs_dir=Path(Config.LOGS_DIR).resolve(),
        )


# ============================================================================
# Metrics / Health
# ============================================================================


@dataclass(slots=True)
class LoggingMetrics:
    records_enqueued: int = 0
    records_dropped: int = 0
    listener_errors: int = 0


@dataclass(frozen=True, slots=True)
class LoggingHealth:
    initialized: bool
    queue_size: int
    queue_max_size: int
    records_enqueued: int
    records_dropped: int
    listener_errors: int


_metrics = LoggingMetrics()
_log_queue: Optional["queue.Queue[logging.LogRecord]"] = None
_listener: Optional[QueueListener] = None
_settings: Optional[LoggingSettings] = None


# ============================================================================
# Filters & Formatters
# ============================================================================


class ContextFilter(logging.Filter):
    """Copy the current gateway context onto the record before it is queued."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        context = _gateway_context.get({})
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, context.get(name))
        if record.component is None:
            # backstube.core.gateway.state_machine -> gateway.state_machine
            record.component = record.name.split(".", 2)[-1]
        return True


class ColoredFormatter(logging.Formatter):
    """Human-readable console output with a compact context suffix."""

    COLORS: Dict[str, str] = {
        "DEBUG": "\033[90m",
        "INFO": "\033[94m",
        "WARNING": "\033[93m",
        "ERROR": "\033[91m",
        "CRITICAL": "\033[91m\033[1m",
    }
    RESET = "\033[0m"
    SUFFIX_FIELDS = ("session_id", "sequence", "event_name", "handler_id")

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, colors: bool = True) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        parts = [
            f"{name}={getattr(record, name)}"
            for name in self.SUFFIX_FIELDS
            if getattr(record, name, None) is not None
        ]
        record.context_suffix = f" [{' '.join(parts)}]" if parts else ""

        original = record.levelname
        color = self.COLORS.get(original) if self.colors else None
        if color:
            record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context at the top level, the rest under "extra"."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
            and key not in CONTEXT_FIELDS
            and key != "context_suffix"
            and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


# ============================================================================
# Queue Handler & Listener
# ============================================================================


class DroppingQueueHandler(QueueHandler):
    """Never blocks the caller: a full queue drops the record."""

    def enqueue(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            _metrics.records_dropped += 1
            return
        _metrics.records_enqueued += 1


class CountingQueueListener(QueueListener):
    def handleError(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _metrics.listener_errors += 1
        sys.stderr.write(f"backstube logging: handler failed for record from {record.name}\n")


# ============================================================================
# Setup / Teardown
# ============================================================================


def _console_handler(settings: LoggingSettings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if settings.json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ColoredFormatter(
                fmt=settings.CONSOLE_FORMAT,
                datefmt=settings.DATE_FORMAT,
                colors=settings.colors,
            )
        )
    return handler


def _file_handler(settings: LoggingSettings) -> Optional[logging.Handler]:
    if settings.logs_dir is None:
        return None
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(settings.logs_dir / settings.file_basename),
        when="midnight",
        backupCount=settings.file_backup_count,
        encoding="utf-8",
        utc=True,
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """Install the queue-backed root handler. Idempotent until `shutdown_logging()`."""
    global _listener, _log_queue, _metrics, _settings

    if _listener is not None:
        return

    settings = settings or LoggingSettings.from_config()
    _settings = settings
    _metrics = LoggingMetrics()

    handlers = [_console_handler(settings)]
    file_handler = _file_handler(settings)
    if file_handler is not None:
        handlers.append(file_handler)
    for handler in handlers:
        handler.setLevel(settings.level)

    _log_queue = queue.Queue(settings.queue_max_size)
    _listener = CountingQueueListener(_log_queue, *handlers, respect_handler_level=True)
    _listener.start()

    queue_handler = DroppingQueueHandler(_log_queue)
    queue_handler.setLevel(settings.level)
    # Context must be read on the emitting task, not on the listener thread
    queue_handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(settings.level)
    root.addHandler(queue_handler)

    for noisy in ("aiohttp", "asyncio", "discord"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging initialized",
        extra={
            "log_level": logging.getLevelName(settings.level),
            "json": settings.json_output,
            "logs_dir": str(settings.logs_dir) if settings.logs_dir else None,
            "queue_max_size": settings.queue_max_size,
        },
    )


def shutdown_logging() -> None:
    """Flush the queue and detach every root handler."""
    global _listener, _log_queue

    if _listener is None:
        return

    get_logger(__name__).info("Logging shutting down", extra={"dropped": _metrics.records_dropped})
    listener = _listener
    _listener = None
    listener.stop()
    for handler in listener.handlers:
        handler.flush()
        handler.close()

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, DroppingQueueHandler):
            root.removeHandler(handler)
    _log_queue = None


def get_logging_health() -> LoggingHealth:
    return LoggingHealth(
        initialized=_listener is not None,
        queue_size=_log_queue.qsize() if _log_queue is not None else 0,
        queue_max_size=_log_queue.maxsize if _log_queue is not None else 0,
        records_enqueued=_metrics.records_enqueued,
        records_dropped=_metrics.records_dropped,
        listener_errors=_metrics.listener_errors,
    )


# ============================================================================
# Public API
# ============================================================================


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Scope gateway context to a block (sync or async).

    A correlation id is generated unless one is given or already in scope.
    Unknown keyword arguments raise TypeError.
    """

    def __init__(self, **fields: Any) -> None:
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"unknown log context fields: {sorted(unknown)}")

        context = _merge_context(_gateway_context.get({}), fields)
        context.setdefault("correlation_id", uuid.uuid4().hex[:8])
        self.context = context
        self._token: Optional[Token[Dict[str, Any]]] = None

    def __enter__(self) -> "LogContext":
        self._token = _gateway_context.set(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _gateway_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def set_log_context(**fields: Any) -> None:
    """Merge `fields` into the current task's context (None values are skipped)."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"unknown log context fields: {sorted(unknown)}")
    _gateway_context.set(_merge_context(_gateway_context.get({}), fields))


def get_log_context() -> Dict[str, Any]:
    return dict(_gateway_context.get({}))


def clear_log_context() -> None:
    _gateway_context.set({})
