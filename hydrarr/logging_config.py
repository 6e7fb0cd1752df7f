"""
Structured Logging Configuration for Hydrarr
Provides JSON logging, log rotation, activity log buffer, and context filtering.
"""

import json
import logging
import logging.handlers
import sys
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

_log_context: ContextVar[Dict[str, Any]] = ContextVar("hydrarr_log_context", default={})


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ContextFilter(logging.Filter):
    """
    Add context fields to log records.
    Context is stored in a ContextVar so concurrent requests on the same
    event loop do not see each other's fields.
    """

    @classmethod
    def set_context(cls, **kwargs) -> None:
        """Set context fields for subsequent log messages in this task."""
        context = dict(_log_context.get())
        context.update(kwargs)
        _log_context.set(context)

    @classmethod
    def clear_context(cls, *keys) -> None:
        """Clear specific context fields or all if no keys specified."""
        if not keys:
            _log_context.set({})
            return
        context = dict(_log_context.get())
        for key in keys:
            context.pop(key, None)
        _log_context.set(context)

    @classmethod
    def get_context(cls) -> Dict[str, Any]:
        """Get current context."""
        return dict(_log_context.get())

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to the log record."""
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """
    Format logs as JSON for structured logging.
    Includes timestamp, level, logger name, message, and context fields.
    """

    CONTEXT_FIELDS = [
        "service",
        "endpoint",
        "operation",
        "failure",
        "status",
        "timeout",
        "item_id",
        "error",
        "duration_ms",
    ]

    _RESERVED = (
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    )

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj = {
            "timestamp": _utc_now_iso(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                value = getattr(record, field)
                if value is not None:
                    log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
            log_obj["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        if self.include_extra:
            for key, value in record.__dict__.items():
                if (
                    key not in log_obj
                    and key not in self.CONTEXT_FIELDS
                    and not key.startswith("_")
                    and key not in self._RESERVED
                ):
                    try:
                        json.dumps(value)
                        log_obj[key] = value
                    except (TypeError, ValueError):
                        log_obj[key] = str(value)

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for better readability.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors."""
        message = super().format(record)

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            if color:
                message = message.replace(
                    record.levelname,
                    f"{color}{record.levelname}{self.RESET}",
                    1
                )

        context_parts = []
        for field in ["service", "endpoint", "failure"]:
            if hasattr(record, field):
                value = getattr(record, field)
                if value:
                    context_parts.append(f"{field}={value}")

        if context_parts:
            message += f" [{', '.join(context_parts)}]"

        return message


@dataclass
class ActivityLogEntry:
    """Entry in the activity log buffer."""
    timestamp: str
    level: str
    logger: str
    message: str
    service: Optional[str] = None
    endpoint: Optional[str] = None
    failure: Optional[str] = None


class ActivityLog:
    """
    Bounded, append-only ring buffer of the aggregator's own log lines.
    Oldest entries are dropped first once capacity is reached.
    """

    def __init__(self, capacity: int = 500):
        self._entries: deque = deque(maxlen=max(1, capacity))

    def append(self, entry: ActivityLogEntry) -> None:
        self._entries.append(entry)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[ActivityLogEntry]:
        return list(self._entries)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count


LEVEL_PRIORITY = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}


class ActivityLogHandler(logging.Handler):
    """
    Logging handler that owns an ActivityLog so recent lines can be served
    over the API without external log aggregation.
    """

    def __init__(self, max_entries: int = 500, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self.buffer = ActivityLog(max_entries)

    def emit(self, record: logging.LogRecord) -> None:
        """Store log entry in buffer."""
        # Handler.handle() holds self.lock around emit, so appends never interleave.
        try:
            self.buffer.append(ActivityLogEntry(
                timestamp=_utc_now_iso(),
                level=record.levelname,
                logger=record.name,
                message=record.getMessage(),
                service=getattr(record, "service", None),
                endpoint=getattr(record, "endpoint", None),
                failure=getattr(record, "failure", None),
            ))
        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        limit: int = 100,
        level: str = None,
        service: str = None,
        since: str = None,
    ) -> List[Dict[str, Any]]:
        """
        Get filtered logs from the buffer, oldest first.

        Args:
            limit: Maximum number of entries to return
            level: Minimum log level filter
            service: Filter by upstream service
            since: ISO timestamp, return only entries after this time

        Returns:
            List of log entries as dictionaries
        """
        entries = self.buffer.entries()

        if level:
            min_priority = LEVEL_PRIORITY.get(level.upper(), 0)
            entries = [
                e for e in entries
                if LEVEL_PRIORITY.get(e.level, 0) >= min_priority
            ]

        if service:
            entries = [e for e in entries if e.service == service]

        if since:
            entries = [e for e in entries if e.timestamp >= since]

        if limit <= 0:
            return []
        return [asdict(e) for e in entries[-limit:]]

    def clear(self) -> int:
        """Clear the log buffer. Returns count cleared."""
        return self.buffer.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get buffer statistics."""
        entries = self.buffer.entries()

        level_counts = {}
        for e in entries:
            level_counts[e.level] = level_counts.get(e.level, 0) + 1

        return {
            "buffer_size": len(entries),
            "max_size": self.buffer.capacity,
            "by_level": level_counts,
        }


# Component-specific log levels
COMPONENT_LOG_LEVELS = {
    "hydrarr": "INFO",
    "hydrarr.server": "INFO",
    "hydrarr.upstream": "INFO",
    "hydrarr.qbittorrent": "INFO",
    "hydrarr.dashboard": "INFO",
    "aiohttp": "WARNING",
    "aiohttp.client": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "uvicorn.error": "INFO",
    "fastapi": "INFO",
}


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
    activity_log_size: int = 500,
) -> ActivityLogHandler:
    """
    Configure logging with optional file rotation and structured output.

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (enables rotation if set)
        log_format: "text" for human-readable, "json" for structured
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated log files to keep
        use_colors: Use colored output in console (if terminal supports it)
        activity_log_size: Number of entries in the activity log buffer

    Returns:
        ActivityLogHandler for API access to recent logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context_filter)

    if log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.addFilter(context_filter)

        if log_format == "json":
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))

        root_logger.addHandler(file_handler)

    activity_handler = ActivityLogHandler(
        max_entries=activity_log_size,
        min_level=logging.INFO,
    )
    activity_handler.addFilter(context_filter)
    root_logger.addHandler(activity_handler)

    for logger_name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level))

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging configured: level={log_level}, format={log_format}, "
        f"file={log_file or 'none'}"
    )

    return activity_handler


class LogContext:
    """
    Context manager for setting log context fields.

    Usage:
        with LogContext(service="sonarr", operation="tv_overview"):
            logger.info("Reconciling library")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self._token = None

    def __enter__(self):
        merged = dict(_log_context.get())
        merged.update(self.context)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None
        return False
