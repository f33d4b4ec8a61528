"""Logging configuration for the Persona backend.

Sets up structured logging with color coding for development, JSON output for
production, and a per-host log file. Each process start archives the previous
log file with a timestamp suffix and prunes archives older than the retention
window.

Most modules log through the standard library (``get_logger``) with ``extra``
context. structlog is routed through the same handlers so key/value events
end up in the same console and file output.
"""

import json
import logging
import os
import socket
import sys
import traceback
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import ClassVar

import structlog

from .config import get_settings_instance

# Guard against double configuration (import time and lifespan startup)
_LOGGING_CONFIGURED = False

# LogRecord attributes that are never treated as "extra" context
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "getMessage",
        "message",
    }
)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for human-readable logs."""

    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors and trailing key=value context."""
        level_color = self.COLORS.get(record.levelname, "") if self.use_colors else ""
        reset_color = self.COLORS["RESET"] if self.use_colors else ""

        timestamp = datetime.fromtimestamp(record.created, UTC).strftime("%Y-%m-%d %H:%M:%S")
        message = record.getMessage()

        extra_fields = []
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_ATTRS or value is None:
                continue
            if isinstance(value, (str, int, float, bool)) and len(str(value)) < 100:
                extra_fields.append(f"{key}={value}")

        log_line = f"{timestamp} - {level_color}{record.levelname}{reset_color} - {record.name} - {message}"
        if extra_fields:
            log_line += f" | {' '.join(extra_fields)}"

        if record.exc_info:
            exc_info = traceback.format_exception(*record.exc_info)
            log_line += f"\n{level_color}Exception:{reset_color}\n" + "".join(exc_info)

        return log_line


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging (production/monitoring)."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            exc_type = record.exc_info[0]
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type is not None else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def _cleanup_old_log_archives(log_dir: Path, hostname: str, retention_days: int) -> None:
    """Remove archived log files older than the retention window."""
    prefix = f"persona_{hostname}.log."
    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    try:
        for entry in os.scandir(log_dir):
            if not entry.name.startswith(prefix) or not entry.is_file():
                continue
            # Archive suffix starts with YYYY-MM-DD
            date_part = entry.name[len(prefix) :][:10]
            try:
                file_date = datetime.strptime(date_part, "%Y-%m-%d").replace(tzinfo=UTC)
            except ValueError:
                continue
            if file_date < cutoff:
                os.unlink(entry.path)
    except OSError:
        pass  # directory listing failed; not worth crashing over


def _configure_structlog() -> None:
    """Route structlog events into the standard library handlers."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging() -> None:
    """Configure root, library and structlog logging once per process."""
    global _LOGGING_CONFIGURED  # noqa: PLW0603
    if _LOGGING_CONFIGURED:
        return

    settings = get_settings_instance()

    use_colors = settings.environment == "development" and sys.stdout.isatty()
    formatter = JSONFormatter() if settings.log_format == "json" else ColoredFormatter(use_colors=use_colors)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    log_dir = Path(settings.log_dir)
    os.makedirs(log_dir, exist_ok=True)

    # Hostname in the file name keeps horizontally scaled replicas apart
    hostname = socket.gethostname()
    log_path = log_dir / f"persona_{hostname}.log"

    if log_path.exists() and log_path.stat().st_size > 0:
        ts = datetime.now(UTC).strftime("%Y-%m-%d_%H-%M-%S")
        try:
            log_path.rename(f"{log_path}.{ts}")
        except OSError:
            pass  # worst case we append

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setFormatter(formatter)
    _cleanup_old_log_archives(log_dir, hostname, settings.log_retention_days)

    level = getattr(logging, settings.log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # SQLAlchemy logs every statement at INFO; keep it to errors
    for logger_name in ["sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.orm"]:
        logging.getLogger(logger_name).setLevel(logging.ERROR)

    external_lib_level = min(level, logging.WARNING)
    for logger_name in ["httpx", "httpcore", "asyncio", "multipart"]:
        logging.getLogger(logger_name).setLevel(max(external_lib_level, logging.WARNING))

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uvicorn_log = logging.getLogger(logger_name)
        uvicorn_log.setLevel(external_lib_level)
        uvicorn_log.handlers.clear()
        uvicorn_log.propagate = True

    logging.getLogger("persona").setLevel(level)
    _configure_structlog()

    logging.getLogger("persona.core.logging").info(
        "Logging configured",
        extra={
            "log_level": settings.log_level,
            "log_format": settings.log_format,
            "environment": settings.environment,
            "use_colors": use_colors,
        },
    )
    _LOGGING_CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``persona`` namespace."""
    if name == "persona" or name.startswith("persona."):
        return logging.getLogger(name)
    return logging.getLogger(f"persona.{name}")
