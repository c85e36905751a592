"""
FeedMark Logging Configuration
==============================

Console and rotating-file logging for the importer. Records carry source and
feed context through adapters, and the file sink always writes JSON lines so
an import run can be traced per source afterwards.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "feedmark"

# Libraries whose INFO output drowns the per-source messages
QUIET_LIBRARIES = ("urllib3", "requests", "aiohttp", "feedparser", "sqlite3")

_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; adapter context goes under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Short colored lines for a terminal, prefixed with the source being imported."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        source_id = getattr(record, "source_id", None)
        scope = f"{record.name} [{source_id}]" if source_id else record.name

        line = f"{clock} {level} {scope}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _console_handler(structured: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(use_color=sys.stderr.isatty()))
    return handler


def _file_handler(log_file: str, max_bytes: int, backup_count: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setFormatter(StructuredFormatter())
    return handler


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
    structured: bool = False,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Replace the handlers of ``name`` with console and/or file sinks.

    Calling it again reconfigures the logger rather than stacking handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console:
        logger.addHandler(_console_handler(structured))
    if log_file:
        logger.addHandler(_file_handler(log_file, max_file_size, backup_count))

    return logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter whose context is merged under any per-call ``extra``."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "LoggerAdapter":
        """Copy of this adapter with extra context; ``None`` values are dropped."""
        bound = {key: value for key, value in context.items() if value is not None}
        return LoggerAdapter(self.logger, {**self.extra, **bound})


def get_logger_for_component(
    component_name: str,
    source_id: Optional[str] = None,
    feed_url: Optional[str] = None,
) -> LoggerAdapter:
    """Adapter for ``feedmark.<component_name>`` tagged with the component.

    Source and feed context are added only when given, so a component-wide
    logger can later be narrowed with :meth:`LoggerAdapter.bind`.
    """
    adapter = LoggerAdapter(
        logging.getLogger(f"{ROOT_LOGGER_NAME}.{component_name}"),
        {"component": component_name},
    )
    return adapter.bind(source_id=source_id or None, feed_url=feed_url or None)


def configure_application_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/feedmark.log",
    enable_console: bool = True,
    structured_logging: bool = False,
    max_file_size_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Configure the ``feedmark`` logger tree from settings values.

    Args:
        log_level: Level name for every feedmark logger
        log_file: Rotating JSON log file; empty or None disables it
        enable_console: Log to stderr
        structured_logging: JSON on the console too
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files kept
    """
    setup_logger(
        level=log_level,
        log_file=log_file or None,
        console=enable_console,
        structured=structured_logging,
        max_file_size=max_file_size_mb * 1024 * 1024,
        backup_count=backup_count,
    )

    for library in QUIET_LIBRARIES:
        logging.getLogger(library).setLevel(logging.WARNING)


class PerformanceLogger:
    """Times a block and logs its start and end at debug level.

    Usage:
        with PerformanceLogger(logger, "feed fetch", source_id=sid) as perf:
            ...
        perf.duration  # seconds
    """

    def __init__(self, logger: logging.Logger, operation: str, **context: Any):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.duration: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "PerformanceLogger":
        self._started = time.perf_counter()
        self.logger.debug(f"Starting {self.operation}", extra=self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration = time.perf_counter() - self._started
        outcome = "Completed" if exc_type is None else "Failed"
        self.logger.debug(
            f"{outcome} {self.operation} in {self.duration:.3f}s",
            extra={**self.context, "duration_seconds": self.duration, "success": exc_type is None},
        )
