"""
Structured logging utilities for ZenTuner.

Provides JSON-formatted logging for log files, human-readable logging for
the console, and an in-memory history of recent records that a front end
can subscribe to.
"""

import json
import logging
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


class JSONFormatter(logging.Formatter):
    """Formatter that outputs log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "context") and record.context:
            log_obj["context"] = record.context

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to log levels for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format with color codes without mutating the shared record."""
        color = self.COLORS.get(record.levelname, "")
        original = record.levelname
        record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class LogHistoryHandler(logging.Handler):
    """
    Keeps the most recent log records in memory.

    Subscribers are called with each new entry dict; the history is capped
    at ``capacity`` entries with the oldest dropped first.
    """

    def __init__(self, capacity: int = 200, level: int = logging.DEBUG):
        super().__init__(level)
        self._entries: deque = deque(maxlen=capacity)
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []
        self._history_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        with self._history_lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(entry)
            except Exception:
                self.handleError(record)

    def get_history(self) -> List[Dict[str, Any]]:
        with self._history_lock:
            return list(self._entries)

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._history_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._history_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def clear(self) -> None:
        with self._history_lock:
            self._entries.clear()


_history_handler: Optional[LogHistoryHandler] = None


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    max_bytes: int = 10485760,
    backup_count: int = 5,
    console_enabled: bool = True,
    colored: bool = True,
    history_size: int = 200,
) -> LogHistoryHandler:
    """
    Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "text")
        log_file: Optional file path for log output
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        console_enabled: Whether to log to console
        colored: Whether to use colored output (console only, text format only)
        history_size: Number of records kept by the in-memory history

    Returns:
        LogHistoryHandler: The history handler attached to the root logger
    """
    global _history_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        datefmt = "%Y-%m-%d %H:%M:%S"
        if colored and console_enabled:
            formatter = ColoredFormatter(fmt, datefmt)
        else:
            formatter = logging.Formatter(fmt, datefmt)

    if console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        # Always JSON on disk
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    _history_handler = LogHistoryHandler(capacity=history_size)
    root_logger.addHandler(_history_handler)
    return _history_handler


def get_log_history() -> Optional[LogHistoryHandler]:
    """Return the history handler installed by setup_logging(), if any."""
    return _history_handler


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically a short component name such as "cache")

    Returns:
        logging.Logger: Configured logger instance
    """
    return logging.getLogger(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that attaches persistent context to every record."""

    def process(self, msg: str, kwargs: Dict[str, Any]):
        extra = dict(kwargs.get("extra") or {})
        context = dict(extra.get("context") or {})
        context.update(self.extra)
        extra["context"] = context
        kwargs["extra"] = extra
        return msg, kwargs


def create_logger_with_context(
    name: str, context: Dict[str, Any]
) -> LoggerAdapter:
    """
    Create a logger with persistent context.

    Example:
        logger = create_logger_with_context("batch_exporter", {"archive": "out.zip"})
        logger.info("Rendering 3 files")
    """
    return LoggerAdapter(get_logger(name), context)
