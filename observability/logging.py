"""Logging setup with context propagation.

Every record carries a context id: the execution id during a pipeline run,
or a short delivery id while a webhook is processed. Records are written to
the console and to a rotating file, as text or single-line JSON.

Usage:
    >>> from observability.logging import setup_logging, set_run_context
    >>> setup_logging(config)
    >>> set_run_context("3f2a9c1e")
    >>> logger.info("Scrape done | chars=%d", 1200)  # tagged with 3f2a9c1e
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Any

LOG_FILE_NAME = "dorfkoenig.log"

run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="-")

# Attributes every LogRecord has; anything else was passed via extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "run_id"}


def set_run_context(run_id: str) -> None:
    """Tag subsequent log records in this task with `run_id`."""
    run_id_var.set(run_id)


def clear_context() -> None:
    """Reset the context id."""
    run_id_var.set("-")


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logging: first 3 and last 3 digits only.

    >>> mask_phone("41791234567")
    '417***567'
    >>> mask_phone("12345")
    '***'
    """
    if not phone or len(phone) <= 6:
        return "***"
    return f"{phone[:3]}***{phone[-3:]}"


class ContextFilter(logging.Filter):
    """Injects the current context id into each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = run_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Output format:
        {"timestamp": "...", "level": "INFO", "logger": "...", "message": "...", "run_id": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "-"),
        }

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        return json.dumps(entry, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Format: TIME [LEVEL] [run_id] logger: message"""

    def __init__(self, include_date: bool = False):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(run_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S" if include_date else "%H:%M:%S",
        )


def _file_handler(config: Any) -> logging.Handler:
    log_file = config.log_dir / LOG_FILE_NAME
    if config.log_max_bytes > 0:
        return RotatingFileHandler(
            log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
    return TimedRotatingFileHandler(
        log_file,
        when="midnight",
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )


def setup_logging(config: Any, verbose: bool = False) -> bool:
    """Configure console and rotating-file logging.

    Falls back to console-only logging when the log directory is not
    writable.

    Args:
        config: Config with log_level, log_format, log_dir, log_max_bytes
            and log_backup_count
        verbose: Force DEBUG on the console

    Returns:
        True if file logging is active
    """
    console_level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO)
    context_filter = ContextFilter()

    if config.log_format == "json":
        console_fmt: logging.Formatter = JsonFormatter()
        file_fmt: logging.Formatter = JsonFormatter()
    else:
        console_fmt = TextFormatter(include_date=False)
        file_fmt = TextFormatter(include_date=True)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(console_fmt)
    console.addFilter(context_filter)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.addHandler(console)

    file_logging = False
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        handler = _file_handler(config)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(file_fmt)
        handler.addFilter(context_filter)
        root.addHandler(handler)
        file_logging = True
    except OSError as e:
        print(
            f"Warning: Cannot write to log directory '{config.log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )

    for lib in ("aiohttp", "httpx", "httpcore", "openai", "asyncio"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return file_logging
