"""
Centralized logging configuration.

Every service module logs through ``get_logger(__name__)``. Keyword arguments
become structured context: the JSON file handler merges them into the record
and the console handler appends them as ``key=value`` pairs, so a settlement
can be followed by grepping for ``round_id=`` or ``job_id=``.
"""
import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

ROOT_LOGGER_NAME = "round_settlement"

# Third-party loggers routed through our handlers, with their own floor
_LIBRARY_LEVELS = {
    "uvicorn": "INFO",
    "web3": "WARNING",
    "urllib3": "WARNING",
    "sqlalchemy.engine": "WARNING",
}

# LogRecord attributes a context key must not shadow
_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def _context(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "context", None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context keys at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        entry.update(_context(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable console line with context appended."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


class StructuredLogger:
    """
    Thin wrapper over ``logging.Logger`` taking context as keyword arguments.

    ``None`` values are dropped. ``exc_info`` is passed through to logging.
    ``bind`` returns a logger that adds fixed context to every call, which the
    worker uses to stamp each line with its job and round.
    """

    def __init__(self, name: str, context: Optional[Mapping[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self._bound: Dict[str, Any] = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, {**self._bound, **context})

    def _emit(self, level: int, message: str, exc_info: Any = None, **kwargs: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        context: Dict[str, Any] = {}
        for key, value in {**self._bound, **kwargs}.items():
            if value is None:
                continue
            context[f"ctx_{key}" if key in _RESERVED else key] = value
        self.logger.log(level, message, exc_info=exc_info, extra={"context": context}, stacklevel=3)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit(logging.ERROR, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True,
    console_format: str = "text",
) -> None:
    """
    Configure the service loggers.

    Args:
        log_level: Level for service loggers (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path for a rotating JSON log
        enable_console: Whether to log to stdout
        console_format: ``text`` (key=value context) or ``json``
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "json" if console_format == "json" else "text",
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
        }
    names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        ROOT_LOGGER_NAME: {"level": log_level, "handlers": names, "propagate": False},
    }
    for library, level in _LIBRARY_LEVELS.items():
        loggers[library] = {"level": level, "handlers": names, "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JSONFormatter},
                "text": {
                    "()": ContextFormatter,
                    "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "handlers": handlers,
            "loggers": loggers,
            "root": {"level": "WARNING", "handlers": names},
        }
    )


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the service namespace (pass ``__name__``)."""
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return StructuredLogger(name)


def log_business_event(event_type: str, details: Dict[str, Any], request_id: Optional[str] = None) -> None:
    """
    Record a domain event on the ``audit`` logger.

    Args:
        event_type: e.g. ``round_settled``, ``job_dead_lettered``
        details: Event fields, flattened into the log context
        request_id: Originating request, when there is one
    """
    get_logger("audit").info(f"Business event: {event_type}", event_type=event_type, request_id=request_id, **details)


def log_performance(operation: str, duration_ms: float, additional_data: Optional[Dict[str, Any]] = None) -> None:
    """Record how long an operation took on the ``performance`` logger."""
    get_logger("performance").info(
        f"Performance: {operation}", operation=operation, duration_ms=duration_ms, **(additional_data or {})
    )
