"""Process logging: console/file handlers and per-run context stamping."""

import json
import logging
import sys
import threading
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

# Record attributes copied into structured output when present
CONTEXT_FIELDS = ("run_id", "workflow_id", "step_id", "severity", "component", "operation", "reason")

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [run=%(run_id)s] %(message)s"


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.utcfromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, "-"):
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class RunContextFilter(logging.Filter):
    """Stamps the active run and workflow identifiers on records.

    The context is thread-local: the run driver executes in a worker thread
    and must not leak its identifiers into records from the API threads.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    @property
    def context(self) -> Dict[str, Any]:
        if not hasattr(self._local, "context"):
            self._local.context = {}
        return self._local.context

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, "run_id"):
            record.run_id = "-"
        return True


_context_filter = RunContextFilter()


def _handlers(log_file: Optional[str], max_size: int, backup_count: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure process logging.

    Replaces the root handlers with a stdout handler and, when ``log_file``
    is given, a rotating file handler. Both carry the run context filter.

    Args:
        level: Root logging level name
        log_file: Optional file path for log output
        log_format: Format string for plain-text output
        structured: Emit JSON records instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for handler in _handlers(log_file, max_size, backup_count):
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    # Third-party chatter stays at WARNING unless asked for
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "sqlalchemy.pool", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Attach fields to every record logged from this thread."""
    _context_filter.context.update(kwargs)


def clear_logging_context():
    _context_filter.context.clear()


class RecoveryLogger:
    """Process-log trail of the single in-step recoveries (push rebase, install-and-retry, volume copy)."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"forgeflow.recovery.{component_name}")
        self.component_name = component_name

    def _extra(self, operation: str, **fields) -> Dict[str, Any]:
        return {"component": self.component_name, "operation": operation, **fields}

    def retrying(self, operation: str, reason: str):
        self.logger.warning(f"{operation} failed ({reason}), retrying once",
                            extra=self._extra(operation, reason=reason))

    def recovered(self, operation: str):
        self.logger.info(f"{operation} recovered on retry", extra=self._extra(operation))

    def gave_up(self, operation: str, error: Exception):
        self.logger.error(f"{operation} still failing after retry: {error}",
                          extra=self._extra(operation, reason=type(error).__name__))
