"""
Structured logging for the liquidity protection engine.

structlog on top of the stdlib logging module. Every module does
`logger = get_logger(__name__)` and logs an event name plus key/value
context; amounts are passed as strings so Decimals keep full precision.
Context bound with structlog.contextvars (the OperationGuard binds the
running operation) is merged into every line.
"""
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional

import structlog

LOG_FILE_ENV = "LIQUIDITY_GUARD_LOG_FILE"

# 10MB, 5 backups
_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5

_file_handler: Optional[RotatingFileHandler] = None


def _shared_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def _attach_file_handler(log_file: str, level: int) -> None:
    """Install the rotating file handler, replacing one from an earlier setup call."""
    global _file_handler
    root = logging.getLogger()
    if _file_handler is not None:
        root.removeHandler(_file_handler)
        _file_handler.close()

    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    _file_handler = RotatingFileHandler(path, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS)
    _file_handler.setLevel(level)
    _file_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(_file_handler)


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure structured logging. Safe to call more than once.

    Args:
        log_level: DEBUG / INFO / WARNING / ERROR / CRITICAL
        log_format: "json" for machine-readable lines, "text" for the console renderer
        log_file: Optional rotating log file; falls back to $LIQUIDITY_GUARD_LOG_FILE
    """
    log_file = log_file or os.getenv(LOG_FILE_ENV)
    level = getattr(logging, log_level.upper())

    # force: rebind stdout if it changed since the last call
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)

    structlog.configure(
        processors=[*_shared_processors(), _renderer(log_format)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        _attach_file_handler(log_file, level)

    get_logger(__name__).info("Logging initialized", log_level=log_level, log_format=log_format, log_file=log_file)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for a module; pass __name__."""
    return structlog.get_logger(name)
