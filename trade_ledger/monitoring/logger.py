"""
Structured logging setup for the trade ledger.

Uses structlog over stdlib logging so that library records (aio-pika, aiormq,
SQLAlchemy) and our own events land in the same stream. The worker binds
per-message context (routing key, message id, delivery tag) through
structlog contextvars.
"""
import structlog
import logging
import sys
from pathlib import Path

# Chatty at INFO: frame-level AMQP traces and per-statement engine output
_NOISY_LIBRARIES = ("aio_pika", "aiormq", "sqlalchemy.engine")


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure structured logging for the worker and CLI.

    Args:
        log_level: Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
        log_format: "json" for machine-readable lines, "text" for a console renderer
        log_file: Optional path for a rotating copy of the log stream
    """
    level = getattr(logging, log_level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        _add_file_handler(Path(log_file), level)
        get_logger(__name__).info(
            "LOGGING_INITIALIZED", log_file=log_file, log_level=log_level, log_format=log_format
        )


def _add_file_handler(path: Path, level: int) -> None:
    from logging.handlers import RotatingFileHandler

    path.parent.mkdir(parents=True, exist_ok=True)
    for handler in logging.root.handlers:
        # setup_logging may run more than once per process (CLI then worker)
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == path.resolve():
            return

    # 10MB per file, 5 backups
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.root.addHandler(handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger (typically ``get_logger(__name__)``)."""
    return structlog.get_logger(name)
