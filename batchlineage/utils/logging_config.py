"""Structured logging configuration for the ingestion engine."""

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone

_CONTEXT_FIELDS = ("ingest_id", "source_id", "source_type")


class JSONFormatter(logging.Formatter):
    """Log formatter that outputs JSON-structured log lines."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add batch context if available
        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(level: str = None):
    """Configure JSON logging on the root logger.

    Calling it again only updates the level; the JSON handler is added once.
    SQLAlchemy's engine logger is held at WARNING.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
            Defaults to the LOG_LEVEL env var or INFO.
    """
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    json_handlers = [h for h in root_logger.handlers if isinstance(h.formatter, JSONFormatter)]
    for handler in json_handlers:
        handler.setLevel(log_level)
    if not json_handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(console_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@contextmanager
def batch_logging_context(ingest_id: str, source_id: str = None, source_type: str = None):
    """Context manager that adds batch context to all log messages.

    Args:
        ingest_id: Batch identifier.
        source_id: Source identifier.
        source_type: Source type partition key.

    Usage:
        with batch_logging_context("ING_labs_20240101_000000", "labs"):
            log.info("This message includes batch context")
    """
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.ingest_id = ingest_id
        if source_id:
            record.source_id = source_id
        if source_type:
            record.source_type = source_type
        return record

    logging.setLogRecordFactory(record_factory)
    try:
        yield
    finally:
        logging.setLogRecordFactory(old_factory)
