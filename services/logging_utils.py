#!/usr/bin/env python3
"""
LB Collector - Logging Utilities

Structured logging for the collector, with NDJSON output for log
aggregation pipelines and the classic text format for local runs.

Key Features:
- NDJSON (newline-delimited JSON) format
- Opt-in via LOG_JSON_ENABLED environment variable
- Thread-local correlation ID (the Pub/Sub message id being processed)
- Pod/container metadata support

Usage:
    from services.logging_utils import setup_json_logging, CorrelationID

    logger = setup_json_logging(service_name="lb-collector", version="1.0.0")

    CorrelationID.set(message.message_id)
    logger.info("emit", extra={"status": 200, "hostname": "example.com"})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Kubernetes pod name for metadata
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict

TEXT_LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset([
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
])


class CorrelationID:
    """Thread-local storage for correlation IDs."""
    _storage = threading.local()

    @staticmethod
    def set(cid):
        CorrelationID._storage.id = cid

    @staticmethod
    def get():
        return getattr(CorrelationID._storage, 'id', 'system')

    @staticmethod
    def clear():
        CorrelationID._storage.id = 'system'


class CorrelationIdFilter(logging.Filter):
    """Automatically adds correlation ID to all log records."""
    def filter(self, record):
        record.correlation_id = CorrelationID.get()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formatter that outputs each log record as a single JSON object per line.

    Fields: timestamp, level, message, logger, module, function, line,
    thread, service, version, pod_name, correlation_id, error (when an
    exception is attached) and any ``extra`` fields passed to the log call.
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure root logging for the collector.

    Uses NDJSON output when LOG_JSON_ENABLED is true, the text format
    otherwise. Safe to call more than once; existing root handlers are
    replaced.

    Args:
        service_name: Name of the service (e.g., "lb-collector")
        version: Service version string
        level: Logging level used when LOG_LEVEL is not set

    Returns:
        The configured root logger
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    # On the handler so records from every logger get a correlation_id
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    logger.addHandler(handler)
    logger.info(
        f"{'JSON' if json_enabled else 'Standard'} logging enabled for service={service_name} version={version}"
    )
    return logger


def get_logger(name: str = __name__) -> logging.Logger:
    """Get a named logger that inherits the setup_json_logging() configuration."""
    return logging.getLogger(name)
