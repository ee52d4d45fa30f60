"""
Shared logging configuration for the Catalog Metadata Cache.
"""

import sys
import structlog
import logging
import uuid
import time
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for refresh cycle correlation
cycle_id_var: ContextVar[Optional[str]] = ContextVar('cycle_id', default=None)
job_key_var: ContextVar[Optional[str]] = ContextVar('job_key', default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_cycle_context,
            add_timestamp,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_cycle_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add refresh cycle correlation to log events."""
    cycle_id = cycle_id_var.get()
    if cycle_id:
        event_dict["cycle_id"] = cycle_id

    job_key = job_key_var.get()
    if job_key:
        event_dict["job_key"] = job_key

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_cycle_id(cycle_id: Optional[str] = None) -> str:
    """Set refresh cycle ID in context."""
    if cycle_id is None:
        cycle_id = str(uuid.uuid4())
    cycle_id_var.set(cycle_id)
    return cycle_id


def set_job_key(job_key: Optional[str]) -> None:
    """Set the scheduler job key in context."""
    job_key_var.set(job_key)


def clear_context():
    """Clear all context variables."""
    cycle_id_var.set(None)
    job_key_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
