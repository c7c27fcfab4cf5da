"""
Shared logging configuration for the Device Inventory backend.

Every event is rendered as one JSON line. Request-scoped values (the request
ID and, for device writes, the device type and validation outcome) live in
context variables and are merged into each event by processors, so call
sites only pass what is specific to the event.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Request correlation
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

# Device write context, bound while a write is validated
device_context_var: ContextVar[Dict[str, Any]] = ContextVar('device_context', default={})

# Keys device context may carry
DEVICE_CONTEXT_KEYS = ("device_type", "validation_outcome")


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            add_request_context,
            add_device_context,
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
        level=level,
    )
    logging.getLogger(service_name).setLevel(level)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the owning service, taken from "<service>.<component>" logger names."""
    logger_name = event_dict.get("logger", "")
    event_dict.setdefault("service", logger_name.split(".")[0] if logger_name else "unknown")
    return event_dict


def add_request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the request ID of the request being served."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def add_device_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the device type and validation outcome bound for this request."""
    for key, value in device_context_var.get().items():
        event_dict.setdefault(key, value)
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request ID, generating one when the client sent none."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    """Get the request ID bound to the current context."""
    return request_id_var.get()


def bind_device_context(**values: Any) -> Dict[str, Any]:
    """Merge device write values into the current context.

    Only ``DEVICE_CONTEXT_KEYS`` are accepted; ``None`` values are skipped.
    """
    unknown = set(values) - set(DEVICE_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"Unknown device context keys: {sorted(unknown)}")

    context = dict(device_context_var.get())
    context.update({key: value for key, value in values.items() if value is not None})
    device_context_var.set(context)
    return context


def get_device_context() -> Dict[str, Any]:
    """Get the device values bound to the current context."""
    return dict(device_context_var.get())


def clear_context():
    """Clear request and device context."""
    request_id_var.set(None)
    device_context_var.set({})


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
