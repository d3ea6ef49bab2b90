"""
Shared logging configuration for the IoT Data Marketplace gateway.

Events are rendered as JSON with the request id plus, once known, the
credential and feed the request is acting on.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context variables for correlation IDs
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
credential_id_var: ContextVar[Optional[str]] = ContextVar('credential_id', default=None)
feed_id_var: ContextVar[Optional[str]] = ContextVar('feed_id', default=None)

SECRET_FIELDS = frozenset({"api_key", "apiKey", "secret", "encryption_key", "encryptionKey",
                           "decryption_key", "sui_private_key"})
REDACTED = "[redacted]"


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
            add_correlation_context,
            redact_secrets,
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
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive ``service`` from a dotted logger name."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach request, credential and feed ids from the current context."""
    for key, var in (("request_id", request_id_var),
                     ("credential_id", credential_id_var),
                     ("feed_id", feed_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Raw API keys and encryption keys never reach the log stream."""
    for key in SECRET_FIELDS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_access_context(credential_id: Optional[str] = None, feed_id: Optional[str] = None):
    """Bind credential and feed identifiers to the current request context."""
    if credential_id:
        credential_id_var.set(credential_id)
    if feed_id:
        feed_id_var.set(feed_id)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    credential_id_var.set(None)
    feed_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
