from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for the request currently being served
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Bearer credentials: dropped outright, never partially shown
_TOKEN_KEYS = {"token", "access_token", "refresh_token", "x_auth_token", "authorization"}
# Contact details and secrets: first/last 2 chars kept
_MASKED_KEY_PARTS = ("password", "secret", "email")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def start_request_context(
    correlation_id: Optional[str] = None, **values: Any
) -> str:
    """Reset per-request log context and tag it with a correlation ID.

    Extra keyword values (path, method) ride along on every log line emitted
    while the request is served.
    """
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    if values:
        structlog.contextvars.bind_contextvars(**values)
    return cid


def bind_user(user_id: str) -> None:
    """Attach the authenticated user to the rest of the request's log lines."""
    structlog.contextvars.bind_contextvars(user_id=user_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep raw tokens, passwords and addresses out of the log sink.

    Token fingerprints are safe to log and pass through untouched.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key.endswith("fingerprint"):
            continue
        value = event_dict[key]
        if lower_key in _TOKEN_KEYS:
            event_dict[key] = "[redacted]"
        elif isinstance(value, str) and any(part in lower_key for part in _MASKED_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structlog for the API process.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "json" for production, "console" for colored local output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "console":
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # uvicorn and redis log through stdlib logging
    logging.basicConfig(level=level, format="%(message)s")


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_format=os.getenv("LOG_FORMAT", "json").lower(),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
