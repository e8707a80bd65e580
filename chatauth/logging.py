from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

# Credential-bearing fields are masked wherever they appear in an entry.
_MASKED_FIELDS = ("password", "secret", "token", "authorization", "email")
_UNMASKED_FIELDS = frozenset({"token_type", "token_id", "refresh_token_id"})

_TRUTHY = {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request correlation id to every entry logged in this context."""
    cid = correlation_id or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        name = key.lower()
        if name in _UNMASKED_FIELDS or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(field in name for field in _MASKED_FIELDS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging() -> None:
    """Configure structlog from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
