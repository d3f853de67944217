"""structlog setup shared by the lifecycle hooks, the middleware and the HTTP app.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
Per-invocation fields (correlation id, hook name) live in structlog's
contextvars so every logger picks them up without being passed around.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Key substrings whose string values are masked before rendering
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "license")
_EXEMPT_KEYS = frozenset({"token_id", "jti"})


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind (or generate) the correlation id for the current invocation."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def bind_invocation(source: str, request_id: Optional[str] = None) -> str:
    """Start a fresh log context for one hook call or HTTP request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(source=source)
    return set_correlation_id(request_id)


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _mask_email(value: str) -> str:
    # Keep the domain: it is what whitelist and invitation issues are debugged by
    local, at, domain = value.partition("@")
    if not at:
        return _mask(value)
    return f"{local[:1]}***@{domain}"


def _redact_identifiers(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and patient/physician identifiers."""
    for key, value in list(event_dict.items()):
        if key in _EXEMPT_KEYS or not isinstance(value, str):
            continue
        lowered = key.lower()
        if "email" in lowered or (lowered == "identifier" and "@" in value):
            event_dict[key] = _mask_email(value)
        elif any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the processor chain; arguments override the environment."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_identifiers,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not dev_mode:
        # One JSON object per line for the log collector
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
