from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# Set by the request middleware and echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Any event key containing one of these fragments is masked
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, bearer tokens and email addresses in log events."""
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS):
            event_dict[key] = _mask(value)
    return event_dict


def _build_processors(json_output: bool) -> Iterable[Any]:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the process.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR. Unknown names fall back to INFO.
        json_output: Render one JSON object per line; otherwise a console format.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=list(_build_processors(json_output)),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
