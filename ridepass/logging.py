from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Key fragments whose values never reach the log stream in clear
_PII_KEYS = {
    "password",
    "secret",
    "token",
    "authorization",
    "code",
    "otp",
    "email",
    "phone",
    "identifier",
}
# Keys that look sensitive but only carry enums or counters
_PII_ALLOW = {"error_code", "status_code", "token_type", "token_version"}

_PHONE_RE = re.compile(r"\+?\d{9,15}")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


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


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, codes and contact identifiers before rendering."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _PII_ALLOW:
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            value = event_dict[key]
            if isinstance(value, str):
                event_dict[key] = _mask(value)
    event = event_dict.get("event")
    if isinstance(event, str) and _PHONE_RE.search(event):
        event_dict["event"] = _PHONE_RE.sub(lambda m: _mask(m.group(0)), event)
    return event_dict


def _add_service(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", "ridepass")
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, console: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines are the default; ``console`` switches to the coloured dev
    renderer. Redaction always runs before rendering.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger bound to ``name``; correlation id and redaction are applied globally."""
    return structlog.get_logger(name)
