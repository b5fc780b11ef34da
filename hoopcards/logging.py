from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id for the current request; also returned as X-Request-ID and meta.requestId
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_MAX_CLIENT_REQUEST_ID = 128


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt a client supplied request id, or mint a UUID when it is absent or unusable."""
    cid = (correlation_id or "").strip()
    if not cid or len(cid) > _MAX_CLIENT_REQUEST_ID or not cid.isprintable():
        cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Substrings of event keys whose values never reach the log verbatim
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie", "api_key")
# PINs and card numbers are short enough that any partial reveal is too much
_FULLY_MASKED_KEYS = ("pin", "card_number")
_MASK_EXEMPT_KEYS = frozenset({"event", "pin_configured", "token_type"})


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain[:1]}***"


def _mask_secret(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, PINs and email addresses before rendering."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _MASK_EXEMPT_KEYS or not isinstance(value, str):
            continue
        if any(part in lower_key for part in _FULLY_MASKED_KEYS):
            event_dict[key] = "***"
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = _mask_secret(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    JSON lines are the default so audit events can be shipped as-is;
    ``development_mode`` switches to the colored console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)\b(psycopg|postgres(ql)?|redis)\b[^.]*",
        r"(?i)(postgres(ql)?|redis)://\S+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/\S+",
        r"(?i)(password|secret|token|pin|key)\s*[:=]\s*\S+",
        r"(?i)traceback \(most recent call last\).*",
    )
]

_MAX_CLIENT_MESSAGE = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip queries, connection strings, paths and credentials from client-facing text."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_CLIENT_MESSAGE:
        result = result[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return result
