from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, mirrored into the X-Request-ID response header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller-supplied request id or mint one, and bind it to this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    return cid


def bind_principal(user_id: str, session_id: Optional[str] = None) -> None:
    """Attach the authenticated caller to every log line for the rest of the request."""
    structlog.contextvars.bind_contextvars(user_id=user_id, session_id=session_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie")
_EMAIL_KEYS = ("email",)


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values entirely and keep only the domain of addresses."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _CREDENTIAL_KEYS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _EMAIL_KEYS):
            event_dict[key] = _mask_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain.

    JSON lines in production; coloured console output when
    ``LOG_DEV_MODE`` is set or ``LOG_JSON`` is off.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# driver messages can carry SQL, DSNs with passwords, socket paths or stack traces
_UNSAFE_FRAGMENTS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)\b\w+://[^\s]*@[^\s]+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|run)/[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\).*", re.DOTALL),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, connection strings, paths and credentials from a 5xx message."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _UNSAFE_FRAGMENTS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
