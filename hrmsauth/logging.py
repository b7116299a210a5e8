"""structlog setup for the auth service.

Every event passes through ``_redact_pii`` before rendering. Request-scoped
fields (correlation id, path, caller) live in structlog's contextvars and are
merged into each event; the middleware clears them at the start of a request.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Credential material this service handles; values are dropped outright
_SECRET_KEYS = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "password_hash",
        "token",
        "raw_token",
        "access_token",
        "refresh_token",
        "authorization",
        "access_token_secret",
        "refresh_token_secret",
    }
)
# Raw identifiers that are logged as their digest instead
_HASHED_KEYS = frozenset({"email"})
# Safe fields whose names contain a sensitive word
_ALLOWED_KEYS = frozenset({"email_hash", "token_type", "token_kind", "password_generated"})
_SENSITIVE_FRAGMENTS = ("password", "secret", "token")


def hash_identifier(value: str) -> str:
    """Stable one-way digest for identifiers that must not appear in logs."""
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in list(event_dict):
        if key == "event":
            continue
        lower_key = key.lower()
        if lower_key in _ALLOWED_KEYS:
            continue
        value = event_dict[key]
        if lower_key in _HASHED_KEYS:
            event_dict.pop(key)
            if isinstance(value, str) and value:
                event_dict.setdefault(f"{lower_key}_hash", hash_identifier(value))
        elif lower_key in _SECRET_KEYS or any(f in lower_key for f in _SENSITIVE_FRAGMENTS):
            if value is not None:
                event_dict[key] = REDACTED
    return event_dict


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the request's correlation id, generating one when none is supplied."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def begin_request(method: str, path: str, correlation_id: Optional[str] = None) -> str:
    """Reset request-scoped log context and tag it with the request line."""
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    structlog.contextvars.bind_contextvars(method=method, path=path)
    return cid


def bind_caller(email: str, profile_id: str) -> None:
    """Attach the authenticated caller to every later event of this request."""
    structlog.contextvars.bind_contextvars(
        email_hash=hash_identifier(email), profile_id=profile_id
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

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
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
