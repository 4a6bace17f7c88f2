from __future__ import annotations

import hashlib
import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

# Values under these keys never reach a log sink
_CREDENTIAL_MARKERS = ("password", "secret", "authorization", "token")
# Values under these keys are replaced by a digest so events stay correlatable
_IDENTITY_MARKERS = ("email", "identifier", "username")
# Derived values that are safe as-is
_SAFE_SUFFIXES = ("_hash", "_prefix", "_id", "_count")

REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    """Correlation ID bound to the current request context, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind (or generate) the correlation ID for every log line in this context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def fingerprint(value: str) -> str:
    """Stable SHA-256 digest used in place of emails and identifiers in logs."""
    return hashlib.sha256(value.strip().lower().encode()).hexdigest()


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets and pseudonymise identities that slipped into a log call."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if key == "event" or lower_key.endswith(_SAFE_SUFFIXES):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = REDACTED
        elif any(marker in lower_key for marker in _IDENTITY_MARKERS) and isinstance(value, str):
            event_dict[key] = f"sha256:{fingerprint(value)[:16]}"
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Args:
        level: minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: one JSON object per line when True
        development_mode: coloured console output, overrides ``json_output``
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
