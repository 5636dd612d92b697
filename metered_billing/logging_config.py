"""Structlog configuration with sensitive data redaction.

Billing logs carry Stripe identifiers, webhook signatures and provider tokens,
so every event passes through a redaction processor before rendering.
"""

import logging
import re
from collections.abc import MutableMapping
from typing import Any

import structlog

SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "access_token",
        "api_key",
        "apikey",
        "authorization",
        "bearer",
        "credential",
        "credentials",
        "cookie",
        "database_url",
        "stripe_secret",
        "stripe_api_key",
        "stripe_signature",
        "signature",
        "webhook_secret",
        "jwt_secret",
        "private_key",
    }
)

SENSITIVE_PATTERNS = [
    # JWT tokens
    re.compile(r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*"),
    re.compile(r"Bearer\s+[A-Za-z0-9_-]+", re.IGNORECASE),
    # Stripe secret and restricted keys, webhook secrets
    re.compile(r"(sk|rk)_(live|test)_[A-Za-z0-9]{10,}"),
    re.compile(r"whsec_[A-Za-z0-9]{10,}"),
    # Replicate API tokens
    re.compile(r"r8_[A-Za-z0-9]{20,}"),
]

REDACTED = "***REDACTED***"


def _is_sensitive_field(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def _redact_sensitive_value(value: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        if pattern.search(value):
            return REDACTED
    return value


def _redact_dict(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Recursively redact sensitive data in place."""
    for key in list(data.keys()):
        value = data[key]
        if _is_sensitive_field(key):
            data[key] = REDACTED
        elif isinstance(value, MutableMapping):
            _redact_dict(value)
        elif isinstance(value, str):
            data[key] = _redact_sensitive_value(value)
    return data


def redact_sensitive_data(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that masks secrets before rendering."""
    return _redact_dict(event_dict)


def configure_logging(environment: str = "development", debug: bool = False) -> None:
    """Configure structlog for the process.

    Development gets colored console output; every other environment gets
    one JSON object per line.
    """
    renderer: Any
    if environment == "development":
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            redact_sensitive_data,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
