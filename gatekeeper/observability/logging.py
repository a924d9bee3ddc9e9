"""
Structured Logging with Structlog.

Every event is a snake_case name plus keyword context, rendered as JSON in
production and as colored console lines locally. Request-scoped fields
(request_id) are bound through contextvars by the HTTP middleware.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from gatekeeper.config import settings

# Event keys that must never reach the log sink in clear text
SENSITIVE_KEYS = frozenset({"authorization", "billing_events_secret", "token", "secret"})

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "asyncio")


def add_service_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp the service name and version on every event."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-looking fields."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _shared_processors() -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_fields,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    return processors


def _renderer(log_format: str) -> Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging() -> None:
    """
    Configure structlog over stdlib logging.

    A JSON line looks like:
    {"event": "feature_consumed", "level": "info", "logger":
     "gatekeeper.services.entitlements", "service": "semaslim-entitlements",
     "version": "0.1.0", "timestamp": "...Z", "request_id": "req-123",
     "user_id": "...", "feature": "ai_recipe", "tokens_used": false}
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[*_shared_processors(), _renderer(settings.log_format)],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger bound to a module name."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind fields to every event logged inside the block.

    Usage:
        with log_context(request_id=request_id):
            logger.info("request_started")
    """

    def __init__(self, **fields: Any) -> None:
        self.fields = fields
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> "log_context":
        self._tokens = structlog.contextvars.bind_contextvars(**self.fields)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        # Restores outer values for nested contexts binding the same key
        structlog.contextvars.reset_contextvars(**self._tokens)
