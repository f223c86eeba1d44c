"""
Logging configuration for the briefing RAG backend.

Configures structlog once at application startup via configure_logging().
Every module logs with ``structlog.get_logger(__name__)`` and snake_case
event names; request-scoped values (request_id) are bound through
contextvars so they appear on every line logged while handling a request.

Two processors guard what reaches the log sink:
    - scrub_credentials: values of credential-named fields, and provider
      keys embedded in any string value (Gemini ``AIza...``, SiliconFlow
      ``sk-...``), are replaced with ``[REDACTED]``
    - clip_long_values: user questions, prompts and upstream error bodies
      are cut to MAX_LOGGED_CHARS so a turn never dumps article context

Locally the output is a colored console renderer; in production each line is
one JSON object. Third-party stdlib loggers go through the same formatter.

Usage:
    from briefing_rag.api.middleware.logging import configure_logging

    configure_logging(environment="production", log_level="INFO")

    logger = structlog.get_logger(__name__)
    logger.info("retrieval_complete", candidates=12, degraded=False)
"""

from __future__ import annotations

import logging
import re
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

CREDENTIAL_FIELD_MARKERS = (
    "api_key",
    "apikey",
    "service_key",
    "secret",
    "token",
    "authorization",
    "password",
)

PROVIDER_KEY_PATTERN = re.compile(r"\b(?:AIza[0-9A-Za-z_\-]{20,}|sk-[0-9A-Za-z]{20,})")

REDACTED = "[REDACTED]"

MAX_LOGGED_CHARS = 300

# Libraries whose INFO output is one line per provider request
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def scrub_credentials(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """
    Redact credential fields and provider keys that leak into free text.

    Upstream error messages sometimes echo the request, key included, so
    string values are scanned as well as field names.
    """
    for key, value in list(event_dict.items()):
        if any(marker in key.lower() for marker in CREDENTIAL_FIELD_MARKERS):
            event_dict[key] = REDACTED
        elif isinstance(value, str) and PROVIDER_KEY_PATTERN.search(value):
            event_dict[key] = PROVIDER_KEY_PATTERN.sub(REDACTED, value)
    return event_dict


def clip_long_values(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Cut string values longer than MAX_LOGGED_CHARS, keeping the event name."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if len(value) > MAX_LOGGED_CHARS:
            event_dict[key] = f"{value[:MAX_LOGGED_CHARS]}...(+{len(value) - MAX_LOGGED_CHARS} chars)"
    return event_dict


def _build_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        scrub_credentials,
        clip_long_values,
    ]


def configure_logging(
    environment: str = "local",
    log_level: str | None = None,
) -> None:
    """
    Configure structlog and route stdlib logging through the same renderer.

    Safe to call more than once; the root handler is replaced each time.

    Args:
        environment: 'local' (console output) or 'production' (JSON lines).
        log_level: Standard level name. Defaults to DEBUG locally and INFO in
            production.
    """
    is_production = environment == "production"
    level_name = (log_level or ("INFO" if is_production else "DEBUG")).upper()

    processors = _build_processors()
    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: Processor
    if is_production:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [stream_handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        environment=environment,
        log_level=level_name,
        output_format="json" if is_production else "console",
    )


def bind_request_context(request_id: str) -> None:
    """Bind request_id so every log line of the request carries it."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_context() -> None:
    """Clear all bound context variables at the end of a request."""
    structlog.contextvars.clear_contextvars()


__all__ = [
    "MAX_LOGGED_CHARS",
    "REDACTED",
    "bind_request_context",
    "clear_context",
    "clip_long_values",
    "configure_logging",
    "scrub_credentials",
]
