"""
Structured logging for the voice-to-quote pipeline.

Every entry carries the request ``trace_id`` and, once a stage has
loaded its intake, the ``intake_id``. Bearer tokens and provider keys
are masked before rendering, and transcript-sized strings are clipped
so customer speech does not end up in log storage verbatim.

Production renders JSON lines; development renders a colored console.

Usage:
    from src.logging_config import bind_intake, get_logger

    logger = get_logger(__name__)
    bind_intake(intake_id)
    logger.info("extraction_started", user_id=user_id)
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

from src.config import get_settings

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
intake_id_var: ContextVar[str] = ContextVar("intake_id", default="")

# Keys whose values never reach a log line
SECRET_KEYS = frozenset({"authorization", "jwt", "token", "api_key", "service_role_key", "password"})
REDACTED = "[redacted]"

# Free-text keys clipped to MAX_TEXT_CHARS
LONG_TEXT_KEYS = frozenset({"transcript", "transcript_text", "raw_response", "content", "prompt"})
MAX_TEXT_CHARS = 200

# Third-party loggers held at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "postgrest", "supabase", "redis", "urllib3", "asyncio")


def generate_trace_id() -> str:
    """Short id correlating every log line of one request or CLI run."""
    return uuid.uuid4().hex[:12]


def start_request(trace_id: str | None = None) -> str:
    """Begin a new logging context: set the trace id and forget any previous intake."""
    trace_id = trace_id or generate_trace_id()
    trace_id_var.set(trace_id)
    intake_id_var.set("")
    return trace_id


def bind_intake(intake_id: str) -> None:
    """Tag subsequent log lines in this context with ``intake_id``."""
    intake_id_var.set(intake_id)


def add_pipeline_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id
    intake_id = intake_id_var.get()
    if intake_id:
        event_dict.setdefault("intake_id", intake_id)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in event_dict:
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def clip_long_text(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if key in LONG_TEXT_KEYS and isinstance(value, str) and len(value) > MAX_TEXT_CHARS:
            event_dict[key] = f"{value[:MAX_TEXT_CHARS]}... ({len(value)} chars)"
    return event_dict


def setup_logging() -> None:
    """Configure structlog and route stdlib loggers (uvicorn, httpx, supabase) through it."""
    settings = get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        add_pipeline_context,
        redact_secrets,
        clip_long_text,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
