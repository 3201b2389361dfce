import logging
from typing import Any

import structlog
from structlog.contextvars import merge_contextvars

from brain_console.core.settings import settings
from brain_console.infrastructure.observability.context_vars import get_entity_id, get_session_id


_TRACE_LOOKUPS = (("entity_id", get_entity_id), ("session_id", get_session_id))


def compact_error(value: Any, *, limit: int = 320) -> str:
    text = str(value or "").replace("\n", " ").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def add_context_vars(_, __, event_dict):
    """
    Move session identifiers into a nested 'trace' block and expose the event
    name as 'message'. Explicit keyword values win over bound context.
    """
    trace = {}
    for key, lookup in _TRACE_LOOKUPS:
        value = event_dict.pop(key, None) or lookup()
        if value is not None:
            trace[key] = value

    nested = event_dict.get("trace")
    if isinstance(nested, dict):
        trace.update({k: v for k, v in nested.items() if v is not None})
    event_dict["trace"] = trace

    if "event" in event_dict:
        event_dict["message"] = event_dict.pop("event")
    return event_dict


def _resolve_level(level: str | None) -> int:
    name = str(level or settings.LOG_LEVEL or "INFO").upper()
    return getattr(logging, name, logging.INFO)


def configure_structlog(level: str | None = None) -> None:
    """
    Route structlog through stdlib logging and render one JSON object per line.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(level=_resolve_level(level), handlers=[handler], force=True)

    structlog.configure(
        processors=[
            merge_contextvars,
            add_context_vars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
