from __future__ import annotations

from typing import Optional

from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars


_SESSION_KEYS = ("entity_id", "session_id")


def bind_session_context(entity_id: Optional[str] = None, session_id: Optional[str] = None) -> None:
    values = {"entity_id": entity_id, "session_id": session_id}
    bind_contextvars(**{k: v for k, v in values.items() if v is not None})


def clear_session_context() -> None:
    unbind_contextvars(*_SESSION_KEYS)


def get_entity_id() -> Optional[str]:
    return get_contextvars().get("entity_id")


def get_session_id() -> Optional[str]:
    return get_contextvars().get("session_id")
