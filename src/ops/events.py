from __future__ import annotations

import logging
import re
from collections import Counter, deque
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Literal, TypedDict
from uuid import UUID, uuid4

EventLevel = Literal["info", "warning", "error"]

CORRELATION_ID_HEADER = "x-request-id"
REDACTED = "[REDACTED]"

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
# Substring match on credential-like keys.
SENSITIVE_KEY_RE = re.compile(r"email|token|password|secret|api_key|authorization|actor", re.IGNORECASE)
# Ballot text and member names are matched exactly so has_comment and similar flags stay visible.
PERSONAL_KEYS = frozenset({"comment", "comments", "full_name", "voter_name", "recipient", "recipients"})

_LOG_LEVELS: dict[int, EventLevel] = {
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class OpsEvent(TypedDict):
    timestamp: str
    level: EventLevel
    component: str
    event_type: str
    message: str
    correlation_id: str | None
    payload: dict[str, Any]


def iso_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_correlation_id() -> str:
    return uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str) -> Token[str | None]:
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _correlation_id.reset(token)


def is_sensitive_key(key: str) -> bool:
    return key.lower() in PERSONAL_KEYS or SENSITIVE_KEY_RE.search(key) is not None


def redact_text(value: str) -> str:
    return EMAIL_RE.sub(REDACTED, value)


def sanitize_value(value: Any, key_hint: str | None = None) -> Any:
    """Strip member contact details and ballot text from an event payload."""
    if key_hint is not None and is_sensitive_key(key_hint):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {key: sanitize_value(nested, str(key)) for key, nested in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_value(nested) for nested in value]
    return value


class OpsEventBuffer:
    """Bounded in-memory history of recent log events for the ops console."""

    def __init__(self, max_size: int = 500) -> None:
        self._events: deque[OpsEvent] = deque(maxlen=max_size)
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def add(self, event: OpsEvent) -> None:
        with self._lock:
            self._events.append(event)

    def recent(
        self,
        *,
        limit: int,
        level: EventLevel | None = None,
        event_type: str | None = None,
        item_id: str | None = None,
    ) -> list[OpsEvent]:
        """Newest first."""
        with self._lock:
            snapshot = list(self._events)
        matches: list[OpsEvent] = []
        for event in reversed(snapshot):
            if level is not None and event["level"] != level:
                continue
            if event_type is not None and event_type not in event["event_type"]:
                continue
            if item_id is not None and event["payload"].get("item_id") != item_id:
                continue
            matches.append(event)
            if len(matches) >= limit:
                break
        return matches

    def counts_by_level(self) -> dict[EventLevel, int]:
        with self._lock:
            counted = Counter(event["level"] for event in self._events)
        return {"info": counted["info"], "warning": counted["warning"], "error": counted["error"]}


ops_event_buffer = OpsEventBuffer()


class OpsEventHandler(logging.Handler):
    """Copies log records that carry an event_type (or any warning) into the ops buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        event_type = getattr(record, "event_type", None)
        if event_type is None and record.levelno < logging.WARNING:
            return
        payload = sanitize_value(getattr(record, "ops_payload", None) or {})
        if not isinstance(payload, dict):
            payload = {"value": payload}
        ops_event_buffer.add(
            {
                "timestamp": iso_now(),
                "level": _LOG_LEVELS.get(record.levelno, "info"),
                "component": record.name,
                "event_type": str(event_type or record.name),
                "message": redact_text(record.getMessage()),
                "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
                "payload": payload,
            }
        )


def configure_ops_event_logging(max_size: int) -> None:
    """Reset the buffer and attach the handler to the root logger once."""
    global ops_event_buffer
    ops_event_buffer = OpsEventBuffer(max_size=max_size)

    root_logger = logging.getLogger()
    if not any(isinstance(handler, OpsEventHandler) for handler in root_logger.handlers):
        root_logger.addHandler(OpsEventHandler())
