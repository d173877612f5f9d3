"""In-process telemetry for the delivery engine.

Events are logged as a single ``TELEMETRY {json}`` line, fanned out to any
registered listeners and kept in a short ring buffer so the debug endpoint
and tests can inspect what happened during a request.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("lesson_engine.telemetry")

HISTORY_LIMIT = 200


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


_listeners: List[Callable[[TelemetryEvent], None]] = []
_history: Deque[TelemetryEvent] = deque(maxlen=HISTORY_LIMIT)
_lock = RLock()


def register_listener(listener: Callable[[TelemetryEvent], None]) -> None:
    with _lock:
        _listeners.append(listener)


def clear_listeners() -> None:
    """Drop listeners and buffered history. Used to reset test state."""
    with _lock:
        _listeners.clear()
        _history.clear()


def recent_events(name: Optional[str] = None, limit: int = 50) -> List[TelemetryEvent]:
    """Return buffered events, newest first, optionally filtered by name."""
    with _lock:
        events = list(_history)
    events.reverse()
    if name is not None:
        events = [event for event in events if event.name == name]
    return events[: max(0, limit)]


def emit_event(name: str, **fields: Any) -> None:
    payload = {key: _sanitize(value) for key, value in fields.items()}
    event = TelemetryEvent(name=name, payload=payload)

    with _lock:
        _history.append(event)
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    structured = {"event": name, **payload}
    logger.info("TELEMETRY %s", json.dumps(structured, default=str, sort_keys=True))


def _sanitize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return value


__all__ = [
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "recent_events",
    "register_listener",
]
