from __future__ import annotations

from typing import Any, Dict, List, Protocol

from .utils import now_ts

MAX_EVENTS_PER_SESSION = 500


class Broadcaster(Protocol):
    """Outbound primitives of the real-time channel."""

    def join(self, session_id: str, connection_id: str) -> None: ...

    def leave(self, session_id: str, connection_id: str) -> None: ...

    def to_session(self, session_id: str, event: str, payload: dict[str, Any]) -> None: ...

    def to_connection(self, connection_id: str, event: str, payload: dict[str, Any]) -> None: ...

    def forget_session(self, session_id: str) -> None: ...


class EventStore:
    """Keep session broadcasts so clients can poll via HTTP."""

    def __init__(self, max_events: int = MAX_EVENTS_PER_SESSION):
        self.max_events = max_events
        self._seq: Dict[str, int] = {}
        self._events: Dict[str, List[dict[str, Any]]] = {}

    def append(self, session_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a session and return its sequence number."""

        seq = self._seq.get(session_id, 0) + 1
        self._seq[session_id] = seq

        events = self._events.setdefault(session_id, [])
        events.append({"seq": seq, "timestamp": now_ts(), "payload": payload})
        if len(events) > self.max_events:
            del events[: len(events) - self.max_events]
        return seq

    def list(self, session_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a session that occur after the given sequence."""

        events = self._events.get(session_id, [])
        if after is not None:
            events = [e for e in events if e["seq"] > after]
        return events[:limit]

    def reset(self, session_id: str) -> None:
        self._events.pop(session_id, None)
        self._seq.pop(session_id, None)
