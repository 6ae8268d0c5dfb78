from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .events import EventStore

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Tracks sockets and session groups for the real-time channel.

    Sending never suspends the caller: messages go onto a per-connection
    queue that a writer task drains, so game transitions stay atomic.
    """

    def __init__(self, event_store: EventStore):
        self.event_store = event_store
        self._outboxes: Dict[str, asyncio.Queue] = {}
        self._groups: Dict[str, Set[str]] = {}

    def register(self, connection_id: str) -> asyncio.Queue:
        outbox: asyncio.Queue = asyncio.Queue()
        self._outboxes[connection_id] = outbox
        return outbox

    def unregister(self, connection_id: str) -> None:
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None:
            outbox.put_nowait(None)
        for session_id in list(self._groups):
            self.leave(session_id, connection_id)

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._outboxes

    async def pump(self, connection_id: str, websocket: WebSocket) -> None:
        """Deliver queued messages to a socket until it is unregistered."""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return
        while True:
            message = await outbox.get()
            if message is None:
                return
            try:
                await websocket.send_json(message)
            except Exception as exc:
                logger.warning(f"[send-failed] connection={connection_id} error={exc}")
                self.unregister(connection_id)
                return

    def join(self, session_id: str, connection_id: str) -> None:
        self._groups.setdefault(session_id, set()).add(connection_id)

    def leave(self, session_id: str, connection_id: str) -> None:
        members = self._groups.get(session_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            self._groups.pop(session_id, None)

    def members(self, session_id: str) -> Set[str]:
        return set(self._groups.get(session_id, set()))

    def to_session(self, session_id: str, event: str, payload: Optional[dict[str, Any]] = None) -> None:
        message = {"event": event, "data": payload or {}}
        self.event_store.append(session_id, message)
        for connection_id in self.members(session_id):
            self._enqueue(connection_id, message)

    def to_connection(self, connection_id: str, event: str, payload: Optional[dict[str, Any]] = None) -> None:
        self._enqueue(connection_id, {"event": event, "data": payload or {}})

    def forget_session(self, session_id: str) -> None:
        self._groups.pop(session_id, None)
        self.event_store.reset(session_id)

    def _enqueue(self, connection_id: str, message: dict[str, Any]) -> None:
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            logger.debug(f"[send-skip] connection={connection_id} event={message['event']} not connected")
            return
        outbox.put_nowait(message)
