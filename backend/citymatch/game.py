from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import Settings
from .events import Broadcaster
from .models import Player, Session, SessionStatus
from .registry import SessionRegistry
from .scheduler import TurnScheduler
from .utils import public_players

logger = logging.getLogger(__name__)

DEFAULT_PLAYER_NAME = "Player"


class SessionNotFound(LookupError):
    pass


class SessionFull(ValueError):
    pass


class GameController:
    """Join/leave handling and the waiting -> playing -> finished transitions."""

    def __init__(
        self,
        registry: SessionRegistry,
        scheduler: TurnScheduler,
        broadcaster: Broadcaster,
        settings: Settings,
    ):
        self.registry = registry
        self.scheduler = scheduler
        self.broadcaster = broadcaster
        self.max_players = settings.MAX_PLAYERS
        self.start_delay = settings.MATCH_START_DELAY_SEC

    def create_session(self, session_id: Optional[str] = None) -> Session:
        s = self.registry.create(session_id)
        logger.info(f"[session-created] session={s.id}")
        return s

    def get_session(self, session_id: str) -> Session:
        s = self.registry.get(session_id)
        if not s:
            raise SessionNotFound(f"Session {session_id} not found")
        return s

    def create_match(self, connection_id: str, display_name: Optional[str]) -> Session:
        s = self.create_session()
        self._add_player(s, connection_id, display_name)
        self.broadcaster.to_connection(connection_id, "matchCreated", {"sessionId": s.id})
        return s

    def join(self, connection_id: str, session_id: str, display_name: Optional[str]) -> Optional[Session]:
        try:
            s = self.get_session(session_id)
            self._add_player(s, connection_id, display_name)
        except (SessionNotFound, SessionFull) as exc:
            logger.info(f"[join-rejected] session={session_id} connection={connection_id} reason={exc}")
            self.broadcaster.to_connection(connection_id, "errorMsg", {"text": str(exc)})
            return None

        self.broadcaster.to_session(s.id, "playerJoined", {"players": public_players(s.ordered_players())})

        if len(s.players) == self.max_players and s.status == SessionStatus.WAITING:
            self._begin_match(s)
        return s

    def _add_player(self, s: Session, connection_id: str, display_name: Optional[str]) -> Player:
        existing = s.players.get(connection_id)
        if existing is None and len(s.players) >= self.max_players:
            raise SessionFull(f"Session is full ({self.max_players} players max)")

        # A rejoin keeps the player's score and pending answer.
        player = Player(
            id=connection_id,
            name=(display_name or "").strip() or (existing.name if existing else DEFAULT_PLAYER_NAME),
            score=existing.score if existing else 0,
            last_answer=existing.last_answer if existing else "",
        )
        self.registry.add_player(s.id, player)
        self.broadcaster.join(s.id, connection_id)
        return player

    def _begin_match(self, s: Session) -> None:
        logger.info(f"[match-start] session={s.id} players={list(s.player_order)}")
        self.broadcaster.to_session(s.id, "matchStart", {})
        if self.start_delay > 0:
            s.status = SessionStatus.STARTING
            self.scheduler.spawn(self._start_after_delay(s))
            return
        s.status = SessionStatus.PLAYING
        self.scheduler.start_round(s)

    async def _start_after_delay(self, s: Session) -> None:
        await asyncio.sleep(self.start_delay)
        if self.registry.get(s.id) is not s or s.status != SessionStatus.STARTING:
            return
        s.status = SessionStatus.PLAYING
        self.scheduler.start_round(s)

    async def submit_answer(self, connection_id: str, session_id: str, answer: Optional[str]) -> bool:
        s = self.registry.get(session_id)
        if not s:
            logger.info(f"[answer-ignored] session={session_id} connection={connection_id} session not found")
            return False
        return await self.scheduler.submit_answer(s, connection_id, answer)

    def disconnect(self, connection_id: str) -> None:
        for s in self.registry.sessions_with_player(connection_id):
            s.players.pop(connection_id, None)
            if connection_id in s.player_order:
                s.player_order.remove(connection_id)
            self.broadcaster.leave(s.id, connection_id)
            logger.info(f"[player-left] session={s.id} connection={connection_id} remaining={len(s.players)}")

            if not s.players:
                self.scheduler.disarm(s)
                self.registry.remove(s.id)
                self.broadcaster.forget_session(s.id)
                logger.info(f"[session-removed] session={s.id}")
