from __future__ import annotations

from typing import Dict, List, Optional

from .models import Player, PlayerId, Session
from .utils import new_session_id


class SessionRegistry:
    """In-memory map of live sessions. Nothing survives a restart."""

    def __init__(self, turns_total: int = 5):
        self.turns_total = turns_total
        self._sessions: Dict[str, Session] = {}

    def create(self, session_id: Optional[str] = None) -> Session:
        # Collisions are not checked; a caller-supplied id replaces any existing session.
        s = Session(id=session_id or new_session_id(), turns_total=self.turns_total)
        self._sessions[s.id] = s
        return s

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def add_player(self, session_id: str, player: Player) -> Optional[Session]:
        s = self.get(session_id)
        if not s:
            return None
        s.players[player.id] = player
        if player.id not in s.player_order:
            s.player_order.append(player.id)
        return s

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def sessions_with_player(self, player_id: PlayerId) -> List[Session]:
        return [s for s in self._sessions.values() if player_id in s.players]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
