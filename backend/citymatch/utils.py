import time
import uuid
from typing import Iterable

from .models import Player


def now_ts() -> float:
    return time.time()


def new_session_id() -> str:
    return uuid.uuid4().hex[:7]


def new_connection_id() -> str:
    return uuid.uuid4().hex


def public_players(players: Iterable[Player]) -> list[dict]:
    return [{"id": p.id, "name": p.name, "score": p.score} for p in players]
