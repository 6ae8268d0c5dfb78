from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import WireModel


class CreateSessionIn(WireModel):
    session_id: Optional[str] = None


class CreateSessionOut(WireModel):
    session_id: str
    join_url: str


class PublicPlayerOut(WireModel):
    id: str
    name: str
    score: int


class PublicSessionOut(WireModel):
    id: str
    status: str
    players: List[PublicPlayerOut]
    current_turn_index: int
    turns_total: int
    prompt: Optional[str]
    turn_started_at: Optional[float]


class InboundMessage(BaseModel):
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)


class CreateMatchIn(WireModel):
    display_name: Optional[str] = None


class JoinIn(WireModel):
    session_id: str
    display_name: Optional[str] = None


class SubmitAnswerIn(WireModel):
    session_id: str
    answer: str = ""

