import asyncio
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PlayerId = str


class WireModel(BaseModel):
    """Serialises with camelCase keys via model_dump(by_alias=True)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Facts(WireModel):
    """What the lookup service knows about a place. Unknown values stay empty."""

    name: str = ""
    country: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    population: Optional[int] = None
    founded_year: Optional[int] = None

    @classmethod
    def empty(cls, name: str = "") -> "Facts":
        return cls(name=name)

    def is_empty(self) -> bool:
        return (
            self.country is None
            and not self.languages
            and self.population is None
            and self.founded_year is None
        )


class RuleChecks(WireModel):
    starts_with: bool = False
    ends_with: bool = False
    same_length: bool = False
    same_country: bool = False
    shared_language: bool = False
    population_similar: bool = False
    founded_same_century: bool = False


class ScoreResult(BaseModel):
    points: int
    checks: RuleChecks


class Player(WireModel):
    id: PlayerId
    name: str
    score: int = 0
    last_answer: str = ""


class TurnResultDetail(WireModel):
    answer: str
    checks: RuleChecks
    points_gained: int
    facts: Facts
    is_invalid_city: bool = False
    is_equivalent_city: bool = False


class TurnRecord(WireModel):
    prompt: str
    results: Dict[PlayerId, TurnResultDetail] = Field(default_factory=dict)


class SessionStatus(str, Enum):
    WAITING = "waiting"
    STARTING = "starting"
    PLAYING = "playing"
    FINISHED = "finished"


# States: waiting -> (starting) -> playing -> finished
class Session(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    status: SessionStatus = SessionStatus.WAITING
    players: Dict[PlayerId, Player] = Field(default_factory=dict)
    player_order: List[PlayerId] = Field(default_factory=list)
    current_turn_index: int = 0
    turns_total: int = 5
    prompt: Optional[str] = None
    turn_started_at: Optional[float] = None
    history: List[TurnRecord] = Field(default_factory=list)

    # Runtime-only scheduler state, never serialised.
    deadline: Optional[asyncio.TimerHandle] = Field(default=None, exclude=True)
    evaluating: bool = Field(default=False, exclude=True)

    def ordered_players(self) -> List[Player]:
        return [self.players[pid] for pid in self.player_order if pid in self.players]
