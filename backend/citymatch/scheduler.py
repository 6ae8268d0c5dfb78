"""Per-session round loop: prompt, deadline, single-flight evaluation.

Everything here runs on the event loop thread. Between awaits a session's
state cannot change under us, so the ``evaluating`` flag is checked and set
with no suspension in between and that is enough to keep evaluation
at-most-once per round, whichever of the deadline or the last answer
triggers it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Coroutine, List, Optional, Set

from .config import Settings
from .events import Broadcaster
from .facts import FactResolver, is_equivalent_city, is_invalid_city
from .models import Facts, Session, SessionStatus, TurnRecord, TurnResultDetail
from .registry import SessionRegistry
from .scoring import score
from .utils import now_ts, public_players

logger = logging.getLogger(__name__)


class TurnScheduler:
    def __init__(
        self,
        registry: SessionRegistry,
        resolver: FactResolver,
        broadcaster: Broadcaster,
        settings: Settings,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = now_ts,
    ):
        self.registry = registry
        self.resolver = resolver
        self.broadcaster = broadcaster
        self.turn_duration = settings.TURN_DURATION_SEC
        self.inter_round_delay = settings.INTER_ROUND_DELAY_SEC
        self.prompt_cities: List[str] = list(settings.PROMPT_CITIES)
        if not self.prompt_cities:
            raise ValueError("PROMPT_CITIES must name at least one city")
        self._rng = rng or random.Random()
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    # ---- round start -------------------------------------------------------

    def start_round(self, s: Session) -> None:
        if s.evaluating or s.status == SessionStatus.FINISHED:
            logger.info(
                f"[round-skip] session={s.id} turn={s.current_turn_index} "
                f"evaluating={s.evaluating} status={s.status.value}"
            )
            return
        if s.current_turn_index >= s.turns_total:
            self._game_over(s)
            return

        self.disarm(s)
        s.evaluating = False
        s.prompt = self._rng.choice(self.prompt_cities)
        for p in s.players.values():
            p.last_answer = ""
        s.turn_started_at = self._clock()

        logger.info(f"[round-start] session={s.id} turn={s.current_turn_index} prompt={s.prompt!r}")
        self.broadcaster.to_session(
            s.id,
            "newTurn",
            {
                "turnIndex": s.current_turn_index,
                "prompt": s.prompt,
                "durationSeconds": self.turn_duration,
                "serverTime": s.turn_started_at,
            },
        )
        self._arm(s)

    # ---- deadline ownership ------------------------------------------------

    def _arm(self, s: Session) -> None:
        self.disarm(s)
        loop = asyncio.get_running_loop()
        s.deadline = loop.call_later(self.turn_duration, self._on_deadline, s.id, s.current_turn_index)
        logger.info(f"[timer-set] session={s.id} turn={s.current_turn_index} duration={self.turn_duration}s")

    def disarm(self, s: Session) -> None:
        if s.deadline is not None:
            s.deadline.cancel()
            s.deadline = None

    def _on_deadline(self, session_id: str, turn_index: int) -> None:
        s = self.registry.get(session_id)
        if not s:
            logger.info(f"[timer-abort] session={session_id} turn={turn_index} session gone")
            return
        if s.current_turn_index == turn_index:
            s.deadline = None
        logger.info(
            f"[timer-fire] session={session_id} expected_turn={turn_index} actual_turn={s.current_turn_index}"
        )
        if s.current_turn_index != turn_index or s.status != SessionStatus.PLAYING or not s.prompt:
            logger.info(f"[timer-abort] session={session_id} mismatch status/turn/prompt")
            return
        self.spawn(self.evaluate(s, turn_index))

    # ---- answers -----------------------------------------------------------

    async def submit_answer(self, s: Session, player_id: str, answer: Optional[str]) -> bool:
        """Store a player's answer; schedule evaluation if it was the last one missing.

        Returns False when the answer was not accepted.
        """
        if s.status != SessionStatus.PLAYING:
            logger.info(f"[answer-ignored] session={s.id} player={player_id} status={s.status.value}")
            return False
        player = s.players.get(player_id)
        if not player:
            logger.info(f"[answer-ignored] session={s.id} player={player_id} not in session")
            return False

        player.last_answer = (answer or "").strip()

        if not s.prompt or s.evaluating:
            return True
        if all(p.last_answer for p in s.players.values()):
            self.disarm(s)
            self.spawn(self.evaluate(s, s.current_turn_index))
        return True

    # ---- evaluation --------------------------------------------------------

    async def evaluate(self, s: Session, turn_index: Optional[int] = None) -> None:
        if turn_index is not None and turn_index != s.current_turn_index:
            logger.info(f"[evaluate-skip] session={s.id} turn={turn_index} round already closed")
            return
        if s.evaluating:
            logger.info(f"[evaluate-skip] session={s.id} turn={s.current_turn_index} already evaluating")
            return
        s.evaluating = True
        self.disarm(s)

        if not s.prompt:
            logger.warning(f"[evaluate-abort] session={s.id} turn={s.current_turn_index} no prompt set")
            s.evaluating = False
            return

        prompt = s.prompt
        turn_index = s.current_turn_index
        answers = [(p.id, p.last_answer) for p in s.ordered_players()]

        try:
            record = await self._score_round(s, prompt, answers)
        except Exception:
            logger.exception(f"[evaluate-error] session={s.id} turn={turn_index}; round left open")
            s.evaluating = False
            if s.status == SessionStatus.PLAYING and self.registry.get(s.id) is s:
                self._arm(s)
            return

        s.history.append(record)
        logger.info(f"[round-scored] session={s.id} turn={turn_index} results={len(record.results)}")

        s.evaluating = False
        s.current_turn_index += 1
        s.prompt = None

        # A torn-down session gets no further broadcasts.
        if self.registry.get(s.id) is not s:
            logger.info(f"[round-stop] session={s.id} removed during evaluation")
            return
        self.broadcaster.to_session(
            s.id,
            "turnResult",
            {
                "turnIndex": turn_index,
                "record": record.model_dump(by_alias=True),
                "players": public_players(s.ordered_players()),
            },
        )
        await self._advance(s)

    async def _score_round(self, s: Session, prompt: str, answers: List[tuple]) -> TurnRecord:
        prompt_facts = await self.resolver.resolve(prompt)
        record = TurnRecord(prompt=prompt)
        for player_id, answer in answers:
            answer_facts = await self.resolver.resolve(answer) if answer else Facts.empty()
            player = s.players.get(player_id)
            if player is None:
                # Left while facts were being fetched.
                continue
            result = score(prompt, answer, prompt_facts, answer_facts)
            record.results[player_id] = TurnResultDetail(
                answer=answer,
                checks=result.checks,
                points_gained=result.points,
                facts=answer_facts,
                is_invalid_city=is_invalid_city(answer, answer_facts),
                is_equivalent_city=is_equivalent_city(prompt, answer, answer_facts),
            )

        # Scores move only once every result is built.
        for player_id, detail in record.results.items():
            player = s.players.get(player_id)
            if player is not None:
                player.score += detail.points_gained
        return record

    async def _advance(self, s: Session) -> None:
        if s.current_turn_index >= s.turns_total:
            self._game_over(s)
            return
        if self.inter_round_delay > 0:
            await asyncio.sleep(self.inter_round_delay)
            if self.registry.get(s.id) is not s:
                return
        self.start_round(s)

    def _game_over(self, s: Session) -> None:
        self.disarm(s)
        s.status = SessionStatus.FINISHED
        s.prompt = None
        logger.info(f"[game-over] session={s.id} rounds={len(s.history)}")
        self.broadcaster.to_session(
            s.id,
            "gameOver",
            {
                "history": [r.model_dump(by_alias=True) for r in s.history],
                "players": public_players(s.ordered_players()),
            },
        )

    # ---- background tasks --------------------------------------------------

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[task-error] {exc}", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for every spawned task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def shutdown(self) -> None:
        for s in list(self.registry.sessions()):
            self.disarm(s)
        for task in list(self._tasks):
            task.cancel()
