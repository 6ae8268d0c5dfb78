from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional
from unittest import IsolatedAsyncioTestCase, mock

from . import scheduler as scheduler_module
from .config import Settings
from .events import EventStore
from .facts import FactLookupError, FactResolver
from .hub import ConnectionHub
from .models import Facts, Player, SessionStatus
from .registry import SessionRegistry
from .scheduler import TurnScheduler
from .scoring import score

CITY_FACTS: Dict[str, Dict[str, Any]] = {
    "Paris": {"country": "France", "languages": ["French"], "population": 2148000, "founded_year": 500},
    "Lyon": {"country": "France", "languages": ["French"], "population": 513275, "founded_year": 43},
    "Rome": {"country": "Italy", "languages": ["Italian"], "population": 2873000, "founded_year": -753},
}


class _RecordingBroadcaster:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.direct: list[tuple[str, str, dict]] = []
        self.groups: dict[str, set[str]] = {}

    def join(self, session_id: str, connection_id: str) -> None:
        self.groups.setdefault(session_id, set()).add(connection_id)

    def leave(self, session_id: str, connection_id: str) -> None:
        self.groups.get(session_id, set()).discard(connection_id)

    def to_session(self, session_id: str, event: str, payload: Optional[dict] = None) -> None:
        self.sent.append((session_id, event, payload or {}))

    def to_connection(self, connection_id: str, event: str, payload: Optional[dict] = None) -> None:
        self.direct.append((connection_id, event, payload or {}))

    def forget_session(self, session_id: str) -> None:
        self.groups.pop(session_id, None)

    def events(self, name: str) -> list[dict]:
        return [payload for _, event, payload in self.sent if event == name]


class _ScriptedLookup:
    def __init__(self, table: Optional[Dict[str, Dict[str, Any]]] = None, failing=()):
        self.calls: list[str] = []
        self.table = table or {}
        self.failing = set(failing)
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    async def lookup(self, name: str) -> Facts:
        self.calls.append(name)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if name in self.failing:
            raise FactLookupError(f"{name} unavailable")
        return Facts(name=name, **self.table.get(name, {}))


class _SchedulerTestCase(IsolatedAsyncioTestCase):
    turn_duration = 30.0
    turns_total = 5
    inter_round_delay = 0.0

    async def asyncSetUp(self) -> None:
        self.settings = Settings(
            TURN_DURATION_SEC=self.turn_duration,
            TURNS_TOTAL=self.turns_total,
            INTER_ROUND_DELAY_SEC=self.inter_round_delay,
            PROMPT_CITIES=["Paris"],
            FAKE_FACTS=True,
        )
        self.broadcaster = _RecordingBroadcaster()
        self.lookup = _ScriptedLookup(CITY_FACTS)
        self.registry = SessionRegistry(turns_total=self.turns_total)
        self.scheduler = TurnScheduler(self.registry, FactResolver(self.lookup), self.broadcaster, self.settings)

        self.session = self.registry.create("room")
        self.registry.add_player("room", Player(id="a", name="Ann"))
        self.registry.add_player("room", Player(id="b", name="Bob"))
        self.session.status = SessionStatus.PLAYING

    async def asyncTearDown(self) -> None:
        self.scheduler.shutdown()


class RoundStartTests(_SchedulerTestCase):
    async def test_round_start_sets_prompt_and_arms_deadline(self):
        s = self.session
        s.players["a"].last_answer = "stale"

        self.scheduler.start_round(s)

        self.assertEqual(s.prompt, "Paris")
        self.assertIsNotNone(s.deadline)
        self.assertEqual(s.players["a"].last_answer, "")
        self.assertIsNotNone(s.turn_started_at)
        self.assertEqual(
            self.broadcaster.events("newTurn"),
            [{"turnIndex": 0, "prompt": "Paris", "durationSeconds": 30.0, "serverTime": s.turn_started_at}],
        )

    async def test_round_start_is_a_noop_while_evaluating(self):
        self.session.evaluating = True

        self.scheduler.start_round(self.session)

        self.assertIsNone(self.session.prompt)
        self.assertIsNone(self.session.deadline)
        self.assertEqual(self.broadcaster.sent, [])

    async def test_round_start_is_a_noop_once_finished(self):
        self.session.status = SessionStatus.FINISHED

        self.scheduler.start_round(self.session)

        self.assertIsNone(self.session.deadline)
        self.assertEqual(self.broadcaster.sent, [])

    async def test_restarting_a_round_cancels_the_previous_deadline(self):
        self.scheduler.start_round(self.session)
        first = self.session.deadline

        self.scheduler.start_round(self.session)

        self.assertTrue(first.cancelled())
        self.assertIsNot(self.session.deadline, first)
        self.assertFalse(self.session.deadline.cancelled())


class AnswerTests(_SchedulerTestCase):
    async def test_both_answers_evaluate_immediately_and_disarm_deadline(self):
        s = self.session
        self.scheduler.start_round(s)
        deadline = s.deadline

        await self.scheduler.submit_answer(s, "a", "  Lyon ")
        self.assertEqual(s.history, [])
        self.assertIs(s.deadline, deadline)

        await self.scheduler.submit_answer(s, "b", "Rome")
        await self.scheduler.wait_idle()

        self.assertTrue(deadline.cancelled())
        self.assertEqual(len(s.history), 1)
        self.assertEqual(s.history[0].results["a"].answer, "Lyon")
        self.assertEqual(s.current_turn_index, 1)
        self.assertEqual(len(self.broadcaster.events("turnResult")), 1)
        self.assertEqual([e["turnIndex"] for e in self.broadcaster.events("newTurn")], [0, 1])
        self.assertIsNot(s.deadline, deadline)

    async def test_last_answer_returns_before_evaluation_finishes(self):
        s = self.session
        self.scheduler.start_round(s)
        self.lookup.gate = asyncio.Event()

        await self.scheduler.submit_answer(s, "a", "Lyon")
        accepted = await self.scheduler.submit_answer(s, "b", "Rome")

        self.assertTrue(accepted)
        self.assertEqual(s.history, [])
        await self.lookup.entered.wait()
        self.assertTrue(s.evaluating)

        self.lookup.gate.set()
        await self.scheduler.wait_idle()

        self.assertEqual(len(s.history), 1)
        self.assertEqual(s.current_turn_index, 1)

    async def test_repeated_last_answer_evaluates_the_round_once(self):
        s = self.session
        self.scheduler.start_round(s)

        await self.scheduler.submit_answer(s, "a", "Lyon")
        await self.scheduler.submit_answer(s, "b", "Rome")
        await self.scheduler.submit_answer(s, "b", "Roma")
        await self.scheduler.wait_idle()

        self.assertEqual(len(s.history), 1)
        self.assertEqual(s.history[0].results["b"].answer, "Roma")
        self.assertEqual(s.current_turn_index, 1)
        self.assertEqual([e["turnIndex"] for e in self.broadcaster.events("newTurn")], [0, 1])
        self.assertEqual(s.prompt, "Paris")

    async def test_answer_before_prompt_does_not_evaluate(self):
        s = self.session

        self.assertTrue(await self.scheduler.submit_answer(s, "a", "Lyon"))
        self.assertTrue(await self.scheduler.submit_answer(s, "b", "Rome"))

        self.assertEqual(s.history, [])
        self.assertFalse(s.evaluating)
        self.assertEqual(self.lookup.calls, [])

    async def test_answers_are_ignored_unless_playing(self):
        self.session.status = SessionStatus.WAITING

        accepted = await self.scheduler.submit_answer(self.session, "a", "Lyon")

        self.assertFalse(accepted)
        self.assertEqual(self.session.players["a"].last_answer, "")

    async def test_answers_from_strangers_are_ignored(self):
        self.scheduler.start_round(self.session)

        accepted = await self.scheduler.submit_answer(self.session, "zed", "Lyon")

        self.assertFalse(accepted)

    async def test_empty_answer_skips_lookup_and_scores_zero(self):
        s = self.session
        self.scheduler.start_round(s)
        s.players["b"].last_answer = ""

        await self.scheduler.evaluate(s)

        self.assertEqual(self.lookup.calls, ["Paris"])
        detail = s.history[0].results["a"]
        self.assertEqual(detail.answer, "")
        self.assertEqual(detail.points_gained, 0)
        self.assertFalse(any(detail.checks.model_dump().values()))
        self.assertTrue(detail.is_invalid_city)

    async def test_scores_accumulate_across_rounds(self):
        s = self.session
        self.scheduler.start_round(s)

        for _ in range(2):
            await self.scheduler.submit_answer(s, "a", "Lyon")
            await self.scheduler.submit_answer(s, "b", "Rome")
            await self.scheduler.wait_idle()

        detail = s.history[0].results["a"]
        self.assertTrue(detail.checks.same_country)
        self.assertTrue(detail.checks.shared_language)
        self.assertFalse(detail.checks.population_similar)
        self.assertFalse(detail.checks.founded_same_century)
        self.assertEqual(detail.points_gained, 2)
        self.assertEqual(detail.facts.country, "France")
        self.assertEqual(s.players["a"].score, 4)
        result = self.broadcaster.events("turnResult")[-1]
        self.assertEqual(result["players"][0], {"id": "a", "name": "Ann", "score": 4})
        self.assertIn("pointsGained", result["record"]["results"]["a"])


class EvaluationGuardTests(_SchedulerTestCase):
    async def test_deadline_and_answer_race_produce_one_record(self):
        s = self.session
        self.scheduler.start_round(s)
        self.lookup.gate = asyncio.Event()

        first = asyncio.create_task(self.scheduler.evaluate(s))
        await self.lookup.entered.wait()
        self.assertTrue(s.evaluating)
        self.assertIsNone(s.deadline)

        await self.scheduler.evaluate(s)
        self.scheduler._on_deadline("room", 0)
        await asyncio.sleep(0)

        self.lookup.gate.set()
        await first
        await self.scheduler.wait_idle()

        self.assertEqual(len(s.history), 1)
        self.assertEqual(len(self.broadcaster.events("turnResult")), 1)
        self.assertEqual(s.current_turn_index, 1)

    async def test_late_answer_during_evaluation_is_not_scored(self):
        s = self.session
        self.scheduler.start_round(s)
        await self.scheduler.submit_answer(s, "a", "Lyon")
        self.lookup.gate = asyncio.Event()

        self.scheduler._on_deadline("room", 0)
        await self.lookup.entered.wait()
        await self.scheduler.submit_answer(s, "b", "Rome")

        self.lookup.gate.set()
        await self.scheduler.wait_idle()

        self.assertEqual(len(s.history), 1)
        self.assertEqual(s.history[0].results["b"].answer, "")
        self.assertNotIn("Rome", self.lookup.calls)

    async def test_stale_deadline_is_dropped(self):
        s = self.session
        self.scheduler.start_round(s)
        current = s.deadline

        self.scheduler._on_deadline("room", 7)
        await self.scheduler.wait_idle()

        self.assertEqual(s.history, [])
        self.assertIs(s.deadline, current)

    async def test_evaluate_without_prompt_releases_the_guard(self):
        s = self.session

        with self.assertLogs("backend.citymatch.scheduler", level="WARNING"):
            await self.scheduler.evaluate(s)

        self.assertFalse(s.evaluating)
        self.assertEqual(s.history, [])
        self.assertEqual(self.lookup.calls, [])

    async def test_lookup_failures_do_not_block_the_round(self):
        s = self.session
        self.lookup.failing = {"Paris", "Lyon"}
        self.scheduler.start_round(s)

        await self.scheduler.submit_answer(s, "a", "Lyon")
        await self.scheduler.submit_answer(s, "b", "Porto")
        await self.scheduler.wait_idle()

        record = s.history[0]
        self.assertTrue(record.results["a"].facts.is_empty())
        self.assertEqual(record.results["a"].points_gained, 0)
        # p/p and five letters each; no facts to compare
        self.assertEqual(record.results["b"].points_gained, 2)
        self.assertEqual(s.players["b"].score, 2)

    async def test_failed_evaluation_can_be_retried_without_double_points(self):
        s = self.session
        self.scheduler.start_round(s)
        s.players["a"].last_answer = "Lyon"
        s.players["b"].last_answer = "Rome"
        calls = []

        def score_then_fail(*args):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("scoring blew up")
            return score(*args)

        with mock.patch.object(scheduler_module, "score", side_effect=score_then_fail):
            with self.assertLogs("backend.citymatch.scheduler", level="ERROR"):
                await self.scheduler.evaluate(s)

        self.assertEqual(s.history, [])
        self.assertEqual(s.players["a"].score, 0)
        self.assertFalse(s.evaluating)
        self.assertIsNotNone(s.deadline)

        await self.scheduler.evaluate(s)

        self.assertEqual(len(s.history), 1)
        self.assertEqual(s.players["a"].score, 2)

    async def test_session_removed_mid_evaluation_stops_the_loop(self):
        s = self.session
        self.scheduler.start_round(s)
        self.lookup.gate = asyncio.Event()

        task = asyncio.create_task(self.scheduler.evaluate(s))
        await self.lookup.entered.wait()
        self.registry.remove("room")
        self.lookup.gate.set()
        await task

        self.assertEqual(len(s.history), 1)
        self.assertEqual([e["turnIndex"] for e in self.broadcaster.events("newTurn")], [0])
        self.assertEqual(self.broadcaster.events("turnResult"), [])
        self.assertIsNone(s.deadline)

    async def test_torn_down_session_leaves_no_event_log_behind(self):
        store = EventStore()
        hub = ConnectionHub(store)
        scheduler = TurnScheduler(self.registry, FactResolver(self.lookup), hub, self.settings)
        s = self.session
        hub.register("a")
        hub.join("room", "a")
        scheduler.start_round(s)
        self.lookup.gate = asyncio.Event()

        task = asyncio.create_task(scheduler.evaluate(s))
        await self.lookup.entered.wait()
        self.registry.remove("room")
        hub.forget_session("room")
        self.lookup.gate.set()
        await task

        self.assertEqual(len(s.history), 1)
        self.assertEqual(store.list("room"), [])
        self.assertEqual(hub.members("room"), set())

    async def test_player_leaving_mid_evaluation_is_left_out(self):
        s = self.session
        self.scheduler.start_round(s)
        s.players["a"].last_answer = "Lyon"
        s.players["b"].last_answer = "Rome"
        self.lookup.gate = asyncio.Event()

        task = asyncio.create_task(self.scheduler.evaluate(s))
        await self.lookup.entered.wait()
        s.players.pop("b")
        s.player_order.remove("b")
        self.lookup.gate.set()
        await task

        self.assertEqual(list(s.history[0].results), ["a"])


class DeadlineTests(_SchedulerTestCase):
    turn_duration = 0.05
    turns_total = 1

    async def test_deadline_evaluates_with_missing_answers(self):
        s = self.session
        self.scheduler.start_round(s)
        await self.scheduler.submit_answer(s, "a", "Lyon")

        await asyncio.sleep(0.3)
        await self.scheduler.wait_idle()

        self.assertEqual(len(s.history), 1)
        self.assertEqual(s.history[0].results["b"].answer, "")
        self.assertEqual(self.lookup.calls, ["Paris", "Lyon"])
        self.assertEqual(s.status, SessionStatus.FINISHED)
        self.assertIsNone(s.deadline)

    async def test_disarmed_deadline_never_fires(self):
        s = self.session
        self.scheduler.start_round(s)
        self.scheduler.disarm(s)

        await asyncio.sleep(0.2)
        await self.scheduler.wait_idle()

        self.assertEqual(s.history, [])
        self.assertEqual(s.current_turn_index, 0)


class GameOverTests(_SchedulerTestCase):
    turns_total = 3

    async def test_session_finishes_after_exactly_turns_total_rounds(self):
        s = self.session
        self.scheduler.start_round(s)

        for _ in range(3):
            await self.scheduler.submit_answer(s, "a", "Lyon")
            await self.scheduler.submit_answer(s, "b", "Rome")
            await self.scheduler.wait_idle()

        self.assertEqual(s.status, SessionStatus.FINISHED)
        self.assertEqual(len(s.history), 3)
        self.assertEqual(s.current_turn_index, 3)
        self.assertIsNone(s.deadline)
        self.assertIsNone(s.prompt)
        self.assertEqual(len(self.broadcaster.events("newTurn")), 3)
        game_over = self.broadcaster.events("gameOver")
        self.assertEqual(len(game_over), 1)
        self.assertEqual(len(game_over[0]["history"]), 3)

        self.assertFalse(await self.scheduler.submit_answer(s, "a", "Lyon"))
        self.scheduler.start_round(s)
        self.assertEqual(len(self.broadcaster.events("newTurn")), 3)
        self.assertEqual(len(s.history), 3)


class InterRoundDelayTests(_SchedulerTestCase):
    inter_round_delay = 0.05

    async def test_prompt_is_cleared_during_the_pause(self):
        s = self.session
        self.scheduler.start_round(s)
        await self.scheduler.submit_answer(s, "a", "Lyon")
        await self.scheduler.submit_answer(s, "b", "Rome")
        await asyncio.sleep(0.01)

        self.assertEqual(s.current_turn_index, 1)
        self.assertIsNone(s.prompt)
        await self.scheduler.submit_answer(s, "a", "Lyon")
        await self.scheduler.submit_answer(s, "b", "Rome")
        self.assertEqual(len(s.history), 1)

        await self.scheduler.wait_idle()
        self.assertEqual([e["turnIndex"] for e in self.broadcaster.events("newTurn")], [0, 1])
        self.assertEqual(s.prompt, "Paris")

    async def test_answering_does_not_wait_out_the_pause(self):
        s = self.session
        self.scheduler.start_round(s)
        loop = asyncio.get_running_loop()

        await self.scheduler.submit_answer(s, "a", "Lyon")
        started = loop.time()
        await self.scheduler.submit_answer(s, "b", "Rome")

        self.assertLess(loop.time() - started, self.inter_round_delay)
        await self.scheduler.wait_idle()
        self.assertEqual(len(s.history), 1)
