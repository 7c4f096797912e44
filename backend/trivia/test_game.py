from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, mock

from .events import EventStore, game_channel
from .exceptions import (
    AnswerNotRevealed,
    GameNotFound,
    InvalidGameState,
    NoActiveRound,
    PowerUpUnavailable,
    RoundAlreadyActive,
    ValidationFailed,
)
from .game import GameController
from .models import Answer, Difficulty, GameSettings, GameStatus, Question
from .registry import SessionRegistry


class _FakeProvider:
    """Serves unique, valid questions whose correct answer is always index 1."""

    def __init__(self, time_limit: int = 30000):
        self.time_limit = time_limit
        self.calls: list[dict] = []
        self._counter = 0

    async def generate_questions(self, topic, difficulty, count, exclude_texts):
        self.calls.append({"topic": topic, "difficulty": difficulty, "exclude": list(exclude_texts)})
        await asyncio.sleep(0)
        questions = []
        for _ in range(count):
            self._counter += 1
            questions.append(
                Question(
                    id=f"q{self._counter}",
                    text=f"{topic} question {self._counter}",
                    answers=[
                        Answer(text="A"),
                        Answer(text="B", is_correct=True),
                        Answer(text="C"),
                        Answer(text="D"),
                    ],
                    correct_answer_index=1,
                    explanation="B is right.",
                    difficulty=difficulty,
                    topic=topic,
                    time_limit=self.time_limit,
                )
            )
        return questions

    async def generate_topics(self, count):
        return ["History", "Science", "Sports"][:count]


class GameControllerTestCase(IsolatedAsyncioTestCase):
    time_limit = 30000

    def setUp(self) -> None:
        self.registry = SessionRegistry()
        self.events = EventStore()
        self.provider = _FakeProvider(time_limit=self.time_limit)
        self.rng = mock.Mock()
        self.rng.random.return_value = 0.0
        self.games = GameController(self.registry, self.events, self.provider, rng=self.rng)

    async def asyncTearDown(self) -> None:
        self.games.shutdown()

    async def _start(self, players=("p1", "p2"), **settings):
        settings.setdefault("time_bonus", False)
        nicknames = {pid: f"Player {pid}" for pid in players}
        game = await self.games.create_game("lobby-1", list(players), nicknames, GameSettings(**settings))
        await self.games.start_game(game.id)
        return game

    async def _event_types(self, game_id: str) -> list[str]:
        return [e["payload"]["type"] for e in await self.events.list(game_channel(game_id), limit=1000)]


class GameLifecycleTests(GameControllerTestCase):
    async def test_create_and_start(self):
        game = await self._start(max_rounds=3)

        self.assertEqual(game.status, GameStatus.IN_PROGRESS)
        self.assertEqual(game.total_rounds, 3)
        self.assertEqual(game.current_round, 0)
        self.assertEqual([s.player_id for s in game.scores], game.players)
        self.assertEqual(game.available_topics, ["History", "Science", "Sports"])
        self.assertEqual(await self._event_types(game.id), ["game_created", "game_started", "topic_selection"])

        with self.assertRaises(InvalidGameState):
            await self.games.start_game(game.id)

    async def test_unknown_game(self):
        with self.assertRaises(GameNotFound):
            await self.games.start_round("missing", "History")

    async def test_start_round(self):
        game = await self._start(max_rounds=3, questions_per_round=4)

        round_state = await self.games.start_round(game.id, "History", "p1")

        self.assertEqual(game.current_round, 1)
        self.assertIs(game.round_state, round_state)
        self.assertEqual(round_state.round_multiplier, 1)
        self.assertEqual(round_state.difficulty, Difficulty.EASY)
        self.assertEqual(len(round_state.questions), 4)
        self.assertEqual(len(game.question_history), 4)
        self.assertTrue(self.games.timers.is_armed(game.id))

        events = await self.events.list(game_channel(game.id))
        self.assertEqual([e["payload"]["type"] for e in events[-2:]], ["round_started", "question_displayed"])
        shown = events[-1]["payload"]["question"]
        self.assertEqual(shown["answers"], ["A", "B", "C", "D"])
        self.assertNotIn("correct_answer_index", shown)

    async def test_topic_validation(self):
        game = await self._start()

        with self.assertRaises(ValidationFailed):
            await self.games.start_round(game.id, "x")

    async def test_only_one_active_round(self):
        game = await self._start()
        await self.games.start_round(game.id, "History")

        with self.assertRaises(RoundAlreadyActive):
            await self.games.start_round(game.id, "Science")
        self.assertEqual(game.current_round, 1)

    async def test_concurrent_topic_selection(self):
        game = await self._start()

        results = await asyncio.gather(
            self.games.start_round(game.id, "History", "p1"),
            self.games.start_round(game.id, "Science", "p2"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        self.assertEqual(len(failures), 1)
        self.assertIsInstance(failures[0], RoundAlreadyActive)
        self.assertEqual(game.current_round, 1)
        self.assertEqual(len(game.question_history), game.settings.questions_per_round)

    async def test_history_excludes_previous_rounds(self):
        game = await self._start(max_rounds=3, questions_per_round=2)
        await self.games.start_round(game.id, "History")
        first_round = list(game.question_history)
        await self.games.complete_round(game.id)

        await self.games.start_round(game.id, "Science")

        self.assertEqual(self.provider.calls[1]["exclude"], first_round)
        self.assertEqual(game.question_history[:2], first_round)
        self.assertEqual(len(game.question_history), 4)

    async def test_full_game_flow(self):
        game = await self._start(max_rounds=2, questions_per_round=1)

        await self.games.start_round(game.id, "History")
        await self.games.submit_answer(game.id, "p1", 1)
        self.assertIsNone(await self.games.next_question(game.id))
        self.assertTrue(game.round_state.is_complete)
        self.assertEqual(game.status, GameStatus.IN_PROGRESS)

        round_state = await self.games.start_round(game.id, "Science")
        self.assertEqual(round_state.difficulty, Difficulty.EXTREME)
        await self.games.submit_answer(game.id, "p2", 1)
        await self.games.next_question(game.id)

        self.assertEqual(game.status, GameStatus.COMPLETED)
        self.assertIsNotNone(game.end_time)
        self.assertFalse(self.games.timers.is_armed(game.id))
        types = await self._event_types(game.id)
        self.assertEqual(
            types[-4:],
            ["question_displayed", "question_ended", "round_ended", "game_completed"],
        )
        self.assertIn("topic_selection", types[types.index("round_ended"):])

        events = await self.events.list(game_channel(game.id), limit=1000)
        completed = events[-1]["payload"]
        self.assertEqual(completed["winner"], "Player p2")
        self.assertEqual(completed["stats"]["total_questions"], 2)
        self.assertEqual(completed["stats"]["total_correct_answers"], 2)

        with self.assertRaises(InvalidGameState):
            await self.games.start_round(game.id, "Sports")


    async def test_complete_game_early(self):
        game = await self._start(max_rounds=3)
        await self.games.start_round(game.id, "History")
        await self.games.submit_answer(game.id, "p1", 1)

        stats = await self.games.complete_game(game.id)

        self.assertEqual(game.status, GameStatus.COMPLETED)
        self.assertFalse(self.games.timers.is_armed(game.id))
        self.assertEqual(stats.players_joined, 2)
        self.assertEqual(stats.total_correct_answers, 1)
        self.assertEqual(stats.game_duration, stats.game_end_time - stats.game_start_time)
        self.assertEqual((await self._event_types(game.id))[-1], "game_completed")

        with self.assertRaises(InvalidGameState):
            await self.games.complete_game(game.id)


class AnswerTests(GameControllerTestCase):
    async def test_correct_answer_scores(self):
        game = await self._start()
        await self.games.start_round(game.id, "History")

        answer = await self.games.submit_answer(game.id, "p1", 1)

        self.assertTrue(answer.is_correct)
        self.assertEqual(answer.points, 100)
        score = game.score_for("p1")
        self.assertEqual(score.round_scores, [100])
        self.assertEqual(score.total_score, sum(score.round_scores))

    async def test_answer_is_only_visible_to_submitter(self):
        game = await self._start()
        await self.games.start_round(game.id, "History")

        await self.games.submit_answer(game.id, "p1", 0)

        mine = await self.events.list(game_channel(game.id), player_id="p1")
        theirs = await self.events.list(game_channel(game.id), player_id="p2")
        self.assertEqual(mine[-1]["payload"]["type"], "answer_submitted")
        self.assertNotEqual(theirs[-1]["payload"]["type"], "answer_submitted")

    async def test_out_of_range_index_changes_nothing(self):
        game = await self._start()
        await self.games.start_round(game.id, "History")
        score = game.score_for("p1")
        score.streak = 2

        for bad in (-1, 4, True):
            with self.assertRaises(ValidationFailed):
                await self.games.submit_answer(game.id, "p1", bad)

        self.assertEqual(score.streak, 2)
        self.assertEqual(score.total_score, 0)
        self.assertEqual(score.answers_count, 0)
        self.assertEqual(game.round_state.player_answers, {})

    async def test_answer_without_round(self):
        game = await self._start()

        with self.assertRaises(NoActiveRound):
            await self.games.submit_answer(game.id, "p1", 1)

    async def test_resubmission_overwrites_without_rescoring(self):
        game = await self._start()
        await self.games.start_round(game.id, "History")

        await self.games.submit_answer(game.id, "p1", 0)
        second = await self.games.submit_answer(game.id, "p1", 1)

        self.assertEqual(game.round_state.player_answers["p1"].answer_index, 1)
        self.assertEqual(second.points, 0)
        score = game.score_for("p1")
        self.assertEqual(score.answers_count, 1)
        self.assertEqual(score.total_score, 0)

    async def test_next_question_resets_answers(self):
        game = await self._start(questions_per_round=3)
        await self.games.start_round(game.id, "History")
        await self.games.submit_answer(game.id, "p1", 1)

        question = await self.games.next_question(game.id, "p2")

        self.assertEqual(question.id, game.round_state.questions[1].id)
        self.assertEqual(game.round_state.current_question_index, 1)
        self.assertEqual(game.round_state.player_answers, {})
        self.assertEqual((await self._event_types(game.id))[-2:], ["question_ended", "question_displayed"])

    async def test_next_question_after_round_is_a_no_op(self):
        game = await self._start(questions_per_round=1)
        self.assertIsNone(await self.games.next_question(game.id))

        await self.games.start_round(game.id, "History")
        await self.games.next_question(game.id)
        before = await self._event_types(game.id)

        self.assertIsNone(await self.games.next_question(game.id))
        self.assertIsNone(await self.games.next_question(game.id))
        self.assertEqual(await self._event_types(game.id), before)

    async def test_answer_explanation_after_round(self):
        game = await self._start(questions_per_round=1)
        await self.games.start_round(game.id, "History")
        await self.games.submit_answer(game.id, "p1", 2)
        await self.games.next_question(game.id)

        details = self.games.answer_explanation(game.id, 0)

        self.assertEqual(details["correct_answer"], "B")
        self.assertEqual(details["player_answers"][0]["selected_answer"], "C")
        self.assertFalse(details["player_answers"][0]["is_correct"])

    async def test_open_and_upcoming_answers_stay_hidden(self):
        game = await self._start(questions_per_round=6)
        await self.games.start_round(game.id, "History")
        await self.games.submit_answer(game.id, "p1", 1)

        for index in (0, 5):
            with self.assertRaises(AnswerNotRevealed):
                self.games.answer_explanation(game.id, index)

        await self.games.next_question(game.id)

        closed = self.games.answer_explanation(game.id, 0)
        self.assertEqual(closed["correct_answer"], "B")
        self.assertEqual(closed["player_answers"], [])
        with self.assertRaises(AnswerNotRevealed):
            self.games.answer_explanation(game.id, 1)


class PlayerRemovalTests(GameControllerTestCase):
    time_limit = 50

    async def test_dropping_below_two_players_cancels(self):
        game = await self._start(players=("p1", "p2", "p3"))
        await self.games.start_round(game.id, "History")
        self.assertTrue(self.games.timers.is_armed(game.id))

        await self.games.remove_player(game.id, "p2")
        self.assertEqual(game.status, GameStatus.IN_PROGRESS)
        await self.games.remove_player(game.id, "p3")

        self.assertEqual(game.status, GameStatus.CANCELLED)
        self.assertFalse(self.games.timers.is_armed(game.id))
        self.assertEqual(game.players, ["p1", "p2", "p3"])
        self.assertEqual(len(game.scores), 3)
        self.assertEqual([s.is_active for s in game.scores], [True, False, False])

        await asyncio.sleep(0.2)
        types = await self._event_types(game.id)
        self.assertEqual(types.count("question_displayed"), 1)
        self.assertEqual(types[-1], "game_state_updated")

    async def test_cancelled_game_cannot_be_completed(self):
        game = await self._start(max_rounds=1)
        await self.games.start_round(game.id, "History")
        await self.games.remove_player(game.id, "p2")
        self.assertEqual(game.status, GameStatus.CANCELLED)

        with self.assertRaises(InvalidGameState):
            await self.games.complete_round(game.id)
        with self.assertRaises(InvalidGameState):
            await self.games.complete_game(game.id)

        self.assertEqual(game.status, GameStatus.CANCELLED)
        self.assertFalse(game.round_state.is_complete)
        self.assertNotIn("game_completed", await self._event_types(game.id))

    async def test_inactive_player_cannot_answer(self):
        game = await self._start(players=("p1", "p2", "p3"))
        await self.games.start_round(game.id, "History")
        await self.games.remove_player(game.id, "p3")

        with self.assertRaises(InvalidGameState):
            await self.games.submit_answer(game.id, "p3", 1)


class QuestionTimerTests(GameControllerTestCase):
    time_limit = 50

    async def test_timer_advances_through_round(self):
        game = await self._start(max_rounds=1, questions_per_round=2)
        await self.games.start_round(game.id, "History")

        await asyncio.sleep(0.4)

        self.assertEqual(game.status, GameStatus.COMPLETED)
        types = await self._event_types(game.id)
        start = types.index("round_started")
        self.assertEqual(
            types[start:],
            [
                "round_started",
                "question_displayed",
                "question_ended",
                "question_displayed",
                "question_ended",
                "round_ended",
                "game_completed",
            ],
        )

    async def test_manual_advance_disarms_previous_timer(self):
        game = await self._start(max_rounds=2, questions_per_round=3)
        await self.games.start_round(game.id, "History")

        await self.games.next_question(game.id)
        await self.games.next_question(game.id)
        await asyncio.sleep(0.03)

        # Only the timer armed for the third question is still pending.
        self.assertEqual(game.round_state.current_question_index, 2)
        await asyncio.sleep(0.1)
        self.assertTrue(game.round_state.is_complete)
        self.assertEqual((await self._event_types(game.id)).count("question_ended"), 3)


class PowerUpTests(GameControllerTestCase):
    async def test_point_doubling(self):
        game = await self._start(max_rounds=3)

        with self.assertRaises(NoActiveRound):
            await self.games.activate_point_doubling(game.id, "p1")

        await self.games.start_round(game.id, "History")
        score = await self.games.activate_point_doubling(game.id, "p1")
        self.assertEqual(score.points_doubled, 1)
        self.assertEqual(score.doubled_round, 1)

        with self.assertRaises(PowerUpUnavailable):
            await self.games.activate_point_doubling(game.id, "p1")

        answer = await self.games.submit_answer(game.id, "p1", 1)
        self.assertEqual(answer.points, 200)

    async def test_bonus_wheel_final_round_only(self):
        game = await self._start(max_rounds=2, questions_per_round=1)
        await self.games.start_round(game.id, "History")

        with self.assertRaises(PowerUpUnavailable):
            await self.games.spin_bonus_wheel(game.id, "p1")

        await self.games.next_question(game.id)
        await self.games.start_round(game.id, "Science")
        await self.games.submit_answer(game.id, "p1", 1)
        round_points = game.score_for("p1").round_scores[1]

        outcome = await self.games.spin_bonus_wheel(game.id, "p1")

        self.assertEqual(outcome.multiplier, 1.5)
        score = game.score_for("p1")
        self.assertEqual(score.round_scores[1], round(round_points * 1.5))
        self.assertEqual(score.total_score, sum(score.round_scores))

        with self.assertRaises(PowerUpUnavailable):
            await self.games.spin_bonus_wheel(game.id, "p1")


class GameStateTests(GameControllerTestCase):
    async def test_get_game_state_sends_snapshot_to_requester(self):
        game = await self._start()

        result = await self.games.get_game_state(game.id, "p2")

        self.assertIs(result, game)
        mine = await self.events.list(game_channel(game.id), player_id="p2")
        theirs = await self.events.list(game_channel(game.id), player_id="p1")
        self.assertEqual(mine[-1]["payload"]["type"], "game_state_updated")
        self.assertNotIn("game_state_updated", [e["payload"]["type"] for e in theirs])

    async def test_end_conditions_are_advisory(self):
        game = await self._start(players=("p1", "p2", "p3"))
        game.score_for("p2").is_active = False
        game.score_for("p3").is_active = False

        result = self.games.check_game_end_conditions(game.id)

        self.assertTrue(result.should_end)
        self.assertEqual(result.winner, "Player p1")
        self.assertEqual(game.status, GameStatus.IN_PROGRESS)
        self.assertTrue(self.games.check_game_end_conditions("missing").should_end)
