from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import TYPE_CHECKING, Dict, List, Optional

from .events import Notifier, game_channel, lobby_channel
from .exceptions import (
    AnswerNotRevealed,
    GameNotFound,
    InvalidGameState,
    NoActiveRound,
    NotFound,
    PlayerNotFound,
    PowerUpUnavailable,
    RoundAlreadyActive,
    ValidationFailed,
)
from .models import (
    EndCondition,
    GameSession,
    GameSettings,
    GameStats,
    GameStatus,
    PlayerAnswer,
    PlayerScore,
    Question,
    RoundState,
    RoundSummary,
    WheelOutcome,
)
from .questions import QuestionProvider, fetch_round_questions, fetch_topics
from .registry import SessionRegistry
from .schemas import (
    AnswerSubmitted,
    BonusWheelSpun,
    GameCompleted,
    GameCreated,
    GameStarted,
    GameStateUpdated,
    PointDoublingActivated,
    QuestionDisplayed,
    QuestionEnded,
    RoundEnded,
    RoundStarted,
    TopicSelection,
)
from .scoring import (
    MAX_WHEEL_SPINS,
    apply_answer,
    apply_wheel,
    average_response_time,
    can_double,
    difficulty_for_round,
    draw_wheel,
    end_conditions,
    top_player,
)
from .timers import QuestionTimer
from .utils import now_ms

if TYPE_CHECKING:
    from .lobby import LobbyManager

logger = logging.getLogger(__name__)

TOPIC_MIN_LENGTH = 2
TOPIC_MAX_LENGTH = 100
ANSWER_OPTIONS = 4


def validate_topic(topic: str) -> str:
    topic = (topic or "").strip()
    if not TOPIC_MIN_LENGTH <= len(topic) <= TOPIC_MAX_LENGTH:
        raise ValidationFailed(f"Topic must be between {TOPIC_MIN_LENGTH} and {TOPIC_MAX_LENGTH} characters")
    return topic


class GameController:
    """Owns every running game: rounds, question timers and scoring.

    All mutation of a game happens under that game's lock. Notifications are
    published while the lock is held, so a game's event log is in the order the
    state changed. Only the question provider is awaited without the lock.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        notifier: Notifier,
        provider: QuestionProvider,
        lobbies: Optional["LobbyManager"] = None,
        rng: Optional[random.Random] = None,
        topic_count: int = 15,
    ):
        self.registry = registry
        self.notifier = notifier
        self.provider = provider
        self.lobbies = lobbies
        self.rng = rng or random.Random()
        self.topic_count = topic_count
        self.locks: Dict[str, asyncio.Lock] = {}
        self.timers = QuestionTimer()

    def _lock(self, game_id: str) -> asyncio.Lock:
        self.locks.setdefault(game_id, asyncio.Lock())
        return self.locks[game_id]

    def get_game(self, game_id: str) -> GameSession:
        game = self.registry.find_game(game_id)
        if not game:
            raise GameNotFound(game_id)
        return game

    async def _publish(self, game: GameSession, notification, recipient: Optional[str] = None) -> None:
        await self.notifier.publish(game_channel(game.id), notification, recipient)

    @staticmethod
    def _touch(game: GameSession) -> None:
        game.last_activity = now_ms()

    @staticmethod
    def _require_in_progress(game: GameSession) -> None:
        if game.status != GameStatus.IN_PROGRESS:
            raise InvalidGameState(f"Game is {game.status.value}")

    @staticmethod
    def _require_participant(game: GameSession, player_id: str) -> PlayerScore:
        score = game.score_for(player_id)
        if score is None:
            raise PlayerNotFound(player_id)
        if not score.is_active:
            raise InvalidGameState("Player has left this game")
        return score

    async def _release_lobby(self, game: GameSession) -> None:
        # Runs after the game lock is released; lobby and game locks never nest.
        if game.is_over and self.lobbies is not None:
            await self.lobbies.mark_finished(game.lobby_id, game.id)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def create_game(
        self,
        lobby_id: str,
        participant_ids: List[str],
        nicknames: Dict[str, str],
        settings: Optional[GameSettings] = None,
    ) -> GameSession:
        settings = settings.model_copy(deep=True) if settings else GameSettings()
        topics = await fetch_topics(self.provider, self.topic_count)
        game = GameSession(
            id=str(uuid.uuid4()),
            lobby_id=lobby_id,
            players=list(participant_ids),
            total_rounds=settings.max_rounds,
            scores=[PlayerScore(player_id=pid, nickname=nicknames.get(pid, "Unknown")) for pid in participant_ids],
            settings=settings,
            available_topics=topics,
        )
        self.registry.add_game(game)
        logger.info("game %s created for lobby %s with %d players", game.id, lobby_id, len(game.players))

        created = GameCreated(game=game.public_view())
        await self.notifier.publish(lobby_channel(lobby_id), created)
        await self._publish(game, created)
        return game

    async def start_game(self, game_id: str) -> GameSession:
        game = self.get_game(game_id)
        async with self._lock(game_id):
            if game.status != GameStatus.WAITING:
                raise InvalidGameState("Game has already started")
            game.status = GameStatus.IN_PROGRESS
            game.start_time = now_ms()
            self._touch(game)
            logger.info("game %s started", game_id)

            await self._publish(game, GameStarted(game=game.public_view()))
            await self._publish(
                game,
                TopicSelection(game_id=game.id, round_number=1, available_topics=game.available_topics),
            )
            return game

    async def start_round(self, game_id: str, topic: str, player_id: Optional[str] = None) -> RoundState:
        topic = validate_topic(topic)
        game = self.get_game(game_id)

        async with self._lock(game_id):
            self._require_in_progress(game)
            if player_id is not None:
                self._require_participant(game, player_id)
            if game.round_active:
                raise RoundAlreadyActive("A round is already in progress")
            if game.current_round >= game.total_rounds:
                raise InvalidGameState("All rounds have been played")
            round_number = game.current_round + 1
            difficulty = difficulty_for_round(round_number, game.total_rounds)
            history = list(game.question_history)

        questions = await fetch_round_questions(
            self.provider, topic, difficulty, game.settings.questions_per_round, history
        )

        async with self._lock(game_id):
            # Someone else may have started this round while questions were generated.
            self._require_in_progress(game)
            if game.round_active or game.current_round + 1 != round_number:
                raise RoundAlreadyActive("Another round was started first")

            game.current_round = round_number
            game.question_history.extend(q.text for q in questions)
            round_state = RoundState(
                round_number=round_number,
                topic=topic,
                questions=questions,
                round_multiplier=round_number,
                difficulty=difficulty,
            )
            game.round_state = round_state
            self._touch(game)
            logger.info(
                "game %s round %d/%d started on %r (%s)",
                game_id,
                round_number,
                game.total_rounds,
                topic,
                difficulty.value,
            )

            await self._publish(
                game,
                RoundStarted(round_state=game.public_view()["round_state"], total_rounds=game.total_rounds),
            )
            await self._display_current(game)
            return round_state

    async def _display_current(self, game: GameSession) -> Question:
        round_state = game.round_state
        question = round_state.current_question
        await self._publish(
            game,
            QuestionDisplayed(
                question=question.display(round_state.round_number, round_state.current_question_index + 1),
                time_remaining=question.time_limit,
            ),
        )
        self.timers.arm(game.id, question.time_limit, self._on_question_timeout)
        return question

    # ------------------------------------------------------------------
    # answers and progression
    # ------------------------------------------------------------------

    async def submit_answer(self, game_id: str, player_id: str, answer_index: int) -> PlayerAnswer:
        if isinstance(answer_index, bool) or not isinstance(answer_index, int) or not 0 <= answer_index < ANSWER_OPTIONS:
            raise ValidationFailed(f"Answer index must be between 0 and {ANSWER_OPTIONS - 1}")
        game = self.get_game(game_id)

        async with self._lock(game_id):
            self._require_in_progress(game)
            round_state = game.round_state
            if round_state is None or round_state.is_complete:
                raise NoActiveRound("No active round")
            question = round_state.current_question
            if question is None:
                raise NoActiveRound("No question is open")
            score = self._require_participant(game, player_id)

            response_time = max(0, now_ms() - round_state.question_start_time)
            is_correct = answer_index == question.correct_answer_index
            # A resubmission replaces the recorded answer; only the first one is scored.
            previous = round_state.player_answers.get(player_id)
            answer = PlayerAnswer(answer_index=answer_index, response_time=response_time, is_correct=is_correct)
            round_state.player_answers[player_id] = answer
            if previous is None:
                answer.points = apply_answer(score, game.settings, round_state, is_correct, response_time)
            else:
                logger.info("player %s resubmitted in game %s; keeping first score", player_id, game_id)
            self._touch(game)

            await self._publish(game, AnswerSubmitted(player_id=player_id, is_correct=is_correct), player_id)
            return answer

    async def next_question(self, game_id: str, player_id: Optional[str] = None) -> Optional[Question]:
        """Close the open question and show the next one.

        Returns ``None`` when there is nothing left in the round, either because
        this call completed it or because no round was active.
        """
        game = self.get_game(game_id)
        async with self._lock(game_id):
            if player_id is not None:
                self._require_participant(game, player_id)
            question = await self._advance(game)
        await self._release_lobby(game)
        return question

    async def _advance(self, game: GameSession) -> Optional[Question]:
        round_state = game.round_state
        if game.status != GameStatus.IN_PROGRESS or round_state is None or round_state.is_complete:
            return None

        self.timers.cancel(game.id)
        closing = round_state.current_question
        if closing is not None:
            await self._publish(
                game,
                QuestionEnded(
                    question=closing.model_dump(mode="json"),
                    correct_answer_index=closing.correct_answer_index,
                    explanation=closing.explanation,
                    scores=[s.model_copy(deep=True) for s in game.scores],
                ),
            )

        round_state.current_question_index += 1
        if round_state.current_question_index >= len(round_state.questions):
            await self._complete_round(game)
            return None

        round_state.player_answers.clear()
        round_state.question_start_time = now_ms()
        self._touch(game)
        return await self._display_current(game)

    async def _on_question_timeout(self, game_id: str, generation: int) -> None:
        game = self.registry.find_game(game_id)
        if game is None:
            return
        async with self._lock(game_id):
            if not self.timers.is_current(game_id, generation) or game.status != GameStatus.IN_PROGRESS:
                logger.warning("ignoring stale question timer for game %s", game_id)
                return
            await self._advance(game)
        await self._release_lobby(game)

    async def complete_round(self, game_id: str) -> RoundSummary:
        game = self.get_game(game_id)
        async with self._lock(game_id):
            self._require_in_progress(game)
            if game.round_state is None or game.round_state.is_complete:
                raise NoActiveRound("No active round to complete")
            summary = await self._complete_round(game)
        await self._release_lobby(game)
        return summary

    async def _complete_round(self, game: GameSession) -> RoundSummary:
        round_state = game.round_state
        round_state.is_complete = True
        self.timers.cancel(game.id)
        self._touch(game)

        summary = RoundSummary(
            round_number=round_state.round_number,
            topic=round_state.topic,
            questions_answered=min(round_state.current_question_index + 1, len(round_state.questions)),
            scores=[s.model_copy(deep=True) for s in game.scores],
            top_player=top_player(game.scores),
            round_duration=now_ms() - round_state.started_at,
            difficulty=round_state.difficulty,
        )
        is_game_complete = game.current_round >= game.total_rounds
        logger.info("game %s round %d complete", game.id, round_state.round_number)
        await self._publish(game, RoundEnded(summary=summary, is_game_complete=is_game_complete))

        if is_game_complete:
            await self._complete_game(game)
        else:
            await self._publish(
                game,
                TopicSelection(
                    game_id=game.id,
                    round_number=game.current_round + 1,
                    available_topics=game.available_topics,
                ),
            )
        return summary

    async def complete_game(self, game_id: str) -> GameStats:
        game = self.get_game(game_id)
        async with self._lock(game_id):
            if game.is_over:
                raise InvalidGameState(f"Game is already {game.status.value}")
            stats = await self._complete_game(game)
        await self._release_lobby(game)
        return stats

    async def _complete_game(self, game: GameSession) -> GameStats:
        game.status = GameStatus.COMPLETED
        game.end_time = now_ms()
        self.timers.cancel(game.id)
        self._touch(game)

        stats = GameStats(
            total_questions=len(game.question_history),
            total_correct_answers=sum(s.correct_answers for s in game.scores),
            average_response_time=average_response_time(game.scores),
            questions_generated=len(game.question_history),
            game_start_time=game.start_time,
            game_end_time=game.end_time,
            game_duration=game.end_time - game.start_time,
            players_joined=len(game.players),
            players_completed=len(game.active_scores()),
        )
        winner = top_player(game.scores)
        logger.info("game %s completed, winner %s", game.id, winner)
        await self._publish(
            game,
            GameCompleted(
                stats=stats,
                final_scores=sorted(game.scores, key=lambda s: -s.total_score),
                winner=winner,
            ),
        )
        return stats

    async def remove_player(self, game_id: str, player_id: str) -> GameSession:
        """Mark a participant inactive; fewer than two active players cancels the game."""
        game = self.get_game(game_id)
        async with self._lock(game_id):
            score = game.score_for(player_id)
            if score is None:
                raise PlayerNotFound(player_id)
            score.is_active = False
            self._touch(game)

            if len(game.active_scores()) < 2 and not game.is_over:
                game.status = GameStatus.CANCELLED
                game.end_time = now_ms()
                self.timers.cancel(game_id)
                logger.info("game %s cancelled: not enough active players", game_id)

            await self._publish(game, GameStateUpdated(game=game.public_view()))
        await self._release_lobby(game)
        return game

    def check_game_end_conditions(self, game_id: str) -> EndCondition:
        """Advisory only; nothing here changes the game."""
        game = self.registry.find_game(game_id)
        if game is None:
            return EndCondition(should_end=True, reason="Game not found")
        return end_conditions(game)

    async def get_game_state(self, game_id: str, player_id: Optional[str] = None) -> GameSession:
        game = self.get_game(game_id)
        async with self._lock(game_id):
            if player_id is not None:
                await self._publish(game, GameStateUpdated(game=game.public_view()), player_id)
            return game

    def answer_explanation(self, game_id: str, question_index: int) -> dict:
        """Correct answer and explanation for a question that has already closed.

        ``player_answers`` is only filled for the question the recorded answers
        belong to; earlier questions of the round report none.
        """
        game = self.get_game(game_id)
        round_state = game.round_state
        if round_state is None:
            raise NoActiveRound("No active round")
        if not 0 <= question_index < len(round_state.questions):
            raise NotFound(f"Question {question_index} not found")
        if not (round_state.is_complete or question_index < round_state.current_question_index):
            raise AnswerNotRevealed("The answer is revealed once the question has closed")

        question = round_state.questions[question_index]
        # Answers are cleared on advance, so they belong to the question open when
        # the round ended (the last one if the round ran to the end).
        answered_index = min(round_state.current_question_index, len(round_state.questions) - 1)
        recorded = round_state.player_answers if round_state.is_complete and question_index == answered_index else {}
        player_answers = []
        for pid, answer in recorded.items():
            score = game.score_for(pid)
            chosen = question.answers[answer.answer_index] if answer.answer_index < len(question.answers) else None
            player_answers.append(
                {
                    "player_id": pid,
                    "nickname": score.nickname if score else "Unknown",
                    "selected_answer": chosen.text if chosen else "No answer",
                    "is_correct": answer.is_correct,
                    "response_time": answer.response_time,
                }
            )
        return {
            "question": question.model_dump(mode="json"),
            "explanation": question.explanation,
            "correct_answer": question.answers[question.correct_answer_index].text,
            "player_answers": player_answers,
        }

    # ------------------------------------------------------------------
    # power-ups
    # ------------------------------------------------------------------

    async def activate_point_doubling(self, game_id: str, player_id: str) -> PlayerScore:
        game = self.get_game(game_id)
        async with self._lock(game_id):
            self._require_in_progress(game)
            if not game.round_active:
                raise NoActiveRound("Point doubling needs an active round")
            score = self._require_participant(game, player_id)
            if not can_double(score, game.current_round):
                raise PowerUpUnavailable("Point doubling is not available right now")

            score.points_doubled += 1
            score.doubled_round = game.current_round
            self._touch(game)
            await self._publish(
                game,
                PointDoublingActivated(player_id=player_id, round_number=game.current_round, uses=score.points_doubled),
            )
            return score

    async def spin_bonus_wheel(self, game_id: str, player_id: str) -> WheelOutcome:
        game = self.get_game(game_id)
        async with self._lock(game_id):
            self._require_in_progress(game)
            if game.current_round != game.total_rounds or game.round_state is None:
                raise PowerUpUnavailable("The bonus wheel is only available in the final round")
            score = self._require_participant(game, player_id)
            if score.bonus_wheel_spins >= MAX_WHEEL_SPINS:
                raise PowerUpUnavailable("The bonus wheel can only be spun once per game")

            outcome = draw_wheel(self.rng)
            round_score = apply_wheel(score, game.current_round, outcome)
            self._touch(game)
            await self._publish(game, BonusWheelSpun(player_id=player_id, outcome=outcome, round_score=round_score))
            return outcome

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------

    def forget(self, game_id: str) -> None:
        self.timers.forget(game_id)
        self.locks.pop(game_id, None)

    def shutdown(self) -> None:
        self.timers.cancel_all()
