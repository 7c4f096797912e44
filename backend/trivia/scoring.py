from __future__ import annotations

import math
import random
from typing import List, Optional

from .models import (
    Difficulty,
    EndCondition,
    GameSession,
    GameSettings,
    PlayerScore,
    RoundState,
    WheelOutcome,
)

TIME_BONUS_WEIGHT = 0.5
STREAK_LENGTH = 3
STREAK_BONUS = 1.25
POINT_DOUBLING_FACTOR = 2
MAX_POINT_DOUBLINGS = 3
MAX_WHEEL_SPINS = 1

DECISIVE_LEAD_RATIO = 1.5
DECISIVE_MARGIN_SHARE = 0.3

# Weights sum to 100.
WHEEL_OUTCOMES = [
    WheelOutcome(multiplier=1.5, message="Lucky spin! +50% bonus!", weight=30),
    WheelOutcome(multiplier=2.0, message="Great spin! Double points!", weight=20),
    WheelOutcome(multiplier=3.0, message="Amazing! Triple points!", weight=10),
    WheelOutcome(multiplier=5.0, message="JACKPOT! 5x multiplier!", weight=5),
    WheelOutcome(multiplier=10.0, message="LEGENDARY! 10x multiplier!", weight=1),
    WheelOutcome(multiplier=0.5, message="Oops! Half points...", weight=15),
    WheelOutcome(multiplier=1.0, message="No change. Better luck next time!", weight=19),
]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def difficulty_for_round(round_number: int, total_rounds: int) -> Difficulty:
    if round_number >= total_rounds:
        return Difficulty.EXTREME
    if round_number >= total_rounds - 1:
        return Difficulty.HARD
    if round_number >= total_rounds / 2:
        return Difficulty.MEDIUM
    return Difficulty.EASY


def doubling_active(score: PlayerScore, round_number: int) -> bool:
    return score.doubled_round == round_number


def can_double(score: PlayerScore, round_number: int) -> bool:
    return score.doubled_round != round_number and score.points_doubled < MAX_POINT_DOUBLINGS


def apply_answer(
    score: PlayerScore,
    settings: GameSettings,
    round_state: RoundState,
    is_correct: bool,
    response_time: int,
) -> int:
    """Score one accepted answer into ``score`` and return the points awarded."""
    score.answers_count += 1
    score.average_response_time += (response_time - score.average_response_time) / score.answers_count

    if not is_correct:
        score.streak = 0
        score.add_round_points(round_state.round_number, 0)
        return 0

    score.correct_answers += 1
    points = float(settings.base_points * round_state.round_multiplier)

    if settings.time_bonus and settings.question_time_limit > 0:
        bonus = max(0.0, 1 - response_time / settings.question_time_limit)
        points *= 1 + bonus * TIME_BONUS_WEIGHT

    points *= settings.difficulty_multiplier.for_level(round_state.difficulty)

    if doubling_active(score, round_state.round_number):
        points *= POINT_DOUBLING_FACTOR

    # Every third consecutive correct answer earns the streak bonus.
    if (score.streak + 1) % STREAK_LENGTH == 0:
        points *= STREAK_BONUS

    awarded = round_half_up(points)
    score.add_round_points(round_state.round_number, awarded)
    score.streak += 1
    return awarded


def draw_wheel(rng: Optional[random.Random] = None) -> WheelOutcome:
    rng = rng or random
    total = sum(o.weight for o in WHEEL_OUTCOMES)
    pick = rng.random() * total
    running = 0
    for outcome in WHEEL_OUTCOMES:
        running += outcome.weight
        if pick <= running:
            return outcome
    return WHEEL_OUTCOMES[-1]


def apply_wheel(score: PlayerScore, round_number: int, outcome: WheelOutcome) -> int:
    """Scale the round's score by the outcome and return the new round score."""
    current = score.round_scores[round_number - 1] if len(score.round_scores) >= round_number else 0
    score.add_round_points(round_number, round_half_up(current * (outcome.multiplier - 1)))
    score.bonus_wheel_spins += 1
    return score.round_scores[round_number - 1]


def top_player(scores: List[PlayerScore]) -> str:
    if not scores:
        return "Unknown"
    best = scores[0]
    for score in scores[1:]:
        if score.total_score > best.total_score:
            best = score
    return best.nickname


def average_response_time(scores: List[PlayerScore]) -> float:
    answered = sum(s.answers_count for s in scores)
    if not answered:
        return 0.0
    return sum(s.average_response_time * s.answers_count for s in scores) / answered


def end_conditions(game: GameSession) -> EndCondition:
    active = game.active_scores()
    if not active:
        return EndCondition(should_end=True, reason="All players disconnected")

    if len(active) == 1:
        return EndCondition(should_end=True, reason="Only one player remaining", winner=active[0].nickname)

    round_done = game.round_state is not None and game.round_state.is_complete
    if game.current_round >= game.total_rounds and round_done:
        return EndCondition(should_end=True, reason="Maximum rounds completed", winner=top_player(game.scores))

    ranked = sorted(game.scores, key=lambda s: -s.total_score)
    if len(ranked) >= 2 and ranked[0].total_score > ranked[1].total_score * DECISIVE_LEAD_RATIO:
        margin = ranked[0].total_score - ranked[1].total_score
        # Rough ceiling on attainable points.
        max_possible = game.settings.base_points * game.total_rounds * 3
        if margin > max_possible * DECISIVE_MARGIN_SHARE:
            return EndCondition(should_end=True, reason="Decisive leader", winner=ranked[0].nickname)

    return EndCondition(should_end=False, reason="Game continues")
