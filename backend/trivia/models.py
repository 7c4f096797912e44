from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .utils import now_ms


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXTREME = "extreme"


# Per-question answer window in ms, keyed by difficulty.
TIME_LIMITS = {
    Difficulty.EASY: 20000,
    Difficulty.MEDIUM: 30000,
    Difficulty.HARD: 45000,
    Difficulty.EXTREME: 60000,
}


class LobbyStatus(str, Enum):
    WAITING = "waiting"
    IN_GAME = "in_game"
    FINISHED = "finished"


# States: waiting -> in_progress -> completed, in_progress -> cancelled.
# PAUSED is reserved; nothing transitions into it.
class GameStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DifficultyMultiplier(BaseModel):
    easy: float = 1.0
    medium: float = 1.5
    hard: float = 2.0
    extreme: float = 3.0

    def for_level(self, level: Difficulty) -> float:
        return getattr(self, Difficulty(level).value)


class MultiplierRange(BaseModel):
    min: float = 1
    max: float = 10


class GameSettings(BaseModel):
    max_rounds: int = 5
    questions_per_round: int = 10
    question_time_limit: int = 30000  # ms
    round_break_duration: int = 15000  # ms
    base_points: int = 100
    time_bonus: bool = True
    difficulty_multiplier: DifficultyMultiplier = Field(default_factory=DifficultyMultiplier)
    final_round_multiplier: MultiplierRange = Field(default_factory=MultiplierRange)
    quit_game_penalty: int = 300000  # ms
    reconnection_timeout: int = 60000  # ms


class Player(BaseModel):
    id: str
    nickname: str
    session_id: str
    is_ready: bool = False
    current_lobby: Optional[str] = None
    join_time: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)


class Lobby(BaseModel):
    id: str
    name: str
    is_private: bool = False
    join_code: Optional[str] = None
    owner_id: str
    player_ids: List[str] = Field(default_factory=list)
    max_players: int = 4
    settings: GameSettings = Field(default_factory=GameSettings)
    status: LobbyStatus = LobbyStatus.WAITING
    game_id: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    last_activity: int = Field(default_factory=now_ms)

    @property
    def is_full(self) -> bool:
        return len(self.player_ids) >= self.max_players


class Answer(BaseModel):
    text: str
    is_correct: bool = False


class Question(BaseModel):
    id: str
    text: str
    answers: List[Answer]
    correct_answer_index: int
    explanation: str = "Explanation not provided."
    difficulty: Difficulty
    topic: str
    time_limit: int  # ms

    def display(self, round_number: int, question_number: int) -> dict:
        """Client-safe view: answer texts only, no correctness flags."""
        return {
            "id": self.id,
            "text": self.text,
            "answers": [a.text for a in self.answers],
            "time_limit": self.time_limit,
            "round_number": round_number,
            "question_number": question_number,
        }


class PlayerAnswer(BaseModel):
    answer_index: int
    response_time: int  # ms
    is_correct: bool
    points: int = 0


class RoundState(BaseModel):
    round_number: int
    topic: str
    questions: List[Question]
    current_question_index: int = 0
    question_start_time: int = Field(default_factory=now_ms)
    round_multiplier: int
    # Only ever holds answers for the current question.
    player_answers: Dict[str, PlayerAnswer] = Field(default_factory=dict)
    is_complete: bool = False
    difficulty: Difficulty
    started_at: int = Field(default_factory=now_ms)

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None


class PlayerScore(BaseModel):
    player_id: str
    nickname: str
    round_scores: List[int] = Field(default_factory=list)
    total_score: int = 0
    correct_answers: int = 0
    answers_count: int = 0
    average_response_time: float = 0
    streak: int = 0
    is_active: bool = True
    points_doubled: int = 0
    doubled_round: Optional[int] = None
    bonus_wheel_spins: int = 0

    def add_round_points(self, round_number: int, points: int) -> None:
        while len(self.round_scores) < round_number:
            self.round_scores.append(0)
        self.round_scores[round_number - 1] += points
        self.resum()

    def resum(self) -> None:
        self.total_score = sum(self.round_scores)


class GameSession(BaseModel):
    id: str
    lobby_id: str
    players: List[str]
    current_round: int = 0
    total_rounds: int
    status: GameStatus = GameStatus.WAITING
    scores: List[PlayerScore]
    settings: GameSettings = Field(default_factory=GameSettings)
    question_history: List[str] = Field(default_factory=list)
    round_state: Optional[RoundState] = None
    available_topics: List[str] = Field(default_factory=list)
    start_time: int = Field(default_factory=now_ms)
    end_time: Optional[int] = None
    last_activity: int = Field(default_factory=now_ms)

    def score_for(self, player_id: str) -> Optional[PlayerScore]:
        for score in self.scores:
            if score.player_id == player_id:
                return score
        return None

    def active_scores(self) -> List[PlayerScore]:
        return [s for s in self.scores if s.is_active]

    @property
    def round_active(self) -> bool:
        return self.round_state is not None and not self.round_state.is_complete

    @property
    def is_over(self) -> bool:
        return self.status in (GameStatus.COMPLETED, GameStatus.CANCELLED)

    def public_view(self) -> dict:
        data = self.model_dump(mode="json", exclude={"round_state", "question_history"})
        data["questions_asked"] = len(self.question_history)
        rs = self.round_state
        if rs is None:
            data["round_state"] = None
            return data
        question = rs.current_question
        data["round_state"] = {
            "round_number": rs.round_number,
            "topic": rs.topic,
            "difficulty": rs.difficulty.value,
            "round_multiplier": rs.round_multiplier,
            "current_question_index": rs.current_question_index,
            "total_questions": len(rs.questions),
            "question_start_time": rs.question_start_time,
            "answered": sorted(rs.player_answers),
            "is_complete": rs.is_complete,
            "question": question.display(rs.round_number, rs.current_question_index + 1)
            if question and not rs.is_complete
            else None,
        }
        return data


class RoundSummary(BaseModel):
    round_number: int
    topic: str
    questions_answered: int
    scores: List[PlayerScore]
    top_player: str
    round_duration: int  # ms
    difficulty: Difficulty


class GameStats(BaseModel):
    total_questions: int
    total_correct_answers: int
    average_response_time: float
    questions_generated: int
    game_start_time: int
    game_end_time: int
    game_duration: int  # ms
    players_joined: int
    players_completed: int


class EndCondition(BaseModel):
    should_end: bool
    reason: str
    winner: Optional[str] = None


class WheelOutcome(BaseModel):
    multiplier: float
    message: str
    weight: int = 0
