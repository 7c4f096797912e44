from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import GameStats, PlayerScore, RoundSummary, WheelOutcome


# ---------------------------------------------------------------------------
# Inbound intents (one per player action)
# ---------------------------------------------------------------------------

class CreateLobbyIn(BaseModel):
    type: Literal["create_lobby"] = "create_lobby"
    name: str
    is_private: bool = False
    nickname: str


class JoinLobbyIn(BaseModel):
    type: Literal["join_lobby"] = "join_lobby"
    lobby_id: Optional[str] = None
    join_code: Optional[str] = None
    nickname: str


class LeaveLobbyIn(BaseModel):
    type: Literal["leave_lobby"] = "leave_lobby"
    lobby_id: str


class ToggleReadyIn(BaseModel):
    type: Literal["toggle_ready"] = "toggle_ready"
    lobby_id: str


class UpdateLobbySettingsIn(BaseModel):
    type: Literal["update_lobby_settings"] = "update_lobby_settings"
    lobby_id: str
    max_rounds: Optional[int] = None
    questions_per_round: Optional[int] = None
    question_time_limit: Optional[int] = None
    time_bonus: Optional[bool] = None


class DeleteLobbyIn(BaseModel):
    type: Literal["delete_lobby"] = "delete_lobby"
    lobby_id: str


class StartGameIn(BaseModel):
    type: Literal["start_game"] = "start_game"
    lobby_id: str


class SelectTopicIn(BaseModel):
    type: Literal["select_topic"] = "select_topic"
    game_id: str
    topic: str


class SubmitAnswerIn(BaseModel):
    type: Literal["submit_answer"] = "submit_answer"
    game_id: str
    answer_index: int


class RequestNextQuestionIn(BaseModel):
    type: Literal["request_next_question"] = "request_next_question"
    game_id: str


class QuitGameIn(BaseModel):
    type: Literal["quit_game"] = "quit_game"
    game_id: str


class GetGameStateIn(BaseModel):
    type: Literal["get_game_state"] = "get_game_state"
    game_id: str


class ActivatePointDoublingIn(BaseModel):
    type: Literal["activate_point_doubling"] = "activate_point_doubling"
    game_id: str


class SpinBonusWheelIn(BaseModel):
    type: Literal["spin_bonus_wheel"] = "spin_bonus_wheel"
    game_id: str


class DisconnectIn(BaseModel):
    type: Literal["disconnect"] = "disconnect"


Intent = Annotated[
    Union[
        CreateLobbyIn,
        JoinLobbyIn,
        LeaveLobbyIn,
        ToggleReadyIn,
        UpdateLobbySettingsIn,
        DeleteLobbyIn,
        StartGameIn,
        SelectTopicIn,
        SubmitAnswerIn,
        RequestNextQuestionIn,
        QuitGameIn,
        GetGameStateIn,
        ActivatePointDoublingIn,
        SpinBonusWheelIn,
        DisconnectIn,
    ],
    Field(discriminator="type"),
]


class IntentEnvelope(BaseModel):
    session_id: str
    intent: Intent


# ---------------------------------------------------------------------------
# Outbound notifications
# ---------------------------------------------------------------------------

class LobbyCreated(BaseModel):
    type: Literal["lobby_created"] = "lobby_created"
    lobby: Dict[str, Any]
    player: Dict[str, Any]


class LobbyUpdated(BaseModel):
    type: Literal["lobby_updated"] = "lobby_updated"
    lobby: Dict[str, Any]


class LobbyDeleted(BaseModel):
    type: Literal["lobby_deleted"] = "lobby_deleted"
    lobby_id: str
    reason: str


class PlayerJoined(BaseModel):
    type: Literal["player_joined"] = "player_joined"
    player: Dict[str, Any]
    lobby: Dict[str, Any]


class PlayerLeft(BaseModel):
    type: Literal["player_left"] = "player_left"
    player_id: str
    lobby: Dict[str, Any]


class GameCreated(BaseModel):
    type: Literal["game_created"] = "game_created"
    game: Dict[str, Any]


class GameStarted(BaseModel):
    type: Literal["game_started"] = "game_started"
    game: Dict[str, Any]


class TopicSelection(BaseModel):
    type: Literal["topic_selection"] = "topic_selection"
    game_id: str
    round_number: int
    available_topics: List[str]


class RoundStarted(BaseModel):
    type: Literal["round_started"] = "round_started"
    round_state: Dict[str, Any]
    total_rounds: int


class QuestionDisplayed(BaseModel):
    type: Literal["question_displayed"] = "question_displayed"
    question: Dict[str, Any]
    time_remaining: int


class AnswerSubmitted(BaseModel):
    type: Literal["answer_submitted"] = "answer_submitted"
    player_id: str
    is_correct: bool


class QuestionEnded(BaseModel):
    type: Literal["question_ended"] = "question_ended"
    question: Dict[str, Any]
    correct_answer_index: int
    explanation: str
    scores: List[PlayerScore]


class RoundEnded(BaseModel):
    type: Literal["round_ended"] = "round_ended"
    summary: RoundSummary
    is_game_complete: bool


class GameCompleted(BaseModel):
    type: Literal["game_completed"] = "game_completed"
    stats: GameStats
    final_scores: List[PlayerScore]
    winner: Optional[str] = None


class GameStateUpdated(BaseModel):
    type: Literal["game_state_updated"] = "game_state_updated"
    game: Dict[str, Any]


class PointDoublingActivated(BaseModel):
    type: Literal["point_doubling_activated"] = "point_doubling_activated"
    player_id: str
    round_number: int
    uses: int


class BonusWheelSpun(BaseModel):
    type: Literal["bonus_wheel_spun"] = "bonus_wheel_spun"
    player_id: str
    outcome: WheelOutcome
    round_score: int


class ErrorNotification(BaseModel):
    type: Literal["error"] = "error"
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


Notification = Annotated[
    Union[
        LobbyCreated,
        LobbyUpdated,
        LobbyDeleted,
        PlayerJoined,
        PlayerLeft,
        GameCreated,
        GameStarted,
        TopicSelection,
        RoundStarted,
        QuestionDisplayed,
        AnswerSubmitted,
        QuestionEnded,
        RoundEnded,
        GameCompleted,
        GameStateUpdated,
        PointDoublingActivated,
        BonusWheelSpun,
        ErrorNotification,
    ],
    Field(discriminator="type"),
]
