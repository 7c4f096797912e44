from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import Settings, get_settings
from .events import EventStore, game_channel, lobby_channel, player_channel
from .exceptions import LobbyNotFound, NotLobbyMember, PlayerNotFound, TriviaError
from .game import GameController
from .lobby import LobbyManager, validate_nickname
from .models import Player
from .questions import FallbackQuestionProvider, QuestionProvider
from .registry import SessionRegistry, SweepResult
from .schemas import (
    ActivatePointDoublingIn,
    CreateLobbyIn,
    DeleteLobbyIn,
    DisconnectIn,
    ErrorNotification,
    GetGameStateIn,
    JoinLobbyIn,
    LeaveLobbyIn,
    QuitGameIn,
    RequestNextQuestionIn,
    SelectTopicIn,
    SpinBonusWheelIn,
    StartGameIn,
    SubmitAnswerIn,
    ToggleReadyIn,
    UpdateLobbySettingsIn,
)
from .utils import now_ms

logger = logging.getLogger(__name__)


class IntentHandler:
    """Turns one inbound intent from a connection-session into service calls."""

    def __init__(
        self,
        registry: SessionRegistry,
        events: EventStore,
        lobbies: LobbyManager,
        games: GameController,
    ):
        self.registry = registry
        self.events = events
        self.lobbies = lobbies
        self.games = games
        self._routes: Dict[type, Callable[[Player, Any], Awaitable[dict]]] = {
            LeaveLobbyIn: self._leave_lobby,
            ToggleReadyIn: self._toggle_ready,
            UpdateLobbySettingsIn: self._update_lobby_settings,
            DeleteLobbyIn: self._delete_lobby,
            StartGameIn: self._start_game,
            SelectTopicIn: self._select_topic,
            SubmitAnswerIn: self._submit_answer,
            RequestNextQuestionIn: self._next_question,
            QuitGameIn: self._quit_game,
            GetGameStateIn: self._get_game_state,
            ActivatePointDoublingIn: self._activate_point_doubling,
            SpinBonusWheelIn: self._spin_bonus_wheel,
            DisconnectIn: self._disconnect,
        }

    async def handle(self, session_id: str, intent) -> dict:
        player: Optional[Player] = None
        try:
            if isinstance(intent, (CreateLobbyIn, JoinLobbyIn)):
                nickname = validate_nickname(intent.nickname)
                player = self.registry.get_or_create_player(session_id, nickname)
                if isinstance(intent, CreateLobbyIn):
                    return await self._create_lobby(player, intent)
                return await self._join_lobby(player, intent)

            player = self.registry.player_by_session(session_id)
            if player is None:
                raise PlayerNotFound(f"for session {session_id}")
            player.last_activity = now_ms()
            return await self._routes[type(intent)](player, intent)
        except TriviaError as exc:
            if player is not None:
                await self.events.publish(
                    player_channel(player.id),
                    ErrorNotification(message=str(exc), context={"intent": intent.type}),
                )
            raise

    # ---- lobby intents ----

    async def _create_lobby(self, player: Player, intent: CreateLobbyIn) -> dict:
        lobby = await self.lobbies.create_lobby(intent.name, player, intent.is_private)
        return {"player": player.model_dump(mode="json"), "lobby": self.lobbies.describe(lobby)}

    async def _join_lobby(self, player: Player, intent: JoinLobbyIn) -> dict:
        lobby = await self.lobbies.join_lobby(intent.lobby_id, player, intent.join_code)
        return {"player": player.model_dump(mode="json"), "lobby": self.lobbies.describe(lobby)}

    async def _leave_lobby(self, player: Player, intent: LeaveLobbyIn) -> dict:
        await self._leave_running_game(player, intent.lobby_id)
        lobby = await self.lobbies.leave(intent.lobby_id, player.id)
        return {"lobby": self.lobbies.describe(lobby) if lobby else None, "deleted": lobby is None}

    async def _leave_running_game(self, player: Player, lobby_id: str) -> None:
        lobby = self.registry.find_lobby(lobby_id)
        if lobby is None or lobby.game_id is None:
            return
        game = self.registry.find_game(lobby.game_id)
        if game is not None and not game.is_over and game.score_for(player.id) is not None:
            await self.games.remove_player(game.id, player.id)

    async def _toggle_ready(self, player: Player, intent: ToggleReadyIn) -> dict:
        lobby = await self.lobbies.toggle_ready(intent.lobby_id, player.id)
        return {"lobby": self.lobbies.describe(lobby), "is_ready": player.is_ready}

    async def _update_lobby_settings(self, player: Player, intent: UpdateLobbySettingsIn) -> dict:
        changes = intent.model_dump(exclude={"type", "lobby_id"})
        lobby = await self.lobbies.update_settings(intent.lobby_id, player.id, changes)
        return {"lobby": self.lobbies.describe(lobby)}

    async def _delete_lobby(self, player: Player, intent: DeleteLobbyIn) -> dict:
        await self.lobbies.delete_lobby(intent.lobby_id, player.id)
        return {"deleted": True}

    async def _start_game(self, player: Player, intent: StartGameIn) -> dict:
        lobby, participant_ids, nicknames = await self.lobbies.begin_game(intent.lobby_id, player.id)
        game = await self.games.create_game(lobby.id, participant_ids, nicknames, lobby.settings)
        await self.lobbies.attach_game(lobby.id, game.id)
        game = await self.games.start_game(game.id)
        return {"game": game.public_view(), "channel": game_channel(game.id)}

    # ---- game intents ----

    async def _select_topic(self, player: Player, intent: SelectTopicIn) -> dict:
        round_state = await self.games.start_round(intent.game_id, intent.topic, player.id)
        game = self.games.get_game(intent.game_id)
        return {"round_number": round_state.round_number, "game": game.public_view()}

    async def _submit_answer(self, player: Player, intent: SubmitAnswerIn) -> dict:
        answer = await self.games.submit_answer(intent.game_id, player.id, intent.answer_index)
        return {"accepted": True, **answer.model_dump()}

    async def _next_question(self, player: Player, intent: RequestNextQuestionIn) -> dict:
        question = await self.games.next_question(intent.game_id, player.id)
        game = self.games.get_game(intent.game_id)
        round_state = game.round_state
        return {
            "round_complete": question is None,
            "question": question.display(round_state.round_number, round_state.current_question_index + 1)
            if question
            else None,
        }

    async def _quit_game(self, player: Player, intent: QuitGameIn) -> dict:
        game = await self.games.remove_player(intent.game_id, player.id)
        return {"game": game.public_view()}

    async def _get_game_state(self, player: Player, intent: GetGameStateIn) -> dict:
        game = await self.games.get_game_state(intent.game_id, player.id)
        return {"game": game.public_view()}

    async def _activate_point_doubling(self, player: Player, intent: ActivatePointDoublingIn) -> dict:
        score = await self.games.activate_point_doubling(intent.game_id, player.id)
        return {"score": score.model_dump(mode="json")}

    async def _spin_bonus_wheel(self, player: Player, intent: SpinBonusWheelIn) -> dict:
        outcome = await self.games.spin_bonus_wheel(intent.game_id, player.id)
        game = self.games.get_game(intent.game_id)
        return {"outcome": outcome.model_dump(), "score": game.score_for(player.id).model_dump(mode="json")}

    async def _disconnect(self, player: Player, intent: DisconnectIn) -> dict:
        if player.current_lobby:
            await self._leave_running_game(player, player.current_lobby)
            try:
                await self.lobbies.leave(player.current_lobby, player.id)
            except (LobbyNotFound, NotLobbyMember):
                player.current_lobby = None
        self.registry.remove_player(player.id)
        logger.info("player %s disconnected", player.id)
        return {"disconnected": True}

    # ---- housekeeping ----

    async def on_sweep(self, result: SweepResult) -> None:
        for game_id in result.game_ids:
            self.games.forget(game_id)
            await self.events.drop(game_channel(game_id))
        for lobby_id in result.lobby_ids:
            self.lobbies.forget(lobby_id)
            await self.events.drop(lobby_channel(lobby_id))
        for player_id in result.player_ids:
            await self.events.drop(player_channel(player_id))


def build_handler(
    settings: Optional[Settings] = None,
    provider: Optional[QuestionProvider] = None,
) -> IntentHandler:
    settings = settings or get_settings()
    registry = SessionRegistry(timeout_seconds=settings.SESSION_TIMEOUT_SECONDS)
    events = EventStore()
    lobbies = LobbyManager(registry, events, max_players=settings.LOBBY_MAX_PLAYERS)
    games = GameController(
        registry,
        events,
        provider or FallbackQuestionProvider(),
        lobbies=lobbies,
        topic_count=settings.TOPIC_COUNT,
    )
    return IntentHandler(registry, events, lobbies, games)
