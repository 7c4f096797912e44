from __future__ import annotations

import asyncio
import logging
import re
import uuid
from typing import Dict, List, Optional, Tuple

from .events import Notifier, lobby_channel
from .exceptions import (
    InvalidJoinCode,
    LobbyFull,
    LobbyNotFound,
    LobbyNotJoinable,
    NotLobbyMember,
    NotLobbyOwner,
    PlayersNotReady,
    ValidationFailed,
)
from .models import Lobby, LobbyStatus, Player
from .registry import SessionRegistry
from .schemas import LobbyCreated, LobbyDeleted, LobbyUpdated, PlayerJoined, PlayerLeft
from .utils import generate_join_code, now_ms

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 32
NICKNAME_MIN_LENGTH = 3
NICKNAME_MAX_LENGTH = 20
NICKNAME_RE = re.compile(r"^[a-zA-Z0-9\s]+$")
MIN_PLAYERS = 2

# Allowed ranges for owner-editable settings.
SETTING_LIMITS = {
    "max_rounds": (1, 10),
    "questions_per_round": (5, 20),
    "question_time_limit": (10000, 120000),
}


def validate_lobby_name(name: str) -> str:
    name = (name or "").strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValidationFailed(f"Lobby name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters")
    return name


def validate_nickname(nickname: str) -> str:
    nickname = (nickname or "").strip()
    if not NICKNAME_MIN_LENGTH <= len(nickname) <= NICKNAME_MAX_LENGTH:
        raise ValidationFailed(
            f"Nickname must be between {NICKNAME_MIN_LENGTH} and {NICKNAME_MAX_LENGTH} characters"
        )
    if not NICKNAME_RE.match(nickname):
        raise ValidationFailed("Nickname contains invalid characters")
    return nickname


class LobbyManager:
    def __init__(self, registry: SessionRegistry, notifier: Notifier, max_players: int = 4):
        self.registry = registry
        self.notifier = notifier
        self.max_players = max_players
        self.locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, lobby_id: str) -> asyncio.Lock:
        self.locks.setdefault(lobby_id, asyncio.Lock())
        return self.locks[lobby_id]

    def _get(self, lobby_id: str) -> Lobby:
        lobby = self.registry.find_lobby(lobby_id)
        if not lobby:
            raise LobbyNotFound(lobby_id)
        return lobby

    def describe(self, lobby: Lobby) -> dict:
        """Lobby as shown to clients, with member nicknames and readiness."""
        data = lobby.model_dump(mode="json")
        players = []
        for player_id in lobby.player_ids:
            player = self.registry.get_player(player_id)
            players.append(
                {
                    "id": player_id,
                    "nickname": player.nickname if player else "Unknown",
                    "is_ready": bool(player and player.is_ready),
                    "is_owner": player_id == lobby.owner_id,
                }
            )
        data["players"] = players
        data["current_player_count"] = len(players)
        return data

    def list_public_lobbies(self) -> List[dict]:
        return [self.describe(l) for l in self.registry.public_lobbies()]

    async def _publish(self, lobby: Lobby, notification, recipient: Optional[str] = None) -> None:
        await self.notifier.publish(lobby_channel(lobby.id), notification, recipient)

    async def create_lobby(self, name: str, owner: Player, is_private: bool = False) -> Lobby:
        name = validate_lobby_name(name)
        if owner.current_lobby:
            await self._leave_quietly(owner.current_lobby, owner.id)

        lobby = Lobby(
            id=str(uuid.uuid4()),
            name=name,
            is_private=is_private,
            join_code=generate_join_code(self.registry.join_codes()) if is_private else None,
            owner_id=owner.id,
            player_ids=[owner.id],
            max_players=self.max_players,
        )
        owner.current_lobby = lobby.id
        owner.is_ready = False
        owner.last_activity = now_ms()
        self.registry.add_lobby(lobby)
        logger.info("player %s created lobby %s (%s)", owner.id, lobby.id, lobby.name)

        await self._publish(lobby, LobbyCreated(lobby=self.describe(lobby), player=owner.model_dump(mode="json")))
        return lobby

    def _resolve(self, lobby_ref: Optional[str], join_code: Optional[str]) -> Tuple[Lobby, Optional[str]]:
        lobby = self.registry.find_lobby(lobby_ref) if lobby_ref else None
        if lobby is None:
            code = join_code or lobby_ref
            lobby = self.registry.find_lobby_by_code(code) if code else None
            if lobby is not None:
                join_code = code
        if lobby is None:
            raise LobbyNotFound(lobby_ref or join_code)
        return lobby, join_code

    @staticmethod
    def _check_joinable(lobby: Lobby, join_code: Optional[str]) -> None:
        if lobby.is_private and (join_code or "").strip().upper() != lobby.join_code:
            raise InvalidJoinCode("Invalid join code")
        if lobby.is_full:
            raise LobbyFull("Lobby is full")
        if lobby.status != LobbyStatus.WAITING:
            raise LobbyNotJoinable("Cannot join lobby while game is in progress")

    async def join_lobby(self, lobby_ref: Optional[str], player: Player, join_code: Optional[str] = None) -> Lobby:
        lobby, join_code = self._resolve(lobby_ref, join_code)
        if player.current_lobby == lobby.id:
            return lobby
        self._check_joinable(lobby, join_code)
        if player.current_lobby:
            await self._leave_quietly(player.current_lobby, player.id)

        async with self._lock(lobby.id):
            if self.registry.find_lobby(lobby.id) is None:
                raise LobbyNotFound(lobby.id)
            self._check_joinable(lobby, join_code)
            lobby.player_ids.append(player.id)
            lobby.last_activity = now_ms()
            player.current_lobby = lobby.id
            player.is_ready = False
            player.last_activity = lobby.last_activity
            logger.info("player %s joined lobby %s", player.id, lobby.id)
            await self._publish(lobby, PlayerJoined(player=player.model_dump(mode="json"), lobby=self.describe(lobby)))
        return lobby

    async def leave(self, lobby_id: str, player_id: str) -> Optional[Lobby]:
        """Remove a member. Returns ``None`` when the lobby was deleted because it emptied."""
        lobby = self._get(lobby_id)
        async with self._lock(lobby_id):
            if player_id not in lobby.player_ids:
                raise NotLobbyMember("Player not in lobby")
            lobby.player_ids.remove(player_id)
            lobby.last_activity = now_ms()

            player = self.registry.get_player(player_id)
            if player and player.current_lobby == lobby_id:
                player.current_lobby = None
                player.is_ready = False

            if not lobby.player_ids:
                self.registry.delete_lobby(lobby_id)
                logger.info("lobby %s deleted: last player left", lobby_id)
                await self._publish(lobby, LobbyDeleted(lobby_id=lobby_id, reason="Lobby is empty"))
                self.locks.pop(lobby_id, None)
                return None

            if lobby.owner_id == player_id:
                lobby.owner_id = lobby.player_ids[0]
                logger.info("lobby %s ownership passed to %s", lobby_id, lobby.owner_id)

            await self._publish(lobby, PlayerLeft(player_id=player_id, lobby=self.describe(lobby)))
            return lobby

    async def _leave_quietly(self, lobby_id: str, player_id: str) -> None:
        lobby = self.registry.find_lobby(lobby_id)
        if lobby is None or player_id not in lobby.player_ids:
            player = self.registry.get_player(player_id)
            if player and player.current_lobby == lobby_id:
                player.current_lobby = None
                player.is_ready = False
            return
        await self.leave(lobby_id, player_id)

    async def toggle_ready(self, lobby_id: str, player_id: str) -> Lobby:
        lobby = self._get(lobby_id)
        async with self._lock(lobby_id):
            player = self.registry.get_player(player_id)
            if player_id not in lobby.player_ids or player is None:
                raise NotLobbyMember("Player not in lobby")
            player.is_ready = not player.is_ready
            lobby.last_activity = player.last_activity = now_ms()
            await self._publish(lobby, LobbyUpdated(lobby=self.describe(lobby)))
            return lobby

    async def update_settings(self, lobby_id: str, player_id: str, changes: dict) -> Lobby:
        lobby = self._get(lobby_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        for key, value in changes.items():
            if key in SETTING_LIMITS:
                low, high = SETTING_LIMITS[key]
                if not low <= value <= high:
                    raise ValidationFailed(f"{key} must be between {low} and {high}")

        async with self._lock(lobby_id):
            if lobby.owner_id != player_id:
                raise NotLobbyOwner("Only the host can change game settings")
            if lobby.status != LobbyStatus.WAITING:
                raise LobbyNotJoinable("Settings can only change before the game starts")
            lobby.settings = lobby.settings.model_copy(update=changes)
            lobby.last_activity = now_ms()
            await self._publish(lobby, LobbyUpdated(lobby=self.describe(lobby)))
            return lobby

    async def delete_lobby(self, lobby_id: str, player_id: str) -> None:
        lobby = self._get(lobby_id)
        async with self._lock(lobby_id):
            if lobby.owner_id != player_id:
                raise NotLobbyOwner("Only the lobby owner can delete the lobby")
            for member_id in lobby.player_ids:
                member = self.registry.get_player(member_id)
                if member and member.current_lobby == lobby_id:
                    member.current_lobby = None
                    member.is_ready = False
            self.registry.delete_lobby(lobby_id)
            logger.info("lobby %s closed by owner %s", lobby_id, player_id)
            await self._publish(lobby, LobbyDeleted(lobby_id=lobby_id, reason="Closed by owner"))
        self.locks.pop(lobby_id, None)

    async def begin_game(self, lobby_id: str, player_id: str) -> Tuple[Lobby, List[str], Dict[str, str]]:
        """Lock the lobby for play and snapshot who is taking part."""
        lobby = self._get(lobby_id)
        async with self._lock(lobby_id):
            if lobby.owner_id != player_id:
                raise NotLobbyOwner("Only host can start the game")
            if lobby.status != LobbyStatus.WAITING:
                raise LobbyNotJoinable("Game already started")
            if len(lobby.player_ids) < MIN_PLAYERS:
                raise PlayersNotReady(f"Need at least {MIN_PLAYERS} players to start")
            members = [self.registry.get_player(pid) for pid in lobby.player_ids]
            if not all(m is not None and m.is_ready for m in members):
                raise PlayersNotReady("All players must be ready to start")

            lobby.status = LobbyStatus.IN_GAME
            lobby.last_activity = now_ms()
            participant_ids = list(lobby.player_ids)
            nicknames = {m.id: m.nickname for m in members}
            await self._publish(lobby, LobbyUpdated(lobby=self.describe(lobby)))
            return lobby, participant_ids, nicknames

    async def attach_game(self, lobby_id: str, game_id: str) -> None:
        lobby = self.registry.find_lobby(lobby_id)
        if lobby is None:
            return
        async with self._lock(lobby_id):
            lobby.game_id = game_id
            lobby.last_activity = now_ms()
            await self._publish(lobby, LobbyUpdated(lobby=self.describe(lobby)))

    async def mark_finished(self, lobby_id: str, game_id: str) -> None:
        lobby = self.registry.find_lobby(lobby_id)
        if lobby is None:
            return
        async with self._lock(lobby_id):
            if lobby.game_id != game_id or lobby.status != LobbyStatus.IN_GAME:
                return
            lobby.status = LobbyStatus.FINISHED
            lobby.last_activity = now_ms()
            for member_id in lobby.player_ids:
                member = self.registry.get_player(member_id)
                if member:
                    member.is_ready = False
            await self._publish(lobby, LobbyUpdated(lobby=self.describe(lobby)))

    def forget(self, lobby_id: str) -> None:
        self.locks.pop(lobby_id, None)
