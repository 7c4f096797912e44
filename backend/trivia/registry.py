from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .models import GameSession, Lobby, LobbyStatus, Player
from .utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    lobby_ids: List[str] = field(default_factory=list)
    game_ids: List[str] = field(default_factory=list)
    player_ids: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.lobby_ids or self.game_ids or self.player_ids)


class SessionRegistry:
    """Keyed in-memory storage of players, lobbies and games.

    Every method is synchronous and never awaits, so each call is atomic on the
    event loop. That keeps the registry out of any lock ordering: lobby and game
    locks may be held while calling in here, and the registry takes none.
    """

    def __init__(self, timeout_seconds: int = 30 * 60):
        self.timeout_ms = timeout_seconds * 1000
        self._players: Dict[str, Player] = {}
        self._session_to_player: Dict[str, str] = {}
        self._lobbies: Dict[str, Lobby] = {}
        self._games: Dict[str, GameSession] = {}

    # ---- players ----

    def get_or_create_player(self, session_id: str, nickname: Optional[str] = None) -> Player:
        player = self.player_by_session(session_id)
        if player is None:
            player = Player(id=str(uuid.uuid4()), nickname=nickname or "Player", session_id=session_id)
            self._players[player.id] = player
            self._session_to_player[session_id] = player.id
        elif nickname:
            player.nickname = nickname
        player.last_activity = now_ms()
        return player

    def player_by_session(self, session_id: str) -> Optional[Player]:
        player_id = self._session_to_player.get(session_id)
        return self._players.get(player_id) if player_id else None

    def get_player(self, player_id: str) -> Optional[Player]:
        return self._players.get(player_id)

    def remove_player(self, player_id: str) -> Optional[Player]:
        player = self._players.pop(player_id, None)
        if player:
            self._session_to_player.pop(player.session_id, None)
        return player

    # ---- lobbies ----

    def add_lobby(self, lobby: Lobby) -> Lobby:
        self._lobbies[lobby.id] = lobby
        return lobby

    def find_lobby(self, lobby_id: str) -> Optional[Lobby]:
        return self._lobbies.get(lobby_id)

    def find_lobby_by_code(self, join_code: str) -> Optional[Lobby]:
        code = join_code.strip().upper()
        for lobby in self._lobbies.values():
            if lobby.join_code == code:
                return lobby
        return None

    def join_codes(self) -> List[str]:
        return [l.join_code for l in self._lobbies.values() if l.join_code]

    def public_lobbies(self) -> List[Lobby]:
        return [l for l in self._lobbies.values() if not l.is_private and l.status == LobbyStatus.WAITING]

    def delete_lobby(self, lobby_id: str) -> Optional[Lobby]:
        return self._lobbies.pop(lobby_id, None)

    # ---- games ----

    def add_game(self, game: GameSession) -> GameSession:
        self._games[game.id] = game
        return game

    def find_game(self, game_id: str) -> Optional[GameSession]:
        return self._games.get(game_id)

    def delete_game(self, game_id: str) -> Optional[GameSession]:
        return self._games.pop(game_id, None)

    def stats(self) -> dict:
        return {
            "players": len(self._players),
            "lobbies": len(self._lobbies),
            "games": len(self._games),
            "active_games": sum(1 for g in self._games.values() if not g.is_over),
        }

    # ---- staleness sweep ----

    def sweep(self, now: Optional[int] = None) -> SweepResult:
        """Drop every lobby, game and lobby-less player idle beyond the timeout."""
        now = now if now is not None else now_ms()
        cutoff = now - self.timeout_ms
        result = SweepResult()

        for game_id, game in list(self._games.items()):
            if game.last_activity < cutoff:
                del self._games[game_id]
                result.game_ids.append(game_id)

        for lobby_id, lobby in list(self._lobbies.items()):
            if lobby.last_activity >= cutoff:
                continue
            # A lobby stays while the game it spawned is still registered.
            if lobby.status == LobbyStatus.IN_GAME and lobby.game_id in self._games:
                continue
            del self._lobbies[lobby_id]
            result.lobby_ids.append(lobby_id)
            for player_id in lobby.player_ids:
                player = self._players.get(player_id)
                if player and player.current_lobby == lobby_id:
                    player.current_lobby = None
                    player.is_ready = False

        for player_id, player in list(self._players.items()):
            if player.current_lobby is None and player.last_activity < cutoff:
                del self._players[player_id]
                self._session_to_player.pop(player.session_id, None)
                result.player_ids.append(player_id)

        if result:
            logger.info(
                "swept %d lobbies, %d games, %d players",
                len(result.lobby_ids),
                len(result.game_ids),
                len(result.player_ids),
            )
        return result

    async def run_sweeper(
        self,
        interval_seconds: float,
        on_sweep: Optional[Callable[[SweepResult], Awaitable[None]]] = None,
    ) -> None:
        """Sweep forever; meant to run as a background task."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                result = self.sweep()
                if on_sweep is not None and result:
                    await on_sweep(result)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("session sweep failed")
