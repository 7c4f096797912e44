"""Errors raised by the lobby and game services.

Every error carries a user-facing message. The HTTP layer maps the three
families onto status codes; nothing in here is fatal to the process.
"""


class TriviaError(Exception):
    """Base class for all rejected intents."""

    status_code = 400


# ============ Validation ============

class ValidationFailed(TriviaError):
    """Malformed input: bad name length, answer index out of range, ..."""


# ============ Lookup ============

class NotFound(TriviaError):
    status_code = 404


class LobbyNotFound(NotFound):
    def __init__(self, lobby_id):
        self.lobby_id = lobby_id
        super().__init__(f"Lobby {lobby_id} not found")


class GameNotFound(NotFound):
    def __init__(self, game_id):
        self.game_id = game_id
        super().__init__(f"Game {game_id} not found")


class PlayerNotFound(NotFound):
    def __init__(self, player_id):
        self.player_id = player_id
        super().__init__(f"Player {player_id} not found")


# ============ State conflicts ============

class StateConflict(TriviaError):
    """The entity is not in a state that allows the operation; re-fetch and retry."""

    status_code = 409


class LobbyFull(StateConflict):
    pass


class LobbyNotJoinable(StateConflict):
    pass


class InvalidJoinCode(StateConflict):
    status_code = 403


class NotLobbyOwner(StateConflict):
    status_code = 403


class NotLobbyMember(StateConflict):
    pass


class PlayersNotReady(StateConflict):
    pass


class InvalidGameState(StateConflict):
    pass


class RoundAlreadyActive(StateConflict):
    pass


class NoActiveRound(StateConflict):
    pass


class PowerUpUnavailable(StateConflict):
    """Point doubling or bonus wheel is not available to this player right now."""


class AnswerNotRevealed(StateConflict):
    """The question is still open or not yet asked; its answer stays hidden."""
