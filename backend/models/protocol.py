"""
Wire protocol for the /ws channel (pydantic models).

Every frame is a single JSON object with a ``type`` discriminant; the
remaining keys are camelCase and type-specific. Inbound payloads are
validated by the model registered for their type in ``INBOUND_MODELS``.
"""
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MessageType(str, Enum):
    """Client → server discriminants."""
    CREATE_GAME = "CREATE_GAME"
    JOIN_GAME = "JOIN_GAME"
    REJOIN_GAME = "REJOIN_GAME"
    GAME_STARTED = "GAME_STARTED"
    ROUND_UPDATE = "ROUND_UPDATE"
    PLAYER_BUZZ = "PLAYER_BUZZ"
    CLEAR_BUZZERS = "CLEAR_BUZZERS"
    CLEAR_PLAYER_BUZZ = "CLEAR_PLAYER_BUZZ"
    CLEAR_LAST_BUZZ = "CLEAR_LAST_BUZZ"
    ENABLE_SCORING = "ENABLE_SCORING"
    SUBMIT_SCORE = "SUBMIT_SCORE"
    MANAGER_CHANGED = "MANAGER_CHANGED"
    SCORE_UPDATED = "SCORE_UPDATED"
    REVEAL_FINAL_SCORES = "REVEAL_FINAL_SCORES"
    LEAVE_GAME = "LEAVE_GAME"
    PLAYER_DISCONNECT = "PLAYER_DISCONNECT"
    GET_TEAMS = "GET_TEAMS"


class EventType(str, Enum):
    """Server → client discriminants."""
    GAME_CREATED = "GAME_CREATED"
    GAME_JOINED = "GAME_JOINED"
    PLAYER_JOINED = "PLAYER_JOINED"
    GAME_STARTED = "GAME_STARTED"
    ROUND_UPDATE = "ROUND_UPDATE"
    BUZZ_RESPONSE = "BUZZ_RESPONSE"
    PLAYER_BUZZED = "PLAYER_BUZZED"
    CLEAR_BUZZERS = "CLEAR_BUZZERS"
    ENABLE_SCORING = "ENABLE_SCORING"
    SCORE_SUBMITTED = "SCORE_SUBMITTED"
    SCORE_CONFIRMED = "SCORE_CONFIRMED"
    MANAGER_CHANGED = "MANAGER_CHANGED"
    SCORE_UPDATED = "SCORE_UPDATED"
    REVEAL_FINAL_SCORES = "REVEAL_FINAL_SCORES"
    PLAYER_LEFT = "PLAYER_LEFT"
    PLAYER_DISCONNECTED = "PLAYER_DISCONNECTED"
    HOST_DISCONNECTED = "HOST_DISCONNECTED"
    TEAMS_LIST = "TEAMS_LIST"
    ERROR = "ERROR"


class ErrorCode(str, Enum):
    INVALID_FORMAT = "INVALID_FORMAT"
    GAME_NOT_FOUND = "GAME_NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    TEAM_NOT_FOUND = "TEAM_NOT_FOUND"
    UNKNOWN_MESSAGE_TYPE = "UNKNOWN_MESSAGE_TYPE"
    SERVER_ERROR = "SERVER_ERROR"


def error_event(code: ErrorCode, message: str) -> Dict[str, Any]:
    return {"type": EventType.ERROR.value, "code": code.value, "message": message}


# ── Inbound envelopes ──────────────────────────────────────────────────────────

class Envelope(BaseModel):
    # Game codes may arrive as JSON numbers from older consoles
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class GameMessage(Envelope):
    game_code: str = Field(min_length=1)


class CreateGameMessage(Envelope):
    game_code: Optional[str] = None
    host_id: Optional[str] = None


class JoinGameMessage(GameMessage):
    player_id: str = Field(min_length=1)
    player_name: str
    team_name: str = Field(min_length=1)
    is_manager: bool = False


class GameStartedMessage(GameMessage):
    games: List[Tuple[str, int]] = []
    current_game: int = Field(default=1, ge=1)
    current_round: int = Field(default=1, ge=1)


class RoundUpdateMessage(GameMessage):
    current_game: int = Field(ge=1)
    current_round: int = Field(ge=1)


class PlayerMessage(GameMessage):
    """PLAYER_BUZZ, CLEAR_PLAYER_BUZZ and LEAVE_GAME share this shape."""
    player_id: str = Field(min_length=1)


class SubmitScoreMessage(GameMessage):
    player_id: str = Field(min_length=1)
    team_name: str
    score: int
    game: int = Field(ge=1)
    round: int = Field(ge=1)


class ManagerChangedMessage(GameMessage):
    team_name: str
    new_manager_id: str


class ScoreUpdatedMessage(GameMessage):
    team_name: str
    scores: List[Optional[int]]
    total_score: int


class RevealFinalScoresMessage(GameMessage):
    standings: Any = None


INBOUND_MODELS: Dict[MessageType, Type[Envelope]] = {
    MessageType.CREATE_GAME: CreateGameMessage,
    MessageType.JOIN_GAME: JoinGameMessage,
    MessageType.REJOIN_GAME: JoinGameMessage,
    MessageType.GAME_STARTED: GameStartedMessage,
    MessageType.ROUND_UPDATE: RoundUpdateMessage,
    MessageType.PLAYER_BUZZ: PlayerMessage,
    MessageType.CLEAR_BUZZERS: GameMessage,
    MessageType.CLEAR_PLAYER_BUZZ: PlayerMessage,
    MessageType.CLEAR_LAST_BUZZ: GameMessage,
    MessageType.ENABLE_SCORING: GameMessage,
    MessageType.SUBMIT_SCORE: SubmitScoreMessage,
    MessageType.MANAGER_CHANGED: ManagerChangedMessage,
    MessageType.SCORE_UPDATED: ScoreUpdatedMessage,
    MessageType.REVEAL_FINAL_SCORES: RevealFinalScoresMessage,
    MessageType.LEAVE_GAME: PlayerMessage,
    MessageType.PLAYER_DISCONNECT: Envelope,
    MessageType.GET_TEAMS: GameMessage,
}
