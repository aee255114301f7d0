from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, NamedTuple, Tuple
import time

from models.protocol import ErrorCode


def now_ms() -> int:
    """Wall-clock epoch milliseconds (matches the console's Date.now())."""
    return int(time.time() * 1000)


# ── Errors ─────────────────────────────────────────────────────────────────────

class GameError(Exception):
    code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GameNotFoundError(GameError):
    code = ErrorCode.GAME_NOT_FOUND


class UnauthorizedError(GameError):
    code = ErrorCode.UNAUTHORIZED


class TeamNotFoundError(GameError):
    code = ErrorCode.TEAM_NOT_FOUND


class InvalidFormatError(GameError):
    code = ErrorCode.INVALID_FORMAT


class UnknownMessageTypeError(GameError):
    code = ErrorCode.UNKNOWN_MESSAGE_TYPE


# ── Roster ─────────────────────────────────────────────────────────────────────

class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Member(_Camel):
    player_id: str
    display_name: str
    is_manager: bool = False


class Team(_Camel):
    name: str
    members: List[Member] = []
    total_score: int = 0
    # Sparse: unrecorded rounds are None
    round_scores: List[Optional[int]] = []
    manager_id: Optional[str] = None

    def member(self, player_id: str) -> Optional[Member]:
        for m in self.members:
            if m.player_id == player_id:
                return m
        return None

    def assign_manager(self, player_id: Optional[str]) -> None:
        self.manager_id = player_id
        for m in self.members:
            m.is_manager = m.player_id == player_id

    def recompute_total(self) -> int:
        self.total_score = sum(s or 0 for s in self.round_scores)
        return self.total_score


class Player(_Camel):
    id: str
    display_name: str
    team_name: str
    # Live connectivity only; the channel itself lives in the ConnectionManager
    connected: bool = Field(default=False, exclude=True)


class BuzzRecord(_Camel):
    player_id: str
    player_name: str
    team_name: str
    timestamp: int = Field(default_factory=now_ms)


class ScoreResult(NamedTuple):
    round_index: int
    total_score: int


# Buzz rejection reasons shown on the player's device
BUZZ_ACCEPTED = "Buzzed in!"
BUZZ_UNKNOWN_PLAYER = "Player not found in this game"
BUZZ_NOT_STARTED = "Game has not started yet"
BUZZ_TEAM_LOCKED = "Your teammate beat you to it!"


# ── Session ────────────────────────────────────────────────────────────────────

class GameSession(BaseModel):
    """
    One live game, keyed by its code.

    All mutations are synchronous so a single inbound message is applied
    atomically on the event loop; callers persist and broadcast afterwards.
    """

    code: str
    host_id: Optional[str] = None
    current_game: int = 1
    current_round: int = 1
    # Ordered (name, roundCount) pairs supplied by the host at start
    games: List[Tuple[str, int]] = []
    started: bool = False
    ended: bool = False
    scoring_enabled: bool = False
    teams: Dict[str, Team] = {}
    players: Dict[str, Player] = {}
    buzz_queue: List[BuzzRecord] = []
    created_at: int = Field(default_factory=now_ms)

    # ── Roster ─────────────────────────────────────────────────────────────────

    def add_player(
        self,
        player_id: str,
        name: str,
        team_name: str,
        is_manager: bool = False,
    ) -> Player:
        """
        Upsert a player into ``team_name``.

        Rejoining the same team never duplicates the member, but the
        manager rules are re-applied. Switching teams through this call
        leaves the old membership in place; only remove_player clears it.
        """
        player = Player(
            id=player_id,
            display_name=name,
            team_name=team_name,
            connected=True,
        )
        self.players[player_id] = player

        team = self.teams.get(team_name)
        if team is None:
            team = Team(name=team_name)
            self.teams[team_name] = team

        if team.member(player_id) is None:
            team.members.append(Member(
                player_id=player_id,
                display_name=name,
                is_manager=is_manager or not team.members,
            ))

        if is_manager or not team.manager_id:
            team.assign_manager(player_id)
        return player

    def remove_player(self, player_id: str) -> Optional[str]:
        """Drop the player everywhere. Returns the team they belonged to."""
        player = self.players.pop(player_id, None)

        for name in list(self.teams):
            team = self.teams[name]
            if team.member(player_id) is None:
                continue
            team.members = [m for m in team.members if m.player_id != player_id]
            if not team.members:
                del self.teams[name]
            elif team.manager_id == player_id:
                team.assign_manager(team.members[0].player_id)

        self.buzz_queue = [b for b in self.buzz_queue if b.player_id != player_id]
        return player.team_name if player else None

    def set_connected(self, player_id: str, connected: bool) -> None:
        player = self.players.get(player_id)
        if player:
            player.connected = connected

    def set_manager(self, team_name: str, new_manager_id: str) -> bool:
        """No-op unless the team exists and lists ``new_manager_id``."""
        team = self.teams.get(team_name)
        if team is None or team.member(new_manager_id) is None:
            return False
        team.assign_manager(new_manager_id)
        return True

    # ── Buzzers ────────────────────────────────────────────────────────────────

    def buzz_block_reason(self, player_id: str) -> Optional[str]:
        """Why ``player_id`` may not buzz right now, or None if they may."""
        player = self.players.get(player_id)
        if player is None:
            return BUZZ_UNKNOWN_PLAYER
        if not self.started:
            return BUZZ_NOT_STARTED
        for record in self.buzz_queue:
            if record.team_name == player.team_name:
                return BUZZ_TEAM_LOCKED
            buzzed = self.players.get(record.player_id)
            if buzzed and buzzed.team_name == player.team_name:
                return BUZZ_TEAM_LOCKED
        return None

    def buzz(self, player_id: str) -> bool:
        if self.buzz_block_reason(player_id) is not None:
            return False
        player = self.players[player_id]
        self.buzz_queue.append(BuzzRecord(
            player_id=player_id,
            player_name=player.display_name,
            team_name=player.team_name,
        ))
        return True

    def clear_all_buzzes(self) -> None:
        self.buzz_queue = []

    def clear_buzz_for(self, player_id: str) -> Optional[str]:
        """Remove ``player_id``'s pending buzz; returns its team so it can be re-armed."""
        for i, record in enumerate(self.buzz_queue):
            if record.player_id == player_id:
                del self.buzz_queue[i]
                return record.team_name
        return None

    def pop_last_buzz(self) -> Optional[BuzzRecord]:
        if not self.buzz_queue:
            return None
        return self.buzz_queue.pop()

    # ── Scoring ────────────────────────────────────────────────────────────────

    def round_index(self, game_num: int, round_num: int) -> int:
        """Flatten (game, round), both 1-based, against the games' round counts."""
        previous = sum(int(rounds) for _, rounds in self.games[:max(game_num - 1, 0)])
        return previous + (round_num - 1)

    def submit_score(
        self,
        player_id: str,
        team_name: str,
        game_num: int,
        round_num: int,
        score: int,
    ) -> ScoreResult:
        team = self.teams.get(team_name)
        if team is None:
            raise TeamNotFoundError(f"Team '{team_name}' not found")
        if player_id not in self.players or team.manager_id != player_id:
            raise UnauthorizedError("Only team managers can submit scores")

        index = self.round_index(game_num, round_num)
        if len(team.round_scores) <= index:
            team.round_scores.extend([None] * (index + 1 - len(team.round_scores)))
        team.round_scores[index] = score
        return ScoreResult(index, team.recompute_total())

    def set_scores(
        self, team_name: str, round_scores: List[Optional[int]], total_score: int
    ) -> bool:
        """Host correction: overwrite as given, no recomputation."""
        team = self.teams.get(team_name)
        if team is None:
            return False
        team.round_scores = list(round_scores)
        team.total_score = total_score
        return True

    # ── Progression ────────────────────────────────────────────────────────────

    def start(
        self, games: List[Tuple[str, int]], current_game: int, current_round: int
    ) -> None:
        self.started = True
        self.games = list(games)
        self.current_game = current_game
        self.current_round = current_round

    def advance(self, current_game: int, current_round: int) -> None:
        self.current_game = current_game
        self.current_round = current_round
        self.scoring_enabled = False

    # ── Projections ────────────────────────────────────────────────────────────

    def teams_data(self) -> List[Dict[str, Any]]:
        return [t.model_dump(by_alias=True) for t in self.teams.values()]

    def team_counts(self) -> List[Dict[str, Any]]:
        return [{"name": t.name, "members": len(t.members)} for t in self.teams.values()]

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view sent to a (re)joining player or a restoring host."""
        return {
            "gameCode": self.code,
            "currentGame": self.current_game,
            "currentRound": self.current_round,
            "games": [list(g) for g in self.games],
            "gameStarted": self.started,
            "gameEnded": self.ended,
            "scoringEnabled": self.scoring_enabled,
            "teams": self.teams_data(),
            "buzzedPlayers": [b.model_dump(by_alias=True) for b in self.buzz_queue],
        }
