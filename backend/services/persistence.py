"""
Persistence bridge — GameSession <-> one store record per game code.

Record shape (camelCase, JSON-safe):
  {gameCode, hostId, currentGame, currentRound, games, teams: [...],
   players: [[id, data], ...], buzzedPlayers, scoringEnabled, gameStarted,
   gameEnded, createdAt, expiresAt}

Writes are fire-and-forget: the record is captured synchronously right after
a mutation and handed to the writer task for its game code. Each code has at
most one writer, and it always writes the newest captured record, so an older
record never lands after a newer one. A failed write or read is logged and
swallowed; gameplay never waits on the store.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import ValidationError

from models.game import BuzzRecord, GameSession, Player, Team, now_ms

logger = logging.getLogger(__name__)

_HOUR_MS = 60 * 60 * 1000


class GameStore(Protocol):
    """Key-value store keyed by game code."""

    async def get(self, game_code: str) -> Optional[Dict[str, Any]]:
        ...

    async def put(self, game_code: str, record: Dict[str, Any]) -> None:
        ...


def session_to_record(
    session: GameSession, ttl_hours: float = 4, at_ms: Optional[int] = None
) -> Dict[str, Any]:
    written_at = at_ms if at_ms is not None else now_ms()
    return {
        "gameCode": session.code,
        "hostId": session.host_id,
        "currentGame": session.current_game,
        "currentRound": session.current_round,
        "games": [list(g) for g in session.games],
        "teams": session.teams_data(),
        "players": [
            [pid, p.model_dump(by_alias=True)] for pid, p in session.players.items()
        ],
        "buzzedPlayers": [b.model_dump(by_alias=True) for b in session.buzz_queue],
        "scoringEnabled": session.scoring_enabled,
        "gameStarted": session.started,
        "gameEnded": session.ended,
        "createdAt": session.created_at,
        "expiresAt": written_at + int(ttl_hours * _HOUR_MS),
    }


def session_from_record(record: Dict[str, Any]) -> GameSession:
    teams = [Team.model_validate(t) for t in record.get("teams") or []]
    return GameSession(
        code=str(record["gameCode"]),
        host_id=record.get("hostId"),
        current_game=record.get("currentGame") or 1,
        current_round=record.get("currentRound") or 1,
        games=[tuple(g) for g in record.get("games") or []],
        started=bool(record.get("gameStarted")),
        ended=bool(record.get("gameEnded")),
        scoring_enabled=bool(record.get("scoringEnabled")),
        teams={t.name: t for t in teams},
        players={
            pid: Player.model_validate(data) for pid, data in record.get("players") or []
        },
        buzz_queue=[BuzzRecord.model_validate(b) for b in record.get("buzzedPlayers") or []],
        created_at=record.get("createdAt") or now_ms(),
    )


def is_expired(record: Dict[str, Any], at_ms: Optional[int] = None) -> bool:
    expires_at = record.get("expiresAt")
    if expires_at is None:
        return False
    return (at_ms if at_ms is not None else now_ms()) > expires_at


class SessionPersistence:
    def __init__(self, store: GameStore, ttl_hours: float = 4):
        self.store = store
        self.ttl_hours = ttl_hours
        # Newest captured record per code, not yet handed to the store
        self._latest: Dict[str, Dict[str, Any]] = {}
        # One writer task per code; strong refs so they are not garbage-collected
        self._writers: Dict[str, asyncio.Task] = {}

    def schedule_save(self, session: GameSession) -> None:
        """Capture the session now and write it in the background."""
        code = session.code
        self._latest[code] = session_to_record(session, self.ttl_hours)
        if code not in self._writers:
            self._writers[code] = asyncio.create_task(self._write_latest(code))

    async def _write_latest(self, game_code: str) -> None:
        try:
            while game_code in self._latest:
                await self._write(game_code, self._latest.pop(game_code))
        finally:
            self._writers.pop(game_code, None)

    async def save(self, session: GameSession) -> None:
        await self._write(session.code, session_to_record(session, self.ttl_hours))

    async def _write(self, game_code: str, record: Dict[str, Any]) -> None:
        try:
            await self.store.put(game_code, record)
        except Exception:
            logger.warning("[%s] Persisting game failed", game_code, exc_info=True)

    async def load(self, game_code: str) -> Optional[GameSession]:
        """Rehydrate a game, or None if missing, expired or unreadable."""
        try:
            record = await self.store.get(game_code)
        except Exception:
            logger.warning("[%s] Loading game failed", game_code, exc_info=True)
            return None
        if not record:
            return None
        if is_expired(record):
            logger.info("[%s] Stored game expired", game_code)
            return None
        try:
            return session_from_record(record)
        except (KeyError, TypeError, ValueError, ValidationError):
            logger.warning("[%s] Stored game is malformed", game_code, exc_info=True)
            return None

    async def drain(self) -> None:
        """Wait for in-flight writes (shutdown and tests)."""
        while self._writers:
            await asyncio.gather(*list(self._writers.values()), return_exceptions=True)


def build_store(settings) -> GameStore:
    if settings.store_backend == "firestore":
        from services.firestore_service import FirestoreGameStore
        return FirestoreGameStore(settings)
    if settings.store_backend != "memory":
        raise ValueError(f"Unknown store_backend: {settings.store_backend!r}")
    from services.memory_store import InMemoryGameStore
    return InMemoryGameStore()
