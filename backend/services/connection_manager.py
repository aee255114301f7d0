import itertools
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    HOST = "host"
    PLAYER = "player"


@dataclass
class Binding:
    role: Role
    game_code: str
    player_id: Optional[str] = None
    team_name: Optional[str] = None
    # Monotonic bind order; the latest binding wins for a (code, player) pair
    seq: int = 0


class ConnectionManager:
    """
    Tracks every open channel by a connection id allocated at accept time,
    plus what (if anything) each channel is bound to.

    A channel is anything with ``async send_json(dict)`` and ``async close()``:
    a Starlette WebSocket in production, a recorder in tests.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._channels: Dict[str, Any] = {}
        self._bindings: Dict[str, Binding] = {}
        self._seq = itertools.count(1)

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def register(self, channel: Any) -> str:
        conn_id = uuid.uuid4().hex
        self._channels[conn_id] = channel
        logger.debug("Connection %s registered (%d open)", conn_id, len(self._channels))
        return conn_id

    def drop(self, conn_id: str) -> Optional[Binding]:
        """Forget the channel entirely; returns what it was bound to."""
        self._channels.pop(conn_id, None)
        return self._bindings.pop(conn_id, None)

    def count(self) -> int:
        return len(self._channels)

    # ── Bindings ───────────────────────────────────────────────────────────────

    def bind(
        self,
        conn_id: str,
        role: Role,
        game_code: str,
        player_id: Optional[str] = None,
        team_name: Optional[str] = None,
    ) -> Binding:
        binding = Binding(
            role=role,
            game_code=game_code,
            player_id=player_id,
            team_name=team_name,
            seq=next(self._seq),
        )
        self._bindings[conn_id] = binding
        return binding

    def unbind(self, conn_id: str) -> Optional[Binding]:
        return self._bindings.pop(conn_id, None)

    def binding(self, conn_id: str) -> Optional[Binding]:
        return self._bindings.get(conn_id)

    def is_host(self, conn_id: str, game_code: str) -> bool:
        binding = self._bindings.get(conn_id)
        return (
            binding is not None
            and binding.role == Role.HOST
            and binding.game_code == game_code
        )

    def select(
        self,
        game_code: str,
        role: Optional[Role] = None,
        team_name: Optional[str] = None,
        exclude: Optional[str] = None,
    ) -> List[str]:
        """Connection ids bound to ``game_code``, optionally filtered."""
        return [
            conn_id
            for conn_id, b in self._bindings.items()
            if b.game_code == game_code
            and conn_id != exclude
            and (role is None or b.role == role)
            and (team_name is None or b.team_name == team_name)
        ]

    def _latest(self, game_code: str, role: Role, player_id: Optional[str] = None) -> Optional[str]:
        best: Optional[str] = None
        best_seq = -1
        for conn_id, b in self._bindings.items():
            if b.game_code != game_code or b.role != role:
                continue
            if player_id is not None and b.player_id != player_id:
                continue
            if b.seq > best_seq:
                best, best_seq = conn_id, b.seq
        return best

    def find_host(self, game_code: str) -> Optional[str]:
        return self._latest(game_code, Role.HOST)

    def find_player(self, game_code: str, player_id: str) -> Optional[str]:
        return self._latest(game_code, Role.PLAYER, player_id)

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send(self, conn_id: str, message: Dict) -> bool:
        """Best-effort send; a dead channel is cleaned up by its own close."""
        channel = self._channels.get(conn_id)
        if channel is None:
            return False
        try:
            await channel.send_json(message)
            return True
        except Exception as exc:
            logger.warning("send to %s failed: %s", conn_id, exc)
            return False

    async def close_all(self) -> None:
        for conn_id, channel in list(self._channels.items()):
            try:
                await channel.close()
            except Exception as exc:
                logger.debug("close of %s failed: %s", conn_id, exc)
        self._channels.clear()
        self._bindings.clear()
