"""
Session registry — the live GameSessions of this process, keyed by game code.

Two timer-driven evictions exist, both in-memory only (the store keeps the
record so the game can be restored later):
  • the periodic age sweep, dropping sessions older than ``max_age_sec``;
  • host abandonment, scheduled when a host channel closes and cancelled
    when a host channel rebinds. Timers are keyed by code and a firing
    timer only evicts the exact session it was scheduled for.
"""
import asyncio
import logging
import random
from typing import Dict, List, Optional

from models.game import GameSession, now_ms

logger = logging.getLogger(__name__)


def generate_game_code() -> str:
    """Six-digit numeric code, easy to read out loud."""
    return str(random.randint(100000, 999999))


class SessionRegistry:
    def __init__(self, max_age_sec: int = 3600, sweep_interval_sec: int = 3600):
        self.max_age_sec = max_age_sec
        self.sweep_interval_sec = sweep_interval_sec
        self._sessions: Dict[str, GameSession] = {}
        self._eviction_tasks: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    # ── Lookup ─────────────────────────────────────────────────────────────────

    def get(self, game_code: str) -> Optional[GameSession]:
        return self._sessions.get(game_code)

    def put(self, game_code: str, session: GameSession) -> None:
        self._sessions[game_code] = session

    def delete(self, game_code: str) -> bool:
        self.cancel_eviction(game_code)
        return self._sessions.pop(game_code, None) is not None

    def codes(self) -> List[str]:
        return list(self._sessions)

    def new_code(self) -> str:
        code = generate_game_code()
        while code in self._sessions:
            code = generate_game_code()
        return code

    def __contains__(self, game_code: str) -> bool:
        return game_code in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Age sweep ──────────────────────────────────────────────────────────────

    def sweep(self, at_ms: Optional[int] = None) -> List[str]:
        """Evict every session older than ``max_age_sec``. Returns evicted codes."""
        cutoff = (at_ms if at_ms is not None else now_ms()) - self.max_age_sec * 1000
        stale = [code for code, s in self._sessions.items() if s.created_at < cutoff]
        for code in stale:
            self.delete(code)
            logger.info("[%s] Cleaned up old game", code)
        return stale

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_sec)
            self.sweep()

    def start_sweeper(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    # ── Host abandonment ───────────────────────────────────────────────────────

    def schedule_eviction(self, game_code: str, delay: float) -> None:
        session = self._sessions.get(game_code)
        if session is None:
            return
        self.cancel_eviction(game_code)
        self._eviction_tasks[game_code] = asyncio.create_task(
            self._evict_later(game_code, session, delay)
        )
        logger.info("[%s] Eviction scheduled in %ss", game_code, delay)

    def cancel_eviction(self, game_code: str) -> bool:
        task = self._eviction_tasks.pop(game_code, None)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def eviction_pending(self, game_code: str) -> bool:
        task = self._eviction_tasks.get(game_code)
        return task is not None and not task.done()

    async def _evict_later(self, game_code: str, session: GameSession, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._eviction_tasks.get(game_code) is asyncio.current_task():
            del self._eviction_tasks[game_code]
        if self._sessions.get(game_code) is session:
            del self._sessions[game_code]
            logger.info("[%s] Game cleaned up after host left", game_code)

    # ── Teardown ───────────────────────────────────────────────────────────────

    async def close(self) -> None:
        tasks = list(self._eviction_tasks.values())
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._eviction_tasks.clear()
        self._sweep_task = None
        self._sessions.clear()
