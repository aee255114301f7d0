from dataclasses import dataclass, field
import time
from typing import Optional

from services.connection_manager import ConnectionManager
from services.persistence import GameStore, SessionPersistence, build_store
from services.session_registry import SessionRegistry


@dataclass
class GameContext:
    """Everything one server process owns: live games, channels, the store."""

    registry: SessionRegistry
    connections: ConnectionManager
    persistence: SessionPersistence
    host_abandon_delay_sec: float = 300
    require_host_id: bool = True
    started_at: float = field(default_factory=time.monotonic)

    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    async def close(self) -> None:
        """Drop all games, close all channels, flush pending writes."""
        await self.registry.close()
        await self.connections.close_all()
        await self.persistence.drain()


def build_context(settings, store: Optional[GameStore] = None) -> GameContext:
    return GameContext(
        registry=SessionRegistry(
            max_age_sec=settings.session_max_age_sec,
            sweep_interval_sec=settings.sweep_interval_sec,
        ),
        connections=ConnectionManager(),
        persistence=SessionPersistence(
            store if store is not None else build_store(settings),
            ttl_hours=settings.record_ttl_hours,
        ),
        host_abandon_delay_sec=settings.host_abandon_delay_sec,
        require_host_id=settings.require_host_id,
    )
