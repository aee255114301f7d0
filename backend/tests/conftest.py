import pytest

from config import Settings
from services.context import build_context
from services.memory_store import InMemoryGameStore
from services.message_router import MessageRouter


def make_settings(**overrides) -> Settings:
    values = dict(
        store_backend="memory",
        host_abandon_delay_sec=300,
        session_max_age_sec=3600,
        sweep_interval_sec=3600,
        require_host_id=True,
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeChannel:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_json(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True

    def of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]

    def last(self, msg_type=None):
        frames = self.of_type(msg_type) if msg_type else self.sent
        return frames[-1] if frames else None

    def clear(self):
        self.sent = []


class BrokenChannel(FakeChannel):
    async def send_json(self, message):
        raise RuntimeError("socket gone")


class Harness:
    """Drives a MessageRouter with fake channels. Use inside asyncio.run()."""

    def __init__(self, settings=None, store=None):
        self.store = store if store is not None else InMemoryGameStore()
        self.ctx = build_context(settings or make_settings(), self.store)
        self.router = MessageRouter(self.ctx)
        self.channels = {}

    def connect(self, channel=None):
        channel = channel or FakeChannel()
        conn_id = self.ctx.connections.register(channel)
        self.channels[conn_id] = channel
        return conn_id, channel

    async def send(self, conn_id, msg_type, **fields):
        await self.router.handle_message(conn_id, {"type": msg_type, **fields})

    async def close(self, conn_id):
        await self.router.handle_disconnect(conn_id)

    async def create_game(self, host_id="host-1", **fields):
        conn_id, channel = self.connect()
        await self.send(conn_id, "CREATE_GAME", hostId=host_id, **fields)
        created = channel.last("GAME_CREATED")
        return created["gameCode"], conn_id, channel

    async def join(self, code, player_id, name, team, is_manager=False):
        conn_id, channel = self.connect()
        await self.send(
            conn_id, "JOIN_GAME",
            gameCode=code, playerId=player_id, playerName=name,
            teamName=team, isManager=is_manager,
        )
        return conn_id, channel

    def session(self, code):
        return self.ctx.registry.get(code)


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def store():
    return InMemoryGameStore()


@pytest.fixture()
def harness(settings, store):
    return Harness(settings, store)
