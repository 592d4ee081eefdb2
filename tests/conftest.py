"""Shared fixtures: a private fakeredis server per test, a settable clock,
and a connection double that records every event written to it."""

import fakeredis
import pytest

from backend import PresenceStore
from connections import Connection, ConnectionRegistry
from pending import PendingRequestQueue
from relay import SignalingRelay
from schemas.events import JoinEvent

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingConnection(Connection):
    transport = "test"

    def __init__(self, session_id: str, reachable: bool = True):
        super().__init__(session_id)
        self.sent = []
        self.reachable = reachable

    async def send(self, message: dict) -> bool:
        if self.closed or not self.reachable:
            return False
        self.sent.append(message)
        return True

    def events(self, name: str):
        return [m for m in self.sent if m["event"] == name]


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(redis_client, clock):
    return PresenceStore(redis_client, clock=clock)


@pytest.fixture
def queue(redis_client, clock):
    return PendingRequestQueue(redis_client, clock=clock)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
async def relay(store, queue, registry, clock):
    relay = SignalingRelay(store, queue, registry, grace_period=300, liveness_timeout=180, clock=clock)
    yield relay
    await relay.close()


@pytest.fixture
def connect(relay):
    async def _connect(session_id: str, reachable: bool = True) -> RecordingConnection:
        connection = RecordingConnection(session_id, reachable=reachable)
        await relay.connect(connection)
        return connection

    return _connect


def join_event(room: str, peer_id: str, name: str = None, color: str = "#f5a623", glyph: str = "🦁") -> JoinEvent:
    return JoinEvent(event="join", room=room, peer_id=peer_id, name=name or peer_id.title(), color=color, glyph=glyph)
