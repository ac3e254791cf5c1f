"""Shared fixtures for the PeerNet tests."""
import asyncio
from typing import Callable, List

import anyio
import pytest

from peernet.memory import InMemoryHub, InMemoryNetwork
from peernet.session import RoomSession, topic_for_room


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def hub() -> InMemoryHub:
    return InMemoryHub()


@pytest.fixture
def make_network(hub):
    """Factory for in-memory networks sharing one hub."""

    def _make(peer_id: str = None) -> InMemoryNetwork:
        return InMemoryNetwork(hub, peer_id=peer_id)

    return _make


@pytest.fixture
def eventually():
    """Poll *predicate* until it holds, failing after *timeout* seconds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        with anyio.fail_after(timeout):
            while not predicate():
                await anyio.sleep(0.01)

    return _wait


class FakeDisplay:
    """Records everything the multiplexer asks the display to do."""

    def __init__(self) -> None:
        self.lines: List[str] = []
        self.clears = 0
        self.room = ""
        self.user = ""
        self.peers: List[str] = []
        self.stopped = False

    def queue_update(self, fn) -> None:
        fn()

    def append_line(self, markup: str) -> None:
        self.lines.append(markup)

    def clear(self) -> None:
        self.lines.clear()
        self.clears += 1

    def set_room(self, room_name: str) -> None:
        self.room = room_name

    def set_user(self, user_name: str) -> None:
        self.user = user_name

    def set_peers(self, peers) -> None:
        self.peers = list(peers)

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def display() -> FakeDisplay:
    return FakeDisplay()


class StalledPublishTopic:
    """Wraps a real topic; ``publish`` waits until ``release`` is set."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.name = inner.name
        self.release = asyncio.Event()
        self.publishing = 0

    async def subscribe(self):
        return await self.inner.subscribe()

    async def publish(self, data: bytes) -> None:
        self.publishing += 1
        await self.release.wait()
        await self.inner.publish(data)

    def list_peers(self):
        return self.inner.list_peers()

    async def close(self) -> None:
        await self.inner.close()


@pytest.fixture
async def stalled_session(make_network):
    """Alice in 'lobby' over a topic whose first publish never completes."""
    net = make_network()
    topic = StalledPublishTopic(await net.join(topic_for_room("lobby")))
    sub = await topic.subscribe()
    session = RoomSession(net, topic, sub, "lobby", "alice")
    session._start()
    yield session, topic
    await session.exit()
