"""Interfaces the room session consumes from a publish/subscribe network.

Two implementations ship with peernet: ``peernet.gossip.GossipNetwork``
(TCP flooding between dialled peers) and ``peernet.memory.InMemoryNetwork``
(in-process, for tests).
"""
from __future__ import annotations

from typing import List, Protocol, Tuple

PeerID = str


class PeerNetError(Exception):
    """Base class for network substrate failures."""


class TopicError(PeerNetError):
    """Joining or subscribing to a topic failed."""


class PublishError(PeerNetError):
    """A single payload could not be published."""


class SubscriptionClosed(PeerNetError):
    """The subscription was cancelled or torn down and cannot be resumed."""


class HandshakeError(PeerNetError):
    """A peer connection was rejected during the handshake."""


class Subscription(Protocol):
    async def next(self) -> Tuple[PeerID, bytes]:
        """Block until the next payload; raise SubscriptionClosed once torn down."""
        ...

    def cancel(self) -> None:
        ...


class Topic(Protocol):
    name: str

    async def subscribe(self) -> Subscription:
        ...

    async def publish(self, data: bytes) -> None:
        ...

    def list_peers(self) -> List[PeerID]:
        ...

    async def close(self) -> None:
        ...


class Network(Protocol):
    peer_id: PeerID

    async def join(self, topic_name: str) -> Topic:
        ...
