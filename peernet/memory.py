from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from peernet.config import SUBSCRIPTION_BUFFER
from peernet.identity import new_peer_id
from peernet.substrate import PeerID, PublishError, SubscriptionClosed, TopicError

log = logging.getLogger(__name__)


class InMemorySubscription:
    def __init__(self, topic: InMemoryTopic, buffer_size: int) -> None:
        self.topic = topic
        self._send: MemoryObjectSendStream[Tuple[PeerID, bytes]]
        self._recv: MemoryObjectReceiveStream[Tuple[PeerID, bytes]]
        self._send, self._recv = anyio.create_memory_object_stream(max_buffer_size=buffer_size)

    def deliver(self, sender: PeerID, data: bytes) -> None:
        try:
            self._send.send_nowait((sender, data))
        except anyio.WouldBlock:
            log.warning("subscription buffer full on %s, dropping payload", self.topic.name)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass

    async def next(self) -> Tuple[PeerID, bytes]:
        try:
            return await self._recv.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise SubscriptionClosed(f"subscription to {self.topic.name} closed") from None

    def cancel(self) -> None:
        self._send.close()
        self.topic._subs.discard(self)


class InMemoryTopic:
    def __init__(self, network: InMemoryNetwork, name: str) -> None:
        self.network = network
        self.name = name
        self._subs: Set[InMemorySubscription] = set()
        self._closed = False

    async def subscribe(self) -> InMemorySubscription:
        if self._closed:
            raise TopicError(f"topic {self.name} is closed")
        if self.network.hub.fail_subscribe:
            raise TopicError(f"cannot subscribe to {self.name}")
        sub = InMemorySubscription(self, self.network.buffer_size)
        self._subs.add(sub)
        return sub

    async def publish(self, data: bytes) -> None:
        if self._closed or self.network.closed:
            raise PublishError(f"topic {self.name} is closed")
        self.network.hub.broadcast(self.name, self.network.peer_id, bytes(data))

    def list_peers(self) -> List[PeerID]:
        return self.network.hub.subscribers(self.name, exclude=self.network.peer_id)

    async def close(self) -> None:
        if self._closed:
            return
        if self._subs:
            raise TopicError(f"topic {self.name} has active subscriptions")
        self._closed = True
        self.network._topics.pop(self.name, None)


class InMemoryHub:
    """Shared broadcast medium for any number of ``InMemoryNetwork`` nodes."""

    def __init__(self) -> None:
        self.networks: Dict[PeerID, InMemoryNetwork] = {}
        self.fail_subscribe = False

    def broadcast(self, topic_name: str, sender: PeerID, data: bytes) -> None:
        for net in list(self.networks.values()):
            topic = net._topics.get(topic_name)
            if topic is None:
                continue
            for sub in list(topic._subs):
                sub.deliver(sender, data)

    def subscribers(self, topic_name: str, exclude: Optional[PeerID] = None) -> List[PeerID]:
        out = []
        for peer_id, net in self.networks.items():
            if peer_id == exclude:
                continue
            topic = net._topics.get(topic_name)
            if topic is not None and topic._subs:
                out.append(peer_id)
        return sorted(out)


class InMemoryNetwork:
    def __init__(
        self,
        hub: InMemoryHub,
        peer_id: Optional[PeerID] = None,
        buffer_size: int = SUBSCRIPTION_BUFFER,
    ) -> None:
        self.hub = hub
        self.peer_id = peer_id or new_peer_id()
        self.buffer_size = buffer_size
        self.closed = False
        self._topics: Dict[str, InMemoryTopic] = {}
        hub.networks[self.peer_id] = self

    async def join(self, topic_name: str) -> InMemoryTopic:
        if self.closed:
            raise TopicError("network is shutting down")
        if not topic_name:
            raise TopicError("empty topic name")
        if topic_name in self._topics:
            raise TopicError(f"topic {topic_name} already exists")
        topic = InMemoryTopic(self, topic_name)
        self._topics[topic_name] = topic
        return topic

    async def close(self) -> None:
        self.closed = True
        for topic in list(self._topics.values()):
            for sub in list(topic._subs):
                sub.cancel()
            await topic.close()
        self.hub.networks.pop(self.peer_id, None)
