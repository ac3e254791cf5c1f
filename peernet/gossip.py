"""Flooding publish/subscribe over direct TCP connections.

Every node listens for peers and dials the addresses discovery hands it.
A connection starts with a signed handshake::

    -> HELLO {peer_id, pubkey, nonce, listen_addr}
    <- HELLO {...}
    -> AUTH  {sig}        # signature over the remote nonce
    <- AUTH  {sig}

after which both sides exchange::

    SUBS  {topics}         # full subscription set, sent once after the handshake
    SUB   {topic} / UNSUB {topic}
    PUB   {topic, msg_id, from, data}

A PUB is delivered to local subscribers (including the publisher itself,
sender = origin peer) and forwarded to every other connected peer that
subscribes to the topic. Message ids already seen are dropped, which stops
floods from looping.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import collections
import contextlib
import logging
import secrets
from typing import Any, Dict, List, Optional, Set, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from peernet.config import (
    DEFAULT_PORT,
    HANDSHAKE_TIMEOUT_S,
    SEEN_CACHE_MAX,
    SUBSCRIPTION_BUFFER,
)
from peernet.identity import Identity, peer_id_from_public_bytes, short_id, verify_signature
from peernet.substrate import (
    HandshakeError,
    PeerID,
    PublishError,
    SubscriptionClosed,
    TopicError,
)
from peernet.transport import parse_hostport, public_addr_hint, read_frame, write_frame

log = logging.getLogger(__name__)


def _b64(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def _unb64(s: Any) -> bytes:
    return base64.b64decode(str(s), validate=True)


def _auth_payload(nonce: str, signer: PeerID) -> bytes:
    return f"peernet-auth|{nonce}|{signer}".encode("utf-8")


class _PeerConn:
    def __init__(
        self,
        peer_id: PeerID,
        initiator: PeerID,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        listen_addr: str,
    ) -> None:
        self.peer_id = peer_id
        self.initiator = initiator
        self.reader = reader
        self.writer = writer
        self.listen_addr = listen_addr
        self.topics: Set[str] = set()
        self._wlock = asyncio.Lock()

    async def send(self, obj: Dict[str, Any]) -> None:
        async with self._wlock:
            await write_frame(self.writer, obj)

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self.writer.close()


class GossipSubscription:
    def __init__(self, topic: GossipTopic, buffer_size: int) -> None:
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
        self.topic._remove_sub(self)


class GossipTopic:
    def __init__(self, node: GossipNetwork, name: str) -> None:
        self.node = node
        self.name = name
        self._subs: Set[GossipSubscription] = set()
        self._closed = False

    async def subscribe(self) -> GossipSubscription:
        if self._closed or self.node.stopped:
            raise TopicError(f"topic {self.name} is closed")
        first = not self._subs
        sub = GossipSubscription(self, self.node.buffer_size)
        self._subs.add(sub)
        if first:
            await self.node._announce("SUB", self.name)
        return sub

    async def publish(self, data: bytes) -> None:
        if self._closed or self.node.stopped:
            raise PublishError(f"topic {self.name} is closed")
        try:
            await self.node._publish(self.name, bytes(data))
        except ValueError as e:
            raise PublishError(str(e)) from e

    def list_peers(self) -> List[PeerID]:
        return self.node.peers_for_topic(self.name)

    async def close(self) -> None:
        if self._closed:
            return
        if self._subs:
            raise TopicError(f"topic {self.name} has active subscriptions")
        self._closed = True
        self.node._topics.pop(self.name, None)

    def _remove_sub(self, sub: GossipSubscription) -> None:
        if sub not in self._subs:
            return
        self._subs.discard(sub)
        if not self._subs and not self.node.stopped:
            self.node._spawn(self.node._announce("UNSUB", self.name))

    def deliver(self, sender: PeerID, data: bytes) -> None:
        for sub in list(self._subs):
            sub.deliver(sender, data)


class GossipNetwork:
    def __init__(
        self,
        identity: Optional[Identity] = None,
        bind: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        *,
        buffer_size: int = SUBSCRIPTION_BUFFER,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.identity = identity or Identity.generate()
        self.peer_id: PeerID = self.identity.peer_id
        self.bind = bind
        self.port = port
        self.buffer_size = buffer_size
        self._log = logger or log
        self._lock = asyncio.Lock()
        self._server: Optional[asyncio.AbstractServer] = None
        self._conns: Dict[PeerID, _PeerConn] = {}
        self._topics: Dict[str, GossipTopic] = {}
        self._seen: "collections.OrderedDict[str, None]" = collections.OrderedDict()
        self._tasks: Set[asyncio.Task] = set()
        self.stopped = False

    @property
    def listen_addr(self) -> str:
        return public_addr_hint(self.bind, self.port)

    def connected_peers(self) -> List[PeerID]:
        return sorted(self._conns.keys())

    def peers_for_topic(self, topic_name: str) -> List[PeerID]:
        return sorted(pid for pid, conn in self._conns.items() if topic_name in conn.topics)

    def _subscribed_topics(self) -> List[str]:
        return sorted(name for name, topic in self._topics.items() if topic._subs)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_inbound, self.bind, self.port)
        sockets = self._server.sockets or []
        if sockets and not self.port:
            self.port = int(sockets[0].getsockname()[1])
        addrs = ", ".join(str(sock.getsockname()) for sock in sockets)
        self._log.info("listening on %s as %s", addrs, self.peer_id)

    async def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True

        for topic in list(self._topics.values()):
            for sub in list(topic._subs):
                sub.cancel()
            topic._closed = True
        self._topics.clear()

        if self._server:
            self._server.close()
        for conn in list(self._conns.values()):
            conn.close()
        self._conns.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._server:
            await self._server.wait_closed()
            self._server = None
        self._log.info("network stopped")

    async def join(self, topic_name: str) -> GossipTopic:
        if self.stopped:
            raise TopicError("network is shutting down")
        if not topic_name:
            raise TopicError("empty topic name")
        if topic_name in self._topics:
            raise TopicError(f"topic {topic_name} already exists")
        topic = GossipTopic(self, topic_name)
        self._topics[topic_name] = topic
        return topic

    # ── Connections ──────────────────────────────────────────────────────────

    async def connect(self, addr: str) -> PeerID:
        """Dial *addr*, run the handshake and start serving the connection."""
        if self.stopped:
            raise HandshakeError("network is shutting down")
        host, port = parse_hostport(addr)
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=HANDSHAKE_TIMEOUT_S
        )
        try:
            conn = await self._handshake(reader, writer, outbound=True)
        except BaseException:
            with contextlib.suppress(Exception):
                writer.close()
            raise
        self._spawn(self._serve(conn))
        return conn.peer_id

    async def _handle_inbound(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peername = writer.get_extra_info("peername")
        try:
            conn = await self._handshake(reader, writer, outbound=False)
        except (HandshakeError, EOFError, ValueError, OSError, asyncio.TimeoutError) as e:
            self._log.debug("rejected connection from %s: %s", peername, e)
            with contextlib.suppress(Exception):
                writer.close()
            return
        await self._serve(conn)

    async def _handshake(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        outbound: bool,
    ) -> _PeerConn:
        nonce = secrets.token_hex(16)
        await write_frame(writer, {
            "t": "HELLO",
            "peer_id": self.peer_id,
            "pubkey": _b64(self.identity.public_bytes),
            "nonce": nonce,
            "listen_addr": self.listen_addr,
        })
        hello = await read_frame(reader, timeout=HANDSHAKE_TIMEOUT_S)
        if hello.get("t") != "HELLO":
            raise HandshakeError("expected HELLO")

        peer_id = str(hello.get("peer_id", ""))
        try:
            pubkey = _unb64(hello.get("pubkey", ""))
        except (binascii.Error, ValueError) as e:
            raise HandshakeError("bad public key encoding") from e
        if not peer_id or peer_id_from_public_bytes(pubkey) != peer_id:
            raise HandshakeError("peer id does not match public key")
        if peer_id == self.peer_id:
            raise HandshakeError("refusing to connect to self")
        remote_nonce = str(hello.get("nonce", ""))

        sig = self.identity.sign(_auth_payload(remote_nonce, self.peer_id))
        await write_frame(writer, {"t": "AUTH", "sig": _b64(sig)})
        auth = await read_frame(reader, timeout=HANDSHAKE_TIMEOUT_S)
        if auth.get("t") != "AUTH":
            raise HandshakeError("expected AUTH")
        try:
            remote_sig = _unb64(auth.get("sig", ""))
        except (binascii.Error, ValueError) as e:
            raise HandshakeError("bad signature encoding") from e
        if not verify_signature(pubkey, remote_sig, _auth_payload(nonce, peer_id)):
            raise HandshakeError("signature check failed")

        conn = _PeerConn(
            peer_id=peer_id,
            initiator=self.peer_id if outbound else peer_id,
            reader=reader,
            writer=writer,
            listen_addr=str(hello.get("listen_addr", "")),
        )
        await self._register(conn)
        await conn.send({"t": "SUBS", "topics": self._subscribed_topics()})
        return conn

    def _preferred(self, conn: _PeerConn) -> bool:
        # When two peers dial each other at once both sides keep the
        # connection opened by the lower peer id.
        return conn.initiator == min(self.peer_id, conn.peer_id)

    async def _register(self, conn: _PeerConn) -> None:
        async with self._lock:
            if self.stopped:
                raise HandshakeError("network is shutting down")
            existing = self._conns.get(conn.peer_id)
            if existing is not None:
                if not self._preferred(conn) or self._preferred(existing):
                    raise HandshakeError(f"already connected to {short_id(conn.peer_id)}")
                existing.close()
            self._conns[conn.peer_id] = conn
        self._log.info("connected to peer %s (%s)", conn.peer_id, conn.listen_addr or "?")

    async def _drop(self, conn: _PeerConn) -> None:
        async with self._lock:
            if self._conns.get(conn.peer_id) is conn:
                del self._conns[conn.peer_id]
        conn.close()
        self._log.info("disconnected from peer %s", conn.peer_id)

    async def _serve(self, conn: _PeerConn) -> None:
        try:
            while True:
                frame = await read_frame(conn.reader)
                t = frame.get("t")
                if t == "PUB":
                    await self._on_pub(conn, frame)
                elif t == "SUB":
                    conn.topics.add(str(frame.get("topic", "")))
                elif t == "UNSUB":
                    conn.topics.discard(str(frame.get("topic", "")))
                elif t == "SUBS":
                    topics = frame.get("topics", [])
                    if isinstance(topics, list):
                        conn.topics = {str(name) for name in topics}
                    else:
                        self._log.debug("ignoring malformed SUBS from %s", short_id(conn.peer_id))
                else:
                    self._log.debug("ignoring frame %r from %s", t, short_id(conn.peer_id))
        except (EOFError, ValueError, OSError) as e:
            self._log.debug("connection to %s ended: %s", short_id(conn.peer_id), e)
        finally:
            await self._drop(conn)

    # ── Pub/sub ──────────────────────────────────────────────────────────────

    def _mark_seen(self, msg_id: str) -> bool:
        if msg_id in self._seen:
            return False
        self._seen[msg_id] = None
        while len(self._seen) > SEEN_CACHE_MAX:
            self._seen.popitem(last=False)
        return True

    def _deliver(self, topic_name: str, sender: PeerID, data: bytes) -> None:
        topic = self._topics.get(topic_name)
        if topic is not None:
            topic.deliver(sender, data)

    async def _publish(self, topic_name: str, data: bytes) -> None:
        msg_id = secrets.token_hex(16)
        frame = {
            "t": "PUB",
            "topic": topic_name,
            "msg_id": msg_id,
            "from": self.peer_id,
            "data": _b64(data),
        }
        self._mark_seen(msg_id)
        self._deliver(topic_name, self.peer_id, data)
        await self._forward(topic_name, frame, exclude=set())

    async def _on_pub(self, conn: _PeerConn, frame: Dict[str, Any]) -> None:
        msg_id = str(frame.get("msg_id", ""))
        topic_name = str(frame.get("topic", ""))
        origin = str(frame.get("from", ""))
        if not msg_id or not origin or not self._mark_seen(msg_id):
            return
        try:
            data = _unb64(frame.get("data", ""))
        except (binascii.Error, ValueError):
            self._log.debug("bad PUB payload from %s", short_id(conn.peer_id))
            return
        self._deliver(topic_name, origin, data)
        await self._forward(topic_name, frame, exclude={conn.peer_id, origin})

    async def _forward(self, topic_name: str, frame: Dict[str, Any], exclude: Set[PeerID]) -> None:
        for conn in list(self._conns.values()):
            if conn.peer_id in exclude or topic_name not in conn.topics:
                continue
            try:
                await conn.send(frame)
            except OSError as e:
                self._log.debug("forward to %s failed: %s", short_id(conn.peer_id), e)

    async def _announce(self, kind: str, topic_name: str) -> None:
        for conn in list(self._conns.values()):
            try:
                await conn.send({"t": kind, "topic": topic_name})
            except OSError as e:
                self._log.debug("%s to %s failed: %s", kind, short_id(conn.peer_id), e)
