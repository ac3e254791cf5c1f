"""Room sessions: the live binding of this process to one room's topic.

A session owns a topic handle and a subscription and runs two tasks:

* the publish loop drains ``outbound`` and publishes each line as a
  ChatMessage envelope;
* the receive loop reads the subscription, drops self-echo and malformed
  payloads, and forwards everything else to ``inbound``.

Per-message failures become ChatLog entries on ``logs``; only setup
failures in ``join_room`` are raised to the caller.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import List, Optional

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from peernet import codec
from peernet.config import CHANNEL_CAPACITY, LOG_CAPACITY, NAME_MAX, TOPIC_NAMESPACE
from peernet.models import ChatLog, ChatMessage, LogKind
from peernet.substrate import (
    Network,
    PeerID,
    PeerNetError,
    Subscription,
    SubscriptionClosed,
    Topic,
    TopicError,
)

log = logging.getLogger(__name__)


def topic_for_room(room_name: str) -> str:
    return f"{TOPIC_NAMESPACE}-{room_name}"


class RoomSession:
    """Use ``join_room`` to create one; call ``exit`` before dropping it."""

    def __init__(
        self,
        network: Network,
        topic: Topic,
        subscription: Subscription,
        room_name: str,
        user_name: str,
        *,
        capacity: int = CHANNEL_CAPACITY,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.network = network
        self.room_name = room_name
        self.user_name = user_name
        self.self_id: PeerID = network.peer_id
        self.capacity = capacity
        self._topic = topic
        self._sub = subscription
        self._log = logger or log

        self._inbound_send: MemoryObjectSendStream[ChatMessage]
        self.inbound: MemoryObjectReceiveStream[ChatMessage]
        self._inbound_send, self.inbound = anyio.create_memory_object_stream(max_buffer_size=capacity)

        self.outbound: MemoryObjectSendStream[str]
        self._outbound_recv: MemoryObjectReceiveStream[str]
        self.outbound, self._outbound_recv = anyio.create_memory_object_stream(max_buffer_size=capacity)

        self._logs_send: MemoryObjectSendStream[ChatLog]
        self.logs: MemoryObjectReceiveStream[ChatLog]
        self._logs_send, self.logs = anyio.create_memory_object_stream(max_buffer_size=LOG_CAPACITY)

        self._tasks: List[asyncio.Task] = []
        self._closing = False
        self._teardown: Optional[asyncio.Future] = None

    @property
    def topic_name(self) -> str:
        return self._topic.name

    @property
    def exited(self) -> bool:
        return self._teardown is not None and self._teardown.done()

    def _start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._publish_loop(), name=f"publish:{self.room_name}"),
            asyncio.create_task(self._receive_loop(), name=f"receive:{self.room_name}"),
        ]

    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ── Loops ────────────────────────────────────────────────────────────────

    async def _publish_loop(self) -> None:
        async for text in self._outbound_recv:
            msg = ChatMessage(message=text, sender_id=self.self_id, sender_name=self.user_name)
            try:
                data = codec.encode(msg)
            except (TypeError, ValueError) as e:
                self._emit(LogKind.PUBLISH_ERROR, "failed to marshal JSON", e)
                continue
            try:
                await self._topic.publish(data)
            except PeerNetError as e:
                self._emit(LogKind.PUBLISH_ERROR, "failed to publish message", e)

    async def _receive_loop(self) -> None:
        try:
            while True:
                try:
                    sender, data = await self._sub.next()
                except SubscriptionClosed as e:
                    if not self._closing:
                        self._emit(LogKind.SUBSCRIBE_ERROR, "subscription closed", e)
                    return

                if sender == self.self_id:
                    continue

                try:
                    msg = codec.decode(data)
                except ValueError as e:
                    self._emit(LogKind.SUBSCRIBE_ERROR, "failed to unmarshal JSON", e)
                    continue

                await self._inbound_send.send(msg)
        except anyio.BrokenResourceError:
            # nobody is reading inbound any more
            return
        finally:
            self._inbound_send.close()

    def _emit(self, kind: LogKind, msg: str, exc: Optional[BaseException] = None) -> None:
        """Queue a ChatLog without blocking; diagnostics never stall a loop."""
        level = logging.INFO if kind is LogKind.INFO else logging.WARNING
        if exc is not None:
            self._log.log(level, "[%s] %s: %s (%s)", self.room_name, kind.value, msg, exc)
        else:
            self._log.log(level, "[%s] %s: %s", self.room_name, kind.value, msg)
        try:
            self._logs_send.send_nowait(ChatLog(kind=kind, msg=msg))
        except anyio.WouldBlock:
            self._log.warning("[%s] log channel full, dropping %r", self.room_name, msg)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass

    # ── Queries / mutation ───────────────────────────────────────────────────

    def peer_list(self) -> List[PeerID]:
        return list(self._topic.list_peers())

    def update_user(self, user_name: str) -> str:
        self.user_name = user_name.strip()[:NAME_MAX]
        return self.user_name

    # ── Teardown ─────────────────────────────────────────────────────────────

    async def exit(self) -> None:
        """Cancel the subscription, close the topic and stop both loops.

        Returns once both loops have finished. The teardown keeps going if
        the caller is cancelled, and later calls wait for the same teardown.
        """
        if self._teardown is None:
            self._closing = True
            self._teardown = asyncio.ensure_future(self._close())
        await asyncio.shield(self._teardown)

    async def _close(self) -> None:
        self._sub.cancel()
        try:
            await self._topic.close()
        except PeerNetError as e:
            self._log.warning("[%s] closing topic failed: %s", self.room_name, e)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        self.outbound.close()
        self._logs_send.close()
        self._log.debug("[%s] session closed", self.room_name)


async def join_room(
    network: Network,
    user_name: str,
    room_name: str,
    *,
    capacity: int = CHANNEL_CAPACITY,
    logger: Optional[logging.Logger] = None,
) -> RoomSession:
    """Join *room_name* and start its loops.

    Raises ``TopicError`` if the topic cannot be joined or subscribed to;
    nothing is left running in that case.
    """
    if not room_name:
        raise TopicError("room name must not be empty")

    topic = await network.join(topic_for_room(room_name))
    try:
        sub = await topic.subscribe()
    except PeerNetError:
        with contextlib.suppress(PeerNetError):
            await topic.close()
        raise

    session = RoomSession(
        network, topic, sub, room_name, user_name[:NAME_MAX],
        capacity=capacity, logger=logger,
    )
    session._start()
    (logger or log).info("joined room %r as %r", room_name, session.user_name)
    return session


async def switch_room(
    current: RoomSession,
    network: Network,
    user_name: str,
    room_name: str,
    *,
    settle_s: float = 0.0,
    logger: Optional[logging.Logger] = None,
) -> RoomSession:
    """Replace *current* with a session for *room_name*.

    The new room is joined first; if that raises, *current* is untouched.
    Otherwise *current* is fully torn down before the new session is
    returned.
    """
    new_session = await join_room(
        network, user_name, room_name, capacity=current.capacity, logger=logger,
    )
    await current.exit()
    if settle_s > 0:
        await asyncio.sleep(settle_s)
    return new_session
