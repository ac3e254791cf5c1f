"""The control loop that sits between the UI and the active room session.

``EventMultiplexer.run`` waits on whichever source is ready first: a typed
chat line, a slash command, an inbound message, a session log entry, the
peer-list tick, or the stop signal. It is the only code that replaces the
active session and the only code that writes to the display, and every
write goes through ``DisplaySurface.queue_update`` so a slow renderer never
holds up message intake.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Sequence

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream
from rich.markup import escape as markup_escape

from peernet.config import PEER_REFRESH_S, SWITCH_SETTLE_S
from peernet.identity import short_id
from peernet.models import ChatLog, ChatMessage, CommandType, LogKind, UICommand
from peernet.session import RoomSession, switch_room
from peernet.substrate import Network, PeerNetError

log = logging.getLogger(__name__)

SELF_COLOR = "green"
REMOTE_COLOR = "blue"
PEER_COLOR = "yellow"

SRC_STOP = "stop"
SRC_MESSAGE = "message"
SRC_COMMAND = "command"
SRC_INBOUND = "inbound"
SRC_LOG = "log"
SRC_TICK = "tick"


class DisplaySurface(Protocol):
    def queue_update(self, fn: Callable[[], None]) -> None:
        """Run *fn* on the display's own loop."""
        ...

    def append_line(self, markup: str) -> None:
        ...

    def clear(self) -> None:
        ...

    def set_room(self, room_name: str) -> None:
        ...

    def set_user(self, user_name: str) -> None:
        ...

    def set_peers(self, peers: Sequence[str]) -> None:
        ...

    def stop(self) -> None:
        ...


def format_message(sender: str, text: str, color: str) -> str:
    return f"[{color}]<{markup_escape(sender)}>[/{color}] {markup_escape(text)}"


def format_log(entry: ChatLog) -> str:
    color = "red" if entry.is_error else "cyan"
    return f"[{color}]({entry.kind.value})[/{color}] {markup_escape(entry.msg)}"


class EventMultiplexer:
    def __init__(
        self,
        session: RoomSession,
        network: Network,
        display: DisplaySurface,
        messages: MemoryObjectReceiveStream[str],
        commands: MemoryObjectReceiveStream[UICommand],
        *,
        refresh_s: float = PEER_REFRESH_S,
        settle_s: float = SWITCH_SETTLE_S,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.network = network
        self.display = display
        self._messages = messages
        self._commands = commands
        self.refresh_s = refresh_s
        self.settle_s = settle_s
        self._log = logger or log

        self._stop_event = asyncio.Event()
        self._pending: Dict[str, asyncio.Future] = {}
        self._closed_sources: set = set()
        self._handlers: Dict[CommandType, Callable[[UICommand], Awaitable[None]]] = {
            CommandType.EXIT: self._cmd_exit,
            CommandType.CLEAR: self._cmd_clear,
            CommandType.ROOM: self._cmd_room,
            CommandType.USER: self._cmd_user,
            CommandType.UNKNOWN: self._cmd_unknown,
        }

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        """Dispatch events until ``stop`` is called or ``/exit`` is handled."""
        try:
            while not self._stop_event.is_set():
                self._arm()
                done, _ = await asyncio.wait(
                    set(self._pending.values()), return_when=asyncio.FIRST_COMPLETED
                )
                for source, fut in list(self._pending.items()):
                    if fut not in done or self._pending.get(source) is not fut:
                        continue
                    del self._pending[source]
                    await self._dispatch(source, fut)
                    if self._stop_event.is_set():
                        break
        finally:
            pending = list(self._pending.values())
            self._pending.clear()
            for fut in pending:
                fut.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        await self.session.exit()
        self.display.queue_update(self.display.stop)
        self.stop()

    def _arm(self) -> None:
        sources = {
            SRC_STOP: self._stop_event.wait,
            SRC_MESSAGE: self._messages.receive,
            SRC_COMMAND: self._commands.receive,
            SRC_INBOUND: self.session.inbound.receive,
            SRC_LOG: self.session.logs.receive,
            SRC_TICK: self._tick,
        }
        for source, factory in sources.items():
            if source in self._pending or source in self._closed_sources:
                continue
            self._pending[source] = asyncio.ensure_future(factory())

    async def _tick(self) -> None:
        await asyncio.sleep(self.refresh_s)

    # ── Dispatch ─────────────────────────────────────────────────────────────

    async def _dispatch(self, source: str, fut: asyncio.Future) -> None:
        try:
            value = fut.result()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            self._closed_sources.add(source)
            if source in (SRC_MESSAGE, SRC_COMMAND):
                # the input side went away; nothing more can drive the loop
                self._log.info("%s channel closed, stopping", source)
                self.stop()
            return

        if source == SRC_MESSAGE:
            await self._on_message(value)
        elif source == SRC_COMMAND:
            await self._on_command(value)
        elif source == SRC_INBOUND:
            self._on_inbound(value)
        elif source == SRC_LOG:
            self._show(format_log(value))
        elif source == SRC_TICK:
            self._refresh_peers()

    async def _on_message(self, text: str) -> None:
        # A stalled publish must not keep stop() from ending the loop.
        send = asyncio.ensure_future(self.session.outbound.send(text))
        stopping = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({send, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
            if not send.done():
                send.cancel()
            await asyncio.gather(send, stopping, return_exceptions=True)

        if send.cancelled():
            self._log.debug("stopping, dropped unsent line")
            return
        try:
            send.result()
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            self.emit(LogKind.ERROR, "not connected to a room")
            return
        self._show(format_message(self.session.user_name, text, SELF_COLOR))

    def _on_inbound(self, msg: ChatMessage) -> None:
        self._show(format_message(msg.sender_name, msg.message, REMOTE_COLOR))

    async def _on_command(self, cmd: UICommand) -> None:
        await self._handlers[cmd.type](cmd)

    def _refresh_peers(self) -> None:
        labels = [short_id(p) for p in self.session.peer_list()]
        self.display.queue_update(lambda: self.display.set_peers(labels))

    def _show(self, markup: str) -> None:
        self.display.queue_update(lambda: self.display.append_line(markup))

    def emit(self, kind: LogKind, msg: str) -> None:
        """Show a user-facing log line straight away."""
        level = logging.INFO if kind is LogKind.INFO else logging.WARNING
        self._log.log(level, "%s: %s", kind.value, msg)
        self._show(format_log(ChatLog(kind=kind, msg=msg)))

    # ── Commands ─────────────────────────────────────────────────────────────

    async def _cmd_exit(self, cmd: UICommand) -> None:
        await self.shutdown()

    async def _cmd_clear(self, cmd: UICommand) -> None:
        self.display.queue_update(self.display.clear)

    async def _cmd_room(self, cmd: UICommand) -> None:
        if not cmd.has_argument:
            self.emit(LogKind.ERROR, "missing room name")
            return
        if cmd.argument == self.session.room_name:
            self.emit(LogKind.INFO, f"already in room '{cmd.argument}'")
            return
        await self.switch(cmd.argument)

    async def _cmd_user(self, cmd: UICommand) -> None:
        if not cmd.has_argument:
            self.emit(LogKind.ERROR, "missing username")
            return
        name = self.session.update_user(cmd.argument)
        self.display.queue_update(lambda: self.display.set_user(name))

    async def _cmd_unknown(self, cmd: UICommand) -> None:
        self.emit(LogKind.ERROR, f"unsupported command: {cmd.name}")

    # ── Room switching ───────────────────────────────────────────────────────

    async def switch(self, room_name: str) -> bool:
        self.emit(LogKind.INFO, f"switching to room '{room_name}'")
        try:
            new_session = await switch_room(
                self.session, self.network, self.session.user_name, room_name,
                settle_s=self.settle_s, logger=self._log,
            )
        except PeerNetError as e:
            self.emit(LogKind.ERROR, f"could not switch rooms: {e}")
            return False
        self._replace_session(new_session)
        return True

    def _replace_session(self, new_session: RoomSession) -> None:
        for source in (SRC_INBOUND, SRC_LOG):
            fut = self._pending.pop(source, None)
            if fut is not None:
                fut.cancel()
            self._closed_sources.discard(source)
        self.session = new_session

        def _apply() -> None:
            self.display.clear()
            self.display.set_room(new_session.room_name)

        self.display.queue_update(_apply)
