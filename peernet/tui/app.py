"""Top-level Textual application."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Optional, Sequence

import anyio
from anyio.streams.memory import MemoryObjectSendStream
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.widgets import Footer, Header, Input, Label, RichLog, Static

from rich.markup import escape as markup_escape

from peernet.commands import USAGE, parse_line
from peernet.config import CHANNEL_CAPACITY, PEER_REFRESH_S, SHUTDOWN_GRACE_S
from peernet.models import ChatLog, LogKind, OutboundText, UICommand
from peernet.multiplexer import PEER_COLOR, EventMultiplexer, format_log
from peernet.session import RoomSession
from peernet.substrate import Network

log = logging.getLogger(__name__)

WELCOME = "Welcome to [bold]PeerNet[/bold]."


def room_title(room_name: str) -> str:
    return f"ChatRoom-{room_name}"


def user_prompt(user_name: str) -> str:
    return f"{user_name} > "


class PeerNetApp(App):
    """PeerNet terminal chat UI; also the multiplexer's display surface."""

    TITLE = "PeerNet"
    BINDINGS = [
        Binding("ctrl+q", "quit", "Quit"),
        Binding("ctrl+l", "clear_log", "Clear"),
        Binding("escape", "focus_input", "Focus input"),
    ]

    CSS = """
    #banner {
        height: 1;
        padding: 0 1;
        color: $text-muted;
    }
    #chat-body {
        height: 1fr;
    }
    #message-log {
        width: 1fr;
        padding: 0 1;
        border: round $primary;
    }
    #peer-list {
        width: 22;
        padding: 0 1;
        border: round $primary-darken-2;
    }
    #input-row {
        height: 3;
    }
    #input-label {
        padding: 1 0 0 1;
        width: auto;
        color: $success;
    }
    #message-input {
        width: 1fr;
    }
    #usage {
        height: 1;
        padding: 0 1;
    }
    """

    def __init__(
        self,
        session: RoomSession,
        network: Network,
        *,
        refresh_s: float = PEER_REFRESH_S,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.session = session
        self.network = network
        self.refresh_s = refresh_s
        self.multiplexer: Optional[EventMultiplexer] = None
        self._messages_send: Optional[MemoryObjectSendStream[str]] = None
        self._commands_send: Optional[MemoryObjectSendStream[UICommand]] = None
        self._mux_task: Optional[asyncio.Task] = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield Static(WELCOME, id="banner")
        with Horizontal(id="chat-body"):
            yield RichLog(id="message-log", markup=True, auto_scroll=True, highlight=False, wrap=True)
            yield RichLog(id="peer-list", markup=True, auto_scroll=False, highlight=False)
        with Horizontal(id="input-row"):
            yield Label(markup_escape(user_prompt(self.session.user_name)), id="input-label")
            yield Input(placeholder="Type a message... (/exit to quit)", id="message-input")
        yield Static(USAGE, id="usage")
        yield Footer()

    async def on_mount(self) -> None:
        self.set_room(self.session.room_name)
        self.query_one("#peer-list", RichLog).border_title = "Peers"

        self._messages_send, messages = anyio.create_memory_object_stream(max_buffer_size=CHANNEL_CAPACITY)
        self._commands_send, commands = anyio.create_memory_object_stream(max_buffer_size=CHANNEL_CAPACITY)
        self.multiplexer = EventMultiplexer(
            self.session, self.network, self, messages, commands, refresh_s=self.refresh_s,
        )
        self._mux_task = asyncio.create_task(self.multiplexer.run(), name="multiplexer")
        self.query_one("#message-input", Input).focus()

    async def on_unmount(self) -> None:
        await self.close_session()

    async def close_session(self) -> None:
        """Stop the multiplexer and leave the active room. Safe to repeat."""
        for stream in (self._messages_send, self._commands_send):
            if stream is not None:
                stream.close()
        if self.multiplexer:
            self.multiplexer.stop()
        if self._mux_task:
            await asyncio.wait({self._mux_task}, timeout=SHUTDOWN_GRACE_S)
            if not self._mux_task.done():
                log.warning("multiplexer did not stop within %.1fs, cancelling", SHUTDOWN_GRACE_S)
                self._mux_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._mux_task
        if self.multiplexer:
            await self.multiplexer.session.exit()

    # ── Display surface ───────────────────────────────────────────────────────

    def queue_update(self, fn: Callable[[], None]) -> None:
        self.call_later(fn)

    def append_line(self, markup: str) -> None:
        self.query_one("#message-log", RichLog).write(markup)

    def clear(self) -> None:
        self.query_one("#message-log", RichLog).clear()

    def set_room(self, room_name: str) -> None:
        self.query_one("#message-log", RichLog).border_title = markup_escape(room_title(room_name))
        self.sub_title = room_name

    def set_user(self, user_name: str) -> None:
        self.query_one("#input-label", Label).update(markup_escape(user_prompt(user_name)))

    def set_peers(self, peers: Sequence[str]) -> None:
        pane = self.query_one("#peer-list", RichLog)
        pane.clear()
        for label in peers:
            pane.write(f"[{PEER_COLOR}]{markup_escape(label)}[/{PEER_COLOR}]")

    def stop(self) -> None:
        self.exit()

    # ── Input handling ────────────────────────────────────────────────────────

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        line = event.value
        self.query_one("#message-input", Input).value = ""
        if not line:
            return
        parsed = parse_line(line)
        try:
            if isinstance(parsed, OutboundText):
                self._messages_send.send_nowait(parsed.text)
            else:
                self._commands_send.send_nowait(parsed)
        except anyio.WouldBlock:
            self.append_line(format_log(ChatLog(kind=LogKind.ERROR, msg="busy, input dropped")))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            log.debug("input dropped, multiplexer is gone")

    # ── Actions ───────────────────────────────────────────────────────────────

    async def action_quit(self) -> None:
        # Bypasses the command channel, which a stalled publish can block.
        # on_unmount leaves the room.
        if self.multiplexer:
            self.multiplexer.stop()
        self.exit()

    def action_clear_log(self) -> None:
        self.clear()

    def action_focus_input(self) -> None:
        self.query_one("#message-input", Input).focus()
