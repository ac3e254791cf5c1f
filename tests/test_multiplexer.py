import asyncio

import anyio
import pytest

from peernet.identity import short_id
from peernet.models import ChatLog, CommandType, LogKind, UICommand
from peernet.multiplexer import EventMultiplexer, format_log, format_message
from peernet.session import join_room, topic_for_room

pytestmark = pytest.mark.anyio


class Harness:
    def __init__(self, session, network, display, refresh_s=60.0):
        self.messages, messages_recv = anyio.create_memory_object_stream(max_buffer_size=1)
        self.commands, commands_recv = anyio.create_memory_object_stream(max_buffer_size=1)
        self.mux = EventMultiplexer(
            session, network, display, messages_recv, commands_recv, refresh_s=refresh_s,
        )
        self.task = asyncio.create_task(self.mux.run())

    async def command(self, line_type, argument="", name=""):
        await self.commands.send(UICommand(type=line_type, argument=argument, name=name))

    async def close(self):
        self.mux.stop()
        with anyio.fail_after(2):
            await self.task
        await self.mux.session.exit()


@pytest.fixture
async def alice(make_network):
    net = make_network()
    session = await join_room(net, "alice", "lobby")
    yield net, session
    await session.exit()


def test_format_message_escapes_markup():
    line = format_message("m[a]l", "[bold]boo", "blue")
    assert line.startswith("[blue]<m\\[a]l>[/blue]")
    assert "\\[bold]boo" in line


def test_format_log_colors_by_kind():
    assert format_log(ChatLog(LogKind.ERROR, "nope")) == "[red](error)[/red] nope"
    assert format_log(ChatLog(LogKind.INFO, "fine")) == "[cyan](info)[/cyan] fine"


async def test_every_command_type_has_a_handler(alice, display):
    net, session = alice
    h = Harness(session, net, display)
    try:
        assert set(h.mux._handlers) == set(CommandType)
    finally:
        await h.close()


async def test_typed_text_is_echoed_and_published(alice, make_network, display, eventually):
    net, session = alice
    other = await join_room(make_network(), "bob", "lobby")
    h = Harness(session, net, display)
    try:
        await h.messages.send("hello")
        await eventually(lambda: "[green]<alice>[/green] hello" in display.lines)
        with anyio.fail_after(2):
            msg = await other.inbound.receive()
        assert msg.message == "hello"
    finally:
        await h.close()
        await other.exit()


async def test_inbound_messages_are_shown(alice, make_network, display, eventually):
    net, session = alice
    other = await join_room(make_network(), "bob", "lobby")
    h = Harness(session, net, display)
    try:
        await other.outbound.send("hi there")
        await eventually(lambda: "[blue]<bob>[/blue] hi there" in display.lines)
    finally:
        await h.close()
        await other.exit()


async def test_session_logs_are_shown(alice, make_network, display, eventually):
    net, session = alice
    raw_net = make_network()
    raw = await raw_net.join(topic_for_room("lobby"))
    h = Harness(session, net, display)
    try:
        await raw.publish(b"garbage")
        await eventually(lambda: "[red](suberr)[/red] failed to unmarshal JSON" in display.lines)
    finally:
        await h.close()


async def test_room_without_argument(alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        await h.command(CommandType.ROOM, name="/room")
        await eventually(lambda: "[red](error)[/red] missing room name" in display.lines)
        assert h.mux.session is session
    finally:
        await h.close()


async def test_room_already_joined(alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        await h.command(CommandType.ROOM, "lobby", "/room")
        await eventually(lambda: "[cyan](info)[/cyan] already in room 'lobby'" in display.lines)
        assert h.mux.session is session
        assert session.running()
    finally:
        await h.close()


async def test_user_without_argument(alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        await h.command(CommandType.USER, name="/user")
        await eventually(lambda: "[red](error)[/red] missing username" in display.lines)
        assert session.user_name == "alice"
    finally:
        await h.close()


async def test_user_rename(alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        await h.command(CommandType.USER, "dave", "/user")
        await eventually(lambda: display.user == "dave")
        assert session.user_name == "dave"
        await h.messages.send("still me")
        await eventually(lambda: "[green]<dave>[/green] still me" in display.lines)
    finally:
        await h.close()


async def test_unknown_command(alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        await h.command(CommandType.UNKNOWN, name="/dance")
        await eventually(lambda: "[red](error)[/red] unsupported command: /dance" in display.lines)
    finally:
        await h.close()


async def test_clear(alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        await h.messages.send("soon gone")
        await eventually(lambda: len(display.lines) == 1)
        await h.command(CommandType.CLEAR, name="/clear")
        await eventually(lambda: display.clears == 1)
        assert display.lines == []
    finally:
        await h.close()


async def test_exit_tears_everything_down(alice, display):
    net, session = alice
    h = Harness(session, net, display)
    await h.command(CommandType.EXIT, name="/exit")
    with anyio.fail_after(2):
        await h.task
    assert h.mux.stopped
    assert display.stopped
    assert session.exited
    assert not session.running()


async def test_room_switch_replaces_session(alice, make_network, display, eventually):
    net, session = alice
    other = await join_room(make_network(), "bob", "dev")
    h = Harness(session, net, display)
    try:
        await h.command(CommandType.ROOM, "dev", "/room")
        await eventually(lambda: h.mux.session is not session)
        assert h.mux.session.room_name == "dev"
        assert session.exited
        assert display.room == "dev"
        assert display.clears == 1

        await other.outbound.send("hi alice")
        await eventually(lambda: "[blue]<bob>[/blue] hi alice" in display.lines)
    finally:
        await h.close()
        await other.exit()


async def test_failed_switch_keeps_session(hub, alice, display, eventually):
    net, session = alice
    h = Harness(session, net, display)
    try:
        hub.fail_subscribe = True
        await h.command(CommandType.ROOM, "dev", "/room")
        await eventually(lambda: any("could not switch rooms" in line for line in display.lines))
        hub.fail_subscribe = False

        assert h.mux.session is session
        assert session.running()
        assert display.room == ""
        assert sum("(error)" in line for line in display.lines) == 1
        assert "[cyan](info)[/cyan] switching to room 'dev'" in display.lines
    finally:
        await h.close()


async def test_peer_list_refresh(alice, make_network, display, eventually):
    net, session = alice
    bob_net = make_network()
    other = await join_room(bob_net, "bob", "lobby")
    h = Harness(session, net, display, refresh_s=0.01)
    try:
        await eventually(lambda: display.peers == [short_id(bob_net.peer_id)])
    finally:
        await h.close()
        await other.exit()


async def test_closed_input_stops_the_loop(alice, display):
    net, session = alice
    h = Harness(session, net, display)
    h.messages.close()
    with anyio.fail_after(2):
        await h.task
    assert h.mux.stopped
    await session.exit()


async def test_emit_shows_line_immediately(alice, display):
    net, session = alice
    h = Harness(session, net, display)
    try:
        h.mux.emit(LogKind.INFO, "hello from the loop")
        assert display.lines[-1] == "[cyan](info)[/cyan] hello from the loop"
    finally:
        await h.close()


async def test_stop_is_not_held_up_by_a_stalled_publish(stalled_session, display, eventually):
    session, topic = stalled_session
    h = Harness(session, session.network, display)
    for i in range(3):
        await h.messages.send(f"line {i}")
    # first line stuck in publish, second buffered, third waiting to be queued
    await eventually(lambda: session.outbound.statistics().tasks_waiting_send == 1)
    assert topic.publishing == 1

    h.mux.stop()
    with anyio.fail_after(1):
        await h.task
    assert not any("line 2" in line for line in display.lines)


async def test_stop_wins_over_other_ready_sources(stalled_session, make_network, display, eventually):
    session, _ = stalled_session
    other = await join_room(make_network(), "bob", "lobby")
    h = Harness(session, session.network, display)
    try:
        for i in range(3):
            await h.messages.send(f"line {i}")
        await eventually(lambda: session.outbound.statistics().tasks_waiting_send == 1)

        # queue a command and an inbound message behind the blocked line
        await h.command(CommandType.USER, "dave", "/user")
        await other.outbound.send("are you there?")
        await eventually(
            lambda: session.inbound.statistics().tasks_waiting_receive == 0
            or session.inbound.statistics().current_buffer_used == 1
        )

        h.mux.stop()
        with anyio.fail_after(1):
            await h.task
    finally:
        await other.exit()

    assert session.user_name == "alice"
    assert display.user == ""
    assert not any("are you there?" in line for line in display.lines)
