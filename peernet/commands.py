"""Slash-command parsing for the chat input line."""
from __future__ import annotations

from typing import Dict, Union

from peernet.models import CommandType, OutboundText, UICommand

COMMAND_PREFIX = "/"

COMMANDS: Dict[str, CommandType] = {
    "/exit": CommandType.EXIT,
    "/clear": CommandType.CLEAR,
    "/room": CommandType.ROOM,
    "/user": CommandType.USER,
}

USAGE = (
    "[red]/exit[/red] - exit | "
    "[red]/room <roomname>[/red] - switch rooms | "
    "[red]/user <username>[/red] - change name | "
    "[red]/clear[/red] - clear chat"
)


def parse_command(line: str) -> UICommand:
    """Split ``/word rest`` into a UICommand; unknown words map to UNKNOWN."""
    parts = line.split(" ", 1)
    word = parts[0]
    argument = parts[1].strip() if len(parts) > 1 else ""
    return UICommand(
        type=COMMANDS.get(word.lower(), CommandType.UNKNOWN),
        argument=argument,
        name=word,
    )


def parse_line(line: str) -> Union[OutboundText, UICommand]:
    if line.startswith(COMMAND_PREFIX):
        return parse_command(line)
    return OutboundText(text=line)
