from __future__ import annotations

import dataclasses
import enum


@dataclasses.dataclass(frozen=True)
class ChatMessage:
    message: str
    sender_id: str
    sender_name: str


class LogKind(str, enum.Enum):
    INFO = "info"
    ERROR = "error"
    PUBLISH_ERROR = "puberr"
    SUBSCRIBE_ERROR = "suberr"


@dataclasses.dataclass(frozen=True)
class ChatLog:
    kind: LogKind
    msg: str

    @property
    def is_error(self) -> bool:
        return self.kind is not LogKind.INFO


class CommandType(enum.Enum):
    EXIT = "exit"
    CLEAR = "clear"
    ROOM = "room"
    USER = "user"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class UICommand:
    type: CommandType
    argument: str = ""
    name: str = ""  # command word as typed, e.g. "/room"

    @property
    def has_argument(self) -> bool:
        return bool(self.argument)


@dataclasses.dataclass(frozen=True)
class OutboundText:
    """A plain chat line, sent verbatim."""
    text: str

