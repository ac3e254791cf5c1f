"""PeerNet: peer-to-peer terminal chat rooms."""
from peernet.models import ChatLog, ChatMessage, CommandType, LogKind, UICommand
from peernet.session import RoomSession, join_room, switch_room

__version__ = "0.1.0"

__all__ = [
    "ChatLog",
    "ChatMessage",
    "CommandType",
    "LogKind",
    "RoomSession",
    "UICommand",
    "join_room",
    "switch_room",
]
