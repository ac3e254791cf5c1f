"""JSON codec for the ChatMessage wire envelope.

Wire shape: ``{"message": ..., "senderid": ..., "sendername": ...}``.
Unknown keys are ignored so newer peers can add fields; a missing key
decodes as an empty string.
"""
from __future__ import annotations

import json

from peernet.models import ChatMessage

K_MESSAGE = "message"
K_SENDER_ID = "senderid"
K_SENDER_NAME = "sendername"


def encode(msg: ChatMessage) -> bytes:
    for value in (msg.message, msg.sender_id, msg.sender_name):
        if not isinstance(value, str):
            raise TypeError(f"ChatMessage fields must be str, got {type(value).__name__}")
    payload = {
        K_MESSAGE: msg.message,
        K_SENDER_ID: msg.sender_id,
        K_SENDER_NAME: msg.sender_name,
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(data: bytes) -> ChatMessage:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"invalid chat payload: {e}") from e
    if not isinstance(obj, dict):
        raise ValueError("chat payload must be a JSON object")

    fields = {}
    for key in (K_MESSAGE, K_SENDER_ID, K_SENDER_NAME):
        value = obj.get(key, "")
        if not isinstance(value, str):
            raise ValueError(f"field {key!r} must be a string")
        fields[key] = value
    return ChatMessage(
        message=fields[K_MESSAGE],
        sender_id=fields[K_SENDER_ID],
        sender_name=fields[K_SENDER_NAME],
    )
