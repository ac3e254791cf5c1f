from __future__ import annotations

import asyncio
import json
import socket
from typing import Any, Dict, Optional, Tuple

from peernet.config import MSG_MAX


def parse_hostport(s: str) -> Tuple[str, int]:
    if ":" not in s:
        raise ValueError("Expected host:port")
    host, port_s = s.rsplit(":", 1)
    host = host.strip("[]")
    return host, int(port_s)


def canonical_peer_addr(host: str, port: int) -> str:
    return f"{host}:{port}"


def detect_local_ip() -> str:
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return str(s.getsockname()[0])
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"


def public_addr_hint(bind: str, port: int) -> str:
    host = bind if bind and bind != "0.0.0.0" else detect_local_ip()
    return canonical_peer_addr(host, port)


def encode_frame(obj: Dict[str, Any]) -> bytes:
    raw = (json.dumps(obj, separators=(",", ":")) + "\n").encode("utf-8")
    if len(raw) > MSG_MAX:
        raise ValueError("Frame too large")
    return raw


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    writer.write(encode_frame(obj))
    await writer.drain()


async def read_frame(
    reader: asyncio.StreamReader, timeout: Optional[float] = None
) -> Dict[str, Any]:
    """Read one newline-delimited JSON object.

    Raises EOFError when the peer hung up and ValueError for oversized or
    non-object frames. *timeout* of None waits indefinitely.
    """
    if timeout is None:
        line = await reader.readline()
    else:
        line = await asyncio.wait_for(reader.readline(), timeout=timeout)
    if not line:
        raise EOFError
    if len(line) > MSG_MAX:
        raise ValueError("Frame too large")
    obj = json.loads(line.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("Frame must be a JSON object")
    return obj
