import asyncio

import pytest

from peernet.config import MSG_MAX
from peernet.transport import encode_frame, parse_hostport, public_addr_hint, read_frame

pytestmark = pytest.mark.anyio


def test_parse_hostport():
    assert parse_hostport("10.0.0.1:9777") == ("10.0.0.1", 9777)
    assert parse_hostport("[::1]:9777") == ("::1", 9777)
    with pytest.raises(ValueError):
        parse_hostport("no-port")


def test_public_addr_hint_keeps_explicit_bind():
    assert public_addr_hint("127.0.0.1", 1234) == "127.0.0.1:1234"


def test_oversized_frame_is_refused():
    with pytest.raises(ValueError):
        encode_frame({"data": "x" * MSG_MAX})


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


async def test_read_frame():
    reader = _reader(encode_frame({"t": "SUB", "topic": "x"}) + b"[1]\n")
    assert await read_frame(reader) == {"t": "SUB", "topic": "x"}
    with pytest.raises(ValueError):
        await read_frame(reader)
    with pytest.raises(EOFError):
        await read_frame(reader)
