"""
Tests for length-prefixed JSON framing.
"""

import asyncio
import struct

import pytest

from secbridge.framing import MAX_FRAME_SIZE, FrameError, encode_frame, read_frame


def reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class TestFraming:

    @pytest.mark.asyncio
    async def test_two_frames_back_to_back(self):
        reader = reader_with(encode_frame({"n": 1}) + encode_frame({"n": 2, "s": "é"}))
        assert await read_frame(reader) == {"n": 1}
        assert await read_frame(reader) == {"n": 2, "s": "é"}
        with pytest.raises(asyncio.IncompleteReadError):
            await read_frame(reader)

    @pytest.mark.asyncio
    async def test_truncated_frame(self):
        frame = encode_frame({"n": 1})
        with pytest.raises(asyncio.IncompleteReadError):
            await read_frame(reader_with(frame[:-2]))

    @pytest.mark.asyncio
    async def test_oversized_length_is_refused_before_reading(self):
        reader = reader_with(struct.pack("!I", MAX_FRAME_SIZE + 1), eof=False)
        with pytest.raises(FrameError):
            await read_frame(reader)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"[1, 2]", b'"text"', b"not json", b"\xff\xfe"])
    async def test_non_object_payloads(self, body):
        with pytest.raises(FrameError):
            await read_frame(reader_with(struct.pack("!I", len(body)) + body))

    def test_encode_refuses_oversized(self):
        with pytest.raises(FrameError):
            encode_frame({"blob": "x" * MAX_FRAME_SIZE})
