import asyncio
import json
import struct
from typing import Any, Dict

"""
framing.py — length-prefixed JSON frames for the TCP transport.

Wire format:
- 4-byte big-endian unsigned length N, then N bytes of compact UTF-8 JSON.
- Frames above MAX_FRAME_SIZE are refused on both ends, so a hostile peer
  can't make the relay buffer arbitrary amounts of data.
- Every frame must decode to a JSON object; anything else is a framing error.
"""

MAX_FRAME_SIZE = 1024 * 1024  # 1 MiB hard limit
LENGTH_STRUCT = struct.Struct("!I")


class FrameError(ValueError):
    """Oversized frame, invalid UTF-8/JSON, or a non-object payload."""


def encode_frame(obj: Dict[str, Any]) -> bytes:
    """Serialize `obj` and prepend its length."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise FrameError(f"Frame too large: {len(payload)} > {MAX_FRAME_SIZE}")
    return LENGTH_STRUCT.pack(len(payload)) + payload


def decode_payload(payload: bytes) -> Dict[str, Any]:
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo.
        raise FrameError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise FrameError("Frame must be a JSON object")
    return obj


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one frame and return the decoded object.

    Raises:
        asyncio.IncompleteReadError: the peer closed mid-frame (or cleanly
            between frames, with partial == b"").
        FrameError: the frame is too big or not a JSON object.
    """
    (length,) = LENGTH_STRUCT.unpack(await reader.readexactly(LENGTH_STRUCT.size))
    if length > MAX_FRAME_SIZE:
        raise FrameError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")
    return decode_payload(await reader.readexactly(length))


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Write one frame and wait for the transport to drain."""
    writer.write(encode_frame(obj))
    await writer.drain()
