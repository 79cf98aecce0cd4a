"""Native messaging framing: 4-byte little-endian length, then UTF-8 JSON."""

from __future__ import annotations

import json
import struct
from typing import Optional

from ..errors import ProtocolError

HEADER = struct.Struct("<I")
MAX_MESSAGE = 1024 * 1024


def encode(message: dict) -> bytes:
    payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
    if len(payload) >= MAX_MESSAGE:
        raise ProtocolError(f"message too large ({len(payload)} bytes)")
    return HEADER.pack(len(payload)) + payload


def _read_exact(stream, n) -> bytes:
    chunks = []
    while n:
        chunk = stream.read(n)
        if not chunk:
            break
        chunks.append(chunk)
        n -= len(chunk)
    return b"".join(chunks)


def read_message(stream) -> Optional[dict]:
    """Next message from a binary stream; None on a clean EOF."""
    header = _read_exact(stream, HEADER.size)
    if not header:
        return None
    if len(header) != HEADER.size:
        raise ProtocolError("truncated length header")
    (length,) = HEADER.unpack(header)
    if length == 0 or length >= MAX_MESSAGE:
        raise ProtocolError(f"bad message length {length}")
    payload = _read_exact(stream, length)
    if len(payload) != length:
        raise ProtocolError("truncated message body")
    try:
        message = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"undecodable message: {e}", recoverable=True) from e
    if not isinstance(message, dict):
        raise ProtocolError("message is not an object", recoverable=True)
    return message


def write_message(stream, message: dict):
    stream.write(encode(message))
    stream.flush()


# ════════════════════════════════════════════════════════════════
#  REPLIES
# ════════════════════════════════════════════════════════════════

def reply(status, progress=None, filepath=None, error=None) -> dict:
    return {"status": status, "progress": progress, "filepath": filepath, "error": error}


def pong():
    return reply("pong")


def recording_started():
    return reply("recording_started")


def uploading():
    return reply("uploading", progress=0)


def processing(progress):
    return reply("processing", progress=int(progress))


def complete(filepath):
    return reply("complete", progress=100, filepath=str(filepath))


def error(message):
    return reply("error", error=str(message))
