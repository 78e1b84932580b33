"""
Framing helpers for the signaling connection between peers and the relay.

Every signaling message is a UTF-8 JSON document with a 4-byte big-endian
length prefix so the receiver knows exactly how many bytes to read:

    [ 4 bytes: length ][ N bytes: {"type": ..., "payload": {...}} ]

The relay serves each connection from a blocking thread (send_msg/recv_msg);
peers run on an asyncio loop (write_msg/read_msg).  Both speak the same bytes.
"""

import asyncio
import json
import struct

from .config import MAX_MSG_SIZE

_HEADER = struct.Struct("!I")


def encode_frame(message: dict) -> bytes:
    """Serialize *message* as JSON and prepend the length prefix."""
    data = json.dumps(message, separators=(",", ":")).encode("utf-8")
    return _HEADER.pack(len(data)) + data


def decode_body(data: bytes) -> dict:
    """Parse a frame body.  Raises ValueError if it is not a JSON object."""
    message = json.loads(data.decode("utf-8"))
    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")
    return message


def _check_length(msg_len: int) -> None:
    # A fabricated length prefix must not make us allocate a huge buffer.
    if msg_len > MAX_MSG_SIZE:
        raise ValueError(
            f"Incoming message too large: {msg_len} bytes (max {MAX_MSG_SIZE})"
        )


# ---------------------------------------------------------------------------
# Blocking sockets (relay side)
# ---------------------------------------------------------------------------


def send_msg(sock, message: dict) -> None:
    """Send one framed JSON message."""
    sock.sendall(encode_frame(message))


def recv_msg(sock) -> bytes | None:
    """Receive one frame body.  Returns None on disconnect.

    The body is returned undecoded so a malformed document can be dropped by
    the caller without tearing down the connection.  Raises ValueError if the
    declared length exceeds MAX_MSG_SIZE.
    """
    raw_len = _recv_exactly(sock, _HEADER.size)
    if raw_len is None:
        return None
    msg_len = _HEADER.unpack(raw_len)[0]
    _check_length(msg_len)
    return _recv_exactly(sock, msg_len)


def _recv_exactly(sock, num_bytes: int) -> bytes | None:
    """Read exactly *num_bytes* from the socket. Returns None on disconnect."""
    data = bytearray()
    while len(data) < num_bytes:
        packet = sock.recv(min(65536, num_bytes - len(data)))
        if not packet:
            return None
        data.extend(packet)
    return bytes(data)


# ---------------------------------------------------------------------------
# asyncio streams (peer side)
# ---------------------------------------------------------------------------


async def write_msg(writer: asyncio.StreamWriter, message: dict) -> None:
    writer.write(encode_frame(message))
    await writer.drain()


async def read_msg(reader: asyncio.StreamReader) -> bytes | None:
    """Async counterpart of recv_msg.  Returns None on disconnect."""
    try:
        raw_len = await reader.readexactly(_HEADER.size)
        msg_len = _HEADER.unpack(raw_len)[0]
        _check_length(msg_len)
        return await reader.readexactly(msg_len)
    except asyncio.IncompleteReadError:
        return None
