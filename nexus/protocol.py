"""
Channel protocol — the messages exchanged over an open peer data channel.

Text frames carry one JSON document with a "type" discriminator:

    item                 {"item": SharedItem}
    item-deleted         {"itemId", "roomId"}
    file-request         {"fileId"}
    file-transfer-start  {"fileId", "fileInfo"}
    file-transfer-end    {"fileId"}
    sync-request         {"roomTimestamps": {roomId: createdAt}}
    sync-response        {"item": SharedItem}

Binary frames carry file data and are identified purely by their prefix:

    [ 36 bytes: ASCII file id ][ N bytes: chunk ]
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Union

from .config import FILE_ID_LENGTH
from .exceptions import ProtocolError
from .models import FileInfo, SharedItem, item_from_dict


@dataclass(frozen=True)
class ItemMessage:
    item: SharedItem


@dataclass(frozen=True)
class ItemDeleted:
    item_id: str
    room_id: str


@dataclass(frozen=True)
class FileRequest:
    file_id: str


@dataclass(frozen=True)
class FileTransferStart:
    file_id: str
    file_info: FileInfo


@dataclass(frozen=True)
class FileTransferEnd:
    file_id: str


@dataclass(frozen=True)
class SyncRequest:
    room_timestamps: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SyncResponse:
    item: SharedItem


ChannelMessage = Union[
    ItemMessage,
    ItemDeleted,
    FileRequest,
    FileTransferStart,
    FileTransferEnd,
    SyncRequest,
    SyncResponse,
]


# ---------------------------------------------------------------------------
# Text messages
# ---------------------------------------------------------------------------


def encode_message(message: ChannelMessage) -> str:
    if isinstance(message, ItemMessage):
        body = {"type": "item", "item": message.item.to_dict()}
    elif isinstance(message, ItemDeleted):
        body = {
            "type": "item-deleted",
            "itemId": message.item_id,
            "roomId": message.room_id,
        }
    elif isinstance(message, FileRequest):
        body = {"type": "file-request", "fileId": message.file_id}
    elif isinstance(message, FileTransferStart):
        body = {
            "type": "file-transfer-start",
            "fileId": message.file_id,
            "fileInfo": message.file_info.to_dict(),
        }
    elif isinstance(message, FileTransferEnd):
        body = {"type": "file-transfer-end", "fileId": message.file_id}
    elif isinstance(message, SyncRequest):
        body = {"type": "sync-request", "roomTimestamps": dict(message.room_timestamps)}
    elif isinstance(message, SyncResponse):
        body = {"type": "sync-response", "item": message.item.to_dict()}
    else:
        raise TypeError(f"Not a channel message: {message!r}")
    return json.dumps(body, separators=(",", ":"))


def decode_message(text: str) -> ChannelMessage:
    """Parse one text frame.

    Raises ProtocolError for invalid JSON, unknown types or missing fields.
    """
    try:
        body = json.loads(text)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON on channel: {e}") from e
    if not isinstance(body, dict):
        raise ProtocolError("Channel message is not a JSON object")

    kind = body.get("type")
    try:
        if kind == "item":
            return ItemMessage(item_from_dict(body["item"]))
        if kind == "item-deleted":
            return ItemDeleted(str(body["itemId"]), str(body["roomId"]))
        if kind == "file-request":
            return FileRequest(str(body["fileId"]))
        if kind == "file-transfer-start":
            return FileTransferStart(
                str(body["fileId"]), FileInfo.from_dict(body["fileInfo"])
            )
        if kind == "file-transfer-end":
            return FileTransferEnd(str(body["fileId"]))
        if kind == "sync-request":
            stamps = body["roomTimestamps"]
            if not isinstance(stamps, dict):
                raise ValueError("roomTimestamps must be an object")
            return SyncRequest({str(k): int(v) for k, v in stamps.items()})
        if kind == "sync-response":
            return SyncResponse(item_from_dict(body["item"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed {kind!r} message: {e}") from e
    raise ProtocolError(f"Unknown channel message type: {kind!r}")


# ---------------------------------------------------------------------------
# Binary chunk frames
# ---------------------------------------------------------------------------


def encode_chunk(file_id: str, chunk: bytes) -> bytes:
    prefix = file_id.encode("ascii")
    if len(prefix) != FILE_ID_LENGTH:
        raise ValueError(
            f"File id must be {FILE_ID_LENGTH} ASCII characters: {file_id!r}"
        )
    return prefix + chunk


def decode_chunk(frame: bytes) -> tuple[str, bytes]:
    """Split a binary frame into (file_id, chunk).

    Raises ProtocolError if the frame is too short to hold an id and data, or
    the prefix is not ASCII.
    """
    if len(frame) <= FILE_ID_LENGTH:
        raise ProtocolError(
            f"Binary frame of {len(frame)} bytes is too small to contain a file id"
        )
    try:
        file_id = bytes(frame[:FILE_ID_LENGTH]).decode("ascii")
    except UnicodeDecodeError as e:
        raise ProtocolError("Binary frame prefix is not a textual file id") from e
    return file_id, bytes(frame[FILE_ID_LENGTH:])
