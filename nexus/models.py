"""
Data model shared by every layer: peers, rooms, items and transfer progress.

Items travel between peers as JSON using the camelCase field names the browser
clients use, so every model knows how to turn itself into a wire dict and back:

    {"type": "text", "id": ..., "sender": {"id", "name"}, "createdAt": ms,
     "expiresAt": ms, "roomId": ..., "content": ...}
    {"type": "file", ..., "fileInfo": {"name", "size", "type"}}
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from .config import FILE_ID_LENGTH, PUBLIC_SQUARE_ROOM_ID, PUBLIC_SQUARE_ROOM_NAME


@dataclass(frozen=True)
class Peer:
    id: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict) -> Peer:
        return cls(id=str(data["id"]), name=str(data["name"]))


@dataclass(frozen=True)
class Room:
    id: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict) -> Room:
        return cls(id=str(data["id"]), name=str(data["name"]))


PUBLIC_SQUARE_ROOM = Room(PUBLIC_SQUARE_ROOM_ID, PUBLIC_SQUARE_ROOM_NAME)


@dataclass(frozen=True)
class FileInfo:
    name: str
    size: int
    mime_type: str = "application/octet-stream"

    def to_dict(self) -> dict:
        return {"name": self.name, "size": self.size, "type": self.mime_type}

    @classmethod
    def from_dict(cls, data: dict) -> FileInfo:
        size = int(data["size"])
        if size < 0:
            raise ValueError(f"File size must not be negative: {size}")
        return cls(
            name=str(data["name"]),
            size=size,
            mime_type=str(data.get("type") or "application/octet-stream"),
        )


@dataclass(frozen=True)
class _BaseItem:
    id: str
    sender: Peer
    created_at: int
    expires_at: int
    room_id: str

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"Item {self.id} expires ({self.expires_at}) "
                f"before it is created ({self.created_at})"
            )

    def _base_dict(self, kind: str) -> dict:
        return {
            "type": kind,
            "id": self.id,
            "sender": self.sender.to_dict(),
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "roomId": self.room_id,
        }


@dataclass(frozen=True)
class TextItem(_BaseItem):
    content: str = ""

    def to_dict(self) -> dict:
        data = self._base_dict("text")
        data["content"] = self.content
        return data


@dataclass(frozen=True)
class FileAnnouncement(_BaseItem):
    file_info: FileInfo | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.file_info is None:
            raise ValueError(f"File announcement {self.id} has no file info")
        # The id doubles as the prefix of every binary chunk frame.
        if len(self.id) != FILE_ID_LENGTH or not self.id.isascii():
            raise ValueError(
                f"File id must be {FILE_ID_LENGTH} ASCII characters: {self.id!r}"
            )

    def to_dict(self) -> dict:
        data = self._base_dict("file")
        data["fileInfo"] = self.file_info.to_dict()
        return data


SharedItem = Union[TextItem, FileAnnouncement]


def item_from_dict(data: dict) -> SharedItem:
    """Build a SharedItem from its wire dict.

    Raises ValueError if the dict is not a well-formed text or file item.
    """
    try:
        kind = data["type"]
        common = dict(
            id=str(data["id"]),
            sender=Peer.from_dict(data["sender"]),
            created_at=int(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
            room_id=str(data["roomId"]),
        )
        if kind == "text":
            return TextItem(content=str(data["content"]), **common)
        if kind == "file":
            return FileAnnouncement(
                file_info=FileInfo.from_dict(data["fileInfo"]), **common
            )
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed item: {e!r}") from e
    raise ValueError(f"Unknown item type: {kind!r}")


def is_expired(item: SharedItem, now: int) -> bool:
    return item.expires_at <= now


def visible_items(items, now: int) -> list[SharedItem]:
    """Drop expired items and order the rest by creation time."""
    live = [item for item in items if not is_expired(item, now)]
    return sorted(live, key=lambda item: item.created_at)


class TransferStatus(str, Enum):
    STARTING = "starting"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransferProgress:
    file_id: str
    file_name: str
    received_size: int
    total_size: int
    status: TransferStatus
    error: str | None = None

    @property
    def percent(self) -> float:
        if self.total_size <= 0:
            return 100.0
        return self.received_size / self.total_size * 100
