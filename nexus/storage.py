"""
Local item and blob stores.

The network core only depends on the two small interfaces below.  Items are
kept in memory; blobs can live in memory or as one file per id in a shared
directory.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod

from .exceptions import StorageError
from .models import FileAnnouncement, SharedItem, is_expired

logger = logging.getLogger(__name__)


class ItemStore(ABC):
    @abstractmethod
    def put(self, item: SharedItem) -> None: ...

    @abstractmethod
    def get(self, item_id: str) -> SharedItem | None: ...

    @abstractmethod
    def list_by_room(self, room_id: str) -> list[SharedItem]:
        """Items of *room_id* sorted by created_at."""

    @abstractmethod
    def delete(self, item_id: str) -> None: ...

    @abstractmethod
    def all(self) -> list[SharedItem]: ...


class BlobStore(ABC):
    @abstractmethod
    def put(self, file_id: str, data: bytes) -> None: ...

    @abstractmethod
    def get(self, file_id: str) -> bytes | None: ...

    @abstractmethod
    def has(self, file_id: str) -> bool: ...

    @abstractmethod
    def delete(self, file_id: str) -> None: ...


class MemoryItemStore(ItemStore):
    def __init__(self):
        self._items: dict[str, SharedItem] = {}
        self._lock = threading.Lock()

    def put(self, item: SharedItem) -> None:
        with self._lock:
            self._items[item.id] = item

    def get(self, item_id: str) -> SharedItem | None:
        with self._lock:
            return self._items.get(item_id)

    def list_by_room(self, room_id: str) -> list[SharedItem]:
        with self._lock:
            items = [i for i in self._items.values() if i.room_id == room_id]
        return sorted(items, key=lambda i: i.created_at)

    def delete(self, item_id: str) -> None:
        with self._lock:
            self._items.pop(item_id, None)

    def all(self) -> list[SharedItem]:
        with self._lock:
            return list(self._items.values())


class MemoryBlobStore(BlobStore):
    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    def put(self, file_id: str, data: bytes) -> None:
        self._blobs[file_id] = bytes(data)

    def get(self, file_id: str) -> bytes | None:
        return self._blobs.get(file_id)

    def has(self, file_id: str) -> bool:
        return file_id in self._blobs

    def delete(self, file_id: str) -> None:
        self._blobs.pop(file_id, None)


class DirectoryBlobStore(BlobStore):
    """One file per id under *root*.  Ids never contain path separators."""

    def __init__(self, root: str):
        self.root = root

    def _path(self, file_id: str) -> str:
        name = os.path.basename(file_id)
        if name != file_id or name in ("", ".", ".."):
            raise StorageError(f"Invalid file id: {file_id!r}")
        return os.path.join(self.root, name)

    def put(self, file_id: str, data: bytes) -> None:
        path = self._path(file_id)
        tmp_path = path + ".part"
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            # Never leave a partial blob behind.
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise StorageError(f"Could not write {file_id}: {e}") from e

    def get(self, file_id: str) -> bytes | None:
        try:
            with open(self._path(file_id), "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Could not read {file_id}: {e}") from e

    def has(self, file_id: str) -> bool:
        try:
            return os.path.isfile(self._path(file_id))
        except StorageError:
            return False

    def delete(self, file_id: str) -> None:
        try:
            os.remove(self._path(file_id))
        except FileNotFoundError:
            pass


def purge_expired(item_store: ItemStore, blob_store: BlobStore, now: int) -> list[str]:
    """Delete expired items and the blobs of expired file announcements."""
    removed = []
    for item in item_store.all():
        if not is_expired(item, now):
            continue
        item_store.delete(item.id)
        if isinstance(item, FileAnnouncement):
            blob_store.delete(item.id)
        removed.append(item.id)
    if removed:
        logger.info("Cleanup complete. Removed %d expired items", len(removed))
    return removed
