"""
Catch-up sync between freshly connected peers.

When a channel opens, each side sends one sync-request holding, for every room
it subscribes to, the newest created_at it already has (its watermark).  The
other side answers with one sync-response per stored item of a shared room that
is strictly newer than that watermark.  A response never triggers another
request, and the receiver dedups by item id, so duplicated or reordered
responses are harmless.
"""

from __future__ import annotations

import logging

from typing_extensions import Callable, Iterable

from .config import PUBLIC_SQUARE_ROOM_ID, SyncSettings
from .models import SharedItem
from .protocol import SyncRequest, SyncResponse
from .storage import ItemStore

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(
        self,
        item_store: ItemStore,
        subscribed_rooms: Callable[[], Iterable[str]],
        settings: SyncSettings | None = None,
    ):
        self.item_store = item_store
        self._subscribed_rooms = subscribed_rooms
        self.settings = settings or SyncSettings()
        # Ids deleted locally; a peer that still holds them must not revive them.
        self.tombstones: set[str] = set()

    def watermark(self, room_id: str) -> int:
        items = self.item_store.list_by_room(room_id)
        return max((item.created_at for item in items), default=0)

    def build_request(self, now: int) -> SyncRequest:
        stamps = {}
        for room_id in self._subscribed_rooms():
            if room_id == PUBLIC_SQUARE_ROOM_ID and self.settings.disable_public_square_sync:
                continue
            mark = self.watermark(room_id)
            if self.settings.sync_window_ms is not None:
                mark = max(mark, now - self.settings.sync_window_ms)
            stamps[room_id] = mark
        return SyncRequest(stamps)

    def handle_request(self, request: SyncRequest) -> list[SyncResponse]:
        shared = set(request.room_timestamps) & set(self._subscribed_rooms())
        responses = []
        for room_id in shared:
            mark = request.room_timestamps[room_id]
            for item in self.item_store.list_by_room(room_id):
                if item.created_at > mark:
                    responses.append(SyncResponse(item))
        logger.debug("Answering sync request with %d items", len(responses))
        return responses

    def accept(self, item: SharedItem) -> bool:
        """Store *item* if it is new and belongs to a subscribed room.

        Storing is idempotent: an id already held is never overwritten.
        """
        if item.room_id not in set(self._subscribed_rooms()):
            return False
        if item.id in self.tombstones or self.item_store.get(item.id) is not None:
            return False
        self.item_store.put(item)
        return True
