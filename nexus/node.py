"""
Node — one participant of the peer network.

A Node owns the relay connection, the negotiator's arena of peer connections,
the sync and transfer engines and the local stores, and dispatches every
message between them:

    relay frame    -> room bookkeeping / negotiator signals
    channel open   -> one sync-request to that peer
    channel text   -> item, item-deleted, file-request, transfer start/end,
                      sync-request, sync-response
    channel bytes  -> file chunks

Everything runs on one asyncio loop and no handler blocks it.  UI code learns
about changes through a NodeObserver.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes

from typing_extensions import Callable

from .config import MAINTENANCE_INTERVAL, MESSAGE_TTL_MS, RELAY_PORT, SyncSettings
from .exceptions import ChannelClosedError, ProtocolError
from .models import (
    FileAnnouncement,
    FileInfo,
    Peer,
    Room,
    SharedItem,
    TextItem,
    TransferProgress,
    TransferStatus,
    visible_items,
)
from .negotiator import Negotiator, PeerConnection, Role
from .protocol import (
    ChannelMessage,
    FileRequest,
    FileTransferEnd,
    FileTransferStart,
    ItemDeleted,
    ItemMessage,
    SyncRequest,
    SyncResponse,
    decode_message,
    encode_message,
)
from .signaling import SignalingClient
from .storage import BlobStore, ItemStore, MemoryBlobStore, MemoryItemStore, purge_expired
from .sync import SyncEngine
from .transfer import FileTransferEngine
from .transport import AiortcTransport, Transport
from .utils import new_id, now_ms

logger = logging.getLogger(__name__)


class NodeObserver:
    """Callbacks a UI implements to follow the node.  All default to no-ops."""

    def peers_changed(self, peers: list[Peer]) -> None:
        pass

    def item_received(self, item: SharedItem) -> None:
        pass

    def item_deleted(self, item_id: str, room_id: str) -> None:
        pass

    def transfer_progress(self, progress: TransferProgress) -> None:
        pass

    def connectivity_changed(self, connected: bool) -> None:
        pass

    def rooms_changed(self, rooms: list[Room]) -> None:
        pass


class Node:
    def __init__(
        self,
        user: Peer,
        item_store: ItemStore | None = None,
        blob_store: BlobStore | None = None,
        observer: NodeObserver | None = None,
        relay_host: str = "127.0.0.1",
        relay_port: int = RELAY_PORT,
        transport_factory: Callable[[], Transport] = AiortcTransport,
        settings: SyncSettings | None = None,
        clock: Callable[[], int] = now_ms,
        maintenance_interval: float = MAINTENANCE_INTERVAL,
    ):
        self.user = user
        self.item_store = item_store if item_store is not None else MemoryItemStore()
        self.blob_store = blob_store if blob_store is not None else MemoryBlobStore()
        self.observer = observer or NodeObserver()
        self.clock = clock
        self.maintenance_interval = maintenance_interval

        # Subscribed rooms, and which peers the relay says are in each of them.
        self.rooms: dict[str, Room] = {}
        self.room_directory: list[Room] = []
        self._members: dict[str, set[str]] = {}

        self.signaling = SignalingClient(
            relay_host, relay_port, self._handle_signal, self._on_signaling_closed
        )
        self.negotiator = Negotiator(
            self.signaling.relay,
            transport_factory,
            on_open=self._on_channel_open,
            on_message=self._on_channel_message,
            on_closed=self._on_peer_closed,
        )
        self.sync = SyncEngine(self.item_store, lambda: list(self.rooms), settings)
        self.transfers = FileTransferEngine(
            self.item_store, self.blob_store, on_progress=self._on_progress
        )
        self._maintenance_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await self.signaling.connect()
        self.observer.connectivity_changed(True)
        for room in list(self.rooms.values()):
            await self.signaling.join_room(room, self.user)
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.ensure_future(self._maintenance_loop())

    async def disconnect(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            self._maintenance_task = None
        await self.signaling.close()
        await self.negotiator.close_all()
        self._members.clear()

    @property
    def connected(self) -> bool:
        return self.signaling.connected

    @property
    def peers(self) -> list[Peer]:
        return self.negotiator.peers

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join_room(self, room: Room) -> None:
        self.rooms[room.id] = room
        self._members.setdefault(room.id, set())
        await self.signaling.join_room(room, self.user)

    async def leave_room(self, room_id: str) -> None:
        if self.rooms.pop(room_id, None) is None:
            return
        members = self._members.pop(room_id, set())
        await self.signaling.leave_room(room_id)
        for peer_id in members:
            if not self._shares_room(peer_id):
                await self.negotiator.close(peer_id)

    def _shares_room(self, peer_id: str) -> bool:
        return any(peer_id in members for members in self._members.values())

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def send_text(self, room_id: str, content: str, ttl_ms: int = MESSAGE_TTL_MS) -> TextItem:
        self._require_room(room_id)
        now = self.clock()
        item = TextItem(
            id=new_id(),
            sender=self.user,
            created_at=now,
            expires_at=now + ttl_ms,
            room_id=room_id,
            content=content,
        )
        self.item_store.put(item)
        self._broadcast(ItemMessage(item))
        return item

    def share_file(
        self,
        room_id: str,
        name: str,
        data: bytes,
        mime_type: str | None = None,
        ttl_ms: int = MESSAGE_TTL_MS,
    ) -> FileAnnouncement:
        """Store *data* locally and announce it; peers fetch it on request."""
        self._require_room(room_id)
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        now = self.clock()
        item = FileAnnouncement(
            id=new_id(),
            sender=self.user,
            created_at=now,
            expires_at=now + ttl_ms,
            room_id=room_id,
            file_info=FileInfo(name=name, size=len(data), mime_type=mime_type),
        )
        self.blob_store.put(item.id, data)
        self.item_store.put(item)
        self._broadcast(ItemMessage(item))
        return item

    def request_file(self, item: FileAnnouncement) -> int:
        """Ask every connected peer for *item*'s bytes.  Returns how many were asked."""
        if self.blob_store.has(item.id) or item.id in self.transfers.incoming:
            return 0
        asked = self._broadcast(FileRequest(item.id))
        logger.info("Requested file %s from %d peers", item.file_info.name, asked)
        self._on_progress(
            TransferProgress(
                file_id=item.id,
                file_name=item.file_info.name,
                received_size=0,
                total_size=item.file_info.size,
                status=TransferStatus.STARTING,
            )
        )
        return asked

    def delete_item(self, item_id: str) -> bool:
        item = self.item_store.get(item_id)
        if item is None:
            return False
        self._delete_local(item)
        self._broadcast(ItemDeleted(item.id, item.room_id))
        return True

    def visible_items(self, room_id: str, now: int | None = None) -> list[SharedItem]:
        now = self.clock() if now is None else now
        return visible_items(self.item_store.list_by_room(room_id), now)

    def purge_expired(self, now: int | None = None) -> list[str]:
        now = self.clock() if now is None else now
        items = {item.id: item for item in self.item_store.all()}
        removed = purge_expired(self.item_store, self.blob_store, now)
        for item_id in removed:
            self.observer.item_deleted(item_id, items[item_id].room_id)
        return removed

    def _require_room(self, room_id: str) -> None:
        if room_id not in self.rooms:
            raise ValueError(f"Not subscribed to room {room_id!r}")

    def _delete_local(self, item: SharedItem) -> None:
        self.sync.tombstones.add(item.id)
        self.item_store.delete(item.id)
        if isinstance(item, FileAnnouncement):
            self.blob_store.delete(item.id)
        self.observer.item_deleted(item.id, item.room_id)

    # ------------------------------------------------------------------
    # Relay messages
    # ------------------------------------------------------------------

    async def _handle_signal(self, message: dict) -> None:
        kind = message.get("type")
        payload = message.get("payload") or {}
        if kind == "room-list":
            self.room_directory = [Room.from_dict(r) for r in payload.get("rooms", [])]
            self.observer.rooms_changed(list(self.room_directory))
        elif kind == "room-peers":
            await self._handle_room_peers(payload.get("roomId"), payload.get("peers", []))
        elif kind == "user-joined":
            await self._handle_user_joined(payload.get("roomId"), Peer.from_dict(payload["user"]))
        elif kind == "user-left":
            await self._handle_user_left(payload.get("roomId"), str(payload["userId"]))
        elif kind == "relay-message":
            await self.negotiator.handle_signal(str(payload["senderId"]), payload["message"])
        else:
            logger.warning("Unknown signaling message type: %s", kind)

    async def _handle_room_peers(self, room_id: str | None, peers: list[dict]) -> None:
        members = self._members.setdefault(room_id, set()) if room_id else set()
        for data in peers:
            peer = Peer.from_dict(data)
            if peer.id == self.user.id:
                continue
            members.add(peer.id)
            pc = self.negotiator.get(peer.id)
            if pc is None:
                await self.negotiator.connect(peer, Role.INITIATOR)
            elif pc.is_open and room_id in self.rooms:
                # Already connected through another room: catch up on this one.
                self._send(pc, SyncRequest({room_id: self.sync.watermark(room_id)}))
        self.observer.peers_changed(self.peers)

    async def _handle_user_joined(self, room_id: str | None, peer: Peer) -> None:
        if peer.id == self.user.id:
            return
        if room_id:
            self._members.setdefault(room_id, set()).add(peer.id)
        if peer.id not in self.negotiator:
            logger.info("User joined: %s", peer.name)
            await self.negotiator.connect(peer, Role.RESPONDER)
            self.observer.peers_changed(self.peers)

    async def _handle_user_left(self, room_id: str | None, peer_id: str) -> None:
        if room_id and room_id in self._members:
            self._members[room_id].discard(peer_id)
        else:
            for members in self._members.values():
                members.discard(peer_id)
        if not self._shares_room(peer_id):
            await self.negotiator.close(peer_id)

    async def _on_signaling_closed(self) -> None:
        self.observer.connectivity_changed(False)
        await self.negotiator.close_all()
        self._members.clear()
        self.observer.peers_changed([])

    # ------------------------------------------------------------------
    # Channel messages
    # ------------------------------------------------------------------

    def _on_channel_open(self, pc: PeerConnection) -> None:
        self._send(pc, self.sync.build_request(self.clock()))
        self.observer.peers_changed(self.peers)

    def _on_peer_closed(self, pc: PeerConnection) -> None:
        self.transfers.abandon_peer(pc.peer.id)
        for members in self._members.values():
            members.discard(pc.peer.id)
        self.observer.peers_changed(self.peers)

    def _on_channel_message(self, pc: PeerConnection, data: str | bytes) -> None:
        peer_id = pc.peer.id
        if not isinstance(data, str):
            self.transfers.handle_chunk(peer_id, data)
            return

        try:
            message = decode_message(data)
        except ProtocolError as e:
            logger.warning("Dropping message from %s: %s", pc.peer.name, e)
            return

        if isinstance(message, (ItemMessage, SyncResponse)):
            self._accept_item(message.item)
        elif isinstance(message, ItemDeleted):
            self._apply_deletion(message)
        elif isinstance(message, FileRequest):
            if pc.channel is not None and self.blob_store.has(message.file_id):
                self.transfers.serve_request(peer_id, pc.channel, message.file_id)
        elif isinstance(message, FileTransferStart):
            self.transfers.handle_start(peer_id, message)
        elif isinstance(message, FileTransferEnd):
            self.transfers.handle_end(peer_id, message.file_id)
        elif isinstance(message, SyncRequest):
            for response in self.sync.handle_request(message):
                if not self._send(pc, response):
                    break

    def _accept_item(self, item: SharedItem) -> None:
        if self.sync.accept(item):
            self.observer.item_received(item)

    def _apply_deletion(self, message: ItemDeleted) -> None:
        if message.room_id not in self.rooms:
            return
        item = self.item_store.get(message.item_id)
        if item is None:
            self.sync.tombstones.add(message.item_id)
        elif item.room_id == message.room_id:
            self._delete_local(item)

    def _on_progress(self, progress: TransferProgress) -> None:
        self.observer.transfer_progress(progress)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _send(self, pc: PeerConnection, message: ChannelMessage) -> bool:
        if pc.channel is None:
            return False
        try:
            pc.channel.send(encode_message(message))
        except ChannelClosedError:
            logger.debug("Channel to %s closed, message dropped", pc.peer.name)
            return False
        return True

    def _broadcast(self, message: ChannelMessage) -> int:
        """Send *message* to every open channel.  Returns how many took it."""
        return sum(self._send(pc, message) for pc in self.negotiator.open_connections)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval)
            self.transfers.sweep_stalled()
            self.purge_expired()
