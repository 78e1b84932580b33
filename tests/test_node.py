"""
End-to-end tests for node.py: real relay over loopback, fake peer transports.
"""

import contextlib

import pytest

from conftest import make_file, make_text, wait_until
from nexus.models import Peer, Room, TransferStatus
from nexus.protocol import FileTransferStart
from nexus.node import Node, NodeObserver
from nexus.relay import SignalingRelay

ROOM = Room("R", "Team")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Recorder(NodeObserver):
    def __init__(self):
        self.peers = []
        self.received = []
        self.deleted = []
        self.progress = []
        self.connectivity = []
        self.rooms = []

    def peers_changed(self, peers):
        self.peers.append(list(peers))

    def item_received(self, item):
        self.received.append(item)

    def item_deleted(self, item_id, room_id):
        self.deleted.append((item_id, room_id))

    def transfer_progress(self, progress):
        self.progress.append(progress)

    def connectivity_changed(self, connected):
        self.connectivity.append(connected)

    def rooms_changed(self, rooms):
        self.rooms.append(list(rooms))


@pytest.fixture
def relay():
    server = SignalingRelay(host="127.0.0.1", port=0)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def make_node(relay, network):
    def _make(user_id: str) -> Node:
        host, port = relay.address
        return Node(
            Peer(user_id, user_id.split("-")[0]),
            observer=Recorder(),
            relay_host=host,
            relay_port=port,
            transport_factory=network.transport,
            maintenance_interval=3600,
        )

    return _make


def member_ids(relay, room_id):
    return {p.id for p in relay.members(room_id)}


@contextlib.asynccontextmanager
async def running(*nodes):
    try:
        for node in nodes:
            await node.connect()
        yield nodes
    finally:
        for node in nodes:
            await node.disconnect()


async def meet(relay, a: Node, b: Node, room: Room = ROOM) -> None:
    """a joins first, then b; wait for the channel between them to open."""
    await a.join_room(room)
    await wait_until(lambda: a.user.id in member_ids(relay, room.id))
    await b.join_room(room)
    await wait_until(lambda: a.negotiator.open_connections and b.negotiator.open_connections)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnections:
    @pytest.mark.asyncio
    async def test_roles_follow_discovery_order(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            assert a.negotiator.get("bob-id").role.value == "responder"
            assert b.negotiator.get("alice-id").role.value == "initiator"
            assert [p.id for p in a.peers] == ["bob-id"]

    @pytest.mark.asyncio
    async def test_directory_and_connectivity_reported(self, relay, make_node):
        a = make_node("alice-id")
        async with running(a):
            await a.join_room(ROOM)
            await wait_until(lambda: any("R" in {r.id for r in rooms} for rooms in a.observer.rooms))
            assert a.observer.connectivity == [True]

    @pytest.mark.asyncio
    async def test_one_connection_across_shared_rooms(self, relay, make_node, network):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            other = Room("S", "Side")
            await a.join_room(other)
            await wait_until(lambda: "alice-id" in member_ids(relay, "S"))
            await b.join_room(other)
            await wait_until(lambda: "bob-id" in member_ids(relay, "S"))
            assert len(network.transports) == 2
            assert len(a.peers) == 1

    @pytest.mark.asyncio
    async def test_leaving_last_shared_room_drops_peer(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            await b.leave_room(ROOM.id)
            await wait_until(lambda: a.peers == [] and b.peers == [])

    @pytest.mark.asyncio
    async def test_peer_disconnect_cleans_up(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            await b.disconnect()
            await wait_until(lambda: a.observer.peers and a.observer.peers[-1] == [])

    @pytest.mark.asyncio
    async def test_losing_the_relay_closes_peers(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            relay.stop()
            await wait_until(lambda: a.observer.connectivity[-1] is False)
            await wait_until(lambda: a.peers == [])
            assert not a.connected


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class TestItems:
    @pytest.mark.asyncio
    async def test_late_joiner_is_backfilled(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            m1 = make_text("m1", room_id=ROOM.id, created_at=100, expires_at=200)
            await a.join_room(ROOM)
            a.item_store.put(m1)
            await meet(relay, a, b)
            await wait_until(lambda: b.item_store.get("m1") is not None)
            assert b.item_store.get("m1") == m1
            assert b.observer.received == [m1]

    @pytest.mark.asyncio
    async def test_live_message_reaches_peer(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            item = a.send_text(ROOM.id, "hello", ttl_ms=60_000)
            await wait_until(lambda: b.item_store.get(item.id) is not None)
            assert b.visible_items(ROOM.id) == [item]
            assert item.expires_at - item.created_at == 60_000

    @pytest.mark.asyncio
    async def test_send_requires_subscription(self, make_node):
        a = make_node("alice-id")
        with pytest.raises(ValueError):
            a.send_text("nowhere", "hello")

    @pytest.mark.asyncio
    async def test_delete_propagates_without_revival(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            item = a.send_text(ROOM.id, "oops")
            await wait_until(lambda: b.item_store.get(item.id) is not None)

            assert a.delete_item(item.id) is True
            await wait_until(lambda: b.item_store.get(item.id) is None)
            assert (item.id, ROOM.id) in b.observer.deleted
            assert item.id in b.sync.tombstones
            # A stale copy arriving later is not stored again.
            assert b.sync.accept(item) is False

    @pytest.mark.asyncio
    async def test_delete_unknown_item(self, make_node):
        assert make_node("alice-id").delete_item("missing") is False

    @pytest.mark.asyncio
    async def test_purge_expired_notifies(self, make_node):
        a = make_node("alice-id")
        a.rooms[ROOM.id] = ROOM
        a.item_store.put(make_text("m1", room_id=ROOM.id, created_at=100, expires_at=200))
        assert a.visible_items(ROOM.id, now=300) == []
        assert a.purge_expired(now=300) == ["m1"]
        assert a.observer.deleted == [("m1", ROOM.id)]


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class TestFiles:
    @pytest.mark.asyncio
    async def test_request_downloads_file(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        data = bytes(range(256)) * 200  # four chunks
        async with running(a, b):
            await meet(relay, a, b)
            item = a.share_file(ROOM.id, "notes.txt", data)
            assert item.file_info.mime_type == "text/plain"
            await wait_until(lambda: b.item_store.get(item.id) is not None)

            assert b.request_file(item) == 1
            await wait_until(lambda: b.blob_store.has(item.id))
            assert b.blob_store.get(item.id) == data
            statuses = [p.status for p in b.observer.progress]
            assert statuses[0] is TransferStatus.STARTING
            assert statuses[-1] is TransferStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_request_skipped_when_already_held(self, make_node):
        a = make_node("alice-id")
        a.rooms[ROOM.id] = ROOM
        item = a.share_file(ROOM.id, "a.bin", b"data")
        assert a.request_file(item) == 0
        assert a.observer.progress == []

    @pytest.mark.asyncio
    async def test_request_skipped_while_downloading(self, make_node):
        a = make_node("alice-id")
        a.rooms[ROOM.id] = ROOM
        item = make_file(room_id=ROOM.id, size=100)
        a.item_store.put(item)
        a.transfers.handle_start("bob-id", FileTransferStart(item.id, item.file_info))
        assert a.request_file(item) == 0
        assert [p.status for p in a.observer.progress] == [TransferStatus.STARTING]

    @pytest.mark.asyncio
    async def test_transfer_fails_when_holder_leaves(self, relay, make_node):
        a, b = make_node("alice-id"), make_node("bob-id")
        async with running(a, b):
            await meet(relay, a, b)
            item = a.share_file(ROOM.id, "big.bin", b"x" * 100_000)
            await wait_until(lambda: b.item_store.get(item.id) is not None)
            # Stall the sender so the transfer is still in flight.
            a.negotiator.get("bob-id").channel.buffered = 10 * 1024 * 1024
            b.request_file(item)
            await wait_until(lambda: item.id in b.transfers.incoming)
            await a.disconnect()
            await wait_until(
                lambda: b.observer.progress[-1].status is TransferStatus.FAILED
            )
            assert b.observer.progress[-1].error == "Peer disconnected"
            assert not b.blob_store.has(item.id)
