"""
Tests for relay.py — room membership, signal routing and the room directory,
driven over real loopback connections.
"""

import socket
import threading
import time

import pytest

from nexus.config import PUBLIC_SQUARE_ROOM_ID
from nexus.framing import decode_body, recv_msg, send_msg
from nexus.relay import SignalingRelay


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Client:
    """A bare relay client speaking the framed JSON protocol."""

    def __init__(
        self, address, user_id: str, name: str | None = None, rcvbuf: int | None = None
    ):
        self.user = {"id": user_id, "name": name or user_id}
        if rcvbuf is None:
            self.sock = socket.create_connection(address, timeout=5)
        else:
            # A small window makes the relay's writes back up quickly.
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, rcvbuf)
            self.sock.settimeout(5)
            self.sock.connect(address)

    def send(self, kind: str, **payload) -> None:
        send_msg(self.sock, {"type": kind, "payload": payload})

    def recv(self) -> dict:
        body = recv_msg(self.sock)
        assert body is not None, "relay closed the connection"
        return decode_body(body)

    def recv_type(self, kind: str) -> dict:
        """Skip messages until one of *kind* arrives; return its payload."""
        while True:
            message = self.recv()
            if message["type"] == kind:
                return message["payload"]

    def join(self, room_id: str, name: str | None = None) -> dict:
        self.send("join-room", room={"id": room_id, "name": name or room_id}, user=self.user)
        return self.recv_type("room-peers")

    def close(self) -> None:
        self.sock.close()


@pytest.fixture
def relay():
    server = SignalingRelay(host="127.0.0.1", port=0)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def connect(relay):
    clients = []

    def _connect(user_id: str, **kwargs) -> Client:
        client = Client(relay.address, user_id, **kwargs)
        clients.append(client)
        return client

    yield _connect
    for client in clients:
        client.close()


def room_ids(payload: dict) -> set[str]:
    return {room["id"] for room in payload["rooms"]}


def wait_for_directory(client: Client, predicate) -> set[str]:
    """Read room-list messages until one satisfies *predicate*."""
    while True:
        rooms = room_ids(client.recv_type("room-list"))
        if predicate(rooms):
            return rooms


def wait_for_connections(relay: SignalingRelay, count: int) -> None:
    deadline = time.monotonic() + 5
    while len(relay._connections) != count:
        assert time.monotonic() < deadline, "relay never noticed the disconnect"
        time.sleep(0.01)


def eventually(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition never held"
        time.sleep(0.01)


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


class TestJoin:
    def test_new_connection_receives_directory(self, connect):
        a = connect("a")
        first = a.recv()
        assert first["type"] == "room-list"
        assert PUBLIC_SQUARE_ROOM_ID in room_ids(first["payload"])

    def test_first_member_sees_empty_room(self, connect):
        a = connect("a")
        assert a.join("R") == {"roomId": "R", "peers": []}

    def test_joiner_gets_snapshot_and_members_get_announcement(self, connect):
        a, b = connect("a"), connect("b")
        a.join("R")
        peers = b.join("R")
        assert peers == {"roomId": "R", "peers": [{"id": "a", "name": "a"}]}
        assert a.recv_type("user-joined") == {"roomId": "R", "user": {"id": "b", "name": "b"}}

    def test_rejoin_is_not_announced_twice(self, connect, relay):
        a, b = connect("a"), connect("b")
        a.join("R")
        b.join("R")
        b.join("R")
        a.recv_type("user-joined")
        b.send("relay-message", targetId="a", message={"n": 1})
        # The next thing a sees is the relayed signal, not a second user-joined.
        assert a.recv_type("relay-message")["message"] == {"n": 1}
        assert [p.id for p in relay.members("R")] == ["a", "b"]

    def test_new_room_broadcasts_directory(self, connect):
        a, b = connect("a"), connect("b")
        a.join("Team")
        assert "Team" in wait_for_directory(b, lambda rooms: "Team" in rooms)

    def test_connection_may_join_many_rooms(self, connect, relay):
        a = connect("a")
        a.join("R")
        a.join("S")
        assert [p.id for p in relay.members("R")] == ["a"]
        assert [p.id for p in relay.members("S")] == ["a"]


class TestLeave:
    def test_leave_notifies_remaining_members(self, connect, relay):
        a, b = connect("a"), connect("b")
        a.join(PUBLIC_SQUARE_ROOM_ID)
        b.join(PUBLIC_SQUARE_ROOM_ID)
        a.recv_type("user-joined")
        b.send("leave-room", roomId=PUBLIC_SQUARE_ROOM_ID)
        assert a.recv_type("user-left") == {"roomId": PUBLIC_SQUARE_ROOM_ID, "userId": "b"}
        assert [p.id for p in relay.members(PUBLIC_SQUARE_ROOM_ID)] == ["a"]

    def test_disconnect_notifies_every_shared_room(self, connect):
        a, b = connect("a"), connect("b")
        for room in ("R", "S"):
            a.join(room)
            b.join(room)
        b.close()
        left = {a.recv_type("user-left")["roomId"], a.recv_type("user-left")["roomId"]}
        assert left == {"R", "S"}

    def test_empty_room_removed_from_directory(self, connect, relay):
        a, b = connect("a"), connect("b")
        a.join("Temp")
        wait_for_directory(b, lambda rooms: "Temp" in rooms)
        a.close()
        wait_for_directory(b, lambda rooms: "Temp" not in rooms)
        assert "Temp" not in {r.id for r in relay.room_list()}

    def test_public_square_survives_being_empty(self, connect, relay):
        a = connect("a")
        a.join(PUBLIC_SQUARE_ROOM_ID)
        a.send("leave-room", roomId=PUBLIC_SQUARE_ROOM_ID)
        a.join("R")  # processed after the leave
        assert relay.members(PUBLIC_SQUARE_ROOM_ID) == []
        assert PUBLIC_SQUARE_ROOM_ID in {r.id for r in relay.room_list()}


# ---------------------------------------------------------------------------
# Signal routing
# ---------------------------------------------------------------------------


class TestRelay:
    def test_forwards_payload_tagged_with_sender(self, connect):
        a, b = connect("a"), connect("b")
        a.join("R")
        b.join("R")
        offer = {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}}
        b.send("relay-message", targetId="a", message=offer)
        assert a.recv_type("relay-message") == {"senderId": "b", "message": offer}

    def test_unreachable_target_is_dropped(self, connect):
        a, b, c = connect("a"), connect("b"), connect("c")
        a.join("R")
        b.join("R")
        c.join("Other")
        # c shares no room with a, so this never arrives.
        c.send("relay-message", targetId="a", message={"from": "c"})
        c.join("Other2")  # processed after the relay attempt
        b.send("relay-message", targetId="a", message={"from": "b"})
        assert a.recv_type("relay-message")["message"] == {"from": "b"}

    def test_malformed_message_keeps_connection(self, connect):
        a, b = connect("a"), connect("b")
        a.join("R")
        b.join("R")
        b.send("join-room", room={"id": "X"})  # no user
        b.send("bogus")
        b.send("relay-message", targetId="a", message={"ok": True})
        assert a.recv_type("relay-message")["message"] == {"ok": True}


class TestReconnect:
    def test_stale_connection_does_not_evict_new_one(self, connect, relay):
        old = connect("a")
        old.join("R")
        new = connect("a")
        new.join("R")
        old.close()
        wait_for_connections(relay, 1)
        watcher = connect("w")
        peers = watcher.join("R")
        assert peers["peers"] == [{"id": "a", "name": "a"}]


# ---------------------------------------------------------------------------
# Slow readers and concurrency
# ---------------------------------------------------------------------------

BLOB = "x" * 200_000


def flood(sender: Client, target_id: str, count: int) -> None:
    for _ in range(count):
        sender.send("relay-message", targetId=target_id, message={"blob": BLOB})


class TestSlowReaders:
    def test_client_that_never_reads_does_not_stall_others(self, connect):
        a = connect("a", rcvbuf=4096)
        a.join("R")
        b = connect("b")
        b.join("R")
        flood(b, "a", 40)

        # a reads nothing from here on; everyone else is still served.
        c = connect("c")
        assert {p["id"] for p in c.join("R")["peers"]} == {"a", "b"}
        assert b.recv_type("user-joined")["user"]["id"] == "c"
        d = connect("d")
        assert d.recv()["type"] == "room-list"

    def test_overflowing_outbox_drops_the_client(self):
        relay = SignalingRelay(host="127.0.0.1", port=0, outbox_limit=4)
        relay.start()
        a = Client(relay.address, "a", rcvbuf=4096)
        b = Client(relay.address, "b")
        try:
            a.join("R")
            b.join("R")
            flood(b, "a", 60)
            assert b.recv_type("user-left") == {"roomId": "R", "userId": "a"}
            assert [p.id for p in relay.members("R")] == ["b"]
        finally:
            a.close()
            b.close()
            relay.stop()


class TestConcurrency:
    def run_together(self, clients, action) -> None:
        barrier = threading.Barrier(len(clients))
        errors = []

        def run(index, client):
            try:
                barrier.wait(timeout=5)
                action(index, client)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=run, args=(i, c)) for i, c in enumerate(clients)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert errors == []

    def test_concurrent_joins_and_leaves(self, connect, relay):
        clients = [connect(f"p{i}") for i in range(20)]

        def join_then_maybe_leave(index, client):
            client.join("Busy")
            if index % 2:
                client.send("leave-room", roomId="Busy")

        self.run_together(clients, join_then_maybe_leave)

        stayed = {f"p{i}" for i in range(0, 20, 2)}
        eventually(lambda: {p.id for p in relay.members("Busy")} == stayed)
        assert "Busy" in {r.id for r in relay.room_list()}

        for client in clients[::2]:
            client.send("leave-room", roomId="Busy")
        eventually(lambda: "Busy" not in {r.id for r in relay.room_list()})
        watcher = connect("w")
        assert "Busy" not in room_ids(watcher.recv()["payload"])

    def test_concurrent_room_creation_and_disconnects(self, connect, relay):
        clients = [connect(f"p{i}") for i in range(12)]
        self.run_together(clients, lambda i, client: client.join(f"room-{i}"))

        created = {f"room-{i}" for i in range(12)}
        assert created <= {r.id for r in relay.room_list()}
        watcher = connect("w")
        assert created <= room_ids(watcher.recv()["payload"])

        self.run_together(clients, lambda i, client: client.close())
        eventually(lambda: not created & {r.id for r in relay.room_list()})
        assert {r.id for r in relay.room_list()} == {PUBLIC_SQUARE_ROOM_ID}
