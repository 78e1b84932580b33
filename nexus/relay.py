"""
Signaling relay — a stateless rendezvous point for peers.

Peers open one long-lived TCP connection each, announce themselves by joining
rooms, and use the relay purely as a pipe for connection-negotiation messages
(offers, answers, candidates).  The relay never sees chat content or files.

Each client connection is handled in its own thread.  A semaphore limits the
number of concurrent handler threads to MAX_CONNECTIONS.  All membership state
lives in memory and is lost on restart:

    rooms:    {room_id -> {peer_id -> _Connection}}
    room_info:{room_id -> Room}
    users:    {peer_id -> Peer}

Every read-modify-write of these maps happens under a single lock.  Sockets are
never written under it: each connection owns a bounded outbox drained by its
own writer thread, and the lock holder only enqueues.  Notifications are queued
in the order the membership changes happen, so no peer ever sees a join and a
leave out of order, and the writer is the only thread touching the socket, so
frames never interleave.  A client that stops reading fills its outbox and is
disconnected; it never stalls the relay.
"""

import logging
import queue
import socket
import threading
from dataclasses import dataclass, field

from .config import (
    MAX_CONNECTIONS,
    OUTBOX_LIMIT,
    PUBLIC_SQUARE_ROOM_ID,
    RELAY_HOST,
    RELAY_PORT,
)
from .framing import decode_body, recv_msg, send_msg
from .models import PUBLIC_SQUARE_ROOM, Peer, Room

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _Connection:
    """One accepted client socket, the identity it announced and its outbox."""

    sock: socket.socket
    addr: tuple
    outbox_limit: int = OUTBOX_LIMIT
    user: Peer | None = None
    rooms: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self._outbox: queue.Queue = queue.Queue(maxsize=self.outbox_limit)
        self._writer = threading.Thread(target=self._write_loop, daemon=True)
        self._writer.start()

    def send(self, message: dict) -> None:
        """Queue *message* for the writer thread.  Never blocks."""
        try:
            self._outbox.put_nowait(message)
        except queue.Full:
            logger.warning("%s is not reading, dropping its connection", self.addr)
            self.drop()

    def close(self) -> None:
        """Stop the writer once it has flushed what is already queued."""
        try:
            self._outbox.put_nowait(None)
        except queue.Full:
            self.drop()

    def drop(self) -> None:
        # Wakes both the reader (EOF) and a writer blocked in sendall.
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def _write_loop(self) -> None:
        try:
            while True:
                message = self._outbox.get()
                if message is None:
                    return
                send_msg(self.sock, message)
        except OSError as e:
            # The reader thread notices the dead socket and cleans up.
            logger.debug("Send to %s failed: %s", self.addr, e)
            self.drop()
        finally:
            self.sock.close()


# Messages produced by one membership change, in delivery order.
_Outbox = list[tuple[_Connection, dict]]


class SignalingRelay:
    """Multithreaded TCP server tracking room membership and relaying signals."""

    def __init__(
        self,
        host: str = RELAY_HOST,
        port: int = RELAY_PORT,
        outbox_limit: int = OUTBOX_LIMIT,
    ):
        self.host = host
        self.port = port
        self.outbox_limit = outbox_limit
        self._running = False
        self._sock: socket.socket | None = None
        self._ready = threading.Event()
        self._semaphore = threading.Semaphore(MAX_CONNECTIONS)
        self._lock = threading.Lock()
        self._connections: set[_Connection] = set()
        self._rooms: dict[str, dict[str, _Connection]] = {PUBLIC_SQUARE_ROOM_ID: {}}
        self._room_info: dict[str, Room] = {PUBLIC_SQUARE_ROOM_ID: PUBLIC_SQUARE_ROOM}
        self._users: dict[str, Peer] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Bind and start the accept loop in a daemon thread."""
        self._running = True
        thread = threading.Thread(target=self._accept_loop, daemon=True)
        thread.start()
        self._ready.wait(timeout=5)

    def serve_forever(self) -> None:
        """Run the accept loop in the calling thread."""
        self._running = True
        self._accept_loop()

    def stop(self) -> None:
        self._running = False
        if self._sock:
            self._sock.close()
        with self._lock:
            connections = list(self._connections)
        for conn in connections:
            conn.drop()

    @property
    def address(self) -> tuple[str, int]:
        """The (host, port) actually bound; useful when port 0 was requested."""
        if self._sock is None:
            return self.host, self.port
        return self._sock.getsockname()[:2]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def room_list(self) -> list[Room]:
        with self._lock:
            return list(self._room_info.values())

    def members(self, room_id: str) -> list[Peer]:
        with self._lock:
            room = self._rooms.get(room_id, {})
            return [conn.user for conn in room.values() if conn.user]

    # ------------------------------------------------------------------
    # Accept loop
    # ------------------------------------------------------------------

    def _accept_loop(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(50)
        except OSError as e:
            logger.error("Relay could not bind %s:%s: %s", self.host, self.port, e)
            sock.close()
            self._ready.set()
            return
        sock.settimeout(2)  # so we can check self._running periodically
        self._sock = sock
        self._ready.set()
        logger.info("Signaling relay listening on %s:%s", *self.address)

        while self._running:
            try:
                client, addr = sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            if not self._semaphore.acquire(blocking=False):
                logger.warning("Connection limit reached, rejecting %s", addr)
                try:
                    client.close()
                except OSError:
                    pass
                continue

            client.settimeout(None)
            handler = threading.Thread(
                target=self._handle_client, args=(client, addr), daemon=True
            )
            handler.start()

        sock.close()

    # ------------------------------------------------------------------
    # Client handler — reads frames until the peer goes away
    # ------------------------------------------------------------------

    def _handle_client(self, sock: socket.socket, addr: tuple) -> None:
        conn = _Connection(sock=sock, addr=addr, outbox_limit=self.outbox_limit)
        with self._lock:
            self._connections.add(conn)
            conn.send(self._directory_message())
        logger.debug("Accepted connection from %s", addr)

        try:
            while self._running:
                try:
                    body = recv_msg(sock)
                except ValueError as e:
                    logger.warning("Closing %s: %s", addr, e)
                    break
                if body is None:
                    break
                self._dispatch(conn, body)
        except OSError as e:
            logger.debug("Connection %s dropped: %s", addr, e)
        finally:
            self._disconnect(conn)
            conn.drop()
            conn.close()
            self._semaphore.release()

    def _dispatch(self, conn: _Connection, body: bytes) -> None:
        try:
            message = decode_body(body)
            kind = message.get("type")
            payload = message.get("payload") or {}
            if kind == "join-room":
                self._join(conn, Room.from_dict(payload["room"]), Peer.from_dict(payload["user"]))
            elif kind == "leave-room":
                self._leave(conn, str(payload["roomId"]))
            elif kind == "relay-message":
                self._relay(conn, str(payload["targetId"]), payload["message"])
            else:
                logger.warning("Unknown message type %r from %s", kind, conn.addr)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed message from %s: %r", conn.addr, e)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _join(self, conn: _Connection, room: Room, user: Peer) -> None:
        outbox: _Outbox = []
        with self._lock:
            if conn.user is None:
                conn.user = user
                self._users[user.id] = user
            elif conn.user.id != user.id:
                logger.warning(
                    "Connection %s is %s, ignoring join as %s",
                    conn.addr, conn.user.id, user.id,
                )
                return

            members = self._rooms.get(room.id)
            created = members is None
            if created:
                members = self._rooms[room.id] = {}
                self._room_info[room.id] = room

            existing = [c for pid, c in members.items() if pid != user.id]
            if user.id not in members:
                for other in existing:
                    outbox.append(
                        (other, _msg("user-joined", roomId=room.id, user=user.to_dict()))
                    )
            members[user.id] = conn
            conn.rooms.add(room.id)

            outbox.append(
                (
                    conn,
                    _msg(
                        "room-peers",
                        roomId=room.id,
                        peers=[c.user.to_dict() for c in existing],
                    ),
                )
            )
            if created:
                outbox.extend(self._broadcast_directory())
            _deliver(outbox)

        logger.info("User %s joined room %s", user.name, room.id)

    def _leave(self, conn: _Connection, room_id: str) -> None:
        with self._lock:
            if conn.user is None or room_id not in conn.rooms:
                return
            conn.rooms.discard(room_id)
            _deliver(self._remove_member(conn, room_id))
        logger.info("User %s left room %s", conn.user.name, room_id)

    def _relay(self, conn: _Connection, target_id: str, message) -> None:
        with self._lock:
            sender = conn.user
            target = None
            if sender is not None:
                for room_id in conn.rooms:
                    target = self._rooms.get(room_id, {}).get(target_id)
                    if target is not None:
                        break
        if target is None:
            # No shared room: the relay never guarantees delivery.
            logger.debug("Dropping relay from %s to unreachable %s", conn.addr, target_id)
            return
        target.send(_msg("relay-message", senderId=sender.id, message=message))

    def _disconnect(self, conn: _Connection) -> None:
        outbox: _Outbox = []
        with self._lock:
            self._connections.discard(conn)
            if conn.user is not None:
                for room_id in list(conn.rooms):
                    outbox.extend(self._remove_member(conn, room_id))
                conn.rooms.clear()
                # Only forget the identity if no newer connection claimed it.
                still_present = any(
                    conn.user.id in members for members in self._rooms.values()
                )
                if not still_present:
                    self._users.pop(conn.user.id, None)
            _deliver(outbox)
        if conn.user is not None:
            logger.info("User %s disconnected", conn.user.name)

    # ------------------------------------------------------------------
    # Helpers — call with self._lock held
    # ------------------------------------------------------------------

    def _remove_member(self, conn: _Connection, room_id: str) -> _Outbox:
        user_id = conn.user.id
        members = self._rooms.get(room_id)
        # A reconnect may already have replaced this connection.
        if members is None or members.get(user_id) is not conn:
            return []
        del members[user_id]

        if not members and room_id != PUBLIC_SQUARE_ROOM_ID:
            del self._rooms[room_id]
            self._room_info.pop(room_id, None)
            logger.info("Room %s is empty, removing it", room_id)
            return self._broadcast_directory()

        return [
            (other, _msg("user-left", roomId=room_id, userId=user_id))
            for other in members.values()
        ]

    def _directory_message(self) -> dict:
        return _msg("room-list", rooms=[r.to_dict() for r in self._room_info.values()])

    def _broadcast_directory(self) -> _Outbox:
        message = self._directory_message()
        return [(conn, message) for conn in self._connections]


def _msg(kind: str, **payload) -> dict:
    return {"type": kind, "payload": payload}


def _deliver(outbox: _Outbox) -> None:
    """Queue each message on its connection; safe to call with the lock held."""
    for conn, message in outbox:
        conn.send(message)
