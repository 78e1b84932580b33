"""
Connection negotiator — turns a discovered peer into an open data channel.

Every remote peer gets exactly one PeerConnection, whatever rooms we share with
it.  Each connection walks a small state machine:

    IDLE -> NEGOTIATING -> OPEN -> CLOSED

The side that learned about the peer from a room-peers snapshot is the
INITIATOR: it creates the data channel, produces an offer and relays it.  The
side that learned about it from user-joined is the RESPONDER and waits for the
offer and the inbound channel.  Only one side ever creates a channel, so a pair
of peers never ends up with two.

The relay is used purely as a pipe: signals are {"type": "offer" | "answer",
"sdp": ...} or {"type": "candidate", "candidate": {...}} envelopes.

Failures are not retried.  A connection that fails to negotiate, whose
transport reports a terminal state, or whose channel closes is removed from the
arena and reported through on_closed; the peer comes back only if the relay
announces it again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from typing_extensions import Awaitable, Callable

from .config import CHANNEL_LABEL
from .models import Peer
from .transport import TERMINAL_STATES, AiortcTransport, DataChannel, Transport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    CLOSED = "closed"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


@dataclass(eq=False)
class PeerConnection:
    peer: Peer
    transport: Transport
    role: Role
    channel: DataChannel | None = None
    state: ConnectionState = ConnectionState.IDLE
    remote_description_set: bool = False
    # Candidates that arrived before the remote description.
    pending_candidates: list[dict] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return (
            self.state is ConnectionState.OPEN
            and self.channel is not None
            and self.channel.ready_state == "open"
        )


SendSignal = Callable[[str, dict], Awaitable[None]]


class Negotiator:
    """Arena of PeerConnections keyed by remote peer id."""

    def __init__(
        self,
        send_signal: SendSignal,
        transport_factory: Callable[[], Transport] = AiortcTransport,
        on_open: Callable[[PeerConnection], None] | None = None,
        on_message: Callable[[PeerConnection, str | bytes], None] | None = None,
        on_closed: Callable[[PeerConnection], None] | None = None,
    ):
        self._send_signal = send_signal
        self._transport_factory = transport_factory
        self.on_open = on_open
        self.on_message = on_message
        self.on_closed = on_closed
        self._connections: dict[str, PeerConnection] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Arena access
    # ------------------------------------------------------------------

    def get(self, peer_id: str) -> PeerConnection | None:
        return self._connections.get(peer_id)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._connections

    @property
    def peers(self) -> list[Peer]:
        return [pc.peer for pc in self._connections.values()]

    @property
    def open_connections(self) -> list[PeerConnection]:
        return [pc for pc in self._connections.values() if pc.is_open]

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def connect(self, peer: Peer, role: Role) -> PeerConnection:
        """Create the connection for *peer* unless one already exists."""
        existing = self._connections.get(peer.id)
        if existing is not None:
            return existing

        transport = self._transport_factory()
        pc = PeerConnection(peer=peer, transport=transport, role=role)
        self._connections[peer.id] = pc
        self._wire_transport(pc)
        pc.state = ConnectionState.NEGOTIATING
        logger.info("Negotiating with %s as %s", peer.name, role.value)

        if role is Role.INITIATOR:
            self._attach_channel(pc, transport.create_data_channel(CHANNEL_LABEL))
            try:
                offer = await transport.create_offer()
                await transport.set_local_description(offer)
                await self._signal(pc, {"type": "offer", "sdp": transport.local_description})
            except Exception:
                logger.exception("Creating offer for %s failed", peer.name)
                await self.close(peer.id)
        return pc

    async def handle_signal(self, sender_id: str, message: dict) -> None:
        """Apply an offer, answer or candidate relayed from *sender_id*."""
        pc = self._connections.get(sender_id)
        if pc is None:
            logger.warning("Received relay message from unknown peer: %s", sender_id)
            return

        kind = message.get("type") if isinstance(message, dict) else None
        try:
            if kind == "offer":
                await pc.transport.set_remote_description(message["sdp"])
                await self._remote_description_applied(pc)
                answer = await pc.transport.create_answer()
                await pc.transport.set_local_description(answer)
                await self._signal(pc, {"type": "answer", "sdp": pc.transport.local_description})
            elif kind == "answer":
                await pc.transport.set_remote_description(message["sdp"])
                await self._remote_description_applied(pc)
            elif kind == "candidate":
                candidate = message["candidate"]
                if pc.remote_description_set:
                    await pc.transport.add_candidate(candidate)
                else:
                    pc.pending_candidates.append(candidate)
            else:
                logger.warning("Unknown signal %r from %s", kind, pc.peer.name)
        except Exception:
            # Not retried: the peer returns only if the relay announces it again.
            logger.exception("Negotiation with %s failed", pc.peer.name)
            await self.close(sender_id)

    async def _remote_description_applied(self, pc: PeerConnection) -> None:
        pc.remote_description_set = True
        pending, pc.pending_candidates = pc.pending_candidates, []
        for candidate in pending:
            await pc.transport.add_candidate(candidate)

    async def _signal(self, pc: PeerConnection, message: dict) -> None:
        await self._send_signal(pc.peer.id, message)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self, peer_id: str) -> None:
        """Remove the connection to *peer_id* and release its transport."""
        pc = self._connections.pop(peer_id, None)
        if pc is None:
            return
        pc.state = ConnectionState.CLOSED
        logger.info("Connection with %s closed", pc.peer.name)
        if pc.channel is not None:
            pc.channel.on_open = pc.channel.on_message = pc.channel.on_close = None
        try:
            await pc.transport.close()
        except Exception:
            logger.debug("Error closing transport for %s", pc.peer.name, exc_info=True)
        if self.on_closed is not None:
            self.on_closed(pc)

    async def close_all(self) -> None:
        for peer_id in list(self._connections):
            await self.close(peer_id)
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Transport / channel callbacks
    # ------------------------------------------------------------------

    def _wire_transport(self, pc: PeerConnection) -> None:
        transport = pc.transport

        def on_candidate(candidate: dict) -> None:
            if self._connections.get(pc.peer.id) is pc:
                self._spawn(self._signal(pc, {"type": "candidate", "candidate": candidate}))

        def on_state_change(state: str) -> None:
            logger.debug("Connection state with %s: %s", pc.peer.name, state)
            if state in TERMINAL_STATES:
                self._drop(pc)

        def on_data_channel(channel: DataChannel) -> None:
            logger.debug("Data channel received from %s", pc.peer.name)
            self._attach_channel(pc, channel)

        transport.on_candidate = on_candidate
        transport.on_state_change = on_state_change
        transport.on_data_channel = on_data_channel

    def _attach_channel(self, pc: PeerConnection, channel: DataChannel) -> None:
        pc.channel = channel

        def on_open() -> None:
            if pc.state is not ConnectionState.NEGOTIATING:
                return
            pc.state = ConnectionState.OPEN
            logger.info("Data channel with %s is open", pc.peer.name)
            if self.on_open is not None:
                self.on_open(pc)

        def on_message(data: str | bytes) -> None:
            if self.on_message is not None:
                self.on_message(pc, data)

        def on_close() -> None:
            logger.info("Data channel with %s is closed", pc.peer.name)
            self._drop(pc)

        channel.on_open = on_open
        channel.on_message = on_message
        channel.on_close = on_close
        # An inbound channel may already be open when it is announced.
        if channel.ready_state == "open":
            on_open()

    def _drop(self, pc: PeerConnection) -> None:
        if self._connections.get(pc.peer.id) is pc:
            self._spawn(self.close(pc.peer.id))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
