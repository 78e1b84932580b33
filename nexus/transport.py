"""
Transport capability interface used by the connection negotiator.

The negotiator only ever talks to a Transport (one per remote peer) and the
DataChannel it yields, so any P2P or relayed byte pipe that can exchange
offer/answer descriptions and connectivity candidates can carry the network.
Session descriptions are plain dicts, {"type": "offer" | "answer", "sdp": str},
and candidates use the browser's RTCIceCandidateInit shape,
{"candidate": str, "sdpMid": str | None, "sdpMLineIndex": int | None}.

Callbacks are plain attributes assigned by the owner and invoked on the event
loop thread:

    Transport.on_candidate(candidate: dict)
    Transport.on_state_change(state: str)       # new/connecting/connected/
                                                # disconnected/failed/closed
    Transport.on_data_channel(channel: DataChannel)
    DataChannel.on_open()
    DataChannel.on_message(data: str | bytes)
    DataChannel.on_close()

AiortcTransport implements the interface with aiortc's RTCPeerConnection.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp
from typing_extensions import Callable

from .config import ICE_SERVERS
from .exceptions import ChannelClosedError

logger = logging.getLogger(__name__)

# Connection states after which a transport never recovers.
TERMINAL_STATES = frozenset({"failed", "disconnected", "closed"})


def _fire(callback: Callable | None, *args) -> None:
    if callback is not None:
        callback(*args)


class DataChannel(ABC):
    """An ordered, bidirectional text-and-bytes stream between two peers."""

    def __init__(self) -> None:
        self.on_open: Callable[[], None] | None = None
        self.on_message: Callable[[str | bytes], None] | None = None
        self.on_close: Callable[[], None] | None = None

    @property
    @abstractmethod
    def label(self) -> str: ...

    @property
    @abstractmethod
    def ready_state(self) -> str:
        """One of 'connecting', 'open', 'closing', 'closed'."""

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued by send() but not yet handed to the network."""

    @abstractmethod
    def send(self, data: str | bytes) -> None:
        """Queue *data*.  Raises ChannelClosedError if the channel is not open."""

    @abstractmethod
    def close(self) -> None: ...


class Transport(ABC):
    """Connection handle to one remote peer."""

    def __init__(self) -> None:
        self.on_candidate: Callable[[dict], None] | None = None
        self.on_state_change: Callable[[str], None] | None = None
        self.on_data_channel: Callable[[DataChannel], None] | None = None

    @property
    @abstractmethod
    def connection_state(self) -> str: ...

    @property
    @abstractmethod
    def local_description(self) -> dict | None:
        """The description to relay, including any candidates gathered for it."""

    @abstractmethod
    async def create_offer(self) -> dict: ...

    @abstractmethod
    async def create_answer(self) -> dict: ...

    @abstractmethod
    async def set_local_description(self, description: dict) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: dict) -> None: ...

    @abstractmethod
    async def add_candidate(self, candidate: dict) -> None: ...

    @abstractmethod
    def create_data_channel(self, label: str) -> DataChannel: ...

    @abstractmethod
    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# aiortc implementation
# ---------------------------------------------------------------------------


def _rtc_configuration(ice_servers: list[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


class AiortcDataChannel(DataChannel):
    def __init__(self, channel: RTCDataChannel):
        super().__init__()
        self._channel = channel
        channel.on("open", lambda: _fire(self.on_open))
        channel.on("message", lambda data: _fire(self.on_message, data))
        channel.on("close", lambda: _fire(self.on_close))

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    def send(self, data: str | bytes) -> None:
        try:
            self._channel.send(data)
        except InvalidStateError as e:
            raise ChannelClosedError(f"Channel {self.label!r} is not open") from e

    def close(self) -> None:
        self._channel.close()


class AiortcTransport(Transport):
    """Transport backed by an aiortc RTCPeerConnection.

    aiortc gathers candidates while the local description is set and embeds
    them in the SDP, so on_candidate is rarely fired; remote trickle candidates
    are still accepted.
    """

    def __init__(self, ice_servers: list[str] | None = None):
        super().__init__()
        servers = ICE_SERVERS if ice_servers is None else ice_servers
        self._pc = RTCPeerConnection(configuration=_rtc_configuration(servers))

        @self._pc.on("connectionstatechange")
        def on_state_change() -> None:
            _fire(self.on_state_change, self._pc.connectionState)

        @self._pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel) -> None:
            _fire(self.on_data_channel, AiortcDataChannel(channel))

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> dict | None:
        desc = self._pc.localDescription
        if desc is None:
            return None
        return {"type": desc.type, "sdp": desc.sdp}

    async def create_offer(self) -> dict:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> dict:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: dict) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: dict) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_candidate(self, candidate: dict) -> None:
        line = candidate.get("candidate") or ""
        if not line:
            # End-of-candidates marker; aiortc needs no notification.
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    def create_data_channel(self, label: str) -> DataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label, ordered=True))

    async def close(self) -> None:
        await self._pc.close()
