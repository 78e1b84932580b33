"""
Shared fixtures: in-memory stores and a fake transport network.

FakeNetwork hands out FakeTransports that pair up through the offer/answer
exchange itself: each description carries a token naming the transport that
produced it, so once an initiator applies the answer both sides are linked, the
initiator's channel gets a twin on the responder, and both channels open.
Channel sends are delivered on the next loop iteration, like a real transport.
"""

import asyncio
import itertools

import pytest

from nexus.exceptions import ChannelClosedError
from nexus.models import FileAnnouncement, FileInfo, Peer, TextItem
from nexus.storage import MemoryBlobStore, MemoryItemStore
from nexus.transport import DataChannel, Transport


class FakeChannel(DataChannel):
    def __init__(self, label: str = "main", state: str = "connecting"):
        super().__init__()
        self._label = label
        self.state = state
        self.buffered = 0
        self.sent: list = []
        self.remote: "FakeChannel | None" = None

    @property
    def label(self) -> str:
        return self._label

    @property
    def ready_state(self) -> str:
        return self.state

    @property
    def buffered_amount(self) -> int:
        return self.buffered

    def send(self, data) -> None:
        if self.state != "open":
            raise ChannelClosedError("fake channel is not open")
        self.sent.append(data)
        if self.remote is not None:
            asyncio.get_running_loop().call_soon(self.remote._receive, data)

    def _receive(self, data) -> None:
        if self.state == "open" and self.on_message is not None:
            self.on_message(data)

    def open(self) -> None:
        self.state = "open"
        if self.on_open is not None:
            self.on_open()

    def close(self) -> None:
        if self.state == "closed":
            return
        self.state = "closed"
        if self.on_close is not None:
            self.on_close()
        if self.remote is not None:
            asyncio.get_running_loop().call_soon(self.remote.close)


class FakeTransport(Transport):
    def __init__(self, network: "FakeNetwork"):
        super().__init__()
        self.network = network
        self.token = next(network.tokens)
        self.state = "new"
        self.local: dict | None = None
        self.remote_description: dict | None = None
        self.candidates: list[dict] = []
        self.channels: list[FakeChannel] = []
        self.closed = False

    @property
    def connection_state(self) -> str:
        return self.state

    @property
    def local_description(self) -> dict | None:
        return self.local

    async def create_offer(self) -> dict:
        return {"type": "offer", "sdp": f"fake:{self.token}"}

    async def create_answer(self) -> dict:
        if self.remote_description is None:
            raise RuntimeError("answer before offer")
        return {"type": "answer", "sdp": f"fake:{self.token}"}

    async def set_local_description(self, description: dict) -> None:
        self.local = description

    async def set_remote_description(self, description: dict) -> None:
        self.remote_description = description
        if description["type"] == "answer":
            other = self.network.lookup(description["sdp"])
            asyncio.get_running_loop().call_soon(self._establish, other)

    async def add_candidate(self, candidate: dict) -> None:
        self.candidates.append(candidate)

    def create_data_channel(self, label: str) -> DataChannel:
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.closed = True
        self.state = "closed"
        for channel in self.channels:
            channel.close()

    def _establish(self, other: "FakeTransport") -> None:
        if self.closed or other.closed:
            return
        self.state = other.state = "connected"
        for local in self.channels:
            twin = FakeChannel(local.label, state="open")
            local.remote, twin.remote = twin, local
            other.channels.append(twin)
            if other.on_data_channel is not None:
                other.on_data_channel(twin)
            local.open()


class FakeNetwork:
    def __init__(self):
        self.tokens = itertools.count(1)
        self.transports: list[FakeTransport] = []

    def transport(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    def lookup(self, sdp: str) -> FakeTransport:
        token = int(sdp.split(":", 1)[1])
        return next(t for t in self.transports if t.token == token)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll *predicate* on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def item_store():
    return MemoryItemStore()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def alice():
    return Peer("alice-id", "alice")


@pytest.fixture
def bob():
    return Peer("bob-id", "bob")


FILE_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


def make_text(item_id="m1", room_id="R", created_at=100, expires_at=200, sender=None, content="hi"):
    return TextItem(
        id=item_id,
        sender=sender or Peer("alice-id", "alice"),
        created_at=created_at,
        expires_at=expires_at,
        room_id=room_id,
        content=content,
    )


def make_file(item_id=FILE_ID, room_id="R", size=10, name="report.pdf", created_at=100):
    return FileAnnouncement(
        id=item_id,
        sender=Peer("alice-id", "alice"),
        created_at=created_at,
        expires_at=created_at + 10_000,
        room_id=room_id,
        file_info=FileInfo(name=name, size=size, mime_type="application/pdf"),
    )
