"""
File transfer engine — chunked sending with backpressure and reassembly.

Send path, run as one task per file-request:

  1. file-transfer-start with the file's full metadata.
  2. CHUNK_SIZE slices of the blob, each sent as [file id][chunk].  Before each
     send the task yields (asyncio.sleep) while the channel's bufferedAmount is
     above the low-water mark.
  3. file-transfer-end.

If the channel closes mid-transfer the task stops; nothing is resumed.

Receive path: a start opens an IncomingTransfer keyed by file id, every binary
frame appends to the transfer named by its prefix, and the end joins the chunks
in arrival order and hands the bytes to the blob store.  Frames for unknown ids,
from a peer other than the one that opened the transfer, or that would run past
the announced size are dropped.  An end that arrives short of the announced
size fails the transfer instead of storing it.
Progress is reported through a single callback:

    starting (0 bytes) -> progress ... -> completed | failed
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from typing_extensions import Callable

from .config import (
    BACKPRESSURE_POLL_INTERVAL,
    BUFFER_LOW_WATER_MARK,
    CHUNK_SIZE,
    TRANSFER_STALL_TIMEOUT,
)
from .exceptions import ChannelClosedError, ProtocolError
from .models import FileAnnouncement, FileInfo, TransferProgress, TransferStatus
from .protocol import (
    FileTransferEnd,
    FileTransferStart,
    decode_chunk,
    encode_chunk,
    encode_message,
)
from .storage import BlobStore, ItemStore
from .transport import DataChannel

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferProgress], None]


@dataclass
class IncomingTransfer:
    file_id: str
    peer_id: str
    file_info: FileInfo
    chunks: list[bytes] = field(default_factory=list)
    received_size: int = 0
    last_activity: float = field(default_factory=time.monotonic)


class FileTransferEngine:
    def __init__(
        self,
        item_store: ItemStore,
        blob_store: BlobStore,
        on_progress: ProgressCallback | None = None,
        chunk_size: int = CHUNK_SIZE,
        low_water_mark: int = BUFFER_LOW_WATER_MARK,
        poll_interval: float = BACKPRESSURE_POLL_INTERVAL,
        stall_timeout: float = TRANSFER_STALL_TIMEOUT,
    ):
        self.item_store = item_store
        self.blob_store = blob_store
        self.on_progress = on_progress
        self.chunk_size = chunk_size
        self.low_water_mark = low_water_mark
        self.poll_interval = poll_interval
        self.stall_timeout = stall_timeout
        self.incoming: dict[str, IncomingTransfer] = {}
        self._outgoing: dict[str, dict[str, asyncio.Task]] = {}

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------

    def serve_request(self, peer_id: str, channel: DataChannel, file_id: str) -> asyncio.Task:
        """Start sending *file_id* to *peer_id* in the background.

        A repeated request while the same file is still streaming to the same
        peer gets the running task back instead of a second stream.
        """
        tasks = self._outgoing.setdefault(peer_id, {})
        running = tasks.get(file_id)
        if running is not None and not running.done():
            logger.debug("Already sending %s to %s, ignoring request", file_id, peer_id)
            return running

        task = asyncio.ensure_future(self.send_file(channel, file_id))
        tasks[file_id] = task

        def _done(t: asyncio.Task) -> None:
            if tasks.get(file_id) is t:
                del tasks[file_id]
            if not tasks and self._outgoing.get(peer_id) is tasks:
                del self._outgoing[peer_id]

        task.add_done_callback(_done)
        return task

    async def send_file(self, channel: DataChannel, file_id: str) -> bool:
        """Stream one held file over *channel*.  Returns True if it was sent in full."""
        if not self.blob_store.has(file_id):
            return False
        item = self.item_store.get(file_id)
        if not isinstance(item, FileAnnouncement):
            logger.warning("No file announcement stored for %s, not sending", file_id)
            return False
        data = self.blob_store.get(file_id)
        if data is None:
            return False

        try:
            channel.send(encode_message(FileTransferStart(file_id, item.file_info)))
            for offset in range(0, len(data), self.chunk_size):
                await self._wait_for_buffer(channel)
                channel.send(encode_chunk(file_id, data[offset:offset + self.chunk_size]))
            channel.send(encode_message(FileTransferEnd(file_id)))
        except ChannelClosedError:
            logger.info("Channel closed while sending %s, abandoning transfer", file_id)
            return False

        logger.info("Finished sending file %s (%d bytes)", item.file_info.name, len(data))
        return True

    async def _wait_for_buffer(self, channel: DataChannel) -> None:
        while channel.buffered_amount > self.low_water_mark:
            if channel.ready_state != "open":
                raise ChannelClosedError("Channel closed while draining")
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def handle_start(self, peer_id: str, message: FileTransferStart) -> None:
        if message.file_id in self.incoming:
            # Already receiving this file, possibly from another holder.
            logger.debug("Ignoring duplicate start for %s", message.file_id)
            return
        logger.info("Starting to receive file: %s", message.file_info.name)
        self.incoming[message.file_id] = IncomingTransfer(
            file_id=message.file_id,
            peer_id=peer_id,
            file_info=message.file_info,
        )
        self._report(message.file_id, message.file_info, 0, TransferStatus.STARTING)

    def handle_chunk(self, peer_id: str, frame: bytes) -> None:
        """Append one binary frame.  Malformed frames are logged and dropped."""
        try:
            file_id, chunk = decode_chunk(frame)
        except ProtocolError as e:
            logger.warning("Dropping binary frame from %s: %s", peer_id, e)
            return

        transfer = self.incoming.get(file_id)
        if transfer is None or transfer.peer_id != peer_id:
            logger.debug("Chunk for unknown or completed transfer %s", file_id)
            return
        if transfer.received_size + len(chunk) > transfer.file_info.size:
            logger.warning(
                "Dropping chunk that overruns %s (%d bytes announced)",
                transfer.file_info.name, transfer.file_info.size,
            )
            return

        transfer.chunks.append(chunk)
        transfer.received_size += len(chunk)
        transfer.last_activity = time.monotonic()
        self._report(
            file_id, transfer.file_info, transfer.received_size, TransferStatus.PROGRESS
        )

    def handle_end(self, peer_id: str, file_id: str) -> bool:
        """Finalize a transfer.  Returns True if the file was stored."""
        transfer = self.incoming.get(file_id)
        if transfer is None or transfer.peer_id != peer_id:
            return False
        del self.incoming[file_id]

        if transfer.received_size != transfer.file_info.size:
            logger.warning(
                "Transfer of %s ended at %d of %d bytes, discarding",
                transfer.file_info.name, transfer.received_size, transfer.file_info.size,
            )
            self._report(
                file_id,
                transfer.file_info,
                transfer.received_size,
                TransferStatus.FAILED,
                error="Size mismatch",
            )
            return False

        data = b"".join(transfer.chunks)
        try:
            self.blob_store.put(file_id, data)
        except Exception as e:
            logger.error("Error storing file %s: %s", transfer.file_info.name, e)
            self._report(
                file_id,
                transfer.file_info,
                transfer.received_size,
                TransferStatus.FAILED,
                error=f"Failed to save file to local storage: {e}",
            )
            return False

        logger.info("File %s received and stored", transfer.file_info.name)
        self._report(file_id, transfer.file_info, len(data), TransferStatus.COMPLETED)
        return True

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def abandon_peer(self, peer_id: str) -> None:
        """Cancel everything in flight with *peer_id*; nothing is resumed."""
        for task in list(self._outgoing.pop(peer_id, {}).values()):
            task.cancel()
        for transfer in [t for t in self.incoming.values() if t.peer_id == peer_id]:
            self._abandon(transfer, "Peer disconnected")

    def sweep_stalled(self, now: float | None = None) -> list[str]:
        """Abandon incoming transfers that have been idle too long."""
        now = time.monotonic() if now is None else now
        stalled = [
            t for t in self.incoming.values()
            if now - t.last_activity > self.stall_timeout
        ]
        for transfer in stalled:
            self._abandon(transfer, "Transfer stalled")
        return [t.file_id for t in stalled]

    def _abandon(self, transfer: IncomingTransfer, reason: str) -> None:
        self.incoming.pop(transfer.file_id, None)
        logger.info("Abandoning transfer of %s: %s", transfer.file_info.name, reason)
        self._report(
            transfer.file_id,
            transfer.file_info,
            transfer.received_size,
            TransferStatus.FAILED,
            error=reason,
        )

    def _report(
        self,
        file_id: str,
        info: FileInfo,
        received: int,
        status: TransferStatus,
        error: str | None = None,
    ) -> None:
        if self.on_progress is None:
            return
        self.on_progress(
            TransferProgress(
                file_id=file_id,
                file_name=info.name,
                received_size=received,
                total_size=info.size,
                status=status,
                error=error,
            )
        )
