"""
Signaling client — a peer's long-lived connection to the relay.

Outbound: join-room, leave-room and relay-message frames.  Inbound frames are
decoded and passed to an async handler one at a time, in arrival order; frames
that are not valid JSON objects are logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging

from typing_extensions import Awaitable, Callable

from .config import CONNECT_TIMEOUT
from .framing import decode_body, read_msg, write_msg
from .models import Peer, Room

logger = logging.getLogger(__name__)


class SignalingClient:
    def __init__(
        self,
        host: str,
        port: int,
        on_message: Callable[[dict], Awaitable[None]],
        on_closed: Callable[[], Awaitable[None]] | None = None,
    ):
        self.host = host
        self.port = port
        self._on_message = on_message
        self._on_closed = on_closed
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Open the relay connection and start reading.  Raises OSError on failure."""
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=CONNECT_TIMEOUT
        )
        logger.info("Connected to signaling relay %s:%s", self.host, self.port)
        self._read_task = asyncio.ensure_future(self._read_loop())

    async def close(self) -> None:
        if self._read_task is not None:
            self._read_task.cancel()
            self._read_task = None
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                pass
            self._writer = None

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, kind: str, **payload) -> bool:
        """Send one frame.  Returns False if the relay is unreachable."""
        if not self.connected:
            logger.debug("Not connected, dropping %s", kind)
            return False
        try:
            await write_msg(self._writer, {"type": kind, "payload": payload})
        except (ConnectionError, OSError) as e:
            logger.warning("Sending %s to relay failed: %s", kind, e)
            return False
        return True

    async def join_room(self, room: Room, user: Peer) -> bool:
        return await self.send("join-room", room=room.to_dict(), user=user.to_dict())

    async def leave_room(self, room_id: str) -> bool:
        return await self.send("leave-room", roomId=room_id)

    async def relay(self, target_id: str, message: dict) -> bool:
        return await self.send("relay-message", targetId=target_id, message=message)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    body = await read_msg(self._reader)
                except ValueError as e:
                    logger.error("Relay framing error, disconnecting: %s", e)
                    break
                if body is None:
                    break
                try:
                    message = decode_body(body)
                except ValueError as e:
                    logger.warning("Error parsing signaling message: %s", e)
                    continue
                try:
                    await self._on_message(message)
                except Exception:
                    logger.exception("Error handling signaling message %r", message.get("type"))
        except (ConnectionError, OSError) as e:
            logger.warning("Signaling connection lost: %s", e)
        finally:
            logger.info("Disconnected from signaling relay")
            if self._writer is not None:
                self._writer.close()
                self._writer = None
            if self._on_closed is not None:
                await self._on_closed()
