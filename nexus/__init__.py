"""
Nexus Share - P2P rooms, chat and file sharing

Peers meet through a small signaling relay, then talk over direct data
channels: ephemeral messages, file announcements with chunked downloads, and
catch-up sync when a new peer connects.
"""

__version__ = "0.3.0"

from .config import (
    CHUNK_SIZE,
    FILE_ID_LENGTH,
    MESSAGE_TTL_MS,
    PUBLIC_SQUARE_ROOM_ID,
    RELAY_PORT,
    SyncSettings,
)
from .exceptions import ChannelClosedError, NexusError, ProtocolError, StorageError
from .models import (
    PUBLIC_SQUARE_ROOM,
    FileAnnouncement,
    FileInfo,
    Peer,
    Room,
    TextItem,
    TransferProgress,
    TransferStatus,
)
from .node import Node, NodeObserver
from .relay import SignalingRelay

__all__ = [
    "CHUNK_SIZE",
    "FILE_ID_LENGTH",
    "MESSAGE_TTL_MS",
    "PUBLIC_SQUARE_ROOM_ID",
    "RELAY_PORT",
    "SyncSettings",
    "NexusError",
    "ProtocolError",
    "StorageError",
    "ChannelClosedError",
    "PUBLIC_SQUARE_ROOM",
    "Peer",
    "Room",
    "FileInfo",
    "TextItem",
    "FileAnnouncement",
    "TransferProgress",
    "TransferStatus",
    "Node",
    "NodeObserver",
    "SignalingRelay",
]
