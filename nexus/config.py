"""
Configuration constants for the Nexus Share peer network.
"""

import os
from dataclasses import dataclass

# --- Signaling relay ---
RELAY_HOST = "0.0.0.0"       # Interface the relay binds to
RELAY_PORT = 8080            # Default TCP port of the signaling relay
MAX_CONNECTIONS = 200        # Simultaneous client connections served by the relay
MAX_MSG_SIZE = 256 * 1024    # Largest signaling frame accepted (SDP bodies are a few KB)
CONNECT_TIMEOUT = 10         # Seconds to wait for the relay TCP handshake
OUTBOX_LIMIT = 256           # Frames queued for one client before it is dropped as not reading

# --- Data channel / file transfer ---
CHANNEL_LABEL = "main"
CHUNK_SIZE = 16 * 1024                 # Bytes of file data per binary frame
FILE_ID_LENGTH = 36                    # Textual UUID prefix on every binary frame
BUFFER_LOW_WATER_MARK = 64 * 1024      # Pause sending while more than this is queued
BACKPRESSURE_POLL_INTERVAL = 0.01      # Seconds between bufferedAmount checks
TRANSFER_STALL_TIMEOUT = 60            # Seconds without a chunk before an incoming transfer is dropped
MAINTENANCE_INTERVAL = 15              # Seconds between stall sweeps / expiry purges

# --- Connectivity ---
ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]

# --- Items ---
MESSAGE_TTL_MS = 24 * 60 * 60 * 1000   # 1 day
TTL_OPTIONS = {
    "5m": 5 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "6h": 6 * 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
}

PUBLIC_SQUARE_ROOM_ID = "public-square"
PUBLIC_SQUARE_ROOM_NAME = "Public Square"

# --- Local storage ---
NEXUS_HOME = os.path.join(os.path.expanduser("~"), ".nexus")
SHARED_DIR = os.path.join(NEXUS_HOME, "files")
LOG_FILE = os.path.join(NEXUS_HOME, "nexus.log")


@dataclass
class SyncSettings:
    """User preferences that shape catch-up requests."""

    # Never backfill the default room from peers.
    disable_public_square_sync: bool = False
    # Only ask for items newer than now - window. None means all time.
    sync_window_ms: int | None = None
