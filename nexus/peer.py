"""
Nexus Share — P2P rooms, chat and file sharing.

Main entry point.  Runs either the signaling relay or a peer with the full TUI
dashboard.

Usage:
    nexus relay                         # relay on 0.0.0.0:8080
    nexus relay --port 9000 -v
    nexus chat --name alice             # peer, relay on localhost:8080
    nexus chat --name bob --relay relay.example.org:9000 --room "Team"
"""

import argparse
import logging
import os
import sys

from .config import (
    LOG_FILE,
    PUBLIC_SQUARE_ROOM_ID,
    RELAY_HOST,
    RELAY_PORT,
    SHARED_DIR,
    SyncSettings,
)
from .models import PUBLIC_SQUARE_ROOM, Peer, Room
from .utils import new_id, parse_target, room_id_for

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _setup_logging(verbose: bool, log_file: str | None = None) -> None:
    """Relay logs go to stderr; the TUI owns the terminal, so peers log to a file."""
    level = logging.DEBUG if verbose else logging.INFO
    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)
    # aiortc / aioice are chatty at DEBUG.
    for name in ("aiortc", "aioice"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _run_relay(args: argparse.Namespace) -> None:
    from .relay import SignalingRelay

    _setup_logging(args.verbose)
    relay = SignalingRelay(host=args.host, port=args.port)
    print(f"  Nexus relay listening on {args.host}:{args.port}  (Ctrl+C to stop)")
    try:
        relay.serve_forever()
    except KeyboardInterrupt:
        print("\n  Interrupted. Shutting down...")
    finally:
        relay.stop()


def _run_chat(args: argparse.Namespace) -> None:
    from .node import Node
    from .storage import DirectoryBlobStore, MemoryItemStore
    from .tui import run_tui

    _setup_logging(args.verbose, args.log_file)
    host, port = parse_target(args.relay, RELAY_PORT)
    user = Peer(id=new_id(), name=args.name)
    settings = SyncSettings(
        disable_public_square_sync=args.no_public_sync,
        sync_window_ms=args.sync_window * 60 * 1000 if args.sync_window else None,
    )
    os.makedirs(args.shared_dir, exist_ok=True)
    item_store = MemoryItemStore()
    blob_store = DirectoryBlobStore(args.shared_dir)

    def node_factory(observer):
        return Node(
            user,
            item_store=item_store,
            blob_store=blob_store,
            observer=observer,
            relay_host=host,
            relay_port=port,
            settings=settings,
        )

    rooms = [PUBLIC_SQUARE_ROOM]
    if args.room and args.room not in (PUBLIC_SQUARE_ROOM_ID, PUBLIC_SQUARE_ROOM.name):
        rooms.append(Room(id=room_id_for(args.room), name=args.room))
    run_tui(node_factory, rooms)


def main() -> None:
    parser = argparse.ArgumentParser(description="Nexus Share P2P rooms")
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Run the signaling relay")
    relay.add_argument("--host", default=RELAY_HOST, help="Interface to bind")
    relay.add_argument("--port", type=int, default=RELAY_PORT, help="TCP port to listen on")
    relay.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    chat = sub.add_parser("chat", help="Join the network with the TUI dashboard")
    chat.add_argument("--name", required=True, help="Display name")
    chat.add_argument(
        "--relay", default=f"127.0.0.1:{RELAY_PORT}", help="Relay as host[:port]"
    )
    chat.add_argument("--room", help="Extra room to join on start")
    chat.add_argument("--shared-dir", default=SHARED_DIR, help="Where files are kept")
    chat.add_argument(
        "--sync-window", type=int, metavar="MINUTES",
        help="Only backfill items from the last MINUTES",
    )
    chat.add_argument(
        "--no-public-sync", action="store_true",
        help="Never backfill the public square from peers",
    )
    chat.add_argument("--log-file", default=LOG_FILE, help="Log destination")
    chat.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()
    if args.command == "relay":
        _run_relay(args)
    else:
        _run_chat(args)


if __name__ == "__main__":
    main()
