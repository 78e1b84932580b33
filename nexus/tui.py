"""
Nexus TUI — terminal dashboard for chatting and sharing files in rooms.

Built with Textual.  Launched via `nexus chat`.  The app is the Node's
observer: node callbacks arrive on the app's own event loop, so they update
widgets directly.
"""

from __future__ import annotations

import os
from datetime import datetime

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.reactive import reactive
from textual.screen import ModalScreen
from textual.widgets import (
    Button,
    DataTable,
    Footer,
    Header,
    Input,
    Label,
    ListItem,
    ListView,
    RichLog,
    Static,
)

from .config import MESSAGE_TTL_MS, PUBLIC_SQUARE_ROOM_ID, TTL_OPTIONS
from .models import (
    PUBLIC_SQUARE_ROOM,
    FileAnnouncement,
    Peer,
    Room,
    SharedItem,
    TextItem,
    TransferProgress,
    TransferStatus,
)
from .node import Node, NodeObserver
from .utils import format_size, format_time_remaining, room_id_for, save_path


# ==============================================================================
# Notification Widget
# ==============================================================================


class Notification(Static):
    """Toast notification widget."""

    DEFAULT_CSS = """
    Notification {
        dock: top;
        height: auto;
        padding: 1 2;
        margin: 1 4;
        opacity: 0;
        transition: opacity 0.3;
    }
    """

    def __init__(self, message: str, notification_type: str = "info"):
        super().__init__(message)
        self.notification_type = notification_type

    def on_mount(self) -> None:
        self.add_class(self.notification_type)
        self.add_class("visible")
        self.set_timer(3.0, self._hide)

    def _hide(self) -> None:
        self.remove_class("visible")
        self.set_timer(0.3, self.remove)


# ==============================================================================
# Help Modal
# ==============================================================================


class HelpScreen(ModalScreen):
    """Full help overlay."""

    BINDINGS = [Binding("escape", "dismiss", "Close")]

    def compose(self) -> ComposeResult:
        with Container(id="help-dialog"):
            yield Label("NEXUS  Help", id="help-title")
            yield Static(
                "[bold #5ec4ff]Keybindings[/]\n"
                "\n"
                "  [#e0c97f]F1[/]          Show this help\n"
                "  [#e0c97f]t[/]           Toggle theme\n"
                "  [#e0c97f]Tab[/]         Cycle focus between panels\n"
                "  [#e0c97f]Ctrl+Q[/]      Quit Nexus\n"
                "\n"
                "[bold #5ec4ff]Commands[/]\n"
                "\n"
                "  Plain text is sent to the current room.\n"
                "  [#718ca1]/join <room>[/]          Join (or create) a room\n"
                "  [#718ca1]/leave[/]                Leave the current room\n"
                "  [#718ca1]/share <path>[/]         Announce a file\n"
                "  [#718ca1]/get <n>[/]              Download file #n\n"
                "  [#718ca1]/save <n> [dir][/]       Save downloaded file #n\n"
                "  [#718ca1]/delete <n>[/]           Delete item #n everywhere\n"
                "  [#718ca1]/ttl <5m|1h|6h|24h>[/]   Lifetime of new items\n"
                "  [#718ca1]/peers[/]                Show connected peers\n"
                "  [#718ca1]/rooms[/]                Show the room directory\n"
                "  [#718ca1]/quit[/]                 Leave Nexus\n",
                id="help-content",
            )
            yield Button("Close  (Esc)", id="help-close-btn")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "help-close-btn":
            self.dismiss()


# ==============================================================================
# Main TUI App
# ==============================================================================


class NexusApp(App, NodeObserver):
    """Nexus Share — Terminal Dashboard."""

    TITLE = "NEXUS"
    SUB_TITLE = "P2P Rooms & File Sharing"
    CSS_PATH = "styles/nexus.css"
    ENABLE_COMMAND_PALETTE = False

    BINDINGS = [
        Binding("f1", "show_help", "Help", show=True),
        Binding("t", "toggle_app_theme", "Theme", show=False),
        Binding("ctrl+q", "quit_app", "Quit", show=True),
    ]

    current_room_id: reactive[str] = reactive(PUBLIC_SQUARE_ROOM_ID)
    dark_theme: reactive[bool] = reactive(True)

    def __init__(self, node_factory, initial_rooms: list[Room] | None = None):
        super().__init__()
        self.node: Node = node_factory(self)
        self.initial_rooms = initial_rooms or [PUBLIC_SQUARE_ROOM]
        self.ttl_ms = MESSAGE_TTL_MS
        self._shown: list[SharedItem] = []
        self._transfer_rows: set[str] = set()
        self.theme = "textual-dark"

    # --------------------------------------------------------------------------
    # Layout
    # --------------------------------------------------------------------------

    def compose(self) -> ComposeResult:
        yield Header()

        with Horizontal(id="main-container"):
            with Vertical(id="sidebar"):
                yield Label("ROOMS", id="rooms-title")
                yield ListView(id="room-list")
                yield Label("PEERS", id="peers-title")
                yield ListView(id="peer-list")

            with Vertical(id="main-panel"):
                yield Label("", id="room-header-text")
                yield RichLog(id="item-view", markup=True, wrap=True)
                yield Label("TRANSFERS", id="transfers-title")
                yield DataTable(id="transfers-table")

        with Vertical(id="log-panel"):
            yield Label(" LOG", id="log-title")
            yield RichLog(id="log-view", highlight=True, markup=True)

        with Horizontal(id="command-bar"):
            yield Input(
                placeholder="Message, or /help for commands...",
                id="command-input",
            )

        yield Footer()

    # --------------------------------------------------------------------------
    # Startup / shutdown
    # --------------------------------------------------------------------------

    def on_mount(self) -> None:
        table = self.query_one("#transfers-table", DataTable)
        table.add_column("File", key="file")
        table.add_column("Size", key="size")
        table.add_column("Progress", key="progress")
        table.add_column("Status", key="status")
        table.cursor_type = "row"
        table.zebra_stripes = True

        # Countdown labels and expiry.
        self.set_interval(30.0, self._render_items)

        self._log(
            f"Nexus started  [bold #5ec4ff]{self.node.user.name}[/]  "
            f"[#718ca1]{self.node.user.id}[/]"
        )
        self._start_node()

    @work(exclusive=True, group="node")
    async def _start_node(self) -> None:
        signaling = self.node.signaling
        self._log(f"Connecting to relay [#718ca1]{signaling.host}:{signaling.port}[/]...")
        try:
            await self.node.connect()
        except (OSError, TimeoutError) as e:
            self._log(f"[#e74c3c]Could not reach relay:[/] {e}")
            self.show_notification("Relay unreachable", "error")
            return
        for room in self.initial_rooms:
            await self.node.join_room(room)
        self.current_room_id = self.initial_rooms[-1].id
        self._show_room()
        self._refresh_rooms()

    async def action_quit_app(self) -> None:
        self._log("Shutting down...")
        await self.node.disconnect()
        self.exit()

    # --------------------------------------------------------------------------
    # Logging & Notifications
    # --------------------------------------------------------------------------

    def _log(self, message: str) -> None:
        log_view = self.query_one("#log-view", RichLog)
        ts = datetime.now().strftime("%H:%M:%S")
        log_view.write(f"[#41505e]{ts}[/]  {message}")

    def show_notification(self, message: str, notification_type: str = "info") -> None:
        self.mount(Notification(message, notification_type))

    # --------------------------------------------------------------------------
    # Node observer
    # --------------------------------------------------------------------------

    def peers_changed(self, peers: list[Peer]) -> None:
        peer_list = self.query_one("#peer-list", ListView)
        peer_list.clear()
        for peer in sorted(peers, key=lambda p: p.name.lower()):
            pc = self.node.negotiator.get(peer.id)
            dot = "[#00ff9f]●[/]" if pc is not None and pc.is_open else "[#e0c97f]○[/]"
            peer_list.append(ListItem(Static(f"{dot} [bold #5ec4ff]{peer.name}[/]")))

    def item_received(self, item: SharedItem) -> None:
        if item.room_id == self.current_room_id:
            self._render_items()
        else:
            room = self.node.rooms.get(item.room_id)
            self._log(f"New item in [#5ec4ff]{room.name if room else item.room_id}[/]")

    def item_deleted(self, item_id: str, room_id: str) -> None:
        if room_id == self.current_room_id:
            self._render_items()

    def transfer_progress(self, progress: TransferProgress) -> None:
        table = self.query_one("#transfers-table", DataTable)
        status = progress.status.value
        if progress.error:
            status = f"{status}: {progress.error}"
        if progress.file_id not in self._transfer_rows:
            self._transfer_rows.add(progress.file_id)
            table.add_row(
                progress.file_name,
                format_size(progress.total_size),
                f"{progress.percent:.0f}%",
                status,
                key=progress.file_id,
            )
        else:
            table.update_cell(progress.file_id, "progress", f"{progress.percent:.0f}%")
            table.update_cell(progress.file_id, "status", status)

        if progress.status is TransferStatus.COMPLETED:
            self._log(f"[#00ff9f]Received[/] {progress.file_name}")
            self.show_notification(f"Received {progress.file_name}", "success")
        elif progress.status is TransferStatus.FAILED:
            self._log(f"[#e74c3c]Transfer failed:[/] {progress.file_name} ({progress.error})")

    def connectivity_changed(self, connected: bool) -> None:
        if connected:
            self._log("[#00ff9f]Connected[/] to signaling relay")
        else:
            self._log("[#e74c3c]Disconnected[/] from signaling relay")
            self.show_notification("Lost connection to relay", "error")

    def rooms_changed(self, rooms: list[Room]) -> None:
        self._refresh_rooms()

    # --------------------------------------------------------------------------
    # Rendering
    # --------------------------------------------------------------------------

    def watch_current_room_id(self, room_id: str) -> None:
        self._show_room()

    def _show_room(self) -> None:
        room_id = self.current_room_id
        room = self.node.rooms.get(room_id)
        header = self.query_one("#room-header-text", Label)
        header.update(f"ROOM: [bold #5ec4ff]{room.name if room else room_id}[/]")
        self._render_items()

    def _refresh_rooms(self) -> None:
        room_list = self.query_one("#room-list", ListView)
        room_list.clear()
        for room in self.node.rooms.values():
            marker = "[#00ff9f]▸[/]" if room.id == self.current_room_id else " "
            item = ListItem(Static(f"{marker} {room.name}"))
            item.room_id = room.id  # type: ignore[attr-defined]
            room_list.append(item)

    def _render_items(self) -> None:
        view = self.query_one("#item-view", RichLog)
        view.clear()
        now = self.node.clock()
        self._shown = self.node.visible_items(self.current_room_id, now)
        for n, item in enumerate(self._shown, 1):
            ts = datetime.fromtimestamp(item.created_at / 1000).strftime("%H:%M")
            left = format_time_remaining(item.expires_at, now)
            if isinstance(item, TextItem):
                body = item.content
            else:
                info = item.file_info
                held = "✔" if self.node.blob_store.has(item.id) else "↓"
                body = f"[#e0c97f]{held} {info.name}[/] ({format_size(info.size)})"
            view.write(
                f"[#41505e]#{n} {ts}[/] [bold #5ec4ff]{item.sender.name}[/]: "
                f"{body}  [#41505e]{left}[/]"
            )

    def on_list_view_selected(self, event: ListView.Selected) -> None:
        room_id = getattr(event.item, "room_id", None)
        if room_id:
            self.current_room_id = room_id
            self._refresh_rooms()

    # --------------------------------------------------------------------------
    # Actions — keybindings
    # --------------------------------------------------------------------------

    def action_show_help(self) -> None:
        self.push_screen(HelpScreen())

    def action_toggle_app_theme(self) -> None:
        self.dark_theme = not self.dark_theme
        if self.dark_theme:
            self.theme = "textual-dark"
            self.remove_class("app-light")
        else:
            self.theme = "textual-light"
            self.add_class("app-light")

    # --------------------------------------------------------------------------
    # Command input
    # --------------------------------------------------------------------------

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "command-input":
            return

        raw = event.value.strip()
        event.input.value = ""
        if not raw:
            return
        if not raw.startswith("/"):
            self._cmd_send(raw)
            return

        tokens = raw.split()
        cmd = tokens[0].lower()
        args = tokens[1:]

        if cmd == "/help":
            self.action_show_help()
        elif cmd == "/join" and args:
            await self._cmd_join(" ".join(args))
        elif cmd == "/leave":
            await self._cmd_leave()
        elif cmd == "/share" and args:
            self._cmd_share(" ".join(args))
        elif cmd in ("/get", "/save", "/delete") and args:
            item = self._item_at(args[0])
            if item is None:
                return
            if cmd == "/get":
                self._cmd_get(item)
            elif cmd == "/save":
                self._cmd_save(item, args[1] if len(args) > 1 else os.getcwd())
            else:
                self.node.delete_item(item.id)
        elif cmd == "/ttl" and args:
            self._cmd_ttl(args[0])
        elif cmd == "/peers":
            self._cmd_peers()
        elif cmd == "/rooms":
            self._cmd_rooms()
        elif cmd in ("/quit", "/exit"):
            await self.action_quit_app()
        else:
            self._log(f"[#e0c97f]Unknown command:[/] {raw}  (press F1 for help)")

    def _item_at(self, token: str) -> SharedItem | None:
        try:
            return self._shown[int(token.lstrip("#")) - 1]
        except (ValueError, IndexError):
            self._log(f"[#e0c97f]Warning:[/] No item {token} in this room.")
            return None

    def _cmd_send(self, text: str) -> None:
        try:
            self.node.send_text(self.current_room_id, text, self.ttl_ms)
        except ValueError as e:
            self._log(f"[#e74c3c]Error:[/] {e}")
            return
        self._render_items()

    async def _cmd_join(self, name: str) -> None:
        room = next(
            (r for r in self.node.room_directory if name in (r.id, r.name)),
            None,
        )
        if room is None:
            room = Room(id=room_id_for(name), name=name)
        await self.node.join_room(room)
        self.current_room_id = room.id
        self._refresh_rooms()
        self._log(f"Joined room [bold #5ec4ff]{room.name}[/]")

    async def _cmd_leave(self) -> None:
        room_id = self.current_room_id
        if room_id == PUBLIC_SQUARE_ROOM_ID:
            self._log("[#e0c97f]Warning:[/] The public square cannot be left.")
            return
        await self.node.leave_room(room_id)
        self.current_room_id = PUBLIC_SQUARE_ROOM_ID
        self._refresh_rooms()

    def _cmd_ttl(self, option: str) -> None:
        if option not in TTL_OPTIONS:
            self._log(f"[#e0c97f]Warning:[/] TTL must be one of {', '.join(TTL_OPTIONS)}")
            return
        self.ttl_ms = TTL_OPTIONS[option]
        self._log(f"New items expire after [#e0c97f]{option}[/]")

    def _cmd_get(self, item: SharedItem) -> None:
        if not isinstance(item, FileAnnouncement):
            self._log("[#e0c97f]Warning:[/] That item is not a file.")
            return
        if self.node.blob_store.has(item.id):
            self._log(f"{item.file_info.name} is already downloaded. Use /save.")
            return
        if item.id in self.node.transfers.incoming:
            self._log(f"{item.file_info.name} is already downloading.")
            return
        asked = self.node.request_file(item)
        if not asked:
            self._log("[#e0c97f]Warning:[/] No connected peers to ask.")

    @work(thread=True)
    def _cmd_share(self, path: str) -> None:
        path = os.path.expanduser(path)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            self.app.call_from_thread(self._log, f"[#e74c3c]Share failed:[/] {e}")
            return
        self.app.call_from_thread(self._share_loaded, os.path.basename(path), data)

    def _share_loaded(self, name: str, data: bytes) -> None:
        try:
            self.node.share_file(self.current_room_id, name, data, ttl_ms=self.ttl_ms)
        except Exception as e:
            self._log(f"[#e74c3c]Share failed:[/] {e}")
            return
        self._log(f"Shared [bold]{name}[/] ({format_size(len(data))})")
        self._render_items()

    @work(thread=True)
    def _cmd_save(self, item: SharedItem, dest_dir: str) -> None:
        if not isinstance(item, FileAnnouncement):
            self.app.call_from_thread(self._log, "[#e0c97f]Warning:[/] That item is not a file.")
            return
        try:
            data = self.node.blob_store.get(item.id)
            if data is None:
                self.app.call_from_thread(
                    self._log, f"{item.file_info.name} is not downloaded yet. Use /get."
                )
                return
            dest = save_path(dest_dir, item.file_info.name)
            with open(dest, "wb") as f:
                f.write(data)
        except Exception as e:
            self.app.call_from_thread(self._log, f"[#e74c3c]Save failed:[/] {e}")
            return
        self.app.call_from_thread(self._log, f"[#00ff9f]Saved[/] -> [#718ca1]{dest}[/]")

    def _cmd_peers(self) -> None:
        peers = self.node.peers
        if not peers:
            self._log("No peers connected yet.")
        for peer in peers:
            pc = self.node.negotiator.get(peer.id)
            state = pc.state.value if pc is not None else "closed"
            self._log(f"  [bold #5ec4ff]{peer.name}[/]  [#718ca1]{state}[/]")

    def _cmd_rooms(self) -> None:
        for room in self.node.room_directory:
            joined = "[#00ff9f]●[/]" if room.id in self.node.rooms else " "
            self._log(f"  {joined} {room.name}  [#718ca1]{room.id}[/]")


# ==============================================================================
# Entry point (called from peer.py)
# ==============================================================================


def run_tui(node_factory, initial_rooms: list[Room] | None = None) -> None:
    """Launch the Nexus TUI.  *node_factory* builds the Node for a given observer."""
    app = NexusApp(node_factory, initial_rooms)
    app.run()
