"""
Small helpers shared by the CLI, the TUI and the engines.
"""

import os
import re
import time
import uuid

# Windows reserved device names that must never be used as filenames.
_WINDOWS_RESERVED = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE
)


def new_id() -> str:
    """Return a fresh 36-character item / file id."""
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def format_size(size_bytes: int | float) -> str:
    """Human-readable file size."""
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def format_time_remaining(expires_at: int, now: int) -> str:
    """Coarse countdown shown next to an item, e.g. '3h left'."""
    remaining_ms = expires_at - now
    if remaining_ms <= 0:
        return "Expired"

    minutes = remaining_ms // 1000 // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d left"
    if hours > 0:
        return f"{hours}h left"
    if minutes > 0:
        return f"{minutes}m left"
    return "<1m left"


def parse_target(target: str, default_port: int) -> tuple[str, int]:
    """
    Parse a 'host:port' string.  If port is omitted, *default_port* is used.
    """
    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        return host, int(port_str)
    return target, default_port


def room_id_for(name: str) -> str:
    """Stable room id for a room created by name, so peers typing the same name meet."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"nexus-room:{name.strip().lower()}"))


def safe_filename(filename: str, fallback: str = "download") -> str:
    """Sanitize a filename announced by a remote peer.

    - Strips directory components, of either separator (prevents path traversal).
    - Removes null bytes.
    - Falls back to *fallback* for an empty name, a bare dot/dotdot, or a
      Windows reserved device name (CON, NUL, COM1 ... LPT9).
    """
    name = os.path.basename(filename.replace("\\", "/"))
    name = name.replace("\x00", "")
    if name in ("", ".", ".."):
        return fallback
    if _WINDOWS_RESERVED.match(name):
        return fallback
    return name


def save_path(dest_dir: str, filename: str) -> str:
    """Where a file announced as *filename* is written inside *dest_dir*."""
    return os.path.join(os.path.expanduser(dest_dir), safe_filename(filename))
