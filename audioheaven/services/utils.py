"""Shared utility functions for app services."""

import re
import secrets
import time

# "<epoch milliseconds>-<random hex>"; sorts by creation time
ID_PATTERN = re.compile(r"^(\d{10,})-([0-9a-f]{6,32})$")


def generate_id() -> str:
    """Generate an opaque, time-ordered identifier.

    The creation time is encoded in the prefix so records can be aged
    without extra bookkeeping.
    """
    return f"{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def is_valid_id(value: str) -> bool:
    """Check that a client-supplied identifier has the generated shape."""
    return bool(ID_PATTERN.match(value or ""))


def id_timestamp(value: str) -> float | None:
    """Return the creation time (epoch seconds) encoded in an identifier."""
    match = ID_PATTERN.match(value or "")
    if not match:
        return None
    return int(match.group(1)) / 1000.0


def format_file_size(size_bytes: int) -> str:
    """Format a file size in bytes to a human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string (e.g., "1.5 GB")
    """
    size_float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < 1024.0:
            return f"{size_float:.1f} {unit}"
        size_float = size_float / 1024.0
    return f"{size_float:.1f} PB"
