"""Utility functions for the room chat client."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from urllib.parse import quote, urlsplit, urlunsplit

from .constants import MAX_MESSAGE_LENGTH, MAX_ROOM_ID_LENGTH

logger = logging.getLogger(__name__)


def get_timestamp() -> str:
    """Get current timestamp as HH:MM:SS string.

    Returns:
        Formatted timestamp string
    """
    return datetime.now().strftime("%H:%M:%S")


def expand_path(p: str) -> str:
    """Expand ~ and environment variables in path.

    Args:
        p: Path string to expand

    Returns:
        Expanded absolute path
    """
    return str(Path(p).expanduser().resolve())


def normalize_room_id(room_id: str) -> str | None:
    """Normalize a room identifier.

    Room identifiers are assigned by the server and are case sensitive, so
    only surrounding whitespace is removed.

    Args:
        room_id: Room identifier to normalize

    Returns:
        Normalized identifier, or None if invalid
    """
    if not isinstance(room_id, str):
        return None

    normalized = room_id.strip()
    if not normalized or len(normalized) > MAX_ROOM_ID_LENGTH:
        return None
    if "/" in normalized or any(ord(c) < 32 for c in normalized):
        return None

    return normalized


def sanitize_text_input(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str | None:
    """Sanitize text input for sending.

    Args:
        text: Text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text, or None if invalid
    """
    if not isinstance(text, str):
        return None

    sanitized = text.strip()
    if not sanitized:
        return None

    if len(sanitized) > max_length:
        return None

    for char in sanitized:
        code = ord(char)
        if code < 32 and code not in (9, 10, 13):
            return None
        if code == 0xFFFE or code == 0xFFFF:
            return None

    return sanitized


def sanitize_display_name(name: str, max_length: int = 64) -> str | None:
    """Sanitize display names like usernames and room names.

    Removes control characters and limits length.

    Args:
        name: Name to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized name, or None if invalid
    """
    if not isinstance(name, str):
        return None

    sanitized = name.strip()
    if not sanitized:
        return None

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    cleaned = "".join(
        char
        for char in sanitized
        if not (ord(char) < 32 or ord(char) == 0x7F or ord(char) in (0xFFFE, 0xFFFF))
    )

    return cleaned or None


def http_to_ws_url(base_url: str, path: str) -> str:
    """Build a WebSocket URL for a path on an HTTP backend.

    Args:
        base_url: Backend base URL (http or https)
        path: Absolute path to append

    Returns:
        ws:// or wss:// URL

    Raises:
        ValueError: If the base URL scheme is not http, https, ws or wss
    """
    parts = urlsplit(base_url)
    schemes = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}
    scheme = schemes.get(parts.scheme.lower())
    if scheme is None or not parts.netloc:
        raise ValueError(f"Unsupported backend URL: {base_url!r}")
    prefix = parts.path.rstrip("/")
    return urlunsplit((scheme, parts.netloc, prefix + path, "", ""))


def quote_segment(value: str) -> str:
    """Percent-encode a value for use as a single URL path segment."""
    return quote(value, safe="")
