"""Turn raw inbound payloads into typed chat events.

Every payload maps to exactly one of text, image or system notice:

    1. A JSON object with ``messageType == "image"`` and a string
       ``imagePath`` is an image message.
    2. A JSON object with string ``username`` and ``content`` is a text
       message.
    3. Anything else is a system notice carrying the raw payload verbatim.

Normalizing never raises.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .constants import (
    F_CONTENT,
    F_CREATED_AT,
    F_IMAGE_PATH,
    F_MESSAGE_TYPE,
    F_USERNAME,
    MAX_FRAME_SIZE,
    MESSAGE_TYPE_IMAGE,
)
from .events import ChatEvent, EventKind, has_created_at, stamped_key

logger = logging.getLogger(__name__)


def _raw_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload).decode("utf-8", errors="replace")
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except (TypeError, ValueError, RecursionError):
        return repr(payload)


def _parse(payload: Any) -> Any:
    """Return structured data for a payload, or None if it has none."""
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, (bytes, bytearray, memoryview)):
        payload = bytes(payload).decode("utf-8", errors="replace")
    if not isinstance(payload, str):
        return None
    if len(payload) > MAX_FRAME_SIZE:
        return None
    stripped = payload.lstrip()
    if not stripped.startswith("{"):
        return None
    try:
        return json.loads(stripped)
    except (ValueError, RecursionError):
        return None


def _created_at(data: dict) -> Any:
    value = data.get(F_CREATED_AT)
    return value if has_created_at(value) else None


def _notice(raw: str) -> ChatEvent:
    return ChatEvent(kind=EventKind.SYSTEM_NOTICE, content=raw)


def normalize(payload: Any) -> ChatEvent:
    """Normalize one inbound payload.

    Args:
        payload: A live socket frame (str or bytes) or one history record
            (dict, or a JSON string)

    Returns:
        Chat event; server-stamped events already carry their sequence key
    """
    try:
        data = _parse(payload)
        if isinstance(data, dict):
            event = _from_structured(data)
            if event is not None:
                key = stamped_key(event)
                return event.with_key(key) if key is not None else event
        elif data is None:
            logger.debug("Payload is not structured, treating as notice")
        else:
            logger.debug("Payload is %s, not an object; treating as notice", type(data).__name__)
        return _notice(_raw_text(payload))
    except Exception as e:
        logger.debug("Unexpected payload shape, treating as notice: %s", e)
        return _notice(_raw_text(payload))


def _from_structured(data: dict) -> ChatEvent | None:
    sender = data.get(F_USERNAME)
    content = data.get(F_CONTENT)
    created_at = _created_at(data)

    if data.get(F_MESSAGE_TYPE) == MESSAGE_TYPE_IMAGE:
        image_path = data.get(F_IMAGE_PATH)
        if isinstance(image_path, str) and image_path.strip():
            return ChatEvent(
                kind=EventKind.IMAGE,
                content=content if isinstance(content, str) else "",
                sender=sender if isinstance(sender, str) else "",
                created_at=created_at,
                image_ref=image_path.strip(),
            )
        logger.debug("Image message without a usable %s", F_IMAGE_PATH)

    if isinstance(sender, str) and isinstance(content, str):
        return ChatEvent(
            kind=EventKind.TEXT,
            content=content,
            sender=sender,
            created_at=created_at,
        )

    return None
