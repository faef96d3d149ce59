"""Chat event model and sequence key derivation."""

from __future__ import annotations

import base64
import enum
import hashlib
import json
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Union

# ("ts", created_at_order, sender, digest) for server-stamped events,
# ("local", n) for events ordered by arrival only.
SequenceKey = tuple[Any, ...]
CreatedAt = Union[str, int, float]
OrderValue = tuple[int, Union[float, str]]

KEY_STAMPED = "ts"
KEY_LOCAL = "local"


class EventKind(str, enum.Enum):
    TEXT = "text"
    IMAGE = "image"
    SYSTEM_NOTICE = "system_notice"


class ImageStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ImageAsset:
    """Decoded image ready for display."""

    data: bytes = field(repr=False)
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass(frozen=True)
class ChatEvent:
    """One entry of a room timeline.

    ``image_ref`` is set if and only if ``kind`` is ``EventKind.IMAGE``.
    ``sequence_key`` is None until the event has been given one, either from
    its server timestamp or by the timeline on append.
    """

    kind: EventKind
    content: str
    sender: str = ""
    created_at: CreatedAt | None = None
    image_ref: str | None = None
    sequence_key: SequenceKey | None = None
    resolved_asset: ImageAsset | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if (self.image_ref is not None) != (self.kind is EventKind.IMAGE):
            raise ValueError("image_ref must be set exactly when kind is IMAGE")

    @property
    def is_image(self) -> bool:
        return self.kind is EventKind.IMAGE

    @property
    def has_timestamp(self) -> bool:
        return has_created_at(self.created_at)

    @property
    def order_value(self) -> OrderValue | None:
        if not self.has_timestamp:
            return None
        return created_at_order(self.created_at)

    def with_key(self, key: SequenceKey) -> ChatEvent:
        return replace(self, sequence_key=key)

    def with_asset(self, asset: ImageAsset) -> ChatEvent:
        return replace(self, resolved_asset=asset)


def has_created_at(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    return False


def created_at_order(value: CreatedAt) -> OrderValue:
    """Map a server timestamp onto a comparable value.

    Numbers and ISO-8601 strings become epoch milliseconds and sort before
    any other string, which sorts lexically.

    Args:
        value: Raw ``createdAt`` value

    Returns:
        Tuple usable as a sort key
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, float(value))

    text = str(value).strip()
    try:
        number = float(text)
    except ValueError:
        pass
    else:
        if math.isfinite(number):
            return (0, number)

    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return (1, text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (0, parsed.timestamp() * 1000.0)


def content_digest(kind: EventKind, content: str, image_ref: str | None) -> str:
    h = hashlib.sha256()
    h.update(kind.value.encode("utf-8"))
    h.update(b"\x00")
    h.update(content.encode("utf-8", errors="surrogatepass"))
    h.update(b"\x00")
    h.update((image_ref or "").encode("utf-8", errors="surrogatepass"))
    return h.hexdigest()[:32]


def stamped_key(event: ChatEvent) -> SequenceKey | None:
    """Derive the de-duplication key of a server-stamped event.

    Returns:
        The key, or None when the event carries no server timestamp
    """
    order = event.order_value
    if order is None:
        return None
    return (KEY_STAMPED, order, event.sender, content_digest(event.kind, event.content, event.image_ref))


def local_key(counter: int) -> SequenceKey:
    return (KEY_LOCAL, counter)


def describe(event: ChatEvent) -> str:
    """Short JSON description of an event, for logs."""
    return json.dumps(
        {
            "kind": event.kind.value,
            "sender": event.sender,
            "created_at": event.created_at,
            "image_ref": event.image_ref,
            "content": event.content[:40],
        },
        ensure_ascii=False,
        default=str,
    )
