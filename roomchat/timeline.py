"""Ordered, de-duplicated timeline of chat events for one room."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, overload

from .events import ChatEvent, ImageAsset, OrderValue, SequenceKey, describe, local_key

logger = logging.getLogger(__name__)

ORIGIN_HISTORY = "history"
ORIGIN_LIVE = "live"

# Sorts before every createdAt value.
ORDER_START: OrderValue = (-1, 0.0)

_RANK_STAMPED = 0
_RANK_UNSTAMPED = 1


@dataclass
class _Entry:
    event: ChatEvent
    origin: str
    seq: int
    # Last stamped order seen on the entry's own stream when it arrived;
    # only used for entries without a timestamp.
    anchor: OrderValue = ORDER_START

    @property
    def group(self) -> int:
        return 0 if self.origin == ORIGIN_HISTORY else 1


class TimelineSnapshot(Sequence[ChatEvent]):
    """Read-only ordered view of a timeline at one point in time.

    Iterating is restartable and never observes later appends.
    """

    __slots__ = ("_events",)

    def __init__(self, events: tuple[ChatEvent, ...]) -> None:
        self._events = events

    @overload
    def __getitem__(self, index: int) -> ChatEvent: ...

    @overload
    def __getitem__(self, index: slice) -> tuple[ChatEvent, ...]: ...

    def __getitem__(self, index):
        return self._events[index]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[ChatEvent]:
        return iter(self._events)

    def __repr__(self) -> str:
        return f"TimelineSnapshot({len(self._events)} events)"

    def keys(self) -> list[SequenceKey]:
        return [e.sequence_key for e in self._events if e.sequence_key is not None]

    def find(self, key: SequenceKey) -> ChatEvent | None:
        for event in self._events:
            if event.sequence_key == key:
                return event
        return None



class Timeline:
    """Ordered, de-duplicated event sequence for one room.

    Thread-Safety:
        All writers (history replay, live frames, image resolution) go
        through ``self._lock``; readers take a snapshot copy under the same
        lock, so a partially updated entry is never visible.

    Ordering:
        - Events with a server timestamp are ordered by ``createdAt``. Equal
          timestamps put history first, then each stream's arrival order.
        - An event without a timestamp follows the last timestamped event
          that preceded it on its own stream. A live one also follows every
          history event, so it never lands ahead of history still loading.

        Sort positions depend only on the order within each stream, so
        history and live appends can interleave in any way and give the
        same final timeline.

    Eviction:
        Past ``max_entries`` the oldest entries are dropped. Keys of evicted
        events at the eviction boundary stay known; anything older than the
        boundary is ignored as too late.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        """Initialize an empty timeline.

        Args:
            max_entries: Optional cap; the oldest entries are evicted past it
        """
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries

        self._entries: list[_Entry] = []
        self._index: dict[SequenceKey, _Entry] = {}
        self._local_counter = itertools.count(1)
        self._arrivals = {ORIGIN_HISTORY: itertools.count(1), ORIGIN_LIVE: itertools.count(1)}
        self._anchors: dict[str, OrderValue] = {ORIGIN_HISTORY: ORDER_START, ORIGIN_LIVE: ORDER_START}
        self._history_max: OrderValue = ORDER_START
        self._evicted_floor: OrderValue | None = None
        self._evicted_keys: set[SequenceKey] = set()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._index

    def get(self, key: SequenceKey) -> ChatEvent | None:
        with self._lock:
            entry = self._index.get(key)
            return entry.event if entry else None

    def append(self, event: ChatEvent, *, origin: str = ORIGIN_LIVE) -> ChatEvent | None:
        """Insert an event in timeline order.

        Appending a key that is already known is a no-op, except that a
        history copy of an event first seen live takes the history position.
        Events without a sequence key get a local one here.

        Args:
            event: Normalized event
            origin: ORIGIN_HISTORY or ORIGIN_LIVE

        Returns:
            The stored event, or None if it was a duplicate or too old to keep
        """
        try:
            with self._lock:
                return self._append(event, ORIGIN_HISTORY if origin == ORIGIN_HISTORY else ORIGIN_LIVE)
        except Exception as e:
            logger.exception("Failed to append event to timeline: %s", e)
            return None

    def _append(self, event: ChatEvent, origin: str) -> ChatEvent | None:
        seq = next(self._arrivals[origin])
        order = event.order_value

        if order is not None:
            if order > self._anchors[origin]:
                self._anchors[origin] = order
            if origin == ORIGIN_HISTORY and order > self._history_max:
                self._history_max = order

        key = event.sequence_key
        if key is None:
            key = local_key(next(self._local_counter))
            event = event.with_key(key)
        elif key in self._index:
            existing = self._index[key]
            if origin == ORIGIN_HISTORY and existing.origin != ORIGIN_HISTORY:
                existing.origin = ORIGIN_HISTORY
                existing.seq = seq
            logger.debug("Ignoring duplicate event %s", describe(event))
            self._sort()
            return None
        elif self._too_old(key, order):
            logger.debug("Ignoring event older than the retained window %s", describe(event))
            self._sort()
            return None

        entry = _Entry(event=event, origin=origin, seq=seq)
        if order is None:
            entry.anchor = self._anchors[origin]
        self._entries.append(entry)
        self._index[key] = entry
        self._sort()
        self._evict()
        return event if key in self._index else None

    def resolve_image(self, key: SequenceKey, asset: ImageAsset) -> bool:
        """Attach a decoded image to an entry.

        Args:
            key: Sequence key of the image event
            asset: Decoded image

        Returns:
            True if the entry was updated, False if it is absent, not an
            image, or already resolved
        """
        with self._lock:
            entry = self._index.get(key)
            if entry is None:
                logger.debug("No timeline entry for resolved image %s", key)
                return False
            if not entry.event.is_image or entry.event.resolved_asset is not None:
                return False
            entry.event = entry.event.with_asset(asset)
            return True

    def snapshot(self) -> TimelineSnapshot:
        with self._lock:
            return TimelineSnapshot(tuple(entry.event for entry in self._entries))

    def _sort_key(self, entry: _Entry) -> tuple[Any, ...]:
        order = entry.event.order_value
        if order is not None:
            return (order, _RANK_STAMPED, entry.group, entry.seq)
        anchor = entry.anchor
        if entry.origin == ORIGIN_LIVE and self._history_max > anchor:
            anchor = self._history_max
        return (anchor, _RANK_UNSTAMPED, entry.group, entry.seq)

    def _sort(self) -> None:
        self._entries.sort(key=self._sort_key)

    def _too_old(self, key: SequenceKey, order: OrderValue | None) -> bool:
        floor = self._evicted_floor
        if order is None or floor is None:
            return False
        return order < floor or (order == floor and key in self._evicted_keys)

    def _evict(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            evicted = self._entries.pop(0)
            key = evicted.event.sequence_key
            if key is not None:
                self._index.pop(key, None)
            order = evicted.event.order_value
            if order is not None:
                if self._evicted_floor is None or order > self._evicted_floor:
                    self._evicted_floor = order
                    self._evicted_keys.clear()
                if order == self._evicted_floor and key is not None:
                    self._evicted_keys.add(key)
            logger.debug("Evicted oldest timeline entry %s", describe(evicted.event))
