"""Bounded event log and listener fan-out."""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Iterable

from .models import EventEntry, Notification

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50

Listener = Callable[[Notification], None]


class EventLog:
    """Chronological ring of ``EventEntry``; the oldest entry drops first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._entries: deque[EventEntry] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: EventEntry) -> None:
        self._entries.append(entry)

    def extend(self, entries: Iterable[EventEntry]) -> None:
        self._entries.extend(entries)

    def entries(self, newest_first: bool = True) -> list[EventEntry]:
        if newest_first:
            return list(reversed(self._entries))
        return list(self._entries)


class Notifier:
    """Calls every registered listener in registration order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def add(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, notification: Notification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                # A broken renderer must not stop the intersection
                logger.exception("listener %r failed on %s", listener, notification.kind.value)
