from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from utils import iso_utc_now

log = logging.getLogger("events")

Listener = Callable[["Event"], None]


@dataclass(frozen=True)
class Event:
    type: str
    payload: dict = field(default_factory=dict)
    at: str = ""


class EventQueue:
    """
    In-process publish/subscribe channel.

    Events published while nobody listens are buffered (bounded, the oldest
    is dropped first) and replayed in order to the first subscriber. Once a
    listener exists, events are delivered synchronously to every listener.
    """

    def __init__(self, maxlen: int = 500):
        self._buffer: deque[Event] = deque(maxlen=max(1, int(maxlen)))
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        self.dropped = 0

    def publish(self, type_: str, payload: dict | None = None) -> Event:
        ev = Event(type=str(type_ or ""), payload=dict(payload or {}), at=iso_utc_now())
        with self._lock:
            if not self._listeners:
                if len(self._buffer) == self._buffer.maxlen:
                    self.dropped += 1
                self._buffer.append(ev)
                return ev
            listeners = list(self._listeners)
        self._deliver(listeners, ev)
        return ev

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            first = not self._listeners
            self._listeners.append(listener)
            replay = list(self._buffer) if first else []
            if first:
                self._buffer.clear()
        for ev in replay:
            self._deliver([listener], ev)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _deliver(self, listeners: list[Listener], ev: Event) -> None:
        for fn in listeners:
            try:
                fn(ev)
            except Exception:
                # A failing listener must not block the others or the publisher.
                log.exception("event listener failed type=%s", ev.type)
