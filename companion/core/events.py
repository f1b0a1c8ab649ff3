"""Minimal named-event emitter shared by the scheduler, rhythm and adaptation."""

from __future__ import annotations

import logging
from typing import Any, Callable

log = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    def __init__(self, name: str = "") -> None:
        self._name = name or type(self).__name__
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        """Subscribe; returns an unsubscribe function."""
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args: Any) -> int:
        """Call every listener; a raising listener is logged and skipped."""
        called = 0
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
                called += 1
            except Exception:
                log.exception("%s: %s listener failed", self._name, event)
        return called

    def listener_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event, ()))

    def clear_listeners(self) -> None:
        self._listeners.clear()
