"""Logical clock and timer queue.

Every delayed thing in the core (deferred behaviors, rhythm ticks,
adaptation debounce and polling, emotion decay) is a TimerQueue entry.
With a ManualClock, ``advance()`` fires them deterministically in
(fire_at, seq) order; at runtime the tick loop calls ``run_due()``.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

log = logging.getLogger(__name__)


class Clock(Protocol):
    def now_ms(self) -> float: ...

    def hour(self) -> int: ...


class MonotonicClock:
    """Wall-free monotonic milliseconds; hour comes from local time."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def hour(self) -> int:
        return time.localtime().tm_hour


class ManualClock:
    """Virtual clock for tests and simulation."""

    def __init__(self, start_ms: float = 0.0, hour: int = 14) -> None:
        self._now_ms = float(start_ms)
        self._hour = hour

    def now_ms(self) -> float:
        return self._now_ms

    def hour(self) -> int:
        return self._hour

    def set_hour(self, hour: int) -> None:
        self._hour = hour % 24

    def set(self, now_ms: float) -> None:
        if now_ms < self._now_ms:
            raise ValueError("clock cannot move backwards")
        self._now_ms = float(now_ms)

    def advance(self, ms: float) -> None:
        self.set(self._now_ms + ms)


@dataclass(order=True, slots=True)
class TimerHandle:
    fire_at: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple = field(compare=False, default=())
    label: str = field(compare=False, default="")
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class TimerQueue:
    """Priority queue of callbacks keyed on the shared clock."""

    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self._heap: list[TimerHandle] = []
        self._seq = itertools.count()
        self.fired = 0

    def call_later(
        self, delay_ms: float, callback: Callable[..., Any], *args: Any, label: str = ""
    ) -> TimerHandle:
        fire_at = self.clock.now_ms() + max(0.0, float(delay_ms))
        return self.call_at(fire_at, callback, *args, label=label)

    def call_at(
        self, fire_at: float, callback: Callable[..., Any], *args: Any, label: str = ""
    ) -> TimerHandle:
        handle = TimerHandle(fire_at, next(self._seq), callback, args, label)
        heapq.heappush(self._heap, handle)
        return handle

    def cancel(self, handle: TimerHandle | None) -> None:
        if handle is not None:
            handle.cancel()

    @property
    def pending(self) -> int:
        return sum(1 for h in self._heap if not h.cancelled)

    def next_fire_at(self) -> float | None:
        self._drop_cancelled()
        return self._heap[0].fire_at if self._heap else None

    def run_due(self) -> int:
        """Fire every timer due at the current clock time.

        Timers scheduled by a callback are fired in the same pass if
        they are already due.
        """
        now = self.clock.now_ms()
        n = 0
        while True:
            self._drop_cancelled()
            if not self._heap or self._heap[0].fire_at > now:
                return n
            self._fire(heapq.heappop(self._heap))
            n += 1

    def advance(self, ms: float) -> int:
        """Move a ManualClock forward, firing timers at their exact times."""
        set_clock = getattr(self.clock, "set", None)
        if set_clock is None:
            raise TypeError("advance() needs a settable clock")
        target = self.clock.now_ms() + ms
        n = 0
        while True:
            self._drop_cancelled()
            if not self._heap or self._heap[0].fire_at > target:
                break
            handle = heapq.heappop(self._heap)
            if handle.fire_at > self.clock.now_ms():
                set_clock(handle.fire_at)
            self._fire(handle)
            n += 1
        set_clock(target)
        return n

    def clear(self) -> None:
        for h in self._heap:
            h.cancel()
        self._heap.clear()

    # -- internals -----------------------------------------------------------

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)

    def _fire(self, handle: TimerHandle) -> None:
        handle.cancelled = True
        self.fired += 1
        try:
            handle.callback(*handle.args)
        except Exception:
            log.exception("timer callback failed (%s)", handle.label or "unnamed")
