"""Tests for the logical clock and timer queue."""

from __future__ import annotations

import logging

import pytest

import companion.core.clock as clock_mod
from companion.core.clock import ManualClock, MonotonicClock, TimerQueue


def _queue(start_ms: float = 0.0) -> tuple[ManualClock, TimerQueue]:
    clock = ManualClock(start_ms)
    return clock, TimerQueue(clock)


class TestAdvance:
    def test_fires_in_time_then_insertion_order(self):
        clock, q = _queue()
        fired: list[str] = []
        q.call_later(300, fired.append, "c")
        q.call_later(100, fired.append, "a")
        q.call_later(100, fired.append, "b")

        assert q.advance(250) == 2
        assert fired == ["a", "b"]
        assert clock.now_ms() == 250

        q.advance(50)
        assert fired == ["a", "b", "c"]

    def test_callback_sees_its_own_fire_time(self):
        clock, q = _queue()
        seen: list[float] = []
        q.call_later(120, lambda: seen.append(clock.now_ms()))
        q.advance(1000)
        assert seen == [120]
        assert clock.now_ms() == 1000

    def test_timers_scheduled_by_callbacks_fire_in_same_window(self):
        _, q = _queue()
        fired: list[str] = []

        def first() -> None:
            fired.append("first")
            q.call_later(50, fired.append, "second")

        q.call_later(100, first)
        q.advance(200)
        assert fired == ["first", "second"]

    def test_cancelled_timer_never_fires(self):
        _, q = _queue()
        fired: list[int] = []
        h = q.call_later(10, fired.append, 1)
        q.cancel(h)
        assert q.pending == 0
        q.advance(100)
        assert fired == []

    def test_requires_settable_clock(self):
        q = TimerQueue(MonotonicClock())
        with pytest.raises(TypeError):
            q.advance(10)


class TestRunDue:
    def test_fires_only_due_timers(self):
        clock, q = _queue()
        fired: list[str] = []
        q.call_later(100, fired.append, "a")
        q.call_later(500, fired.append, "b")
        clock.advance(150)
        assert q.run_due() == 1
        assert fired == ["a"]
        assert q.next_fire_at() == 500

    def test_call_at_absolute_time(self):
        clock, q = _queue(1000)
        fired: list[int] = []
        q.call_at(1200, fired.append, 1)
        clock.set(1199)
        q.run_due()
        assert fired == []
        clock.set(1200)
        q.run_due()
        assert fired == [1]


class TestFailures:
    def test_callback_exception_is_logged_and_isolated(self, caplog):
        _, q = _queue()
        fired: list[int] = []

        def boom() -> None:
            raise RuntimeError("boom")

        q.call_later(10, boom, label="boom")
        q.call_later(20, fired.append, 2)
        with caplog.at_level(logging.ERROR, logger=clock_mod.__name__):
            q.advance(50)

        assert fired == [2]
        assert any("boom" in r.getMessage() for r in caplog.records)

    def test_manual_clock_cannot_go_backwards(self):
        clock = ManualClock(100)
        with pytest.raises(ValueError):
            clock.set(50)

    def test_clear_drops_everything(self):
        _, q = _queue()
        q.call_later(10, lambda: None)
        q.call_later(20, lambda: None)
        q.clear()
        assert q.pending == 0
        assert q.advance(100) == 0
