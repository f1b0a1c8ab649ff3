"""Tests for the event emitter and the interaction statistics store."""

from __future__ import annotations

import pytest

from companion.core.clock import ManualClock
from companion.core.events import EventEmitter
from companion.core.interaction_stats import (
    ActivityLevel,
    InteractionPattern,
    InteractionStats,
    UserInteractionStats,
    analyze_pattern,
    classify_activity,
)
from companion.core.state import UserActivity, user_activity_for_delta


class TestEventEmitter:
    def test_on_and_unsubscribe(self):
        em = EventEmitter("t")
        seen: list[int] = []
        unsubscribe = em.on("x", seen.append)
        assert em.emit("x", 1) == 1
        unsubscribe()
        assert em.emit("x", 2) == 0
        assert seen == [1]

    def test_raising_listener_does_not_block_others(self):
        em = EventEmitter("t")
        seen: list[int] = []

        def bad(_):
            raise RuntimeError("listener bug")

        em.on("x", bad)
        em.on("x", seen.append)
        assert em.emit("x", 5) == 1
        assert seen == [5]

    def test_listener_count(self):
        em = EventEmitter()
        em.on("a", print)
        em.on("b", print)
        em.on("b", repr)
        assert em.listener_count() == 3
        assert em.listener_count("b") == 2
        em.clear_listeners()
        assert em.listener_count() == 0


# ── Interaction stats ────────────────────────────────────────────


def _burst(stats: InteractionStats, clock: ManualClock, n: int, gap_ms: float) -> None:
    for _ in range(n):
        stats.record("click")
        clock.advance(gap_ms)


class TestInteractionStats:
    def test_empty_store_defaults(self):
        stats = InteractionStats(ManualClock())
        snap = stats.snapshot()
        assert snap.total_interactions == 0
        assert snap.average_interval_ms == 60_000
        assert snap.continuous_idle_ms == 30 * 60_000
        assert snap.interaction_pattern == InteractionPattern.IDLE
        assert stats.activity_level() == ActivityLevel.INACTIVE

    def test_steady_medium(self):
        clock = ManualClock()
        stats = InteractionStats(clock)
        _burst(stats, clock, 15, 4000)
        snap = stats.snapshot()
        assert snap.recent_frequency == pytest.approx(3.0)
        assert snap.interaction_pattern == InteractionPattern.STEADY
        assert stats.activity_level() == ActivityLevel.MEDIUM

    def test_burst(self):
        clock = ManualClock()
        stats = InteractionStats(clock)
        _burst(stats, clock, 60, 1000)
        assert stats.snapshot().interaction_pattern == InteractionPattern.BURST
        assert stats.activity_level() == ActivityLevel.BURST

    def test_sparse_low(self):
        clock = ManualClock()
        stats = InteractionStats(clock)
        _burst(stats, clock, 5, 10_000)
        assert stats.activity_level() == ActivityLevel.LOW

    def test_average_interval(self):
        clock = ManualClock()
        stats = InteractionStats(clock)
        stats.record()
        clock.advance(1000)
        stats.record()
        clock.advance(2000)
        stats.record()
        assert stats.snapshot().average_interval_ms == pytest.approx(1500)

    def test_retention_prunes_old_timestamps(self):
        clock = ManualClock()
        stats = InteractionStats(clock)
        stats.record("input")
        clock.advance(31 * 60_000)
        snap = stats.snapshot()
        assert snap.last_interaction_ms is None
        assert snap.total_interactions == 1
        assert stats.counts["input"] == 1

    def test_reset(self):
        clock = ManualClock()
        stats = InteractionStats(clock)
        stats.record()
        stats.reset()
        assert stats.snapshot().total_interactions == 0
        assert stats.to_dict()["counts"] == {}


class TestClassification:
    @pytest.mark.parametrize(
        "count,pattern",
        [(0, InteractionPattern.IDLE), (5, InteractionPattern.SPARSE), (20, InteractionPattern.STEADY), (60, InteractionPattern.BURST)],
    )
    def test_pattern_thresholds(self, count, pattern):
        assert analyze_pattern(count) == pattern

    def test_long_idle_is_inactive_whatever_the_pattern(self):
        s = UserInteractionStats(
            recent_frequency=20, continuous_idle_ms=11 * 60_000, interaction_pattern=InteractionPattern.BURST
        )
        assert classify_activity(s) == ActivityLevel.INACTIVE

    def test_steady_high(self):
        s = UserInteractionStats(
            recent_frequency=6, continuous_idle_ms=1000, interaction_pattern=InteractionPattern.STEADY
        )
        assert classify_activity(s) == ActivityLevel.HIGH

    @pytest.mark.parametrize(
        "delta,activity",
        [(0, UserActivity.ACTIVE), (59_999, UserActivity.ACTIVE), (60_000, UserActivity.IDLE), (300_000, UserActivity.AWAY)],
    )
    def test_user_activity_bands(self, delta, activity):
        assert user_activity_for_delta(delta) == activity
