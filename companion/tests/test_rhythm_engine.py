"""Tests for the rhythm engine and frame-time telemetry."""

from __future__ import annotations

import math
import random

import pytest

from companion.core.clock import ManualClock, TimerQueue
from companion.core.errors import InputError
from companion.core.frame_monitor import AdaptiveFrameRate, FrameMonitor
from companion.core.rhythm_engine import (
    RhythmEngine,
    RhythmMode,
    RhythmSegment,
    bpm_to_interval_ms,
    default_config,
    segment_for_emotion,
)
from companion.core.state import EmotionType


def _engine(mode: RhythmMode = RhythmMode.STEADY, seed: int = 1) -> tuple[TimerQueue, RhythmEngine]:
    timers = TimerQueue(ManualClock())
    return timers, RhythmEngine(timers, mode=mode, rng=random.Random(seed))


# ── Interval math ────────────────────────────────────────────────


class TestIntervals:
    def test_pulse_formula(self):
        _, eng = _engine()
        eng.set_mode(RhythmMode.PULSE, base_interval_ms=100)
        got = [eng.compute_interval(k) for k in range(8)]
        want = [100 * (0.8 + 0.4 * math.sin(2 * math.pi * (k % 4) / 4)) for k in range(8)]
        assert got == pytest.approx(want)

    def test_pulse_scheduled_intervals_with_floor(self):
        timers, eng = _engine()
        eng.set_mode(RhythmMode.PULSE, base_interval_ms=100)
        actual: list[float] = []
        eng.subscribe(lambda ts, dt: actual.append(dt))
        eng.start()
        timers.advance(700)
        assert actual == pytest.approx([80, 120, 80, 50, 80, 120, 80, 50])

    def test_sequence_cycles(self):
        _, eng = _engine(RhythmMode.SEQUENCE)
        assert [eng.compute_interval(k) for k in range(7)] == [300, 600, 200, 800, 400, 300, 600]

    def test_steady_variation_bounds(self):
        _, eng = _engine()
        for _ in range(200):
            assert 950 <= eng.compute_interval() <= 1050

    def test_sync_is_exact(self):
        _, eng = _engine()
        eng.sync_with_external("metronome", 250)
        assert eng.mode == RhythmMode.SYNC
        assert eng.config.sync_source == "metronome"
        assert eng.compute_interval() == 250

    def test_floor_applies_to_scheduled_interval(self):
        _, eng = _engine()
        eng.set_mode(RhythmMode.SEQUENCE, sequence=[10, 20])
        assert eng.compute_interval(0) == 10
        assert eng.next_interval() == 50

    def test_adaptive_follows_intensity(self):
        _, eng = _engine(RhythmMode.ADAPTIVE)
        assert eng.adapt_to_emotion(1.0) is True
        for _ in range(100):
            assert 144 <= eng.compute_interval() <= 216
        eng.adapt_to_emotion(0.5)
        assert eng.snapshot()["target_interval_ms"] == 390

    def test_adapt_ignored_outside_adaptive(self):
        _, eng = _engine()
        assert eng.adapt_to_emotion(1.0) is False

    def test_unknown_override_rejected(self):
        with pytest.raises(InputError):
            default_config(RhythmMode.STEADY, tempo=3)

    def test_bad_mode_leaves_engine_untouched(self):
        _, eng = _engine()
        with pytest.raises(InputError):
            eng.set_mode("disco")
        with pytest.raises(InputError):
            eng.set_mode(RhythmMode.PULSE, tempo=3)
        assert eng.mode == RhythmMode.STEADY

    def test_bpm(self):
        assert bpm_to_interval_ms(120) == 500
        assert bpm_to_interval_ms(0) == 1000


# ── Lifecycle ────────────────────────────────────────────────────


class TestLifecycle:
    def test_start_is_idempotent(self):
        timers, eng = _engine()
        eng.start()
        eng.start()
        assert timers.pending == 1

    def test_stop_is_idempotent(self):
        timers, eng = _engine()
        eng.start()
        eng.stop()
        eng.stop()
        assert not eng.is_active
        assert timers.pending == 0

    def test_pause_resume(self):
        timers, eng = _engine()
        eng.start()
        eng.pause()
        assert eng.is_paused and not eng.is_active
        assert timers.pending == 0
        eng.resume()
        eng.resume()
        assert eng.is_active
        assert timers.pending == 1

    def test_resume_after_stop_does_nothing(self):
        _, eng = _engine()
        eng.start()
        eng.stop()
        eng.resume()
        assert not eng.is_active

    def test_ticks_count_up(self):
        timers, eng = _engine(RhythmMode.SYNC)
        ticks = []
        eng.on("tick", ticks.append)
        eng.start()
        timers.advance(3000)
        assert [e.tick_count for e in ticks] == [1, 2, 3]
        assert eng.state.tick_count == 3

    def test_set_mode_while_active_restarts(self):
        timers, eng = _engine(RhythmMode.SYNC)
        changes = []
        eng.on("mode_change", changes.append)
        eng.start()
        timers.advance(2000)
        eng.set_mode(RhythmMode.SEQUENCE)
        assert eng.is_active
        assert eng.state.tick_count == 0
        assert timers.pending == 1
        assert len(changes) == 1

    def test_non_immediate_switch_waits_for_tick(self):
        timers, eng = _engine()
        eng.start()
        eng.set_mode(RhythmMode.PULSE, immediate=False, base_interval_ms=100)
        assert eng.mode == RhythmMode.STEADY
        timers.advance(1100)
        assert eng.mode == RhythmMode.PULSE
        assert eng.config.base_interval_ms == 100

    def test_subscriber_failure_isolated(self):
        timers, eng = _engine(RhythmMode.SYNC)
        seen = []

        def bad(ts, dt):
            raise RuntimeError("subscriber bug")

        eng.subscribe(bad)
        unsubscribe = eng.subscribe(lambda ts, dt: seen.append(ts))
        eng.start()
        timers.advance(1000)
        assert seen == [1000]
        unsubscribe()
        timers.advance(1000)
        assert seen == [1000]

    def test_dispose(self):
        timers, eng = _engine()
        eng.add_segment(segment_for_emotion("s", EmotionType.CALM))
        eng.start()
        eng.dispose()
        assert timers.pending == 0
        assert eng.segments() == []


# ── Segments ─────────────────────────────────────────────────────


class TestSegments:
    def test_chained_segments(self):
        timers, eng = _engine()
        eng.add_segment(RhythmSegment("intro", 1000, RhythmMode.SYNC, bpm=600, next_segment="outro"))
        eng.add_segment(RhythmSegment("outro", 500, RhythmMode.SYNC, bpm=600))
        events = []
        for name in ("segment_start", "segment_end", "rhythm_complete"):
            eng.on(name, events.append)
        beats = []
        eng.on("beat", beats.append)

        assert eng.play_segment("intro")
        timers.advance(2000)

        assert [(e.type, e.segment_id) for e in events] == [
            ("segment_start", "intro"),
            ("segment_end", "intro"),
            ("segment_start", "outro"),
            ("segment_end", "outro"),
            ("rhythm_complete", "outro"),
        ]
        assert [(b.segment_id, b.beat) for b in beats] == (
            [("intro", n) for n in range(1, 11)] + [("outro", n) for n in range(1, 6)]
        )
        assert not eng.is_active
        assert eng.current_segment is None

    def test_behaviors_run_on_first_beat_of_each_bar(self):
        timers, eng = _engine()
        eng.add_segment(RhythmSegment("wave", 1000, RhythmMode.SYNC, bpm=600, behaviors=["wave"]))
        cues = []
        eng.on("segment_behaviors", cues.append)
        eng.play_segment("wave")
        timers.advance(1000)
        assert [(c.beat, c.bar, c.behaviors) for c in cues] == [
            (1, 1, ["wave"]),
            (5, 2, ["wave"]),
            (9, 3, ["wave"]),
        ]

    def test_segment_without_behaviors_sends_no_cues(self):
        timers, eng = _engine()
        eng.add_segment(RhythmSegment("quiet", 500, RhythmMode.SYNC, bpm=600))
        cues = []
        eng.on("segment_behaviors", cues.append)
        eng.play_segment("quiet")
        timers.advance(500)
        assert cues == []

    def test_unknown_segment(self):
        _, eng = _engine()
        assert eng.play_segment("nope") is False

    def test_remove_segment(self):
        _, eng = _engine()
        eng.add_segment(segment_for_emotion("a", EmotionType.EXCITED))
        assert eng.remove_segment("a") is True
        assert eng.remove_segment("a") is False

    @pytest.mark.parametrize(
        "emotion,mode,bpm",
        [
            (EmotionType.EXCITED, RhythmMode.PULSE, 140),
            (EmotionType.CALM, RhythmMode.STEADY, 80),
            (EmotionType.CURIOUS, RhythmMode.ADAPTIVE, 110),
            (EmotionType.FOCUSED, RhythmMode.SYNC, 100),
            (EmotionType.SLEEPY, RhythmMode.SEQUENCE, 120),
        ],
    )
    def test_segment_for_emotion(self, emotion, mode, bpm):
        seg = segment_for_emotion("x", emotion)
        assert (seg.mode, seg.bpm) == (mode, bpm)


# ── Frame telemetry ──────────────────────────────────────────────


class TestFrames:
    def test_monitor_stats(self):
        m = FrameMonitor()
        for ms in (10, 20, 30, 40):
            m.record(ms)
        assert m.average_ms == pytest.approx(25)
        assert m.p95_ms == pytest.approx(38.5)
        assert m.fps == pytest.approx(40)
        assert m.dropped_frames == 1
        assert m.drop_rate == pytest.approx(0.25)

    def test_empty_monitor(self):
        m = FrameMonitor()
        assert m.to_dict()["fps"] == 0.0

    def test_window_is_bounded(self):
        m = FrameMonitor(window=3)
        for ms in (100, 100, 10, 10, 10):
            m.record(ms)
        assert m.average_ms == pytest.approx(10)
        assert m.total_frames == 5

    def test_adaptive_frame_rate(self):
        fr = AdaptiveFrameRate(60)
        assert fr.update(50) == 55
        for _ in range(10):
            fr.update(100)
        assert fr.fps == 30
        for _ in range(10):
            fr.update(1)
        assert fr.fps == 60

    def test_engine_reports_frames(self):
        _, eng = _engine()
        assert eng.report_frame(50) == 55
        assert eng.snapshot()["frames"]["total"] == 1
