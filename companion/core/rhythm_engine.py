"""Rhythm engine: tick cadence from selectable interval modes.

Ticks are TimerQueue entries; each fired tick schedules the next one.
Subscribers receive ``(timestamp_ms, actual_interval_ms)``; named events
(tick, beat, segment_behaviors, segment_start, segment_end, rhythm_complete,
mode_change) carry a RhythmEvent.  While a segment plays every tick is a
beat, and the first beat of each bar also emits segment_behaviors with the
segment's behavior names for the host to run.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Final

from companion.core.clock import TimerHandle, TimerQueue
from companion.core.errors import InputError
from companion.core.events import EventEmitter
from companion.core.frame_monitor import AdaptiveFrameRate, FrameMonitor
from companion.core.state import EmotionType, clamp01

log = logging.getLogger(__name__)

MIN_INTERVAL_MS: Final = 50.0
BEATS_PER_BAR: Final = 4


class RhythmMode(str, Enum):
    STEADY = "steady"
    PULSE = "pulse"
    SEQUENCE = "sequence"
    ADAPTIVE = "adaptive"
    SYNC = "sync"


@dataclass(slots=True)
class RhythmConfig:
    mode: RhythmMode
    base_interval_ms: float
    variation: float = 0.1
    intensity: str = "medium"  # "low" | "medium" | "high"
    sequence: list[float] = field(default_factory=list)
    sync_source: str | None = None

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "base_interval_ms": self.base_interval_ms,
            "variation": self.variation,
            "intensity": self.intensity,
            "sequence": list(self.sequence),
            "sync_source": self.sync_source,
        }


DEFAULT_MODE_CONFIGS: Final[dict[RhythmMode, RhythmConfig]] = {
    RhythmMode.STEADY: RhythmConfig(RhythmMode.STEADY, 1000, 0.1),
    RhythmMode.PULSE: RhythmConfig(RhythmMode.PULSE, 400, 0.3, "high"),
    RhythmMode.SEQUENCE: RhythmConfig(
        RhythmMode.SEQUENCE, 500, 0.2, sequence=[300, 600, 200, 800, 400]
    ),
    RhythmMode.ADAPTIVE: RhythmConfig(RhythmMode.ADAPTIVE, 600, 0.4),
    RhythmMode.SYNC: RhythmConfig(RhythmMode.SYNC, 1000, 0.1, "low"),
}


def default_config(mode: RhythmMode, **overrides: Any) -> RhythmConfig:
    base = DEFAULT_MODE_CONFIGS[mode]
    cfg = replace(base, sequence=list(base.sequence))
    for k, v in overrides.items():
        if k == "mode" or not hasattr(cfg, k):
            raise InputError(f"unknown rhythm config field: {k}")
        setattr(cfg, k, v)
    cfg.mode = mode
    return cfg


def bpm_to_interval_ms(bpm: float) -> float:
    return 60_000.0 / bpm if bpm > 0 else DEFAULT_MODE_CONFIGS[RhythmMode.STEADY].base_interval_ms


@dataclass(slots=True)
class RhythmState:
    is_active: bool = False
    current_mode: RhythmMode = RhythmMode.STEADY
    current_interval_ms: float = 1000.0
    tick_count: int = 0
    last_tick_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "active": self.is_active,
            "mode": self.current_mode.value,
            "interval_ms": round(self.current_interval_ms, 1),
            "tick_count": self.tick_count,
            "last_tick_ms": self.last_tick_ms,
        }


@dataclass(slots=True)
class RhythmEvent:
    type: str
    timestamp_ms: float
    tick_count: int = 0
    interval_ms: float = 0.0
    segment_id: str | None = None
    beat: int | None = None
    bar: int | None = None
    behaviors: list[str] | None = None


@dataclass(slots=True)
class RhythmSegment:
    id: str
    duration_ms: float
    mode: RhythmMode
    bpm: float = 120.0
    behaviors: list[str] = field(default_factory=list)
    next_segment: str | None = None


# (mode, bpm, duration_ms) per emotion; anything else gets the sequence shape.
_EMOTION_SEGMENTS: Final[dict[EmotionType, tuple[RhythmMode, float, float]]] = {
    EmotionType.EXCITED: (RhythmMode.PULSE, 140, 10_000),
    EmotionType.CALM: (RhythmMode.STEADY, 80, 20_000),
    EmotionType.CURIOUS: (RhythmMode.ADAPTIVE, 110, 15_000),
    EmotionType.FOCUSED: (RhythmMode.SYNC, 100, 30_000),
}


def segment_for_emotion(
    segment_id: str, emotion: EmotionType, behaviors: list[str] | None = None
) -> RhythmSegment:
    mode, bpm, duration = _EMOTION_SEGMENTS.get(
        emotion, (RhythmMode.SEQUENCE, 120, 12_000)
    )
    return RhythmSegment(segment_id, duration, mode, bpm, list(behaviors or []))


TickCallback = Callable[[float, float], Any]


class RhythmEngine:
    def __init__(
        self,
        timers: TimerQueue,
        *,
        mode: RhythmMode = RhythmMode.STEADY,
        rng: random.Random | None = None,
        beats_per_bar: int = BEATS_PER_BAR,
        min_interval_ms: float = MIN_INTERVAL_MS,
        target_fps: int = 60,
    ) -> None:
        self._timers = timers
        self._clock = timers.clock
        self._rng = rng or random.Random()
        self._beats_per_bar = max(1, beats_per_bar)
        self._min_interval_ms = min_interval_ms

        self.config = default_config(mode)
        self._state = RhythmState(
            current_mode=mode, current_interval_ms=self.config.base_interval_ms
        )
        self._target_interval_ms = self.config.base_interval_ms
        self._timer: TimerHandle | None = None
        self._paused = False
        self._pending_mode: tuple[RhythmMode, dict[str, Any]] | None = None

        self._subscribers: list[TickCallback] = []
        self.events = EventEmitter("rhythm")

        self._segments: dict[str, RhythmSegment] = {}
        self._segment: RhythmSegment | None = None
        self._segment_started_ms = 0.0

        self.frames = FrameMonitor()
        self.frame_rate = AdaptiveFrameRate(target_fps)

    # ── Queries ──────────────────────────────────────────────────

    @property
    def state(self) -> RhythmState:
        return replace(self._state)

    @property
    def mode(self) -> RhythmMode:
        return self._state.current_mode

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def current_segment(self) -> RhythmSegment | None:
        return self._segment

    def compute_interval(self, tick_count: int | None = None) -> float:
        """Raw mode math for tick ``tick_count`` (no floor applied)."""
        k = self._state.tick_count if tick_count is None else tick_count
        cfg = self.config
        base = cfg.base_interval_ms
        mode = cfg.mode
        if mode == RhythmMode.STEADY:
            return base + base * cfg.variation * (self._rng.random() - 0.5)
        if mode == RhythmMode.PULSE:
            return base * (0.8 + 0.4 * math.sin(2 * math.pi * (k % 4) / 4))
        if mode == RhythmMode.SEQUENCE:
            if not cfg.sequence:
                return base
            return float(cfg.sequence[k % len(cfg.sequence)])
        if mode == RhythmMode.ADAPTIVE:
            cur = self._target_interval_ms
            return cur + cur * cfg.variation * (self._rng.random() - 0.5)
        return base

    def next_interval(self) -> float:
        return max(self._min_interval_ms, self.compute_interval())

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        if self._state.is_active:
            return
        self._paused = False
        self._state.is_active = True
        self._state.last_tick_ms = self._clock.now_ms()
        self._schedule_next()
        log.info(
            "rhythm started: %s @ %.0f ms", self.config.mode.value, self.config.base_interval_ms
        )

    def stop(self) -> None:
        was_active = self._state.is_active
        self._cancel_timer()
        self._state.is_active = False
        self._paused = False
        if was_active:
            log.info("rhythm stopped after %d ticks", self._state.tick_count)

    def pause(self) -> None:
        if not self._state.is_active:
            return
        self._cancel_timer()
        self._state.is_active = False
        self._paused = True
        log.debug("rhythm paused")

    def resume(self) -> None:
        if not self._paused:
            return
        self.start()

    def dispose(self) -> None:
        self.stop()
        self._subscribers.clear()
        self.events.clear_listeners()
        self._segments.clear()
        self._segment = None

    # ── Mode control ─────────────────────────────────────────────

    def set_mode(self, mode: RhythmMode | str, *, immediate: bool = True, **overrides: Any) -> None:
        """Switch mode; a non-immediate switch lands on the next tick boundary."""
        try:
            mode = RhythmMode(mode)
        except ValueError:
            raise InputError(f"unknown rhythm mode: {mode!r}") from None
        default_config(mode, **overrides)  # validate before touching state
        if not immediate and self._state.is_active:
            self._pending_mode = (mode, overrides)
            return
        was_active = self._state.is_active
        if was_active:
            self._cancel_timer()
            self._state.is_active = False
        self._apply_mode(mode, overrides)
        if was_active:
            self.start()

    def sync_with_external(self, source: str, interval_ms: float) -> None:
        self.set_mode(
            RhythmMode.SYNC, base_interval_ms=float(interval_ms), variation=0.05, sync_source=source
        )

    def adapt_to_emotion(self, intensity: float) -> bool:
        if self.config.mode != RhythmMode.ADAPTIVE:
            return False
        factor = max(0.3, 1.0 - clamp01(intensity) * 0.7)
        self._target_interval_ms = float(round(self.config.base_interval_ms * factor))
        log.debug("rhythm adapted to intensity %.2f: %.0f ms", intensity, self._target_interval_ms)
        return True

    # ── Subscriptions ────────────────────────────────────────────

    def subscribe(self, callback: TickCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def on(self, event: str, handler: Callable[[RhythmEvent], Any]) -> Callable[[], None]:
        return self.events.on(event, handler)

    # ── Segments ─────────────────────────────────────────────────

    def add_segment(self, segment: RhythmSegment) -> None:
        self._segments[segment.id] = segment

    def remove_segment(self, segment_id: str) -> bool:
        return self._segments.pop(segment_id, None) is not None

    def segments(self) -> list[RhythmSegment]:
        return list(self._segments.values())

    def play_segment(self, segment_id: str) -> bool:
        seg = self._segments.get(segment_id)
        if seg is None:
            log.warning("unknown rhythm segment %s", segment_id)
            return False
        self.set_mode(seg.mode, base_interval_ms=bpm_to_interval_ms(seg.bpm))
        now = self._clock.now_ms()
        self._segment = seg
        self._segment_started_ms = now
        self.events.emit("segment_start", RhythmEvent("segment_start", now, segment_id=seg.id))
        self.start()
        log.info("segment %s: %s @ %.0f bpm for %.0f ms", seg.id, seg.mode.value, seg.bpm, seg.duration_ms)
        return True

    # ── Continuous playback telemetry ────────────────────────────

    def report_frame(self, frame_ms: float) -> int:
        self.frames.record(frame_ms)
        return self.frame_rate.update(frame_ms)

    def snapshot(self) -> dict:
        d = self._state.to_dict()
        d["config"] = self.config.to_dict()
        d["target_interval_ms"] = self._target_interval_ms
        d["segment"] = self._segment.id if self._segment else None
        d["frames"] = self.frames.to_dict()
        d["fps"] = self.frame_rate.fps
        return d

    # -- internals -----------------------------------------------------------

    def _apply_mode(self, mode: RhythmMode, overrides: dict[str, Any]) -> None:
        old = self._state.current_mode
        self.config = default_config(mode, **overrides)
        self._target_interval_ms = self.config.base_interval_ms
        self._state.current_mode = mode
        self._state.current_interval_ms = self.config.base_interval_ms
        self._state.tick_count = 0
        now = self._clock.now_ms()
        if old != mode:
            log.info("rhythm mode: %s -> %s", old.value, mode.value)
        self.events.emit("mode_change", RhythmEvent("mode_change", now, interval_ms=self.config.base_interval_ms))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_next(self) -> None:
        interval = self.next_interval()
        self._state.current_interval_ms = interval
        self._timer = self._timers.call_later(interval, self._on_timer, label="rhythm")

    def _on_timer(self) -> None:
        self._timer = None
        if not self._state.is_active:
            return
        if self._pending_mode is not None:
            mode, overrides = self._pending_mode
            self._pending_mode = None
            self._apply_mode(mode, overrides)

        now = self._clock.now_ms()
        st = self._state
        actual = now - st.last_tick_ms
        st.last_tick_ms = now
        st.tick_count += 1

        for cb in list(self._subscribers):
            try:
                cb(now, actual)
            except Exception:
                log.exception("rhythm subscriber failed")

        seg_id = self._segment.id if self._segment else None
        self.events.emit("tick", RhythmEvent("tick", now, st.tick_count, actual, seg_id))

        if self._segment is not None:
            beat = st.tick_count
            bar = (beat - 1) // self._beats_per_bar + 1
            self.events.emit(
                "beat", RhythmEvent("beat", now, st.tick_count, actual, seg_id, beat, bar)
            )
            if (beat - 1) % self._beats_per_bar == 0 and self._segment.behaviors:
                self.events.emit(
                    "segment_behaviors",
                    RhythmEvent(
                        "segment_behaviors",
                        now,
                        st.tick_count,
                        actual,
                        seg_id,
                        beat,
                        bar,
                        list(self._segment.behaviors),
                    ),
                )
            if now - self._segment_started_ms >= self._segment.duration_ms:
                self._end_segment(now)

        if self._state.is_active and self._timer is None:
            self._schedule_next()

    def _end_segment(self, now: float) -> None:
        seg = self._segment
        if seg is None:
            return
        self._segment = None
        self.events.emit("segment_end", RhythmEvent("segment_end", now, segment_id=seg.id))
        if seg.next_segment and seg.next_segment in self._segments:
            self.play_segment(seg.next_segment)
            return
        self.stop()
        self.events.emit("rhythm_complete", RhythmEvent("rhythm_complete", now, segment_id=seg.id))
