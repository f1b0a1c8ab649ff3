"""Composition root and real-time loop.

TickLoop owns the single clock, timer queue and interaction-statistics
store, builds the emotion engine, behavior scheduler, rhythm engine and
adaptation manager on top of them, and wires them together:

- state changes drive emotion, then behavior scheduling
- each schedule result re-arms a reschedule timer at next_schedule_at
- adaptation decisions are applied to the rhythm engine here, not by
  the adaptation manager

``run()`` drains due timers at ``tick_hz``; tests drive virtual time with
``advance()`` instead.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Callable

from companion.config import CompanionConfig
from companion.core.behavior_scheduler import BehaviorScheduler, PluginInvoker, system_load
from companion.core.clock import Clock, MonotonicClock, TimerHandle, TimerQueue
from companion.core.errors import InputError
from companion.core.interaction_stats import InteractionStats
from companion.core.rhythm_adaptation import (
    RhythmAdaptationDecision,
    RhythmAdaptationManager,
    TransitionType,
)
from companion.core.rhythm_engine import RhythmEngine, RhythmMode, bpm_to_interval_ms
from companion.core.state import (
    ENGAGED_STATES,
    EmotionContext,
    ExecutionResult,
    InteractionState,
    coerce_state,
)
from companion.core.strategy_records import ValidatedRecords, load_records
from companion.personality.drivers import RuleBasedEmotionDriver
from companion.personality.emotion import TextAnalysis
from companion.personality.engine import EmotionEngine

log = logging.getLogger(__name__)

RHYTHM_EVENTS = frozenset(
    {
        "tick",
        "beat",
        "segment_behaviors",
        "segment_start",
        "segment_end",
        "rhythm_complete",
        "mode_change",
    }
)
BEHAVIOR_EVENTS = frozenset({"behavior_started", "behavior_completed", "behavior_failed"})


def apply_decision(engine: RhythmEngine, decision: RhythmAdaptationDecision) -> None:
    """Retune the rhythm engine to an adaptation decision."""
    overrides: dict[str, Any] = {}
    if decision.target_bpm:
        overrides["base_interval_ms"] = bpm_to_interval_ms(decision.target_bpm)
    engine.set_mode(
        decision.target_mode,
        immediate=decision.transition == TransitionType.IMMEDIATE,
        **overrides,
    )
    if decision.intensity is not None:
        engine.adapt_to_emotion(decision.intensity)


class TickLoop:
    def __init__(
        self,
        cfg: CompanionConfig | None = None,
        *,
        clock: Clock | None = None,
        on_telemetry: Callable[[dict], Any] | None = None,
        plugin_invoker: PluginInvoker | None = None,
        rng: random.Random | None = None,
        load_probe: Callable[[], float] = system_load,
    ) -> None:
        self.cfg = cfg or CompanionConfig()
        c = self.cfg
        self.clock: Clock = clock or MonotonicClock()
        self.timers = TimerQueue(self.clock)
        self.stats = InteractionStats(self.clock)
        self._on_telemetry = on_telemetry

        # Subsystems
        self.emotion = EmotionEngine(
            self.clock,
            driver=RuleBasedEmotionDriver(
                self.clock,
                idle_timeout_ms=c.emotion.idle_timeout_ms,
                excitement_threshold=c.emotion.excitement_threshold,
                history_limit=c.emotion.history_limit,
            ),
            history_limit=c.emotion.history_limit,
            history_trim_to=c.emotion.history_trim_to,
        )
        self.scheduler = BehaviorScheduler(
            self.timers,
            stats=self.stats,
            emotion_source=self.emotion.current,
            plugin_invoker=plugin_invoker,
            load_probe=load_probe,
            base_intervals={
                InteractionState.IDLE: c.scheduler.idle_interval_ms,
                InteractionState.HOVER: c.scheduler.hover_interval_ms,
                InteractionState.AWAKEN: c.scheduler.awaken_interval_ms,
                InteractionState.CONTROL: c.scheduler.control_interval_ms,
            },
        )
        self.rhythm = RhythmEngine(
            self.timers,
            mode=RhythmMode(c.rhythm.initial_mode),
            rng=rng,
            beats_per_bar=c.rhythm.beats_per_bar,
            min_interval_ms=c.rhythm.min_interval_ms,
            target_fps=c.rhythm.target_fps,
        )
        self.adaptation = RhythmAdaptationManager(
            self.timers,
            self.stats,
            enabled=c.adaptation.enabled,
            update_interval_ms=c.adaptation.update_interval_ms,
            debounce_ms=c.adaptation.debounce_ms,
            max_adaptations_per_minute=c.adaptation.max_adaptations_per_minute,
            categories=c.adaptation.categories,
            work_hours=(c.adaptation.work_hour_start, c.adaptation.work_hour_end),
        )
        self.adaptation.notify_mode(self.rhythm.mode)
        self.adaptation.events.on("adaptation_applied", self._apply_adaptation)

        if c.strategy_records:
            self.load_strategy_records(c.strategy_records)

        self.state = InteractionState.IDLE
        self.last_result: ExecutionResult | None = None
        self.adaptations_applied = 0
        self._reschedule: TimerHandle | None = None
        self._emotion_tick: TimerHandle | None = None
        self._revert: TimerHandle | None = None
        self._started = False
        self._running = False
        self._tick_seq = 0

    # ── Host → core ──────────────────────────────────────────────

    def on_state_change(
        self, state: Any, context: dict[str, Any] | None = None
    ) -> ExecutionResult:
        state = coerce_state(state)
        prev = self.state
        self.state = state
        if state in ENGAGED_STATES:
            self.stats.record(state.value)
            self.scheduler.update_last_interaction()

        emotion = self.emotion.decide_from_state(state, context)
        intensity = self.emotion.intensity_for(emotion)
        hold = self.cfg.emotion.hold_ms
        if emotion != self.emotion.emotion:
            self.emotion.set_emotion(emotion, intensity, hold, cause=f"state_{state.value}")
        else:
            self.emotion.blend_emotion(emotion, intensity * 0.2, hold)
        if prev != state:
            log.info("state: %s -> %s (%s)", prev.value, state.value, emotion.value)

        self.rhythm.adapt_to_emotion(self.emotion.intensity)
        self.adaptation.update_context(
            emotion=self.emotion.emotion,
            emotion_intensity=self.emotion.intensity,
            state=state,
        )
        return self._schedule_now(context)

    def handle_user_input(self, text: Any) -> TextAnalysis:
        self.stats.record("input")
        self.scheduler.update_last_interaction()
        analysis = self.emotion.handle_user_input(text)
        self.adaptation.update_context(
            emotion=self.emotion.emotion, emotion_intensity=self.emotion.intensity
        )
        return analysis

    def record_interaction(self, kind: str = "interaction") -> None:
        self.stats.record(kind)
        self.scheduler.update_last_interaction()
        self.adaptation.update_context()

    def load_strategy_records(self, records: list[Any]) -> ValidatedRecords:
        return load_records(self.scheduler.registry, records)

    # ── Core → host ──────────────────────────────────────────────

    def schedule(
        self, state: Any, emotion: Any, context: dict[str, Any] | None = None
    ) -> ExecutionResult:
        return self.scheduler.schedule(state, emotion, context)

    def current_emotion(self) -> EmotionContext:
        return self.emotion.current()

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        if event in RHYTHM_EVENTS:
            return self.rhythm.on(event, handler)
        if event in BEHAVIOR_EVENTS:
            return self.scheduler.events.on(event, handler)
        if event == "adaptation_applied":
            return self.adaptation.events.on(event, handler)
        if event == "emotion_changed":
            return self.emotion.events.on(event, handler)
        raise InputError(f"unknown event: {event}")

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.cfg.rhythm.autostart:
            self.rhythm.start()
        self.adaptation.start()
        self._emotion_tick = self.timers.call_later(
            self.cfg.emotion.tick_ms, self._on_emotion_tick, label="emotion"
        )
        self._schedule_now()

    def shutdown(self) -> None:
        for h in (self._reschedule, self._emotion_tick, self._revert):
            if h is not None:
                h.cancel()
        self._reschedule = self._emotion_tick = self._revert = None
        self.rhythm.stop()
        self.adaptation.stop()
        self.scheduler.dispose()
        self._started = False
        log.info("companion core shut down")

    def advance(self, ms: float) -> int:
        """Virtual time step (ManualClock only)."""
        return self.timers.advance(ms)

    async def run(self) -> None:
        """Drain due timers at tick_hz until stopped."""
        tick_hz = max(1, self.cfg.control.tick_hz)
        period_s = 1.0 / tick_hz
        telem_every = max(1, tick_hz // max(1, self.cfg.control.telemetry_hz))
        self._running = True
        self.start()
        log.info("tick loop started at %d Hz", tick_hz)

        try:
            while self._running:
                t0 = time.monotonic()
                self.timers.run_due()
                self._tick_seq += 1
                if self._on_telemetry and self._tick_seq % telem_every == 0:
                    self._on_telemetry(self.telemetry())

                elapsed = time.monotonic() - t0
                sleep_s = period_s - elapsed
                if sleep_s > 0:
                    await asyncio.sleep(sleep_s)
                else:
                    await asyncio.sleep(0)
        except asyncio.CancelledError:
            pass
        finally:
            self._running = False
            self.shutdown()
            log.info("tick loop stopped")

    def stop(self) -> None:
        self._running = False

    # ── Telemetry ────────────────────────────────────────────────

    def telemetry(self) -> dict:
        emo = self.emotion.current()
        rhythm = self.rhythm.state
        return {
            "ts_ms": round(self.clock.now_ms(), 1),
            "state": self.state.value,
            "emotion": emo.current_emotion.value,
            "intensity": round(emo.intensity, 3),
            "rhythm_mode": rhythm.current_mode.value,
            "rhythm_interval_ms": round(rhythm.current_interval_ms, 1),
            "tick_count": rhythm.tick_count,
            "active_behaviors": [a.behavior.type.value for a in self.scheduler.active_behaviors()],
        }

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "emotion": self.emotion.snapshot(),
            "scheduler": self.scheduler.snapshot(),
            "rhythm": self.rhythm.snapshot(),
            "adaptation": self.adaptation.snapshot(),
            "stats": self.stats.to_dict(),
            "adaptations_applied": self.adaptations_applied,
        }

    # -- internals -----------------------------------------------------------

    def _schedule_now(self, context: dict[str, Any] | None = None) -> ExecutionResult:
        result = self.scheduler.schedule(self.state, self.emotion.emotion, context)
        self.last_result = result
        if self._reschedule is not None:
            self._reschedule.cancel()
            self._reschedule = None
        if self.cfg.scheduler.auto_reschedule and result.next_schedule_at is not None:
            self._reschedule = self.timers.call_at(
                result.next_schedule_at, self._on_reschedule, label="reschedule"
            )
        return result

    def _on_reschedule(self) -> None:
        self._reschedule = None
        self._schedule_now()

    def _on_emotion_tick(self) -> None:
        dt = self.cfg.emotion.tick_ms
        self._emotion_tick = self.timers.call_later(dt, self._on_emotion_tick, label="emotion")
        before = self.emotion.emotion
        self.emotion.tick(dt)
        self.rhythm.adapt_to_emotion(self.emotion.intensity)
        if self.emotion.emotion != before:
            self.adaptation.update_context(
                emotion=self.emotion.emotion, emotion_intensity=self.emotion.intensity
            )

    def _apply_adaptation(self, decision: RhythmAdaptationDecision) -> None:
        apply_decision(self.rhythm, decision)
        self.adaptations_applied += 1
        if self._revert is not None:
            self._revert.cancel()
            self._revert = None
        if self.cfg.rhythm.revert_after_decision and decision.duration_ms:
            self._revert = self.timers.call_later(
                decision.duration_ms, self._revert_rhythm, label="rhythm:revert"
            )

    def _revert_rhythm(self) -> None:
        self._revert = None
        mode = RhythmMode(self.cfg.rhythm.initial_mode)
        log.info("adaptation expired, rhythm back to %s", mode.value)
        self.rhythm.set_mode(mode, immediate=False)
        self.adaptation.notify_mode(mode)
