"""Tests for the TickLoop composition root."""

from __future__ import annotations

import asyncio
import random

import pytest

from companion.config import CompanionConfig
from companion.core.clock import ManualClock
from companion.core.interaction_stats import (
    ActivityLevel,
    InteractionPattern,
    UserInteractionStats,
)
from companion.core.rhythm_adaptation import RhythmAdaptationDecision, TransitionType
from companion.core.rhythm_engine import RhythmEngine, RhythmMode
from companion.core.state import BehaviorType, EmotionType, InteractionState
from companion.core.tick_loop import TickLoop, apply_decision


def _loop(cfg: CompanionConfig | None = None, hour: int = 14) -> TickLoop:
    return TickLoop(
        cfg,
        clock=ManualClock(hour=hour),
        rng=random.Random(3),
        load_probe=lambda: 0.0,
    )


def _burst(loop: TickLoop) -> None:
    loop.adaptation.update_context(
        emotion=EmotionType.EXCITED,
        emotion_intensity=0.9,
        activity_level=ActivityLevel.BURST,
        user_stats=UserInteractionStats(
            recent_frequency=15, continuous_idle_ms=1000, interaction_pattern=InteractionPattern.BURST
        ),
    )


# ── End to end ───────────────────────────────────────────────────


class TestStateFlow:
    def test_full_interaction_cycle(self):
        loop = _loop()
        seen = []
        for state in ("idle", "hover", "awaken", "control", "idle"):
            result = loop.on_state_change(state)
            assert result.success
            seen.append(loop.emotion.emotion)
        assert seen == [
            EmotionType.CALM,
            EmotionType.CURIOUS,
            EmotionType.HAPPY,
            EmotionType.FOCUSED,
            EmotionType.CALM,
        ]

    def test_engaged_states_count_as_interactions(self):
        loop = _loop()
        loop.on_state_change(InteractionState.HOVER)
        loop.on_state_change(InteractionState.AWAKEN)
        loop.on_state_change(InteractionState.IDLE)
        assert loop.stats.counts == {"hover": 1, "awaken": 1}

    def test_schedule_result_drives_behaviors(self):
        loop = _loop()
        result = loop.on_state_change(InteractionState.CONTROL)
        types = [b.type for b in result.executed_behaviors]
        assert BehaviorType.CONTROL_ACTIVATION in types
        assert BehaviorType.EMOTIONAL_EXPRESSION in types
        assert result.next_schedule_at == pytest.approx(1000)

    def test_reschedule_timer_rearms(self):
        loop = _loop()
        loop.on_state_change(InteractionState.CONTROL)
        loop.advance(1000)
        assert loop.scheduler.schedules == 2
        loop.advance(1000)
        assert loop.scheduler.schedules == 3

    def test_user_input(self):
        loop = _loop()
        analysis = loop.handle_user_input("wow amazing!!")
        assert analysis.emotion == EmotionType.EXCITED
        assert loop.stats.counts["input"] == 1
        assert loop.adaptation.context.emotion == loop.emotion.emotion

    def test_strategy_records_from_config(self):
        cfg = CompanionConfig(
            strategy_records=[{"id": "wave", "actions": [{"type": "animation_sequence", "animation": "wave"}]}]
        )
        loop = _loop(cfg)
        assert "record:wave" in loop.scheduler.registry


# ── Adaptation → rhythm ──────────────────────────────────────────


class TestAdaptationWiring:
    def test_decision_retunes_rhythm(self):
        loop = _loop()
        applied = []
        loop.on("adaptation_applied", applied.append)
        _burst(loop)
        loop.advance(1000)

        assert loop.adaptations_applied == 1
        assert applied[0].target_mode == RhythmMode.PULSE
        assert loop.rhythm.mode == RhythmMode.PULSE
        assert loop.rhythm.config.base_interval_ms == pytest.approx(60_000 / 140)

    def test_decision_expires_back_to_initial_mode(self):
        loop = _loop()
        _burst(loop)
        loop.advance(1000)
        loop.advance(15_000)
        assert loop.rhythm.mode == RhythmMode.STEADY

    def test_smooth_transition_waits_for_tick(self):
        timers = _loop().timers
        eng = RhythmEngine(timers, mode=RhythmMode.SYNC)
        eng.start()
        apply_decision(
            eng,
            RhythmAdaptationDecision(
                RhythmMode.ADAPTIVE, "test", 0.8, target_bpm=100, intensity=0.5,
                transition=TransitionType.SMOOTH,
            ),
        )
        assert eng.mode == RhythmMode.SYNC
        timers.advance(1000)
        assert eng.mode == RhythmMode.ADAPTIVE
        assert eng.config.base_interval_ms == pytest.approx(600)

    def test_immediate_transition_applies_intensity(self):
        timers = _loop().timers
        eng = RhythmEngine(timers, mode=RhythmMode.SYNC)
        apply_decision(
            eng,
            RhythmAdaptationDecision(
                RhythmMode.ADAPTIVE, "test", 0.8, target_bpm=100, intensity=1.0,
                transition=TransitionType.IMMEDIATE,
            ),
        )
        assert eng.mode == RhythmMode.ADAPTIVE
        assert eng.snapshot()["target_interval_ms"] == 180


# ── Lifecycle ────────────────────────────────────────────────────


class TestLifecycle:
    def test_start_schedules_and_ticks(self):
        loop = _loop()
        ticks = []
        loop.on("tick", ticks.append)
        loop.start()
        loop.start()
        assert loop.scheduler.schedules == 1
        assert loop.rhythm.is_active

        loop.advance(3000)
        assert len(ticks) >= 2

    def test_idle_reschedule_period(self):
        loop = _loop()
        loop.start()
        loop.advance(14_999)
        assert loop.scheduler.schedules == 1
        loop.advance(1)
        assert loop.scheduler.schedules == 2

    def test_shutdown_cancels_all_timers(self):
        loop = _loop()
        loop.start()
        loop.on_state_change(InteractionState.AWAKEN)
        assert loop.scheduler.pending_count == 1
        loop.shutdown()
        assert loop.timers.pending == 0
        assert not loop.rhythm.is_active

    def test_unknown_event_rejected(self):
        loop = _loop()
        with pytest.raises(ValueError):
            loop.on("explosion", print)

    def test_snapshot(self):
        loop = _loop()
        loop.on_state_change("hover")
        snap = loop.snapshot()
        assert snap["state"] == "hover"
        assert snap["emotion"]["emotion"] == "curious"
        assert snap["scheduler"]["schedules"] == 1
        assert loop.telemetry()["state"] == "hover"

    @pytest.mark.asyncio
    async def test_run_emits_telemetry_until_stopped(self):
        cfg = CompanionConfig()
        cfg.control.tick_hz = 100
        cfg.control.telemetry_hz = 100
        samples: list[dict] = []
        loop = TickLoop(cfg, on_telemetry=samples.append, load_probe=lambda: 0.0)

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.1)
        loop.stop()
        await asyncio.wait_for(task, 1.0)

        assert samples
        assert samples[0]["state"] == "idle"
        assert loop.timers.pending == 0
        assert loop.schedule("idle", "calm").success is False
