"""Tests for the rule-based emotion cascade and the provider chain."""

from __future__ import annotations

import logging

import pytest

import companion.personality.drivers as drivers_mod
from companion.core.clock import ManualClock
from companion.core.state import EmotionType, InteractionState
from companion.personality.drivers import (
    EmotionProvider,
    InferenceContext,
    PluginEmotionDriver,
    RuleBasedEmotionDriver,
)


def _driver(**kw) -> tuple[ManualClock, RuleBasedEmotionDriver]:
    clock = ManualClock()
    return clock, RuleBasedEmotionDriver(clock, **kw)


class TestCascade:
    def test_control_is_focused(self):
        _, d = _driver()
        assert d.decide_emotion(InteractionState.CONTROL) == EmotionType.FOCUSED

    def test_awaken_happy_until_threshold(self):
        _, d = _driver(excitement_threshold=3)
        assert d.decide_emotion(InteractionState.AWAKEN) == EmotionType.HAPPY
        assert d.decide_emotion(InteractionState.AWAKEN) == EmotionType.HAPPY
        assert d.decide_emotion(InteractionState.AWAKEN) == EmotionType.EXCITED
        assert d.intensity_for(EmotionType.EXCITED) == pytest.approx(0.8)

    def test_excited_intensity_is_capped(self):
        _, d = _driver(excitement_threshold=1)
        for _ in range(10):
            d.decide_emotion(InteractionState.AWAKEN)
        assert d.intensity_for(EmotionType.EXCITED) == pytest.approx(0.9)

    def test_hover_right_after_awaken(self):
        clock, d = _driver()
        d.decide_emotion(InteractionState.AWAKEN)
        clock.advance(1000)
        assert d.decide_emotion(InteractionState.HOVER) == EmotionType.CURIOUS
        assert d.statistics()["last_reason"] == "recently_awakened"

    def test_hover_long_after_awaken(self):
        clock, d = _driver()
        d.decide_emotion(InteractionState.AWAKEN)
        d.decide_emotion(InteractionState.HOVER)
        clock.advance(6000)
        assert d.decide_emotion(InteractionState.HOVER) == EmotionType.CURIOUS
        assert d.statistics()["last_reason"] == "hover_state"

    def test_idle_calm_then_sleepy_after_timeout(self):
        clock, d = _driver(idle_timeout_ms=150)
        assert d.decide_emotion(InteractionState.IDLE) == EmotionType.CALM
        clock.advance(200)
        assert d.decide_emotion(InteractionState.IDLE) == EmotionType.SLEEPY

    def test_recent_engagement_keeps_idle_calm(self):
        clock, d = _driver(idle_timeout_ms=150)
        clock.advance(1000)
        d.decide_emotion(InteractionState.HOVER)
        clock.advance(100)
        assert d.decide_emotion(InteractionState.IDLE) == EmotionType.CALM

    def test_host_idle_override(self):
        _, d = _driver()
        assert d.decide_emotion(InteractionState.IDLE, {"idle_ms": 60_000}) == EmotionType.SLEEPY

    def test_malformed_idle_override_is_ignored(self, caplog):
        _, d = _driver()
        with caplog.at_level(logging.WARNING, logger=drivers_mod.__name__):
            emotion = d.decide_emotion(InteractionState.IDLE, {"idle_ms": "soon"})
        assert emotion == EmotionType.CALM
        assert caplog.records

    def test_sleepy_resets_interaction_count(self):
        _, d = _driver()
        d.decide_emotion(InteractionState.AWAKEN)
        d.decide_emotion(InteractionState.AWAKEN)
        assert d.interaction_count == 2
        d.decide_emotion(InteractionState.IDLE, {"idle_ms": 10**6})
        assert d.interaction_count == 0

    def test_unknown_state_treated_as_idle(self):
        _, d = _driver()
        assert d.decide_emotion("sideways") == EmotionType.CALM

    def test_statistics_distribution(self):
        _, d = _driver()
        d.decide_emotion(InteractionState.CONTROL)
        d.decide_emotion(InteractionState.CONTROL)
        d.decide_emotion(InteractionState.HOVER)
        stats = d.statistics()
        assert stats["emotion_distribution"] == {"focused": 2, "curious": 1}
        assert stats["state_history"] == ["control", "hover"]


# ── Providers ────────────────────────────────────────────────────


class _Fixed(EmotionProvider):
    def __init__(self, name: str, answer):
        self.name = name
        self.answer = answer
        self.seen: list[InferenceContext] = []

    def infer_emotion(self, ctx):
        self.seen.append(ctx)
        return self.answer


class _Failing(EmotionProvider):
    name = "failing"

    def infer_emotion(self, ctx):
        raise TimeoutError("no answer")


class TestPluginDriver:
    def test_provider_overrides_rule_result(self):
        clock, base = _driver()
        d = PluginEmotionDriver(base, [_Fixed("a", "excited")])
        assert d.decide_emotion(InteractionState.CONTROL) == EmotionType.EXCITED

    def test_chain_sees_previous_answer(self):
        clock, base = _driver()
        first = _Fixed("first", EmotionType.HAPPY)
        second = _Fixed("second", EmotionType.CURIOUS)
        d = PluginEmotionDriver(base, [first, second])
        assert d.decide_emotion(InteractionState.CONTROL) == EmotionType.CURIOUS
        assert first.seen[0].base_emotion == EmotionType.FOCUSED
        assert second.seen[0].base_emotion == EmotionType.HAPPY

    def test_provider_failure_falls_back_to_rules(self, caplog):
        clock, base = _driver()
        d = PluginEmotionDriver(base, [_Fixed("a", "happy"), _Failing()])
        with caplog.at_level(logging.WARNING, logger=drivers_mod.__name__):
            emotion = d.decide_emotion(InteractionState.CONTROL)
        assert emotion == EmotionType.FOCUSED
        assert d.provider_failures == 1
        assert any("failing" in r.getMessage() for r in caplog.records)

    def test_unknown_provider_answer_falls_back(self):
        clock, base = _driver()
        d = PluginEmotionDriver(base, [_Fixed("confused", "grumpy")])
        assert d.decide_emotion(InteractionState.HOVER) == EmotionType.CURIOUS
        assert d.provider_failures == 1

    def test_remove_provider(self):
        clock, base = _driver()
        d = PluginEmotionDriver(base, [_Failing()])
        assert d.remove_provider("failing") is True
        assert d.remove_provider("failing") is False
        assert d.decide_emotion(InteractionState.HOVER) == EmotionType.CURIOUS
        assert d.statistics()["providers"] == []
