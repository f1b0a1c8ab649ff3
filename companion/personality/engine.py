"""Stateful emotion engine: current emotion, decay, blending, history."""

from __future__ import annotations

import logging
from typing import Any, Final

from companion.core.clock import Clock
from companion.core.events import EventEmitter
from companion.core.state import (
    EmotionContext,
    EmotionHistoryEntry,
    EmotionType,
    InteractionState,
    TimeOfDay,
    clamp01,
    coerce_emotion,
    coerce_state,
)
from companion.personality.drivers import EmotionDriver, RuleBasedEmotionDriver
from companion.personality.emotion import (
    EMOTION_DISPLAY,
    EMOTION_RULES,
    EMPATHY_MAP,
    INTENT_RULES,
    TIME_BIAS,
    EmotionDisplay,
    TextAnalysis,
    analyze_text,
    mood_time_of_day,
)

log = logging.getLogger(__name__)

BLEND_FLOOR: Final = 0.1
DECAY_STEP: Final = 0.02
DECAY_PERIOD_MS: Final = 5000.0
CALM_RESET_BELOW: Final = 0.3


class EmotionEngine:
    """Owns the EmotionContext.  Only set/blend/tick mutate it."""

    def __init__(
        self,
        clock: Clock,
        *,
        driver: EmotionDriver | None = None,
        history_limit: int = 50,
        history_trim_to: int = 30,
    ) -> None:
        self._clock = clock
        self._driver: EmotionDriver = driver or RuleBasedEmotionDriver(clock)
        # Answers when the configured driver raises.
        self._fallback = (
            self._driver
            if isinstance(self._driver, RuleBasedEmotionDriver)
            else RuleBasedEmotionDriver(clock)
        )
        self._history_limit = history_limit
        self._history_trim_to = history_trim_to
        self._ctx = EmotionContext()
        self.events = EventEmitter("emotion")
        self.mood_factor = 1.0
        self.task_success_factor = 1.0
        self.driver_failures = 0

    # ── Queries ──────────────────────────────────────────────────

    @property
    def driver(self) -> EmotionDriver:
        return self._driver

    @property
    def emotion(self) -> EmotionType:
        return self._ctx.current_emotion

    @property
    def intensity(self) -> float:
        return self._ctx.intensity

    def current(self) -> EmotionContext:
        return self._ctx.copy()

    def analyze_text(self, text: Any) -> TextAnalysis:
        return analyze_text(text)

    def display(self) -> EmotionDisplay:
        return EMOTION_DISPLAY[self._ctx.current_emotion]

    def recommend_state_transition(self, state: Any) -> InteractionState | None:
        state = coerce_state(state)
        ctx = self._ctx
        if (
            ctx.current_emotion == EmotionType.SLEEPY
            and ctx.intensity > 0.6
            and state != InteractionState.IDLE
        ):
            return InteractionState.IDLE
        if (
            ctx.current_emotion == EmotionType.EXCITED
            and ctx.intensity > 0.7
            and state == InteractionState.IDLE
        ):
            return InteractionState.HOVER
        return None

    # ── Decisions ────────────────────────────────────────────────

    def set_driver(self, driver: EmotionDriver) -> None:
        log.info("emotion driver: %s -> %s", self._driver.name, driver.name)
        self._driver = driver
        if isinstance(driver, RuleBasedEmotionDriver):
            self._fallback = driver

    def decide_from_state(
        self, state: Any, context: dict[str, Any] | None = None
    ) -> EmotionType:
        state = coerce_state(state)
        history = tuple(self._ctx.history)
        try:
            return self._driver.decide_emotion(state, context, history)
        except Exception:
            self.driver_failures += 1
            log.exception("emotion driver %s failed, using rule-based result", self._driver.name)
            return self._fallback.decide_emotion(state, context, history)

    def intensity_for(self, emotion: EmotionType) -> float:
        try:
            return clamp01(self._driver.intensity_for(emotion))
        except Exception:
            log.exception("emotion driver %s intensity failed", self._driver.name)
            return 0.5

    # ── Mutation ─────────────────────────────────────────────────

    def set_emotion(
        self,
        emotion: Any,
        intensity: float,
        duration_ms: float,
        cause: str | None = None,
    ) -> None:
        emotion = coerce_emotion(emotion)
        ctx = self._ctx
        previous = ctx.current_emotion
        self._push_history(
            EmotionHistoryEntry(
                emotion=previous,
                timestamp_ms=self._clock.now_ms(),
                cause=cause or f"transition_to_{emotion.value}",
            )
        )
        ctx.current_emotion = emotion
        ctx.intensity = clamp01(intensity)
        ctx.remaining_ms = max(0.0, float(duration_ms))
        ctx.triggers = []
        if previous != emotion:
            log.info("emotion: %s -> %s (%.2f)", previous.value, emotion.value, ctx.intensity)
        self.events.emit("emotion_changed", ctx.copy())

    def blend_emotion(self, emotion: Any, intensity: float, duration_ms: float) -> None:
        emotion = coerce_emotion(emotion)
        intensity = clamp01(intensity)
        ctx = self._ctx
        if emotion == ctx.current_emotion:
            ctx.intensity = max(BLEND_FLOOR, min(1.0, ctx.intensity + intensity * 0.5))
            ctx.remaining_ms = max(ctx.remaining_ms, float(duration_ms))
        elif intensity > ctx.intensity * 0.8:
            self.set_emotion(emotion, max(BLEND_FLOOR, intensity), duration_ms, cause="blend")
        else:
            ctx.intensity = max(BLEND_FLOOR, ctx.intensity - intensity * 0.2)

    def add_trigger(self, trigger: str) -> None:
        self._ctx.triggers.append(trigger)

    def tick(self, dt_ms: float) -> None:
        """Advance decay by ``dt_ms`` then apply the time-of-day bias."""
        ctx = self._ctx
        ctx.remaining_ms -= dt_ms
        if ctx.remaining_ms <= 0:
            ctx.intensity = max(BLEND_FLOOR, ctx.intensity - DECAY_STEP)
            if ctx.intensity < CALM_RESET_BELOW and ctx.current_emotion != EmotionType.CALM:
                self.set_emotion(EmotionType.CALM, 0.3, 30_000, cause="decay")
            ctx.remaining_ms = DECAY_PERIOD_MS
        self._apply_time_bias()

    # ── Host signals ─────────────────────────────────────────────

    def handle_user_input(self, text: Any) -> TextAnalysis:
        analysis = analyze_text(text)
        if analysis.intensity > 0.5:
            self.blend_emotion(analysis.emotion, analysis.intensity * 0.3, 15_000)
        self.add_trigger(f"user_input_{analysis.sentiment}")
        if isinstance(self._driver, RuleBasedEmotionDriver):
            self._driver.note_interaction()
        if self._fallback is not self._driver:
            self._fallback.note_interaction()
        return analysis

    def apply_rule(self, rule_name: str) -> bool:
        rule = EMOTION_RULES.get(rule_name)
        if rule is None:
            log.warning("unknown emotion rule %r", rule_name)
            return False
        if rule.emotion is None:
            self._ctx.intensity = clamp01(self._ctx.intensity + rule.intensity)
            self._ctx.remaining_ms = max(self._ctx.remaining_ms, rule.duration_ms)
        else:
            self.blend_emotion(rule.emotion, rule.intensity, rule.duration_ms)
        self.add_trigger(rule_name)
        return True

    def update_from_intent(
        self,
        kind: str,
        text: str = "",
        confidence: float = 1.0,
        params: dict[str, Any] | None = None,
    ) -> None:
        """React to an already-parsed user intent."""
        kind = str(kind).lower()
        if kind in INTENT_RULES:
            self.apply_rule(INTENT_RULES[kind])
        elif kind == "chat" and confidence > 0.8:
            self.apply_rule("new_interaction")
        elif kind == "emotion":
            felt = str((params or {}).get("emotion", "")).lower()
            target = EMPATHY_MAP.get(felt, EmotionType.CURIOUS)
            self.blend_emotion(target, 0.6, 20_000)
            self.add_trigger(f"empathy_{felt or 'unknown'}")
        else:
            log.debug("intent %s: no emotion rule", kind)

    def update_from_task_result(self, success: bool, task_type: str = "") -> None:
        if success:
            self.apply_rule("success_task")
            self.task_success_factor = min(1.2, self.task_success_factor + 0.1)
        else:
            self.blend_emotion(EmotionType.CALM, 0.4, 20_000)
            self.add_trigger("task_failed")
            self.task_success_factor = max(0.8, self.task_success_factor - 0.1)
        log.debug("task %s success=%s factor=%.1f", task_type, success, self.task_success_factor)

    def reset(self) -> None:
        self._ctx = EmotionContext()
        self.mood_factor = 1.0
        self.task_success_factor = 1.0

    # ── Telemetry ────────────────────────────────────────────────

    def snapshot(self) -> dict:
        d = self._ctx.to_dict()
        d["display"] = self.display().to_dict()
        d["mood_factor"] = self.mood_factor
        d["task_success_factor"] = round(self.task_success_factor, 2)
        d["driver"] = self._driver.statistics()
        d["history"] = [
            {"emotion": h.emotion.value, "ts_ms": h.timestamp_ms, "cause": h.cause}
            for h in self._ctx.history[-10:]
        ]
        return d

    # -- internals -----------------------------------------------------------

    def _push_history(self, entry: EmotionHistoryEntry) -> None:
        history = self._ctx.history
        history.append(entry)
        if len(history) > self._history_limit:
            del history[: len(history) - self._history_trim_to]

    def _apply_time_bias(self) -> None:
        tod = mood_time_of_day(self._clock.hour())
        _, self.mood_factor = TIME_BIAS[tod]
        if tod == TimeOfDay.NIGHT and self._ctx.current_emotion != EmotionType.SLEEPY:
            self.blend_emotion(EmotionType.SLEEPY, 0.2, 60_000)
