"""Emotion drivers: map an interaction state to an emotion.

RuleBasedEmotionDriver is the canonical decision cascade.  Providers
plugged in through PluginEmotionDriver refine its answer; any provider
failure falls back to the rule-based result.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Final, Sequence

from companion.core.clock import Clock
from companion.core.errors import DriverError
from companion.core.state import (
    ENGAGED_STATES,
    EmotionHistoryEntry,
    EmotionType,
    InteractionState,
    coerce_state,
)

log = logging.getLogger(__name__)

CURIOUS_AFTER_AWAKEN_MS: Final = 5000.0
STATE_HISTORY_LEN: Final = 10

BASE_INTENSITY: Final[dict[EmotionType, float]] = {
    EmotionType.HAPPY: 0.7,
    EmotionType.CURIOUS: 0.6,
    EmotionType.FOCUSED: 0.8,
    EmotionType.SLEEPY: 0.3,
    EmotionType.CALM: 0.5,
    EmotionType.EXCITED: 0.5,
}


class EmotionDriver(ABC):
    """Interface for anything that turns a state into an emotion."""

    name: str = "driver"

    @abstractmethod
    def decide_emotion(
        self,
        state: InteractionState,
        context: dict[str, Any] | None = None,
        history: Sequence[EmotionHistoryEntry] = (),
    ) -> EmotionType: ...

    def intensity_for(self, emotion: EmotionType) -> float:
        return BASE_INTENSITY.get(emotion, 0.5)

    def statistics(self) -> dict:
        return {"driver": self.name}


@dataclass(slots=True)
class _Decision:
    state: InteractionState
    emotion: EmotionType
    reason: str
    timestamp_ms: float


class RuleBasedEmotionDriver(EmotionDriver):
    """Fixed-order cascade over state, recency and idle time."""

    name = "rule_based"

    def __init__(
        self,
        clock: Clock,
        *,
        idle_timeout_ms: float = 30_000.0,
        excitement_threshold: int = 5,
        history_limit: int = 50,
    ) -> None:
        self._clock = clock
        self.idle_timeout_ms = idle_timeout_ms
        self.excitement_threshold = excitement_threshold

        now = clock.now_ms()
        self._state = InteractionState.IDLE
        self._previous_state: InteractionState | None = None
        self._state_changed_ms = now
        self._state_history: deque[tuple[InteractionState, float]] = deque(
            maxlen=STATE_HISTORY_LEN
        )
        self._interaction_count = 0
        self._last_interaction_ms = now
        self._decisions: deque[_Decision] = deque(maxlen=history_limit)

    @property
    def interaction_count(self) -> int:
        return self._interaction_count

    def note_interaction(self) -> None:
        """Host-side interaction (click, typed input) outside a state change."""
        self._last_interaction_ms = self._clock.now_ms()

    def decide_emotion(
        self,
        state: InteractionState,
        context: dict[str, Any] | None = None,
        history: Sequence[EmotionHistoryEntry] = (),
    ) -> EmotionType:
        state = coerce_state(state)
        now = self._clock.now_ms()
        self._observe(state, now)

        if state in ENGAGED_STATES:
            self._interaction_count += 1
            self._last_interaction_ms = now

        idle_ms = now - self._last_interaction_ms
        if context and "idle_ms" in context:
            try:
                idle_ms = float(context["idle_ms"])
            except (TypeError, ValueError):
                log.warning("ignoring malformed idle_ms %r", context["idle_ms"])

        emotion, reason = self._cascade(state, now, idle_ms)
        if emotion == EmotionType.SLEEPY:
            # A timed-out idle ends the session; excitement starts over.
            self._interaction_count = 0

        self._decisions.append(_Decision(state, emotion, reason, now))
        log.debug("emotion: %s -> %s (%s)", state.value, emotion.value, reason)
        return emotion

    def intensity_for(self, emotion: EmotionType) -> float:
        if emotion == EmotionType.EXCITED:
            return min(0.9, 0.5 + self._interaction_count * 0.1)
        return super().intensity_for(emotion)

    def statistics(self) -> dict:
        dist = Counter(d.emotion.value for d in self._decisions)
        last = self._decisions[-1] if self._decisions else None
        return {
            "driver": self.name,
            "interaction_count": self._interaction_count,
            "decisions": len(self._decisions),
            "emotion_distribution": dict(dist),
            "last_reason": last.reason if last else None,
            "state_history": [s.value for s, _ in self._state_history],
        }

    def clear_history(self) -> None:
        self._decisions.clear()
        self._state_history.clear()
        self._interaction_count = 0

    # -- internals -----------------------------------------------------------

    def _observe(self, state: InteractionState, now: float) -> None:
        if state != self._state:
            self._previous_state = self._state
            self._state = state
            self._state_changed_ms = now
            self._state_history.append((state, now))

    def _cascade(
        self, state: InteractionState, now: float, idle_ms: float
    ) -> tuple[EmotionType, str]:
        if (
            state == InteractionState.HOVER
            and self._previous_state == InteractionState.AWAKEN
            and now - self._state_changed_ms < CURIOUS_AFTER_AWAKEN_MS
        ):
            return EmotionType.CURIOUS, "recently_awakened"
        if state == InteractionState.CONTROL:
            return EmotionType.FOCUSED, "control_state"
        if state == InteractionState.AWAKEN:
            if self._interaction_count >= self.excitement_threshold:
                return EmotionType.EXCITED, f"frequent_interaction_{self._interaction_count}"
            return EmotionType.HAPPY, "awaken_state"
        if state == InteractionState.HOVER:
            return EmotionType.CURIOUS, "hover_state"
        if state == InteractionState.IDLE:
            if idle_ms > self.idle_timeout_ms:
                return EmotionType.SLEEPY, f"idle_timeout_{int(idle_ms // 1000)}s"
            return EmotionType.CALM, "idle_state"
        return EmotionType.CALM, "default_idle"


# ── External providers ───────────────────────────────────────────


@dataclass(slots=True)
class InferenceContext:
    base_emotion: EmotionType
    state: InteractionState
    context: dict[str, Any] = field(default_factory=dict)
    history: list[EmotionHistoryEntry] = field(default_factory=list)
    timestamp_ms: float = 0.0


class EmotionProvider(ABC):
    """External model consulted after the rule cascade."""

    name: str = "provider"

    @abstractmethod
    def infer_emotion(self, ctx: InferenceContext) -> EmotionType | str: ...


def _provider_emotion(provider: EmotionProvider, value: Any) -> EmotionType:
    if isinstance(value, EmotionType):
        return value
    try:
        return EmotionType(str(value).lower())
    except ValueError:
        raise DriverError(f"{provider.name} returned unknown emotion {value!r}") from None


class PluginEmotionDriver(EmotionDriver):
    """Rule cascade refined by a chain of providers."""

    name = "plugin"

    def __init__(
        self,
        base: RuleBasedEmotionDriver,
        providers: Sequence[EmotionProvider] = (),
    ) -> None:
        self._base = base
        self._clock = base._clock
        self._providers: list[EmotionProvider] = list(providers)
        self.provider_failures = 0

    def add_provider(self, provider: EmotionProvider) -> None:
        self._providers.append(provider)

    def remove_provider(self, name: str) -> bool:
        before = len(self._providers)
        self._providers = [p for p in self._providers if p.name != name]
        return len(self._providers) != before

    def decide_emotion(
        self,
        state: InteractionState,
        context: dict[str, Any] | None = None,
        history: Sequence[EmotionHistoryEntry] = (),
    ) -> EmotionType:
        base_emotion = self._base.decide_emotion(state, context, history)
        emotion = base_emotion
        for provider in self._providers:
            ctx = InferenceContext(
                base_emotion=emotion,
                state=coerce_state(state),
                context=dict(context or {}),
                history=list(history),
                timestamp_ms=self._clock.now_ms(),
            )
            try:
                emotion = _provider_emotion(provider, provider.infer_emotion(ctx))
            except Exception as e:
                self.provider_failures += 1
                log.warning(
                    "emotion provider %s failed (%s), using rule result %s",
                    provider.name,
                    e,
                    base_emotion.value,
                )
                return base_emotion
        return emotion

    def intensity_for(self, emotion: EmotionType) -> float:
        return self._base.intensity_for(emotion)

    def statistics(self) -> dict:
        d = self._base.statistics()
        d["driver"] = self.name
        d["providers"] = [p.name for p in self._providers]
        d["provider_failures"] = self.provider_failures
        return d
