"""Behavior strategies and the priority-ordered strategy registry.

A strategy is a predicate/generator pair over a StrategyContext.  The
registry asks every applicable strategy for candidates; deduplication
is the behavior scheduler's job.
"""

from __future__ import annotations

import bisect
import logging
from abc import ABC, abstractmethod
from typing import Callable, Final, Iterable

from companion.core.state import (
    BehaviorDefinition,
    BehaviorType,
    EmotionType,
    InteractionState,
    StrategyContext,
    TimeOfDay,
)

log = logging.getLogger(__name__)

B = BehaviorDefinition
T = BehaviorType
E = EmotionType


class BehaviorStrategy(ABC):
    name: str = "strategy"
    description: str = ""
    priority: int = 1

    # Capability flags, informational only.
    state_aware: bool = False
    emotion_aware: bool = False

    @abstractmethod
    def can_apply(self, ctx: StrategyContext) -> bool: ...

    @abstractmethod
    def generate(self, ctx: StrategyContext) -> list[BehaviorDefinition]: ...

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "state_aware": self.state_aware,
            "emotion_aware": self.emotion_aware,
        }


class FunctionStrategy(BehaviorStrategy):
    """Strategy assembled from two callables."""

    def __init__(
        self,
        name: str,
        can_apply: Callable[[StrategyContext], bool],
        generate: Callable[[StrategyContext], Iterable[BehaviorDefinition]],
        *,
        priority: int = 5,
        description: str = "",
        state_aware: bool = False,
        emotion_aware: bool = False,
    ) -> None:
        self.name = name
        self.priority = priority
        self.description = description
        self.state_aware = state_aware
        self.emotion_aware = emotion_aware
        self._can_apply = can_apply
        self._generate = generate

    def can_apply(self, ctx: StrategyContext) -> bool:
        return bool(self._can_apply(ctx))

    def generate(self, ctx: StrategyContext) -> list[BehaviorDefinition]:
        return list(self._generate(ctx))


# ── Per-state strategies ─────────────────────────────────────────


class StateStrategy(BehaviorStrategy):
    """Emits the response table row for (state, emotion); Calm row by default."""

    state: InteractionState
    responses: dict[EmotionType, tuple[BehaviorDefinition, ...]]
    state_aware = True
    emotion_aware = True

    def can_apply(self, ctx: StrategyContext) -> bool:
        return ctx.state == self.state

    def generate(self, ctx: StrategyContext) -> list[BehaviorDefinition]:
        row = self.responses.get(ctx.emotion) or self.responses[E.CALM]
        return list(row)


class IdleStateStrategy(StateStrategy):
    name = "idle_state"
    description = "Ambient idle animation shaped by emotion"
    priority = 3
    state = InteractionState.IDLE
    responses = {
        E.HAPPY: (
            B(T.IDLE_ANIMATION, 3, duration_ms=2000, animation="happy_idle",
              message="Waiting happily..."),
            B(T.EMOTIONAL_EXPRESSION, 2, duration_ms=1500, message="Glowing with joy"),
        ),
        E.EXCITED: (
            B(T.IDLE_ANIMATION, 4, duration_ms=1000, animation="excited_idle",
              message="Can't wait to play!"),
            B(T.USER_PROMPT, 3, delay_ms=2000, message="Something fun is about to happen!"),
        ),
        E.CURIOUS: (
            B(T.IDLE_ANIMATION, 3, duration_ms=2500, animation="curious_idle",
              message="Looking around curiously..."),
        ),
        E.SLEEPY: (
            B(T.IDLE_ANIMATION, 2, duration_ms=4000, animation="sleepy_idle",
              message="Dozing off..."),
        ),
        E.FOCUSED: (
            B(T.IDLE_ANIMATION, 2, duration_ms=3000, animation="focused_idle",
              message="Thinking..."),
        ),
        E.CALM: (
            B(T.IDLE_ANIMATION, 2, duration_ms=3000, animation="calm_idle",
              message="Quietly resting..."),
        ),
    }


class HoverStateStrategy(StateStrategy):
    name = "hover_state"
    description = "Feedback while the pointer hovers"
    priority = 5
    state = InteractionState.HOVER
    responses = {
        E.HAPPY: (
            B(T.HOVER_FEEDBACK, 5, duration_ms=800, animation="happy_hover",
              message="Nice to see you!"),
        ),
        E.EXCITED: (
            B(T.HOVER_FEEDBACK, 6, duration_ms=600, animation="excited_hover",
              message="Hi hi hi!"),
            B(T.USER_PROMPT, 4, delay_ms=1000, message="Click me to start talking!"),
        ),
        E.CURIOUS: (
            B(T.HOVER_FEEDBACK, 4, duration_ms=1000, animation="curious_hover",
              message="What are you up to?"),
        ),
        E.SLEEPY: (
            B(T.HOVER_FEEDBACK, 2, duration_ms=1500, animation="sleepy_hover",
              message="Mm? Someone there?"),
        ),
        E.FOCUSED: (
            B(T.HOVER_FEEDBACK, 3, duration_ms=1000, animation="focused_hover",
              message="Need something?"),
        ),
        E.CALM: (
            B(T.HOVER_FEEDBACK, 3, duration_ms=1200, animation="calm_hover",
              message="Hello there."),
        ),
    }


class AwakenStateStrategy(StateStrategy):
    name = "awaken_state"
    description = "Wake-up response, optionally launching a plugin"
    priority = 7
    state = InteractionState.AWAKEN
    responses = {
        E.HAPPY: (
            B(T.AWAKEN_RESPONSE, 7, duration_ms=1000, animation="happy_awaken",
              message="Good to be awake!"),
            B(T.PLUGIN_TRIGGER, 6, delay_ms=500, message="Starting interaction plugin...",
              metadata={"trigger": "happy_awaken"}),
        ),
        E.EXCITED: (
            B(T.AWAKEN_RESPONSE, 8, duration_ms=800, animation="excited_awaken",
              message="Ready to go!"),
            B(T.PLUGIN_TRIGGER, 7, delay_ms=200, message="Starting everything up!",
              metadata={"trigger": "excited_awaken"}),
        ),
        E.CURIOUS: (
            B(T.AWAKEN_RESPONSE, 6, duration_ms=1200, animation="curious_awaken",
              message="Oh? What's going on?"),
            B(T.PLUGIN_TRIGGER, 5, delay_ms=800, message="Starting exploration plugin...",
              plugin_ref="screenshot", metadata={"trigger": "curious_awaken"}),
        ),
        E.SLEEPY: (
            B(T.AWAKEN_RESPONSE, 3, duration_ms=2000, animation="sleepy_awaken",
              message="Waking up slowly..."),
        ),
        E.FOCUSED: (
            B(T.AWAKEN_RESPONSE, 6, duration_ms=1000, animation="focused_awaken",
              message="Ready to work."),
        ),
        E.CALM: (
            B(T.AWAKEN_RESPONSE, 5, duration_ms=1500, animation="calm_awaken",
              message="I'm here."),
        ),
    }


class ControlStateStrategy(StateStrategy):
    name = "control_state"
    description = "Control-mode activation"
    priority = 8
    state = InteractionState.CONTROL
    responses = {
        E.HAPPY: (
            B(T.CONTROL_ACTIVATION, 8, duration_ms=1200, animation="happy_control",
              message="Control mode on!"),
            B(T.PLUGIN_TRIGGER, 7, delay_ms=300, message="Opening control panel...",
              metadata={"trigger": "happy_control"}),
        ),
        E.EXCITED: (
            B(T.CONTROL_ACTIVATION, 9, duration_ms=1000, animation="excited_control",
              message="Full power control mode!"),
            B(T.PLUGIN_TRIGGER, 8, delay_ms=100, message="All systems go!",
              metadata={"trigger": "excited_control"}),
        ),
        E.CURIOUS: (
            B(T.CONTROL_ACTIVATION, 7, duration_ms=1300, animation="curious_control",
              message="Let's see what these do..."),
        ),
        E.FOCUSED: (
            B(T.CONTROL_ACTIVATION, 8, duration_ms=1000, animation="focused_control",
              message="Work mode."),
            B(T.PLUGIN_TRIGGER, 7, delay_ms=200, message="Opening work tools...",
              metadata={"trigger": "focused_control"}),
        ),
        E.SLEEPY: (
            B(T.CONTROL_ACTIVATION, 4, duration_ms=2000, animation="sleepy_control",
              message="Okay... controls..."),
        ),
        E.CALM: (
            B(T.CONTROL_ACTIVATION, 6, duration_ms=1500, animation="calm_control",
              message="Control mode ready."),
        ),
    }


# ── Cross-cutting strategies ─────────────────────────────────────

EXPRESSION_THRESHOLD: Final = 0.7
INTENSE_THRESHOLD: Final = 0.8


class EmotionDrivenStrategy(BehaviorStrategy):
    name = "emotion_driven"
    description = "Strong emotions surface as expressions"
    priority = 2
    emotion_aware = True

    def can_apply(self, ctx: StrategyContext) -> bool:
        return ctx.emotion_context.intensity > EXPRESSION_THRESHOLD

    def generate(self, ctx: StrategyContext) -> list[BehaviorDefinition]:
        intensity = ctx.emotion_context.intensity
        level = "intense" if intensity > INTENSE_THRESHOLD else "strong"
        out = [
            B(
                T.EMOTIONAL_EXPRESSION,
                9,
                duration_ms=int(intensity * 2000),
                animation=f"{ctx.emotion.value}_expression",
                metadata={"expression_level": level, "intensity": intensity},
            )
        ]
        if ctx.emotion == E.EXCITED:
            out.append(
                B(T.ANIMATION_SEQUENCE, 6, duration_ms=3000, animation="excitement_burst")
            )
        return out


class TimeAwareStrategy(BehaviorStrategy):
    name = "time_aware"
    description = "Morning greetings and night wind-down"
    priority = 1
    state_aware = True
    emotion_aware = True

    def can_apply(self, ctx: StrategyContext) -> bool:
        tod = ctx.environment.time_of_day
        if tod == TimeOfDay.MORNING:
            return ctx.state == InteractionState.IDLE
        if tod == TimeOfDay.NIGHT:
            return ctx.emotion != E.SLEEPY
        return False

    def generate(self, ctx: StrategyContext) -> list[BehaviorDefinition]:
        tod = ctx.environment.time_of_day
        if tod == TimeOfDay.MORNING and ctx.state == InteractionState.IDLE:
            return [B(T.USER_PROMPT, 4, delay_ms=5000, message="Good morning!")]
        if tod == TimeOfDay.NIGHT and ctx.emotion != E.SLEEPY:
            return [
                B(
                    T.MOOD_TRANSITION,
                    3,
                    duration_ms=2000,
                    message="Getting late...",
                    metadata={"target_emotion": E.SLEEPY.value},
                )
            ]
        return []


def builtin_strategies() -> list[BehaviorStrategy]:
    return [
        ControlStateStrategy(),
        AwakenStateStrategy(),
        HoverStateStrategy(),
        IdleStateStrategy(),
        EmotionDrivenStrategy(),
        TimeAwareStrategy(),
    ]


# ── Registry ─────────────────────────────────────────────────────


class StrategyRegistry:
    """Strategies sorted by descending priority; ties keep insertion order."""

    def __init__(self, strategies: Iterable[BehaviorStrategy] = ()) -> None:
        self._strategies: list[BehaviorStrategy] = []
        self._keys: list[int] = []
        self.failures = 0
        for s in strategies:
            self.register(s)

    def __len__(self) -> int:
        return len(self._strategies)

    def __contains__(self, name: object) -> bool:
        return any(s.name == name for s in self._strategies)

    def names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def strategies(self) -> list[BehaviorStrategy]:
        return list(self._strategies)

    def get(self, name: str) -> BehaviorStrategy | None:
        for s in self._strategies:
            if s.name == name:
                return s
        return None

    def register(self, strategy: BehaviorStrategy) -> None:
        if self.remove(strategy.name):
            log.info("strategy %s replaced", strategy.name)
        key = -int(strategy.priority)
        idx = bisect.bisect_right(self._keys, key)
        self._keys.insert(idx, key)
        self._strategies.insert(idx, strategy)
        log.debug("strategy registered: %s (priority %d)", strategy.name, strategy.priority)

    def remove(self, name: str) -> bool:
        for i, s in enumerate(self._strategies):
            if s.name == name:
                del self._strategies[i]
                del self._keys[i]
                return True
        return False

    def generate_behaviors(self, ctx: StrategyContext) -> list[BehaviorDefinition]:
        """Collect candidates from every applicable strategy, in priority order."""
        out: list[BehaviorDefinition] = []
        for s in list(self._strategies):
            try:
                if not s.can_apply(ctx):
                    continue
                generated = s.generate(ctx)
            except Exception:
                self.failures += 1
                log.exception("strategy %s failed, skipping", s.name)
                continue
            out.extend(generated)
        return out

    def describe(self) -> list[dict]:
        return [s.describe() for s in self._strategies]
