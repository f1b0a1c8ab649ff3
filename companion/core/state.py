"""Shared value types for the companion core.

InteractionState / EmotionType are the two signals everything else keys on.
Behavior and context types are snapshots handed between the emotion model,
the strategy registry and the behavior scheduler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

log = logging.getLogger(__name__)


# ── Enums ────────────────────────────────────────────────────────


class InteractionState(str, Enum):
    IDLE = "idle"
    HOVER = "hover"
    AWAKEN = "awaken"
    CONTROL = "control"


class EmotionType(str, Enum):
    CALM = "calm"
    HAPPY = "happy"
    EXCITED = "excited"
    CURIOUS = "curious"
    FOCUSED = "focused"
    SLEEPY = "sleepy"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


class BehaviorType(str, Enum):
    IDLE_ANIMATION = "idle_animation"
    HOVER_FEEDBACK = "hover_feedback"
    AWAKEN_RESPONSE = "awaken_response"
    CONTROL_ACTIVATION = "control_activation"
    EMOTIONAL_EXPRESSION = "emotional_expression"
    MOOD_TRANSITION = "mood_transition"
    PLUGIN_TRIGGER = "plugin_trigger"
    PLUGIN_CALLBACK = "plugin_callback"
    USER_PROMPT = "user_prompt"
    SYSTEM_NOTIFICATION = "system_notification"
    DELAYED_ACTION = "delayed_action"
    ANIMATION_SEQUENCE = "animation_sequence"


class UserActivity(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    AWAY = "away"


# States that count as the user engaging with the companion.
ENGAGED_STATES: Final = frozenset(
    {InteractionState.HOVER, InteractionState.AWAKEN, InteractionState.CONTROL}
)

PRIORITY_MIN: Final = 1
PRIORITY_MAX: Final = 10

_ACTIVE_WINDOW_MS: Final = 60_000.0
_IDLE_WINDOW_MS: Final = 300_000.0


# ── Coercion (malformed host input never raises) ─────────────────


def coerce_state(value: Any) -> InteractionState:
    if isinstance(value, InteractionState):
        return value
    try:
        return InteractionState(str(value).lower())
    except ValueError:
        log.warning("invalid interaction state %r, using idle", value)
        return InteractionState.IDLE


def coerce_emotion(value: Any) -> EmotionType:
    if isinstance(value, EmotionType):
        return value
    try:
        return EmotionType(str(value).lower())
    except ValueError:
        log.warning("invalid emotion %r, using calm", value)
        return EmotionType.CALM


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


def clamp_priority(p: Any) -> int:
    try:
        p = int(p)
    except (TypeError, ValueError):
        return PRIORITY_MIN
    return max(PRIORITY_MIN, min(PRIORITY_MAX, p))


def time_of_day_for_hour(hour: int) -> TimeOfDay:
    if 6 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 18:
        return TimeOfDay.AFTERNOON
    if 18 <= hour < 22:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


def user_activity_for_delta(since_last_interaction_ms: float) -> UserActivity:
    if since_last_interaction_ms < _ACTIVE_WINDOW_MS:
        return UserActivity.ACTIVE
    if since_last_interaction_ms < _IDLE_WINDOW_MS:
        return UserActivity.IDLE
    return UserActivity.AWAY


# ── Emotion context ──────────────────────────────────────────────


@dataclass(slots=True)
class EmotionHistoryEntry:
    emotion: EmotionType
    timestamp_ms: float
    cause: str = ""


@dataclass(slots=True)
class EmotionContext:
    """Current emotional state. Mutated only by the emotion engine."""

    current_emotion: EmotionType = EmotionType.CALM
    intensity: float = 0.5
    remaining_ms: float = 0.0
    triggers: list[str] = field(default_factory=list)
    history: list[EmotionHistoryEntry] = field(default_factory=list)

    def copy(self) -> EmotionContext:
        return EmotionContext(
            current_emotion=self.current_emotion,
            intensity=self.intensity,
            remaining_ms=self.remaining_ms,
            triggers=list(self.triggers),
            history=list(self.history),
        )

    def to_dict(self) -> dict:
        return {
            "emotion": self.current_emotion.value,
            "intensity": round(self.intensity, 3),
            "remaining_ms": round(self.remaining_ms, 1),
            "triggers": list(self.triggers),
            "history_len": len(self.history),
        }


# ── Behaviors ────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class BehaviorDefinition:
    """One candidate or executed behavior. Priority is clamped to 1..10."""

    type: BehaviorType
    priority: int = 5
    duration_ms: float | None = None
    delay_ms: float | None = None
    animation: str | None = None
    message: str | None = None
    plugin_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "priority", clamp_priority(self.priority))

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"type": self.type.value, "priority": self.priority}
        if self.duration_ms:
            d["duration_ms"] = self.duration_ms
        if self.delay_ms:
            d["delay_ms"] = self.delay_ms
        if self.animation:
            d["animation"] = self.animation
        if self.message:
            d["message"] = self.message
        if self.plugin_ref:
            d["plugin_ref"] = self.plugin_ref
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d


@dataclass(slots=True)
class Environment:
    time_of_day: TimeOfDay = TimeOfDay.AFTERNOON
    system_load: float = 0.0
    user_activity: UserActivity = UserActivity.ACTIVE


@dataclass(slots=True)
class StrategyContext:
    """Per-dispatch snapshot handed to every strategy."""

    state: InteractionState
    emotion: EmotionType
    emotion_context: EmotionContext
    environment: Environment = field(default_factory=Environment)
    last_interaction_delta_ms: float = 0.0
    timestamp_ms: float = 0.0
    host_context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    executed_behaviors: list[BehaviorDefinition] = field(default_factory=list)
    deferred_behaviors: list[BehaviorDefinition] = field(default_factory=list)
    duration_ms: float = 0.0
    message: str = ""
    error: str | None = None
    next_schedule_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "executed": [b.to_dict() for b in self.executed_behaviors],
            "deferred": [b.to_dict() for b in self.deferred_behaviors],
            "duration_ms": self.duration_ms,
            "message": self.message,
            "error": self.error,
            "next_schedule_at": self.next_schedule_at,
        }
