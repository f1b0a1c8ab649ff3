"""Rhythm adaptation manager.

Watches interaction statistics, the current emotion and the time of day,
and decides which rhythm mode / BPM the rhythm engine should run.  It
never touches the engine: decisions go out as ``adaptation_applied``
events and the tick loop applies them.

Guards, in order: enabled, context present, per-minute rate limit,
per-rule cooldown.
"""

from __future__ import annotations

import bisect
import logging
from collections import deque
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Final, Iterable

from companion.core.clock import TimerHandle, TimerQueue
from companion.core.events import EventEmitter
from companion.core.interaction_stats import (
    ActivityLevel,
    InteractionStats,
    UserInteractionStats,
    classify_activity,
)
from companion.core.rhythm_engine import RhythmMode
from companion.core.state import (
    EmotionType,
    InteractionState,
    TimeOfDay,
    clamp01,
    time_of_day_for_hour,
)

log = logging.getLogger(__name__)

RATE_WINDOW_MS: Final = 60_000.0
WORK_HOURS: Final = (9, 18)


class AdaptationCategory(str, Enum):
    EMOTION_DRIVEN = "emotion_driven"
    INTERACTION_DRIVEN = "interaction_driven"
    TIME_DRIVEN = "time_driven"
    HYBRID_DRIVEN = "hybrid_driven"
    SYSTEM_DRIVEN = "system_driven"


DEFAULT_CATEGORIES: Final = frozenset(
    {
        AdaptationCategory.EMOTION_DRIVEN,
        AdaptationCategory.INTERACTION_DRIVEN,
        AdaptationCategory.TIME_DRIVEN,
        AdaptationCategory.HYBRID_DRIVEN,
    }
)


class TransitionType(str, Enum):
    IMMEDIATE = "immediate"
    SMOOTH = "smooth"
    GRADUAL = "gradual"


@dataclass(slots=True)
class RhythmContext:
    emotion: EmotionType = EmotionType.CALM
    emotion_intensity: float = 0.5
    emotion_duration_ms: float = 0.0
    state: InteractionState = InteractionState.IDLE
    state_duration_ms: float = 0.0
    time_of_day: TimeOfDay = TimeOfDay.AFTERNOON
    timestamp_ms: float = 0.0
    user_stats: UserInteractionStats = field(default_factory=UserInteractionStats)
    activity_level: ActivityLevel = ActivityLevel.INACTIVE
    is_work_time: bool = False
    is_quiet_mode: bool = False
    system_load: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> dict:
        return {
            "emotion": self.emotion.value,
            "intensity": round(self.emotion_intensity, 2),
            "state": self.state.value,
            "time_of_day": self.time_of_day.value,
            "activity": self.activity_level.value,
            "recent_freq": round(self.user_stats.recent_frequency, 2),
        }


_CONTEXT_FIELDS: Final = frozenset(f.name for f in fields(RhythmContext))


@dataclass(slots=True)
class RhythmAdaptationDecision:
    target_mode: RhythmMode
    reason: str
    confidence: float
    target_bpm: float | None = None
    intensity: float | None = None
    duration_ms: float | None = None
    transition: TransitionType = TransitionType.SMOOTH
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "mode": self.target_mode.value,
            "bpm": self.target_bpm,
            "intensity": self.intensity,
            "duration_ms": self.duration_ms,
            "transition": self.transition.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class AdaptationRule:
    id: str
    name: str
    priority: int
    category: AdaptationCategory
    condition: Callable[[RhythmContext], bool]
    action: Callable[[RhythmContext], RhythmAdaptationDecision]
    cooldown_ms: float = 0.0
    enabled: bool = True
    last_triggered_ms: float | None = None

    def cooling_down(self, now: float) -> bool:
        return (
            self.last_triggered_ms is not None
            and now - self.last_triggered_ms < self.cooldown_ms
        )


@dataclass(slots=True)
class AdaptationRecord:
    timestamp_ms: float
    from_mode: RhythmMode | None
    to_mode: RhythmMode
    decision: RhythmAdaptationDecision
    context: dict

    def to_dict(self) -> dict:
        return {
            "ts_ms": self.timestamp_ms,
            "from": self.from_mode.value if self.from_mode else None,
            "to": self.to_mode.value,
            "decision": self.decision.to_dict(),
            "context": self.context,
        }


# ── Built-in rules ───────────────────────────────────────────────


def _decision(
    mode: RhythmMode,
    bpm: float,
    intensity: float,
    duration_ms: float | None,
    transition: TransitionType,
    confidence: float,
    reason: str,
) -> RhythmAdaptationDecision:
    return RhythmAdaptationDecision(
        target_mode=mode,
        target_bpm=bpm,
        intensity=intensity,
        duration_ms=duration_ms,
        transition=transition,
        confidence=confidence,
        reason=reason,
    )


def _excited_pulse(ctx: RhythmContext) -> RhythmAdaptationDecision:
    i = ctx.emotion_intensity
    duration = round(ctx.emotion_duration_ms * 0.8) or None
    return _decision(
        RhythmMode.PULSE, round(120 + i * 40), i, duration,
        TransitionType.IMMEDIATE, 0.9, "excited emotion: quick pulse",
    )


def default_rules() -> list[AdaptationRule]:
    P, S, A = RhythmMode.PULSE, RhythmMode.STEADY, RhythmMode.ADAPTIVE
    Tr = TransitionType
    return [
        AdaptationRule(
            "high_frequency_interaction", "High-frequency interaction", 9,
            AdaptationCategory.INTERACTION_DRIVEN,
            lambda c: c.activity_level == ActivityLevel.BURST or c.user_stats.recent_frequency > 8,
            lambda c: _decision(P, 140, 0.8, 15_000, Tr.SMOOTH, 0.9, "burst of interaction: fast pulse"),
            cooldown_ms=10_000,
        ),
        AdaptationRule(
            "idle_calm_steady", "Idle and calm", 8,
            AdaptationCategory.HYBRID_DRIVEN,
            lambda c: (
                c.emotion == EmotionType.CALM
                and c.user_stats.continuous_idle_ms > 60_000
                and c.activity_level == ActivityLevel.INACTIVE
            ),
            lambda c: _decision(S, 60, 0.3, 120_000, Tr.GRADUAL, 0.85, "idle and calm: slow steady beat"),
            cooldown_ms=30_000,
        ),
        AdaptationRule(
            "night_focused_adaptive", "Night-time focus", 7,
            AdaptationCategory.TIME_DRIVEN,
            lambda c: (
                c.time_of_day == TimeOfDay.NIGHT
                and c.emotion == EmotionType.FOCUSED
                and c.emotion_intensity > 0.6
            ),
            lambda c: _decision(A, 80, 0.5, 300_000, Tr.SMOOTH, 0.8, "focused at night: gentle adaptive"),
            cooldown_ms=60_000,
        ),
        AdaptationRule(
            "excited_emotion_pulse", "Excited emotion", 8,
            AdaptationCategory.EMOTION_DRIVEN,
            lambda c: c.emotion == EmotionType.EXCITED and c.emotion_intensity > 0.7,
            _excited_pulse,
            cooldown_ms=5_000,
        ),
        AdaptationRule(
            "work_time_adaptive", "Working hours", 6,
            AdaptationCategory.SYSTEM_DRIVEN,
            lambda c: (
                c.is_work_time
                and c.activity_level == ActivityLevel.MEDIUM
                and c.time_of_day in (TimeOfDay.MORNING, TimeOfDay.AFTERNOON)
            ),
            lambda c: _decision(A, 100, 0.6, 600_000, Tr.GRADUAL, 0.7, "working hours: steady adaptive"),
            cooldown_ms=120_000,
        ),
        AdaptationRule(
            "curious_emotion_adaptive", "Curious emotion", 7,
            AdaptationCategory.EMOTION_DRIVEN,
            lambda c: (
                c.emotion == EmotionType.CURIOUS
                and c.emotion_intensity > 0.5
                and c.activity_level != ActivityLevel.INACTIVE
            ),
            lambda c: _decision(A, 110, 0.7, 20_000, Tr.SMOOTH, 0.75, "curious: exploratory adaptive"),
            cooldown_ms=15_000,
        ),
    ]


# ── Manager ──────────────────────────────────────────────────────


class RhythmAdaptationManager:
    def __init__(
        self,
        timers: TimerQueue,
        stats: InteractionStats,
        *,
        enabled: bool = True,
        update_interval_ms: float = 2000.0,
        debounce_ms: float = 1000.0,
        max_adaptations_per_minute: int = 10,
        categories: Iterable[AdaptationCategory | str] | None = None,
        rules: Iterable[AdaptationRule] | None = None,
        history_limit: int = 100,
        work_hours: tuple[int, int] = WORK_HOURS,
    ) -> None:
        self._timers = timers
        self._clock = timers.clock
        self._stats = stats
        self.enabled = enabled
        self.update_interval_ms = update_interval_ms
        self.debounce_ms = debounce_ms
        self.max_adaptations_per_minute = max_adaptations_per_minute
        self._categories: set[AdaptationCategory] = set(
            DEFAULT_CATEGORIES
            if categories is None
            else (AdaptationCategory(c) for c in categories)
        )
        self._work_hours = work_hours

        self._rules: list[AdaptationRule] = []
        self._rule_keys: list[int] = []
        for r in default_rules() if rules is None else rules:
            self.add_rule(r)

        self.events = EventEmitter("adaptation")
        self._context: RhythmContext | None = None
        self._emotion_since_ms = self._clock.now_ms()
        self._state_since_ms = self._clock.now_ms()
        self._current_mode: RhythmMode | None = None

        self._recent: deque[float] = deque()
        self._history: deque[AdaptationRecord] = deque(maxlen=history_limit)
        self._debounce: TimerHandle | None = None
        self._poll: TimerHandle | None = None

        self.evaluations = 0
        self.rate_limited = 0

    # ── Context ──────────────────────────────────────────────────

    @property
    def context(self) -> RhythmContext | None:
        return self._context

    def update_context(self, **updates: Any) -> RhythmContext:
        """Merge ``updates`` into the context and debounce an evaluation."""
        ctx = self._build_context(updates)
        self._context = ctx
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = self._timers.call_later(
            self.debounce_ms, self._on_debounce, label="adaptation:debounce"
        )
        return ctx

    def refresh_context(self) -> RhythmContext:
        """Rebuild derived fields (time, stats, activity) without new inputs."""
        self._context = self._build_context({})
        return self._context

    def notify_mode(self, mode: RhythmMode) -> None:
        self._current_mode = mode

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        if self._poll is not None:
            return
        self._poll = self._timers.call_later(self.update_interval_ms, self._on_poll, label="adaptation:poll")
        log.info("rhythm adaptation started (poll %.0f ms)", self.update_interval_ms)

    def stop(self) -> None:
        for h in (self._poll, self._debounce):
            if h is not None:
                h.cancel()
        self._poll = None
        self._debounce = None

    def destroy(self) -> None:
        self.stop()
        self.events.clear_listeners()
        self._history.clear()
        self._recent.clear()
        self._context = None

    # ── Rules ────────────────────────────────────────────────────

    def add_rule(self, rule: AdaptationRule) -> None:
        self.remove_rule(rule.id)
        key = -rule.priority
        idx = bisect.bisect_right(self._rule_keys, key)
        self._rule_keys.insert(idx, key)
        self._rules.insert(idx, rule)

    def remove_rule(self, rule_id: str) -> bool:
        for i, r in enumerate(self._rules):
            if r.id == rule_id:
                del self._rules[i]
                del self._rule_keys[i]
                return True
        return False

    def rules(self) -> list[AdaptationRule]:
        return list(self._rules)

    def get_rule(self, rule_id: str) -> AdaptationRule | None:
        for r in self._rules:
            if r.id == rule_id:
                return r
        return None

    def toggle_category(self, category: AdaptationCategory | str, enabled: bool | None = None) -> bool:
        category = AdaptationCategory(category)
        on = category not in self._categories if enabled is None else enabled
        if on:
            self._categories.add(category)
        else:
            self._categories.discard(category)
        log.info("adaptation category %s %s", category.value, "on" if on else "off")
        return on

    @property
    def categories(self) -> frozenset[AdaptationCategory]:
        return frozenset(self._categories)

    # ── Evaluation ───────────────────────────────────────────────

    def evaluate(self) -> RhythmAdaptationDecision | None:
        if not self.enabled or self._context is None:
            return None
        now = self._clock.now_ms()
        self.evaluations += 1

        while self._recent and now - self._recent[0] >= RATE_WINDOW_MS:
            self._recent.popleft()
        if len(self._recent) >= self.max_adaptations_per_minute:
            self.rate_limited += 1
            log.debug("adaptation rate limited (%d in last minute)", len(self._recent))
            return None

        ctx = self._context
        best: tuple[AdaptationRule, RhythmAdaptationDecision] | None = None
        for rule in self._rules:
            if not rule.enabled or rule.category not in self._categories or rule.cooling_down(now):
                continue
            try:
                if not rule.condition(ctx):
                    continue
                decision = rule.action(ctx)
            except Exception:
                log.exception("adaptation rule %s failed", rule.id)
                continue
            decision.confidence = clamp01(decision.confidence)
            decision.metadata.update(
                {"rule_id": rule.id, "priority": rule.priority, "category": rule.category.value}
            )
            if best is None or (rule.priority, decision.confidence) > (
                best[0].priority,
                best[1].confidence,
            ):
                best = (rule, decision)

        if best is None:
            return None

        rule, decision = best
        rule.last_triggered_ms = now
        self._recent.append(now)
        record = AdaptationRecord(now, self._current_mode, decision.target_mode, decision, ctx.summary())
        self._history.append(record)
        self._current_mode = decision.target_mode
        log.info(
            "adaptation: %s -> %s @ %s bpm (%s, conf %.2f)",
            record.from_mode.value if record.from_mode else "-",
            decision.target_mode.value,
            decision.target_bpm,
            rule.id,
            decision.confidence,
        )
        self.events.emit("adaptation_applied", decision)
        return decision

    # ── Queries ──────────────────────────────────────────────────

    def history(self, limit: int | None = None) -> list[AdaptationRecord]:
        items = list(self._history)
        return items[-limit:] if limit else items

    def recent_count(self) -> int:
        now = self._clock.now_ms()
        return sum(1 for t in self._recent if now - t < RATE_WINDOW_MS)

    def snapshot(self) -> dict:
        return {
            "enabled": self.enabled,
            "categories": sorted(c.value for c in self._categories),
            "rules": [
                {
                    "id": r.id,
                    "priority": r.priority,
                    "category": r.category.value,
                    "enabled": r.enabled,
                    "last_triggered_ms": r.last_triggered_ms,
                }
                for r in self._rules
            ],
            "context": self._context.summary() if self._context else None,
            "evaluations": self.evaluations,
            "rate_limited": self.rate_limited,
            "recent": self.recent_count(),
            "history": [h.to_dict() for h in self.history(10)],
        }

    # -- internals -----------------------------------------------------------

    def _build_context(self, updates: dict[str, Any]) -> RhythmContext:
        unknown = set(updates) - _CONTEXT_FIELDS
        if unknown:
            log.warning("ignoring unknown rhythm context fields: %s", sorted(unknown))
            updates = {k: v for k, v in updates.items() if k in _CONTEXT_FIELDS}

        now = self._clock.now_ms()
        base = self._context or RhythmContext()
        ctx = replace(base, **updates)

        if "emotion" in updates and updates["emotion"] != base.emotion:
            self._emotion_since_ms = now
        if "state" in updates and updates["state"] != base.state:
            self._state_since_ms = now
        ctx.emotion = EmotionType(ctx.emotion)
        ctx.state = InteractionState(ctx.state)
        ctx.emotion_intensity = clamp01(ctx.emotion_intensity)

        ctx.timestamp_ms = now
        if "emotion_duration_ms" not in updates:
            ctx.emotion_duration_ms = now - self._emotion_since_ms
        if "state_duration_ms" not in updates:
            ctx.state_duration_ms = now - self._state_since_ms
        hour = self._clock.hour()
        if "time_of_day" not in updates:
            ctx.time_of_day = time_of_day_for_hour(hour)
        if "is_work_time" not in updates:
            lo, hi = self._work_hours
            ctx.is_work_time = lo <= hour < hi
        if "user_stats" not in updates:
            ctx.user_stats = self._stats.snapshot()
        if "activity_level" not in updates:
            ctx.activity_level = classify_activity(ctx.user_stats)
        return ctx

    def _on_debounce(self) -> None:
        self._debounce = None
        self.evaluate()

    def _on_poll(self) -> None:
        self._poll = self._timers.call_later(self.update_interval_ms, self._on_poll, label="adaptation:poll")
        if self._context is not None:
            self.refresh_context()
        self.evaluate()
