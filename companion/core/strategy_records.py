"""Declarative strategy records supplied by the host.

Records arrive as plain dicts (parsed from whatever store the host
uses).  They are untrusted: ``RecordValidator`` coerces them into
bounded ``RecordStrategy`` instances and counts what it had to drop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Final

from companion.core.state import (
    BehaviorDefinition,
    BehaviorType,
    EmotionType,
    InteractionState,
    StrategyContext,
    clamp_priority,
)
from companion.core.strategies import BehaviorStrategy, StrategyRegistry

log = logging.getLogger(__name__)

RECORD_PREFIX: Final = "record:"

ALLOWED_OPERATORS: Final = frozenset({"gt", "gte", "lt", "lte", "eq", "in", "between"})
ALLOWED_FIELDS: Final = frozenset(
    {"emotion_intensity", "hour", "user_activity", "state_duration", "time_of_day"}
)

MAX_DELAY_MS: Final = 60_000.0
MAX_DURATION_MS: Final = 60_000.0
MAX_TEXT_LEN: Final = 200


@dataclass(frozen=True, slots=True)
class Condition:
    field: str
    operator: str
    value: Any

    def matches(self, actual: Any) -> bool:
        op, v = self.operator, self.value
        try:
            if op == "eq":
                return actual == v
            if op == "in":
                return actual in v
            if op == "between":
                lo, hi = v
                return lo <= actual <= hi
            if op == "gt":
                return actual > v
            if op == "gte":
                return actual >= v
            if op == "lt":
                return actual < v
            if op == "lte":
                return actual <= v
        except TypeError:
            return False
        return False


@dataclass(slots=True)
class ValidatedRecords:
    strategies: list[RecordStrategy] = field(default_factory=list)
    dropped_records: int = 0
    dropped_actions: int = 0
    dropped_conditions: int = 0


class RecordStrategy(BehaviorStrategy):
    """Strategy backed by one validated record."""

    state_aware = True
    emotion_aware = True

    def __init__(
        self,
        record_id: str,
        *,
        name: str,
        priority: int,
        states: frozenset[InteractionState],
        emotions: frozenset[EmotionType],
        conditions: tuple[Condition, ...],
        actions: tuple[BehaviorDefinition, ...],
        cooldown_ms: float = 0.0,
    ) -> None:
        self.record_id = record_id
        self.name = RECORD_PREFIX + record_id
        self.description = name
        self.priority = priority
        self.states = states
        self.emotions = emotions
        self.conditions = conditions
        self.actions = actions
        self.cooldown_ms = cooldown_ms
        self.last_fired_ms: float | None = None

    def can_apply(self, ctx: StrategyContext) -> bool:
        if self.states and ctx.state not in self.states:
            return False
        if self.emotions and ctx.emotion not in self.emotions:
            return False
        if (
            self.cooldown_ms > 0
            and self.last_fired_ms is not None
            and ctx.timestamp_ms - self.last_fired_ms < self.cooldown_ms
        ):
            return False
        return all(c.matches(_field_value(c.field, ctx)) for c in self.conditions)

    def generate(self, ctx: StrategyContext) -> list[BehaviorDefinition]:
        self.last_fired_ms = ctx.timestamp_ms
        return list(self.actions)

    def describe(self) -> dict:
        d = super().describe()
        d["record_id"] = self.record_id
        d["actions"] = [a.type.value for a in self.actions]
        d["cooldown_ms"] = self.cooldown_ms
        return d


def _field_value(name: str, ctx: StrategyContext) -> Any:
    if name == "emotion_intensity":
        return ctx.emotion_context.intensity
    if name == "hour":
        return ctx.host_context.get("hour")
    if name == "user_activity":
        return ctx.environment.user_activity.value
    if name == "state_duration":
        return ctx.host_context.get("state_duration_ms", 0.0)
    if name == "time_of_day":
        return ctx.environment.time_of_day.value
    return None


def _bounded_ms(value: Any, hi: float) -> float | None:
    if not isinstance(value, (int, float)) or value <= 0:
        return None
    return min(float(value), hi)


def _text(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()[:MAX_TEXT_LEN]


class RecordValidator:
    """Coerce raw record dicts into RecordStrategy objects."""

    def validate(self, records: list[Any]) -> ValidatedRecords:
        out = ValidatedRecords()
        seen: set[str] = set()
        for raw in records if isinstance(records, list) else []:
            strategy = self._one(raw, out)
            if strategy is None:
                out.dropped_records += 1
                continue
            if strategy.record_id in seen:
                log.warning("duplicate strategy record %s, keeping first", strategy.record_id)
                out.dropped_records += 1
                continue
            seen.add(strategy.record_id)
            out.strategies.append(strategy)
        return out

    def _one(self, raw: Any, out: ValidatedRecords) -> RecordStrategy | None:
        if not isinstance(raw, dict):
            return None
        record_id = str(raw.get("id", "")).strip()
        if not record_id or raw.get("enabled", True) is False:
            return None

        cond = raw.get("conditions") or {}
        if not isinstance(cond, dict):
            cond = {}

        states = frozenset(
            InteractionState(s) for s in _str_list(cond.get("states")) if s in _STATES
        )
        emotions = frozenset(
            EmotionType(e) for e in _str_list(cond.get("emotions")) if e in _EMOTIONS
        )

        conditions: list[Condition] = []
        for c in cond.get("rules") or []:
            parsed = _condition(c)
            if parsed is None:
                out.dropped_conditions += 1
            else:
                conditions.append(parsed)

        actions: list[BehaviorDefinition] = []
        for a in raw.get("actions") or []:
            b = _action(a)
            if b is None:
                out.dropped_actions += 1
            else:
                actions.append(b)
        if not actions:
            return None

        cooldown = cond.get("cooldown_ms", 0)
        return RecordStrategy(
            record_id,
            name=_text(raw.get("name")) or record_id,
            priority=clamp_priority(cond.get("priority", raw.get("priority", 5))),
            states=states,
            emotions=emotions,
            conditions=tuple(conditions),
            actions=tuple(actions),
            cooldown_ms=float(cooldown) if isinstance(cooldown, (int, float)) else 0.0,
        )


_STATES: Final = frozenset(s.value for s in InteractionState)
_EMOTIONS: Final = frozenset(e.value for e in EmotionType)
_BEHAVIOR_TYPES: Final = frozenset(t.value for t in BehaviorType)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip().lower() for v in value]


def _condition(raw: Any) -> Condition | None:
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("field", "")).strip().lower()
    op = str(raw.get("operator", "")).strip().lower()
    if name not in ALLOWED_FIELDS or op not in ALLOWED_OPERATORS:
        return None
    value = raw.get("value")
    if op == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            return None
        value = tuple(value)
    elif op == "in":
        if not isinstance(value, (list, tuple)):
            return None
        value = frozenset(value)
    return Condition(name, op, value)


def _action(raw: Any) -> BehaviorDefinition | None:
    if not isinstance(raw, dict):
        return None
    kind = str(raw.get("type", "")).strip().lower()
    if kind not in _BEHAVIOR_TYPES:
        return None
    params = raw.get("params")
    return BehaviorDefinition(
        type=BehaviorType(kind),
        priority=clamp_priority(raw.get("priority", 5)),
        duration_ms=_bounded_ms(raw.get("duration_ms"), MAX_DURATION_MS),
        delay_ms=_bounded_ms(raw.get("delay_ms"), MAX_DELAY_MS),
        animation=_text(raw.get("animation")),
        message=_text(raw.get("message")),
        plugin_ref=_text(raw.get("plugin")),
        metadata=dict(params) if isinstance(params, dict) else {},
    )


def load_records(registry: StrategyRegistry, records: list[Any]) -> ValidatedRecords:
    """Replace all record-backed strategies in ``registry`` with ``records``."""
    result = RecordValidator().validate(records)
    for name in registry.names():
        if name.startswith(RECORD_PREFIX):
            registry.remove(name)
    for s in result.strategies:
        registry.register(s)
    log.info(
        "strategy records loaded: %d (dropped records=%d actions=%d conditions=%d)",
        len(result.strategies),
        result.dropped_records,
        result.dropped_actions,
        result.dropped_conditions,
    )
    return result
