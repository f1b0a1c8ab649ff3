"""Behavior scheduler: strategies -> deduplicated, prioritized execution.

``schedule(state, emotion)`` builds a StrategyContext, asks the registry
for candidates (falling back to a static state x emotion table), keeps the
highest-priority behavior per type, then dispatches inline or defers on the
shared TimerQueue.  Every behavior type has a one-behavior slot: a behavior
with a duration holds its slot until a completion timer fires.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Final, Iterable, Protocol

import psutil

from companion.core.clock import TimerHandle, TimerQueue
from companion.core.errors import BehaviorExecutionError
from companion.core.events import EventEmitter
from companion.core.interaction_stats import InteractionStats
from companion.core.state import (
    BehaviorDefinition,
    BehaviorType,
    EmotionContext,
    EmotionType,
    Environment,
    ExecutionResult,
    InteractionState,
    StrategyContext,
    clamp01,
    coerce_emotion,
    coerce_state,
    time_of_day_for_hour,
    user_activity_for_delta,
)
from companion.core.strategies import (
    AwakenStateStrategy,
    BehaviorStrategy,
    ControlStateStrategy,
    HoverStateStrategy,
    IdleStateStrategy,
    StrategyRegistry,
    builtin_strategies,
)

log = logging.getLogger(__name__)

BASE_INTERVAL_MS: Final[dict[InteractionState, float]] = {
    InteractionState.IDLE: 10_000.0,
    InteractionState.HOVER: 3_000.0,
    InteractionState.AWAKEN: 2_000.0,
    InteractionState.CONTROL: 1_000.0,
}

EMOTION_MULTIPLIER: Final[dict[EmotionType, float]] = {
    EmotionType.EXCITED: 0.7,
    EmotionType.CALM: 1.5,
    EmotionType.SLEEPY: 2.0,
}

PLUGIN_TYPES: Final = frozenset({BehaviorType.PLUGIN_TRIGGER, BehaviorType.PLUGIN_CALLBACK})

BehaviorHook = Callable[[BehaviorDefinition, StrategyContext], Any]


class PluginInvoker(Protocol):
    def invoke(self, plugin_ref: str, payload: dict[str, Any]) -> Any: ...


def default_fallback_table() -> dict[tuple[InteractionState, EmotionType], list[BehaviorDefinition]]:
    table = {}
    for cls in (IdleStateStrategy, HoverStateStrategy, AwakenStateStrategy, ControlStateStrategy):
        for emotion in EmotionType:
            row = cls.responses.get(emotion) or cls.responses[EmotionType.CALM]
            table[(cls.state, emotion)] = list(row)
    return table


def deduplicate(behaviors: Iterable[BehaviorDefinition]) -> list[BehaviorDefinition]:
    """One behavior per type, the highest priority wins; result sorted by priority."""
    best: dict[BehaviorType, BehaviorDefinition] = {}
    for b in behaviors:
        cur = best.get(b.type)
        if cur is None or b.priority > cur.priority:
            best[b.type] = b
    return sorted(best.values(), key=lambda b: b.priority, reverse=True)


def system_load() -> float:
    """1-minute load average per CPU."""
    load1, _, _ = psutil.getloadavg()
    return clamp01(load1 / (psutil.cpu_count() or 1))


@dataclass(slots=True)
class ActiveBehavior:
    behavior: BehaviorDefinition
    started_ms: float
    ends_ms: float
    handle: TimerHandle

    def to_dict(self) -> dict:
        return {
            "type": self.behavior.type.value,
            "priority": self.behavior.priority,
            "started_ms": self.started_ms,
            "ends_ms": self.ends_ms,
        }


class BehaviorScheduler:
    def __init__(
        self,
        timers: TimerQueue,
        *,
        registry: StrategyRegistry | None = None,
        stats: InteractionStats | None = None,
        emotion_source: Callable[[], EmotionContext] | None = None,
        plugin_invoker: PluginInvoker | None = None,
        load_probe: Callable[[], float] = system_load,
        base_intervals: dict[InteractionState, float] | None = None,
        emotion_multipliers: dict[EmotionType, float] | None = None,
    ) -> None:
        self._timers = timers
        self._clock = timers.clock
        self.registry = registry if registry is not None else StrategyRegistry(builtin_strategies())
        self._stats = stats
        self._emotion_source = emotion_source
        self._plugin_invoker = plugin_invoker
        self._load_probe = load_probe
        self._base_intervals = dict(BASE_INTERVAL_MS)
        self._base_intervals.update(base_intervals or {})
        self._multipliers = dict(EMOTION_MULTIPLIER)
        self._multipliers.update(emotion_multipliers or {})

        self.events = EventEmitter("behavior")
        self._hooks: dict[BehaviorType, BehaviorHook] = {}
        self._fallback = default_fallback_table()

        self._pending: dict[int, TimerHandle] = {}
        self._active: dict[BehaviorType, ActiveBehavior] = {}
        self._ids = itertools.count(1)

        now = self._clock.now_ms()
        self._last_interaction_ms = now
        self._state = InteractionState.IDLE
        self._state_since_ms = now
        self._disposed = False

        self.schedules = 0
        self.executed = 0
        self.deferred = 0
        self.failed = 0
        self.fallbacks = 0
        self.misses = 0
        self.last_result: ExecutionResult | None = None

    # ── Configuration ────────────────────────────────────────────

    def register_strategy(self, strategy: BehaviorStrategy) -> None:
        self.registry.register(strategy)

    def remove_strategy(self, name: str) -> bool:
        return self.registry.remove(name)

    def register_hook(self, behavior_type: BehaviorType, hook: BehaviorHook) -> None:
        self._hooks[behavior_type] = hook

    def set_plugin_invoker(self, invoker: PluginInvoker | None) -> None:
        self._plugin_invoker = invoker

    def add_fallback_behavior(
        self, state: Any, emotion: Any, behavior: BehaviorDefinition
    ) -> None:
        key = (coerce_state(state), coerce_emotion(emotion))
        self._fallback.setdefault(key, []).append(behavior)

    def update_last_interaction(self) -> None:
        self._last_interaction_ms = self._clock.now_ms()

    # ── Scheduling ───────────────────────────────────────────────

    def next_schedule_at(self, state: InteractionState, emotion: EmotionType, now: float) -> float:
        base = self._base_intervals.get(state, BASE_INTERVAL_MS[InteractionState.IDLE])
        return now + base * self._multipliers.get(emotion, 1.0)

    def schedule(
        self, state: Any, emotion: Any, context: dict[str, Any] | None = None
    ) -> ExecutionResult:
        state = coerce_state(state)
        emotion = coerce_emotion(emotion)
        now = self._clock.now_ms()
        self.schedules += 1
        next_at = self.next_schedule_at(state, emotion, now)

        if self._disposed:
            return ExecutionResult(
                success=False, message="scheduler disposed", next_schedule_at=next_at
            )

        try:
            ctx = self._build_context(state, emotion, now, context)
            candidates = self.registry.generate_behaviors(ctx)
            if not candidates:
                candidates = list(self._fallback.get((state, emotion), ()))
                if candidates:
                    self.fallbacks += 1
            if not candidates:
                self.misses += 1
                log.info("no behaviors for %s/%s", state.value, emotion.value)
                result = ExecutionResult(
                    success=False,
                    message=f"no behaviors for {state.value}/{emotion.value}",
                    next_schedule_at=next_at,
                )
                self.last_result = result
                return result

            executed: list[BehaviorDefinition] = []
            deferred: list[BehaviorDefinition] = []
            for b in deduplicate(candidates):
                if b.delay_ms and b.delay_ms > 0:
                    self._defer(b, ctx)
                    deferred.append(b)
                    continue
                try:
                    self._run(b, ctx)
                except BehaviorExecutionError as e:
                    self._on_failed(b, e)
                    continue
                executed.append(b)

            result = ExecutionResult(
                success=bool(executed or deferred),
                executed_behaviors=executed,
                deferred_behaviors=deferred,
                duration_ms=max((b.duration_ms or 0.0 for b in executed), default=0.0),
                message=f"{len(executed)} executed, {len(deferred)} deferred",
                next_schedule_at=next_at,
            )
        except Exception as e:
            log.exception("schedule %s/%s failed", state.value, emotion.value)
            result = ExecutionResult(
                success=False, message="schedule failed", error=str(e), next_schedule_at=next_at
            )

        self.last_result = result
        return result

    # ── Lifecycle / queries ──────────────────────────────────────

    def active_behaviors(self) -> list[ActiveBehavior]:
        return sorted(self._active.values(), key=lambda a: a.behavior.priority, reverse=True)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def dispose(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        for active in self._active.values():
            active.handle.cancel()
        n = len(self._pending) + len(self._active)
        self._pending.clear()
        self._active.clear()
        self.events.clear_listeners()
        self._disposed = True
        log.info("behavior scheduler disposed (%d timers cancelled)", n)

    def snapshot(self) -> dict:
        return {
            "schedules": self.schedules,
            "executed": self.executed,
            "deferred": self.deferred,
            "failed": self.failed,
            "fallbacks": self.fallbacks,
            "misses": self.misses,
            "pending": len(self._pending),
            "active": [a.to_dict() for a in self.active_behaviors()],
            "strategies": self.registry.names(),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    # -- internals -----------------------------------------------------------

    def _build_context(
        self,
        state: InteractionState,
        emotion: EmotionType,
        now: float,
        context: dict[str, Any] | None,
    ) -> StrategyContext:
        if state != self._state:
            self._state = state
            self._state_since_ms = now

        if self._emotion_source is not None:
            emotion_ctx = self._emotion_source()
        else:
            emotion_ctx = EmotionContext(
                current_emotion=emotion,
                intensity=0.7,
                remaining_ms=30_000.0,
                triggers=["state_change"],
            )

        last = self._last_interaction_ms
        if self._stats is not None and self._stats.last_interaction_ms is not None:
            last = max(last, self._stats.last_interaction_ms)
        delta = max(0.0, now - last)

        try:
            load = clamp01(self._load_probe())
        except Exception:
            log.exception("load probe failed")
            load = 0.0

        hour = self._clock.hour()
        host_context = dict(context or {})
        host_context.setdefault("hour", hour)
        host_context.setdefault("state_duration_ms", now - self._state_since_ms)

        return StrategyContext(
            state=state,
            emotion=emotion,
            emotion_context=emotion_ctx,
            environment=Environment(
                time_of_day=time_of_day_for_hour(hour),
                system_load=load,
                user_activity=user_activity_for_delta(delta),
            ),
            last_interaction_delta_ms=delta,
            timestamp_ms=now,
            host_context=host_context,
        )

    def _defer(self, behavior: BehaviorDefinition, ctx: StrategyContext) -> None:
        key = next(self._ids)
        self._pending[key] = self._timers.call_later(
            behavior.delay_ms or 0.0,
            self._fire_deferred,
            key,
            behavior,
            ctx,
            label=f"behavior:{behavior.type.value}",
        )
        self.deferred += 1

    def _fire_deferred(self, key: int, behavior: BehaviorDefinition, ctx: StrategyContext) -> None:
        self._pending.pop(key, None)
        try:
            self._run(behavior, ctx)
        except BehaviorExecutionError as e:
            self._on_failed(behavior, e)

    def _run(self, behavior: BehaviorDefinition, ctx: StrategyContext) -> None:
        hook = self._hooks.get(behavior.type, _log_behavior)
        try:
            hook(behavior, ctx)
        except Exception as e:
            raise BehaviorExecutionError(behavior.type.value, e) from e

        if behavior.type in PLUGIN_TYPES and behavior.plugin_ref:
            self._invoke_plugin(behavior, ctx)

        self.executed += 1
        self.events.emit("behavior_started", behavior)

        now = self._clock.now_ms()
        prev = self._active.pop(behavior.type, None)
        if prev is not None:
            prev.handle.cancel()
            log.debug("behavior %s preempted", behavior.type.value)

        if behavior.duration_ms and behavior.duration_ms > 0:
            handle = self._timers.call_later(
                behavior.duration_ms,
                self._complete,
                behavior,
                label=f"complete:{behavior.type.value}",
            )
            self._active[behavior.type] = ActiveBehavior(
                behavior, now, now + behavior.duration_ms, handle
            )
        else:
            self.events.emit("behavior_completed", behavior)

    def _complete(self, behavior: BehaviorDefinition) -> None:
        active = self._active.get(behavior.type)
        if active is not None and active.behavior is behavior:
            del self._active[behavior.type]
        self.events.emit("behavior_completed", behavior)

    def _invoke_plugin(self, behavior: BehaviorDefinition, ctx: StrategyContext) -> None:
        if self._plugin_invoker is None:
            log.debug("no plugin invoker for %s", behavior.plugin_ref)
            return
        payload = {
            "state": ctx.state.value,
            "emotion": ctx.emotion.value,
            "timestamp_ms": ctx.timestamp_ms,
            **behavior.metadata,
        }
        try:
            self._plugin_invoker.invoke(behavior.plugin_ref or "", payload)
        except Exception as e:
            log.warning("plugin %s failed: %s", behavior.plugin_ref, e)

    def _on_failed(self, behavior: BehaviorDefinition, err: BehaviorExecutionError) -> None:
        self.failed += 1
        log.warning("behavior failed: %s", err)
        self.events.emit("behavior_failed", behavior, str(err))


def _log_behavior(behavior: BehaviorDefinition, ctx: StrategyContext) -> None:
    log.info(
        "behavior: %s [%s/%s] p=%d %s",
        behavior.type.value,
        ctx.state.value,
        ctx.emotion.value,
        behavior.priority,
        behavior.animation or behavior.message or "",
    )
