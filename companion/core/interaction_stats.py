"""Interaction statistics store.

One instance is built by the tick loop and passed by reference to the
emotion drivers, the behavior scheduler and the adaptation manager.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Final

from companion.core.clock import Clock

log = logging.getLogger(__name__)

RETENTION_MS: Final = 30 * 60_000.0
RECENT_WINDOW_MS: Final = 5 * 60_000.0
DEFAULT_AVERAGE_INTERVAL_MS: Final = 60_000.0
NO_INTERACTION_IDLE_MS: Final = 30 * 60_000.0
INACTIVE_IDLE_MS: Final = 10 * 60_000.0


class InteractionPattern(str, Enum):
    BURST = "burst"
    STEADY = "steady"
    SPARSE = "sparse"
    IDLE = "idle"


class ActivityLevel(str, Enum):
    INACTIVE = "inactive"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BURST = "burst"


@dataclass(slots=True)
class UserInteractionStats:
    total_interactions: int = 0
    average_interval_ms: float = DEFAULT_AVERAGE_INTERVAL_MS
    recent_frequency: float = 0.0  # interactions/min over the recent window
    continuous_idle_ms: float = NO_INTERACTION_IDLE_MS
    last_interaction_ms: float | None = None
    interaction_pattern: InteractionPattern = InteractionPattern.IDLE

    def to_dict(self) -> dict:
        return {
            "total": self.total_interactions,
            "avg_interval_ms": round(self.average_interval_ms, 1),
            "recent_freq": round(self.recent_frequency, 2),
            "idle_ms": round(self.continuous_idle_ms, 1),
            "pattern": self.interaction_pattern.value,
        }


def analyze_pattern(recent_count: int, window_ms: float = RECENT_WINDOW_MS) -> InteractionPattern:
    if recent_count <= 0:
        return InteractionPattern.IDLE
    per_min = recent_count / (window_ms / 60_000.0)
    if per_min > 10:
        return InteractionPattern.BURST
    if per_min > 2:
        return InteractionPattern.STEADY
    return InteractionPattern.SPARSE


def classify_activity(stats: UserInteractionStats) -> ActivityLevel:
    if stats.continuous_idle_ms > INACTIVE_IDLE_MS:
        return ActivityLevel.INACTIVE
    pattern = stats.interaction_pattern
    if pattern == InteractionPattern.BURST:
        return ActivityLevel.BURST
    if pattern == InteractionPattern.STEADY:
        return ActivityLevel.HIGH if stats.recent_frequency > 5 else ActivityLevel.MEDIUM
    if pattern == InteractionPattern.SPARSE:
        return ActivityLevel.LOW
    return ActivityLevel.INACTIVE


class InteractionStats:
    """Timestamps of recent interactions plus per-kind counters."""

    def __init__(
        self,
        clock: Clock,
        *,
        retention_ms: float = RETENTION_MS,
        recent_window_ms: float = RECENT_WINDOW_MS,
    ) -> None:
        self._clock = clock
        self._retention_ms = retention_ms
        self._recent_window_ms = recent_window_ms
        self._times: deque[float] = deque()
        self._total = 0
        self.counts: Counter[str] = Counter()

    def record(self, kind: str = "interaction", ts_ms: float | None = None) -> None:
        ts = self._clock.now_ms() if ts_ms is None else ts_ms
        self._times.append(ts)
        self._total += 1
        self.counts[kind] += 1
        self._prune(self._clock.now_ms())
        log.debug("interaction: %s (total=%d)", kind, self._total)

    @property
    def last_interaction_ms(self) -> float | None:
        return self._times[-1] if self._times else None

    def since_last_ms(self) -> float:
        last = self.last_interaction_ms
        if last is None:
            return NO_INTERACTION_IDLE_MS
        return max(0.0, self._clock.now_ms() - last)

    def snapshot(self) -> UserInteractionStats:
        now = self._clock.now_ms()
        self._prune(now)
        times = list(self._times)

        recent = [t for t in times if now - t <= self._recent_window_ms]
        recent_freq = len(recent) / (self._recent_window_ms / 60_000.0)

        if len(times) >= 2:
            gaps = [b - a for a, b in zip(times, times[1:])]
            avg = sum(gaps) / len(gaps)
        else:
            avg = DEFAULT_AVERAGE_INTERVAL_MS

        return UserInteractionStats(
            total_interactions=self._total,
            average_interval_ms=avg,
            recent_frequency=recent_freq,
            continuous_idle_ms=self.since_last_ms(),
            last_interaction_ms=self.last_interaction_ms,
            interaction_pattern=analyze_pattern(len(recent), self._recent_window_ms),
        )

    def activity_level(self) -> ActivityLevel:
        return classify_activity(self.snapshot())

    def reset(self) -> None:
        self._times.clear()
        self._total = 0
        self.counts.clear()

    def to_dict(self) -> dict:
        d = self.snapshot().to_dict()
        d["counts"] = dict(self.counts)
        return d

    def _prune(self, now: float) -> None:
        while self._times and now - self._times[0] > self._retention_ms:
            self._times.popleft()
