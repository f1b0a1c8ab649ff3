"""Companion configuration with defaults, loadable from YAML."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


@dataclass
class ControlConfig:
    tick_hz: int = 50
    telemetry_hz: int = 10


@dataclass
class EmotionConfig:
    idle_timeout_ms: float = 30_000.0
    excitement_threshold: int = 5
    history_limit: int = 50
    history_trim_to: int = 30
    tick_ms: float = 1000.0
    hold_ms: float = 30_000.0  # duration given to state-driven emotions


@dataclass
class SchedulerConfig:
    auto_reschedule: bool = True
    idle_interval_ms: float = 10_000.0
    hover_interval_ms: float = 3_000.0
    awaken_interval_ms: float = 2_000.0
    control_interval_ms: float = 1_000.0


@dataclass
class RhythmEngineConfig:
    initial_mode: str = "steady"  # steady | pulse | sequence | adaptive | sync
    autostart: bool = True
    beats_per_bar: int = 4
    min_interval_ms: float = 50.0
    target_fps: int = 60
    revert_after_decision: bool = True


@dataclass
class AdaptationConfig:
    enabled: bool = True
    update_interval_ms: float = 2000.0
    debounce_ms: float = 1000.0
    max_adaptations_per_minute: int = 10
    categories: list[str] = field(
        default_factory=lambda: [
            "emotion_driven",
            "interaction_driven",
            "time_driven",
            "hybrid_driven",
        ]
    )
    work_hour_start: int = 9
    work_hour_end: int = 18


@dataclass
class NetworkConfig:
    http_port: int = 8080
    host: str = "0.0.0.0"


@dataclass
class LoggingConfig:
    record_jsonl: bool = False
    record_rate_hz: int = 2
    record_max_mb: int = 20
    record_roll_count: int = 3
    record_dir: str = "/tmp/companion-logs"


@dataclass
class CompanionConfig:
    control: ControlConfig = field(default_factory=ControlConfig)
    emotion: EmotionConfig = field(default_factory=EmotionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rhythm: RhythmEngineConfig = field(default_factory=RhythmEngineConfig)
    adaptation: AdaptationConfig = field(default_factory=AdaptationConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    strategy_records: list[dict[str, Any]] = field(default_factory=list)


_SECTIONS = (
    "control",
    "emotion",
    "scheduler",
    "rhythm",
    "adaptation",
    "network",
    "logging",
)

_RHYTHM_MODES = frozenset({"steady", "pulse", "sequence", "adaptive", "sync"})
_CATEGORIES = frozenset(
    {"emotion_driven", "interaction_driven", "time_driven", "hybrid_driven", "system_driven"}
)


def _valid(section_name: str, key: str, value: Any) -> bool:
    if (section_name, key) == ("rhythm", "initial_mode"):
        return isinstance(value, str) and value in _RHYTHM_MODES
    if (section_name, key) == ("adaptation", "categories"):
        return isinstance(value, list) and all(c in _CATEGORIES for c in value)
    return True


def load_config(path: str | Path | None = None) -> CompanionConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        return CompanionConfig()

    path = Path(path)
    if not path.exists():
        log.warning("config file not found: %s, using defaults", path)
        return CompanionConfig()

    try:
        import yaml

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        cfg = CompanionConfig()
        for section_name in _SECTIONS:
            if section_name in raw:
                section = getattr(cfg, section_name)
                for k, v in (raw[section_name] or {}).items():
                    if not hasattr(section, k):
                        log.warning("config: unknown key %s.%s ignored", section_name, k)
                        continue
                    if not _valid(section_name, k, v):
                        log.warning(
                            "config: bad value %r for %s.%s, using default",
                            v,
                            section_name,
                            k,
                        )
                        continue
                    setattr(section, k, v)
        records = raw.get("strategy_records") or []
        if isinstance(records, list):
            cfg.strategy_records = records

        log.info("config loaded from %s", path)
        return cfg
    except Exception as e:
        log.warning("config load error: %s, using defaults", e)
        return CompanionConfig()
