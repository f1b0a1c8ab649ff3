"""Pure emotion tables and text scoring.

No clock, no state.  The stateful engine in ``engine.py`` and the drivers
in ``drivers.py`` build on these.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from companion.core.state import EmotionType, TimeOfDay

# ── Lexicon ──────────────────────────────────────────────────────

POSITIVE_WORDS: Final[frozenset[str]] = frozenset(
    {"great", "awesome", "love", "happy", "excited", "good", "nice", "like", "perfect", "glad"}
)
NEGATIVE_WORDS: Final[frozenset[str]] = frozenset(
    {"sad", "angry", "hate", "terrible", "bad", "annoying", "awful", "failed", "upset"}
)
# Each excited word scores 2, each exclamation mark 0.5.
EXCITED_WORDS: Final[frozenset[str]] = frozenset(
    {"wow", "amazing", "incredible", "fantastic", "brilliant", "whoa"}
)
CALM_WORDS: Final[frozenset[str]] = frozenset({"okay", "thanks", "understood", "alright"})

_WORD_RE = re.compile(r"[a-z']+")
_EXCLAIM_RE = re.compile(r"[!！]")
_QUESTION_RE = re.compile(r"[?？]")


@dataclass(frozen=True, slots=True)
class TextAnalysis:
    emotion: EmotionType
    intensity: float
    sentiment: str  # "positive" | "negative" | "neutral"


def analyze_text(text: str | None) -> TextAnalysis:
    """Lexical + punctuation scoring of one user utterance."""
    if not isinstance(text, str):
        text = ""
    lower = text.lower()
    words = _WORD_RE.findall(lower)

    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)
    excitement = 2.0 * sum(1 for w in words if w in EXCITED_WORDS)
    excitement += 0.5 * len(_EXCLAIM_RE.findall(text))
    questions = len(_QUESTION_RE.findall(text))
    calm = sum(1 for w in words if w in CALM_WORDS)

    if excitement > 1:
        return TextAnalysis(EmotionType.EXCITED, min(0.8 + excitement * 0.1, 1.0), "positive")
    if positive > negative and positive > 0:
        return TextAnalysis(EmotionType.HAPPY, min(0.5 + positive * 0.15, 1.0), "positive")
    if negative > positive:
        return TextAnalysis(EmotionType.CALM, min(0.4 + negative * 0.1, 0.8), "negative")
    if questions > 0:
        return TextAnalysis(EmotionType.CURIOUS, min(0.4 + questions * 0.2, 0.9), "neutral")
    if calm > 0:
        return TextAnalysis(EmotionType.CALM, 0.3, "neutral")
    return TextAnalysis(EmotionType.CALM, 0.3, "neutral")


# ── Time-of-day bias ─────────────────────────────────────────────

# (biased emotion, mood factor)
TIME_BIAS: Final[dict[TimeOfDay, tuple[EmotionType, float]]] = {
    TimeOfDay.MORNING: (EmotionType.HAPPY, 1.1),
    TimeOfDay.AFTERNOON: (EmotionType.FOCUSED, 1.0),
    TimeOfDay.EVENING: (EmotionType.CALM, 0.9),
    TimeOfDay.NIGHT: (EmotionType.SLEEPY, 0.7),
}


def mood_time_of_day(hour: int) -> TimeOfDay:
    """Mood bands: the workday runs 9-18, unlike the 12-18 scheduling band."""
    if 6 <= hour < 9:
        return TimeOfDay.MORNING
    if 9 <= hour < 18:
        return TimeOfDay.AFTERNOON
    if 18 <= hour < 22:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


# ── Trigger rules (used by intent / task-result updates only) ────


@dataclass(frozen=True, slots=True)
class EmotionRule:
    emotion: EmotionType | None  # None = adjust intensity of current emotion
    intensity: float
    duration_ms: float


EMOTION_RULES: Final[dict[str, EmotionRule]] = {
    "success_task": EmotionRule(EmotionType.HAPPY, 0.3, 30_000),
    "new_interaction": EmotionRule(EmotionType.CURIOUS, 0.4, 15_000),
    "frequent_use": EmotionRule(EmotionType.EXCITED, 0.5, 45_000),
    "idle_period": EmotionRule(EmotionType.SLEEPY, 0.2, 120_000),
    "work_mode": EmotionRule(EmotionType.FOCUSED, 0.6, 60_000),
    "default_calm": EmotionRule(None, -0.1, 10_000),
}

INTENT_RULES: Final[dict[str, str]] = {
    "screenshot": "work_mode",
    "note": "work_mode",
    "help": "new_interaction",
}

EMPATHY_MAP: Final[dict[str, EmotionType]] = {
    "happy": EmotionType.HAPPY,
    "sad": EmotionType.CALM,
    "angry": EmotionType.CALM,
    "tired": EmotionType.SLEEPY,
}


# ── Display suggestions ──────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class EmotionDisplay:
    animation: str
    color: str
    particle: str
    sound: str | None = None

    def to_dict(self) -> dict:
        return {
            "animation": self.animation,
            "color": self.color,
            "particle": self.particle,
            "sound": self.sound,
        }


EMOTION_DISPLAY: Final[dict[EmotionType, EmotionDisplay]] = {
    EmotionType.CALM: EmotionDisplay("gentle_breathing", "#87CEEB", "soft_glow"),
    EmotionType.HAPPY: EmotionDisplay("bouncy_idle", "#FFD700", "sparkles", "happy_chime"),
    EmotionType.EXCITED: EmotionDisplay("energetic_bounce", "#FF6347", "burst", "excited_beep"),
    EmotionType.CURIOUS: EmotionDisplay("head_tilt", "#9370DB", "question_marks", "curious_hum"),
    EmotionType.FOCUSED: EmotionDisplay("steady_gaze", "#4682B4", "focus_lines"),
    EmotionType.SLEEPY: EmotionDisplay("slow_blink", "#708090", "zzz", "yawn"),
}
