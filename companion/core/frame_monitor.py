"""Frame-time telemetry for continuous rhythm playback."""

from __future__ import annotations

from collections import deque
from typing import Final

import numpy as np

WINDOW: Final = 60
DROPPED_FRAME_MS: Final = 33.33
MIN_FPS: Final = 30
FPS_STEP: Final = 5


class FrameMonitor:
    """Rolling window of frame times."""

    def __init__(self, window: int = WINDOW, dropped_frame_ms: float = DROPPED_FRAME_MS) -> None:
        self._times: deque[float] = deque(maxlen=window)
        self._dropped_frame_ms = dropped_frame_ms
        self.total_frames = 0
        self.dropped_frames = 0

    def record(self, frame_ms: float) -> None:
        self._times.append(float(frame_ms))
        self.total_frames += 1
        if frame_ms > self._dropped_frame_ms:
            self.dropped_frames += 1

    @property
    def average_ms(self) -> float:
        if not self._times:
            return 0.0
        return float(np.mean(np.fromiter(self._times, dtype=float)))

    @property
    def p95_ms(self) -> float:
        if not self._times:
            return 0.0
        return float(np.percentile(np.fromiter(self._times, dtype=float), 95))

    @property
    def fps(self) -> float:
        avg = self.average_ms
        return 1000.0 / avg if avg > 0 else 0.0

    @property
    def drop_rate(self) -> float:
        return self.dropped_frames / self.total_frames if self.total_frames else 0.0

    def reset(self) -> None:
        self._times.clear()
        self.total_frames = 0
        self.dropped_frames = 0

    def to_dict(self) -> dict:
        return {
            "avg_ms": round(self.average_ms, 2),
            "p95_ms": round(self.p95_ms, 2),
            "fps": round(self.fps, 1),
            "total": self.total_frames,
            "dropped": self.dropped_frames,
            "drop_rate": round(self.drop_rate, 3),
        }


class AdaptiveFrameRate:
    """Step the target fps down on slow frames and back up on fast ones."""

    def __init__(self, target_fps: int = 60, min_fps: int = MIN_FPS) -> None:
        self.max_fps = target_fps
        self.min_fps = min(min_fps, target_fps)
        self.fps = target_fps

    @property
    def frame_interval_ms(self) -> float:
        return 1000.0 / self.fps

    def update(self, frame_ms: float) -> int:
        interval = self.frame_interval_ms
        if frame_ms > interval * 1.5:
            self.fps = max(self.min_fps, self.fps - FPS_STEP)
        elif frame_ms < interval * 0.8:
            self.fps = min(self.max_fps, self.fps + FPS_STEP)
        return self.fps
