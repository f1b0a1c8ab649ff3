"""JSONL session recorder: telemetry samples plus adaptation/behavior events.

Every line carries the companion clock time (``t_ms``) and a per-session
sequence number so a session can be replayed against a ``ManualClock``.
Telemetry is sampled at ``record_rate_hz``; events are always kept.  A
session is split into numbered parts by size, and only the newest
``max_files`` parts stay on disk.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

from companion.core.clock import Clock, MonotonicClock

log = logging.getLogger(__name__)

FILE_PREFIX = "companion_"


class Recorder:
    def __init__(
        self,
        directory: str | Path = "/tmp/companion-logs",
        record_rate_hz: int = 2,
        max_file_mb: int = 20,
        max_files: int = 3,
        enabled: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._dir = Path(directory)
        self._clock = clock or MonotonicClock()
        self._sample_period_ms = 1000.0 / max(1, record_rate_hz)
        self._part_limit = max_file_mb * 1024 * 1024
        self._keep_parts = max(1, max_files)
        self._enabled = enabled

        self._session = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._part = 0
        self._out: TextIO | None = None
        self._out_path: Path | None = None
        self._part_bytes = 0
        self._last_sample_ms = float("-inf")
        self.lines_written = 0

        if enabled:
            self._dir.mkdir(parents=True, exist_ok=True)
            self._next_part()

    @property
    def path(self) -> Path | None:
        return self._out_path

    def record_telemetry(self, sample: dict[str, Any]) -> bool:
        """Write a sample unless one was kept less than a period ago."""
        now = self._clock.now_ms()
        if now - self._last_sample_ms < self._sample_period_ms:
            return False
        ok = self._append("telemetry", sample, now)
        if ok:
            self._last_sample_ms = now
        return ok

    def record_event(self, name: str, payload: dict[str, Any]) -> bool:
        return self._append("event", {"name": name, **payload}, self._clock.now_ms())

    def close(self) -> None:
        if self._out is not None:
            self._out.close()
            self._out = None

    # -- internals -----------------------------------------------------------

    def _append(self, kind: str, body: dict[str, Any], t_ms: float) -> bool:
        if self._out is None:
            return False

        record = {
            "t_ms": round(t_ms, 1),
            "seq": self.lines_written,
            "kind": kind,
            **body,
        }
        encoded = json.dumps(record, default=str) + "\n"
        size = len(encoded.encode())
        if self._part_bytes + size > self._part_limit:
            self.close()
            self._next_part()

        try:
            self._out.write(encoded)
            self._out.flush()
        except OSError as e:
            log.warning("recorder: dropped %s line: %s", kind, e)
            return False
        self._part_bytes += size
        self.lines_written += 1
        return True

    def _next_part(self) -> None:
        self._prune(keep=self._keep_parts - 1)
        self._part += 1
        self._out_path = self._dir / f"{FILE_PREFIX}{self._session}_{self._part:03d}.jsonl"
        self._out = self._out_path.open("w")
        self._part_bytes = 0
        log.info("recorder: writing %s", self._out_path)

    def _prune(self, keep: int) -> None:
        parts = sorted(self._dir.glob(f"{FILE_PREFIX}*.jsonl"))
        stale = parts[: max(0, len(parts) - keep)]
        for old in stale:
            try:
                old.unlink()
            except OSError as e:
                log.warning("recorder: could not remove %s: %s", old, e)
            else:
                log.debug("recorder: removed %s", old)
