"""WebSocket hub broadcasting companion telemetry and events.

Envelopes are numbered per hub.  The last few events are kept and
replayed to a client when it connects, so a debug view opened mid-session
still sees recent adaptations and behaviors.  Telemetry is not replayed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Final

from fastapi import WebSocket

log = logging.getLogger(__name__)

SCHEMA: Final = "companion_ws_v1"
EVENT_BACKLOG: Final = 20


class WsHub:
    """Fan-out to connected clients; a client whose send fails is dropped."""

    def __init__(self, backlog: int = EVENT_BACKLOG) -> None:
        self._clients: set[WebSocket] = set()
        self._recent_events: deque[str] = deque(maxlen=backlog)
        self._seq = 0
        self.sent = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def add(self, ws: WebSocket) -> None:
        self._clients.add(ws)
        log.info("ws: client joined (%d connected)", len(self._clients))
        if self._recent_events:
            self._send(ws, list(self._recent_events))

    def remove(self, ws: WebSocket) -> None:
        self._clients.discard(ws)
        log.info("ws: client left (%d connected)", len(self._clients))

    def broadcast_telemetry(self, payload: dict[str, Any]) -> None:
        if self._clients:
            self._fan_out(self._envelope("telemetry", payload))

    def broadcast_event(self, name: str, payload: dict[str, Any]) -> None:
        text = self._envelope("event", {"name": name, **payload})
        self._recent_events.append(text)
        if self._clients:
            self._fan_out(text)

    # -- internals -----------------------------------------------------------

    def _envelope(self, msg_type: str, payload: dict[str, Any]) -> str:
        self._seq += 1
        return json.dumps(
            {
                "schema": SCHEMA,
                "seq": self._seq,
                "type": msg_type,
                "ts_ms": int(time.monotonic() * 1000),
                "payload": payload,
            },
            default=str,
        )

    def _fan_out(self, text: str) -> None:
        for ws in [ws for ws in self._clients if not self._send(ws, [text])]:
            self._clients.discard(ws)
            log.info("ws: dropped unresponsive client (%d connected)", len(self._clients))

    def _send(self, ws: WebSocket, texts: list[str]) -> bool:
        try:
            for text in texts:
                asyncio.ensure_future(ws.send_text(text))
                self.sent += 1
        except Exception as e:
            log.debug("ws: send failed: %s", e)
            return False
        return True
