"""FastAPI HTTP + WebSocket surface for the companion core.

Host and debug access only: state changes, user input, ad-hoc schedules,
rhythm control, strategy snapshots, and telemetry over /ws.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from companion.core.behavior_scheduler import system_load
from companion.core.rhythm_engine import RhythmMode
from companion.core.state import EmotionType, InteractionState

if TYPE_CHECKING:
    from companion.api.ws_hub import WsHub
    from companion.core.tick_loop import TickLoop

log = logging.getLogger(__name__)

_STATES = frozenset(s.value for s in InteractionState)
_EMOTIONS = frozenset(e.value for e in EmotionType)
_MODES = frozenset(m.value for m in RhythmMode)


def _bad(reason: str) -> JSONResponse:
    return JSONResponse({"ok": False, "reason": reason}, status_code=400)


def create_app(tick: TickLoop, ws_hub: WsHub) -> FastAPI:
    import psutil

    app = FastAPI(title="Companion Core", version="1.0.0")

    # First cpu_percent call always reports 0.0
    psutil.cpu_percent(interval=None)

    # -- Status --------------------------------------------------------------

    @app.get("/status")
    async def get_status():
        return JSONResponse(tick.telemetry())

    @app.get("/emotion")
    async def get_emotion():
        return JSONResponse(tick.emotion.snapshot())

    @app.get("/rhythm")
    async def get_rhythm():
        return JSONResponse(tick.rhythm.snapshot())

    @app.get("/debug/adaptation")
    async def get_adaptation_debug():
        return JSONResponse(tick.adaptation.snapshot())

    @app.get("/debug/scheduler")
    async def get_scheduler_debug():
        return JSONResponse(tick.scheduler.snapshot())

    @app.get("/debug/system")
    async def get_system_debug():
        vm = psutil.virtual_memory()
        return JSONResponse(
            {
                "cpu_percent": psutil.cpu_percent(interval=None),
                "cpu_count": psutil.cpu_count(),
                "mem_used_mb": round(vm.used / 1048576),
                "mem_percent": vm.percent,
                "load_avg": list(psutil.getloadavg()),
                "system_load": system_load(),
            }
        )

    # -- Host signals --------------------------------------------------------

    @app.post("/state")
    async def post_state(body: dict):
        state = str(body.get("state", "")).lower()
        if state not in _STATES:
            return _bad(f"unknown state: {state}")
        result = tick.on_state_change(state, body.get("context") or None)
        return JSONResponse({"ok": result.success, "result": result.to_dict()})

    @app.post("/input")
    async def post_input(body: dict):
        text = body.get("text")
        if not isinstance(text, str):
            return _bad("text must be a string")
        analysis = tick.handle_user_input(text)
        return JSONResponse(
            {
                "ok": True,
                "emotion": analysis.emotion.value,
                "intensity": analysis.intensity,
                "sentiment": analysis.sentiment,
            }
        )

    @app.post("/schedule")
    async def post_schedule(body: dict):
        state = str(body.get("state", "")).lower()
        emotion = str(body.get("emotion", "")).lower()
        if state not in _STATES:
            return _bad(f"unknown state: {state}")
        if emotion not in _EMOTIONS:
            return _bad(f"unknown emotion: {emotion}")
        result = tick.schedule(state, emotion, body.get("context") or None)
        return JSONResponse({"ok": result.success, "result": result.to_dict()})

    @app.post("/rhythm/mode")
    async def post_rhythm_mode(body: dict):
        mode = str(body.get("mode", "")).lower()
        if mode not in _MODES:
            return _bad(f"unknown mode: {mode}")
        overrides: dict[str, Any] = {}
        interval = body.get("base_interval_ms")
        if interval is not None:
            if not isinstance(interval, (int, float)) or interval <= 0:
                return _bad("base_interval_ms must be positive")
            overrides["base_interval_ms"] = float(interval)
        tick.rhythm.set_mode(mode, **overrides)
        tick.adaptation.notify_mode(RhythmMode(mode))
        return JSONResponse({"ok": True, "rhythm": tick.rhythm.state.to_dict()})

    # -- Strategies ----------------------------------------------------------

    @app.get("/strategies")
    async def get_strategies():
        return JSONResponse(tick.scheduler.registry.describe())

    @app.post("/strategies")
    async def post_strategies(body: dict):
        records = body.get("records")
        if not isinstance(records, list):
            return _bad("records must be a list")
        result = tick.load_strategy_records(records)
        return JSONResponse(
            {
                "ok": True,
                "loaded": len(result.strategies),
                "dropped_records": result.dropped_records,
                "dropped_actions": result.dropped_actions,
                "dropped_conditions": result.dropped_conditions,
            }
        )

    # -- WebSocket telemetry + commands --------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await ws.accept()
        ws_hub.add(ws)
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict):
                    _handle_ws_cmd(msg, tick)
        except WebSocketDisconnect:
            pass
        finally:
            ws_hub.remove(ws)

    return app


def _handle_ws_cmd(msg: dict, tick: TickLoop) -> None:
    """Process incoming WebSocket command messages."""
    msg_type = msg.get("type")
    if msg_type == "state":
        state = str(msg.get("state", "")).lower()
        if state in _STATES:
            tick.on_state_change(state)
    elif msg_type == "input":
        text = msg.get("text")
        if isinstance(text, str):
            tick.handle_user_input(text)
    elif msg_type == "interaction":
        tick.record_interaction(str(msg.get("kind", "interaction")))
    elif msg_type == "frame":
        frame_ms = msg.get("frame_ms")
        if isinstance(frame_ms, (int, float)) and frame_ms >= 0:
            tick.rhythm.report_frame(float(frame_ms))
    else:
        log.debug("ws: unknown command %r", msg_type)
