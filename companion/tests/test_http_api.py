"""Tests for the HTTP API, WebSocket commands and the WebSocket hub."""

from __future__ import annotations

import asyncio
import json
import random
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from companion.api.http_server import _handle_ws_cmd, create_app
from companion.api.ws_hub import SCHEMA, WsHub
from companion.core.clock import ManualClock
from companion.core.rhythm_engine import RhythmMode
from companion.core.state import EmotionType, InteractionState
from companion.core.tick_loop import TickLoop


@pytest.fixture
def tick() -> TickLoop:
    return TickLoop(clock=ManualClock(hour=14), rng=random.Random(5), load_probe=lambda: 0.0)


@pytest.fixture
def client(tick: TickLoop) -> TestClient:
    return TestClient(create_app(tick, WsHub()))


# ── Read endpoints ───────────────────────────────────────────────


class TestStatus:
    def test_status(self, client):
        r = client.get("/status")
        assert r.status_code == 200
        body = r.json()
        assert body["state"] == "idle"
        assert body["rhythm_mode"] == "steady"

    def test_debug_endpoints(self, client):
        assert len(client.get("/debug/adaptation").json()["rules"]) == 6
        assert client.get("/debug/scheduler").json()["schedules"] == 0
        assert client.get("/rhythm").json()["mode"] == "steady"

    def test_debug_system(self, client):
        body = client.get("/debug/system").json()
        assert body["cpu_count"] >= 1
        assert len(body["load_avg"]) == 3
        assert 0.0 <= body["system_load"] <= 1.0

    def test_strategies(self, client):
        names = [s["name"] for s in client.get("/strategies").json()]
        assert names[0] == "control_state"
        assert "time_aware" in names


# ── Host signals ─────────────────────────────────────────────────


class TestHostSignals:
    def test_state_change(self, client):
        r = client.post("/state", json={"state": "control"})
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert "control_activation" in [b["type"] for b in body["result"]["executed"]]
        assert client.get("/emotion").json()["emotion"] == "focused"

    def test_bad_state(self, client):
        r = client.post("/state", json={"state": "sideways"})
        assert r.status_code == 400
        assert r.json()["ok"] is False

    def test_input(self, client):
        body = client.post("/input", json={"text": "what is that?"}).json()
        assert body["emotion"] == "curious"
        assert client.post("/input", json={"text": 3}).status_code == 400

    def test_schedule(self, client):
        r = client.post("/schedule", json={"state": "hover", "emotion": "excited"})
        body = r.json()
        assert body["ok"] is True
        assert [b["type"] for b in body["result"]["deferred"]] == ["user_prompt"]
        assert client.post("/schedule", json={"state": "idle", "emotion": "grumpy"}).status_code == 400

    def test_rhythm_mode(self, client, tick):
        r = client.post("/rhythm/mode", json={"mode": "pulse", "base_interval_ms": 100})
        assert r.json()["rhythm"]["mode"] == "pulse"
        assert tick.rhythm.config.base_interval_ms == 100
        assert client.post("/rhythm/mode", json={"mode": "disco"}).status_code == 400
        assert client.post("/rhythm/mode", json={"mode": "steady", "base_interval_ms": -5}).status_code == 400
        assert tick.rhythm.mode == RhythmMode.PULSE

    def test_load_strategy_records(self, client, tick):
        r = client.post(
            "/strategies",
            json={"records": [{"id": "x", "actions": [{"type": "idle_animation"}]}, "junk"]},
        )
        assert r.json() == {
            "ok": True,
            "loaded": 1,
            "dropped_records": 1,
            "dropped_actions": 0,
            "dropped_conditions": 0,
        }
        assert "record:x" in tick.scheduler.registry
        assert client.post("/strategies", json={"records": "nope"}).status_code == 400


# ── WebSocket commands ───────────────────────────────────────────


class TestWsCommands:
    def test_state_command(self, tick):
        _handle_ws_cmd({"type": "state", "state": "HOVER"}, tick)
        assert tick.state == InteractionState.HOVER
        assert tick.emotion.emotion == EmotionType.CURIOUS

    def test_bad_state_ignored(self, tick):
        _handle_ws_cmd({"type": "state", "state": "sideways"}, tick)
        assert tick.scheduler.schedules == 0

    def test_interaction_and_frame(self, tick):
        _handle_ws_cmd({"type": "interaction", "kind": "click"}, tick)
        _handle_ws_cmd({"type": "frame", "frame_ms": 16.0}, tick)
        _handle_ws_cmd({"type": "frame", "frame_ms": "slow"}, tick)
        _handle_ws_cmd({"type": "nonsense"}, tick)
        assert tick.stats.counts["click"] == 1
        assert tick.rhythm.frames.total_frames == 1

    def test_input_command(self, tick):
        _handle_ws_cmd({"type": "input", "text": "hello"}, tick)
        assert tick.stats.counts["input"] == 1


# ── Hub ──────────────────────────────────────────────────────────


class _FakeWs:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send_text(self, text: str) -> None:
        self.sent.append(text)


class TestWsHub:
    @pytest.mark.asyncio
    async def test_broadcast_envelopes(self):
        hub = WsHub()
        ws = _FakeWs()
        hub.add(ws)
        hub.broadcast_telemetry({"state": "idle"})
        hub.broadcast_event("adaptation_applied", {"mode": "pulse"})
        await asyncio.sleep(0)

        telemetry, event = (json.loads(s) for s in ws.sent)
        assert telemetry["schema"] == SCHEMA
        assert telemetry["type"] == "telemetry"
        assert telemetry["payload"] == {"state": "idle"}
        assert event["payload"] == {"name": "adaptation_applied", "mode": "pulse"}
        assert hub.sent == 2

    @pytest.mark.asyncio
    async def test_failing_client_dropped(self):
        hub = WsHub()
        bad = MagicMock()
        bad.send_text.side_effect = RuntimeError("closed")
        good = _FakeWs()
        hub.add(bad)
        hub.add(good)
        hub.broadcast_telemetry({})
        await asyncio.sleep(0)
        assert hub.client_count == 1
        assert len(good.sent) == 1

    def test_no_clients_is_noop(self):
        hub = WsHub()
        hub.broadcast_telemetry({"x": 1})
        assert hub.sent == 0

    @pytest.mark.asyncio
    async def test_late_client_gets_recent_events(self):
        hub = WsHub(backlog=2)
        hub.broadcast_telemetry({"x": 1})
        for mode in ("steady", "pulse", "adaptive"):
            hub.broadcast_event("adaptation_applied", {"mode": mode})
        ws = _FakeWs()
        hub.add(ws)
        await asyncio.sleep(0)

        replayed = [json.loads(s) for s in ws.sent]
        assert [m["payload"]["mode"] for m in replayed] == ["pulse", "adaptive"]
        assert [m["seq"] for m in replayed] == [2, 3]
