"""
Server tests: HTTP snapshots and the WebSocket command protocol.
Most tests skip the lifespan, so commands are driven without the frame loop.
"""

import sys
import os
import json
import asyncio

import pytest
from fastapi.testclient import TestClient
from loguru import logger

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import server
from controller import PARAMETER_CONTROLS
from physics import DEFAULT_PARAMS, MAX_DOOR_ANGLE


@pytest.fixture(autouse=True)
def fresh_controller():
    server.ctrl.pause()
    server.ctrl.set_params(DEFAULT_PARAMS)
    server.ctrl.pending_events.clear()
    server.ctrl.status_msg = ""
    yield
    server.ctrl.pause()


@pytest.fixture
def client():
    return TestClient(server.app)


class TestHttp:

    def test_state(self, client):
        resp = client.get("/api/state")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"]["phase"] == "idle"
        assert body["readout"]["phase"] == "Ready"

    def test_history(self, client):
        body = client.get("/api/history").json()
        assert len(body["history"]) == 1
        assert body["history"][0]["time"] == 0.0

    def test_simulate_defaults(self, client):
        body = client.post("/api/simulate").json()
        assert body["closed"] is True
        assert body["final_state"]["phase"] == "phase2"
        assert body["final_state"]["door_a"]["angle"] == pytest.approx(MAX_DOOR_ANGLE)

    def test_simulate_partial_params(self, client):
        body = client.post("/api/simulate", json={"slidingMass": 0.0}).json()
        assert body["closed"] is True
        assert body["door_a_close_time"] == pytest.approx(body["door_b_close_time"], abs=0.02)

    def test_simulate_unknown_param(self, client):
        resp = client.post("/api/simulate", json={"doorColour": 1})
        assert resp.status_code == 422

    @pytest.mark.parametrize("dt", [0, -1])
    def test_simulate_rejects_non_positive_dt(self, client, dt):
        resp = client.post(f"/api/simulate?dt={dt}")
        assert resp.status_code == 422
        assert "dt must be positive" in resp.json()["detail"]

    def test_root_without_frontend(self, client, monkeypatch, tmp_path):
        monkeypatch.setattr(server, "STATIC_DIR", tmp_path)
        assert client.get("/").status_code == 404


class TestFrameMessage:

    def test_drains_events(self):
        server.ctrl.start()
        server.ctrl.step(0.25)
        frame = json.loads(server._build_frame_message())
        assert frame["type"] == "frame"
        assert frame["state"]["time"] == 0.25
        assert any(ev["type"] == "data_point" for ev in frame["events"])
        assert server.ctrl.pending_events == []


class FakeSocket:
    def __init__(self, leaves=False):
        self.sent = []
        self.leaves = leaves

    async def send_text(self, msg):
        if self.leaves:
            server.clients.remove(self)
            raise RuntimeError("disconnected")
        self.sent.append(msg)


class TestFrameLoop:

    def test_broadcast_survives_client_leaving_mid_send(self, monkeypatch):
        leaving, staying = FakeSocket(leaves=True), FakeSocket()
        monkeypatch.setattr(server, "clients", [leaving, staying])
        asyncio.run(server.broadcast("hello"))
        assert staying.sent == ["hello"]
        assert server.clients == [staying]

    def test_broadcast_drops_failed_client(self, monkeypatch):
        class Broken(FakeSocket):
            async def send_text(self, msg):
                raise RuntimeError("broken pipe")

        broken, ok = Broken(), FakeSocket()
        monkeypatch.setattr(server, "clients", [broken, ok])
        asyncio.run(server.broadcast("x"))
        assert server.clients == [ok]

    def test_frame_error_is_logged_not_raised(self, monkeypatch):
        def explode(dt):
            raise RuntimeError("boom")

        monkeypatch.setattr(server.ctrl, "step", explode)
        messages = []
        sink = logger.add(messages.append, level="ERROR")
        try:
            asyncio.run(server.run_frame(1 / 60))
        finally:
            logger.remove(sink)
        assert any("Frame failed" in m and "boom" in m for m in messages)

    def test_lifespan_starts_and_stops_loop(self):
        with TestClient(server.app) as c:
            assert c.get("/api/state").status_code == 200


class TestWebSocket:

    def test_init_message(self, client):
        with client.websocket_connect("/ws") as ws:
            init = ws.receive_json()
        assert init["type"] == "init"
        assert init["max_door_angle"] == pytest.approx(MAX_DOOR_ANGLE)
        assert init["params"]["door_mass"] == DEFAULT_PARAMS.door_mass
        assert len(init["controls"]) == len(PARAMETER_CONTROLS)
        assert "demo" in init["presets"]
        assert len(init["history"]) == 1

    def test_start_pause(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "start"})
            ws.send_json({"cmd": "get_state"})
            state = json.loads(ws.receive_json()["data"])
            assert state["is_running"] is True
            assert state["phase"] == "phase1"

            ws.send_json({"cmd": "pause"})
            ws.send_json({"cmd": "get_state"})
            state = json.loads(ws.receive_json()["data"])
            assert state["is_running"] is False

    def test_adjust_param(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "adjust_param", "index": 0, "direction": 1})
            reply = ws.receive_json()
        assert reply == {"type": "param_update", "index": 0, "value": DEFAULT_PARAMS.door_mass + 1.0}
        assert server.ctrl.params.door_mass == DEFAULT_PARAMS.door_mass + 1.0

    def test_preset_and_reset_params(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "preset", "name": "demo"})
            params = {p["attr"]: p["value"] for p in ws.receive_json()["data"]}
            assert params["sliding_mass"] == 8.0

            ws.send_json({"cmd": "reset_params"})
            params = {p["attr"]: p["value"] for p in ws.receive_json()["data"]}
            assert params["sliding_mass"] == DEFAULT_PARAMS.sliding_mass

    def test_malformed_message_ignored(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("not json")
            ws.send_text("[1, 2]")
            ws.send_json({"cmd": "get_history"})
            reply = ws.receive_json()
        assert reply["type"] == "history"
        assert len(reply["data"]) == 1

    def test_bad_adjust_param_keeps_connection(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "adjust_param", "index": "x", "direction": 1})
            ws.send_json({"cmd": "adjust_param", "index": None})
            ws.send_json({"cmd": "get_params"})
            reply = ws.receive_json()
        assert reply["type"] == "params"
        assert server.ctrl.params == DEFAULT_PARAMS
        assert server.ctrl.status_msg.startswith("adjust_param:")

    def test_bad_set_param_value_reports(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "set_param", "attr": "door_mass", "value": None})
            reply = ws.receive_json()
            assert reply["type"] == "params"
            assert server.ctrl.status_msg.startswith("set_param:")

            ws.send_json({"cmd": "set_param", "attr": "door_mass", "value": "heavy"})
            assert ws.receive_json()["type"] == "params"
        assert server.ctrl.params == DEFAULT_PARAMS

    def test_malformed_execute_keeps_connection(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"cmd": "execute", "text": '{"cmd": "set", "params": [1, 2]}'})
            ws.send_json({"cmd": "execute", "text": 42})
            ws.send_json({"cmd": "get_history"})
            reply = ws.receive_json()
        assert reply["type"] == "history"
        assert server.ctrl.params == DEFAULT_PARAMS
