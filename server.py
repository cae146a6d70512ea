"""
Door Simulation Web Server: Layer 3 (FastAPI + WebSocket)

Runs the frame loop and streams simulation snapshots to browser clients
(3D doors, charts and sliders live in the front-end) over WebSocket.
"""

import asyncio
import json
import time
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger

from controller import DoorSimulationController, PARAMETER_CONTROLS, HISTORY_MAX_POINTS
from physics import DEFAULT_PARAMS, MAX_DOOR_ANGLE, SimulationParams
from presets import PRESETS

# ── Controller ──────────────────────────────────────────────────────────────

ctrl = DoorSimulationController()


# ── Lifespan (startup/shutdown) ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting frame loop")
    task = asyncio.create_task(frame_loop())
    yield
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    logger.info("Frame loop stopped")


app = FastAPI(lifespan=lifespan)

clients: list[WebSocket] = []

# ── Frame loop ──────────────────────────────────────────────────────────────

TARGET_FPS = 60
FRAME_DT = 1.0 / TARGET_FPS
MAX_FRAME_DT = 0.05

HOST = "0.0.0.0"
PORT = 8000

STATIC_DIR = Path(__file__).parent / "static"


async def frame_loop():
    """Main loop running at ~60 fps."""
    last_time = time.perf_counter()

    while True:
        now = time.perf_counter()
        dt = now - last_time
        last_time = now

        # Clamp dt so a stalled frame cannot fling the doors shut
        if dt > MAX_FRAME_DT:
            dt = MAX_FRAME_DT

        await run_frame(dt)

        elapsed = time.perf_counter() - now
        sleep_time = FRAME_DT - elapsed
        if sleep_time > 0:
            await asyncio.sleep(sleep_time)
        else:
            await asyncio.sleep(0)


async def run_frame(dt: float) -> None:
    """One frame: step the controller and broadcast. Errors are logged, not raised."""
    try:
        ctrl.step(dt)
        if clients:
            await broadcast(_build_frame_message())
        else:
            ctrl.pending_events.clear()
    except Exception:
        logger.exception("Frame failed")


async def broadcast(msg: str) -> None:
    dead: list[WebSocket] = []
    for ws in list(clients):
        try:
            await ws.send_text(msg)
        except Exception:
            dead.append(ws)
    for ws in dead:
        if ws in clients:
            clients.remove(ws)
            logger.info(f"Dropped dead client ({len(clients)} remaining)")


def _build_frame_message() -> str:
    """Serialize current state plus drained events into a JSON frame message."""
    events = list(ctrl.pending_events)
    ctrl.pending_events.clear()

    frame = {
        "type": "frame",
        "state": ctrl.state.to_dict(),
        "readout": ctrl.get_readout(),
        "events": events,
        "status": ctrl.status_msg,
    }
    return json.dumps(frame, separators=(',', ':'))


def _build_init_message() -> str:
    return json.dumps({
        "type": "init",
        "max_door_angle": MAX_DOOR_ANGLE,
        "history_max_points": HISTORY_MAX_POINTS,
        "params": ctrl.params.to_dict(),
        "controls": ctrl.get_params_data(),
        "presets": {name: label for name, (_, label) in PRESETS.items()},
        "state": ctrl.state.to_dict(),
        "history": [p.to_dict() for p in ctrl.history],
    })


def _params_message() -> str:
    return json.dumps({"type": "params", "data": ctrl.get_params_data()})


# ── Command handling ────────────────────────────────────────────────────────

def _handle_command(msg: dict) -> str | None:
    """Apply one client command; returns a direct reply message if any."""
    cmd = msg.get("cmd", "")
    if cmd == "start":
        ctrl.start()
    elif cmd == "pause":
        ctrl.pause()
    elif cmd == "reset":
        ctrl.reset()
    elif cmd == "get_params":
        return _params_message()
    elif cmd == "adjust_param":
        try:
            idx = int(msg.get("index", 0))
            direction = int(msg.get("direction", 0))
        except (TypeError, ValueError):
            ctrl.status_msg = "adjust_param: index and direction must be integers."
            return None
        fine = msg.get("fine", False)
        if 0 <= idx < len(PARAMETER_CONTROLS):
            attr, label, mn, mx, step = PARAMETER_CONTROLS[idx]
            s = step / 10.0 if fine else step
            cur = getattr(ctrl.params, attr)
            if ctrl.set_param(attr, cur + direction * s):
                return json.dumps({
                    "type": "param_update",
                    "index": idx,
                    "value": round(getattr(ctrl.params, attr), 6),
                })
    elif cmd == "set_param":
        try:
            ctrl.set_param(str(msg.get("attr", "")), float(msg.get("value", 0.0)))
        except (TypeError, ValueError) as exc:
            ctrl.status_msg = f"set_param: {exc}"
        return _params_message()
    elif cmd == "reset_params":
        ctrl.set_params(DEFAULT_PARAMS)
        return _params_message()
    elif cmd == "preset":
        try:
            ctrl.load_preset(str(msg.get("name", "")))
        except KeyError as exc:
            ctrl.status_msg = str(exc)
        return _params_message()
    elif cmd == "get_history":
        return json.dumps({
            "type": "history",
            "data": [p.to_dict() for p in ctrl.history],
        })
    elif cmd == "get_state":
        return json.dumps({"type": "state_json", "data": ctrl.get_state_json()})
    elif cmd == "execute":
        ctrl.execute_command(msg.get("text", ""))
    return None


# ── WebSocket endpoint ──────────────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    clients.append(ws)
    logger.info(f"Client connected ({len(clients)} total)")

    await ws.send_text(_build_init_message())

    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue

            reply = _handle_command(msg)
            if reply is not None:
                await ws.send_text(reply)
    except WebSocketDisconnect:
        pass
    finally:
        if ws in clients:
            clients.remove(ws)
        logger.info(f"Client disconnected ({len(clients)} remaining)")


# ── HTTP endpoints ──────────────────────────────────────────────────────────

@app.get("/api/state")
async def get_state():
    return {"state": ctrl.state.to_dict(), "readout": ctrl.get_readout()}


@app.get("/api/history")
async def get_history():
    return {"history": [p.to_dict() for p in ctrl.history]}


@app.post("/api/simulate")
def simulate(params: dict | None = None, dt: float = FRAME_DT, max_t: float = 30.0):
    """Headless run; body is a partial params dict over the defaults."""
    try:
        run_params = SimulationParams.from_dict(params or {})
    except (KeyError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=str(exc).strip("'\""))
    try:
        result = ctrl.simulate_run(run_params, dt=dt, max_t=max_t)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {
        "closed": result["closed"],
        "sim_time": result["sim_time"],
        "door_a_close_time": result["door_a_close_time"],
        "door_b_close_time": result["door_b_close_time"],
        "final_state": result["final_state"].to_dict(),
        "history": [p.to_dict() for p in result["history"]],
    }


# ── Static files + root route ───────────────────────────────────────────────

if STATIC_DIR.is_dir():
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")


@app.get("/")
async def root():
    index = STATIC_DIR / "index.html"
    if not index.is_file():
        raise HTTPException(status_code=404, detail="front-end not installed")
    return FileResponse(index)


# ── Run with uvicorn ────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host=HOST, port=PORT, reload=False)
