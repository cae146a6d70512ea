"""
DoorSimulationController: Layer 2 (Host Logic)

Owns the live simulation state, the current parameters and the chart history.
Communicates with Layer 3 (server.py) through one queue:
  - pending_events : rendering/chart commands (data_point, phase_change, …)

Layer 3 calls:
  ctrl.step(dt)               : advance the state machine each frame
  ctrl.start() / pause() / reset()
  ctrl.set_param(name, value) : slider edit (forces a reset)
  ctrl.pending_events         : list of dicts to consume and act on
  ctrl.state / ctrl.history   : read-only snapshots for rendering
"""

import csv
import json
import math
from collections import deque
from dataclasses import replace
from datetime import datetime

import numpy as np
from loguru import logger

from physics import (
    DataPoint, DEFAULT_PARAMS, MAX_DOOR_ANGLE, Phase, SimulationParams,
    SimulationState, initialize_state, update_state,
)
from presets import PRESETS, get_preset


# ── History sampling (simulated time, not wall clock) ─────────────────────────
HISTORY_SAMPLE_HZ  = 20    # one point every 0.05 s
HISTORY_MAX_POINTS = 201

# Upper bound on headless-run iterations, whatever dt and max_t are
MAX_SIM_STEPS = 200_000

# ── Slider table: (attr, label, min, max, step) ───────────────────────────────
PARAMETER_CONTROLS = [
    ("door_mass",                "Door Mass (kg)",         10.0,  60.0, 1.0),
    ("door_width",               "Door Width (m)",          0.6,   1.4, 0.1),
    ("sliding_mass",             "Sliding Mass (kg)",       1.0,  15.0, 0.5),
    ("initial_radius",           "Initial Radius r₁ (m)",   0.05,  0.3, 0.01),
    ("final_radius",             "Final Radius r₂ (m)",     0.4,   1.0, 0.05),
    ("initial_angular_velocity", "Initial ω₁ (rad/s)",      0.5,   4.0, 0.1),
    ("slide_duration",           "Slide Duration (s)",      0.5,   3.0, 0.1),
]

PHASE_LABELS = {
    Phase.IDLE:   "Ready",
    Phase.PHASE1: "Sliding",
    Phase.PHASE2: "Complete",
}

HISTORY_COLUMNS = [
    "time",
    "door_a_omega", "door_b_omega",
    "door_a_inertia", "door_b_inertia",
    "door_a_momentum", "door_b_momentum",
]


class DoorSimulationController:
    """Layer 2: run control, history recording and the JSON command channel."""

    def __init__(self, params: SimulationParams = DEFAULT_PARAMS):
        self.params: SimulationParams = params
        self.state: SimulationState = initialize_state(params)
        self.history: deque = deque(maxlen=HISTORY_MAX_POINTS)
        self.history.append(DataPoint.from_state(self.state))

        self.status_msg = ""
        self.pending_events: list[dict] = []

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    # ──────────────────────────────────────────────────────────────────────────
    # Main loop
    # ──────────────────────────────────────────────────────────────────────────

    def step(self, dt: float) -> SimulationState:
        """Advance the simulation by ``dt`` seconds. Called every frame by L3."""
        prev = self.state
        if not prev.is_running:
            return prev

        new = update_state(prev, self.params, dt)
        self.state = new

        if math.floor(new.time * HISTORY_SAMPLE_HZ) > math.floor(prev.time * HISTORY_SAMPLE_HZ):
            point = DataPoint.from_state(new)
            self.history.append(point)
            self.pending_events.append({"type": "data_point", "point": point.to_dict()})

        if new.phase != prev.phase:
            logger.info(f"Phase {prev.phase.value} -> {new.phase.value} at t={new.time:.3f}s")
            self.pending_events.append({"type": "phase_change", "phase": new.phase.value})

        if not new.is_running:
            self._on_run_finished()
        return new

    def _on_run_finished(self) -> None:
        logger.info(
            f"Both doors closed at t={self.state.time:.3f}s  "
            f"L_A={self.state.door_a.angular_momentum:.4f}  "
            f"L_B={self.state.door_b.angular_momentum:.4f}"
        )
        self.status_msg = "Complete. Both doors closed."
        self.pending_events.append({"type": "finished", "time": self.state.time})

    # ──────────────────────────────────────────────────────────────────────────
    # Run control
    # ──────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self.state.is_running:
            return
        self.state = replace(self.state, is_running=True, phase=Phase.PHASE1)
        self.status_msg = "Running..."
        logger.info(f"Simulation started at t={self.state.time:.3f}s")

    def pause(self) -> None:
        if not self.state.is_running:
            return
        self.state = replace(self.state, is_running=False)
        self.status_msg = "Paused."
        logger.info(f"Simulation paused at t={self.state.time:.3f}s")

    def reset(self) -> None:
        """Re-initialize from the current params and clear the history."""
        self.state = initialize_state(self.params)
        self.history.clear()
        self.history.append(DataPoint.from_state(self.state))
        self.pending_events.append({"type": "reset"})
        self.status_msg = ""
        logger.info("Simulation reset")

    # ──────────────────────────────────────────────────────────────────────────
    # Parameters
    # ──────────────────────────────────────────────────────────────────────────

    def set_params(self, params: SimulationParams) -> bool:
        """Replace all params and reset. Refused while running (sliders locked)."""
        if self.state.is_running:
            self.status_msg = "Pause the simulation before changing parameters."
            return False
        self.params = params
        logger.info(f"Parameters changed: {params.to_dict()}")
        self.pending_events.append({"type": "params", "params": params.to_dict()})
        self.reset()
        return True

    def set_param(self, name: str, value: float) -> bool:
        """Slider edit: clamp ``value`` to the control's range, then set_params."""
        control = next((c for c in PARAMETER_CONTROLS if c[0] == name), None)
        if control is None:
            raise ValueError(f"set_param: unknown parameter '{name}'")
        _, _, mn, mx, _ = control
        value = max(mn, min(mx, float(value)))
        return self.set_params(replace(self.params, **{name: value}))

    def load_preset(self, name: str) -> bool:
        params = get_preset(name)
        ok = self.set_params(params)
        if ok:
            self.status_msg = f"Preset: {PRESETS[name][1]}"
        return ok

    def get_params_data(self) -> list:
        """Return all slider controls with current values."""
        result = []
        for attr, label, mn, mx, step in PARAMETER_CONTROLS:
            result.append({
                "attr": attr, "label": label,
                "value": round(getattr(self.params, attr), 6),
                "min": mn, "max": mx, "step": step,
            })
        return result

    # ──────────────────────────────────────────────────────────────────────────
    # Readouts
    # ──────────────────────────────────────────────────────────────────────────

    def get_readout(self) -> dict:
        """Data-card values for both doors, formatted to three decimals."""
        s = self.state
        return {
            "time":  f"{s.time:.2f}",
            "phase": PHASE_LABELS[s.phase],
            "door_a": {
                "omega":  f"{s.door_a.angular_velocity:.3f}",
                "inertia": f"{s.door_a.moment_of_inertia:.3f}",
                "momentum": f"{s.door_a.angular_momentum:.3f}",
                "radius": f"{s.door_a.mass_radius:.3f}",
            },
            "door_b": {
                "omega":  f"{s.door_b.angular_velocity:.3f}",
                "inertia": f"{s.door_b.moment_of_inertia:.3f}",
                "momentum": f"{s.door_b.angular_momentum:.3f}",
                "angle":  f"{s.door_b.angle % (2 * math.pi):.3f}",
            },
        }

    def history_array(self) -> np.ndarray:
        """History as a float64 array, one row per point, HISTORY_COLUMNS order."""
        rows = [[getattr(p, col) for col in HISTORY_COLUMNS] for p in self.history]
        return np.array(rows, dtype=np.float64).reshape(len(rows), len(HISTORY_COLUMNS))

    def get_state_json(self) -> str:
        """Return the current state as compact single-line JSON."""
        return json.dumps(self.state.to_dict(), separators=(',', ':'))

    # ──────────────────────────────────────────────────────────────────────────
    # Command channel
    # ──────────────────────────────────────────────────────────────────────────

    def execute_command(self, text: str) -> None:
        """Parse a JSON command string and dispatch to handlers.

        Malformed commands never raise; the problem is reported in status_msg.
        """
        if not text:
            logger.warning("execute_command: empty text")
            return
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning(f"execute_command: JSON parse error: {exc}")
            self.status_msg = f"JSON error: {exc}"
            return
        if not isinstance(data, dict):
            self.status_msg = "Command must be a JSON object."
            return

        cmd = str(data.get("cmd", "")).lower().strip()
        logger.debug(f"execute_command: cmd={cmd}")
        try:
            if cmd == "set":
                self._cmd_set(data)
            elif cmd == "preset":
                self.load_preset(str(data.get("name", "")))
            elif cmd == "save":
                self._cmd_save(data)
            elif cmd == "load":
                self._cmd_load(data)
            elif cmd == "record":
                self._cmd_record(data)
            else:
                self.status_msg = f"Unknown cmd '{cmd}'. Use set/preset/save/load/record."
        except (KeyError, ValueError, TypeError, OSError) as exc:
            logger.warning(f"execute_command: {cmd} failed: {exc}")
            self.status_msg = f"{cmd}: {exc}"

    @staticmethod
    def _file_name(data: dict, default: str, ext: str) -> str:
        """'file' field with ``ext`` appended; ``default`` when absent."""
        file_opt = data.get("file", "")
        if not isinstance(file_opt, str):
            raise TypeError(f"'file' must be a string, got {type(file_opt).__name__}")
        if not file_opt:
            return default
        return file_opt if file_opt.endswith(ext) else file_opt + ext

    def _cmd_set(self, data: dict) -> None:
        """set: update params by name (snake_case or camelCase keys)."""
        params_data = data.get("params")
        if not params_data:
            self.status_msg = "set: 'params' field required."
            return
        if not isinstance(params_data, dict):
            self.status_msg = "set: 'params' must be an object."
            return
        params = SimulationParams.from_dict(params_data, base=self.params)
        if self.set_params(params):
            self.status_msg = f"set: {sorted(params_data)} updated."

    def _cmd_save(self, data: dict) -> None:
        """save: write current params to a JSON file loadable by 'load'."""
        fname = self._file_name(data, datetime.now().strftime("%H%M%S") + "_params.json", ".json")

        payload = {"cmd": "set", "params": self.params.to_dict()}
        with open(fname, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        logger.info(f"Params saved → {fname}")
        self.status_msg = f"Saved → {fname}"

    def _cmd_load(self, data: dict) -> None:
        """load: restore params from a file written by 'save'."""
        fname = self._file_name(data, "", ".json")
        if not fname:
            self.status_msg = "load: 'file' field required."
            return
        with open(fname, "r", encoding="utf-8") as f:
            loaded = json.load(f)
        logger.info(f"Params loaded ← {fname}")
        if not isinstance(loaded, dict):
            self.status_msg = f"load: {fname} does not hold a JSON object."
            return
        self._cmd_set(loaded)

    def _cmd_record(self, data: dict) -> None:
        """record: write the chart history to CSV."""
        fname = self._file_name(data, datetime.now().strftime("%H%M%S") + ".csv", ".csv")
        count = self.export_history_csv(fname)
        self.status_msg = f"Recorded {count} points → {fname}"

    def export_history_csv(self, path: str) -> int:
        """Write the history with a header row; returns the number of points."""
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(HISTORY_COLUMNS)
            for p in self.history:
                writer.writerow([f"{getattr(p, col):.6f}" for col in HISTORY_COLUMNS])
        logger.info(f"Saved {len(self.history)} points → {path}")
        return len(self.history)

    # ──────────────────────────────────────────────────────────────────────────
    # Headless run
    # ──────────────────────────────────────────────────────────────────────────

    def simulate_run(
        self,
        params: SimulationParams | None = None,
        dt: float = 1 / 60,
        max_t: float = 30.0,
    ) -> dict:
        """Run a full start → both-doors-closed cycle without a renderer.

        Non-destructive: works on a fresh state and does NOT change
        ``self.state``, ``self.params`` or ``self.history``.

        Args:
            params: Parameters for the run. ``None`` → current params.
            dt:     Fixed time step in seconds (default one 60 fps frame).
            max_t:  Give up after this much simulated time.

        Returns:
            ``dict`` with keys:

            closed (bool)
                True if the run reached its terminal state within ``max_t``.
            sim_time (float)
                Simulated time of the last state.
            door_a_close_time, door_b_close_time (float | None)
                First simulated time each door reached MAX_DOOR_ANGLE.
            final_state (SimulationState)
            history (list[DataPoint])
                Points sampled at the same cadence and cap as the live run.

        Raises:
            ValueError: ``dt`` is not a positive finite number.
        """
        if not (math.isfinite(dt) and dt > 0):
            raise ValueError(f"simulate_run: dt must be positive, got {dt}")
        params = params or self.params
        state = replace(initialize_state(params), is_running=True, phase=Phase.PHASE1)
        history: deque = deque([DataPoint.from_state(state)], maxlen=HISTORY_MAX_POINTS)
        close_a = close_b = None
        steps_left = MAX_SIM_STEPS

        while state.is_running and state.time < max_t and steps_left > 0:
            steps_left -= 1
            prev = state
            state = update_state(prev, params, dt)
            if math.floor(state.time * HISTORY_SAMPLE_HZ) > math.floor(prev.time * HISTORY_SAMPLE_HZ):
                history.append(DataPoint.from_state(state))
            if close_a is None and state.door_a.angle >= MAX_DOOR_ANGLE:
                close_a = state.time
            if close_b is None and state.door_b.angle >= MAX_DOOR_ANGLE:
                close_b = state.time

        return {
            "closed":            not state.is_running,
            "sim_time":          state.time,
            "door_a_close_time": close_a,
            "door_b_close_time": close_b,
            "final_state":       state,
            "history":           list(history),
        }
