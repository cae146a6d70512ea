"""
Sliding-Mass Door Physics Engine
Layer 1: moment of inertia, conserved angular momentum, closing-angle limit.

Door A carries a point mass that slides outward along the door while it
swings shut; Door B is a plain rigid door. Both start with the same angular
velocity. Angular momentum of each door is fixed at initialization, so
Door A slows down as its moment of inertia grows.
"""

import enum
import math
from dataclasses import dataclass, replace, asdict

import numpy as np

# ──────────────────────────────────────────────
# Constants (SI units)
# ──────────────────────────────────────────────
MAX_DOOR_ANGLE: float = math.pi / 2  # rad (door fully closed)


class Phase(str, enum.Enum):
    IDLE = "idle"
    PHASE1 = "phase1"   # doors closing, mass sliding
    PHASE2 = "phase2"   # both doors at the closing limit


# ──────────────────────────────────────────────
# Data model
# ──────────────────────────────────────────────

# Original wire names of the front-end, accepted by from_dict()
_CAMEL_KEYS = {
    "doorMass": "door_mass",
    "doorWidth": "door_width",
    "slidingMass": "sliding_mass",
    "initialRadius": "initial_radius",
    "finalRadius": "final_radius",
    "slideDuration": "slide_duration",
    "initialAngularVelocity": "initial_angular_velocity",
}


@dataclass(frozen=True)
class SimulationParams:
    """Parameters of one run. Replaced wholesale, never edited in place."""
    door_mass: float = 30.0                 # kg    (M_d, both doors)
    door_width: float = 1.0                 # m     (W, both doors)
    sliding_mass: float = 5.0               # kg    (m, Door A only)
    initial_radius: float = 0.3             # m     (r_1)
    final_radius: float = 0.8               # m     (r_2)
    slide_duration: float = 1.5             # s     (t_slide)
    initial_angular_velocity: float = 1.5   # rad/s (ω_1, both doors)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict, base: "SimulationParams" = None) -> "SimulationParams":
        """Build params from a dict of snake_case or camelCase keys.

        Keys absent from ``data`` are taken from ``base`` (defaults if None).
        Unknown keys raise ``KeyError``.
        """
        values = (base or cls()).to_dict()
        for key, value in data.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in values:
                raise KeyError(f"unknown parameter '{key}'")
            values[name] = float(value)
        return cls(**values)


@dataclass(frozen=True)
class DoorAState:
    """Door with the sliding point mass."""
    angle: float               # rad
    angular_velocity: float    # rad/s
    moment_of_inertia: float   # kg·m²
    angular_momentum: float    # kg·m²/s, fixed at initialization
    mass_radius: float         # m, current position of the sliding mass


@dataclass(frozen=True)
class DoorBState:
    """Rigid reference door."""
    angle: float
    angular_velocity: float
    moment_of_inertia: float
    angular_momentum: float


@dataclass(frozen=True)
class SimulationState:
    time: float
    is_running: bool
    phase: Phase
    door_a: DoorAState
    door_b: DoorBState

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass(frozen=True)
class DataPoint:
    """Time-stamped sample of both doors for the history charts."""
    time: float
    door_a_omega: float
    door_b_omega: float
    door_a_inertia: float
    door_b_inertia: float
    door_a_momentum: float
    door_b_momentum: float

    @classmethod
    def from_state(cls, state: SimulationState) -> "DataPoint":
        return cls(
            time=state.time,
            door_a_omega=state.door_a.angular_velocity,
            door_b_omega=state.door_b.angular_velocity,
            door_a_inertia=state.door_a.moment_of_inertia,
            door_b_inertia=state.door_b.moment_of_inertia,
            door_a_momentum=state.door_a.angular_momentum,
            door_b_momentum=state.door_b.angular_momentum,
        )

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_PARAMS = SimulationParams()


# ──────────────────────────────────────────────
# Formulas
# ──────────────────────────────────────────────

def door_moment_of_inertia(mass: float, width: float) -> float:
    """Uniform thin rod about one end: I_d = (1/3)·M·W²."""
    return (1 / 3) * mass * width * width


def total_moment_of_inertia(door_inertia: float, sliding_mass: float, radius: float) -> float:
    """Door plus point mass at ``radius``: I = I_d + m·r²."""
    return door_inertia + sliding_mass * radius * radius


def _divide(num: float, den: float) -> float:
    """IEEE division: x/0 gives ±inf, 0/0 gives NaN, nothing raises."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.float64(num) / np.float64(den))


def angular_velocity_from_momentum(angular_momentum: float, moment_of_inertia: float) -> float:
    """ω = L / I.

    Zero inertia does not raise: the result is ±inf (or NaN for 0/0), which
    then propagates into the state like any other value.
    """
    return _divide(angular_momentum, moment_of_inertia)


def interpolate_radius(initial_radius: float, final_radius: float, progress: float) -> float:
    """Ease-in-ease-out position of the sliding mass for ``progress`` in [0, 1].

    eased = 2p²                  for p < 0.5
    eased = 1 - (2 - 2p)² / 2    otherwise

    Progress, the eased value and the returned radius are all clamped, so the
    mass never leaves the segment between the two radii.
    """
    p = max(0.0, min(1.0, progress))
    if p < 0.5:
        eased = 2 * p * p
    else:
        eased = 1 - (-2 * p + 2) ** 2 / 2
    eased = max(0.0, min(1.0, eased))

    radius = initial_radius + (final_radius - initial_radius) * eased
    lo, hi = min(initial_radius, final_radius), max(initial_radius, final_radius)
    return max(lo, min(hi, radius))


# ──────────────────────────────────────────────
# State machine
# ──────────────────────────────────────────────

def initialize_state(params: SimulationParams) -> SimulationState:
    """Fresh idle state; fixes each door's angular momentum L = I·ω_1."""
    door_inertia = door_moment_of_inertia(params.door_mass, params.door_width)
    inertia_a = total_moment_of_inertia(door_inertia, params.sliding_mass, params.initial_radius)
    omega = params.initial_angular_velocity

    return SimulationState(
        time=0.0,
        is_running=False,
        phase=Phase.IDLE,
        door_a=DoorAState(
            angle=0.0,
            angular_velocity=omega,
            moment_of_inertia=inertia_a,
            angular_momentum=inertia_a * omega,
            mass_radius=params.initial_radius,
        ),
        door_b=DoorBState(
            angle=0.0,
            angular_velocity=omega,
            moment_of_inertia=door_inertia,
            angular_momentum=door_inertia * omega,
        ),
    )


def update_state(state: SimulationState, params: SimulationParams, dt: float) -> SimulationState:
    """Advance ``state`` by ``dt`` seconds and return the new snapshot.

    A stopped state is returned as is. When both doors already sit at the
    closing limit the run is finished: the returned state stops running,
    enters PHASE2 and zeroes both angular velocities without advancing time.
    The tick that first brings both doors to the limit still reports
    ``is_running=True``; the stop happens on the call after it.
    Likewise a door keeps its angular velocity on the tick that clamps its
    angle to the limit and reports ω = 0 from the following tick on.

    Door A's angle is integrated with forward Euler using ω = L / I(t).
    """
    if not state.is_running:
        return state

    a, b = state.door_a, state.door_b

    if a.angle >= MAX_DOOR_ANGLE and b.angle >= MAX_DOOR_ANGLE:
        return replace(
            state,
            is_running=False,
            phase=Phase.PHASE2,
            door_a=replace(a, angular_velocity=0.0),
            door_b=replace(b, angular_velocity=0.0),
        )

    new_time = state.time + dt
    door_inertia = door_moment_of_inertia(params.door_mass, params.door_width)

    # Mass position depends on elapsed time only, not on the door angle
    slide_progress = min(1.0, _divide(new_time, params.slide_duration))
    mass_radius = interpolate_radius(params.initial_radius, params.final_radius, slide_progress)

    # Door A: I grows with the mass radius, L stays fixed
    inertia_a = total_moment_of_inertia(door_inertia, params.sliding_mass, mass_radius)
    if a.angle >= MAX_DOOR_ANGLE:
        omega_a = 0.0
        angle_a = MAX_DOOR_ANGLE
    else:
        omega_a = angular_velocity_from_momentum(a.angular_momentum, inertia_a)
        angle_a = min(MAX_DOOR_ANGLE, a.angle + omega_a * dt)

    # Door B: constant ω until it closes
    if b.angle >= MAX_DOOR_ANGLE:
        omega_b = 0.0
        angle_b = MAX_DOOR_ANGLE
    else:
        omega_b = b.angular_velocity
        angle_b = min(MAX_DOOR_ANGLE, b.angle + omega_b * dt)

    if angle_a >= MAX_DOOR_ANGLE and angle_b >= MAX_DOOR_ANGLE:
        phase = Phase.PHASE2
    else:
        phase = Phase.PHASE1

    return replace(
        state,
        time=new_time,
        phase=phase,
        door_a=DoorAState(
            angle=angle_a,
            angular_velocity=omega_a,
            moment_of_inertia=inertia_a,
            angular_momentum=a.angular_momentum,
            mass_radius=mass_radius,
        ),
        door_b=DoorBState(
            angle=angle_b,
            angular_velocity=omega_b,
            moment_of_inertia=b.moment_of_inertia,
            angular_momentum=b.angular_momentum,
        ),
    )
