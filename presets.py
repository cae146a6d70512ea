"""
Parameter Presets
Named parameter sets for the two-door comparison.
"""

from physics import SimulationParams, DEFAULT_PARAMS


class ParameterPreset:
    """Each preset returns a fresh SimulationParams; the controller resets on load."""

    @staticmethod
    def default() -> SimulationParams:
        """Original demo values: 5 kg slider moving 0.3 m → 0.8 m in 1.5 s."""
        return DEFAULT_PARAMS

    @staticmethod
    def demo() -> SimulationParams:
        """Heavier slider travelling almost the full door width.

        I_A(0) = 10 + 8·0.1² = 10.08 kg·m², L_A = 20.16 kg·m²/s.
        """
        return SimulationParams(
            door_mass=30.0,
            door_width=1.0,
            sliding_mass=8.0,
            initial_radius=0.1,
            final_radius=0.9,
            slide_duration=1.2,
            initial_angular_velocity=2.0,
        )

    @staticmethod
    def no_slider() -> SimulationParams:
        """Massless slider: both doors must close at the same instant."""
        return SimulationParams(sliding_mass=0.0)

    @staticmethod
    def long_slide() -> SimulationParams:
        """Slide slower than the swing, so Door A closes before the mass arrives."""
        return SimulationParams(slide_duration=3.0, initial_angular_velocity=2.5)

    @staticmethod
    def heavy_slider() -> SimulationParams:
        return SimulationParams(
            door_mass=10.0,
            sliding_mass=15.0,
            initial_radius=0.05,
            final_radius=1.0,
            slide_duration=0.8,
            initial_angular_velocity=1.0,
        )


PRESETS = {
    "default":      (ParameterPreset.default,      "Default"),
    "demo":         (ParameterPreset.demo,         "Demo (8 kg slider)"),
    "no_slider":    (ParameterPreset.no_slider,    "No sliding mass"),
    "long_slide":   (ParameterPreset.long_slide,   "Long slide"),
    "heavy_slider": (ParameterPreset.heavy_slider, "Heavy slider"),
}


def get_preset(name: str) -> SimulationParams:
    """Look up a preset by name; raises KeyError listing the known names."""
    try:
        fn, _label = PRESETS[name]
    except KeyError:
        raise KeyError(f"unknown preset '{name}', expected one of {sorted(PRESETS)}") from None
    return fn()
