# bhnbody/bhsim/initial_conditions.py
"""
Random initial particle sets: one heavy central body plus a cloud of small
bodies scattered uniformly through a cube.
"""

import copy
from typing import Dict, List, Optional

import numpy as np

from bhsim.particle_data import Particle, Vector3

DEFAULT_SIMULATION_BOUNDS: Dict[str, Dict] = {
    "POSITION": {"MIN": -75.0, "MAX": 75.0},
    "VELOCITY": {"MIN": -0.001, "MAX": 0.001},
    "MASS": {
        "TINY": 1e-5,
        "SMALL": 10.0,
        "MEDIUM": 100.0,
        "LARGE": 1000.0,
        "CENTRAL": 1e6,
    },
    "RADIUS": {"MIN": 0.5, "MAX": 2.0, "CENTRAL": 3.0},
    "PARTICLE_COUNT": 500,
}

HEAVY_FRACTION = 0.05 # share of bodies drawn from the [MEDIUM, LARGE] mass range
CENTRAL_COLOR = "#000000"


def default_bounds() -> Dict:
    return copy.deepcopy(DEFAULT_SIMULATION_BOUNDS)


def validate_bounds(bounds: Dict):
    """Raises ValueError for missing sections, inverted ranges, non-positive masses or count < 1."""
    try:
        pos, vel, mass, rad = bounds["POSITION"], bounds["VELOCITY"], bounds["MASS"], bounds["RADIUS"]
        count = bounds["PARTICLE_COUNT"]
        ranges = {
            "POSITION": (float(pos["MIN"]), float(pos["MAX"])),
            "VELOCITY": (float(vel["MIN"]), float(vel["MAX"])),
            "RADIUS": (float(rad["MIN"]), float(rad["MAX"])),
            "MASS (TINY..SMALL)": (float(mass["TINY"]), float(mass["SMALL"])),
            "MASS (MEDIUM..LARGE)": (float(mass["MEDIUM"]), float(mass["LARGE"])),
        }
        central_mass = float(mass["CENTRAL"]); central_radius = float(rad["CENTRAL"])
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid simulation bounds: {e}") from e

    for name, (lo, hi) in ranges.items():
        if not (np.isfinite(lo) and np.isfinite(hi)) or lo > hi:
            raise ValueError(f"Invalid {name} range: [{lo}, {hi}]")
    if min(ranges["MASS (TINY..SMALL)"][0], ranges["MASS (MEDIUM..LARGE)"][0], central_mass) <= 0.0:
        raise ValueError("All masses in bounds must be > 0.")
    if central_radius < 0.0 or ranges["RADIUS"][0] < 0.0:
        raise ValueError("Radii in bounds must be >= 0.")
    if isinstance(count, bool) or not isinstance(count, (int, np.integer)) or count < 1:
        raise ValueError(f"PARTICLE_COUNT must be an integer >= 1, got {count!r}")


def random_color(rng: np.random.Generator) -> str:
    """Random hue at fixed saturation/lightness, as a CSS hsl() string."""
    return f"hsl({rng.uniform(0.0, 360.0):.1f}, 70%, 50%)"


def generate_random_particles(bounds: Optional[Dict] = None, count: Optional[int] = None,
                              seed: Optional[int] = None) -> List[Particle]:
    """
    Particle 0 is the central body at rest at the origin; the remaining
    count-1 bodies get uniform positions/velocities within the bounds.

    Args:
        bounds: DEFAULT_SIMULATION_BOUNDS-shaped dict (defaults used when None).
        count: overrides bounds['PARTICLE_COUNT'].
        seed: seed for numpy's default_rng, for reproducible sets.
    """
    bounds = default_bounds() if bounds is None else bounds
    if count is not None:
        bounds = dict(bounds, PARTICLE_COUNT=count)
    validate_bounds(bounds)
    n = int(bounds["PARTICLE_COUNT"])
    rng = np.random.default_rng(seed)
    pos_b, vel_b, mass_b, rad_b = bounds["POSITION"], bounds["VELOCITY"], bounds["MASS"], bounds["RADIUS"]

    particles = [Particle(position=Vector3(0.0, 0.0, 0.0), velocity=Vector3(0.0, 0.0, 0.0),
                          mass=mass_b["CENTRAL"], radius=rad_b["CENTRAL"], color=CENTRAL_COLOR, id=0)]
    n_rest = n - 1
    if n_rest == 0: return particles

    positions = rng.uniform(pos_b["MIN"], pos_b["MAX"], size=(n_rest, 3))
    velocities = rng.uniform(vel_b["MIN"], vel_b["MAX"], size=(n_rest, 3))
    radii = rng.uniform(rad_b["MIN"], rad_b["MAX"], size=n_rest)
    heavy = rng.random(n_rest) < HEAVY_FRACTION
    masses = np.where(heavy,
                      rng.uniform(mass_b["MEDIUM"], mass_b["LARGE"], size=n_rest),
                      rng.uniform(mass_b["TINY"], mass_b["SMALL"], size=n_rest))

    for i in range(n_rest):
        particles.append(Particle(position=Vector3(*map(float, positions[i])),
                                  velocity=Vector3(*map(float, velocities[i])),
                                  mass=float(masses[i]), radius=float(radii[i]),
                                  color=random_color(rng), id=i + 1))
    return particles
