# bhnbody/tests/test_initial_conditions.py
import pytest

from bhsim.initial_conditions import (CENTRAL_COLOR, DEFAULT_SIMULATION_BOUNDS, default_bounds,
                                      generate_random_particles, validate_bounds)
from bhsim.particle_data import ParticleData


def test_central_body_first():
    particles = generate_random_particles(count=50, seed=1)
    assert len(particles) == 50
    central = particles[0]
    assert central.id == 0 and central.color == CENTRAL_COLOR
    assert central.position == (0.0, 0.0, 0.0) and central.velocity == (0.0, 0.0, 0.0)
    assert central.mass == DEFAULT_SIMULATION_BOUNDS["MASS"]["CENTRAL"]
    assert [p.id for p in particles] == list(range(50))


def test_values_within_bounds():
    bounds = default_bounds()
    particles = generate_random_particles(bounds, count=200, seed=2)
    pos, vel = bounds["POSITION"], bounds["VELOCITY"]
    for p in particles[1:]:
        assert all(pos["MIN"] <= c <= pos["MAX"] for c in p.position)
        assert all(vel["MIN"] <= c <= vel["MAX"] for c in p.velocity)
        assert bounds["MASS"]["TINY"] <= p.mass <= bounds["MASS"]["LARGE"]
        assert p.color.startswith("hsl(")
    ParticleData.from_particles(particles) # passes validation


def test_seed_is_reproducible():
    assert generate_random_particles(count=20, seed=42) == generate_random_particles(count=20, seed=42)
    assert generate_random_particles(count=20, seed=42) != generate_random_particles(count=20, seed=43)


def test_single_particle():
    assert len(generate_random_particles(count=1, seed=0)) == 1


def test_default_bounds_is_a_copy():
    bounds = default_bounds()
    bounds["POSITION"]["MIN"] = 0.0
    assert DEFAULT_SIMULATION_BOUNDS["POSITION"]["MIN"] == -75.0


@pytest.mark.parametrize("section, key, value", [
    ("POSITION", "MIN", 100.0),
    ("MASS", "TINY", 0.0),
    ("RADIUS", "MIN", -1.0),
    (None, "PARTICLE_COUNT", 0),
    (None, "PARTICLE_COUNT", 2.5),
])
def test_invalid_bounds(section, key, value):
    bounds = default_bounds()
    if section is None: bounds[key] = value
    else: bounds[section][key] = value
    with pytest.raises(ValueError):
        validate_bounds(bounds)


def test_missing_section():
    bounds = default_bounds()
    del bounds["VELOCITY"]
    with pytest.raises(ValueError):
        generate_random_particles(bounds)
