# bhnbody/tests/conftest.py
import numpy as np
import pytest

from bhsim.particle_data import Particle, Vector3


def make_particle(x, y=0.0, z=0.0, vx=0.0, vy=0.0, vz=0.0, mass=1.0, radius=1.0, **kwargs):
    return Particle(position=Vector3(x, y, z), velocity=Vector3(vx, vy, vz), mass=mass, radius=radius, **kwargs)


@pytest.fixture
def two_body():
    """Unit masses at x = -10 and x = +10, at rest."""
    return [make_particle(-10.0, id=0, color="red"), make_particle(10.0, id=1, color="blue")]


@pytest.fixture
def random_cloud():
    """Small seeded particle cloud as (positions, masses)."""
    rng = np.random.default_rng(1234)
    positions = rng.uniform(-50.0, 50.0, size=(20, 3))
    masses = rng.uniform(1.0, 10.0, size=20)
    return positions, masses


@pytest.fixture
def small_settings():
    """Default settings with a small, reproducible particle set."""
    from bhconfig.default_settings import DEFAULT_SETTINGS
    settings = DEFAULT_SETTINGS.copy()
    settings['N'] = 12
    settings['seed'] = 7
    settings['dt'] = 10.0
    return settings
