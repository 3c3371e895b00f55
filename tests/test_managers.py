# bhnbody/tests/test_managers.py
import pytest

from bhconfig.default_settings import DEFAULT_SETTINGS
from bhconfig.param_defs import PARAM_DEFS
from bhsim.integrator_manager import IntegratorManager
from bhsim.integrators.leapfrog import Leapfrog
from bhsim.physics.gravity.gravity_bh_numba import GravityBHNumba
from bhsim.physics.gravity.gravity_pp_cpu import GravityPPCpu
from bhsim.physics_manager import PhysicsManager


def test_default_settings_consistent():
    assert DEFAULT_SETTINGS['N'] == DEFAULT_SETTINGS['SIMULATION_BOUNDS']['PARTICLE_COUNT']
    for key, pdef in PARAM_DEFS.items():
        if key in DEFAULT_SETTINGS:
            assert pdef['min'] <= DEFAULT_SETTINGS[key] <= pdef['max']


def test_select_and_switch_models():
    manager = PhysicsManager(DEFAULT_SETTINGS.copy())
    assert manager.get_gravity_model() is None
    manager.select_model("gravity", "gravity_bh_numba")
    first = manager.get_gravity_model()
    assert isinstance(first, GravityBHNumba) and first.is_ready()
    manager.select_model("gravity", "gravity_bh_numba")
    assert manager.get_gravity_model() is first
    manager.select_model("gravity", "gravity_pp_cpu")
    assert isinstance(manager.get_active_model("gravity"), GravityPPCpu)
    assert manager.get_active_models_info()["gravity"]["id"] == "gravity_pp_cpu"
    assert {m["id"] for m in manager.get_available_models()["gravity"]} == {"gravity_bh_numba", "gravity_pp_cpu"}


def test_unknown_model():
    manager = PhysicsManager(DEFAULT_SETTINGS.copy())
    with pytest.raises(ValueError):
        manager.select_model("gravity", "gravity_fmm")
    with pytest.raises(ValueError):
        manager.select_model("magnetism", "gravity_bh_numba")


def test_update_config_propagates():
    manager = PhysicsManager(DEFAULT_SETTINGS.copy())
    manager.select_model("gravity", "gravity_bh_numba")
    manager.update_config({'bh_theta': 0.9})
    assert manager.get_gravity_model().bh_theta == 0.9
    with pytest.raises(ValueError):
        manager.update_config({'bh_theta': -1.0})


def test_integrator_manager():
    manager = IntegratorManager(DEFAULT_SETTINGS.copy())
    manager.select_integrator("leapfrog")
    assert isinstance(manager.get_active_integrator(), Leapfrog)
    assert manager.get_active_integrator_info()["order"] == 2
    assert [i["id"] for i in manager.get_available_integrators()] == ["trapezoid", "leapfrog"]
    with pytest.raises(ValueError):
        manager.select_integrator("rk4")
