# bhnbody/tests/test_simulator.py
import numpy as np
import pytest

from bhsim.errors import InvalidParticleError
from bhsim.phases import StepPhase
from bhsim.simulator import STATUS_ENDED, STATUS_ERROR, STATUS_PAUSED, STATUS_READY, Simulator

from conftest import make_particle


@pytest.fixture
def sim(small_settings):
    simulator = Simulator(small_settings)
    yield simulator
    simulator.cleanup()


def test_initial_state(sim):
    assert sim.get_particle_count() == 12
    assert sim.get_status_message() == STATUS_READY
    assert not sim.is_running() and not sim.is_ended()
    assert sim.get_time() == 0.0 and sim.get_steps_taken() == 0
    assert sim.get_current_models_info()["gravity"]["id"] == "gravity_bh_numba"
    assert sim.get_current_integrator_info()["id"] == "trapezoid"


def test_same_seed_same_particles(small_settings, sim):
    other = Simulator(small_settings)
    assert other.get_particles() == sim.get_particles()


def test_step_forward(sim):
    before = sim.get_particles()
    assert sim.step_forward()
    assert sim.get_time() == pytest.approx(10.0)
    assert sim.get_steps_taken() == 1
    assert sim.get_status_message() == STATUS_PAUSED
    after = sim.get_particles()
    assert [p.id for p in after] == [p.id for p in before]
    assert any(a.position != b.position for a, b in zip(after, before))
    assert sim.get_node_count() >= 12


def test_cannot_step_while_running(sim):
    sim.run()
    assert sim.is_running()
    assert not sim.step_forward()
    sim.toggle_run()
    assert not sim.is_running()


def test_reset_restores_initial(sim):
    initial = sim.get_particles()
    sim.step_forward(); sim.step_forward()
    sim.reset_to_initial()
    assert sim.get_time() == 0.0 and sim.get_steps_taken() == 0
    assert sim.get_particles() == initial


def test_max_steps_ends_run(small_settings):
    sim = Simulator(dict(small_settings, max_steps=3))
    for _ in range(3):
        assert sim.step_forward()
    assert sim.is_ended() and sim.get_status_message() == STATUS_ENDED
    assert not sim.step_forward()
    assert sim.get_graph_data()["final_snapshot"]["speeds"].shape == (12,)


def test_failed_step_keeps_previous_state(small_settings):
    particles = [make_particle(0.0), make_particle(1e-12), make_particle(1.0, 1.0, 1.0)]
    sim = Simulator(dict(small_settings, max_tree_depth=4), initial_particles=particles)
    assert not sim.step_forward()
    assert sim.get_status_message() == STATUS_ERROR and sim.is_ended()
    assert sim.get_failed_phase() == StepPhase.TREE_BUILT
    assert "OctreeInvariantError" in sim.get_last_error()
    assert sim.get_particles() == particles
    assert sim.get_time() == 0.0
    state = sim.get_current_state_for_ui()
    assert state["failed_phase"] == "Tree Built"


def test_live_parameters(sim):
    sim.set_live_parameter('dt', "5.0")
    assert sim.get_dt() == 5.0
    sim.step_forward()
    assert sim.get_time() == pytest.approx(5.0)
    sim.set_live_parameter('bh_theta', 0.5)
    assert sim.get_config()['bh_theta'] == 0.5


@pytest.mark.parametrize("key, value", [
    ('N', 100),            # not live
    ('unknown', 1.0),
    ('dt', 1e9),           # out of range
    ('bh_theta', 'wide'),  # not castable
])
def test_live_parameter_rejected(sim, key, value):
    with pytest.raises(ValueError):
        sim.set_live_parameter(key, value)


def test_select_model_and_integrator(sim):
    sim.select_model('gravity', 'gravity_pp_cpu')
    sim.select_integrator('leapfrog')
    assert sim.get_current_models_info()["gravity"]["id"] == "gravity_pp_cpu"
    assert sim.get_current_integrator_info()["id"] == "leapfrog"
    assert sim.step_forward()
    with pytest.raises(ValueError):
        sim.select_model('gravity', 'gravity_fmm')
    with pytest.raises(ValueError):
        sim.select_integrator('rk4')


def test_load_and_export_records(sim):
    records = [p.to_dict() for p in [make_particle(-1.0, id=0), make_particle(1.0, id=1)]]
    sim.load_particle_records(records)
    assert sim.get_particle_count() == 2
    assert sim.export_particles() == records
    assert sim.step_forward()


def test_invalid_load_leaves_state(sim):
    before = sim.get_particles()
    with pytest.raises(InvalidParticleError):
        sim.load_particles([make_particle(0.0, mass=0.0), make_particle(1.0)])
    with pytest.raises(ValueError):
        sim.load_particle_records(None)
    assert sim.get_particles() == before


def test_restart_with_new_settings(sim, small_settings):
    sim.restart(dict(small_settings, N=5, seed=3), 'gravity_pp_cpu', 'leapfrog')
    assert sim.get_particle_count() == 5
    assert sim.get_current_models_info()["gravity"]["id"] == "gravity_pp_cpu"
    with pytest.raises(ValueError):
        sim.restart(small_settings, 'nope', 'trapezoid')
    assert sim.get_status_message() == STATUS_ERROR


def test_ui_state(small_settings):
    sim = Simulator(dict(small_settings, collect_bounding_boxes=True))
    sim.step_forward()
    state = sim.get_current_state_for_ui()
    assert state["N"] == 12 and len(state["positions"]) == 36 and len(state["colors"]) == 12
    assert state["current_models"] == {"gravity": "gravity_bh_numba"}
    assert state["current_integrator"] == "trapezoid"
    assert len(state["bounding_boxes"]) == state["node_count"]
    assert state["stats"]["total_mass"] == pytest.approx(sum(p.mass for p in sim.get_particles()))


def test_graph_data_collected_on_interval(small_settings):
    sim = Simulator(small_settings)
    for _ in range(10):
        sim.step_forward()
    data = sim.get_graph_data()
    assert data["step"] == [0, 10]
    assert data["time"] == pytest.approx([0.0, 100.0])
    assert len(data["total_energy"]) == 2 and np.isfinite(data["total_energy"]).all()
    assert data["energy_drift_percent"][0] == pytest.approx(0.0)
    assert len(data["bh_num_nodes"]) == 2
    assert set(data["final_snapshot"]) == {"speeds", "masses", "radii"}


def test_plotting_disabled(small_settings):
    settings = dict(small_settings, GRAPH_SETTINGS=dict(small_settings['GRAPH_SETTINGS'], enable_plotting=False))
    sim = Simulator(settings)
    sim.step_forward()
    assert sim.get_graph_data() is None


def test_missing_config_key(small_settings):
    settings = dict(small_settings)
    del settings['dt']
    with pytest.raises(ValueError):
        Simulator(settings)
