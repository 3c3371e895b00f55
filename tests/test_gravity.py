# bhnbody/tests/test_gravity.py
import itertools

import numpy as np
import pytest

from bhsim.constants import CONST_G
from bhsim.particle_data import ParticleData
from bhsim.phases import StepPhase
from bhsim.physics.gravity.gravity_bh_numba import (GravityBHNumba, pairwise_force, tree_force_on_particle,
                                                    tree_forces)
from bhsim.physics.gravity.gravity_pp_cpu import GravityPPCpu, direct_forces, direct_potential_energy
from bhsim.physics.gravity.octree_numba import Octree

from conftest import make_particle


def _tree(positions, masses):
    tree = Octree.build(positions, masses)
    tree.compute_aggregates()
    return tree


def test_pairwise_force_symmetry():
    a, b = (1.0, -2.0, 0.5), (4.0, 2.0, -1.0)
    f_ab = np.array(pairwise_force(a, 3.0, b, 7.0, G=1.0))
    f_ba = np.array(pairwise_force(b, 7.0, a, 3.0, G=1.0))
    np.testing.assert_allclose(f_ab, -f_ba, rtol=1e-14)
    # |F| = G m1 m2 / r^2 with r = sqrt(9 + 16 + 2.25)
    assert np.linalg.norm(f_ab) == pytest.approx(21.0 / 27.25, rel=1e-12)


def test_pairwise_force_distance_clamp():
    f = pairwise_force((0.0, 0.0, 0.0), 1.0, (1e-12, 0.0, 0.0), 1.0, G=1.0, min_separation=1e-3)
    assert np.all(np.isfinite(f))
    assert f.x == pytest.approx(1e-12 / (1e-3) ** 3, rel=1e-9)


def test_single_particle_feels_no_force():
    tree = _tree(np.array([[3.0, 4.0, 5.0]]), np.array([10.0]))
    assert tree_force_on_particle(tree, 0, theta=0.5, G=1.0) == (0.0, 0.0, 0.0)


@pytest.mark.parametrize("n", [2, 5, 20])
def test_theta_zero_matches_direct_sum(random_cloud, n):
    positions, masses = random_cloud
    positions, masses = positions[:n].copy(), masses[:n].copy()
    tree = _tree(positions, masses)
    expected = direct_forces(positions, masses, 1.0, 1e-9)
    np.testing.assert_allclose(tree_forces(tree, 0.0, G=1.0), expected, rtol=1e-9, atol=1e-12)


def test_small_theta_close_to_direct_sum():
    rng = np.random.default_rng(99)
    positions = rng.uniform(-100.0, 100.0, size=(300, 3))
    masses = rng.uniform(1.0, 5.0, size=300)
    approx = tree_forces(_tree(positions, masses), 0.3, G=1.0)
    exact = direct_forces(positions, masses, 1.0, 1e-9)
    rel_err = np.linalg.norm(approx - exact, axis=1) / np.linalg.norm(exact, axis=1)
    assert np.median(rel_err) < 1e-2


def test_tree_force_index_check():
    tree = _tree(np.array([[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]]), np.ones(2))
    with pytest.raises(IndexError):
        tree_force_on_particle(tree, 2, theta=0.5)


def test_net_force_sums_to_zero_at_theta_zero(random_cloud):
    positions, masses = random_cloud
    forces = tree_forces(_tree(positions, masses), 0.0, G=1.0)
    np.testing.assert_allclose(forces.sum(axis=0), 0.0, atol=1e-10 * np.abs(forces).max())


def test_bh_model_reports_phases_and_diagnostics(two_body):
    pd = ParticleData.from_particles(two_body)
    model = GravityBHNumba(config={'G': CONST_G, 'bh_theta': 0.1})
    seen = []
    forces = model.compute_forces(pd, phase_cb=seen.append)
    assert seen == [StepPhase.BOUNDS_COMPUTED, StepPhase.TREE_BUILT, StepPhase.AGGREGATES_COMPUTED]
    assert forces[0, 0] == pytest.approx(CONST_G / 400.0, rel=1e-12)
    assert forces[1, 0] == pytest.approx(-CONST_G / 400.0, rel=1e-12)
    np.testing.assert_array_equal(pd.get("forces"), forces)
    assert model.get_node_count() == 3
    assert len(model.get_bounding_boxes()) == 3
    model.cleanup()
    assert model.get_node_count() == 0 and model.get_bounding_boxes() == []


def test_bh_and_direct_models_agree():
    particles = [make_particle(float(i), float(i % 3), float(i % 5), mass=1.0 + i) for i in range(10)]
    bh = GravityBHNumba(config={'G': 1.0})
    pp = GravityPPCpu(config={'G': 1.0})
    f_bh = bh.compute_forces(ParticleData.from_particles(particles), theta=0.0)
    f_pp = pp.compute_forces(ParticleData.from_particles(particles))
    np.testing.assert_allclose(f_bh, f_pp, rtol=1e-9, atol=1e-12)
    pd = ParticleData.from_particles(particles)
    assert bh.compute_potential_energy(pd) == pytest.approx(pp.compute_potential_energy(pd))


def test_potential_energy_two_body():
    pos = np.array([[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    assert direct_potential_energy(pos, np.array([2.0, 3.0]), 1.0, 1e-9) == pytest.approx(-3.0)


@pytest.mark.parametrize("config", [
    {'bh_theta': -0.1},
    {'bh_theta': float('nan')},
    {'min_separation': -1.0},
    {'MAX_NODES_FACTOR': 1},
    {'max_tree_depth': 0},
    {'G': 'heavy'},
])
def test_bh_model_rejects_bad_config(config):
    with pytest.raises(ValueError):
        GravityBHNumba(config=config).setup()


def test_bh_model_rejects_bad_theta(two_body):
    model = GravityBHNumba(config={'G': 1.0})
    with pytest.raises(ValueError):
        model.compute_forces(ParticleData.from_particles(two_body), theta=-1.0)


def test_update_config_rereads_parameters():
    model = GravityBHNumba(config={'G': 1.0})
    model.setup()
    model.update_config({'G': 2.0, 'bh_theta': 0.7})
    assert model.G == 2.0 and model.bh_theta == 0.7


def test_lattice_on_split_planes_matches_direct_sum():
    positions = np.array(list(itertools.product([0.0, 1.0, 2.0], repeat=3)))
    masses = np.ones(len(positions))
    tree_f = tree_forces(_tree(positions, masses), 0.0, G=1.0, min_separation=1e-9)
    direct_f = direct_forces(positions, masses, 1.0, 1e-9)
    # the centre particle feels no net force, hence the absolute tolerance
    np.testing.assert_allclose(tree_f, direct_f, rtol=1e-9, atol=1e-12)
    np.testing.assert_allclose(tree_f[13], 0.0, atol=1e-12)
