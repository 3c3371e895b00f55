# bhnbody/tests/test_octree.py
import itertools

import numpy as np
import pytest

from bhsim.errors import InvalidParticleError, OctreeInvariantError
from bhsim.particle_data import BoundingBox, Vector3
from bhsim.physics.gravity.octree_numba import NodeKind, Octree, compute_bounding_box, cubic_root_bounds


def _aggregated(positions, masses, **kwargs):
    tree = Octree.build(np.asarray(positions, dtype=np.float64), np.asarray(masses, dtype=np.float64), **kwargs)
    tree.compute_aggregates()
    return tree


def test_bounding_box_is_minimal():
    pos = np.array([[-1.0, 2.0, 0.5], [3.0, -4.0, 0.0], [0.0, 0.0, 7.0]])
    box = compute_bounding_box(pos)
    assert box == BoundingBox(Vector3(-1.0, -4.0, 0.0), Vector3(3.0, 2.0, 7.0))
    assert all(box.contains(p) for p in pos)


def test_bounding_box_rejects_empty():
    with pytest.raises(InvalidParticleError):
        compute_bounding_box(np.zeros((0, 3)))


def test_cubic_root_contains_box():
    box = BoundingBox(Vector3(0.0, 0.0, 0.0), Vector3(4.0, 1.0, 2.0))
    lo, hi = cubic_root_bounds(box)
    np.testing.assert_allclose(hi - lo, [4.0, 4.0, 4.0])
    assert np.all(lo <= np.array(box.lo)) and np.all(hi >= np.array(box.hi))


def test_single_particle_root_is_leaf():
    tree = _aggregated([[5.0, 5.0, 5.0]], [2.0])
    nodes = list(tree.iter_nodes())
    assert len(nodes) == 1
    assert nodes[0].kind == NodeKind.LEAF and nodes[0].particle == 0
    np.testing.assert_allclose(tree.root_hi - tree.root_lo, [1.0, 1.0, 1.0])
    assert tree.root_mass == 2.0


def test_two_body_center_of_mass_is_midpoint():
    tree = _aggregated([[-10.0, 0.0, 0.0], [10.0, 0.0, 0.0]], [1.0, 1.0])
    assert tree.root_mass == pytest.approx(2.0)
    assert tree.root_center_of_mass == pytest.approx((0.0, 0.0, 0.0))


def test_mass_conservation(random_cloud):
    positions, masses = random_cloud
    tree = _aggregated(positions, masses)
    assert tree.root_mass == pytest.approx(masses.sum(), rel=1e-12)
    expected_com = (masses[:, None] * positions).sum(axis=0) / masses.sum()
    np.testing.assert_allclose(tree.root_center_of_mass, expected_com, rtol=1e-10, atol=1e-10)
    for node in tree.iter_nodes():
        if node.kind == NodeKind.BRANCH:
            child_mass = sum(tree.node_mass[c] for c in node.children)
            assert node.total_mass == pytest.approx(child_mass, rel=1e-12)


def test_pruned_tree_has_no_empty_nodes(random_cloud):
    positions, masses = random_cloud
    tree = _aggregated(positions, masses)
    nodes = list(tree.iter_nodes())
    assert len(nodes) == tree.node_count
    assert all(node.kind != NodeKind.EMPTY for node in nodes)
    leaves = [node for node in nodes if node.kind == NodeKind.LEAF]
    assert sorted(node.particle for node in leaves) == list(range(len(masses)))
    for node in nodes:
        assert all(c > node.index for c in node.children)
        if node.kind == NodeKind.BRANCH:
            assert node.children and node.particle is None


def test_every_leaf_box_holds_its_particle(random_cloud):
    positions, masses = random_cloud
    tree = _aggregated(positions, masses)
    for node in tree.iter_nodes():
        if node.kind == NodeKind.LEAF:
            assert node.bounds.contains(positions[node.particle])
    assert len(tree.bounding_boxes()) == tree.node_count


def test_small_node_arena_grows():
    rng = np.random.default_rng(3)
    positions = rng.uniform(-1.0, 1.0, size=(200, 3))
    tree = _aggregated(positions, np.ones(200), max_nodes_factor=2)
    assert tree.root_mass == pytest.approx(200.0)


def test_depth_limit_raises():
    positions = np.array([[0.0, 0.0, 0.0], [1e-12, 0.0, 0.0], [1.0, 1.0, 1.0]])
    with pytest.raises(OctreeInvariantError):
        Octree.build(positions, np.ones(3), max_depth=4)


def test_phases_out_of_order():
    tree = Octree(np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]), np.ones(2))
    with pytest.raises(OctreeInvariantError):
        tree.prune()
    tree.insert_all()
    with pytest.raises(OctreeInvariantError):
        tree.compute_aggregates()
    tree.prune()
    with pytest.raises(OctreeInvariantError):
        tree.root_mass


def test_shape_mismatch():
    with pytest.raises(ValueError):
        Octree(np.zeros((3, 2)), np.ones(3))
    with pytest.raises(ValueError):
        Octree(np.zeros((3, 3)), np.ones(2))


def test_particles_on_split_planes_land_in_one_leaf():
    # root cube is [0, 2]^3, so every particle lies on at least one split plane
    positions = np.array(list(itertools.product([0.0, 1.0, 2.0], repeat=3)))
    tree = _aggregated(positions, np.ones(len(positions)))
    leaves = {}
    for node in tree.iter_nodes():
        if node.kind == NodeKind.LEAF:
            assert node.particle not in leaves
            leaves[node.particle] = node
            assert node.bounds.contains(positions[node.particle])
    assert sorted(leaves) == list(range(len(positions)))
    assert tree.root_mass == pytest.approx(27.0)

    # a coordinate on the midpoint belongs to the upper child
    center = leaves[13]
    assert tuple(positions[13]) == (1.0, 1.0, 1.0)
    assert center.bounds == BoundingBox(Vector3(1.0, 1.0, 1.0), Vector3(1.5, 1.5, 1.5))
    assert leaves[0].bounds == BoundingBox(Vector3(0.0, 0.0, 0.0), Vector3(1.0, 1.0, 1.0))
