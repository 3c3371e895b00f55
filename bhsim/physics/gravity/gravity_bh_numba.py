# bhnbody/bhsim/physics/gravity/gravity_bh_numba.py
"""
Barnes-Hut gravity model accelerated using Numba for CPU execution.

Implements the GravityModel interface. Each call to `compute_forces` builds a
fresh octree (bounds -> insertion -> pruning -> aggregates, see
octree_numba.py) and then walks it once per particle in a parallel Numba
loop. The walk is read-only, so particles are independent of each other.

Opening criterion: a branch whose longest box edge D satisfies D < theta * r
(r = distance from the target to the branch's centre of mass) is treated as
one point mass. A branch whose box contains the target is always opened, so
a particle never feels its own mass through an aggregate. Pair distances are
clamped to `min_separation` before the 1/r^3 term.
"""

from math import sqrt
from typing import List, Optional

import numpy as np
from numba import njit, prange

from bhsim.constants import (CONST_G, DEFAULT_MAX_NODES_FACTOR, DEFAULT_MAX_TREE_DEPTH,
                             DEFAULT_MIN_SEPARATION, DEFAULT_THETA)
from bhsim.errors import OctreeInvariantError
from bhsim.particle_data import BoundingBox, ParticleData, Vector3
from bhsim.phases import StepPhase
from bhsim.physics.base.gravity import GravityModel, PhaseCallback
from bhsim.physics.gravity.gravity_pp_cpu import direct_potential_energy
from bhsim.physics.gravity.octree_numba import (NODE_IS_BRANCH, NODE_IS_EMPTY, NODE_IS_LEAF,
                                                Octree, compute_bounding_box)
from bhsim.utils import timing_decorator

# worst case for a depth-first walk: 7 pending siblings per level plus the root
MAX_STACK_DEPTH: int = 8 * DEFAULT_MAX_TREE_DEPTH + 8

WALK_OK: int = 0
WALK_ERR_STACK: int = -1
WALK_ERR_EMPTY_NODE: int = -2


# --- Force Kernels ---
@njit(cache=True, nogil=True)
def pairwise_force_components(xa, ya, za, ma, xb, yb, zb, mb, G, min_sep):
    """(Numba Kernel) Newtonian pull on body a towards body b: G m_a m_b (x_b - x_a) / r^3, r clamped to min_sep."""
    dx = xb - xa; dy = yb - ya; dz = zb - za
    r = sqrt(dx * dx + dy * dy + dz * dz)
    if r < min_sep: r = min_sep
    if r <= 0.0: return 0.0, 0.0, 0.0 # coincident with no clamp: direction undefined
    f = G * ma * mb / (r * r * r)
    return f * dx, f * dy, f * dz


@njit(cache=True, nogil=True)
def _bh_force_on_particle(i, pos, mass, theta, G, min_sep,
                          node_lo, node_hi, node_kind, node_particle, node_child, node_mass, node_com):
    """(Numba Kernel) Net force on particle i from an iterative walk of the aggregated tree."""
    fx = 0.0; fy = 0.0; fz = 0.0
    if node_kind.shape[0] == 0 or node_kind[0] == NODE_IS_EMPTY: return fx, fy, fz, WALK_OK
    px = pos[i, 0]; py = pos[i, 1]; pz = pos[i, 2]; pm = mass[i]

    stack = np.empty(MAX_STACK_DEPTH, dtype=np.int64)
    stack[0] = 0; stack_ptr = 1
    while stack_ptr > 0:
        stack_ptr -= 1
        k = stack[stack_ptr]
        kind = node_kind[k]

        if kind == NODE_IS_LEAF:
            j = node_particle[k]
            if j == i: continue # no self-force (identity, not position)
            ax, ay, az = pairwise_force_components(px, py, pz, pm, pos[j, 0], pos[j, 1], pos[j, 2], mass[j], G, min_sep)
            fx += ax; fy += ay; fz += az

        elif kind == NODE_IS_BRANCH:
            cx = node_com[k, 0]; cy = node_com[k, 1]; cz = node_com[k, 2]
            dx = cx - px; dy = cy - py; dz = cz - pz
            r = sqrt(dx * dx + dy * dy + dz * dz)
            ex = node_hi[k, 0] - node_lo[k, 0]; ey = node_hi[k, 1] - node_lo[k, 1]; ez = node_hi[k, 2] - node_lo[k, 2]
            size = max(ex, max(ey, ez))
            inside = (node_lo[k, 0] <= px <= node_hi[k, 0] and node_lo[k, 1] <= py <= node_hi[k, 1]
                      and node_lo[k, 2] <= pz <= node_hi[k, 2])
            if not inside and size < theta * r:
                ax, ay, az = pairwise_force_components(px, py, pz, pm, cx, cy, cz, node_mass[k], G, min_sep)
                fx += ax; fy += ay; fz += az
            else:
                for o in range(8):
                    c = node_child[k, o]
                    if c < 0: continue
                    if stack_ptr >= MAX_STACK_DEPTH: return fx, fy, fz, WALK_ERR_STACK
                    stack[stack_ptr] = c; stack_ptr += 1
        else:
            return fx, fy, fz, WALK_ERR_EMPTY_NODE # pruned nodes are never linked
    return fx, fy, fz, WALK_OK


@njit(cache=True, nogil=True, parallel=True)
def bh_forces_parallel_numba(pos, mass, theta, G, min_sep,
                             node_lo, node_hi, node_kind, node_particle, node_child, node_mass, node_com,
                             forces_out, status_out):
    """(Numba Kernel) Forces for all particles in parallel against a finished tree."""
    for i in prange(pos.shape[0]):
        fx, fy, fz, status = _bh_force_on_particle(i, pos, mass, theta, G, min_sep,
                                                   node_lo, node_hi, node_kind, node_particle,
                                                   node_child, node_mass, node_com)
        forces_out[i, 0] = fx; forces_out[i, 1] = fy; forces_out[i, 2] = fz
        status_out[i] = status


def pairwise_force(pos_a, mass_a: float, pos_b, mass_b: float,
                   G: float = CONST_G, min_separation: float = DEFAULT_MIN_SEPARATION) -> Vector3:
    """Exact force on body a from body b."""
    return Vector3(*pairwise_force_components(float(pos_a[0]), float(pos_a[1]), float(pos_a[2]), float(mass_a),
                                              float(pos_b[0]), float(pos_b[1]), float(pos_b[2]), float(mass_b),
                                              float(G), float(min_separation)))


def _raise_walk_error(status: int):
    if status == WALK_ERR_STACK:
        raise OctreeInvariantError(f"Tree walk exceeded the traversal stack ({MAX_STACK_DEPTH}).")
    raise OctreeInvariantError("Tree walk reached a pruned/empty node.")


def tree_force_on_particle(tree: Octree, index: int, theta: float,
                           G: float = CONST_G, min_separation: float = DEFAULT_MIN_SEPARATION) -> Vector3:
    """Barnes-Hut force on one particle of an aggregated tree."""
    if not 0 <= index < tree.n_particles:
        raise IndexError(f"Particle index {index} out of range for {tree.n_particles} particles.")
    fx, fy, fz, status = _bh_force_on_particle(index, tree.positions, tree.masses, float(theta), float(G),
                                               float(min_separation), *tree.arrays())
    if status != WALK_OK: _raise_walk_error(status)
    return Vector3(fx, fy, fz)


def tree_forces(tree: Octree, theta: float, G: float = CONST_G,
                min_separation: float = DEFAULT_MIN_SEPARATION) -> np.ndarray:
    """Barnes-Hut force on every particle of an aggregated tree, shape (N, 3)."""
    forces_out = np.zeros((tree.n_particles, 3), dtype=np.float64)
    status_out = np.zeros(tree.n_particles, dtype=np.int64)
    bh_forces_parallel_numba(tree.positions, tree.masses, float(theta), float(G), float(min_separation),
                             *tree.arrays(), forces_out, status_out)
    worst = int(status_out.min()) if status_out.size else WALK_OK
    if worst != WALK_OK: _raise_walk_error(worst)
    return forces_out


# ==============================
# --- Python Class Definition ---
# ==============================

class GravityBHNumba(GravityModel):
    """
    Barnes-Hut gravity model using Numba-accelerated kernels on the CPU.

    Builds an octree every call and uses it to approximate gravitational
    forces. The last tree is kept (until the next call or `cleanup`) for
    diagnostics: node count and node bounding boxes.
    """

    def __init__(self, config: dict = None):
        """Initializes model with config and sets default parameter values."""
        super().__init__(config)
        self.G: float = CONST_G
        self.bh_theta: float = DEFAULT_THETA
        self.min_separation: float = DEFAULT_MIN_SEPARATION
        self.MAX_NODES_FACTOR: int = DEFAULT_MAX_NODES_FACTOR
        self.max_tree_depth: int = DEFAULT_MAX_TREE_DEPTH
        self.tree: Optional[Octree] = None
        self.n_nodes_status: int = 0 # reachable node count of the last tree

    # --- Model Setup ---
    def setup(self, pd: Optional[ParticleData] = None):
        """Reads BH parameters from config and validates them."""
        try:
            self.G = float(self.config.get('G', CONST_G))
            self.bh_theta = float(self.config.get('bh_theta', DEFAULT_THETA))
            self.min_separation = float(self.config.get('min_separation', DEFAULT_MIN_SEPARATION))
            self.MAX_NODES_FACTOR = int(self.config.get('MAX_NODES_FACTOR', DEFAULT_MAX_NODES_FACTOR))
            self.max_tree_depth = int(self.config.get('max_tree_depth', DEFAULT_MAX_TREE_DEPTH))
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid config value for GravityBHNumba: {e}")
        if not np.isfinite(self.bh_theta) or self.bh_theta < 0.0: raise ValueError("BH Theta must be finite and >= 0.")
        if self.min_separation < 0.0: raise ValueError("min_separation must be >= 0.")
        if self.MAX_NODES_FACTOR < 2: raise ValueError("MAX_NODES_FACTOR should be >= 2.")
        if not 1 <= self.max_tree_depth <= DEFAULT_MAX_TREE_DEPTH:
            raise ValueError(f"max_tree_depth must be in [1, {DEFAULT_MAX_TREE_DEPTH}].")
        super().setup(pd)

    def update_config(self, config: dict):
        super().update_config(config)
        if self._is_setup: self.setup()

    # --- Tree ---
    def build_tree(self, pd: ParticleData, phase_cb: Optional[PhaseCallback] = None) -> Octree:
        """Bounds, insertion, pruning and aggregates for the current positions."""
        pos = pd.get("positions")
        mass = pd.get("masses")
        bounds = compute_bounding_box(pos)
        if phase_cb: phase_cb(StepPhase.BOUNDS_COMPUTED)
        tree = Octree(pos, mass, bounds, max_nodes_factor=self.MAX_NODES_FACTOR, max_depth=self.max_tree_depth)
        tree.insert_all()
        tree.prune()
        if phase_cb: phase_cb(StepPhase.TREE_BUILT)
        tree.compute_aggregates()
        if phase_cb: phase_cb(StepPhase.AGGREGATES_COMPUTED)
        return tree

    # --- Forces ---
    @timing_decorator
    def compute_forces(self, pd: ParticleData, theta: Optional[float] = None,
                       phase_cb: Optional[PhaseCallback] = None) -> np.ndarray:
        """Builds the tree and evaluates every particle's force; result stored in pd 'forces'."""
        if not self._is_setup: self.setup(pd)
        theta_eff = self.bh_theta if theta is None else float(theta)
        if not np.isfinite(theta_eff) or theta_eff < 0.0: raise ValueError(f"theta must be finite and >= 0, got {theta}")

        self.tree = None
        self.n_nodes_status = 0
        tree = self.build_tree(pd, phase_cb)
        forces = tree_forces(tree, theta_eff, self.G, self.min_separation)
        self.tree = tree
        self.n_nodes_status = tree.node_count
        self._store_forces(pd, forces)
        return forces

    def compute_potential_energy(self, pd: ParticleData) -> float:
        """Total potential energy by direct O(N^2) summation (the tree is not used)."""
        if not self._is_setup: self.setup(pd)
        return direct_potential_energy(pd.get("positions"), pd.get("masses"), self.G, self.min_separation)

    def get_bounding_boxes(self) -> List[BoundingBox]:
        return self.tree.bounding_boxes() if self.tree is not None else []

    def get_node_count(self) -> int:
        return self.n_nodes_status

    def cleanup(self):
        self.tree = None
        self.n_nodes_status = 0
