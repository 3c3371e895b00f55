# bhnbody/bhsim/physics/gravity/octree_numba.py
"""
Barnes-Hut octree: bounding volume, insertion build, pruning and aggregates.

The tree lives in a flat node arena (parallel NumPy arrays addressed by node
index) that the Numba kernels fill in place. A node is exactly one of:
  - EMPTY  : leaf without a particle (only exists until pruning),
  - LEAF   : leaf holding one particle index,
  - BRANCH : eight child slots, absent children stored as -1.
Children are always allocated after their parent, so every child index is
larger than its parent's. The bottom-up passes rely on that and simply walk
the arena in reverse.
"""

from enum import IntEnum
from typing import Iterator, List, NamedTuple, Optional, Tuple

import numpy as np
from numba import njit, int64, types

from bhsim.constants import (DEFAULT_MAX_NODES_FACTOR, DEFAULT_MAX_TREE_DEPTH,
                             DEGENERATE_ROOT_EDGE, MAX_NODES_HARD_CAP)
from bhsim.errors import InvalidParticleError, OctreeInvariantError
from bhsim.particle_data import BoundingBox, Vector3

# --- Numba Kernel Constants ---
NODE_IS_BRANCH: int = 0 # internal node with up to eight children
NODE_IS_LEAF: int = 1   # leaf holding exactly one particle
NODE_IS_EMPTY: int = 2  # leaf holding nothing

# kernel status codes; non-negative return values are node counts
STATUS_OK: int = 0
ERR_CAPACITY: int = -1
ERR_DEPTH: int = -2
ERR_NO_OCTANT: int = -3
ERR_EMPTY_LEAF: int = -4
ERR_NONPOSITIVE_MASS: int = -5

# --- Numba Type Definitions ---
float64_1d = types.Array(types.float64, 1, 'C')
float64_2d = types.Array(types.float64, 2, 'C')
int64_1d = types.Array(types.int64, 1, 'C')
int64_2d = types.Array(types.int64, 2, 'C')


class NodeKind(IntEnum):
    BRANCH = NODE_IS_BRANCH
    LEAF = NODE_IS_LEAF
    EMPTY = NODE_IS_EMPTY


class OctreeNode(NamedTuple):
    """Read-only view of one reachable node."""
    index: int
    kind: NodeKind
    bounds: BoundingBox
    particle: Optional[int]
    children: Tuple[int, ...]
    total_mass: float
    center_of_mass: Vector3
    depth: int


# --- Bounding Volume ---
def compute_bounding_box(positions: np.ndarray) -> BoundingBox:
    """Minimal axis-aligned box around all positions (one linear pass per axis)."""
    positions = np.asarray(positions, dtype=np.float64)
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise ValueError(f"positions must have shape (N, 3), got {positions.shape}")
    if positions.shape[0] == 0:
        raise InvalidParticleError("Cannot compute a bounding box for an empty particle set.")
    lo = np.min(positions, axis=0); hi = np.max(positions, axis=0)
    return BoundingBox(Vector3(*map(float, lo)), Vector3(*map(float, hi)))


def cubic_root_bounds(box: BoundingBox) -> Tuple[np.ndarray, np.ndarray]:
    """
    Grows `box` to a cube anchored at its minimum corner.

    The edge is the longest extent of `box`; a zero-extent box (single
    particle) gets DEGENERATE_ROOT_EDGE. The max corner never shrinks, so every
    particle inside `box` is inside the cube.
    """
    lo = np.array(box.lo, dtype=np.float64)
    hi = np.array(box.hi, dtype=np.float64)
    edge = float(np.max(hi - lo))
    if not edge > 0.0: edge = DEGENERATE_ROOT_EDGE
    return lo, np.maximum(hi, lo + edge)


# --- Tree Kernels ---
@njit(int64(float64_2d, int64, float64_2d, float64_2d, int64), cache=True, nogil=True)
def _select_octant(pos, p_idx, node_lo, node_hi, node_idx):
    """(Numba Kernel) Octant of node_idx whose box holds particle p_idx, or -1.

    A coordinate equal to the midpoint goes to the upper octant (lower bound
    inclusive). Positions outside the node's closed box (or NaN) match nothing.
    """
    octant = 0
    for axis in range(3):
        lo = node_lo[node_idx, axis]; hi = node_hi[node_idx, axis]
        x = pos[p_idx, axis]
        if not (lo <= x <= hi): return -1
        if x >= 0.5 * (lo + hi): octant |= (1 << axis)
    return octant


@njit(int64(float64_2d, float64_2d, float64_2d, int64_1d, int64_1d, int64_2d, int64), cache=True, nogil=True)
def _build_octree_kernel(pos, node_lo, node_hi, node_kind, node_particle, node_child, max_depth):
    """(Numba Kernel) Inserts every particle, one at a time, starting at the root.

    Root bounds must already be in node_lo[0] / node_hi[0]. Returns the number
    of arena slots used, or ERR_CAPACITY / ERR_DEPTH / ERR_NO_OCTANT.
    """
    capacity = node_kind.shape[0]
    node_kind[0] = NODE_IS_EMPTY; node_particle[0] = -1
    for o in range(8): node_child[0, o] = -1
    n_nodes = 1

    for p in range(pos.shape[0]):
        node = 0; depth = 0
        while True:
            kind = node_kind[node]
            if kind == NODE_IS_EMPTY: # terminal: store the particle here
                node_kind[node] = NODE_IS_LEAF
                node_particle[node] = p
                break

            if kind == NODE_IS_LEAF: # occupied: split into eight equal octants
                if depth >= max_depth: return ERR_DEPTH
                if n_nodes + 8 > capacity: return ERR_CAPACITY
                for o in range(8):
                    c = n_nodes + o
                    for axis in range(3):
                        lo = node_lo[node, axis]; hi = node_hi[node, axis]
                        mid = 0.5 * (lo + hi)
                        if (o >> axis) & 1:
                            node_lo[c, axis] = mid; node_hi[c, axis] = hi
                        else:
                            node_lo[c, axis] = lo; node_hi[c, axis] = mid
                    node_kind[c] = NODE_IS_EMPTY
                    node_particle[c] = -1
                    for k in range(8): node_child[c, k] = -1
                    node_child[node, o] = c
                n_nodes += 8
                q = node_particle[node]
                node_kind[node] = NODE_IS_BRANCH
                node_particle[node] = -1
                # move the resident particle down first
                oq = _select_octant(pos, q, node_lo, node_hi, node)
                if oq < 0: return ERR_NO_OCTANT
                cq = node_child[node, oq]
                node_kind[cq] = NODE_IS_LEAF
                node_particle[cq] = q
                continue # node is now a branch; p descends on the next pass

            o = _select_octant(pos, p, node_lo, node_hi, node)
            if o < 0: return ERR_NO_OCTANT
            node = node_child[node, o]
            depth += 1
    return n_nodes


@njit(int64(int64, int64_1d, int64_2d), cache=True, nogil=True)
def _prune_empty_kernel(n_nodes, node_kind, node_child):
    """(Numba Kernel) Detaches every subtree that holds no particle.

    Reverse pass marks occupancy bottom-up; a branch with no occupied child
    becomes EMPTY and is detached by its own parent. Returns the number of
    nodes still reachable from the root.
    """
    occupied = np.zeros(n_nodes, dtype=np.uint8)
    for k in range(n_nodes - 1, -1, -1):
        kind = node_kind[k]
        if kind == NODE_IS_LEAF:
            occupied[k] = 1
        elif kind == NODE_IS_BRANCH:
            any_child = False
            for o in range(8):
                c = node_child[k, o]
                if c < 0: continue
                if occupied[c]: any_child = True
                else: node_child[k, o] = -1
            if any_child: occupied[k] = 1
            else: node_kind[k] = NODE_IS_EMPTY

    if n_nodes == 0 or node_kind[0] == NODE_IS_EMPTY: return 0
    reachable = np.zeros(n_nodes, dtype=np.uint8)
    reachable[0] = 1
    count = 0
    for k in range(n_nodes):
        if not reachable[k]: continue
        count += 1
        if node_kind[k] == NODE_IS_BRANCH:
            for o in range(8):
                c = node_child[k, o]
                if c >= 0: reachable[c] = 1
    return count


@njit(int64(int64, float64_2d, float64_1d, int64_1d, int64_1d, int64_2d, float64_1d, float64_2d), cache=True, nogil=True)
def _aggregate_kernel(n_nodes, pos, mass, node_kind, node_particle, node_child, node_mass, node_com):
    """(Numba Kernel) Total mass and centre of mass for every node, children first."""
    for k in range(n_nodes - 1, -1, -1):
        kind = node_kind[k]
        if kind == NODE_IS_LEAF:
            p = node_particle[k]
            m = mass[p]
            if not (m > 0.0): return ERR_NONPOSITIVE_MASS
            node_mass[k] = m
            node_com[k, 0] = pos[p, 0]; node_com[k, 1] = pos[p, 1]; node_com[k, 2] = pos[p, 2]
        elif kind == NODE_IS_BRANCH:
            total = 0.0; wx = 0.0; wy = 0.0; wz = 0.0
            for o in range(8):
                c = node_child[k, o]
                if c < 0: continue
                if node_kind[c] == NODE_IS_EMPTY: return ERR_EMPTY_LEAF
                m = node_mass[c]
                total += m
                wx += m * node_com[c, 0]; wy += m * node_com[c, 1]; wz += m * node_com[c, 2]
            if not (total > 0.0): return ERR_NONPOSITIVE_MASS
            node_mass[k] = total
            node_com[k, 0] = wx / total; node_com[k, 1] = wy / total; node_com[k, 2] = wz / total
        else:
            node_mass[k] = 0.0
            node_com[k, 0] = 0.0; node_com[k, 1] = 0.0; node_com[k, 2] = 0.0
    return STATUS_OK


# ==============================
# --- Python Class Definition ---
# ==============================

class Octree:
    """
    Octree over one fixed particle set, rebuilt from scratch every tick.

    Typical use:
        tree = Octree(positions, masses, compute_bounding_box(positions))
        tree.insert_all(); tree.prune(); tree.compute_aggregates()
    or `Octree.build(positions, masses)` for the first three steps.
    """

    def __init__(self, positions: np.ndarray, masses: np.ndarray, bounds: Optional[BoundingBox] = None,
                 max_nodes_factor: int = DEFAULT_MAX_NODES_FACTOR, max_depth: int = DEFAULT_MAX_TREE_DEPTH):
        self.positions = np.require(positions, dtype=np.float64, requirements=['C', 'W'])
        self.masses = np.require(masses, dtype=np.float64, requirements=['C', 'W'])
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ValueError(f"positions must have shape (N, 3), got {self.positions.shape}")
        if self.masses.shape != (self.positions.shape[0],):
            raise ValueError(f"masses must have shape ({self.positions.shape[0]},), got {self.masses.shape}")
        self.n_particles = self.positions.shape[0]
        if self.n_particles == 0:
            raise InvalidParticleError("Cannot build an octree over an empty particle set.")
        self.bounds: BoundingBox = bounds if bounds is not None else compute_bounding_box(self.positions)
        self.max_depth = int(max_depth)
        self._capacity = max(64, int(max_nodes_factor) * self.n_particles + 9)

        self.root_lo, self.root_hi = cubic_root_bounds(self.bounds)
        self.n_nodes_used: int = 0
        self.node_count: int = 0
        self.is_built = False
        self.is_pruned = False
        self.is_aggregated = False
        self._allocate(self._capacity)

    @classmethod
    def build(cls, positions: np.ndarray, masses: np.ndarray, **kwargs) -> "Octree":
        """Bounds, insertion and pruning in one call (aggregates not yet computed)."""
        tree = cls(positions, masses, **kwargs)
        tree.insert_all()
        tree.prune()
        return tree

    def _allocate(self, capacity: int):
        self.node_lo = np.zeros((capacity, 3), dtype=np.float64)
        self.node_hi = np.zeros((capacity, 3), dtype=np.float64)
        self.node_kind = np.full(capacity, NODE_IS_EMPTY, dtype=np.int64)
        self.node_particle = np.full(capacity, -1, dtype=np.int64)
        self.node_child = np.full((capacity, 8), -1, dtype=np.int64)
        self.node_mass = np.zeros(capacity, dtype=np.float64)
        self.node_com = np.zeros((capacity, 3), dtype=np.float64)
        self.node_lo[0] = self.root_lo; self.node_hi[0] = self.root_hi

    def insert_all(self):
        """Inserts every particle; grows the arena and retries when it runs out of slots."""
        while True:
            status = _build_octree_kernel(self.positions, self.node_lo, self.node_hi, self.node_kind,
                                          self.node_particle, self.node_child, self.max_depth)
            if status >= 0:
                self.n_nodes_used = int(status)
                break
            if status == ERR_CAPACITY:
                if self._capacity >= MAX_NODES_HARD_CAP:
                    raise OctreeInvariantError(f"Octree node arena exhausted ({self._capacity} nodes).")
                self._capacity = min(self._capacity * 2, MAX_NODES_HARD_CAP)
                self._allocate(self._capacity)
                continue
            if status == ERR_DEPTH:
                raise OctreeInvariantError(
                    f"Octree exceeded depth {self.max_depth}: particles too close for the box arithmetic to separate.")
            raise OctreeInvariantError("Particle is not contained in any child octant during insertion.")
        self.is_built = True

    def prune(self):
        """Removes every subtree without particles; afterwards no empty leaf is reachable."""
        if not self.is_built: raise OctreeInvariantError("prune() called before insert_all().")
        self.node_count = int(_prune_empty_kernel(self.n_nodes_used, self.node_kind, self.node_child))
        self.is_pruned = True

    def compute_aggregates(self):
        """Fills total mass and centre of mass for every node, bottom-up."""
        if not self.is_pruned: raise OctreeInvariantError("compute_aggregates() called before prune().")
        status = _aggregate_kernel(self.n_nodes_used, self.positions, self.masses, self.node_kind,
                                   self.node_particle, self.node_child, self.node_mass, self.node_com)
        if status == ERR_EMPTY_LEAF:
            raise OctreeInvariantError("Untrimmed empty leaf still in tree during aggregation.")
        if status == ERR_NONPOSITIVE_MASS:
            raise OctreeInvariantError("Node aggregated to a non-positive total mass.")
        self.is_aggregated = True

    # --- Queries ---
    @property
    def root_mass(self) -> float:
        self._require_aggregates()
        return float(self.node_mass[0])

    @property
    def root_center_of_mass(self) -> Vector3:
        self._require_aggregates()
        return Vector3(*map(float, self.node_com[0]))

    def _require_aggregates(self):
        if not self.is_aggregated: raise OctreeInvariantError("Aggregates have not been computed yet.")

    def arrays(self) -> tuple:
        """Node arrays in the order the force kernels take them."""
        self._require_aggregates()
        return (self.node_lo, self.node_hi, self.node_kind, self.node_particle,
                self.node_child, self.node_mass, self.node_com)

    def iter_nodes(self) -> Iterator[OctreeNode]:
        """Depth-first walk over reachable nodes (parents before children)."""
        if self.node_count == 0: return
        stack = [(0, 0)]
        while stack:
            k, depth = stack.pop()
            kind = NodeKind(int(self.node_kind[k]))
            children = tuple(int(c) for c in self.node_child[k] if c >= 0) if kind == NodeKind.BRANCH else ()
            yield OctreeNode(
                index=k, kind=kind,
                bounds=BoundingBox(Vector3(*map(float, self.node_lo[k])), Vector3(*map(float, self.node_hi[k]))),
                particle=int(self.node_particle[k]) if kind == NodeKind.LEAF else None,
                children=children,
                total_mass=float(self.node_mass[k]),
                center_of_mass=Vector3(*map(float, self.node_com[k])),
                depth=depth)
            for c in reversed(children): stack.append((c, depth + 1))

    def bounding_boxes(self) -> List[BoundingBox]:
        """Box of every reachable node, root first."""
        return [node.bounds for node in self.iter_nodes()]
