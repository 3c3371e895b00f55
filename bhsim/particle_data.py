# bhnbody/bhsim/particle_data.py

"""
Particle records and the array-backed particle store used inside a step.

`Particle` is the caller-facing value record (one point mass). `ParticleData`
holds the same information as contiguous float64 arrays so the Numba kernels
and vectorised NumPy code can work on it; it is created from a particle list
at the start of a step and turned back into a new list at the end, so the
caller's list is never touched.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from bhsim.errors import InvalidParticleError

AttrName = str
NpArray = np.ndarray


class Vector3(NamedTuple):
    x: float
    y: float
    z: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Vector3":
        """Builds a vector from a {'x','y','z'} mapping, rejecting missing or non-numeric parts."""
        if not isinstance(data, Mapping):
            raise InvalidParticleError(f"Expected an {{x, y, z}} object, got {type(data).__name__}")
        try:
            parts = [data[axis] for axis in ("x", "y", "z")]
        except KeyError as e:
            raise InvalidParticleError(f"Vector is missing component {e}") from e
        for part in parts:
            if isinstance(part, bool) or not isinstance(part, (int, float)):
                raise InvalidParticleError(f"Vector component must be a number, got {part!r}")
        return cls(float(parts[0]), float(parts[1]), float(parts[2]))

    def to_dict(self) -> Dict[str, float]:
        return {"x": float(self.x), "y": float(self.y), "z": float(self.z)}


class BoundingBox(NamedTuple):
    """Axis-aligned box given by its minimum (`lo`) and maximum (`hi`) corners."""
    lo: Vector3
    hi: Vector3

    def edge_lengths(self) -> Vector3:
        return Vector3(self.hi.x - self.lo.x, self.hi.y - self.lo.y, self.hi.z - self.lo.z)

    def contains(self, point: Sequence[float]) -> bool:
        """Closed-interval containment on every axis."""
        return all(lo <= p <= hi for lo, p, hi in zip(self.lo, point, self.hi))

    def corners(self) -> List[Vector3]:
        """The eight corner points, x varying fastest."""
        return [Vector3(self.hi.x if i & 1 else self.lo.x,
                        self.hi.y if i & 2 else self.lo.y,
                        self.hi.z if i & 4 else self.lo.z) for i in range(8)]

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {"min": self.lo.to_dict(), "max": self.hi.to_dict()}


def _as_vector(value) -> Vector3:
    if isinstance(value, Vector3):
        return value
    if isinstance(value, Mapping):
        return Vector3.from_mapping(value)
    x, y, z = value
    return Vector3(float(x), float(y), float(z))


@dataclass(frozen=True)
class Particle:
    """
    One point mass.

    `radius` is cosmetic only. `color` and `id` are carried through a step
    untouched so the caller can correlate particles between frames.
    """
    position: Vector3
    velocity: Vector3
    mass: float
    radius: float = 1.0
    color: Optional[str] = None
    id: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "position", _as_vector(self.position))
        object.__setattr__(self, "velocity", _as_vector(self.velocity))
        object.__setattr__(self, "mass", float(self.mass))
        object.__setattr__(self, "radius", float(self.radius))

    def to_dict(self) -> Dict[str, Any]:
        record = {
            "position": self.position.to_dict(),
            "velocity": self.velocity.to_dict(),
            "radius": self.radius,
            "mass": self.mass,
        }
        if self.color is not None: record["color"] = self.color
        if self.id is not None: record["id"] = self.id
        return record

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "Particle":
        """Parses a `{position, velocity, radius, mass[, color, id]}` record."""
        if not isinstance(record, Mapping):
            raise InvalidParticleError(f"Particle record must be an object, got {type(record).__name__}")
        missing = [k for k in ("position", "velocity", "radius", "mass") if k not in record]
        if missing:
            raise InvalidParticleError(f"Particle record missing fields: {missing}")
        for key in ("radius", "mass"):
            if isinstance(record[key], bool) or not isinstance(record[key], (int, float)):
                raise InvalidParticleError(f"Particle '{key}' must be a number, got {record[key]!r}")
        color = record.get("color")
        if color is not None and not isinstance(color, str):
            raise InvalidParticleError(f"Particle 'color' must be a string, got {color!r}")
        pid = record.get("id")
        if pid is not None and (isinstance(pid, bool) or not isinstance(pid, int)):
            raise InvalidParticleError(f"Particle 'id' must be an integer, got {pid!r}")
        return cls(position=Vector3.from_mapping(record["position"]),
                   velocity=Vector3.from_mapping(record["velocity"]),
                   mass=record["mass"], radius=record["radius"], color=color, id=pid)


def particles_from_records(records: Any) -> Optional[List[Particle]]:
    """Parses a JSON-style list of particle records; `None` passes through as `None`."""
    if records is None: return None
    if not isinstance(records, list):
        raise InvalidParticleError(f"Particles must be a list of records, got {type(records).__name__}")
    particles = []
    for i, record in enumerate(records):
        try:
            particles.append(Particle.from_dict(record))
        except InvalidParticleError as e:
            raise InvalidParticleError(f"Particle {i}: {e}") from e
    return particles


def validate_particle_arrays(positions: NpArray, velocities: NpArray, masses: NpArray):
    """
    Rejects particle state the pipeline cannot integrate.

    Raises InvalidParticleError for non-finite values, mass <= 0, or two
    particles at exactly the same position (the octree cannot separate them).
    """
    n = masses.shape[0]
    if n == 0:
        raise InvalidParticleError("Particle set is empty.")
    bad_pos = ~np.all(np.isfinite(positions), axis=1)
    if np.any(bad_pos):
        raise InvalidParticleError(f"Non-finite position for particle(s) {np.flatnonzero(bad_pos)[:10].tolist()}")
    bad_vel = ~np.all(np.isfinite(velocities), axis=1)
    if np.any(bad_vel):
        raise InvalidParticleError(f"Non-finite velocity for particle(s) {np.flatnonzero(bad_vel)[:10].tolist()}")
    bad_mass = ~(np.isfinite(masses) & (masses > 0.0))
    if np.any(bad_mass):
        raise InvalidParticleError(f"Mass must be finite and > 0; offending particle(s) {np.flatnonzero(bad_mass)[:10].tolist()}")
    if n > 1:
        _, counts = np.unique(positions, axis=0, return_counts=True)
        if np.any(counts > 1):
            raise InvalidParticleError(f"{int(np.sum(counts[counts > 1]))} particles share an exact position with another particle.")


class ParticleData:
    """
    Structure-of-arrays particle store (float64, CPU).

    Arrays are created zeroed for N particles; `from_particles` fills them
    from a particle list and remembers the list so `to_particles` can return
    new records with the input radius, colour and id.
    """
    _attr_definitions: Dict[AttrName, Tuple[Tuple[int, ...], type]] = {
        "positions":     ((3,), np.float64),
        "velocities":    ((3,), np.float64),
        "forces":        ((3,), np.float64),
        "accelerations": ((3,), np.float64),
        "masses":        ((),   np.float64),
        "radii":         ((),   np.float64),
    }

    def __init__(self, N: int):
        if isinstance(N, bool) or not isinstance(N, int) or N < 0:
            raise ValueError(f"N must be a non-negative integer, got {N}")
        self.N = N
        self._locked_writeable: Dict[AttrName, bool] = {}
        self._data: Dict[AttrName, NpArray] = {}
        for name, (shape_suffix, dtype) in self._attr_definitions.items():
            self._data[name] = np.zeros((self.N,) + shape_suffix, dtype=dtype)
            self._locked_writeable[name] = False
        self._templates: Optional[Tuple[Particle, ...]] = None

    @classmethod
    def from_particles(cls, particles: Sequence[Particle], validate: bool = True) -> "ParticleData":
        """Copies a particle list into arrays (index i <-> particles[i])."""
        pd = cls(len(particles))
        if pd.N > 0:
            pd._data["positions"][:] = [p.position for p in particles]
            pd._data["velocities"][:] = [p.velocity for p in particles]
            pd._data["masses"][:] = [p.mass for p in particles]
            pd._data["radii"][:] = [p.radius for p in particles]
        if validate:
            validate_particle_arrays(pd._data["positions"], pd._data["velocities"], pd._data["masses"])
        pd._templates = tuple(particles)
        return pd

    def to_particles(self) -> List[Particle]:
        """New particle records with the current positions/velocities, same order as the input."""
        pos = self._data["positions"]; vel = self._data["velocities"]
        if self._templates is not None and len(self._templates) == self.N:
            return [replace(tpl, position=Vector3(*map(float, pos[i])), velocity=Vector3(*map(float, vel[i])))
                    for i, tpl in enumerate(self._templates)]
        mass = self._data["masses"]; radii = self._data["radii"]
        return [Particle(position=Vector3(*map(float, pos[i])), velocity=Vector3(*map(float, vel[i])),
                         mass=float(mass[i]), radius=float(radii[i]), id=i) for i in range(self.N)]

    def copy(self) -> "ParticleData":
        pd = ParticleData(self.N)
        for name in self._attr_definitions:
            pd._data[name][...] = self._data[name]
        pd._templates = self._templates
        return pd

    def _validate_attribute(self, name: AttrName):
        """raises keyerror if attribute name is invalid."""
        if name not in self._attr_definitions:
            raise KeyError(f"Unknown attribute: '{name}'. Valid: {list(self._attr_definitions.keys())}")

    # public info getters
    def get_n(self) -> int: return self.N
    def get_dtype(self, name: AttrName) -> np.dtype:
        self._validate_attribute(name)
        return self._attr_definitions[name][1]
    def get_shape(self, name: AttrName) -> Tuple[int, ...]:
        self._validate_attribute(name)
        return (self.N,) + self._attr_definitions[name][0]
    def get_attribute_names(self) -> List[AttrName]: return list(self._attr_definitions.keys())

    def set(self, name: AttrName, data: NpArray):
        """replaces an attribute's data with a copy of `data`."""
        self._validate_attribute(name)
        expected_shape = self.get_shape(name)
        if not isinstance(data, np.ndarray): raise TypeError(f"set('{name}') data must be NumPy array")
        if data.shape != expected_shape: raise ValueError(f"Shape mismatch set('{name}'): {data.shape} vs {expected_shape}")
        if self._locked_writeable[name]: raise RuntimeError(f"'{name}' is locked for writing.")
        self._data[name] = np.array(data, dtype=self.get_dtype(name), order='C', copy=True)

    def get(self, name: AttrName, writeable: bool = False) -> NpArray:
        """
        Returns the attribute array.

        With writeable=True the array is locked until `release_writeable` so
        two writers cannot interleave; read access returns a read-only view.
        """
        self._validate_attribute(name)
        if writeable:
            if self._locked_writeable[name]: raise RuntimeError(f"'{name}' already locked for writing.")
            self._locked_writeable[name] = True
            return self._data[name]
        view = self._data[name].view()
        view.flags.writeable = False
        return view

    def release_writeable(self, name: AttrName):
        """releases a write lock obtained via `get(..., writeable=True)`."""
        self._validate_attribute(name)
        self._locked_writeable[name] = False

    def get_state_for_ui(self) -> Dict[str, list]:
        """prepares positions as a flat list and colours as a list for ui rendering."""
        if self.N == 0: return {'positions': [], 'colors': []}
        colors = [p.color for p in self._templates] if self._templates is not None else [None] * self.N
        return {'positions': self._data["positions"].astype(np.float32).flatten().tolist(),
                'colors': colors}
