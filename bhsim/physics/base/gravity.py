# bhnbody/bhsim/physics/base/gravity.py
"""
defines the ABC for gravitational interaction models
"""

from abc import abstractmethod
from typing import Callable, List, Optional

import numpy as np

from .physics import PhysicsModel
from bhsim.particle_data import BoundingBox, ParticleData
from bhsim.phases import StepPhase

PhaseCallback = Callable[[StepPhase], None]


class GravityModel(PhysicsModel):
    """ABC for gravitational force and potential energy calculation models."""

    @abstractmethod
    def compute_forces(self, pd: ParticleData, theta: Optional[float] = None,
                       phase_cb: Optional[PhaseCallback] = None) -> np.ndarray:
        """
        Net gravitational force on every particle, written to pd 'forces' and returned.

        `phase_cb` is called with each StepPhase the model completes
        internally (bounds, tree, aggregates); models without those phases
        never call it.
        """

    @abstractmethod
    def compute_potential_energy(self, pd: ParticleData) -> float:
        pass

    def get_bounding_boxes(self) -> List[BoundingBox]:
        """Boxes of the spatial structure used by the last force evaluation (none by default)."""
        return []

    def get_node_count(self) -> int:
        return 0

    def setup(self, pd: Optional[ParticleData] = None):
        super().setup(pd)
        if 'G' not in self.config:
            print(f"Warning ({self.__class__.__name__}): Gravitational constant 'G' not found in config.")

    @staticmethod
    def _store_forces(pd: ParticleData, forces: np.ndarray):
        forces_write = pd.get("forces", writeable=True)
        try:
            forces_write[:] = forces
        finally:
            pd.release_writeable("forces")
