# bhnbody/bhsim/integrators/base.py
"""
Defines the Abstract Base Class (ABC) for all time integrators.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import numpy as np

from bhsim.errors import NumericalInstabilityError
from bhsim.particle_data import ParticleData

ForcesCallback = Callable[[ParticleData], None]


class Integrator(ABC):
    """abstract base class for time integration schemes."""

    def setup(self, pd: Optional[ParticleData] = None, config: Optional[Dict] = None):
        """optional setup method."""
        pass

    @abstractmethod
    def step(self, pd: ParticleData, dt: float, forces_cb: ForcesCallback,
             config: Optional[Dict] = None, current_step: int = -1):
        """
        one integration step

        On entry pd 'forces' holds the forces at the current positions.
        Schemes that need forces at intermediate positions call
        `forces_cb(pd)`, which overwrites pd 'forces'.
        """
        pass

    def cleanup(self):
        pass

    @staticmethod
    def _accelerations(pd: ParticleData) -> np.ndarray:
        """a = F / m, also stored in pd 'accelerations'."""
        accel = pd.get("forces") / pd.get("masses")[:, np.newaxis]
        accel_write = pd.get("accelerations", writeable=True)
        try:
            accel_write[:] = accel
        finally:
            pd.release_writeable("accelerations")
        return accel

    @staticmethod
    def _check_finite(name: str, values: np.ndarray, current_step: int = -1):
        bad = ~np.all(np.isfinite(values), axis=1)
        if np.any(bad):
            at_step = f" at step {current_step}" if current_step >= 0 else ""
            raise NumericalInstabilityError(
                f"Non-finite {name}{at_step} for particle(s) {np.flatnonzero(bad)[:10].tolist()}")
