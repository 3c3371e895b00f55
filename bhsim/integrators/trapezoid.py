# bhnbody/bhsim/integrators/trapezoid.py
from typing import Dict, Optional

from .base import ForcesCallback, Integrator
from bhsim.particle_data import ParticleData


class Trapezoid(Integrator):
    """
    Explicit Euler velocity update with a trapezoidal position update.

        a  = F / m
        v' = v + a dt
        x' = x + (v + v') / 2 dt

    Uses only the forces already in pd, so one force evaluation per step.
    """

    def step(self, pd: ParticleData, dt: float, forces_cb: ForcesCallback,
             config: Optional[Dict] = None, current_step: int = -1):
        accel = self._accelerations(pd)
        v_old = pd.get("velocities").copy()
        v_new = v_old + accel * dt
        x_new = pd.get("positions") + 0.5 * (v_old + v_new) * dt
        # check before writing so a failed step leaves pd untouched
        self._check_finite("velocity", v_new, current_step)
        self._check_finite("position", x_new, current_step)

        velocities = pd.get("velocities", writeable=True)
        try:
            velocities[:] = v_new
        finally:
            pd.release_writeable("velocities")
        positions = pd.get("positions", writeable=True)
        try:
            positions[:] = x_new
        finally:
            pd.release_writeable("positions")
