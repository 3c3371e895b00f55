# bhnbody/bhsim/integrators/leapfrog.py
from typing import Dict, Optional

from .base import ForcesCallback, Integrator
from bhsim.particle_data import ParticleData


class Leapfrog(Integrator):
    """
    implements the leapfrog (kick-drift-kick) time integration scheme.
    second order and time-reversible, at the cost of a second force evaluation per step.
    """

    def setup(self, pd: Optional[ParticleData] = None, config: Optional[Dict] = None):
        print("Leapfrog Integrator Setup.")

    def step(self, pd: ParticleData, dt: float, forces_cb: ForcesCallback,
             config: Optional[Dict] = None, current_step: int = -1):
        """
        performs one leapfrog integration step.
        1. kick 1: update velocities by dt/2 using forces at time t.
        2. drift: update positions by dt using velocities at t+dt/2.
        3. force calculation at the new positions (t+dt).
        4. kick 2: update velocities by another dt/2 using forces at t+dt.
        """
        # kick 1: v(t) -> v(t+dt/2)
        v_half = pd.get("velocities") + self._accelerations(pd) * (dt * 0.5)
        self._check_finite("velocity", v_half, current_step)

        # drift: x(t) -> x(t+dt)
        x_new = pd.get("positions") + v_half * dt
        self._check_finite("position", x_new, current_step)
        positions = pd.get("positions", writeable=True)
        try:
            positions[:] = x_new
        finally:
            pd.release_writeable("positions")

        # f(t+dt)
        forces_cb(pd)

        # kick 2: v(t+dt/2) -> v(t+dt)
        v_new = v_half + self._accelerations(pd) * (dt * 0.5)
        self._check_finite("velocity", v_new, current_step)
        velocities = pd.get("velocities", writeable=True)
        try:
            velocities[:] = v_new
        finally:
            pd.release_writeable("velocities")
