# bhnbody/bhsim/physics/gravity/gravity_pp_cpu.py
import numpy as np
from scipy.spatial.distance import pdist
from typing import Optional

from bhsim.constants import CONST_G, DEFAULT_MIN_SEPARATION
from bhsim.physics.base.gravity import GravityModel, PhaseCallback
from bhsim.particle_data import ParticleData
from bhsim.utils import timing_decorator


def direct_forces(pos: np.ndarray, mass: np.ndarray, G: float, min_separation: float) -> np.ndarray:
    """Exact pairwise forces, O(N^2) memory. force[i] = sum_j G m_i m_j (x_j - x_i) / max(r_ij, eps)^3."""
    n = pos.shape[0]
    if n < 2: return np.zeros((n, 3), dtype=np.float64)
    diff = pos[np.newaxis, :, :] - pos[:, np.newaxis, :] # diff[i, j] = x_j - x_i
    dist = np.sqrt(np.einsum('ijk,ijk->ij', diff, diff))
    dist_eff = np.maximum(dist, min_separation)
    with np.errstate(divide='ignore', invalid='ignore'):
        factor = G * np.outer(mass, mass) / dist_eff**3
    factor[~np.isfinite(factor)] = 0.0 # only possible when min_separation == 0 and r == 0
    np.fill_diagonal(factor, 0.0)
    return np.einsum('ij,ijk->ik', factor, diff)


def direct_potential_energy(pos: np.ndarray, mass: np.ndarray, G: float, min_separation: float) -> float:
    """Total potential energy -sum_{i<j} G m_i m_j / max(r_ij, eps) over the condensed pdist matrix."""
    n = pos.shape[0]
    if n < 2 or G == 0.0: return 0.0
    dist = np.maximum(pdist(pos), min_separation)
    iu = np.triu_indices(n, k=1) # same pair order as pdist
    mass_products = mass[iu[0]] * mass[iu[1]]
    with np.errstate(divide='ignore'):
        terms = np.where(dist > 0.0, mass_products / dist, 0.0)
    return float(-G * np.sum(terms))


class GravityPPCpu(GravityModel):
    """Direct Particle-Particle N^2 gravity calculation using pure NumPy."""

    def setup(self, pd: Optional[ParticleData] = None):
        super().setup(pd)
        try:
            self.G = float(self.config.get('G', CONST_G))
            self.min_separation = float(self.config.get('min_separation', DEFAULT_MIN_SEPARATION))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid config value for GravityPPCpu: {e}")
        if self.min_separation < 0.0: raise ValueError("min_separation must be >= 0.")

    def update_config(self, config):
        super().update_config(config)
        if self._is_setup: self.setup()

    @timing_decorator
    def compute_forces(self, pd: ParticleData, theta: Optional[float] = None,
                       phase_cb: Optional[PhaseCallback] = None) -> np.ndarray:
        if not self._is_setup: self.setup(pd)
        forces = direct_forces(pd.get("positions"), pd.get("masses"), self.G, self.min_separation)
        self._store_forces(pd, forces)
        return forces

    def compute_potential_energy(self, pd: ParticleData) -> float:
        if not self._is_setup: self.setup(pd)
        return direct_potential_energy(pd.get("positions"), pd.get("masses"), self.G, self.min_separation)
