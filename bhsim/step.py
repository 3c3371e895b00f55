# bhnbody/bhsim/step.py
"""
One simulation tick: bounds -> tree -> aggregates -> forces -> integration.

`step(dt, theta, particles)` is the entry point used by callers
that own the particle list (the HTTP endpoint, tests). It never mutates the
caller's list: the tick works on a ParticleData copy and only hands back new
particle records once every phase has completed. Any failure propagates and
the caller's previous particles remain the authoritative state.
The models behind it are built once per configuration and reused across calls.
"""

import math
import threading
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from bhsim.constants import DEFAULT_THETA
from bhsim.integrator_manager import IntegratorManager
from bhsim.integrators.base import Integrator
from bhsim.particle_data import BoundingBox, Particle, ParticleData
from bhsim.phases import StepPhase
from bhsim.physics.base.gravity import GravityModel
from bhsim.physics_manager import PhysicsManager
from bhconfig.default_settings import DEFAULT_SETTINGS


class StepResult(NamedTuple):
    particles: List[Particle]
    bounding_boxes: List[BoundingBox] # empty unless bounding box collection is on
    node_count: int


class StepPipeline:
    """
    Runs the phases of one tick in order against a gravity model and an integrator.

    `phase` is IDLE between ticks. When a tick fails, `failed_phase` is the
    phase that was being produced at the time.
    """

    def __init__(self, gravity_model: GravityModel, integrator: Integrator,
                 config: Optional[Dict] = None, collect_bounding_boxes: bool = False):
        self.gravity_model = gravity_model
        self.integrator = integrator
        self.config: Dict = dict(config) if config else {}
        self.collect_bounding_boxes = collect_bounding_boxes
        self._phase = StepPhase.IDLE
        self.failed_phase: Optional[StepPhase] = None

    @property
    def phase(self) -> StepPhase:
        return self._phase

    def _enter(self, target: StepPhase):
        """Advances to `target`; phases only move forward within a tick."""
        if target <= self._phase:
            raise RuntimeError(f"Step phase out of order: {self._phase.label} -> {target.label}")
        self._phase = target

    def run(self, dt: float, particles: Optional[Sequence[Particle]], theta: Optional[float] = None,
            current_step: int = -1) -> Optional[StepResult]:
        """
        Advances `particles` by `dt`.

        Returns None for None input (nothing to advance) and an empty result
        for an empty list. Raises InvalidParticleError for bad particles,
        ValueError for bad dt/theta, OctreeInvariantError for tree failures
        and NumericalInstabilityError when the update is non-finite.
        """
        if particles is None: return None
        if not isinstance(dt, (int, float)) or isinstance(dt, bool) or not math.isfinite(dt):
            raise ValueError(f"dt must be a finite number, got {dt!r}")
        if theta is not None and (isinstance(theta, bool) or not isinstance(theta, (int, float))
                                  or not math.isfinite(theta) or theta < 0):
            raise ValueError(f"theta must be a finite number >= 0, got {theta!r}")
        if len(particles) == 0: return StepResult([], [], 0)

        self.failed_phase = None
        self._phase = StepPhase.IDLE
        try:
            pd = ParticleData.from_particles(particles) # validates at the boundary
            self.gravity_model.compute_forces(pd, theta=theta, phase_cb=self._enter)
            # diagnostics describe the tree behind the first forces, not a later re-evaluation
            boxes = self.gravity_model.get_bounding_boxes() if self.collect_bounding_boxes else []
            node_count = self.gravity_model.get_node_count()
            self._enter(StepPhase.FORCES_EVALUATED)

            def recompute_forces(pd_in: ParticleData):
                self.gravity_model.compute_forces(pd_in, theta=theta)

            self.integrator.step(pd, float(dt), recompute_forces, self.config, current_step)
            self._enter(StepPhase.INTEGRATED)
            result = StepResult(pd.to_particles(), boxes, node_count)
        except Exception:
            self.failed_phase = StepPhase(min(self._phase + 1, StepPhase.INTEGRATED))
            raise
        finally:
            self._phase = StepPhase.IDLE
        return result


def build_pipeline(config: Optional[Dict] = None, collect_bounding_boxes: Optional[bool] = None) -> StepPipeline:
    """Pipeline with the default (or configured) gravity model and integrator."""
    merged = DEFAULT_SETTINGS.copy()
    if config: merged.update(config)
    physics = PhysicsManager(merged)
    physics.select_model("gravity", merged['default_gravity_model'])
    integrators = IntegratorManager(merged)
    integrators.select_integrator(merged['default_integrator'])
    collect = merged.get('collect_bounding_boxes', False) if collect_bounding_boxes is None else collect_bounding_boxes
    return StepPipeline(physics.get_gravity_model(), integrators.get_active_integrator(), merged, bool(collect))


# Pipelines reused by simulation_step, keyed by (config, collect flag).
# A pipeline holds per-tick state, so runs on a shared pipeline are serialized.
_MAX_CACHED_PIPELINES = 8
_pipeline_cache: Dict[Tuple[str, bool], StepPipeline] = {}
_pipeline_lock = threading.Lock()


def _pipeline_key(config: Optional[Dict], collect_bounding_boxes: bool) -> Tuple[str, bool]:
    return (repr(sorted(config.items())) if config else "", bool(collect_bounding_boxes))


def get_pipeline(config: Optional[Dict] = None, collect_bounding_boxes: bool = False) -> StepPipeline:
    """Returns the cached pipeline for this config, building it on first use (caller holds _pipeline_lock)."""
    key = _pipeline_key(config, collect_bounding_boxes)
    pipeline = _pipeline_cache.get(key)
    if pipeline is None:
        if len(_pipeline_cache) >= _MAX_CACHED_PIPELINES: clear_pipeline_cache()
        pipeline = build_pipeline(config, collect_bounding_boxes)
        _pipeline_cache[key] = pipeline
    return pipeline


def clear_pipeline_cache():
    """Drops the cached pipelines and releases their model resources."""
    for pipeline in _pipeline_cache.values():
        pipeline.gravity_model.cleanup()
        pipeline.integrator.cleanup()
    _pipeline_cache.clear()


def simulation_step(dt: float, theta: float = DEFAULT_THETA, particles: Optional[Sequence[Particle]] = None,
                    collect_bounding_boxes: bool = False, config: Optional[Dict] = None) -> Optional[StepResult]:
    """One tick on the cached pipeline for `config`, including diagnostics (node boxes, node count)."""
    if particles is None: return None
    with _pipeline_lock:
        return get_pipeline(config, collect_bounding_boxes).run(dt, particles, theta)


def step(dt: float, theta: float, particles: Optional[Sequence[Particle]]) -> Optional[List[Particle]]:
    """Advances `particles` by one tick; same length and order as the input, None for None."""
    result = simulation_step(dt, theta, particles)
    return None if result is None else result.particles
