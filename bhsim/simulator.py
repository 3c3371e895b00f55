# bhnbody/bhsim/simulator.py
"""
simulation orchestrator.

this class manages the simulation lifecycle around the stateless step pipeline:
- holding the simulation configuration (`_config`).
- owning the current particle list (the last successful step's output).
- managing the physicsmanager / integratormanager and the step pipeline built from them.
- controlling simulation state (running, paused, ended, time, steps).
- handling user commands like run, pause, step, reset, restart, parameter changes.
- collecting and providing simulation state data for ui updates and diagnostic plots.

a failed step never replaces the particle list: the previous state stays
authoritative, the status becomes Error and the simulation stops.
"""

import time
import traceback
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy.spatial.distance import pdist # for min/max separation calculation

from bhsim.initial_conditions import generate_random_particles
from bhsim.integrator_manager import IntegratorManager
from bhsim.particle_data import BoundingBox, Particle, ParticleData, particles_from_records
from bhsim.phases import StepPhase
from bhsim.physics_manager import PhysicsManager
from bhsim.step import StepPipeline
from bhsim.utils import set_timing_enabled
from bhconfig.param_defs import PARAM_DEFS

# simulation version
SIM_VERSION = "1.0"

# status messages
STATUS_READY = "Ready"
STATUS_RUNNING = "Running"
STATUS_PAUSED = "Paused"
STATUS_ENDED = "Ended"
STATUS_INITIALIZING = "Initializing..."
STATUS_RESETTING = "Resetting..."
STATUS_RESTARTING = "Restarting..."
STATUS_ERROR = "Error"

# pairwise diagnostics (potential energy, separations) are O(N^2) in time and memory
MAX_N_PAIRWISE_DIAGNOSTICS = 5000


class Simulator:
    """
    main simulation orchestrator. manages particles, physics, integration,
    state, commands, and data collection.
    """

    def __init__(self, initial_settings: Dict[str, Any], initial_particles: Optional[Sequence[Particle]] = None):
        """
        initializes the simulator.

        Args:
            initial_settings: full settings dict (see bhconfig/default_settings.py).
            initial_particles: starting particle list; generated from
                SIMULATION_BOUNDS when None.
        """
        print(f"\n===== Initializing Simulator v{SIM_VERSION} =====")
        self._start_time_init = time.perf_counter()

        # core state
        self._config: Dict[str, Any] = {}
        self._status_msg: str = STATUS_INITIALIZING
        self._running: bool = False
        self._ended: bool = False
        self._last_error: Optional[str] = None
        self._failed_phase: Optional[StepPhase] = None

        # simulation time/step tracking
        self._time: float = 0.0
        self._dt: float = 100.0 # default, overridden by config
        self._steps_taken: int = 0
        self._max_steps: Optional[int] = None
        self._max_time: Optional[float] = None
        self._last_step_duration: float = 0.0
        self._bh_node_count: int = 0
        self._last_bounding_boxes: List[BoundingBox] = []

        # graphing state
        self._graph_data: Optional[Dict[str, Any]] = None
        self._graph_settings: Dict = {}
        self._graph_log_interval_steps: int = 10
        self._graph_initial_total_energy: Optional[float] = None

        # particles and components
        self._initial_particles: Optional[List[Particle]] = list(initial_particles) if initial_particles is not None else None
        self._particles: List[Particle] = []
        self._pd: Optional[ParticleData] = None
        self._physics_manager: Optional[PhysicsManager] = None
        self._integrator_manager: Optional[IntegratorManager] = None
        self._pipeline: Optional[StepPipeline] = None

        try:
            # step 1: apply initial configuration
            print("1. Processing Initial Configuration...")
            self._configure(initial_settings)

            # step 2: create components
            print("2. Creating Core Components...")
            self._physics_manager = PhysicsManager(self._config)
            self._integrator_manager = IntegratorManager(self._config)

            # step 3: set initial particle state
            print("3. Initializing Particle Distribution...")
            self._initialize_particles()

            # step 4: select & setup initial models/integrator
            print("4. Selecting Initial Models & Integrator...")
            self._select_initial_models_and_integrator()

            # step 5: energy baseline and t=0 graph data
            print("5. Calculating Initial Energy (for graphing)...")
            self._reset_graph_baseline()

            self._status_msg = STATUS_RUNNING if self._running else STATUS_READY
            init_duration = time.perf_counter() - self._start_time_init
            print(f"===== Simulator Initialization Complete ({init_duration:.3f} s) =====")
            print(f"  N={self.get_particle_count()}, dt={self._dt:.2e}")

        except Exception as e:
            self._status_msg = STATUS_ERROR
            self._ended = True
            print(f"\n!!! FATAL ERROR during Simulator Initialization: {e} !!!")
            traceback.print_exc()
            self._physics_manager = None; self._integrator_manager = None; self._pipeline = None
            raise

    def _configure(self, settings: Dict[str, Any]):
        """applies settings dictionary to internal configuration and related states."""
        self._config = settings.copy()
        required_keys = ['dt', 'G', 'bh_theta', 'default_gravity_model', 'default_integrator']
        if not all(key in self._config for key in required_keys):
            missing = [k for k in required_keys if k not in self._config]
            raise ValueError(f"Missing required config keys: {missing}")
        self._dt = float(self._config['dt'])
        if not np.isfinite(self._dt): raise ValueError(f"dt must be finite, got {self._dt}")
        max_steps_cfg = int(self._config.get('max_steps', -1))
        max_time_cfg = float(self._config.get('max_time', -1.0))
        self._max_steps = max_steps_cfg if max_steps_cfg > 0 else None
        self._max_time = max_time_cfg if max_time_cfg > 0.0 else None
        self._running = bool(self._config.get('start_running', False))
        set_timing_enabled(self._config.get('print_timings', False))
        self._graph_settings = self._config.get('GRAPH_SETTINGS', {})
        interval_cfg = self._graph_settings.get('log_interval_steps', 10)
        self._graph_log_interval_steps = max(1, int(interval_cfg))
        self._initialize_graph_data_lists()

    def _initialize_particles(self):
        """sets the current particles from the stored initial set, or generates a new one."""
        if self._initial_particles is None:
            bounds = self._config.get('SIMULATION_BOUNDS')
            count = self._config.get('N')
            seed = self._config.get('seed')
            self._initial_particles = generate_random_particles(bounds, count=count, seed=seed)
            print(f"  Generated {len(self._initial_particles)} particles (seed={seed}).")
        # validate once at the boundary; every later state comes out of the pipeline
        self._pd = ParticleData.from_particles(self._initial_particles) if self._initial_particles else None
        self._particles = list(self._initial_particles)
        self._config['N'] = len(self._particles)
        self._last_bounding_boxes = []; self._bh_node_count = 0

    def _select_initial_models_and_integrator(self):
        """selects initial models and integrator based on config defaults."""
        if not self._physics_manager or not self._integrator_manager: raise RuntimeError("Managers not initialized")
        try:
            self._physics_manager.select_model("gravity", self._config['default_gravity_model'])
            self._integrator_manager.select_integrator(self._config['default_integrator'])
        except KeyError as e: raise ValueError(f"Missing default model/integrator key in config: {e}")
        self._rebuild_pipeline()

    def _rebuild_pipeline(self):
        gravity_model = self._physics_manager.get_gravity_model() if self._physics_manager else None
        integrator = self._integrator_manager.get_active_integrator() if self._integrator_manager else None
        if gravity_model is None or integrator is None:
            self._pipeline = None
            return
        self._pipeline = StepPipeline(gravity_model, integrator, self._config,
                                      collect_bounding_boxes=bool(self._config.get('collect_bounding_boxes', False)))

    def _reset_graph_baseline(self):
        self._initialize_graph_data_lists()
        energies = self._get_energy_components()
        self._graph_initial_total_energy = energies.get("Total")
        if self._graph_initial_total_energy is not None and np.isfinite(self._graph_initial_total_energy):
            print(f"   Initial Energy (for graph): Total={self._graph_initial_total_energy:.6e}")
        else:
            print("   Warning: Could not calculate initial total energy for graphing.")
        self.collect_graph_data(force_collect=True) # collect the t=0 state

    # --- Stepping ---
    def advance_one_step(self) -> bool:
        """advances the simulation by one time step dt; on failure keeps the previous particles."""
        if self._ended or self._pipeline is None: return False

        step_start_time = time.perf_counter()
        try:
            result = self._pipeline.run(self._dt, self._particles, current_step=self._steps_taken)
        except Exception as e:
            self._failed_phase = self._pipeline.failed_phase
            phase_label = self._failed_phase.label if self._failed_phase is not None else "-"
            print(f"ERROR during simulation step {self._steps_taken} (phase: {phase_label}): {e}"); traceback.print_exc()
            self._last_error = f"{type(e).__name__}: {e}"
            self._status_msg = STATUS_ERROR; self._ended = True; self._running = False
            self._last_step_duration = time.perf_counter() - step_start_time
            return False

        self._particles = result.particles
        self._pd = ParticleData.from_particles(self._particles, validate=False) if self._particles else None
        self._last_bounding_boxes = result.bounding_boxes
        self._bh_node_count = result.node_count
        self._time += self._dt
        self._steps_taken += 1
        self._status_msg = STATUS_RUNNING if self._running else STATUS_PAUSED
        self._last_step_duration = time.perf_counter() - step_start_time
        self.collect_graph_data()
        self._check_end_conditions()
        return True

    def run(self):
        if not self._ended: self._running = True; self._status_msg = STATUS_RUNNING
        else: print("Sim Info: Cannot run, simulation has ended.")

    def pause(self):
        if self._running: self._running = False; self._status_msg = STATUS_PAUSED

    def toggle_run(self):
        if self._running: self.pause()
        else: self.run()

    def step_forward(self) -> bool:
        if not self._running and not self._ended: return self.advance_one_step()
        if self._running: print("Sim Info: Cannot step forward while running.")
        else: print("Sim Info: Cannot step forward, simulation ended.")
        return False

    # --- Reset / Restart / Load ---
    def _reset_run_state(self):
        self._running = False; self._ended = False
        self._time = 0.0; self._steps_taken = 0
        self._last_error = None; self._failed_phase = None
        self._graph_initial_total_energy = None

    def reset_to_initial(self):
        """Resets the simulation to t=0 with the initial particle set."""
        print("===== Resetting Simulation to Initial State =====")
        if not self._physics_manager or not self._integrator_manager:
            print("ERROR: Cannot reset, core components missing.")
            self._status_msg = STATUS_ERROR; self._ended = True; return

        self._status_msg = STATUS_RESETTING
        self._reset_run_state()
        self._initialize_particles()
        self._rebuild_pipeline()
        self._reset_graph_baseline()
        self._status_msg = STATUS_READY
        print("===== Simulation Reset Complete =====")

    def restart(self, new_settings: Dict[str, Any], gravity_id: str, integrator_id: str,
                particles: Optional[Sequence[Particle]] = None):
        """Restarts simulation with new settings and models; particles are regenerated unless given."""
        restart_start_time = time.perf_counter()
        print("\n===== Restarting Simulation with New Configuration =====")
        self._status_msg = STATUS_RESTARTING
        self._reset_run_state()
        try:
            self._configure(new_settings)
            if self._physics_manager: self._physics_manager.cleanup_models()
            self._physics_manager = PhysicsManager(self._config)
            self._integrator_manager = IntegratorManager(self._config)

            self._initial_particles = list(particles) if particles is not None else None
            self._initialize_particles()
            self._physics_manager.select_model("gravity", gravity_id)
            self._integrator_manager.select_integrator(integrator_id)
            self._rebuild_pipeline()
            self._reset_graph_baseline()
            self._status_msg = STATUS_RUNNING if self._running else STATUS_READY
            restart_duration = time.perf_counter() - restart_start_time
            print(f"===== Simulation Restart Complete ({restart_duration:.3f} s) =====")
            self._log_current_setup()
        except Exception as e:
            self._status_msg = STATUS_ERROR; self._ended = True; self._running = False
            self._last_error = f"{type(e).__name__}: {e}"
            print(f"\n!!! FATAL ERROR during Simulator Restart: {e} !!!"); traceback.print_exc()
            raise

    def load_particles(self, particles: Sequence[Particle]):
        """Replaces the particle set (it becomes the new initial state) and rewinds to t=0."""
        particles = list(particles)
        if particles: ParticleData.from_particles(particles) # raises InvalidParticleError before any state changes
        print(f"Loading {len(particles)} particles...")
        self._reset_run_state()
        self._initial_particles = particles
        self._initialize_particles()
        self._rebuild_pipeline()
        self._reset_graph_baseline()
        self._status_msg = STATUS_READY

    def load_particle_records(self, records: Any):
        """load_particles from JSON-style `{position, velocity, radius, mass}` records."""
        particles = particles_from_records(records)
        if particles is None: raise ValueError("No particle records given.")
        self.load_particles(particles)

    def export_particles(self) -> List[Dict[str, Any]]:
        """Current particles as JSON-serialisable records."""
        return [p.to_dict() for p in self._particles]

    # --- Live Parameters / Model Selection ---
    def set_live_parameter(self, key: str, value: Any):
        """Updates a live-updatable simulation parameter (range-checked against PARAM_DEFS)."""
        pdef = PARAM_DEFS.get(key)
        if pdef is None or not pdef.get('live', False):
            print(f"Warn: Param '{key}' is not live-updatable.")
            raise ValueError(f"Parameter '{key}' is not live-updatable.")
        try:
            value = type(pdef['val'])(value) # cast to the declared type
        except (TypeError, ValueError) as e:
            raise ValueError(f"Could not cast value for '{key}': {e}") from e
        if not (pdef['min'] <= value <= pdef['max']):
            raise ValueError(f"Value {value} for '{key}' outside [{pdef['min']}, {pdef['max']}]")

        if self._physics_manager: self._physics_manager.update_config({key: value})
        self._config[key] = value
        if key == 'dt': self._dt = float(value)
        if self._integrator_manager: self._integrator_manager.update_config({key: value})
        self._rebuild_pipeline()

    def select_model(self, model_type: str, model_id: str):
        """Selects a physics model; the next step uses it."""
        if not self._physics_manager: raise RuntimeError("PhysicsManager missing.")
        print(f"Simulator: Selecting model type='{model_type}', id='{model_id}'")
        try:
            self._physics_manager.select_model(model_type, model_id)
        except Exception as e:
            print(f"ERROR selecting model '{model_id}': {e}")
            self._rebuild_pipeline()
            raise
        self._rebuild_pipeline()

    def select_integrator(self, integrator_id: str):
        """Selects the time integrator."""
        if not self._integrator_manager: raise RuntimeError("IntegratorManager missing.")
        print(f"Simulator: Selecting integrator id='{integrator_id}'")
        try:
            self._integrator_manager.select_integrator(integrator_id)
        except Exception as e:
            print(f"ERROR selecting integrator '{integrator_id}': {e}")
            self._rebuild_pipeline()
            raise
        self._rebuild_pipeline()

    # state query methods
    def is_running(self) -> bool: return self._running
    def is_ended(self) -> bool: return self._ended
    def get_time(self) -> float: return self._time
    def get_dt(self) -> float: return self._dt
    def get_particle_count(self) -> int: return len(self._particles)
    def get_steps_taken(self) -> int: return self._steps_taken
    def get_status_message(self) -> str: return self._status_msg
    def get_last_error(self) -> Optional[str]: return self._last_error
    def get_failed_phase(self) -> Optional[StepPhase]: return self._failed_phase
    def get_particles(self) -> List[Particle]: return list(self._particles)
    def get_config(self) -> Dict[str, Any]: return self._config.copy()
    def get_bounding_boxes(self) -> List[BoundingBox]: return list(self._last_bounding_boxes)
    def get_node_count(self) -> int: return self._bh_node_count

    def get_current_models_info(self) -> Dict[str, Optional[Dict]]:
        """Gets info dicts for currently active models."""
        return self._physics_manager.get_active_models_info() if self._physics_manager else {}

    def get_current_integrator_info(self) -> Optional[Dict]:
        """Gets info dict for the currently active integrator."""
        return self._integrator_manager.get_active_integrator_info() if self._integrator_manager else None

    def get_current_state_for_ui(self) -> Dict[str, Any]:
        """Gathers essential simulation state for ui updates."""
        state = {
            "time": self._time, "steps_taken": self._steps_taken, "status_msg": self._status_msg,
            "running": self._running, "ended": self._ended, "N": self.get_particle_count(),
            "positions": [], "colors": [], "stats": self._compute_stats(),
            "node_count": self._bh_node_count,
            "last_error": self._last_error,
            "failed_phase": self._failed_phase.label if self._failed_phase is not None else None,
            "current_models": {}, "current_integrator": "-",
            "graph_settings": self._config.get('GRAPH_SETTINGS', {}),
        }
        if self._pd is not None:
            particle_ui_data = self._pd.get_state_for_ui()
            state["positions"] = particle_ui_data.get('positions', [])
            state["colors"] = particle_ui_data.get('colors', [])
        if self._config.get('collect_bounding_boxes', False):
            state["bounding_boxes"] = [box.to_dict() for box in self._last_bounding_boxes]
        model_info = self.get_current_models_info()
        state["current_models"] = {mtype: (info['id'] if info else '-') for mtype, info in model_info.items()}
        integrator_info = self.get_current_integrator_info()
        state["current_integrator"] = integrator_info['id'] if integrator_info else '-'
        return state

    def _compute_stats(self) -> Dict[str, float]:
        stats = {"avg_KE": 0.0, "avg_vel": 0.0, "total_mass": 0.0, "max_speed": 0.0}
        N = self.get_particle_count()
        if N == 0 or self._pd is None: return stats
        vel = self._pd.get("velocities"); mass = self._pd.get("masses")
        vel_sq = np.sum(vel * vel, axis=1)
        stats["avg_KE"] = float(np.sum(0.5 * mass * vel_sq) / N)
        speeds = np.sqrt(vel_sq)
        stats["avg_vel"] = float(np.mean(speeds))
        stats["max_speed"] = float(np.max(speeds))
        stats["total_mass"] = float(np.sum(mass))
        return stats

    def _check_end_conditions(self):
        """Checks if simulation max steps or max time have been reached."""
        if self._ended: return
        end_reason = None
        if self._max_steps is not None and self._steps_taken >= self._max_steps:
            end_reason = f"Reached maximum steps ({self._max_steps})"
        elif self._max_time is not None and self._time >= self._max_time:
            end_reason = f"Reached maximum time ({self._max_time:.3f})"
        if end_reason:
            print(f"Simulation ended: {end_reason}")
            self._ended = True; self._running = False; self._status_msg = STATUS_ENDED
            self._collect_final_snapshot_data()

    def _log_current_setup(self):
        """Helper to print the current model and integrator setup."""
        print("  Current Setup:")
        print(f"    N: {self.get_particle_count()}")
        for m_type, m_info in self.get_current_models_info().items():
            if m_info: print(f"    {m_type.capitalize():<10}: {m_info['name']} ({m_info['id']})")
            else: print(f"    {m_type.capitalize():<10}: -")
        integrator_info = self.get_current_integrator_info()
        if integrator_info: print(f"    Integrator: {integrator_info['name']} ({integrator_info['id']})")
        else: print("    Integrator: -")

    # --- Graph Data ---
    def _get_plot_setting(self, graph_settings: Dict, key: str, default: bool = False) -> bool:
        """safely retrieves a boolean plot setting from the graph settings dict."""
        settings_dict = graph_settings if isinstance(graph_settings, dict) else {}
        return settings_dict.get(key, default)

    def _initialize_graph_data_lists(self):
        """creates/resets lists in _graph_data based on graph_settings."""
        gs = self._graph_settings if isinstance(self._graph_settings, dict) else {}
        if not gs.get('enable_plotting', True):
            self._graph_data = None
            return
        self._graph_data = {'time': [], 'step': []}
        if self._get_plot_setting(gs, 'plot_energy_components'):
            self._graph_data['total_ke'] = []; self._graph_data['total_pe'] = []; self._graph_data['total_energy'] = []
        if self._get_plot_setting(gs, 'plot_energy_drift'): self._graph_data['energy_drift_percent'] = []
        if self._get_plot_setting(gs, 'plot_momentum'):
            self._graph_data['total_px'] = []; self._graph_data['total_py'] = []; self._graph_data['total_pz'] = []
        if self._get_plot_setting(gs, 'plot_angular_momentum'):
            self._graph_data['total_lx'] = []; self._graph_data['total_ly'] = []; self._graph_data['total_lz'] = []
        if self._get_plot_setting(gs, 'plot_com_position'):
            self._graph_data['com_x'] = []; self._graph_data['com_y'] = []; self._graph_data['com_z'] = []
        if self._get_plot_setting(gs, 'plot_com_velocity'):
            self._graph_data['com_vx'] = []; self._graph_data['com_vy'] = []; self._graph_data['com_vz'] = []
        if self._get_plot_setting(gs, 'plot_min_max_separation'):
            self._graph_data['min_separation'] = []; self._graph_data['max_separation'] = []
        if self._get_plot_setting(gs, 'plot_bh_nodes'): self._graph_data['bh_num_nodes'] = []
        if self._get_plot_setting(gs, 'plot_step_timing'): self._graph_data['step_duration_ms'] = []

        # placeholder for final state data (histograms, profiles)
        self._graph_data['final_snapshot'] = {}

    def _get_energy_components(self) -> Dict[str, float]:
        """kinetic, potential and total energy as float64; PE is nan when N is too large for pairwise sums."""
        if self._pd is None or self.get_particle_count() == 0: return {"KE": 0.0, "PE": 0.0, "Total": 0.0}
        vel = self._pd.get("velocities"); mass = self._pd.get("masses")
        ke_total = 0.5 * np.sum(mass * np.sum(vel * vel, axis=1))
        pe_total = np.nan
        gravity_model = self._physics_manager.get_gravity_model() if self._physics_manager else None
        if gravity_model is not None and self.get_particle_count() <= MAX_N_PAIRWISE_DIAGNOSTICS:
            pe_total = float(gravity_model.compute_potential_energy(self._pd))
        return {"KE": float(ke_total), "PE": float(pe_total), "Total": float(ke_total + pe_total)}

    def _calculate_momentum(self):
        """calculates total linear momentum, com position, and com velocity."""
        zeros = np.zeros(3, dtype=np.float64)
        if self._pd is None or self.get_particle_count() == 0: return zeros, zeros, zeros
        pos = self._pd.get("positions"); vel = self._pd.get("velocities"); mass = self._pd.get("masses")
        total_mass = np.sum(mass)
        total_momentum = np.sum(mass[:, np.newaxis] * vel, axis=0)
        com_pos = np.sum(mass[:, np.newaxis] * pos, axis=0) / total_mass
        com_vel = total_momentum / total_mass
        return total_momentum, com_pos, com_vel

    def _calculate_angular_momentum(self, com_pos: np.ndarray) -> np.ndarray:
        """calculates total angular momentum relative to the center of mass (com)."""
        if self._pd is None or self.get_particle_count() == 0: return np.zeros(3, dtype=np.float64)
        rel_pos = self._pd.get("positions") - com_pos
        mom = self._pd.get("masses")[:, np.newaxis] * self._pd.get("velocities")
        return np.sum(np.cross(rel_pos, mom), axis=0)

    def _calculate_min_max_separation(self):
        """calculates min and max inter-particle separation. expensive o(n^2)."""
        N = self.get_particle_count()
        if N < 2 or self._pd is None: return None, None
        if N > MAX_N_PAIRWISE_DIAGNOSTICS:
            print(f"Warn: N={N} too large for min/max separation plot. Skipping.")
            return None, None
        distances = pdist(self._pd.get("positions")) # condensed distance matrix
        return float(np.min(distances)), float(np.max(distances))

    def collect_graph_data(self, force_collect: bool = False):
        """calculates and stores snapshot data for enabled graphs."""
        if self._graph_data is None: return # plotting disabled
        if self._ended and not force_collect: return
        if self.get_particle_count() == 0: return
        if not force_collect and (self._steps_taken == 0 or self._steps_taken % self._graph_log_interval_steps != 0):
            return

        gs = self._graph_settings
        gd = self._graph_data
        try:
            gd['time'].append(self._time)
            gd['step'].append(self._steps_taken)

            if self._get_plot_setting(gs, 'plot_energy_components') or self._get_plot_setting(gs, 'plot_energy_drift'):
                energy_comps = self._get_energy_components()
                e_tot = energy_comps["Total"]
                if self._get_plot_setting(gs, 'plot_energy_components'):
                    gd['total_ke'].append(energy_comps["KE"]); gd['total_pe'].append(energy_comps["PE"])
                    gd['total_energy'].append(e_tot)
                if self._get_plot_setting(gs, 'plot_energy_drift'):
                    drift_percent = np.nan
                    initial_e_graph = self._graph_initial_total_energy
                    if initial_e_graph is not None and np.isfinite(initial_e_graph) and abs(initial_e_graph) > 1e-300:
                        drift_percent = (e_tot - initial_e_graph) / abs(initial_e_graph) * 100.0
                    gd['energy_drift_percent'].append(drift_percent)

            lin_mom, com_pos, com_vel = self._calculate_momentum()
            if self._get_plot_setting(gs, 'plot_momentum'):
                gd['total_px'].append(lin_mom[0]); gd['total_py'].append(lin_mom[1]); gd['total_pz'].append(lin_mom[2])
            if self._get_plot_setting(gs, 'plot_angular_momentum'):
                ang_mom = self._calculate_angular_momentum(com_pos)
                gd['total_lx'].append(ang_mom[0]); gd['total_ly'].append(ang_mom[1]); gd['total_lz'].append(ang_mom[2])
            if self._get_plot_setting(gs, 'plot_com_position'):
                gd['com_x'].append(com_pos[0]); gd['com_y'].append(com_pos[1]); gd['com_z'].append(com_pos[2])
            if self._get_plot_setting(gs, 'plot_com_velocity'):
                gd['com_vx'].append(com_vel[0]); gd['com_vy'].append(com_vel[1]); gd['com_vz'].append(com_vel[2])

            if self._get_plot_setting(gs, 'plot_min_max_separation'):
                min_sep, max_sep = self._calculate_min_max_separation()
                gd['min_separation'].append(min_sep if min_sep is not None else np.nan)
                gd['max_separation'].append(max_sep if max_sep is not None else np.nan)

            if self._get_plot_setting(gs, 'plot_bh_nodes'): gd['bh_num_nodes'].append(self._bh_node_count)
            if self._get_plot_setting(gs, 'plot_step_timing'): gd['step_duration_ms'].append(self._last_step_duration * 1000.0)

        except KeyError as e: print(f"ERROR graph collect step {self._steps_taken}: Missing key '{e}' for plotting.")
        except Exception as e: print(f"ERROR graph collect step {self._steps_taken}: {e}"); traceback.print_exc()

    def _collect_final_snapshot_data(self):
        """calculates and stores data needed for final state plots (histograms, etc.)."""
        if self._graph_data is None: return
        if self._pd is None or self.get_particle_count() == 0:
            self._graph_data['final_snapshot'] = {}
            return

        gs = self._graph_settings
        snapshot = {}
        pos = self._pd.get("positions"); vel = self._pd.get("velocities"); mass = self._pd.get("masses")
        if self._get_plot_setting(gs, 'plot_hist_speed') or self._get_plot_setting(gs, 'plot_scatter_speed_radius'):
            snapshot['speeds'] = np.linalg.norm(vel, axis=1)
        if self._get_plot_setting(gs, 'plot_hist_mass'):
            snapshot['masses'] = mass.copy()
        if self._get_plot_setting(gs, 'plot_profile_radial') or self._get_plot_setting(gs, 'plot_scatter_speed_radius'):
            com_pos = np.sum(mass[:, np.newaxis] * pos, axis=0) / np.sum(mass)
            snapshot['radii'] = np.linalg.norm(pos - com_pos, axis=1)
        self._graph_data['final_snapshot'] = snapshot

    def get_graph_data(self) -> Optional[Dict[str, Any]]:
        """Returns a copy of the collected graph data, collecting the final snapshot if missing."""
        if self._graph_data is None:
            print("Warning: get_graph_data called but _graph_data is None.")
            return None
        if not self._graph_data.get('final_snapshot'):
            self._collect_final_snapshot_data()
        return self._graph_data.copy()

    def cleanup(self):
        """Releases the active models (cached trees)."""
        if self._physics_manager: self._physics_manager.cleanup_models()
