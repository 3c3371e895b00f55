# bhnbody/bhconfig/default_settings.py
from bhsim.constants import (CONST_G, DEFAULT_MAX_NODES_FACTOR, DEFAULT_MAX_TREE_DEPTH,
                             DEFAULT_MIN_SEPARATION, DEFAULT_THETA)
from bhsim.initial_conditions import default_bounds

DEFAULT_SETTINGS = {
    # --- Simulation Control ---
    'dt': 100.0,                # Simulation time step per tick
    'max_steps': -1,            # Maximum number of steps (-1 for unlimited)
    'max_time': -1,             # Maximum simulation time (-1 for unlimited)
    'start_running': False,     # Start simulation immediately?
    'step_interval_s': 0.1,     # Wall-clock pause between worker ticks (seconds)

    # --- Initial Conditions ---
    'SIMULATION_BOUNDS': default_bounds(), # Ranges for generate_random_particles
    'seed': None,               # RNG seed for the initial particle set (None = random)

    # --- Gravity Parameters ---
    'G': CONST_G,                              # Gravitational constant
    'bh_theta': DEFAULT_THETA,                 # Barnes-Hut opening ratio D/r
    'min_separation': DEFAULT_MIN_SEPARATION,  # Pair distance clamp before 1/r^3
    'MAX_NODES_FACTOR': DEFAULT_MAX_NODES_FACTOR, # BH Tree node allocation factor (N * factor)
    'max_tree_depth': DEFAULT_MAX_TREE_DEPTH,  # Subdivision limit

    # --- Model Defaults ---
    'default_gravity_model': 'gravity_bh_numba',
    'default_integrator': 'trapezoid',

    # --- Diagnostics ---
    'collect_bounding_boxes': False, # Return every tree node's box with each step
    'print_timings': False,          # Print force evaluation timings

    # --- Graphing Settings ---
    'GRAPH_SETTINGS': {
        'enable_plotting': True,
        'log_interval_steps': 10,
        'output_dir': 'output',
        'clear_data_on_restart': True,
        'plot_energy_components': True,
        'plot_energy_drift': True,
        'plot_momentum': True,
        'plot_angular_momentum': True,
        'plot_com_position': True,
        'plot_com_velocity': True,
        'plot_min_max_separation': True,
        'plot_bh_nodes': True,
        'plot_step_timing': True,
        'plot_hist_speed': True,
        'plot_hist_mass': True,
        'plot_profile_radial': True,
        'plot_scatter_speed_radius': True,
        'histogram_bins': 50,
    },
    # 'N' derived below
}


# --- Calculate Derived Defaults ---
DEFAULT_SETTINGS['N'] = int(DEFAULT_SETTINGS['SIMULATION_BOUNDS']['PARTICLE_COUNT'])


# --- Validation ---
if DEFAULT_SETTINGS['dt'] <= 0:
    raise ValueError("Default 'dt' must be > 0.")
if DEFAULT_SETTINGS['bh_theta'] < 0:
    raise ValueError("Default 'bh_theta' must be >= 0.")
if DEFAULT_SETTINGS['min_separation'] < 0:
    raise ValueError("Default 'min_separation' must be >= 0.")
if DEFAULT_SETTINGS['MAX_NODES_FACTOR'] < 2:
    raise ValueError("Default 'MAX_NODES_FACTOR' must be >= 2.")

# --- Model/Integrator Validation ---
from bhconfig.available_models import AVAILABLE_MODELS
from bhconfig.available_integrators import AVAILABLE_INTEGRATORS

if not any(m['id'] == DEFAULT_SETTINGS['default_gravity_model'] for m in AVAILABLE_MODELS.get('gravity', [])):
    raise ValueError(f"Default gravity model ID '{DEFAULT_SETTINGS['default_gravity_model']}' is not defined in available_models.py")
if not any(i['id'] == DEFAULT_SETTINGS['default_integrator'] for i in AVAILABLE_INTEGRATORS):
    raise ValueError(f"Default integrator ID '{DEFAULT_SETTINGS['default_integrator']}' is not defined in available_integrators.py")
