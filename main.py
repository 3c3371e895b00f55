# bhnbody/main.py
# ==================================================
#      <<< SERVER IMPLEMENTATION >>>
# ==================================================
"""
main.py acts as the application entry point for the simulation server.

It performs the following key functions:

1.  Stateless stepping: `POST /api/step` advances a caller-supplied particle
    list by one tick (Barnes-Hut forces + integration) and returns the new
    list. Nothing is stored server side.
2.  Threading Setup:
    - Main Thread: initial setup, then runs the Flask/SocketIO server.
    - Simulation Worker Thread (daemon): advances the shared Simulator every
      `step_interval_s` while it is running and broadcasts 'state_update'.
    - `sim_lock` (threading.Lock) guards every access to the Simulator;
      `stop_simulation_flag` (threading.Event) stops the worker.
3.  Flask & SocketIO Server: HTTP API ('/api/...') and WebSocket events
    ('connect', 'send_command', 'request_state') for a frontend.
4.  Command Handling: `handle_command` processes commands received over HTTP
    or WebSocket (toggle run, step, reset, restart, set parameters, select
    models/integrators, load particles) under lock protection.
5.  PDF Generation: '/api/generate_pdf' writes the diagnostic plots of the
    collected graph data and '/output/<file>' serves the result.
"""
import os
import sys
import threading
import traceback

import numpy as np

# --- Project Setup ---
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# --- Simulation Core Components ---
from bhsim.constants import DEFAULT_THETA
from bhsim.errors import InvalidParticleError, NumericalInstabilityError, OctreeInvariantError
from bhsim.particle_data import particles_from_records
from bhsim.plotting import generate_plots_pdf
from bhsim.simulator import Simulator, SIM_VERSION
from bhsim.step import simulation_step

# --- Configuration ---
from bhconfig.param_defs import PARAM_DEFS
from bhconfig.default_settings import DEFAULT_SETTINGS
from bhconfig.available_models import AVAILABLE_MODELS
from bhconfig.available_integrators import AVAILABLE_INTEGRATORS

# --- Server Components ---
from flask import Flask, request, jsonify, send_from_directory
from flask_socketio import SocketIO, emit

# --- Output Directory ---
OUTPUT_DIR = os.path.join(PROJECT_ROOT, DEFAULT_SETTINGS['GRAPH_SETTINGS'].get('output_dir', 'output'))


# ===========================================
# --- Global State & Server Setup ---
# ===========================================

sim: Simulator | None = None
sim_lock = threading.Lock()
simulation_thread: threading.Thread | None = None
stop_simulation_flag = threading.Event()

app = Flask(__name__, static_folder=None)
app.config['SECRET_KEY'] = os.urandom(24)
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')


# ==================================
# --- Backend Helper Functions ---
# ==================================

def _to_serializable(data):
    """Recursively converts NumPy types (and tuples) to JSON-serializable Python types."""
    if isinstance(data, np.integer): return int(data)
    if isinstance(data, np.floating):
        value = float(data)
        return value if np.isfinite(value) else None
    if isinstance(data, float): return data if np.isfinite(data) else None
    if isinstance(data, np.ndarray): return _to_serializable(data.tolist())
    if isinstance(data, dict): return {k: _to_serializable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)): return [_to_serializable(item) for item in data]
    if isinstance(data, (str, int, bool, type(None))): return data
    return str(data)


def get_initial_config():
    """Returns parameter definitions and current default settings for the UI."""
    return _to_serializable({
        "PARAM_DEFS": PARAM_DEFS,
        "DEFAULT_SETTINGS": DEFAULT_SETTINGS,
        "AVAILABLE_MODELS": AVAILABLE_MODELS,
        "AVAILABLE_INTEGRATORS": AVAILABLE_INTEGRATORS,
        "SIM_VERSION": SIM_VERSION
    })


def get_simulation_state():
    """Returns a snapshot of the current simulation state for the UI."""
    default_state = {
        "time": 0.0, "steps_taken": 0, "status_msg": "Simulation not initialized",
        "running": False, "ended": True, "N": 0, "positions": [], "colors": [],
        "stats": {}, "current_models": {}, "current_integrator": "-", "graph_settings": {}
    }
    with sim_lock:
        if not sim: return default_state
        try: return _to_serializable(sim.get_current_state_for_ui())
        except Exception as e:
            print(f"ERROR fetching simulation state: {e}"); traceback.print_exc()
            error_state = default_state.copy()
            error_state["status_msg"] = sim.get_status_message() or "Error State"
            error_state["time"] = sim.get_time()
            return error_state


def _stop_worker(reason: str):
    """Detaches the simulation worker thread (caller holds sim_lock).

    The worker needs sim_lock to advance, so it is never joined here; a detached
    worker exits on its next pass once it sees the stop flag or that it was replaced.
    """
    global simulation_thread
    if simulation_thread and simulation_thread.is_alive():
        print(f"Stopping simulation worker ({reason}).")
        stop_simulation_flag.set()
    simulation_thread = None


def _start_worker():
    global simulation_thread
    if simulation_thread is None or not simulation_thread.is_alive():
        stop_simulation_flag.clear()
        simulation_thread = threading.Thread(target=simulation_loop_worker, daemon=True)
        simulation_thread.start()


# =====================================
# --- Command Handling ---
# =====================================

def handle_command(command_data):
    """(Runs on Server Thread) Handles commands from the frontend."""
    global sim
    if not isinstance(command_data, dict):
        return {"success": False, "message": "Invalid command payload."}
    command = command_data.get('command')

    # allow restart even if sim failed init, but other commands need sim
    if command != 'restart' and not sim:
        return {"success": False, "message": "Simulation not initialized"}

    response = {"success": True, "message": f"Command '{command}' received."}
    needs_state_update = False

    try:
        with sim_lock:
            if command == 'toggle_run':
                if sim.is_ended(): response = {"success": False, "message": "Cannot run/pause, simulation has ended."}
                else:
                    sim.toggle_run()
                    if sim.is_running(): _start_worker()
                    response["isRunning"] = sim.is_running()
                    needs_state_update = True

            elif command == 'step':
                if not sim.is_running() and not sim.is_ended():
                    if sim.step_forward():
                        response["message"] = f"Stepped forward to time {sim.get_time():.4f}"
                    else:
                        response = {"success": False, "message": f"Step failed: {sim.get_last_error()}"}
                    needs_state_update = True
                elif sim.is_running(): response = {"success": False, "message": "Cannot step while running."}
                else: response = {"success": False, "message": "Cannot step, simulation ended."}

            elif command == 'reset':
                _stop_worker('reset')
                sim.reset_to_initial()
                response["message"] = "Simulation reset to initial state."
                response["isRunning"] = False
                needs_state_update = True

            elif command == 'restart':
                _stop_worker('restart')
                merged_settings = DEFAULT_SETTINGS.copy()
                merged_settings.update(command_data.get('settings') or {})
                gravity_id = command_data.get('gravity') or merged_settings['default_gravity_model']
                integrator_id = command_data.get('integrator') or merged_settings['default_integrator']
                particles = particles_from_records(command_data.get('particles'))
                try:
                    if not sim:
                        merged_settings['default_gravity_model'] = gravity_id
                        merged_settings['default_integrator'] = integrator_id
                        sim = Simulator(initial_settings=merged_settings, initial_particles=particles)
                    else:
                        sim.restart(merged_settings, gravity_id, integrator_id, particles=particles)
                    response["message"] = "Simulation restarted successfully."
                    response["isRunning"] = sim.is_running()
                    if sim.is_running(): _start_worker()
                except Exception as e_restart:
                    print(f"ERROR during simulation restart: {e_restart}"); traceback.print_exc()
                    response = {"success": False, "message": f"Restart Failed: {e_restart}"}
                needs_state_update = True

            elif command == 'set_param':
                key, value = command_data.get('key'), command_data.get('value')
                if key and value is not None:
                    try: sim.set_live_parameter(key, value); response["message"] = f"Param '{key}' set."
                    except ValueError as e: response = {"success": False, "message": f"Failed: {e}"}
                else: response = {"success": False, "message": "Missing key/value."}

            elif command == 'select_model':
                m_type, m_id = command_data.get('type', 'gravity'), command_data.get('id')
                if m_id:
                    try: sim.select_model(m_type, m_id); response["message"] = f"{m_type.capitalize()} model set."; needs_state_update = True
                    except ValueError as e: response = {"success": False, "message": str(e)}
                else: response = {"success": False, "message": "Missing type/id."}

            elif command == 'select_integrator':
                i_id = command_data.get('id')
                if i_id:
                    try: sim.select_integrator(i_id); response["message"] = "Integrator set."; needs_state_update = True
                    except ValueError as e: response = {"success": False, "message": str(e)}
                else: response = {"success": False, "message": "Missing integrator id."}

            elif command == 'load_particles':
                _stop_worker('load')
                try:
                    sim.load_particle_records(command_data.get('particles'))
                    response["message"] = f"Loaded {sim.get_particle_count()} particles."
                    needs_state_update = True
                except ValueError as e: response = {"success": False, "message": str(e)}

            else: response = {"success": False, "message": f"Unknown command: {command}"}

    except InvalidParticleError as e:
        response = {"success": False, "message": str(e)}
    except Exception as e:
        print(f"ERROR handling command '{command}': {e}"); traceback.print_exc()
        response = {"success": False, "message": f"Internal Server Error: {e}"}

    response["_needs_immediate_update"] = needs_state_update
    return response


# ===========================================
# --- Simulation Worker Thread ---
# ===========================================

def simulation_loop_worker():
    """(Runs on Worker Thread) Main loop for advancing the simulation."""
    while not stop_simulation_flag.is_set():
        with sim_lock:
            if simulation_thread is not threading.current_thread(): return # replaced by reset/restart/load
            if sim is None or sim.is_ended(): break
            if not sim.is_running(): break
            sim.advance_one_step() # failures are recorded on the simulator (status Error)
            interval = float(sim.get_config().get('step_interval_s', 0.1))
        try: socketio.emit('state_update', get_simulation_state())
        except Exception as e_emit: print(f"Warning: Error emitting state update: {e_emit}")
        # wait between ticks; returns early when asked to stop
        stop_simulation_flag.wait(max(0.0, interval))

    # last state (ended / error / paused) for the UI
    try: socketio.emit('state_update', get_simulation_state())
    except Exception as e_emit: print(f"Warning: Error emitting final state update: {e_emit}")


# ============================================
# --- Flask Routes & SocketIO Handlers ---
# ============================================

@app.route('/api/step', methods=['POST'])
def route_step():
    """
    Stateless single tick.

    Body: {dt, theta?, particles: [...] | null, include_bounding_boxes?}.
    Invalid input answers 400, an internal tree/numerical failure 500; the
    caller's particles stay authoritative in both cases.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict): return jsonify({"success": False, "message": "Invalid request"}), 400
    dt = data.get('dt')
    theta = data.get('theta', DEFAULT_THETA)
    include_boxes = bool(data.get('include_bounding_boxes', False))
    try:
        particles = particles_from_records(data.get('particles'))
        result = simulation_step(dt, theta, particles, collect_bounding_boxes=include_boxes)
    except ValueError as e: # includes InvalidParticleError
        return jsonify({"success": False, "message": str(e)}), 400
    except (OctreeInvariantError, NumericalInstabilityError) as e:
        print(f"ERROR during stateless step: {e}"); traceback.print_exc()
        return jsonify({"success": False, "message": f"{type(e).__name__}: {e}"}), 500
    except Exception as e:
        print(f"ERROR (unexpected) during stateless step: {e}"); traceback.print_exc()
        return jsonify({"success": False, "message": f"Internal Server Error: {e}"}), 500

    if result is None:
        return jsonify({"success": True, "particles": None, "node_count": 0})
    body = {"success": True,
            "particles": [p.to_dict() for p in result.particles],
            "node_count": result.node_count}
    if include_boxes: body["bounding_boxes"] = [box.to_dict() for box in result.bounding_boxes]
    return jsonify(_to_serializable(body))


@app.route('/api/config')
def route_config_http():
    """HTTP endpoint to get initial simulation configuration."""
    return jsonify(get_initial_config())


@app.route('/api/state')
def route_state_http():
    """HTTP endpoint to get current simulation state."""
    return jsonify(get_simulation_state())


@app.route('/api/particles')
def route_particles_http():
    """HTTP endpoint exporting the current particles as records."""
    with sim_lock:
        if not sim: return jsonify({"success": False, "message": "Sim not initialized."}), 400
        records = sim.export_particles()
    return jsonify({"success": True, "particles": _to_serializable(records)})


@app.route('/api/command', methods=['POST'])
def route_command_http():
    """HTTP endpoint to send commands to the simulation."""
    data = request.get_json(silent=True)
    if not data: return jsonify({"success": False, "message": "Invalid request"}), 400
    response_dict = handle_command(data)
    response_dict.pop("_needs_immediate_update", None)
    return jsonify(response_dict)


@app.route('/api/generate_pdf', methods=['POST'])
def route_generate_pdf():
    """HTTP endpoint to trigger PDF plot generation."""
    print("Received request to generate plots PDF...")
    with sim_lock:
        if not sim: return jsonify({"success": False, "message": "Sim not initialized."}), 400
        graph_data = sim.get_graph_data()
        graph_settings = sim.get_config().get('GRAPH_SETTINGS', {})
    if not graph_data: return jsonify({"success": False, "message": "No graph data."}), 400
    try:
        pdf_filepath = generate_plots_pdf(graph_data, graph_settings, OUTPUT_DIR)
    except Exception as e:
        print(f"ERROR during PDF generation request: {e}"); traceback.print_exc()
        return jsonify({"success": False, "message": f"Server Error: {e}"}), 500
    if pdf_filepath:
        pdf_url = f"output/{os.path.basename(pdf_filepath)}"
        return jsonify({"success": True, "message": "PDF generated.", "filepath": pdf_url})
    return jsonify({"success": False, "message": "Failed PDF generation."}), 500


@app.route('/output/<path:filename>')
def route_output_files(filename):
    """Serves generated PDFs."""
    return send_from_directory(OUTPUT_DIR, filename)


# --- SocketIO Handlers ---
@socketio.on('connect')
def handle_connect():
    """Handles new client WebSocket connection."""
    print(f'Client connected: {request.sid}')
    emit('config', get_initial_config())
    emit('state_update', get_simulation_state())


@socketio.on('disconnect')
def handle_disconnect():
    print(f'Client disconnected: {request.sid}')


@socketio.on('send_command')
def handle_command_ws(command_data):
    """Handles commands received via WebSocket."""
    sid = request.sid
    response_dict = handle_command(command_data)
    needs_update = response_dict.pop("_needs_immediate_update", False)
    emit('command_response', response_dict, room=sid)
    if needs_update:
        socketio.emit('state_update', get_simulation_state())


@socketio.on('request_state')
def handle_request_state():
    """Handles explicit request for state update from a client."""
    emit('state_update', get_simulation_state(), room=request.sid)


# ==================================
# --- Main Execution Logic ---
# ==================================

def main_backend_setup(settings: dict | None = None):
    """Initializes the shared Simulator instance; returns False when it fails."""
    global sim
    print("Setting up initial simulation instance...")
    try:
        initial_sim_settings = DEFAULT_SETTINGS.copy()
        if settings: initial_sim_settings.update(settings)
        new_sim = Simulator(initial_settings=initial_sim_settings)
        with sim_lock:
            sim = new_sim
            if sim.is_running(): _start_worker()
        print(f"Simulation instance created (v{SIM_VERSION}).")
        return True
    except Exception as e:
        print(f"\n!!! FATAL ERROR during initial simulation setup: {e} !!!")
        traceback.print_exc()
        sim = None
        print("Backend FAILED to Initialize.")
        return False


# --- Application Entry Point ---
if __name__ == "__main__":
    if main_backend_setup():
        print("\n--- Starting Server ---")
        print("   - API at: http://localhost:7847/api/state . Press Ctrl+C to stop.")
        try:
            socketio.run(app, host='0.0.0.0', port=7847, debug=False, use_reloader=False, allow_unsafe_werkzeug=True)
        except KeyboardInterrupt:
            print("\nCtrl+C received, shutting down gracefully...")
        finally:
            print("Initiating shutdown sequence...")
            stop_simulation_flag.set()
            if simulation_thread is not None and simulation_thread.is_alive():
                simulation_thread.join(timeout=1.5)
                if simulation_thread.is_alive(): print("  Warning: Simulation thread did not exit cleanly.")
            with sim_lock:
                if sim: sim.cleanup()
            print("Shutdown sequence finished.")
    else:
        print("\nBackend setup failed. Server not started.")
        sys.exit(1)
