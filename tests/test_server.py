# bhnbody/tests/test_server.py
import time

import pytest

import main
from bhsim.constants import CONST_G
from bhsim.simulator import Simulator

from conftest import make_particle

TWO_BODY = [make_particle(-10.0, id=0).to_dict(), make_particle(10.0, id=1).to_dict()]


@pytest.fixture
def client():
    return main.app.test_client()


@pytest.fixture
def live_sim(monkeypatch, small_settings):
    simulator = Simulator(small_settings)
    monkeypatch.setattr(main, "sim", simulator)
    yield simulator
    simulator.cleanup()


def test_step_endpoint(client):
    resp = client.post("/api/step", json={"dt": 1.0, "theta": 0.1, "particles": TWO_BODY})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] and body["node_count"] == 3
    left, right = body["particles"]
    assert left["id"] == 0 and right["id"] == 1
    assert left["velocity"]["x"] == pytest.approx(CONST_G / 400.0)
    assert "bounding_boxes" not in body


def test_step_endpoint_null_particles(client):
    resp = client.post("/api/step", json={"dt": 1.0, "particles": None})
    assert resp.status_code == 200
    assert resp.get_json()["particles"] is None


def test_step_endpoint_bounding_boxes(client):
    body = client.post("/api/step", json={"dt": 1.0, "particles": TWO_BODY,
                                          "include_bounding_boxes": True}).get_json()
    assert len(body["bounding_boxes"]) == body["node_count"]
    assert set(body["bounding_boxes"][0]) == {"min", "max"}


@pytest.mark.parametrize("payload", [
    {"dt": 1.0, "particles": [dict(TWO_BODY[0], mass=0)]},
    {"dt": 1.0, "particles": [{"mass": 1}]},
    {"dt": 1.0, "particles": "lots"},
    {"dt": "soon", "particles": TWO_BODY},
    {"dt": 1.0, "theta": -1, "particles": TWO_BODY},
    {"particles": TWO_BODY},
])
def test_step_endpoint_bad_input(client, payload):
    resp = client.post("/api/step", json=payload)
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_step_endpoint_not_json(client):
    assert client.post("/api/step", data="dt=1").status_code == 400


def test_step_endpoint_tree_failure(client):
    particles = [make_particle(0.0).to_dict(), make_particle(1e-100).to_dict(),
                 make_particle(1.0, 1.0, 1.0).to_dict()]
    resp = client.post("/api/step", json={"dt": 1.0, "particles": particles})
    assert resp.status_code == 500
    assert "OctreeInvariantError" in resp.get_json()["message"]


def test_config_endpoint(client):
    body = client.get("/api/config").get_json()
    assert set(body) == {"PARAM_DEFS", "DEFAULT_SETTINGS", "AVAILABLE_MODELS", "AVAILABLE_INTEGRATORS", "SIM_VERSION"}
    assert body["DEFAULT_SETTINGS"]["seed"] is None


def test_state_without_sim(client, monkeypatch):
    monkeypatch.setattr(main, "sim", None)
    assert client.get("/api/state").get_json()["status_msg"] == "Simulation not initialized"
    resp = client.post("/api/command", json={"command": "step"})
    assert resp.get_json()["success"] is False
    assert client.post("/api/generate_pdf").status_code == 400


def test_step_command(client, live_sim):
    body = client.post("/api/command", json={"command": "step"}).get_json()
    assert body["success"]
    assert "_needs_immediate_update" not in body
    state = client.get("/api/state").get_json()
    assert state["steps_taken"] == 1 and state["N"] == 12


def test_param_and_model_commands(client, live_sim):
    assert client.post("/api/command", json={"command": "set_param", "key": "dt", "value": 2.5}).get_json()["success"]
    assert live_sim.get_dt() == 2.5
    bad = client.post("/api/command", json={"command": "set_param", "key": "N", "value": 3}).get_json()
    assert bad["success"] is False
    assert client.post("/api/command", json={"command": "select_model", "type": "gravity",
                                             "id": "gravity_pp_cpu"}).get_json()["success"]
    assert client.post("/api/command", json={"command": "select_integrator", "id": "leapfrog"}).get_json()["success"]
    assert client.post("/api/command", json={"command": "select_integrator", "id": "rk4"}).get_json()["success"] is False
    assert client.post("/api/command", json={"command": "warp"}).get_json()["success"] is False


def test_load_and_export_particles(client, live_sim):
    body = client.post("/api/command", json={"command": "load_particles", "particles": TWO_BODY}).get_json()
    assert body["success"]
    exported = client.get("/api/particles").get_json()
    assert exported["particles"] == TWO_BODY
    bad = client.post("/api/command", json={"command": "load_particles", "particles": [{"mass": 1}]}).get_json()
    assert bad["success"] is False
    assert live_sim.get_particle_count() == 2


def test_reset_command(client, live_sim):
    live_sim.step_forward()
    assert client.post("/api/command", json={"command": "reset"}).get_json()["success"]
    assert live_sim.get_steps_taken() == 0


def test_restart_creates_sim(client, monkeypatch):
    monkeypatch.setattr(main, "sim", None)
    body = client.post("/api/command", json={"command": "restart", "settings": {"N": 4, "seed": 1},
                                             "integrator": "leapfrog"}).get_json()
    assert body["success"] and body["isRunning"] is False
    assert main.sim.get_particle_count() == 4
    assert main.sim.get_current_integrator_info()["id"] == "leapfrog"


def test_generate_pdf(client, live_sim, monkeypatch, tmp_path):
    monkeypatch.setattr(main, "OUTPUT_DIR", str(tmp_path))
    for _ in range(10):
        live_sim.step_forward()
    body = client.post("/api/generate_pdf").get_json()
    assert body["success"]
    filename = body["filepath"].split("/")[-1]
    assert (tmp_path / filename).exists()
    assert client.get(f"/output/{filename}").status_code == 200


def test_socket_events(live_sim):
    sio_client = main.socketio.test_client(main.app)
    names = [event["name"] for event in sio_client.get_received()]
    assert names == ["config", "state_update"]
    sio_client.emit("send_command", {"command": "warp"})
    received = sio_client.get_received()
    response = next(event for event in received if event["name"] == "command_response")
    assert response["args"][0]["success"] is False
    sio_client.emit("request_state")
    assert [event["name"] for event in sio_client.get_received()] == ["state_update"]
    sio_client.disconnect()


def test_reset_while_running_does_not_stall(monkeypatch, capsys):
    monkeypatch.setattr(main, "sim", None)
    monkeypatch.setattr(main, "simulation_thread", None)
    assert main.main_backend_setup({"N": 20, "seed": 1, "step_interval_s": 0.05})
    try:
        assert main.handle_command({"command": "toggle_run"})["isRunning"] is True
        worker = main.simulation_thread
        assert worker is not None and worker.is_alive()
        time.sleep(0.3)
        started = time.perf_counter()
        response = main.handle_command({"command": "reset"})
        elapsed = time.perf_counter() - started
        assert response["success"] and response["isRunning"] is False
        assert elapsed < 0.5
        assert main.simulation_thread is None
        worker.join(timeout=2.0)
        assert not worker.is_alive()
        assert main.sim.get_steps_taken() == 0
        assert "did not stop cleanly" not in capsys.readouterr().out
    finally:
        main.stop_simulation_flag.set()
        main.sim.cleanup()


def test_toggle_after_reset_starts_fresh_worker(monkeypatch):
    monkeypatch.setattr(main, "sim", None)
    monkeypatch.setattr(main, "simulation_thread", None)
    assert main.main_backend_setup({"N": 20, "seed": 1, "step_interval_s": 0.05})
    try:
        main.handle_command({"command": "toggle_run"})
        first = main.simulation_thread
        main.handle_command({"command": "reset"})
        main.handle_command({"command": "toggle_run"})
        second = main.simulation_thread
        assert second is not first and second.is_alive()
        first.join(timeout=2.0)
        assert not first.is_alive()
        main.handle_command({"command": "toggle_run"})
        second.join(timeout=2.0)
        assert not second.is_alive()
    finally:
        main.stop_simulation_flag.set()
        main.sim.cleanup()
