# bhnbody/tests/test_plotting.py
import os

import numpy as np

from bhconfig.default_settings import DEFAULT_SETTINGS
from bhsim.plotting import generate_plots_pdf
from bhsim.simulator import Simulator


def _graph_data():
    rng = np.random.default_rng(0)
    t = [0.0, 10.0, 20.0]
    data = {'time': t, 'step': [0, 1, 2],
            'total_ke': [1.0, 1.1, 1.2], 'total_pe': [-2.0, -2.1, -2.2], 'total_energy': [-1.0, -1.0, -1.0],
            'energy_drift_percent': [0.0, 0.01, float('nan')],
            'min_separation': [0.5, 0.4, 0.45], 'max_separation': [10.0, 10.5, 11.0],
            'bh_num_nodes': [25, 27, 26]}
    data['final_snapshot'] = {'speeds': rng.uniform(0.1, 1.0, 30), 'masses': rng.uniform(1.0, 5.0, 30),
                              'radii': rng.uniform(0.0, 10.0, 30)}
    return data


def test_pdf_written(tmp_path):
    path = generate_plots_pdf(_graph_data(), DEFAULT_SETTINGS['GRAPH_SETTINGS'], str(tmp_path))
    assert path.endswith(".pdf")
    assert os.path.dirname(path) == str(tmp_path)
    assert os.path.getsize(path) > 0


def test_all_plots_disabled(tmp_path):
    assert generate_plots_pdf(_graph_data(), {}, str(tmp_path / "nested")) == ""
    assert not (tmp_path / "nested").exists()


def test_single_page_into_new_directory(tmp_path):
    path = generate_plots_pdf(_graph_data(), {'plot_bh_nodes': True}, str(tmp_path / "nested"))
    assert os.path.exists(path)


def test_no_data(tmp_path):
    assert generate_plots_pdf({}, DEFAULT_SETTINGS['GRAPH_SETTINGS'], str(tmp_path)) == ""
    assert generate_plots_pdf({'time': []}, DEFAULT_SETTINGS['GRAPH_SETTINGS'], str(tmp_path)) == ""
    assert os.listdir(tmp_path) == []


def test_pdf_from_simulator(tmp_path):
    settings = dict(DEFAULT_SETTINGS, N=10, seed=11, dt=50.0)
    sim = Simulator(settings)
    for _ in range(20):
        sim.step_forward()
    path = generate_plots_pdf(sim.get_graph_data(), settings['GRAPH_SETTINGS'], str(tmp_path))
    assert os.path.exists(path)
