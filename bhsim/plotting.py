# bhnbody/bhsim/plotting.py
"""
Generates diagnostic plots from simulation data and saves them to a PDF file.

Provides helpers for the plot types used (time series, histograms, scatter)
and `generate_plots_pdf`, which lays out a multi-page report from the graph
data collected by the Simulator. A page is skipped when every plot on it is
disabled in the graph settings.
"""

import matplotlib
matplotlib.use('Agg') # non-interactive backend; plots only go to files
import matplotlib.pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages
import numpy as np
import os
import datetime
import traceback
from typing import Any, Dict, List, Optional

# --- plotting constants for consistent styling ---
TITLE_FONTSIZE = 10
LABEL_FONTSIZE = 8
TICK_FONTSIZE = 7
LEGEND_FONTSIZE = 7
LINE_WIDTH = 1.5
GRID_ALPHA = 0.6
SCATTER_SIZE = 2
SCATTER_ALPHA = 0.5


def _get_plot_setting(graph_settings: Dict, key: str, default: bool = False) -> bool:
    """safely retrieves a boolean plot setting from the graph configuration dictionary."""
    return bool(graph_settings.get(key, default)) if isinstance(graph_settings, dict) else default


def _get_valid_data(data_dict: Dict, keys: List[str]) -> Optional[Dict[str, np.ndarray]]:
    """
    float arrays for `keys`, trimmed to a common length; None when a key is
    missing or has no samples.
    """
    if not data_dict: return None
    arrays = {}
    for k in keys:
        values = data_dict.get(k)
        if not isinstance(values, list) or len(values) == 0: return None
        arrays[k] = np.asarray(values, dtype=np.float64)
    n = min(len(a) for a in arrays.values())
    return {k: a[:n] for k, a in arrays.items()}


def _no_data(ax: plt.Axes, title: str, message: str = "No Data"):
    ax.text(0.5, 0.5, message, ha='center', va='center', transform=ax.transAxes)
    ax.set_title(title, fontsize=TITLE_FONTSIZE)
    ax.grid(False)


def _style_axes(ax: plt.Axes, title: str, xlabel: str, ylabel: str):
    ax.set_title(title, fontsize=TITLE_FONTSIZE)
    ax.set_xlabel(xlabel, fontsize=LABEL_FONTSIZE)
    ax.set_ylabel(ylabel, fontsize=LABEL_FONTSIZE)
    ax.grid(True, linestyle=':', alpha=GRID_ALPHA)
    ax.tick_params(axis='both', which='major', labelsize=TICK_FONTSIZE)


def _plot_time_series(ax: plt.Axes, time_data: np.ndarray, series_data: Dict[str, np.ndarray],
                      title: str, ylabel: str, yscale: str = 'linear'):
    """
    helper to plot one or more time series on a given axes object.

    args:
        ax: matplotlib axes to plot on.
        time_data: numpy array of time values.
        series_data: dictionary mapping series labels to numpy arrays of data values.
        title: plot title.
        ylabel: y-axis label.
        yscale: y-axis scale ('linear' or 'log').
    """
    plotted = []
    for label, data_arr in series_data.items():
        valid = np.isfinite(data_arr)
        if yscale == 'log': valid &= data_arr > 0
        if np.any(valid):
            ax.plot(time_data[valid], data_arr[valid], label=label, lw=LINE_WIDTH)
            plotted.append(label)
    if not plotted:
        _no_data(ax, title, "No Valid Data")
        return
    _style_axes(ax, title, "Simulation Time", ylabel)
    if len(plotted) > 1: ax.legend(fontsize=LEGEND_FONTSIZE)
    ax.set_yscale(yscale)


def _plot_histogram(ax: plt.Axes, data: Optional[np.ndarray], bins: int, title: str, xlabel: str, xscale: str = 'linear'):
    """helper to plot a histogram; log scale uses log-spaced bins over the positive values."""
    if data is None or np.size(data) == 0:
        _no_data(ax, title); return
    finite_data = np.asarray(data, dtype=np.float64)
    finite_data = finite_data[np.isfinite(finite_data)]
    if finite_data.size == 0:
        _no_data(ax, title, "No Finite Data"); return

    if xscale == 'log':
        positive = finite_data[finite_data > 0]
        if positive.size == 0:
            _no_data(ax, title, "No Positive Data for Log Scale"); return
        lo, hi = np.min(positive), np.max(positive)
        if hi > lo * (1 + 1e-6):
            ax.hist(positive, bins=np.logspace(np.log10(lo), np.log10(hi), bins + 1))
            ax.set_xscale('log')
        else: # single value: log bins would be empty
            ax.hist(positive, bins=bins)
    else:
        ax.hist(finite_data, bins=bins)
    _style_axes(ax, title, xlabel, "Number of Particles")


def _plot_scatter(ax: plt.Axes, x_data: Optional[np.ndarray], y_data: Optional[np.ndarray], title: str,
                  xlabel: str, ylabel: str, xscale: str = 'linear', yscale: str = 'linear'):
    """helper to plot a scatter diagram of finite (x, y) pairs."""
    if x_data is None or y_data is None or np.size(x_data) == 0 or np.size(y_data) == 0:
        _no_data(ax, title); return
    n = min(len(x_data), len(y_data))
    x = np.asarray(x_data[:n], dtype=np.float64); y = np.asarray(y_data[:n], dtype=np.float64)
    mask = np.isfinite(x) & np.isfinite(y)
    if xscale == 'log': mask &= x > 0
    if yscale == 'log': mask &= y > 0
    if not np.any(mask):
        _no_data(ax, title, "No Finite Data Pairs"); return
    ax.scatter(x[mask], y[mask], s=SCATTER_SIZE, alpha=SCATTER_ALPHA, edgecolors='none', rasterized=True)
    _style_axes(ax, title, xlabel, ylabel)
    ax.set_xscale(xscale); ax.set_yscale(yscale)


def _plot_pages(graph_settings: Dict) -> List[Dict[str, Any]]:
    """Page layouts; each subplot names its enabling setting and the data it needs."""
    bins = int(graph_settings.get('histogram_bins', 50))
    return [
        {
            "title": "Energy Diagnostics", "rows": 1, "cols": 2, "figsize": (10, 4),
            "subplots": [
                {"setting": "plot_energy_components", "series": {'KE': 'total_ke', 'PE': 'total_pe', 'Total': 'total_energy'},
                 "title": "Energy Components", "ylabel": "Energy"},
                {"setting": "plot_energy_drift", "series": {'Drift': 'energy_drift_percent'},
                 "title": "Total Energy Drift", "ylabel": "Drift (%)"},
            ]
        },
        {
            "title": "Momentum & Centre of Mass", "rows": 2, "cols": 2, "figsize": (10, 7),
            "subplots": [
                {"setting": "plot_momentum", "series": {'Px': 'total_px', 'Py': 'total_py', 'Pz': 'total_pz'},
                 "title": "Linear Momentum", "ylabel": "Momentum"},
                {"setting": "plot_angular_momentum", "series": {'Lx': 'total_lx', 'Ly': 'total_ly', 'Lz': 'total_lz'},
                 "title": "Angular Momentum (CoM)", "ylabel": "Ang. Momentum"},
                {"setting": "plot_com_position", "series": {'X': 'com_x', 'Y': 'com_y', 'Z': 'com_z'},
                 "title": "Center of Mass Position", "ylabel": "Position"},
                {"setting": "plot_com_velocity", "series": {'Vx': 'com_vx', 'Vy': 'com_vy', 'Vz': 'com_vz'},
                 "title": "Center of Mass Velocity", "ylabel": "Velocity"},
            ]
        },
        {
            "title": "Tree & Performance", "rows": 1, "cols": 3, "figsize": (12, 4),
            "subplots": [
                {"setting": "plot_min_max_separation", "series": {'Min': 'min_separation', 'Max': 'max_separation'},
                 "title": "Particle Separation", "ylabel": "Distance", "yscale": "log"},
                {"setting": "plot_bh_nodes", "series": {'Nodes': 'bh_num_nodes'},
                 "title": "Octree Nodes", "ylabel": "Reachable Nodes"},
                {"setting": "plot_step_timing", "series": {'Step': 'step_duration_ms'},
                 "title": "Step Duration", "ylabel": "Wall Time (ms)"},
            ]
        },
        {
            "title": "Final State Distributions", "rows": 2, "cols": 2, "figsize": (10, 7),
            "subplots": [
                {"setting": "plot_hist_speed", "hist": 'speeds', "bins": bins,
                 "title": "Speed Distribution", "xlabel": "Speed", "xscale": "log"},
                {"setting": "plot_hist_mass", "hist": 'masses', "bins": bins,
                 "title": "Mass Distribution", "xlabel": "Mass", "xscale": "log"},
                {"setting": "plot_profile_radial", "hist": 'radii', "bins": bins,
                 "title": "Radial Distribution", "xlabel": "Radius from CoM"},
                {"setting": "plot_scatter_speed_radius", "scatter": ('radii', 'speeds'),
                 "title": "Speed vs Radius", "xlabel": "Radius from CoM", "ylabel": "Speed", "yscale": "log"},
            ]
        },
    ]


def _draw_subplot(ax: plt.Axes, plot_def: Dict[str, Any], graph_data: Dict[str, Any]):
    title = plot_def["title"]
    snapshot = graph_data.get('final_snapshot') or {}
    if "series" in plot_def:
        keys = ['time'] + list(plot_def["series"].values())
        valid = _get_valid_data(graph_data, keys)
        if valid is None:
            _no_data(ax, title); return
        series = {label: valid[key] for label, key in plot_def["series"].items()}
        _plot_time_series(ax, valid['time'], series, title, plot_def["ylabel"], plot_def.get("yscale", "linear"))
    elif "hist" in plot_def:
        _plot_histogram(ax, snapshot.get(plot_def["hist"]), plot_def["bins"], title, plot_def["xlabel"],
                        plot_def.get("xscale", "linear"))
    else:
        x_key, y_key = plot_def["scatter"]
        _plot_scatter(ax, snapshot.get(x_key), snapshot.get(y_key), title, plot_def["xlabel"], plot_def["ylabel"],
                      plot_def.get("xscale", "linear"), plot_def.get("yscale", "linear"))


def generate_plots_pdf(graph_data: Dict[str, Any], graph_settings: Dict, output_dir: str) -> str:
    """
    Generates a multi-page PDF containing diagnostic simulation plots.

    Returns the path of the written file, or "" when there is no data or the
    PDF could not be written.
    """
    if not graph_data or not graph_data.get('time'):
        print("Plotting Error: No graph data provided."); return ""
    graph_settings = graph_settings if isinstance(graph_settings, dict) else {}
    pages = _plot_pages(graph_settings)
    if not any(_get_plot_setting(graph_settings, d["setting"]) for page in pages for d in page["subplots"]):
        print("Plotting Info: All plots disabled, no PDF written."); return ""
    os.makedirs(output_dir, exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    pdf_filename = os.path.join(output_dir, f"bhnbody_graphs_{timestamp}.pdf")
    print(f"Generating plots PDF: {os.path.normpath(pdf_filename)}")

    try:
        with PdfPages(pdf_filename) as pdf:
            for page_layout in pages:
                enabled = [d for d in page_layout["subplots"] if _get_plot_setting(graph_settings, d["setting"])]
                if not enabled: continue # skip page if all subplots disabled

                fig, axes = plt.subplots(page_layout["rows"], page_layout["cols"], figsize=page_layout["figsize"])
                fig.suptitle(page_layout["title"], fontsize=14)
                axes = np.atleast_1d(axes).flatten()
                for ax, plot_def in zip(axes, page_layout["subplots"]):
                    if plot_def in enabled:
                        try:
                            _draw_subplot(ax, plot_def, graph_data)
                        except Exception as e_plot:
                            print(f"ERROR plotting '{plot_def['setting']}': {e_plot}"); traceback.print_exc()
                            ax.cla(); _no_data(ax, plot_def["title"], "Plotting Error")
                    else:
                        _no_data(ax, plot_def["title"], "Disabled")
                for ax in axes[len(page_layout["subplots"]):]:
                    ax.axis('off')

                fig.tight_layout(rect=[0, 0.03, 1, 0.95])
                pdf.savefig(fig)
                plt.close(fig)

        print(f"Successfully generated PDF: {pdf_filename}")
        return pdf_filename

    except Exception as e:
        print(f"ERROR during PDF generation process: {e}"); traceback.print_exc()
        if os.path.exists(pdf_filename):
            try: os.remove(pdf_filename)
            except OSError: pass
        return ""
