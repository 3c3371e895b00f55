# bhnbody/bhconfig/param_defs.py
"""
UI Parameter Definitions (for sliders, toggles etc.) in the frontend.
'live' parameters may be changed while the simulation runs; the rest apply on restart.
"""

PARAM_DEFS = {
      # --- Initial Conditions ---
      'N':         {'label':'Particles (N)', 'min':1,'max':200000,'step':1,'val':500, 'fmt':"{:d}", 'live':False},

      # --- Gravity Parameters ---
      'G':         {'label':'Gravity (G)',   'min':0.0,'max':1.0,   'step':1e-12,'val':6.67408e-11, 'fmt':"{:.3e}", 'live':True},
      'bh_theta':  {'label':'BH Theta θ',    'min':0.0,'max':2.0,   'step':0.05,'val':0.1,   'fmt':"{:.2f}", 'live':True},
      'min_separation': {'label':'Min Separation', 'min':0.0,'max':10.0,'step':1e-9,'val':1e-9, 'fmt':"{:.1e}", 'live':True},
      'MAX_NODES_FACTOR': {'label':'BH Node Factor','min':2,'max':50,'step':1,'val':10,    'fmt':"{:d}", 'live':False},

      # --- Numerical / Simulation Control ---
      'dt':          {'label':'Timestep (dt)', 'min':1e-6,'max':1e5,  'step':1.0,'val':100.0,  'fmt':"{:.1e}", 'live':True},
      'step_interval_s': {'label':'Tick Interval (s)', 'min':0.0,'max':2.0,'step':0.01,'val':0.1, 'fmt':"{:.2f}", 'live':True},
}

# --- VALIDATION ---
for _key, _pdef in PARAM_DEFS.items():
    if not _pdef['min'] <= _pdef['val'] <= _pdef['max']:
        raise ValueError(f"PARAM_DEFS['{_key}'] default {_pdef['val']} outside [{_pdef['min']}, {_pdef['max']}]")
