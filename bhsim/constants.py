# bhnbody/bhsim/constants.py
"""
Physical and numerical constants used by the simulation core.
"""

# --- Physical Constants (SI-like units, matching the particle generator) ---
CONST_G = 6.67408e-11   # gravitational constant

# --- Barnes-Hut Defaults ---
DEFAULT_THETA = 0.1             # opening ratio D/r used when none is supplied
DEFAULT_MIN_SEPARATION = 1e-9   # pair distance is clamped to this before 1/r^3
DEFAULT_MAX_NODES_FACTOR = 10   # initial node arena size = N * factor
DEFAULT_MAX_TREE_DEPTH = 256    # deeper subdivision means particles the box arithmetic cannot separate
DEGENERATE_ROOT_EDGE = 1.0      # root edge used when all particles share one point (N == 1)
MAX_NODES_HARD_CAP = 50_000_000 # arena growth stops here
