# bhnbody/bhconfig/available_models.py
"""
Defines the physics models available for selection.
The structure allows dynamic loading by the PhysicsManager.
"""

# keys are model types, values are the implementations available for that type.
AVAILABLE_MODELS = {
    "gravity": [
        {
            "id": "gravity_bh_numba",
            "name": "Barnes-Hut (Numba)",
            "description": "Barnes-Hut octree gravity, tree build and force walk accelerated with Numba (CPU).",
            "module": "bhsim.physics.gravity.gravity_bh_numba",
            "class": "GravityBHNumba",
            "notes": "O(N log N). Accuracy controlled by theta (0 = exact).",
        },
        {
            "id": "gravity_pp_cpu",
            "name": "Direct PP (NumPy)",
            "description": "Direct particle-particle N^2 gravity calculation using pure NumPy (CPU).",
            "module": "bhsim.physics.gravity.gravity_pp_cpu",
            "class": "GravityPPCpu",
            "notes": "Exact reference, but very slow (and memory hungry) for large N.",
        },
    ],
}

# --- validate the models ---
def _validate_models():
    for model_type, model_list in AVAILABLE_MODELS.items():
        if not isinstance(model_list, list):
            raise TypeError(f"AVAILABLE_MODELS entry for '{model_type}' must be a list.")
        if not model_list:
            print(f"WARNING: No models defined for type '{model_type}' in AVAILABLE_MODELS.")
        for model_def in model_list:
            required_keys = ["id", "name", "module", "class"]
            if not all(key in model_def for key in required_keys):
                raise ValueError(f"Model definition in '{model_type}' is missing required keys: {model_def}")
_validate_models()
