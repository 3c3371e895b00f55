# bhnbody/bhconfig/available_integrators.py
"""
Defines a list of all integrators available for selection.
"""

AVAILABLE_INTEGRATORS = [
    {
        "id": "trapezoid",
        "name": "Euler / Trapezoid",
        "description": "Explicit Euler velocity update, positions advanced with the mean of old and new velocity.",
        "module": "bhsim.integrators.trapezoid",
        "class": "Trapezoid",
        "order": 1,
        "notes": "Requires 1 force evaluation per step. Default scheme of the step pipeline.",
    },
    {
        "id": "leapfrog",
        "name": "Leapfrog (KDK)",
        "description": "Standard second-order Kick-Drift-Kick Leapfrog integrator.",
        "module": "bhsim.integrators.leapfrog",
        "class": "Leapfrog",
        "order": 2,
        "notes": "Requires 2 force evaluations per step. Better long-term energy behaviour.",
    },
]

# --- integrator validation ---
def _validate_integrators():
    for integrator_def in AVAILABLE_INTEGRATORS:
        required_keys = ["id", "name", "module", "class", "order"]
        if not all(key in integrator_def for key in required_keys):
            raise ValueError(f"Integrator definition is missing required keys: {integrator_def}")
_validate_integrators()
