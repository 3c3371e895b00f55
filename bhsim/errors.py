# bhnbody/bhsim/errors.py
"""
Exception types raised by the simulation core.

Kernels report failures as negative status codes; the Python wrappers turn
them into one of these so callers can tell bad input apart from a broken tree.
"""


class InvalidParticleError(ValueError):
    """Particle input rejected at the boundary (empty set, non-finite values, mass <= 0, coincident positions)."""


class OctreeInvariantError(RuntimeError):
    """The tree violated a structural invariant while being built, aggregated or walked."""


class NumericalInstabilityError(ArithmeticError):
    """Integration produced non-finite positions or velocities."""
