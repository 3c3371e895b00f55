# bhnbody/bhsim/physics/base/physics.py
"""
Defines the Abstract Base Class (ABC) for all physics models.

Provides a consistent interface so models can be selected and driven
uniformly by the PhysicsManager and the step pipeline.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from bhsim.particle_data import ParticleData


class PhysicsModel(ABC):
    """
    Abstract Base Class for physics calculation components.

    Subclasses implement `setup` (validate config, read parameters) and their
    compute methods. `setup` may run before any particle data exists, in
    which case `pd` is None.
    """
    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize the physics model with configuration.

        Args:
            config: Simulation-wide configuration dictionary. A copy is stored.
        """
        self.config: Dict = config.copy() if config is not None else {}
        self._is_setup: bool = False

    @abstractmethod
    def setup(self, pd: Optional[ParticleData] = None):
        """
        Validate configuration and precompute parameters.

        Subclasses must call super().setup(pd) (or set `_is_setup`) once
        validation succeeds.
        """
        self._is_setup = True

    def is_ready(self) -> bool:
        """Checks if the model's setup method has been successfully completed."""
        return self._is_setup

    def update_config(self, config: Dict):
        """
        Merges updated parameters into the model's configuration.

        Subclasses that cache parameters re-read them after calling
        `super().update_config(config)`.
        """
        if config:
            self.config.update(config)

    def cleanup(self):
        """Releases model resources (cached trees etc.). Safe to call repeatedly."""
        pass
