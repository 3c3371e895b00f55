# bhnbody/bhsim/integrator_manager.py
"""
This code manages the selection of time integration schemes.

It loads available integrator definitions, allows the simulator or the step
pipeline to select an active integrator (trapezoid, leapfrog) by id, and
handles dynamic importing and setup of the integrator instances.
"""

from typing import Dict, List, Optional
import traceback

from bhsim.integrators.base import Integrator
from bhsim.utils import dynamic_import
from bhconfig.available_integrators import AVAILABLE_INTEGRATORS


class IntegratorManager:
    """handles selection of the active time integrator."""

    def __init__(self, config: dict):
        self._config = dict(config) if config else {}
        self._available_integrators: Dict[str, Dict] = {}
        self._active_integrator: Optional[Integrator] = None
        self._active_integrator_id: Optional[str] = None
        self._load_available_integrators()

    def get_available_integrators(self) -> List[Dict]:
        """returns the list of available integrator definitions."""
        return list(self._available_integrators.values())

    def _load_available_integrators(self):
        """Loads integrator definitions from available_integrators."""
        try:
            self._available_integrators = {
                integrator_def['id']: integrator_def
                for integrator_def in AVAILABLE_INTEGRATORS
            }
            if not self._available_integrators:
                print("Warning: No integrators found in AVAILABLE_INTEGRATORS config.")
        except KeyError as e_key:
            print(f"ERROR: Integrator definition missing 'id' key: {e_key}")
            raise ValueError("Invalid integrator definition (missing 'id')") from e_key

    def select_integrator(self, integrator_id: str):
        """selects and initializes the specified integrator."""
        if integrator_id not in self._available_integrators:
            available_ids = list(self._available_integrators.keys())
            raise ValueError(f"Unknown integrator ID: '{integrator_id}'. Available: {available_ids}")

        if self._active_integrator_id == integrator_id and self._active_integrator is not None:
            return

        integrator_def = self._available_integrators[integrator_id]
        print(f"Selecting integrator: '{integrator_def['name']}' ({integrator_id})...")
        try:
            IntegratorClass = dynamic_import(integrator_def['module'], integrator_def['class'])
            new_integrator = IntegratorClass()
            new_integrator.setup(None, self._config)

            if self._active_integrator is not None:
                try: self._active_integrator.cleanup()
                except Exception as e_clean: print(f"Warn: Error cleaning up old integrator: {e_clean}")

            self._active_integrator = new_integrator
            self._active_integrator_id = integrator_id
        except Exception as e:
            print(f"ERROR: Failed to select/setup integrator '{integrator_id}': {e}")
            traceback.print_exc()
            self._active_integrator = None
            self._active_integrator_id = None
            raise

    def get_active_integrator(self) -> Optional[Integrator]:
        return self._active_integrator

    def get_active_integrator_info(self) -> Optional[Dict]:
        """returns the definition dictionary of the currently active integrator, or none."""
        return self._available_integrators.get(self._active_integrator_id) if self._active_integrator_id else None

    def update_config(self, new_config: dict):
        """updates the manager's config and re-runs setup on the active integrator."""
        self._config.update(new_config)
        if self._active_integrator is not None:
            self._active_integrator.setup(None, self._config)
