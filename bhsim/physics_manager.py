# bhnbody/bhsim/physics_manager.py
"""
Manages the selection of physics models.

Loads the definitions of available models (see bhconfig/available_models.py),
lets the Simulator or the step pipeline select the active model per domain
by id, and keeps the active models' configuration in sync.
"""

from typing import Dict, List, Optional
import traceback

from bhsim.physics.base.physics import PhysicsModel
from bhsim.physics.base.gravity import GravityModel
from bhsim.utils import dynamic_import
from bhconfig.available_models import AVAILABLE_MODELS


class PhysicsManager:
    """Handles selection and setup of active physics models."""

    # supported physics domains
    MODEL_TYPES = ["gravity"]

    def __init__(self, initial_config: dict):
        self._config = initial_config.copy()
        self._available_models: Dict[str, Dict[str, Dict]] = {}
        self._active_models: Dict[str, Optional[PhysicsModel]] = {mtype: None for mtype in self.MODEL_TYPES}
        self._active_model_ids: Dict[str, Optional[str]] = {mtype: None for mtype in self.MODEL_TYPES}
        self._load_available_models()

    def _load_available_models(self):
        for model_type in self.MODEL_TYPES:
            self._available_models[model_type] = {}
            model_list = AVAILABLE_MODELS.get(model_type, [])
            if not isinstance(model_list, list): continue
            for model_def in model_list:
                if not isinstance(model_def, dict) or 'id' not in model_def: continue
                self._available_models[model_type][model_def['id']] = model_def

    def get_available_models(self) -> Dict[str, List[Dict]]:
        """Returns available models grouped by type."""
        return {mtype: list(defs.values()) for mtype, defs in self._available_models.items()}

    def select_model(self, model_type: str, model_id: str):
        """Selects and initializes a model; re-selecting the active id only refreshes its config."""
        if model_type not in self.MODEL_TYPES:
            raise ValueError(f"Unknown physics model type: '{model_type}'. Valid: {self.MODEL_TYPES}")

        available_for_type = self._available_models.get(model_type, {})
        if model_id not in available_for_type:
            raise ValueError(f"Unknown model ID '{model_id}' for type '{model_type}'. Available: {list(available_for_type.keys())}")

        # --- Model Already Active? ---
        if self._active_model_ids.get(model_type) == model_id and self._active_models.get(model_type) is not None:
            self._active_models[model_type].update_config(self._config)
            return

        # --- Dynamic Load and Setup ---
        model_def = available_for_type[model_id]
        print(f"Selecting {model_type} model: '{model_def.get('name', model_id)}' ({model_id})...")
        try:
            ModelClass = dynamic_import(model_def['module'], model_def['class'])
            new_model = ModelClass(config=self._config)
            new_model.setup(None)

            # cleanup the previously active model for this type
            old_model = self._active_models.get(model_type)
            if old_model is not None:
                try: old_model.cleanup()
                except Exception as e_clean: print(f"Warn: Error cleaning up old model: {e_clean}")

            self._active_models[model_type] = new_model
            self._active_model_ids[model_type] = model_id
            print(f"  Model '{model_id}' for {model_type} selected successfully.")
        except Exception as e:
            print(f"ERROR: Failed to select/setup model '{model_id}': {e}"); traceback.print_exc()
            self._active_models[model_type] = None
            self._active_model_ids[model_type] = None
            raise

    def get_active_model(self, model_type: str) -> Optional[PhysicsModel]:
        if model_type not in self.MODEL_TYPES:
            raise ValueError(f"Unknown physics model type: '{model_type}'. Valid: {self.MODEL_TYPES}")
        return self._active_models.get(model_type)

    def get_gravity_model(self) -> Optional[GravityModel]:
        return self._active_models.get("gravity")

    def get_active_models_info(self) -> Dict[str, Optional[Dict]]:
        """Returns definition dictionaries for currently active models."""
        return {
            mtype: self._available_models.get(mtype, {}).get(mid)
            for mtype, mid in self._active_model_ids.items() if mid
        }

    def update_config(self, new_config: dict):
        """Updates internal config and propagates it to active models (invalid values raise)."""
        self._config.update(new_config)
        for model_instance in self._active_models.values():
            if model_instance is not None:
                model_instance.update_config(self._config)

    def cleanup_models(self):
        """Calls cleanup on all currently active model instances."""
        cleaned_count = 0
        for model_type, model_instance in self._active_models.items():
            if model_instance is not None:
                try: model_instance.cleanup(); cleaned_count += 1
                except Exception as e: print(f"Warn: Error cleaning up '{model_type}' model: {e}")
        self._active_models = {mtype: None for mtype in self.MODEL_TYPES}
        self._active_model_ids = {mtype: None for mtype in self.MODEL_TYPES}
        print(f"Cleaned up {cleaned_count} active models.")
