# bhnbody/bhsim/phases.py
"""Phases a single simulation tick passes through, in order."""

from enum import IntEnum


class StepPhase(IntEnum):
    IDLE = 0
    BOUNDS_COMPUTED = 1
    TREE_BUILT = 2
    AGGREGATES_COMPUTED = 3
    FORCES_EVALUATED = 4
    INTEGRATED = 5

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()
