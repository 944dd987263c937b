"""Simulated worlds for the hindsight obstacle experiments."""

from tree_ilqr.environments.circle_world import (
    Circle,
    CircleWorld,
    GoalFinalCost,
    ObstacleCost,
)
from tree_ilqr.environments.diffdrive import make_diffdrive_dynamics

__all__ = [
    "Circle",
    "CircleWorld",
    "GoalFinalCost",
    "ObstacleCost",
    "make_diffdrive_dynamics",
]
