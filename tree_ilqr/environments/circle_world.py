"""Planar worlds of circular obstacles and the costs defined on them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable


@dataclass(frozen=True)
class Circle:
    """A disc obstacle.

    :param center: Center ``(x, y)``.
    :param radius: Radius, ``> 0``.
    """

    center: tuple[float, float]
    radius: float

    def __post_init__(self) -> None:
        if self.radius <= 0:
            raise ValueError(f"Circle radius must be > 0, got {self.radius}")
        if len(self.center) != 2:
            raise ValueError(f"Circle center must be 2-D, got {self.center}")

    def signed_distance(self, point: np.ndarray) -> float:
        """Distance from ``point`` to the boundary, negative inside."""
        offset = np.asarray(point[:2], dtype=np.float64) - np.asarray(self.center)
        return float(np.linalg.norm(offset) - self.radius)


class CircleWorld:
    """A collection of circular obstacles.

    :param obstacles: Initial obstacles.
    """

    def __init__(self, obstacles: Iterable[Circle] = ()) -> None:
        self._obstacles = list(obstacles)

    @property
    def obstacles(self) -> list[Circle]:
        """Obstacles in insertion order."""
        return list(self._obstacles)

    def add_obstacle(self, obstacle: Circle) -> None:
        self._obstacles.append(obstacle)

    def __len__(self) -> int:
        return len(self._obstacles)

    def signed_distances(self, point: np.ndarray) -> np.ndarray:
        """Signed distance to every obstacle, shape ``(n_obstacles,)``."""
        return np.array([c.signed_distance(point) for c in self._obstacles])

    def min_signed_distance(self, point: np.ndarray) -> float:
        """Signed distance to the nearest obstacle (``inf`` if none)."""
        if not self._obstacles:
            return float("inf")
        return float(self.signed_distances(point).min())

    def in_collision(self, point: np.ndarray) -> bool:
        return self.min_signed_distance(point) < 0.0

    def as_array(self) -> np.ndarray:
        """Obstacles as rows ``[cx, cy, r]``, shape ``(n_obstacles, 3)``."""
        return np.array(
            [[c.center[0], c.center[1], c.radius] for c in self._obstacles],
        ).reshape(-1, 3)

    def __repr__(self) -> str:
        return f"CircleWorld(n_obstacles={len(self)})"


class ObstacleCost:
    r"""Goal tracking with a smooth obstacle penalty.

    .. math::

        c(x, u) = (x - g)^T Q (x - g) + u^T R u
        + w \sum_j \exp(-s \, d_j(x))

    where :math:`d_j` is the signed distance to obstacle :math:`j`.

    :param world: Obstacles to avoid.
    :param goal: Goal state, shape ``(state_dim,)``.
    :param q_matrix: State weight, shape ``(state_dim, state_dim)``.
    :param r_matrix: Control weight, shape ``(control_dim, control_dim)``.
    :param obstacle_weight: Penalty magnitude ``w`` at the boundary.
    :param obstacle_scale: Decay rate ``s`` of the penalty with distance.
    """

    def __init__(
        self,
        world: CircleWorld,
        goal: np.ndarray,
        q_matrix: np.ndarray,
        r_matrix: np.ndarray,
        obstacle_weight: float = 10.0,
        obstacle_scale: float = 3.0,
    ) -> None:
        if obstacle_weight < 0 or obstacle_scale <= 0:
            raise ValueError(
                f"Need obstacle_weight >= 0 and obstacle_scale > 0, got "
                f"{obstacle_weight} and {obstacle_scale}"
            )
        self.world = world
        self.goal = np.asarray(goal, dtype=np.float64)
        self.q_matrix = np.asarray(q_matrix, dtype=np.float64)
        self.r_matrix = np.asarray(r_matrix, dtype=np.float64)
        self.obstacle_weight = obstacle_weight
        self.obstacle_scale = obstacle_scale

    def obstacle_penalty(self, state: np.ndarray) -> float:
        if len(self.world) == 0:
            return 0.0
        dists = self.world.signed_distances(state)
        return float(
            self.obstacle_weight * np.exp(-self.obstacle_scale * dists).sum()
        )

    def __call__(self, state: np.ndarray, control: np.ndarray, t: int = 0) -> float:
        err = state - self.goal
        return float(
            err @ self.q_matrix @ err
            + control @ self.r_matrix @ control
            + self.obstacle_penalty(state)
        )


class GoalFinalCost:
    """Quadratic distance to the goal at the end of the horizon.

    :param goal: Goal state.
    :param q_matrix: Final state weight.
    """

    def __init__(self, goal: np.ndarray, q_matrix: np.ndarray) -> None:
        self.goal = np.asarray(goal, dtype=np.float64)
        self.q_matrix = np.asarray(q_matrix, dtype=np.float64)

    def __call__(self, state: np.ndarray) -> float:
        err = state - self.goal
        return float(err @ self.q_matrix @ err)
