"""Receding-horizon diff-drive control around an uncertain obstacle.

A robot drives to a goal while unsure whether an obstacle sits on its
path. Two candidate worlds are tracked: the true one and an alternative.
At every step a noisy range sensor reading is folded into a belief over
the worlds, a policy is planned over a fixed horizon, and only its first
control is applied. The realized cost under the true world is returned.

Policies compared:

* ``HINDSIGHT``: one hindsight-split tree over both worlds, weighted by
  the belief.
* ``TRUE_ILQR``: a chain planned in the true world (oracle).
* ``ARGMAX_ILQR``: a chain planned in the most likely world.
* ``PROB_WEIGHTED_CONTROL``: one chain per world, controls averaged by
  the belief.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
from loguru import logger

from tree_ilqr.environments.circle_world import (
    Circle,
    CircleWorld,
    GoalFinalCost,
    ObstacleCost,
)
from tree_ilqr.environments.diffdrive import (
    CONTROL_DIM,
    STATE_DIM,
    make_diffdrive_dynamics,
)
from tree_ilqr.filters.goal_predictor import GoalPredictor
from tree_ilqr.ilqr.hindsight import HindsightSolver, HindsightSplit
from tree_ilqr.ilqr.ilqr_tree import ILQRTree
from tree_ilqr.ilqr.solver import ILQRConfig, ILQRSolution, ILQRSolver
from tree_ilqr.utils.seeding import make_rng

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from tree_ilqr.ilqr.symbolic import SymbolicDynamics
    from tree_ilqr.utils.logging import MetricsLogger


class PolicyType(Enum):
    """Planning policies for the obstacle experiment."""

    HINDSIGHT = "hindsight"
    TRUE_ILQR = "ilqr_true"
    ARGMAX_ILQR = "argmax"
    PROB_WEIGHTED_CONTROL = "weighted"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ExperimentConfig:
    """Configuration of one obstacle-avoidance run.

    :param dt: Integration step of the diff-drive model.
    :param horizon: Planning horizon (control steps per plan).
    :param n_steps: Number of controls applied in closed loop.
    :param x_init: Initial state ``(x, y, theta)``.
    :param goal: Goal state ``(x, y, theta)``.
    :param u_nominal: Control ``(v, omega)`` seeding every plan.
    :param state_weights: Diagonal of the stage state weight.
    :param control_weights: Diagonal of the control weight.
    :param final_weights: Diagonal of the final state weight.
    :param obstacle_center: Center of the uncertain obstacle.
    :param obstacle_radius: Radius of the uncertain obstacle.
    :param obstacle_weight: Obstacle penalty at the boundary.
    :param obstacle_scale: Decay rate of the obstacle penalty.
    :param sensor_range: Range readings are clipped to this distance.
    :param sensor_noise: Standard deviation of the range reading.
    :param seed: Seed of the sensor noise.
    :param solver: Solver loop configuration used for every plan.
    """

    dt: float = 0.1
    horizon: int = 15
    n_steps: int = 40
    x_init: tuple[float, ...] = (-3.0, 0.0, 0.0)
    goal: tuple[float, ...] = (3.0, 0.0, 0.0)
    u_nominal: tuple[float, ...] = (1.0, 0.0)
    state_weights: tuple[float, ...] = (0.1, 0.1, 0.0)
    control_weights: tuple[float, ...] = (0.1, 0.1)
    final_weights: tuple[float, ...] = (10.0, 10.0, 0.0)
    obstacle_center: tuple[float, float] = (0.0, 0.3)
    obstacle_radius: float = 1.0
    obstacle_weight: float = 10.0
    obstacle_scale: float = 3.0
    sensor_range: float = 3.0
    sensor_noise: float = 0.5
    seed: int = 0
    solver: ILQRConfig = field(
        default_factory=lambda: ILQRConfig(max_iterations=50, convergence_tol=1e-3),
    )

    def __post_init__(self) -> None:
        if self.dt <= 0:
            raise ValueError(f"dt must be > 0, got {self.dt}")
        if self.horizon < 1 or self.n_steps < 1:
            raise ValueError(
                f"horizon and n_steps must be >= 1, got {self.horizon} "
                f"and {self.n_steps}"
            )
        for name in ("x_init", "goal", "state_weights", "final_weights"):
            if len(getattr(self, name)) != STATE_DIM:
                raise ValueError(f"{name} must have {STATE_DIM} entries")
        for name in ("u_nominal", "control_weights"):
            if len(getattr(self, name)) != CONTROL_DIM:
                raise ValueError(f"{name} must have {CONTROL_DIM} entries")
        if self.obstacle_radius <= 0:
            raise ValueError(
                f"obstacle_radius must be > 0, got {self.obstacle_radius}"
            )
        if self.sensor_range <= 0 or self.sensor_noise <= 0:
            raise ValueError("sensor_range and sensor_noise must be > 0")
        if self.seed < 0:
            raise ValueError(f"seed must be non-negative, got {self.seed}")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> ExperimentConfig:
        """Build from a plain mapping such as a resolved Hydra node.

        Sequences become tuples and a nested ``solver`` mapping becomes
        an :class:`ILQRConfig`.
        """
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            if key == "solver":
                kwargs[key] = ILQRConfig(**dict(value))
            elif isinstance(value, (list, tuple)):
                kwargs[key] = tuple(float(v) for v in value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Plain nested dict of every field, ``solver`` included."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def make_stage_cost(world: CircleWorld, config: ExperimentConfig) -> ObstacleCost:
    """Stage cost of planning in ``world``."""
    return ObstacleCost(
        world,
        goal=np.asarray(config.goal),
        q_matrix=np.diag(config.state_weights),
        r_matrix=np.diag(config.control_weights),
        obstacle_weight=config.obstacle_weight,
        obstacle_scale=config.obstacle_scale,
    )


def make_final_cost(config: ExperimentConfig) -> GoalFinalCost:
    return GoalFinalCost(np.asarray(config.goal), np.diag(config.final_weights))


def nominal_rollout(
    dynamics: SymbolicDynamics,
    x_init: np.ndarray,
    u_nominal: np.ndarray,
    horizon: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Apply ``u_nominal`` for ``horizon`` steps.

    :returns: States ``(horizon+1, 3)`` and controls ``(horizon, 2)``.
    """
    states = np.zeros((horizon + 1, STATE_DIM))
    controls = np.tile(u_nominal, (horizon, 1))
    states[0] = x_init
    for t in range(horizon):
        states[t + 1] = dynamics(states[t], controls[t])
    return states, controls


# ---------------------------------------------------------------------------
# Sensing
# ---------------------------------------------------------------------------

def expected_range(world: CircleWorld, state: np.ndarray, config: ExperimentConfig) -> float:
    """Noise-free range reading: clipped distance to the nearest obstacle."""
    return min(world.min_signed_distance(state), config.sensor_range)


def sense(
    world: CircleWorld,
    state: np.ndarray,
    config: ExperimentConfig,
    rng: np.random.Generator,
) -> float:
    """Noisy range reading taken in ``world``."""
    return expected_range(world, state, config) + config.sensor_noise * rng.normal()


def reading_cost(
    reading: float,
    world: CircleWorld,
    state: np.ndarray,
    config: ExperimentConfig,
) -> float:
    """Negative log-likelihood of ``reading`` if ``world`` were true."""
    residual = reading - expected_range(world, state, config)
    return 0.5 * residual ** 2 / config.sensor_noise ** 2


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def plan_chain(
    dynamics: SymbolicDynamics,
    cost: ObstacleCost,
    final_cost: GoalFinalCost,
    x_init: np.ndarray,
    config: ExperimentConfig,
) -> tuple[np.ndarray, ILQRSolution]:
    """Plan a single-world chain and return its first control."""
    states, controls = nominal_rollout(
        dynamics, x_init, np.asarray(config.u_nominal), config.horizon,
    )
    tree = ILQRTree(STATE_DIM, CONTROL_DIM)
    root = tree.add_root(tree.make_plan_node(states[0], controls[0], dynamics, cost))
    tree.extend_chain(root, dynamics, cost, final_cost, states[1:], controls[1:])
    solution = ILQRSolver(config.solver).solve(tree, x_init)
    return tree.node(root).compute_control(x_init), solution


def plan_hindsight(
    dynamics: SymbolicDynamics,
    costs: Sequence[ObstacleCost],
    final_cost: GoalFinalCost,
    probabilities: np.ndarray,
    x_init: np.ndarray,
    config: ExperimentConfig,
) -> tuple[np.ndarray, ILQRSolution]:
    """Plan one hindsight-split tree over all worlds."""
    splits = [
        HindsightSplit(dynamics, final_cost, cost, float(p))
        for cost, p in zip(costs, probabilities)
    ]
    solver = HindsightSolver(splits, config.solver)
    solution = solver.solve(config.horizon, x_init, np.asarray(config.u_nominal))
    return solver.compute_control(0, x_init, 0), solution


def plan_control(
    policy: PolicyType,
    dynamics: SymbolicDynamics,
    costs: Sequence[ObstacleCost],
    final_cost: GoalFinalCost,
    probabilities: np.ndarray,
    x_init: np.ndarray,
    config: ExperimentConfig,
) -> tuple[np.ndarray, list[ILQRSolution]]:
    """First control of ``policy`` given the belief over worlds.

    ``costs[0]`` must belong to the true world.

    :returns: The control and the solutions of every plan computed.
    """
    if policy is PolicyType.HINDSIGHT:
        u, solution = plan_hindsight(
            dynamics, costs, final_cost, probabilities, x_init, config,
        )
        return u, [solution]
    if policy is PolicyType.TRUE_ILQR:
        u, solution = plan_chain(dynamics, costs[0], final_cost, x_init, config)
        return u, [solution]
    if policy is PolicyType.ARGMAX_ILQR:
        best = int(np.argmax(probabilities))
        u, solution = plan_chain(dynamics, costs[best], final_cost, x_init, config)
        return u, [solution]

    u = np.zeros(CONTROL_DIM)
    solutions = []
    for cost, p in zip(costs, probabilities):
        u_world, solution = plan_chain(dynamics, cost, final_cost, x_init, config)
        u += p * u_world
        solutions.append(solution)
    return u, solutions


# ---------------------------------------------------------------------------
# Closed loop
# ---------------------------------------------------------------------------

def control_diffdrive(
    policy: PolicyType | str,
    true_world: CircleWorld,
    other_world: CircleWorld,
    obs_prior: Sequence[float],
    config: ExperimentConfig | None = None,
    state_output_path: str | Path | None = None,
    obstacle_output_path: str | Path | None = None,
    metrics: MetricsLogger | None = None,
) -> float:
    """Drive to the goal under ``policy`` and return the true cost.

    :param policy: Planning policy, or its string value.
    :param true_world: World the robot actually drives in.
    :param other_world: Alternative the belief also considers.
    :param obs_prior: Prior weights ``(true_world, other_world)``.
    :param config: Experiment configuration.
    :param state_output_path: If given, visited states are written there
        as CSV (one row per step).
    :param obstacle_output_path: If given, the true world's obstacles are
        written there as CSV rows ``cx, cy, r``.
    :param metrics: Optional TensorBoard logger.
    :returns: Accumulated stage costs plus the final cost, all under the
        true world.
    :raises ValueError: If the prior does not have two entries.
    """
    config = config or ExperimentConfig()
    policy = PolicyType(policy)
    if len(obs_prior) != 2:
        raise ValueError(f"obs_prior needs 2 entries, got {len(obs_prior)}")

    rng = make_rng(config.seed)
    dynamics = make_diffdrive_dynamics(config.dt)
    worlds = [true_world, other_world]
    costs = [make_stage_cost(w, config) for w in worlds]
    final_cost = make_final_cost(config)
    belief = GoalPredictor(obs_prior)

    x = np.asarray(config.x_init, dtype=np.float64)
    states = [x]
    stage_costs = []
    total_cost = 0.0
    for step in range(config.n_steps):
        reading = sense(true_world, x, config, rng)
        belief.update_goal_distribution(
            [reading_cost(reading, w, x, config) for w in worlds],
            np.zeros(len(worlds)),
        )
        probabilities = np.clip(belief.goal_distribution(), 0.0, 1.0)

        u, solutions = plan_control(
            policy, dynamics, costs, final_cost, probabilities, x, config,
        )
        stage_cost = costs[0](x, u, step)
        stage_costs.append(stage_cost)
        total_cost += stage_cost
        x = dynamics(x, u)
        states.append(x)

        logger.debug(
            "{} step {}: belief={}, u={}, stage_cost={:.4f}",
            policy, step, np.round(probabilities, 4), np.round(u, 4), stage_cost,
        )
        if metrics is not None:
            metrics.log_scalars(
                f"{policy}/belief",
                {"true": float(probabilities[0]), "other": float(probabilities[1])},
                step,
            )
            metrics.log_scalar(f"{policy}/stage_cost", stage_cost, step)
            for i, solution in enumerate(solutions):
                metrics.log_solution(f"{policy}/plan_{i}", solution, step)

    total_cost += final_cost(x)
    if metrics is not None:
        metrics.log_histogram(f"{policy}/stage_costs", np.array(stage_costs), 0)
    if any(true_world.in_collision(s) for s in states):
        logger.warning("{}: trajectory entered an obstacle", policy)

    if state_output_path is not None:
        np.savetxt(
            state_output_path, np.array(states),
            delimiter=",", header="x,y,theta", comments="",
        )
    if obstacle_output_path is not None:
        np.savetxt(
            obstacle_output_path, true_world.as_array(),
            delimiter=",", header="cx,cy,r", comments="",
        )

    logger.info(
        "{}: total cost {:.4f}, final state {}",
        policy, total_cost, np.round(x, 3),
    )
    return float(total_cost)


def single_obs_control_diffdrive(
    policy: PolicyType | str,
    true_world_with_obs: bool,
    obs_prior: Sequence[float],
    config: ExperimentConfig | None = None,
    state_output_path: str | Path | None = None,
    obstacle_output_path: str | Path | None = None,
    metrics: MetricsLogger | None = None,
) -> float:
    """Run :func:`control_diffdrive` with one obstacle that may be absent.

    :param true_world_with_obs: Whether the obstacle really exists.
    :param obs_prior: Prior weights ``(true_world, other_world)``.
    """
    config = config or ExperimentConfig()
    with_obstacle = CircleWorld(
        [Circle(config.obstacle_center, config.obstacle_radius)],
    )
    without_obstacle = CircleWorld()
    if true_world_with_obs:
        true_world, other_world = with_obstacle, without_obstacle
    else:
        true_world, other_world = without_obstacle, with_obstacle

    return control_diffdrive(
        policy, true_world, other_world, obs_prior, config,
        state_output_path=state_output_path,
        obstacle_output_path=obstacle_output_path,
        metrics=metrics,
    )
