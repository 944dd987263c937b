r"""Solver loop for iLQR over scenario trees.

Alternates backward passes (gains) and forward passes (true rollouts)
until the relative change of the realized expected cost drops below a
threshold:

1. **Backward pass**: probability-weighted Bellman backup at the current
   expansion points. A numerical failure increases the damping
   :math:`\mu` and retries.
2. **Line search**: roll out the true dynamics under
   :math:`u = \hat{u} + K (x - \hat{x}) + \alpha k`, shrinking
   :math:`\alpha` geometrically until the cost improves. The backward
   pass is not re-run between line-search steps.
3. **Acceptance**: the accepted rollout becomes the next expansion
   point (re-running the model builder) and :math:`\mu` is relaxed.
   A rejected step increases :math:`\mu`.
4. **Convergence**: :math:`|J_i - J_{i-1}| / |J_{i-1}|` below
   ``convergence_tol``. Running out of iterations is reported through
   :attr:`ILQRSolution.converged`, never raised.

The loop works on any :class:`TrajectoryProblem`: the general
:class:`~tree_ilqr.ilqr.ilqr_tree.ILQRTree` or the hindsight chain
:class:`~tree_ilqr.ilqr.hindsight.HindsightTree`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
from loguru import logger

from tree_ilqr.ilqr.bellman import NumericalFailureError


@dataclass(frozen=True)
class ILQRConfig:
    r"""Configuration for the iLQR solver loop.

    :param max_iterations: Maximum outer iterations.
    :param convergence_tol: Relative cost change threshold for
        convergence: :math:`|J_{new} - J_{old}| / |J_{old}|`.
    :param mu_init: Initial Levenberg-Marquardt damping. ``0`` means no
        extra damping.
    :param mu_min: Smallest non-zero damping. Increasing from zero jumps
        to this value; decreasing below it resets to zero.
    :param mu_max: Damping beyond which the solver gives up.
    :param mu_factor: Multiplicative damping adjustment.
    :param alpha_init: First line-search step size, in ``(0, 1]``.
    :param alpha_decay: Line-search backtracking factor, in ``(0, 1)``.
    :param max_line_search_steps: Forward-pass retries per iteration.
    """

    max_iterations: int = 1000
    convergence_tol: float = 1e-4
    mu_init: float = 0.0
    mu_min: float = 1e-6
    mu_max: float = 1e10
    mu_factor: float = 10.0
    alpha_init: float = 1.0
    alpha_decay: float = 0.5
    max_line_search_steps: int = 10

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        if self.convergence_tol <= 0:
            raise ValueError(
                f"convergence_tol must be > 0, got {self.convergence_tol}"
            )
        if self.mu_init < 0:
            raise ValueError(f"mu_init must be >= 0, got {self.mu_init}")
        if not 0 < self.mu_min <= self.mu_max:
            raise ValueError(
                f"Need 0 < mu_min <= mu_max, got mu_min={self.mu_min}, "
                f"mu_max={self.mu_max}"
            )
        if self.mu_factor <= 1:
            raise ValueError(f"mu_factor must be > 1, got {self.mu_factor}")
        if not 0 < self.alpha_init <= 1:
            raise ValueError(
                f"alpha_init must be in (0, 1], got {self.alpha_init}"
            )
        if not 0 < self.alpha_decay < 1:
            raise ValueError(
                f"alpha_decay must be in (0, 1), got {self.alpha_decay}"
            )
        if self.max_line_search_steps < 1:
            raise ValueError(
                f"max_line_search_steps must be >= 1, "
                f"got {self.max_line_search_steps}"
            )


@dataclass
class SolverState:
    """Mutable iteration state threaded through the solver loop.

    :param mu: Current damping.
    :param alpha: Step size of the last accepted (or tried) rollout.
    :param cost_history: Accepted costs, starting with the nominal one.
    :param iteration: Outer iterations performed.
    """

    mu: float
    alpha: float
    cost_history: list[float] = field(default_factory=list)
    iteration: int = 0

    @property
    def cost(self) -> float:
        """Most recently accepted cost."""
        return self.cost_history[-1]

    def increase_mu(self, config: ILQRConfig) -> None:
        """Strengthen damping after a failed backward or forward pass."""
        self.mu = max(self.mu * config.mu_factor, config.mu_min)

    def decrease_mu(self, config: ILQRConfig) -> None:
        """Relax damping after an accepted step."""
        self.mu = self.mu / config.mu_factor
        if self.mu < config.mu_min:
            self.mu = 0.0


class Rollout(Protocol):
    """Result of a forward pass: anything carrying a realized cost."""

    cost: float


class TrajectoryProblem(ABC):
    """A tree-structured trajectory optimization problem.

    Implementations own their plan nodes; the solver loop only drives
    them through this interface.
    """

    @abstractmethod
    def seed(self, x_init: np.ndarray, u_nominal: np.ndarray) -> None:
        """Set every node's expansion point from a nominal-control rollout."""

    @abstractmethod
    def backward_pass(self, mu: float = 0.0) -> None:
        """Compute value matrices and gains at every node.

        :raises NumericalFailureError: On numerical breakdown.
        """

    @abstractmethod
    def forward_pass(self, x_init: np.ndarray, alpha: float = 1.0) -> Rollout:
        """Roll out the true dynamics under the current policies.

        Must not mutate the problem.
        """

    @abstractmethod
    def accept(self, rollout: Any) -> None:
        """Adopt a rollout as the next expansion point."""


@dataclass
class ILQRSolution:
    """Outcome of a solver run.

    :param cost: Final accepted expected cost.
    :param converged: Whether the cost-ratio criterion was met.
    :param n_iterations: Outer iterations performed.
    :param cost_history: Accepted costs, nominal first.
    :param mu: Damping at termination.
    :param rollout: Final accepted rollout.
    """

    cost: float
    converged: bool
    n_iterations: int
    cost_history: list[float] = field(default_factory=list)
    mu: float = 0.0
    rollout: Any = None


class ILQRSolver:
    """Iterative LQR driver for :class:`TrajectoryProblem` instances.

    :param config: Solver configuration.
    """

    def __init__(self, config: ILQRConfig | None = None) -> None:
        self._config = config or ILQRConfig()

    @property
    def config(self) -> ILQRConfig:
        """The solver configuration."""
        return self._config

    def solve(
        self,
        problem: TrajectoryProblem,
        x_init: np.ndarray,
        u_nominal: np.ndarray | None = None,
    ) -> ILQRSolution:
        """Optimize ``problem`` from ``x_init``.

        :param problem: The tree to optimize. Mutated in place: its
            expansion points, value matrices and gains hold the result.
        :param x_init: Initial state, shape ``(state_dim,)``.
        :param u_nominal: Optional nominal control, shape
            ``(control_dim,)``. When given, every node is re-seeded
            from a rollout that applies it at every step.
        :returns: Solution summary with the convergence flag.
        """
        cfg = self._config
        x_init = np.asarray(x_init, dtype=np.float64)

        if u_nominal is not None:
            problem.seed(x_init, np.asarray(u_nominal, dtype=np.float64))

        # alpha = 0 reproduces the current expansion trajectory.
        rollout = problem.forward_pass(x_init, alpha=0.0)
        problem.accept(rollout)
        state = SolverState(mu=cfg.mu_init, alpha=cfg.alpha_init)
        state.cost_history.append(float(rollout.cost))

        converged = False
        while state.iteration < cfg.max_iterations:
            state.iteration += 1

            try:
                problem.backward_pass(state.mu)
            except NumericalFailureError as exc:
                state.increase_mu(cfg)
                logger.debug(
                    "iLQR iter {}: backward pass failed ({}), mu -> {:.2e}",
                    state.iteration, exc, state.mu,
                )
                if state.mu > cfg.mu_max:
                    logger.warning(
                        "iLQR: damping exceeded mu_max={:.1e}, stopping",
                        cfg.mu_max,
                    )
                    break
                continue

            candidate, rel_change = self._line_search(problem, x_init, state)

            if candidate is None:
                state.increase_mu(cfg)
                logger.debug(
                    "iLQR iter {}: no improving step, mu -> {:.2e}",
                    state.iteration, state.mu,
                )
                if state.mu > cfg.mu_max:
                    logger.warning(
                        "iLQR: damping exceeded mu_max={:.1e}, stopping",
                        cfg.mu_max,
                    )
                    break
                continue

            problem.accept(candidate)
            rollout = candidate
            state.cost_history.append(float(candidate.cost))
            state.decrease_mu(cfg)

            logger.debug(
                "iLQR iter {}: cost={:.6f}, rel_change={:.2e}, "
                "alpha={:.3g}, mu={:.2e}",
                state.iteration, state.cost, rel_change, state.alpha, state.mu,
            )

            if rel_change < cfg.convergence_tol:
                converged = True
                break

        logger.info(
            "iLQR: {} in {} iterations, cost={:.6f}, mu={:.2e}",
            "converged" if converged else "stopped",
            state.iteration,
            state.cost,
            state.mu,
        )

        return ILQRSolution(
            cost=state.cost,
            converged=converged,
            n_iterations=state.iteration,
            cost_history=list(state.cost_history),
            mu=state.mu,
            rollout=rollout,
        )

    def _line_search(
        self,
        problem: TrajectoryProblem,
        x_init: np.ndarray,
        state: SolverState,
    ) -> tuple[Any, float]:
        """Backtracking search on the feedforward step size.

        A step is accepted when it lowers the cost, or when it changes
        the cost by less than the convergence ratio.

        :returns: ``(rollout, relative_change)``, rollout ``None`` when
            every step was rejected.
        """
        cfg = self._config
        current = state.cost
        scale = max(abs(current), 1e-10)

        alpha = cfg.alpha_init
        for _ in range(cfg.max_line_search_steps):
            rollout = problem.forward_pass(x_init, alpha)
            new_cost = float(rollout.cost)
            if np.isfinite(new_cost):
                rel_change = abs(current - new_cost) / scale
                if new_cost < current or rel_change < cfg.convergence_tol:
                    state.alpha = alpha
                    return rollout, rel_change
            alpha *= cfg.alpha_decay

        state.alpha = alpha
        return None, float("inf")
