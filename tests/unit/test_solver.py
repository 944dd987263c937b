# ruff: noqa: ANN001 ANN201

"""Unit tests for the iLQR solver loop."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from tree_ilqr.ilqr.bellman import NumericalFailureError
from tree_ilqr.ilqr.ilqr_tree import ILQRTree
from tree_ilqr.ilqr.lqr import LinearDynamics, LQRSolver, QuadraticCost
from tree_ilqr.ilqr.solver import (
    ILQRConfig,
    ILQRSolution,
    ILQRSolver,
    SolverState,
    TrajectoryProblem,
)


# ---------------------------------------------------------------------------
# Test problems
# ---------------------------------------------------------------------------

def _integrator(state, control):
    return state + control


def _cost(state, control, t):
    return float(state @ state + control @ control)


def _final_cost(state):
    return float(state @ state)


def _scalar_chain(horizon: int, x0: float = 1.0) -> tuple[ILQRTree, int]:
    """x' = x + u, c = x^2 + u^2, c_f = x^2, seeded with u = 0."""
    tree = ILQRTree(1, 1)
    root = tree.add_root(tree.make_plan_node([x0], [0.0], _integrator, _cost))
    tree.extend_chain(
        root, _integrator, _cost, _final_cost,
        x_stars=np.full((horizon, 1), x0), u_stars=np.zeros((horizon - 1, 1)),
    )
    return tree, root


@dataclass
class _FakeRollout:
    cost: float


class _AlwaysFailing(TrajectoryProblem):
    """Backward pass never succeeds."""

    def __init__(self) -> None:
        self.mus: list[float] = []

    def seed(self, x_init, u_nominal):
        pass

    def backward_pass(self, mu=0.0):
        self.mus.append(mu)
        raise NumericalFailureError("indefinite")

    def forward_pass(self, x_init, alpha=1.0):
        return _FakeRollout(cost=1.0)

    def accept(self, rollout):
        pass


class _NeverImproving(TrajectoryProblem):
    """Every step away from the nominal trajectory is worse."""

    def __init__(self) -> None:
        self.alphas: list[float] = []

    def seed(self, x_init, u_nominal):
        pass

    def backward_pass(self, mu=0.0):
        pass

    def forward_pass(self, x_init, alpha=1.0):
        self.alphas.append(alpha)
        return _FakeRollout(cost=1.0 + alpha)

    def accept(self, rollout):
        pass


# ---------------------------------------------------------------------------
# Config and state
# ---------------------------------------------------------------------------

class TestILQRConfig:
    def test_defaults(self):
        cfg = ILQRConfig()
        assert cfg.max_iterations == 1000
        assert cfg.mu_init == 0.0
        assert 0 < cfg.alpha_decay < 1

    @pytest.mark.parametrize(
        ("kwargs", "match"),
        [
            ({"max_iterations": 0}, "max_iterations"),
            ({"convergence_tol": 0.0}, "convergence_tol"),
            ({"mu_init": -1.0}, "mu_init"),
            ({"mu_min": 0.0}, "mu_min"),
            ({"mu_min": 10.0, "mu_max": 1.0}, "mu_min"),
            ({"mu_factor": 1.0}, "mu_factor"),
            ({"alpha_init": 1.5}, "alpha_init"),
            ({"alpha_decay": 1.0}, "alpha_decay"),
            ({"max_line_search_steps": 0}, "max_line_search_steps"),
        ],
    )
    def test_invalid_values_rejected(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            ILQRConfig(**kwargs)


class TestSolverState:
    def test_increase_from_zero_jumps_to_mu_min(self):
        cfg = ILQRConfig(mu_min=1e-4)
        state = SolverState(mu=0.0, alpha=1.0)
        state.increase_mu(cfg)
        assert state.mu == 1e-4
        state.increase_mu(cfg)
        assert state.mu == pytest.approx(1e-3)

    def test_decrease_below_mu_min_resets_to_zero(self):
        cfg = ILQRConfig(mu_min=1e-4)
        state = SolverState(mu=1e-2, alpha=1.0)
        state.decrease_mu(cfg)
        assert state.mu == pytest.approx(1e-3)
        state.decrease_mu(cfg)
        state.decrease_mu(cfg)
        assert state.mu == 0.0


# ---------------------------------------------------------------------------
# Solver loop
# ---------------------------------------------------------------------------

class TestILQRSolver:
    def test_matches_riccati_on_scalar_integrator(self):
        """x' = x + u, c = x^2 + u^2, c_f = x^2, T = 5, x0 = 1."""
        horizon = 5
        tree, root = _scalar_chain(horizon)
        solution = ILQRSolver().solve(tree, np.array([1.0]))

        lqr = LQRSolver().solve_finite_horizon(
            LinearDynamics(np.eye(1), np.eye(1)),
            QuadraticCost(np.eye(1), np.eye(1)),
            terminal_q=np.eye(1),
            horizon=horizon,
        )
        assert isinstance(solution, ILQRSolution)
        assert solution.converged
        assert solution.cost == pytest.approx(lqr.optimal_cost(np.array([1.0])), rel=1e-5)
        np.testing.assert_allclose(
            tree.node(root).feedback_gain, -lqr.gains[0], atol=1e-5,
        )
        assert solution.cost_history[0] == pytest.approx(6.0)

    def test_cost_history_is_non_increasing(self):
        tree, _ = _scalar_chain(6, x0=2.0)
        solution = ILQRSolver().solve(tree, np.array([2.0]))
        history = np.array(solution.cost_history)
        assert np.all(np.diff(history) <= 1e-9 * history[:-1])

    def test_nonlinear_problem_converges(self):
        def pendulum_like(state, control):
            return np.array([state[0] + 0.1 * np.sin(state[0]) + 0.1 * control[0]])

        tree = ILQRTree(1, 1)
        root = tree.add_root(tree.make_plan_node([1.0], [0.0], pendulum_like, _cost))
        tree.extend_chain(
            root, pendulum_like, _cost, _final_cost,
            x_stars=np.ones((10, 1)), u_stars=np.zeros((9, 1)),
        )
        solution = ILQRSolver(ILQRConfig(max_iterations=100)).solve(
            tree, np.array([1.0]), u_nominal=np.array([0.0]),
        )
        assert solution.converged
        assert solution.cost < solution.cost_history[0]

    def test_iteration_limit_reported_not_raised(self):
        tree, _ = _scalar_chain(5)
        solution = ILQRSolver(ILQRConfig(max_iterations=1)).solve(tree, np.array([1.0]))
        assert not solution.converged
        assert solution.n_iterations == 1

    def test_u_nominal_reseeds_problem(self):
        tree, root = _scalar_chain(3)
        solution = ILQRSolver(ILQRConfig(max_iterations=1)).solve(
            tree, np.array([1.0]), u_nominal=np.array([-0.5]),
        )
        # Nominal: x = 1, 0.5, 0 with u = -0.5 at each of three steps.
        assert solution.cost_history[0] == pytest.approx(
            1.0 + 0.25 + 0.25 + 0.25 + 0.0 + 0.25 + 0.25,
        )

    def test_backward_failures_raise_damping_until_mu_max(self):
        cfg = ILQRConfig(mu_max=1e-2)
        problem = _AlwaysFailing()
        solution = ILQRSolver(cfg).solve(problem, np.zeros(1))
        assert not solution.converged
        assert solution.mu > cfg.mu_max
        assert problem.mus[0] == 0.0
        assert problem.mus[1] == cfg.mu_min
        assert all(b > a for a, b in zip(problem.mus[1:], problem.mus[2:]))

    def test_rejected_line_search_shrinks_alpha_then_damps(self):
        cfg = ILQRConfig(max_iterations=2, max_line_search_steps=3)
        problem = _NeverImproving()
        solution = ILQRSolver(cfg).solve(problem, np.zeros(1))
        assert problem.alphas[:4] == [0.0, 1.0, 0.5, 0.25]
        assert not solution.converged
        assert solution.mu > 0.0
        assert solution.cost == 1.0
