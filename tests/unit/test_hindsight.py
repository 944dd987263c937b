# ruff: noqa: ANN001 ANN201

"""Unit tests for the hindsight-split tree and solver."""

from __future__ import annotations

import numpy as np
import pytest

from tree_ilqr.ilqr.hindsight import (
    SPLIT_PROBABILITY_EPS,
    HindsightSolver,
    HindsightSplit,
    HindsightTree,
)
from tree_ilqr.ilqr.ilqr_tree import ILQRTree
from tree_ilqr.ilqr.solver import ILQRConfig, ILQRSolver

HORIZON = 4
X0 = np.array([1.0])
U0 = np.array([0.0])


def _slow(state, control):
    return state + control


def _fast(state, control):
    return state + 2.0 * control


def _cost(state, control, t):
    return float(state @ state + control @ control)


def _final_cost(state):
    return float(state @ state)


def _split(dynamics, probability) -> HindsightSplit:
    return HindsightSplit(dynamics, _final_cost, _cost, probability)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestHindsightValidation:
    def test_empty_splits_rejected(self):
        with pytest.raises(ValueError, match="at least one"):
            HindsightTree([], HORIZON, X0, U0)

    def test_probability_sum_checked(self):
        with pytest.raises(ValueError, match="sum to 1"):
            HindsightSolver([_split(_slow, 0.5), _split(_fast, 0.4)])

    def test_probability_sum_tolerance(self):
        eps = 0.5 * SPLIT_PROBABILITY_EPS
        HindsightSolver([_split(_slow, 0.5 + eps), _split(_fast, 0.5)])

    def test_probability_range_checked(self):
        with pytest.raises(ValueError, match=r"\[0, 1\]"):
            HindsightTree([_split(_slow, 1.5), _split(_fast, -0.5)], HORIZON, X0, U0)

    def test_horizon_checked(self):
        with pytest.raises(ValueError, match="horizon"):
            HindsightTree([_split(_slow, 1.0)], 0, X0, U0)

    def test_dimension_mismatch_rejected(self):
        def widening(state, control):
            return np.append(state, 0.0)

        with pytest.raises(ValueError, match="size"):
            HindsightTree([_split(widening, 1.0)], HORIZON, X0, U0)


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

class TestHindsightTree:
    def test_layout(self):
        tree = HindsightTree(
            [_split(_slow, 0.3), _split(_fast, 0.7)], HORIZON, X0, U0,
        )
        assert tree.n_branches == 2
        assert tree.horizon == HORIZON
        for branch in tree.branches:
            assert len(branch.nodes) == HORIZON + 1
            assert branch.nodes[-1].is_terminal
            assert [n.timestep for n in branch.nodes] == list(range(HORIZON + 1))
        assert tree.branches[0].nodes[0].probability == 0.3
        assert tree.branches[1].nodes[0].probability == 0.7
        assert tree.branches[1].nodes[1].probability == 1.0

    def test_root_policy_is_shared(self):
        tree = HindsightTree(
            [_split(_slow, 0.3), _split(_fast, 0.7)], HORIZON, X0, U0,
        )
        tree.backward_pass()
        u_a = tree.compute_control(0, X0, 0)
        u_b = tree.compute_control(1, X0, 0)
        np.testing.assert_allclose(u_a, u_b)
        assert not np.allclose(
            tree.branches[0].nodes[1].feedback_gain,
            tree.branches[1].nodes[1].feedback_gain,
        )

    def test_compute_control_out_of_horizon(self):
        tree = HindsightTree([_split(_slow, 1.0)], HORIZON, X0, U0)
        with pytest.raises(IndexError):
            tree.compute_control(0, X0, HORIZON)

    @pytest.mark.parametrize("branch", [-1, 1])
    def test_compute_control_rejects_unknown_branch(self, branch):
        tree = HindsightTree([_split(_slow, 1.0)], HORIZON, X0, U0)
        with pytest.raises(IndexError, match="Branch"):
            tree.compute_control(branch, X0, 0)

    def test_branch_rollout_rejects_negative_index(self):
        tree = HindsightTree([_split(_slow, 1.0)], HORIZON, X0, U0)
        with pytest.raises(IndexError, match="Branch"):
            tree.forward_pass_branch(-1, X0)

    def test_expected_cost_weights_branches(self):
        tree = HindsightTree(
            [_split(_slow, 0.3), _split(_fast, 0.7)], HORIZON, X0, U0,
        )
        tree.backward_pass()
        rollout = tree.forward_pass(X0, alpha=1.0)
        expected = 0.3 * rollout.branches[0].cost + 0.7 * rollout.branches[1].cost
        assert rollout.cost == pytest.approx(expected)

    def test_zero_alpha_reproduces_nominal(self):
        tree = HindsightTree(
            [_split(_slow, 0.5), _split(_fast, 0.5)], HORIZON, X0, U0,
        )
        tree.backward_pass()
        rollout = tree.forward_pass(X0, alpha=0.0)
        for branch, branch_rollout in zip(tree.branches, rollout.branches):
            np.testing.assert_allclose(branch_rollout.states, branch.x_hat)
            np.testing.assert_allclose(branch_rollout.controls, branch.u_hat)


# ---------------------------------------------------------------------------
# Solver
# ---------------------------------------------------------------------------

class TestHindsightSolver:
    def test_identical_splits_match_chain(self):
        """Splitting one future into identical halves changes nothing."""
        config = ILQRConfig(max_iterations=20, convergence_tol=1e-8)
        solver = HindsightSolver(
            [_split(_slow, 0.25), _split(_slow, 0.75)], config,
        )
        hindsight = solver.solve(HORIZON, X0, U0)

        chain = ILQRTree(1, 1)
        root = chain.add_root(chain.make_plan_node(X0, U0, _slow, _cost))
        chain.extend_chain(
            root, _slow, _cost, _final_cost,
            x_stars=np.ones((HORIZON, 1)), u_stars=np.zeros((HORIZON - 1, 1)),
        )
        chain_solution = ILQRSolver(config).solve(chain, X0)

        assert hindsight.cost == pytest.approx(chain_solution.cost, rel=1e-6)
        np.testing.assert_allclose(
            solver.compute_control(0, X0, 0),
            chain.node(root).compute_control(X0),
            atol=1e-6,
        )

    def test_solve_reduces_expected_cost(self):
        solver = HindsightSolver([_split(_slow, 0.5), _split(_fast, 0.5)])
        solution = solver.solve(HORIZON, X0, U0)
        assert solution.converged
        assert solution.cost < solution.cost_history[0]
        assert solver.timesteps() == HORIZON

    def test_hedged_control_between_branch_optima(self):
        """With a slow and a fast actuator the root control is a compromise."""
        controls = []
        for dynamics in (_slow, _fast):
            single = HindsightSolver([_split(dynamics, 1.0)])
            single.solve(HORIZON, X0, U0)
            controls.append(single.compute_control(0, X0, 0)[0])

        hedged = HindsightSolver([_split(_slow, 0.5), _split(_fast, 0.5)])
        hedged.solve(HORIZON, X0, U0)
        u0 = hedged.compute_control(0, X0, 0)[0]
        assert min(controls) - 1e-6 <= u0 <= max(controls) + 1e-6

    def test_branch_forward_pass(self):
        solver = HindsightSolver([_split(_slow, 0.5), _split(_fast, 0.5)])
        solver.solve(HORIZON, X0, U0)
        rollout = solver.forward_pass(1, X0)
        assert rollout.states.shape == (HORIZON + 1, 1)
        assert rollout.controls.shape == (HORIZON, 1)
        assert abs(rollout.states[-1, 0]) < abs(X0[0])

    def test_queries_before_solve(self):
        solver = HindsightSolver([_split(_slow, 1.0)])
        assert solver.timesteps() == 0
        with pytest.raises(RuntimeError, match="solve"):
            solver.compute_control(0, X0, 0)
