# ruff: noqa: ANN001 ANN201

"""Unit tests for the probability-weighted Bellman backup."""

from __future__ import annotations

import numpy as np
import pytest

from tree_ilqr.ilqr.bellman import (
    NumericalFailureError,
    Successor,
    bellman_backup,
    compute_control_policy,
    compute_value_matrix,
    damped_control_hessian,
)
from tree_ilqr.ilqr.plan_node import PlanNode

A_MAT = np.array([[1.0, 0.1], [0.0, 1.0]])
B_MAT = np.array([[0.0], [0.1]])
Q_MAT = np.diag([1.0, 0.5])
R_MAT = np.array([[0.2]])


def _dynamics(state, control):
    return A_MAT @ state + B_MAT @ control


def _cost(state, control, t):
    return float(state @ Q_MAT @ state + control @ R_MAT @ control)


def _lqr_node(x_hat=None) -> PlanNode:
    x_hat = np.zeros(2) if x_hat is None else x_hat
    return PlanNode(x_hat, np.zeros(1), dynamics=_dynamics, cost=_cost)


def _extended(p_mat: np.ndarray) -> np.ndarray:
    """Embed a pure quadratic value x'Px in the extended form."""
    value = np.zeros((3, 3))
    value[:2, :2] = p_mat
    return value


# ---------------------------------------------------------------------------
# Single successor
# ---------------------------------------------------------------------------

class TestSingleSuccessor:
    def test_matches_riccati_step(self):
        """With p = 1 at the origin the backup is one discrete Riccati step."""
        node = _lqr_node()
        p_next = np.array([[2.0, 0.3], [0.3, 1.5]])
        succ = Successor(1.0, node, _extended(p_next), np.zeros(2))
        feedback, feedforward, value = bellman_backup([succ])

        s_mat = R_MAT + B_MAT.T @ p_next @ B_MAT
        k_lqr = np.linalg.solve(s_mat, B_MAT.T @ p_next @ A_MAT)
        p_t = Q_MAT + A_MAT.T @ p_next @ A_MAT - A_MAT.T @ p_next @ B_MAT @ k_lqr

        np.testing.assert_allclose(feedback, -k_lqr, atol=1e-6)
        np.testing.assert_allclose(feedforward, [0.0], atol=1e-6)
        np.testing.assert_allclose(value[:2, :2], p_t, atol=1e-5)
        np.testing.assert_allclose(value[:2, 2], [0.0, 0.0], atol=1e-6)
        assert value[2, 2] == pytest.approx(0.0, abs=1e-8)

    def test_value_is_symmetric(self):
        node = _lqr_node(np.array([0.5, -0.2]))
        rng = np.random.default_rng(0)
        raw = rng.normal(size=(3, 3))
        v_next = raw @ raw.T + np.eye(3)
        succ = Successor(1.0, node, v_next, np.array([0.4, 0.1]))
        _, _, value = bellman_backup([succ])
        np.testing.assert_allclose(value, value.T)

    def test_affine_offset_moves_feedforward(self):
        """A successor expanded below f(x_hat, u_hat) pulls the control down."""
        node = _lqr_node()
        p_next = np.eye(2)
        succ_same = Successor(1.0, node, _extended(p_next), np.zeros(2))
        succ_off = Successor(1.0, node, _extended(p_next), np.array([0.0, -1.0]))
        _, k_same = compute_control_policy([succ_same])
        _, k_off = compute_control_policy([succ_off])
        np.testing.assert_allclose(k_same, [0.0], atol=1e-8)
        assert k_off[0] < 0.0

    def test_backup_is_idempotent(self):
        node = _lqr_node(np.array([0.1, 0.2]))
        succ = Successor(1.0, node, _extended(np.eye(2)), np.array([0.3, 0.0]))
        first = bellman_backup([succ], mu=0.1)
        second = bellman_backup([succ], mu=0.1)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a, b)


# ---------------------------------------------------------------------------
# Multiple successors
# ---------------------------------------------------------------------------

class TestWeightedSuccessors:
    def test_value_is_probability_weighted(self):
        node = _lqr_node(np.array([0.2, -0.1]))
        s1 = Successor(0.3, node, _extended(np.diag([2.0, 1.0])), np.zeros(2))
        s2 = Successor(0.7, node, _extended(np.diag([0.5, 4.0])), np.array([0.1, 0.0]))
        feedback, feedforward, value = bellman_backup([s1, s2])

        expected = (
            0.3 * compute_value_matrix(s1, feedback, feedforward)
            + 0.7 * compute_value_matrix(s2, feedback, feedforward)
        )
        np.testing.assert_allclose(value, expected)

    def test_identical_successors_match_single_successor(self):
        node = _lqr_node(np.array([0.4, 0.3]))
        v_next = _extended(np.array([[1.5, 0.2], [0.2, 0.8]]))
        x_next = np.array([0.1, 0.2])
        single = bellman_backup([Successor(1.0, node, v_next, x_next)])
        split = bellman_backup([
            Successor(0.25, node, v_next, x_next),
            Successor(0.75, node, v_next, x_next),
        ])
        for a, b in zip(single, split):
            np.testing.assert_allclose(a, b, atol=1e-12)

    def test_control_hessian_aggregates_successors(self):
        node = _lqr_node()
        v1, v2 = _extended(np.eye(2)), _extended(3.0 * np.eye(2))
        s_mat = damped_control_hessian(
            [Successor(0.5, node, v1, np.zeros(2)),
             Successor(0.5, node, v2, np.zeros(2))],
            mu=0.0,
        )
        expected = R_MAT + B_MAT.T @ (0.5 * np.eye(2) + 1.5 * np.eye(2)) @ B_MAT
        np.testing.assert_allclose(s_mat, expected, atol=1e-6)

    def test_empty_successors_rejected(self):
        with pytest.raises(ValueError, match="successors"):
            compute_control_policy([])


# ---------------------------------------------------------------------------
# Damping and failures
# ---------------------------------------------------------------------------

class TestDamping:
    def test_damping_shrinks_gains(self):
        node = _lqr_node()
        succ = Successor(1.0, node, _extended(np.eye(2)), np.array([0.0, -1.0]))
        norms = []
        for mu in (0.0, 0.1, 1.0, 10.0):
            feedback, feedforward = compute_control_policy([succ], mu)
            norms.append((np.linalg.norm(feedback), np.linalg.norm(feedforward)))
        for (k_prev, f_prev), (k_next, f_next) in zip(norms, norms[1:]):
            assert k_next < k_prev
            assert f_next < f_prev

    def test_damping_raises_smallest_eigenvalue(self):
        node = _lqr_node()
        succ = Successor(1.0, node, _extended(np.eye(2)), np.zeros(2))
        smallest = [
            np.linalg.eigvalsh(damped_control_hessian([succ], mu)).min()
            for mu in (0.0, 0.1, 1.0)
        ]
        for prev, nxt in zip(smallest, smallest[1:]):
            assert nxt > prev
        assert smallest[2] - smallest[0] == pytest.approx(1.0)

    def test_indefinite_control_hessian_raises(self):
        def concave_cost(state, control, t):
            return float(state @ state - control @ control)

        node = PlanNode(np.zeros(2), np.zeros(1), _dynamics, concave_cost)
        succ = Successor(1.0, node, np.zeros((3, 3)), np.zeros(2))
        with pytest.raises(NumericalFailureError, match="positive definite"):
            compute_control_policy([succ])

    def test_damping_recovers_indefinite_hessian(self):
        def concave_cost(state, control, t):
            return float(state @ state - control @ control)

        node = PlanNode(np.zeros(2), np.zeros(1), _dynamics, concave_cost)
        succ = Successor(1.0, node, np.zeros((3, 3)), np.zeros(2))
        feedback, _ = compute_control_policy([succ], mu=10.0)
        assert np.all(np.isfinite(feedback))

    def test_non_finite_value_raises(self):
        node = _lqr_node()
        v_next = _extended(np.eye(2))
        v_next[0, 0] = np.nan
        with pytest.raises(NumericalFailureError):
            bellman_backup([Successor(1.0, node, v_next, np.zeros(2))])

    def test_failure_is_a_linalg_error(self):
        assert issubclass(NumericalFailureError, np.linalg.LinAlgError)
