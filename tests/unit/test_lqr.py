# ruff: noqa: ANN001 ANN201

"""Tests for tree_ilqr.ilqr.lqr."""

import numpy as np
import pytest

from tree_ilqr.ilqr.lqr import LinearDynamics, LQRSolver, QuadraticCost


@pytest.fixture
def double_integrator() -> LinearDynamics:
    dt = 0.1
    return LinearDynamics(
        a_matrix=np.array([[1.0, dt], [0.0, 1.0]]),
        b_matrix=np.array([[0.5 * dt ** 2], [dt]]),
    )


@pytest.fixture
def unit_cost() -> QuadraticCost:
    return QuadraticCost(q_matrix=np.eye(2), r_matrix=np.array([[0.1]]))


class TestLinearModels:
    def test_dynamics_with_offset(self):
        dyn = LinearDynamics(np.eye(1), np.eye(1), c_vector=np.array([0.5]))
        np.testing.assert_allclose(dyn(np.array([1.0]), np.array([2.0])), [3.5])

    def test_dynamics_shape_mismatch(self):
        with pytest.raises(ValueError, match="row count"):
            LinearDynamics(np.eye(2), np.ones((3, 1)))

    def test_cost_must_be_square(self):
        with pytest.raises(ValueError, match="square"):
            QuadraticCost(np.ones((2, 3)), np.eye(1))

    def test_cost_value(self, unit_cost):
        assert unit_cost(np.array([1.0, 2.0]), np.array([3.0])) == pytest.approx(5.9)


class TestInfiniteHorizon:
    def test_double_integrator_is_stabilized(self, double_integrator, unit_cost):
        solution = LQRSolver().solve(double_integrator, unit_cost)
        assert solution.is_stable
        assert solution.k_gain.shape == (1, 2)
        np.testing.assert_allclose(solution.p_matrix, solution.p_matrix.T, atol=1e-10)

    def test_rejects_non_square_a(self, unit_cost):
        dyn = LinearDynamics(np.ones((2, 3)), np.ones((2, 1)))
        with pytest.raises(ValueError, match="square"):
            LQRSolver().solve(dyn, unit_cost)


class TestFiniteHorizon:
    def test_scalar_recursion_by_hand(self):
        """x' = x + u, c = x^2 + u^2, c_f = x^2."""
        solution = LQRSolver().solve_finite_horizon(
            LinearDynamics(np.eye(1), np.eye(1)),
            QuadraticCost(np.eye(1), np.eye(1)),
            terminal_q=np.eye(1),
            horizon=2,
        )
        # P_2 = 1; K_1 = 1/2, P_1 = 1 + 1/2; K_0 = 1.5/2.5, P_0 = 1 + 1.5/2.5
        assert solution.horizon == 2
        np.testing.assert_allclose(solution.gains[1], [[0.5]])
        np.testing.assert_allclose(solution.gains[0], [[0.6]])
        np.testing.assert_allclose(solution.p_matrices[0], [[1.6]])
        assert solution.optimal_cost(np.array([2.0])) == pytest.approx(6.4)

    def test_long_horizon_approaches_dare(self, double_integrator, unit_cost):
        finite = LQRSolver().solve_finite_horizon(
            double_integrator, unit_cost, terminal_q=np.eye(2), horizon=500,
        )
        dare = LQRSolver().solve(double_integrator, unit_cost)
        np.testing.assert_allclose(finite.gains[0], dare.k_gain, rtol=1e-4)

    def test_rejects_bad_horizon(self, double_integrator, unit_cost):
        with pytest.raises(ValueError, match="horizon"):
            LQRSolver().solve_finite_horizon(
                double_integrator, unit_cost, np.eye(2), horizon=0,
            )

    def test_rejects_affine_dynamics(self, unit_cost):
        dyn = LinearDynamics(np.eye(2), np.ones((2, 1)), c_vector=np.ones(2))
        with pytest.raises(ValueError, match="offset"):
            LQRSolver().solve_finite_horizon(dyn, unit_cost, np.eye(2), horizon=3)
