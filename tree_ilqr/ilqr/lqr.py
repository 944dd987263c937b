r"""Closed-form Linear-Quadratic Regulator.

For linear dynamics and quadratic costs the Bellman recursion has an
exact solution. The finite-horizon Riccati recursion gives the optimum a
single-branch tree-iLQR run must reproduce; the infinite-horizon gain
comes from the Discrete Algebraic Riccati Equation.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from loguru import logger
from scipy import linalg


@dataclass(frozen=True)
class LinearDynamics:
    r"""Linear dynamics model: :math:`x_{t+1} = A x_t + B u_t + c`.

    :param a_matrix: State transition matrix, shape ``(state_dim, state_dim)``.
    :param b_matrix: Control input matrix, shape ``(state_dim, control_dim)``.
    :param c_vector: Constant offset vector, shape ``(state_dim,)``.
        Defaults to zeros if not provided.
    """

    a_matrix: np.ndarray
    b_matrix: np.ndarray
    c_vector: np.ndarray | None = None

    @property
    def state_dim(self) -> int:
        """State dimensionality."""
        return int(self.a_matrix.shape[0])

    @property
    def control_dim(self) -> int:
        """Control dimensionality."""
        return int(self.b_matrix.shape[1])

    def __post_init__(self) -> None:
        if self.a_matrix.ndim != 2 or self.b_matrix.ndim != 2:
            raise ValueError("A and B must be 2-D arrays")
        if self.b_matrix.shape[0] != self.a_matrix.shape[0]:
            raise ValueError(
                f"B row count {self.b_matrix.shape[0]} != A row count "
                f"{self.a_matrix.shape[0]}"
            )

    def __call__(self, x: np.ndarray, u: np.ndarray) -> np.ndarray:
        x_next = self.a_matrix @ x + self.b_matrix @ u
        if self.c_vector is not None:
            x_next = x_next + self.c_vector
        return x_next


@dataclass(frozen=True)
class QuadraticCost:
    r"""Quadratic cost: :math:`c_t = x_t^T Q x_t + u_t^T R u_t`.

    :param q_matrix: State cost matrix, shape ``(state_dim, state_dim)``.
        Must be positive semi-definite.
    :param r_matrix: Control cost matrix, shape ``(control_dim, control_dim)``.
        Must be positive definite.
    """

    q_matrix: np.ndarray
    r_matrix: np.ndarray

    def __post_init__(self) -> None:
        if self.q_matrix.shape[0] != self.q_matrix.shape[1]:
            raise ValueError(f"Q must be square, got shape {self.q_matrix.shape}")
        if self.r_matrix.shape[0] != self.r_matrix.shape[1]:
            raise ValueError(f"R must be square, got shape {self.r_matrix.shape}")

    def __call__(self, x: np.ndarray, u: np.ndarray, t: int = 0) -> float:
        return float(x @ self.q_matrix @ x + u @ self.r_matrix @ u)


@dataclass(frozen=True)
class LQRSolution:
    r"""Infinite-horizon LQR solution; the feedback law is :math:`u = -K x`.

    :param k_gain: Feedback gain matrix, shape ``(control_dim, state_dim)``.
    :param p_matrix: Solution to the DARE, shape ``(state_dim, state_dim)``.
    :param is_stable: Whether all eigenvalues of :math:`A - BK` lie
        inside the unit circle.
    """

    k_gain: np.ndarray
    p_matrix: np.ndarray
    is_stable: bool


@dataclass(frozen=True)
class FiniteHorizonLQRSolution:
    """Time-varying LQR solution over ``horizon`` steps.

    :param gains: ``K_t`` for ``t = 0 .. horizon-1``, with ``u_t = -K_t x_t``.
    :param p_matrices: Cost-to-go matrices ``P_t`` for ``t = 0 .. horizon``.
    """

    gains: list[np.ndarray] = field(default_factory=list)
    p_matrices: list[np.ndarray] = field(default_factory=list)

    @property
    def horizon(self) -> int:
        """Number of control steps."""
        return len(self.gains)

    def optimal_cost(self, x_init: np.ndarray) -> float:
        """Minimal total cost :math:`x_0^T P_0 x_0` from ``x_init``."""
        x_init = np.asarray(x_init, dtype=np.float64)
        return float(x_init @ self.p_matrices[0] @ x_init)


class LQRSolver:
    r"""Closed-form LQR via Riccati equations.

    With :math:`x_{t+1} = A x_t + B u_t` and stage cost
    :math:`x^T Q x + u^T R u`, the optimal policy is :math:`u_t = -K_t x_t`
    with

    .. math::

        K_t = (R + B^T P_{t+1} B)^{-1} B^T P_{t+1} A, \qquad
        P_t = Q + A^T P_{t+1} (A - B K_t)
    """

    def solve(
        self,
        dynamics: LinearDynamics,
        cost: QuadraticCost,
    ) -> LQRSolution:
        """Solve the infinite-horizon problem.

        :raises ValueError: If the DARE has no solution.
        """
        a_mat = dynamics.a_matrix  # (n, n)
        b_mat = dynamics.b_matrix  # (n, m)
        if a_mat.shape[0] != a_mat.shape[1]:
            raise ValueError(f"A must be square for LQR, got shape {a_mat.shape}")

        try:
            p_mat = linalg.solve_discrete_are(
                a_mat, b_mat, cost.q_matrix, cost.r_matrix,
            )
        except (linalg.LinAlgError, np.linalg.LinAlgError) as exc:
            raise ValueError(
                f"DARE has no solution (system may be unstabilizable): {exc}"
            ) from exc

        k_gain = self._gain(a_mat, b_mat, cost.r_matrix, p_mat)  # (m, n)
        eigenvalues = np.linalg.eigvals(a_mat - b_mat @ k_gain)
        is_stable = bool(np.all(np.abs(eigenvalues) < 1.0))

        logger.debug(
            "LQR solved: state_dim={}, control_dim={}, stable={}, "
            "max_eigval={:.4f}",
            dynamics.state_dim, dynamics.control_dim, is_stable,
            float(np.max(np.abs(eigenvalues))),
        )
        return LQRSolution(k_gain=k_gain, p_matrix=p_mat, is_stable=is_stable)

    def solve_finite_horizon(
        self,
        dynamics: LinearDynamics,
        cost: QuadraticCost,
        terminal_q: np.ndarray,
        horizon: int,
    ) -> FiniteHorizonLQRSolution:
        """Backward Riccati recursion over ``horizon`` steps.

        :param dynamics: Linear dynamics; the offset must be absent.
        :param cost: Stage cost.
        :param terminal_q: Final cost matrix ``Q_f``.
        :param horizon: Number of control steps, ``>= 1``.
        :raises ValueError: On a non-positive horizon or an affine offset.
        """
        if horizon < 1:
            raise ValueError(f"horizon must be >= 1, got {horizon}")
        if dynamics.c_vector is not None and np.any(dynamics.c_vector):
            raise ValueError("Finite-horizon LQR needs dynamics without offset")

        a_mat, b_mat = dynamics.a_matrix, dynamics.b_matrix
        p_next = np.asarray(terminal_q, dtype=np.float64)
        gains: list[np.ndarray] = []
        p_matrices = [p_next]
        for _ in range(horizon):
            k_gain = self._gain(a_mat, b_mat, cost.r_matrix, p_next)
            p_t = cost.q_matrix + a_mat.T @ p_next @ (a_mat - b_mat @ k_gain)
            p_next = 0.5 * (p_t + p_t.T)
            gains.append(k_gain)
            p_matrices.append(p_next)

        return FiniteHorizonLQRSolution(
            gains=gains[::-1], p_matrices=p_matrices[::-1],
        )

    @staticmethod
    def _gain(
        a_mat: np.ndarray,
        b_mat: np.ndarray,
        r_mat: np.ndarray,
        p_mat: np.ndarray,
    ) -> np.ndarray:
        return np.linalg.solve(
            r_mat + b_mat.T @ p_mat @ b_mat, b_mat.T @ p_mat @ a_mat,
        )
