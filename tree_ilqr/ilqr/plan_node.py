r"""Plan node: one timestep of one branch of the scenario tree.

A node owns its expansion point :math:`(\hat{x}, \hat{u})`, the local
linear-quadratic model built around it, its quadratic value function
and its control policy.

Quadratic forms use the extended deviation state

.. math::

    z = \begin{bmatrix} x - \hat{x} \\ 1 \end{bmatrix},
    \qquad v = u - \hat{u},

with the stage cost approximated as

.. math::

    c \approx z^T Q z + 2 z^T P v + v^T R v + 2 b_u^T v

and the cost-to-go as :math:`J(z) = z^T V z`. Folding the constant into
the extended state keeps the linear and constant value terms inside the
single :math:`(n+1) \times (n+1)` matrix :math:`V`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from tree_ilqr.ilqr.bellman import NumericalFailureError
from tree_ilqr.ilqr.taylor_expansion import (
    as_dynamics_model,
    as_final_cost_model,
    as_stage_cost_model,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from tree_ilqr.ilqr.taylor_expansion import (
        DynamicsModel,
        FinalCostModel,
        StageCostModel,
    )


class PlanNode:
    r"""A single node of the iLQR scenario tree.

    Non-terminal nodes carry dynamics and a stage cost; terminal nodes
    carry only a final cost and have no control. The model builder runs
    immediately on construction and again on every
    :meth:`set_linearization`.

    :param x_star: Nominal state, shape ``(state_dim,)``.
    :param u_star: Nominal control, shape ``(control_dim,)``. ``None``
        for terminal nodes.
    :param dynamics: Dynamics model or callable ``(x, u) -> x'``.
    :param cost: Stage cost model or callable ``(x, u, t) -> float``.
    :param final_cost: Terminal cost model or callable ``(x) -> float``.
        Supplying it without dynamics makes the node terminal.
    :param probability: Probability of reaching this node from its
        parent, in ``[0, 1]``.
    :param timestep: Timestep passed to the stage cost.
    :raises ValueError: If the probability is out of range or the
        node is neither a complete stage node nor a terminal node.
    """

    def __init__(
        self,
        x_star: np.ndarray,
        u_star: np.ndarray | None = None,
        dynamics: DynamicsModel | Callable[..., np.ndarray] | None = None,
        cost: StageCostModel | Callable[..., float] | None = None,
        final_cost: FinalCostModel | Callable[..., float] | None = None,
        probability: float = 1.0,
        timestep: int = 0,
    ) -> None:
        if not 0.0 <= probability <= 1.0:
            raise ValueError(
                f"Node probability must be in [0, 1], got {probability}"
            )

        is_terminal = dynamics is None
        if is_terminal:
            if final_cost is None:
                raise ValueError(
                    "A node without dynamics must be given a final cost"
                )
        elif cost is None or u_star is None:
            raise ValueError(
                "A node with dynamics needs a stage cost and a nominal control"
            )

        self._dynamics = None if is_terminal else as_dynamics_model(dynamics)
        self._cost = None if is_terminal else as_stage_cost_model(cost)
        self._final_cost = (
            as_final_cost_model(final_cost) if final_cost is not None else None
        )
        self.probability = float(probability)
        self.timestep = int(timestep)

        x_star = np.asarray(x_star, dtype=np.float64).reshape(-1)
        self._x_star = x_star.copy()
        self._x_star.setflags(write=False)
        self._state_dim = x_star.shape[0]

        if is_terminal:
            self._control_dim = 0
            self._u_star = np.zeros(0)
        else:
            u_star = np.asarray(u_star, dtype=np.float64).reshape(-1)
            self._control_dim = u_star.shape[0]
            self._u_star = u_star.copy()
        self._u_star.setflags(write=False)

        n, m = self._state_dim, self._control_dim
        self.x_hat = self._x_star.copy()
        self.u_hat = self._u_star.copy()

        # Dynamics approximation
        self.a_matrix = np.zeros((n, n))
        self.b_matrix = np.zeros((n, m))
        self.f_hat = np.zeros(n)

        # Cost approximation
        self.q_matrix = np.zeros((n + 1, n + 1))
        self.r_matrix = np.zeros((m, m))
        self.p_matrix = np.zeros((n + 1, m))
        self.b_x = np.zeros(n)
        self.b_u = np.zeros(m)

        # Value function and policy
        self.value = np.zeros((n + 1, n + 1))
        self.feedback_gain = np.zeros((m, n))
        self.feedforward_gain = np.zeros(m)

        self.update_dynamics()
        self.update_cost()

    @property
    def state_dim(self) -> int:
        """State dimensionality."""
        return self._state_dim

    @property
    def control_dim(self) -> int:
        """Control dimensionality (0 for terminal nodes)."""
        return self._control_dim

    @property
    def is_terminal(self) -> bool:
        """Whether the node carries a final cost and no dynamics."""
        return self._dynamics is None

    @property
    def x_star(self) -> np.ndarray:
        """Nominal state supplied at construction (read-only)."""
        return self._x_star

    @property
    def u_star(self) -> np.ndarray:
        """Nominal control supplied at construction (read-only)."""
        return self._u_star

    @property
    def dynamics(self) -> DynamicsModel | None:
        """The node's dynamics model (``None`` for terminal nodes)."""
        return self._dynamics

    @property
    def cost(self) -> StageCostModel | None:
        """The node's stage cost model (``None`` for terminal nodes)."""
        return self._cost

    @property
    def final_cost(self) -> FinalCostModel | None:
        """The node's terminal cost model, if any."""
        return self._final_cost

    def set_linearization(
        self, x_hat: np.ndarray, u_hat: np.ndarray | None = None,
    ) -> None:
        """Move the expansion point and rebuild the local model.

        :param x_hat: New expansion state, shape ``(state_dim,)``.
        :param u_hat: New expansion control, shape ``(control_dim,)``.
            Ignored for terminal nodes.
        """
        self.x_hat = np.asarray(x_hat, dtype=np.float64).reshape(
            self._state_dim,
        ).copy()
        if not self.is_terminal:
            if u_hat is None:
                raise ValueError("Stage nodes need a control expansion point")
            self.u_hat = np.asarray(u_hat, dtype=np.float64).reshape(
                self._control_dim,
            ).copy()
        self.update_dynamics()
        self.update_cost()

    def update_dynamics(self) -> None:
        r"""Linearize the dynamics at :math:`(\hat{x}, \hat{u})`.

        :raises NumericalFailureError: If the dynamics or their Jacobians
            are not finite at the expansion point.
        """
        if self._dynamics is None:
            return
        self.f_hat = np.asarray(
            self._dynamics(self.x_hat, self.u_hat), dtype=np.float64,
        ).reshape(self._state_dim)
        self.a_matrix, self.b_matrix = self._dynamics.jacobians(
            self.x_hat, self.u_hat,
        )
        if not (
            np.all(np.isfinite(self.f_hat))
            and np.all(np.isfinite(self.a_matrix))
            and np.all(np.isfinite(self.b_matrix))
        ):
            raise NumericalFailureError(
                f"Non-finite dynamics linearization at t={self.timestep}"
            )

    def update_cost(self) -> None:
        r"""Quadraticize the stage (or final) cost at :math:`(\hat{x}, \hat{u})`.

        :raises NumericalFailureError: If the expansion is not finite.
        """
        n = self._state_dim
        if self._cost is not None:
            exp = self._cost.quadratize(self.x_hat, self.u_hat, self.timestep)
        else:
            assert self._final_cost is not None
            exp = self._final_cost.quadratize(self.x_hat)
        if not exp.is_finite():
            raise NumericalFailureError(
                f"Non-finite cost expansion at t={self.timestep}"
            )

        self.b_x = 0.5 * exp.grad_x
        self.b_u = 0.5 * exp.grad_u
        self.q_matrix = np.zeros((n + 1, n + 1))
        self.q_matrix[:n, :n] = 0.5 * exp.hess_xx
        self.q_matrix[:n, n] = self.b_x
        self.q_matrix[n, :n] = self.b_x
        self.q_matrix[n, n] = exp.value
        self.r_matrix = 0.5 * exp.hess_uu
        self.p_matrix = np.zeros((n + 1, self._control_dim))
        self.p_matrix[:n, :] = 0.5 * exp.hess_ux.T

    def extended_dynamics(
        self, next_x_hat: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        r"""Dynamics over the extended deviation state.

        The successor's deviation is measured from its own expansion
        point, so the affine offset is :math:`f(\hat{x}, \hat{u}) -
        \hat{x}_{next}`.

        :param next_x_hat: Expansion state of the successor node.
        :returns: ``(A_ext, B_ext)`` with shapes ``(n+1, n+1)`` and
            ``(n+1, m)``.
        """
        n, m = self._state_dim, self._control_dim
        a_ext = np.zeros((n + 1, n + 1))
        a_ext[:n, :n] = self.a_matrix
        a_ext[:n, n] = self.f_hat - next_x_hat
        a_ext[n, n] = 1.0
        b_ext = np.zeros((n + 1, m))
        b_ext[:n, :] = self.b_matrix
        return a_ext, b_ext

    def set_terminal_value(self) -> None:
        """Initialize the value function with the terminal quadratic cost."""
        if not self.is_terminal:
            raise ValueError(
                f"Node at timestep {self.timestep} has dynamics and cannot "
                "terminate a branch"
            )
        self.value = self.q_matrix.copy()

    def compute_control(self, state: np.ndarray, alpha: float = 1.0) -> np.ndarray:
        r"""Evaluate :math:`u = \hat{u} + K (x - \hat{x}) + \alpha k`.

        :param state: Current state, shape ``(state_dim,)``.
        :param alpha: Line-search step applied to the feedforward term.
        :returns: Control, shape ``(control_dim,)``.
        """
        return (
            self.u_hat
            + self.feedback_gain @ (state - self.x_hat)
            + alpha * self.feedforward_gain
        )

    def __repr__(self) -> str:
        kind = "terminal" if self.is_terminal else "stage"
        return (
            f"PlanNode({kind}, t={self.timestep}, p={self.probability:.3f}, "
            f"x_hat={np.array2string(self.x_hat, precision=3)}, "
            f"u_hat={np.array2string(self.u_hat, precision=3)})"
        )
