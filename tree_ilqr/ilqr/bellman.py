r"""Probability-weighted Bellman backup over the extended state.

A node's decision is followed by one or more probability-weighted
successors. Each successor carries the local model that applies on its
edge (the deciding node's linearization) and the successor's value
matrix :math:`V_i`. The one-step problem solved here is

.. math::

    \min_v \sum_i p_i \left[ z^T Q_i z + 2 z^T P_i v + v^T R_i v
    + 2 b_{u,i}^T v + (A_i z + B_i v)^T V_i (A_i z + B_i v) \right]

so the expectation over successors is taken *before* the one-step
minimization (aggregate-then-minimize). When all successors share the
deciding node's dynamics and cost, this is exactly the single-branch
LQR step against the aggregate :math:`\bar{V} = \sum_i p_i V_i`:

.. math::

    S = R + \mu I + B^T \bar{V} B, \qquad
    [K \; k_V] = -S^{-1} (P^T + B^T \bar{V} A), \qquad
    k_b = -S^{-1} b_u

The last column :math:`k_V` of the extended gain is the affine part of
the control law, so the node stores :math:`K` (``m x n``) and the
feedforward :math:`k = k_V + k_b`. With the gains fixed, the value
contributed by successor :math:`i` is

.. math::

    V_i^{node} = \mathrm{sym}\left(Q + A^T V_i A + (P + A^T V_i B)
    [K \; k]\right) + \begin{bmatrix} 0 & K^T b_u / 2 \\
    b_u^T K / 2 & b_u^T k \end{bmatrix}

which is linear in :math:`V_i`; the node's value is
:math:`\sum_i p_i V_i^{node}`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from scipy import linalg

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tree_ilqr.ilqr.plan_node import PlanNode


class NumericalFailureError(np.linalg.LinAlgError):
    """Raised when a backward pass breaks down numerically.

    Covers a control Hessian that is not positive definite and
    non-finite values in gains or value matrices. Only the solver loop
    recovers from it, by increasing the damping.
    """


@dataclass(frozen=True)
class Successor:
    """One probability-weighted outcome of a node's control decision.

    :param probability: Probability of this outcome.
    :param node: Node whose local model governs the transition (the
        deciding node, or a per-outcome copy of it).
    :param value: Value matrix of the successor, shape ``(n+1, n+1)``.
    :param next_x_hat: Expansion state of the successor.
    """

    probability: float
    node: PlanNode
    value: np.ndarray
    next_x_hat: np.ndarray


def damped_control_hessian(
    successors: Sequence[Successor], mu: float = 0.0,
) -> np.ndarray:
    r"""Compute :math:`S = \sum_i p_i (R_i + B_i^T V_i B_i) + \mu I`.

    :param successors: Outcomes of the decision.
    :param mu: Levenberg-Marquardt damping, ``>= 0``.
    :returns: Shape ``(control_dim, control_dim)``.
    """
    control_dim = successors[0].node.control_dim
    s_mat = mu * np.eye(control_dim)
    for succ in successors:
        _, b_ext = succ.node.extended_dynamics(succ.next_x_hat)
        s_mat += succ.probability * (
            succ.node.r_matrix + b_ext.T @ succ.value @ b_ext
        )
    return 0.5 * (s_mat + s_mat.T)


def compute_control_policy(
    successors: Sequence[Successor], mu: float = 0.0,
) -> tuple[np.ndarray, np.ndarray]:
    """Minimize the expected one-step cost-to-go over the control.

    :param successors: Outcomes of the decision. Probabilities are used
        as given; callers validate that they sum to one.
    :param mu: Levenberg-Marquardt damping added to the control Hessian.
    :returns: Tuple ``(K, k)`` with shapes ``(m, n)`` and ``(m,)``.
    :raises NumericalFailureError: If the damped control Hessian is not
        positive definite or any term is non-finite.
    """
    if not successors:
        raise ValueError("Cannot compute a policy without successors")

    node0 = successors[0].node
    n, m = node0.state_dim, node0.control_dim

    s_mat = damped_control_hessian(successors, mu)  # (m, m)
    cross_t = np.zeros((m, n + 1))
    b_u = np.zeros(m)
    for succ in successors:
        a_ext, b_ext = succ.node.extended_dynamics(succ.next_x_hat)
        cross_t += succ.probability * (
            succ.node.p_matrix.T + b_ext.T @ succ.value @ a_ext
        )
        b_u += succ.probability * succ.node.b_u

    if not (
        np.all(np.isfinite(s_mat))
        and np.all(np.isfinite(cross_t))
        and np.all(np.isfinite(b_u))
    ):
        raise NumericalFailureError(
            f"Non-finite backup terms at timestep {node0.timestep}"
        )

    try:
        cho = linalg.cho_factor(s_mat)
    except linalg.LinAlgError as exc:
        raise NumericalFailureError(
            f"Control Hessian not positive definite at timestep "
            f"{node0.timestep} (mu={mu:.2e})"
        ) from exc

    gain_ext = -linalg.cho_solve(cho, cross_t)  # (m, n+1)
    feedforward = gain_ext[:, n] - linalg.cho_solve(cho, b_u)  # (m,)
    return gain_ext[:, :n], feedforward


def compute_value_matrix(
    successor: Successor,
    feedback_gain: np.ndarray,
    feedforward_gain: np.ndarray,
) -> np.ndarray:
    """Value contributed through one successor under a fixed policy.

    :param successor: The outcome to back up.
    :param feedback_gain: ``K``, shape ``(m, n)``.
    :param feedforward_gain: ``k``, shape ``(m,)``.
    :returns: Value matrix, shape ``(n+1, n+1)``, unweighted.
    """
    node = successor.node
    n = node.state_dim
    v_next = successor.value
    a_ext, b_ext = node.extended_dynamics(successor.next_x_hat)

    gain = np.hstack([feedback_gain, feedforward_gain[:, None]])  # (m, n+1)
    cross = node.p_matrix + a_ext.T @ v_next @ b_ext  # (n+1, m)
    quad = node.q_matrix + a_ext.T @ v_next @ a_ext + cross @ gain
    value = 0.5 * (quad + quad.T)

    linear = 0.5 * feedback_gain.T @ node.b_u  # (n,)
    value[:n, n] += linear
    value[n, :n] += linear
    value[n, n] += float(node.b_u @ feedforward_gain)
    return value


def bellman_backup(
    successors: Sequence[Successor], mu: float = 0.0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Full backup of one decision: policy, then aggregated value.

    :returns: Tuple ``(K, k, V)``.
    :raises NumericalFailureError: On a failed policy solve or a
        non-finite value matrix.
    """
    feedback, feedforward = compute_control_policy(successors, mu)

    node0 = successors[0].node
    value = np.zeros((node0.state_dim + 1, node0.state_dim + 1))
    for succ in successors:
        value += succ.probability * compute_value_matrix(
            succ, feedback, feedforward,
        )

    if not np.all(np.isfinite(value)):
        raise NumericalFailureError(
            f"Non-finite value matrix at timestep {node0.timestep}"
        )
    return feedback, feedforward, value
