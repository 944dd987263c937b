r"""Taylor expansions of dynamics and cost functions.

Every plan node is linearized (dynamics) and quadraticized (cost) around
its current expansion point :math:`(\hat{x}, \hat{u})`. The solver only
ever talks to the capability interfaces defined here:

- :class:`DynamicsModel`: evaluate :math:`f(x, u)` and return the
  Jacobians :math:`A = \partial f / \partial x`,
  :math:`B = \partial f / \partial u`.
- :class:`StageCostModel`: evaluate :math:`c(x, u, t)` and return its
  second-order expansion.
- :class:`FinalCostModel`: evaluate :math:`c_f(x)` and return its
  second-order expansion.

The finite-difference implementations wrap plain callables, so users can
pass ordinary functions. Analytic models live in
:mod:`tree_ilqr.ilqr.symbolic`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable

JAC_EPS = 1e-5
HESS_EPS = 1e-4


@dataclass(frozen=True)
class CostExpansion:
    r"""Second-order expansion of a cost around :math:`(\hat{x}, \hat{u})`.

    .. math::

        c(\hat{x} + \delta x, \hat{u} + \delta u) \approx c_0
        + g_x^T \delta x + g_u^T \delta u
        + \tfrac{1}{2} \delta x^T H_{xx} \delta x
        + \delta u^T H_{ux} \delta x
        + \tfrac{1}{2} \delta u^T H_{uu} \delta u

    For final costs the control terms have zero size.

    :param value: :math:`c_0`.
    :param grad_x: Shape ``(state_dim,)``.
    :param grad_u: Shape ``(control_dim,)``.
    :param hess_xx: Shape ``(state_dim, state_dim)``.
    :param hess_uu: Shape ``(control_dim, control_dim)``.
    :param hess_ux: Shape ``(control_dim, state_dim)``.
    """

    value: float
    grad_x: np.ndarray
    grad_u: np.ndarray
    hess_xx: np.ndarray
    hess_uu: np.ndarray
    hess_ux: np.ndarray

    def is_finite(self) -> bool:
        """Whether every term of the expansion is finite."""
        return bool(
            np.isfinite(self.value)
            and np.all(np.isfinite(self.grad_x))
            and np.all(np.isfinite(self.grad_u))
            and np.all(np.isfinite(self.hess_xx))
            and np.all(np.isfinite(self.hess_uu))
            and np.all(np.isfinite(self.hess_ux))
        )


class DynamicsModel(ABC):
    """Discrete-time dynamics :math:`x_{t+1} = f(x_t, u_t)`."""

    @abstractmethod
    def __call__(self, state: np.ndarray, control: np.ndarray) -> np.ndarray:
        """Evaluate the true (non-linearized) next state."""

    @abstractmethod
    def jacobians(
        self, state: np.ndarray, control: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(A, B)`` with shapes ``(n, n)`` and ``(n, m)``."""


class StageCostModel(ABC):
    """Running cost :math:`c(x_t, u_t, t)`."""

    @abstractmethod
    def __call__(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> float:
        """Evaluate the true stage cost."""

    @abstractmethod
    def quadratize(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> CostExpansion:
        """Second-order expansion of the stage cost at ``(state, control)``."""


class FinalCostModel(ABC):
    """Terminal cost :math:`c_f(x_T)`."""

    @abstractmethod
    def __call__(self, state: np.ndarray) -> float:
        """Evaluate the true terminal cost."""

    @abstractmethod
    def quadratize(self, state: np.ndarray) -> CostExpansion:
        """Second-order expansion of the terminal cost at ``state``."""


class FiniteDiffDynamics(DynamicsModel):
    """Dynamics model differentiated by central differences.

    :param dynamics_fn: Callable ``(state, control) -> next_state``.
    :param jac_state_fn: Optional analytic ``(state, control) -> A``.
    :param jac_control_fn: Optional analytic ``(state, control) -> B``.
    :param eps: Finite difference step size.
    """

    def __init__(
        self,
        dynamics_fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
        jac_state_fn: (
            Callable[[np.ndarray, np.ndarray], np.ndarray] | None
        ) = None,
        jac_control_fn: (
            Callable[[np.ndarray, np.ndarray], np.ndarray] | None
        ) = None,
        eps: float = JAC_EPS,
    ) -> None:
        self._dynamics_fn = dynamics_fn
        self._jac_state_fn = jac_state_fn
        self._jac_control_fn = jac_control_fn
        self._eps = eps

    def __call__(self, state: np.ndarray, control: np.ndarray) -> np.ndarray:
        return np.asarray(self._dynamics_fn(state, control), dtype=np.float64)

    def jacobians(
        self, state: np.ndarray, control: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        if self._jac_state_fn is not None:
            a_mat = np.asarray(self._jac_state_fn(state, control), dtype=np.float64)
        else:
            a_mat = finite_diff_jac_state(self, state, control, self._eps)

        if self._jac_control_fn is not None:
            b_mat = np.asarray(
                self._jac_control_fn(state, control), dtype=np.float64,
            )
        else:
            b_mat = finite_diff_jac_control(self, state, control, self._eps)

        return a_mat, b_mat


class FiniteDiffStageCost(StageCostModel):
    """Stage cost quadraticized by central differences.

    The Hessian is taken jointly over :math:`w = [x; u]` so the cross
    term :math:`H_{ux}` comes out of the same stencil.

    :param cost_fn: Callable ``(state, control, timestep) -> float``.
    :param eps: Step size for gradients.
    :param hess_eps: Step size for Hessians.
    """

    def __init__(
        self,
        cost_fn: Callable[[np.ndarray, np.ndarray, int], float],
        eps: float = JAC_EPS,
        hess_eps: float = HESS_EPS,
    ) -> None:
        self._cost_fn = cost_fn
        self._eps = eps
        self._hess_eps = hess_eps

    def __call__(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> float:
        return float(self._cost_fn(state, control, timestep))

    def quadratize(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> CostExpansion:
        state_dim = state.shape[0]
        joint = np.concatenate([state, control])

        def joint_fn(w: np.ndarray) -> float:
            return self(w[:state_dim], w[state_dim:], timestep)

        grad = finite_diff_gradient(joint_fn, joint, self._eps)
        hess = finite_diff_hessian(joint_fn, joint, self._hess_eps)

        return CostExpansion(
            value=joint_fn(joint),
            grad_x=grad[:state_dim],
            grad_u=grad[state_dim:],
            hess_xx=hess[:state_dim, :state_dim],
            hess_uu=hess[state_dim:, state_dim:],
            hess_ux=hess[state_dim:, :state_dim],
        )


class FiniteDiffFinalCost(FinalCostModel):
    """Terminal cost quadraticized by central differences.

    :param final_cost_fn: Callable ``(state) -> float``.
    :param eps: Step size for the gradient.
    :param hess_eps: Step size for the Hessian.
    """

    def __init__(
        self,
        final_cost_fn: Callable[[np.ndarray], float],
        eps: float = JAC_EPS,
        hess_eps: float = HESS_EPS,
    ) -> None:
        self._final_cost_fn = final_cost_fn
        self._eps = eps
        self._hess_eps = hess_eps

    def __call__(self, state: np.ndarray) -> float:
        return float(self._final_cost_fn(state))

    def quadratize(self, state: np.ndarray) -> CostExpansion:
        state_dim = state.shape[0]
        return CostExpansion(
            value=self(state),
            grad_x=finite_diff_gradient(self, state, self._eps),
            grad_u=np.zeros(0),
            hess_xx=finite_diff_hessian(self, state, self._hess_eps),
            hess_uu=np.zeros((0, 0)),
            hess_ux=np.zeros((0, state_dim)),
        )


def as_dynamics_model(
    dynamics: DynamicsModel | Callable[[np.ndarray, np.ndarray], np.ndarray],
) -> DynamicsModel:
    """Wrap a plain callable in a :class:`FiniteDiffDynamics`."""
    if isinstance(dynamics, DynamicsModel):
        return dynamics
    return FiniteDiffDynamics(dynamics)


def as_stage_cost_model(
    cost: StageCostModel | Callable[[np.ndarray, np.ndarray, int], float],
) -> StageCostModel:
    """Wrap a plain callable in a :class:`FiniteDiffStageCost`."""
    if isinstance(cost, StageCostModel):
        return cost
    return FiniteDiffStageCost(cost)


def as_final_cost_model(
    final_cost: FinalCostModel | Callable[[np.ndarray], float],
) -> FinalCostModel:
    """Wrap a plain callable in a :class:`FiniteDiffFinalCost`."""
    if isinstance(final_cost, FinalCostModel):
        return final_cost
    return FiniteDiffFinalCost(final_cost)


def finite_diff_jac_state(
    dynamics_fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
    state: np.ndarray,
    control: np.ndarray,
    eps: float = JAC_EPS,
) -> np.ndarray:
    r"""Compute :math:`\partial f / \partial x` via central differences.

    :returns: Jacobian, shape ``(state_dim, state_dim)``.
    """
    state_dim = state.shape[0]
    jac = np.zeros((state_dim, state_dim))
    for i in range(state_dim):
        s_plus = state.astype(np.float64)
        s_minus = state.astype(np.float64)
        s_plus[i] += eps
        s_minus[i] -= eps
        jac[:, i] = (
            np.asarray(dynamics_fn(s_plus, control))
            - np.asarray(dynamics_fn(s_minus, control))
        ) / (2 * eps)
    return jac


def finite_diff_jac_control(
    dynamics_fn: Callable[[np.ndarray, np.ndarray], np.ndarray],
    state: np.ndarray,
    control: np.ndarray,
    eps: float = JAC_EPS,
) -> np.ndarray:
    r"""Compute :math:`\partial f / \partial u` via central differences.

    :returns: Jacobian, shape ``(state_dim, control_dim)``.
    """
    state_dim = state.shape[0]
    control_dim = control.shape[0]
    jac = np.zeros((state_dim, control_dim))
    for i in range(control_dim):
        u_plus = control.astype(np.float64)
        u_minus = control.astype(np.float64)
        u_plus[i] += eps
        u_minus[i] -= eps
        jac[:, i] = (
            np.asarray(dynamics_fn(state, u_plus))
            - np.asarray(dynamics_fn(state, u_minus))
        ) / (2 * eps)
    return jac


def finite_diff_gradient(
    fn: Callable[[np.ndarray], float],
    point: np.ndarray,
    eps: float = JAC_EPS,
) -> np.ndarray:
    """Central-difference gradient of a scalar function."""
    dim = point.shape[0]
    grad = np.zeros(dim)
    for i in range(dim):
        p_plus = point.astype(np.float64)
        p_minus = point.astype(np.float64)
        p_plus[i] += eps
        p_minus[i] -= eps
        grad[i] = (fn(p_plus) - fn(p_minus)) / (2 * eps)
    return grad


def finite_diff_hessian(
    fn: Callable[[np.ndarray], float],
    point: np.ndarray,
    eps: float = HESS_EPS,
) -> np.ndarray:
    """Central-difference Hessian of a scalar function (symmetric)."""
    dim = point.shape[0]
    f0 = fn(point)
    hess = np.zeros((dim, dim))
    for i in range(dim):
        for j in range(i, dim):
            if i == j:
                p_plus = point.astype(np.float64)
                p_minus = point.astype(np.float64)
                p_plus[i] += eps
                p_minus[i] -= eps
                hess[i, i] = (fn(p_plus) - 2 * f0 + fn(p_minus)) / (eps ** 2)
            else:
                p_pp = point.astype(np.float64)
                p_pm = point.astype(np.float64)
                p_mp = point.astype(np.float64)
                p_mm = point.astype(np.float64)
                p_pp[i] += eps
                p_pp[j] += eps
                p_pm[i] += eps
                p_pm[j] -= eps
                p_mp[i] -= eps
                p_mp[j] += eps
                p_mm[i] -= eps
                p_mm[j] -= eps
                hess[i, j] = (
                    fn(p_pp) - fn(p_pm) - fn(p_mp) + fn(p_mm)
                ) / (4 * eps ** 2)
                hess[j, i] = hess[i, j]
    return hess
