"""Analytic dynamics and cost models built from sympy expressions.

Derivatives are taken symbolically with ``sympy`` and compiled to numpy
callables with ``sympy.lambdify``, so the model builder gets exact
Jacobians and Hessians instead of finite differences.

Usage::

    x, v, u = sympy.symbols("x v u")
    dynamics = SymbolicDynamics([x + 0.1 * v, v + 0.1 * u], [x, v], [u])
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import numpy as np
import sympy

from tree_ilqr.ilqr.taylor_expansion import (
    CostExpansion,
    DynamicsModel,
    FinalCostModel,
    StageCostModel,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


def _compile(
    expr: sympy.Basic, args: Sequence[sympy.Symbol],
) -> Callable[..., Any]:
    """Lambdify ``expr`` over a flat argument list."""
    return sympy.lambdify(list(args), expr, modules="numpy")


class SymbolicDynamics(DynamicsModel):
    r"""Dynamics :math:`x_{t+1} = f(x_t, u_t)` given as sympy expressions.

    :param next_state_exprs: One expression per state dimension.
    :param state_symbols: Symbols of the state, in state order.
    :param control_symbols: Symbols of the control, in control order.
    :param params: Optional numeric substitutions for free parameters.
    :raises ValueError: If the number of expressions does not match the
        number of state symbols, or free symbols remain unbound.
    """

    def __init__(
        self,
        next_state_exprs: Sequence[sympy.Expr],
        state_symbols: Sequence[sympy.Symbol],
        control_symbols: Sequence[sympy.Symbol],
        params: dict[str, float] | None = None,
    ) -> None:
        if len(next_state_exprs) != len(state_symbols):
            raise ValueError(
                f"Got {len(next_state_exprs)} dynamics expressions for "
                f"{len(state_symbols)} state symbols"
            )

        exprs = sympy.Matrix(list(next_state_exprs))
        if params:
            exprs = exprs.subs({sympy.Symbol(k): v for k, v in params.items()})

        args = list(state_symbols) + list(control_symbols)
        unbound = exprs.free_symbols - set(args)
        if unbound:
            raise ValueError(
                f"Unbound symbols in dynamics: {sorted(map(str, unbound))}"
            )

        self._state_dim = len(state_symbols)
        self._control_dim = len(control_symbols)
        self._f = _compile(exprs, args)
        self._jac_x = _compile(exprs.jacobian(list(state_symbols)), args)
        self._jac_u = _compile(exprs.jacobian(list(control_symbols)), args)

    def _args(self, state: np.ndarray, control: np.ndarray) -> list[float]:
        return [float(v) for v in state] + [float(v) for v in control]

    def __call__(self, state: np.ndarray, control: np.ndarray) -> np.ndarray:
        out = self._f(*self._args(state, control))
        return np.asarray(out, dtype=np.float64).reshape(self._state_dim)

    def jacobians(
        self, state: np.ndarray, control: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        args = self._args(state, control)
        a_mat = np.asarray(self._jac_x(*args), dtype=np.float64).reshape(
            self._state_dim, self._state_dim,
        )
        b_mat = np.asarray(self._jac_u(*args), dtype=np.float64).reshape(
            self._state_dim, self._control_dim,
        )
        return a_mat, b_mat


class SymbolicStageCost(StageCostModel):
    r"""Stage cost :math:`c(x, u, t)` given as a sympy expression.

    :param expr: Cost expression.
    :param state_symbols: Symbols of the state.
    :param control_symbols: Symbols of the control.
    :param time_symbol: Optional symbol bound to the integer timestep.
    """

    def __init__(
        self,
        expr: sympy.Expr,
        state_symbols: Sequence[sympy.Symbol],
        control_symbols: Sequence[sympy.Symbol],
        time_symbol: sympy.Symbol | None = None,
    ) -> None:
        self._state_dim = len(state_symbols)
        self._control_dim = len(control_symbols)
        variables = list(state_symbols) + list(control_symbols)
        args = variables + [time_symbol or sympy.Symbol("_t")]

        grad = sympy.Matrix([expr]).jacobian(variables)
        hess = sympy.hessian(expr, variables)

        self._c = _compile(expr, args)
        self._grad = _compile(grad, args)
        self._hess = _compile(hess, args)

    def _args(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> list[float]:
        return (
            [float(v) for v in state]
            + [float(v) for v in control]
            + [float(timestep)]
        )

    def __call__(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> float:
        return float(self._c(*self._args(state, control, timestep)))

    def quadratize(
        self, state: np.ndarray, control: np.ndarray, timestep: int,
    ) -> CostExpansion:
        n = self._state_dim
        dim = n + self._control_dim
        args = self._args(state, control, timestep)
        grad = np.asarray(self._grad(*args), dtype=np.float64).reshape(dim)
        hess = np.asarray(self._hess(*args), dtype=np.float64).reshape(dim, dim)
        return CostExpansion(
            value=float(self._c(*args)),
            grad_x=grad[:n],
            grad_u=grad[n:],
            hess_xx=hess[:n, :n],
            hess_uu=hess[n:, n:],
            hess_ux=hess[n:, :n],
        )


class SymbolicFinalCost(FinalCostModel):
    r"""Terminal cost :math:`c_f(x)` given as a sympy expression.

    :param expr: Cost expression.
    :param state_symbols: Symbols of the state.
    """

    def __init__(
        self,
        expr: sympy.Expr,
        state_symbols: Sequence[sympy.Symbol],
    ) -> None:
        self._state_dim = len(state_symbols)
        args = list(state_symbols)
        self._c = _compile(expr, args)
        self._grad = _compile(sympy.Matrix([expr]).jacobian(args), args)
        self._hess = _compile(sympy.hessian(expr, args), args)

    def __call__(self, state: np.ndarray) -> float:
        return float(self._c(*[float(v) for v in state]))

    def quadratize(self, state: np.ndarray) -> CostExpansion:
        n = self._state_dim
        args = [float(v) for v in state]
        return CostExpansion(
            value=float(self._c(*args)),
            grad_x=np.asarray(self._grad(*args), dtype=np.float64).reshape(n),
            grad_u=np.zeros(0),
            hess_xx=np.asarray(self._hess(*args), dtype=np.float64).reshape(n, n),
            hess_uu=np.zeros((0, 0)),
            hess_ux=np.zeros((0, n)),
        )
