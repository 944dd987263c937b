r"""Differential-drive kinematics.

State :math:`[p_x, p_y, \theta]`, control :math:`[v, \omega]` (forward
speed and turn rate), discretized with a forward Euler step:

.. math::

    p_x' = p_x + \Delta t \, v \cos\theta, \quad
    p_y' = p_y + \Delta t \, v \sin\theta, \quad
    \theta' = \theta + \Delta t \, \omega
"""

from __future__ import annotations

import sympy

from tree_ilqr.ilqr.symbolic import SymbolicDynamics

STATE_DIM = 3
CONTROL_DIM = 2


def make_diffdrive_dynamics(dt: float) -> SymbolicDynamics:
    """Build the discrete diff-drive model with analytic Jacobians.

    :param dt: Integration step, ``> 0``.
    :raises ValueError: If ``dt`` is not positive.
    """
    if dt <= 0:
        raise ValueError(f"dt must be > 0, got {dt}")

    px, py, theta = sympy.symbols("px py theta")
    v, omega = sympy.symbols("v omega")
    step = sympy.Symbol("dt")
    next_state = [
        px + step * v * sympy.cos(theta),
        py + step * v * sympy.sin(theta),
        theta + step * omega,
    ]
    return SymbolicDynamics(
        next_state, [px, py, theta], [v, omega], params={"dt": dt},
    )
