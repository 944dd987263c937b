r"""Hindsight optimization: iLQR on a tree that splits only at the root.

The first control :math:`u_0` is chosen before knowing which of several
futures (*hindsight splits*) will apply. Each split brings its own
dynamics, stage cost, final cost and probability. After the split every
branch is a plain chain, so the policy at :math:`t \ge 1` is conditioned
on the realized branch while the root policy hedges over all of them:

.. math::

    u_0 = \arg\min_u \sum_i p_i \left[ c_i(x_0, u, 0)
    + J_{i,1}(f_i(x_0, u)) \right]

Each branch keeps its own copy of the root node so that the root
transition can be linearized under that branch's dynamics. The copies
share the expansion point and the gains.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from tree_ilqr.ilqr.bellman import Successor, bellman_backup
from tree_ilqr.ilqr.ilqr_tree import BranchRollout
from tree_ilqr.ilqr.plan_node import PlanNode
from tree_ilqr.ilqr.solver import (
    ILQRConfig,
    ILQRSolution,
    ILQRSolver,
    TrajectoryProblem,
)
from tree_ilqr.ilqr.taylor_expansion import (
    as_dynamics_model,
    as_final_cost_model,
    as_stage_cost_model,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from tree_ilqr.ilqr.taylor_expansion import (
        DynamicsModel,
        FinalCostModel,
        StageCostModel,
    )

# Tolerance on the probability sum of a set of splits.
SPLIT_PROBABILITY_EPS = 1e-3


@dataclass(frozen=True)
class HindsightSplit:
    """One possible future: a dynamics/cost model and its probability.

    :param dynamics: Dynamics model or callable ``(x, u) -> x'``.
    :param final_cost: Terminal cost model or callable ``(x) -> float``.
    :param cost: Stage cost model or callable ``(x, u, t) -> float``.
    :param probability: Probability that this future applies.
    """

    dynamics: DynamicsModel | Callable[..., np.ndarray]
    final_cost: FinalCostModel | Callable[..., float]
    cost: StageCostModel | Callable[..., float]
    probability: float


@dataclass
class HindsightBranch:
    """A split and the chain of plan nodes conditioned on it.

    :param split: The future this branch assumes.
    :param nodes: ``horizon + 1`` nodes; ``nodes[0]`` is this branch's
        copy of the shared root, ``nodes[-1]`` the terminal node.
    """

    split: HindsightSplit
    nodes: list[PlanNode] = field(default_factory=list)

    @property
    def feedback_gains(self) -> list[np.ndarray]:
        """Feedback gains ``K_t`` for ``t = 0 .. horizon-1``."""
        return [n.feedback_gain for n in self.nodes[:-1]]

    @property
    def feedforward_gains(self) -> list[np.ndarray]:
        """Feedforward gains ``k_t`` for ``t = 0 .. horizon-1``."""
        return [n.feedforward_gain for n in self.nodes[:-1]]

    @property
    def x_hat(self) -> np.ndarray:
        """Expansion states, shape ``(horizon+1, state_dim)``."""
        return np.array([n.x_hat for n in self.nodes])

    @property
    def u_hat(self) -> np.ndarray:
        """Expansion controls, shape ``(horizon, control_dim)``."""
        return np.array([n.u_hat for n in self.nodes[:-1]])


@dataclass
class HindsightRollout:
    """Forward pass of every branch from the same initial state.

    :param branches: One rollout per branch, in split order.
    :param cost: Probability-weighted cost over the branches.
    :param alpha: Line-search step used.
    """

    branches: list[BranchRollout]
    cost: float
    alpha: float = 1.0


def validate_splits(splits: Sequence[HindsightSplit]) -> None:
    """Check that ``splits`` form a probability partition.

    :raises ValueError: If ``splits`` is empty, a probability is outside
        ``[0, 1]``, or the probabilities do not sum to one within
        ``SPLIT_PROBABILITY_EPS``.
    """
    if len(splits) == 0:
        raise ValueError("Need at least one hindsight split")
    for i, split in enumerate(splits):
        if not 0.0 <= split.probability <= 1.0:
            raise ValueError(
                f"Split {i} probability must be in [0, 1], "
                f"got {split.probability}"
            )
    total = sum(s.probability for s in splits)
    if abs(total - 1.0) > SPLIT_PROBABILITY_EPS:
        raise ValueError(
            f"Split probabilities must sum to 1, got {total:.6f}"
        )


class HindsightTree(TrajectoryProblem):
    """Root-split scenario tree with one chain per hindsight split.

    :param splits: The possible futures.
    :param horizon: Number of control steps ``T``; every branch ends
        with a terminal node at ``t = T``.
    :param x_init: Initial state, shape ``(state_dim,)``.
    :param u_nominal: Control applied at every step to seed the
        expansion points, shape ``(control_dim,)``.
    :raises ValueError: On invalid splits, ``horizon < 1`` or a dynamics
        output whose size differs from the state.
    """

    def __init__(
        self,
        splits: Sequence[HindsightSplit],
        horizon: int,
        x_init: np.ndarray,
        u_nominal: np.ndarray,
    ) -> None:
        validate_splits(splits)
        if horizon < 1:
            raise ValueError(f"horizon must be >= 1, got {horizon}")

        self._horizon = horizon
        x_init = np.asarray(x_init, dtype=np.float64).reshape(-1)
        u_nominal = np.asarray(u_nominal, dtype=np.float64).reshape(-1)
        self._state_dim = x_init.shape[0]
        self._control_dim = u_nominal.shape[0]

        self._branches: list[HindsightBranch] = []
        for split in splits:
            split = HindsightSplit(
                dynamics=as_dynamics_model(split.dynamics),
                final_cost=as_final_cost_model(split.final_cost),
                cost=as_stage_cost_model(split.cost),
                probability=split.probability,
            )
            states = self._nominal_states(split, x_init, u_nominal)
            nodes = [
                PlanNode(
                    states[t], u_nominal,
                    dynamics=split.dynamics,
                    cost=split.cost,
                    probability=split.probability if t == 0 else 1.0,
                    timestep=t,
                )
                for t in range(horizon)
            ]
            nodes.append(PlanNode(
                states[horizon], final_cost=split.final_cost, timestep=horizon,
            ))
            self._branches.append(HindsightBranch(split=split, nodes=nodes))

    @property
    def horizon(self) -> int:
        """Number of control steps."""
        return self._horizon

    @property
    def branches(self) -> list[HindsightBranch]:
        """Branches in split order."""
        return self._branches

    @property
    def n_branches(self) -> int:
        """Number of hindsight splits."""
        return len(self._branches)

    def root_policy(self) -> tuple[np.ndarray, np.ndarray]:
        """Shared root gains ``(K_0, k_0)``."""
        root = self._branches[0].nodes[0]
        return root.feedback_gain, root.feedforward_gain

    def root_value(self) -> np.ndarray:
        """Probability-weighted value matrix at the root."""
        return self._branches[0].nodes[0].value

    def compute_control(
        self, branch: int, state: np.ndarray, t: int, alpha: float = 1.0,
    ) -> np.ndarray:
        """Control of branch ``branch`` at timestep ``t`` from ``state``.

        At ``t = 0`` every branch returns the same hedged control.

        :raises IndexError: If ``branch`` or ``t`` is out of range.
        """
        if not 0 <= t < self._horizon:
            raise IndexError(
                f"Timestep {t} outside the horizon [0, {self._horizon})"
            )
        return self._branch(branch).nodes[t].compute_control(state, alpha)

    def backward_pass(self, mu: float = 0.0) -> None:
        """Back up every chain, then the shared root.

        :raises NumericalFailureError: On numerical breakdown.
        """
        for branch in self._branches:
            nodes = branch.nodes
            nodes[-1].set_terminal_value()
            for t in range(self._horizon - 1, 0, -1):
                node, nxt = nodes[t], nodes[t + 1]
                node.feedback_gain, node.feedforward_gain, node.value = (
                    bellman_backup(
                        [Successor(1.0, node, nxt.value, nxt.x_hat)], mu,
                    )
                )

        successors = [
            Successor(
                probability=b.split.probability,
                node=b.nodes[0],
                value=b.nodes[1].value,
                next_x_hat=b.nodes[1].x_hat,
            )
            for b in self._branches
        ]
        feedback, feedforward, value = bellman_backup(successors, mu)
        for branch in self._branches:
            root = branch.nodes[0]
            root.feedback_gain = feedback.copy()
            root.feedforward_gain = feedforward.copy()
            root.value = value.copy()

    def forward_pass_branch(
        self, branch: int, x_init: np.ndarray, alpha: float = 1.0,
    ) -> BranchRollout:
        """Roll out one branch under its true dynamics and costs.

        :param branch: Index of the split to roll out.
        :param x_init: Initial state.
        :param alpha: Feedforward step size.
        :returns: States ``(T+1, n)``, controls ``(T, m)`` and the
            realized cost including the final cost.
        :raises IndexError: If ``branch`` is out of range.
        """
        br = self._branch(branch)
        split = br.split
        x = np.asarray(x_init, dtype=np.float64).reshape(self._state_dim)
        states = np.zeros((self._horizon + 1, self._state_dim))
        controls = np.zeros((self._horizon, self._control_dim))
        states[0] = x
        cost = 0.0
        for t in range(self._horizon):
            u = br.nodes[t].compute_control(states[t], alpha)
            controls[t] = u
            cost += split.cost(states[t], u, t)
            states[t + 1] = split.dynamics(states[t], u)
        cost += split.final_cost(states[-1])
        return BranchRollout(states=states, controls=controls, cost=float(cost))

    def forward_pass(self, x_init: np.ndarray, alpha: float = 1.0) -> HindsightRollout:
        """Roll out every branch; the cost is the expectation over splits."""
        rollouts = [
            self.forward_pass_branch(i, x_init, alpha)
            for i in range(self.n_branches)
        ]
        cost = sum(
            b.split.probability * r.cost
            for b, r in zip(self._branches, rollouts)
        )
        return HindsightRollout(branches=rollouts, cost=float(cost), alpha=alpha)

    def accept(self, rollout: HindsightRollout) -> None:
        for branch, branch_rollout in zip(self._branches, rollout.branches):
            for t, node in enumerate(branch.nodes[:-1]):
                node.set_linearization(
                    branch_rollout.states[t], branch_rollout.controls[t],
                )
            branch.nodes[-1].set_linearization(branch_rollout.states[-1])

    def seed(self, x_init: np.ndarray, u_nominal: np.ndarray) -> None:
        x_init = np.asarray(x_init, dtype=np.float64).reshape(self._state_dim)
        u_nominal = np.asarray(u_nominal, dtype=np.float64).reshape(
            self._control_dim,
        )
        for branch in self._branches:
            states = self._nominal_states(branch.split, x_init, u_nominal)
            for t, node in enumerate(branch.nodes[:-1]):
                node.set_linearization(states[t], u_nominal)
                node.feedback_gain = np.zeros_like(node.feedback_gain)
                node.feedforward_gain = np.zeros_like(node.feedforward_gain)
            branch.nodes[-1].set_linearization(states[-1])

    def _branch(self, branch: int) -> HindsightBranch:
        if not 0 <= branch < len(self._branches):
            raise IndexError(
                f"Branch {branch} out of range [0, {len(self._branches)})"
            )
        return self._branches[branch]

    def _nominal_states(
        self,
        split: HindsightSplit,
        x_init: np.ndarray,
        u_nominal: np.ndarray,
    ) -> np.ndarray:
        states = np.zeros((self._horizon + 1, self._state_dim))
        states[0] = x_init
        for t in range(self._horizon):
            x_next = np.asarray(split.dynamics(states[t], u_nominal))
            if x_next.size != self._state_dim:
                raise ValueError(
                    f"Dynamics returned a state of size {x_next.size}, "
                    f"expected {self._state_dim}"
                )
            states[t + 1] = x_next.reshape(self._state_dim)
        return states


class HindsightSolver:
    """Hindsight-split iLQR with a chain per split.

    :param splits: The possible futures; probabilities must sum to one
        within ``SPLIT_PROBABILITY_EPS``.
    :param config: Solver loop configuration.
    :raises ValueError: If the splits are invalid.
    """

    def __init__(
        self,
        splits: Sequence[HindsightSplit],
        config: ILQRConfig | None = None,
    ) -> None:
        validate_splits(splits)
        self._splits = list(splits)
        self._solver = ILQRSolver(config)
        self._tree: HindsightTree | None = None

    @property
    def config(self) -> ILQRConfig:
        """The solver loop configuration."""
        return self._solver.config

    @property
    def tree(self) -> HindsightTree:
        """The tree of the last solve.

        :raises RuntimeError: Before :meth:`solve` has run.
        """
        if self._tree is None:
            raise RuntimeError("HindsightSolver.solve has not been called")
        return self._tree

    def solve(
        self,
        horizon: int,
        x_init: np.ndarray,
        u_nominal: np.ndarray,
    ) -> ILQRSolution:
        """Build the split tree around ``u_nominal`` and optimize it.

        :param horizon: Number of control steps.
        :param x_init: Initial state.
        :param u_nominal: Control used at every step of the first rollout.
        :returns: The solver outcome; gains are kept in :attr:`tree`.
        """
        self._tree = HindsightTree(self._splits, horizon, x_init, u_nominal)
        logger.debug(
            "Hindsight solve: {} splits, horizon {}",
            self._tree.n_branches, horizon,
        )
        return self._solver.solve(self._tree, x_init)

    def compute_control(
        self, branch: int, state: np.ndarray, t: int, alpha: float = 1.0,
    ) -> np.ndarray:
        """Feedback control of ``branch`` at timestep ``t``."""
        return self.tree.compute_control(branch, state, t, alpha)

    def forward_pass(
        self, branch: int, x_init: np.ndarray, alpha: float = 1.0,
    ) -> BranchRollout:
        """True rollout of one branch under the current gains."""
        return self.tree.forward_pass_branch(branch, x_init, alpha)

    def timesteps(self) -> int:
        """Number of timesteps with a computed policy (0 before solving)."""
        return 0 if self._tree is None else self._tree.horizon
