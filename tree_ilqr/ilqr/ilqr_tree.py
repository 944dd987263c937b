r"""Scenario tree of plan nodes and its backward/forward passes.

The tree is an arena: plan nodes live as attributes of integer handles
in a ``networkx.DiGraph`` whose edges point from parent to child. Parent
lookup goes through the graph, so nodes never reference each other.

Each child's probability is the probability of reaching it once its
parent has been reached; a node's dynamics and cost govern the
transition to all of its children. Branching at the root only, followed
by simple chains, gives the hindsight-split structure (see
:mod:`tree_ilqr.ilqr.hindsight`).
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import networkx as nx
import numpy as np
from loguru import logger

from tree_ilqr.ilqr.bellman import Successor, bellman_backup
from tree_ilqr.ilqr.plan_node import PlanNode
from tree_ilqr.ilqr.solver import TrajectoryProblem

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

# Tolerance on the probability sum of a batch of siblings.
PROBABILITY_EPS = 1e-5


@dataclass
class TreeRollout:
    """A forward pass through every node of the tree.

    :param states: State reached at each node, by handle.
    :param controls: Control applied at each non-terminal node, by handle.
    :param cost: Expected cost, stage and final costs weighted by the
        probability of the path reaching each node.
    :param alpha: Line-search step used.
    """

    states: dict[int, np.ndarray] = field(default_factory=dict)
    controls: dict[int, np.ndarray] = field(default_factory=dict)
    cost: float = 0.0
    alpha: float = 1.0


@dataclass
class BranchRollout:
    """A forward pass along one root-to-leaf path.

    :param states: Shape ``(len(path), state_dim)``.
    :param controls: Shape ``(len(path) - 1, control_dim)``.
    :param cost: Realized (unweighted) cost of the path.
    :param path: Node handles visited, root first.
    """

    states: np.ndarray
    controls: np.ndarray
    cost: float
    path: list[int] = field(default_factory=list)


class ILQRTree(TrajectoryProblem):
    """Tree of :class:`PlanNode` objects solved by tree-iLQR.

    :param state_dim: State dimensionality for every node.
    :param control_dim: Control dimensionality for every stage node.
    """

    def __init__(self, state_dim: int, control_dim: int) -> None:
        if state_dim < 1 or control_dim < 1:
            raise ValueError(
                f"Dimensions must be positive, got state_dim={state_dim}, "
                f"control_dim={control_dim}"
            )
        self._state_dim = state_dim
        self._control_dim = control_dim
        self._graph = nx.DiGraph()
        self._root: int | None = None
        self._next_handle = 0

    @property
    def state_dim(self) -> int:
        """State dimensionality."""
        return self._state_dim

    @property
    def control_dim(self) -> int:
        """Control dimensionality."""
        return self._control_dim

    @property
    def root(self) -> int:
        """Handle of the root node.

        :raises ValueError: If the tree is empty.
        """
        if self._root is None:
            raise ValueError("The tree is empty; add a root first")
        return self._root

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    def __contains__(self, handle: object) -> bool:
        return handle in self._graph

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def make_plan_node(
        self,
        x_star: np.ndarray,
        u_star: np.ndarray,
        dynamics: Callable[..., np.ndarray],
        cost: Callable[..., float],
        probability: float = 1.0,
        timestep: int = 0,
    ) -> PlanNode:
        """Create a stage node after checking its dimensions.

        :raises ValueError: If ``x_star`` or ``u_star`` have the wrong size.
        """
        self._check_dims(x_star, u_star)
        return PlanNode(
            x_star, u_star, dynamics=dynamics, cost=cost,
            probability=probability, timestep=timestep,
        )

    def make_terminal_node(
        self,
        x_star: np.ndarray,
        final_cost: Callable[..., float],
        probability: float = 1.0,
        timestep: int = 0,
    ) -> PlanNode:
        """Create a terminal node after checking its dimension.

        :raises ValueError: If ``x_star`` has the wrong size.
        """
        self._check_dims(x_star, None)
        return PlanNode(
            x_star, final_cost=final_cost,
            probability=probability, timestep=timestep,
        )

    def add_root(self, node: PlanNode) -> int:
        """Replace the whole tree by a single root node.

        :returns: Handle of the root.
        """
        self._check_node(node)
        self._graph = nx.DiGraph()
        self._root = self._insert(node)
        return self._root

    def add_children(
        self, parent: int, nodes: Sequence[PlanNode],
    ) -> list[int]:
        """Attach a full partition of outcomes under ``parent``.

        :param parent: Handle of an existing non-terminal node.
        :param nodes: Children whose probabilities sum to one.
        :returns: Handles of the new children, in order.
        :raises ValueError: If the batch is empty, the probabilities do
            not sum to one within tolerance, the parent is terminal, or
            a child has the wrong dimensions.
        :raises KeyError: If ``parent`` is not in the tree.
        """
        self._require_handle(parent)
        if self.node(parent).is_terminal:
            raise ValueError(f"Terminal node {parent} cannot have children")
        if not nodes:
            raise ValueError("add_children needs at least one node")

        total = sum(n.probability for n in nodes)
        if abs(total - 1.0) > PROBABILITY_EPS:
            raise ValueError(
                f"Child probabilities must sum to 1, got {total:.6f}"
            )

        for node in nodes:
            self._check_node(node)

        handles = []
        for node in nodes:
            handle = self._insert(node)
            self._graph.add_edge(parent, handle)
            handles.append(handle)
        return handles

    def extend_chain(
        self,
        parent: int,
        dynamics: Callable[..., np.ndarray],
        cost: Callable[..., float],
        final_cost: Callable[..., float],
        x_stars: np.ndarray,
        u_stars: np.ndarray,
    ) -> list[int]:
        """Hang a deterministic chain of stage nodes ending in a terminal node.

        Every node of the chain is the only child of its predecessor, so
        each carries probability one. Timesteps continue from the
        parent's. Branch points are created with :meth:`add_children`
        first and then extended.

        :param parent: Handle of a non-terminal leaf.
        :param x_stars: Nominal states, shape ``(L+1, state_dim)``; the
            last one belongs to the terminal node.
        :param u_stars: Nominal controls, shape ``(L, control_dim)``.
        :returns: Handles of the chain, first to last.
        """
        x_stars = np.asarray(x_stars, dtype=np.float64)
        u_stars = np.asarray(u_stars, dtype=np.float64).reshape(
            -1, self._control_dim,
        )
        if x_stars.shape[0] != u_stars.shape[0] + 1:
            raise ValueError(
                f"Need one more state than controls, got {x_stars.shape[0]} "
                f"states and {u_stars.shape[0]} controls"
            )
        if self.children_of(parent):
            raise ValueError(f"Node {parent} already has children")
        t0 = self.node(parent).timestep + 1

        handles: list[int] = []
        current = parent
        for i, (x_star, u_star) in enumerate(zip(x_stars[:-1], u_stars)):
            node = self.make_plan_node(
                x_star, u_star, dynamics, cost, timestep=t0 + i,
            )
            (current,) = self.add_children(current, [node])
            handles.append(current)

        terminal = self.make_terminal_node(
            x_stars[-1], final_cost, timestep=t0 + len(handles),
        )
        handles.extend(self.add_children(current, [terminal]))
        return handles

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def node(self, handle: int) -> PlanNode:
        """Return the plan node stored at ``handle``.

        :raises KeyError: If the handle is unknown.
        """
        self._require_handle(handle)
        return self._graph.nodes[handle]["plan"]

    def parent_of(self, handle: int) -> int | None:
        """Return the parent handle, ``None`` for the root."""
        self._require_handle(handle)
        parents = list(self._graph.predecessors(handle))
        return parents[0] if parents else None

    def children_of(self, handle: int) -> list[int]:
        """Return child handles in insertion order."""
        self._require_handle(handle)
        return list(self._graph.successors(handle))

    def leaves(self) -> list[int]:
        """Return all childless nodes."""
        return [h for h in self._graph.nodes if self._graph.out_degree(h) == 0]

    def path_to(self, handle: int) -> list[int]:
        """Return the handles from the root down to ``handle``."""
        path = [handle]
        parent = self.parent_of(handle)
        while parent is not None:
            path.append(parent)
            parent = self.parent_of(parent)
        return path[::-1]

    def path_probability(self, handle: int) -> float:
        """Probability of reaching ``handle`` from the root."""
        return float(np.prod(
            [self.node(h).probability for h in self.path_to(handle)[1:]]
        ))

    def nodes(self) -> Iterable[tuple[int, PlanNode]]:
        """Iterate over ``(handle, node)`` pairs, parents before children."""
        for handle in self._breadth_first():
            yield handle, self.node(handle)

    # ------------------------------------------------------------------
    # Backward pass
    # ------------------------------------------------------------------

    def bellman_tree_backup(self, mu: float = 0.0) -> None:
        """Back up value matrices and gains from the leaves to the root.

        Leaves take their terminal quadratic cost as value. Siblings are
        then grouped under their parent, and a parent is processed only
        once all of its children are resolved.

        :param mu: Levenberg-Marquardt damping for every gain solve.
        :raises ValueError: If the tree is empty or a leaf is not terminal.
        :raises NumericalFailureError: On numerical breakdown.
        """
        leaves = self._ordered_leaves()
        for leaf in leaves:
            self.node(leaf).set_terminal_value()

        resolved = set(leaves)
        frontier = leaves
        while frontier:
            frontier = self.backup_to_parents(frontier, resolved, mu)
            resolved.update(frontier)

    def backup_to_parents(
        self,
        children: Iterable[int],
        resolved: set[int],
        mu: float = 0.0,
    ) -> list[int]:
        """Run one grouping round of the tree backup.

        :param children: Handles just backed up.
        :param resolved: Handles whose values are final.
        :param mu: Levenberg-Marquardt damping.
        :returns: Parents backed up in this round.
        """
        by_parent: dict[int, list[int]] = {}
        for child in children:
            parent = self.parent_of(child)
            if parent is not None:
                by_parent.setdefault(parent, []).append(child)

        backed_up: list[int] = []
        for parent in by_parent:
            siblings = self.children_of(parent)
            if not all(c in resolved for c in siblings):
                continue
            self._backup_node(parent, siblings, mu)
            backed_up.append(parent)
        return backed_up

    def backward_pass(self, mu: float = 0.0) -> None:
        self.bellman_tree_backup(mu)

    def _backup_node(self, handle: int, children: list[int], mu: float) -> None:
        plan = self.node(handle)
        successors = [
            Successor(
                probability=self.node(c).probability,
                node=plan,
                value=self.node(c).value,
                next_x_hat=self.node(c).x_hat,
            )
            for c in children
        ]
        plan.feedback_gain, plan.feedforward_gain, plan.value = bellman_backup(
            successors, mu,
        )

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def forward_pass(self, x_init: np.ndarray, alpha: float = 1.0) -> TreeRollout:
        """Roll the true dynamics through every node of the tree.

        All children of a node start from the same true next state. The
        returned cost weights each node's true cost by the probability
        of reaching it.

        :param x_init: State at the root, shape ``(state_dim,)``.
        :param alpha: Feedforward step size in ``[0, 1]``.
        """
        x_init = self._as_state(x_init)
        rollout = TreeRollout(alpha=alpha)
        reach = {self.root: 1.0}
        rollout.states[self.root] = x_init

        for handle in self._breadth_first():
            plan = self.node(handle)
            x = rollout.states[handle]
            if plan.is_terminal:
                rollout.cost += reach[handle] * plan.final_cost(x)
                continue

            u = plan.compute_control(x, alpha)
            rollout.controls[handle] = u
            rollout.cost += reach[handle] * plan.cost(x, u, plan.timestep)
            x_next = plan.dynamics(x, u)
            for child in self.children_of(handle):
                rollout.states[child] = x_next
                reach[child] = reach[handle] * self.node(child).probability

        return rollout

    def forward_pass_branch(
        self, leaf: int, x_init: np.ndarray, alpha: float = 1.0,
    ) -> BranchRollout:
        """Roll the true dynamics along the path from the root to ``leaf``.

        :returns: States, controls and the realized cost of that path.
        """
        path = self.path_to(leaf)
        x = self._as_state(x_init)
        states = [x]
        controls = []
        cost = 0.0
        for handle in path:
            plan = self.node(handle)
            if plan.is_terminal:
                cost += plan.final_cost(x)
                break
            u = plan.compute_control(x, alpha)
            cost += plan.cost(x, u, plan.timestep)
            x = plan.dynamics(x, u)
            states.append(x)
            controls.append(u)

        return BranchRollout(
            states=np.array(states),
            controls=np.array(controls).reshape(len(controls), self._control_dim),
            cost=float(cost),
            path=path,
        )

    def accept(self, rollout: TreeRollout) -> None:
        """Re-linearize every node at the states and controls of ``rollout``."""
        for handle, plan in self.nodes():
            plan.set_linearization(
                rollout.states[handle], rollout.controls.get(handle),
            )

    def seed(self, x_init: np.ndarray, u_nominal: np.ndarray) -> None:
        """Re-linearize the whole tree around a constant-control rollout."""
        u_nominal = np.asarray(u_nominal, dtype=np.float64).reshape(
            self._control_dim,
        )
        states = {self.root: self._as_state(x_init)}
        for handle, plan in self.nodes():
            x = states[handle]
            if plan.is_terminal:
                plan.set_linearization(x)
                continue
            plan.set_linearization(x, u_nominal)
            x_next = plan.dynamics(x, u_nominal)
            for child in self.children_of(handle):
                states[child] = x_next
            plan.feedback_gain = np.zeros_like(plan.feedback_gain)
            plan.feedforward_gain = np.zeros_like(plan.feedforward_gain)
        logger.debug("Seeded {} nodes from nominal control", len(self))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _insert(self, node: PlanNode) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._graph.add_node(handle, plan=node)
        return handle

    def _breadth_first(self) -> list[int]:
        order = []
        queue = deque([self.root])
        while queue:
            handle = queue.popleft()
            order.append(handle)
            queue.extend(self._graph.successors(handle))
        return order

    def _ordered_leaves(self) -> list[int]:
        return [h for h in self._breadth_first() if self._graph.out_degree(h) == 0]

    def _require_handle(self, handle: int) -> None:
        if handle not in self._graph:
            raise KeyError(f"Node {handle} is not in the tree")

    def _as_state(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape(-1)
        if x.shape[0] != self._state_dim:
            raise ValueError(
                f"Expected state of size {self._state_dim}, got {x.shape[0]}"
            )
        return x

    def _check_dims(self, x_star: np.ndarray, u_star: np.ndarray | None) -> None:
        x_size = np.asarray(x_star).size
        if x_size != self._state_dim:
            raise ValueError(
                f"x_star has size {x_size}, expected {self._state_dim}"
            )
        if u_star is not None and np.asarray(u_star).size != self._control_dim:
            raise ValueError(
                f"u_star has size {np.asarray(u_star).size}, "
                f"expected {self._control_dim}"
            )

    def _check_node(self, node: PlanNode) -> None:
        if node.state_dim != self._state_dim:
            raise ValueError(
                f"Node state_dim {node.state_dim} != tree state_dim "
                f"{self._state_dim}"
            )
        if not node.is_terminal and node.control_dim != self._control_dim:
            raise ValueError(
                f"Node control_dim {node.control_dim} != tree control_dim "
                f"{self._control_dim}"
            )

    def __repr__(self) -> str:
        return (
            f"ILQRTree(n_nodes={len(self)}, n_leaves={len(self.leaves())}, "
            f"state_dim={self._state_dim}, control_dim={self._control_dim})"
        )
