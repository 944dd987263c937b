"""Tree-iLQR: iterative LQR over probability-weighted scenario trees.

Plan nodes hold local linear-quadratic models; the tree backs up
value functions from its leaves with probability-weighted Bellman
backups, and the solver loop alternates backward passes, line-searched
forward passes and re-linearization until the expected cost settles.
"""

from tree_ilqr.ilqr.bellman import (
    NumericalFailureError,
    Successor,
    bellman_backup,
    compute_control_policy,
    compute_value_matrix,
    damped_control_hessian,
)
from tree_ilqr.ilqr.hindsight import (
    HindsightBranch,
    HindsightRollout,
    HindsightSolver,
    HindsightSplit,
    HindsightTree,
)
from tree_ilqr.ilqr.ilqr_tree import BranchRollout, ILQRTree, TreeRollout
from tree_ilqr.ilqr.lqr import (
    FiniteHorizonLQRSolution,
    LinearDynamics,
    LQRSolution,
    LQRSolver,
    QuadraticCost,
)
from tree_ilqr.ilqr.plan_node import PlanNode
from tree_ilqr.ilqr.solver import (
    ILQRConfig,
    ILQRSolution,
    ILQRSolver,
    SolverState,
    TrajectoryProblem,
)
from tree_ilqr.ilqr.symbolic import (
    SymbolicDynamics,
    SymbolicFinalCost,
    SymbolicStageCost,
)
from tree_ilqr.ilqr.taylor_expansion import (
    CostExpansion,
    DynamicsModel,
    FinalCostModel,
    FiniteDiffDynamics,
    FiniteDiffFinalCost,
    FiniteDiffStageCost,
    StageCostModel,
)

__all__ = [
    "BranchRollout",
    "CostExpansion",
    "DynamicsModel",
    "FinalCostModel",
    "FiniteDiffDynamics",
    "FiniteDiffFinalCost",
    "FiniteDiffStageCost",
    "FiniteHorizonLQRSolution",
    "HindsightBranch",
    "HindsightRollout",
    "HindsightSolver",
    "HindsightSplit",
    "HindsightTree",
    "ILQRConfig",
    "ILQRSolution",
    "ILQRSolver",
    "ILQRTree",
    "LQRSolution",
    "LQRSolver",
    "LinearDynamics",
    "NumericalFailureError",
    "PlanNode",
    "QuadraticCost",
    "SolverState",
    "StageCostModel",
    "Successor",
    "SymbolicDynamics",
    "SymbolicFinalCost",
    "SymbolicStageCost",
    "TrajectoryProblem",
    "TreeRollout",
    "bellman_backup",
    "compute_control_policy",
    "compute_value_matrix",
    "damped_control_hessian",
]
