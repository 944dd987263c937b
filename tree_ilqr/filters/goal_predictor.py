r"""Discrete Bayesian belief over goals using the MaxEnt IOC framework.

Under maximum-entropy inverse optimal control, the likelihood of an
observed action under goal :math:`g` is proportional to
:math:`\exp(V_g - Q_g)`, so the belief update is additive in log space.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from loguru import logger
from scipy.special import logsumexp

if TYPE_CHECKING:
    from collections.abc import Sequence


class GoalPredictor:
    """Log-probability distribution over a fixed set of goals.

    :param initial_goal_prob: Prior weights over goals. Need not be
        normalized but must be non-negative with a positive sum.
    :raises ValueError: On an empty, negative or all-zero prior.
    """

    def __init__(self, initial_goal_prob: Sequence[float] | np.ndarray) -> None:
        self._log_goal_distribution = np.zeros(0)
        self.initialize(initial_goal_prob)

    def initialize(self, initial_goal_prob: Sequence[float] | np.ndarray) -> None:
        """Reset the belief to ``initial_goal_prob`` (normalized)."""
        probs = np.asarray(initial_goal_prob, dtype=np.float64).reshape(-1)
        if probs.size == 0:
            raise ValueError("GoalPredictor needs at least one goal")
        if np.any(probs < 0) or not np.all(np.isfinite(probs)):
            raise ValueError(f"Goal priors must be finite and >= 0, got {probs}")
        if probs.sum() <= 0:
            raise ValueError("Goal priors must have a positive sum")

        with np.errstate(divide="ignore"):
            self._log_goal_distribution = np.log(probs)
        self.normalize_log_distribution()

    @property
    def n_goals(self) -> int:
        """Number of goals tracked."""
        return int(self._log_goal_distribution.size)

    def goal_distribution(self) -> np.ndarray:
        """Current probabilities over goals, shape ``(n_goals,)``."""
        return np.exp(self._log_goal_distribution)

    def log_goal_distribution(self) -> np.ndarray:
        """Current log-probabilities over goals (a copy)."""
        return self._log_goal_distribution.copy()

    def prob_at(self, index: int) -> float:
        """Probability of goal ``index``.

        :raises IndexError: If ``index`` is out of range.
        """
        if not 0 <= index < self.n_goals:
            raise IndexError(f"Goal index {index} out of range [0, {self.n_goals})")
        return float(np.exp(self._log_goal_distribution[index]))

    def update_goal_distribution(
        self,
        q_values: Sequence[float] | np.ndarray,
        v_values: Sequence[float] | np.ndarray,
    ) -> None:
        """Fold one observation into the belief.

        :param q_values: Cost-to-go of the observed action under each goal.
        :param v_values: Optimal cost-to-go under each goal.
        :raises ValueError: If the lengths differ from the number of goals.
        """
        q = np.asarray(q_values, dtype=np.float64).reshape(-1)
        v = np.asarray(v_values, dtype=np.float64).reshape(-1)
        if q.size != self.n_goals or v.size != self.n_goals:
            raise ValueError(
                f"Expected {self.n_goals} q and v values, "
                f"got {q.size} and {v.size}"
            )
        self._log_goal_distribution = self._log_goal_distribution + v - q
        self.normalize_log_distribution()

    def normalize_log_distribution(self) -> None:
        """Shift the log-probabilities so that they sum to one in probability."""
        log_norm = logsumexp(self._log_goal_distribution)
        if not np.isfinite(log_norm):
            logger.warning(
                "Goal belief collapsed (log-normalizer {}), resetting to uniform",
                log_norm,
            )
            self._log_goal_distribution = np.full(
                self.n_goals, -np.log(self.n_goals),
            )
            return
        self._log_goal_distribution = self._log_goal_distribution - log_norm

    def __repr__(self) -> str:
        return (
            "GoalPredictor("
            f"{np.array2string(self.goal_distribution(), precision=4)})"
        )
