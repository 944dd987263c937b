"""Reproducibility utilities."""

import random

import numpy as np
import torch
from loguru import logger


def seed_everything(seed: int) -> None:
    """Set deterministic seeds for Python, NumPy and PyTorch.

    :param seed: The random seed to use across all libraries.
    :raises ValueError: If seed is negative.
    """
    if seed < 0:
        raise ValueError(f"Seed must be non-negative, got {seed}")

    random.seed(seed)
    np.random.seed(seed)  # noqa: NPY002
    torch.manual_seed(seed)

    logger.info("All random seeds set to {}", seed)


def make_rng(seed: int | None = None) -> np.random.Generator:
    """Return an independent NumPy generator for simulation noise.

    :param seed: Seed for the generator; ``None`` draws fresh entropy.
    """
    return np.random.default_rng(seed)
