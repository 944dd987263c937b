"""Hydra entry point for the hindsight obstacle experiment.

Usage::

    python -m tree_ilqr

Or with config overrides::

    python -m tree_ilqr true_world_with_obs=false experiment.horizon=20
"""

from __future__ import annotations

from pathlib import Path

import hydra
from loguru import logger
from omegaconf import DictConfig, OmegaConf

from tree_ilqr.experiments.single_obstacle import (
    ExperimentConfig,
    PolicyType,
    single_obs_control_diffdrive,
)
from tree_ilqr.utils.logging import MetricsLogger
from tree_ilqr.utils.seeding import seed_everything


@hydra.main(version_base=None, config_path="../configs", config_name="config")
def main(cfg: DictConfig) -> dict[str, float]:
    """Run every configured policy on the single-obstacle problem."""
    seed = cfg.get("seed", 0)
    seed_everything(seed)

    values = OmegaConf.to_container(cfg.experiment, resolve=True)
    values["seed"] = seed
    config = ExperimentConfig.from_mapping(values)

    output_dir = Path(cfg.get("output_dir", "outputs"))
    output_dir.mkdir(parents=True, exist_ok=True)

    metrics = None
    if cfg.get("tensorboard", False):
        metrics = MetricsLogger(cfg.get("log_dir", "runs"), "single_obstacle")
        metrics.log_config(cfg)

    with_obs = bool(cfg.true_world_with_obs)
    world_tag = "obs" if with_obs else "noobs"
    logger.info(
        "Single-obstacle experiment: obstacle present={}, prior={}",
        with_obs, list(cfg.obs_prior),
    )

    costs: dict[str, float] = {}
    for name in cfg.policies:
        policy = PolicyType(name)
        costs[str(policy)] = single_obs_control_diffdrive(
            policy,
            with_obs,
            list(cfg.obs_prior),
            config,
            state_output_path=output_dir / f"states_{policy}_{world_tag}.csv",
            obstacle_output_path=output_dir / f"obstacles_{world_tag}.csv",
            metrics=metrics,
        )

    for name, cost in costs.items():
        logger.info("{:>10}: {:.4f}", name, cost)

    if metrics is not None:
        metrics.flush()
        metrics.close()
    return costs


if __name__ == "__main__":
    main()
