"""Hydra entry point for ilqg-trajopt.

Usage::

    python -m ilqg_trajopt

Or with config overrides::

    python -m ilqg_trajopt problem.name=linear_quadratic problem.horizon=10
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import hydra
import numpy as np
from loguru import logger
from omegaconf import DictConfig, OmegaConf

from ilqg_trajopt.distributions.gaussian import TrajectoryDistribution
from ilqg_trajopt.optimizer.config import ILQGConfig
from ilqg_trajopt.optimizer.forward_pass import StepFn, rollout
from ilqg_trajopt.optimizer.ilqg_solver import DerivativesFn, ILQGSolver
from ilqg_trajopt.optimizer.types import ILQGResult
from ilqg_trajopt.problems.car_parking import make_car_parking
from ilqg_trajopt.problems.linear_quadratic import LinearQuadraticProblem


@dataclass(frozen=True)
class ProblemSetup:
    """Everything the solver needs for one benchmark run."""

    step_fn: StepFn
    derivatives_fn: DerivativesFn
    terminal_cost_fn: Callable[[np.ndarray], float] | None
    x0: np.ndarray
    u0: np.ndarray
    control_limits: np.ndarray | None


def build_problem(problem_cfg: DictConfig, seed: int) -> ProblemSetup:
    """Instantiate the benchmark named by ``problem_cfg.name``.

    :raises ValueError: If the problem name is unknown.
    """
    name = problem_cfg.name
    horizon = int(problem_cfg.horizon)

    if name == "car_parking":
        car_cfg = problem_cfg.car_parking
        car = make_car_parking(
            horizon=horizon,
            dt=float(car_cfg.dt),
            axle_distance=float(car_cfg.axle_distance),
            second_order=bool(problem_cfg.get("second_order", False)),
        )
        rng = np.random.default_rng(seed)
        return ProblemSetup(
            step_fn=car.problem.step,
            derivatives_fn=car.problem.derivatives,
            terminal_cost_fn=car.problem.terminal_cost,
            x0=car.x0,
            u0=car.initial_controls(rng, float(car_cfg.initial_control_scale)),
            control_limits=car.control_limits,
        )

    if name == "linear_quadratic":
        lq_cfg: dict[str, Any] = OmegaConf.to_container(  # type: ignore[assignment]
            problem_cfg.linear_quadratic, resolve=True,
        )
        lq = LinearQuadraticProblem(
            a=np.asarray(lq_cfg["a"], dtype=np.float64),
            b=np.asarray(lq_cfg["b"], dtype=np.float64),
            q=np.asarray(lq_cfg["q"], dtype=np.float64),
            r=np.asarray(lq_cfg["r"], dtype=np.float64),
        )
        limits = lq_cfg.get("control_limits")
        return ProblemSetup(
            step_fn=lq.step,
            derivatives_fn=lq.derivatives,
            terminal_cost_fn=None,
            x0=np.asarray(lq_cfg["x0"], dtype=np.float64),
            u0=np.zeros((horizon, lq.control_dim)),
            control_limits=(
                np.asarray(limits, dtype=np.float64) if limits is not None else None
            ),
        )

    raise ValueError(
        f"Unknown problem '{name}', expected 'car_parking' or 'linear_quadratic'"
    )


def run(cfg: DictConfig) -> ILQGResult:
    """Build the configured problem and solve it."""
    setup = build_problem(cfg.problem, int(cfg.get("seed", 42)))

    solver_values: dict[str, Any] = OmegaConf.to_container(cfg.solver, resolve=True)  # type: ignore[assignment]
    if setup.control_limits is not None:
        solver_values["control_limits"] = setup.control_limits.tolist()
    config = ILQGConfig.from_dict(solver_values)

    reference = None
    if config.kl_enabled:
        # Open-loop Gaussian around the initial rollout
        initial = rollout(
            setup.step_fn, setup.x0, setup.u0,
            control_limits=config.control_limits,
        )
        reference = TrajectoryDistribution.around(initial.states, initial.controls)

    solver = ILQGSolver(
        config,
        setup.step_fn,
        setup.derivatives_fn,
        terminal_cost_fn=setup.terminal_cost_fn,
    )
    return solver.solve(setup.x0, setup.u0, reference=reference)


@hydra.main(version_base=None, config_path="../configs", config_name="config")
def main(cfg: DictConfig) -> None:
    """Run one iLQG benchmark."""
    logger.remove()
    logger.add(sys.stderr, level=cfg.get("log_level", "INFO"))

    logger.info("Starting ilqg-trajopt (problem={})", cfg.problem.name)
    logger.debug("Config:\n{}", OmegaConf.to_yaml(cfg))

    result = run(cfg)
    logger.info(
        "Finished: termination={}, cost={:.6g}, iterations={}",
        result.termination.value,
        result.total_cost,
        result.n_iterations,
    )
    if not result.converged:
        logger.warning("Solver did not converge ({})", result.termination.value)


if __name__ == "__main__":
    main()
