# ruff: noqa: ANN001 ANN201

"""Tests for the Hydra configuration and entry-point helpers."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from hydra import compose, initialize_config_dir

from ilqg_trajopt.__main__ import build_problem, run
from ilqg_trajopt.optimizer.config import ILQGConfig
from ilqg_trajopt.optimizer.types import TerminationReason

CONFIG_DIR = str(Path(__file__).resolve().parents[2] / "configs")


def _compose(overrides=None):
    with initialize_config_dir(version_base=None, config_dir=CONFIG_DIR):
        return compose(config_name="config", overrides=overrides or [])


class TestConfigComposition:
    """The shipped YAML composes and maps onto ILQGConfig."""

    def test_defaults(self):
        cfg = _compose()
        assert cfg.problem.name == "car_parking"
        assert cfg.problem.horizon == 500
        assert cfg.solver.lambda_factor == pytest.approx(1.6)

    def test_solver_section_builds_config(self):
        from omegaconf import OmegaConf

        cfg = _compose(["solver.tol_fun=1e-5", "solver.reg_type=2"])
        config = ILQGConfig.from_dict(OmegaConf.to_container(cfg.solver, resolve=True))
        assert config.tol_fun == pytest.approx(1e-5)
        assert config.reg_type == 2
        np.testing.assert_allclose(config.alphas, ILQGConfig().alphas)

    def test_overrides(self):
        cfg = _compose(["problem.name=linear_quadratic", "problem.horizon=10"])
        setup = build_problem(cfg.problem, seed=0)
        assert setup.u0.shape == (10, 1)
        assert setup.control_limits is None
        assert setup.terminal_cost_fn is None


class TestBuildProblem:
    """Problem factory."""

    def test_car_parking_setup(self):
        cfg = _compose(["problem.horizon=20"])
        setup = build_problem(cfg.problem, seed=0)
        assert setup.x0.shape == (4,)
        assert setup.u0.shape == (20, 2)
        assert setup.control_limits.shape == (2, 2)
        assert setup.terminal_cost_fn is not None

    def test_seeded_initial_controls(self):
        cfg = _compose(["problem.horizon=20"])
        a = build_problem(cfg.problem, seed=3)
        b = build_problem(cfg.problem, seed=3)
        np.testing.assert_array_equal(a.u0, b.u0)

    def test_unknown_problem(self):
        cfg = _compose(["problem.name=cartpole"])
        with pytest.raises(ValueError, match="Unknown problem"):
            build_problem(cfg.problem, seed=0)


class TestRun:
    """End-to-end run through the configuration layer."""

    def test_linear_quadratic_run(self):
        cfg = _compose([
            "problem.name=linear_quadratic",
            "problem.horizon=10",
            "solver.verbosity=0",
        ])
        result = run(cfg)
        assert result.converged
        assert result.termination in (
            TerminationReason.COST_CONVERGED,
            TerminationReason.GRADIENT_CONVERGED,
        )

    def test_linear_quadratic_with_limits(self):
        cfg = _compose([
            "problem.name=linear_quadratic",
            "problem.horizon=10",
            "problem.linear_quadratic.control_limits=[[-0.1,0.1]]",
            "solver.verbosity=0",
        ])
        result = run(cfg)
        assert np.all(np.abs(result.controls) <= 0.1 + 1e-12)
