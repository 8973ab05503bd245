# ruff: noqa: ANN001 ANN201

"""KL trust region around an open-loop reference distribution."""

from __future__ import annotations

import numpy as np
import pytest

from ilqg_trajopt.distributions.gaussian import (
    TrajectoryDistribution,
    build_distribution,
    kl_cost_expansion,
    trajectory_kl,
)
from ilqg_trajopt.optimizer.backward_pass import backward_pass
from ilqg_trajopt.optimizer.config import ILQGConfig
from ilqg_trajopt.optimizer.forward_pass import rollout
from ilqg_trajopt.optimizer.ilqg_solver import ILQGSolver
from ilqg_trajopt.problems.linear_quadratic import LinearQuadraticProblem

HORIZON = 10
X0 = np.array([1.0])


@pytest.fixture
def lq():
    return LinearQuadraticProblem(a=[[1.0]], b=[[1.0]], q=[[1.0]], r=[[1.0]])


@pytest.fixture
def reference(lq):
    initial = rollout(lq.step, X0, np.zeros((HORIZON, 1)))
    return TrajectoryDistribution.around(initial.states, initial.controls, action_covariance=1.0)


def _solve(lq, reference, budget, max_iterations=50):
    solver = ILQGSolver(
        ILQGConfig(verbosity=0, kl_step=budget, max_iterations=max_iterations),
        lq.step,
        lq.derivatives,
    )
    return solver.solve(X0, np.zeros((HORIZON, 1)), reference=reference)


class TestKLTrustRegion:
    """Reported divergence and the satisfied flag stay consistent."""

    @pytest.mark.parametrize("budget", [0.2, 1.0, 5.0])
    def test_flag_matches_tolerance(self, lq, reference, budget):
        result = _solve(lq, reference, budget)
        assert result.kl_divergence is not None
        within = abs(result.kl_divergence - budget) < 0.1 * budget
        assert result.kl_satisfied == within

    @pytest.mark.parametrize("budget", [0.2, 1.0])
    def test_convergence_implies_satisfied(self, lq, reference, budget):
        result = _solve(lq, reference, budget)
        if result.converged:
            assert result.kl_satisfied

    def test_cost_never_increases(self, lq, reference):
        initial_cost = float(HORIZON)  # x stays at 1 with zero controls
        result = _solve(lq, reference, 1.0)
        assert result.total_cost <= initial_cost
        accepted = [r.cost for r in result.trace if r.accepted]
        assert all(b <= a + 1e-12 for a, b in zip(accepted, accepted[1:]))

    def test_disabled_trust_region(self, lq):
        solver = ILQGSolver(ILQGConfig(verbosity=0), lq.step, lq.derivatives)
        result = solver.solve(X0, np.zeros((HORIZON, 1)))
        assert result.kl_divergence is None
        assert result.kl_satisfied


class TestDivergenceModel:
    """The measured divergence depends on the trajectory, not on the damping."""

    def test_same_trajectory_same_divergence(self, lq):
        # Two steps: the only backward step sees the terminal value function
        initial = rollout(lq.step, X0, np.zeros((2, 1)))
        reference = TrajectoryDistribution.around(
            initial.states, initial.controls, action_covariance=1.0,
        )
        kl_terms = kl_cost_expansion(
            TrajectoryDistribution.around(initial.states, initial.controls), reference,
        )
        derivs = lq.derivatives(initial.states, initial.controls).perturbed(1.0, kl_terms)

        divergences = []
        for lam in (1e-6, 1.0, 1e6):
            bp = backward_pass(derivs, initial.controls, lam)
            candidate = build_distribution(
                initial.states,
                initial.controls,
                bp.control_law.feedback,
                bp.action_precision,
                derivs,
            )
            divergences.append(
                trajectory_kl(
                    initial.states,
                    initial.controls,
                    candidate.joint_covariance(),
                    candidate,
                    reference,
                )
            )
        np.testing.assert_allclose(divergences, divergences[0], rtol=1e-10)

    @pytest.mark.parametrize("budget", [0.2, 1.0])
    def test_divergence_stays_bounded_as_lambda_grows(self, lq, reference, budget):
        result = _solve(lq, reference, budget)
        # log|lambda I| would reach ~100 at lambda_max
        assert result.kl_divergence < 30.0
