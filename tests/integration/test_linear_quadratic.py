# ruff: noqa: ANN001 ANN201

"""End-to-end runs on the scalar integrator x' = x + u, cost x^2 + u^2."""

from __future__ import annotations

import numpy as np
import pytest
import sympy
from scipy import optimize

from ilqg_trajopt.optimizer.config import ILQGConfig
from ilqg_trajopt.optimizer.ilqg_solver import ILQGSolver
from ilqg_trajopt.optimizer.types import TerminationReason
from ilqg_trajopt.problems.derivatives import make_finite_difference_derivatives
from ilqg_trajopt.problems.linear_quadratic import LinearQuadraticProblem
from ilqg_trajopt.problems.symbolic import SymbolicProblem

HORIZON = 10
X0 = np.array([1.0])


def _riccati_cost(horizon: int) -> float:
    """Optimal cost from x0 = 1 with the last control fixed at zero."""
    p = 1.0
    for _ in range(horizon - 1):
        p = 1.0 + p / (1.0 + p)
    return p


def _total_cost(u_free: np.ndarray, lq: LinearQuadraticProblem) -> float:
    controls = np.append(u_free, 0.0)
    x = X0.copy()
    total = 0.0
    for u in controls:
        x, c = lq.step(x, np.array([u]), 0)
        total += c
    return total


@pytest.fixture
def lq():
    return LinearQuadraticProblem(a=[[1.0]], b=[[1.0]], q=[[1.0]], r=[[1.0]])


@pytest.fixture
def solution(lq):
    solver = ILQGSolver(ILQGConfig(verbosity=0), lq.step, lq.derivatives)
    return solver.solve(X0, np.zeros((HORIZON, 1)))


class TestUnconstrained:
    """Convergence to the Riccati optimum."""

    def test_converges_quickly(self, solution):
        assert solution.converged
        assert solution.n_iterations <= 30

    def test_reaches_riccati_optimum(self, solution):
        assert solution.total_cost == pytest.approx(_riccati_cost(HORIZON), rel=1e-6)

    def test_cost_monotone_over_accepted_steps(self, solution):
        costs = [r.cost for r in solution.trace if r.accepted]
        assert len(costs) >= 1
        assert all(b <= a + 1e-12 for a, b in zip(costs, costs[1:]))
        assert costs[0] < HORIZON  # initial rollout costs x0^2 per step

    def test_state_decays_monotonically(self, solution):
        x = solution.states[:, 0]
        assert np.all(x > 0)
        assert np.all(np.diff(x) < 0)

    def test_value_hessian_symmetric(self, solution):
        v_xx = solution.value_function.v_xx
        np.testing.assert_array_equal(v_xx, np.swapaxes(v_xx, 1, 2))

    def test_rerun_on_solution_is_idempotent(self, lq, solution):
        solver = ILQGSolver(ILQGConfig(verbosity=0), lq.step, lq.derivatives)
        again = solver.solve(solution.states, solution.controls, initial_costs=solution.costs)
        assert again.total_cost == pytest.approx(solution.total_cost, abs=1e-7)
        assert again.total_cost <= solution.total_cost + 1e-12

    @pytest.mark.parametrize("reg_type", [1, 2])
    def test_regularization_types_agree(self, lq, reg_type):
        solver = ILQGSolver(ILQGConfig(verbosity=0, reg_type=reg_type), lq.step, lq.derivatives)
        result = solver.solve(X0, np.zeros((HORIZON, 1)))
        assert result.total_cost == pytest.approx(_riccati_cost(HORIZON), rel=1e-6)

    def test_time_varying_layout_agrees(self):
        lq = LinearQuadraticProblem(a=[[1.0]], b=[[1.0]], q=[[1.0]], r=[[1.0]], time_varying=True)
        solver = ILQGSolver(ILQGConfig(verbosity=0), lq.step, lq.derivatives)
        result = solver.solve(X0, np.zeros((HORIZON, 1)))
        assert result.total_cost == pytest.approx(_riccati_cost(HORIZON), rel=1e-6)

    def test_finite_difference_provider(self, lq):
        derivatives_fn = make_finite_difference_derivatives(lq.step, 1, 1)
        solver = ILQGSolver(ILQGConfig(verbosity=0), lq.step, derivatives_fn)
        result = solver.solve(X0, np.zeros((HORIZON, 1)))
        assert result.total_cost == pytest.approx(_riccati_cost(HORIZON), rel=1e-5)

    def test_full_ddp_on_symbolic_problem(self):
        x, u = sympy.symbols("x u")
        problem = SymbolicProblem([x], [u], [x + u], x ** 2 + u ** 2, second_order=True)
        solver = ILQGSolver(ILQGConfig(verbosity=0), problem.step, problem.derivatives)
        result = solver.solve(X0, np.zeros((HORIZON, 1)))
        assert result.total_cost == pytest.approx(_riccati_cost(HORIZON), rel=1e-6)


class TestControlLimited:
    """Box-constrained controls."""

    LIMITS = np.array([[-0.1, 0.1]])

    @pytest.fixture
    def clamped(self, lq):
        solver = ILQGSolver(
            ILQGConfig(verbosity=0, control_limits=self.LIMITS), lq.step, lq.derivatives,
        )
        return solver.solve(X0, np.zeros((HORIZON, 1)))

    def test_controls_within_bounds(self, clamped):
        assert np.all(clamped.controls >= -0.1 - 1e-12)
        assert np.all(clamped.controls <= 0.1 + 1e-12)

    def test_cost_not_below_unconstrained(self, clamped):
        assert clamped.total_cost >= _riccati_cost(HORIZON) - 1e-9

    def test_early_controls_saturate(self, clamped):
        # The unconstrained optimum pushes u0 to about -0.62
        assert clamped.controls[0, 0] == pytest.approx(-0.1)

    def test_matches_bounded_reference_solution(self, lq, clamped):
        reference = optimize.minimize(
            _total_cost,
            np.zeros(HORIZON - 1),
            args=(lq,),
            method="L-BFGS-B",
            bounds=[(-0.1, 0.1)] * (HORIZON - 1),
        )
        assert clamped.total_cost == pytest.approx(reference.fun, rel=1e-4)


class TestInitialDivergence:

    def test_unstable_initial_controls(self):
        lq = LinearQuadraticProblem(a=[[1.0]], b=[[1.0]], q=[[1.0]], r=[[1.0]])
        solver = ILQGSolver(ILQGConfig(verbosity=0, diverge_threshold=1e3), lq.step, lq.derivatives)
        result = solver.solve(X0, np.full((HORIZON, 1), 1e4))
        # A small enough scaling of u0 keeps the first rollout bounded
        assert result.termination is not TerminationReason.INITIAL_DIVERGENCE
        assert np.all(np.abs(result.states) < 1e3)
