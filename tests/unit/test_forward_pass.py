# ruff: noqa: ANN001 ANN201

"""Unit tests for rollouts and the line search."""

from __future__ import annotations

import numpy as np
import pytest

from ilqg_trajopt.optimizer.forward_pass import (
    initial_rollout,
    line_search,
    reduction_ratio,
    rollout,
)
from ilqg_trajopt.optimizer.types import ControlLaw


def _integrator(state, control, t):
    """x' = x + u, cost x^2 + u^2."""
    return state + control, float(state @ state + control @ control)


def _unstable(state, control, t):
    return 10.0 * state + control, float(state @ state)


class TestRollout:
    """Open- and closed-loop simulation."""

    def test_open_loop(self):
        controls = np.array([[0.5], [0.5], [0.0]])
        traj = rollout(_integrator, np.array([1.0]), controls)
        np.testing.assert_allclose(traj.states[:, 0], [1.0, 1.5, 2.0])
        np.testing.assert_allclose(traj.costs, [1.25, 2.5, 4.0])
        assert traj.total_cost == pytest.approx(7.75)

    def test_feedforward_scaled_by_alpha(self):
        nominal = rollout(_integrator, np.array([0.0]), np.zeros((3, 1)))
        law = ControlLaw(feedforward=np.ones((3, 1)), feedback=np.zeros((3, 1, 1)))
        traj = rollout(_integrator, np.array([0.0]), nominal.controls, nominal.states, law, alpha=0.5)
        np.testing.assert_allclose(traj.controls[:, 0], 0.5)

    def test_feedback_on_state_deviation(self):
        nominal = rollout(_integrator, np.array([0.0]), np.zeros((3, 1)))
        law = ControlLaw(
            feedforward=np.array([[1.0], [0.0], [0.0]]),
            feedback=np.full((3, 1, 1), -0.5),
        )
        traj = rollout(_integrator, np.array([0.0]), nominal.controls, nominal.states, law)
        # x1 = 1 deviates from the nominal 0 by 1, so u1 = -0.5
        np.testing.assert_allclose(traj.controls[:, 0], [1.0, -0.5, -0.25])

    def test_clamping(self):
        limits = np.array([[-0.2, 0.2]])
        traj = rollout(_integrator, np.array([0.0]), np.array([[1.0], [-1.0]]), control_limits=limits)
        np.testing.assert_allclose(traj.controls[:, 0], [0.2, -0.2])

    def test_inverted_limits_ignored(self):
        limits = np.array([[1.0, -1.0]])
        traj = rollout(_integrator, np.array([0.0]), np.array([[3.0]]), control_limits=limits)
        np.testing.assert_allclose(traj.controls[:, 0], [3.0])

    def test_custom_difference(self):
        nominal = rollout(_integrator, np.array([0.0]), np.zeros((2, 1)))
        law = ControlLaw(feedforward=np.array([[1.0], [0.0]]), feedback=np.ones((2, 1, 1)))
        traj = rollout(
            _integrator, np.array([0.0]), nominal.controls, nominal.states, law,
            diff_fn=lambda x, x_ref: np.zeros_like(x),
        )
        np.testing.assert_allclose(traj.controls[:, 0], [1.0, 0.0])


class TestInitialRollout:
    """Backtracking over scaled initial controls."""

    def test_bounded_first_alpha(self):
        traj = initial_rollout(_integrator, np.array([1.0]), np.ones((4, 1)), np.array([1.0, 0.1]))
        np.testing.assert_allclose(traj.controls, np.ones((4, 1)))

    def test_falls_back_to_smaller_alpha(self):
        # With u = 1 the state reaches 1e3 > threshold; with u = 0.01 it stays below
        traj = initial_rollout(
            lambda x, u, t: (x + 1000.0 * u, 0.0),
            np.array([0.0]),
            np.ones((3, 1)),
            np.array([1.0, 0.01]),
            diverge_threshold=100.0,
        )
        assert traj is not None
        np.testing.assert_allclose(traj.controls, 0.01)

    def test_all_diverge(self):
        traj = initial_rollout(
            _unstable, np.array([1.0]), np.zeros((20, 1)), np.array([1.0, 0.1]),
            diverge_threshold=1e8,
        )
        assert traj is None

    def test_nan_states_count_as_divergence(self):
        traj = initial_rollout(
            lambda x, u, t: (np.full_like(x, np.nan), 0.0),
            np.array([0.0]), np.zeros((3, 1)), np.array([1.0]),
        )
        assert traj is None


class TestReductionRatio:
    """Actual over expected improvement."""

    def test_positive_expected(self):
        z, expected = reduction_ratio(0.5, 1.0, np.array([-2.0, 1.0]))
        assert expected == pytest.approx(1.0)
        assert z == pytest.approx(0.5)

    def test_expected_scales_with_alpha(self):
        _, expected = reduction_ratio(0.0, 0.5, np.array([-2.0, 1.0]))
        assert expected == pytest.approx(-0.5 * (-2.0 + 0.5))

    def test_non_positive_expected_uses_sign(self):
        z, expected = reduction_ratio(0.3, 1.0, np.array([0.0, 0.0]))
        assert expected == 0.0
        assert z == 1.0
        z, _ = reduction_ratio(-0.3, 1.0, np.array([0.0, 0.0]))
        assert z == -1.0


class TestLineSearch:
    """Acceptance of the first step size that reduces the cost."""

    def test_accepts_full_step(self):
        nominal = rollout(_integrator, np.array([1.0]), np.zeros((2, 1)))
        law = ControlLaw(feedforward=np.array([[-0.5], [0.0]]), feedback=np.zeros((2, 1, 1)))
        ls = line_search(_integrator, nominal, law, np.array([-1.0, 0.25]), np.array([1.0, 0.1]))
        assert ls.accepted
        assert ls.alpha == 1.0
        # 1 + 1 -> 1.25 + 0.25
        assert ls.improvement == pytest.approx(0.5)
        assert ls.reduction_ratio == pytest.approx(0.5 / 0.75)

    def test_backtracks(self):
        nominal = rollout(_integrator, np.array([1.0]), np.zeros((2, 1)))
        # Overshooting step: full alpha makes things worse
        law = ControlLaw(feedforward=np.array([[-3.0], [0.0]]), feedback=np.zeros((2, 1, 1)))
        ls = line_search(_integrator, nominal, law, np.array([-1.0, 0.0]), np.array([1.0, 0.1]))
        assert ls.accepted
        assert ls.alpha == pytest.approx(0.1)

    def test_rejects_when_no_alpha_improves(self):
        nominal = rollout(_integrator, np.array([0.0]), np.zeros((2, 1)))
        law = ControlLaw(feedforward=np.ones((2, 1)), feedback=np.zeros((2, 1, 1)))
        ls = line_search(_integrator, nominal, law, np.array([-1.0, 0.0]), np.array([1.0, 0.5]))
        assert not ls.accepted
        assert np.isnan(ls.alpha)
        assert ls.trajectory is not None
        assert ls.improvement < 0

    def test_z_min_threshold(self):
        nominal = rollout(_integrator, np.array([1.0]), np.zeros((2, 1)))
        law = ControlLaw(feedforward=np.array([[-0.5], [0.0]]), feedback=np.zeros((2, 1, 1)))
        ls = line_search(
            _integrator, nominal, law, np.array([-1.0, 0.25]), np.array([1.0]), z_min=0.9,
        )
        assert not ls.accepted
