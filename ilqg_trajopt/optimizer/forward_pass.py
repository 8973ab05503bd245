r"""Forward rollouts and the backtracking line search.

The candidate control at step :math:`t` for step size :math:`\alpha` is

.. math::

    u_t = \bar{u}_t + \alpha k_t + K_t\, \delta(x_t, \bar{x}_t)

clamped to the control limits, where :math:`\delta` defaults to plain
subtraction. A candidate is accepted when the ratio of actual to
expected cost reduction exceeds ``z_min``; the first acceptable step
size wins.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from loguru import logger

from ilqg_trajopt.optimizer.config import limits_active
from ilqg_trajopt.optimizer.types import ControlLaw, Trajectory

StepFn = Callable[[np.ndarray, np.ndarray, int], tuple[np.ndarray, float]]
DiffFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


def state_difference(x: np.ndarray, x_ref: np.ndarray) -> np.ndarray:
    return x - x_ref


@dataclass(frozen=True)
class LineSearchResult:
    """Outcome of a backtracking line search.

    :param trajectory: Last candidate evaluated (the accepted one if
        ``accepted``).
    :param alpha: Accepted step size, NaN when rejected.
    :param improvement: Actual cost reduction of the last candidate.
    :param expected: Expected cost reduction of the last candidate.
    :param reduction_ratio: Ratio ``z`` of the last candidate.
    :param accepted: Whether some step size was accepted.
    """

    trajectory: Trajectory | None
    alpha: float
    improvement: float
    expected: float
    reduction_ratio: float
    accepted: bool


def rollout(
    step_fn: StepFn,
    x0: np.ndarray,
    controls: np.ndarray,
    nominal_states: np.ndarray | None = None,
    control_law: ControlLaw | None = None,
    alpha: float = 1.0,
    control_limits: np.ndarray | None = None,
    diff_fn: DiffFn = state_difference,
) -> Trajectory:
    """Simulate the dynamics under a (possibly closed-loop) control law.

    Runs the full horizon even if the state blows up; callers check
    the result.

    :param step_fn: ``(x, u, t) -> (x_next, cost)``.
    :param x0: Initial state, shape ``(n,)``.
    :param controls: Nominal controls, shape ``(N, m)``.
    :param nominal_states: Nominal states ``(N, n)`` for the feedback
        term. Required when ``control_law`` is given.
    :param control_law: Gains from the backward pass. ``None`` applies
        the nominal controls open loop.
    :param alpha: Step size on the feedforward term.
    :param control_limits: Optional ``(m, 2)`` limits.
    :param diff_fn: State deviation ``(x, x_ref) -> dx``.
    :returns: The new trajectory.
    """
    horizon, control_dim = controls.shape
    state_dim = x0.shape[0]
    limited = limits_active(control_limits)

    states = np.zeros((horizon, state_dim))
    new_controls = np.zeros((horizon, control_dim))
    costs = np.zeros(horizon)
    states[0] = x0

    for t in range(horizon):
        u_t = controls[t].copy()
        if control_law is not None:
            dx = diff_fn(states[t], nominal_states[t])
            u_t = u_t + alpha * control_law.feedforward[t] + control_law.feedback[t] @ dx
        if limited:
            u_t = np.clip(u_t, control_limits[:, 0], control_limits[:, 1])
        new_controls[t] = u_t

        x_next, cost = step_fn(states[t], u_t, t)
        costs[t] = cost
        if t < horizon - 1:
            states[t + 1] = x_next

    return Trajectory(states=states, controls=new_controls, costs=costs)


def initial_rollout(
    step_fn: StepFn,
    x0: np.ndarray,
    controls: np.ndarray,
    alphas: np.ndarray,
    control_limits: np.ndarray | None = None,
    diverge_threshold: float = 1e8,
) -> Trajectory | None:
    """Roll out scaled copies of the initial controls.

    Tries ``alpha * controls`` for each step size and keeps the first
    rollout whose states stay bounded.

    :returns: The first bounded trajectory, or ``None`` if all diverge.
    """
    for alpha in alphas:
        traj = rollout(
            step_fn, x0, alpha * controls,
            control_limits=control_limits,
        )
        if traj.is_bounded(diverge_threshold):
            return traj
        logger.debug("Initial rollout diverged with alpha={:.3g}", alpha)
    return None


def reduction_ratio(
    improvement: float,
    alpha: float,
    d_v: np.ndarray,
) -> tuple[float, float]:
    """Compare actual to predicted cost reduction.

    :returns: ``(z, expected)``. When the predicted reduction is not
        positive, ``z`` falls back to the sign of the actual reduction.
    """
    expected = -alpha * (d_v[0] + alpha * d_v[1])
    if expected > 0:
        return improvement / expected, expected
    logger.warning(
        "Non-positive expected reduction {:.3e} at alpha={:.3g}",
        expected,
        alpha,
    )
    return float(np.sign(improvement)), expected


def line_search(
    step_fn: StepFn,
    nominal: Trajectory,
    control_law: ControlLaw,
    d_v: np.ndarray,
    alphas: np.ndarray,
    z_min: float = 0.0,
    control_limits: np.ndarray | None = None,
    diff_fn: DiffFn = state_difference,
) -> LineSearchResult:
    """Backtracking line search over a fixed step-size schedule.

    Candidates are evaluated in order and the search stops at the first
    one whose reduction ratio exceeds ``z_min``; later step sizes are
    never tried.

    :param step_fn: ``(x, u, t) -> (x_next, cost)``.
    :param nominal: Currently accepted trajectory.
    :param control_law: Gains from the backward pass.
    :param d_v: Expected-reduction coefficients from the backward pass.
    :param alphas: Descending step sizes.
    :param z_min: Minimal accepted reduction ratio.
    :param control_limits: Optional ``(m, 2)`` limits.
    :param diff_fn: State deviation function.
    :returns: The search outcome.
    """
    old_cost = nominal.total_cost
    candidate: Trajectory | None = None
    improvement = 0.0
    expected = 0.0
    z = 0.0

    for alpha in alphas:
        candidate = rollout(
            step_fn,
            nominal.states[0],
            nominal.controls,
            nominal.states,
            control_law,
            float(alpha),
            control_limits,
            diff_fn,
        )
        improvement = old_cost - candidate.total_cost
        z, expected = reduction_ratio(improvement, float(alpha), d_v)
        if z > z_min:
            return LineSearchResult(
                trajectory=candidate,
                alpha=float(alpha),
                improvement=improvement,
                expected=expected,
                reduction_ratio=z,
                accepted=True,
            )

    return LineSearchResult(
        trajectory=candidate,
        alpha=float("nan"),
        improvement=improvement,
        expected=expected,
        reduction_ratio=z,
        accepted=False,
    )
