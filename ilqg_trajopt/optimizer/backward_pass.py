r"""Backward Riccati-like sweep of iLQG / DDP.

Starting from the terminal boundary :math:`V_{N-1} = (c_x, c_{xx})`
at the last step, the sweep visits :math:`t = N-2, \dots, 0`, builds
the Q-function expansion and solves for the gains. The accumulated
expected cost reduction is

.. math::

    \Delta V(\alpha) = \alpha\, dV_1 + \alpha^2 dV_2.

The sweep stops at the first timestep whose regularized curvature is
not positive definite; nothing computed before the failure is
returned.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from loguru import logger

from ilqg_trajopt.optimizer.config import limits_active
from ilqg_trajopt.optimizer.control_law import BoxQPFn, solve_control_law
from ilqg_trajopt.optimizer.expansion import build_q_expansion
from ilqg_trajopt.optimizer.types import (
    ControlLaw,
    DerivativeBundle,
    ValueFunction,
)
from ilqg_trajopt.qp.box_qp import box_qp


@dataclass(frozen=True)
class BackwardPassResult:
    """Outcome of one backward sweep.

    :param control_law: Gains for every timestep (``None`` on
        divergence). The last step keeps zero gains.
    :param value_function: Cost-to-go model (``None`` on divergence).
    :param d_v: Expected-reduction coefficients ``[dV1, dV2]``.
    :param diverged_at: Index into ``controls`` (0-based) of the first
        failed factorization, ``None`` if the sweep completed. Progress
        messages print it 1-based.
    :param action_precision: Unregularized :math:`Q_{uu}` per step,
        shape ``(N, m, m)``; used as the policy precision of the
        trajectory distribution. The damping ``lam`` is left out.
        The last step repeats the one before it.
    """

    control_law: ControlLaw | None
    value_function: ValueFunction | None
    d_v: np.ndarray
    diverged_at: int | None = None
    action_precision: np.ndarray | None = None

    @property
    def diverged(self) -> bool:
        return self.diverged_at is not None


def backward_pass(
    derivs: DerivativeBundle,
    controls: np.ndarray,
    lam: float,
    reg_type: int = 1,
    control_limits: np.ndarray | None = None,
    box_qp_fn: BoxQPFn = box_qp,
) -> BackwardPassResult:
    """Run the backward sweep along the current trajectory.

    :param derivs: Derivatives along the trajectory (possibly
        time-invariant, possibly without second-order dynamics).
    :param controls: Nominal controls, shape ``(N, m)``; needed to turn
        absolute control limits into bounds on the correction.
    :param lam: Regularization value.
    :param reg_type: Regularization type (1 or 2).
    :param control_limits: Optional ``(m, 2)`` limits. A first row
        with ``lower > upper`` counts as no limits.
    :param box_qp_fn: Box-QP solver used when limits are active.
    :returns: The sweep result.
    """
    horizon, control_dim = controls.shape
    state_dim = derivs.state_dim
    constrained = limits_active(control_limits)

    law = ControlLaw.zeros(horizon, state_dim, control_dim)
    v_x = np.zeros((horizon, state_dim))
    v_xx = np.zeros((horizon, state_dim, state_dim))
    precision = np.zeros((horizon, control_dim, control_dim))
    d_v = np.zeros(2)

    terminal = derivs.at(horizon - 1)
    v_x[-1] = terminal.cx
    v_xx[-1] = terminal.cxx
    precision[-1] = terminal.cuu

    for t in range(horizon - 2, -1, -1):
        q = build_q_expansion(v_x[t + 1], v_xx[t + 1], derivs.at(t), lam, reg_type)

        if constrained:
            lower = control_limits[:, 0] - controls[t]
            upper = control_limits[:, 1] - controls[t]
            warm_start = law.feedforward[min(t + 1, horizon - 2)]
            step = solve_control_law(q, lower, upper, warm_start, box_qp_fn)
        else:
            step = solve_control_law(q)

        if step is None:
            logger.debug("Backward pass diverged at timestep {}", t + 1)
            return BackwardPassResult(
                control_law=None,
                value_function=None,
                d_v=d_v,
                diverged_at=t,
            )

        d_v = d_v + step.d_v
        v_x[t] = step.v_x
        v_xx[t] = step.v_xx
        law.feedforward[t] = step.k
        law.feedback[t] = step.big_k
        precision[t] = q.q_uu

    # The last step has no gains of its own
    if horizon >= 2:
        precision[-1] = precision[-2]

    return BackwardPassResult(
        control_law=law,
        value_function=ValueFunction(v_x=v_x, v_xx=v_xx),
        d_v=d_v,
        action_precision=precision,
    )
