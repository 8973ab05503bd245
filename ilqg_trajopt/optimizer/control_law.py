r"""Per-timestep control-law solve and value-function update.

Unconstrained steps factorize the regularized :math:`Q_{uu}` once and
solve for both gains:

.. math::

    [k \mid K] = -\tilde{Q}_{uu}^{-1} [Q_u \mid \tilde{Q}_{ux}]

Control-limited steps delegate to a box QP; the feedback gain is then
only computed on the free coordinates and is zero on clamped ones.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
from scipy import linalg

from ilqg_trajopt.optimizer.types import QExpansion
from ilqg_trajopt.qp.box_qp import BoxQPResult, box_qp

BoxQPFn = Callable[
    [np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray | None],
    BoxQPResult,
]


@dataclass(frozen=True)
class StepSolution:
    """Gains and value update at one timestep.

    :param k: Feedforward correction, shape ``(m,)``.
    :param big_k: Feedback gain, shape ``(m, n)``.
    :param v_x: Value gradient, shape ``(n,)``.
    :param v_xx: Symmetrized value Hessian, shape ``(n, n)``.
    :param d_v: Contribution ``[k'Qu, 0.5 k'Quu k]`` to the expected
        cost reduction.
    """

    k: np.ndarray
    big_k: np.ndarray
    v_x: np.ndarray
    v_xx: np.ndarray
    d_v: np.ndarray


def solve_control_law(
    q: QExpansion,
    lower: np.ndarray | None = None,
    upper: np.ndarray | None = None,
    warm_start: np.ndarray | None = None,
    box_qp_fn: BoxQPFn = box_qp,
) -> StepSolution | None:
    """Solve for the gains at one timestep.

    :param q: Q-function expansion at this timestep.
    :param lower: Lower bound on the control *correction*
        (``limit - u_t``), or ``None`` when unconstrained.
    :param upper: Upper bound on the control correction.
    :param warm_start: Initial guess for the box QP.
    :param box_qp_fn: Box-QP solver following the
        :func:`~ilqg_trajopt.qp.box_qp.box_qp` contract.
    :returns: The step solution, or ``None`` when the regularized
        curvature is not positive definite (the caller must raise the
        regularization and restart the sweep).
    """
    control_dim, state_dim = q.q_ux.shape

    if lower is None or upper is None:
        try:
            cho = linalg.cho_factor(q.q_uu_reg)
        except (np.linalg.LinAlgError, ValueError):
            return None
        gains = -linalg.cho_solve(
            cho, np.column_stack([q.q_u, q.q_ux_reg]),
        )  # (m, 1 + n)
        k = gains[:, 0]
        big_k = gains[:, 1:]
    else:
        qp = box_qp_fn(q.q_uu_reg, q.q_u, lower, upper, warm_start)
        if qp.result < 1:
            return None
        k = qp.x
        big_k = np.zeros((control_dim, state_dim))
        if np.any(qp.free):
            big_k[qp.free] = -linalg.cho_solve(
                (qp.factor, False), q.q_ux_reg[qp.free],
            )

    return _value_update(q, k, big_k)


def _value_update(
    q: QExpansion,
    k: np.ndarray,
    big_k: np.ndarray,
) -> StepSolution:
    d_v = np.array([k @ q.q_u, 0.5 * k @ q.q_uu @ k])
    v_x = q.q_x + big_k.T @ q.q_uu @ k + big_k.T @ q.q_u + q.q_ux.T @ k
    v_xx = (
        q.q_xx
        + big_k.T @ q.q_uu @ big_k
        + big_k.T @ q.q_ux
        + q.q_ux.T @ big_k
    )
    # Symmetrize V_xx to counter floating-point drift
    v_xx = 0.5 * (v_xx + v_xx.T)
    return StepSolution(k=k, big_k=big_k, v_x=v_x, v_xx=v_xx, d_v=d_v)
