r"""Quadratic expansion of the action-value function.

Given the value-function model :math:`(V'_x, V'_{xx})` at :math:`t+1`
and the derivatives at :math:`t`:

.. math::

    Q_x &= c_x + f_x^T V'_x \\
    Q_u &= c_u + f_u^T V'_x \\
    Q_{xx} &= c_{xx} + f_x^T V'_{xx} f_x + V'_x \cdot f_{xx} \\
    Q_{ux} &= c_{xu}^T + f_u^T V'_{xx} f_x + V'_x \cdot f_{xu} \\
    Q_{uu} &= c_{uu} + f_u^T V'_{xx} f_u + V'_x \cdot f_{uu}

The tensor contractions only appear when the second-order dynamics
tensors are supplied (full DDP); without them this is iLQG. Time-
invariant derivatives were already broadcast by
:meth:`DerivativeBundle.at`, so all four structural variants share
this single path.
"""

from __future__ import annotations

import numpy as np

from ilqg_trajopt.optimizer.types import QExpansion, StepDerivatives


def contract_value_gradient(v_x: np.ndarray, tensor: np.ndarray) -> np.ndarray:
    """Contract :math:`V_x` with the state axis of a dynamics tensor.

    :param v_x: Shape ``(n,)``.
    :param tensor: Shape ``(n, a, b)``.
    :returns: Shape ``(b, a)``; the transpose matches the
        ``(control, state)`` layout of :math:`Q_{ux}`.
    """
    return np.tensordot(v_x, tensor, axes=1).T


def build_q_expansion(
    v_x: np.ndarray,
    v_xx: np.ndarray,
    step: StepDerivatives,
    lam: float,
    reg_type: int,
) -> QExpansion:
    """Assemble the Q-function blocks at one timestep.

    :param v_x: Value gradient at ``t+1``, shape ``(n,)``.
    :param v_xx: Value Hessian at ``t+1``, shape ``(n, n)``.
    :param step: Derivatives at ``t``.
    :param lam: Regularization value (already zeroed below the floor).
    :param reg_type: 1 regularizes :math:`Q_{uu}`, 2 regularizes
        :math:`V'_{xx}`.
    :returns: Unregularized blocks plus the regularized pair used for
        the control-law solve.
    """
    fx, fu = step.fx, step.fu
    state_dim = fx.shape[0]
    control_dim = fu.shape[1]

    q_x = step.cx + fx.T @ v_x
    q_u = step.cu + fu.T @ v_x
    q_xx = step.cxx + fx.T @ v_xx @ fx
    q_ux = step.cxu.T + fu.T @ v_xx @ fx
    q_uu = step.cuu + fu.T @ v_xx @ fu

    fxu_vx = None
    fuu_vx = None
    if step.fxx is not None:
        q_xx = q_xx + contract_value_gradient(v_x, step.fxx)
    if step.fxu is not None:
        fxu_vx = contract_value_gradient(v_x, step.fxu)
        q_ux = q_ux + fxu_vx
    if step.fuu is not None:
        fuu_vx = contract_value_gradient(v_x, step.fuu)
        q_uu = q_uu + fuu_vx

    if reg_type == 2:
        v_xx_reg = v_xx + lam * np.eye(state_dim)
    else:
        v_xx_reg = v_xx

    q_ux_reg = step.cxu.T + fu.T @ v_xx_reg @ fx
    q_uu_reg = step.cuu + fu.T @ v_xx_reg @ fu
    if fxu_vx is not None:
        q_ux_reg = q_ux_reg + fxu_vx
    if fuu_vx is not None:
        q_uu_reg = q_uu_reg + fuu_vx
    if reg_type == 1:
        q_uu_reg = q_uu_reg + lam * np.eye(control_dim)

    return QExpansion(
        q_x=q_x,
        q_u=q_u,
        q_xx=q_xx,
        q_ux=q_ux,
        q_uu=q_uu,
        q_ux_reg=q_ux_reg,
        q_uu_reg=q_uu_reg,
    )
