r"""Linear-Gaussian trajectory distributions and their KL divergence.

A trajectory distribution pairs a time-varying linear-Gaussian
controller

.. math::

    p(u_t \mid x_t) = \mathcal{N}\big(\bar{u}_t + K_t (x_t - \bar{x}_t),
    \Sigma^u_t\big)

with a Gaussian state marginal :math:`\mathcal{N}(\bar{x}_t, \Sigma^x_t)`
obtained by pushing the joint state-control covariance through the
linearized dynamics. The policy covariance is the inverse of the
regularized :math:`Q_{uu}` from the backward pass, as in maximum-
entropy iLQG.

Used only by the KL trust region: :func:`trajectory_kl` measures how
far a candidate moves from the reference distribution, and
:func:`kl_cost_expansion` provides the quadratic cost term
:math:`-\log p_{ref}(u \mid x)` that is mixed into the cost expansion.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ilqg_trajopt.optimizer.types import DerivativeBundle

KLTerms = tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]


@dataclass(frozen=True)
class TrajectoryDistribution:
    """Linear-Gaussian controller with its state marginal.

    :param state_mean: Shape ``(N, n)``.
    :param control_mean: Shape ``(N, m)``.
    :param feedback: Shape ``(N, m, n)``.
    :param action_covariance: Shape ``(N, m, m)``.
    :param state_covariance: Shape ``(N, n, n)``.
    """

    state_mean: np.ndarray
    control_mean: np.ndarray
    feedback: np.ndarray
    action_covariance: np.ndarray
    state_covariance: np.ndarray

    @property
    def horizon(self) -> int:
        return int(self.control_mean.shape[0])

    @property
    def state_dim(self) -> int:
        return int(self.state_mean.shape[1])

    @property
    def control_dim(self) -> int:
        return int(self.control_mean.shape[1])

    def joint_covariance(self) -> np.ndarray:
        """Joint state-control covariance per step, ``(N, n+m, n+m)``."""
        return np.stack([
            _joint(self.state_covariance[t], self.feedback[t], self.action_covariance[t])
            for t in range(self.horizon)
        ])

    @classmethod
    def around(
        cls,
        states: np.ndarray,
        controls: np.ndarray,
        action_covariance: np.ndarray | float = 1.0,
    ) -> TrajectoryDistribution:
        """Open-loop distribution centred on a trajectory.

        :param states: Shape ``(N, n)``.
        :param controls: Shape ``(N, m)``.
        :param action_covariance: Either a full ``(N, m, m)`` array or
            a scalar multiple of the identity.
        """
        horizon, control_dim = controls.shape
        state_dim = states.shape[1]
        if np.isscalar(action_covariance):
            cov = np.broadcast_to(
                float(action_covariance) * np.eye(control_dim),
                (horizon, control_dim, control_dim),
            ).copy()
        else:
            cov = np.asarray(action_covariance, dtype=np.float64)
        return cls(
            state_mean=np.array(states, dtype=np.float64),
            control_mean=np.array(controls, dtype=np.float64),
            feedback=np.zeros((horizon, control_dim, state_dim)),
            action_covariance=cov,
            state_covariance=np.zeros((horizon, state_dim, state_dim)),
        )


def covariance_from_precision(
    precision: np.ndarray,
    min_eigval: float = 1e-8,
) -> np.ndarray:
    """Invert per-step precision matrices, flooring their spectrum.

    :param precision: Shape ``(N, m, m)``.
    :returns: Covariances, shape ``(N, m, m)``.
    """
    sym = 0.5 * (precision + np.swapaxes(precision, -1, -2))
    eigvals, eigvecs = np.linalg.eigh(sym)
    eigvals = np.maximum(eigvals, min_eigval)
    return np.einsum("tij,tj,tkj->tik", eigvecs, 1.0 / eigvals, eigvecs)


def _joint(state_cov: np.ndarray, gain: np.ndarray, action_cov: np.ndarray) -> np.ndarray:
    xu = state_cov @ gain.T
    uu = gain @ state_cov @ gain.T + action_cov
    return np.block([[state_cov, xu], [xu.T, uu]])


def propagate_state_covariance(
    feedback: np.ndarray,
    action_covariance: np.ndarray,
    derivs: DerivativeBundle,
    initial_covariance: np.ndarray | None = None,
) -> np.ndarray:
    r"""Push the joint covariance through the linearized dynamics.

    .. math::

        \Sigma^x_{t+1} = [f_x\; f_u]\, \Sigma^{xu}_t\, [f_x\; f_u]^T

    :param feedback: Shape ``(N, m, n)``.
    :param action_covariance: Shape ``(N, m, m)``.
    :param derivs: Dynamics Jacobians along the trajectory.
    :param initial_covariance: :math:`\Sigma^x_0`, zeros by default.
    :returns: State covariances, shape ``(N, n, n)``.
    """
    horizon, _, state_dim = feedback.shape
    state_cov = np.zeros((horizon, state_dim, state_dim))
    if initial_covariance is not None:
        state_cov[0] = initial_covariance

    for t in range(horizon - 1):
        step = derivs.at(t)
        jac = np.hstack([step.fx, step.fu])  # (n, n + m)
        joint = _joint(state_cov[t], feedback[t], action_covariance[t])
        nxt = jac @ joint @ jac.T
        state_cov[t + 1] = 0.5 * (nxt + nxt.T)
    return state_cov


def build_distribution(
    states: np.ndarray,
    controls: np.ndarray,
    feedback: np.ndarray,
    action_precision: np.ndarray,
    derivs: DerivativeBundle,
    initial_covariance: np.ndarray | None = None,
) -> TrajectoryDistribution:
    """Assemble a trajectory distribution from a backward-pass result."""
    action_cov = covariance_from_precision(action_precision)
    state_cov = propagate_state_covariance(
        feedback, action_cov, derivs, initial_covariance,
    )
    return TrajectoryDistribution(
        state_mean=np.array(states, dtype=np.float64),
        control_mean=np.array(controls, dtype=np.float64),
        feedback=np.array(feedback, dtype=np.float64),
        action_covariance=action_cov,
        state_covariance=state_cov,
    )


def trajectory_kl(
    states: np.ndarray,
    controls: np.ndarray,
    covariance: np.ndarray,
    candidate: TrajectoryDistribution,
    reference: TrajectoryDistribution,
) -> float:
    r"""Expected KL divergence between two linear-Gaussian controllers.

    Sums, over the horizon, the KL divergence of the candidate policy
    from the reference policy, averaged over the candidate state
    marginal :math:`\mathcal{N}(x_t, \Sigma^x_t)`:

    .. math::

        \tfrac{1}{2}\Big[\operatorname{tr}(P \Sigma_c) + \delta^T P \delta
        + \operatorname{tr}(B^T P B\, \Sigma^x) - m
        + \log\frac{|\Sigma_r|}{|\Sigma_c|}\Big]

    with :math:`P = \Sigma_r^{-1}`, :math:`B = K_c - K_r` and
    :math:`\delta` the mean action difference at :math:`x_t`.

    :param states: Candidate states, shape ``(N, n)``.
    :param controls: Candidate controls, shape ``(N, m)``.
    :param covariance: Joint covariance proxy ``(N, n+m, n+m)``; only
        the state block is used.
    :param candidate: Candidate distribution (gains and action
        covariance).
    :param reference: Reference distribution.
    :returns: Total KL divergence (non-negative).
    """
    state_dim = states.shape[1]
    control_dim = controls.shape[1]
    total = 0.0

    for t in range(controls.shape[0]):
        ref_cov = reference.action_covariance[t]
        cand_cov = candidate.action_covariance[t]
        precision = np.linalg.inv(ref_cov)
        state_cov = covariance[t, :state_dim, :state_dim]

        ref_action = reference.control_mean[t] + reference.feedback[t] @ (
            states[t] - reference.state_mean[t]
        )
        delta = controls[t] - ref_action
        gain_diff = candidate.feedback[t] - reference.feedback[t]

        _, logdet_ref = np.linalg.slogdet(ref_cov)
        _, logdet_cand = np.linalg.slogdet(cand_cov)
        kl_t = 0.5 * (
            np.trace(precision @ cand_cov)
            + delta @ precision @ delta
            + np.trace(gain_diff.T @ precision @ gain_diff @ state_cov)
            - control_dim
            + logdet_ref
            - logdet_cand
        )
        total += kl_t

    return max(float(total), 0.0)


def kl_cost_expansion(
    candidate: TrajectoryDistribution,
    reference: TrajectoryDistribution,
) -> KLTerms:
    r"""Quadratic expansion of :math:`-\log p_{ref}(u \mid x)`.

    Evaluated along the candidate means. With
    :math:`r = u - \bar{u}^{r} - K^{r}(x - \bar{x}^{r})` and
    :math:`P = (\Sigma^{u,r})^{-1}`:
    :math:`c_u = P r`, :math:`c_x = -K^T P r`, :math:`c_{uu} = P`,
    :math:`c_{xx} = K^T P K`, :math:`c_{xu} = -K^T P`.

    :returns: ``(cx_kl, cu_kl, cxx_kl, cuu_kl, cxu_kl)``, all with a
        leading time axis.
    """
    precision = np.linalg.inv(reference.action_covariance)  # (N, m, m)
    gains = reference.feedback  # (N, m, n)
    dx = candidate.state_mean - reference.state_mean
    residual = (
        candidate.control_mean
        - reference.control_mean
        - np.einsum("tmn,tn->tm", gains, dx)
    )

    cu = np.einsum("tij,tj->ti", precision, residual)
    cx = -np.einsum("tmn,tm->tn", gains, cu)
    cuu = precision
    cxu = -np.einsum("tmn,tmk->tnk", gains, precision)
    cxx = -np.einsum("tnk,tkj->tnj", cxu, gains)
    return cx, cu, cxx, cuu, cxu
