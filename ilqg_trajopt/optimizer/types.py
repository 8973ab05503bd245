r"""Data structures shared by the iLQG passes.

Time is always the leading axis. A trajectory of horizon :math:`N`
holds ``N`` states, ``N`` controls and ``N`` per-step costs, with
:math:`x_{t+1} = f(x_t, u_t, t)` for :math:`t < N - 1`.

Derivative arrays are either time-varying (leading ``N`` axis) or
time-invariant (axis omitted). ``DerivativeBundle.at`` broadcasts the
time-invariant ones, so every backward-pass variant runs through the
same code.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np


class TerminationReason(Enum):
    """Why an optimization run stopped."""

    GRADIENT_CONVERGED = "gradient_converged"
    COST_CONVERGED = "cost_converged"
    REGULARIZATION_SATURATED = "regularization_saturated"
    MAX_ITERATIONS = "max_iterations"
    INITIAL_DIVERGENCE = "initial_divergence"

    @property
    def converged(self) -> bool:
        """Whether this reason counts as a successful exit."""
        return self in (
            TerminationReason.GRADIENT_CONVERGED,
            TerminationReason.COST_CONVERGED,
        )


@dataclass
class Trajectory:
    """A rolled-out state/control sequence with its per-step cost.

    :param states: Shape ``(N, state_dim)``.
    :param controls: Shape ``(N, control_dim)``.
    :param costs: Shape ``(N,)``.
    """

    states: np.ndarray
    controls: np.ndarray
    costs: np.ndarray

    @property
    def horizon(self) -> int:
        return int(self.controls.shape[0])

    @property
    def total_cost(self) -> float:
        """Sum of the per-step costs."""
        return float(np.sum(self.costs))

    def is_bounded(self, threshold: float) -> bool:
        """Whether every state entry is finite and below ``threshold``."""
        return bool(np.all(np.abs(self.states) < threshold))


@dataclass(frozen=True)
class StepDerivatives:
    """Dynamics and cost derivatives at a single timestep.

    Second-order dynamics tensors are ``None`` for affine dynamics.
    Tensor layout follows the state index first: ``fxx[i, j, k]`` is
    :math:`\\partial^2 f_i / \\partial x_j \\partial x_k`.
    """

    fx: np.ndarray
    fu: np.ndarray
    cx: np.ndarray
    cu: np.ndarray
    cxx: np.ndarray
    cxu: np.ndarray
    cuu: np.ndarray
    fxx: np.ndarray | None = None
    fxu: np.ndarray | None = None
    fuu: np.ndarray | None = None


@dataclass(frozen=True)
class DerivativeBundle:
    r"""Derivatives of dynamics and cost along a trajectory.

    Each array either carries a leading time axis of length ``N`` or
    omits it when the quantity is time-invariant. The cost gradients
    ``cx`` and ``cu`` are always time-varying.

    :param fx: :math:`\partial f/\partial x`, ``(N, n, n)`` or ``(n, n)``.
    :param fu: :math:`\partial f/\partial u`, ``(N, n, m)`` or ``(n, m)``.
    :param cx: Cost gradient in ``x``, ``(N, n)``.
    :param cu: Cost gradient in ``u``, ``(N, m)``.
    :param cxx: ``(N, n, n)`` or ``(n, n)``.
    :param cxu: ``(N, n, m)`` or ``(n, m)``.
    :param cuu: ``(N, m, m)`` or ``(m, m)``.
    :param fxx: Optional ``(N, n, n, n)`` or ``(n, n, n)``.
    :param fxu: Optional ``(N, n, n, m)`` or ``(n, n, m)``.
    :param fuu: Optional ``(N, n, m, m)`` or ``(n, m, m)``.
    """

    fx: np.ndarray
    fu: np.ndarray
    cx: np.ndarray
    cu: np.ndarray
    cxx: np.ndarray
    cxu: np.ndarray
    cuu: np.ndarray
    fxx: np.ndarray | None = None
    fxu: np.ndarray | None = None
    fuu: np.ndarray | None = None

    @property
    def state_dim(self) -> int:
        return int(self.cx.shape[-1])

    @property
    def control_dim(self) -> int:
        return int(self.cu.shape[-1])

    @property
    def horizon(self) -> int:
        return int(self.cx.shape[0])

    @property
    def is_linear(self) -> bool:
        """True when no second-order dynamics tensor is present."""
        return self.fxx is None and self.fxu is None and self.fuu is None

    @property
    def dynamics_time_invariant(self) -> bool:
        return self.fx.ndim == 2

    @property
    def cost_time_invariant(self) -> bool:
        return self.cxx.ndim == 2

    def at(self, t: int) -> StepDerivatives:
        """Slice (or broadcast) every derivative at timestep ``t``."""
        return StepDerivatives(
            fx=_take(self.fx, t, 2),
            fu=_take(self.fu, t, 2),
            cx=self.cx[t],
            cu=self.cu[t],
            cxx=_take(self.cxx, t, 2),
            cxu=_take(self.cxu, t, 2),
            cuu=_take(self.cuu, t, 2),
            fxx=_take(self.fxx, t, 3),
            fxu=_take(self.fxu, t, 3),
            fuu=_take(self.fuu, t, 3),
        )

    def perturbed(
        self,
        eta: float,
        kl_terms: tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray],
    ) -> DerivativeBundle:
        """Return the cost expansion scaled by ``1/eta`` plus KL terms.

        :param eta: Dual variable of the KL constraint.
        :param kl_terms: ``(cx_kl, cu_kl, cxx_kl, cuu_kl, cxu_kl)``, all
            time-varying.
        """
        cx_kl, cu_kl, cxx_kl, cuu_kl, cxu_kl = kl_terms
        horizon = self.horizon
        return replace(
            self,
            cx=self.cx / eta + cx_kl,
            cu=self.cu / eta + cu_kl,
            cxx=_broadcast(self.cxx, horizon, 2) / eta + cxx_kl,
            cuu=_broadcast(self.cuu, horizon, 2) / eta + cuu_kl,
            cxu=_broadcast(self.cxu, horizon, 2) / eta + cxu_kl,
        )


def _take(arr: np.ndarray | None, t: int, invariant_ndim: int) -> np.ndarray | None:
    if arr is None or arr.size == 0:
        return None
    if arr.ndim == invariant_ndim:
        return arr
    return arr[t]


def _broadcast(arr: np.ndarray, horizon: int, invariant_ndim: int) -> np.ndarray:
    if arr.ndim == invariant_ndim:
        return np.broadcast_to(arr, (horizon, *arr.shape))
    return arr


@dataclass(frozen=True)
class QExpansion:
    """Quadratic expansion of the action-value function at one step.

    ``q_ux_reg`` and ``q_uu_reg`` carry the regularization and are only
    used to solve for the control law; the value update uses the
    unregularized blocks.
    """

    q_x: np.ndarray
    q_u: np.ndarray
    q_xx: np.ndarray
    q_ux: np.ndarray
    q_uu: np.ndarray
    q_ux_reg: np.ndarray
    q_uu_reg: np.ndarray


@dataclass
class ControlLaw:
    """Time-varying affine control law.

    :param feedforward: Shape ``(N, control_dim)``.
    :param feedback: Shape ``(N, control_dim, state_dim)``.
    """

    feedforward: np.ndarray
    feedback: np.ndarray

    @classmethod
    def zeros(cls, horizon: int, state_dim: int, control_dim: int) -> ControlLaw:
        return cls(
            feedforward=np.zeros((horizon, control_dim)),
            feedback=np.zeros((horizon, control_dim, state_dim)),
        )


@dataclass
class ValueFunction:
    """Local quadratic model of the cost-to-go.

    :param v_x: Shape ``(N, state_dim)``.
    :param v_xx: Shape ``(N, state_dim, state_dim)``.
    """

    v_x: np.ndarray
    v_xx: np.ndarray


@dataclass
class TraceRecord:
    """Bookkeeping for one outer iteration."""

    iteration: int = 0
    lam: float = 0.0
    d_lam: float = 0.0
    alpha: float = float("nan")
    cost: float = 0.0
    grad_norm: float = float("nan")
    improvement: float = 0.0
    expected_reduction: float = 0.0
    reduction_ratio: float = 0.0
    time_derivatives: float = 0.0
    time_backward: float = 0.0
    time_forward: float = 0.0
    accepted: bool = False


@dataclass
class ILQGResult:
    """Outcome of an iLQG run.

    The trajectory is always the best accepted one, whatever the
    termination reason. For ``INITIAL_DIVERGENCE`` the control law
    and value function are zero and NaN respectively.

    :param trajectory: Best accepted trajectory.
    :param control_law: Gains computed around ``trajectory``.
    :param value_function: Cost-to-go model along ``trajectory``.
    :param trace: One record per outer iteration.
    :param termination: Why the run stopped.
    :param lam: Final regularization value.
    :param n_iterations: Number of outer iterations performed.
    :param kl_divergence: Last measured KL divergence, ``None`` when
        the trust region is disabled.
    :param kl_satisfied: Whether the KL budget was met at exit.
    :param timing: Seconds spent per phase (``derivatives``,
        ``backward``, ``forward``, ``total``).
    """

    trajectory: Trajectory
    control_law: ControlLaw
    value_function: ValueFunction
    trace: list[TraceRecord]
    termination: TerminationReason
    lam: float
    n_iterations: int = 0
    kl_divergence: float | None = None
    kl_satisfied: bool = True
    timing: dict[str, float] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.termination.converged

    @property
    def states(self) -> np.ndarray:
        return self.trajectory.states

    @property
    def controls(self) -> np.ndarray:
        return self.trajectory.controls

    @property
    def costs(self) -> np.ndarray:
        return self.trajectory.costs

    @property
    def total_cost(self) -> float:
        return self.trajectory.total_cost
