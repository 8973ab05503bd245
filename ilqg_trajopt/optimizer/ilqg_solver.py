r"""Iterative LQG / Differential Dynamic Programming solver.

Solves the deterministic finite-horizon optimal control problem

.. math::

    \min_{u_0, \ldots, u_{N-1}} \sum_{t=0}^{N-1} c(x_t, u_t)
    \quad \text{s.t.} \quad x_{t+1} = f(x_t, u_t, t)

Each outer iteration:

1. **Derivatives**: differentiate dynamics and cost along the accepted
   trajectory (only after it changed).
2. **Backward pass**: compute feedforward :math:`k_t` and feedback
   :math:`K_t` gains; on a non positive-definite :math:`Q_{uu}` raise
   the regularization and redo the whole sweep.
3. **Line search**: roll out
   :math:`u_t = \bar{u}_t + \alpha k_t + K_t (x_t - \bar{x}_t)` for a
   descending sequence of :math:`\alpha`; accept the first candidate
   whose actual/expected reduction ratio exceeds ``z_min``.
4. **Regularization**: decrease on acceptance, increase on rejection;
   exceeding ``lambda_max`` ends the run.
5. **KL trust region** (optional): move the dual variable
   :math:`\eta` so the new trajectory distribution stays within the
   KL budget of the reference distribution.

Control limits are handled by a box QP inside the backward pass
(Tassa, Mansard & Todorov, ICRA 2014).
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from ilqg_trajopt.diagnostics.progress import ProgressReporter, summarize_timing
from ilqg_trajopt.distributions.gaussian import (
    KLTerms,
    TrajectoryDistribution,
    build_distribution,
    kl_cost_expansion,
    trajectory_kl,
)
from ilqg_trajopt.optimizer.backward_pass import BackwardPassResult, backward_pass
from ilqg_trajopt.optimizer.forward_pass import (
    DiffFn,
    LineSearchResult,
    StepFn,
    initial_rollout,
    line_search,
    state_difference,
)
from ilqg_trajopt.optimizer.kl_step import KLStepController
from ilqg_trajopt.optimizer.regularization import RegularizationState
from ilqg_trajopt.optimizer.types import (
    ControlLaw,
    DerivativeBundle,
    ILQGResult,
    TerminationReason,
    TraceRecord,
    Trajectory,
    ValueFunction,
)
from ilqg_trajopt.qp.box_qp import box_qp

if TYPE_CHECKING:
    from ilqg_trajopt.optimizer.config import ILQGConfig
    from ilqg_trajopt.optimizer.control_law import BoxQPFn

DerivativesFn = Callable[[np.ndarray, np.ndarray], DerivativeBundle]
TerminalCostFn = Callable[[np.ndarray], float]
KLDivergenceFn = Callable[
    [
        np.ndarray,
        np.ndarray,
        np.ndarray,
        TrajectoryDistribution,
        TrajectoryDistribution,
    ],
    float,
]
KLExpansionFn = Callable[[TrajectoryDistribution], KLTerms]
PlotFn = Callable[..., None]


def gradient_norm(feedforward: np.ndarray, controls: np.ndarray) -> float:
    r"""Scale-free size of the feedforward correction.

    .. math::

        \frac{1}{N} \sum_t \max_j \frac{|k_{t,j}|}{|u_{t,j}| + 1}
    """
    return float(np.mean(np.max(np.abs(feedforward) / (np.abs(controls) + 1.0), axis=1)))


class ILQGSolver:
    r"""Control-limited iLQG with an optional KL trust region.

    :param config: Solver configuration.
    :param step_fn: ``(state, control, t) -> (next_state, cost)``.
    :param derivatives_fn: ``(states, controls) -> DerivativeBundle``
        along a whole trajectory. Time-invariant derivatives may drop
        the time axis; omitting the second-order dynamics tensors
        yields iLQG instead of full DDP.
    :param terminal_cost_fn: Optional ``(state) -> cost``. When given,
        it replaces the step cost of the last timestep; the derivative
        provider must then differentiate the terminal cost at that
        step.
    :param box_qp_fn: Box-QP solver used when control limits are
        active, ``(H, g, lower, upper, x0) -> BoxQPResult``.
    :param kl_divergence_fn: ``(states, controls, covariance,
        candidate, reference) -> divergence``.
    :param kl_expansion_fn: ``(candidate) -> (cx, cu, cxx, cuu, cxu)``
        KL cost terms. Defaults to
        :func:`~ilqg_trajopt.distributions.gaussian.kl_cost_expansion`
        against the reference passed to :meth:`solve`.
    :param plot_fn: Optional callback ``(states, controls, costs,
        feedback, v_x, v_xx, derivatives, trace, flag)``, called after
        every iteration; its return value is ignored.
    :param diff_fn: State deviation ``(x, x_ref) -> dx`` used by the
        feedback term. Defaults to subtraction.
    """

    def __init__(
        self,
        config: ILQGConfig,
        step_fn: StepFn,
        derivatives_fn: DerivativesFn,
        terminal_cost_fn: TerminalCostFn | None = None,
        box_qp_fn: BoxQPFn = box_qp,
        kl_divergence_fn: KLDivergenceFn = trajectory_kl,
        kl_expansion_fn: KLExpansionFn | None = None,
        plot_fn: PlotFn | None = None,
        diff_fn: DiffFn | None = None,
    ) -> None:
        self._config = config
        self._step_fn = step_fn
        self._derivatives_fn = derivatives_fn
        self._terminal_cost_fn = terminal_cost_fn
        self._box_qp_fn = box_qp_fn
        self._kl_divergence_fn = kl_divergence_fn
        self._kl_expansion_fn = kl_expansion_fn
        self._plot_fn = plot_fn
        self._diff_fn = diff_fn or state_difference

    @property
    def config(self) -> ILQGConfig:
        """The solver configuration."""
        return self._config

    def solve(
        self,
        x0: np.ndarray,
        u0: np.ndarray,
        initial_costs: np.ndarray | None = None,
        reference: TrajectoryDistribution | None = None,
        initial_state_covariance: np.ndarray | None = None,
    ) -> ILQGResult:
        """Optimize a trajectory.

        :param x0: Initial state ``(n,)``, or a pre-rolled state
            trajectory ``(N, n)`` (then ``initial_costs`` is required).
        :param u0: Initial controls, shape ``(N, m)``.
        :param initial_costs: Per-step costs ``(N,)`` of a pre-rolled
            trajectory.
        :param reference: Reference distribution of the KL trust
            region; required when ``config.kl_step > 0``.
        :param initial_state_covariance: :math:`\\Sigma^x_0` for the
            trajectory distribution, zeros by default.
        :returns: Best trajectory found, its gains, value function and
            the iteration trace.
        :raises ValueError: On inconsistent inputs.
        """
        cfg = self._config
        u0 = np.asarray(u0, dtype=np.float64)
        if u0.ndim != 2:
            raise ValueError(
                f"u0 must have shape (N, control_dim), got {u0.shape}"
            )
        x0 = np.asarray(x0, dtype=np.float64)
        horizon, control_dim = u0.shape
        self._validate(x0, u0, initial_costs, reference)
        state_dim = x0.shape[-1]

        step_fn = self._wrap_terminal_cost(horizon)
        reporter = ProgressReporter(cfg.verbosity)
        t_start = time.perf_counter()

        # --- initial trajectory
        if x0.ndim == 1:
            traj = initial_rollout(
                step_fn, x0, u0, cfg.alphas,
                cfg.control_limits, cfg.diverge_threshold,
            )
            if traj is None:
                return self._diverged_result(
                    x0, u0, reporter, time.perf_counter() - t_start,
                )
        else:
            logger.debug("Using pre-rolled initial trajectory")
            traj = Trajectory(
                states=x0.copy(),
                controls=u0.copy(),
                costs=np.asarray(initial_costs, dtype=np.float64).copy(),
            )

        kl_expansion_fn = self._kl_expansion_fn
        if kl_expansion_fn is None and reference is not None:
            kl_expansion_fn = functools.partial(kl_cost_expansion, reference=reference)

        reg = RegularizationState.from_config(cfg)
        kl = KLStepController(budget=cfg.kl_step)
        law = ControlLaw.zeros(horizon, state_dim, control_dim)
        value = ValueFunction(
            v_x=np.full((horizon, state_dim), np.nan),
            v_xx=np.full((horizon, state_dim, state_dim), np.nan),
        )
        expansion_dist = TrajectoryDistribution.around(traj.states, traj.controls)

        trace: list[TraceRecord] = []
        derivs: DerivativeBundle | None = None
        derivs_stale = True
        grad_norm = float("nan")
        termination = TerminationReason.MAX_ITERATIONS
        iteration = 1
        accepted_iterations = 1

        reporter.begin()
        while accepted_iterations <= cfg.max_iterations:
            record = TraceRecord(
                iteration=iteration,
                lam=reg.lam,
                d_lam=reg.d_lam,
                cost=traj.total_cost,
            )
            trace.append(record)

            # ====== derivatives along the accepted trajectory
            if derivs is None or derivs_stale:
                tic = time.perf_counter()
                derivs = self._derivatives_fn(traj.states, traj.controls)
                record.time_derivatives = time.perf_counter() - tic
                derivs_stale = False

            # ====== backward pass, retried with growing regularization
            tic = time.perf_counter()
            bp = self._backward_with_retry(
                derivs, traj, reg, kl, kl_expansion_fn, expansion_dist, reporter,
            )
            record.time_backward = time.perf_counter() - tic
            if bp.diverged:
                termination = TerminationReason.REGULARIZATION_SATURATED
                self._close_record(record, reg, traj)
                break
            assert bp.control_law is not None and bp.value_function is not None

            grad_norm = gradient_norm(bp.control_law.feedforward, traj.controls)
            record.grad_norm = grad_norm
            if (
                grad_norm < cfg.tol_grad
                and reg.lam < cfg.grad_lambda_threshold
                and kl.satisfied
            ):
                law, value = bp.control_law, bp.value_function
                termination = TerminationReason.GRADIENT_CONVERGED
                self._close_record(record, reg, traj)
                break

            # ====== line search
            tic = time.perf_counter()
            ls = line_search(
                step_fn,
                traj,
                bp.control_law,
                bp.d_v,
                cfg.alphas,
                cfg.z_min,
                cfg.control_limits,
                self._diff_fn,
            )
            record.time_forward = time.perf_counter() - tic

            candidate_dist = None
            if kl.enabled and ls.trajectory is not None:
                candidate_dist = self._update_kl(
                    kl, ls.trajectory, bp, derivs, reference, initial_state_covariance,
                )

            # ====== accept step (or not)
            if ls.accepted:
                reg.decrease()
                traj = ls.trajectory
                law, value = bp.control_law, bp.value_function
                derivs_stale = True
                if candidate_dist is not None:
                    expansion_dist = candidate_dist
                self._close_record(record, reg, traj, ls)
                reporter.iteration(record, ls.expected)
                self._plot(traj, law, value, derivs, trace)
                if ls.improvement < cfg.tol_fun and kl.satisfied:
                    termination = TerminationReason.COST_CONVERGED
                    break
                accepted_iterations += 1
            else:
                saturated = reg.increase()
                self._close_record(record, reg, traj, ls)
                reporter.iteration(record, ls.expected)
                self._plot(traj, law, value, derivs, trace)
                if saturated:
                    termination = TerminationReason.REGULARIZATION_SATURATED
                    break

            iteration += 1

        total_time = time.perf_counter() - t_start
        timing = summarize_timing(trace, total_time)

        if kl.enabled and not kl.satisfied:
            logger.warning(
                "KL divergence {} outside budget {:.6g} +/- {:.6g} at exit",
                kl.last_divergence,
                kl.budget,
                kl.tolerance,
            )

        reporter.finish(
            termination, len(trace), traj.total_cost, grad_norm, reg.lam, timing,
        )

        return ILQGResult(
            trajectory=traj,
            control_law=law,
            value_function=value,
            trace=trace,
            termination=termination,
            lam=reg.lam,
            n_iterations=len(trace),
            kl_divergence=kl.last_divergence,
            kl_satisfied=kl.satisfied,
            timing=timing,
        )

    def _validate(
        self,
        x0: np.ndarray,
        u0: np.ndarray,
        initial_costs: np.ndarray | None,
        reference: TrajectoryDistribution | None,
    ) -> None:
        cfg = self._config
        horizon, control_dim = u0.shape

        if x0.ndim == 2:
            if x0.shape[0] != horizon:
                raise ValueError(
                    f"Pre-rolled initial trajectory must have length "
                    f"{horizon}, got {x0.shape[0]}"
                )
            if initial_costs is None:
                raise ValueError(
                    "Initial trajectory supplied, initial costs must also "
                    "be supplied"
                )
            if np.shape(initial_costs) != (horizon,):
                raise ValueError(
                    f"initial_costs must have shape ({horizon},), "
                    f"got {np.shape(initial_costs)}"
                )
        elif x0.ndim != 1:
            raise ValueError(
                f"x0 must be a state (n,) or a trajectory (N, n), "
                f"got shape {x0.shape}"
            )

        if cfg.control_limits is not None and cfg.control_limits.shape[0] != control_dim:
            raise ValueError(
                f"control_limits has {cfg.control_limits.shape[0]} rows, "
                f"expected {control_dim}"
            )
        if cfg.kl_enabled and reference is None:
            raise ValueError("kl_step > 0 requires a reference distribution")

    def _wrap_terminal_cost(self, horizon: int) -> StepFn:
        if self._terminal_cost_fn is None:
            return self._step_fn
        step_fn = self._step_fn
        terminal_cost_fn = self._terminal_cost_fn

        def step_with_terminal(
            state: np.ndarray, control: np.ndarray, t: int,
        ) -> tuple[np.ndarray, float]:
            if t == horizon - 1:
                return state, float(terminal_cost_fn(state))
            return step_fn(state, control, t)

        return step_with_terminal

    def _backward_with_retry(
        self,
        derivs: DerivativeBundle,
        traj: Trajectory,
        reg: RegularizationState,
        kl: KLStepController,
        kl_expansion_fn: KLExpansionFn | None,
        expansion_dist: TrajectoryDistribution,
        reporter: ProgressReporter,
    ) -> BackwardPassResult:
        """Redo the backward sweep until it succeeds or saturates."""
        cfg = self._config
        bundle = derivs
        if kl.enabled and kl_expansion_fn is not None:
            bundle = derivs.perturbed(kl.eta, kl_expansion_fn(expansion_dist))

        while True:
            bp = backward_pass(
                bundle,
                traj.controls,
                reg.effective_lambda,
                cfg.reg_type,
                cfg.control_limits,
                self._box_qp_fn,
            )
            if not bp.diverged:
                return bp
            saturated = reg.increase()
            reporter.backward_retry(bp.diverged_at, reg.lam)
            if saturated:
                return bp

    def _update_kl(
        self,
        kl: KLStepController,
        candidate: Trajectory,
        bp: BackwardPassResult,
        derivs: DerivativeBundle,
        reference: TrajectoryDistribution | None,
        initial_state_covariance: np.ndarray | None,
    ) -> TrajectoryDistribution:
        assert bp.control_law is not None and bp.action_precision is not None
        candidate_dist = build_distribution(
            candidate.states,
            candidate.controls,
            bp.control_law.feedback,
            bp.action_precision,
            derivs,
            initial_state_covariance,
        )
        divergence = self._kl_divergence_fn(
            candidate.states,
            candidate.controls,
            candidate_dist.joint_covariance(),
            candidate_dist,
            reference,
        )
        kl.update(float(divergence))
        return candidate_dist

    @staticmethod
    def _close_record(
        record: TraceRecord,
        reg: RegularizationState,
        traj: Trajectory,
        ls: LineSearchResult | None = None,
    ) -> None:
        record.lam = reg.lam
        record.d_lam = reg.d_lam
        record.cost = traj.total_cost
        if ls is not None:
            record.alpha = ls.alpha
            record.improvement = ls.improvement
            record.expected_reduction = ls.expected
            record.reduction_ratio = ls.reduction_ratio
            record.accepted = ls.accepted

    def _plot(
        self,
        traj: Trajectory,
        law: ControlLaw,
        value: ValueFunction,
        derivs: DerivativeBundle | None,
        trace: list[TraceRecord],
    ) -> None:
        if self._plot_fn is None:
            return
        self._plot_fn(
            traj.states,
            traj.controls,
            traj.costs,
            law.feedback,
            value.v_x,
            value.v_xx,
            derivs,
            list(trace),
            0,
        )

    def _diverged_result(
        self,
        x0: np.ndarray,
        u0: np.ndarray,
        reporter: ProgressReporter,
        elapsed: float,
    ) -> ILQGResult:
        horizon, control_dim = u0.shape
        state_dim = x0.shape[0]
        termination = TerminationReason.INITIAL_DIVERGENCE
        reporter.finish(termination, 0, float("nan"), float("nan"), self._config.lambda_init, {})
        return ILQGResult(
            trajectory=Trajectory(
                states=np.full((horizon, state_dim), np.nan),
                controls=u0.copy(),
                costs=np.full(horizon, np.nan),
            ),
            control_law=ControlLaw.zeros(horizon, state_dim, control_dim),
            value_function=ValueFunction(
                v_x=np.full((horizon, state_dim), np.nan),
                v_xx=np.full((horizon, state_dim, state_dim), np.nan),
            ),
            trace=[TraceRecord(iteration=1, lam=self._config.lambda_init)],
            termination=termination,
            lam=self._config.lambda_init,
            n_iterations=0,
            timing={"total": elapsed},
        )
