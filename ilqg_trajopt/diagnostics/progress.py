"""Console progress for iLQG runs.

Everything goes through loguru. ``verbosity`` selects how much:
0 nothing, 1 the exit message and final summary, 2 one row per
iteration, 3 also backward-pass retries.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from ilqg_trajopt.optimizer.types import TerminationReason, TraceRecord

_EXIT_MESSAGES = {
    "gradient_converged": "SUCCESS: gradient norm < tol_grad",
    "cost_converged": "SUCCESS: cost change < tol_fun",
    "regularization_saturated": "EXIT: lambda > lambda_max",
    "max_iterations": "EXIT: Maximum iterations reached.",
    "initial_divergence": "EXIT: Initial control sequence caused divergence",
}


def summarize_timing(trace: list[TraceRecord], total_time: float) -> dict[str, float]:
    """Aggregate phase timings over a trace.

    :param trace: Iteration records.
    :param total_time: Wall-clock duration of the run in seconds.
    :returns: Seconds per phase (``derivatives``, ``backward``,
        ``forward``, ``other``, ``total``) plus the matching
        ``*_percent`` shares.
    """
    derivs = sum(r.time_derivatives for r in trace if not math.isnan(r.time_derivatives))
    backward = sum(r.time_backward for r in trace if not math.isnan(r.time_backward))
    forward = sum(r.time_forward for r in trace if not math.isnan(r.time_forward))
    other = max(total_time - derivs - backward - forward, 0.0)
    summary = {
        "derivatives": derivs,
        "backward": backward,
        "forward": forward,
        "other": other,
        "total": total_time,
    }
    scale = 100.0 / total_time if total_time > 0 else 0.0
    for key in ("derivatives", "backward", "forward", "other"):
        summary[f"{key}_percent"] = summary[key] * scale
    return summary


class ProgressReporter:
    """Tabular progress log of an iLQG run.

    :param verbosity: Output level, 0 to 3.
    :param header_every: Rows between repeated table headers.
    """

    def __init__(self, verbosity: int = 2, header_every: int = 10) -> None:
        self._verbosity = verbosity
        self._header_every = header_every
        self._rows_since_header = header_every

    @property
    def verbosity(self) -> int:
        return self._verbosity

    def begin(self) -> None:
        if self._verbosity > 0:
            logger.info("---------- begin iLQG ----------")

    def backward_retry(self, timestep: int, lam: float) -> None:
        """Report a failed sweep; ``timestep`` is 0-based, printed 1-based."""
        if self._verbosity > 2:
            logger.info(
                "Cholesky failed at timestep {}, lambda raised to {:.3e}",
                timestep + 1,
                lam,
            )

    def iteration(self, record: TraceRecord, expected: float) -> None:
        """Log one iteration row (accepted or rejected)."""
        if self._verbosity < 2:
            return
        if self._rows_since_header >= self._header_every:
            self._rows_since_header = 0
            logger.info(
                "{:<12}{:<12}{:<12}{:<12}{:<12}{:<12}",
                "iteration", "cost", "reduction", "expected", "gradient", "log10(lam)",
            )
        log_lam = math.log10(record.lam) if record.lam > 0 else float("-inf")
        cost_col = f"{record.cost:<12.6g}" if record.accepted else f"{'NO STEP':<12}"
        logger.info(
            "{:<12d}{}{:<12.3g}{:<12.3g}{:<12.3g}{:<12.1f}",
            record.iteration,
            cost_col,
            record.improvement,
            expected,
            record.grad_norm,
            log_lam,
        )
        self._rows_since_header += 1

    def finish(
        self,
        reason: TerminationReason,
        n_iterations: int,
        final_cost: float,
        grad_norm: float,
        lam: float,
        timing: dict[str, float],
    ) -> None:
        """Log the exit reason and the final summary."""
        if self._verbosity < 1:
            return
        logger.info(_EXIT_MESSAGES[reason.value])
        if n_iterations == 0:
            return
        total = timing.get("total", 0.0)
        logger.info(
            "iterations: {}, final cost: {:.7g}, final grad: {:.7g}, "
            "final lambda: {:.7e}, time / iter: {:.0f} ms, total time: {:.2f} s",
            n_iterations,
            final_cost,
            grad_norm,
            lam,
            1e3 * total / n_iterations,
            total,
        )
        logger.info(
            "derivs: {:.1f}%, back pass: {:.1f}%, fwd pass: {:.1f}%, other: {:.1f}%",
            timing.get("derivatives_percent", 0.0),
            timing.get("backward_percent", 0.0),
            timing.get("forward_percent", 0.0),
            timing.get("other_percent", 0.0),
        )
        logger.info("=========== end iLQG ===========")
