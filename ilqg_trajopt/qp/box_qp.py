r"""Box-constrained quadratic program via projected Newton.

Solves

.. math::

    \min_x \tfrac{1}{2} x^T H x + g^T x
    \quad \text{s.t.} \quad l \le x \le u

by alternating between identifying the clamped coordinates (at a bound
with the gradient pushing outward), a Newton step on the free
coordinates, and a projected Armijo line search (Tassa, Mansard &
Todorov, "Control-Limited Differential Dynamic Programming", 2014).

Result codes:

- ``-1``: Hessian of the free block is not positive definite
- ``0``: no descent direction found
- ``1``: maximum main iterations exceeded
- ``2``: maximum line-search iterations exceeded
- ``4``: relative improvement below threshold
- ``5``: gradient norm below threshold
- ``6``: all dimensions clamped

Codes ``>= 1`` count as success.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from loguru import logger
from scipy import linalg


@dataclass(frozen=True)
class BoxQPResult:
    """Solution of a box QP.

    :param x: Minimizer, shape ``(n,)``.
    :param result: Result code (see module docstring).
    :param factor: Upper Cholesky factor ``R`` of the free block,
        :math:`H_{ff} = R^T R`, shape ``(n_free, n_free)``.
    :param free: Boolean mask of the free coordinates, shape ``(n,)``.
    """

    x: np.ndarray
    result: int
    factor: np.ndarray
    free: np.ndarray

    @property
    def success(self) -> bool:
        return self.result >= 1


@dataclass(frozen=True)
class BoxQPOptions:
    """Tuning constants of the projected-Newton solver."""

    max_iterations: int = 100
    min_grad: float = 1e-8
    min_rel_improve: float = 1e-8
    step_decrease: float = 0.6
    min_step: float = 1e-22
    armijo: float = 0.1


def box_qp(
    hessian: np.ndarray,
    gradient: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
    x0: np.ndarray | None = None,
    options: BoxQPOptions | None = None,
) -> BoxQPResult:
    """Minimize ``0.5 x'Hx + g'x`` subject to ``lower <= x <= upper``.

    :param hessian: Positive-definite matrix ``H``, shape ``(n, n)``.
    :param gradient: Linear term ``g``, shape ``(n,)``.
    :param lower: Lower bounds, shape ``(n,)``; ``-inf`` allowed.
    :param upper: Upper bounds, shape ``(n,)``; ``inf`` allowed.
    :param x0: Optional warm start, clamped into the box. Defaults to
        the box midpoint (zero on unbounded coordinates).
    :param options: Solver constants.
    :returns: The solution with its result code and free-block factor.
    """
    opts = options or BoxQPOptions()
    n = gradient.shape[0]
    lower = np.asarray(lower, dtype=np.float64)
    upper = np.asarray(upper, dtype=np.float64)

    if x0 is not None and x0.shape == (n,):
        x = np.clip(x0, lower, upper)
    else:
        with np.errstate(invalid="ignore"):
            x = 0.5 * (lower + upper)
    x = np.where(np.isfinite(x), x, 0.0)

    def objective(z: np.ndarray) -> float:
        return float(z @ gradient + 0.5 * z @ hessian @ z)

    value = objective(x)
    old_value = 0.0
    result = 0
    clamped = np.zeros(n, dtype=bool)
    free = np.ones(n, dtype=bool)
    factor = np.zeros((0, 0))

    for iteration in range(opts.max_iterations):
        if iteration > 0 and (old_value - value) < opts.min_rel_improve * abs(old_value):
            result = 4
            break
        old_value = value

        grad = gradient + hessian @ x

        old_clamped = clamped
        clamped = ((x == lower) & (grad > 0)) | ((x == upper) & (grad < 0))
        free = ~clamped

        if np.all(clamped):
            result = 6
            break

        if iteration == 0 or np.any(old_clamped != clamped):
            try:
                factor = linalg.cholesky(hessian[np.ix_(free, free)])
            except (np.linalg.LinAlgError, ValueError):
                result = -1
                break

        if np.linalg.norm(grad[free]) < opts.min_grad:
            result = 5
            break

        # Newton step on the free block, holding clamped coordinates fixed
        grad_clamped = gradient + hessian @ (x * clamped)
        search = np.zeros(n)
        search[free] = -_cho_solve_upper(factor, grad_clamped[free]) - x[free]

        sdotg = float(search @ grad)
        if sdotg >= 0:
            break

        step = 1.0
        candidate = np.clip(x + step * search, lower, upper)
        candidate_value = objective(candidate)
        while (candidate_value - old_value) / (step * sdotg) < opts.armijo:
            step *= opts.step_decrease
            candidate = np.clip(x + step * search, lower, upper)
            candidate_value = objective(candidate)
            if step < opts.min_step:
                result = 2
                break

        x = candidate
        value = candidate_value
        if result != 0:
            break
    else:
        result = 1

    logger.trace("boxQP finished: result={}, free={}", result, int(free.sum()))
    return BoxQPResult(x=x, result=result, factor=factor, free=free)


def _cho_solve_upper(factor: np.ndarray, rhs: np.ndarray) -> np.ndarray:
    """Solve ``R'R z = rhs`` for an upper-triangular ``R``."""
    return linalg.cho_solve((factor, False), rhs)
