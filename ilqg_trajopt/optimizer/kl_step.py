r"""Dual-variable search for the KL trust region.

The cost handed to the backward pass is :math:`c/\eta + c_{KL}`, so a
smaller :math:`\eta` weighs the task cost more and allows a larger
step away from the reference distribution. After each forward pass
the measured divergence is compared to the budget :math:`B`:

- within :math:`0.1 B` of the budget: the constraint is satisfied;
- below the budget, :math:`\eta` was too large: shrink it toward the
  geometric mean of the bracket (at most by a factor of 10);
- above the budget, :math:`\eta` was too small: grow it likewise.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from loguru import logger


@dataclass
class KLStepController:
    """Bracketing search on :math:`\\eta`.

    :param budget: Target KL divergence. ``0`` disables the controller.
    :param eta: Current dual variable.
    :param eta_min: Lower end of the bracket (``0`` = unbounded).
    :param eta_max: Upper end of the bracket (``inf`` = unbounded).
    :param satisfied: Whether the last measured divergence is within
        tolerance. Always ``True`` for a disabled controller.
    :param last_divergence: Last measured divergence, ``None`` before
        the first measurement or when disabled.
    """

    budget: float = 0.0
    eta: float = 1.0
    eta_min: float = 0.0
    eta_max: float = math.inf
    satisfied: bool = True
    last_divergence: float | None = None

    def __post_init__(self) -> None:
        if self.budget < 0:
            raise ValueError(f"budget must be >= 0, got {self.budget}")
        # Nothing has been measured yet, so an active trust region
        # starts unsatisfied
        if self.enabled:
            self.satisfied = False

    @property
    def enabled(self) -> bool:
        return self.budget > 0

    @property
    def tolerance(self) -> float:
        return 0.1 * self.budget

    def within_tolerance(self, divergence: float) -> bool:
        return abs(divergence - self.budget) < self.tolerance

    def update(self, divergence: float) -> bool:
        """Record a measured divergence and move :math:`\\eta`.

        :param divergence: KL divergence of the candidate distribution
            from the reference.
        :returns: Whether the constraint is satisfied. Once satisfied,
            :math:`\\eta` is left unchanged.
        """
        if not self.enabled:
            return True

        self.last_divergence = divergence
        if self.within_tolerance(divergence):
            self.satisfied = True
            logger.debug(
                "KL: {:.6g} / {:.6g}, converged (eta={:.6g})",
                divergence,
                self.budget,
                self.eta,
            )
            return True

        self.satisfied = False
        if divergence < self.budget:
            self.eta_max = self.eta
            fallback = 0.1 * self.eta_max
            self.eta = max(self._geometric_mean(fallback), fallback)
            logger.debug(
                "KL: {:.6g} / {:.6g}, eta too big, new eta: {:.6g}",
                divergence,
                self.budget,
                self.eta,
            )
        else:
            self.eta_min = self.eta
            fallback = 10.0 * self.eta_min
            self.eta = min(self._geometric_mean(fallback), fallback)
            logger.debug(
                "KL: {:.6g} / {:.6g}, eta too small, new eta: {:.6g}",
                divergence,
                self.budget,
                self.eta,
            )
        return False

    def _geometric_mean(self, fallback: float) -> float:
        if self.eta_min > 0 and math.isfinite(self.eta_max):
            return math.sqrt(self.eta_min * self.eta_max)
        return fallback
