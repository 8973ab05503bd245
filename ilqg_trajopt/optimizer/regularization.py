r"""Levenberg-Marquardt regularization schedule.

The regularization :math:`\lambda` grows quadratically fast on repeated
failures (the multiplier :math:`d\lambda` itself grows by ``factor``)
and decays the same way on repeated successes:

.. math::

    \text{increase:}\quad d\lambda \leftarrow \max(d\lambda f, f),\quad
    \lambda \leftarrow \max(\lambda\, d\lambda, \lambda_{min})

    \text{decrease:}\quad d\lambda \leftarrow \min(d\lambda / f, 1/f),\quad
    \lambda \leftarrow \lambda\, d\lambda
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from ilqg_trajopt.optimizer.config import ILQGConfig


@dataclass
class RegularizationState:
    """Mutable regularization state owned by the outer loop.

    :param lam: Current regularization value.
    :param d_lam: Current multiplier.
    :param factor: Growth factor of the multiplier.
    :param lam_min: Values below this are treated as zero.
    :param lam_max: Ceiling; exceeding it is fatal for the run.
    """

    lam: float
    d_lam: float
    factor: float
    lam_min: float
    lam_max: float

    @classmethod
    def from_config(cls, config: ILQGConfig) -> RegularizationState:
        return cls(
            lam=config.lambda_init,
            d_lam=config.d_lambda_init,
            factor=config.lambda_factor,
            lam_min=config.lambda_min,
            lam_max=config.lambda_max,
        )

    @property
    def effective_lambda(self) -> float:
        """The value added to the curvature, zero below ``lam_min``."""
        return self.lam if self.lam >= self.lam_min else 0.0

    @property
    def saturated(self) -> bool:
        return self.lam > self.lam_max

    def increase(self) -> bool:
        """Grow the regularization after a failure.

        :returns: ``True`` if the regularization is now saturated.
        """
        self.d_lam = max(self.d_lam * self.factor, self.factor)
        self.lam = max(self.lam * self.d_lam, self.lam_min)
        if self.saturated:
            logger.debug(
                "Regularization saturated: lambda={:.3e} > {:.3e}",
                self.lam,
                self.lam_max,
            )
        return self.saturated

    def decrease(self) -> None:
        """Shrink the regularization after an accepted step."""
        self.d_lam = min(self.d_lam / self.factor, 1.0 / self.factor)
        self.lam = self.lam * self.d_lam
