"""Configuration for the iLQG solver."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

import numpy as np


def _default_alphas() -> np.ndarray:
    return 10.0 ** np.linspace(0.0, -3.0, 11)


def limits_active(control_limits: np.ndarray | None) -> bool:
    """Whether ``control_limits`` is given and not degenerate.

    A first row with ``lower > upper`` switches the limits off.
    """
    return control_limits is not None and bool(control_limits[0, 0] <= control_limits[0, 1])


@dataclass(frozen=True)
class ILQGConfig:
    r"""Configuration for the iLQG solver.

    :param control_limits: Optional box on the controls, shape
        ``(control_dim, 2)`` holding ``[lower, upper]`` per dimension.
        A first row with ``lower > upper`` disables the limits.
    :param alphas: Descending line-search step sizes. Defaults to 11
        log-spaced values from 1 to 1e-3.
    :param tol_fun: Cost-improvement threshold for convergence.
    :param tol_grad: Gradient-norm threshold for convergence.
    :param max_iterations: Maximum number of accepted iterations.
    :param lambda_init: Initial Levenberg-Marquardt regularization.
    :param d_lambda_init: Initial regularization multiplier.
    :param lambda_factor: Growth factor for the multiplier.
    :param lambda_max: Regularization ceiling; exceeding it ends the run.
    :param lambda_min: Below this value the regularization is off.
    :param reg_type: ``1`` adds :math:`\lambda I` to :math:`Q_{uu}`,
        ``2`` adds it to :math:`V_{xx}` before propagation.
    :param z_min: Minimal accepted ratio of actual to expected cost
        reduction.
    :param kl_step: KL divergence budget. ``0`` disables the trust
        region.
    :param verbosity: 0 silent, 1 final summary, 2 one row per
        iteration, 3 also backward-pass retries.
    :param diverge_threshold: State magnitude considered divergent in
        the initial rollout.
    :param grad_lambda_threshold: The gradient criterion only fires
        when the regularization is below this value.
    """

    control_limits: np.ndarray | None = None
    alphas: np.ndarray = field(default_factory=_default_alphas)
    tol_fun: float = 1e-7
    tol_grad: float = 1e-4
    max_iterations: int = 500
    lambda_init: float = 1.0
    d_lambda_init: float = 1.0
    lambda_factor: float = 1.6
    lambda_max: float = 1e10
    lambda_min: float = 1e-6
    reg_type: int = 1
    z_min: float = 0.0
    kl_step: float = 0.0
    verbosity: int = 2
    diverge_threshold: float = 1e8
    grad_lambda_threshold: float = 1e-5

    def __post_init__(self) -> None:
        alphas = np.atleast_1d(np.asarray(self.alphas, dtype=np.float64))
        object.__setattr__(self, "alphas", alphas)
        if alphas.size == 0:
            raise ValueError("alphas must contain at least one step size")
        if np.any(alphas <= 0):
            raise ValueError(f"alphas must be positive, got {alphas}")

        if self.control_limits is not None:
            limits = np.atleast_2d(
                np.asarray(self.control_limits, dtype=np.float64),
            )
            if limits.ndim != 2 or limits.shape[1] != 2:
                raise ValueError(
                    f"control_limits must have shape (control_dim, 2), "
                    f"got {limits.shape}"
                )
            object.__setattr__(self, "control_limits", limits)

        if self.max_iterations < 1:
            raise ValueError(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        if self.reg_type not in (1, 2):
            raise ValueError(f"reg_type must be 1 or 2, got {self.reg_type}")
        if self.lambda_factor <= 1.0:
            raise ValueError(
                f"lambda_factor must be > 1, got {self.lambda_factor}"
            )
        if self.lambda_min <= 0 or self.lambda_max <= self.lambda_min:
            raise ValueError(
                f"Need 0 < lambda_min < lambda_max, got "
                f"lambda_min={self.lambda_min}, lambda_max={self.lambda_max}"
            )
        if self.lambda_init < 0:
            raise ValueError(
                f"lambda_init must be >= 0, got {self.lambda_init}"
            )
        if self.kl_step < 0:
            raise ValueError(f"kl_step must be >= 0, got {self.kl_step}")
        if not 0 <= self.verbosity <= 3:
            raise ValueError(
                f"verbosity must be in [0, 3], got {self.verbosity}"
            )

    @property
    def has_control_limits(self) -> bool:
        """Whether the limits are present and not degenerate."""
        return limits_active(self.control_limits)

    @property
    def kl_enabled(self) -> bool:
        return self.kl_step > 0

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> ILQGConfig:
        """Build a config from a plain mapping, ignoring unknown keys.

        Sequences are converted to arrays; ``alphas`` may also be given
        as ``{"start": 0, "stop": -3, "num": 11}`` exponents.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {
            k: v for k, v in values.items() if k in known and v is not None
        }
        alphas = kwargs.get("alphas")
        if isinstance(alphas, Mapping):
            kwargs["alphas"] = 10.0 ** np.linspace(
                float(alphas.get("start", 0.0)),
                float(alphas.get("stop", -3.0)),
                int(alphas.get("num", 11)),
            )
        elif alphas is not None:
            kwargs["alphas"] = np.asarray(list(alphas), dtype=np.float64)
        if "control_limits" in kwargs:
            kwargs["control_limits"] = np.asarray(
                [list(row) for row in kwargs["control_limits"]],
                dtype=np.float64,
            )
        return cls(**kwargs)
