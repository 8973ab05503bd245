r"""Car-parking benchmark (Tassa, Mansard & Todorov, ICRA 2014).

A car with front-wheel steering must park at the origin, facing
:math:`\theta = 0` with zero speed.

State :math:`x = (p_x, p_y, \theta, v)`: position, car angle and
front-wheel speed. Control :math:`u = (w, a)`: front-wheel angle and
acceleration, limited to :math:`|w| \le 0.5` and :math:`|a| \le 2`.

.. math::

    f &= h v, \qquad
    b = d + f \cos w - \sqrt{d^2 - f^2 \sin^2 w} \\
    x_{t+1} &= x_t + \bigl(b \cos\theta,\; b \sin\theta,\;
        \arcsin(f \sin w / d),\; h a\bigr)

Costs use the smooth absolute value
:math:`\operatorname{sabs}(x, p) = \sqrt{x^2 + p^2} - p`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import sympy

from ilqg_trajopt.problems.symbolic import SymbolicProblem

# Running / final cost coefficients
CONTROL_COST = (1e-2, 1e-4)
RUNNING_COST = (1e-3, 1e-3)
RUNNING_SMOOTHNESS = (0.01, 0.01)
FINAL_COST = (0.1, 0.1, 1.0, 0.3)
FINAL_SMOOTHNESS = (0.01, 0.01, 0.01, 1.0)

CONTROL_LIMITS = np.array([[-0.5, 0.5], [-2.0, 2.0]])
INITIAL_STATE = np.array([1.0, 1.0, 1.5 * math.pi, 0.0])


def sabs(x: sympy.Expr, p: float) -> sympy.Expr:
    """Smooth absolute value, quadratic near zero and linear far away."""
    return sympy.sqrt(x ** 2 + p ** 2) - p


@dataclass(frozen=True)
class CarParking:
    """Ready-to-solve car-parking instance.

    :param problem: Symbolic dynamics, running and final cost.
    :param x0: Initial state.
    :param control_limits: ``(2, 2)`` box on ``(w, a)``.
    :param horizon: Number of timesteps.
    """

    problem: SymbolicProblem
    x0: np.ndarray
    control_limits: np.ndarray
    horizon: int

    def initial_controls(
        self,
        rng: np.random.Generator | None = None,
        scale: float = 0.1,
    ) -> np.ndarray:
        """Small random initial controls, shape ``(horizon, 2)``."""
        rng = rng or np.random.default_rng()
        return scale * rng.standard_normal((self.horizon, 2))


def make_car_parking(
    horizon: int = 500,
    dt: float = 0.03,
    axle_distance: float = 2.0,
    second_order: bool = False,
) -> CarParking:
    """Build the car-parking problem.

    :param horizon: Number of timesteps.
    :param dt: Integration timestep in seconds.
    :param axle_distance: Distance between the axles.
    :param second_order: Include the second-order dynamics tensors.
    :raises ValueError: If ``horizon < 2`` or a physical constant is
        not positive.
    """
    if horizon < 2:
        raise ValueError(f"horizon must be >= 2, got {horizon}")
    if dt <= 0 or axle_distance <= 0:
        raise ValueError(
            f"dt and axle_distance must be > 0, got {dt}, {axle_distance}"
        )

    px, py, theta, v = sympy.symbols("px py theta v")
    w, a = sympy.symbols("w a")
    d = sympy.Float(axle_distance)

    f = dt * v
    b = d + f * sympy.cos(w) - sympy.sqrt(d ** 2 - (f * sympy.sin(w)) ** 2)
    dynamics = [
        px + b * sympy.cos(theta),
        py + b * sympy.sin(theta),
        theta + sympy.asin(sympy.sin(w) * f / d),
        v + dt * a,
    ]

    running = (
        CONTROL_COST[0] * w ** 2
        + CONTROL_COST[1] * a ** 2
        + sum(
            c * sabs(s, p)
            for c, s, p in zip(RUNNING_COST, (px, py), RUNNING_SMOOTHNESS)
        )
    )
    final = sum(
        c * sabs(s, p)
        for c, s, p in zip(FINAL_COST, (px, py, theta, v), FINAL_SMOOTHNESS)
    )

    problem = SymbolicProblem(
        state_symbols=[px, py, theta, v],
        control_symbols=[w, a],
        dynamics=dynamics,
        cost=running,
        terminal_cost=final,
        second_order=second_order,
    )
    return CarParking(
        problem=problem,
        x0=INITIAL_STATE.copy(),
        control_limits=CONTROL_LIMITS.copy(),
        horizon=horizon,
    )
