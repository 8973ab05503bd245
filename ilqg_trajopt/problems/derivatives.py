r"""Finite-difference derivative provider.

Builds a ``(states, controls) -> DerivativeBundle`` callable from a
step function alone, using central differences. Useful when no
analytic derivatives are available; the bundle is always time-varying.
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np

from ilqg_trajopt.optimizer.forward_pass import StepFn
from ilqg_trajopt.optimizer.types import DerivativeBundle


def finite_diff_jacobian(
    fn: Callable[[np.ndarray], np.ndarray],
    z: np.ndarray,
    eps: float = 1e-5,
) -> np.ndarray:
    r"""Compute :math:`\partial f / \partial z` via central differences.

    :param fn: Vector function of ``z``.
    :param z: Evaluation point, shape ``(d,)``.
    :returns: Jacobian, shape ``(out_dim, d)``.
    """
    columns = []
    for i in range(z.shape[0]):
        z_plus = z.copy()
        z_minus = z.copy()
        z_plus[i] += eps
        z_minus[i] -= eps
        columns.append(
            (np.asarray(fn(z_plus)) - np.asarray(fn(z_minus))) / (2 * eps)
        )
    return np.stack(columns, axis=-1)


def finite_diff_hessian(
    fn: Callable[[np.ndarray], float],
    z: np.ndarray,
    eps: float = 1e-4,
) -> np.ndarray:
    """Hessian of a scalar function via second-order central differences.

    :returns: Symmetric matrix, shape ``(d, d)``.
    """
    dim = z.shape[0]
    f0 = fn(z)
    hess = np.zeros((dim, dim))
    for i in range(dim):
        for j in range(i, dim):
            if i == j:
                z_plus = z.copy()
                z_minus = z.copy()
                z_plus[i] += eps
                z_minus[i] -= eps
                hess[i, i] = (fn(z_plus) - 2 * f0 + fn(z_minus)) / (eps ** 2)
            else:
                z_pp = z.copy()
                z_pm = z.copy()
                z_mp = z.copy()
                z_mm = z.copy()
                z_pp[i] += eps
                z_pp[j] += eps
                z_pm[i] += eps
                z_pm[j] -= eps
                z_mp[i] -= eps
                z_mp[j] += eps
                z_mm[i] -= eps
                z_mm[j] -= eps
                hess[i, j] = (
                    fn(z_pp) - fn(z_pm) - fn(z_mp) + fn(z_mm)
                ) / (4 * eps ** 2)
                hess[j, i] = hess[i, j]
    return hess


def make_finite_difference_derivatives(
    step_fn: StepFn,
    state_dim: int,
    control_dim: int,
    second_order: bool = False,
    eps: float = 1e-5,
    hessian_eps: float = 1e-4,
) -> Callable[[np.ndarray, np.ndarray], DerivativeBundle]:
    """Wrap a step function into a finite-difference derivative provider.

    :param step_fn: ``(x, u, t) -> (x_next, cost)``.
    :param state_dim: State dimensionality ``n``.
    :param control_dim: Control dimensionality ``m``.
    :param second_order: Also estimate the dynamics tensors
        ``fxx, fxu, fuu`` (full DDP instead of iLQG).
    :param eps: Step for first derivatives.
    :param hessian_eps: Step for second derivatives.
    :returns: ``(states, controls) -> DerivativeBundle``.
    """
    n, m = state_dim, control_dim

    def derivatives_fn(states: np.ndarray, controls: np.ndarray) -> DerivativeBundle:
        horizon = controls.shape[0]
        fx = np.zeros((horizon, n, n))
        fu = np.zeros((horizon, n, m))
        cx = np.zeros((horizon, n))
        cu = np.zeros((horizon, m))
        cxx = np.zeros((horizon, n, n))
        cxu = np.zeros((horizon, n, m))
        cuu = np.zeros((horizon, m, m))
        fxx = np.zeros((horizon, n, n, n)) if second_order else None
        fxu = np.zeros((horizon, n, n, m)) if second_order else None
        fuu = np.zeros((horizon, n, m, m)) if second_order else None

        for t in range(horizon):
            z = np.concatenate([states[t], controls[t]])

            def dynamics(zz: np.ndarray, t: int = t) -> np.ndarray:
                return np.asarray(step_fn(zz[:n], zz[n:], t)[0], dtype=np.float64)

            def cost(zz: np.ndarray, t: int = t) -> float:
                return float(step_fn(zz[:n], zz[n:], t)[1])

            jac = finite_diff_jacobian(dynamics, z, eps)  # (n, n + m)
            fx[t] = jac[:, :n]
            fu[t] = jac[:, n:]

            grad = finite_diff_jacobian(lambda zz: np.array([cost(zz)]), z, eps)[0]
            hess = finite_diff_hessian(cost, z, hessian_eps)
            cx[t] = grad[:n]
            cu[t] = grad[n:]
            cxx[t] = hess[:n, :n]
            cxu[t] = hess[:n, n:]
            cuu[t] = hess[n:, n:]

            if second_order:
                # Second derivative of each output through its Jacobian
                tensor = finite_diff_jacobian(
                    lambda zz: finite_diff_jacobian(dynamics, zz, hessian_eps),
                    z,
                    hessian_eps,
                )  # (n, n + m, n + m)
                tensor = 0.5 * (tensor + np.swapaxes(tensor, 1, 2))
                fxx[t] = tensor[:, :n, :n]
                fxu[t] = tensor[:, :n, n:]
                fuu[t] = tensor[:, n:, n:]

        return DerivativeBundle(
            fx=fx, fu=fu, cx=cx, cu=cu, cxx=cxx, cxu=cxu, cuu=cuu,
            fxx=fxx, fxu=fxu, fuu=fuu,
        )

    return derivatives_fn
