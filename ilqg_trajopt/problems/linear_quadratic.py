r"""Linear dynamics with quadratic cost.

.. math::

    x_{t+1} = A x_t + B u_t, \qquad
    c(x_t, u_t) = x_t^T Q x_t + u_t^T R u_t

and :math:`c_N = x_N^T Q_f x_N` at the last step when ``q_final`` is
given. The derivative bundle keeps :math:`f_x, f_u, c_{xx}, c_{xu},
c_{uu}` time-invariant, which exercises the fully LTI path of the
backward pass. One Newton step from any trajectory reaches the
optimum when regularization is zero.
"""

from __future__ import annotations

import numpy as np

from ilqg_trajopt.optimizer.types import DerivativeBundle


class LinearQuadraticProblem:
    """Time-invariant LQ problem.

    :param a: State matrix, shape ``(n, n)``.
    :param b: Input matrix, shape ``(n, m)``.
    :param q: State cost, shape ``(n, n)``, symmetric PSD.
    :param r: Control cost, shape ``(m, m)``, symmetric PD.
    :param q_final: Optional terminal state cost ``(n, n)``.
    :param time_varying: Return the bundle with an explicit time axis
        instead of the compact time-invariant form.
    :raises ValueError: If shapes are inconsistent.
    """

    def __init__(
        self,
        a: np.ndarray,
        b: np.ndarray,
        q: np.ndarray,
        r: np.ndarray,
        q_final: np.ndarray | None = None,
        time_varying: bool = False,
    ) -> None:
        self.a = np.atleast_2d(np.asarray(a, dtype=np.float64))
        self.b = np.atleast_2d(np.asarray(b, dtype=np.float64))
        self.q = np.atleast_2d(np.asarray(q, dtype=np.float64))
        self.r = np.atleast_2d(np.asarray(r, dtype=np.float64))
        self.q_final = (
            np.atleast_2d(np.asarray(q_final, dtype=np.float64))
            if q_final is not None
            else None
        )
        self.time_varying = time_varying

        n, m = self.b.shape
        if self.a.shape != (n, n):
            raise ValueError(f"a must have shape ({n}, {n}), got {self.a.shape}")
        if self.q.shape != (n, n):
            raise ValueError(f"q must have shape ({n}, {n}), got {self.q.shape}")
        if self.r.shape != (m, m):
            raise ValueError(f"r must have shape ({m}, {m}), got {self.r.shape}")
        if self.q_final is not None and self.q_final.shape != (n, n):
            raise ValueError(
                f"q_final must have shape ({n}, {n}), got {self.q_final.shape}"
            )

    @property
    def state_dim(self) -> int:
        return int(self.b.shape[0])

    @property
    def control_dim(self) -> int:
        return int(self.b.shape[1])

    def step(self, state: np.ndarray, control: np.ndarray, t: int) -> tuple[np.ndarray, float]:
        x_next = self.a @ state + self.b @ control
        cost = float(state @ self.q @ state + control @ self.r @ control)
        return x_next, cost

    def terminal_cost(self, state: np.ndarray) -> float:
        """:math:`x^T Q_f x`, or :math:`x^T Q x` without ``q_final``."""
        q_f = self.q if self.q_final is None else self.q_final
        return float(state @ q_f @ state)

    def derivatives(self, states: np.ndarray, controls: np.ndarray) -> DerivativeBundle:
        """Exact derivatives; gradients vary with the trajectory."""
        horizon = states.shape[0]
        n, m = self.state_dim, self.control_dim

        cx = 2.0 * states @ self.q
        cu = 2.0 * controls @ self.r
        fx, fu = self.a, self.b
        cxx, cxu, cuu = 2.0 * self.q, np.zeros((n, m)), 2.0 * self.r

        if self.q_final is not None or self.time_varying:
            fx = np.broadcast_to(fx, (horizon, n, n)).copy()
            fu = np.broadcast_to(fu, (horizon, n, m)).copy()
            cxx = np.broadcast_to(cxx, (horizon, n, n)).copy()
            cxu = np.zeros((horizon, n, m))
            cuu = np.broadcast_to(cuu, (horizon, m, m)).copy()

        if self.q_final is not None:
            cx[-1] = 2.0 * states[-1] @ self.q_final
            cu[-1] = 0.0
            cxx[-1] = 2.0 * self.q_final
            cuu[-1] = 0.0

        return DerivativeBundle(fx=fx, fu=fu, cx=cx, cu=cu, cxx=cxx, cxu=cxu, cuu=cuu)
