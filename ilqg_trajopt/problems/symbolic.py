r"""Problems defined by sympy expressions.

Dynamics and costs are given as expressions in named state and control
symbols. Jacobians and Hessians are differentiated symbolically once,
then compiled with ``sympy.lambdify`` to numpy functions that evaluate
a whole trajectory per call.

With ``second_order=True`` the dynamics tensors
:math:`f_{xx}, f_{xu}, f_{uu}` are included as well, turning iLQG into
full DDP.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import numpy as np
import sympy
from loguru import logger

from ilqg_trajopt.optimizer.types import DerivativeBundle


def _compile(
    exprs: Sequence[sympy.Expr],
    symbols: Sequence[sympy.Symbol],
) -> Callable[..., list[Any]]:
    return sympy.lambdify(list(symbols), list(exprs), modules="numpy")


def _evaluate(
    fn: Callable[..., list[Any]],
    args: Sequence[np.ndarray],
    shape: tuple[int, ...],
    horizon: int,
) -> np.ndarray:
    """Evaluate a compiled expression list along a trajectory.

    Constant entries come back as scalars and are broadcast over time.

    :returns: Array of shape ``(horizon, *shape)``.
    """
    values = fn(*args)
    flat = [
        np.broadcast_to(np.asarray(v, dtype=np.float64), (horizon,))
        for v in values
    ]
    return np.stack(flat, axis=-1).reshape((horizon, *shape))


class SymbolicProblem:
    """Optimal control problem with symbolic dynamics and cost.

    :param state_symbols: State variables ``x``, in order.
    :param control_symbols: Control variables ``u``, in order.
    :param dynamics: Next-state expressions, one per state variable.
    :param cost: Running cost expression in ``x`` and ``u``.
    :param terminal_cost: Optional final cost expression in ``x``.
        When given, it is charged at the last timestep instead of the
        running cost.
    :param parameters: Values substituted for remaining free symbols,
        keyed by symbol name.
    :param second_order: Also differentiate the dynamics twice.
    :raises ValueError: If the number of dynamics expressions does not
        match the state dimension, or free symbols remain after
        substitution.
    """

    def __init__(
        self,
        state_symbols: Sequence[sympy.Symbol],
        control_symbols: Sequence[sympy.Symbol],
        dynamics: Sequence[sympy.Expr],
        cost: sympy.Expr,
        terminal_cost: sympy.Expr | None = None,
        parameters: dict[str, float] | None = None,
        second_order: bool = False,
    ) -> None:
        if len(dynamics) != len(state_symbols):
            raise ValueError(
                f"Expected {len(state_symbols)} dynamics expressions, "
                f"got {len(dynamics)}"
            )
        xs = list(state_symbols)
        us = list(control_symbols)
        self._state_symbols = xs
        self._control_symbols = us
        self._second_order = second_order

        subs = {sympy.Symbol(k): v for k, v in (parameters or {}).items()}
        f = sympy.Matrix([sympy.sympify(e).subs(subs) for e in dynamics])
        c = sympy.sympify(cost).subs(subs)
        c_final = (
            sympy.sympify(terminal_cost).subs(subs)
            if terminal_cost is not None
            else None
        )

        allowed = set(xs) | set(us)
        exprs = [*f, c] + ([c_final] if c_final is not None else [])
        free = set().union(*(e.free_symbols for e in exprs)) - allowed
        if free:
            raise ValueError(
                f"Unbound symbols in problem: {sorted(str(s) for s in free)}"
            )

        args = xs + us
        n, m = len(xs), len(us)

        self._f = _compile(list(f), args)
        self._c = _compile([c], args)
        self._fx = _compile(list(f.jacobian(xs)), args)
        self._fu = _compile(list(f.jacobian(us)), args)

        grad_x = [sympy.diff(c, s) for s in xs]
        grad_u = [sympy.diff(c, s) for s in us]
        self._cx = _compile(grad_x, args)
        self._cu = _compile(grad_u, args)
        self._cxx = _compile([sympy.diff(g, s) for g in grad_x for s in xs], args)
        self._cxu = _compile([sympy.diff(g, s) for g in grad_x for s in us], args)
        self._cuu = _compile([sympy.diff(g, s) for g in grad_u for s in us], args)

        if second_order:
            self._fxx = _compile(
                [sympy.diff(fi, a, b) for fi in f for a in xs for b in xs], args,
            )
            self._fxu = _compile(
                [sympy.diff(fi, a, b) for fi in f for a in xs for b in us], args,
            )
            self._fuu = _compile(
                [sympy.diff(fi, a, b) for fi in f for a in us for b in us], args,
            )

        self._c_final = None
        if c_final is not None:
            grad_f = [sympy.diff(c_final, s) for s in xs]
            self._c_final = _compile([c_final], xs)
            self._cx_final = _compile(grad_f, xs)
            self._cxx_final = _compile(
                [sympy.diff(g, s) for g in grad_f for s in xs], xs,
            )

        logger.debug(
            "Compiled symbolic problem: state_dim={}, control_dim={}, "
            "second_order={}, terminal_cost={}",
            n,
            m,
            second_order,
            c_final is not None,
        )

    @property
    def state_dim(self) -> int:
        return len(self._state_symbols)

    @property
    def control_dim(self) -> int:
        return len(self._control_symbols)

    @property
    def has_terminal_cost(self) -> bool:
        return self._c_final is not None

    def step(self, state: np.ndarray, control: np.ndarray, t: int) -> tuple[np.ndarray, float]:
        """Advance one timestep: ``(x, u, t) -> (x_next, cost)``."""
        args = [*np.asarray(state, dtype=np.float64), *np.asarray(control, dtype=np.float64)]
        x_next = np.array(self._f(*args), dtype=np.float64).reshape(-1)
        return x_next, float(self._c(*args)[0])

    def terminal_cost(self, state: np.ndarray) -> float:
        """Final cost of ``state``.

        :raises ValueError: If the problem has no terminal cost.
        """
        if self._c_final is None:
            raise ValueError("Problem has no terminal cost")
        return float(self._c_final(*np.asarray(state, dtype=np.float64))[0])

    def derivatives(self, states: np.ndarray, controls: np.ndarray) -> DerivativeBundle:
        """Exact derivatives along a trajectory.

        :param states: Shape ``(N, n)``.
        :param controls: Shape ``(N, m)``.
        :returns: Time-varying bundle. With a terminal cost, the last
            step carries its gradient and Hessian and zero control
            terms.
        """
        horizon = states.shape[0]
        n, m = self.state_dim, self.control_dim
        args = [states[:, i] for i in range(n)] + [controls[:, j] for j in range(m)]

        cx = _evaluate(self._cx, args, (n,), horizon)
        cu = _evaluate(self._cu, args, (m,), horizon)
        cxx = _evaluate(self._cxx, args, (n, n), horizon)
        cxu = _evaluate(self._cxu, args, (n, m), horizon)
        cuu = _evaluate(self._cuu, args, (m, m), horizon)

        if self._c_final is not None:
            final_args = [states[-1:, i] for i in range(n)]
            cx[-1] = _evaluate(self._cx_final, final_args, (n,), 1)[0]
            cxx[-1] = _evaluate(self._cxx_final, final_args, (n, n), 1)[0]
            cu[-1] = 0.0
            cxu[-1] = 0.0
            cuu[-1] = 0.0

        fxx = fxu = fuu = None
        if self._second_order:
            fxx = _evaluate(self._fxx, args, (n, n, n), horizon)
            fxu = _evaluate(self._fxu, args, (n, n, m), horizon)
            fuu = _evaluate(self._fuu, args, (n, m, m), horizon)

        return DerivativeBundle(
            fx=_evaluate(self._fx, args, (n, n), horizon),
            fu=_evaluate(self._fu, args, (n, m), horizon),
            cx=cx,
            cu=cu,
            cxx=cxx,
            cxu=cxu,
            cuu=cuu,
            fxx=fxx,
            fxu=fxu,
            fuu=fuu,
        )
