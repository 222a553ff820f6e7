# tests/test_convergence.py
"""Temporal convergence of the constrained integrators.

A manufactured solution u(t) = cos(t) a + sin(2t) b with multiplier
f(t) = exp(-t) c is imposed by choosing

    state_rhs(t)      = u'(t) - L u(t) - B f(t)
    constraint_rhs(t) = E u(t)

with B = -R (negated regularization) and E = interpolation. The nominal order
of a tableau is the order of its multiplier: halving dt reduces the final
multiplier error by ~2 for the first-order scheme and ~4 for the second-order
one. The state is at least as accurate and on this problem the second-order
scheme converges faster than nominal in the state (ratios near 8), so only a
lower bound is placed on the state ratio.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from ilm_engine.core_solver import IntegratorConfig, get_tableau, init
from ilm_engine.matrix_ops import laplacian_operator
from ilm_engine.model_core import CoupledState

if TYPE_CHECKING:
    from conftest import FuncFactory

    from ilm_engine.coupling import CouplingOperators
    from ilm_engine.geometry import Circle, PhysicalGrid

T_END = 0.4
DTS = (0.1, 0.05, 0.025)


def _manufactured_error(
    coupled_func_factory: FuncFactory,
    grid: PhysicalGrid,
    body: Circle,
    coupling: CouplingOperators,
    algorithm: str,
    dt: float,
) -> tuple[float, float]:
    """Return the final (state, multiplier) max errors."""
    xx, yy = grid.meshgrid()
    bump = np.exp(-(xx**2 + yy**2))
    a = bump
    b = xx * yy * bump
    c = 1.0 + 0.5 * np.cos(np.arctan2(body.points[:, 1], body.points[:, 0]))

    ea = coupling.interpolate(body.zeros_surface(), a)
    eb = coupling.interpolate(body.zeros_surface(), b)
    rc = coupling.regularize(grid.zeros_grid(), c)

    def u_exact(t: float) -> np.ndarray:
        return np.cos(t) * a + np.sin(2.0 * t) * b

    linear_op = laplacian_operator(grid, 0.1, prefer_dense=True)

    def state_rhs(out: np.ndarray, state: np.ndarray, t: float) -> np.ndarray:
        du = -np.sin(t) * a + 2.0 * np.cos(2.0 * t) * b
        np.copyto(out, du - linear_op.apply(u_exact(t)) + np.exp(-t) * rc)
        return out

    def constraint_rhs(out: np.ndarray, t: float) -> np.ndarray:
        np.copyto(out, np.cos(t) * ea + np.sin(2.0 * t) * eb)
        return out

    func = coupled_func_factory(
        state_rhs=state_rhs, constraint_rhs=constraint_rhs, linear_op=linear_op
    )

    u0 = CoupledState(u_exact(0.0), c.copy())
    cfg = IntegratorConfig(algorithm=algorithm)  # type: ignore[arg-type]
    integ = init(u0, (0.0, T_END), func, dt=dt, config=cfg)
    integ.advance(T_END)
    assert integ.t == T_END
    state_err = float(np.max(np.abs(integ.state - u_exact(T_END))))
    multiplier_err = float(np.max(np.abs(integ.constraint - np.exp(-T_END) * c)))
    return state_err, multiplier_err


@pytest.mark.parametrize(
    ("algorithm", "order", "state_lo"),
    [("if-he-euler", 1, 1.5), ("liska-ifherk", 2, 3.5)],
)
def test_observed_order(
    coupled_func_factory: FuncFactory,
    grid: PhysicalGrid,
    body: Circle,
    coupling: CouplingOperators,
    algorithm: str,
    order: int,
    state_lo: float,
) -> None:
    """Multiplier error ratios match the tableau order; the state is no worse."""
    assert get_tableau(algorithm).order == order
    errs = [
        _manufactured_error(coupled_func_factory, grid, body, coupling, algorithm, dt)
        for dt in DTS
    ]
    state_errs = [e[0] for e in errs]
    multiplier_errs = [e[1] for e in errs]
    assert state_errs[-1] < state_errs[0]
    assert multiplier_errs[-1] < multiplier_errs[0]

    expected = 2.0**order
    for k in range(len(DTS) - 1):
        state_ratio = state_errs[k] / state_errs[k + 1]
        multiplier_ratio = multiplier_errs[k] / multiplier_errs[k + 1]
        assert 0.7 * expected < multiplier_ratio < 1.4 * expected, (
            algorithm,
            multiplier_errs,
        )
        assert state_ratio > state_lo, (algorithm, state_errs)


def test_second_order_more_accurate(
    coupled_func_factory: FuncFactory,
    grid: PhysicalGrid,
    body: Circle,
    coupling: CouplingOperators,
) -> None:
    """At equal step size the second-order scheme wins in state and multiplier."""
    dt = DTS[-1]
    euler = _manufactured_error(
        coupled_func_factory, grid, body, coupling, "if-he-euler", dt
    )
    liska = _manufactured_error(
        coupled_func_factory, grid, body, coupling, "liska-ifherk", dt
    )
    assert liska[0] < euler[0]
    assert liska[1] < euler[1]
