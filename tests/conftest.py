"""Global pytest configuration and shared fixtures for ilm_engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import numpy as np
import pytest

from ilm_engine.coupling import CouplingOperators
from ilm_engine.geometry import Circle, PhysicalGrid
from ilm_engine.heat_conduction import DirichletHeatConduction
from ilm_engine.matrix_ops import GridLinearOperator, laplacian_operator
from ilm_engine.model_core import CoupledState
from ilm_engine.ode_function import ConstrainedODEFunction

FuncFactory = Callable[..., ConstrainedODEFunction]


# -----------------------------------------------------------------------------
# Geometry
# -----------------------------------------------------------------------------


@pytest.fixture
def grid() -> PhysicalGrid:
    """Coarse 9x9-node grid on [-2, 2]^2."""
    return PhysicalGrid((-2.0, 2.0), (-2.0, 2.0), 0.4)


@pytest.fixture
def body(grid: PhysicalGrid) -> Circle:
    """Unit circle with point spacing 1.4 dx."""
    return Circle(1.0, 1.4 * grid.cellsize)


@pytest.fixture
def coupling(grid: PhysicalGrid, body: Circle) -> CouplingOperators:
    """Interpolation/regularization pair for grid and body."""
    return CouplingOperators.build(grid, body)


@pytest.fixture
def heat_problem(grid: PhysicalGrid, body: Circle) -> DirichletHeatConduction:
    """Disk heat-conduction problem on the coarse grid (dense exponentials)."""
    return DirichletHeatConduction.build(grid, body, prefer_dense=True)


# -----------------------------------------------------------------------------
# Constrained ODE function factory
# -----------------------------------------------------------------------------


def _zero_state_rhs(out: np.ndarray, state: np.ndarray, t: float) -> np.ndarray:
    out.fill(0.0)
    return out


def _zero_constraint_rhs(out: np.ndarray, t: float) -> np.ndarray:
    out.fill(0.0)
    return out


@pytest.fixture
def coupled_func_factory(
    grid: PhysicalGrid,
    body: Circle,
    coupling: CouplingOperators,
) -> FuncFactory:
    """
    Build ConstrainedODEFunctions on the shared grid/body.

    The constraint pair is constraint_force = -regularize(force_weights * s)
    and constraint_op = interpolate; force_weights=None gives the exact
    adjoint pair.

    Usage:
        func = coupled_func_factory(state_rhs=..., linear_op=...)
    """

    def _make(
        *,
        state_rhs: Any = _zero_state_rhs,
        constraint_rhs: Any = _zero_constraint_rhs,
        force_weights: np.ndarray | None = None,
        linear_op: GridLinearOperator | None = None,
        **kwargs: Any,
    ) -> ConstrainedODEFunction:
        weighted = body.zeros_surface()

        def constraint_force(out: np.ndarray, sigma: np.ndarray) -> np.ndarray:
            if force_weights is None:
                coupling.regularize(out, sigma)
            else:
                np.multiply(sigma, force_weights, out=weighted)
                coupling.regularize(out, weighted)
            np.negative(out, out=out)
            return out

        def constraint_op(out: np.ndarray, state: np.ndarray) -> np.ndarray:
            return coupling.interpolate(out, state)

        op = linear_op or laplacian_operator(grid, 0.1, prefer_dense=True)
        return ConstrainedODEFunction(
            state_rhs=state_rhs,
            constraint_rhs=constraint_rhs,
            constraint_force=constraint_force,
            constraint_op=constraint_op,
            linear_op=op,
            prototype=CoupledState(grid.zeros_grid(), body.zeros_surface()),
            grid_weight=coupling.grid_weight,
            surface_weights=coupling.surface_weights,
            **kwargs,
        )

    return _make


@pytest.fixture
def unconstrained_func_factory(grid: PhysicalGrid) -> FuncFactory:
    """
    Build ConstrainedODEFunctions without surface points (B = 0).

    Usage:
        func = unconstrained_func_factory(state_rhs=..., linear_op=...)
    """

    def _surface_noop(out: np.ndarray, *args: Any) -> np.ndarray:
        out.fill(0.0)
        return out

    def _grid_noop(out: np.ndarray, sigma: np.ndarray) -> np.ndarray:
        out.fill(0.0)
        return out

    def _make(
        *,
        state_rhs: Any = _zero_state_rhs,
        linear_op: GridLinearOperator | None = None,
        **kwargs: Any,
    ) -> ConstrainedODEFunction:
        op = linear_op or laplacian_operator(grid, 0.1, prefer_dense=True)
        return ConstrainedODEFunction(
            state_rhs=state_rhs,
            constraint_rhs=_surface_noop,
            constraint_force=_grid_noop,
            constraint_op=_surface_noop,
            linear_op=op,
            prototype=CoupledState(grid.zeros_grid(), np.zeros(0)),
            **kwargs,
        )

    return _make
