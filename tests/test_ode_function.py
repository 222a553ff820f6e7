# tests/test_ode_function.py
"""Unit tests for ilm_engine.ode_function.

This module verifies:
- Construction-time validation (callables, shapes, operator/grid agreement).
- Checked evaluation of the callbacks (non-finite detection).
- The sampled adjoint-consistency probe, including a deliberately mismatched
  operator pair.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from ilm_engine.errors import ConfigurationError, NumericalDivergenceError
from ilm_engine.matrix_ops import laplacian_operator
from ilm_engine.model_core import CoupledState
from ilm_engine.ode_function import ConstrainedODEFunction

if TYPE_CHECKING:
    from conftest import FuncFactory

    from ilm_engine.geometry import Circle, PhysicalGrid
    from ilm_engine.heat_conduction import DirichletHeatConduction


def test_heat_function_shapes(
    heat_problem: DirichletHeatConduction, grid: PhysicalGrid, body: Circle
) -> None:
    """Shapes are taken from the prototype."""
    func = heat_problem.func
    assert func.state_shape == grid.shape
    assert func.constraint_shape == (body.n_points,)
    assert func.n_constraints == body.n_points
    z = func.zeros()
    assert z.shapes == (grid.shape, (body.n_points,))


def test_prototype_is_copied(coupled_func_factory: FuncFactory) -> None:
    """The stored prototype is a zero copy, independent of the caller's arrays."""
    func = coupled_func_factory()
    func.zeros().state[0, 0] = 3.0
    assert not np.any(func.prototype.state)


def test_non_callable_rejected(grid: PhysicalGrid, body: Circle) -> None:
    """Every callback must be callable."""
    noop = lambda out, *args: out  # noqa: E731
    with pytest.raises(ConfigurationError, match="state_rhs must be callable"):
        ConstrainedODEFunction(
            state_rhs=None,  # type: ignore[arg-type]
            constraint_rhs=noop,
            constraint_force=noop,
            constraint_op=noop,
            linear_op=laplacian_operator(grid),
            prototype=CoupledState(grid.zeros_grid(), body.zeros_surface()),
        )


def test_state_rhs_shape_mismatch_rejected(coupled_func_factory: FuncFactory) -> None:
    """A callback returning the wrong shape is a ConfigurationError."""

    def bad_rhs(out: np.ndarray, state: np.ndarray, t: float) -> np.ndarray:
        return np.zeros((3, 3))

    with pytest.raises(ConfigurationError, match="state_rhs produced shape"):
        coupled_func_factory(state_rhs=bad_rhs)


def test_constraint_rhs_shape_mismatch_rejected(
    coupled_func_factory: FuncFactory,
) -> None:
    """A constraint_rhs returning a grid-sized field is rejected."""

    def bad_rhs(out: np.ndarray, t: float) -> np.ndarray:
        return np.zeros(out.size + 1)

    with pytest.raises(ConfigurationError, match="constraint_rhs"):
        coupled_func_factory(constraint_rhs=bad_rhs)


def test_linear_operator_grid_mismatch_rejected(
    coupled_func_factory: FuncFactory,
) -> None:
    """The linear operator must act on the prototype grid."""
    from ilm_engine.geometry import PhysicalGrid

    other = PhysicalGrid((0.0, 1.0), (0.0, 1.0), 0.25)
    with pytest.raises(ConfigurationError, match="linear operator"):
        coupled_func_factory(linear_op=laplacian_operator(other))


def test_surface_weight_length_checked(
    grid: PhysicalGrid, body: Circle, heat_problem: DirichletHeatConduction
) -> None:
    """Per-point surface weights must match the number of points."""
    hp = heat_problem
    with pytest.raises(ConfigurationError, match="surface_weights"):
        ConstrainedODEFunction(
            state_rhs=hp.state_rhs,
            constraint_rhs=hp.constraint_rhs,
            constraint_force=hp.constraint_force,
            constraint_op=hp.constraint_op,
            linear_op=hp.linear_op,
            prototype=CoupledState(grid.zeros_grid(), body.zeros_surface()),
            surface_weights=np.ones(body.n_points + 1),
        )


def test_eval_detects_non_finite(coupled_func_factory: FuncFactory) -> None:
    """Checked evaluation names the callback that produced NaN."""
    calls = {"n": 0}

    def rhs(out: np.ndarray, state: np.ndarray, t: float) -> np.ndarray:
        calls["n"] += 1
        out.fill(0.0)
        if t > 0.0:
            out[0, 0] = np.nan
        return out

    func = coupled_func_factory(state_rhs=rhs)
    out = np.zeros(func.state_shape)
    func.eval_state_rhs(out, out.copy(), 0.0)
    with pytest.raises(NumericalDivergenceError) as exc_info:
        func.eval_state_rhs(out, out.copy(), 0.5)
    assert exc_info.value.source == "state_rhs"
    assert "t=0.5" in str(exc_info.value)


# -------------------------------------------------------------------
# Adjoint consistency
# -------------------------------------------------------------------


def test_heat_pair_is_adjoint_up_to_sign(heat_problem: DirichletHeatConduction) -> None:
    """interpolate and -regularize are adjoint with sign -1."""
    report = heat_problem.func.adjoint_mismatch(seed=3)
    assert report.sign == -1
    assert report.relative_error < 1e-12
    assert report.op_inner == pytest.approx(-report.force_inner, rel=1e-12)


def test_check_adjoint_accepts_consistent_pair(coupled_func_factory: FuncFactory) -> None:
    """check_adjoint=True passes for the exact pair."""
    func = coupled_func_factory(check_adjoint=True)
    assert func.adjoint_mismatch().relative_error < 1e-12


def test_mismatched_pair_detected(coupled_func_factory: FuncFactory, body: Circle) -> None:
    """A force scaled point-by-point is not the adjoint of interpolation."""
    weights = np.linspace(0.5, 2.0, body.n_points)
    func = coupled_func_factory(force_weights=weights)
    report = func.adjoint_mismatch(seed=0)
    assert report.relative_error > 1e-3

    with pytest.raises(ConfigurationError, match="not the adjoint"):
        coupled_func_factory(force_weights=weights, check_adjoint=True)


def test_adjoint_probe_with_given_fields(
    heat_problem: DirichletHeatConduction, grid: PhysicalGrid, body: Circle
) -> None:
    """Explicit probe fields give the inner products directly."""
    x = np.ones(grid.shape)
    sigma = np.ones(body.n_points)
    report = heat_problem.func.adjoint_mismatch(x, sigma)
    # E 1 = 1 on interior points, so <E x, 1>_ds is the perimeter.
    assert report.op_inner == pytest.approx(body.arc_lengths.sum())
    assert report.force_inner == pytest.approx(-body.arc_lengths.sum())
