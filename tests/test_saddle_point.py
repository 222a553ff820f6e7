# tests/test_saddle_point.py
"""Unit tests for ilm_engine.saddle_point.

This module verifies:
- The direct (dense LU) and Krylov (CG) strategies agree and satisfy the
  constraint equation.
- Schur-complement assembly matches the matrix-free application.
- Symmetry diagnostics catch mismatched constraint operators.
- Failure modes: non-convergence (strict and relaxed) and singular systems.
- The unconstrained (empty surface) path reduces to an exponential action.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from ilm_engine.errors import (
    ConfigurationError,
    ConvergenceWarning,
    SingularSystemError,
    SolverConvergenceError,
)
from ilm_engine.saddle_point import SaddlePointConfig, SaddlePointSolver

if TYPE_CHECKING:
    from conftest import FuncFactory

    from ilm_engine.geometry import Circle, PhysicalGrid
    from ilm_engine.heat_conduction import DirichletHeatConduction
    from ilm_engine.ode_function import ConstrainedODEFunction


def _random_rhs(
    func: ConstrainedODEFunction, seed: int = 0
) -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    return (
        rng.standard_normal(func.state_shape),
        rng.standard_normal(func.constraint_shape),
    )


def _solve(
    solver: SaddlePointSolver, r_state: np.ndarray, r_constraint: np.ndarray, tau: float
) -> tuple[np.ndarray, np.ndarray]:
    x = np.zeros_like(r_state)
    sigma = np.zeros_like(r_constraint)
    solver.solve(x, sigma, r_state, r_constraint, tau)
    return x, sigma


# -------------------------------------------------------------------
# Configuration
# -------------------------------------------------------------------


def test_config_validation() -> None:
    """Unknown methods and non-positive budgets are rejected."""
    with pytest.raises(ConfigurationError, match="Unknown saddle-point method"):
        SaddlePointConfig(method="lsqr")  # type: ignore[arg-type]
    with pytest.raises(ConfigurationError, match="maxiter"):
        SaddlePointConfig(maxiter=0)


def test_auto_method_dispatch(heat_problem: DirichletHeatConduction, body: Circle) -> None:
    """auto picks direct below the threshold and krylov above it."""
    func = heat_problem.func
    assert SaddlePointSolver(func).resolve_method() == "direct"
    small = SaddlePointConfig(dense_threshold=body.n_points - 1)
    assert SaddlePointSolver(func, small).resolve_method() == "krylov"


# -------------------------------------------------------------------
# Correctness
# -------------------------------------------------------------------


@pytest.mark.parametrize("tau", [0.0, 0.01, 0.05])
def test_direct_and_krylov_agree(heat_problem: DirichletHeatConduction, tau: float) -> None:
    """Both strategies solve the same saddle-point system."""
    func = heat_problem.func
    r_state, r_constraint = _random_rhs(func)

    direct = SaddlePointSolver(func, SaddlePointConfig(method="direct"))
    krylov = SaddlePointSolver(func, SaddlePointConfig(method="krylov", rtol=1e-13))

    x_d, s_d = _solve(direct, r_state, r_constraint, tau)
    x_k, s_k = _solve(krylov, r_state, r_constraint, tau)

    assert np.allclose(s_k, s_d, rtol=1e-7, atol=1e-9 * np.abs(s_d).max())
    assert np.allclose(x_k, x_d, rtol=1e-7, atol=1e-9 * np.abs(x_d).max())


def test_solution_satisfies_both_equations(heat_problem: DirichletHeatConduction) -> None:
    """B^T x = r_c and x = exp(tau L)(r_s - B sigma)."""
    func = heat_problem.func
    tau = 0.02
    r_state, r_constraint = _random_rhs(func, seed=1)
    solver = SaddlePointSolver(func)
    x = np.zeros_like(r_state)
    sigma = np.zeros_like(r_constraint)
    info = solver.solve(x, sigma, r_state, r_constraint, tau)
    assert info.method == "direct"

    bt_x = func.eval_constraint_op(np.zeros_like(r_constraint), x)
    assert np.allclose(bt_x, r_constraint, atol=1e-9)

    b_sigma = func.eval_constraint_force(np.zeros_like(r_state), sigma)
    expected_x = func.linear_op.exp_action(tau, r_state - b_sigma)
    assert np.allclose(x, expected_x, atol=1e-12)


def test_assembled_schur_matches_application(heat_problem: DirichletHeatConduction) -> None:
    """The dense Schur complement equals the matrix-free operator."""
    func = heat_problem.func
    solver = SaddlePointSolver(func)
    rng = np.random.default_rng(4)
    s = rng.standard_normal(func.n_constraints)
    schur = solver.assemble_schur(0.03)
    assert schur.shape == (func.n_constraints, func.n_constraints)
    assert np.allclose(schur @ s, solver.schur_apply(0.03, s), atol=1e-12)


def test_factorization_cached_per_tau(heat_problem: DirichletHeatConduction) -> None:
    """Repeated solves reuse the factorization until clear_cache()."""
    func = heat_problem.func
    solver = SaddlePointSolver(func)
    r_state, r_constraint = _random_rhs(func)
    first = _solve(solver, r_state, r_constraint, 0.01)
    _solve(solver, r_state, r_constraint, 0.01)
    _solve(solver, r_state, r_constraint, 0.02)
    assert sorted(solver._lu_cache) == [0.01, 0.02]
    solver.clear_cache()
    assert not solver._lu_cache
    again = _solve(solver, r_state, r_constraint, 0.01)
    assert np.allclose(first[0], again[0])


# -------------------------------------------------------------------
# Symmetry diagnostics
# -------------------------------------------------------------------


def test_schur_symmetric_for_adjoint_pair(heat_problem: DirichletHeatConduction) -> None:
    """The weighted Schur complement is symmetric for interpolate/-regularize."""
    solver = SaddlePointSolver(heat_problem.func)
    assert solver.schur_symmetry_error(0.01) < 1e-10
    assert solver.schur_symmetry_error(0.0) < 1e-10


def test_symmetry_violation_detected(
    coupled_func_factory: FuncFactory, body: Circle
) -> None:
    """A mismatched operator pair breaks Schur symmetry and is rejected."""
    weights = np.linspace(0.5, 2.0, body.n_points)
    func = coupled_func_factory(force_weights=weights)
    solver = SaddlePointSolver(func)
    assert solver.schur_symmetry_error(0.01) > 1e-3

    checked = SaddlePointSolver(func, SaddlePointConfig(check_symmetry=True))
    r_state, r_constraint = _random_rhs(func)
    with pytest.raises(ConfigurationError, match="not symmetric"):
        _solve(checked, r_state, r_constraint, 0.01)


# -------------------------------------------------------------------
# Failure modes
# -------------------------------------------------------------------


def test_krylov_budget_exhausted_strict(heat_problem: DirichletHeatConduction) -> None:
    """An exhausted Krylov budget raises with residual and iteration count."""
    func = heat_problem.func
    solver = SaddlePointSolver(
        func, SaddlePointConfig(method="krylov", maxiter=1, rtol=1e-14)
    )
    r_state, r_constraint = _random_rhs(func, seed=2)
    x = np.full(func.state_shape, 7.0)
    sigma = np.full(func.constraint_shape, 7.0)
    with pytest.raises(SolverConvergenceError) as exc_info:
        solver.solve(x, sigma, r_state, r_constraint, 0.01)

    err = exc_info.value
    assert err.iterations <= 1
    assert err.residual > 1e-14
    assert err.tau == pytest.approx(0.01)
    # outputs untouched
    assert np.all(x == 7.0)
    assert np.all(sigma == 7.0)


def test_krylov_budget_exhausted_relaxed(heat_problem: DirichletHeatConduction) -> None:
    """strict=False warns and returns the last iterate."""
    func = heat_problem.func
    solver = SaddlePointSolver(
        func, SaddlePointConfig(method="krylov", maxiter=1, rtol=1e-14)
    )
    r_state, r_constraint = _random_rhs(func, seed=2)
    x = np.zeros(func.state_shape)
    sigma = np.zeros(func.constraint_shape)
    with pytest.warns(ConvergenceWarning, match="did not converge"):
        info = solver.solve(x, sigma, r_state, r_constraint, 0.01, strict=False)
    assert info.method == "krylov"
    assert info.residual > 1e-14
    assert np.all(np.isfinite(x))
    assert np.any(sigma != 0.0)


@pytest.mark.parametrize("method", ["direct", "krylov"])
def test_zero_force_is_singular(
    grid: PhysicalGrid, body: Circle, coupling: object, method: str
) -> None:
    """A vanishing constraint force makes the Schur complement singular."""
    from ilm_engine.matrix_ops import laplacian_operator
    from ilm_engine.model_core import CoupledState
    from ilm_engine.ode_function import ConstrainedODEFunction

    def zero_grid(out: np.ndarray, *args: object) -> np.ndarray:
        out.fill(0.0)
        return out

    def zero_surface(out: np.ndarray, *args: object) -> np.ndarray:
        out.fill(0.0)
        return out

    def interp(out: np.ndarray, state: np.ndarray) -> np.ndarray:
        return coupling.interpolate(out, state)  # type: ignore[attr-defined]

    func = ConstrainedODEFunction(
        state_rhs=zero_grid,
        constraint_rhs=zero_surface,
        constraint_force=zero_grid,
        constraint_op=interp,
        linear_op=laplacian_operator(grid, prefer_dense=True),
        prototype=CoupledState(grid.zeros_grid(), body.zeros_surface()),
    )
    solver = SaddlePointSolver(func, SaddlePointConfig(method=method))  # type: ignore[arg-type]
    r_state, r_constraint = _random_rhs(func)
    with pytest.raises(SingularSystemError):
        _solve(solver, r_state, r_constraint, 0.01)


# -------------------------------------------------------------------
# Unconstrained path
# -------------------------------------------------------------------


def test_empty_surface_is_pure_exponential(
    unconstrained_func_factory: FuncFactory,
) -> None:
    """Without multipliers the solve is x = exp(tau L) r_state."""
    func = unconstrained_func_factory()
    solver = SaddlePointSolver(func)
    rng = np.random.default_rng(5)
    r_state = rng.standard_normal(func.state_shape)
    x = np.zeros_like(r_state)
    sigma = np.zeros(0)
    info = solver.solve(x, sigma, r_state, np.zeros(0), 0.05)
    assert info.method == "unconstrained"
    assert np.allclose(x, func.linear_op.exp_action(0.05, r_state))
    assert solver.schur_symmetry_error(0.05) == 0.0
