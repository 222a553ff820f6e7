# tests/test_errors.py
"""Unit tests for ilm_engine.errors."""

from __future__ import annotations

import numpy as np
import pytest

from ilm_engine import errors


def test_exception_hierarchy() -> None:
    """Every error derives from ILMEngineError and a matching builtin."""
    assert issubclass(errors.ConfigurationError, errors.ILMEngineError)
    assert issubclass(errors.ConfigurationError, ValueError)
    assert issubclass(errors.NumericalDivergenceError, FloatingPointError)
    assert issubclass(errors.SolverConvergenceError, RuntimeError)
    assert issubclass(errors.SingularSystemError, np.linalg.LinAlgError)
    assert issubclass(errors.IntegratorStateError, errors.ILMEngineError)
    assert issubclass(errors.ConvergenceWarning, RuntimeWarning)


def test_solver_convergence_error_carries_diagnostics() -> None:
    """Residual, iteration count and tau are exposed and in the message."""
    err = errors.SolverConvergenceError(residual=3.5e-4, iterations=12, tau=0.025)
    assert err.residual == pytest.approx(3.5e-4)
    assert err.iterations == 12
    assert err.tau == pytest.approx(0.025)
    msg = str(err)
    assert "did not converge after 12 iterations" in msg
    assert "3.500e-04" in msg
    assert "method='direct'" in msg


def test_raise_shape_mismatch() -> None:
    """The raiser names the offending callback and both shapes."""
    with pytest.raises(errors.ConfigurationError, match="state_rhs produced shape") as exc_info:
        errors.raise_shape_mismatch(name="state_rhs", expected=(9, 9), got=(3, 3))
    assert "(9, 9)" in str(exc_info.value)
    assert "(3, 3)" in str(exc_info.value)


def test_raise_non_finite_with_and_without_time() -> None:
    """The raiser records the source and optionally the time."""
    with pytest.raises(errors.NumericalDivergenceError) as exc_info:
        errors.raise_non_finite(source="constraint_rhs", t=0.125)
    assert exc_info.value.source == "constraint_rhs"
    assert "at t=0.125" in str(exc_info.value)

    with pytest.raises(errors.NumericalDivergenceError, match="exp_action produced") as exc_info:
        errors.raise_non_finite(source="exp_action")
    assert " at t=" not in str(exc_info.value)
