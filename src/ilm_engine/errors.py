# src/ilm_engine/errors.py
"""Error types and standardized raisers for ilm_engine.

This module centralizes:
- the exception taxonomy of the constrained ODE core, and
- small helpers that raise those exceptions with actionable messages.

Taxonomy:
- ConfigurationError: shape/contract problems detected at construction time.
  Fatal; never retried.
- NumericalDivergenceError: a callback or the exponential action produced
  NaN/Inf. Fatal for the current step; the committed state is preserved.
- SolverConvergenceError: the Krylov Schur-complement solve ran out of
  iterations. Non-fatal; the caller may retry with a smaller step or switch to
  the direct factorization.
- SingularSystemError: the Schur complement is not invertible. Fatal.
- IntegratorStateError: stepping an integrator that has failed or finished.
"""

from __future__ import annotations

from typing import Final

import numpy as np

_RETRY_HINT: Final[str] = (
    "Retry with a smaller time step, a larger iteration budget, or "
    "SaddlePointConfig(method='direct')."
)


class ILMEngineError(Exception):
    """Base exception for ilm_engine errors."""


class ConfigurationError(ILMEngineError, ValueError):
    """Raised when operators, prototypes or settings are inconsistent."""


class NumericalDivergenceError(ILMEngineError, FloatingPointError):
    """Raised when a field produced during a step is not finite.

    Attributes:
        source: Name of the callback or operator that produced the field.
    """

    def __init__(self, message: str, *, source: str) -> None:
        """Initialize NumericalDivergenceError.

        Args:
            message: Human-readable message.
            source: Name of the offending callback or operator.
        """
        super().__init__(message)
        self.source = source


class SolverConvergenceError(ILMEngineError, RuntimeError):
    """Raised when the iterative Schur-complement solve does not converge.

    Attributes:
        residual: Last relative residual of the Krylov iteration.
        iterations: Number of iterations performed.
        tau: Exponential-action interval of the failing stage.
    """

    def __init__(self, *, residual: float, iterations: int, tau: float) -> None:
        """Initialize SolverConvergenceError.

        Args:
            residual: Last relative residual.
            iterations: Number of iterations performed.
            tau: Exponential-action interval of the failing stage.
        """
        msg = (
            f"Schur-complement solve did not converge after {iterations} "
            f"iterations (relative residual {residual:.3e}, tau={tau:.6g}). "
            f"{_RETRY_HINT}"
        )
        super().__init__(msg)
        self.residual = float(residual)
        self.iterations = int(iterations)
        self.tau = float(tau)


class SingularSystemError(ILMEngineError, np.linalg.LinAlgError):
    """Raised when the Schur complement is singular or numerically unusable."""


class IntegratorStateError(ILMEngineError, RuntimeError):
    """Raised when an integrator cannot advance from its current status."""


class ConvergenceWarning(RuntimeWarning):
    """Emitted instead of SolverConvergenceError when strict=False."""


def raise_shape_mismatch(*, name: str, expected: object, got: object) -> None:
    """Raise a standardized ConfigurationError for a shape mismatch.

    Args:
        name: Name of the callback or array with the wrong shape.
        expected: Expected shape.
        got: Observed shape.

    Raises:
        ConfigurationError: Always.
    """
    msg = f"{name} produced shape {got!r}; expected {expected!r} from the prototype."
    raise ConfigurationError(msg)


def raise_non_finite(*, source: str, t: float | None = None) -> None:
    """Raise a standardized NumericalDivergenceError.

    Args:
        source: Name of the callback or operator that produced the field.
        t: Optional time at which the field was evaluated.

    Raises:
        NumericalDivergenceError: Always.
    """
    where = "" if t is None else f" at t={t:.6g}"
    msg = (
        f"{source} produced non-finite values{where}; the step was aborted and "
        "the last committed state is preserved."
    )
    raise NumericalDivergenceError(msg, source=source)
