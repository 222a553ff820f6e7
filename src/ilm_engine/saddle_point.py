# src/ilm_engine/saddle_point.py
"""Saddle-point solver for constrained integrator stages.

Each stage of the constrained integrator solves the block system

    [ A    B ] [ x     ]   [ r_state      ]
    [ B^T  0 ] [ sigma ] = [ r_constraint ]

where ``B sigma = constraint_force(sigma)``, ``B^T x = constraint_op(x)`` and
``A^{-1} = exp(tau * L)`` is the exponential action of the linear grid
operator over the stage interval tau. The solver eliminates x with the Schur
complement ``S = B^T A^{-1} B`` acting on the multiplier space:

    S sigma = B^T A^{-1} r_state - r_constraint
    x       = A^{-1} (r_state - B sigma)

Two strategies are available:

- direct: S is assembled densely (one batched exponential action over the
  regularized unit multipliers) and LU-factorized. Factorizations are cached
  per tau, since the integrator only ever uses a few stage intervals.
- krylov: S is applied matrix-free and the system is solved with conjugate
  gradients. S is symmetric under the surface-weighted inner product (given
  the adjoint contract of ConstrainedODEFunction), so CG runs on the
  sign-normalized operator ``sign * W S`` with W the surface weights.

"auto" chooses direct below SaddlePointConfig.dense_threshold multipliers.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, cast

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgWarning, lu_factor, lu_solve
from scipy.sparse.linalg import LinearOperator, cg

from .errors import (
    ConfigurationError,
    ConvergenceWarning,
    SingularSystemError,
    SolverConvergenceError,
)
from .matrix_ops import TauCache

if TYPE_CHECKING:
    from .model_core import GridField, SurfaceField
    from .ode_function import ConstrainedODEFunction

logger = logging.getLogger(__name__)

SolverMethod = Literal["auto", "direct", "krylov"]

# =============================================================================
# Errors / messages
# =============================================================================

_UNKNOWN_METHOD_ERROR = "Unknown saddle-point method: {method}"
_NON_FINITE_SCHUR_ERROR = "Schur complement for tau={tau:.6g} has non-finite entries"
_SINGULAR_SCHUR_ERROR = (
    "Schur complement for tau={tau:.6g} is singular or ill-conditioned "
    "(pivot ratio {ratio:.3e})"
)
_INDEFINITE_SCHUR_ERROR = (
    "Schur complement for tau={tau:.6g} has a vanishing Rayleigh quotient; "
    "constraint_force/constraint_op may be zero or inconsistent"
)
_KRYLOV_BREAKDOWN_ERROR = "Conjugate-gradient breakdown (info={info}) for tau={tau:.6g}"
_NON_FINITE_MULTIPLIER_ERROR = "Multiplier solve for tau={tau:.6g} returned non-finite values"
_SYMMETRY_ERROR = (
    "Schur complement for tau={tau:.6g} is not symmetric (relative error "
    "{err:.3e} > symmetry_rtol={rtol:.1e}); constraint_op is not the adjoint "
    "of constraint_force under the configured inner products"
)
_POSITIVE_ERROR = "{name} must be positive; got {value}"


# =============================================================================
# Configuration / results
# =============================================================================


@dataclass(slots=True, frozen=True)
class SaddlePointConfig:
    """Configuration for SaddlePointSolver.

    Attributes:
        method: "direct", "krylov" or "auto" (direct below dense_threshold).
        dense_threshold: Largest multiplier count assembled densely by "auto".
        rtol: Relative residual tolerance of the Krylov solve.
        atol: Absolute residual tolerance of the Krylov solve.
        maxiter: Iteration budget of the Krylov solve.
        check_symmetry: If True, check Schur symmetry once per tau.
        symmetry_rtol: Tolerance of the symmetry check.
    """

    method: SolverMethod = "auto"
    dense_threshold: int = 350
    rtol: float = 1e-10
    atol: float = 0.0
    maxiter: int = 500
    check_symmetry: bool = False
    symmetry_rtol: float = 1e-8

    def __post_init__(self) -> None:
        if self.method not in {"auto", "direct", "krylov"}:
            raise ConfigurationError(_UNKNOWN_METHOD_ERROR.format(method=self.method))
        for name in ("rtol", "maxiter", "symmetry_rtol"):
            value = getattr(self, name)
            if not value > 0:
                raise ConfigurationError(_POSITIVE_ERROR.format(name=name, value=value))


@dataclass(slots=True, frozen=True)
class SolveInfo:
    """Diagnostics of one saddle-point solve.

    Attributes:
        method: Strategy used ("direct", "krylov" or "unconstrained").
        iterations: Krylov iterations (0 for direct solves).
        residual: Relative residual of the multiplier equation.
    """

    method: str
    iterations: int
    residual: float


# =============================================================================
# SaddlePointSolver
# =============================================================================


class SaddlePointSolver:
    """Schur-complement solver for the stage saddle-point systems."""

    def __init__(
        self,
        func: ConstrainedODEFunction,
        config: SaddlePointConfig | None = None,
    ) -> None:
        """Initialize SaddlePointSolver.

        Args:
            func: Constrained ODE function providing L, B and B^T.
            config: Solver configuration; defaults are used if None.
        """
        self.func = func
        self.config = config or SaddlePointConfig()
        self.n_constraints = func.n_constraints
        self._constraint_shape = func.constraint_shape

        # Surface weights flattened to the multiplier vector layout.
        weights = np.broadcast_to(
            self._point_weights(func.surface_weights, self._constraint_shape),
            self._constraint_shape,
        )
        self._weights: NDArray[np.floating] = np.ascontiguousarray(
            weights, dtype=np.float64
        ).reshape(-1)

        # Preallocate buffers
        self._ainv_r: GridField = np.zeros(func.state_shape, dtype=np.float64)
        self._grid_tmp: GridField = np.zeros_like(self._ainv_r)
        self._surf_rhs: SurfaceField = np.zeros(self._constraint_shape, dtype=np.float64)
        self._surf_tmp: SurfaceField = np.zeros_like(self._surf_rhs)
        self._sigma_tmp: SurfaceField = np.zeros_like(self._surf_rhs)

        # Per-tau caches
        self._lu_cache = TauCache()
        self._sign_cache = TauCache()
        self._symmetry_checked = TauCache()

    @staticmethod
    def _point_weights(
        weights: float | NDArray[np.floating],
        shape: tuple[int, ...],
    ) -> NDArray[np.floating]:
        w = np.asarray(weights, dtype=np.float64)
        if w.ndim == 1 and len(shape) > 1:
            w = w.reshape((-1,) + (1,) * (len(shape) - 1))
        return w

    def clear_cache(self) -> None:
        """Clear cached factorizations and per-tau diagnostics."""
        self._lu_cache.clear()
        self._sign_cache.clear()
        self._symmetry_checked.clear()

    def resolve_method(self) -> Literal["direct", "krylov"]:
        """Return the strategy used for the current multiplier count."""
        method = self.config.method
        if method == "auto":
            if self.n_constraints <= self.config.dense_threshold:
                return "direct"
            return "krylov"
        return method

    # ------------------------------------------------------------------
    # Schur complement application / assembly
    # ------------------------------------------------------------------

    def schur_apply(
        self,
        tau: float,
        sigma: NDArray[np.floating],
        out: NDArray[np.floating] | None = None,
    ) -> NDArray[np.floating]:
        """
        Apply S = B^T exp(tau L) B to a multiplier vector.

        Args:
            tau: Exponential-action interval.
            sigma: Multipliers (surface field or flattened).
            out: Optional output (same layout as sigma).

        Returns:
            S @ sigma in the layout of sigma.
        """
        sig = np.asarray(sigma, dtype=np.float64).reshape(self._constraint_shape)
        self.func.eval_constraint_force(self._grid_tmp, sig)
        self.func.linear_op.exp_action(tau, self._grid_tmp, out=self._grid_tmp)
        self.func.eval_constraint_op(self._surf_tmp, self._grid_tmp)
        result = self._surf_tmp.reshape(np.shape(sigma))
        if out is None:
            return result.copy()
        np.copyto(out, result)
        return out

    def assemble_schur(self, tau: float) -> NDArray[np.floating]:
        """
        Assemble S = B^T exp(tau L) B as a dense matrix.

        The regularized unit multipliers are propagated in a single batched
        exponential action.

        Args:
            tau: Exponential-action interval.

        Returns:
            Dense (n, n) Schur complement.
        """
        n = self.n_constraints
        lin = self.func.linear_op
        columns = np.empty((lin.size, n), dtype=np.float64)
        unit = np.zeros(n, dtype=np.float64)
        for k in range(n):
            unit[k] = 1.0
            self.func.eval_constraint_force(
                self._grid_tmp, unit.reshape(self._constraint_shape)
            )
            columns[:, k] = self._grid_tmp.reshape(-1)
            unit[k] = 0.0

        propagated = lin.exp_action_columns(tau, columns)

        schur = np.empty((n, n), dtype=np.float64)
        for k in range(n):
            self.func.eval_constraint_op(
                self._surf_tmp, propagated[:, k].reshape(self.func.state_shape)
            )
            schur[:, k] = self._surf_tmp.reshape(-1)
        return schur

    def schur_symmetry_error(self, tau: float, *, seed: int = 0) -> float:
        """
        Sampled symmetry defect of S under the surface-weighted inner product.

        Args:
            tau: Exponential-action interval.
            seed: Seed for the random probes.

        Returns:
            |<s1, S s2>_W - <S s1, s2>_W| relative to their magnitude.
        """
        if self.n_constraints == 0:
            return 0.0
        rng = np.random.default_rng(seed)
        s1 = rng.standard_normal(self.n_constraints)
        s2 = rng.standard_normal(self.n_constraints)
        w = self._weights
        a = float(np.sum(w * s1 * self.schur_apply(tau, s2)))
        b = float(np.sum(w * self.schur_apply(tau, s1) * s2))
        scale = max(abs(a), abs(b), np.finfo(np.float64).tiny)
        return abs(a - b) / scale

    def _maybe_check_symmetry(self, tau: float) -> None:
        if not self.config.check_symmetry or tau in self._symmetry_checked:
            return
        err = self.schur_symmetry_error(tau)
        if err > self.config.symmetry_rtol:
            raise ConfigurationError(
                _SYMMETRY_ERROR.format(tau=tau, err=err, rtol=self.config.symmetry_rtol)
            )
        self._symmetry_checked.put(tau, True)

    # ------------------------------------------------------------------
    # Direct path
    # ------------------------------------------------------------------

    def _factor(self, tau: float) -> tuple[NDArray[np.floating], NDArray[np.integer]]:
        """
        Return the cached LU factorization of S for tau, building it if needed.

        Args:
            tau: Exponential-action interval.

        Raises:
            SingularSystemError: If S is non-finite or singular.

        Returns:
            (lu, piv) as returned by scipy.linalg.lu_factor.
        """
        cached = self._lu_cache.get(tau)
        if cached is not None:
            return cached

        schur = self.assemble_schur(tau)
        if not np.all(np.isfinite(schur)):
            raise SingularSystemError(_NON_FINITE_SCHUR_ERROR.format(tau=tau))

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", LinAlgWarning)
            lu, piv = lu_factor(schur, check_finite=False)

        pivots = np.abs(np.diag(lu))
        pivot_max = float(pivots.max())
        ratio = float(pivots.min()) / pivot_max if pivot_max > 0.0 else 0.0
        if ratio <= self.n_constraints * np.finfo(np.float64).eps:
            raise SingularSystemError(_SINGULAR_SCHUR_ERROR.format(tau=tau, ratio=ratio))

        logger.debug(
            "factorized Schur complement: n=%d tau=%.6g pivot_ratio=%.3e",
            self.n_constraints,
            tau,
            ratio,
        )
        factors = (cast("NDArray[np.floating]", lu), cast("NDArray[np.integer]", piv))
        self._lu_cache.put(tau, factors)
        return factors

    def _solve_direct(self, tau: float, rhs: NDArray[np.floating]) -> SolveInfo:
        lu, piv = self._factor(tau)
        sigma = lu_solve((lu, piv), rhs.reshape(-1), check_finite=False)
        np.copyto(self._sigma_tmp, sigma.reshape(self._constraint_shape))
        return SolveInfo(method="direct", iterations=0, residual=0.0)

    # ------------------------------------------------------------------
    # Krylov path
    # ------------------------------------------------------------------

    def _schur_sign(self, tau: float) -> float:
        """Sign of the Rayleigh quotient of W S (S is semi-definite)."""
        cached = self._sign_cache.get(tau)
        if cached is not None:
            return cached
        probe = np.ones(self.n_constraints, dtype=np.float64)
        q = float(np.sum(self._weights * probe * self.schur_apply(tau, probe)))
        if not np.isfinite(q) or q == 0.0:
            raise SingularSystemError(_INDEFINITE_SCHUR_ERROR.format(tau=tau))
        sign = 1.0 if q > 0.0 else -1.0
        self._sign_cache.put(tau, sign)
        return sign

    def _solve_krylov(
        self, tau: float, rhs: NDArray[np.floating], *, strict: bool
    ) -> SolveInfo:
        n = self.n_constraints
        w = self._weights
        sign = self._schur_sign(tau)

        def matvec(v: NDArray[np.floating]) -> NDArray[np.floating]:
            return sign * w * self.schur_apply(tau, np.ravel(v))

        operator = LinearOperator(shape=(n, n), dtype=np.float64, matvec=matvec)
        b = sign * w * rhs.reshape(-1)
        b_norm = float(np.linalg.norm(b))

        iterations = 0

        def _count(_xk: NDArray[np.floating]) -> None:
            nonlocal iterations
            iterations += 1

        sigma, info = cg(
            operator,
            b,
            rtol=self.config.rtol,
            atol=self.config.atol,
            maxiter=self.config.maxiter,
            callback=_count,
        )
        if info < 0:
            raise SingularSystemError(_KRYLOV_BREAKDOWN_ERROR.format(info=info, tau=tau))

        residual_vec = b - matvec(sigma)
        residual = float(np.linalg.norm(residual_vec)) / b_norm if b_norm > 0.0 else 0.0
        if not np.isfinite(residual):
            raise SingularSystemError(_KRYLOV_BREAKDOWN_ERROR.format(info=info, tau=tau))
        if info > 0:
            err = SolverConvergenceError(
                residual=residual, iterations=iterations, tau=tau
            )
            if strict:
                raise err
            warnings.warn(str(err), ConvergenceWarning, stacklevel=3)

        logger.debug(
            "krylov Schur solve: n=%d tau=%.6g iterations=%d residual=%.3e",
            n,
            tau,
            iterations,
            residual,
        )
        np.copyto(self._sigma_tmp, np.asarray(sigma).reshape(self._constraint_shape))
        return SolveInfo(method="krylov", iterations=iterations, residual=residual)

    # ------------------------------------------------------------------
    # Public solve
    # ------------------------------------------------------------------

    def solve(
        self,
        x_out: GridField,
        sigma_out: SurfaceField,
        r_state: GridField,
        r_constraint: SurfaceField,
        tau: float,
        *,
        strict: bool = True,
    ) -> SolveInfo:
        """Solve one saddle-point system with A^{-1} = exp(tau L).

        Outputs are written only after the multiplier solve succeeded, so a
        failing solve leaves x_out and sigma_out untouched.

        Args:
            x_out: Grid field receiving x (written in-place).
            sigma_out: Surface field receiving sigma (written in-place).
            r_state: State right-hand side.
            r_constraint: Constraint right-hand side.
            tau: Exponential-action interval (A^{-1} = exp(tau L)).
            strict: If False, an exhausted Krylov budget emits a
                ConvergenceWarning and the last iterate is used.

        Raises:
            SingularSystemError: If S is singular or the solve breaks down.
            SolverConvergenceError: If the Krylov budget is exhausted (strict).
            NumericalDivergenceError: If an operator produced non-finite values.

        Returns:
            SolveInfo diagnostics.
        """
        tau = float(tau)
        lin = self.func.linear_op
        lin.exp_action(tau, r_state, out=self._ainv_r)

        if self.n_constraints == 0:
            np.copyto(x_out, self._ainv_r)
            return SolveInfo(method="unconstrained", iterations=0, residual=0.0)

        self._maybe_check_symmetry(tau)

        self.func.eval_constraint_op(self._surf_rhs, self._ainv_r)
        self._surf_rhs -= r_constraint

        if self.resolve_method() == "direct":
            info = self._solve_direct(tau, self._surf_rhs)
        else:
            info = self._solve_krylov(tau, self._surf_rhs, strict=strict)

        if not np.all(np.isfinite(self._sigma_tmp)):
            raise SingularSystemError(_NON_FINITE_MULTIPLIER_ERROR.format(tau=tau))

        # x = exp(tau L) (r_state - B sigma)
        self.func.eval_constraint_force(self._grid_tmp, self._sigma_tmp)
        np.subtract(r_state, self._grid_tmp, out=self._grid_tmp)
        lin.exp_action(tau, self._grid_tmp, out=x_out)
        np.copyto(sigma_out, self._sigma_tmp)
        return info
