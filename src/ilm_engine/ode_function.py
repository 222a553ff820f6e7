# src/ilm_engine/ode_function.py
"""Constrained ODE function: operator bundle of a constrained ODE system.

A constrained ODE system couples a grid state u and surface multipliers f:

    du/dt = L u + state_rhs(u, t) + constraint_force(f)
    constraint_op(u) = constraint_rhs(t)

where L is a GridLinearOperator treated by its matrix exponential. The four
callbacks follow a caller-allocates / callee-overwrites contract; each writes
its result into ``out``, must fully overwrite it (no accumulation is assumed),
and returns ``out``:

    state_rhs(out, state, t) -> out
    constraint_rhs(out, t) -> out
    constraint_force(out, multiplier) -> out
    constraint_op(out, state) -> out

Problem context (physical parameters, boundary data, scratch fields) is bound
into the callbacks by closures or bound methods.

Adjoint contract:
    constraint_op must be the adjoint of constraint_force, up to a sign, under
    the weighted inner products given by grid_weight and surface_weights. The
    saddle-point solver relies on it for a symmetric Schur complement. The
    contract is not verified on every call; adjoint_mismatch() and the
    check_adjoint construction flag provide a sampled runtime check.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from .errors import ConfigurationError, raise_non_finite, raise_shape_mismatch
from .model_core import (
    CoupledState,
    FloatArray,
    GridField,
    SurfaceField,
    grid_inner,
    surface_inner,
)

if TYPE_CHECKING:
    from .matrix_ops import GridLinearOperator

# =============================================================================
# Type aliases
# =============================================================================

StateRHSFunction = Callable[[GridField, GridField, float], GridField]
ConstraintRHSFunction = Callable[[SurfaceField, float], SurfaceField]
ConstraintForceFunction = Callable[[GridField, SurfaceField], GridField]
ConstraintOpFunction = Callable[[SurfaceField, GridField], SurfaceField]

# =============================================================================
# Errors / messages
# =============================================================================

_NOT_CALLABLE_ERROR = "{name} must be callable; got {typ}"
_LINEAR_OP_GRID_ERROR = (
    "linear operator acts on grid shape {op_shape}, but the prototype state has "
    "shape {state_shape}"
)
_ADJOINT_ERROR = (
    "constraint_op is not the adjoint of constraint_force: relative mismatch "
    "{err:.3e} exceeds adjoint_rtol={rtol:.1e} "
    "(<op(x), s>={op_inner:.6e}, <x, force(s)>={force_inner:.6e})"
)
_SURFACE_WEIGHTS_ERROR = (
    "surface_weights must be a scalar or have one entry per surface point "
    "({n}); got shape {shape}"
)


@dataclass(frozen=True, slots=True)
class AdjointReport:
    """Result of a sampled adjoint-consistency probe.

    Attributes:
        op_inner: <constraint_op(x), sigma>_surface.
        force_inner: <x, constraint_force(sigma)>_grid.
        sign: Best-fitting sign s with op_inner ~= s * force_inner.
        relative_error: |op_inner - s * force_inner| / scale.
    """

    op_inner: float
    force_inner: float
    sign: int
    relative_error: float


@dataclass(frozen=True, slots=True, eq=False)
class ConstrainedODEFunction:
    """Bundle of the four constrained-system callbacks and the linear operator.

    Construction probes every callback once on zero inputs and compares the
    output shapes with the prototype; the object is read-only afterwards.

    Attributes:
        state_rhs: Explicit (non-stiff) contribution to du/dt.
        constraint_rhs: Right-hand side of the constraint equation.
        constraint_force: Grid contribution of the multipliers to du/dt.
        constraint_op: Surface sampling of the grid state.
        linear_op: Linear grid operator treated by its exponential.
        prototype: Solution prototype (shapes only; values unused).
        grid_weight: Grid inner-product weight (scalar or per-node).
        surface_weights: Surface inner-product weights (scalar or per-point).
        check_adjoint: If True, probe the adjoint contract at construction.
        adjoint_rtol: Relative tolerance of the adjoint probe.
        t0: Time at which the construction probes evaluate the callbacks.
    """

    state_rhs: StateRHSFunction
    constraint_rhs: ConstraintRHSFunction
    constraint_force: ConstraintForceFunction
    constraint_op: ConstraintOpFunction
    linear_op: GridLinearOperator
    prototype: CoupledState
    grid_weight: float | FloatArray = 1.0
    surface_weights: float | FloatArray = 1.0
    check_adjoint: bool = False
    adjoint_rtol: float = 1e-10
    t0: float = 0.0
    _scratch: CoupledState = field(init=False, repr=False)

    def __post_init__(self) -> None:
        for name in ("state_rhs", "constraint_rhs", "constraint_force", "constraint_op"):
            fn = getattr(self, name)
            if not callable(fn):
                raise ConfigurationError(
                    _NOT_CALLABLE_ERROR.format(name=name, typ=type(fn))
                )

        proto = self.prototype.zeros_like()
        object.__setattr__(self, "prototype", proto)
        object.__setattr__(self, "_scratch", proto.zeros_like())

        if tuple(self.linear_op.grid_shape) != proto.state.shape:
            raise ConfigurationError(
                _LINEAR_OP_GRID_ERROR.format(
                    op_shape=self.linear_op.grid_shape,
                    state_shape=proto.state.shape,
                )
            )

        weights = np.asarray(self.surface_weights, dtype=np.float64)
        if weights.ndim > 0 and weights.shape != (proto.constraint.shape[0],):
            raise ConfigurationError(
                _SURFACE_WEIGHTS_ERROR.format(
                    n=proto.constraint.shape[0], shape=weights.shape
                )
            )

        self._validate_shapes()
        if self.check_adjoint:
            report = self.adjoint_mismatch()
            if report.relative_error > self.adjoint_rtol:
                raise ConfigurationError(
                    _ADJOINT_ERROR.format(
                        err=report.relative_error,
                        rtol=self.adjoint_rtol,
                        op_inner=report.op_inner,
                        force_inner=report.force_inner,
                    )
                )

    # ------------------------------------------------------------------
    # Construction-time validation
    # ------------------------------------------------------------------

    def _probe(self, name: str, result: object, expected: tuple[int, ...]) -> None:
        shape = np.shape(result)
        if shape != expected:
            raise_shape_mismatch(name=name, expected=expected, got=shape)

    def _validate_shapes(self) -> None:
        """Run every callback once on zero inputs and check output shapes.

        Raises:
            ConfigurationError: On any shape mismatch with the prototype.
        """
        proto = self.prototype
        grid_shape = proto.state.shape
        surf_shape = proto.constraint.shape
        out_grid = np.zeros(grid_shape, dtype=np.float64)
        out_surf = np.zeros(surf_shape, dtype=np.float64)

        self._probe(
            "state_rhs",
            self.state_rhs(out_grid, proto.state.copy(), float(self.t0)),
            grid_shape,
        )
        self._probe(
            "constraint_rhs",
            self.constraint_rhs(out_surf, float(self.t0)),
            surf_shape,
        )
        self._probe(
            "constraint_force",
            self.constraint_force(out_grid, proto.constraint.copy()),
            grid_shape,
        )
        self._probe(
            "constraint_op",
            self.constraint_op(out_surf, proto.state.copy()),
            surf_shape,
        )

    # ------------------------------------------------------------------
    # Shapes / allocation
    # ------------------------------------------------------------------

    @property
    def state_shape(self) -> tuple[int, ...]:
        """Grid field shape."""
        return tuple(self.prototype.state.shape)

    @property
    def constraint_shape(self) -> tuple[int, ...]:
        """Surface field shape."""
        return tuple(self.prototype.constraint.shape)

    @property
    def n_constraints(self) -> int:
        """Number of scalar constraint unknowns."""
        return int(self.prototype.constraint.size)

    def zeros(self) -> CoupledState:
        """Allocate a zero CoupledState shaped like the prototype."""
        return self.prototype.zeros_like()

    # ------------------------------------------------------------------
    # Checked evaluation (finite-output enforcement)
    # ------------------------------------------------------------------

    @staticmethod
    def _check_finite(out: FloatArray, name: str, t: float | None = None) -> FloatArray:
        if not np.all(np.isfinite(out)):
            raise_non_finite(source=name, t=t)
        return out

    def eval_state_rhs(self, out: GridField, state: GridField, t: float) -> GridField:
        """
        Evaluate state_rhs into out and check the result.

        Args:
            out: Grid field, overwritten.
            state: Grid state.
            t: Time.

        Returns:
            out.
        """
        self.state_rhs(out, state, float(t))
        return self._check_finite(out, "state_rhs", t)

    def eval_constraint_rhs(self, out: SurfaceField, t: float) -> SurfaceField:
        """Evaluate constraint_rhs into out and check the result."""
        self.constraint_rhs(out, float(t))
        return self._check_finite(out, "constraint_rhs", t)

    def eval_constraint_force(
        self, out: GridField, multiplier: SurfaceField
    ) -> GridField:
        """Evaluate constraint_force into out and check the result."""
        self.constraint_force(out, multiplier)
        return self._check_finite(out, "constraint_force")

    def eval_constraint_op(self, out: SurfaceField, state: GridField) -> SurfaceField:
        """Evaluate constraint_op into out and check the result."""
        self.constraint_op(out, state)
        return self._check_finite(out, "constraint_op")

    # ------------------------------------------------------------------
    # Inner products / adjoint diagnostics
    # ------------------------------------------------------------------

    def grid_inner(self, x: GridField, y: GridField) -> float:
        """Grid inner product under grid_weight."""
        return grid_inner(x, y, self.grid_weight)

    def surface_inner(self, a: SurfaceField, b: SurfaceField) -> float:
        """Surface inner product under surface_weights."""
        return surface_inner(a, b, self.surface_weights)

    def adjoint_mismatch(
        self,
        x: GridField | None = None,
        sigma: SurfaceField | None = None,
        *,
        seed: int = 0,
    ) -> AdjointReport:
        """
        Compare <constraint_op(x), sigma> with <x, constraint_force(sigma)>.

        Random probes are drawn when x or sigma is not given.

        Args:
            x: Grid field probe.
            sigma: Surface field probe.
            seed: Seed for random probes.

        Returns:
            AdjointReport with the best-fitting sign and relative mismatch.
        """
        rng = np.random.default_rng(seed)
        if x is None:
            x = rng.standard_normal(self.state_shape)
        if sigma is None:
            sigma = rng.standard_normal(self.constraint_shape)

        op_out = self._scratch.constraint
        force_out = self._scratch.state
        self.constraint_op(op_out, np.asarray(x, dtype=np.float64))
        op_inner = self.surface_inner(op_out, sigma)
        self.constraint_force(force_out, np.asarray(sigma, dtype=np.float64))
        force_inner = self.grid_inner(x, force_out)

        scale = max(abs(op_inner), abs(force_inner), np.finfo(np.float64).tiny)
        err_plus = abs(op_inner - force_inner) / scale
        err_minus = abs(op_inner + force_inner) / scale
        sign = 1 if err_plus <= err_minus else -1
        return AdjointReport(
            op_inner=op_inner,
            force_inner=force_inner,
            sign=sign,
            relative_error=float(min(err_plus, err_minus)),
        )
