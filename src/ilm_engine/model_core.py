# src/ilm_engine/model_core.py
"""Coupled solution vector and history storage for constrained ODE systems.

A constrained ODE system advances a pair of fields:

- the *state*: a Grid Field, a float ndarray shaped like the Cartesian grid
  (``(ny, nx)`` for scalar data, ``(ny, nx, 2)`` for vector data), and
- the *constraint*: a Surface Field, a float ndarray of samples at the surface
  points (``(n_points,)`` or ``(n_points, 2)``), holding the Lagrange
  multipliers.

CoupledState bundles the two. Its arrays are allocated once and are only ever
overwritten in place; every helper in this module honors that contract so that
solvers can hold long-lived references to the sub-arrays.

The module intentionally does not build operators or right-hand sides; it only
manages field storage, field algebra and optional snapshot history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import numpy.typing as npt

from .errors import raise_shape_mismatch

# Typing helpers ------------------------------------------------------------

FloatArray = npt.NDArray[np.floating[Any]]
GridField = FloatArray
SurfaceField = FloatArray

# Error / message constants -------------------------------------------------

_COPY_SHAPE_ERROR = "CoupledState.copy_from"


def grid_inner(
    x: GridField,
    y: GridField,
    weight: float | FloatArray = 1.0,
) -> float:
    """Weighted inner product of two Grid Fields.

    Args:
        x: First grid field.
        y: Second grid field, same shape as x.
        weight: Scalar cell measure (e.g. cell area) or per-node weights
            broadcastable to x.

    Returns:
        sum(weight * x * y) as a float.
    """
    return float(np.sum(np.asarray(weight) * np.asarray(x) * np.asarray(y)))


def surface_inner(
    a: SurfaceField,
    b: SurfaceField,
    weights: float | FloatArray = 1.0,
) -> float:
    """Weighted inner product of two Surface Fields.

    Vector-valued surface fields of shape (n_points, k) are weighted per point.

    Args:
        a: First surface field.
        b: Second surface field, same shape as a.
        weights: Scalar or per-point weights (e.g. arc lengths).

    Returns:
        sum(weights * a * b) as a float.
    """
    a_arr = np.asarray(a)
    w = np.asarray(weights, dtype=float)
    if w.ndim == 1 and a_arr.ndim > 1:
        w = w.reshape((-1,) + (1,) * (a_arr.ndim - 1))
    return float(np.sum(w * a_arr * np.asarray(b)))


@dataclass(slots=True, eq=False)
class CoupledState:
    """Solution vector of a constrained ODE system.

    Attributes:
        state: Grid Field (e.g. grid temperature).
        constraint: Surface Field (e.g. surface Lagrange multipliers).
    """

    state: GridField
    constraint: SurfaceField

    def __post_init__(self) -> None:
        self.state = np.asarray(self.state, dtype=np.float64)
        self.constraint = np.asarray(self.constraint, dtype=np.float64)

    @classmethod
    def zeros(
        cls,
        state_shape: tuple[int, ...],
        constraint_shape: tuple[int, ...],
    ) -> CoupledState:
        """Allocate a zero-initialized coupled state.

        Args:
            state_shape: Shape of the grid field.
            constraint_shape: Shape of the surface field.

        Returns:
            New CoupledState with zeroed arrays.
        """
        return cls(
            state=np.zeros(state_shape, dtype=np.float64),
            constraint=np.zeros(constraint_shape, dtype=np.float64),
        )

    @property
    def shapes(self) -> tuple[tuple[int, ...], tuple[int, ...]]:
        """Return (state shape, constraint shape)."""
        return self.state.shape, self.constraint.shape

    def zeros_like(self) -> CoupledState:
        """Return a new zeroed CoupledState with the same shapes."""
        return CoupledState.zeros(self.state.shape, self.constraint.shape)

    def copy(self) -> CoupledState:
        """Return a deep copy of this state."""
        return CoupledState(state=self.state.copy(), constraint=self.constraint.copy())

    def validate_like(self, other: CoupledState, *, name: str = "CoupledState") -> None:
        """Validate that other has the same shapes as this state.

        Args:
            other: State to compare.
            name: Name used in the error message.
        """
        if other.state.shape != self.state.shape:
            raise_shape_mismatch(
                name=f"{name}.state",
                expected=self.state.shape,
                got=other.state.shape,
            )
        if other.constraint.shape != self.constraint.shape:
            raise_shape_mismatch(
                name=f"{name}.constraint",
                expected=self.constraint.shape,
                got=other.constraint.shape,
            )

    def copy_from(self, other: CoupledState) -> None:
        """Overwrite this state with the values of other (no reallocation).

        Args:
            other: Source state with identical shapes.
        """
        self.validate_like(other, name=_COPY_SHAPE_ERROR)
        np.copyto(self.state, other.state)
        np.copyto(self.constraint, other.constraint)

    def is_finite(self) -> bool:
        """Return True if every entry of both sub-fields is finite."""
        return bool(np.all(np.isfinite(self.state))) and bool(
            np.all(np.isfinite(self.constraint))
        )


@dataclass(slots=True)
class SolutionHistory:
    """Snapshots of committed integrator states.

    Attributes:
        times: Committed times, in order.
        states: Copies of the grid field at each time.
        constraints: Copies of the surface field at each time.
    """

    times: list[float] = field(default_factory=list)
    states: list[GridField] = field(default_factory=list)
    constraints: list[SurfaceField] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.times)

    def append(self, t: float, u: CoupledState) -> None:
        """Store a copy of u at time t."""
        self.times.append(float(t))
        self.states.append(u.state.copy())
        self.constraints.append(u.constraint.copy())

    def as_array(self) -> FloatArray:
        """Stack stored grid fields into an array of shape (n_snapshots, *shape)."""
        return np.stack(self.states) if self.states else np.empty((0,))
