"""
Sparse grid operators and matrix-exponential actions.

This module provides the linear-algebra layer used by the constrained
integrator:

- Construction of second-order finite-difference Laplacians (1D, and 2D via
  Kronecker sums) and central-difference divergence operators.
- GridLinearOperator: a grid-to-grid linear operator A = scale * M together
  with the action of its matrix exponential exp(tau * A) on grid fields.

Design notes:
    * CPU-first: dense paths rely on NumPy/SciPy LAPACK; sparse paths rely on
      SciPy sparse kernels and scipy.sparse.linalg.expm_multiply.
    * Backend-friendly surface: public APIs operate on plain ndarrays or CSR
      matrices and accept/return Grid Fields in their natural grid shape.
    * Cache semantics: dense exponentials are cached per tau on the operator
      instance in a TauCache, which keeps the most recently used intervals
      and evicts the oldest. Call GridLinearOperator.clear_cache() to drop
      every entry at once.

Exponential-action accuracy:
    The sparse path uses the truncated-Taylor algorithm of Al-Mohy and Higham
    (expm_multiply), which targets double-precision accuracy; the dense path
    uses Pade scaling-and-squaring (scipy.linalg.expm). Either way the
    exponential error is far below the truncation error of the time
    integrators built on top of it.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, TypeAlias, cast

import numpy as np
from numpy.typing import DTypeLike, NDArray
from scipy.linalg import expm
from scipy.sparse import csr_matrix, diags, identity, issparse, kron
from scipy.sparse.linalg import expm_multiply

from .errors import raise_non_finite

if TYPE_CHECKING:
    from .geometry import PhysicalGrid

logger = logging.getLogger(__name__)


# =============================================================================
# Public operator types (backend-friendly)
# =============================================================================

DenseOperator: TypeAlias = NDArray[np.floating]
SparseOperator: TypeAlias = csr_matrix
Operator: TypeAlias = DenseOperator | SparseOperator


# === Internal autodispatch threshold (tuned empirically) ===
# Below this size, a cached dense exponential is faster than repeated
# expm_multiply calls; above it, the sparse action is preferred.
_DISPATCH_THRESHOLD = 350


# =============================================================================
# Error message constants
# =============================================================================

_UNKNOWN_BC_ERROR = "Unknown bc: {bc}"
_KRON_EMPTY_ERROR = "ops must contain at least one operator"
_KRON_INCOMPATIBLE_ERROR = "All operators must be square; got shapes: {shapes}"
_OPERATOR_SQUARE_ERROR = "Operator must be square; got shape {shape}"
_OPERATOR_GRID_ERROR = (
    "Operator size {size} does not match grid shape {grid_shape} "
    "(expected {expected} unknowns)"
)
_FIELD_SHAPE_ERROR = "Field shape {actual} does not match grid shape {expected}"
_TAU_ERROR = "tau must be a finite float; got {tau}"
_SCALE_ERROR = "scale must be a finite float; got {scale}"
_GRID_SHAPE_ERROR = "grid shape must be 2D (ny, nx); got {shape}"
_CACHE_SIZE_ERROR = "maxsize must be at least 1; got {maxsize}"


# =============================================================================
# Per-interval cache
# =============================================================================

_TAU_CACHE_SIZE = 8


class TauCache:
    """Small least-recently-used cache keyed by an exponential interval tau.

    The integrator only reuses the stage intervals of its nominal step; a
    shortened final step (landing on an output time) adds intervals that are
    rarely seen again. Bounding the cache keeps those from accumulating.

    Attributes:
        maxsize: Maximum number of stored intervals.
    """

    def __init__(self, maxsize: int = _TAU_CACHE_SIZE) -> None:
        """Initialize TauCache.

        Args:
            maxsize: Maximum number of stored intervals (>= 1).

        Raises:
            ValueError: If maxsize is smaller than 1.
        """
        if maxsize < 1:
            raise ValueError(_CACHE_SIZE_ERROR.format(maxsize=maxsize))
        self.maxsize = int(maxsize)
        self._data: OrderedDict[float, Any] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, tau: object) -> bool:
        return tau in self._data

    def __iter__(self) -> Iterator[float]:
        return iter(self._data)

    def get(self, tau: float) -> Any:
        """Return the entry for tau (marking it recently used), or None."""
        value = self._data.get(tau)
        if value is not None:
            self._data.move_to_end(tau)
        return value

    def put(self, tau: float, value: Any) -> None:
        """Store value for tau, evicting the least recently used entry."""
        self._data[tau] = value
        self._data.move_to_end(tau)
        while len(self._data) > self.maxsize:
            evicted, _ = self._data.popitem(last=False)
            logger.debug("evicted cached entry for tau=%.6g", evicted)

    def clear(self) -> None:
        """Drop every entry."""
        self._data.clear()


# =============================================================================
# Finite-difference operators
# =============================================================================


def build_laplacian_tridiag(
    n: int,
    dx: float,
    coeff: float = 1.0,
    dtype: DTypeLike = np.float64,
    bc: str = "dirichlet",
) -> csr_matrix:
    """Build a Laplacian tridiagonal matrix for a given boundary condition.

    The resulting operator corresponds to `coeff * Δ_h`, where `Δ_h` is the
    standard second-order central-difference Laplacian on n interior nodes.

    Args:
        n: Number of grid points.
        dx: Grid spacing.
        coeff: Scaling coefficient (e.g. a diffusivity).
        dtype: Floating dtype (e.g. np.float64).
        bc: Boundary condition; "dirichlet" (homogeneous values just outside
            the node range) or "neumann" (zero flux at the end nodes).

    Raises:
        ValueError: If an unknown boundary condition is provided.

    Returns:
        Sparse CSR matrix representing the Laplacian operator.
    """
    dtype_obj = np.dtype(dtype)
    factor = coeff / dx**2

    main_diag = -2.0 * np.ones(n, dtype=dtype_obj)
    off_diag = np.ones(n - 1, dtype=dtype_obj)

    if bc == "neumann":
        main_diag[0] = -1.0
        main_diag[-1] = -1.0
    elif bc != "dirichlet":
        msg = _UNKNOWN_BC_ERROR.format(bc=bc)
        raise ValueError(msg)

    laplacian = diags(
        [off_diag, main_diag, off_diag],
        [-1, 0, 1],
        shape=(n, n),
        dtype=dtype_obj,
    )

    scaled = laplacian * factor
    return cast("csr_matrix", scaled.tocsr())


def kron_prod(a: Operator, b: Operator) -> Operator:
    """
    Compute the Kronecker product of two operators.

    Args:
        a: First operator.
        b: Second operator.

    Returns:
        The Kronecker product operator.
    """
    if issparse(a) or issparse(b):
        a_csr = a if issparse(a) else csr_matrix(np.asarray(a))
        b_csr = b if issparse(b) else csr_matrix(np.asarray(b))
        return kron(a_csr, b_csr, format="csr")
    return cast("DenseOperator", np.kron(np.asarray(a), np.asarray(b)))


def kron_sum(ops: list[Operator]) -> Operator:
    """
    Compute a Kronecker sum of square operators.

    The first operator acts along the slowest-varying (leading) axis, matching
    C-order flattening of an ndarray.

    Args:
        ops: List of 2D square operators.

    Raises:
        ValueError: If ops is empty or if operators are not square.

    Returns:
        The Kronecker sum operator.
    """
    if not ops:
        raise ValueError(_KRON_EMPTY_ERROR)

    shapes = [
        tuple(np.asarray(op).shape) if not issparse(op) else op.shape for op in ops
    ]
    if any(s[0] != s[1] for s in shapes):
        raise ValueError(_KRON_INCOMPATIBLE_ERROR.format(shapes=shapes))

    any_sparse = any(issparse(op) for op in ops)
    sizes = [s[0] for s in shapes]
    dtype_obj = np.result_type(*[
        (op.dtype if issparse(op) else np.asarray(op).dtype) for op in ops
    ])

    def _eye(n: int) -> Operator:
        if any_sparse:
            return identity(n, format="csr", dtype=dtype_obj)
        return cast("DenseOperator", np.eye(n, dtype=dtype_obj))

    total: Operator | None = None
    n_ops = len(ops)

    for i, op_i in enumerate(ops):
        term: Operator = op_i
        for j in range(i - 1, -1, -1):
            term = kron_prod(_eye(sizes[j]), term)
        for j in range(i + 1, n_ops):
            term = kron_prod(term, _eye(sizes[j]))
        total = term if total is None else cast("Operator", total + term)

    if total is None:
        raise ValueError(_KRON_EMPTY_ERROR)
    return total


def _check_grid_shape(grid_shape: tuple[int, ...]) -> tuple[int, int]:
    if len(grid_shape) != 2:
        raise ValueError(_GRID_SHAPE_ERROR.format(shape=grid_shape))
    return int(grid_shape[0]), int(grid_shape[1])


def build_grid_laplacian(
    grid_shape: tuple[int, ...],
    dx: float,
    coeff: float = 1.0,
    *,
    bc: str = "dirichlet",
) -> csr_matrix:
    """Build the 5-point Laplacian on a (ny, nx) node grid.

    Args:
        grid_shape: Grid shape (ny, nx).
        dx: Uniform grid spacing.
        coeff: Scaling coefficient.
        bc: Boundary condition passed to build_laplacian_tridiag.

    Returns:
        CSR matrix of shape (ny*nx, ny*nx) acting on C-order flattened fields.
    """
    ny, nx = _check_grid_shape(grid_shape)
    lap_y = build_laplacian_tridiag(ny, dx, coeff, bc=bc)
    lap_x = build_laplacian_tridiag(nx, dx, coeff, bc=bc)
    return cast("csr_matrix", csr_matrix(kron_sum([lap_y, lap_x])))


def _central_difference_1d(n: int, dx: float) -> csr_matrix:
    off = np.full(n - 1, 0.5 / dx)
    return cast(
        "csr_matrix",
        diags([-off, off], [-1, 1], shape=(n, n), dtype=np.float64).tocsr(),
    )


def build_divergence_operators(
    grid_shape: tuple[int, ...],
    dx: float,
) -> tuple[csr_matrix, csr_matrix]:
    """Build central-difference derivative operators (Dx, Dy) on a node grid.

    The divergence of a vector grid field v of shape (ny, nx, 2) is
    ``Dx @ v[..., 0].ravel() + Dy @ v[..., 1].ravel()``. Values outside the
    node range are taken as zero, consistent with the Dirichlet Laplacian.

    Args:
        grid_shape: Grid shape (ny, nx).
        dx: Uniform grid spacing.

    Returns:
        Tuple (Dx, Dy) of CSR matrices of shape (ny*nx, ny*nx).
    """
    ny, nx = _check_grid_shape(grid_shape)
    d_x = kron(identity(ny, format="csr"), _central_difference_1d(nx, dx), "csr")
    d_y = kron(_central_difference_1d(ny, dx), identity(nx, format="csr"), "csr")
    return cast("csr_matrix", d_x), cast("csr_matrix", d_y)


# =============================================================================
# Grid linear operator with exponential action
# =============================================================================


class GridLinearOperator:
    """Linear grid-to-grid operator A = scale * M with exponential action.

    Attributes:
        matrix: Unscaled operator M (CSR or dense), acting on flattened fields.
        grid_shape: Shape of the Grid Fields the operator acts on.
        scale: Scaling parameter (e.g. a diffusivity).
    """

    def __init__(
        self,
        matrix: Operator,
        grid_shape: tuple[int, ...],
        *,
        scale: float = 1.0,
        prefer_dense: bool | None = None,
    ) -> None:
        """Initialize GridLinearOperator.

        Args:
            matrix: Square operator of size prod(grid_shape).
            grid_shape: Shape of the Grid Fields (scalar fields only).
            scale: Scaling parameter multiplying the matrix.
            prefer_dense: If True, always use cached dense exponentials; if
                False, always use expm_multiply; if None, autodispatch on size.

        Raises:
            ValueError: If the operator is not square, does not match the grid
                shape, or scale is not finite.
        """
        shape = cast("tuple[int, int]", matrix.shape)
        if shape[0] != shape[1]:
            raise ValueError(_OPERATOR_SQUARE_ERROR.format(shape=shape))
        expected = int(np.prod(grid_shape))
        if shape[0] != expected:
            raise ValueError(
                _OPERATOR_GRID_ERROR.format(
                    size=shape[0], grid_shape=grid_shape, expected=expected
                )
            )
        if not np.isfinite(scale):
            raise ValueError(_SCALE_ERROR.format(scale=scale))

        self.matrix: Operator = matrix.tocsr() if issparse(matrix) else matrix
        self.grid_shape = tuple(int(s) for s in grid_shape)
        self.scale = float(scale)
        self.size = expected

        if prefer_dense is None:
            prefer_dense = expected < _DISPATCH_THRESHOLD
        self._use_dense = bool(prefer_dense)

        # Scaled operator in the backend form used by the exponential kernels.
        if issparse(self.matrix):
            self._scaled: Operator = cast("csr_matrix", self.matrix * self.scale)
        else:
            self._scaled = np.asarray(self.matrix, dtype=np.float64) * self.scale

        self._dense_exp_cache = TauCache()

    @property
    def uses_dense_exponential(self) -> bool:
        """Whether exponential actions use cached dense matrices."""
        return self._use_dense

    def clear_cache(self) -> None:
        """Clear cached dense exponentials."""
        self._dense_exp_cache.clear()

    def _flatten(self, field: NDArray[np.floating]) -> NDArray[np.floating]:
        arr = np.asarray(field, dtype=np.float64)
        if arr.shape != self.grid_shape:
            raise ValueError(
                _FIELD_SHAPE_ERROR.format(actual=arr.shape, expected=self.grid_shape)
            )
        return arr.reshape(-1)

    def _write(
        self,
        flat: NDArray[np.floating],
        out: NDArray[np.floating] | None,
    ) -> NDArray[np.floating]:
        result = np.asarray(flat, dtype=np.float64).reshape(self.grid_shape)
        if out is None:
            return result.copy()
        np.copyto(out, result)
        return out

    def apply(
        self,
        field: NDArray[np.floating],
        out: NDArray[np.floating] | None = None,
    ) -> NDArray[np.floating]:
        """
        Apply A = scale * M to a grid field.

        Args:
            field: Grid field of shape grid_shape.
            out: Optional output array (written in-place).

        Returns:
            A @ field in grid shape.
        """
        flat = self._flatten(field)
        return self._write(self._scaled @ flat, out)

    def _dense_exponential(self, tau: float) -> DenseOperator:
        cached = self._dense_exp_cache.get(tau)
        if cached is not None:
            return cached
        scaled = self._scaled.toarray() if issparse(self._scaled) else self._scaled
        exp_mat = np.asarray(expm(tau * np.asarray(scaled)), dtype=np.float64)
        if not np.all(np.isfinite(exp_mat)):
            raise_non_finite(source="GridLinearOperator.exp_action")
        logger.debug("cached dense exponential: n=%d tau=%.6g", self.size, tau)
        self._dense_exp_cache.put(tau, exp_mat)
        return exp_mat

    def _exp_flat(self, tau: float, flat: NDArray[np.floating]) -> NDArray[Any]:
        if not np.isfinite(tau):
            raise ValueError(_TAU_ERROR.format(tau=tau))
        if tau == 0.0:
            return np.array(flat, dtype=np.float64, copy=True)
        if self._use_dense:
            result = self._dense_exponential(float(tau)) @ flat
        else:
            result = expm_multiply(tau * self._scaled, flat)
        result = np.asarray(result, dtype=np.float64)
        if not np.all(np.isfinite(result)):
            raise_non_finite(source="GridLinearOperator.exp_action")
        return result

    def exp_action(
        self,
        tau: float,
        field: NDArray[np.floating],
        out: NDArray[np.floating] | None = None,
    ) -> NDArray[np.floating]:
        """
        Compute exp(tau * A) @ field.

        Args:
            tau: Time interval multiplying A (may be zero).
            field: Grid field of shape grid_shape.
            out: Optional output array (written in-place; may alias field).

        Raises:
            ValueError: If tau is not finite.

        Returns:
            exp(tau * A) @ field in grid shape.
        """
        flat = self._flatten(field)
        return self._write(self._exp_flat(float(tau), flat), out)

    def exp_action_columns(
        self,
        tau: float,
        columns: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """
        Apply exp(tau * A) to a batch of flattened fields.

        Args:
            tau: Time interval multiplying A.
            columns: 2D array of shape (size, k); each column a flattened field.

        Raises:
            ValueError: If the batch has the wrong leading dimension.

        Returns:
            2D array of shape (size, k).
        """
        cols = np.asarray(columns, dtype=np.float64)
        if cols.ndim != 2 or cols.shape[0] != self.size:
            raise ValueError(
                _FIELD_SHAPE_ERROR.format(actual=cols.shape, expected=(self.size, "k"))
            )
        if cols.shape[1] == 0:
            return cols.copy()
        return self._exp_flat(float(tau), cols)


def laplacian_operator(
    grid: PhysicalGrid,
    coeff: float = 1.0,
    *,
    bc: str = "dirichlet",
    prefer_dense: bool | None = None,
) -> GridLinearOperator:
    """
    Build coeff * Laplacian on a PhysicalGrid as a GridLinearOperator.

    Args:
        grid: Grid description.
        coeff: Scaling parameter (e.g. thermal diffusivity).
        bc: Boundary condition at the box edges.
        prefer_dense: Exponential backend selection (see GridLinearOperator).

    Returns:
        GridLinearOperator wrapping the unscaled Laplacian with scale=coeff.
    """
    matrix = build_grid_laplacian(grid.shape, grid.cellsize, 1.0, bc=bc)
    return GridLinearOperator(
        matrix, grid.shape, scale=coeff, prefer_dense=prefer_dense
    )
