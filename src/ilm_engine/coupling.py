# src/ilm_engine/coupling.py
"""Grid <-> surface coupling operators.

Two linear maps connect the grid and the immersed surface:

- interpolate (grid -> surface): samples a Grid Field at the surface points,
  ``E @ x``, with bilinear weights E.
- regularize (surface -> grid): spreads a Surface Field onto the grid as a
  smeared delta density, ``E^T diag(ds) s / cell_area`` (grid scaling).

With the grid inner product weighted by the cell area and the surface inner
product weighted by the arc lengths, the pair is an exact adjoint:

    <interpolate(x), s>_surface == <x, regularize(s)>_grid

which is what keeps the Schur complement of the saddle-point system symmetric.
The double-layer source ``div(regularize(values * n))`` is built from the same
regularization and a central-difference divergence.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

import numpy as np
from scipy.sparse import coo_matrix, csr_matrix

from .matrix_ops import build_divergence_operators

if TYPE_CHECKING:
    from .geometry import Circle, PhysicalGrid
    from .model_core import FloatArray

_GRID_FIELD_ERROR = "grid field shape {actual} incompatible with grid {expected}"
_SURFACE_FIELD_ERROR = "surface field shape {actual} incompatible with {n} points"
_NORMALS_ERROR = "surface_divergence expects a scalar surface field; got {shape}"


def build_interpolation_matrix(grid: PhysicalGrid, points: FloatArray) -> csr_matrix:
    """Build the bilinear interpolation matrix from grid nodes to points.

    Weights falling on nodes outside the grid (the box edges, where the data
    is homogeneous) are dropped.

    Args:
        grid: Node grid.
        points: Array of shape (n_points, 2) with (x, y) coordinates.

    Returns:
        CSR matrix of shape (n_points, grid.size).
    """
    ny, nx = grid.shape
    dx = grid.cellsize
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    n_pts = pts.shape[0]

    fx = (pts[:, 0] - grid.x[0]) / dx
    fy = (pts[:, 1] - grid.y[0]) / dx
    ix0 = np.floor(fx).astype(np.int64)
    iy0 = np.floor(fy).astype(np.int64)
    wx = fx - ix0
    wy = fy - iy0

    rows: list[np.ndarray] = []
    cols: list[np.ndarray] = []
    vals: list[np.ndarray] = []
    point_idx = np.arange(n_pts, dtype=np.int64)
    for di, dj, w in (
        (0, 0, (1.0 - wy) * (1.0 - wx)),
        (0, 1, (1.0 - wy) * wx),
        (1, 0, wy * (1.0 - wx)),
        (1, 1, wy * wx),
    ):
        iy = iy0 + di
        ix = ix0 + dj
        keep = (iy >= 0) & (iy < ny) & (ix >= 0) & (ix < nx) & (w != 0.0)
        rows.append(point_idx[keep])
        cols.append(iy[keep] * nx + ix[keep])
        vals.append(w[keep])

    mat = coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_pts, ny * nx),
    )
    return cast("csr_matrix", mat.tocsr())


@dataclass(frozen=True, slots=True, eq=False)
class CouplingOperators:
    """Regularization/interpolation pair for one grid and one surface.

    Attributes:
        grid: Grid description.
        body: Surface description (points, normals, arc lengths).
        interp: Bilinear interpolation matrix (n_points, grid.size).
        reg: Regularization matrix (grid.size, n_points).
        div_x: x-derivative operator for the divergence.
        div_y: y-derivative operator for the divergence.
    """

    grid: PhysicalGrid
    body: Circle
    interp: csr_matrix
    reg: csr_matrix
    div_x: csr_matrix
    div_y: csr_matrix

    @classmethod
    def build(cls, grid: PhysicalGrid, body: Circle) -> CouplingOperators:
        """
        Assemble the coupling operators for a grid and a body.

        Args:
            grid: Grid description.
            body: Surface description.

        Returns:
            CouplingOperators instance.
        """
        interp = build_interpolation_matrix(grid, body.points)
        weights = np.asarray(body.arc_lengths, dtype=np.float64) / grid.cell_area
        reg = csr_matrix(interp.T.multiply(weights[np.newaxis, :]))
        div_x, div_y = build_divergence_operators(grid.shape, grid.cellsize)
        return cls(
            grid=grid,
            body=body,
            interp=interp,
            reg=reg,
            div_x=div_x,
            div_y=div_y,
        )

    @property
    def grid_weight(self) -> float:
        """Grid inner-product weight (cell area)."""
        return self.grid.cell_area

    @property
    def surface_weights(self) -> FloatArray:
        """Surface inner-product weights (arc lengths)."""
        return self.body.arc_lengths

    def _grid_columns(self, field: FloatArray) -> FloatArray:
        arr = np.asarray(field, dtype=np.float64)
        if arr.shape[:2] != self.grid.shape or arr.ndim > 3:
            raise ValueError(
                _GRID_FIELD_ERROR.format(actual=arr.shape, expected=self.grid.shape)
            )
        return arr.reshape(self.grid.size, -1)

    def _surface_columns(self, field: FloatArray) -> FloatArray:
        arr = np.asarray(field, dtype=np.float64)
        if arr.shape[0] != self.body.n_points or arr.ndim > 2:
            raise ValueError(
                _SURFACE_FIELD_ERROR.format(actual=arr.shape, n=self.body.n_points)
            )
        return arr.reshape(self.body.n_points, -1)

    def interpolate(self, out: FloatArray, field: FloatArray) -> FloatArray:
        """
        Sample a grid field at the surface points.

        Args:
            out: Surface field (scalar or vector), overwritten.
            field: Grid field with matching number of components.

        Returns:
            out.
        """
        values = self.interp @ self._grid_columns(field)
        np.copyto(out, values.reshape(out.shape))
        return out

    def regularize(self, out: FloatArray, field: FloatArray) -> FloatArray:
        """
        Spread a surface field onto the grid.

        Args:
            out: Grid field (scalar or vector), overwritten.
            field: Surface field with matching number of components.

        Returns:
            out.
        """
        values = self.reg @ self._surface_columns(field)
        np.copyto(out, values.reshape(out.shape))
        return out

    def surface_divergence(self, out: FloatArray, values: FloatArray) -> FloatArray:
        """
        Double-layer source: divergence of the regularized field values * n.

        Args:
            out: Scalar grid field, overwritten.
            values: Scalar surface field (e.g. -kappa times a jump).

        Raises:
            ValueError: If values is not a scalar surface field.

        Returns:
            out.
        """
        vals = np.asarray(values, dtype=np.float64)
        if vals.ndim != 1:
            raise ValueError(_NORMALS_ERROR.format(shape=vals.shape))
        dipole = self._surface_columns(vals[:, np.newaxis] * self.body.normals)
        spread = self.reg @ dipole
        div = self.div_x @ spread[:, 0] + self.div_y @ spread[:, 1]
        np.copyto(out, div.reshape(out.shape))
        return out
