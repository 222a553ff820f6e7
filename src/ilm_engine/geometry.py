# src/ilm_engine/geometry.py
"""Lightweight grid and surface descriptions.

The constrained core only needs two things from its geometric collaborators:
a way to allocate zero-initialized Grid and Surface Fields of the right
discretization, and the cell size. The classes here provide exactly that for
a uniform node-centred Cartesian grid and a circular immersed surface, which is
what the heat-conduction problem and the test-suite use. Generating general
bodies or meshes is out of scope.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt

_LIMITS_ERROR = "{name} must satisfy lo < hi; got {lim}"
_SPACING_ERROR = "dx must be positive and finite; got {dx}"
_TOO_COARSE_ERROR = "grid spacing {dx} leaves no interior nodes in {lim}"
_RADIUS_ERROR = "radius and ds must be positive; got radius={radius}, ds={ds}"


@dataclass(frozen=True, slots=True, eq=False)
class PhysicalGrid:
    """Uniform Cartesian node grid with homogeneous data on the box edges.

    Nodes sit at ``lo + k*dx`` for ``k = 1 .. n-1`` where ``n*dx`` spans the
    limits, so the box edges themselves are not unknowns.

    Attributes:
        xlim: (xmin, xmax) extent of the box.
        ylim: (ymin, ymax) extent of the box.
        dx: Uniform node spacing.
    """

    xlim: tuple[float, float]
    ylim: tuple[float, float]
    dx: float
    x: npt.NDArray[np.float64] = field(init=False, repr=False)
    y: npt.NDArray[np.float64] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not (np.isfinite(self.dx) and self.dx > 0.0):
            raise ValueError(_SPACING_ERROR.format(dx=self.dx))
        for name, lim in (("xlim", self.xlim), ("ylim", self.ylim)):
            if not lim[0] < lim[1]:
                raise ValueError(_LIMITS_ERROR.format(name=name, lim=lim))
        object.__setattr__(self, "x", self._nodes(self.xlim))
        object.__setattr__(self, "y", self._nodes(self.ylim))

    def _nodes(self, lim: tuple[float, float]) -> npt.NDArray[np.float64]:
        n_cells = round((lim[1] - lim[0]) / self.dx)
        if n_cells < 2:
            raise ValueError(_TOO_COARSE_ERROR.format(dx=self.dx, lim=lim))
        return lim[0] + self.dx * np.arange(1, n_cells, dtype=np.float64)

    @property
    def cellsize(self) -> float:
        """Uniform grid spacing."""
        return float(self.dx)

    @property
    def cell_area(self) -> float:
        """Area associated with one node (the grid inner-product weight)."""
        return float(self.dx * self.dx)

    @property
    def shape(self) -> tuple[int, int]:
        """Scalar grid field shape (ny, nx)."""
        return (int(self.y.size), int(self.x.size))

    @property
    def size(self) -> int:
        """Number of nodes."""
        return int(self.y.size * self.x.size)

    def meshgrid(self) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """Return (X, Y) node coordinates, each of shape (ny, nx)."""
        xx, yy = np.meshgrid(self.x, self.y, indexing="xy")
        return xx, yy

    def zeros_grid(self, components: int | None = None) -> npt.NDArray[np.float64]:
        """Allocate a zero Grid Field (scalar, or with trailing components)."""
        shape = self.shape if components is None else (*self.shape, components)
        return np.zeros(shape, dtype=np.float64)


@dataclass(frozen=True, slots=True, eq=False)
class Circle:
    """Circular immersed surface discretized by equally spaced points.

    Attributes:
        radius: Circle radius.
        ds: Target point spacing; the actual spacing divides the perimeter.
        center: Circle centre.
    """

    radius: float
    ds: float
    center: tuple[float, float] = (0.0, 0.0)
    points: npt.NDArray[np.float64] = field(init=False, repr=False)
    normals: npt.NDArray[np.float64] = field(init=False, repr=False)
    arc_lengths: npt.NDArray[np.float64] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if not (self.radius > 0.0 and self.ds > 0.0):
            raise ValueError(_RADIUS_ERROR.format(radius=self.radius, ds=self.ds))
        perimeter = 2.0 * np.pi * self.radius
        n = max(3, round(perimeter / self.ds))
        theta = 2.0 * np.pi * np.arange(n, dtype=np.float64) / n
        normals = np.column_stack([np.cos(theta), np.sin(theta)])
        points = np.asarray(self.center, dtype=np.float64) + self.radius * normals
        object.__setattr__(self, "points", points)
        object.__setattr__(self, "normals", normals)
        object.__setattr__(self, "arc_lengths", np.full(n, perimeter / n))

    @property
    def n_points(self) -> int:
        """Number of surface points."""
        return int(self.points.shape[0])

    def zeros_surface(self, components: int | None = None) -> npt.NDArray[np.float64]:
        """Allocate a zero Surface Field (scalar, or with trailing components)."""
        shape = (
            (self.n_points,) if components is None else (self.n_points, components)
        )
        return np.zeros(shape, dtype=np.float64)

    def ones_surface(self) -> npt.NDArray[np.float64]:
        """Allocate a scalar Surface Field of ones."""
        return np.ones(self.n_points, dtype=np.float64)
