# src/ilm_engine/heat_conduction.py
"""Heat conduction with Dirichlet data on an immersed surface.

The temperature T obeys dT/dt = kappa * lap(T) on the whole box, with the
surface carrying prescribed temperatures on its exterior (+) and interior (-)
sides. In the immersed-layer form the jump is imposed by a double layer and
the mean by a Lagrange multiplier sigma acting as a single layer:

    dT/dt = kappa lap(T) - div(R[kappa (Tb+ - Tb-) n]) - R[sigma]
    E[T]  = (Tb+ + Tb-) / 2

with R the regularization and E the interpolation of CouplingOperators.
Because constraint_force = -R and constraint_op = E, and E and R are adjoint
under the cell-area / arc-length inner products, the constrained system is
well posed for the saddle-point solver (adjoint up to a sign).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np

from .config import HeatConductionParams
from .core_solver import ConstrainedIntegrator, init
from .coupling import CouplingOperators
from .geometry import Circle, PhysicalGrid
from .matrix_ops import laplacian_operator
from .model_core import CoupledState, GridField, SurfaceField
from .ode_function import ConstrainedODEFunction

SurfaceDataFunction = Callable[[Circle, float], SurfaceField]


def timestep_fourier(grid: PhysicalGrid, params: HeatConductionParams) -> float:
    """Step size from the Fourier number: Fo * dx^2 / kappa."""
    return params.fourier * grid.cellsize**2 / params.diffusivity


@dataclass(frozen=True, slots=True)
class BoundaryData:
    """Prescribed surface temperatures on both sides of the surface.

    Attributes:
        exterior: (body, t) -> temperature on the exterior side (Tb+).
        interior: (body, t) -> temperature on the interior side (Tb-).
    """

    exterior: SurfaceDataFunction
    interior: SurfaceDataFunction

    @classmethod
    def constant(cls, exterior: float = 0.0, interior: float = 1.0) -> BoundaryData:
        """Uniform, time-independent boundary temperatures."""

        def _exterior(body: Circle, t: float) -> SurfaceField:
            return np.full(body.n_points, float(exterior))

        def _interior(body: Circle, t: float) -> SurfaceField:
            return np.full(body.n_points, float(interior))

        return cls(exterior=_exterior, interior=_interior)


class DirichletHeatConduction:
    """Heat-conduction problem on a PhysicalGrid with one immersed Circle."""

    def __init__(
        self,
        grid: PhysicalGrid,
        body: Circle,
        params: HeatConductionParams,
        bc: BoundaryData,
        *,
        prefer_dense: bool | None = None,
        check_adjoint: bool = False,
    ) -> None:
        """Initialize DirichletHeatConduction.

        Args:
            grid: Grid description.
            body: Immersed surface.
            params: Physical parameters.
            bc: Exterior/interior boundary temperatures.
            prefer_dense: Exponential backend selection of the Laplacian.
            check_adjoint: Probe the interpolation/regularization adjoint
                pair when the ODE function is built.
        """
        self.grid = grid
        self.body = body
        self.params = params
        self.bc = bc
        self.coupling = CouplingOperators.build(grid, body)
        self.linear_op = laplacian_operator(
            grid, params.diffusivity, prefer_dense=prefer_dense
        )

        # Scratch surface fields
        self._tb_plus = body.zeros_surface()
        self._tb_minus = body.zeros_surface()
        self._jump = body.zeros_surface()

        self.prototype = CoupledState(
            state=grid.zeros_grid(),
            constraint=body.zeros_surface(),
        )
        self.func = ConstrainedODEFunction(
            state_rhs=self.state_rhs,
            constraint_rhs=self.constraint_rhs,
            constraint_force=self.constraint_force,
            constraint_op=self.constraint_op,
            linear_op=self.linear_op,
            prototype=self.prototype,
            grid_weight=self.coupling.grid_weight,
            surface_weights=self.coupling.surface_weights,
            check_adjoint=check_adjoint,
        )

    @classmethod
    def build(
        cls,
        grid: PhysicalGrid,
        body: Circle,
        params: HeatConductionParams | None = None,
        bc: BoundaryData | None = None,
        **kwargs: Any,
    ) -> DirichletHeatConduction:
        """
        Assemble the problem, defaulting to Tb+ = 0 and Tb- = 1.

        Args:
            grid: Grid description.
            body: Immersed surface.
            params: Physical parameters (defaults if None).
            bc: Boundary temperatures (constant 0 / 1 if None).
            **kwargs: Forwarded to the constructor.

        Returns:
            DirichletHeatConduction instance.
        """
        return cls(
            grid,
            body,
            params or HeatConductionParams(),
            bc or BoundaryData.constant(),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _update_boundary(self, t: float) -> None:
        np.copyto(self._tb_plus, self.bc.exterior(self.body, t))
        np.copyto(self._tb_minus, self.bc.interior(self.body, t))

    def state_rhs(self, out: GridField, state: GridField, t: float) -> GridField:
        """Double-layer source of the prescribed temperature jump."""
        out.fill(0.0)
        self._update_boundary(t)
        np.subtract(self._tb_plus, self._tb_minus, out=self._jump)
        self._jump *= -self.params.diffusivity
        return self.coupling.surface_divergence(out, self._jump)

    def constraint_rhs(self, out: SurfaceField, t: float) -> SurfaceField:
        """Mean of the two prescribed surface temperatures."""
        self._update_boundary(t)
        np.add(self._tb_plus, self._tb_minus, out=out)
        out *= 0.5
        return out

    def constraint_force(self, out: GridField, sigma: SurfaceField) -> GridField:
        """Single layer: the negated regularized multiplier."""
        self.coupling.regularize(out, sigma)
        np.negative(out, out=out)
        return out

    def constraint_op(self, out: SurfaceField, state: GridField) -> SurfaceField:
        """Surface temperature: interpolation of the grid field."""
        return self.coupling.interpolate(out, state)

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------

    def zero_state(self) -> CoupledState:
        """Zero initial condition shaped like the solution prototype."""
        return self.func.zeros()

    def integrator(
        self,
        tspan: tuple[float, float],
        *,
        u0: CoupledState | None = None,
        **kwargs: Any,
    ) -> ConstrainedIntegrator:
        """Create an integrator with the Fourier step-size criterion.

        Args:
            tspan: (t0, t1) time span.
            u0: Initial state (zero if None).
            **kwargs: Forwarded to ConstrainedIntegrator (config, or dt to
                override the Fourier criterion).

        Returns:
            Integrator in the READY state.
        """
        if "dt" not in kwargs:
            kwargs.setdefault("timestep_func", timestep_fourier)
        return init(
            u0 if u0 is not None else self.zero_state(),
            tspan,
            self.func,
            grid=self.grid,
            params=self.params,
            **kwargs,
        )
