"""ilm_engine constrained ODE engine for immersed-layer problems."""

from __future__ import annotations

from .config import HeatConductionParams, SolverSettings, load_params, load_settings
from .core_solver import (
    TABLEAUX,
    ConstrainedIntegrator,
    IFHERKTableau,
    IntegratorConfig,
    IntegratorStatus,
    advance,
    get_tableau,
    init,
)
from .coupling import CouplingOperators, build_interpolation_matrix
from .errors import (
    ConfigurationError,
    ConvergenceWarning,
    ILMEngineError,
    IntegratorStateError,
    NumericalDivergenceError,
    SingularSystemError,
    SolverConvergenceError,
)
from .geometry import Circle, PhysicalGrid
from .heat_conduction import BoundaryData, DirichletHeatConduction, timestep_fourier
from .matrix_ops import (
    GridLinearOperator,
    Operator,
    TauCache,
    build_divergence_operators,
    build_grid_laplacian,
    build_laplacian_tridiag,
    kron_prod,
    kron_sum,
    laplacian_operator,
)
from .model_core import CoupledState, SolutionHistory, grid_inner, surface_inner
from .ode_function import AdjointReport, ConstrainedODEFunction
from .saddle_point import SaddlePointConfig, SaddlePointSolver, SolveInfo

__all__ = [
    "TABLEAUX",
    "AdjointReport",
    "BoundaryData",
    "Circle",
    "ConfigurationError",
    "ConstrainedIntegrator",
    "ConstrainedODEFunction",
    "ConvergenceWarning",
    "CoupledState",
    "CouplingOperators",
    "DirichletHeatConduction",
    "GridLinearOperator",
    "HeatConductionParams",
    "IFHERKTableau",
    "ILMEngineError",
    "IntegratorConfig",
    "IntegratorStateError",
    "IntegratorStatus",
    "NumericalDivergenceError",
    "Operator",
    "PhysicalGrid",
    "SaddlePointConfig",
    "SaddlePointSolver",
    "SingularSystemError",
    "SolutionHistory",
    "SolveInfo",
    "SolverConvergenceError",
    "SolverSettings",
    "TauCache",
    "advance",
    "build_divergence_operators",
    "build_grid_laplacian",
    "build_interpolation_matrix",
    "build_laplacian_tridiag",
    "get_tableau",
    "grid_inner",
    "init",
    "kron_prod",
    "kron_sum",
    "laplacian_operator",
    "load_params",
    "load_settings",
    "surface_inner",
    "timestep_fourier",
]

__version__ = "0.1.0"
