# src/ilm_engine/core_solver.py
"""Integrating-factor half-explicit Runge-Kutta solver for constrained ODEs.

This solver advances the coupled state (u, f) of a ConstrainedODEFunction:

    du/dt = L u + state_rhs(u, t) + constraint_force(f)
    constraint_op(u) = constraint_rhs(t)

The stiff linear term L u is integrated exactly with the exponential action of
the linear operator (integrating factor); state_rhs and constraint_force are
treated explicitly; the constraint is imposed at the end of every stage by one
saddle-point solve (half-explicit Runge-Kutta, IF-HERK).

Supported algorithms (keyword `algorithm=`):
    - "if-he-euler":  One stage, first order.
    - "liska-ifherk": Three stages, second order in the multiplier (Liska and
      Colonius, 2016).

Stage recursion:
    With tableau (c, a, b), stage i evaluates q_i = state_rhs(u_i, t + c_i dt)
    and the next-stage row w (a[i+1], or b for the last stage). Holding all
    quantities propagated to time t + c_i dt,

        r   = e^{c_i dt L} u_n + dt * sum_{j<=i} w_j q_j
        x   = e^{tau L} (r - B sigma),   B^T x = constraint_rhs(t + c_{i+1} dt)

    with tau = (c_{i+1} - c_i) dt. The multiplier of the stage follows from the
    Schur unknown as f_i = -sigma / (dt * w_i); q_i is augmented by
    constraint_force(f_i) and every stored term is propagated by e^{tau L}.
    The multiplier committed with the step is the one of the last stage.

State machine:
    UNINITIALIZED -> READY on successful construction; READY -> STEPPING during
    step/advance; STEPPING -> READY on success; STEPPING -> FAILED on a fatal
    error; READY -> FINISHED when the end of the time span is reached.

Performance hygiene:
    - All stage buffers are preallocated at construction and reused.
    - Inner loops use in-place NumPy ops and np.copyto.
    - Exponentials and Schur factorizations are cached per stage interval.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import numpy as np

from .errors import (
    ConfigurationError,
    IntegratorStateError,
    SolverConvergenceError,
)
from .model_core import CoupledState, SolutionHistory
from .saddle_point import SaddlePointConfig, SaddlePointSolver, SolveInfo

if TYPE_CHECKING:
    from .model_core import GridField, SurfaceField
    from .ode_function import ConstrainedODEFunction

logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_UNKNOWN_ALGORITHM_ERROR_MSG = "Unknown algorithm: {algorithm}"
_TSPAN_ERROR_MSG = "tspan must be (t0, t1) with finite t0 < t1; got {tspan}"
_DT_ERROR_MSG = "dt must be positive and finite; got {dt}"
_DT_SOURCE_ERROR_MSG = "Exactly one of dt or timestep_func must be given"
_NON_FINITE_U0_ERROR_MSG = "u0 contains non-finite values"
_FAILED_ERROR_MSG = (
    "Integrator is FAILED after a fatal error at t={t:.6g}; the last committed "
    "state is preserved for inspection. Build a new integrator to continue."
)
_FINISHED_ERROR_MSG = "Integrator is FINISHED: t={t:.6g} reached the end of the time span"
_N_STEPS_ERROR_MSG = "n_steps must be a positive integer; got {n_steps}"
_DURATION_ERROR_MSG = "duration must be positive and finite; got {duration}"
_ADVANCE_ARGS_ERROR_MSG = "Exactly one of duration or n_steps must be given"
_TABLEAU_SHAPE_ERROR_MSG = "Tableau '{name}' has inconsistent c/a/b lengths"
_TABLEAU_ORDER_ERROR_MSG = "Tableau '{name}' nodes c must be nondecreasing in [0, 1]"
_TABLEAU_PIVOT_ERROR_MSG = (
    "Tableau '{name}' has a zero subdiagonal weight at stage {stage}; the stage "
    "multiplier cannot be recovered"
)


# =============================================================================
# Type aliases
# =============================================================================

AlgorithmName = Literal["if-he-euler", "liska-ifherk"]
TimestepFunction = Callable[[Any, Any], float]


class IntegratorStatus(enum.Enum):
    """Lifecycle of a ConstrainedIntegrator."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STEPPING = "stepping"
    FINISHED = "finished"
    FAILED = "failed"


# =============================================================================
# Tableaux
# =============================================================================


@dataclass(slots=True, frozen=True)
class IFHERKTableau:
    """Butcher tableau of an IF-HERK scheme.

    Attributes:
        name: Algorithm name.
        c: Stage nodes.
        a: Strictly lower-triangular stage weights.
        b: Final weights.
        order: Nominal global order of accuracy, attained by the multiplier.
            The state converges at least this fast and can do better.
    """

    name: str
    c: tuple[float, ...]
    a: tuple[tuple[float, ...], ...]
    b: tuple[float, ...]
    order: int

    def __post_init__(self) -> None:
        s = len(self.c)
        if s == 0 or len(self.a) != s or len(self.b) != s:
            raise ConfigurationError(_TABLEAU_SHAPE_ERROR_MSG.format(name=self.name))
        if any(len(row) != s for row in self.a):
            raise ConfigurationError(_TABLEAU_SHAPE_ERROR_MSG.format(name=self.name))
        nodes = (*self.c, 1.0)
        if self.c[0] != 0.0 or any(lo > hi for lo, hi in zip(nodes, nodes[1:])):
            raise ConfigurationError(_TABLEAU_ORDER_ERROR_MSG.format(name=self.name))
        for i in range(s):
            if self.next_row(i)[i] == 0.0:
                raise ConfigurationError(
                    _TABLEAU_PIVOT_ERROR_MSG.format(name=self.name, stage=i)
                )

    @property
    def n_stages(self) -> int:
        """Number of stages."""
        return len(self.c)

    def next_row(self, stage: int) -> tuple[float, ...]:
        """Weights defining the state at the end of a stage."""
        return self.a[stage + 1] if stage + 1 < self.n_stages else self.b

    def next_node(self, stage: int) -> float:
        """Node (fraction of dt) at the end of a stage."""
        return self.c[stage + 1] if stage + 1 < self.n_stages else 1.0


TABLEAUX: dict[str, IFHERKTableau] = {
    "if-he-euler": IFHERKTableau(
        name="if-he-euler",
        c=(0.0,),
        a=((0.0,),),
        b=(1.0,),
        order=1,
    ),
    "liska-ifherk": IFHERKTableau(
        name="liska-ifherk",
        c=(0.0, 1.0 / 3.0, 1.0),
        a=(
            (0.0, 0.0, 0.0),
            (1.0 / 3.0, 0.0, 0.0),
            (-1.0, 2.0, 0.0),
        ),
        b=(0.0, 0.75, 0.25),
        order=2,
    ),
}


def get_tableau(algorithm: str) -> IFHERKTableau:
    """Normalize an algorithm name and return its tableau.

    Args:
        algorithm: Algorithm name (case-insensitive).

    Raises:
        ConfigurationError: If the algorithm is unknown.

    Returns:
        The matching IFHERKTableau.
    """
    key = str(algorithm).strip().lower()
    tableau = TABLEAUX.get(key)
    if tableau is None:
        raise ConfigurationError(_UNKNOWN_ALGORITHM_ERROR_MSG.format(algorithm=algorithm))
    return tableau


# =============================================================================
# Configuration
# =============================================================================


@dataclass(slots=True, frozen=True)
class IntegratorConfig:
    """Configuration for ConstrainedIntegrator.

    Attributes:
        algorithm: Algorithm name ("if-he-euler" or "liska-ifherk").
        saddle: Saddle-point solver configuration.
        strict: If True, a non-converged Krylov solve raises; otherwise a
            ConvergenceWarning is emitted and the step is accepted.
        store_history: If True, keep a copy of every committed state.
        time_rtol: Relative tolerance for landing on the end of the time span.
    """

    algorithm: AlgorithmName = "liska-ifherk"
    saddle: SaddlePointConfig = field(default_factory=SaddlePointConfig)
    strict: bool = True
    store_history: bool = False
    time_rtol: float = 1e-12


# =============================================================================
# ConstrainedIntegrator
# =============================================================================


class ConstrainedIntegrator:
    """IF-HERK integrator owning a coupled state and its scratch buffers."""

    def __init__(
        self,
        u0: CoupledState,
        tspan: tuple[float, float],
        func: ConstrainedODEFunction,
        *,
        dt: float | None = None,
        timestep_func: TimestepFunction | None = None,
        grid: Any = None,
        params: Any = None,
        config: IntegratorConfig | None = None,
    ) -> None:
        """Initialize ConstrainedIntegrator.

        Args:
            u0: Initial coupled state; copied, never mutated.
            tspan: (t0, t1) time span.
            func: Constrained ODE function.
            dt: Step size. Mutually exclusive with timestep_func.
            timestep_func: Called once as timestep_func(grid, params) to
                derive the step size.
            grid: Grid description passed to timestep_func.
            params: Physical parameters passed to timestep_func.
            config: Integrator configuration; defaults are used if None.

        Raises:
            ConfigurationError: If u0, tspan, dt or the algorithm are invalid.
        """
        self._status = IntegratorStatus.UNINITIALIZED
        self.config = config or IntegratorConfig()
        self.tableau = get_tableau(self.config.algorithm)
        self.func = func

        t0, t1 = (float(v) for v in tspan)
        if not (np.isfinite(t0) and np.isfinite(t1) and t0 < t1):
            raise ConfigurationError(_TSPAN_ERROR_MSG.format(tspan=tspan))
        self.tspan = (t0, t1)

        func.prototype.validate_like(u0, name="u0")
        if not u0.is_finite():
            raise ConfigurationError(_NON_FINITE_U0_ERROR_MSG)

        if (dt is None) == (timestep_func is None):
            raise ConfigurationError(_DT_SOURCE_ERROR_MSG)
        if timestep_func is not None:
            dt = timestep_func(grid, params)
        self._dt = self._check_dt(dt)

        self._t = t0
        self._u = u0.copy()
        self._n_steps_taken = 0
        self._last_info: list[SolveInfo] = []

        self.solver = SaddlePointSolver(func, self.config.saddle)

        # Preallocate stage buffers
        s = self.tableau.n_stages
        self._base: GridField = func.prototype.state.copy()
        self._u_stage: GridField = np.zeros_like(self._base)
        self._x: GridField = np.zeros_like(self._base)
        self._r: GridField = np.zeros_like(self._base)
        self._force: GridField = np.zeros_like(self._base)
        self._q: list[GridField] = [np.zeros_like(self._base) for _ in range(s)]
        self._sigma: SurfaceField = func.prototype.constraint.copy()
        self._f: SurfaceField = np.zeros_like(self._sigma)
        self._rc: SurfaceField = np.zeros_like(self._sigma)
        # Views of (x, f); committed with CoupledState.copy_from
        self._next = CoupledState(self._x, self._f)

        self._history: SolutionHistory | None = None
        if self.config.store_history:
            self._history = SolutionHistory()
            self._history.append(self._t, self._u)

        self._set_status(IntegratorStatus.READY)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def u(self) -> CoupledState:
        """Committed coupled state (owned by the integrator; do not mutate)."""
        return self._u

    @property
    def state(self) -> GridField:
        """Committed grid state."""
        return self._u.state

    @property
    def constraint(self) -> SurfaceField:
        """Committed multipliers of the last step."""
        return self._u.constraint

    @property
    def t(self) -> float:
        """Committed time."""
        return self._t

    @property
    def dt(self) -> float:
        """Nominal step size."""
        return self._dt

    @property
    def status(self) -> IntegratorStatus:
        """Current lifecycle status."""
        return self._status

    @property
    def history(self) -> SolutionHistory | None:
        """Committed snapshots, or None if store_history is off."""
        return self._history

    @property
    def n_steps_taken(self) -> int:
        """Number of committed steps."""
        return self._n_steps_taken

    @property
    def last_solve_info(self) -> tuple[SolveInfo, ...]:
        """Saddle-point diagnostics of the stages of the last committed step."""
        return tuple(self._last_info)

    @property
    def remaining(self) -> float:
        """Time left until the end of the time span."""
        return max(self.tspan[1] - self._t, 0.0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_dt(dt: float | None) -> float:
        if dt is None or not np.isfinite(dt) or dt <= 0.0:
            raise ConfigurationError(_DT_ERROR_MSG.format(dt=dt))
        return float(dt)

    def _set_status(self, status: IntegratorStatus) -> None:
        if status is not self._status:
            logger.debug(
                "integrator status %s -> %s at t=%.6g",
                self._status.value,
                status.value,
                self._t,
            )
        self._status = status

    def _time_tol(self) -> float:
        t0, t1 = self.tspan
        return self.config.time_rtol * max(abs(t0), abs(t1), t1 - t0)

    def _require_steppable(self) -> None:
        if self._status is IntegratorStatus.FAILED:
            raise IntegratorStateError(_FAILED_ERROR_MSG.format(t=self._t))
        if self._status is IntegratorStatus.FINISHED:
            raise IntegratorStateError(_FINISHED_ERROR_MSG.format(t=self._t))

    def _step_size_to(self, target: float) -> float:
        """Nominal dt, shortened (or snapped) to land exactly on target."""
        gap = target - self._t
        if gap - self._dt <= self._time_tol():
            return gap
        return self._dt

    def set_dt(self, dt: float) -> None:
        """Replace the nominal step size between calls.

        Cached exponentials and factorizations for the old stage intervals are
        dropped.

        Args:
            dt: New positive step size.

        Raises:
            ConfigurationError: If dt is not positive and finite.
        """
        self._dt = self._check_dt(dt)
        self.solver.clear_cache()
        self.func.linear_op.clear_cache()

    # ------------------------------------------------------------------
    # Stepping kernel
    # ------------------------------------------------------------------

    def _stage_sweep(self, t: float, dt: float) -> None:
        """Run all stages of one step from the committed state into scratch.

        On return self._x holds u_{n+1} and self._f the last-stage multiplier.
        The committed state is never touched here.

        Args:
            t: Step start time.
            dt: Step size.
        """
        tab = self.tableau
        lin = self.func.linear_op
        func = self.func
        q = self._q
        self._last_info = []

        np.copyto(self._base, self._u.state)
        np.copyto(self._u_stage, self._u.state)

        for i in range(tab.n_stages):
            c_i = tab.c[i]
            row = tab.next_row(i)
            c_next = tab.next_node(i)
            tau = (c_next - c_i) * dt

            func.eval_state_rhs(q[i], self._u_stage, t + c_i * dt)

            np.copyto(self._r, self._base)
            for j in range(i + 1):
                if row[j] != 0.0:
                    self._r += (dt * row[j]) * q[j]

            func.eval_constraint_rhs(self._rc, t + c_next * dt)
            info = self.solver.solve(
                self._x,
                self._sigma,
                self._r,
                self._rc,
                tau,
                strict=self.config.strict,
            )
            self._last_info.append(info)

            # Physical stage multiplier and its force contribution.
            np.multiply(self._sigma, -1.0 / (dt * row[i]), out=self._f)
            func.eval_constraint_force(self._force, self._f)
            q[i] += self._force

            if i + 1 < tab.n_stages:
                lin.exp_action(tau, self._base, out=self._base)
                for j in range(i + 1):
                    lin.exp_action(tau, q[j], out=q[j])
                np.copyto(self._u_stage, self._x)

    def _commit(self, t_new: float) -> None:
        self._u.copy_from(self._next)
        self._t = t_new
        self._n_steps_taken += 1
        if self._history is not None:
            self._history.append(self._t, self._u)

    def _take_step(self, target: float) -> None:
        """Advance one step toward target and commit it.

        Raises:
            SolverConvergenceError: Non-fatal; the status returns to READY.
            Exception: Any other error marks the integrator FAILED.
        """
        dt = self._step_size_to(target)
        t = self._t
        try:
            self._stage_sweep(t, dt)
        except SolverConvergenceError:
            self._set_status(IntegratorStatus.READY)
            raise
        except Exception:
            self._set_status(IntegratorStatus.FAILED)
            raise

        t_new = target if abs(target - (t + dt)) <= self._time_tol() else t + dt
        self._commit(t_new)
        logger.debug("step %d committed: t=%.6g dt=%.6g", self._n_steps_taken, t_new, dt)

    def _finish_or_ready(self) -> None:
        if self.tspan[1] - self._t <= self._time_tol():
            self._t = self.tspan[1]
            self._set_status(IntegratorStatus.FINISHED)
        else:
            self._set_status(IntegratorStatus.READY)

    # ------------------------------------------------------------------
    # Public stepping
    # ------------------------------------------------------------------

    def step(self, n_steps: int = 1) -> int:
        """Take up to n_steps steps of the nominal size.

        Stepping stops early at the end of the time span; the final step is
        shortened to land exactly on it.

        Args:
            n_steps: Number of steps to take.

        Raises:
            ConfigurationError: If n_steps is not a positive integer.
            IntegratorStateError: If the integrator is FAILED or FINISHED.
            NumericalDivergenceError: Fatal; the integrator becomes FAILED.
            SingularSystemError: Fatal; the integrator becomes FAILED.
            SolverConvergenceError: Non-fatal (strict only); status stays READY.

        Returns:
            Number of steps taken.
        """
        if isinstance(n_steps, bool) or int(n_steps) != n_steps or n_steps < 1:
            raise ConfigurationError(_N_STEPS_ERROR_MSG.format(n_steps=n_steps))
        self._require_steppable()

        self._set_status(IntegratorStatus.STEPPING)
        taken = 0
        end = self.tspan[1]
        while taken < int(n_steps) and end - self._t > self._time_tol():
            self._take_step(end)
            taken += 1
        self._finish_or_ready()
        return taken

    def advance(self, duration: float) -> int:
        """Advance by duration, landing exactly on t + duration.

        The target is clipped to the end of the time span. Steps have the
        nominal size except the last, which is shortened as needed.

        Args:
            duration: Time interval to advance.

        Raises:
            ConfigurationError: If duration is not positive and finite.
            IntegratorStateError: If the integrator is FAILED or FINISHED.

        Returns:
            Number of steps taken.
        """
        if not (np.isfinite(duration) and duration > 0.0):
            raise ConfigurationError(_DURATION_ERROR_MSG.format(duration=duration))
        self._require_steppable()

        target = min(self._t + float(duration), self.tspan[1])
        self._set_status(IntegratorStatus.STEPPING)
        taken = 0
        while target - self._t > self._time_tol():
            self._take_step(target)
            taken += 1
        self._finish_or_ready()
        return taken


# =============================================================================
# Functional API
# =============================================================================


def init(
    u0: CoupledState,
    tspan: tuple[float, float],
    func: ConstrainedODEFunction,
    **kwargs: Any,
) -> ConstrainedIntegrator:
    """Build a ConstrainedIntegrator.

    Args:
        u0: Initial coupled state.
        tspan: (t0, t1) time span.
        func: Constrained ODE function.
        **kwargs: Forwarded to ConstrainedIntegrator (dt, timestep_func, grid,
            params, config).

    Returns:
        Integrator in the READY state.
    """
    return ConstrainedIntegrator(u0, tspan, func, **kwargs)


def advance(
    integrator: ConstrainedIntegrator,
    *,
    duration: float | None = None,
    n_steps: int | None = None,
) -> ConstrainedIntegrator:
    """Advance an integrator by a duration or a number of steps.

    Args:
        integrator: Integrator to advance (mutated in place).
        duration: Time interval to advance.
        n_steps: Number of steps to take.

    Raises:
        ConfigurationError: Unless exactly one of duration or n_steps is given.

    Returns:
        The same integrator, for chaining.
    """
    if (duration is None) == (n_steps is None):
        raise ConfigurationError(_ADVANCE_ARGS_ERROR_MSG)
    if duration is not None:
        integrator.advance(duration)
    else:
        integrator.step(int(n_steps))  # type: ignore[arg-type]
    return integrator
