# src/ilm_engine/config.py
"""Validated configuration models for ilm_engine.

This module defines pydantic-facing configuration objects for YAML files and
translates them into the native frozen dataclasses of the solver
(IntegratorConfig / SaddlePointConfig).

Notes:
    - SolverSettings allows and ignores unknown fields (`extra="allow"`), so a
      shared YAML file can carry keys meant for other tools.
    - Physical parameters are an immutable model with named fields; callbacks
      receive the model itself rather than a string-keyed mapping.
    - YAML files may hold the settings at the top level or under a `solver:`
      (resp. `params:`) key.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from ruamel.yaml import YAML
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .core_solver import IntegratorConfig
from .errors import ConfigurationError
from .saddle_point import SaddlePointConfig

AlgorithmName = Literal["if-he-euler", "liska-ifherk"]
SaddleMethod = Literal["auto", "direct", "krylov"]

_SECTIONS = ("solver", "params")
_YAML_MAPPING_ERROR = "{path}: expected a mapping at the top level, got {typ}"
_YAML_SECTION_ERROR = "{path}: section '{key}' must be a mapping, got {typ}"
_VALIDATION_ERROR = "{path}: invalid {what}:\n{detail}"


class SolverSettings(BaseModel):
    """Configuration schema for the constrained integrator.

    This model mirrors IntegratorConfig and SaddlePointConfig fields but keeps
    YAML-friendly defaults and validation behavior.
    """

    model_config = ConfigDict(extra="allow")

    algorithm: AlgorithmName = Field(
        default="liska-ifherk",
        description="Time integration algorithm",
    )

    strict: bool = Field(
        default=True,
        description="Raise on non-converged Krylov solves instead of warning",
    )

    store_history: bool = Field(
        default=False,
        description="Keep a copy of every committed state",
    )

    time_rtol: float = Field(default=1e-12, gt=0.0)

    # Saddle-point controls
    saddle_method: SaddleMethod = Field(
        default="auto",
        description="Schur-complement strategy",
    )
    dense_threshold: int = Field(default=350, ge=0)
    rtol: float = Field(default=1e-10, gt=0.0)
    atol: float = Field(default=0.0, ge=0.0)
    maxiter: int = Field(default=500, gt=0)
    check_symmetry: bool = Field(default=False)
    symmetry_rtol: float = Field(default=1e-8, gt=0.0)

    def to_saddle_config(self) -> SaddlePointConfig:
        """Convert the saddle-point fields to a native SaddlePointConfig.

        Returns:
            Fully constructed SaddlePointConfig instance.
        """
        return SaddlePointConfig(
            method=self.saddle_method,
            dense_threshold=self.dense_threshold,
            rtol=self.rtol,
            atol=self.atol,
            maxiter=self.maxiter,
            check_symmetry=self.check_symmetry,
            symmetry_rtol=self.symmetry_rtol,
        )

    def to_integrator_config(self) -> IntegratorConfig:
        """Convert this config to a native IntegratorConfig.

        Returns:
            Fully constructed IntegratorConfig instance.
        """
        return IntegratorConfig(
            algorithm=self.algorithm,
            saddle=self.to_saddle_config(),
            strict=self.strict,
            store_history=self.store_history,
            time_rtol=self.time_rtol,
        )


class HeatConductionParams(BaseModel):
    """Physical parameters of the heat-conduction problem.

    Attributes:
        diffusivity: Thermal diffusivity kappa.
        fourier: Fourier number used by the step-size criterion.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    diffusivity: float = Field(default=1.0, gt=0.0, description="Thermal diffusivity")
    fourier: float = Field(default=0.25, gt=0.0, description="Fourier number")


def _read_section(path: str | Path, key: str) -> dict[str, Any]:
    """Read a YAML file and return the mapping under key (or the whole file)."""
    p = Path(path)
    with p.open(encoding="utf-8") as fh:
        data = YAML(typ="safe").load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(_YAML_MAPPING_ERROR.format(path=p, typ=type(data).__name__))
    if key not in data:
        return {} if any(s in data for s in _SECTIONS) else data
    section = data[key]
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(
            _YAML_SECTION_ERROR.format(path=p, key=key, typ=type(section).__name__)
        )
    return section


def load_settings(path: str | Path) -> SolverSettings:
    """Load SolverSettings from a YAML file.

    Args:
        path: YAML file path.

    Raises:
        ConfigurationError: If the file content is not a valid configuration.

    Returns:
        Validated SolverSettings.
    """
    raw = _read_section(path, "solver")
    try:
        return SolverSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(
            _VALIDATION_ERROR.format(path=path, what="solver settings", detail=exc)
        ) from exc


def load_params(path: str | Path) -> HeatConductionParams:
    """Load HeatConductionParams from a YAML file.

    Args:
        path: YAML file path.

    Raises:
        ConfigurationError: If the file content is not a valid parameter set.

    Returns:
        Validated HeatConductionParams.
    """
    raw = _read_section(path, "params")
    try:
        return HeatConductionParams.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(
            _VALIDATION_ERROR.format(path=path, what="parameters", detail=exc)
        ) from exc
