from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class ConfigBase(BaseModel):
    model_config = {"extra": "forbid"}


class DomainSpec(ConfigBase):
    size: float
    nr: int
    truncation: Optional[int] = None

    @field_validator("size")
    @classmethod
    def _size_positive(cls, value: float) -> float:
        if value <= 0.0:
            raise ValueError("size must be > 0")
        return value

    @field_validator("nr")
    @classmethod
    def _nr_min(cls, value: int) -> int:
        if value < 2:
            raise ValueError("nr must be >= 2")
        return value

    @field_validator("truncation")
    @classmethod
    def _truncation_positive(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("truncation must be >= 1")
        return value


class FluidSpec(ConfigBase):
    density: float = 1.0
    surface_tension: float = 72.20
    viscosity: float = 0.00978
    air_viscosity: float = 0.15
    gravity: Optional[float] = None

    @model_validator(mode="after")
    def _positive(self) -> "FluidSpec":
        if self.density <= 0.0:
            raise ValueError("density must be > 0")
        if self.surface_tension <= 0.0:
            raise ValueError("surface_tension must be > 0")
        if self.viscosity < 0.0 or self.air_viscosity < 0.0:
            raise ValueError("viscosities must be >= 0")
        if self.gravity is not None and self.gravity < 0.0:
            raise ValueError("gravity must be >= 0")
        return self


class SolidSpec(ConfigBase):
    density: float = 1.0
    surface_tension: float = 72.20

    @model_validator(mode="after")
    def _positive(self) -> "SolidSpec":
        if self.density <= 0.0:
            raise ValueError("density must be > 0")
        if self.surface_tension <= 0.0:
            raise ValueError("surface_tension must be > 0")
        return self


class RunConfig(ConfigBase):
    """Schema of a run configuration file (CGS inputs, times in capillary units)."""

    units: str = "CGS"
    case_name: Optional[str] = None
    notes: Optional[str] = None

    domain: Optional[DomainSpec] = None
    fluid: FluidSpec = Field(default_factory=FluidSpec)
    solid: SolidSpec = Field(default_factory=SolidSpec)

    radius: Optional[float] = None
    impact_speed: Optional[float] = None
    impact_angle_deg: Optional[float] = None
    initial_height: Optional[float] = None
    initial_amplitudes: Optional[List[float]] = None
    n_modes: Optional[int] = None

    tol: Optional[float] = None
    dt: Optional[float] = None
    t_end: Optional[float] = None
    theta: Optional[float] = None
    dt_min: Optional[float] = None
    max_step_halvings: Optional[int] = None
    grow_after: Optional[int] = None
    max_picard_iter: Optional[int] = None
    max_contact_jump: Optional[int] = None

    max_contact_iter: Optional[int] = None
    cusp_nodes: Optional[int] = None
    cusp_regularization: Optional[float] = None

    fail_policy: Literal["raise", "record"] = "raise"
    output_dir: Optional[str] = None

    @field_validator("units")
    @classmethod
    def _units_cgs(cls, value: str) -> str:
        if value != "CGS":
            raise ValueError("Only CGS units are supported currently")
        return value

    @field_validator("radius", "impact_speed", "tol", "dt", "t_end", "dt_min")
    @classmethod
    def _strictly_positive(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0.0:
            raise ValueError("must be > 0")
        return value

    @field_validator("n_modes")
    @classmethod
    def _modes_min(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 2:
            raise ValueError("n_modes must be >= 2")
        return value

    @field_validator("theta")
    @classmethod
    def _theta_range(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not (0.0 < value <= 1.0):
            raise ValueError("theta must be in (0, 1]")
        return value

    @field_validator("initial_height")
    @classmethod
    def _height_min(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value < 1.0:
            raise ValueError("initial_height must be >= 1 (droplet starts above the bath)")
        return value

    @model_validator(mode="after")
    def _amplitude_count(self) -> "RunConfig":
        if self.initial_amplitudes is not None and self.n_modes is not None:
            if len(self.initial_amplitudes) > self.n_modes:
                raise ValueError("initial_amplitudes has more entries than n_modes")
        return self


def format_validation_error(exc: ValidationError, *, filename: str) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", []))
        msg = error.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}")
    details = "; ".join(parts) if parts else str(exc)
    return f"{filename}: invalid configuration: {details}"
