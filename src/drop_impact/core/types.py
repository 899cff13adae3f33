"""Data model for the drop impact solver.

All dimensional inputs use CGS units (cm, g, s). The solver itself works in
droplet units: length R, time T = sqrt(rho_d R^3 / sigma_d) and pressure
sigma_d / R. Conversion happens exactly once, in :class:`ProblemConstants`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np
from scipy.constants import g as GRAVITY_SI

# cm/s^2
STANDARD_GRAVITY = GRAVITY_SI * 100.0


class RunStatus(str, Enum):
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    COMPLETED = "completed"
    ERROR_TERMINAL = "error_terminal"


class ContactVariant(str, Enum):
    """Which inner pressure solve the contact solver used."""

    STANDARD = "standard"
    CUSP = "cusp"


@dataclass(frozen=True)
class FluidProperties:
    """Bath liquid and surrounding air (CGS)."""

    density: float = 1.0
    surface_tension: float = 72.20
    viscosity: float = 0.00978  # kinematic, cm^2/s
    air_viscosity: float = 0.15  # kinematic, cm^2/s
    gravity: float = STANDARD_GRAVITY


@dataclass(frozen=True)
class SolidProperties:
    """Droplet liquid (CGS)."""

    density: float = 1.0
    surface_tension: float = 72.20


@dataclass(frozen=True)
class RunConfiguration:
    """Fully resolved, read-only input of a single run.

    Times (``dt``, ``t_end``, ``dt_min``) are in units of the capillary time
    T; ``initial_height`` and ``domain_size`` are in droplet radii.
    """

    # Domain
    domain_size: float
    nr: int
    truncation: int

    # Physics
    fluid: FluidProperties
    solid: SolidProperties
    radius: float  # cm
    impact_speed: float  # cm/s
    impact_angle_deg: float = 180.0
    n_modes: int = 21
    initial_height: float = 1.0
    initial_amplitudes: Tuple[float, ...] = ()

    # Integration
    tol: float = 5e-5
    dt: float = 1e-2
    t_end: float = 4.0
    theta: float = 0.5
    dt_min: float = 1e-6
    max_step_halvings: int = 8
    grow_after: int = 8
    max_picard_iter: int = 12
    max_contact_jump: int = 1

    # Contact search
    max_contact_iter: int = 40
    cusp_nodes: int = 2
    cusp_regularization: float = 1e-8

    # Output
    fail_policy: str = "raise"
    output_dir: Optional[str] = None

    @property
    def dr(self) -> float:
        return self.domain_size / self.nr

    def with_overrides(self, **changes: Any) -> "RunConfiguration":
        return replace(self, **changes)


@dataclass(frozen=True)
class ProblemConstants:
    """Derived nondimensional numbers and unit conventions of a run."""

    length_unit: float  # cm
    time_unit: float  # s
    velocity_unit: float  # cm/s
    pressure_unit: float  # dyn/cm^2
    mass_unit: float  # g
    weber: float
    bond: float
    ohnesorge_bath: float
    ohnesorge_air: float
    density_ratio: float
    surface_tension_ratio: float
    impact_velocity: float  # nondimensional, signed (negative = downward)
    n_modes: int
    tol: float
    impact_angle_deg: float
    impact_speed: float  # cm/s
    unit_convention: str = "CGS"

    @classmethod
    def from_config(cls, config: RunConfiguration) -> "ProblemConstants":
        rho_d = config.solid.density
        sigma_d = config.solid.surface_tension
        R = config.radius
        T = float(np.sqrt(rho_d * R**3 / sigma_d))
        U = R / T

        v_normal = config.impact_speed * float(np.cos(np.deg2rad(config.impact_angle_deg)))
        return cls(
            length_unit=R,
            time_unit=T,
            velocity_unit=U,
            pressure_unit=sigma_d / R,
            mass_unit=rho_d * R**3,
            weber=rho_d * config.impact_speed**2 * R / sigma_d,
            bond=rho_d * config.fluid.gravity * R**2 / sigma_d,
            ohnesorge_bath=config.fluid.viscosity * T / R**2,
            ohnesorge_air=config.fluid.air_viscosity * T / R**2,
            density_ratio=config.fluid.density / rho_d,
            surface_tension_ratio=config.fluid.surface_tension / sigma_d,
            impact_velocity=v_normal / U,
            n_modes=config.n_modes,
            tol=config.tol,
            impact_angle_deg=config.impact_angle_deg,
            impact_speed=config.impact_speed,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class SimulationState:
    """Snapshot of the coupled droplet/bath state at an accepted time level.

    ``amplitudes[k]`` and ``velocities[k]`` belong to Legendre mode
    ``l = k + 1``; mode 1 stays zero because translation is carried by ``z``.
    """

    t: float
    step: int
    z: float
    vz: float
    amplitudes: np.ndarray
    velocities: np.ndarray
    eta: np.ndarray
    phi: np.ndarray
    n_contact: int = 0

    @property
    def n_modes(self) -> int:
        return int(self.amplitudes.shape[0])

    @property
    def nr(self) -> int:
        return int(self.eta.shape[0])


@dataclass
class ContactSolution:
    """Result of one contact/pressure solve at a trial state.

    ``unknowns`` is the stacked end-of-step vector
    ``[eta, phi, amplitudes, velocities, z, vz]``.
    ``pressed`` marks the bath nodes held in kinematic match; nodes inside
    the patch that are not pressed carry zero pressure.
    """

    n_contact: int
    radius: float
    pressure: np.ndarray
    pressure_amplitudes: np.ndarray
    unknowns: np.ndarray
    residual: float
    converged: bool
    variant: ContactVariant = ContactVariant.STANDARD
    iterations: int = 0
    pressed: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))
    diagnostics: Dict[str, Any] = field(default_factory=dict)
