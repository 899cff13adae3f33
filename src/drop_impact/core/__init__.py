"""Physics core: shapes, bath operator, contact solver and time integration."""

from .domain import DomainOperator, OperatorKey, OperatorStore, build_domain_operator
from .engine import ImpactSimulator, RunResult, get_default_run_config, run_simulation
from .errors import (
    ContactConvergenceError,
    DropImpactError,
    GeometryDegenerateError,
    OperatorMismatchError,
    OperatorNotFoundError,
    SimulationFailedError,
    StepRejected,
)
from .types import (
    ContactSolution,
    ContactVariant,
    FluidProperties,
    ProblemConstants,
    RunConfiguration,
    RunStatus,
    SimulationState,
    SolidProperties,
)

__all__ = [
    "ContactConvergenceError",
    "ContactSolution",
    "ContactVariant",
    "DomainOperator",
    "DropImpactError",
    "FluidProperties",
    "GeometryDegenerateError",
    "ImpactSimulator",
    "OperatorKey",
    "OperatorMismatchError",
    "OperatorNotFoundError",
    "OperatorStore",
    "ProblemConstants",
    "RunConfiguration",
    "RunResult",
    "RunStatus",
    "SimulationFailedError",
    "SimulationState",
    "SolidProperties",
    "StepRejected",
    "build_domain_operator",
    "get_default_run_config",
    "run_simulation",
]
