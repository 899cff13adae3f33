"""Exception taxonomy for the drop impact solver.

Every error raised by the physics core derives from :class:`DropImpactError`
and carries enough context to be written into an error record, because a
single run can take hours and must be diagnosable afterwards.

- :class:`GeometryDegenerateError`: the droplet shape broke down (negative
  radius, overhang, contact lookup outside the footprint).
- :class:`OperatorMismatchError` / :class:`OperatorNotFoundError`: the domain
  operator is absent or does not match the run (configuration errors).
- :class:`ContactConvergenceError`: the contact radius search found no
  admissible patch.
- :class:`StepRejected`: local error estimate too large; handled inside the
  integrator by step size reduction.
- :class:`SimulationFailedError`: retries exhausted; wraps the last cause.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class DropImpactError(RuntimeError):
    """Base class for all solver errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context)

    def to_diagnostics_dict(self) -> Dict[str, Any]:
        """Return a plain dict suitable for YAML/JSON error records."""
        diag: Dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": str(self),
        }
        for key, value in self.context.items():
            if hasattr(value, "tolist"):
                value = value.tolist()
            diag[key] = value
        return diag


class GeometryDegenerateError(DropImpactError):
    """The droplet surface is not a valid star-shaped, monotone lower surface."""


class OperatorMismatchError(DropImpactError):
    """A domain operator does not match the declared grid or truncation."""


class OperatorNotFoundError(DropImpactError):
    """No domain operator is stored under the requested key."""


class ContactConvergenceError(DropImpactError):
    """The contact patch search did not find an admissible contact radius."""


class StepRejected(DropImpactError):
    """The step error estimate exceeded the tolerance; retry with a smaller dt."""


class SimulationFailedError(DropImpactError):
    """A time step could not be completed after all allowed retries.

    Attributes
    ----------
    step_idx : int
        Index of the step that failed.
    t : float
        Nondimensional time of the last accepted state.
    dt : float
        Last step size attempted.
    cause : Exception or None
        The error raised by the final attempt. Solver errors keep their own
        diagnostics; anything else is recorded by type and message.
    """

    def __init__(
        self,
        message: str,
        *,
        step_idx: int,
        t: float,
        dt: float,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        super().__init__(message, step_idx=step_idx, t=t, dt=dt, **context)
        self.step_idx = step_idx
        self.t = t
        self.dt = dt
        self.cause = cause

    def to_diagnostics_dict(self) -> Dict[str, Any]:
        diag = super().to_diagnostics_dict()
        if isinstance(self.cause, DropImpactError):
            diag["cause"] = self.cause.to_diagnostics_dict()
        elif self.cause is not None:
            diag["cause"] = {"error_type": type(self.cause).__name__, "message": str(self.cause)}
        return diag
