"""
Droplet impact simulation engine.

The engine owns the time loop. Each step freezes the droplet geometry on a
predicted shape, lets the contact solver find the patch and pressure for
that geometry, and repeats until the shape stops changing (Picard
iteration). Steps whose geometry iteration does not settle, or in which more
than ``max_contact_jump`` bath nodes enter or leave contact, are rejected
and retried with half the step size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .contact import ContactSolver
from .domain import DomainOperator, OperatorKey, OperatorStore
from .errors import (
    ContactConvergenceError,
    DropImpactError,
    GeometryDegenerateError,
    SimulationFailedError,
    StepRejected,
)
from .integrator import ThetaIntegrator
from .trajectory import Trajectory, write_outputs
from .types import (
    ContactSolution,
    FluidProperties,
    ProblemConstants,
    RunConfiguration,
    RunStatus,
    SimulationState,
    SolidProperties,
)

logger = logging.getLogger(__name__)

FAIL_POLICIES = ("raise", "record")


@dataclass
class RunResult:
    """Outcome of a run: final status, accepted trajectory and error (if any)."""

    status: RunStatus
    config: RunConfiguration
    constants: ProblemConstants
    trajectory: Trajectory
    final_state: SimulationState
    error: Optional[SimulationFailedError] = None
    output_dir: Optional[Path] = None

    @property
    def dataframe(self) -> pd.DataFrame:
        df = self.trajectory.to_dataframe()
        df.attrs["status"] = self.status.value
        return df

    @property
    def summary(self) -> Dict[str, Any]:
        return self.trajectory.summary()


class ImpactSimulator:
    """Adaptive θ-scheme driver for the coupled droplet/bath problem.

    Status moves ``INITIALIZED -> STEPPING -> COMPLETED`` or ends in
    ``ERROR_TERMINAL`` when a step cannot be completed.

    Parameters
    ----------
    config : RunConfiguration
        Resolved run input.
    operator : DomainOperator, optional
        Precomputed bath operator. Checked against the configuration before
        any stepping.
    store : OperatorStore, optional
        Where to look up (or build) the operator when none is given.
    """

    def __init__(
        self,
        config: RunConfiguration,
        operator: Optional[DomainOperator] = None,
        store: Optional[OperatorStore] = None,
    ):
        if config.fail_policy not in FAIL_POLICIES:
            raise ValueError(
                f"fail_policy must be one of {FAIL_POLICIES}, got {config.fail_policy!r}"
            )
        self.config = config
        self.constants = ProblemConstants.from_config(config)
        self.key = OperatorKey.make(config.domain_size, config.nr, config.truncation)

        if operator is None:
            operator = (store if store is not None else OperatorStore()).get_or_build(self.key)
        self.operator = operator.validate(self.key)

        self.integrator = ThetaIntegrator(
            config.theta, self.operator, self.constants, config.n_modes
        )
        self.contact = ContactSolver(
            self.operator,
            self.integrator,
            tol=config.tol,
            max_iter=config.max_contact_iter,
            cusp_nodes=config.cusp_nodes,
            cusp_regularization=config.cusp_regularization,
        )

        # Performance counters
        self.n_accepted: int = 0
        self.n_rejected: int = 0
        self.total_picard: int = 0
        self.max_picard_per_step: int = 0
        self.min_dt: float = config.dt

        self.status = RunStatus.INITIALIZED
        self.setup()

    # ----------------------------------------------------------------
    # SETUP
    # ----------------------------------------------------------------
    def setup(self):
        """Build the initial state and the empty trajectory."""
        cfg = self.config
        if abs(cfg.impact_angle_deg - 180.0) > 1e-12:
            logger.warning(
                "Impact angle %.1f deg is not vertical; only the normal velocity "
                "component %.4g is simulated.",
                cfg.impact_angle_deg,
                self.constants.impact_velocity,
            )

        N = cfg.n_modes
        amplitudes = np.zeros(N)
        given = np.asarray(cfg.initial_amplitudes, dtype=float)[:N]
        amplitudes[: given.size] = given
        if N >= 1 and amplitudes[0] != 0.0:
            logger.warning("Ignoring initial amplitude of mode l=1; translation is carried by z.")
            amplitudes[0] = 0.0

        self.state = SimulationState(
            t=0.0,
            step=0,
            z=float(cfg.initial_height),
            vz=float(self.constants.impact_velocity),
            amplitudes=amplitudes,
            velocities=np.zeros(N),
            eta=np.zeros(self.operator.nr),
            phi=np.zeros(self.operator.nr),
            n_contact=0,
        )
        # Nodes in kinematic match at the last accepted step
        self.pressed_nodes = np.zeros(self.operator.nr, dtype=bool)
        self.trajectory = Trajectory(self.constants, self.operator)
        self.trajectory.append(self.state)

    # ----------------------------------------------------------------
    # STEP
    # ----------------------------------------------------------------
    def step(self, state: SimulationState, h: float) -> Tuple[SimulationState, ContactSolution]:
        """Attempt one step of size ``h`` from ``state``.

        Raises
        ------
        StepRejected
            Geometry iteration did not settle or the contact patch jumped.
        ContactConvergenceError
            No admissible contact patch for some frozen geometry.
        GeometryDegenerateError
            The predicted droplet shape is invalid.
        """
        cfg = self.config
        integ = self.integrator
        X_n = integ.pack(state)
        A_guess, _ = integ.predict(state, h)

        q_guess = state.n_contact
        solution: Optional[ContactSolution] = None
        increment = np.inf
        it = 0
        for it in range(1, cfg.max_picard_iter + 1):
            problem = self.contact.prepare(X_n, h, A_guess)
            try:
                solution = self.contact.solve(problem, q_start=q_guess)
            except np.linalg.LinAlgError as exc:
                raise StepRejected("Singular contact system", h=h, iteration=it) from exc

            A_new = solution.unknowns[integ.amp]
            increment = float(np.max(np.abs(A_new - A_guess)))
            A_guess = A_new
            q_guess = solution.n_contact
            if increment <= cfg.tol:
                break
        else:
            raise StepRejected(
                "Geometry iteration did not converge",
                h=h,
                increment=increment,
                iterations=cfg.max_picard_iter,
            )

        self.total_picard += it
        self.max_picard_per_step = max(self.max_picard_per_step, it)

        changed = int(np.count_nonzero(solution.pressed != self.pressed_nodes))
        if changed > cfg.max_contact_jump:
            raise StepRejected(
                "Contact patch changed too much in one step",
                h=h,
                changed_nodes=changed,
                n_contact=solution.n_contact,
                previous=state.n_contact,
            )

        new_state = integ.unpack(
            solution.unknowns,
            t=state.t + h,
            step=state.step + 1,
            n_contact=solution.n_contact,
        )
        return new_state, solution

    # ----------------------------------------------------------------
    # RUN
    # ----------------------------------------------------------------
    def run(self) -> RunResult:
        """Step from ``t = 0`` to ``t_end`` with adaptive step size.

        With ``fail_policy="raise"`` a failed step persists the error record
        and partial trajectory (when ``output_dir`` is set) and re-raises
        :class:`SimulationFailedError`; with ``"record"`` the partial result is
        returned with status ``ERROR_TERMINAL``.
        """
        cfg = self.config
        logger.info(
            "Starting run: We=%.4g Bo=%.4g Oh=%.4g nr=%d N=%d dt=%.3g t_end=%.3g",
            self.constants.weber,
            self.constants.bond,
            self.constants.ohnesorge_bath,
            self.operator.nr,
            cfg.n_modes,
            cfg.dt,
            cfg.t_end,
        )
        self.status = RunStatus.STEPPING
        error: Optional[SimulationFailedError] = None
        try:
            self._advance()
        except SimulationFailedError as exc:
            self.status = RunStatus.ERROR_TERMINAL
            error = exc
            logger.error("Run failed at step %d (t=%.6g): %s", exc.step_idx, exc.t, exc)
        else:
            self.status = RunStatus.COMPLETED
            logger.info(
                "Run completed: %d accepted / %d rejected steps, n_lu=%d",
                self.n_accepted,
                self.n_rejected,
                self.integrator.n_lu,
            )

        result = RunResult(
            status=self.status,
            config=cfg,
            constants=self.constants,
            trajectory=self.trajectory,
            final_state=self.state,
            error=error,
        )
        if cfg.output_dir is not None:
            result.output_dir = write_outputs(
                Path(cfg.output_dir),
                self.trajectory,
                status=self.status.value,
                metadata=self.get_run_info(),
                error=error.to_diagnostics_dict() if error is not None else None,
            )
        if error is not None and cfg.fail_policy == "raise":
            raise error
        return result

    def _advance(self) -> None:
        cfg = self.config
        h = float(cfg.dt)
        streak = 0
        t_end = float(cfg.t_end)

        while True:
            remaining = t_end - self.state.t
            if remaining <= 1e-12 * max(1.0, t_end):
                break
            h_try = min(h, remaining)
            if remaining - h_try < 1e-9 * h_try:
                h_try = remaining

            halvings = 0
            while True:
                try:
                    new_state, solution = self.step(self.state, h_try)
                    break
                except (StepRejected, ContactConvergenceError) as exc:
                    self.n_rejected += 1
                    if halvings >= cfg.max_step_halvings or 0.5 * h_try < cfg.dt_min:
                        raise self._failed(
                            "Step could not be completed after reducing the step size",
                            h_try,
                            exc,
                            halvings=halvings,
                        ) from exc
                    logger.debug(
                        "Step %d rejected at h=%.3e (%s); halving",
                        self.state.step + 1,
                        h_try,
                        exc,
                    )
                    h_try *= 0.5
                    halvings += 1
                except GeometryDegenerateError as exc:
                    raise self._failed("Droplet geometry degenerated", h_try, exc) from exc
                except DropImpactError:
                    raise
                except Exception as exc:
                    raise self._failed("Unexpected error during step", h_try, exc) from exc

            self.state = new_state
            self.trajectory.append(new_state, solution, dt=h_try)
            self.pressed_nodes = solution.pressed
            self.n_accepted += 1
            self.min_dt = min(self.min_dt, h_try)

            if halvings:
                h = h_try
                streak = 0
            else:
                streak += 1
                if streak >= cfg.grow_after and h < cfg.dt:
                    h = min(2.0 * h, float(cfg.dt))
                    streak = 0

    def _failed(
        self, message: str, h: float, cause: BaseException, **context: Any
    ) -> SimulationFailedError:
        """Failure record for the step after the current state.

        ``halvings`` counts reductions within the failing step only; the
        step size may already have been reduced on earlier steps, so the
        overall reduction from the requested ``dt`` is recorded as well.
        """
        reduction = float(self.config.dt) / h
        return SimulationFailedError(
            message,
            step_idx=self.state.step + 1,
            t=self.state.t,
            dt=h,
            cause=cause,
            dt_requested=float(self.config.dt),
            dt_reduction=reduction,
            total_halvings=int(round(np.log2(reduction))),
            **context,
        )

    def get_run_info(self) -> Dict[str, Any]:
        """Solver statistics for the run record."""
        info = {
            "status": self.status.value,
            "n_accepted": self.n_accepted,
            "n_rejected": self.n_rejected,
            "n_lu": self.integrator.n_lu,
            "total_picard_iters": self.total_picard,
            "max_picard_per_step": self.max_picard_per_step,
            "dt_requested": self.config.dt,
            "dt_min_used": self.min_dt,
            "t_final": self.state.t,
        }
        info.update(self.integrator.get_stability_info())
        return info


# ====================================================================
# PUBLIC ENTRY POINT
# ====================================================================

def get_default_run_config() -> dict:
    """
    Baseline run: a 0.35 mm water droplet falling vertically onto a deep
    water bath at 44.52 cm/s (We ~ 0.96).

    Returned as a plain dict so it can be updated from YAML/JSON configs
    and then turned into a RunConfiguration.
    """
    return {
        # ------------------------------------------------------------------
        # Bath domain (droplet radii)
        # ------------------------------------------------------------------
        "domain_size": 8.0,
        "nr": 160,
        "truncation": 160,

        # ------------------------------------------------------------------
        # Fluids (CGS)
        # ------------------------------------------------------------------
        "fluid": {
            "density": 1.0,
            "surface_tension": 72.20,
            "viscosity": 0.00978,
            "air_viscosity": 0.15,
        },
        "solid": {
            "density": 1.0,
            "surface_tension": 72.20,
        },

        # ------------------------------------------------------------------
        # Impact
        # ------------------------------------------------------------------
        "radius": 0.035,             # [cm]
        "impact_speed": 44.52,       # [cm/s]
        "impact_angle_deg": 180.0,   # 180 = straight down
        "initial_height": 1.0,       # center height [R]; 1 = touching
        "initial_amplitudes": [],
        "n_modes": 21,

        # ------------------------------------------------------------------
        # Time integration controls
        # ------------------------------------------------------------------
        "tol": 5e-5,
        "dt": 1e-2,                  # [T]
        "t_end": 4.0,                # [T]
        "theta": 0.5,
        "dt_min": 1e-6,
        "max_step_halvings": 8,
        "grow_after": 8,
        "max_picard_iter": 12,
        "max_contact_jump": 1,

        # ------------------------------------------------------------------
        # Contact search
        # ------------------------------------------------------------------
        "max_contact_iter": 40,
        "cusp_nodes": 2,
        "cusp_regularization": 1e-8,

        # ------------------------------------------------------------------
        # Output
        # ------------------------------------------------------------------
        "fail_policy": "raise",
        "output_dir": None,
    }


def build_run_configuration(params: Dict[str, Any]) -> RunConfiguration:
    """Merge ``params`` over the defaults and build a RunConfiguration.

    Nested ``fluid`` / ``solid`` mappings are merged key by key. Unknown
    keys are dropped with a warning, except descriptive metadata keys.
    """
    raw = get_default_run_config()
    for key, value in (params or {}).items():
        if key in ("fluid", "solid") and isinstance(value, dict):
            raw[key] = {**raw[key], **value}
        else:
            raw[key] = value

    allowed = {f.name for f in fields(RunConfiguration)}
    extra_ok = {"case_name", "notes", "description", "title", "tags"}
    unknown = sorted(set(raw) - allowed)
    unknown_nonmeta = [k for k in unknown if k not in extra_ok]
    if unknown_nonmeta:
        logger.warning(
            "Ignoring %d unknown run configuration key(s): %s",
            len(unknown_nonmeta),
            ", ".join(unknown_nonmeta),
        )
    raw = {k: raw[k] for k in allowed if k in raw}

    coerced = _coerce_scalar_types(raw)
    return RunConfiguration(**coerced)


def run_simulation(
    params: RunConfiguration | Dict[str, Any],
    *,
    operator: Optional[DomainOperator] = None,
    store: Optional[OperatorStore] = None,
) -> RunResult:
    """
    High-level convenience wrapper.

    - If a dict is passed, it may contain only overrides; missing fields are
      filled from get_default_run_config().
    - A RunConfiguration is used as is.
    """
    if isinstance(params, RunConfiguration):
        config = params
    else:
        config = build_run_configuration(params)
    simulator = ImpactSimulator(config, operator=operator, store=store)
    return simulator.run()


_INT_KEYS = (
    "nr",
    "truncation",
    "n_modes",
    "max_step_halvings",
    "grow_after",
    "max_picard_iter",
    "max_contact_jump",
    "max_contact_iter",
    "cusp_nodes",
)
_FLOAT_KEYS = (
    "domain_size",
    "radius",
    "impact_speed",
    "impact_angle_deg",
    "initial_height",
    "tol",
    "dt",
    "t_end",
    "theta",
    "dt_min",
    "cusp_regularization",
)


def _coerce_scalar_types(base: dict) -> dict:
    """Normalise scalars coming from YAML/CLI (strings, numpy types) and build property records."""
    out = dict(base)

    def _to_float(val, name: str) -> float:
        if isinstance(val, (int, float, np.integer, np.floating)):
            return float(val)
        if isinstance(val, str):
            try:
                return float(val.strip())
            except ValueError as exc:
                raise ValueError(f"Parameter '{name}' must be numeric, got {val!r}") from exc
        raise TypeError(f"Parameter '{name}' must be numeric, got {type(val).__name__}")

    def _to_int(val, name: str) -> int:
        f = _to_float(val, name)
        if f != int(f):
            raise ValueError(f"Parameter '{name}' must be an integer, got {val!r}")
        return int(f)

    for key in _INT_KEYS:
        if key in out:
            out[key] = _to_int(out[key], key)
    for key in _FLOAT_KEYS:
        if key in out:
            out[key] = _to_float(out[key], key)

    if "fluid" in out and not isinstance(out["fluid"], FluidProperties):
        out["fluid"] = FluidProperties(
            **{k: _to_float(v, f"fluid.{k}") for k, v in dict(out["fluid"]).items()}
        )
    if "solid" in out and not isinstance(out["solid"], SolidProperties):
        out["solid"] = SolidProperties(
            **{k: _to_float(v, f"solid.{k}") for k, v in dict(out["solid"]).items()}
        )
    if "initial_amplitudes" in out:
        out["initial_amplitudes"] = tuple(
            _to_float(v, "initial_amplitudes") for v in (out["initial_amplitudes"] or ())
        )
    if out.get("output_dir") is not None:
        out["output_dir"] = str(out["output_dir"])
    return out


__all__ = [
    "DropImpactError",
    "ImpactSimulator",
    "RunResult",
    "build_run_configuration",
    "get_default_run_config",
    "run_simulation",
]
