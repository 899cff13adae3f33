"""Accepted-step history, derived outputs and result persistence."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import yaml

from .domain import DomainOperator
from .integrator import oscillation_energy
from .types import ContactSolution, ProblemConstants, SimulationState

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    """Convert numpy scalars/arrays and enums to YAML-safe Python types."""
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "tolist"):
        return value.tolist()
    return value


class Trajectory:
    """Append-only record of accepted states.

    Each record holds the state scalars, the contact outcome and a few
    derived quantities; bath elevation profiles are kept separately because
    they are ``nr`` wide.
    """

    def __init__(self, constants: ProblemConstants, operator: DomainOperator):
        self.constants = constants
        self.operator = operator
        self.records: List[Dict[str, Any]] = []
        self.bath: List[np.ndarray] = []
        self.times: List[float] = []

    def __len__(self) -> int:
        return len(self.records)

    def append(
        self,
        state: SimulationState,
        solution: Optional[ContactSolution] = None,
        dt: float = 0.0,
    ) -> None:
        c = self.constants
        A = state.amplitudes
        modes = np.arange(1, A.size + 1)

        if solution is not None:
            radius = solution.radius
            pressure = solution.pressure
            p_amp = solution.pressure_amplitudes
            variant = solution.variant.value if solution.n_contact > 0 else ""
            n_pressed = int(np.count_nonzero(solution.pressed))
        else:
            radius = 0.0
            pressure = np.zeros(self.operator.nr)
            p_amp = np.zeros(A.size)
            variant = ""
            n_pressed = 0

        record: Dict[str, Any] = {
            "step": state.step,
            "t": state.t,
            "dt": dt,
            "z": state.z,
            "vz": state.vz,
            "n_contact": state.n_contact,
            "n_pressed": n_pressed,
            "contact_radius": radius,
            "max_pressure": float(np.max(pressure)) if pressure.size else 0.0,
            "pressure_force": self.operator.integrate(pressure),
            "oscillation_energy": oscillation_energy(A, state.velocities),
            "south_pole_radius": 1.0 + float(np.sum(A)),
            "north_pole_radius": 1.0 + float(np.sum(A * (-1.0) ** modes)),
            "bath_center": float(state.eta[0]),
            "variant": variant,
            # Dimensional (CGS)
            "t_s": state.t * c.time_unit,
            "z_cm": state.z * c.length_unit,
            "vz_cm_s": state.vz * c.velocity_unit,
            "contact_radius_cm": radius * c.length_unit,
        }
        for l, a in zip(modes, A):
            record[f"A_{l}"] = float(a)
        for l, p in zip(modes, np.resize(p_amp, A.size)):
            record[f"p_{l}"] = float(p)

        self.records.append(record)
        self.bath.append(np.array(state.eta, dtype=float))
        self.times.append(state.t)

    # ----------------------------------------------------------------
    # Tables
    # ----------------------------------------------------------------
    def to_dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame.from_records(self.records)
        df.attrs["constants"] = self.constants.as_dict()
        df.attrs["operator_key"] = tuple(self.operator.key)
        df.attrs["n_steps"] = len(self.records)
        return df

    def bath_dataframe(self) -> pd.DataFrame:
        columns = [f"eta_{i:04d}" for i in range(self.operator.nr)]
        if self.bath:
            df = pd.DataFrame(np.vstack(self.bath), columns=columns)
        else:
            df = pd.DataFrame(columns=columns)
        df.insert(0, "t", self.times)
        df.attrs["r"] = self.operator.r.tolist()
        return df

    def summary(self) -> Dict[str, Any]:
        return summarize(self.to_dataframe(), self.constants)


def summarize(df: pd.DataFrame, constants: ProblemConstants) -> Dict[str, Any]:
    """Contact time, spreading and rebound metrics of a trajectory.

    The restitution coefficient is the ratio of the vertical velocity at
    lift-off to the impact velocity; it is only defined when contact ends
    within the simulated window.
    """
    out: Dict[str, Any] = {
        "n_steps": int(len(df)),
        "contact_time": 0.0,
        "contact_time_s": 0.0,
        "max_contact_radius": 0.0,
        "max_contact_radius_cm": 0.0,
        "max_pressure": 0.0,
        "restitution_coefficient": None,
        "lift_off": False,
        "outcome": "no-contact",
    }
    if df.empty:
        return out

    t = df["t"].to_numpy()
    vz = df["vz"].to_numpy()
    in_contact = df["n_contact"].to_numpy() > 0

    out["max_contact_radius"] = float(df["contact_radius"].max())
    out["max_contact_radius_cm"] = out["max_contact_radius"] * constants.length_unit
    out["max_pressure"] = float(df["max_pressure"].max())
    out["final_vz"] = float(vz[-1])
    if not in_contact.any():
        return out

    first = int(np.argmax(in_contact))
    released = np.flatnonzero(~in_contact[first:])
    if released.size:
        end = first + int(released[0])
        out["lift_off"] = True
        out["contact_time"] = float(t[end] - t[first])
        if abs(constants.impact_velocity) > 0.0:
            out["restitution_coefficient"] = float(vz[end] / abs(constants.impact_velocity))
        out["outcome"] = "rebound" if vz[end] > 0.0 else "coalescence-or-bounded"
    else:
        out["contact_time"] = float(t[-1] - t[first])
        out["outcome"] = "coalescence-or-bounded"
    out["contact_time_s"] = out["contact_time"] * constants.time_unit
    return out


def write_outputs(
    output_dir: Path,
    trajectory: Trajectory,
    *,
    status: str,
    metadata: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
) -> Path:
    """Write ``trajectory.csv``, ``bath.csv``, ``summary.yml`` and, on failure, ``error.yml``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    trajectory.to_dataframe().to_csv(output_dir / "trajectory.csv", index=False)
    trajectory.bath_dataframe().to_csv(output_dir / "bath.csv", index=False)

    summary = {
        "status": status,
        "constants": trajectory.constants.as_dict(),
        "operator_key": list(trajectory.operator.key),
        "summary": trajectory.summary(),
    }
    if metadata:
        summary["run"] = metadata
    (output_dir / "summary.yml").write_text(
        yaml.safe_dump(_plain(summary), sort_keys=False), encoding="utf-8"
    )

    if error is not None:
        (output_dir / "error.yml").write_text(
            yaml.safe_dump(_plain(error), sort_keys=False), encoding="utf-8"
        )
        logger.info("Wrote error record and partial trajectory to %s", output_dir)
    else:
        logger.info("Wrote results to %s", output_dir)
    return output_dir
