# src/drop_impact/cli.py

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import numpy as np
import typer

from .config import ConfigError, load_run_config
from .core.engine import build_run_configuration, run_simulation
from .core.errors import DropImpactError
from .core.types import ProblemConstants

app = typer.Typer(
    add_completion=False,
    help=(
        "Droplet impact simulator CLI\n\n"
        "Simulate a droplet bouncing on a deep liquid bath with a kinematic-match\n"
        "contact model. Use 'run' for a single impact and 'constants' to inspect\n"
        "the nondimensional numbers of a configuration."
    ),
)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _ensure_output_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _setup_logger(output_dir: Path, log_stem: str, verbose: bool = False) -> logging.Logger:
    """
    Route package logging to <output_dir>/<log_stem>.log.
    """
    _ensure_output_dir(output_dir)
    logger = logging.getLogger("drop_impact")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers.clear()

    log_file = output_dir / f"{log_stem}.log"
    handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger


def _print_and_log(logger: logging.Logger, msg: str) -> None:
    typer.echo(msg)
    logger.info(msg)


def _load_overrides(config: Optional[Path]) -> dict:
    if config is None:
        return {}
    try:
        return load_run_config(config)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _ascii_plot(
    x: np.ndarray,
    y: np.ndarray,
    y_label: str,
    x_label: str,
    width: int = 70,
    height: int = 20,
) -> str:
    """
    Very simple ASCII plot of y(x).
    """
    if len(x) == 0 or len(y) == 0:
        return ""

    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)

    x_min = float(np.min(x))
    x_max = float(np.max(x))
    if x_max <= x_min:
        x_min, x_max = 0.0, 1.0

    y_min = float(np.min(y))
    y_max = float(np.max(y))
    if y_max <= y_min:
        y_max = y_min + 1.0

    grid = [[" " for _ in range(width)] for _ in range(height)]

    for xi, yi in zip(x, y):
        cx = (xi - x_min) / (x_max - x_min + 1e-12)
        cy = (yi - y_min) / (y_max - y_min + 1e-12)
        col = int(cx * (width - 1))
        row = int(cy * (height - 1))
        row_idx = height - 1 - row
        if 0 <= row_idx < height and 0 <= col < width:
            grid[row_idx][col] = "*"

    lines = [f"# {y_label} ({y_min:.3g} – {y_max:.3g})"]
    for r in grid:
        lines.append("".join(r).rstrip())
    lines.append(f"# {x_label} ({x_min:.3g} – {x_max:.3g})")
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


@app.command()
def run(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="YAML/JSON run configuration. Missing keys use the water-on-water baseline.",
    ),
    output_dir: Path = typer.Option(
        Path("results"),
        "--output-dir",
        "-o",
        help="Directory for result files.",
    ),
    impact_speed: Optional[float] = typer.Option(
        None,
        "--speed",
        "-v",
        help="Impact speed in cm/s (overrides the config).",
    ),
    n_modes: Optional[int] = typer.Option(
        None,
        "--modes",
        "-n",
        help="Number of Legendre shape modes (overrides the config).",
    ),
    t_end: Optional[float] = typer.Option(
        None,
        "--t-end",
        help="Simulated time in capillary units (overrides the config).",
    ),
    ascii_plot: bool = typer.Option(
        False,
        "--ascii-plot",
        help="Print an ASCII plot of the center height vs time.",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log step rejections."),
) -> None:
    """
    Run a single droplet impact simulation.

    Examples
    --------
        drop-impact run --speed 44.52 --output-dir results/water

        drop-impact run -c configs/water.yml -o results/water --ascii-plot
    """
    logger = _setup_logger(output_dir, "run", verbose=verbose)

    params = _load_overrides(config)
    if config is not None:
        _print_and_log(logger, f"Loaded config: {config}")
    if impact_speed is not None:
        params["impact_speed"] = impact_speed
    if n_modes is not None:
        params["n_modes"] = n_modes
    if t_end is not None:
        params["t_end"] = t_end
    params["output_dir"] = str(output_dir)

    _print_and_log(logger, "Running simulation ...")
    t0 = time.perf_counter()
    try:
        result = run_simulation(params)
    except DropImpactError as exc:
        _print_and_log(logger, f"Simulation failed: {exc}")
        typer.echo(f"Error record and partial results written to {output_dir}")
        raise typer.Exit(code=1)
    wall_time = time.perf_counter() - t0

    summary = result.summary
    _print_and_log(logger, f"Status: {result.status.value} ({wall_time:.1f} s wall time)")
    for key in ("outcome", "contact_time", "contact_time_s", "max_contact_radius_cm",
                "restitution_coefficient"):
        _print_and_log(logger, f"  {key}: {summary.get(key)}")

    if ascii_plot:
        df = result.dataframe
        typer.echo(_ascii_plot(df["t"].to_numpy(), df["z"].to_numpy(), "z [R]", "t [T]"))

    typer.echo(f"\nResults written to {output_dir}")


@app.command()
def constants(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="YAML/JSON run configuration.",
    ),
    impact_speed: Optional[float] = typer.Option(None, "--speed", "-v", help="Impact speed in cm/s."),
) -> None:
    """Print units and nondimensional numbers of a configuration."""
    params = _load_overrides(config)
    if impact_speed is not None:
        params["impact_speed"] = impact_speed
    cfg = build_run_configuration(params)
    for key, value in ProblemConstants.from_config(cfg).as_dict().items():
        if isinstance(value, float):
            typer.echo(f"{key:>24s} = {value:.6g}")
        else:
            typer.echo(f"{key:>24s} = {value}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
