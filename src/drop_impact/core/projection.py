"""Projection of physical-space samples onto the truncated Legendre basis.

For a field ``f(theta)`` on the droplet surface the mode amplitudes are

    c_l = (2l + 1)/2 * integral_0^pi f(theta) P_l(cos theta) sin(theta) dtheta

for ``l = 1..N``. Mode 0 is dropped: it carries no dynamics for an
incompressible droplet. Truncation above ``N`` is intentional.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .shapes import angle_from_cylindrical, horizontal_from_angle, legendre_table, lower_surface_profile

POINTS_PER_CELL = 8


@dataclass(frozen=True)
class AngularGrid:
    """Quadrature nodes in ``theta`` with weights for the measure ``sin(theta) dtheta``."""

    angles: np.ndarray
    weights: np.ndarray

    @property
    def size(self) -> int:
        return int(self.angles.size)


def angular_grid(n: int) -> AngularGrid:
    """Gauss–Legendre grid in ``mu = cos(theta)`` over the whole sphere.

    Exact for projecting any expansion of degree ``<= 2n - 1 - l``, so
    ``n >= N + 1`` nodes make projection a left inverse of evaluation.
    """
    mu, w = np.polynomial.legendre.leggauss(int(n))
    order = np.argsort(-mu)
    return AngularGrid(angles=np.arccos(mu[order]), weights=w[order])


def patch_grid(edges, points_per_cell: int = POINTS_PER_CELL) -> AngularGrid:
    """Composite Gauss grid in ``theta`` over consecutive cells ``[edges[k], edges[k+1]]``.

    A scalar ``edges`` is read as ``theta_max`` and gives a single cell
    ``[0, theta_max]``.
    """
    edges = np.asarray(edges, dtype=float)
    if edges.ndim == 0:
        edges = np.array([0.0, float(edges)])
    x, w = np.polynomial.legendre.leggauss(points_per_cell)
    a = edges[:-1, None]
    half = 0.5 * (edges[1:, None] - a)
    angles = (a + half * (x[None, :] + 1.0)).ravel()
    weights = (half * w[None, :]).ravel() * np.sin(angles)
    return AngularGrid(angles=angles, weights=weights)


def project_amplitudes(values: np.ndarray, grid: AngularGrid, n_modes: int) -> np.ndarray:
    """Project samples on ``grid`` onto modes ``l = 1..n_modes``.

    ``values`` may be of shape ``(grid.size,)`` or ``(grid.size, m)``; the
    result has shape ``(n_modes,)`` or ``(n_modes, m)``.
    """
    values = np.asarray(values, dtype=float)
    if values.shape[0] != grid.size:
        raise ValueError(
            f"expected {grid.size} samples on the angular grid, got {values.shape[0]}"
        )
    table = legendre_table(np.cos(grid.angles), n_modes)[:, 1:]
    l = np.arange(1, n_modes + 1, dtype=float)
    weighted = values * (grid.weights if values.ndim == 1 else grid.weights[:, None])
    coeffs = table.T @ weighted
    scale = 0.5 * (2.0 * l + 1.0)
    return coeffs * (scale if coeffs.ndim == 1 else scale[:, None])


def hat_functions(r_nodes: np.ndarray, n_patch: int, r_eval: np.ndarray) -> np.ndarray:
    """Piecewise-linear hat functions of the first ``n_patch`` nodes, shape (len(r_eval), n_patch).

    A pressure built from these hats vanishes continuously at ``r_nodes[n_patch]``.
    """
    dr = float(r_nodes[1] - r_nodes[0])
    dist = np.abs(np.asarray(r_eval, dtype=float)[:, None] - r_nodes[None, :n_patch])
    return np.clip(1.0 - dist / dr, 0.0, None)


def pressure_projection_matrix(
    amplitudes: np.ndarray,
    r_nodes: np.ndarray,
    n_patch: int,
    n_modes: int,
) -> np.ndarray:
    """Matrix mapping patch pressure samples to pressure amplitudes, shape (n_modes, n_patch).

    The pressure is a hat-function interpolant on the bath grid, carried onto
    the droplet surface through the current shape. Integration cells follow
    the grid nodes so that the kinks of the hats fall on cell edges.
    """
    if n_patch <= 0:
        return np.zeros((n_modes, 0))

    _, r_profile, k_foot = lower_surface_profile(amplitudes)
    r_foot = float(r_profile[k_foot])
    dr = float(r_nodes[1] - r_nodes[0])
    r_edges = np.minimum(np.arange(n_patch + 1) * dr, r_foot)
    edges = np.asarray(angle_from_cylindrical(amplitudes, r_edges), dtype=float)

    grid = patch_grid(edges)
    r_eval = horizontal_from_angle(amplitudes, grid.angles)
    hats = hat_functions(r_nodes, n_patch, r_eval)
    return project_amplitudes(hats, grid, n_modes)


def project_pressure(
    pressure: np.ndarray,
    amplitudes: np.ndarray,
    r_nodes: np.ndarray,
    n_patch: int,
    n_modes: int,
) -> np.ndarray:
    """Pressure amplitudes ``p_l`` (``l = 1..n_modes``) of a patch pressure field."""
    if n_patch <= 0:
        return np.zeros(n_modes)
    matrix = pressure_projection_matrix(amplitudes, r_nodes, n_patch, n_modes)
    return matrix @ np.asarray(pressure, dtype=float)[:n_patch]
