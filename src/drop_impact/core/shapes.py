"""Droplet shape representation on a truncated Legendre basis.

The droplet is axisymmetric, so the spherical-harmonic expansion reduces to
Legendre polynomials. The polar angle ``theta`` is measured from the
*downward* vertical, i.e. ``theta = 0`` is the south pole where the droplet
first touches the bath. In droplet radii,

    rho(theta) = 1 + sum_{l=1..N} A_l P_l(cos theta)

A point of the surface sits at horizontal distance ``rho sin theta`` from
the axis and at height ``z - rho cos theta`` when the center of mass is at
height ``z`` above the undisturbed bath.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np
from scipy.optimize import brentq

from .errors import GeometryDegenerateError

ArrayLike = Union[float, np.ndarray]

# Angular sampling used to locate the footprint and bracket inverse lookups
PROFILE_SAMPLES = 4001
ZERO_RADIUS = 1e-14
ROOT_TOL = 1e-12


def legendre_table(mu: np.ndarray, n_modes: int) -> np.ndarray:
    """Return ``P_l(mu)`` for ``l = 0..n_modes`` as an array of shape (len(mu), n_modes+1).

    Uses the three-term recurrence, which stays stable for ``|mu| -> 1``.
    """
    mu = np.asarray(mu, dtype=float).ravel()
    table = np.empty((mu.size, n_modes + 1), dtype=float)
    table[:, 0] = 1.0
    if n_modes >= 1:
        table[:, 1] = mu
    for l in range(1, n_modes):
        table[:, l + 1] = ((2 * l + 1) * mu * table[:, l] - l * table[:, l - 1]) / (l + 1)
    return table


def evaluate_amplitudes(amplitudes: np.ndarray, angles: ArrayLike) -> np.ndarray:
    """Evaluate ``sum_{l>=1} A_l P_l(cos theta)`` at the given angles."""
    amplitudes = np.asarray(amplitudes, dtype=float)
    angles = np.asarray(angles, dtype=float)
    table = legendre_table(np.cos(angles), amplitudes.size)
    return (table[:, 1:] @ amplitudes).reshape(angles.shape)


def radius_from_angle(amplitudes: np.ndarray, angles: ArrayLike) -> np.ndarray:
    """Distance from the droplet center to its surface at polar angle ``theta``."""
    return 1.0 + evaluate_amplitudes(amplitudes, angles)


def horizontal_from_angle(amplitudes: np.ndarray, angles: ArrayLike) -> np.ndarray:
    """Cylindrical radius ``rho(theta) sin(theta)`` of the surface point."""
    angles = np.asarray(angles, dtype=float)
    return radius_from_angle(amplitudes, angles) * np.sin(angles)


def height_from_angle(
    amplitudes: np.ndarray,
    angles: ArrayLike,
    center: float = 0.0,
) -> np.ndarray:
    """Vertical coordinate ``center - rho(theta) cos(theta)`` of the surface point."""
    angles = np.asarray(angles, dtype=float)
    return center - radius_from_angle(amplitudes, angles) * np.cos(angles)


def lower_surface_profile(
    amplitudes: np.ndarray,
    n_samples: int = PROFILE_SAMPLES,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """Sample the lower surface and locate its footprint.

    Returns
    -------
    theta : np.ndarray
        Sample angles on ``[0, pi]``.
    r : np.ndarray
        Cylindrical radius at each sample.
    k_foot : int
        Index of the first local maximum of ``r``; on ``theta[:k_foot+1]``
        the lower surface is a graph over the bath.

    Raises
    ------
    GeometryDegenerateError
        If the surface radius is not positive everywhere.
    """
    theta = np.linspace(0.0, np.pi, n_samples)
    rho = radius_from_angle(amplitudes, theta)
    if not np.all(np.isfinite(rho)):
        raise GeometryDegenerateError("Droplet radius is not finite", min_radius=float("nan"))
    if np.min(rho) <= 0.0:
        raise GeometryDegenerateError(
            "Droplet radius became non-positive",
            min_radius=float(np.min(rho)),
            theta_at_min=float(theta[int(np.argmin(rho))]),
        )
    r = rho * np.sin(theta)
    decreasing = np.flatnonzero(np.diff(r) <= 0.0)
    k_foot = int(decreasing[0]) if decreasing.size else n_samples - 1
    return theta, r, k_foot


def footprint_radius(amplitudes: np.ndarray) -> float:
    """Largest cylindrical radius reachable along the lower surface."""
    _, r, k_foot = lower_surface_profile(amplitudes)
    return float(r[k_foot])


def angle_from_cylindrical(
    amplitudes: np.ndarray,
    r: ArrayLike,
    previous: Optional[float] = None,
) -> ArrayLike:
    """Invert ``r = rho(theta) sin(theta)`` on the lower surface.

    Parameters
    ----------
    amplitudes : np.ndarray
        Shape amplitudes for modes ``l = 1..N``.
    r : float or np.ndarray
        Cylindrical radii (droplet radii). Arrays are processed in ascending
        order and each root is sought at or above the previous one, so the
        returned angles are non-decreasing in ``r``.
    previous : float, optional
        Lower bound for the first root. Monotonicity is enforced within one
        call only; the contact solver looks angles up afresh on every frozen
        geometry and passes no bound, since the contact line recedes during
        rebound.

    Returns
    -------
    float or np.ndarray
        Polar angle(s) measured from the south pole.

    Raises
    ------
    GeometryDegenerateError
        If no admissible root exists: the radius lies beyond the footprint,
        or the root would be below ``previous``.
    """
    r_arr = np.atleast_1d(np.asarray(r, dtype=float))
    if np.any(r_arr < 0.0):
        raise ValueError("cylindrical radius must be non-negative")

    theta_grid, r_grid, k_foot = lower_surface_profile(amplitudes)
    r_foot = r_grid[k_foot]

    lower = 0.0 if previous is None else float(previous)
    if lower > theta_grid[k_foot]:
        raise GeometryDegenerateError(
            "Previous contact angle lies beyond the droplet footprint",
            previous=lower,
            footprint_angle=float(theta_grid[k_foot]),
        )
    out = np.empty_like(r_arr)

    def _residual(angle: float, target: float) -> float:
        return float(horizontal_from_angle(amplitudes, angle)) - target

    for idx in np.argsort(r_arr, kind="stable"):
        target = float(r_arr[idx])
        if target <= ZERO_RADIUS and lower == 0.0:
            out[idx] = 0.0
            continue
        if target > r_foot:
            raise GeometryDegenerateError(
                "No lower-surface point at this cylindrical radius",
                r=target,
                footprint=float(r_foot),
            )
        if _residual(lower, target) > ROOT_TOL:
            raise GeometryDegenerateError(
                "Contact angle would decrease below the previous root",
                r=target,
                previous=lower,
            )

        j = int(np.searchsorted(r_grid[: k_foot + 1], target, side="left"))
        j = min(max(j, 1), k_foot)
        left = max(lower, float(theta_grid[j - 1]))
        right = float(theta_grid[j])
        if right <= left or _residual(right, target) < 0.0:
            right = float(theta_grid[k_foot])
        if abs(_residual(left, target)) <= ROOT_TOL:
            root = left
        else:
            root = brentq(_residual, left, right, args=(target,), xtol=1e-14, rtol=1e-12)
        out[idx] = root
        lower = root

    if np.ndim(r) == 0:
        return float(out[0])
    return out
