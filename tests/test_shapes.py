from __future__ import annotations

import sys

sys.path.insert(0, "src")

import numpy as np
import pytest

from drop_impact.core.errors import GeometryDegenerateError
from drop_impact.core.shapes import (
    angle_from_cylindrical,
    footprint_radius,
    height_from_angle,
    horizontal_from_angle,
    legendre_table,
    lower_surface_profile,
    radius_from_angle,
)


def test_legendre_table_matches_numpy() -> None:
    mu = np.linspace(-1.0, 1.0, 41)
    table = legendre_table(mu, 12)
    for l in range(13):
        coeffs = np.zeros(l + 1)
        coeffs[l] = 1.0
        np.testing.assert_allclose(table[:, l], np.polynomial.legendre.legval(mu, coeffs), atol=1e-12)


def test_sphere_radius_and_height() -> None:
    angles = np.linspace(0.0, np.pi, 9)
    A = np.zeros(10)
    np.testing.assert_allclose(radius_from_angle(A, angles), 1.0)
    np.testing.assert_allclose(height_from_angle(A, angles, center=1.5), 1.5 - np.cos(angles))


def test_south_pole_radius_is_amplitude_sum() -> None:
    A = np.array([0.0, 0.05, -0.02, 0.01])
    assert float(radius_from_angle(A, 0.0)) == pytest.approx(1.0 + A.sum())
    # P_l(-1) = (-1)^l at the north pole
    signs = (-1.0) ** np.arange(1, A.size + 1)
    assert float(radius_from_angle(A, np.pi)) == pytest.approx(1.0 + np.dot(signs, A))


def test_sphere_footprint_is_unit_radius() -> None:
    assert footprint_radius(np.zeros(5)) == pytest.approx(1.0, abs=1e-9)


def test_angle_from_cylindrical_inverts_sphere() -> None:
    r = np.array([0.0, 0.1, 0.25, 0.5, 0.8])
    angles = angle_from_cylindrical(np.zeros(6), r)
    np.testing.assert_allclose(angles, np.arcsin(r), atol=1e-9)
    assert angle_from_cylindrical(np.zeros(6), 0.5) == pytest.approx(np.pi / 6, abs=1e-9)


def test_angle_from_cylindrical_is_monotone_and_consistent() -> None:
    A = np.zeros(8)
    A[1] = 0.12  # l = 2, flattened droplet
    A[3] = -0.03
    _, r_profile, k_foot = lower_surface_profile(A)
    r = np.linspace(0.0, 0.95 * r_profile[k_foot], 25)[::-1]  # unsorted input
    angles = angle_from_cylindrical(A, r)
    order = np.argsort(r)
    assert np.all(np.diff(angles[order]) >= 0.0)
    np.testing.assert_allclose(horizontal_from_angle(A, angles), r, atol=1e-9)


def test_angle_beyond_footprint_raises() -> None:
    with pytest.raises(GeometryDegenerateError):
        angle_from_cylindrical(np.zeros(4), 1.2)


def test_angle_below_previous_root_raises() -> None:
    with pytest.raises(GeometryDegenerateError) as exc_info:
        angle_from_cylindrical(np.zeros(4), 0.1, previous=0.5)
    assert exc_info.value.to_diagnostics_dict()["previous"] == 0.5


def test_receding_contact_radius_without_bound() -> None:
    A = np.zeros(6)
    A[1] = 0.05
    spreading = angle_from_cylindrical(A, 0.4)
    receding = angle_from_cylindrical(A, 0.2)
    assert receding < spreading
    assert float(horizontal_from_angle(A, receding)) == pytest.approx(0.2, abs=1e-9)
    with pytest.raises(GeometryDegenerateError):
        angle_from_cylindrical(A, 0.2, previous=spreading)


def test_negative_radius_is_degenerate() -> None:
    A = np.array([0.0, -2.0, 0.0])
    with pytest.raises(GeometryDegenerateError) as exc_info:
        lower_surface_profile(A)
    assert exc_info.value.context["min_radius"] < 0.0


def test_negative_cylindrical_radius_rejected() -> None:
    with pytest.raises(ValueError):
        angle_from_cylindrical(np.zeros(3), -0.1)
