from __future__ import annotations

import sys

sys.path.insert(0, "src")

import numpy as np
import pytest

from drop_impact.core.domain import OperatorKey, build_domain_operator
from drop_impact.core.engine import build_run_configuration
from drop_impact.core.integrator import ThetaIntegrator, oscillation_energy
from drop_impact.core.types import ProblemConstants, SimulationState


def _setup(theta: float = 0.5, gravity: float | None = None, n_modes: int = 8):
    params = {"domain_size": 4.0, "nr": 40, "truncation": 40, "n_modes": n_modes}
    if gravity is not None:
        params["fluid"] = {"gravity": gravity}
    cfg = build_run_configuration(params)
    constants = ProblemConstants.from_config(cfg)
    operator = build_domain_operator(OperatorKey.make(cfg.domain_size, cfg.nr, cfg.truncation))
    return ThetaIntegrator(theta, operator, constants, n_modes), constants


def _state(integ: ThetaIntegrator, **kwargs) -> SimulationState:
    base = dict(
        t=0.0,
        step=0,
        z=3.0,
        vz=0.0,
        amplitudes=np.zeros(integ.n_modes),
        velocities=np.zeros(integ.n_modes),
        eta=np.zeros(integ.nr),
        phi=np.zeros(integ.nr),
    )
    base.update(kwargs)
    return SimulationState(**base)


def test_free_oscillation_conserves_energy() -> None:
    integ, _ = _setup(theta=0.5, gravity=0.0)
    A = np.zeros(integ.n_modes)
    A[1] = 0.05   # l = 2
    A[4] = -0.01  # l = 5
    X = integ.pack(_state(integ, amplitudes=A))
    e0 = oscillation_energy(X[integ.amp], X[integ.vel])

    h = 0.02
    for _ in range(500):
        X = integ.solve(h, integ.free_rhs(X, h))
    e1 = oscillation_energy(X[integ.amp], X[integ.vel])
    assert e1 == pytest.approx(e0, rel=1e-10)
    # Droplet stays put without gravity or load
    assert X[integ.iz] == pytest.approx(3.0)


def test_mode_two_oscillation_frequency() -> None:
    integ, _ = _setup(theta=0.5, gravity=0.0)
    A = np.zeros(integ.n_modes)
    A[1] = 0.05
    X = integ.pack(_state(integ, amplitudes=A))
    h, n = 0.005, 200
    for _ in range(n):
        X = integ.solve(h, integ.free_rhs(X, h))
    omega = np.sqrt(2 * 1 * 4)
    assert X[integ.amp][1] == pytest.approx(0.05 * np.cos(omega * h * n), abs=5e-5)


def test_backward_euler_damps_oscillation() -> None:
    integ, _ = _setup(theta=1.0, gravity=0.0)
    A = np.zeros(integ.n_modes)
    A[1] = 0.05
    X = integ.pack(_state(integ, amplitudes=A))
    e0 = oscillation_energy(X[integ.amp], X[integ.vel])
    for _ in range(100):
        X = integ.solve(0.05, integ.free_rhs(X, 0.05))
    assert oscillation_energy(X[integ.amp], X[integ.vel]) < e0


def test_free_fall_is_exact() -> None:
    integ, constants = _setup(theta=0.5)
    X = integ.pack(_state(integ, z=3.0, vz=-0.5))
    h, n = 0.01, 50
    for _ in range(n):
        X = integ.solve(h, integ.free_rhs(X, h))
    t = h * n
    assert X[integ.iz] == pytest.approx(3.0 - 0.5 * t - 0.5 * constants.bond * t**2, rel=1e-12)
    assert X[integ.ivz] == pytest.approx(-0.5 - constants.bond * t, rel=1e-12)
    # Bath stays flat
    np.testing.assert_allclose(X[integ.eta], 0.0, atol=1e-14)


def test_mode_one_stays_frozen() -> None:
    integ, _ = _setup()
    projection = np.ones((integ.n_modes, 3))
    G = integ.pressure_forcing(projection)
    assert G.shape == (integ.size, 3)
    assert np.all(G[integ.vel.start, :] == 0.0)
    np.testing.assert_allclose(G[integ.ivz, :], projection[0, :])
    np.testing.assert_allclose(G[integ.vel.start + 1, :], -2.0)
    np.testing.assert_allclose(np.diag(G[integ.phi.start : integ.phi.start + 3, :]), -1.0 / integ.constants.density_ratio)

    Y = integ.unit_responses(0.01, G)
    np.testing.assert_allclose(Y[integ.amp.start, :], 0.0, atol=1e-14)


def test_factorisations_are_cached_per_step_size() -> None:
    integ, _ = _setup()
    integ.factor(0.01)
    integ.factor(0.01)
    integ.factor(0.005)
    assert integ.n_lu == 2
    integ.reset_counters()
    assert integ.n_lu == 0


def test_pack_unpack_preserves_state() -> None:
    integ, _ = _setup()
    rng = np.random.default_rng(3)
    state = _state(
        integ,
        z=1.2,
        vz=-0.3,
        amplitudes=rng.standard_normal(integ.n_modes),
        velocities=rng.standard_normal(integ.n_modes),
        eta=rng.standard_normal(integ.nr),
        phi=rng.standard_normal(integ.nr),
    )
    back = integ.unpack(integ.pack(state), t=0.0, step=0, n_contact=0)
    np.testing.assert_array_equal(back.amplitudes, state.amplitudes)
    np.testing.assert_array_equal(back.phi, state.phi)
    assert back.z == state.z and back.vz == state.vz


def test_theta_out_of_range_warns(caplog) -> None:
    with caplog.at_level("WARNING", logger="drop_impact.core.integrator"):
        integ, _ = _setup(theta=0.3)
    assert "outside [0.5, 1]" in caplog.text
    assert integ.get_stability_info()["is_stable"] is False
