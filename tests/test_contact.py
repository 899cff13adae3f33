from __future__ import annotations

import sys

sys.path.insert(0, "src")

import numpy as np
import pytest

from drop_impact.core.contact import ContactSolver
from drop_impact.core.domain import OperatorKey, build_domain_operator
from drop_impact.core.engine import build_run_configuration
from drop_impact.core.errors import ContactConvergenceError
from drop_impact.core.integrator import ThetaIntegrator
from drop_impact.core.types import ContactVariant, ProblemConstants, SimulationState

N_MODES = 12


@pytest.fixture(scope="module")
def system():
    cfg = build_run_configuration(
        {"domain_size": 4.0, "nr": 80, "truncation": 80, "n_modes": N_MODES}
    )
    constants = ProblemConstants.from_config(cfg)
    operator = build_domain_operator(OperatorKey.make(cfg.domain_size, cfg.nr, cfg.truncation))
    integ = ThetaIntegrator(0.5, operator, constants, N_MODES)
    return cfg, operator, integ


def _solver(system, **kwargs) -> ContactSolver:
    cfg, operator, integ = system
    opts = dict(tol=cfg.tol, max_iter=cfg.max_contact_iter)
    opts.update(kwargs)
    return ContactSolver(operator, integ, **opts)


def _state(integ: ThetaIntegrator, z: float, vz: float) -> SimulationState:
    return SimulationState(
        t=0.0,
        step=0,
        z=z,
        vz=vz,
        amplitudes=np.zeros(N_MODES),
        velocities=np.zeros(N_MODES),
        eta=np.zeros(integ.nr),
        phi=np.zeros(integ.nr),
    )


def test_no_contact_above_the_bath(system) -> None:
    _, _, integ = system
    solver = _solver(system)
    X = integ.pack(_state(integ, z=2.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    sol = solver.solve(problem)

    assert sol.converged
    assert sol.n_contact == 0
    assert sol.radius == 0.0
    np.testing.assert_array_equal(sol.pressure, 0.0)
    np.testing.assert_allclose(sol.unknowns, problem.X0)


def test_first_contact_on_flat_bath(system) -> None:
    _, operator, integ = system
    solver = _solver(system)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    # Sphere footprint covers nodes with r < 1
    assert problem.q_max == 20

    sol = solver.solve(problem)
    assert sol.converged
    assert 1 <= sol.n_contact <= 6
    assert 0.0 < sol.radius <= problem.footprint
    assert sol.pressure.shape == (operator.nr,)
    np.testing.assert_array_equal(sol.pressure[sol.n_contact:], 0.0)
    assert sol.pressure[: sol.n_contact].min() >= -solver.tol * max(1.0, sol.pressure.max())
    # Net pressure pushes the droplet up and the bath down
    assert sol.pressure_amplitudes[0] > 0.0
    assert sol.unknowns[integ.ivz] > problem.X0[integ.ivz]
    assert sol.unknowns[integ.eta][0] < 0.0


def test_standard_and_cusp_agree_at_first_contact(system) -> None:
    _, _, integ = system
    solver = _solver(system)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    for q in (1, 2, 3):
        p_std = solver.solve_patch(problem, q, ContactVariant.STANDARD)
        p_cusp = solver.solve_patch(problem, q, ContactVariant.CUSP)
        np.testing.assert_allclose(p_cusp, p_std, rtol=1e-4, atol=1e-8)


def test_kinematic_match_holds_on_patch(system) -> None:
    _, _, integ = system
    solver = _solver(system)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    q = 4
    p = solver.solve_patch(problem, q, ContactVariant.STANDARD)
    gaps = problem.gap0 + problem.gap_response[:, :q] @ p
    np.testing.assert_allclose(gaps[:q], 0.0, atol=1e-10)


def test_variant_selection_by_geometry(system) -> None:
    solver = _solver(system, cusp_nodes=2)
    assert solver.select_variant(1, 20) is ContactVariant.CUSP
    assert solver.select_variant(2, 20) is ContactVariant.CUSP
    assert solver.select_variant(3, 20) is ContactVariant.STANDARD
    assert solver.select_variant(19, 20) is ContactVariant.CUSP


def test_search_budget_exhaustion_raises(system) -> None:
    _, _, integ = system
    solver = _solver(system, max_iter=1)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    with pytest.raises(ContactConvergenceError) as exc_info:
        solver.solve(problem, q_start=0)
    diag = exc_info.value.to_diagnostics_dict()
    assert diag["error_type"] == "ContactConvergenceError"
    assert diag["max_iter"] == 1


def test_search_result_independent_of_start(system) -> None:
    _, _, integ = system
    solver = _solver(system)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    low = solver.solve(problem, q_start=0)
    high = solver.solve(problem, q_start=problem.q_max)
    assert abs(low.n_contact - high.n_contact) <= 1


def test_dimpled_centre_is_released(system) -> None:
    _, operator, integ = system
    solver = _solver(system)
    eta = np.zeros(integ.nr)
    eta[0] = -0.01
    state = _state(integ, z=1.0, vz=-1.0)
    state.eta = eta
    problem = solver.prepare(integ.pack(state), 0.002, np.zeros(N_MODES))
    # Centre clear of the droplet, first ring penetrating
    assert problem.gap0[0] > solver.tol
    assert problem.gap0[1] < -solver.tol
    # Matching both nodes would need suction at the centre
    assert solver.solve_patch(problem, 2).min() < 0.0

    sol = solver.solve(problem, q_start=1)
    assert sol.converged
    assert sol.n_contact >= 2
    assert not sol.pressed[0]
    assert sol.pressed[1]
    assert sol.pressure[0] == 0.0
    assert sol.pressure.min() >= -solver.tol * max(1.0, sol.pressure.max())
    assert sol.diagnostics["released"] >= 1

    q = sol.n_contact
    gaps = problem.gap0 + problem.gap_response[:, :q] @ sol.pressure[:q]
    assert gaps.min() >= -solver.tol
    assert gaps[0] > 0.0


def test_complementary_patch_conditions(system) -> None:
    _, _, integ = system
    solver = _solver(system)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    q = problem.q_max
    p, pressed = solver.solve_complementary(problem, q)

    gaps = problem.gap0[:q] + problem.gap_response[:q, :q] @ p
    p_scale = max(1.0, float(np.abs(p).max()))
    assert pressed.any()
    assert p.min() >= -solver.tol * p_scale
    np.testing.assert_array_equal(p[~pressed], 0.0)
    np.testing.assert_allclose(gaps[pressed], 0.0, atol=1e-6)
    assert gaps[~pressed].min(initial=0.0) >= -solver.tol
    # A patch wider than the contact lets its edge lift off
    assert not pressed[q - 1]


def test_pivot_budget_exhaustion_raises(system) -> None:
    _, _, integ = system
    solver = _solver(system, max_pivots=0)
    X = integ.pack(_state(integ, z=1.0, vz=-1.0))
    problem = solver.prepare(X, 0.01, np.zeros(N_MODES))
    with pytest.raises(ContactConvergenceError) as exc_info:
        solver.solve_complementary(problem, 3)
    diag = exc_info.value.to_diagnostics_dict()
    assert diag["max_pivots"] == 0
    assert diag["q"] == 3
