"""Contact/pressure solver for droplet-bath impact.

This module finds the contact patch and the pressure over it at the end of a
time step. The patch radius is a free boundary: it is searched over the bath
grid while the pressure for each trial radius follows from a small linear
system (kinematic match).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import scipy.linalg

from .domain import DomainOperator
from .errors import ContactConvergenceError
from .integrator import ThetaIntegrator
from .projection import pressure_projection_matrix
from .shapes import angle_from_cylindrical, legendre_table, lower_surface_profile
from .types import ContactSolution, ContactVariant

logger = logging.getLogger(__name__)


@dataclass
class ContactProblem:
    """Frozen geometry and precomputed responses for one step attempt.

    Attributes
    ----------
    h : float
        Step size.
    q_max : int
        Number of bath nodes under the droplet footprint (upper bound of the
        contact node count).
    footprint : float
        Footprint radius of the frozen shape.
    angles : np.ndarray
        Polar angles of the lower surface above each footprint node, (q_max,).
    projection : np.ndarray
        Pressure projection matrix, (n_modes, q_max).
    X0 : np.ndarray
        End-of-step state without contact pressure.
    Y : np.ndarray
        End-of-step responses to unit pressure at each node, (size, q_max).
    gap0 : np.ndarray
        Droplet-minus-bath height gap at each node for ``X0``, (q_max,).
    gap_response : np.ndarray
        Gap change per unit nodal pressure, (q_max, q_max).
    """

    h: float
    q_max: int
    footprint: float
    angles: np.ndarray
    projection: np.ndarray
    X0: np.ndarray
    Y: np.ndarray
    gap0: np.ndarray
    gap_response: np.ndarray


@dataclass
class _Trial:
    q: int
    sign: int
    pressure: np.ndarray
    gaps: np.ndarray
    penetration: float
    negative_pressure: float
    variant: ContactVariant
    pressed: np.ndarray


class ContactSolver:
    """Kinematic-match contact solver.

    For a trial number of contact nodes ``q`` (patch radius ``q * dr``) the
    pressures ``p_0..p_{q-1}`` satisfy, at the end of the step,

        p_j >= 0,   gap_j >= 0,   p_j * gap_j = 0      (j < q)

    so every patch node either matches the droplet's lower surface
    (kinematic match) or is released with zero pressure and a positive gap.
    A released node inside the patch is an air pocket under a dimpled bath.
    Pressure is interpolated with hat functions, so it vanishes continuously
    at the patch edge.

    Outer search
    ------------
    Each trial is classified by a signed residual:

    - ``+1``: the bath rises through the droplet outside the patch
      (penetration > ``tol``), the patch is too small;
    - ``-1``: the edge node carries no pressure and has lifted off by more
      than ``tol``, the patch is too large;
    - ``0``: admissible.

    Starting from the previous node count, a bracket is expanded
    geometrically and then bisected. The residual is monotone in ``q``
    whenever the complementarity problem has a unique solution, so the
    search lands on an admissible ``q``.

    Inner solve
    -----------
    The released/pressed split of the patch nodes is found by principal
    pivoting: nodes with negative pressure are released, released nodes
    that penetrate are pressed, and the pressed block is re-solved. All
    infeasible nodes are swapped at once while that reduces their number;
    after that only the lowest-index one is swapped (Murty's rule), which
    terminates for the P-matrix gap responses of this problem.

    The pressed block is solved by one of two variants:

    - ``STANDARD``: direct LU solve of the kinematic-match system.
    - ``CUSP``: Tikhonov-regularised normal equations

          (C^T C + lambda s^2 I) p = C^T b,   s^2 = ||C||_F^2 / q

      used when the patch is one or two nodes wide (first contact) or spans
      the whole footprint (saturation), where the system is near singular.

    Parameters
    ----------
    operator : DomainOperator
        Bath grid and operators.
    integrator : ThetaIntegrator
        Supplies the factored step system.
    tol : float
        Admissibility tolerance for penetration, edge lift-off and negative
        pressure.
    max_iter : int
        Maximum number of trial radii per search.
    cusp_nodes : int
        Patches with at most this many nodes use the cusp variant.
    cusp_regularization : float
        Relative Tikhonov weight ``lambda`` of the cusp variant.
    max_pivots : int, optional
        Maximum number of pivoting rounds per trial; defaults to
        ``4 * q + 10``.
    """

    def __init__(
        self,
        operator: DomainOperator,
        integrator: ThetaIntegrator,
        *,
        tol: float,
        max_iter: int = 40,
        cusp_nodes: int = 2,
        cusp_regularization: float = 1e-8,
        max_pivots: Optional[int] = None,
    ):
        self.operator = operator
        self.integrator = integrator
        self.tol = float(tol)
        self.max_iter = int(max_iter)
        self.max_pivots = max_pivots
        self.cusp_nodes = int(cusp_nodes)
        self.cusp_regularization = float(cusp_regularization)

        self.SOLVERS: Dict[ContactVariant, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
            ContactVariant.STANDARD: self.solve_standard,
            ContactVariant.CUSP: self.solve_cusp,
        }

    # ----------------------------------------------------------------
    # Geometry
    # ----------------------------------------------------------------
    def prepare(self, X_n: np.ndarray, h: float, amplitudes: np.ndarray) -> ContactProblem:
        """Freeze the contact geometry on ``amplitudes`` and precompute responses.

        Raises
        ------
        GeometryDegenerateError
            If the frozen shape has no valid lower surface.
        """
        integ = self.integrator
        r = self.operator.r

        _, r_profile, k_foot = lower_surface_profile(amplitudes)
        footprint = min(float(r_profile[k_foot]), self.operator.domain_size)
        q_max = int(np.count_nonzero(r < footprint * (1.0 - 1e-9)))
        q_max = min(q_max, self.operator.nr - 1)

        X0 = integ.solve(h, integ.free_rhs(X_n, h))

        angles = np.asarray(angle_from_cylindrical(amplitudes, r[:q_max]), dtype=float).reshape(-1)
        projection = pressure_projection_matrix(amplitudes, r, q_max, integ.n_modes)
        Y = integ.unit_responses(h, integ.pressure_forcing(projection))

        # gap_j = z - cos(theta_j) * (1 + sum_l P_l(cos theta_j) A_l) - eta_j
        cos_t = np.cos(angles)
        table = legendre_table(cos_t, integ.n_modes)[:, 1:]
        gap_map = np.zeros((q_max, integ.size))
        gap_map[:, integ.iz] = 1.0
        gap_map[:, integ.amp] = -cos_t[:, None] * table
        gap_map[np.arange(q_max), np.arange(q_max)] -= 1.0

        return ContactProblem(
            h=float(h),
            q_max=q_max,
            footprint=footprint,
            angles=angles,
            projection=projection,
            X0=X0,
            Y=Y,
            gap0=gap_map @ X0 - cos_t,
            gap_response=gap_map @ Y,
        )

    # ----------------------------------------------------------------
    # Inner solves
    # ----------------------------------------------------------------
    def select_variant(self, q: int, q_max: int) -> ContactVariant:
        """Pick the inner solver from the patch geometry."""
        if q <= self.cusp_nodes or q >= q_max - 1:
            return ContactVariant.CUSP
        return ContactVariant.STANDARD

    @staticmethod
    def solve_standard(C: np.ndarray, b: np.ndarray) -> np.ndarray:
        return scipy.linalg.solve(C, b)

    def solve_cusp(self, C: np.ndarray, b: np.ndarray) -> np.ndarray:
        q = C.shape[0]
        scale = float(np.sum(C * C)) / max(q, 1)
        normal = C.T @ C + self.cusp_regularization * scale * np.eye(q)
        return scipy.linalg.solve(normal, C.T @ b, assume_a="pos")

    def solve_patch(
        self,
        problem: ContactProblem,
        q: int,
        variant: Optional[ContactVariant] = None,
        nodes: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Kinematic-match pressures at ``nodes`` (default: the first ``q``)."""
        if nodes is None:
            nodes = np.arange(max(q, 0))
        if nodes.size == 0:
            return np.zeros(0)
        if variant is None:
            variant = self.select_variant(q, problem.q_max)
        C = problem.gap_response[np.ix_(nodes, nodes)]
        b = -problem.gap0[nodes]
        try:
            return self.SOLVERS[variant](C, b)
        except (np.linalg.LinAlgError, scipy.linalg.LinAlgError):
            if variant is ContactVariant.CUSP:
                raise
            logger.debug("Standard patch solve singular at q=%d; using cusp variant", q)
            return self.solve_cusp(C, b)

    def solve_complementary(
        self,
        problem: ContactProblem,
        q: int,
        variant: Optional[ContactVariant] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Patch pressures for ``q`` candidate nodes with released nodes allowed.

        Returns
        -------
        pressure : np.ndarray
            Pressures at the ``q`` candidate nodes, zero at released nodes.
        pressed : np.ndarray
            Boolean mask of the nodes held in kinematic match.

        Raises
        ------
        ContactConvergenceError
            If the pivoting does not settle within ``max_pivots`` rounds.
        """
        if q <= 0:
            return np.zeros(0), np.zeros(0, dtype=bool)
        if variant is None:
            variant = self.select_variant(q, problem.q_max)

        gap0 = problem.gap0[:q]
        G = problem.gap_response[:q, :q]
        pressed = gap0 < 0.0
        max_pivots = self.max_pivots if self.max_pivots is not None else 4 * q + 10

        best = q + 1
        stalled = 0
        for _ in range(max_pivots):
            p = np.zeros(q)
            idx = np.flatnonzero(pressed)
            if idx.size:
                p[idx] = self.solve_patch(problem, q, variant, nodes=idx)
            gaps = gap0 + G @ p

            p_floor = -self.tol * max(1.0, float(np.max(np.abs(p))))
            infeasible = (pressed & (p < p_floor)) | (~pressed & (gaps < -self.tol))
            n_bad = int(np.count_nonzero(infeasible))
            if n_bad == 0:
                return p, pressed

            if n_bad < best:
                best = n_bad
            else:
                stalled += 1
            if stalled < 3:
                pressed = pressed ^ infeasible
            else:
                first = int(np.flatnonzero(infeasible)[0])
                pressed[first] = not pressed[first]

        raise ContactConvergenceError(
            "Pressed/released split of the contact patch did not settle",
            q=q,
            max_pivots=max_pivots,
            infeasible=best,
        )

    def _trial(self, problem: ContactProblem, q: int) -> _Trial:
        variant = self.select_variant(q, problem.q_max)
        p, pressed = self.solve_complementary(problem, q, variant)
        gaps = problem.gap0 + problem.gap_response[:, :q] @ p

        penetration = float(max(0.0, -np.min(gaps[q:]))) if q < problem.q_max else 0.0
        if q > 0:
            p_scale = max(1.0, float(np.max(np.abs(p))))
            negative = float(max(0.0, -np.min(p))) / p_scale
            detached = (not pressed[q - 1]) and gaps[q - 1] > self.tol
        else:
            negative = 0.0
            detached = False

        if penetration > self.tol:
            sign = 1
        elif detached:
            sign = -1
        else:
            sign = 0
        return _Trial(q, sign, p, gaps, penetration, negative, variant, pressed)

    # ----------------------------------------------------------------
    # Outer search
    # ----------------------------------------------------------------
    def solve(self, problem: ContactProblem, q_start: int = 0) -> ContactSolution:
        """Search the contact node count and return the admissible solution.

        Raises
        ------
        ContactConvergenceError
            If no admissible patch exists or ``max_iter`` trials are used up.
        """
        q_max = problem.q_max
        trials: Dict[int, _Trial] = {}

        def evaluate(q: int) -> _Trial:
            if q not in trials:
                if len(trials) >= self.max_iter:
                    raise ContactConvergenceError(
                        "Contact search exceeded the iteration budget",
                        max_iter=self.max_iter,
                        tried=sorted(trials),
                    )
                trials[q] = self._trial(problem, q)
            return trials[q]

        q0 = int(np.clip(q_start, 0, q_max))
        trial = evaluate(q0)
        lo: Optional[int] = None
        hi: Optional[int] = None

        if trial.sign > 0:
            lo, step = q0, 1
            while hi is None:
                if lo >= q_max:
                    raise self._failure("Contact patch saturated the droplet footprint", trials, lo, hi)
                cand = min(lo + step, q_max)
                trial = evaluate(cand)
                if trial.sign == 0:
                    return self._solution(problem, trial, len(trials))
                if trial.sign > 0:
                    lo, step = cand, 2 * step
                else:
                    hi = cand
        elif trial.sign < 0:
            hi, step = q0, 1
            while lo is None:
                cand = max(hi - step, 0)
                trial = evaluate(cand)
                if trial.sign == 0:
                    return self._solution(problem, trial, len(trials))
                if trial.sign < 0:
                    if cand == 0:
                        raise self._failure("Patch edge lifts off for every patch size", trials, lo, hi)
                    hi, step = cand, 2 * step
                else:
                    lo = cand
        else:
            return self._solution(problem, trial, len(trials))

        while hi - lo > 1:
            mid = (lo + hi) // 2
            trial = evaluate(mid)
            if trial.sign == 0:
                return self._solution(problem, trial, len(trials))
            if trial.sign > 0:
                lo = mid
            else:
                hi = mid

        raise self._failure("No admissible contact radius between neighbouring nodes", trials, lo, hi)

    def _failure(self, message, trials, lo, hi) -> ContactConvergenceError:
        return ContactConvergenceError(
            message,
            bracket=[lo, hi],
            tried=sorted(trials),
            penetration={q: t.penetration for q, t in trials.items()},
            suction={q: t.negative_pressure for q, t in trials.items()},
        )

    def _solution(self, problem: ContactProblem, trial: _Trial, iterations: int) -> ContactSolution:
        q = trial.q
        nr = self.operator.nr
        pressure = np.zeros(nr)
        pressure[:q] = trial.pressure
        pressed = np.zeros(nr, dtype=bool)
        pressed[:q] = trial.pressed
        unknowns = problem.X0 + problem.Y[:, :q] @ trial.pressure
        radius = min(q * self.operator.dr, problem.footprint) if q > 0 else 0.0
        residual = max(
            trial.penetration,
            trial.negative_pressure,
            float(np.max(np.abs(trial.gaps[:q][trial.pressed]), initial=0.0)) if q > 0 else 0.0,
        )
        return ContactSolution(
            n_contact=q,
            radius=float(radius),
            pressure=pressure,
            pressure_amplitudes=problem.projection[:, :q] @ trial.pressure,
            unknowns=unknowns,
            residual=residual,
            converged=True,
            variant=trial.variant,
            iterations=iterations,
            pressed=pressed,
            diagnostics={
                "q_max": problem.q_max,
                "footprint": problem.footprint,
                "released": int(q - np.count_nonzero(trial.pressed)),
            },
        )
