"""Bath domain operator: radial grid, Dirichlet-to-Neumann map and Laplacian.

The bath surface is discretised on ``r_i = i * dr`` for ``i = 0..nr-1`` with
``dr = L / nr``; the surface is pinned at ``r = L``. Each node stands for the
ring around it, so integrals use ring-area weights (``dr^2/8`` for the disc
at the axis, ``r_i dr`` elsewhere, both divided by ``2 pi``).

The DtN operator of a deep bath multiplies each Fourier–Bessel mode
``J0(k_m r)`` by ``k_m``. With the ring-area quadrature the discrete
operator is self-adjoint and non-negative in the weighted inner product,
which keeps the coupled bath equations energy stable.

Building an operator is expensive and happens offline; runs obtain operators
from an :class:`OperatorStore` keyed by ``(domain size, nr, truncation)``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, NamedTuple

import numpy as np
from scipy.special import j0, j1, jn_zeros

from .errors import OperatorMismatchError, OperatorNotFoundError

logger = logging.getLogger(__name__)


class OperatorKey(NamedTuple):
    domain_size: float
    nr: int
    truncation: int

    @classmethod
    def make(cls, domain_size: float, nr: int, truncation: int) -> "OperatorKey":
        return cls(round(float(domain_size), 12), int(nr), int(truncation))


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr, dtype=float)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True, eq=False)
class DomainOperator:
    """Immutable precomputed bath operator.

    Attributes
    ----------
    key : OperatorKey
        Identifier ``(domain_size, nr, truncation)``.
    r : np.ndarray
        Radial nodes, shape (nr,).
    weights : np.ndarray
        Ring-area quadrature weights (without the ``2 pi``), shape (nr,).
    dtn : np.ndarray
        Dirichlet-to-Neumann matrix, shape (nr, nr).
    laplacian : np.ndarray
        Axisymmetric surface Laplacian with symmetry at ``r = 0`` and a
        pinned edge at ``r = L``, shape (nr, nr).
    """

    key: OperatorKey
    r: np.ndarray
    weights: np.ndarray
    dtn: np.ndarray
    laplacian: np.ndarray

    @property
    def nr(self) -> int:
        return int(self.r.size)

    @property
    def dr(self) -> float:
        return float(self.key.domain_size) / self.nr

    @property
    def domain_size(self) -> float:
        return float(self.key.domain_size)

    def apply(self, samples: np.ndarray) -> np.ndarray:
        """Apply the DtN map to surface samples (O(nr^2) matrix-vector product)."""
        samples = np.asarray(samples, dtype=float)
        if samples.shape[0] != self.nr:
            raise ValueError(f"expected {self.nr} samples, got {samples.shape[0]}")
        return self.dtn @ samples

    def laplace(self, samples: np.ndarray) -> np.ndarray:
        return self.laplacian @ np.asarray(samples, dtype=float)

    def integrate(self, samples: np.ndarray) -> float:
        """Surface integral ``2 pi int f r dr`` of nodal samples."""
        return float(2.0 * np.pi * np.dot(self.weights, np.asarray(samples, dtype=float)))

    def validate(self, expected: OperatorKey) -> "DomainOperator":
        """Check this operator against the run's declared grid and truncation.

        Raises
        ------
        OperatorMismatchError
            On any disagreement in node count, domain size, truncation order
            or matrix shapes.
        """
        problems = []
        if self.r.size != expected.nr:
            problems.append(f"nr={self.r.size} (expected {expected.nr})")
        if self.dtn.shape != (expected.nr, expected.nr):
            problems.append(f"dtn shape {self.dtn.shape}")
        if self.laplacian.shape != (expected.nr, expected.nr):
            problems.append(f"laplacian shape {self.laplacian.shape}")
        if not np.isclose(self.key.domain_size, expected.domain_size, rtol=1e-9, atol=0.0):
            problems.append(f"domain_size={self.key.domain_size} (expected {expected.domain_size})")
        if self.key.truncation != expected.truncation:
            problems.append(f"truncation={self.key.truncation} (expected {expected.truncation})")
        if problems:
            raise OperatorMismatchError(
                "Domain operator does not match the run: " + ", ".join(problems),
                operator_key=tuple(self.key),
                expected_key=tuple(expected),
            )
        return self


def ring_weights(nr: int, dr: float) -> np.ndarray:
    r = np.arange(nr) * dr
    w = r * dr
    w[0] = dr * dr / 8.0
    return w


def radial_laplacian(nr: int, dr: float) -> np.ndarray:
    """Finite-volume ``(1/r) d/dr (r df/dr)`` on the node rings."""
    r = np.arange(nr) * dr
    lap = np.zeros((nr, nr))
    lap[0, 0] = -4.0 / dr**2
    if nr > 1:
        lap[0, 1] = 4.0 / dr**2
    for i in range(1, nr):
        inner = (r[i] - 0.5 * dr) / (r[i] * dr**2)
        outer = (r[i] + 0.5 * dr) / (r[i] * dr**2)
        lap[i, i - 1] = inner
        lap[i, i] = -(inner + outer)
        if i + 1 < nr:
            lap[i, i + 1] = outer
    return lap


def build_domain_operator(key: OperatorKey) -> DomainOperator:
    """Generate the domain operator from scratch (expensive, offline path).

    The DtN matrix is ``B diag(k) C B^T W``: nodal samples are transformed to
    ``truncation`` Fourier–Bessel coefficients with the ring quadrature,
    multiplied by the wavenumbers ``k_m = j_{0,m} / L`` and synthesised back.
    """
    L, nr, truncation = float(key.domain_size), int(key.nr), int(key.truncation)
    if L <= 0.0 or nr < 2 or truncation < 1:
        raise ValueError(f"invalid operator key {key}")

    dr = L / nr
    r = np.arange(nr) * dr
    w = ring_weights(nr, dr)

    zeros = jn_zeros(0, truncation)
    k = zeros / L
    basis = j0(np.outer(r, k))  # (nr, truncation)
    norm = 2.0 / (L**2 * j1(zeros) ** 2)
    forward = (norm[:, None] * basis.T) * w[None, :]  # (truncation, nr)
    dtn = basis @ (k[:, None] * forward)

    logger.debug("Built DtN operator L=%g nr=%d truncation=%d", L, nr, truncation)
    return DomainOperator(
        key=OperatorKey.make(L, nr, truncation),
        r=_frozen(r),
        weights=_frozen(w),
        dtn=_frozen(dtn),
        laplacian=_frozen(radial_laplacian(nr, dr)),
    )


class OperatorStore:
    """Explicit keyed store of domain operators, shareable across runs.

    Stored operators are never mutated, so concurrent runs with the same key
    may read the same instance.
    """

    def __init__(self) -> None:
        self._operators: Dict[OperatorKey, DomainOperator] = {}
        self._lock = threading.Lock()

    def load(self, key: OperatorKey) -> DomainOperator:
        key = OperatorKey.make(*key)
        with self._lock:
            try:
                return self._operators[key]
            except KeyError:
                raise OperatorNotFoundError(
                    f"No domain operator stored for {key}", key=tuple(key)
                ) from None

    def store(self, key: OperatorKey, operator: DomainOperator) -> None:
        key = OperatorKey.make(*key)
        operator.validate(key)
        with self._lock:
            self._operators[key] = operator

    def get_or_build(self, key: OperatorKey) -> DomainOperator:
        """Load an operator, generating and storing it on a miss."""
        try:
            return self.load(key)
        except OperatorNotFoundError:
            logger.info("Domain operator %s not cached; generating it", tuple(key))
        operator = build_domain_operator(OperatorKey.make(*key))
        self.store(key, operator)
        return operator

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple):
            return False
        with self._lock:
            return OperatorKey.make(*key) in self._operators

    def __len__(self) -> int:
        return len(self._operators)

    def __iter__(self) -> Iterator[OperatorKey]:
        with self._lock:
            return iter(list(self._operators))
