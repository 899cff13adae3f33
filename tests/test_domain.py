from __future__ import annotations

import sys

sys.path.insert(0, "src")

import numpy as np
import pytest

from drop_impact.core.domain import (
    OperatorKey,
    OperatorStore,
    build_domain_operator,
    radial_laplacian,
)
from drop_impact.core.errors import OperatorMismatchError, OperatorNotFoundError


@pytest.fixture(scope="module")
def operator():
    return build_domain_operator(OperatorKey.make(4.0, 40, 40))


def test_grid_and_weights(operator) -> None:
    assert operator.nr == 40
    assert operator.dr == pytest.approx(0.1)
    assert operator.r[0] == 0.0
    # Ring areas tile the disc up to L - dr/2
    L, dr = operator.domain_size, operator.dr
    assert operator.integrate(np.ones(40)) == pytest.approx(np.pi * (L - 0.5 * dr) ** 2)


def test_dtn_is_self_adjoint_and_non_negative(operator) -> None:
    W = np.diag(operator.weights)
    sym = W @ operator.dtn
    np.testing.assert_allclose(sym, sym.T, atol=1e-12)
    eig = np.linalg.eigvalsh(0.5 * (sym + sym.T))
    assert eig.min() > -1e-10 * eig.max()


def test_dtn_of_a_bump_does_work_against_it(operator) -> None:
    eta = np.exp(-(operator.r / 0.5) ** 2)
    assert np.dot(operator.weights * eta, operator.apply(eta)) > 0.0


def test_apply_rejects_wrong_length(operator) -> None:
    with pytest.raises(ValueError):
        operator.apply(np.zeros(39))


def test_operator_arrays_are_read_only(operator) -> None:
    with pytest.raises(ValueError):
        operator.dtn[0, 0] = 1.0


def test_laplacian_of_r_squared_is_four() -> None:
    nr, dr = 30, 0.1
    r = np.arange(nr) * dr
    lap = radial_laplacian(nr, dr)
    # Last row is pinned to the edge value and excluded
    np.testing.assert_allclose((lap @ r**2)[:-1], 4.0, rtol=1e-10)


def test_validate_detects_mismatch(operator) -> None:
    assert operator.validate(OperatorKey.make(4.0, 40, 40)) is operator
    with pytest.raises(OperatorMismatchError) as exc_info:
        operator.validate(OperatorKey.make(4.0, 80, 40))
    assert "nr=40" in str(exc_info.value)
    with pytest.raises(OperatorMismatchError):
        operator.validate(OperatorKey.make(5.0, 40, 40))
    with pytest.raises(OperatorMismatchError):
        operator.validate(OperatorKey.make(4.0, 40, 20))


def test_store_load_and_build(operator, caplog) -> None:
    store = OperatorStore()
    key = OperatorKey.make(4.0, 40, 40)
    with pytest.raises(OperatorNotFoundError):
        store.load(key)

    store.store(key, operator)
    assert key in store
    assert len(store) == 1
    assert store.load((4.0, 40, 40)) is operator

    other = OperatorKey.make(2.0, 20, 10)
    with caplog.at_level("INFO", logger="drop_impact.core.domain"):
        built = store.get_or_build(other)
    assert "not cached" in caplog.text
    assert built.key == other
    assert store.get_or_build(other) is built
    assert sorted(store) == sorted([key, other])


def test_store_refuses_mismatched_operator(operator) -> None:
    store = OperatorStore()
    with pytest.raises(OperatorMismatchError):
        store.store(OperatorKey.make(4.0, 50, 40), operator)


def test_invalid_key_rejected() -> None:
    with pytest.raises(ValueError):
        build_domain_operator(OperatorKey.make(-1.0, 10, 10))
