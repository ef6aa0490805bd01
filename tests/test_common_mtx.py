from __future__ import annotations

import numpy as np
import pytest

from common.common_mtx import mtx_tridiag_eigen, mtx_tridiag_matrix, mtx_tridiag_solve


def test_solve_matches_dense_multiply(rng):
    d = 4.0 + rng.random(7)
    e = rng.standard_normal(6)
    rhs = rng.standard_normal(7)

    z, gamma = mtx_tridiag_solve(d, e, rhs)

    np.testing.assert_allclose(mtx_tridiag_matrix(d, e) @ z, rhs, rtol=1e-12, atol=1e-12)
    assert gamma[0] == 0.0
    assert gamma[1] == pytest.approx(e[0] / d[0])


def test_solve_single_row():
    z, gamma = mtx_tridiag_solve([2.0], [], [3.0])
    np.testing.assert_allclose(z, [1.5])
    np.testing.assert_array_equal(gamma, [0.0])


def test_solve_rejects_non_positive_pivot():
    with pytest.raises(np.linalg.LinAlgError):
        mtx_tridiag_solve([1.0, 1.0], [2.0], [1.0, 1.0])
    with pytest.raises(np.linalg.LinAlgError):
        mtx_tridiag_solve([0.0, 1.0], [0.5], [1.0, 1.0])


def test_solve_validates_shapes():
    with pytest.raises(ValueError):
        mtx_tridiag_solve([1.0, 2.0], [0.1, 0.2], [1.0, 1.0])
    with pytest.raises(ValueError):
        mtx_tridiag_solve([1.0, 2.0], [0.1], [1.0])


def test_eigen_matches_dense_decomposition(rng):
    d = rng.standard_normal(6) + 3.0
    e = rng.standard_normal(5)

    w, v, info = mtx_tridiag_eigen(d, e)

    assert info == 0
    T = mtx_tridiag_matrix(d, e)
    np.testing.assert_allclose(w, np.linalg.eigvalsh(T), rtol=1e-12, atol=1e-12)
    assert np.all(np.diff(w) >= 0.0)
    np.testing.assert_allclose(T @ v, v * w, atol=1e-12)
    np.testing.assert_allclose(v.T @ v, np.eye(6), atol=1e-12)


def test_eigen_single_value():
    w, v, info = mtx_tridiag_eigen([2.5], [])
    assert info == 0
    np.testing.assert_array_equal(w, [2.5])
    np.testing.assert_array_equal(v, [[1.0]])
