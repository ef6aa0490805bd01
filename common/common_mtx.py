"""Tridiagonal matrix utilities used by the Lanczos minimisation."""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from scipy.linalg import lapack

__all__ = ["mtx_tridiag_eigen", "mtx_tridiag_matrix", "mtx_tridiag_solve"]


def _ensure_tridiag(d: Sequence[float], e: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    diag = np.asarray(d, dtype=float)
    offd = np.asarray(e, dtype=float)
    if diag.ndim != 1 or offd.ndim != 1:
        raise ValueError("Expected one dimensional diagonals")
    if diag.size == 0:
        raise ValueError("Tridiagonal matrix must not be empty")
    if offd.size != diag.size - 1:
        raise ValueError(
            f"Off-diagonal must hold {diag.size - 1} values, got {offd.size}"
        )
    return diag, offd


def mtx_tridiag_matrix(d: Sequence[float], e: Sequence[float]) -> np.ndarray:
    """Return the dense symmetric matrix with diagonal *d* and off-diagonal *e*."""

    diag, offd = _ensure_tridiag(d, e)
    return np.diag(diag) + np.diag(offd, 1) + np.diag(offd, -1)


def mtx_tridiag_solve(
    d: Sequence[float], e: Sequence[float], rhs: Sequence[float]
) -> Tuple[np.ndarray, np.ndarray]:
    """Solve ``T z = rhs`` for a symmetric tridiagonal ``T``.

    Forward elimination followed by back substitution (Thomas algorithm).

    Parameters
    ----------
    d:
        Diagonal ``delta(1..k)``.
    e:
        Off-diagonal ``beta(2..k)``.
    rhs:
        Right-hand side of length ``k``.

    Returns
    -------
    tuple
        ``(z, gamma)`` where ``gamma[i] = e[i-1] / pivot(i-1)`` holds the
        elimination factors (``gamma[0]`` is unused and zero).

    Raises
    ------
    numpy.linalg.LinAlgError
        If a pivot is not strictly positive.
    """

    diag, offd = _ensure_tridiag(d, e)
    b = np.asarray(rhs, dtype=float)
    if b.shape != diag.shape:
        raise ValueError("Right-hand side and diagonal must have the same length")

    n = diag.size
    z = np.zeros(n, dtype=float)
    gamma = np.zeros(n, dtype=float)

    pivot = diag[0]
    if not pivot > 0.0:
        raise np.linalg.LinAlgError(f"Non-positive pivot {pivot!r} at row 1")
    z[0] = b[0] / pivot
    for i in range(1, n):
        gamma[i] = offd[i - 1] / pivot
        pivot = diag[i] - offd[i - 1] * gamma[i]
        if not pivot > 0.0:
            raise np.linalg.LinAlgError(f"Non-positive pivot {pivot!r} at row {i + 1}")
        z[i] = (b[i] - offd[i - 1] * z[i - 1]) / pivot

    for i in range(n - 2, -1, -1):
        z[i] -= gamma[i + 1] * z[i + 1]

    return z, gamma


def mtx_tridiag_eigen(
    d: Sequence[float], e: Sequence[float]
) -> Tuple[np.ndarray, np.ndarray, int]:
    """Eigen-decomposition of a symmetric tridiagonal matrix.

    Wraps the LAPACK ``?stev`` driver.  Eigenvalues are returned in ascending
    order together with the matrix of eigenvectors (one per column) and the
    LAPACK status ``info``; a nonzero status is passed back to the caller
    rather than raised.
    """

    diag, offd = _ensure_tridiag(d, e)
    if diag.size == 1:
        return diag.copy(), np.ones((1, 1), dtype=float), 0

    (stev,) = lapack.get_lapack_funcs(("stev",), (diag, offd))
    w, v, info = stev(diag, offd, compute_v=1)
    return np.asarray(w, dtype=float), np.asarray(v, dtype=float), int(info)
