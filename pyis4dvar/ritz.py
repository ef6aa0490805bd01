"""Ritz eigen-decomposition of the Lanczos tridiagonal matrix."""

from __future__ import annotations

import logging

import numpy as np

from common.common_mtx import mtx_tridiag_eigen

from .errors import EigensolverFailure, NumericalBreakdown
from .minimization import OuterLoopTables, RitzPair
from .mpi import Collective

LOGGER = logging.getLogger(__name__)

__all__ = ["RitzEigensolver"]


class RitzEigensolver:
    """Leader-computed, broadcast eigenpairs of ``T(k)``.

    The decomposition is small and is computed on the leader rank only; the
    eigenvalues, eigenvectors and solver status are then broadcast so that
    every rank holds identical tables.
    """

    def __init__(self, collective: Collective | None = None) -> None:
        self.collective = collective or Collective()

    def decompose(self, delta: np.ndarray, beta: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Eigenvalues (ascending) and eigenvectors of the tridiagonal matrix.

        Parameters
        ----------
        delta:
            Diagonal ``delta(1..k)``.
        beta:
            Off-diagonal ``beta(2..k)``.
        """

        payload = None
        if self.collective.master:
            try:
                payload = mtx_tridiag_eigen(delta, beta)
            except (ValueError, ArithmeticError) as exc:
                # Followers are already waiting in the broadcast.
                LOGGER.error("Tridiagonal eigensolver failed on the leader rank: %s", exc)
                payload = (None, None, -1)
        ritz, zv, info = self.collective.bcast(payload)
        if info != 0:
            raise EigensolverFailure(info)
        return np.asarray(ritz, dtype=float), np.asarray(zv, dtype=float)

    def update(
        self,
        tables: OuterLoopTables,
        inner: int,
        *,
        outer: int,
        tolerance: float,
    ) -> list[RitzPair]:
        """Decompose ``T(inner)`` and store Ritz values and error bounds.

        The error bound of pair ``i`` is ``|beta(k+1) zv(k, i)|``.  On the last
        inner loop the bounds are made relative to the largest Ritz value.
        """

        k = inner
        ritz, zv = self.decompose(tables.delta[:k], tables.beta[1:k])

        tables.ritz[:k] = ritz
        tables.zv[:k, :k] = zv
        tables.ritz_err[:k] = np.abs(tables.beta[k] * zv[k - 1, :])

        negative = np.flatnonzero(ritz < 0.0)
        if negative.size:
            raise NumericalBreakdown(
                f"Negative Ritz value found: {ritz[negative[0]]:.7e}", outer=outer, inner=inner
            )

        if k == tables.ninner:
            tables.ritz_err[:k] /= ritz[k - 1]

        return tables.ritz_pairs(k, tolerance)
