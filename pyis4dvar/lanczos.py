"""Lanczos recurrence with full Gram-Schmidt reorthogonalisation.

The Lanczos vectors ``q(k)`` are the normalised gradients of the conjugate
gradient minimisation.  With ``H`` the Hessian of the quadratic cost function,

    H Q(k) = Q(k) T(k) + beta(k+1) q(k+1) e'(k)

where ``T(k)`` is the symmetric tridiagonal matrix with diagonal ``delta`` and
off-diagonal ``beta``.  In exact arithmetic the three-term recurrence keeps the
basis orthonormal; in floating point the new vector is reorthogonalised against
every stored vector.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from .errors import NumericalBreakdown
from .io import VectorStore
from .minimization import OuterLoopTables
from .mpi import Collective
from .state import StateVector, state_add, state_dot, state_scale

LOGGER = logging.getLogger(__name__)

__all__ = ["LanczosGenerator"]


class LanczosGenerator:
    """Produce and persist the next orthonormal Lanczos vector.

    Parameters
    ----------
    store:
        Store receiving ``q(k+1)`` as record ``k + 1`` of the outer loop.
    collective:
        Ranks taking part in the inner products.
    breakdown_tol:
        Norms at or below this value are treated as a breakdown.
    ortho_warn_tol:
        Largest acceptable ``|<q(k+1), q(rec)>|`` after reorthogonalisation
        before a warning is logged.
    """

    def __init__(
        self,
        store: VectorStore,
        collective: Collective | None = None,
        *,
        breakdown_tol: float = 0.0,
        ortho_warn_tol: float = 1.0e-8,
    ) -> None:
        self.store = store
        self.collective = collective or Collective()
        self.breakdown_tol = float(breakdown_tol)
        self.ortho_warn_tol = float(ortho_warn_tol)

    def _dot(self, a: StateVector, b: StateVector) -> float:
        return state_dot(a, b, self.collective)

    def generate(
        self,
        g: StateVector,
        tables: OuterLoopTables,
        *,
        outer: int,
        inner: int,
        q_current: StateVector | None = None,
    ) -> StateVector:
        """Turn *g* into ``q(inner+1)`` and store it.

        *g* is the y-space gradient on inner loop 0 and the Hessian-vector
        product ``H q(inner)`` afterwards; it is overwritten.  *q_current* may
        pass the already loaded ``q(inner)`` to avoid reading it again.
        """

        k = inner
        if k > 0:
            if q_current is None:
                q_current = self.store.load(outer, k)
            state_add(g, q_current, 1.0, -tables.delta[k - 1], out=g)

        if k > 1:
            q_previous = self.store.load(outer, k - 1)
            state_add(g, q_previous, 1.0, -tables.beta[k - 1], out=g)

        # Most recent vector first.
        coefficients = np.zeros(k, dtype=float)
        for rec in range(k, 0, -1):
            q_rec = self.store.load(outer, rec)
            coefficients[rec - 1] = self._dot(g, q_rec)
            state_add(g, q_rec, 1.0, -coefficients[rec - 1], out=g)

        norm_sq = self._dot(g, g)
        norm = math.sqrt(norm_sq) if norm_sq > 0.0 else 0.0
        if not math.isfinite(norm) or norm <= self.breakdown_tol:
            what = "initial gradient norm" if k == 0 else f"beta({k + 1})"
            raise NumericalBreakdown(
                f"Lanczos breakdown: {what} = {norm:.7e} is not positive", outer=outer, inner=inner
            )

        if k == 0:
            tables.gnorm = norm
        else:
            tables.beta[k] = norm

        q_new = state_scale(g, 1.0 / norm, out=g)
        self.store.store(outer, k + 1, q_new)

        if k == 0:
            q_first = q_new
        else:
            q_first = self.store.load(outer, 1)
        tables.qg[k] = tables.gnorm * self._dot(q_new, q_first)

        tables.ortho_err[k] = self._verify(q_new, coefficients, outer=outer, inner=inner)
        return q_new

    def _verify(self, q_new: StateVector, coefficients: np.ndarray, *, outer: int, inner: int) -> float:
        """Recompute ``<q(k+1), q(rec)>`` for every stored ``rec <= k``.

        The result is diagnostic only: it is logged and returned, and a
        warning is issued when it exceeds ``ortho_warn_tol``.
        """

        k = inner
        if k == 0:
            return 0.0

        dot_new = np.zeros(k, dtype=float)
        for rec in range(k, 0, -1):
            dot_new[rec - 1] = self._dot(q_new, self.store.load(outer, rec))

        worst = float(np.max(np.abs(dot_new)))
        if self.collective.master:
            LOGGER.debug("(%03d,%03d): Lanczos vectors orthogonalization test", outer, inner)
            for rec in range(k, 0, -1):
                LOGGER.debug(
                    "  Orthogonalization Factor = %19.12e   (Lanczos vector = %03d)",
                    coefficients[rec - 1],
                    rec,
                )
            for rec in range(k, 0, -1):
                LOGGER.debug(
                    "  Ortho Test: <%03d,%03d> = %19.12e", k + 1, rec, dot_new[rec - 1]
                )
            if worst > self.ortho_warn_tol:
                LOGGER.warning(
                    "(%03d,%03d): Lanczos vector %03d lost orthogonality, max |<q,q>| = %.7e",
                    outer,
                    inner,
                    k + 1,
                    worst,
                )
        return worst
