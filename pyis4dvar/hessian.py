"""Hessian-vector products and Hessian eigenvector reconstruction."""

from __future__ import annotations

import logging
import math

from .errors import NumericalBreakdown
from .io import VectorStore
from .minimization import HessianEigenpair, OuterLoopTables, RitzPair
from .mpi import Collective
from .state import StateVector, state_add, state_dot, state_scale

LOGGER = logging.getLogger(__name__)

__all__ = ["HessianEigenReconstructor", "HessianEstimator"]


class HessianEstimator:
    """Action of the Hessian on the current Lanczos vector.

    For a quadratic cost function ``grad(v) = H v + grad(0)``, so

        H q(k) = grad(q(k)) - grad(0)

    where ``grad(q(k))`` comes from the tangent linear / adjoint integration
    started from ``q(k)``.  ``grad(0)`` is kept as the normalised ``q(1)`` and
    must be rescaled by ``Gnorm``.
    """

    def __init__(self, store: VectorStore, collective: Collective | None = None) -> None:
        self.store = store
        self.collective = collective or Collective()

    def estimate(
        self,
        gradient: StateVector,
        tables: OuterLoopTables,
        *,
        outer: int,
        inner: int,
    ) -> tuple[StateVector, StateVector]:
        """Return ``(H q(k), q(k))`` and record ``delta(k) = <q(k), H q(k)>``.

        *gradient* is overwritten with the Hessian-vector product.

        Raises
        ------
        NumericalBreakdown
            If ``delta(k)`` is not positive.
        """

        k = inner
        if k < 1:
            raise ValueError("The Hessian is only estimated from inner loop 1 onwards")

        q_first = self.store.load(outer, 1)
        hv = state_add(gradient, q_first, 1.0, -tables.gnorm, out=gradient)

        q_current = self.store.load(outer, k)
        delta = state_dot(q_current, hv, self.collective)
        tables.delta[k - 1] = delta

        if not delta > 0.0:
            raise NumericalBreakdown(
                f"Non-positive Hessian curvature: delta({k}) = {delta:.7e}", outer=outer, inner=inner
            )
        return hv, q_current


class HessianEigenReconstructor:
    """Hessian eigenvectors from converged Ritz pairs.

    With ``Q(k)`` the Lanczos vectors and ``z`` a converged eigenvector of
    ``T(k)``, ``Q(k) z`` approximates a Hessian eigenvector.  Rounding breaks
    the exact orthogonality of the recombined vectors, so a second
    Gram-Schmidt pass orthonormalises them before they are stored for the
    preconditioner of later outer loops.
    """

    def __init__(
        self,
        lanczos_store: VectorStore,
        hessian_store: VectorStore,
        collective: Collective | None = None,
    ) -> None:
        self.lanczos_store = lanczos_store
        self.hessian_store = hessian_store
        self.collective = collective or Collective()

    def reconstruct(
        self,
        pairs: list[RitzPair],
        tables: OuterLoopTables,
        *,
        outer: int,
        inner: int,
    ) -> list[HessianEigenpair]:
        """Build, orthonormalise and store eigenvectors of the converged *pairs*.

        Pairs are processed from the largest to the smallest Ritz value and
        stored as records ``1..nconv`` of the Hessian store.
        """

        converged = sorted((p for p in pairs if p.converged), key=lambda p: p.value, reverse=True)
        tables.hessian = []
        if not converged:
            if self.collective.master:
                LOGGER.warning("(%03d,%03d): No converged Hessian eigenvectors found", outer, inner)
            return []

        if self.collective.master:
            LOGGER.info("Computing %d converged Hessian eigenvectors...", len(converged))

        layout = self.lanczos_store.layout
        vectors = [StateVector(layout) for _ in converged]
        for rec in range(1, inner + 1):
            q_rec = self.lanczos_store.load(outer, rec)
            for pair, vector in zip(converged, vectors):
                state_add(vector, q_rec, 1.0, pair.vector[rec - 1], out=vector)

        if self.collective.master:
            LOGGER.info("Orthonormalizing converged Hessian eigenvectors...")

        result: list[HessianEigenpair] = []
        for nvec, (pair, vector) in enumerate(zip(converged, vectors), start=1):
            for previous in result:
                coefficient = state_dot(vector, previous.vector, self.collective)
                state_add(vector, previous.vector, 1.0, -coefficient, out=vector)

            norm_sq = state_dot(vector, vector, self.collective)
            if not norm_sq > 0.0:
                raise NumericalBreakdown(
                    f"Hessian eigenvector {nvec} vanished during orthonormalization",
                    outer=outer,
                    inner=inner,
                )
            state_scale(vector, 1.0 / math.sqrt(norm_sq), out=vector)
            self.hessian_store.store(outer, nvec, vector)

            eigenpair = HessianEigenpair(
                value=pair.value, error=pair.error, column=pair.column, record=nvec, vector=vector
            )
            result.append(eigenpair)
            tables.hessian.append(
                HessianEigenpair(value=pair.value, error=pair.error, column=pair.column, record=nvec)
            )

        return result
