"""Limited-memory preconditioners built from Hessian eigenpairs.

The preconditioner is written in product form,

    M = prod_i [ I + (mu_i - 1) h_i h_i' ]

over the converged Hessian eigenpairs ``(lambda_i, h_i)`` of every previous
outer loop, with

    scale = -1:  mu_i = lambda_i               (inverse spectral LMP)
    scale =  1:  mu_i = 1 / lambda_i           (spectral LMP)
    scale = -2:  mu_i = sqrt(lambda_i)         (inverse square-root spectral LMP)
    scale =  2:  mu_i = 1 / sqrt(lambda_i)     (square-root spectral LMP)

The product form requires each outer loop's eigenvectors to be orthonormal.
For the Ritz LMP the square-root factors gain a term built from the last
Lanczos vector ``q(Ninner+1)`` of the outer loop, so the operator and its
transpose differ and must be selected through the ``transpose`` flag.

References: Tshimanga, J., S. Gratton, A.T. Weaver and A. Sartenaer, 2008:
Limited-memory preconditioners, with application to incremental
four-dimensional variational ocean data assimilation, Q.J.R. Meteorol. Soc.,
134, 753-771.
"""

from __future__ import annotations

import logging
import math

from .io import VectorStore
from .minimization import HessianEigenpair, MinimizationState
from .mpi import Collective
from .state import StateVector, state_add, state_dot

LOGGER = logging.getLogger(__name__)

__all__ = ["LMP_SCALES", "Preconditioner", "lmp_factor"]

LMP_SCALES = (-2, -1, 1, 2)


def lmp_factor(ritz: float, scale: int) -> float:
    """Return ``mu`` for the Ritz value *ritz* and preconditioner *scale*."""

    if scale == -1:
        return ritz
    if scale == 1:
        return 1.0 / ritz
    if scale == -2:
        return math.sqrt(ritz)
    if scale == 2:
        return 1.0 / math.sqrt(ritz)
    raise ValueError(f"Unknown preconditioner scale {scale!r}; expected one of {LMP_SCALES}")


class Preconditioner:
    """Apply the spectral or Ritz LMP of all outer loops before *outer*.

    Parameters
    ----------
    state:
        Minimisation tables holding the converged eigenpairs and Lanczos
        coefficients of earlier outer loops.
    lanczos_store, hessian_store:
        Stores holding ``q(Ninner+1)`` and the Hessian eigenvectors.
    ritz:
        Use the Ritz LMP instead of the spectral LMP.
    """

    def __init__(
        self,
        state: MinimizationState,
        lanczos_store: VectorStore,
        hessian_store: VectorStore,
        collective: Collective | None = None,
        *,
        ritz: bool = False,
    ) -> None:
        self.state = state
        self.lanczos_store = lanczos_store
        self.hessian_store = hessian_store
        self.collective = collective or Collective()
        self.ritz = bool(ritz)

    def apply(
        self,
        vector: StateVector,
        scale: int,
        *,
        outer: int,
        transpose: bool = False,
        inner: int = 0,
        message: str = "",
    ) -> StateVector:
        """Return the preconditioned copy of *vector*.

        Outer loops ``1..outer-1`` are applied in increasing order, or in
        decreasing order when *transpose* is set.  Within an outer loop the
        eigenpairs run from the largest Ritz value for positive scales and from
        the smallest for negative ones, reversed again under *transpose*.
        """

        if scale not in LMP_SCALES:
            raise ValueError(f"Unknown preconditioner scale {scale!r}; expected one of {LMP_SCALES}")

        x = vector.copy()
        previous = range(outer - 1, 0, -1) if transpose else range(1, outer)

        if self.collective.master:
            LOGGER.debug(
                "(%03d,%03d): PRECOND - %s LMP, scale=%d, transpose=%s: %s",
                outer,
                inner,
                "Ritz" if self.ritz else "Spectral",
                scale,
                transpose,
                message,
            )

        for nol in previous:
            pairs = self.state.hessian_pairs(nol)
            if self.collective.master:
                LOGGER.debug(
                    "(%03d,%03d): PRECOND - outer loop %03d, number of good Ritz eigenvalues = %d",
                    outer,
                    inner,
                    nol,
                    len(pairs),
                )
            if not pairs:
                continue

            descending = scale > 0
            if transpose:
                descending = not descending
            ordered = pairs if descending else list(reversed(pairs))

            self._apply_outer_loop(x, ordered, nol, scale, transpose)

        return x

    def _apply_outer_loop(
        self,
        x: StateVector,
        pairs: list[HessianEigenpair],
        nol: int,
        scale: int,
        transpose: bool,
    ) -> None:
        tables = self.state.tables(nol)
        ninner = self.state.ninner
        use_ritz = self.ritz and scale in (-2, 2)

        q_last = None
        if use_ritz:
            q_last = self.lanczos_store.load(nol, ninner + 1)

        for pair in pairs:
            ritz = pair.value
            facritz = 0.0
            if use_ritz:
                facritz = tables.beta[ninner] * tables.zv[ninner - 1, pair.column]
                if not transpose:
                    facritz *= state_dot(x, q_last, self.collective)

            h = self.hessian_store.load(nol, pair.record)
            dotprod = state_dot(x, h, self.collective)

            fac2 = (lmp_factor(ritz, scale) - 1.0) * dotprod
            if use_ritz and not transpose:
                if scale == -2:
                    fac2 += facritz / math.sqrt(ritz)
                else:
                    fac2 -= facritz / ritz
            state_add(x, h, 1.0, fac2, out=x)

            if use_ritz and transpose:
                if scale == 2:
                    fac2 = -facritz * dotprod / ritz
                else:
                    fac2 = facritz * dotprod / math.sqrt(ritz)
                state_add(x, q_last, 1.0, fac2, out=x)
