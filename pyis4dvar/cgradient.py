"""Preconditioned Lanczos conjugate-gradient inner loop of incremental 4D-Var.

:class:`CGradient` advances the minimisation by exactly one inner loop per
call of :meth:`CGradient.step`.  The caller integrates the tangent linear and
adjoint models from the returned initial condition and hands the resulting
gradient back on the next call:

    inner 0          gradient at the linearisation point   -> q(1)
    inner k >= 1     gradient started from q(k)            -> q(k+1)
    inner Ninner     gradient started from q(Ninner)       -> analysis increment

In preconditioned space (``y``) the minimisation works on
``J(y) = J(P y)``; gradients are mapped with the transposed preconditioner and
the returned initial conditions with the forward preconditioner.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from common.common_mtx import mtx_tridiag_matrix, mtx_tridiag_solve

from .config import MinimizerConfig
from .errors import MinimizationError, NumericalBreakdown
from .hessian import HessianEigenReconstructor, HessianEstimator
from .io import VectorStore, save_checkpoint
from .lanczos import LanczosGenerator
from .minimization import CostFunctionValue, MinimizationState, OuterLoopTables, RitzPair
from .mpi import Collective
from .precond import Preconditioner
from .ritz import RitzEigensolver
from .state import StateLayout, StateVector, state_add, state_dot

LOGGER = logging.getLogger(__name__)

__all__ = ["CGradient"]


class CGradient:
    """Inner-loop minimisation driver owning the :class:`MinimizationState`.

    Parameters
    ----------
    config:
        Loop counts, preconditioner switches and tolerances.
    layout:
        Components of the control vector.
    lanczos_store, hessian_store:
        Persistent stores for the Lanczos vectors ``q(1..Ninner+1)`` and the
        converged Hessian eigenvectors of every outer loop.
    collective:
        Ranks taking part in the minimisation.
    state:
        Tables restored from a checkpoint; a fresh state is created otherwise.
    """

    def __init__(
        self,
        config: MinimizerConfig,
        layout: StateLayout,
        lanczos_store: VectorStore,
        hessian_store: VectorStore,
        collective: Collective | None = None,
        state: MinimizationState | None = None,
    ) -> None:
        if not lanczos_store.layout.compatible(layout) or not hessian_store.layout.compatible(layout):
            raise ValueError("Vector stores do not share the state layout")
        if state is None:
            state = MinimizationState(config.nouter, config.ninner)
        elif state.nouter != config.nouter or state.ninner != config.ninner:
            raise ValueError("Restored minimisation state does not match the loop counts")

        self.config = config
        self.layout = layout
        self.lanczos_store = lanczos_store
        self.hessian_store = hessian_store
        self.collective = collective or Collective()
        self.state = state

        self.hessian = HessianEstimator(lanczos_store, self.collective)
        self.lanczos = LanczosGenerator(
            lanczos_store,
            self.collective,
            breakdown_tol=config.breakdown_tol,
            ortho_warn_tol=config.ortho_warn_tol,
        )
        self.eigensolver = RitzEigensolver(self.collective)
        self.reconstructor = HessianEigenReconstructor(lanczos_store, hessian_store, self.collective)
        self.preconditioner = Preconditioner(
            state, lanczos_store, hessian_store, self.collective, ritz=config.ritz_lmp
        )

    @property
    def ninner(self) -> int:
        return self.config.ninner

    def _preconditioned(self, outer: int) -> bool:
        return self.config.precondition and outer > 1

    def step(
        self,
        outer: int,
        inner: int,
        gradient: StateVector,
        *,
        cost0: float = 0.0,
        prior_sum: StateVector | None = None,
    ) -> StateVector:
        """Run inner loop *inner* of outer loop *outer*.

        Parameters
        ----------
        gradient:
            Cost function gradient in unconditioned space returned by the
            adjoint model; it is not modified.
        cost0:
            Cost function value at the linearisation point.
        prior_sum:
            Sum of the increments of the previous outer loops, needed for the
            background cost term.

        Returns
        -------
        StateVector
            Initial condition of the next tangent linear integration.  On the
            last inner loop this is the analysis increment of the outer loop.

        Raises
        ------
        MinimizationError
            Any fatal condition; the collective is flagged as aborted and every
            later call fails with the same error.
        """

        self.collective.check()
        self._check_position(outer, inner, gradient)
        try:
            return self._step(outer, inner, gradient, cost0=cost0, prior_sum=prior_sum)
        except MinimizationError as exc:
            self.collective.abort(exc)
            raise

    def _check_position(self, outer: int, inner: int, gradient: StateVector) -> None:
        if not 1 <= outer <= self.config.nouter:
            raise ValueError(f"Outer loop {outer} outside 1..{self.config.nouter}")
        if not 0 <= inner <= self.ninner:
            raise ValueError(f"Inner loop {inner} outside 0..{self.ninner}")
        if not self.layout.compatible(gradient.layout):
            raise ValueError("Gradient layout does not match the minimisation layout")
        if inner > 0:
            completed = self.state.tables(outer).inner
            if completed != inner - 1:
                raise ValueError(
                    f"Inner loop {inner} of outer loop {outer} cannot follow inner loop {completed}"
                )

    def _step(
        self,
        outer: int,
        inner: int,
        gradient: StateVector,
        *,
        cost0: float,
        prior_sum: StateVector | None,
    ) -> StateVector:
        k = inner
        if k == 0:
            tables = self.state.start_outer(outer)
        else:
            tables = self.state.tables(outer)

        if self._preconditioned(outer):
            g = self.preconditioner.apply(
                gradient,
                self.config.lmp_scale,
                outer=outer,
                inner=k,
                transpose=True,
                message="gradient from v-space to y-space",
            )
        else:
            g = gradient.copy()

        q_current = None
        if k > 0:
            g, q_current = self.hessian.estimate(g, tables, outer=outer, inner=k)

        q_next = self.lanczos.generate(g, tables, outer=outer, inner=k, q_current=q_current)
        direction = q_next.masked_copy()

        increment = None
        if k == 0:
            self._initial_cost(tables, cost0, prior_sum)
        else:
            self._solve_tridiagonal(tables, k, outer=outer)
            self._new_gradient(tables, k, q_next, outer=outer)
            increment = self._increment(k, outer)
            self._cost(tables, k, increment, cost0, prior_sum, outer=outer)

        pairs: list[RitzPair] = []
        if k > 0 and self.config.needs_ritz:
            pairs = self.eigensolver.update(tables, k, outer=outer, tolerance=self.config.ritz_max_err)
            if k == self.ninner:
                self.reconstructor.reconstruct(pairs, tables, outer=outer, inner=k)

        if k == self.ninner:
            initial = increment
        else:
            initial = direction

        if self._preconditioned(outer):
            initial = self.preconditioner.apply(
                initial,
                self.config.lmp_scale,
                outer=outer,
                inner=k,
                transpose=False,
                message="initial condition from y-space to v-space",
            )

        self.state.complete(outer, k)
        if self.config.checkpoint_path:
            save_checkpoint(self.state, self.config.checkpoint_path, self.collective)

        if self.collective.master:
            self._report(tables, outer, k, pairs)
        return initial

    def _solve_tridiagonal(self, tables: OuterLoopTables, k: int, *, outer: int) -> None:
        try:
            zu, gamma = mtx_tridiag_solve(tables.delta[:k], tables.beta[1:k], -tables.qg[:k])
        except np.linalg.LinAlgError as exc:
            raise NumericalBreakdown(f"Tridiagonal solve failed: {exc}", outer=outer, inner=k) from exc
        tables.zu[:k] = zu
        tables.gamma[:k] = gamma

        if self.collective.master and LOGGER.isEnabledFor(logging.DEBUG):
            T = mtx_tridiag_matrix(tables.delta[:k], tables.beta[1:k])
            residual = float(np.linalg.norm(T @ zu + tables.qg[:k]))
            LOGGER.debug("(%03d,%03d): Tridiagonal solve residual |T zu + QG| = %14.7e", outer, k, residual)

    def _new_gradient(self, tables: OuterLoopTables, k: int, q_next: StateVector, *, outer: int) -> None:
        """Gradient reduction at the current minimiser of the Krylov subspace.

        The gradient is rebuilt from the stored Lanczos vectors as

            g = Gnorm q(1) + beta(k+1) zu(k) q(k+1) - sum_rec QG(rec) q(rec)

        with only the ``QG`` term of the sum; the background ``zu(rec)`` term
        is not included.
        """

        q_first = self.lanczos_store.load(outer, 1)
        g = state_add(q_first, q_next, tables.gnorm, tables.beta[k] * tables.zu[k - 1])
        for rec in range(1, k + 1):
            q_rec = q_first if rec == 1 else self.lanczos_store.load(outer, rec)
            state_add(g, q_rec, 1.0, -tables.qg[rec - 1], out=g)

        norm = math.sqrt(max(state_dot(g, g, self.collective), 0.0))
        tables.greduc[k - 1] = norm / tables.gnorm

    def _increment(self, k: int, outer: int) -> StateVector:
        """Current minimiser ``X = sum_rec zu(rec) q(rec)`` in y-space."""

        tables = self.state.tables(outer)
        x = StateVector(self.layout)
        for rec in range(1, k + 1):
            q_rec = self.lanczos_store.load(outer, rec)
            state_add(x, q_rec, 1.0, tables.zu[rec - 1], out=x)
        return x

    def _background(self, x_v: StateVector | None, prior_sum: StateVector | None) -> float:
        if x_v is None and prior_sum is None:
            return 0.0
        if x_v is None:
            total = prior_sum
        elif prior_sum is None:
            total = x_v
        else:
            total = state_add(x_v, prior_sum, 1.0, 1.0)
        return 0.5 * state_dot(total, total, self.collective)

    def _initial_cost(
        self, tables: OuterLoopTables, cost0: float, prior_sum: StateVector | None
    ) -> None:
        jb = self._background(None, prior_sum)
        tables.cost_total[0] = cost0
        tables.cost_background[0] = jb
        tables.cost_observation[0] = cost0 - jb

    def _cost(
        self,
        tables: OuterLoopTables,
        k: int,
        increment: StateVector,
        cost0: float,
        prior_sum: StateVector | None,
        *,
        outer: int,
    ) -> CostFunctionValue:
        """Quadratic cost at ``X``: ``J = Cost0 + 0.5 Gnorm <q(1), X>``."""

        q_first = self.lanczos_store.load(outer, 1)
        total = cost0 + 0.5 * tables.gnorm * state_dot(q_first, increment, self.collective)

        if self._preconditioned(outer):
            x_v = self.preconditioner.apply(
                increment,
                self.config.lmp_scale,
                outer=outer,
                inner=k,
                transpose=False,
                message="increment from y-space to v-space",
            )
        else:
            x_v = increment
        jb = self._background(x_v, prior_sum)

        tables.cost_total[k] = total
        tables.cost_background[k] = jb
        tables.cost_observation[k] = total - jb
        return tables.cost(k)

    def _report(self, tables: OuterLoopTables, outer: int, k: int, pairs: list[RitzPair]) -> None:
        if k == 0:
            LOGGER.info("(%03d,%03d): Initial gradient norm, Gnorm  = %14.7e", outer, k, tables.gnorm)
            return

        LOGGER.info(
            "(%03d,%03d): Reduction in the gradient norm,  Greduc = %14.7e", outer, k, tables.greduc[k - 1]
        )
        LOGGER.info(
            "(%03d,%03d): Lanczos algorithm coefficient,    delta = %14.7e", outer, k, tables.delta[k - 1]
        )
        cost = tables.cost(k)
        LOGGER.info(
            "(%03d,%03d): Cost function J = %14.7e, Jb = %14.7e, Jo = %14.7e",
            outer,
            k,
            cost.total,
            cost.background,
            cost.observation,
        )

        if not pairs:
            return
        level = logging.INFO if k == self.ninner else logging.DEBUG
        LOGGER.log(level, "Ritz Eigenvalues and relative accuracy: RitzMaxErr = %14.7e", self.config.ritz_max_err)
        good = 0
        for i, pair in enumerate(pairs, start=1):
            if pair.converged:
                good += 1
                LOGGER.log(
                    level, "  %03d  %14.7e  %14.7e  converged  (Good=%03d)", i, pair.value, pair.error, good
                )
            else:
                LOGGER.log(level, "  %03d  %14.7e  %14.7e  not converged", i, pair.value, pair.error)
