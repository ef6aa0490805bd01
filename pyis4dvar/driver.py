"""Outer / inner loop drivers for incremental 4D-Var."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from .cgradient import CGradient
from .config import MinimizerConfig
from .io import MemoryVectorStore, VectorStore
from .minimization import CostFunctionValue, MinimizationState
from .mpi import Collective
from .state import StateLayout, StateVector, state_add

LOGGER = logging.getLogger(__name__)

__all__ = ["GradientOracle", "IncrementalResult", "run_incremental_4dvar", "run_outer_loop"]


class GradientOracle(Protocol):
    """Tangent linear + adjoint integration around a linearisation point."""

    def evaluate_gradient(self, perturbation: StateVector) -> StateVector: ...

    def cost(self, perturbation: StateVector | None = None) -> float: ...

    def relinearize(self, increment: StateVector) -> None: ...


@dataclass(slots=True)
class IncrementalResult:
    """Outcome of :func:`run_incremental_4dvar`."""

    increment: StateVector
    increments: list[StateVector]
    state: MinimizationState
    costs: list[CostFunctionValue] = field(default_factory=list)


def run_outer_loop(
    minimizer: CGradient,
    oracle: GradientOracle,
    outer: int,
    *,
    prior_sum: StateVector | None = None,
) -> StateVector:
    """Run inner loops ``0..Ninner`` of *outer* and return the increment.

    The returned increment lives in unconditioned (v) space.
    """

    cost0 = oracle.cost(None)
    perturbation = StateVector(minimizer.layout)
    for inner in range(minimizer.ninner + 1):
        gradient = oracle.evaluate_gradient(perturbation)
        perturbation = minimizer.step(outer, inner, gradient, cost0=cost0, prior_sum=prior_sum)
    return perturbation


def run_incremental_4dvar(
    oracle: GradientOracle,
    config: MinimizerConfig,
    layout: StateLayout,
    *,
    lanczos_store: VectorStore | None = None,
    hessian_store: VectorStore | None = None,
    collective: Collective | None = None,
) -> IncrementalResult:
    """Run ``Nouter`` outer loops, relinearising *oracle* after each one.

    Stores default to in-memory ones.
    """

    collective = collective or Collective()
    if lanczos_store is None:
        lanczos_store = MemoryVectorStore(layout)
    if hessian_store is None:
        hessian_store = MemoryVectorStore(layout)
    minimizer = CGradient(config, layout, lanczos_store, hessian_store, collective)

    total = StateVector(layout)
    increments: list[StateVector] = []
    costs: list[CostFunctionValue] = []
    for outer in range(1, config.nouter + 1):
        if collective.master:
            LOGGER.info("Outer loop %03d of %03d", outer, config.nouter)
        prior_sum = total.copy() if outer > 1 else None
        increment = run_outer_loop(minimizer, oracle, outer, prior_sum=prior_sum)

        increments.append(increment)
        state_add(total, increment, 1.0, 1.0, out=total)
        oracle.relinearize(increment)

        cost = minimizer.state.tables(outer).cost(config.ninner)
        costs.append(cost)
        if collective.master:
            LOGGER.info(
                "(%03d,%03d): Final cost J = %14.7e (Jb = %14.7e, Jo = %14.7e)",
                outer,
                config.ninner,
                cost.total,
                cost.background,
                cost.observation,
            )

    return IncrementalResult(increment=total, increments=increments, state=minimizer.state, costs=costs)
