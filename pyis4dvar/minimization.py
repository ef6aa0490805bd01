"""Bookkeeping tables of the Lanczos conjugate-gradient minimisation."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .state import StateVector

__all__ = [
    "CostFunctionValue",
    "HessianEigenpair",
    "MinimizationState",
    "OuterLoopTables",
    "RitzPair",
]


@dataclass(slots=True)
class CostFunctionValue:
    """Total cost split into its background and observation terms."""

    total: float
    background: float
    observation: float


@dataclass(slots=True)
class RitzPair:
    """Eigenpair of the Lanczos tridiagonal matrix ``T(k)``.

    ``column`` is the zero-based column of the eigenvector in the ascending
    eigenvector matrix ``zv``.
    """

    value: float
    column: int
    vector: np.ndarray
    error: float
    converged: bool


@dataclass(slots=True)
class HessianEigenpair:
    """Converged Ritz value with its reconstructed Hessian eigenvector.

    ``record`` is the one-based record of the eigenvector in the Hessian
    vector store; records are ordered by decreasing Ritz value.
    """

    value: float
    error: float
    column: int
    record: int
    vector: StateVector | None = None


@dataclass(slots=True)
class OuterLoopTables:
    """Scalar tables of one outer loop.

    Arrays are zero-based: ``delta[i]`` holds the Lanczos coefficient of inner
    loop ``i + 1``.  ``beta`` and ``qg`` carry one extra entry because inner
    loop ``k`` produces ``beta(k+1)`` and ``QG(k+1)``; ``beta[0]`` is unused.
    """

    ninner: int
    gnorm: float = 0.0
    delta: np.ndarray = field(default=None)
    beta: np.ndarray = field(default=None)
    gamma: np.ndarray = field(default=None)
    qg: np.ndarray = field(default=None)
    zu: np.ndarray = field(default=None)
    greduc: np.ndarray = field(default=None)
    ritz: np.ndarray = field(default=None)
    ritz_err: np.ndarray = field(default=None)
    zv: np.ndarray = field(default=None)
    cost_total: np.ndarray = field(default=None)
    cost_background: np.ndarray = field(default=None)
    cost_observation: np.ndarray = field(default=None)
    ortho_err: np.ndarray = field(default=None)
    hessian: list[HessianEigenpair] = field(default_factory=list)
    inner: int = -1

    def __post_init__(self) -> None:
        if self.ninner < 1:
            raise ValueError("The number of inner loops must be positive")
        n = self.ninner
        defaults = {
            "delta": (n,),
            "beta": (n + 1,),
            "gamma": (n,),
            "qg": (n + 1,),
            "zu": (n,),
            "greduc": (n,),
            "ritz": (n,),
            "ritz_err": (n,),
            "zv": (n, n),
            "cost_total": (n + 1,),
            "cost_background": (n + 1,),
            "cost_observation": (n + 1,),
            "ortho_err": (n + 1,),
        }
        for name, shape in defaults.items():
            value = getattr(self, name)
            if value is None:
                setattr(self, name, np.zeros(shape, dtype=float))
            else:
                array = np.array(value, dtype=float)
                if array.shape != shape:
                    raise ValueError(f"Table {name!r} has shape {array.shape}, expected {shape}")
                setattr(self, name, array)

    def reset(self) -> None:
        """Clear every table before inner loop 0 of a new outer loop."""

        self.gnorm = 0.0
        for array in (
            self.delta,
            self.beta,
            self.gamma,
            self.qg,
            self.zu,
            self.greduc,
            self.ritz,
            self.ritz_err,
            self.zv,
            self.cost_total,
            self.cost_background,
            self.cost_observation,
            self.ortho_err,
        ):
            array.fill(0.0)
        self.hessian = []
        self.inner = -1

    def cost(self, inner: int) -> CostFunctionValue:
        return CostFunctionValue(
            float(self.cost_total[inner]),
            float(self.cost_background[inner]),
            float(self.cost_observation[inner]),
        )

    def ritz_pairs(self, inner: int, tolerance: float) -> list[RitzPair]:
        """Ritz pairs of ``T(inner)`` in ascending order of value."""

        return [
            RitzPair(
                value=float(self.ritz[i]),
                column=i,
                vector=self.zv[:inner, i].copy(),
                error=float(self.ritz_err[i]),
                converged=bool(self.ritz_err[i] <= tolerance),
            )
            for i in range(inner)
        ]


class MinimizationState:
    """Run-scoped, append-only tables owned by the orchestrator.

    One :class:`OuterLoopTables` is kept per outer loop so that the
    preconditioner can consult the Lanczos coefficients and converged
    eigenpairs of every previous outer loop.
    """

    def __init__(self, nouter: int, ninner: int, loops: list[OuterLoopTables] | None = None) -> None:
        if nouter < 1:
            raise ValueError("The number of outer loops must be positive")
        if ninner < 1:
            raise ValueError("The number of inner loops must be positive")
        self.nouter = int(nouter)
        self.ninner = int(ninner)
        if loops is None:
            loops = [OuterLoopTables(self.ninner) for _ in range(self.nouter)]
        if len(loops) != self.nouter or any(t.ninner != self.ninner for t in loops):
            raise ValueError("Outer loop tables do not match the loop counts")
        self.loops = loops
        self.outer = 0
        self.inner = -1

    def tables(self, outer: int) -> OuterLoopTables:
        """Tables of the one-based outer loop *outer*."""

        if not 1 <= outer <= self.nouter:
            raise ValueError(f"Outer loop {outer} outside 1..{self.nouter}")
        return self.loops[outer - 1]

    def start_outer(self, outer: int) -> OuterLoopTables:
        tables = self.tables(outer)
        tables.reset()
        self.outer = outer
        self.inner = -1
        return tables

    def complete(self, outer: int, inner: int) -> None:
        """Mark inner loop *inner* of *outer* as finished."""

        self.tables(outer).inner = inner
        self.outer = outer
        self.inner = inner

    def hessian_pairs(self, outer: int) -> list[HessianEigenpair]:
        return list(self.tables(outer).hessian)
