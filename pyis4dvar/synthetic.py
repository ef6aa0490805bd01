"""Quadratic test problems acting as tangent linear / adjoint gradient oracles."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import scipy.linalg as la

from .grid import Grid
from .state import StateLayout, StateVector

LOGGER = logging.getLogger(__name__)

__all__ = ["QuadraticProblem", "random_spd_matrix"]


def random_spd_matrix(
    eigenvalues: Sequence[float], seed: int | None = None
) -> np.ndarray:
    """Symmetric matrix with the given spectrum and random eigenvectors."""

    values = np.asarray(eigenvalues, dtype=float)
    rng = np.random.default_rng(seed)
    q, _ = la.qr(rng.standard_normal((values.size, values.size)))
    return (q * values) @ q.T


class QuadraticProblem:
    """``f(x) = 0.5 x'Ax - b'x`` linearised around ``x_lin``.

    Inner loops see the perturbation ``dx`` relative to the linearisation
    point, so that ``evaluate_gradient(dx) = A (x_lin + dx) - b``.  The state
    layout must use unit metric weights over sea points for the inner product
    to coincide with the Euclidean one.
    """

    def __init__(
        self,
        A: np.ndarray,
        b: np.ndarray,
        layout: StateLayout | None = None,
        x0: np.ndarray | None = None,
    ) -> None:
        A = np.asarray(A, dtype=float)
        b = np.asarray(b, dtype=float).ravel()
        if A.ndim != 2 or A.shape[0] != A.shape[1]:
            raise ValueError("The Hessian must be a square matrix")
        if not np.allclose(A, A.T):
            raise ValueError("The Hessian must be symmetric")
        if b.size != A.shape[0]:
            raise ValueError("Right-hand side and Hessian sizes differ")

        if layout is None:
            layout = StateLayout.from_grid(Grid.uniform(1, b.size), ("zeta",))
        if layout.size != b.size:
            raise ValueError(f"Layout holds {layout.size} values, problem has {b.size}")

        self.A = A
        self.b = b
        self.layout = layout
        self.x_lin = np.zeros_like(b) if x0 is None else np.asarray(x0, dtype=float).ravel().copy()
        self.n_gradients = 0

    @property
    def size(self) -> int:
        return self.b.size

    def _x(self, perturbation: StateVector | None) -> np.ndarray:
        if perturbation is None:
            return self.x_lin
        return self.x_lin + perturbation.to_flat()

    def evaluate_gradient(self, perturbation: StateVector | None = None) -> StateVector:
        """Gradient of ``f`` at ``x_lin + perturbation``."""

        self.n_gradients += 1
        return StateVector.from_flat(self.layout, self.A @ self._x(perturbation) - self.b)

    def cost(self, perturbation: StateVector | None = None) -> float:
        x = self._x(perturbation)
        return float(0.5 * x @ self.A @ x - self.b @ x)

    def relinearize(self, increment: StateVector) -> None:
        """Move the linearisation point by *increment*."""

        self.x_lin = self.x_lin + increment.to_flat()
        LOGGER.debug("Relinearised quadratic problem, |x_lin| = %.7e", np.linalg.norm(self.x_lin))

    def minimizer(self) -> np.ndarray:
        """Exact minimiser ``A^-1 b``."""

        return la.solve(self.A, self.b, assume_a="sym")

    def eigenvalues(self) -> np.ndarray:
        return la.eigvalsh(self.A)

    def state(self) -> StateVector:
        return StateVector.from_flat(self.layout, self.x_lin)
