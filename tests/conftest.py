from __future__ import annotations

import numpy as np
import pytest

from pyis4dvar.grid import Grid
from pyis4dvar.state import StateLayout, StateVector
from pyis4dvar.synthetic import QuadraticProblem, random_spd_matrix


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def coastal_grid():
    rmask = np.ones((4, 5))
    rmask[1, 1] = 0.0
    rmask[3, 4] = 0.0
    area = np.linspace(0.5, 2.0, 20).reshape(4, 5)
    return Grid(rmask, area=area)


@pytest.fixture
def mixed_layout(coastal_grid):
    return StateLayout.from_grid(
        coastal_grid,
        ("zeta", "ubar", "vbar", "u", "t", "zeta_obc", "u_obc", "ustr", "tflux"),
        n_levels=2,
        n_tracers=2,
    )


@pytest.fixture
def random_vector(rng):
    def make(layout: StateLayout) -> StateVector:
        return StateVector.from_flat(layout, rng.standard_normal(layout.size))

    return make


@pytest.fixture
def spd_problem():
    A = random_spd_matrix([1.0, 2.0, 3.5, 5.0, 8.0], seed=7)
    b = np.array([1.0, -2.0, 0.5, 3.0, -1.0])
    return QuadraticProblem(A, b)

