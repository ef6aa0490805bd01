from __future__ import annotations

import logging

import numpy as np
import pytest

from common.common_mtx import mtx_tridiag_matrix
from pyis4dvar.cgradient import CGradient
from pyis4dvar.config import MinimizerConfig
from pyis4dvar.driver import run_incremental_4dvar, run_outer_loop
from pyis4dvar.errors import NumericalBreakdown
from pyis4dvar.io import MemoryVectorStore, NetCDFVectorStore, load_checkpoint
from pyis4dvar.state import StateVector
from pyis4dvar.synthetic import QuadraticProblem, random_spd_matrix


def _minimizer(problem, config, lanczos=None, hessian=None, state=None):
    if lanczos is None:
        lanczos = MemoryVectorStore(problem.layout)
    if hessian is None:
        hessian = MemoryVectorStore(problem.layout)
    return CGradient(config, problem.layout, lanczos, hessian, state=state)


def test_converges_to_exact_minimizer(spd_problem):
    config = MinimizerConfig(nouter=1, ninner=5, hessian_evecs=True)

    result = run_incremental_4dvar(spd_problem, config, spd_problem.layout)

    np.testing.assert_allclose(spd_problem.x_lin, spd_problem.minimizer(), atol=1e-6)
    np.testing.assert_allclose(result.increment.to_flat(), spd_problem.minimizer(), atol=1e-6)
    tables = result.state.tables(1)
    np.testing.assert_allclose(tables.ritz, spd_problem.eigenvalues(), rtol=1e-6)
    assert len(tables.hessian) == 5
    assert spd_problem.n_gradients == 6


def test_ritz_values_converge_monotonically():
    eigenvalues = np.arange(1.0, 9.0)
    problem = QuadraticProblem(np.diag(eigenvalues), np.ones(8))
    config = MinimizerConfig(nouter=1, ninner=8, hessian_evecs=True)
    minimizer = _minimizer(problem, config)

    largest, smallest = [], []
    perturbation = StateVector(problem.layout)
    for inner in range(config.ninner + 1):
        gradient = problem.evaluate_gradient(perturbation)
        perturbation = minimizer.step(1, inner, gradient, cost0=problem.cost())
        if inner > 0:
            ritz = minimizer.state.tables(1).ritz[:inner]
            assert np.all(ritz >= 0.0)
            largest.append(ritz.max())
            smallest.append(ritz.min())

    assert np.all(np.diff(largest) >= -1e-10)
    assert np.all(np.diff(smallest) <= 1e-10)
    np.testing.assert_allclose(minimizer.state.tables(1).ritz, eigenvalues, rtol=1e-8)


def test_breakdown_at_first_non_positive_curvature():
    A = np.diag([4.0, 3.0, -1.0, 5.0, 2.0]) + np.diag(np.ones(4), 1) + np.diag(np.ones(4), -1)
    b = np.array([-1.0, 0.0, 0.0, 0.0, 0.0])
    problem = QuadraticProblem(A, b)
    minimizer = _minimizer(problem, MinimizerConfig(nouter=1, ninner=5))

    with pytest.raises(NumericalBreakdown) as excinfo:
        run_outer_loop(minimizer, problem, 1)

    assert (excinfo.value.outer, excinfo.value.inner) == (1, 3)
    tables = minimizer.state.tables(1)
    np.testing.assert_allclose(tables.delta[:3], [4.0, 3.0, -1.0])
    assert tables.inner == 2
    assert minimizer.collective.aborted

    with pytest.raises(NumericalBreakdown):
        minimizer.step(1, 3, problem.evaluate_gradient(StateVector(problem.layout)))


def test_preconditioned_gradient_norm_scaling():
    A = random_spd_matrix(np.geomspace(1.0, 100.0, 8), seed=11)
    b = np.linspace(-1.0, 2.0, 8)
    problem = QuadraticProblem(A, b)
    config = MinimizerConfig(nouter=2, ninner=4, precondition=True, lmp_scale=2, ritz_max_err=10.0)
    hessian = MemoryVectorStore(problem.layout)
    cost_start = problem.cost()

    result = run_incremental_4dvar(problem, config, problem.layout, hessian_store=hessian)

    pairs = result.state.hessian_pairs(1)
    assert pairs
    x1 = result.increments[0].to_flat()
    g = A @ x1 - b
    projections = np.array([hessian.load(1, p.record).to_flat() @ g for p in pairs])
    values = np.array([p.value for p in pairs])
    expected = np.sqrt(g @ g + np.sum((1.0 / values - 1.0) * projections**2))

    assert result.state.tables(2).gnorm == pytest.approx(expected, rel=1e-8)
    assert result.state.tables(1).gnorm == pytest.approx(np.linalg.norm(b), rel=1e-12)
    assert problem.cost() < cost_start


def test_ritz_preconditioner_reduces_cost():
    A = random_spd_matrix(np.geomspace(1.0, 50.0, 8), seed=2)
    problem = QuadraticProblem(A, np.ones(8))
    config = MinimizerConfig(
        nouter=3, ninner=3, precondition=True, ritz_lmp=True, lmp_scale=2, ritz_max_err=10.0
    )
    cost_start = problem.cost()

    result = run_incremental_4dvar(problem, config, problem.layout)

    assert problem.cost() < cost_start
    assert result.costs[-1].total == pytest.approx(problem.cost(), rel=1e-8)


def test_cost_function_is_non_increasing():
    A = random_spd_matrix(np.geomspace(0.5, 40.0, 8), seed=4)
    b = np.arange(8.0) - 3.0
    x0 = np.full(8, 0.25)
    problem = QuadraticProblem(A, b, x0=x0)
    config = MinimizerConfig(nouter=1, ninner=4)
    minimizer = _minimizer(problem, config)

    increment = run_outer_loop(minimizer, problem, 1)
    problem.relinearize(increment)

    tables = minimizer.state.tables(1)
    assert tables.cost_total[0] == pytest.approx(0.5 * x0 @ A @ x0 - b @ x0)
    assert np.all(np.diff(tables.cost_total) <= 1e-10)
    assert tables.cost_total[4] == pytest.approx(problem.cost(), rel=1e-10)
    np.testing.assert_allclose(
        tables.cost_background + tables.cost_observation, tables.cost_total, rtol=1e-12
    )
    new_gradient = np.linalg.norm(A @ problem.x_lin - b)
    assert tables.greduc[3] == pytest.approx(new_gradient / tables.gnorm, rel=1e-6, abs=1e-12)


def test_inner_loops_run_in_order(spd_problem):
    minimizer = _minimizer(spd_problem, MinimizerConfig(nouter=1, ninner=3))
    gradient = spd_problem.evaluate_gradient(StateVector(spd_problem.layout))
    with pytest.raises(ValueError):
        minimizer.step(1, 2, gradient)
    with pytest.raises(ValueError):
        minimizer.step(2, 0, gradient)
    with pytest.raises(ValueError):
        minimizer.step(1, 4, gradient)


def test_restart_from_checkpoint(tmp_path):
    A = random_spd_matrix(np.geomspace(1.0, 30.0, 6), seed=8)
    b = np.linspace(1.0, -1.0, 6)
    checkpoint = tmp_path / "cg.nc"
    config = MinimizerConfig(nouter=1, ninner=5, checkpoint_path=str(checkpoint))

    reference = QuadraticProblem(A, b)
    expected = run_outer_loop(_minimizer(reference, MinimizerConfig(nouter=1, ninner=5)), reference, 1)

    problem = QuadraticProblem(A, b)
    lanczos = NetCDFVectorStore(tmp_path / "vectors", problem.layout)
    first = _minimizer(problem, config, lanczos=lanczos)
    perturbation = StateVector(problem.layout)
    for inner in range(3):
        perturbation = first.step(1, inner, problem.evaluate_gradient(perturbation), cost0=problem.cost())

    state = load_checkpoint(checkpoint)
    assert (state.outer, state.inner) == (1, 2)
    second = _minimizer(problem, config, lanczos=lanczos, state=state)
    for inner in range(3, 6):
        perturbation = second.step(1, inner, problem.evaluate_gradient(perturbation), cost0=problem.cost())

    np.testing.assert_allclose(perturbation.to_flat(), expected.to_flat(), atol=1e-10)


def test_caller_stores_receive_records():
    A = random_spd_matrix(np.geomspace(1.0, 100.0, 8), seed=11)
    problem = QuadraticProblem(A, np.linspace(-1.0, 2.0, 8))
    config = MinimizerConfig(nouter=2, ninner=4, precondition=True, lmp_scale=2, ritz_max_err=10.0)
    lanczos = MemoryVectorStore(problem.layout)
    hessian = MemoryVectorStore(problem.layout)

    result = run_incremental_4dvar(
        problem, config, problem.layout, lanczos_store=lanczos, hessian_store=hessian
    )

    assert len(lanczos) == config.nouter * (config.ninner + 1)
    assert (1, 1) in lanczos
    assert (2, config.ninner + 1) in lanczos
    pairs = result.state.hessian_pairs(1)
    assert pairs
    assert all((1, p.record) in hessian for p in pairs)


@pytest.mark.parametrize(
    "lmp_scale, ritz_lmp",
    [(-2, False), (-1, False), (1, False), (2, False), (-2, True), (2, True)],
)
def test_preconditioned_cost_decomposition(lmp_scale, ritz_lmp):
    A = random_spd_matrix(np.geomspace(1.0, 20.0, 8), seed=6)
    b = np.linspace(2.0, -1.0, 8)
    problem = QuadraticProblem(A, b)
    config = MinimizerConfig(
        nouter=2,
        ninner=4,
        precondition=True,
        lmp_scale=lmp_scale,
        ritz_lmp=ritz_lmp,
        ritz_max_err=10.0,
    )

    result = run_incremental_4dvar(problem, config, problem.layout)

    first, second = (result.increments[i].to_flat() for i in range(2))
    for outer in (1, 2):
        tables = result.state.tables(outer)
        assert np.all(np.diff(tables.cost_total) <= 1e-10 * abs(tables.cost_total[0]) + 1e-12)
        np.testing.assert_allclose(
            tables.cost_background + tables.cost_observation, tables.cost_total, rtol=1e-12
        )

    tables = result.state.tables(2)
    assert tables.cost_background[0] == pytest.approx(0.5 * first @ first, rel=1e-10)
    total = first + second
    assert tables.cost_background[config.ninner] == pytest.approx(0.5 * total @ total, rel=1e-8)
    assert result.costs[1].total == pytest.approx(problem.cost(), rel=1e-7)


def test_tridiagonal_residual_is_logged(caplog, spd_problem):
    minimizer = _minimizer(spd_problem, MinimizerConfig(nouter=1, ninner=4))

    with caplog.at_level(logging.DEBUG, logger="pyis4dvar.cgradient"):
        run_outer_loop(minimizer, spd_problem, 1)

    residuals = [
        record.args[-1]
        for record in caplog.records
        if record.name == "pyis4dvar.cgradient" and "Tridiagonal solve residual" in record.getMessage()
    ]
    assert len(residuals) == 4
    assert max(residuals) < 1e-10
    tables = minimizer.state.tables(1)
    T = mtx_tridiag_matrix(tables.delta, tables.beta[1:4])
    np.testing.assert_allclose(T @ tables.zu, -tables.qg[:4], atol=1e-10)
