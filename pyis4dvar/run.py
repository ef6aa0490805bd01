"""Command line interface to run the Lanczos minimisation on a synthetic problem."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import numpy as np

from common.common_mpi import finalize_mpi, initialize_mpi

from .config import MinimizerConfig, load_config
from .driver import run_incremental_4dvar
from .grid import Grid
from .io import MemoryVectorStore, NetCDFVectorStore, save_outputs
from .mpi import Collective
from .state import StateLayout, StateVector
from .synthetic import QuadraticProblem, random_spd_matrix

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _build_config(args: argparse.Namespace) -> MinimizerConfig:
    config = load_config(args.config) if args.config else MinimizerConfig()
    overrides: dict[str, Any] = {}
    for name in ("nouter", "ninner", "lmp_scale", "ritz_max_err"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    for name in ("precondition", "ritz_lmp", "hessian_evecs"):
        if getattr(args, name):
            overrides[name] = True
    if args.output_dir:
        overrides["checkpoint_path"] = str(Path(args.output_dir) / "checkpoint.nc")
    return replace(config, **overrides) if overrides else config


def _build_problem(size: int, condition: float, seed: int | None) -> QuadraticProblem:
    if size < 1:
        raise ValueError("Problem size must be positive")
    if condition < 1.0:
        raise ValueError("Condition number must be at least one")
    eigenvalues = np.geomspace(1.0, condition, size)
    rng = np.random.default_rng(seed)
    A = random_spd_matrix(eigenvalues, seed=seed)
    b = rng.standard_normal(size)
    layout = StateLayout.from_grid(Grid.uniform(1, size), ("zeta",))
    return QuadraticProblem(A, b, layout)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run the preconditioned Lanczos 4D-Var minimisation on a synthetic quadratic problem"
    )
    parser.add_argument("--config", default=None, help="JSON file holding minimiser settings")
    parser.add_argument("--nouter", type=int, default=None, help="Number of outer loops")
    parser.add_argument("--ninner", type=int, default=None, help="Number of inner loops")
    parser.add_argument("--precondition", action="store_true", help="Enable the limited-memory preconditioner")
    parser.add_argument(
        "--lmp-scale",
        dest="lmp_scale",
        type=int,
        choices=(-2, -1, 1, 2),
        default=None,
        help="Preconditioner variant used between v-space and y-space",
    )
    parser.add_argument("--ritz-lmp", dest="ritz_lmp", action="store_true", help="Use the Ritz LMP")
    parser.add_argument(
        "--hessian-evecs", dest="hessian_evecs", action="store_true", help="Compute Hessian eigenvectors"
    )
    parser.add_argument(
        "--ritz-max-err", dest="ritz_max_err", type=float, default=None, help="Ritz convergence tolerance"
    )
    parser.add_argument("--size", type=int, default=20, help="Dimension of the synthetic problem")
    parser.add_argument("--condition", type=float, default=100.0, help="Condition number of the Hessian")
    parser.add_argument("--seed", type=int, default=None, help="Random seed of the synthetic problem")
    parser.add_argument(
        "--store-dir",
        default=None,
        help="Directory for NetCDF Lanczos and Hessian vectors (kept in memory when omitted)",
    )
    parser.add_argument("--output-dir", default=None, help="Directory where NetCDF outputs will be written")
    parser.add_argument(
        "--metadata",
        default=None,
        help="Optional JSON file storing run metadata to be embedded in the outputs",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    initialize_mpi()
    try:
        collective = Collective.world()
        config = _build_config(args)
        problem = _build_problem(args.size, args.condition, args.seed)
        layout = problem.layout

        if args.store_dir:
            lanczos_store = NetCDFVectorStore(args.store_dir, layout, prefix="lanczos", collective=collective)
            hessian_store = NetCDFVectorStore(args.store_dir, layout, prefix="hessian", collective=collective)
        else:
            lanczos_store = MemoryVectorStore(layout)
            hessian_store = MemoryVectorStore(layout)

        result = run_incremental_4dvar(
            problem,
            config,
            layout,
            lanczos_store=lanczos_store,
            hessian_store=hessian_store,
            collective=collective,
        )

        exact = problem.minimizer()
        residual = float(np.linalg.norm(problem.x_lin - exact) / max(np.linalg.norm(exact), 1.0e-300))
        if collective.master:
            LOGGER.info("Gradient evaluations: %d", problem.n_gradients)
            LOGGER.info("Relative distance to the exact minimiser: %.7e", residual)

        if args.output_dir and collective.master:
            attrs: dict[str, Any] = {"relative_residual": residual}
            if args.metadata:
                metadata_path = Path(args.metadata)
                with metadata_path.open("r", encoding="utf-8") as handle:
                    attrs.update(json.load(handle))
            save_outputs(
                {
                    "increment.nc": result.increment,
                    "analysis.nc": problem.state(),
                    "minimizer.nc": StateVector.from_flat(layout, exact),
                },
                args.output_dir,
                attrs,
            )
    finally:
        finalize_mpi()
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
