"""Numerical helpers shared by the 4D-Var minimisation package.

The submodules hold the dense kernels that do not depend on the layout of the
ocean state vector: symmetric tridiagonal solves and eigen-decompositions, and
the process start-up helpers for MPI runs.
"""

from .common_mpi import finalize_mpi, initialize_mpi, myrank, nprocs
from .common_mtx import mtx_tridiag_eigen, mtx_tridiag_matrix, mtx_tridiag_solve

__all__ = [
    "initialize_mpi",
    "finalize_mpi",
    "myrank",
    "nprocs",
    "mtx_tridiag_eigen",
    "mtx_tridiag_matrix",
    "mtx_tridiag_solve",
]
