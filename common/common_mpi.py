"""Process-level MPI start-up and shutdown helpers."""

from __future__ import annotations

try:  # pragma: no cover - optional dependency
    from mpi4py import MPI
except ImportError:  # pragma: no cover - mpi4py is optional
    MPI = None

nprocs = 1
myrank = 0
master = True

__all__ = ["initialize_mpi", "finalize_mpi", "nprocs", "myrank", "master"]


def initialize_mpi() -> tuple[int, int]:
    """Initialise MPI when :mod:`mpi4py` is available.

    Returns the ``(nprocs, myrank)`` pair and refreshes the module globals so
    that ``master`` flags the rank responsible for reporting and for the
    serial eigensolver.
    """

    global nprocs, myrank, master
    if MPI is None:
        nprocs = 1
        myrank = 0
    else:
        if not MPI.Is_initialized():  # pragma: no cover - depends on MPI runtime
            MPI.Init()
        comm = MPI.COMM_WORLD
        nprocs = comm.Get_size()
        myrank = comm.Get_rank()
    master = myrank == 0
    return nprocs, myrank


def finalize_mpi() -> None:
    """Shutdown MPI if it was previously initialised."""

    if MPI is not None and MPI.Is_initialized() and not MPI.Is_finalized():  # pragma: no cover
        MPI.Finalize()
