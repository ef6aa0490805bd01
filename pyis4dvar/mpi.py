"""Collective operations with optional MPI support.

Every inner product in the minimisation is a blocking reduction across the
ranks that own the tiles of a state vector.  :class:`Collective` wraps an
``mpi4py`` communicator (or runs serially when none is available) and carries
the run-wide fatal flag that is consulted before each collective step.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
from typing import Any, TypeVar

from .errors import CommunicationFailure, MinimizationError

LOGGER = logging.getLogger(__name__)

MPI: Any | None
_spec = importlib.util.find_spec("mpi4py")
if _spec is None:
    MPI = None
else:
    mpi4py = importlib.import_module("mpi4py")
    MPI = mpi4py.MPI

__all__ = ["MPI", "Collective", "get_world_comm"]

T = TypeVar("T")


def get_world_comm():
    """Return :data:`mpi4py.MPI.COMM_WORLD` when MPI is available."""

    if MPI is None:
        return None
    return MPI.COMM_WORLD


class Collective:
    """Reductions and broadcasts shared by all ranks of one minimisation.

    Parameters
    ----------
    comm:
        An ``mpi4py`` communicator.  ``None`` selects serial execution.
    root:
        Rank that acts as the leader for serial computations and reporting.
    """

    def __init__(self, comm=None, *, root: int = 0) -> None:
        self.comm = comm
        self.root = int(root)
        if comm is not None:
            self.size = comm.Get_size()
            self.rank = comm.Get_rank()
        else:
            self.size = 1
            self.rank = 0
        self.failure: MinimizationError | None = None

    @classmethod
    def world(cls) -> "Collective":
        return cls(get_world_comm())

    @property
    def master(self) -> bool:
        return self.rank == self.root

    @property
    def aborted(self) -> bool:
        return self.failure is not None

    def abort(self, failure: MinimizationError) -> None:
        """Record *failure* as the fatal condition of the run."""

        if self.failure is None:
            self.failure = failure
            if self.master:
                LOGGER.error("Minimisation aborted: %s", failure)

    def check(self) -> None:
        """Raise the recorded fatal condition, if any."""

        if self.failure is not None:
            raise self.failure

    def allreduce_sum(self, value: float) -> float:
        """Sum *value* over all ranks."""

        self.check()
        if self.comm is None or self.size == 1:
            return float(value)
        try:
            return float(self.comm.allreduce(float(value), op=MPI.SUM))
        except MPI.Exception as exc:  # pragma: no cover - depends on MPI runtime
            failure = CommunicationFailure(f"Global sum reduction failed: {exc}")
            self.abort(failure)
            raise failure from exc

    def bcast(self, obj: T) -> T:
        """Broadcast *obj* from the leader rank to every rank."""

        self.check()
        if self.comm is None or self.size == 1:
            return obj
        try:
            return self.comm.bcast(obj, root=self.root)
        except MPI.Exception as exc:  # pragma: no cover - depends on MPI runtime
            failure = CommunicationFailure(f"Broadcast from rank {self.root} failed: {exc}")
            self.abort(failure)
            raise failure from exc
