from __future__ import annotations

import pytest

import common.common_mpi as common_mpi
from pyis4dvar.errors import NumericalBreakdown
from pyis4dvar.mpi import Collective


def test_initialize_mpi_sets_rank_globals():
    nprocs, myrank = common_mpi.initialize_mpi()
    assert nprocs >= 1
    assert 0 <= myrank < nprocs
    assert common_mpi.master == (myrank == 0)


def test_serial_collective():
    collective = Collective()
    assert collective.master
    assert collective.allreduce_sum(2.5) == 2.5
    assert collective.bcast({"a": 1}) == {"a": 1}


def test_abort_blocks_later_collectives():
    collective = Collective()
    failure = NumericalBreakdown("delta(2) = -1", outer=1, inner=2)

    collective.abort(failure)
    collective.abort(NumericalBreakdown("later"))

    assert collective.aborted
    assert collective.failure is failure
    with pytest.raises(NumericalBreakdown, match=r"\(001,002\)"):
        collective.allreduce_sum(1.0)
    with pytest.raises(NumericalBreakdown):
        collective.bcast(None)
