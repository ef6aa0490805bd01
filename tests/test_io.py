from __future__ import annotations

import numpy as np
import pytest
import xarray as xr

from pyis4dvar.cgradient import CGradient
from pyis4dvar.config import MinimizerConfig
from pyis4dvar.driver import run_outer_loop
from pyis4dvar.errors import PersistenceFailure
from pyis4dvar.grid import Grid
from pyis4dvar.io import (
    MemoryVectorStore,
    NetCDFVectorStore,
    load_checkpoint,
    save_checkpoint,
    save_outputs,
)
from pyis4dvar.state import StateLayout


@pytest.fixture(params=["memory", "netcdf"])
def store(request, mixed_layout, tmp_path):
    if request.param == "memory":
        return MemoryVectorStore(mixed_layout)
    return NetCDFVectorStore(tmp_path / "lanczos", mixed_layout)


def test_store_then_load_returns_vector(store, mixed_layout, random_vector):
    vector = random_vector(mixed_layout)
    store.store(2, 3, vector)

    loaded = store.load(2, 3)

    assert (2, 3) in store
    for name in mixed_layout:
        np.testing.assert_array_equal(loaded[name], vector[name])


def test_records_are_immutable(store, mixed_layout, random_vector):
    vector = random_vector(mixed_layout)
    original = vector.to_flat()
    store.store(1, 1, vector)

    vector["zeta"][:] = 0.0
    first = store.load(1, 1)
    first["u"][:] = 1.0

    np.testing.assert_array_equal(store.load(1, 1).to_flat(), original)


def test_missing_record_raises(store):
    with pytest.raises(PersistenceFailure) as excinfo:
        store.load(1, 7)
    assert excinfo.value.record == (1, 7)
    assert "index=7" in str(excinfo.value)


def test_store_rejects_bad_keys_and_layouts(store, random_vector):
    other = StateLayout.from_grid(Grid.uniform(2, 2), ("zeta",))
    with pytest.raises(ValueError):
        store.store(1, 1, random_vector(other))
    with pytest.raises(ValueError):
        store.load(0, 1)


def test_netcdf_store_file_names(mixed_layout, tmp_path, random_vector):
    store = NetCDFVectorStore(tmp_path, mixed_layout, prefix="hessian")
    assert store.path(2, 3).name == "hessian_002_003.nc"

    store.store(2, 3, random_vector(mixed_layout))
    with xr.open_dataset(store.path(2, 3)) as ds:
        assert ds.attrs["outer"] == 2
        assert ds.attrs["index"] == 3
        assert ds["u"].shape == mixed_layout.shape("u")


def test_netcdf_store_reports_unreadable_file(mixed_layout, tmp_path):
    store = NetCDFVectorStore(tmp_path, mixed_layout)
    store.path(1, 1).write_text("not a netcdf file")
    with pytest.raises(PersistenceFailure) as excinfo:
        store.load(1, 1)
    assert str(store.path(1, 1)) in str(excinfo.value)


def test_save_outputs(mixed_layout, random_vector, tmp_path):
    vector = random_vector(mixed_layout)
    save_outputs({"increment.nc": vector}, tmp_path / "out", {"experiment": "test"})

    with xr.open_dataset(tmp_path / "out" / "increment.nc") as ds:
        assert ds.attrs["experiment"] == "test"
        np.testing.assert_array_equal(ds["t"].values, vector["t"])


def test_checkpoint_round_trip(spd_problem, tmp_path):
    config = MinimizerConfig(nouter=2, ninner=5, hessian_evecs=True)
    lanczos, hessian = MemoryVectorStore(spd_problem.layout), MemoryVectorStore(spd_problem.layout)
    minimizer = CGradient(config, spd_problem.layout, lanczos, hessian)
    run_outer_loop(minimizer, spd_problem, 1)

    path = tmp_path / "checkpoint.nc"
    save_checkpoint(minimizer.state, path)
    restored = load_checkpoint(path)

    assert (restored.nouter, restored.ninner) == (2, 5)
    assert (restored.outer, restored.inner) == (1, 5)
    original, loaded = minimizer.state.tables(1), restored.tables(1)
    assert loaded.gnorm == original.gnorm
    assert loaded.inner == 5
    for name in ("delta", "beta", "gamma", "qg", "zu", "greduc", "ritz", "ritz_err", "zv", "cost_total"):
        np.testing.assert_array_equal(getattr(loaded, name), getattr(original, name))
    assert [(p.value, p.column, p.record) for p in loaded.hessian] == [
        (p.value, p.column, p.record) for p in original.hessian
    ]
    assert restored.tables(2).inner == -1


def test_missing_checkpoint(tmp_path):
    with pytest.raises(PersistenceFailure):
        load_checkpoint(tmp_path / "absent.nc")
