"""Persistence of Lanczos / Hessian vectors and minimisation checkpoints.

Vectors are stored one record per NetCDF file through :mod:`xarray`.  When the
run is distributed over several ranks each rank writes and reads only its own
tile, suffixed with the rank number, so store and load calls are collective.
"""

from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Any, Mapping

import numpy as np
import xarray as xr

from .errors import PersistenceFailure
from .minimization import HessianEigenpair, MinimizationState, OuterLoopTables
from .mpi import Collective
from .state import COMPONENTS, StateLayout, StateVector

LOGGER = logging.getLogger(__name__)

__all__ = [
    "MemoryVectorStore",
    "NetCDFVectorStore",
    "VectorStore",
    "load_checkpoint",
    "save_checkpoint",
    "save_outputs",
    "state_to_dataset",
]


def state_to_dataset(vector: StateVector, attrs: Mapping[str, Any] | None = None) -> xr.Dataset:
    """One variable per component, with dimensions ``{name}_dim{axis}``."""

    data_vars = {}
    for name in vector.layout:
        values = vector.fields[name]
        dims = tuple(f"{name}_dim{axis}" for axis in range(values.ndim))
        data_vars[name] = xr.DataArray(
            values.copy(), dims=dims, attrs={"long_name": COMPONENTS[name].long_name}
        )
    dataset = xr.Dataset(data_vars)
    if attrs:
        dataset.attrs.update(attrs)
    return dataset


def save_outputs(
    outputs: Mapping[str, StateVector],
    output_dir: str | Path,
    attrs: Mapping[str, Any] | None = None,
) -> None:
    """Persist state vectors to NetCDF files.

    The *outputs* mapping should associate a relative file name with the
    :class:`StateVector` to be saved; *attrs* are attached to every file.
    """

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for filename, vector in outputs.items():
        path = output_dir / filename
        LOGGER.info("Writing %s", path)
        try:
            state_to_dataset(vector, attrs).to_netcdf(path)
        except (OSError, ValueError, RuntimeError) as exc:
            raise PersistenceFailure(f"Unable to write output: {exc}", path=path) from exc


class VectorStore(abc.ABC):
    """Full state snapshots keyed by ``(outer, index)``.

    A record is immutable once written: callers receive copies and later
    modifications of the stored vector do not reach the store.
    """

    def __init__(self, layout: StateLayout) -> None:
        self.layout = layout

    @abc.abstractmethod
    def store(self, outer: int, index: int, vector: StateVector) -> None:
        """Persist *vector* under ``(outer, index)``."""

    @abc.abstractmethod
    def load(self, outer: int, index: int) -> StateVector:
        """Return the vector stored under ``(outer, index)``."""

    @abc.abstractmethod
    def __contains__(self, key: object) -> bool:
        """True when a record exists for the ``(outer, index)`` key."""

    def _check(self, outer: int, index: int, vector: StateVector | None = None) -> None:
        if outer < 1 or index < 1:
            raise ValueError(f"Record keys are one-based, got ({outer}, {index})")
        if vector is not None and not self.layout.compatible(vector.layout):
            raise ValueError("Vector layout does not match the store layout")


class MemoryVectorStore(VectorStore):
    """Keep every record resident in memory."""

    def __init__(self, layout: StateLayout) -> None:
        super().__init__(layout)
        self._records: dict[tuple[int, int], StateVector] = {}

    def store(self, outer: int, index: int, vector: StateVector) -> None:
        self._check(outer, index, vector)
        self._records[(outer, index)] = vector.copy()

    def load(self, outer: int, index: int) -> StateVector:
        self._check(outer, index)
        try:
            return self._records[(outer, index)].copy()
        except KeyError:
            raise PersistenceFailure("Vector record not found", record=(outer, index)) from None

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)


class NetCDFVectorStore(VectorStore):
    """One NetCDF file per record below *directory*.

    File names follow ``{prefix}_{outer:03d}_{index:03d}.nc``; distributed
    runs append the rank as ``.tile{rank:04d}``.
    """

    def __init__(
        self,
        directory: str | Path,
        layout: StateLayout,
        *,
        prefix: str = "lanczos",
        collective: Collective | None = None,
    ) -> None:
        super().__init__(layout)
        self.directory = Path(directory)
        self.prefix = prefix
        self.collective = collective or Collective()

    def path(self, outer: int, index: int) -> Path:
        name = f"{self.prefix}_{outer:03d}_{index:03d}"
        if self.collective.size > 1:
            name += f".tile{self.collective.rank:04d}"
        return self.directory / f"{name}.nc"

    def store(self, outer: int, index: int, vector: StateVector) -> None:
        self._check(outer, index, vector)
        self.collective.check()
        path = self.path(outer, index)
        dataset = state_to_dataset(vector, {"outer": int(outer), "index": int(index), "kind": self.prefix})

        LOGGER.debug("Writing %s", path)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            dataset.to_netcdf(path)
        except (OSError, ValueError, RuntimeError) as exc:
            raise PersistenceFailure(
                f"Unable to write vector record: {exc}", path=path, record=(outer, index)
            ) from exc

    def load(self, outer: int, index: int) -> StateVector:
        self._check(outer, index)
        self.collective.check()
        path = self.path(outer, index)
        if not path.exists():
            raise PersistenceFailure("Vector record not found", path=path, record=(outer, index))

        LOGGER.debug("Reading %s", path)
        try:
            with xr.open_dataset(path) as ds:
                fields = {}
                for name in self.layout:
                    if name not in ds:
                        raise KeyError(f"Variable {name!r} not found in {path!s}")
                    fields[name] = ds[name].values.astype(float)
        except (OSError, ValueError, RuntimeError, KeyError) as exc:
            raise PersistenceFailure(
                f"Unable to read vector record: {exc}", path=path, record=(outer, index)
            ) from exc

        try:
            return StateVector(self.layout, fields)
        except ValueError as exc:
            raise PersistenceFailure(
                f"Stored vector does not match the layout: {exc}", path=path, record=(outer, index)
            ) from exc

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        return self.path(*key).exists()


_TABLE_VARIABLES = {
    "delta": ("inner",),
    "beta": ("inner_p1",),
    "gamma": ("inner",),
    "qg": ("inner_p1",),
    "zu": ("inner",),
    "greduc": ("inner",),
    "ritz": ("inner",),
    "ritz_err": ("inner",),
    "zv": ("inner", "ritz_column"),
    "cost_total": ("inner_p1",),
    "cost_background": ("inner_p1",),
    "cost_observation": ("inner_p1",),
    "ortho_err": ("inner_p1",),
}


def save_checkpoint(state: MinimizationState, path: str | Path, collective: Collective | None = None) -> None:
    """Write the minimisation tables to *path* for restart purposes.

    Only the leader rank writes; the tables are identical on every rank.
    """

    collective = collective or Collective()
    collective.check()
    if not collective.master:
        return

    path = Path(path)
    nouter, ninner = state.nouter, state.ninner

    data_vars: dict[str, xr.DataArray] = {}
    for name, dims in _TABLE_VARIABLES.items():
        stacked = np.stack([getattr(tables, name) for tables in state.loops])
        data_vars[name] = xr.DataArray(stacked, dims=("outer",) + dims)
    data_vars["gnorm"] = xr.DataArray([t.gnorm for t in state.loops], dims=("outer",))
    data_vars["completed_inner"] = xr.DataArray([t.inner for t in state.loops], dims=("outer",))

    n_conv = np.zeros(nouter, dtype=int)
    hess_value = np.full((nouter, ninner), np.nan)
    hess_error = np.full((nouter, ninner), np.nan)
    hess_column = np.full((nouter, ninner), -1, dtype=int)
    for i, tables in enumerate(state.loops):
        n_conv[i] = len(tables.hessian)
        for j, pair in enumerate(tables.hessian):
            hess_value[i, j] = pair.value
            hess_error[i, j] = pair.error
            hess_column[i, j] = pair.column
    data_vars["nConvRitz"] = xr.DataArray(n_conv, dims=("outer",))
    data_vars["hessian_ritz"] = xr.DataArray(hess_value, dims=("outer", "hessian_record"))
    data_vars["hessian_ritz_err"] = xr.DataArray(hess_error, dims=("outer", "hessian_record"))
    data_vars["hessian_column"] = xr.DataArray(hess_column, dims=("outer", "hessian_record"))

    dataset = xr.Dataset(data_vars)
    dataset.attrs.update(
        {"Nouter": nouter, "Ninner": ninner, "outer": int(state.outer), "inner": int(state.inner)}
    )

    LOGGER.debug("Writing checkpoint %s", path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        dataset.to_netcdf(path)
    except (OSError, ValueError, RuntimeError) as exc:
        raise PersistenceFailure(f"Unable to write checkpoint: {exc}", path=path) from exc


def load_checkpoint(path: str | Path) -> MinimizationState:
    """Rebuild a :class:`MinimizationState` from a checkpoint file."""

    path = Path(path)
    if not path.exists():
        raise PersistenceFailure("Checkpoint not found", path=path)

    LOGGER.info("Loading checkpoint from %s", path)
    try:
        with xr.open_dataset(path) as ds:
            ds = ds.load()
    except (OSError, ValueError, RuntimeError) as exc:
        raise PersistenceFailure(f"Unable to read checkpoint: {exc}", path=path) from exc

    try:
        nouter = int(ds.attrs["Nouter"])
        ninner = int(ds.attrs["Ninner"])
        loops = []
        for i in range(nouter):
            tables = OuterLoopTables(
                ninner,
                gnorm=float(ds["gnorm"].values[i]),
                inner=int(ds["completed_inner"].values[i]),
                **{name: ds[name].values[i] for name in _TABLE_VARIABLES},
            )
            for j in range(int(ds["nConvRitz"].values[i])):
                tables.hessian.append(
                    HessianEigenpair(
                        value=float(ds["hessian_ritz"].values[i, j]),
                        error=float(ds["hessian_ritz_err"].values[i, j]),
                        column=int(ds["hessian_column"].values[i, j]),
                        record=j + 1,
                    )
                )
            loops.append(tables)
        state = MinimizationState(nouter, ninner, loops)
        state.outer = int(ds.attrs["outer"])
        state.inner = int(ds.attrs["inner"])
    except (KeyError, ValueError) as exc:
        raise PersistenceFailure(f"Malformed checkpoint: {exc}", path=path) from exc
    return state
