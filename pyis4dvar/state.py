"""Ocean state vectors and their masked, metric-weighted algebra.

A :class:`StateVector` aggregates the optional field components selected by the
run configuration (free surface, barotropic and baroclinic momentum, tracers,
open-boundary and surface-forcing adjustments).  Components that are not
enabled are absent from the :class:`StateLayout`; they are never zero-filled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Sequence

import numpy as np

from .grid import Grid
from .mpi import Collective

LOGGER = logging.getLogger(__name__)

__all__ = [
    "COMPONENTS",
    "ComponentSpec",
    "StateLayout",
    "StateVector",
    "state_add",
    "state_copy",
    "state_dot",
    "state_fill",
    "state_norm",
    "state_scale",
]


@dataclass(slots=True, frozen=True)
class ComponentSpec:
    """Static description of one state component.

    ``point`` selects the grid mask and ``kind`` the array layout:

    ``field2d``    ``(eta, xi)``
    ``field3d``    ``(N, eta, xi)``
    ``tracer``     ``(NT, N, eta, xi)``
    ``forcing``    ``(Nfrec, eta, xi)``
    ``tflux``      ``(NT, Nfrec, eta, xi)``
    ``obc2d``      ``(Nbrec, 4, Lobc)``
    ``obc3d``      ``(Nbrec, 4, N, Lobc)``
    ``tracer_obc`` ``(NT, Nbrec, 4, N, Lobc)``
    """

    name: str
    point: str
    kind: str
    long_name: str


COMPONENTS: dict[str, ComponentSpec] = {
    spec.name: spec
    for spec in (
        ComponentSpec("zeta", "rho", "field2d", "free-surface"),
        ComponentSpec("ubar", "u", "field2d", "vertically integrated u-momentum"),
        ComponentSpec("vbar", "v", "field2d", "vertically integrated v-momentum"),
        ComponentSpec("u", "u", "field3d", "u-momentum"),
        ComponentSpec("v", "v", "field3d", "v-momentum"),
        ComponentSpec("t", "rho", "tracer", "tracers"),
        ComponentSpec("zeta_obc", "rho", "obc2d", "free-surface open boundaries"),
        ComponentSpec("ubar_obc", "u", "obc2d", "2D u-momentum open boundaries"),
        ComponentSpec("vbar_obc", "v", "obc2d", "2D v-momentum open boundaries"),
        ComponentSpec("u_obc", "u", "obc3d", "3D u-momentum open boundaries"),
        ComponentSpec("v_obc", "v", "obc3d", "3D v-momentum open boundaries"),
        ComponentSpec("t_obc", "rho", "tracer_obc", "tracer open boundaries"),
        ComponentSpec("ustr", "u", "forcing", "surface u-momentum stress"),
        ComponentSpec("vstr", "v", "forcing", "surface v-momentum stress"),
        ComponentSpec("tflux", "rho", "tflux", "surface tracer flux"),
    )
}


class StateLayout:
    """Enabled components with their shapes, masks and inner-product weights.

    Build layouts with :meth:`from_grid`; the constructor takes already
    expanded per-component masks and weights.
    """

    def __init__(
        self,
        masks: Mapping[str, np.ndarray],
        weights: Mapping[str, np.ndarray],
    ) -> None:
        if not masks:
            raise ValueError("A state layout needs at least one component")
        if set(masks) != set(weights):
            raise ValueError("Masks and weights must describe the same components")

        self._masks: dict[str, np.ndarray] = {}
        self._weights: dict[str, np.ndarray] = {}
        for name in masks:
            if name not in COMPONENTS:
                raise KeyError(f"Unknown state component {name!r}")
            mask = np.array(masks[name], dtype=float)
            weight = np.array(weights[name], dtype=float)
            if mask.shape != weight.shape:
                raise ValueError(f"Mask and weights of {name!r} differ in shape")
            mask.setflags(write=False)
            weight.setflags(write=False)
            self._masks[name] = mask
            self._weights[name] = weight

    @classmethod
    def from_grid(
        cls,
        grid: Grid,
        components: Sequence[str] = ("zeta", "ubar", "vbar"),
        *,
        n_levels: int = 1,
        n_tracers: int = 0,
        n_forcing_records: int = 1,
        n_boundary_records: int = 1,
    ) -> "StateLayout":
        """Expand the grid masks onto the shapes of the requested *components*."""

        if n_levels < 1 or n_forcing_records < 1 or n_boundary_records < 1:
            raise ValueError("Level and record counts must be positive")
        if len(set(components)) != len(components):
            raise ValueError("State components must not be repeated")

        masks: dict[str, np.ndarray] = {}
        weights: dict[str, np.ndarray] = {}
        for name in components:
            spec = COMPONENTS.get(name)
            if spec is None:
                raise KeyError(f"Unknown state component {name!r}")
            if spec.kind in ("tracer", "tflux", "tracer_obc") and n_tracers < 1:
                raise ValueError(f"Component {name!r} requires at least one tracer")

            if spec.kind.startswith("obc") or spec.kind == "tracer_obc":
                base_mask = grid.edge_mask(spec.point)
                base_weight = base_mask
            else:
                base_mask = grid.mask(spec.point)
                base_weight = base_mask * grid.area

            lead = {
                "field2d": (),
                "field3d": (n_levels,),
                "tracer": (n_tracers, n_levels),
                "forcing": (n_forcing_records,),
                "tflux": (n_tracers, n_forcing_records),
                "obc2d": (n_boundary_records,),
                "obc3d": (n_boundary_records,),
                "tracer_obc": (n_tracers, n_boundary_records),
            }[spec.kind]
            if spec.kind in ("obc3d", "tracer_obc"):
                # (…, 4, N, Lobc): insert the level axis between edge and position
                base_mask = np.repeat(base_mask[:, None, :], n_levels, axis=1)
                base_weight = np.repeat(base_weight[:, None, :], n_levels, axis=1)

            shape = lead + base_mask.shape
            masks[name] = np.broadcast_to(base_mask, shape)
            weights[name] = np.broadcast_to(base_weight, shape)

        LOGGER.debug("State layout with components %s", ", ".join(components))
        return cls(masks, weights)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._masks)

    def shape(self, name: str) -> tuple[int, ...]:
        return self._masks[name].shape

    def mask(self, name: str) -> np.ndarray:
        return self._masks[name]

    def weights(self, name: str) -> np.ndarray:
        return self._weights[name]

    @property
    def size(self) -> int:
        return int(sum(mask.size for mask in self._masks.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._masks

    def __iter__(self) -> Iterator[str]:
        return iter(self._masks)

    def compatible(self, other: "StateLayout") -> bool:
        """True when *other* has the same components, masks and weights."""

        if other is self:
            return True
        if self.names != other.names:
            return False
        return all(
            np.array_equal(self._masks[name], other._masks[name])
            and np.array_equal(self._weights[name], other._weights[name])
            for name in self.names
        )


class StateVector:
    """One value per grid point of every enabled component."""

    __slots__ = ("layout", "fields")

    def __init__(self, layout: StateLayout, fields: Mapping[str, np.ndarray] | None = None) -> None:
        self.layout = layout
        self.fields: dict[str, np.ndarray] = {}
        if fields is None:
            for name in layout:
                self.fields[name] = np.zeros(layout.shape(name), dtype=float)
            return

        missing = set(layout.names) - set(fields)
        extra = set(fields) - set(layout.names)
        if missing or extra:
            raise ValueError(
                f"State fields do not match the layout (missing={sorted(missing)}, extra={sorted(extra)})"
            )
        for name in layout:
            data = np.array(fields[name], dtype=float)
            if data.shape != layout.shape(name):
                raise ValueError(
                    f"Component {name!r} has shape {data.shape}, expected {layout.shape(name)}"
                )
            self.fields[name] = data

    @classmethod
    def zeros(cls, layout: StateLayout) -> "StateVector":
        return cls(layout)

    @classmethod
    def from_flat(cls, layout: StateLayout, values: Iterable[float]) -> "StateVector":
        """Unpack a one dimensional array ordered as :meth:`to_flat`."""

        flat = np.asarray(values, dtype=float).ravel()
        if flat.size != layout.size:
            raise ValueError(f"Expected {layout.size} values, got {flat.size}")
        fields = {}
        offset = 0
        for name in layout:
            shape = layout.shape(name)
            count = int(np.prod(shape))
            fields[name] = flat[offset : offset + count].reshape(shape)
            offset += count
        return cls(layout, fields)

    def to_flat(self) -> np.ndarray:
        return np.concatenate([self.fields[name].ravel() for name in self.layout])

    def __getitem__(self, name: str) -> np.ndarray:
        return self.fields[name]

    def copy(self) -> "StateVector":
        return StateVector(self.layout, self.fields)

    def masked_copy(self) -> "StateVector":
        """Copy with land points set to zero."""

        return StateVector(
            self.layout, {name: self.fields[name] * self.layout.mask(name) for name in self.layout}
        )

    def __repr__(self) -> str:
        return f"StateVector(components={list(self.layout.names)}, size={self.layout.size})"


def _check_layouts(*vectors: StateVector) -> StateLayout:
    layout = vectors[0].layout
    for vector in vectors[1:]:
        if not layout.compatible(vector.layout):
            raise ValueError("State vectors have different components, masks or metrics")
    return layout


def state_dot(a: StateVector, b: StateVector, collective: Collective | None = None) -> float:
    """Masked, metric-weighted inner product ``<a, b>``.

    The local tile sum is reduced over every rank of *collective*, so all
    ranks must call this function together.
    """

    layout = _check_layouts(a, b)
    local = 0.0
    for name in layout:
        local += float(np.sum(layout.weights(name) * a.fields[name] * b.fields[name]))
    if collective is None:
        return local
    return collective.allreduce_sum(local)


def state_norm(a: StateVector, collective: Collective | None = None) -> float:
    return float(np.sqrt(state_dot(a, a, collective)))


def state_add(
    a: StateVector,
    b: StateVector,
    fac1: float,
    fac2: float,
    out: StateVector | None = None,
) -> StateVector:
    """Return ``fac1 * a + fac2 * b``, written into *out* when provided.

    *out* may alias *a* or *b*.
    """

    layout = _check_layouts(a, b) if out is None else _check_layouts(a, b, out)
    if out is None:
        out = StateVector(layout)
    for name in layout:
        np.add(fac1 * a.fields[name], fac2 * b.fields[name], out=out.fields[name])
    return out


def state_scale(a: StateVector, fac: float, out: StateVector | None = None) -> StateVector:
    """Return ``fac * a``; *out* may alias *a*."""

    if out is None:
        out = StateVector(a.layout)
    else:
        _check_layouts(a, out)
    for name in a.layout:
        np.multiply(a.fields[name], fac, out=out.fields[name])
    return out


def state_copy(src: StateVector, dst: StateVector) -> StateVector:
    _check_layouts(src, dst)
    for name in src.layout:
        np.copyto(dst.fields[name], src.fields[name])
    return dst


def state_fill(dst: StateVector, value: float) -> StateVector:
    for name in dst.layout:
        dst.fields[name].fill(value)
    return dst
