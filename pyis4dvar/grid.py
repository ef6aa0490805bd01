"""Read-only land/sea masks and metric weights of the model grid."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

__all__ = ["EDGES", "Grid"]

# Open-boundary edge ordering used by every boundary component.
EDGES = ("west", "south", "east", "north")


@dataclass(slots=True, frozen=True)
class Grid:
    """Masks at rho, u and v points plus the cell-area metric.

    Velocity masks default to the product of the two adjacent rho masks, as on
    an Arakawa C-grid.  All arrays share the ``(eta, xi)`` shape of *rmask*.
    """

    rmask: np.ndarray
    umask: np.ndarray | None = None
    vmask: np.ndarray | None = None
    area: np.ndarray | None = None

    def __post_init__(self) -> None:
        rmask = np.array(self.rmask, dtype=float)
        if rmask.ndim != 2:
            raise ValueError("The rho-point mask must be two dimensional")
        if np.any((rmask != 0.0) & (rmask != 1.0)):
            raise ValueError("Masks must only contain zeros and ones")
        object.__setattr__(self, "rmask", rmask)

        if self.umask is None:
            umask = rmask.copy()
            umask[:, 1:] = rmask[:, 1:] * rmask[:, :-1]
        else:
            umask = self._checked(self.umask, "umask")
        if self.vmask is None:
            vmask = rmask.copy()
            vmask[1:, :] = rmask[1:, :] * rmask[:-1, :]
        else:
            vmask = self._checked(self.vmask, "vmask")
        if self.area is None:
            area = np.ones_like(rmask)
        else:
            area = self._checked(self.area, "area")
            if np.any(area < 0.0):
                raise ValueError("Metric weights must be non-negative")

        object.__setattr__(self, "umask", umask)
        object.__setattr__(self, "vmask", vmask)
        object.__setattr__(self, "area", area)
        for array in (self.rmask, self.umask, self.vmask, self.area):
            array.setflags(write=False)

    def _checked(self, values: np.ndarray, name: str) -> np.ndarray:
        array = np.asarray(values, dtype=float).copy()
        if array.shape != self.rmask.shape:
            raise ValueError(f"{name} has shape {array.shape}, expected {self.rmask.shape}")
        return array

    @classmethod
    def uniform(cls, eta: int, xi: int) -> "Grid":
        """All-water grid with unit metric weights."""

        if eta < 1 or xi < 1:
            raise ValueError("Grid dimensions must be positive")
        return cls(np.ones((int(eta), int(xi)), dtype=float))

    @property
    def shape(self) -> tuple[int, int]:
        return self.rmask.shape

    @property
    def boundary_length(self) -> int:
        return max(self.shape)

    def mask(self, point: str) -> np.ndarray:
        """Return the mask for ``"rho"``, ``"u"`` or ``"v"`` points."""

        if point == "rho":
            return self.rmask
        if point == "u":
            return self.umask
        if point == "v":
            return self.vmask
        raise KeyError(f"Unknown grid point type {point!r}")

    def edge_mask(self, point: str) -> np.ndarray:
        """Mask along the four open boundaries, shaped ``(4, boundary_length)``.

        Edges shorter than :attr:`boundary_length` are padded with land.
        """

        mask = self.mask(point)
        edges = np.zeros((len(EDGES), self.boundary_length), dtype=float)
        edges[0, : mask.shape[0]] = mask[:, 0]
        edges[1, : mask.shape[1]] = mask[0, :]
        edges[2, : mask.shape[0]] = mask[:, -1]
        edges[3, : mask.shape[1]] = mask[-1, :]
        return edges
