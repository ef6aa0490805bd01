"""Run configuration of the inner-loop minimisation."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

LOGGER = logging.getLogger(__name__)

__all__ = ["MinimizerConfig", "load_config"]

_LMP_SCALES = (-2, -1, 1, 2)


@dataclass(slots=True)
class MinimizerConfig:
    """Switches and tolerances of the Lanczos conjugate-gradient minimisation.

    ``lmp_scale`` selects the preconditioner used to map gradients into the
    preconditioned space: ``2`` (default) is the square-root spectral LMP.
    ``ritz_max_err`` is the relative accuracy a Ritz pair needs to count as
    converged.  ``breakdown_tol`` is the largest normalisation norm treated as
    a Lanczos breakdown.
    """

    nouter: int = 1
    ninner: int = 10
    precondition: bool = False
    lmp_scale: int = 2
    ritz_lmp: bool = False
    hessian_evecs: bool = False
    ritz_max_err: float = 1.0e-3
    breakdown_tol: float = 0.0
    ortho_warn_tol: float = 1.0e-8
    checkpoint_path: str | None = None

    def __post_init__(self) -> None:
        self.nouter = int(self.nouter)
        self.ninner = int(self.ninner)
        self.lmp_scale = int(self.lmp_scale)
        self.ritz_max_err = float(self.ritz_max_err)
        self.breakdown_tol = float(self.breakdown_tol)
        self.ortho_warn_tol = float(self.ortho_warn_tol)

        if self.nouter < 1:
            raise ValueError("nouter must be positive")
        if self.ninner < 1:
            raise ValueError("ninner must be positive")
        if self.lmp_scale not in _LMP_SCALES:
            raise ValueError(f"lmp_scale must be one of {_LMP_SCALES}, got {self.lmp_scale}")
        if self.ritz_max_err <= 0.0:
            raise ValueError("ritz_max_err must be positive")
        if self.breakdown_tol < 0.0:
            raise ValueError("breakdown_tol must not be negative")
        if self.ortho_warn_tol <= 0.0:
            raise ValueError("ortho_warn_tol must be positive")
        if self.ritz_lmp and not self.precondition:
            LOGGER.warning("ritz_lmp has no effect unless precondition is enabled")

    @property
    def needs_ritz(self) -> bool:
        """True when the Ritz decomposition is required on each inner loop."""

        return self.precondition or self.hessian_evecs

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "MinimizerConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise KeyError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**dict(values))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: str | Path) -> MinimizerConfig:
    """Read a :class:`MinimizerConfig` from a JSON file."""

    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        values = json.load(handle)
    if not isinstance(values, dict):
        raise ValueError(f"Configuration file {path!s} must hold a JSON object")
    LOGGER.debug("Loaded configuration from %s", path)
    return MinimizerConfig.from_mapping(values)
