"""Fatal conditions raised by the inner-loop minimisation."""

from __future__ import annotations

__all__ = [
    "CommunicationFailure",
    "EigensolverFailure",
    "MinimizationError",
    "NumericalBreakdown",
    "PersistenceFailure",
]


class MinimizationError(RuntimeError):
    """Base class for every fatal minimisation failure.

    None of these errors is recovered locally: they propagate to the caller of
    :meth:`pyis4dvar.cgradient.CGradient.step`, which flags the run as aborted.
    """


class NumericalBreakdown(MinimizationError):
    """Non-positive curvature, zero normalisation norm or negative Ritz value."""

    def __init__(self, message: str, *, outer: int | None = None, inner: int | None = None) -> None:
        if outer is not None and inner is not None:
            message = f"({outer:03d},{inner:03d}): {message}"
        super().__init__(message)
        self.outer = outer
        self.inner = inner


class EigensolverFailure(MinimizationError):
    """The tridiagonal eigensolver returned a nonzero status."""

    def __init__(self, info: int) -> None:
        super().__init__(f"Error in tridiagonal eigensolver: info={info}")
        self.info = int(info)


class PersistenceFailure(MinimizationError):
    """A vector or checkpoint record is missing, unreadable or unwritable."""

    def __init__(self, message: str, *, path: object = None, record: tuple[int, int] | None = None) -> None:
        details = []
        if path is not None:
            details.append(f"file {path!s}")
        if record is not None:
            details.append(f"record (outer={record[0]}, index={record[1]})")
        if details:
            message = f"{message} [{', '.join(details)}]"
        super().__init__(message)
        self.path = path
        self.record = record


class CommunicationFailure(MinimizationError):
    """A collective reduction or broadcast failed."""
