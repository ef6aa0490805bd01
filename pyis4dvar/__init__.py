"""Preconditioned Lanczos conjugate-gradient minimisation for incremental 4D-Var."""

from .cgradient import CGradient
from .config import MinimizerConfig, load_config
from .driver import IncrementalResult, run_incremental_4dvar, run_outer_loop
from .errors import (
    CommunicationFailure,
    EigensolverFailure,
    MinimizationError,
    NumericalBreakdown,
    PersistenceFailure,
)
from .grid import Grid
from .io import MemoryVectorStore, NetCDFVectorStore, load_checkpoint, save_checkpoint, save_outputs
from .minimization import CostFunctionValue, HessianEigenpair, MinimizationState, RitzPair
from .mpi import Collective
from .precond import Preconditioner
from .state import StateLayout, StateVector, state_add, state_dot, state_norm
from .synthetic import QuadraticProblem

__all__ = [
    "CGradient",
    "Collective",
    "CommunicationFailure",
    "CostFunctionValue",
    "EigensolverFailure",
    "Grid",
    "HessianEigenpair",
    "IncrementalResult",
    "MemoryVectorStore",
    "MinimizationError",
    "MinimizationState",
    "MinimizerConfig",
    "NetCDFVectorStore",
    "NumericalBreakdown",
    "PersistenceFailure",
    "Preconditioner",
    "QuadraticProblem",
    "RitzPair",
    "StateLayout",
    "StateVector",
    "load_checkpoint",
    "load_config",
    "run_incremental_4dvar",
    "run_outer_loop",
    "save_checkpoint",
    "save_outputs",
    "state_add",
    "state_dot",
    "state_norm",
]
