"""pygop: global optimization for non-negative matrix factorization."""

from __future__ import annotations

from .auglag import AugmentedLagrangian
from .branch_bound import (
    BisectionSplitter,
    BranchBoundStats,
    GopNMFEngine,
    SolutionPack,
    Splitter,
)
from .config import AugmentedLagrangianOptions, BranchBoundOptions, LBFGSOptions
from .exceptions import ConfigurationError
from .geometric import GeometricNMF
from .lbfgs import LBFGS, ExitStatus
from .model import GlobalNMF
from .mvu import MVUProblem, NonConvexMVU
from .neighbors import NearestNeighborIndex
from .problem import ConstrainedProblem, Problem, RelaxationProblem
from .relaxed import (
    RelaxedNMF,
    RelaxedNMFBarrier,
    RelaxedNMFIsometric,
    RelaxedNMFScaled,
)

# Version is managed in setup.py
try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("pygop")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
__all__: list[str] = [
    "AugmentedLagrangian",
    "AugmentedLagrangianOptions",
    "BisectionSplitter",
    "BranchBoundOptions",
    "BranchBoundStats",
    "ConfigurationError",
    "ConstrainedProblem",
    "ExitStatus",
    "GeometricNMF",
    "GlobalNMF",
    "GopNMFEngine",
    "LBFGS",
    "LBFGSOptions",
    "MVUProblem",
    "NearestNeighborIndex",
    "NonConvexMVU",
    "Problem",
    "RelaxationProblem",
    "RelaxedNMF",
    "RelaxedNMFBarrier",
    "RelaxedNMFIsometric",
    "RelaxedNMFScaled",
    "SolutionPack",
    "Splitter",
]
