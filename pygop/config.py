"""Option containers for the optimizers and the branch-and-bound engine."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .exceptions import ConfigurationError

RELAXATIONS = ("plain", "scaled", "barrier")


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")


def _check_open_unit(name: str, value: float) -> None:
    if not 0.0 < value < 1.0:
        raise ConfigurationError(f"{name} must be in (0, 1), got {value}")


@dataclass
class LBFGSOptions:
    """Knobs of the limited-memory BFGS minimizer.

    Parameters
    ----------
    num_basis : int, default=10
        Number of (s, y) pairs kept in the history.
    max_iterations : int, default=10000
        Iteration cap of one ``optimize`` call.
    step_size : float, default=1.0
        Longest step the line search tries along the normalized direction.
    armijo_sigma : float, default=1e-4
        Sufficient-decrease factor.
    armijo_beta : float, default=0.5
        Backtracking factor.
    max_line_search_trials : int, default=40
        Number of backtracking trials before the line search gives up.
    """

    num_basis: int = 10
    max_iterations: int = 10000
    step_size: float = 1.0
    armijo_sigma: float = 1e-4
    armijo_beta: float = 0.5
    max_line_search_trials: int = 40

    def __post_init__(self) -> None:
        if self.num_basis < 1:
            raise ConfigurationError("num_basis must be at least 1")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        if self.max_line_search_trials < 1:
            raise ConfigurationError("max_line_search_trials must be at least 1")
        _check_positive("step_size", self.step_size)
        _check_open_unit("armijo_sigma", self.armijo_sigma)
        _check_open_unit("armijo_beta", self.armijo_beta)


@dataclass
class AugmentedLagrangianOptions:
    """Penalty and multiplier schedule of the augmented-Lagrangian loop.

    Parameters
    ----------
    eta : float, default=0.25
        Required feasibility reduction for a multiplier update.
    gamma : float, default=1.1
        Penalty growth factor when the reduction is not reached.
    sigma : float, default=10.0
        Initial penalty weight.
    tolerance : float, default=1e-5
        Normalized feasibility error at which the loop stops.
    max_rounds : int, default=100
        Cap on outer rounds.
    verbose : int, default=0
        Show a progress bar over the rounds.
    """

    eta: float = 0.25
    gamma: float = 1.1
    sigma: float = 10.0
    tolerance: float = 1e-5
    max_rounds: int = 100
    verbose: int = 0

    def __post_init__(self) -> None:
        _check_open_unit("eta", self.eta)
        if not self.gamma > 1.0:
            raise ConfigurationError(f"gamma must be greater than 1, got {self.gamma}")
        _check_positive("sigma", self.sigma)
        _check_positive("tolerance", self.tolerance)
        if self.max_rounds < 1:
            raise ConfigurationError("max_rounds must be at least 1")


@dataclass
class BranchBoundOptions:
    """Settings of the global NMF engine.

    Parameters
    ----------
    new_dimension : int or None
        Inner dimension of the factorization. Required.
    lower, upper : float, default=(1e-3, 10.0)
        Box on the factor entries in original (non-log) units.
    desired_gap : float, default=1e-3
        Boxes whose lower bound is within this gap of the incumbent are pruned.
    max_iterations : int, default=1000
        Cap on processed boxes.
    grad_tolerance : float, default=1e-6
        Projected-gradient tolerance of the relaxation and upper-bound solves.
    relaxation : {'plain', 'scaled', 'barrier'}, default='plain'
        Relaxation variant used for lower bounds.
    cutoff : float, default=inf
        Known upper bound on the optimum; boxes that cannot beat it are pruned.
    barrier : float, default=1e-3
        Barrier weight of the 'barrier' relaxation.
    relaxation_max_iterations, upper_max_iterations : int
        L-BFGS iteration caps of the lower- and upper-bound solves.
    perturbation : float, default=0.05
        Jitter, relative to the box width, added to upper-bound seeds.
    random_state : int or None
        Seed of the jitter.
    """

    new_dimension: int | None = None
    lower: float = 1e-3
    upper: float = 10.0
    desired_gap: float = 1e-3
    max_iterations: int = 1000
    grad_tolerance: float = 1e-6
    relaxation: str = "plain"
    cutoff: float = np.inf
    barrier: float = 1e-3
    relaxation_max_iterations: int = 500
    upper_max_iterations: int = 2000
    perturbation: float = 0.05
    random_state: int | None = None

    def __post_init__(self) -> None:
        if self.new_dimension is not None and self.new_dimension < 1:
            raise ConfigurationError("new_dimension must be at least 1")
        _check_positive("lower", self.lower)
        if not self.upper > self.lower:
            raise ConfigurationError("upper must be greater than lower")
        if self.desired_gap < 0:
            raise ConfigurationError("desired_gap cannot be negative")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        _check_positive("grad_tolerance", self.grad_tolerance)
        if self.relaxation not in RELAXATIONS:
            raise ConfigurationError(
                f"relaxation must be one of {RELAXATIONS}, got '{self.relaxation}'"
            )
        _check_positive("barrier", self.barrier)
        if self.perturbation < 0:
            raise ConfigurationError("perturbation cannot be negative")
