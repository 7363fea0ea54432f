"""
Limited-memory BFGS minimizer.

Search directions come from the two-loop recursion over a bounded history of
curvature pairs, and steps from a backtracking Armijo line search along the
normalized direction. Pairs that violate the curvature condition are skipped,
which keeps the implicit inverse Hessian positive definite on non-convex
objectives. Accepted steps are passed through ``Problem.project`` so the same
solver also serves box-constrained subproblems.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from .config import LBFGSOptions
from .exceptions import ConfigurationError
from .linalg import (
    axpy,
    dot,
    flat,
    is_column_major,
    length_euclidean,
    scale,
    sub_overwrite,
)
from .problem import Problem

logger = logging.getLogger(__name__)

array = np.ndarray


class ExitStatus(Enum):
    CONVERGED = "converged"
    DIVERGED = "diverged"
    LINE_SEARCH_EXHAUSTED = "line_search_exhausted"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class LineSearchResult:
    success: bool
    step: float
    objective: float
    beta: float
    trials: int


@dataclass
class LBFGSStep:
    """Record passed to the optimizer callback after every accepted step.

    ``objective`` is the value at the accepted (projected) iterate and
    ``trial_objective`` the value the line search accepted before projection.
    """

    iteration: int
    objective_before: float
    objective: float
    trial_objective: float
    step: float
    beta: float
    gradient_norm: float
    curvature_stored: bool


class LBFGSHistory:
    """Ring buffer of curvature pairs ``(s, y, rho = 1 / y.s)``.

    At most ``num_basis`` pairs are kept; storing into a full buffer evicts
    the oldest pair. A pair is rejected when ``y.s`` is not finite and
    strictly positive.
    """

    def __init__(self, size: int, num_basis: int):
        self.num_basis = num_basis
        self.s = np.zeros((num_basis, size))
        self.y = np.zeros((num_basis, size))
        self.rho = np.zeros(num_basis)
        self._insert = 0
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def clear(self) -> None:
        self._insert = 0
        self._count = 0

    def store(self, s: array, y: array) -> bool:
        ys = float(np.dot(y, s))
        if not np.isfinite(ys) or ys <= 0.0:
            return False
        self.s[self._insert] = s
        self.y[self._insert] = y
        self.rho[self._insert] = 1.0 / ys
        self._insert = (self._insert + 1) % self.num_basis
        self._count = min(self._count + 1, self.num_basis)
        return True

    def newest_first(self) -> list[int]:
        return [(self._insert - 1 - i) % self.num_basis for i in range(self._count)]

    def curvatures(self) -> array:
        """``y.s`` of every stored pair, newest first."""
        idx = self.newest_first()
        return np.einsum("ij,ij->i", self.y[idx], self.s[idx])


class LBFGS:
    """
    Unconstrained quasi-Newton minimizer over a :class:`Problem`.

    Parameters
    ----------
    problem : Problem
        Objective with gradient, termination predicates and projection.
    options : LBFGSOptions or None
        Solver knobs; defaults are used when None.
    callback : callable or None
        Called with an :class:`LBFGSStep` after each accepted step.

    Attributes
    ----------
    history_ : LBFGSHistory
        Curvature pairs of the current run.
    status_ : ExitStatus
        Why the last ``optimize`` call returned.
    n_iter_ : int
        Iterations performed by the last call.
    objective_ : float
        Objective at the returned point.
    """

    def __init__(
        self,
        problem: Problem,
        options: LBFGSOptions | None = None,
        callback: Callable[[LBFGSStep], None] | None = None,
    ) -> None:
        self.problem = problem
        self.options = options if options is not None else LBFGSOptions()
        self.callback = callback
        self.history_: LBFGSHistory | None = None
        self.status_: ExitStatus | None = None
        self.n_iter_ = 0
        self.objective_ = np.nan
        self._shape: tuple[int, ...] | None = None

    def _allocate(self, x: array) -> None:
        if self._shape == x.shape:
            return
        n = x.size
        self._shape = x.shape
        self.history_ = LBFGSHistory(n, self.options.num_basis)
        self._g = np.zeros(x.shape, order="F")
        self._g_new = np.zeros(x.shape, order="F")
        self._x_new = np.zeros(x.shape, order="F")
        self._direction = np.zeros(n)
        self._s = np.zeros(n)
        self._y = np.zeros(n)
        self._alpha = np.zeros(self.options.num_basis)

    def _search_direction(self, g: array) -> None:
        """Two-loop recursion: direction = -H g for the implicit inverse H."""
        history = self.history_
        d = self._direction
        d[:] = g
        order = history.newest_first()
        for i in order:
            self._alpha[i] = history.rho[i] * np.dot(history.s[i], d)
            axpy(-self._alpha[i], history.y[i], d)

        gamma = 1.0
        if order:
            newest = order[0]
            yy = np.dot(history.y[newest], history.y[newest])
            gamma = 1.0 / (history.rho[newest] * yy)
        scale(gamma, d)

        for i in reversed(order):
            beta = history.rho[i] * np.dot(history.y[i], d)
            axpy(self._alpha[i] - beta, history.s[i], d)
        scale(-1.0, d)

    def _line_search(self, x: array, objective: float, g: array) -> LineSearchResult:
        opts = self.options
        g_norm = length_euclidean(g)
        d_norm = float(np.linalg.norm(self._direction))
        if d_norm == 0.0 or not np.isfinite(d_norm):
            return LineSearchResult(False, 0.0, objective, 0.0, 0)

        x_new = self._x_new
        x_new_flat = flat(x_new)
        # first trial is the full quasi-Newton step when it is shorter than step_size
        beta = min(1.0, d_norm / opts.step_size)
        for trial in range(1, opts.max_line_search_trials + 1):
            step = beta * opts.step_size
            np.copyto(x_new, x)
            axpy(step / d_norm, self._direction, x_new_flat)
            trial_objective = self.problem.evaluate(x_new)
            if (
                np.isfinite(trial_objective)
                and objective - trial_objective >= opts.armijo_sigma * step * g_norm
            ):
                return LineSearchResult(True, step, trial_objective, beta, trial)
            beta *= opts.armijo_beta
        return LineSearchResult(False, 0.0, objective, beta, opts.max_line_search_trials)

    def _is_over(self, x: array, g: array, step: float) -> bool:
        """Consult the problem predicates; clears the history between stages."""
        if self.problem.is_intermediate_step_over(x, g, step):
            if self.problem.is_optimization_over(x, g, step):
                return True
            self.history_.clear()
        return False

    def optimize(self, start_iteration: int, x: array) -> bool:
        """
        Minimize the problem starting from ``x``, which is updated in place.

        Returns True when the problem reports termination, False on
        divergence, line-search exhaustion or when the iteration cap is hit
        (``status_`` tells which).
        """
        if not is_column_major(x):
            raise ConfigurationError(
                "optimize expects a float64 column-major (Fortran ordered) array"
            )
        self._allocate(x)
        self.history_.clear()
        problem = self.problem
        g, g_new, x_new = self._g, self._g_new, self._x_new
        x_flat = flat(x)

        objective = problem.evaluate(x)
        problem.gradient(x, g)
        step = np.inf
        self.n_iter_ = 0

        for iteration in range(start_iteration, self.options.max_iterations):
            self.n_iter_ = iteration - start_iteration
            self.objective_ = objective
            if problem.is_diverging(objective):
                logger.debug("objective diverged at iteration %d", iteration)
                self.status_ = ExitStatus.DIVERGED
                return False
            if self._is_over(x, g, step):
                self.status_ = ExitStatus.CONVERGED
                return True

            g_flat = flat(g)
            self._search_direction(g_flat)
            result = None
            if np.dot(g_flat, self._direction) < 0.0:
                result = self._line_search(x, objective, g)
            if (result is None or not result.success) and len(self.history_) > 0:
                # fall back to steepest descent with a fresh history
                self.history_.clear()
                self._search_direction(g_flat)
                result = self._line_search(x, objective, g)
            if result is None or not result.success:
                logger.debug("line search exhausted at iteration %d", iteration)
                self.status_ = ExitStatus.LINE_SEARCH_EXHAUSTED
                return False

            problem.project(x_new)
            new_objective = problem.evaluate(x_new)
            problem.gradient(x_new, g_new)
            sub_overwrite(flat(x_new), x_flat, self._s)
            sub_overwrite(flat(g_new), g_flat, self._y)
            stored = self.history_.store(self._s, self._y)

            if self.callback is not None:
                self.callback(
                    LBFGSStep(
                        iteration=iteration,
                        objective_before=objective,
                        objective=new_objective,
                        trial_objective=result.objective,
                        step=result.step,
                        beta=result.beta,
                        gradient_norm=float(np.linalg.norm(g_flat)),
                        curvature_stored=stored,
                    )
                )

            np.copyto(x, x_new)
            np.copyto(g, g_new)
            objective = new_objective
            step = result.step

        self.n_iter_ = max(0, self.options.max_iterations - start_iteration)
        self.objective_ = objective
        if not problem.is_diverging(objective) and self._is_over(x, g, step):
            self.status_ = ExitStatus.CONVERGED
            return True
        logger.debug("iteration cap of %d reached", self.options.max_iterations)
        self.status_ = ExitStatus.MAX_ITERATIONS
        return False
