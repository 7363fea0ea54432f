"""
Augmented-Lagrangian outer loop.

Turns a :class:`~pygop.problem.ConstrainedProblem` into a sequence of
unconstrained L-BFGS runs on ``L(x; lam, sigma) = f(x) - lam.c(x) +
sigma / 2 |c(x)|^2``. Between runs either the multipliers move
(``lam -= sigma * c``) or the penalty grows (``sigma *= gamma``), following
the Powell-Hestenes-Rockafellar schedule.
"""

from __future__ import annotations

import logging
from collections import defaultdict

import numpy as np
from tqdm import trange

from .config import AugmentedLagrangianOptions, LBFGSOptions
from .lbfgs import LBFGS
from .problem import ConstrainedProblem, Problem

logger = logging.getLogger(__name__)

array = np.ndarray


class LagrangianView(Problem):
    """Expose the augmented Lagrangian of a constrained problem as the objective."""

    def __init__(self, problem: ConstrainedProblem) -> None:
        self.problem = problem

    def evaluate(self, x: array) -> float:
        return self.problem.lagrangian(x)

    def gradient(self, x: array, out: array) -> None:
        self.problem.gradient(x, out)

    def initial_point(self) -> array:
        return self.problem.initial_point()

    def is_optimization_over(self, x: array, gradient: array, step: float) -> bool:
        return self.problem.is_optimization_over(x, gradient, step)

    def is_intermediate_step_over(
        self, x: array, gradient: array, step: float
    ) -> bool:
        return self.problem.is_intermediate_step_over(x, gradient, step)

    def is_diverging(self, objective: float) -> bool:
        return self.problem.is_diverging(objective)

    def project(self, x: array) -> None:
        self.problem.project(x)


class AugmentedLagrangian:
    """
    Solve an equality-constrained problem by augmented-Lagrangian rounds.

    Parameters
    ----------
    problem : ConstrainedProblem
        Problem exposing the Lagrangian, feasibility error and multiplier hooks.
    options : AugmentedLagrangianOptions or None
        Penalty schedule; defaults when None.
    lbfgs_options : LBFGSOptions or None
        Options of the inner L-BFGS runs.

    Attributes
    ----------
    history_ : dict
        Per-round feasibility error, sigma, Lagrangian and inner-run outcome.
    n_rounds_ : int
        Rounds performed by the last ``solve``.
    converged_ : bool
        Whether the feasibility tolerance was reached.
    feasibility_error_ : float
        Normalized feasibility error at the returned point.
    """

    def __init__(
        self,
        problem: ConstrainedProblem,
        options: AugmentedLagrangianOptions | None = None,
        lbfgs_options: LBFGSOptions | None = None,
    ) -> None:
        self.problem = problem
        self.options = options if options is not None else AugmentedLagrangianOptions()
        self.optimizer = LBFGS(LagrangianView(problem), lbfgs_options)
        self.previous_feasibility_error = np.inf

    def update(self, x: array) -> bool:
        """Apply one multiplier-or-penalty update; True if multipliers moved."""
        error = self.problem.feasibility_error(x)
        if error < self.options.eta * self.previous_feasibility_error:
            self.problem.update_lagrange_mult(x)
            self.previous_feasibility_error = error
            return True
        self.problem.set_sigma(self.options.gamma * self.problem.sigma)
        return False

    def solve(self, x: array) -> bool:
        """Run rounds from ``x`` (updated in place); True on feasibility."""
        opts = self.options
        self.problem.set_sigma(opts.sigma)
        self.previous_feasibility_error = np.inf
        self.history_ = defaultdict(list)
        self.converged_ = False

        pbar = trange(1, opts.max_rounds + 1, disable=not opts.verbose, desc="AugLag")
        for round_ in pbar:
            inner_converged = self.optimizer.optimize(0, x)
            error = self.problem.feasibility_error(x)

            self.history_["feasibility_error"].append(error)
            self.history_["sigma"].append(self.problem.sigma)
            self.history_["lagrangian"].append(self.problem.lagrangian(x))
            self.history_["inner_status"].append(self.optimizer.status_.value)
            self.history_["inner_iterations"].append(self.optimizer.n_iter_)
            pbar.set_postfix(feasibility=f"{error:.2e}", sigma=f"{self.problem.sigma:.2e}")

            self.n_rounds_ = round_
            self.feasibility_error_ = error
            if error < opts.tolerance:
                logger.info("Feasible after %d rounds (error %.3e)", round_, error)
                self.converged_ = True
                break
            if not inner_converged:
                logger.debug(
                    "inner run stopped with %s in round %d",
                    self.optimizer.status_.value,
                    round_,
                )
            self.update(x)
        else:
            logger.info(
                "Feasibility tolerance not reached after %d rounds (error %.3e)",
                opts.max_rounds,
                self.feasibility_error_,
            )

        return self.converged_
