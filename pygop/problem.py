"""
Objective-function contracts consumed by the optimizers.

``LBFGS`` only talks to a :class:`Problem`. The augmented-Lagrangian loop
additionally needs the multiplier and penalty hooks of
:class:`ConstrainedProblem`, and the branch-and-bound engine reads the bounds
exposed by :class:`RelaxationProblem`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from .linalg import length_euclidean

array = np.ndarray


class Problem(ABC):
    """Smooth objective minimized by :class:`pygop.lbfgs.LBFGS`.

    ``evaluate`` must be deterministic in ``x`` and ``gradient`` must write
    its gradient into ``out`` (same shape as ``x``). The predicates decide
    termination; the optimizer does not second-guess them.
    """

    grad_tolerance: float = 1e-6

    @abstractmethod
    def evaluate(self, x: array) -> float:
        """Objective value at ``x``."""

    @abstractmethod
    def gradient(self, x: array, out: array) -> None:
        """Write the gradient at ``x`` into ``out``."""

    @abstractmethod
    def initial_point(self) -> array:
        """A valid column-major starting point."""

    def is_optimization_over(self, x: array, gradient: array, step: float) -> bool:
        return length_euclidean(gradient) < self.grad_tolerance

    def is_intermediate_step_over(
        self, x: array, gradient: array, step: float
    ) -> bool:
        return self.is_optimization_over(x, gradient, step)

    def is_diverging(self, objective: float) -> bool:
        return not np.isfinite(objective)

    def project(self, x: array) -> None:
        """Clip ``x`` back into the admissible set, in place."""


class ConstrainedProblem(Problem):
    """Problem with equality constraints ``c(x) = 0``.

    The augmented Lagrangian is ``f(x) - lam.c(x) + sigma / 2 |c(x)|^2``;
    ``evaluate`` returns ``f`` while ``gradient`` is the gradient of the
    augmented Lagrangian, which is the function the inner solver descends.
    """

    sigma: float = 1.0

    @abstractmethod
    def lagrangian(self, x: array) -> float:
        """Augmented Lagrangian at ``x`` for the current multipliers and sigma."""

    @abstractmethod
    def feasibility_error(self, x: array) -> float:
        """Normalized constraint violation at ``x``."""

    @abstractmethod
    def update_lagrange_mult(self, x: array) -> None:
        """First-order multiplier update ``lam -= sigma * c(x)``."""

    def set_sigma(self, sigma: float) -> None:
        self.sigma = float(sigma)


class RelaxationProblem(Problem):
    """Convex relaxation producing lower bounds over a box."""

    @abstractmethod
    def soft_lower_bound(self) -> float:
        """Lower bound obtained from the last optimization run."""

    @abstractmethod
    def is_infeasible(self) -> bool:
        """True when the relaxed feasible set is empty."""

    @abstractmethod
    def non_relaxed_objective(self, x: array) -> float:
        """Objective of the original (non-relaxed) problem at ``x``."""
