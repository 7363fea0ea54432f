"""
Log-space NMF objective restricted to a box.

With ``W = exp(x[:, :R]).T`` and ``H = exp(x[:, R:])`` the factors stay
positive for any real ``x``, so the box ``[lower, upper]`` in log space
directly encodes entrywise factor bounds. :class:`GeometricNMF` is the
non-relaxed problem whose local minima give upper bounds in
branch-and-bound.
"""

from __future__ import annotations

import numpy as np
from sklearn.utils import check_random_state

from .exceptions import ConfigurationError
from .linalg import as_matrix, fill, matrix
from .problem import Problem
from .utils import check_box, check_triplets, projected_gradient_norm, resolve_shape

array = np.ndarray


def nmf_objective(
    x: array,
    rows: array,
    columns: array,
    values: array,
    out: array | None = None,
) -> float:
    """
    Squared residual of ``exp`` factorization over observed entries.

    ``columns`` must already be offset into the H block of ``x``. When
    ``out`` is given the gradient is written into it.
    """
    u = x[:, rows] + x[:, columns]
    e = np.exp(u)
    residual = e.sum(axis=0) - values
    value = float(residual @ residual)
    if out is not None:
        du = 2.0 * residual * e
        fill(out, 0.0)
        np.add.at(out.T, rows, du.T)
        np.add.at(out.T, columns, du.T)
    return value


class GeometricNMF(Problem):
    """
    Box-constrained NMF objective in log coordinates.

    Parameters
    ----------
    rows, columns, values : array-like
        Observed entries of the matrix to factorize.
    new_dimension : int
        Rank of the factorization.
    x_lower_bound, x_upper_bound : ndarray of shape (new_dimension, R + C)
        Log-space box.
    seed : ndarray or None
        Starting point; the box center when None.
    perturbation : float, default=0.05
        Uniform jitter added to the seed, as a fraction of each box width.
    grad_tolerance : float, default=1e-6
        Projected-gradient threshold for termination.
    random_state : int, RandomState instance or None
        Source of the jitter.
    """

    def __init__(
        self,
        rows,
        columns,
        values,
        new_dimension: int,
        x_lower_bound: array,
        x_upper_bound: array,
        seed: array | None = None,
        perturbation: float = 0.05,
        grad_tolerance: float = 1e-6,
        random_state=None,
        n_rows: int | None = None,
        n_columns: int | None = None,
    ) -> None:
        rows, columns, values, inferred_rows, inferred_columns = check_triplets(
            rows, columns, values
        )
        self.num_of_rows_, self.num_of_columns_ = resolve_shape(
            inferred_rows, inferred_columns, n_rows, n_columns
        )
        if new_dimension < 1:
            raise ConfigurationError("new_dimension must be at least 1")
        self.new_dimension = new_dimension
        self.shape_ = (new_dimension, self.num_of_rows_ + self.num_of_columns_)
        self.x_lower_bound_, self.x_upper_bound_ = check_box(
            x_lower_bound, x_upper_bound, self.shape_
        )
        if np.any(self.x_lower_bound_ > self.x_upper_bound_):
            raise ConfigurationError("box lower bound exceeds upper bound")
        if seed is not None:
            seed = as_matrix(seed)
            if seed.shape != self.shape_:
                raise ConfigurationError(
                    f"seed must have shape {self.shape_}, got {seed.shape}"
                )

        self.rows_ = rows
        self.columns_ = columns + self.num_of_rows_
        self.values_ = values
        self.seed = seed
        self.perturbation = perturbation
        self.grad_tolerance = grad_tolerance
        self.random_state = random_state

    def evaluate(self, x: array) -> float:
        return nmf_objective(x, self.rows_, self.columns_, self.values_)

    def gradient(self, x: array, out: array) -> None:
        nmf_objective(x, self.rows_, self.columns_, self.values_, out)

    def project(self, x: array) -> None:
        np.clip(x, self.x_lower_bound_, self.x_upper_bound_, out=x)

    def initial_point(self) -> array:
        lo, up = self.x_lower_bound_, self.x_upper_bound_
        x = matrix(*self.shape_)
        if self.seed is None:
            x[:] = 0.5 * (lo + up)
        else:
            x[:] = self.seed
        if self.perturbation > 0:
            rng = check_random_state(self.random_state)
            x += self.perturbation * (up - lo) * rng.uniform(-1.0, 1.0, size=x.shape)
        self.project(x)
        return x

    def is_optimization_over(self, x: array, gradient: array, step: float) -> bool:
        if step < 1e-12:
            return True
        norm = projected_gradient_norm(
            x, gradient, self.x_lower_bound_, self.x_upper_bound_
        )
        return norm < self.grad_tolerance

    def factors(self, x: array) -> tuple[array, array]:
        """Recover ``W`` of shape (R, k) and ``H`` of shape (k, C) from ``x``."""
        r = self.num_of_rows_
        return np.exp(x[:, :r]).T.copy(), np.exp(x[:, r:]).copy()
