"""
Non-convex maximum variance unfolding.

The embedding ``Y`` (one column per point) maximizes the spread
``sum_i |y_i|^2`` while every point keeps the squared distance to each of its
nearest neighbors and the embedding stays centered. The equality
constraints are handled by the augmented-Lagrangian loop of
:mod:`pygop.auglag`, so the problem is solved directly in the low
dimension instead of through a semidefinite program.
"""

from __future__ import annotations

import logging
import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils import check_random_state
from sklearn.utils._param_validation import Interval, Integral, Real
from sklearn.utils.validation import check_is_fitted, validate_data

from .auglag import AugmentedLagrangian
from .config import AugmentedLagrangianOptions, LBFGSOptions
from .exceptions import ConfigurationError
from .linalg import length_euclidean, matrix
from .neighbors import NearestNeighborIndex
from .problem import ConstrainedProblem

logger = logging.getLogger(__name__)

array = np.ndarray


class MVUProblem(ConstrainedProblem):
    """
    Variance maximization under local isometry and centering.

    Parameters
    ----------
    neighbor_index : NearestNeighborIndex
        Neighbor graph of the data; one distance constraint per pair.
    n_components : int
        Embedding dimension.
    tol : float, default=1e-5
        Step length below which an inner run stops.
    grad_tolerance : float, default=1e-6
    random_state : int, RandomState instance or None
        Source of the random start and initial multipliers.
    """

    def __init__(
        self,
        neighbor_index: NearestNeighborIndex,
        n_components: int,
        tol: float = 1e-5,
        grad_tolerance: float = 1e-6,
        random_state=None,
    ) -> None:
        if n_components < 1:
            raise ConfigurationError("n_components must be at least 1")
        self.neighbor_index = neighbor_index
        self.n_components = n_components
        self.tol = tol
        self.grad_tolerance = grad_tolerance
        self.sigma = 1.0

        self.pair_i_, self.pair_j_, self.distances_ = neighbor_index.pairs()
        norm = float(self.distances_ @ self.distances_)
        self._distance_norm = norm if norm > 0 else 1.0

        rng = check_random_state(random_state)
        self._start = matrix(n_components, neighbor_index.n_samples_)
        self._start[:] = rng.uniform(0.1, 1.0, size=self._start.shape)
        self.lagrange_mult_ = rng.uniform(0.1, 1.0, size=self.distances_.size)
        self.centering_mult_ = rng.uniform(0.1, 1.0, size=n_components)

    def initial_point(self) -> array:
        return self._start.copy(order="F")

    def _residuals(self, y: array) -> tuple[array, array, array]:
        """Pair differences, distance residuals and the centering residual."""
        diff = y[:, self.pair_i_] - y[:, self.pair_j_]
        residual = np.einsum("ij,ij->j", diff, diff) - self.distances_
        return diff, residual, y.sum(axis=1)

    def evaluate(self, y: array) -> float:
        return -float(np.sum(y * y))

    def lagrangian(self, y: array) -> float:
        _, residual, centering = self._residuals(y)
        return (
            self.evaluate(y)
            - float(self.lagrange_mult_ @ residual)
            + 0.5 * self.sigma * float(residual @ residual)
            - float(self.centering_mult_ @ centering)
            + 0.5 * self.sigma * float(centering @ centering)
        )

    def gradient(self, y: array, out: array) -> None:
        diff, residual, centering = self._residuals(y)
        np.multiply(y, -2.0, out=out)
        pull = 2.0 * (self.sigma * residual - self.lagrange_mult_) * diff
        np.add.at(out.T, self.pair_i_, pull.T)
        np.add.at(out.T, self.pair_j_, -pull.T)
        out += (self.sigma * centering - self.centering_mult_)[:, None]

    def feasibility_error(self, y: array) -> float:
        _, residual, centering = self._residuals(y)
        return (
            float(residual @ residual) + float(centering @ centering)
        ) / self._distance_norm

    def update_lagrange_mult(self, y: array) -> None:
        _, residual, centering = self._residuals(y)
        self.lagrange_mult_ -= self.sigma * residual
        self.centering_mult_ -= self.sigma * centering

    def is_optimization_over(self, y: array, gradient: array, step: float) -> bool:
        return step < self.tol or length_euclidean(gradient) < self.grad_tolerance


class NonConvexMVU(TransformerMixin, BaseEstimator):
    """
    Maximum variance unfolding solved in the target dimension.

    Parameters
    ----------
    n_neighbors : int, default=5
        Neighbors whose distances each point preserves.
    n_components : int, default=2
        Embedding dimension.
    eta : float, default=0.25
        Feasibility reduction required for a multiplier update.
    gamma : float, default=1.1
        Penalty growth factor.
    sigma : float, default=1000.0
        Initial penalty weight.
    step_size : float, default=1.0
        Longest line-search step.
    armijo_sigma : float, default=0.1
    armijo_beta : float, default=0.5
    tol : float, default=1e-5
        Feasibility tolerance of the outer loop and step tolerance of the
        inner runs.
    max_iter : int, default=10000
        Iteration cap of each inner L-BFGS run.
    max_rounds : int, default=100
        Cap on augmented-Lagrangian rounds.
    leaf_size : int, default=20
        Leaf size of the neighbor search tree.
    random_state : int or None, default=None
    verbose : int, default=0

    Attributes
    ----------
    embedding_ : ndarray of shape (n_samples, n_components)
    feasibility_error_ : float
        Normalized constraint violation of the embedding.
    initial_feasibility_error_ : float
        Same quantity at the random start.
    history_ : dict
        Per-round metrics of the augmented-Lagrangian loop.
    """

    _parameter_constraints = {
        "n_neighbors": [Interval(Integral, 1, None, closed="left")],
        "n_components": [Interval(Integral, 1, None, closed="left")],
        "eta": [Interval(Real, 0.0, 1.0, closed="neither")],
        "gamma": [Interval(Real, 1.0, None, closed="neither")],
        "sigma": [Interval(Real, 0.0, None, closed="neither")],
        "step_size": [Interval(Real, 0.0, None, closed="neither")],
        "armijo_sigma": [Interval(Real, 0.0, 1.0, closed="neither")],
        "armijo_beta": [Interval(Real, 0.0, 1.0, closed="neither")],
        "tol": [Interval(Real, 0.0, None, closed="neither")],
        "max_iter": [Interval(Integral, 1, None, closed="left")],
        "max_rounds": [Interval(Integral, 1, None, closed="left")],
        "leaf_size": [Interval(Integral, 1, None, closed="left")],
        "random_state": ["random_state"],
        "verbose": [Interval(Integral, 0, None, closed="left")],
    }

    def __init__(
        self,
        n_neighbors: int = 5,
        n_components: int = 2,
        eta: float = 0.25,
        gamma: float = 1.1,
        sigma: float = 1000.0,
        step_size: float = 1.0,
        armijo_sigma: float = 0.1,
        armijo_beta: float = 0.5,
        tol: float = 1e-5,
        max_iter: int = 10000,
        max_rounds: int = 100,
        leaf_size: int = 20,
        random_state: int | None = None,
        verbose: int = 0,
    ) -> None:
        self.n_neighbors = n_neighbors
        self.n_components = n_components
        self.eta = eta
        self.gamma = gamma
        self.sigma = sigma
        self.step_size = step_size
        self.armijo_sigma = armijo_sigma
        self.armijo_beta = armijo_beta
        self.tol = tol
        self.max_iter = max_iter
        self.max_rounds = max_rounds
        self.leaf_size = leaf_size
        self.random_state = random_state
        self.verbose = verbose

    def fit(self, x: np.ndarray, y: np.ndarray | None = None) -> NonConvexMVU:
        """
        Compute the embedding of ``x``.

        Parameters
        ----------
        x : array-like of shape (n_samples, n_features)
        y : Ignored

        Returns
        -------
        self : object
        """
        self._validate_params()
        x = validate_data(self, x, reset=True, dtype=np.float64)
        if self.n_neighbors >= x.shape[0]:
            raise ValueError(
                f"n_neighbors={self.n_neighbors} must be smaller than the number "
                f"of samples ({x.shape[0]})"
            )

        index = NearestNeighborIndex(x, self.n_neighbors, leaf_size=self.leaf_size)
        problem = MVUProblem(
            index, self.n_components, tol=self.tol, random_state=self.random_state
        )
        solver = AugmentedLagrangian(
            problem,
            AugmentedLagrangianOptions(
                eta=self.eta,
                gamma=self.gamma,
                sigma=self.sigma,
                tolerance=self.tol,
                max_rounds=self.max_rounds,
                verbose=self.verbose,
            ),
            LBFGSOptions(
                max_iterations=self.max_iter,
                step_size=self.step_size,
                armijo_sigma=self.armijo_sigma,
                armijo_beta=self.armijo_beta,
            ),
        )

        coords = problem.initial_point()
        self.initial_feasibility_error_ = problem.feasibility_error(coords)
        converged = solver.solve(coords)
        if not converged:
            logger.info(
                "Embedding not feasible to tolerance %.1e (error %.3e)",
                self.tol,
                solver.feasibility_error_,
            )

        self.embedding_ = coords.T.copy()
        self.feasibility_error_ = solver.feasibility_error_
        self.n_rounds_ = solver.n_rounds_
        self.converged_ = converged
        self.history_ = solver.history_
        return self

    def fit_transform(self, x: np.ndarray, y: np.ndarray | None = None) -> np.ndarray:
        return self.fit(x, y).embedding_

    def variance(self) -> float:
        """Total spread ``sum_i |y_i|^2`` of the fitted embedding."""
        check_is_fitted(self)
        return float(np.sum(self.embedding_**2))
