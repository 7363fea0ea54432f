"""
Globally optimal non-negative matrix factorization

Scikit-learn estimator around :class:`~pygop.branch_bound.GopNMFEngine`.
Dense input with missing entries is turned into observed triplets, the
factors are searched within the box ``[lower, upper]`` and the best
factorization found is exposed together with its certified lower bound.
"""

from __future__ import annotations

import logging
import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils._param_validation import Interval, StrOptions, Integral, Real
from sklearn.utils.validation import check_is_fitted, validate_data

from .branch_bound import BisectionSplitter, GopNMFEngine
from .config import RELAXATIONS, BranchBoundOptions, LBFGSOptions
from .utils import get_missing_mask, to_triplets

logger = logging.getLogger(__name__)


def _is_nan_marker(missing_values: float | None) -> bool:
    return missing_values is np.nan or (
        isinstance(missing_values, float) and np.isnan(missing_values)
    )


class GlobalNMF(TransformerMixin, BaseEstimator):
    """
    Non-negative matrix factorization ``X ~ W H`` by branch and bound.

    The algorithm solves min_{lower <= W, H <= upper} ||M o (X - W H)||^2_F
    to within ``desired_gap`` of the global optimum, where M masks the
    observed entries.

    Parameters
    ----------
    rank : int, default=2
        Inner dimension of the factorization.
    lower, upper : float, default=(1e-3, 10.0)
        Entrywise bounds on both factors.
    desired_gap : float, default=1e-3
        Absolute optimality gap at which boxes are pruned.
    max_iter : int, default=1000
        Cap on processed boxes.
    relaxation : {'plain', 'scaled', 'barrier'}, default='plain'
        Lower-bounding relaxation.
    grad_tolerance : float, default=1e-6
    cutoff : float, default=inf
        Known upper bound on the optimal objective.
    pieces : int, default=2
        Number of children per split.
    verbose : int, default=0
    random_state : int or None, default=None
    missing_values : float or None, default=np.nan
        Values to be treated as missing to mask the matrix

    Attributes
    ----------
    w_ : np.ndarray of shape (n_rows, rank)
    h_ : np.ndarray of shape (rank, n_columns)
    upper_bound_ : float
        Objective of the returned factorization.
    lower_bound_ : float
        Certified lower bound on the optimal objective.
    converged_ : bool
        Whether the search space was exhausted.
    engine_ : GopNMFEngine
    """

    _parameter_constraints = {
        "rank": [Interval(Integral, 1, None, closed="left")],
        "lower": [Interval(Real, 0.0, None, closed="neither")],
        "upper": [Interval(Real, 0.0, None, closed="neither")],
        "desired_gap": [Interval(Real, 0.0, None, closed="left")],
        "max_iter": [Interval(Integral, 1, None, closed="left")],
        "relaxation": [StrOptions(set(RELAXATIONS))],
        "grad_tolerance": [Interval(Real, 0.0, None, closed="neither")],
        "cutoff": [Real],
        "pieces": [Interval(Integral, 2, None, closed="left")],
        "verbose": [Interval(Integral, 0, None, closed="left")],
        "random_state": ["random_state"],
        "missing_values": [None, Real, np.nan],
    }

    def __init__(
        self,
        rank: int = 2,
        lower: float = 1e-3,
        upper: float = 10.0,
        desired_gap: float = 1e-3,
        max_iter: int = 1000,
        relaxation: str = "plain",
        grad_tolerance: float = 1e-6,
        cutoff: float = np.inf,
        pieces: int = 2,
        verbose: int = 0,
        random_state: int | None = None,
        missing_values: float | None = np.nan,
    ) -> None:
        self.rank = rank
        self.lower = lower
        self.upper = upper
        self.desired_gap = desired_gap
        self.max_iter = max_iter
        self.relaxation = relaxation
        self.grad_tolerance = grad_tolerance
        self.cutoff = cutoff
        self.pieces = pieces
        self.verbose = verbose
        self.random_state = random_state
        self.missing_values = missing_values

    def fit(self, x: np.ndarray, y: np.ndarray | None = None) -> GlobalNMF:
        """
        Fit the factorization to the observed entries of ``x``.

        Parameters
        ----------
        x : array-like of shape (n_rows, n_columns)
            Non-negative matrix; missing entries are marked by
            ``missing_values``.
        y : Ignored

        Returns
        -------
        self : object
        """
        self._validate_params()
        x = validate_data(
            self,
            x,
            reset=True,
            ensure_all_finite=(
                "allow-nan" if _is_nan_marker(self.missing_values) else True
            ),
            ensure_2d=True,
            dtype=np.float64,
        )
        rows, columns, values = to_triplets(x, self.missing_values)
        if values.size == 0:
            raise ValueError(
                "No observed entries found in the data. All values are missing."
            )

        options = BranchBoundOptions(
            new_dimension=self.rank,
            lower=self.lower,
            upper=self.upper,
            desired_gap=self.desired_gap,
            max_iterations=self.max_iter,
            grad_tolerance=self.grad_tolerance,
            relaxation=self.relaxation,
            cutoff=self.cutoff,
            random_state=self.random_state,
        )
        engine = GopNMFEngine(
            splitter=BisectionSplitter(self.pieces),
            options=options,
            lbfgs_options=LBFGSOptions(),
            verbose=self.verbose,
        )
        engine.fit(rows, columns, values, n_rows=x.shape[0], n_columns=x.shape[1])
        if engine.upper_solution_.solution is None:
            raise RuntimeError(
                "No factorization below the cutoff was found; raise cutoff or max_iter."
            )

        self.engine_ = engine
        self.w_, self.h_ = engine.factors()
        self.upper_bound_ = engine.upper_solution_.non_relaxed_minimum
        self.lower_bound_ = engine.lower_bound_
        self.converged_ = engine.converged_
        self.n_iter_ = engine.stats_.iteration
        return self

    def transform(self, x: np.ndarray) -> np.ndarray:
        """Row factors of the fitted matrix."""
        check_is_fitted(self)
        return self.w_

    def fit_transform(self, x: np.ndarray, y: np.ndarray | None = None) -> np.ndarray:
        return self.fit(x, y).transform(x)

    def reconstruct(self) -> np.ndarray:
        check_is_fitted(self)
        return self.w_ @ self.h_

    def score(self, x: np.ndarray, y: np.ndarray | None = None) -> float:
        """
        Negative mean squared error of the reconstruction on observed entries.
        """
        check_is_fitted(self)
        x = validate_data(
            self,
            x,
            reset=False,
            ensure_2d=True,
            dtype=np.float64,
            ensure_all_finite=(
                "allow-nan" if _is_nan_marker(self.missing_values) else True
            ),
        )
        observed = ~get_missing_mask(x, self.missing_values)
        mse = np.mean((x[observed] - self.reconstruct()[observed]) ** 2)
        return -mse

    def report(self) -> pd.DataFrame:
        check_is_fitted(self)
        return self.engine_.report()
