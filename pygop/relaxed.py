"""
Convex relaxations of the log-space NMF objective over a box.

For an observed entry ``v`` at ``(i, j)`` the model value is
``sum_r exp(u_r)`` with ``u_r = x[r, i] + x[r, R + j]``. Over the box every
``u_r`` lies in an interval ``[ulo, uup]``, on which ``exp`` is bounded above
by its secant ``a u + b``. The model value is therefore enclosed between the
convex ``p_lo = sum_r exp(u_r)`` and the affine ``p_up = sum_r a_r u_r + b_r``,
and

    R(x) = sum max(p_lo - v, 0)^2 + max(v - p_up, 0)^2

is a convex, continuously differentiable under-estimator of the squared
residual. Minimizing ``R`` over the box and adding the linearization gap
gives a certified lower bound of the NMF objective on that box.
"""

from __future__ import annotations

import logging

import numpy as np

from .exceptions import ConfigurationError
from .geometric import nmf_objective
from .linalg import as_matrix, fill, matrix
from .problem import ConstrainedProblem, RelaxationProblem
from .utils import check_box, check_triplets, projected_gradient_norm, resolve_shape

logger = logging.getLogger(__name__)

array = np.ndarray

_DEGENERATE_WIDTH = 1e-10
_INFEASIBILITY_SLACK = 1e-9


def exp_secant(lower: array, upper: array) -> tuple[array, array]:
    """
    Slope and intercept of a line above ``exp`` on ``[lower, upper]``.

    The secant is used whenever the interval has width; degenerate intervals
    get the line through ``(upper, exp(upper))`` with slope ``exp(lower)``,
    which still dominates ``exp`` on the interval.
    """
    lower = np.asarray(lower, dtype=float)
    upper = np.asarray(upper, dtype=float)
    e_lo = np.exp(lower)
    e_up = np.exp(upper)
    width = upper - lower
    degenerate = width <= _DEGENERATE_WIDTH
    slope = np.where(
        degenerate, e_lo, (e_up - e_lo) / np.where(degenerate, 1.0, width)
    )
    intercept = e_up - slope * upper
    return slope, intercept


class RelaxedNMF(RelaxationProblem):
    """
    Secant relaxation of box-constrained NMF in log coordinates.

    Parameters
    ----------
    rows, columns, values : array-like
        Observed entries of the matrix to factorize.
    new_dimension : int
        Rank of the factorization.
    x_lower_bound, x_upper_bound : ndarray of shape (new_dimension, R + C)
        Log-space box.
    cutoff : float, default=inf
        Best known objective value; used to tighten the box.
    grad_tolerance : float, default=1e-6
        Projected-gradient threshold for termination.
    max_passes : int, default=5
        Constraint propagation passes.

    Attributes
    ----------
    x_lower_bound_, x_upper_bound_ : ndarray
        Box after constraint propagation.
    a_linear_term_, b_linear_term_ : ndarray of shape (new_dimension, n_observed)
        Secant coefficients per component and observation.
    """

    def __init__(
        self,
        rows,
        columns,
        values,
        new_dimension: int,
        x_lower_bound: array,
        x_upper_bound: array,
        cutoff: float = np.inf,
        grad_tolerance: float = 1e-6,
        max_passes: int = 5,
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
        self.w_offset_ = 0
        self.h_offset_ = self.num_of_rows_
        self.shape_ = (new_dimension, self.num_of_rows_ + self.num_of_columns_)

        lower, upper = check_box(x_lower_bound, x_upper_bound, self.shape_)
        if np.any(lower > upper):
            raise ConfigurationError("box lower bound exceeds upper bound")
        self.x_lower_bound_ = lower.copy(order="F")
        self.x_upper_bound_ = upper.copy(order="F")

        self.rows_ = rows
        self.columns_ = columns + self.h_offset_
        self.values_ = values
        self.cutoff = cutoff
        self.grad_tolerance = grad_tolerance
        self.max_passes = max_passes

        self._infeasible = not self._propagate(cutoff)
        self._update_linear_terms()
        self._solution: array | None = None
        self._bound: float | None = None

    # -- box handling -------------------------------------------------------

    def _propagate(self, cutoff: float) -> bool:
        """Tighten the box with ``|v - p| <= sqrt(cutoff)``; False if empty."""
        lo, up = self.x_lower_bound_, self.x_upper_bound_
        if not np.isfinite(cutoff):
            return True
        if cutoff < 0:
            return False
        radius = np.sqrt(cutoff)
        r, c, v = self.rows_, self.columns_, self.values_

        for n_pass in range(self.max_passes):
            e_lo = np.exp(lo[:, r] + lo[:, c])
            e_up = np.exp(up[:, r] + up[:, c])
            s_lo = e_lo.sum(axis=0)
            s_up = e_up.sum(axis=0)
            if np.any(s_lo > (v + radius) * (1 + _INFEASIBILITY_SLACK)) or np.any(
                s_up < (v - radius) * (1 - _INFEASIBILITY_SLACK)
            ):
                return False

            room = np.maximum((v + radius) - (s_lo - e_lo), e_lo)
            cap = np.log(room)
            need = (v - radius) - (s_up - e_up)
            floor = np.where(
                need > 0, np.log(np.maximum(need, np.finfo(float).tiny)), -np.inf
            )
            floor = np.minimum(floor, np.log(e_up))

            old_lo, old_up = lo.copy(), up.copy()
            np.minimum.at(up.T, r, (cap - old_lo[:, c]).T)
            np.minimum.at(up.T, c, (cap - old_lo[:, r]).T)
            np.maximum.at(lo.T, r, (floor - old_up[:, c]).T)
            np.maximum.at(lo.T, c, (floor - old_up[:, r]).T)

            if np.any(lo > up + _INFEASIBILITY_SLACK):
                return False
            np.minimum(lo, up, out=lo)
            if np.allclose(lo, old_lo) and np.allclose(up, old_up):
                logger.debug("propagation settled after %d passes", n_pass + 1)
                break
        return True

    def _update_linear_terms(self) -> None:
        lo, up = self.x_lower_bound_, self.x_upper_bound_
        r, c = self.rows_, self.columns_
        self.a_linear_term_, self.b_linear_term_ = exp_secant(
            lo[:, r] + lo[:, c], up[:, r] + up[:, c]
        )

    # -- objective ----------------------------------------------------------

    def relaxed_objective(self, x: array, out: array | None = None) -> float:
        """``R(x)``; writes its gradient into ``out`` when given."""
        r, c, v = self.rows_, self.columns_, self.values_
        u = x[:, r] + x[:, c]
        e = np.exp(u)
        a = self.a_linear_term_
        over = np.maximum(e.sum(axis=0) - v, 0.0)
        under = np.maximum(v - (a * u + self.b_linear_term_).sum(axis=0), 0.0)
        value = float(over @ over + under @ under)
        if out is not None:
            du = 2.0 * over * e - 2.0 * under * a
            fill(out, 0.0)
            np.add.at(out.T, r, du.T)
            np.add.at(out.T, c, du.T)
        return value

    def evaluate(self, x: array) -> float:
        return self.relaxed_objective(x)

    def gradient(self, x: array, out: array) -> None:
        self.relaxed_objective(x, out)

    def non_relaxed_objective(self, x: array) -> float:
        return nmf_objective(x, self.rows_, self.columns_, self.values_)

    def project(self, x: array) -> None:
        np.clip(x, self.x_lower_bound_, self.x_upper_bound_, out=x)

    def initial_point(self) -> array:
        x = matrix(*self.shape_)
        x[:] = 0.5 * (self.x_lower_bound_ + self.x_upper_bound_)
        return x

    def to_original(self, x: array) -> array:
        """Map a point of this problem into the caller's coordinates."""
        return as_matrix(x).copy(order="F")

    def from_original(self, x: array) -> array:
        return as_matrix(x).copy(order="F")

    # -- termination and bounds --------------------------------------------

    def _record(self, x: array) -> None:
        if self._solution is None or self._solution.shape != x.shape:
            self._solution = np.empty_like(x, order="F")
        np.copyto(self._solution, x)
        self._bound = None

    def is_optimization_over(self, x: array, gradient: array, step: float) -> bool:
        self._record(x)
        if step < 1e-12:
            return True
        norm = projected_gradient_norm(
            x, gradient, self.x_lower_bound_, self.x_upper_bound_
        )
        return norm < self.grad_tolerance

    def _certificate(self, x: array, out: array) -> float:
        """Convex function below the objective on the box, with its gradient."""
        return self.relaxed_objective(x, out)

    def soft_lower_bound(self) -> float:
        """
        Certified lower bound from the last recorded iterate.

        Uses ``phi(x) + sum min(g (lo - x), g (up - x))`` for the convex
        certificate ``phi`` and its gradient ``g``, which is at most the
        minimum of ``phi`` over the box.
        """
        if self._solution is None:
            return -np.inf
        if self._bound is None:
            lo, up = self.x_lower_bound_, self.x_upper_bound_
            x = np.clip(self._solution, lo, up)
            g = np.zeros_like(x, order="F")
            value = self._certificate(x, g)
            gap = np.minimum(g * (lo - x), g * (up - x)).sum()
            self._bound = max(0.0, float(value + gap))
        return self._bound

    @property
    def solution_(self) -> array | None:
        """Last iterate seen by the termination predicates."""
        return self._solution

    def is_infeasible(self) -> bool:
        return self._infeasible


class RelaxedNMFBarrier(RelaxedNMF):
    """
    Relaxation with a logarithmic barrier keeping iterates inside the box.

    ``set_sigma`` sets the barrier weight ``mu``. Coordinates with zero box
    width carry no barrier term and stay fixed.
    """

    def __init__(self, *args, barrier: float = 1e-3, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.sigma = float(barrier)
        width = self.x_upper_bound_ - self.x_lower_bound_
        self._free = width > _DEGENERATE_WIDTH
        self._margin = 1e-9 * width

    def set_sigma(self, sigma: float) -> None:
        self.sigma = float(sigma)

    def evaluate(self, x: array) -> float:
        free = self._free
        below = (x - self.x_lower_bound_)[free]
        above = (self.x_upper_bound_ - x)[free]
        if np.any(below <= 0) or np.any(above <= 0):
            return np.inf
        barrier = np.log(below).sum() + np.log(above).sum()
        return self.relaxed_objective(x) - self.sigma * float(barrier)

    def gradient(self, x: array, out: array) -> None:
        self.relaxed_objective(x, out)
        free = self._free
        below = (x - self.x_lower_bound_)[free]
        above = (self.x_upper_bound_ - x)[free]
        out[free] += self.sigma * (1.0 / above - 1.0 / below)

    def project(self, x: array) -> None:
        lo = self.x_lower_bound_ + self._margin
        up = self.x_upper_bound_ - self._margin
        np.clip(x, lo, up, out=x)


class RelaxedNMFScaled(RelaxedNMF):
    """
    Relaxation of the problem rescaled so that ``max |v| == 1``.

    Variables are shifted by ``-log(scale) / 2``; bounds and objectives are
    reported in the original units.
    """

    def __init__(
        self,
        rows,
        columns,
        values,
        new_dimension: int,
        x_lower_bound: array,
        x_upper_bound: array,
        cutoff: float = np.inf,
        scale_factor: float | None = None,
        **kwargs,
    ) -> None:
        values = np.asarray(values, dtype=float)
        if scale_factor is None:
            scale_factor = float(np.max(np.abs(values))) if values.size else 1.0
        if not scale_factor > 0:
            scale_factor = 1.0
        self.scale_factor_ = scale_factor
        self.shift_ = 0.5 * np.log(scale_factor)
        super().__init__(
            rows,
            columns,
            values / scale_factor,
            new_dimension,
            as_matrix(x_lower_bound) - self.shift_,
            as_matrix(x_upper_bound) - self.shift_,
            cutoff=cutoff / scale_factor**2,
            **kwargs,
        )

    def soft_lower_bound(self) -> float:
        return super().soft_lower_bound() * self.scale_factor_**2

    def non_relaxed_objective(self, x: array) -> float:
        return super().non_relaxed_objective(x) * self.scale_factor_**2

    def to_original(self, x: array) -> array:
        return as_matrix(x) + self.shift_

    def from_original(self, x: array) -> array:
        return as_matrix(x) - self.shift_


class RelaxedNMFIsometric(RelaxedNMF, ConstrainedProblem):
    """
    Relaxation with isometry constraints on the rows of ``W``.

    For neighbor pairs ``(i, j)`` of data rows with squared distance ``d`` the
    true ``|w_i - w_j|^2`` is enclosed between the convex ``g(x)`` and the
    concave ``h(x)``; the constraints ``max(g - d, 0) = 0`` and
    ``max(d - h, 0) = 0`` are handled by the augmented Lagrangian.

    Parameters
    ----------
    neighbor_index : NearestNeighborIndex
        Neighbor graph over the ``R`` rows of the data.
    """

    def __init__(self, *args, neighbor_index, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if neighbor_index.n_samples_ != self.num_of_rows_:
            raise ConfigurationError(
                f"neighbor index covers {neighbor_index.n_samples_} points, "
                f"expected {self.num_of_rows_} rows"
            )
        self.neighbor_index = neighbor_index
        self.pair_i_, self.pair_j_, self.pair_distance_ = neighbor_index.pairs()
        n_pairs = self.pair_i_.size
        self.lagrange_mult_ = np.zeros(2 * n_pairs)
        self.sigma = 1.0
        norm = float(self.pair_distance_ @ self.pair_distance_)
        self._distance_norm = norm if norm > 0 else 1.0

        lo, up = self.x_lower_bound_, self.x_upper_bound_
        i, j = self.pair_i_, self.pair_j_
        self._a_sum, self._b_sum = exp_secant(lo[:, i] + lo[:, j], up[:, i] + up[:, j])
        self._a_i, self._b_i = exp_secant(2 * lo[:, i], 2 * up[:, i])
        self._a_j, self._b_j = exp_secant(2 * lo[:, j], 2 * up[:, j])
        if not self._infeasible:
            self._infeasible = not self._isometry_possible()

    def _isometry_possible(self) -> bool:
        i, j, d = self.pair_i_, self.pair_j_, self.pair_distance_
        w_lo = np.exp(self.x_lower_bound_)
        w_up = np.exp(self.x_upper_bound_)
        gap = np.maximum(0.0, np.maximum(w_lo[:, i] - w_up[:, j], w_lo[:, j] - w_up[:, i]))
        spread = np.maximum(w_up[:, i] - w_lo[:, j], w_up[:, j] - w_lo[:, i])
        smallest = (gap**2).sum(axis=0)
        largest = (spread**2).sum(axis=0)
        slack = _INFEASIBILITY_SLACK * (1.0 + d)
        return bool(np.all(d >= smallest - slack) and np.all(d <= largest + slack))

    def constraints(self, x: array, weights: array | None = None, out: array | None = None) -> array:
        """
        Constraint values ``[max(g - d, 0), max(d - h, 0)]``.

        With ``weights`` and ``out`` given, ``sum weights * grad c`` is added
        to ``out``.
        """
        i, j, d = self.pair_i_, self.pair_j_, self.pair_distance_
        xi, xj = x[:, i], x[:, j]
        s = xi + xj
        e2i, e2j, es = np.exp(2 * xi), np.exp(2 * xj), np.exp(s)
        g = (e2i + e2j - 2.0 * (self._a_sum * s + self._b_sum)).sum(axis=0)
        h = (
            self._a_i * 2 * xi + self._b_i + self._a_j * 2 * xj + self._b_j - 2.0 * es
        ).sum(axis=0)
        c_low = np.maximum(g - d, 0.0)
        c_high = np.maximum(d - h, 0.0)
        if weights is not None and out is not None:
            n_pairs = d.size
            w_low = weights[:n_pairs] * (c_low > 0)
            w_high = weights[n_pairs:] * (c_high > 0)
            gi = w_low * (2 * e2i - 2 * self._a_sum) + w_high * (2 * es - 2 * self._a_i)
            gj = w_low * (2 * e2j - 2 * self._a_sum) + w_high * (2 * es - 2 * self._a_j)
            np.add.at(out.T, i, gi.T)
            np.add.at(out.T, j, gj.T)
        return np.concatenate([c_low, c_high])

    def lagrangian(self, x: array) -> float:
        c = self.constraints(x)
        return (
            self.relaxed_objective(x)
            - float(self.lagrange_mult_ @ c)
            + 0.5 * self.sigma * float(c @ c)
        )

    def gradient(self, x: array, out: array) -> None:
        self.relaxed_objective(x, out)
        c = self.constraints(x)
        self.constraints(x, self.sigma * c - self.lagrange_mult_, out)

    def feasibility_error(self, x: array) -> float:
        c = self.constraints(x)
        return float(c @ c) / self._distance_norm

    def update_lagrange_mult(self, x: array) -> None:
        self.lagrange_mult_ -= self.sigma * self.constraints(x)

    def _certificate(self, x: array, out: array) -> float:
        value = self.relaxed_objective(x, out)
        weights = np.maximum(-self.lagrange_mult_, 0.0)
        c = self.constraints(x, weights, out)
        return value + float(weights @ c)
