"""
Best-first branch and bound for globally optimal NMF.

Boxes in log space are kept in a priority queue keyed by a certified lower
bound. Each popped box gets a convex relaxation (lower bound) and a local
search on the exact objective seeded at the relaxed minimizer (upper bound);
boxes that cannot improve the incumbent by more than ``desired_gap`` are
pruned, the others are split and their children re-enqueued.
"""

from __future__ import annotations

import heapq
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, dataclass, field, replace
from typing import Callable

import numpy as np
import pandas as pd
from sklearn.utils import check_random_state
from tqdm import trange

from .auglag import AugmentedLagrangian
from .config import BranchBoundOptions, LBFGSOptions
from .exceptions import ConfigurationError
from .geometric import GeometricNMF
from .lbfgs import LBFGS, ExitStatus
from .problem import ConstrainedProblem, RelaxationProblem
from .relaxed import RelaxedNMF, RelaxedNMFBarrier, RelaxedNMFScaled
from .utils import box_volume, check_triplets, log_box, resolve_shape

logger = logging.getLogger(__name__)

array = np.ndarray
Box = tuple[array, array]

_RELAXATIONS = {
    "plain": RelaxedNMF,
    "scaled": RelaxedNMFScaled,
    "barrier": RelaxedNMFBarrier,
}


@dataclass
class SolutionPack:
    """Bounds and point attached to a box."""

    relaxed_minimum: float
    non_relaxed_minimum: float
    solution: array | None = None
    box: Box | None = None


@dataclass(order=True)
class _PQItem:
    key: float
    counter: int
    pack: SolutionPack = field(compare=False)


@dataclass
class BranchBoundStats:
    soft_prunes: int = 0
    hard_prunes: int = 0
    soft_pruned_volume: float = 0.0
    hard_pruned_volume: float = 0.0
    total_volume: float = 1.0
    iteration: int = 0
    max_queue_size: int = 0


class Splitter(ABC):
    """Strategy dividing a box into interior-disjoint children covering it."""

    @abstractmethod
    def split(self, lower: array, upper: array, hint: array | None = None) -> list[Box]:
        """Children of ``[lower, upper]``; ``hint`` is a point of interest inside it."""


class BisectionSplitter(Splitter):
    """
    Cut the widest coordinate of the box.

    With two pieces the cut goes through ``hint`` when it lies in the inner
    80% of that edge, else through the midpoint. More pieces cut the edge
    into equal sections.
    """

    def __init__(self, pieces: int = 2, margin: float = 0.1) -> None:
        if pieces < 2:
            raise ConfigurationError("pieces must be at least 2")
        self.pieces = pieces
        self.margin = margin

    def _cuts(self, lo: float, up: float, hint: float | None) -> array:
        width = up - lo
        if (
            self.pieces == 2
            and hint is not None
            and lo + self.margin * width < hint < up - self.margin * width
        ):
            return np.array([hint])
        return lo + width * np.arange(1, self.pieces) / self.pieces

    def split(self, lower: array, upper: array, hint: array | None = None) -> list[Box]:
        width = upper - lower
        idx = np.unravel_index(int(np.argmax(width)), width.shape)
        if not width[idx] > 0:
            return [(lower.copy(order="F"), upper.copy(order="F"))]
        point = None if hint is None else float(hint[idx])
        edges = np.concatenate(
            [[lower[idx]], self._cuts(lower[idx], upper[idx], point), [upper[idx]]]
        )
        children = []
        for lo_edge, up_edge in zip(edges[:-1], edges[1:]):
            lo = lower.copy(order="F")
            up = upper.copy(order="F")
            lo[idx] = lo_edge
            up[idx] = up_edge
            children.append((lo, up))
        return children


class GopNMFEngine:
    """
    Global optimizer for box-constrained NMF with missing entries.

    Parameters
    ----------
    splitter : Splitter or None
        Box division strategy; :class:`BisectionSplitter` when None.
    options : BranchBoundOptions or None
        Engine settings; ``new_dimension`` must be set before ``fit``.
    lbfgs_options : LBFGSOptions or None
        Base options of the inner solves; their iteration caps are replaced
        by the engine's.
    callback : callable or None
        Called as ``callback(engine, pack)`` after each processed box.
    verbose : int, default=0
        Show a progress bar over the iterations.

    Attributes
    ----------
    upper_solution_ : SolutionPack
        Incumbent; ``solution`` is None when nothing beat the cutoff.
    stats_ : BranchBoundStats
        Prune counters and volumes (fractions of the root box).
    lower_bound_ : float
        Smallest remaining key, or the incumbent value when smaller.
    converged_ : bool
        True when the queue was exhausted.
    history_ : dict
        Per-iteration trace.
    """

    def __init__(
        self,
        splitter: Splitter | None = None,
        options: BranchBoundOptions | None = None,
        lbfgs_options: LBFGSOptions | None = None,
        callback: Callable[["GopNMFEngine", SolutionPack], None] | None = None,
        verbose: int = 0,
    ) -> None:
        self.splitter = splitter if splitter is not None else BisectionSplitter()
        self.options = options if options is not None else BranchBoundOptions()
        self.lbfgs_options = lbfgs_options if lbfgs_options is not None else LBFGSOptions()
        self.callback = callback
        self.verbose = verbose

    # -- inner solves -------------------------------------------------------

    def _make_relaxation(self, box: Box, cutoff: float) -> RelaxationProblem:
        opts = self.options
        kwargs = dict(
            cutoff=cutoff,
            grad_tolerance=opts.grad_tolerance,
            n_rows=self.n_rows_,
            n_columns=self.n_columns_,
        )
        if opts.relaxation == "barrier":
            kwargs["barrier"] = opts.barrier
        return _RELAXATIONS[opts.relaxation](
            self.rows_, self.columns_, self.values_, opts.new_dimension, *box, **kwargs
        )

    def _solve_relaxation(self, relaxation: RelaxationProblem, x: array) -> bool:
        lbfgs_options = replace(
            self.lbfgs_options, max_iterations=self.options.relaxation_max_iterations
        )
        if isinstance(relaxation, ConstrainedProblem):
            return AugmentedLagrangian(relaxation, lbfgs_options=lbfgs_options).solve(x)
        return LBFGS(relaxation, lbfgs_options).optimize(0, x)

    def _upper_bound(self, box: Box, seed: array) -> tuple[float, array | None]:
        opts = self.options
        problem = GeometricNMF(
            self.rows_,
            self.columns_,
            self.values_,
            opts.new_dimension,
            *box,
            seed=seed,
            perturbation=opts.perturbation,
            grad_tolerance=opts.grad_tolerance,
            random_state=self._rng,
            n_rows=self.n_rows_,
            n_columns=self.n_columns_,
        )
        x = problem.initial_point()
        optimizer = LBFGS(
            problem, replace(self.lbfgs_options, max_iterations=opts.upper_max_iterations)
        )
        optimizer.optimize(0, x)
        if optimizer.status_ in (ExitStatus.DIVERGED, ExitStatus.LINE_SEARCH_EXHAUSTED):
            logger.debug("upper-bound search failed with %s", optimizer.status_.value)
            return np.inf, None
        value = problem.evaluate(x)
        if not np.isfinite(value):
            return np.inf, None
        return value, x

    # -- bookkeeping --------------------------------------------------------

    def _volume(self, box: Box) -> float:
        return box_volume(box[0], box[1], self._reference_width)

    def _push(self, key: float, pack: SolutionPack) -> None:
        heapq.heappush(self._queue, _PQItem(key, self._counter, pack))
        self._counter += 1
        self.stats_.max_queue_size = max(self.stats_.max_queue_size, len(self._queue))

    def _record(self, action: str, key: float, bound: float) -> None:
        self.history_["iteration"].append(self.stats_.iteration)
        self.history_["action"].append(action)
        self.history_["key"].append(key)
        self.history_["lower_bound"].append(bound)
        self.history_["upper_bound"].append(self.upper_solution_.non_relaxed_minimum)
        self.history_["queue_size"].append(len(self._queue))

    def queue_keys(self) -> list[float]:
        """Keys of the boxes still waiting in the queue."""
        return sorted(item.key for item in self._queue)

    def current_lower_bound(self) -> float:
        keys = [item.key for item in self._queue]
        incumbent = self.upper_solution_.non_relaxed_minimum
        return min(min(keys), incumbent) if keys else incumbent

    # -- main loop ----------------------------------------------------------

    def fit(self, rows, columns, values, n_rows: int | None = None, n_columns: int | None = None):
        """
        Run branch and bound on the observed entries ``(rows, columns, values)``.

        Returns
        -------
        self : GopNMFEngine
        """
        opts = self.options
        if opts.new_dimension is None:
            raise ConfigurationError("the target inner dimension (new_dimension) is not set")
        rows, columns, values, inferred_rows, inferred_columns = check_triplets(
            rows, columns, values
        )
        self.n_rows_, self.n_columns_ = resolve_shape(
            inferred_rows, inferred_columns, n_rows, n_columns
        )
        self.rows_, self.columns_, self.values_ = rows, columns, values
        self._rng = check_random_state(opts.random_state)

        root = log_box(opts.lower, opts.upper, opts.new_dimension, self.n_rows_, self.n_columns_)
        self._reference_width = root[1] - root[0]
        self.stats_ = BranchBoundStats()
        self.history_ = defaultdict(list)
        self.upper_solution_ = SolutionPack(-np.inf, opts.cutoff)
        self._queue: list[_PQItem] = []
        self._counter = 0
        self._push(-np.inf, SolutionPack(-np.inf, np.inf, None, root))

        pbar = trange(opts.max_iterations, disable=not self.verbose, desc="Branch and bound")
        for _ in pbar:
            if not self._queue:
                break
            item = heapq.heappop(self._queue)
            self.stats_.iteration += 1
            self._process(item.key, item.pack)
            pbar.set_postfix(
                lower=f"{self.current_lower_bound():.3e}",
                upper=f"{self.upper_solution_.non_relaxed_minimum:.3e}",
                queue=len(self._queue),
            )
            if self.callback is not None:
                self.callback(self, item.pack)

        self.converged_ = not self._queue
        self.lower_bound_ = self.current_lower_bound()
        logger.info(
            "Branch and bound stopped after %d iterations: lower %.6e, upper %.6e, %d boxes left",
            self.stats_.iteration,
            self.lower_bound_,
            self.upper_solution_.non_relaxed_minimum,
            len(self._queue),
        )
        return self

    def _process(self, key: float, pack: SolutionPack) -> None:
        opts = self.options
        stats = self.stats_
        incumbent = self.upper_solution_
        box = pack.box

        if key >= incumbent.non_relaxed_minimum - opts.desired_gap:
            stats.hard_prunes += 1
            stats.hard_pruned_volume += self._volume(box)
            self._record("hard_prune", key, key)
            return

        relaxation = self._make_relaxation(box, min(opts.cutoff, incumbent.non_relaxed_minimum))
        if relaxation.is_infeasible():
            stats.soft_prunes += 1
            stats.soft_pruned_volume += self._volume(box)
            self._record("infeasible", key, key)
            return

        x = relaxation.initial_point()
        if self._solve_relaxation(relaxation, x):
            bound = max(key, relaxation.soft_lower_bound())
        else:
            logger.debug("relaxation failed at iteration %d, keeping parent key", stats.iteration)
            bound = key
        hint = relaxation.to_original(x)

        value, point = self._upper_bound(box, hint)
        if value < self.upper_solution_.non_relaxed_minimum:
            logger.info("Iteration %d: new upper bound %.6e", stats.iteration, value)
            self.upper_solution_ = SolutionPack(bound, value, point, box)

        if bound >= self.upper_solution_.non_relaxed_minimum - opts.desired_gap:
            stats.soft_prunes += 1
            stats.soft_pruned_volume += self._volume(box)
            self._record("prune", key, bound)
            return

        for child in self.splitter.split(box[0], box[1], hint):
            self._push(bound, SolutionPack(bound, value, hint, child))
        self._record("split", key, bound)

    # -- results ------------------------------------------------------------

    def report(self) -> pd.DataFrame:
        """Per-iteration trace; the final counters are in ``attrs['stats']``."""
        df = pd.DataFrame(dict(self.history_))
        df.attrs["stats"] = asdict(self.stats_)
        return df

    def factors(self) -> tuple[array, array]:
        """``W`` of shape (R, k) and ``H`` of shape (k, C) of the incumbent."""
        x = self.upper_solution_.solution
        if x is None:
            raise RuntimeError("no solution below the cutoff was found")
        r = self.n_rows_
        return np.exp(x[:, :r]).T.copy(), np.exp(x[:, r:]).copy()
