"""Multi-start embeddings for non-convex MVU."""

from __future__ import annotations

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .mvu import NonConvexMVU

ndarray = np.ndarray


def fit_stable(
    x: ndarray,
    n_components: int = 2,
    n_runs: int = 10,
    random_state: int = 0,
    n_jobs: int = -1,
    stack: bool = False,
    **mvu_kwargs,
) -> tuple[ndarray | list[ndarray], pd.DataFrame]:
    """
    Fit several MVU embeddings from different random starts.

    The problem is non-convex, so independent starts may end in different
    local optima; the summary table lets callers pick the feasible run with
    the largest variance.

    Parameters
    ----------
    x : ndarray of shape (n_samples, n_features)
        Data to embed
    n_components : int, default=2
        Embedding dimension
    n_runs : int, default=10
        Number of independent starts
    random_state : int, default=0
        Seed of the first run; run ``i`` uses ``random_state + i``
    n_jobs : int, default=-1
        Number of parallel jobs (-1 uses all processors)
    stack : bool, default=False
        If True, stack embeddings horizontally (n_samples, n_components * n_runs).
    **mvu_kwargs : dict
        Additional keyword arguments passed to NonConvexMVU

    Returns
    -------
    embeddings : ndarray or list[ndarray]
    results : DataFrame
        One row per run with columns seed, variance, feasibility_error,
        converged, sorted by decreasing variance.

    Examples
    --------
    >>> from pygop.stability import fit_stable
    >>> embeddings, results = fit_stable(x, n_components=2, n_runs=8)
    >>> best = embeddings[results.index[0]]
    """

    def _fit(seed: int) -> tuple[ndarray, dict]:
        model = NonConvexMVU(
            n_components=n_components,
            random_state=seed,
            **mvu_kwargs,
        )
        embedding = model.fit_transform(x)
        return embedding, {
            "seed": seed,
            "variance": model.variance(),
            "feasibility_error": model.feasibility_error_,
            "converged": model.converged_,
        }

    seeds = [random_state + i for i in range(n_runs)]
    outputs = Parallel(n_jobs=n_jobs)(delayed(_fit)(seed) for seed in seeds)
    embeddings = [embedding for embedding, _ in outputs]
    results = pd.DataFrame([row for _, row in outputs]).sort_values(
        "variance", ascending=False
    )

    if stack:
        return np.hstack(embeddings), results
    return embeddings, results
