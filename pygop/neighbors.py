from __future__ import annotations

import numpy as np
from sklearn.neighbors import NearestNeighbors

from .exceptions import ConfigurationError

array = np.ndarray


class NearestNeighborIndex:
    """
    Read-only k-nearest-neighbor graph over the rows of ``data``.

    Each point's own entry is excluded, so every row has exactly
    ``n_neighbors`` neighbors. Pairs are laid out point-major: pair
    ``i * n_neighbors + kk`` joins point ``i`` with its ``kk``-th neighbor.

    Parameters
    ----------
    data : array-like of shape (n_samples, n_features)
    n_neighbors : int
    leaf_size : int, default=20
        Leaf size of the underlying tree.

    Attributes
    ----------
    neighbors_ : ndarray of shape (n_samples, n_neighbors)
        Neighbor indices, closest first.
    distances_sq_ : ndarray of shape (n_samples, n_neighbors)
        Squared Euclidean distances matching ``neighbors_``.
    """

    def __init__(self, data, n_neighbors: int, leaf_size: int = 20) -> None:
        data = np.asarray(data, dtype=float)
        if data.ndim != 2:
            raise ConfigurationError("data must be a 2-D array")
        n_samples = data.shape[0]
        if not 1 <= n_neighbors < n_samples:
            raise ConfigurationError(
                f"n_neighbors must be in [1, {n_samples - 1}], got {n_neighbors}"
            )
        self.n_samples_ = n_samples
        self.n_neighbors = n_neighbors

        nn = NearestNeighbors(n_neighbors=n_neighbors + 1, leaf_size=leaf_size)
        nn.fit(data)
        distances, indices = nn.kneighbors(data)

        # drop each point's own entry; duplicates may put it off the first slot
        self_mask = indices == np.arange(n_samples)[:, None]
        keep = np.zeros_like(self_mask)
        for i in range(n_samples):
            candidates = np.flatnonzero(~self_mask[i])
            keep[i, candidates[:n_neighbors]] = True
        self.neighbors_ = indices[keep].reshape(n_samples, n_neighbors)
        self.distances_sq_ = (distances[keep] ** 2).reshape(n_samples, n_neighbors)

    def neighbors(self, i: int) -> list[tuple[int, float]]:
        return list(
            zip(self.neighbors_[i].tolist(), self.distances_sq_[i].tolist())
        )

    def pairs(self) -> tuple[array, array, array]:
        """Flattened ``(i, j, squared distance)`` over all neighbor pairs."""
        i = np.repeat(np.arange(self.n_samples_), self.n_neighbors)
        return i, self.neighbors_.ravel(), self.distances_sq_.ravel()
