"""
Dense column-major primitives.

Matrices are float64 numpy arrays in Fortran order, so every column is a
contiguous vector and the column stride equals the row count. The kernels
below never allocate their outputs: callers own the buffers. The optimizer
and the objectives route their buffer updates through ``axpy``, ``scale``,
``sub_overwrite`` and ``fill``.
"""

from __future__ import annotations

import numpy as np

from .exceptions import ConfigurationError

array = np.ndarray


def matrix(n_rows: int, n_cols: int) -> array:
    """Allocate a zero matrix in column-major order."""
    return np.zeros((n_rows, n_cols), dtype=np.float64, order="F")


def as_matrix(a) -> array:
    """Return ``a`` as a column-major float64 array, copying only if needed."""
    return np.asfortranarray(a, dtype=np.float64)


def is_column_major(a: array) -> bool:
    return a.dtype == np.float64 and a.flags.f_contiguous


def flat(a: array) -> array:
    """Contiguous 1-D view of a column-major array in storage order."""
    if not a.flags.f_contiguous:
        raise ConfigurationError("expected a column-major (Fortran ordered) array")
    return a.reshape(-1, order="F")


def column(m: array, j: int) -> array:
    """
    View of column ``j``; contiguous because ``m`` is column-major.

    Public per-point accessor. The vectorized kernels in this package index
    many columns at once with fancy indexing instead.
    """
    return m[:, j]


def dot(a: array, b: array) -> float:
    return float(np.dot(flat(a), flat(b)))


def length_euclidean(a: array) -> float:
    return float(np.linalg.norm(flat(a)))


def distance_sq(a: array, b: array) -> float:
    """
    Squared Euclidean distance between two vectors (typically columns).

    Public per-pair primitive; batched pair distances, as in the MVU
    residuals, are computed over all pairs at once.
    """
    diff = a - b
    return float(np.dot(diff, diff))


def axpy(alpha: float, x: array, y: array) -> None:
    """y += alpha * x, in place."""
    yf = flat(y)
    yf += alpha * flat(x)


def scale(alpha: float, x: array) -> None:
    """x *= alpha, in place."""
    xf = flat(x)
    xf *= alpha


def sub_overwrite(a: array, b: array, out: array) -> None:
    """out = a - b."""
    np.subtract(a, b, out=out)


def fill(x: array, value: float) -> None:
    x.fill(value)


def check_same_shape(*arrays: array) -> tuple[int, ...]:
    shape = arrays[0].shape
    for a in arrays[1:]:
        if a.shape != shape:
            raise ConfigurationError(
                f"inconsistent shapes: expected {shape}, got {a.shape}"
            )
    return shape
