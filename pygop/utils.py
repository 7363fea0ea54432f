from __future__ import annotations

import numpy as np

from .exceptions import ConfigurationError
from .linalg import as_matrix, check_same_shape

array = np.ndarray


def get_missing_mask(x: array, missing_values: float | None) -> array:
    if missing_values is None or (
        isinstance(missing_values, float) and np.isnan(missing_values)
    ):
        return np.isnan(x)
    return x == missing_values


def to_triplets(
    x: array, missing_values: float | None = np.nan
) -> tuple[array, array, array]:
    """Observed entries of a dense matrix as parallel (row, column, value) arrays."""
    observed = ~get_missing_mask(x, missing_values)
    rows, columns = np.nonzero(observed)
    return rows.astype(np.intp), columns.astype(np.intp), x[rows, columns].astype(float)


def check_triplets(
    rows, columns, values
) -> tuple[array, array, array, int, int]:
    """Validate parallel triplet arrays; returns them plus the matrix shape."""
    rows = np.asarray(rows, dtype=np.intp).ravel()
    columns = np.asarray(columns, dtype=np.intp).ravel()
    values = np.asarray(values, dtype=np.float64).ravel()
    if values.size == 0:
        raise ConfigurationError("no observed entries: the input is empty")
    if not (rows.size == columns.size == values.size):
        raise ConfigurationError(
            "rows, columns and values must have the same length, got "
            f"{rows.size}, {columns.size} and {values.size}"
        )
    if rows.min() < 0 or columns.min() < 0:
        raise ConfigurationError("row and column indices must be non-negative")
    if not np.all(np.isfinite(values)):
        raise ConfigurationError("observed values must be finite")
    return rows, columns, values, int(rows.max()) + 1, int(columns.max()) + 1


def log_box(
    lower: float, upper: float, new_dimension: int, n_rows: int, n_columns: int
) -> tuple[array, array]:
    """Log-space box over the stacked (W, H) variable for factor bounds."""
    shape = (new_dimension, n_rows + n_columns)
    lo = np.full(shape, np.log(lower), order="F")
    up = np.full(shape, np.log(upper), order="F")
    return lo, up


def check_box(lower: array, upper: array, shape: tuple[int, int]) -> tuple[array, array]:
    lower = as_matrix(lower)
    upper = as_matrix(upper)
    if check_same_shape(lower, upper) != shape:
        raise ConfigurationError(
            f"box shape must be {shape}, got {lower.shape} and {upper.shape}"
        )
    return lower, upper


def box_volume(lower: array, upper: array, reference: array) -> float:
    """Volume of a box as a fraction of a reference width array."""
    mask = reference > 0
    widths = np.clip(upper - lower, 0.0, None)[mask] / reference[mask]
    return float(np.prod(widths))


def check_gradient(problem, x: array, eps: float = 1e-6) -> float:
    """
    Largest relative mismatch between ``problem.gradient`` and central
    differences of ``problem.evaluate`` at ``x``.
    """
    x = as_matrix(x).copy(order="F")
    analytic = np.zeros_like(x, order="F")
    problem.gradient(x, analytic)
    numeric = np.zeros_like(x, order="F")
    for idx in np.ndindex(x.shape):
        old = x[idx]
        x[idx] = old + eps
        f_plus = problem.evaluate(x)
        x[idx] = old - eps
        f_minus = problem.evaluate(x)
        x[idx] = old
        numeric[idx] = (f_plus - f_minus) / (2.0 * eps)
    denom = max(1.0, float(np.max(np.abs(numeric))))
    return float(np.max(np.abs(analytic - numeric)) / denom)


def projected_gradient_norm(
    x: array, gradient: array, lower: array, upper: array
) -> float:
    """Norm of the gradient restricted to coordinates free to move inside the box."""
    free = ((gradient < 0) & (x < upper)) | ((gradient > 0) & (x > lower))
    return float(np.linalg.norm(gradient[free]))


def resolve_shape(
    inferred_rows: int,
    inferred_columns: int,
    n_rows: int | None,
    n_columns: int | None,
) -> tuple[int, int]:
    n_rows = inferred_rows if n_rows is None else int(n_rows)
    n_columns = inferred_columns if n_columns is None else int(n_columns)
    if n_rows < inferred_rows or n_columns < inferred_columns:
        raise ConfigurationError(
            f"matrix shape ({n_rows}, {n_columns}) is smaller than the observed "
            f"indices require ({inferred_rows}, {inferred_columns})"
        )
    return n_rows, n_columns
