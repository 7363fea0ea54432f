import numpy as np
import pytest

from pygop.exceptions import ConfigurationError
from pygop.linalg import (
    as_matrix,
    axpy,
    check_same_shape,
    column,
    distance_sq,
    dot,
    flat,
    is_column_major,
    length_euclidean,
    matrix,
    scale,
    sub_overwrite,
)


def test_matrix_is_column_major_zeros():
    m = matrix(3, 4)
    assert m.shape == (3, 4)
    assert is_column_major(m)
    assert np.all(m == 0)


def test_column_is_contiguous_view():
    m = as_matrix(np.arange(12.0).reshape(3, 4))
    col = column(m, 2)
    assert col.flags.c_contiguous
    col[0] = -1.0
    assert m[0, 2] == -1.0


def test_flat_follows_storage_order():
    m = as_matrix([[1.0, 2.0], [3.0, 4.0]])
    np.testing.assert_array_equal(flat(m), [1.0, 3.0, 2.0, 4.0])


def test_flat_rejects_row_major():
    with pytest.raises(ConfigurationError):
        flat(np.zeros((3, 2)))


def test_axpy_and_scale_in_place():
    x = as_matrix([[1.0, 2.0], [3.0, 4.0]])
    y = matrix(2, 2)
    axpy(2.0, x, y)
    np.testing.assert_allclose(y, 2 * x)
    scale(0.5, y)
    np.testing.assert_allclose(y, x)


def test_reductions():
    a = as_matrix([[3.0], [4.0]])
    b = as_matrix([[0.0], [0.0]])
    assert length_euclidean(a) == pytest.approx(5.0)
    assert dot(a, a) == pytest.approx(25.0)
    assert distance_sq(column(a, 0), column(b, 0)) == pytest.approx(25.0)


def test_sub_overwrite():
    a = as_matrix([[3.0], [4.0]])
    out = matrix(2, 1)
    sub_overwrite(a, a, out)
    assert np.all(out == 0)


def test_check_same_shape():
    assert check_same_shape(matrix(2, 3), matrix(2, 3)) == (2, 3)
    with pytest.raises(ConfigurationError):
        check_same_shape(matrix(2, 3), matrix(3, 2))
