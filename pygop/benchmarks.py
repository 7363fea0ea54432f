"""
Classical smooth test functions in the :class:`~pygop.problem.Problem` form.

All points are column-major matrices; the functions below use a single
column unless noted.
"""

from __future__ import annotations

import numpy as np

from .exceptions import ConfigurationError
from .linalg import as_matrix
from .problem import Problem

array = np.ndarray


class Rosenbrock(Problem):
    """``f(x, y) = (1 - x)^2 + 100 (y - x^2)^2``, minimum 0 at (1, 1)."""

    grad_tolerance = 1e-8

    def evaluate(self, x: array) -> float:
        a, b = x[0, 0], x[1, 0]
        return float((1 - a) ** 2 + 100 * (b - a * a) ** 2)

    def gradient(self, x: array, out: array) -> None:
        a, b = x[0, 0], x[1, 0]
        out[0, 0] = -2 * (1 - a) - 400 * a * (b - a * a)
        out[1, 0] = 200 * (b - a * a)

    def initial_point(self) -> array:
        return as_matrix([[-1.2], [1.0]])


class Wood(Problem):
    """Colville's four-dimensional function, minimum 0 at (1, 1, 1, 1)."""

    grad_tolerance = 1e-8

    def evaluate(self, x: array) -> float:
        x1, x2, x3, x4 = x[:, 0]
        return float(
            100 * (x2 - x1**2) ** 2
            + (1 - x1) ** 2
            + 90 * (x4 - x3**2) ** 2
            + (1 - x3) ** 2
            + 10.1 * ((x2 - 1) ** 2 + (x4 - 1) ** 2)
            + 19.8 * (x2 - 1) * (x4 - 1)
        )

    def gradient(self, x: array, out: array) -> None:
        x1, x2, x3, x4 = x[:, 0]
        out[0, 0] = -400 * x1 * (x2 - x1**2) - 2 * (1 - x1)
        out[1, 0] = 200 * (x2 - x1**2) + 20.2 * (x2 - 1) + 19.8 * (x4 - 1)
        out[2, 0] = -360 * x3 * (x4 - x3**2) - 2 * (1 - x3)
        out[3, 0] = 180 * (x4 - x3**2) + 20.2 * (x4 - 1) + 19.8 * (x2 - 1)

    def initial_point(self) -> array:
        return as_matrix([[-3.0], [-1.0], [-3.0], [-1.0]])


class GeneralizedRosenbrock(Problem):
    """
    Extended Rosenbrock function in an even dimension.

    Sums the two-dimensional function over consecutive pairs
    ``(x_{2i}, x_{2i+1})``; the unique minimum is the all-ones vector.
    """

    grad_tolerance = 1e-8

    def __init__(self, dimension: int) -> None:
        if dimension < 2 or dimension % 2:
            raise ConfigurationError("dimension must be an even number >= 2")
        self.dimension = dimension

    def evaluate(self, x: array) -> float:
        odd, even = x[0::2, 0], x[1::2, 0]
        return float(np.sum(100 * (even - odd**2) ** 2 + (1 - odd) ** 2))

    def gradient(self, x: array, out: array) -> None:
        odd, even = x[0::2, 0], x[1::2, 0]
        inner = even - odd**2
        out[0::2, 0] = -400 * odd * inner - 2 * (1 - odd)
        out[1::2, 0] = 200 * inner

    def initial_point(self) -> array:
        x = np.empty((self.dimension, 1), order="F")
        x[0::2, 0] = -1.2
        x[1::2, 0] = 1.0
        return x


class RosenbrockWood(Problem):
    """
    Two independent functions stacked as the columns of a 4 x 2 matrix.

    Column 0 holds a four-dimensional extended Rosenbrock point and column 1
    a Wood point; the objective is their sum.
    """

    grad_tolerance = 1e-8

    def __init__(self) -> None:
        self._rosenbrock = GeneralizedRosenbrock(4)
        self._wood = Wood()

    def evaluate(self, x: array) -> float:
        return self._rosenbrock.evaluate(x[:, 0:1]) + self._wood.evaluate(x[:, 1:2])

    def gradient(self, x: array, out: array) -> None:
        part = np.zeros((4, 1), order="F")
        self._rosenbrock.gradient(x[:, 0:1], part)
        out[:, 0] = part[:, 0]
        self._wood.gradient(x[:, 1:2], part)
        out[:, 1] = part[:, 0]

    def initial_point(self) -> array:
        x = np.empty((4, 2), order="F")
        x[:, 0:1] = self._rosenbrock.initial_point()
        x[:, 1:2] = self._wood.initial_point()
        return x
