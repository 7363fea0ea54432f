import numpy as np
import pytest

from pygop.benchmarks import GeneralizedRosenbrock, Rosenbrock, RosenbrockWood, Wood
from pygop.config import LBFGSOptions
from pygop.exceptions import ConfigurationError
from pygop.lbfgs import LBFGS, ExitStatus, LBFGSHistory
from pygop.linalg import as_matrix
from pygop.problem import Problem
from pygop.utils import check_gradient


class NanProblem(Problem):
    def evaluate(self, x):
        return np.nan

    def gradient(self, x, out):
        out.fill(1.0)

    def initial_point(self):
        return as_matrix([[1.0]])


class ClippedQuadratic(Problem):
    """(x - 3)^2 restricted to [0, 0.5]; every unconstrained step overshoots."""

    def evaluate(self, x):
        return float(np.sum((x - 3.0) ** 2))

    def gradient(self, x, out):
        out[:] = 2 * (x - 3.0)

    def project(self, x):
        np.clip(x, 0.0, 0.5, out=x)

    def initial_point(self):
        return as_matrix([[0.0]])


class WrongGradient(Problem):
    """Reports the negated gradient of x^2, so no step can decrease f."""

    def evaluate(self, x):
        return float(np.sum(x**2))

    def gradient(self, x, out):
        out[:] = -2 * x

    def initial_point(self):
        return as_matrix([[1.0]])


@pytest.mark.parametrize(
    "problem", [Rosenbrock(), Wood(), GeneralizedRosenbrock(8), RosenbrockWood()]
)
def test_benchmark_gradients(problem):
    rng = np.random.RandomState(0)
    x = problem.initial_point() + 0.1 * rng.randn(*problem.initial_point().shape)
    assert check_gradient(problem, np.asfortranarray(x)) < 1e-6


def test_rosenbrock():
    problem = Rosenbrock()
    optimizer = LBFGS(problem, LBFGSOptions(num_basis=10))
    x = problem.initial_point()
    assert optimizer.optimize(0, x)
    assert optimizer.status_ is ExitStatus.CONVERGED
    assert problem.evaluate(x) <= 1e-5
    np.testing.assert_allclose(x[:, 0], [1.0, 1.0], atol=1e-5)


def test_wood():
    problem = Wood()
    optimizer = LBFGS(problem, LBFGSOptions(num_basis=10))
    x = problem.initial_point()
    assert optimizer.optimize(0, x)
    assert problem.evaluate(x) <= 1e-5
    np.testing.assert_allclose(x[:, 0], np.ones(4), atol=1e-5)


@pytest.mark.parametrize("dimension", [4, 8, 16, 32, 64, 128, 256, 512])
def test_generalized_rosenbrock(dimension):
    problem = GeneralizedRosenbrock(dimension)
    optimizer = LBFGS(problem, LBFGSOptions(num_basis=20))
    x = problem.initial_point()
    assert optimizer.optimize(0, x)
    np.testing.assert_allclose(x[:, 0], np.ones(dimension), atol=1e-5)


def test_rosenbrock_wood():
    problem = RosenbrockWood()
    optimizer = LBFGS(problem, LBFGSOptions(num_basis=10))
    coords = problem.initial_point()
    assert optimizer.optimize(0, coords)
    assert problem.evaluate(coords) <= 1e-5
    for row in range(4):
        assert coords[row, 0] == pytest.approx(1.0, abs=1e-5)
        assert coords[row, 1] == pytest.approx(1.0, abs=1e-5)


def test_history_curvature_and_size_and_decrease():
    options = LBFGSOptions(num_basis=3)
    steps = []
    curvatures = []
    sizes = []

    def callback(step):
        steps.append(step)
        curvatures.extend(optimizer.history_.curvatures())
        sizes.append(len(optimizer.history_))

    problem = GeneralizedRosenbrock(6)
    optimizer = LBFGS(problem, options, callback=callback)
    optimizer.optimize(0, problem.initial_point())

    assert steps
    assert all(c > 0 for c in curvatures)
    assert max(sizes) <= options.num_basis
    for step in steps:
        required = options.armijo_sigma * step.step * step.gradient_norm
        assert step.objective_before - step.trial_objective >= required * (1 - 1e-12)
        assert step.objective == step.trial_objective


def test_history_ring_buffer():
    history = LBFGSHistory(2, num_basis=2)
    assert history.store(np.array([1.0, 0.0]), np.array([1.0, 0.0]))
    assert history.store(np.array([0.0, 1.0]), np.array([0.0, 2.0]))
    assert history.store(np.array([1.0, 1.0]), np.array([3.0, 3.0]))
    assert len(history) == 2
    np.testing.assert_allclose(history.curvatures(), [6.0, 2.0])


def test_history_rejects_non_positive_curvature():
    history = LBFGSHistory(2, num_basis=4)
    assert not history.store(np.array([1.0, 0.0]), np.array([-1.0, 0.0]))
    assert not history.store(np.array([1.0, 0.0]), np.array([0.0, 1.0]))
    assert len(history) == 0


def test_iteration_cap_is_not_an_error():
    problem = Rosenbrock()
    optimizer = LBFGS(problem, LBFGSOptions(max_iterations=3))
    x = problem.initial_point()
    assert not optimizer.optimize(0, x)
    assert optimizer.status_ is ExitStatus.MAX_ITERATIONS
    assert np.all(np.isfinite(x))


def test_divergence_reported():
    problem = NanProblem()
    optimizer = LBFGS(problem)
    assert not optimizer.optimize(0, problem.initial_point())
    assert optimizer.status_ is ExitStatus.DIVERGED


def test_line_search_exhaustion_reported():
    problem = WrongGradient()
    optimizer = LBFGS(problem)
    x = problem.initial_point()
    assert not optimizer.optimize(0, x)
    assert optimizer.status_ is ExitStatus.LINE_SEARCH_EXHAUSTED
    assert x[0, 0] == 1.0


def test_rejects_non_column_major_input():
    optimizer = LBFGS(RosenbrockWood())
    with pytest.raises(ConfigurationError):
        optimizer.optimize(0, np.ones((4, 2)))
    with pytest.raises(ConfigurationError):
        optimizer.optimize(0, np.ones((4, 2), dtype=np.float32, order="F"))


def test_invalid_options():
    with pytest.raises(ConfigurationError):
        LBFGSOptions(num_basis=0)
    with pytest.raises(ConfigurationError):
        LBFGSOptions(armijo_beta=1.5)


def test_callback_reports_projected_objective():
    steps = []
    problem = ClippedQuadratic()
    optimizer = LBFGS(problem, LBFGSOptions(max_iterations=4), callback=steps.append)
    x = problem.initial_point()
    optimizer.optimize(0, x)

    assert x[0, 0] == 0.5
    assert len(steps) == 4
    for step in steps:
        assert step.objective == pytest.approx(6.25)
        assert step.trial_objective < step.objective
    for previous, current in zip(steps, steps[1:]):
        assert current.objective_before == previous.objective
    assert optimizer.objective_ == steps[-1].objective


def test_start_beyond_iteration_cap():
    problem = Rosenbrock()
    optimizer = LBFGS(problem, LBFGSOptions(max_iterations=5))
    x = problem.initial_point()
    assert not optimizer.optimize(10, x)
    assert optimizer.n_iter_ == 0
    assert optimizer.status_ is ExitStatus.MAX_ITERATIONS
    np.testing.assert_array_equal(x, problem.initial_point())
