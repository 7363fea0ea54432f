import numpy as np
import pytest

from pygop.auglag import AugmentedLagrangian, LagrangianView
from pygop.config import AugmentedLagrangianOptions, LBFGSOptions
from pygop.exceptions import ConfigurationError
from pygop.lbfgs import LBFGS
from pygop.neighbors import NearestNeighborIndex
from pygop.relaxed import (
    RelaxedNMF,
    RelaxedNMFBarrier,
    RelaxedNMFIsometric,
    RelaxedNMFScaled,
    exp_secant,
)
from pygop.utils import check_gradient, log_box


def generate_nmf_triplets(n_rows, n_columns, rank, random_state=None):
    rng = np.random.RandomState(random_state)
    w = rng.uniform(0.5, 2.0, size=(n_rows, rank))
    h = rng.uniform(0.5, 2.0, size=(rank, n_columns))
    v = w @ h
    rows, columns = np.nonzero(np.ones_like(v, dtype=bool))
    return rows, columns, v[rows, columns], w, h


def random_sub_box(lower, upper, random_state=None):
    rng = np.random.RandomState(random_state)
    a = rng.uniform(lower, upper)
    b = rng.uniform(lower, upper)
    return np.asfortranarray(np.minimum(a, b)), np.asfortranarray(np.maximum(a, b))


def sample_box(lower, upper, n, random_state=None):
    rng = np.random.RandomState(random_state)
    for _ in range(n):
        yield np.asfortranarray(rng.uniform(lower, upper))


def test_exp_secant_dominates_exp():
    rng = np.random.RandomState(0)
    lo = rng.uniform(-3, 2, size=50)
    up = lo + rng.uniform(0, 2, size=50)
    up[:5] = lo[:5]
    a, b = exp_secant(lo, up)
    for t in np.linspace(0, 1, 11):
        u = lo + t * (up - lo)
        assert np.all(np.exp(u) <= a * u + b + 1e-12 * np.exp(up))
    np.testing.assert_allclose(a[5:] * lo[5:] + b[5:], np.exp(lo[5:]), rtol=1e-10)


def test_relaxation_underestimates_objective():
    rows, columns, values, _, _ = generate_nmf_triplets(3, 4, 2, random_state=0)
    lower, upper = random_sub_box(*log_box(0.2, 3.0, 2, 3, 4), random_state=1)
    problem = RelaxedNMF(rows, columns, values, 2, lower, upper)
    for x in sample_box(lower, upper, 200, random_state=2):
        relaxed = problem.evaluate(x)
        exact = problem.non_relaxed_objective(x)
        assert relaxed <= exact + 1e-9 * (1 + exact)


def test_relaxation_gradient():
    rows, columns, values, _, _ = generate_nmf_triplets(3, 4, 2, random_state=0)
    lower, upper = log_box(0.2, 3.0, 2, 3, 4)
    problem = RelaxedNMF(rows, columns, values, 2, lower, upper)
    for x in sample_box(lower, upper, 5, random_state=3):
        assert check_gradient(problem, x) < 1e-5


def test_soft_lower_bound_is_certified():
    rows, columns, values, _, _ = generate_nmf_triplets(3, 3, 2, random_state=4)
    lower, upper = random_sub_box(*log_box(0.1, 5.0, 2, 3, 3), random_state=5)
    problem = RelaxedNMF(rows, columns, values, 2, lower, upper)
    assert problem.soft_lower_bound() == -np.inf

    x = problem.initial_point()
    LBFGS(problem).optimize(0, x)
    bound = problem.soft_lower_bound()
    assert bound >= 0.0
    sampled = min(
        problem.non_relaxed_objective(s)
        for s in sample_box(lower, upper, 500, random_state=6)
    )
    assert bound <= sampled + 1e-9


def test_soft_lower_bound_on_box_away_from_data():
    lower, upper = log_box(5.0, 10.0, 1, 1, 1)
    problem = RelaxedNMF([0], [0], [1.0], 1, lower, upper)
    x = problem.initial_point()
    assert LBFGS(problem).optimize(0, x)
    assert problem.soft_lower_bound() == pytest.approx(24.0**2, rel=1e-6)


def test_soft_lower_bound_zero_when_box_holds_exact_factors():
    rows, columns, values, w, h = generate_nmf_triplets(2, 3, 1, random_state=7)
    lower, upper = log_box(0.2, 3.0, 1, 2, 3)
    problem = RelaxedNMF(rows, columns, values, 1, lower, upper)
    x = problem.initial_point()
    LBFGS(problem).optimize(0, x)
    assert problem.soft_lower_bound() == pytest.approx(0.0, abs=1e-9)


def test_cutoff_tightens_upper_bounds():
    # w * h = 4 with both factors >= 0.5 forces w, h <= 8; the implied floor
    # 0.4 lies below the box so the lower bounds stay put
    lower, upper = log_box(0.5, 10.0, 1, 1, 1)
    problem = RelaxedNMF([0], [0], [4.0], 1, lower, upper, cutoff=0.0)
    assert not problem.is_infeasible()
    np.testing.assert_allclose(problem.x_lower_bound_, np.log(0.5), rtol=1e-9)
    np.testing.assert_allclose(problem.x_upper_bound_, np.log(8.0), rtol=1e-9)


def test_cutoff_tightens_lower_bounds():
    # with h <= 10, w * h = 4 forces w >= 0.4 (and symmetrically h >= 0.4)
    lower, upper = log_box(0.1, 10.0, 1, 1, 1)
    problem = RelaxedNMF([0], [0], [4.0], 1, lower, upper, cutoff=0.0)
    assert not problem.is_infeasible()
    np.testing.assert_allclose(problem.x_lower_bound_, np.log(0.4), rtol=1e-9)
    np.testing.assert_allclose(problem.x_upper_bound_, np.log(10.0), rtol=1e-9)


def test_cutoff_detects_empty_box():
    lower, upper = log_box(5.0, 10.0, 1, 1, 1)
    assert RelaxedNMF([0], [0], [1.0], 1, lower, upper, cutoff=1.0).is_infeasible()
    assert not RelaxedNMF([0], [0], [1.0], 1, lower, upper).is_infeasible()


def test_invalid_box_shape():
    lower, upper = log_box(0.5, 10.0, 2, 1, 1)
    with pytest.raises(ConfigurationError):
        RelaxedNMF([0], [0], [1.0], 1, lower, upper)
    with pytest.raises(ConfigurationError):
        RelaxedNMF([0], [0], [1.0], 2, lower, upper[:1])
    with pytest.raises(ConfigurationError):
        RelaxedNMF([], [], [], 1, lower[:1], upper[:1])


def test_barrier_keeps_iterates_inside():
    rows, columns, values, _, _ = generate_nmf_triplets(3, 3, 2, random_state=8)
    lower, upper = log_box(0.2, 3.0, 2, 3, 3)
    problem = RelaxedNMFBarrier(rows, columns, values, 2, lower, upper, barrier=1e-2)
    x = problem.initial_point()
    assert check_gradient(problem, x) < 1e-5

    outside = upper + 1.0
    assert problem.evaluate(np.asfortranarray(outside)) == np.inf
    problem.project(outside)
    assert np.all(outside < upper)

    problem.set_sigma(1e-4)
    LBFGS(problem).optimize(0, x)
    assert np.all(x > lower) and np.all(x < upper)
    assert problem.soft_lower_bound() >= 0.0


def test_scaled_relaxation_reports_original_units():
    lower, upper = log_box(5.0, 10.0, 1, 1, 1)
    problem = RelaxedNMFScaled([0], [0], [2.0], 1, lower, upper)
    assert problem.scale_factor_ == 2.0
    x = problem.initial_point()
    assert LBFGS(problem).optimize(0, x)
    assert problem.soft_lower_bound() == pytest.approx(23.0**2, rel=1e-6)

    original = problem.to_original(x)
    assert np.all(original >= lower - 1e-12) and np.all(original <= upper + 1e-12)
    plain = RelaxedNMF([0], [0], [2.0], 1, lower, upper)
    assert problem.non_relaxed_objective(x) == pytest.approx(
        plain.non_relaxed_objective(original), rel=1e-9
    )
    np.testing.assert_allclose(problem.from_original(original), x)


def make_isometric(data, n_neighbors=2, lower=0.2, upper=3.0, random_state=9):
    n_rows = data.shape[0]
    rows, columns, values, _, _ = generate_nmf_triplets(n_rows, 2, 2, random_state)
    index = NearestNeighborIndex(data, n_neighbors)
    box = log_box(lower, upper, 2, n_rows, 2)
    return RelaxedNMFIsometric(rows, columns, values, 2, *box, neighbor_index=index)


def test_isometric_lagrangian_gradient():
    data = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    problem = make_isometric(data)
    problem.set_sigma(3.0)
    problem.lagrange_mult_[:] = np.random.RandomState(0).uniform(-1, 1, problem.lagrange_mult_.size)
    view = LagrangianView(problem)
    for x in sample_box(problem.x_lower_bound_, problem.x_upper_bound_, 3, random_state=1):
        assert check_gradient(view, x) < 1e-5


def test_isometric_infeasible_distances():
    data = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    assert not make_isometric(data).is_infeasible()
    assert make_isometric(1000.0 * data).is_infeasible()


def test_isometric_solve_gives_bound():
    data = np.array([[0.0, 0.0], [0.5, 0.0], [0.0, 0.5], [0.5, 0.5]])
    problem = make_isometric(data)
    x = problem.initial_point()
    AugmentedLagrangian(
        problem,
        AugmentedLagrangianOptions(max_rounds=20),
        LBFGSOptions(max_iterations=500),
    ).solve(x)
    bound = problem.soft_lower_bound()
    assert np.isfinite(bound)
    assert bound >= 0.0


def test_isometric_index_must_cover_rows():
    data = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
    rows, columns, values, _, _ = generate_nmf_triplets(4, 2, 2, random_state=0)
    index = NearestNeighborIndex(data, 1)
    with pytest.raises(ConfigurationError):
        RelaxedNMFIsometric(
            rows, columns, values, 2, *log_box(0.2, 3.0, 2, 4, 2), neighbor_index=index
        )
