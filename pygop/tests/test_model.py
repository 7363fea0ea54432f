import numpy as np
import pytest

from pygop import GlobalNMF


def generate_nmf_matrix(n_rows, n_columns, rank, random_state=None):
    rng = np.random.RandomState(random_state)
    w_true = rng.uniform(0.5, 2.0, size=(n_rows, rank))
    h_true = rng.uniform(0.5, 2.0, size=(rank, n_columns))
    return w_true @ h_true, w_true, h_true


def test_global_nmf_initialization():
    model = GlobalNMF(rank=3, random_state=42)
    assert model.rank == 3
    assert model.lower == 1e-3
    assert model.upper == 10.0
    assert model.desired_gap == 1e-3
    assert model.relaxation == "plain"


def test_global_nmf_fit():
    x, _, _ = generate_nmf_matrix(3, 2, 1, random_state=0)
    model = GlobalNMF(rank=1, max_iter=10, random_state=0)
    model.fit(x)

    assert model.w_.shape == (3, 1)
    assert model.h_.shape == (1, 2)
    assert np.all(model.w_ > 0) and np.all(model.h_ > 0)
    assert model.lower_bound_ <= model.upper_bound_
    assert hasattr(model, "n_iter_")


def test_global_nmf_fit_transform_and_reconstruct():
    x, _, _ = generate_nmf_matrix(3, 2, 1, random_state=1)
    model = GlobalNMF(rank=1, max_iter=10, random_state=0)
    w = model.fit_transform(x)

    assert w.shape == (3, 1)
    x_hat = model.reconstruct()
    assert x_hat.shape == x.shape
    np.testing.assert_allclose(x_hat, x, rtol=1e-2)


def test_global_nmf_missing_data():
    x, _, _ = generate_nmf_matrix(3, 3, 1, random_state=2)
    x[0, 2] = np.nan
    model = GlobalNMF(rank=1, max_iter=10, random_state=0)
    model.fit(x)

    assert model.reconstruct().shape == (3, 3)
    assert np.isfinite(model.reconstruct()[0, 2])


def test_global_nmf_score():
    x, _, _ = generate_nmf_matrix(3, 2, 1, random_state=3)
    model = GlobalNMF(rank=1, max_iter=10, random_state=0)
    model.fit(x)
    score = model.score(x)

    assert isinstance(score, float)
    assert score <= 0
    assert score > -1e-3


def test_global_nmf_report():
    x, _, _ = generate_nmf_matrix(2, 2, 1, random_state=4)
    model = GlobalNMF(rank=1, max_iter=5, random_state=0).fit(x)
    assert len(model.report()) == model.n_iter_


def test_global_nmf_invalid_inputs():
    x, _, _ = generate_nmf_matrix(3, 2, 1, random_state=0)
    with pytest.raises(ValueError):
        GlobalNMF(rank=0).fit(x)
    with pytest.raises(ValueError):
        GlobalNMF(relaxation="exact").fit(x)
    with pytest.raises(ValueError):
        GlobalNMF(rank=1).fit(np.full((2, 2), np.nan))
    with pytest.raises(ValueError):
        GlobalNMF(rank=1, lower=5.0, upper=1.0).fit(x)


def test_global_nmf_no_solution_below_cutoff():
    x = np.array([[1.0]])
    model = GlobalNMF(rank=1, lower=5.0, upper=10.0, cutoff=1.0)
    with pytest.raises(RuntimeError):
        model.fit(x)
