import numpy as np
import pandas as pd
import pytest

pytest.importorskip("hypothesis")
from hypothesis import assume, given, settings
from hypothesis import strategies as st
from hypothesis.extra.numpy import arrays
from mixedpls import CovarianceFactor, LinearMixedModel, lmm, remat
from mixedpls.matrices.design import build_model_matrices


@st.composite
def random_lmm_data(draw):
    n_groups = draw(st.integers(min_value=3, max_value=8))
    obs_per_group = draw(st.integers(min_value=3, max_value=10))
    n_obs = n_groups * obs_per_group

    group_ids = np.repeat(np.arange(n_groups), obs_per_group)

    x = draw(
        arrays(
            dtype=np.float64,
            shape=(n_obs,),
            elements=st.floats(min_value=-10, max_value=10, allow_nan=False, allow_infinity=False),
        )
    )

    noise = draw(
        arrays(
            dtype=np.float64,
            shape=(n_obs,),
            elements=st.floats(min_value=-1, max_value=1, allow_nan=False, allow_infinity=False),
        )
    )

    assume(np.std(noise) > 0.01)

    group_effects = np.random.default_rng(42).normal(0, 1, n_groups)
    y = 5.0 + 2.0 * x + group_effects[group_ids] + noise

    return pd.DataFrame({"y": y, "x": x, "group": [f"g{i}" for i in group_ids]})


@st.composite
def crossed_layout(draw):
    n_obs = draw(st.integers(min_value=12, max_value=40))
    n1 = draw(st.integers(min_value=2, max_value=6))
    n2 = draw(st.integers(min_value=2, max_value=5))
    g1 = draw(arrays(dtype=np.int64, shape=(n_obs,), elements=st.integers(0, n1 - 1)))
    g2 = draw(arrays(dtype=np.int64, shape=(n_obs,), elements=st.integers(0, n2 - 1)))
    seed = draw(st.integers(min_value=0, max_value=2**16))
    return g1, g2, seed


theta_values = st.floats(min_value=0.0, max_value=3.0, allow_nan=False, allow_infinity=False)


@given(data=random_lmm_data())
@settings(max_examples=20, deadline=None)
def test_lmm_fits_random_data(data):
    assume(data["y"].std() > 0.01)
    assume(data["x"].std() > 0.01)

    model = lmm(data, "y", ["x"], ["group"]).fit()

    assert model.fitted
    assert np.isfinite(model.deviance)
    assert model.theta[0] >= 0.0
    assert len(model.fixef()) == 2


@given(data=random_lmm_data())
@settings(max_examples=10, deadline=None)
def test_lmm_residuals_reasonable(data):
    assume(data["y"].std() > 0.01)
    assume(data["x"].std() > 0.01)

    model = lmm(data, "y", ["x"], ["group"]).fit()
    residuals = model.residuals()

    assert len(residuals) == len(data)
    assert np.isfinite(residuals).all()
    np.testing.assert_allclose(model.fitted_values() + residuals, data["y"].to_numpy(), atol=1e-8)


@given(layout=crossed_layout(), theta=st.tuples(theta_values, theta_values))
@settings(max_examples=30, deadline=None)
def test_objective_matches_dense_reference(layout, theta, reference_objective):
    g1, g2, seed = layout
    assume(len(np.unique(g1)) >= 2 and len(np.unique(g2)) >= 2)
    rng = np.random.default_rng(seed)
    n = len(g1)
    X = np.column_stack([np.ones(n), rng.normal(size=n)])
    y = rng.normal(size=n)
    model = LinearMixedModel(X, y, [remat(g1), remat(g2)])
    expected = reference_objective(X, y, model.terms, list(theta))
    assert model.objective(list(theta)) == pytest.approx(expected, rel=1e-7)


@given(layout=crossed_layout(), theta=st.tuples(theta_values, theta_values))
@settings(max_examples=20, deadline=None)
def test_objective_is_idempotent(layout, theta):
    g1, g2, seed = layout
    rng = np.random.default_rng(seed)
    n = len(g1)
    model = LinearMixedModel(np.ones((n, 1)), rng.normal(size=n), [remat(g1), remat(g2)])
    first = model.objective(list(theta))
    model.objective([1.0, 1.0])
    assert model.objective(list(theta)) == first


@given(
    size=st.integers(min_value=1, max_value=4),
    seed=st.integers(min_value=0, max_value=2**16),
)
@settings(max_examples=30, deadline=None)
def test_theta_round_trip(size, seed):
    f = CovarianceFactor(size)
    theta = np.random.default_rng(seed).normal(size=f.n_theta)
    f.theta = theta
    np.testing.assert_array_equal(f.theta, theta)
    np.testing.assert_array_equal(np.triu(f.data, 1), 0.0)
    assert np.count_nonzero(f.lower_bounds() == 0.0) == size


@given(data=random_lmm_data())
@settings(max_examples=10, deadline=None)
def test_model_matrices_shapes(data):
    mm = build_model_matrices(data, "y", ["x"], [("group", ["1", "x"])])
    assert mm.X.shape == (len(data), 2)
    assert mm.fixed_names == ["(Intercept)", "x"]
    assert len(mm.terms) == 1
    assert mm.terms[0].vsize == 2
    assert mm.terms[0].nlevels == data["group"].nunique()
