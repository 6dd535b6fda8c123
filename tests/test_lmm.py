import importlib
import warnings

import numpy as np
import pandas as pd
import pytest

from mixedpls import (
    CovarianceFactor,
    DimensionMismatch,
    InvalidKeyError,
    LinearMixedModel,
    NotFittedError,
    lmm,
    lmmControl,
    lrt,
    remat,
)
from mixedpls.estimation import OptimizeResult, available_optimizers, choose_solver
from mixedpls.matrices import BlockMatrix, DenseBlock, SparseBlock

lmm_module = importlib.import_module("mixedpls.models.lmm")


def dyestuff_model(data, REML=False, **kwargs) -> LinearMixedModel:
    return lmm(data, "Yield", [], ["Batch"], REML=REML, **kwargs)


def sleepstudy_model(data, REML=True, **kwargs) -> LinearMixedModel:
    return lmm(data, "Reaction", ["Days"], [("Subject", ["1", "Days"])], REML=REML, **kwargs)


def cross_products(X, y, terms) -> BlockMatrix:
    """``A`` for the terms in the order given."""
    nt = len(terms)
    A = BlockMatrix(nt + 2)
    for i, ti in enumerate(terms):
        A[i, i] = ti.crossprod(ti)
        for j in range(i + 1, nt):
            A[i, j] = ti.crossprod(terms[j])
        A[i, nt] = ti.crossprod(X)
        A[i, nt + 1] = ti.crossprod(y)
    A[nt, nt] = DenseBlock(X.T @ X)
    A[nt, nt + 1] = DenseBlock(X.T @ y[:, None])
    A[nt + 1, nt + 1] = DenseBlock(np.array([[y @ y]]))
    return A


def stub_optimizer(x):
    """Optimizer replacement that reports ``x`` as the minimizer."""

    def run(fun, x0, method, lower, upper=None, options=None):
        xmin = np.asarray(x, dtype=np.float64)
        return OptimizeResult(x=xmin, fun=fun(xmin), success=True, nfev=1, message="done")

    return run


class TestDyestuff:
    def test_ml_fit(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        assert model.fitted
        assert model.deviance == pytest.approx(327.3271, abs=1e-3)
        np.testing.assert_allclose(model.fixef(), [1527.5], rtol=1e-8)
        assert model.sigma == pytest.approx(49.51, abs=0.01)
        vc = model.var_corr()
        assert vc.groups["Batch"].stddev[0] == pytest.approx(37.26, abs=0.05)
        assert model.optsum.feval > 0
        assert model.optsum.fmin == pytest.approx(model.deviance)

    def test_reml_fit(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff, REML=True).fit()
        assert model.deviance == pytest.approx(319.6543, abs=1e-3)
        vc = model.var_corr()
        assert vc.groups["Batch"].stddev[0] == pytest.approx(42.00, abs=0.05)
        assert vc.residual == pytest.approx(49.51, abs=0.01)
        assert model.stderr()[0] == pytest.approx(19.38, abs=0.01)

    def test_log_likelihood_and_criteria(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        ll = model.log_likelihood()
        assert float(ll) == pytest.approx(-0.5 * model.deviance)
        assert ll.df == 3
        assert model.dof() == 3
        assert model.aic() == pytest.approx(model.deviance + 6.0)
        assert model.bic() == pytest.approx(model.deviance + 3.0 * np.log(30))

    def test_ranef(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        b = model.ranef()
        assert len(b) == 1
        assert b[0].shape == (6, 1)
        assert b[0].sum() == pytest.approx(0.0, abs=1e-6)
        u = model.ranef(uscale=True)[0]
        np.testing.assert_allclose(b[0], u * model.theta[0])
        frames = model.ranef(as_frame=True)
        assert list(frames["Batch"].index) == list("ABCDEF")
        assert model.ranef(as_frame=True)["Batch"].columns.tolist() == ["(Intercept)"]

    def test_fitted_and_residuals(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        fitted = model.fitted_values()
        resid = model.residuals()
        np.testing.assert_allclose(fitted + resid, dyestuff["Yield"].to_numpy())
        b = model.ranef()[0][:, 0]
        expected = 1527.5 + np.repeat(b, 5)
        np.testing.assert_allclose(fitted, expected, rtol=1e-6)


class TestSleepstudy:
    def test_data(self, sleepstudy) -> None:
        assert sleepstudy.shape == (180, 3)
        subject = sleepstudy.loc[sleepstudy["Subject"] == "333", "Reaction"].to_numpy()
        np.testing.assert_allclose(subject[5:], [338.1665, 332.0265, 348.8399, 333.36, 362.0428])
        assert sleepstudy["Reaction"].mean() == pytest.approx(298.5079, abs=1e-4)

    def test_reml_fit(self, sleepstudy) -> None:
        model = sleepstudy_model(sleepstudy).fit()
        assert model.deviance == pytest.approx(1743.628, abs=1e-2)
        fixef = model.fixef(named=True)
        assert fixef["(Intercept)"] == pytest.approx(251.405, abs=1e-2)
        assert fixef["Days"] == pytest.approx(10.467, abs=1e-2)
        vc = model.var_corr()
        group = vc.groups["Subject"]
        np.testing.assert_allclose(group.stddev, [24.74, 5.92], rtol=1e-2)
        assert group.corr[0, 1] == pytest.approx(0.066, abs=0.02)
        assert vc.residual == pytest.approx(25.59, abs=0.02)
        assert not model.is_singular()

    def test_ml_fit(self, sleepstudy) -> None:
        model = sleepstudy_model(sleepstudy, REML=False).fit()
        assert model.deviance == pytest.approx(1751.939, abs=1e-2)

    def test_theta_accessors(self, sleepstudy) -> None:
        model = sleepstudy_model(sleepstudy)
        np.testing.assert_allclose(model["theta"], [1.0, 0.0, 1.0])
        model["θ"] = [0.5, 0.1, 0.2]
        np.testing.assert_allclose(model.theta, [0.5, 0.1, 0.2])
        np.testing.assert_array_equal(model.lower_bounds(), [0.0, -np.inf, 0.0])
        with pytest.raises(InvalidKeyError):
            model["beta"]
        with pytest.raises(DimensionMismatch):
            model.theta = [1.0, 2.0]

    def test_var_corr_str(self, sleepstudy) -> None:
        text = str(sleepstudy_model(sleepstudy).fit().var_corr())
        assert "Subject" in text
        assert "Residual" in text


class TestFitState:
    def test_not_fitted(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff)
        for accessor in (model.fixef, model.ranef, model.vcov, model.var_corr, model.fitted_values):
            with pytest.raises(NotFittedError):
                accessor()
        with pytest.raises(NotFittedError, match="fit\\(\\) first"):
            model.deviance

    def test_set_reml_invalidates(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        ml = model.deviance
        model.set_reml(True)
        assert not model.fitted
        model.fit()
        assert model.deviance < ml

    def test_set_theta_invalidates(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        model.theta = [0.5]
        assert not model.fitted

    def test_fit_is_noop_when_fitted(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        feval = model.optsum.feval
        model.fit()
        assert model.optsum.feval == feval

    def test_verbose_prints_evaluations(self, dyestuff, capsys) -> None:
        dyestuff_model(dyestuff).fit(verbose=1)
        out = capsys.readouterr().out
        assert out.startswith("f_1: ")

    def test_reset_theta(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        model.reset_theta()
        np.testing.assert_allclose(model.theta, [1.0])


class TestGradient:
    @pytest.mark.parametrize("REML", [False, True])
    def test_scalar_matches_finite_differences(self, dyestuff, REML) -> None:
        model = dyestuff_model(dyestuff, REML=REML)
        theta = np.array([0.6])
        grad = model.gradient(theta)
        h = 1e-6
        fd = (model.objective(theta + h) - model.objective(theta - h)) / (2 * h)
        assert grad[0] == pytest.approx(fd, rel=1e-4)

    @pytest.mark.parametrize("REML", [False, True])
    def test_vector_matches_finite_differences(self, sleepstudy, REML) -> None:
        model = sleepstudy_model(sleepstudy, REML=REML)
        theta = np.array([0.9, -0.1, 0.25])
        grad = model.gradient(theta)
        h = 1e-6
        fd = np.empty(3)
        for i in range(3):
            step = np.zeros(3)
            step[i] = h
            fd[i] = (model.objective(theta + step) - model.objective(theta - step)) / (2 * h)
        np.testing.assert_allclose(grad, fd, rtol=1e-4, atol=1e-3)

    def test_vanishes_at_optimum(self, dyestuff) -> None:
        model = dyestuff_model(dyestuff).fit()
        assert abs(model.gradient()[0]) < 1e-2

    def test_not_available_for_crossed(self, crossed_data) -> None:
        d = crossed_data
        model = LinearMixedModel(np.ones((48, 1)), d["y"], [remat(d["g1"]), remat(d["g2"])])
        with pytest.raises(NotImplementedError):
            model.gradient()


class TestWeightsAndOrder:
    def test_unit_reweight_keeps_a(self, crossed_data) -> None:
        d = crossed_data
        X = np.column_stack([np.ones(48), d["x"]])
        terms = [remat(d["g1"]), remat(d["g2"])]
        model = LinearMixedModel(X, d["y"], terms)
        A = model.A.toarray()
        model.reweight(np.ones(48))
        np.testing.assert_allclose(model.A.toarray(), A, rtol=1e-14, atol=0.0)
        assert type(model.A[0, 1]) is type(LinearMixedModel(X, d["y"], terms).A[0, 1])

    def test_reweight_matches_weighted_construction(self, crossed_data) -> None:
        d = crossed_data
        X = np.column_stack([np.ones(48), d["x"]])
        w = np.linspace(0.5, 1.5, 48)
        terms = [remat(d["g1"]), remat(d["g2"])]
        direct = LinearMixedModel(X, d["y"], terms, weights=w)
        later = LinearMixedModel(X, d["y"], terms).reweight(w)
        np.testing.assert_allclose(later.A.toarray(), direct.A.toarray())
        assert later.objective([0.5, 0.5]) == pytest.approx(direct.objective([0.5, 0.5]))

    def test_invalid_weights(self, dyestuff) -> None:
        with pytest.raises(DimensionMismatch):
            dyestuff_model(dyestuff).reweight(np.ones(3))
        with pytest.raises(ValueError):
            dyestuff_model(dyestuff).reweight(-np.ones(30))

    @pytest.mark.parametrize("threshold", [0.5, 1.0])
    def test_unsorted_terms_give_same_objective(self, crossed_data, threshold) -> None:
        d = crossed_data
        X = np.column_stack([np.ones(48), d["x"]])
        y = d["y"]
        small = remat(d["g2"], np.column_stack([np.ones(48), d["x"]]), name="g2")
        large = remat(d["g1"], name="g1")
        model = LinearMixedModel(
            X, y, [small, large], control=lmmControl(crosstab_density=threshold)
        )
        assert [t.name for t in model.terms] == ["g1", "g2"]

        unsorted = [small, large]
        solver = choose_solver(cross_products(X, y, unsorted), unsorted, threshold)
        factors = [CovarianceFactor(2), CovarianceFactor(1)]
        for theta in ([1.0, 1.0, 0.0, 1.0], [0.4, 0.9, -0.3, 0.5], [1.3, 0.0, 0.0, 0.2]):
            factors[0].theta = theta[1:]
            factors[1].theta = theta[:1]
            solver.update(factors)
            expected = model.objective(theta)
            value = solver.ldL2 + 48 * (1.0 + np.log(2.0 * np.pi * solver.pwrss / 48))
            assert value == pytest.approx(expected, rel=1e-9)
            np.testing.assert_allclose(solver.fixef(), model.solver.fixef(), rtol=1e-7)

    def test_dense_cross_blocks(self, crossed_data, nested_data) -> None:
        d = crossed_data
        crossed = LinearMixedModel(np.ones((48, 1)), d["y"], [remat(d["g1"]), remat(d["g2"])])
        assert isinstance(crossed.A[0, 1], DenseBlock)
        n = nested_data
        nested = LinearMixedModel(np.ones((48, 1)), n["y"], [remat(n["batch"]), remat(n["site"])])
        assert isinstance(nested.A[0, 1], SparseBlock)
        nested.reweight(np.linspace(0.5, 1.5, 48))
        assert isinstance(nested.A[0, 1], SparseBlock)

    def test_crossed_fit(self, crossed_data) -> None:
        d = crossed_data
        frame = pd.DataFrame(d)
        model = lmm(frame, "y", ["x"], ["g1", "g2"]).fit()
        assert set(model.var_corr().groups) == {"g1", "g2"}
        assert model.vcov().shape == (2, 2)


class TestRefit:
    def test_refit_scaled_response(self, sleepstudy) -> None:
        model = sleepstudy_model(sleepstudy).fit()
        beta = model.fixef()
        theta = model.theta
        model.refit(2.0 * sleepstudy["Reaction"].to_numpy())
        np.testing.assert_allclose(model.fixef(), 2.0 * beta, rtol=1e-4)
        np.testing.assert_allclose(model.theta, theta, atol=1e-3)

    def test_refit_wrong_length(self, sleepstudy) -> None:
        model = sleepstudy_model(sleepstudy)
        with pytest.raises(DimensionMismatch):
            model.refit(np.ones(10))


class TestSingularFit:
    def test_equal_group_means(self) -> None:
        base = np.array([1.0, 4.0, 2.0, 7.0, 3.0])
        y = np.concatenate([np.roll(base, i) for i in range(6)])
        group = np.repeat(np.arange(6), 5)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model = LinearMixedModel(np.ones((30, 1)), y, [remat(group)]).fit()
        assert model.theta[0] == pytest.approx(0.0, abs=1e-4)
        assert model.is_singular()
        assert model.sigma == pytest.approx(np.sqrt(np.var(y)), rel=1e-6)


class TestSnapToZero:
    def test_tiny_parameter_is_snapped(self, dyestuff, monkeypatch) -> None:
        monkeypatch.setattr(lmm_module, "run_optimizer", stub_optimizer([3e-6]))
        model = dyestuff_model(dyestuff).fit()
        np.testing.assert_array_equal(model.theta, [0.0])
        np.testing.assert_array_equal(model.optsum.final, [0.0])
        expected = dyestuff_model(dyestuff).objective([0.0])
        assert model.optsum.fmin == pytest.approx(expected, rel=1e-12)
        assert model.deviance == pytest.approx(expected, rel=1e-12)

    def test_snap_rejected_when_objective_worsens(self, sleepstudy, monkeypatch) -> None:
        reference = sleepstudy_model(sleepstudy, REML=False)
        at_zero = reference.objective([10.0, 0.0, 0.01])
        off = max((9e-6, -9e-6), key=lambda v: at_zero - reference.objective([10.0, v, 0.01]))
        x = [10.0, off, 0.01]
        at_x = reference.objective(x)
        assert at_zero > at_x + 1e-5

        monkeypatch.setattr(lmm_module, "run_optimizer", stub_optimizer(x))
        model = sleepstudy_model(sleepstudy, REML=False).fit()
        np.testing.assert_array_equal(model.theta, x)
        np.testing.assert_array_equal(model.optsum.final, x)
        assert model.optsum.fmin == pytest.approx(at_x, rel=1e-12)
        assert model.objective() == pytest.approx(at_x, rel=1e-12)
        assert model.pwrss == pytest.approx(reference.pwrss, rel=1e-12)
        np.testing.assert_allclose(model.fixef(), reference.solver.fixef(), rtol=1e-12)


class TestLRT:
    def test_nested_random_effects(self, sleepstudy) -> None:
        small = lmm(sleepstudy, "Reaction", ["Days"], ["Subject"]).fit()
        big = sleepstudy_model(sleepstudy, REML=False).fit()
        result = lrt(big, small)
        assert result.npar == [4, 6]
        assert result.chi_df[1] == 2
        assert result.chi_sq[1] == pytest.approx(small.deviance - big.deviance)
        assert result.p_value[1] < 1e-6
        assert "Model 2" in str(result)

    def test_requires_two_models(self, dyestuff) -> None:
        with pytest.raises(ValueError):
            lrt(dyestuff_model(dyestuff).fit())

    def test_requires_fit(self, dyestuff) -> None:
        with pytest.raises(NotFittedError):
            lrt(dyestuff_model(dyestuff), dyestuff_model(dyestuff))


@pytest.mark.parametrize("optimizer", ["Nelder-Mead", "L-BFGS-B"])
def test_scipy_optimizers(dyestuff, optimizer) -> None:
    assert optimizer in available_optimizers()
    model = dyestuff_model(dyestuff, control=lmmControl(optimizer=optimizer)).fit()
    assert model.deviance == pytest.approx(327.3271, abs=1e-2)


def test_unknown_optimizer() -> None:
    with pytest.raises(ValueError, match="Unknown optimizer"):
        lmmControl(optimizer="newton")
