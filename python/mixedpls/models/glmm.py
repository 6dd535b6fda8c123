from __future__ import annotations

import warnings
from collections.abc import Sequence

import numpy as np
import pandas as pd
from numpy.typing import ArrayLike, NDArray
from scipy import linalg

from mixedpls.errors import (
    ConvergenceWarning,
    DimensionMismatch,
    InvalidKeyError,
    NotFittedError,
)
from mixedpls.estimation.laplace import glm_irls, laplace_deviance, pirls
from mixedpls.estimation.optimizers import run_optimizer
from mixedpls.families.base import Family
from mixedpls.matrices.design import build_model_matrices
from mixedpls.matrices.remat import ReMat
from mixedpls.models.control import GlmmControl
from mixedpls.models.lmm import LinearMixedModel
from mixedpls.models.types import OptSummary, VarCorr, VarCorrGroup

_BETA_THETA_KEYS = ("beta_theta", "βθ")


class GeneralizedLinearMixedModel:
    """Generalized linear mixed model fit by the Laplace approximation.

    The random-effects structure is held by an inner
    :class:`LinearMixedModel` with no fixed effects, whose response and
    weights are the PIRLS working response and working weights. β and θ
    are optimized together; for each trial value PIRLS finds the
    conditional modes of the random effects.

    Parameters
    ----------
    X : array-like, shape (n, p)
        Fixed-effects model matrix.
    y : array-like, shape (n,)
        Response. For the binomial family, the proportion of successes.
    terms : sequence of ReMat
        Random-effects terms.
    family : Family
        Conditional distribution and link.
    weights : array-like, optional
        Prior weights (numbers of trials for binomial proportions).
    offset : array-like, optional
        Prior offset added to the linear predictor.
    control : GlmmControl, optional
        Optimizer and PIRLS settings.
    fixed_names : sequence of str, optional
        Names of the columns of ``X``.
    """

    def __init__(
        self,
        X: ArrayLike,
        y: ArrayLike,
        terms: Sequence[ReMat],
        family: Family,
        weights: ArrayLike | None = None,
        offset: ArrayLike | None = None,
        control: GlmmControl | None = None,
        fixed_names: Sequence[str] | None = None,
    ) -> None:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        y = np.array(y, dtype=np.float64).ravel()
        n = y.shape[0]
        if X.ndim != 2 or X.shape[0] != n:
            raise DimensionMismatch(f"X has shape {X.shape} but y has {n} observations")
        wt = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64).ravel()
        if wt.shape[0] != n:
            raise DimensionMismatch(f"{wt.shape[0]} weights for {n} observations")
        offset0 = np.zeros(n) if offset is None else np.asarray(offset, dtype=np.float64).ravel()
        if offset0.shape[0] != n:
            raise DimensionMismatch(f"offset has {offset0.shape[0]} values for {n} observations")
        family.check_response(y, wt)
        if fixed_names is None:
            fixed_names = [f"x{i}" for i in range(X.shape[1])]
        if len(fixed_names) != X.shape[1]:
            raise DimensionMismatch(f"{len(fixed_names)} names for {X.shape[1]} fixed-effects columns")

        self.control = control if control is not None else GlmmControl()
        self.family = family
        self.X = X
        self.y = y
        self.wt = wt
        self.offset0 = offset0
        self.fixed_names = list(fixed_names)
        self.lmm = LinearMixedModel(
            np.zeros((n, 0)), y, terms, weights=wt, control=self.control.lmm_control()
        )
        self.u = [np.zeros((t.nlevels, t.vsize)) for t in self.terms]
        self.u0 = [np.zeros_like(ui) for ui in self.u]

        self.beta = glm_irls(X, y, family, wt, offset0)
        self.offset = offset0 + X @ self.beta
        self.eta = self.offset.copy()
        self.mu = np.empty(n)
        self.devresid = np.empty(n)
        self.wrkresid = np.empty(n)
        self.wrkwt = np.empty(n)
        self.update_laplace_deviance()

        self.optsum = OptSummary(
            initial=self["beta_theta"],
            final=self["beta_theta"],
            fmin=np.inf,
            feval=-1,
            optimizer=self.control.optimizer,
        )
        self.fitted = False

    def __repr__(self) -> str:
        return (
            f"GeneralizedLinearMixedModel(nobs={self.nobs}, family={self.family!r}, "
            f"terms={[t.name for t in self.terms]}, fitted={self.fitted})"
        )

    @property
    def terms(self) -> list[ReMat]:
        return self.lmm.terms

    @property
    def nobs(self) -> int:
        return self.y.shape[0]

    @property
    def n_fixed(self) -> int:
        return self.X.shape[1]

    @property
    def theta(self) -> NDArray[np.floating]:
        return self.lmm.theta

    def lower_bounds(self) -> NDArray[np.floating]:
        return np.concatenate([np.full(self.n_fixed, -np.inf), self.lmm.lower_bounds()])

    def __getitem__(self, key: str) -> NDArray[np.floating]:
        if key not in _BETA_THETA_KEYS:
            raise InvalidKeyError(key, _BETA_THETA_KEYS[:1])
        return np.concatenate([self.beta, self.theta])

    def __setitem__(self, key: str, value: ArrayLike) -> None:
        """Install β followed by θ and recompute the offset ``offset0 + X β``."""
        if key not in _BETA_THETA_KEYS:
            raise InvalidKeyError(key, _BETA_THETA_KEYS[:1])
        value = np.asarray(value, dtype=np.float64).ravel()
        p = self.n_fixed
        if value.shape[0] != p + self.lmm.n_theta:
            raise DimensionMismatch(
                f"beta_theta must have length {p + self.lmm.n_theta}, got {value.shape[0]}"
            )
        self.beta = value[:p].copy()
        self.lmm.theta = value[p:]
        self.offset = self.offset0 + self.X @ self.beta
        self.fitted = False

    def update_eta(self) -> None:
        """Linear predictor, mean and working quantities from the current ``u``."""
        self.eta = self.offset.copy()
        for t, f, ui in zip(self.terms, self.lmm.factors, self.u):
            t.unscaled_re(self.eta, f.scale_levels(ui))
        link = self.family.link
        self.mu = self.family.clip_mu(link.inverse(self.eta))
        mu_eta = link.mu_eta(self.eta)
        self.devresid = self.family.deviance_resids(self.y, self.mu, self.wt)
        self.wrkresid = (self.y - self.mu) / mu_eta
        self.wrkwt = self.wt * self.family.weights(self.eta, self.mu)

    def laplace_deviance(self) -> float:
        return laplace_deviance(self.devresid, self.lmm.solver.ldL2, self.u)

    def update_laplace_deviance(self) -> float:
        """Refresh the working response and weights, refactor, and evaluate."""
        self.update_eta()
        self.lmm.y[:] = self.eta - self.offset + self.wrkresid
        self.lmm.reweight(self.wrkwt)
        return self.laplace_deviance()

    def solve_u(self) -> None:
        for ui, new in zip(self.u, self.lmm.solver.spherical_re(np.zeros(0))):
            ui[:] = new.reshape(ui.shape)

    def pirls(self) -> float:
        return pirls(
            self,
            maxiter=self.control.pirls_maxiter,
            max_halvings=self.control.max_halvings,
            tol=self.control.pirls_tol,
        )

    def objective(self, beta_theta: ArrayLike) -> float:
        self["beta_theta"] = beta_theta
        return self.pirls()

    def fit(self, verbose: int = 0) -> GeneralizedLinearMixedModel:
        """Minimize the Laplace deviance over β and θ."""
        if self.fitted:
            return self
        x0 = self["beta_theta"]
        nevals = 0

        def obj(x: NDArray[np.floating]) -> float:
            nonlocal nevals
            nevals += 1
            val = self.objective(x)
            if verbose > 0:
                print(f"f_{nevals}: {val:.5f}, [{', '.join(f'{v:.6g}' for v in x)}]")
            return val

        result = run_optimizer(
            obj,
            x0,
            self.control.optimizer,
            self.lower_bounds(),
            options=self.control.optimizer_options(),
        )
        xmin = np.maximum(result.x, self.lower_bounds())
        fmin = self.objective(xmin)
        self.optsum = OptSummary(
            initial=x0,
            final=xmin.copy(),
            fmin=fmin,
            feval=result.nfev,
            optimizer=self.control.optimizer,
            converged=result.success,
            message=result.message,
        )
        if verbose > 0:
            print(result.message)
        if not result.success and self.control.check_conv:
            warnings.warn(
                f"Optimizer ({self.control.optimizer}) did not report convergence: "
                f"{result.message}",
                ConvergenceWarning,
                stacklevel=2,
            )
        self.fitted = bool(np.isfinite(fmin))
        return self

    def _require_fit(self, what: str) -> None:
        if not self.fitted:
            raise NotFittedError(what)

    def fixef(self, named: bool = False) -> NDArray[np.floating] | dict[str, float]:
        self._require_fit("fixef")
        if named:
            return dict(zip(self.fixed_names, self.beta.tolist()))
        return self.beta.copy()

    def ranef(
        self, uscale: bool = False, as_frame: bool = False
    ) -> list[NDArray[np.floating]] | dict[str, pd.DataFrame]:
        """Conditional modes, one ``(levels, k)`` array per term."""
        self._require_fit("ranef")
        res = [
            ui.copy() if uscale else f.scale_levels(ui)
            for f, ui in zip(self.lmm.factors, self.u)
        ]
        if not as_frame:
            return res
        return {
            key: pd.DataFrame(r, index=pd.Index(t.levels, name=t.name), columns=t.column_names)
            for key, t, r in zip(self.lmm.group_keys(), self.terms, res)
        }

    def vcov(self) -> NDArray[np.floating]:
        """Covariance of the fixed effects at the optimum, dispersion fixed at 1.

        Uses the working weights of the final PIRLS iteration, with the
        random effects profiled out.
        """
        self._require_fit("vcov")
        p = self.n_fixed
        if p == 0:
            return np.zeros((0, 0))
        work = LinearMixedModel(
            self.X, self.lmm.y, self.terms, weights=self.wrkwt, control=self.control.lmm_control()
        )
        work.theta = self.theta
        RX = work.solver.R[work.nterms, work.nterms].data
        RXinv = linalg.solve_triangular(RX, np.eye(p), lower=False)
        return RXinv @ RXinv.T

    def stderr(self) -> NDArray[np.floating]:
        return np.sqrt(np.diag(self.vcov()))

    def var_corr(self) -> VarCorr:
        self._require_fit("var_corr")
        groups = {}
        for key, t, f in zip(self.lmm.group_keys(), self.terms, self.lmm.factors):
            sd, corr = f.stddev_corr()
            groups[key] = VarCorrGroup(
                name=t.name, column_names=list(t.column_names), stddev=sd, corr=corr
            )
        return VarCorr(groups=groups, residual=1.0)

    @property
    def deviance(self) -> float:
        """Laplace deviance at the optimum."""
        self._require_fit("deviance")
        return self.laplace_deviance()

    @property
    def npar(self) -> int:
        return self.n_fixed + self.lmm.n_theta

    def fitted_values(self, type: str = "response") -> NDArray[np.floating]:
        self._require_fit("fitted values")
        if type == "response":
            return self.mu.copy()
        if type == "link":
            return self.eta.copy()
        raise ValueError(f"type must be 'response' or 'link', got '{type}'")

    def residuals(self, type: str = "response") -> NDArray[np.floating]:
        self._require_fit("residuals")
        if type == "response":
            return self.y - self.mu
        if type == "pearson":
            return (self.y - self.mu) * np.sqrt(self.wt / self.family.variance(self.mu))
        if type == "deviance":
            return np.sign(self.y - self.mu) * np.sqrt(np.maximum(self.devresid, 0.0))
        raise ValueError(f"type must be 'response', 'pearson' or 'deviance', got '{type}'")


def glmm(
    data: pd.DataFrame,
    response: str,
    fixed: Sequence[str],
    random: Sequence[tuple[str, Sequence[str]] | str],
    family: Family,
    weights: str | None = None,
    offset: str | None = None,
    intercept: bool = True,
    control: GlmmControl | None = None,
) -> GeneralizedLinearMixedModel:
    """Build a :class:`GeneralizedLinearMixedModel` from a DataFrame.

    See :func:`~mixedpls.matrices.design.build_model_matrices` for the
    meaning of ``fixed``, ``random`` and ``intercept``. The returned
    model has not been fit.
    """
    mm = build_model_matrices(data, response, fixed, random, weights=weights, intercept=intercept)
    off = None if offset is None else data[offset].to_numpy(dtype=np.float64)
    return GeneralizedLinearMixedModel(
        mm.X,
        mm.y,
        mm.terms,
        family,
        weights=mm.weights,
        offset=off,
        control=control,
        fixed_names=mm.fixed_names,
    )
