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
from mixedpls.estimation.optimizers import run_optimizer
from mixedpls.estimation.pls import PLSSolver, choose_solver
from mixedpls.matrices.blocks import BlockMatrix, DenseBlock, densify
from mixedpls.matrices.design import build_model_matrices
from mixedpls.matrices.lowertri import CovarianceFactor
from mixedpls.matrices.remat import ReMat
from mixedpls.models.control import LmmControl
from mixedpls.models.types import LogLik, OptSummary, VarCorr, VarCorrGroup

_THETA_KEYS = ("theta", "θ")

# Cross blocks between grouping factors denser than this are stored dense.
_DENSIFY_THRESHOLD = 0.3

_SNAP_THRESHOLD = 1e-5
_SNAP_TOLERANCE = 1e-5


def _check_weights(weights: ArrayLike, n: int) -> NDArray[np.floating]:
    weights = np.asarray(weights, dtype=np.float64).ravel()
    if weights.shape[0] != n:
        raise DimensionMismatch(f"{weights.shape[0]} weights for {n} observations")
    if np.any(weights < 0) or not np.all(np.isfinite(weights)):
        raise ValueError("weights must be finite and non-negative")
    return weights


class LinearMixedModel:
    """Linear mixed-effects model fit by profiled maximum likelihood or REML.

    Parameters
    ----------
    X : array-like, shape (n, p)
        Fixed-effects model matrix.
    y : array-like, shape (n,)
        Response.
    terms : sequence of ReMat
        Random-effects terms. They are reordered by decreasing number of
        levels, which reduces fill-in but does not change the fit.
    weights : array-like, optional
        Non-negative prior weights.
    REML : bool, default False
        Minimize the REML criterion instead of the deviance.
    control : LmmControl, optional
        Optimizer settings.
    fixed_names : sequence of str, optional
        Names of the columns of ``X``.

    Examples
    --------
    >>> terms = [remat(data["Subject"], name="Subject")]
    >>> model = LinearMixedModel(X, y, terms).fit()
    >>> model.fixef()
    """

    def __init__(
        self,
        X: ArrayLike,
        y: ArrayLike,
        terms: Sequence[ReMat],
        weights: ArrayLike | None = None,
        REML: bool = False,
        control: LmmControl | None = None,
        fixed_names: Sequence[str] | None = None,
    ) -> None:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        y = np.array(y, dtype=np.float64).ravel()
        n = y.shape[0]
        if X.ndim != 2 or X.shape[0] != n:
            raise DimensionMismatch(f"X has shape {X.shape} but y has {n} observations")
        if len(terms) == 0:
            raise ValueError("at least one random-effects term is required")
        for t in terms:
            if not isinstance(t, ReMat):
                raise TypeError(f"random-effects terms must be ReMat instances, got {type(t).__name__}")
            if t.nobs != n:
                raise DimensionMismatch(f"term {t.name!r} has {t.nobs} observations, y has {n}")
        if fixed_names is None:
            fixed_names = [f"x{i}" for i in range(X.shape[1])]
        if len(fixed_names) != X.shape[1]:
            raise DimensionMismatch(f"{len(fixed_names)} names for {X.shape[1]} fixed-effects columns")

        self.control = control if control is not None else LmmControl()
        self.terms = sorted(terms, key=lambda t: t.nlevels, reverse=True)
        self.factors = [CovarianceFactor(t.vsize) for t in self.terms]
        self._theta0 = self.theta
        self.X = X
        self.y = y
        self.fixed_names = list(fixed_names)
        self.REML = REML
        self.weights: NDArray[np.floating] | None = None
        self.sqrtwts: NDArray[np.floating] | None = None
        if weights is not None:
            self.weights = _check_weights(weights, n)
            self.sqrtwts = np.sqrt(self.weights)

        self._dense_cross: set[tuple[int, int]] | None = None
        self.A = self._cross_products()
        self.solver: PLSSolver = choose_solver(
            self.A, self.wttrms, self.control.crosstab_density
        )
        self.optsum = OptSummary(
            initial=self.theta,
            final=self.theta,
            fmin=np.inf,
            feval=-1,
            optimizer=self.control.optimizer,
        )
        self.fitted = False
        self.solver.update(self.factors)

    def __repr__(self) -> str:
        crit = "REML" if self.REML else "ML"
        return (
            f"LinearMixedModel(nobs={self.nobs}, n_fixed={self.n_fixed}, "
            f"terms={[t.name for t in self.terms]}, {crit}, fitted={self.fitted})"
        )

    @property
    def nobs(self) -> int:
        return self.y.shape[0]

    @property
    def n_fixed(self) -> int:
        return self.X.shape[1]

    @property
    def nterms(self) -> int:
        return len(self.terms)

    @property
    def wttrms(self) -> list[ReMat]:
        if self.sqrtwts is None:
            return list(self.terms)
        return [t.reweighted(self.sqrtwts) for t in self.terms]

    def _weighted_fixed(self) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
        if self.sqrtwts is None:
            return self.X, self.y
        return self.X * self.sqrtwts[:, None], self.y * self.sqrtwts

    def _cross_products(self) -> BlockMatrix:
        trms = self.wttrms
        X, y = self._weighted_fixed()
        nt = len(trms)
        first = self._dense_cross is None
        if first:
            self._dense_cross = set()
        A = BlockMatrix(nt + 2)
        for i, ti in enumerate(trms):
            A[i, i] = ti.crossprod(ti)
            for j in range(i + 1, nt):
                block = ti.crossprod(trms[j])
                if first:
                    block = densify(block, _DENSIFY_THRESHOLD)
                    if isinstance(block, DenseBlock):
                        self._dense_cross.add((i, j))
                elif (i, j) in self._dense_cross:
                    block = DenseBlock(block.toarray())
                A[i, j] = block
            A[i, nt] = ti.crossprod(X)
            A[i, nt + 1] = ti.crossprod(y)
        A[nt, nt] = DenseBlock(X.T @ X)
        A[nt, nt + 1] = DenseBlock(X.T @ y[:, None])
        A[nt + 1, nt + 1] = DenseBlock(np.array([[y @ y]]))
        return A

    def _refresh(self) -> None:
        self.A.copy_from(self._cross_products())
        self.fitted = False
        self.solver.update(self.factors)

    @property
    def theta(self) -> NDArray[np.floating]:
        return np.concatenate([f.theta for f in self.factors])

    @theta.setter
    def theta(self, value: ArrayLike) -> None:
        value = np.asarray(value, dtype=np.float64).ravel()
        sizes = [f.n_theta for f in self.factors]
        if value.shape[0] != sum(sizes):
            raise DimensionMismatch(f"theta must have length {sum(sizes)}, got {value.shape[0]}")
        offset = 0
        for f, k in zip(self.factors, sizes):
            f.theta = value[offset : offset + k]
            offset += k
        self.fitted = False
        self.solver.update(self.factors)

    def __getitem__(self, key: str) -> NDArray[np.floating]:
        if key not in _THETA_KEYS:
            raise InvalidKeyError(key, _THETA_KEYS[:1])
        return self.theta

    def __setitem__(self, key: str, value: ArrayLike) -> None:
        if key not in _THETA_KEYS:
            raise InvalidKeyError(key, _THETA_KEYS[:1])
        self.theta = value

    def lower_bounds(self) -> NDArray[np.floating]:
        return np.concatenate([f.lower_bounds() for f in self.factors])

    @property
    def n_theta(self) -> int:
        return sum(f.n_theta for f in self.factors)

    @property
    def npar(self) -> int:
        return self.n_fixed + self.n_theta + 1

    def _dof(self) -> int:
        return self.nobs - self.n_fixed if self.REML else self.nobs

    @property
    def pwrss(self) -> float:
        return self.solver.pwrss

    def logdet(self) -> float:
        """``log |L|^2``, plus ``log |RX|^2`` for REML."""
        val = self.solver.ldL2
        if self.REML:
            val += self.solver.ldRX2
        return val

    def objective(self, theta: ArrayLike | None = None) -> float:
        """Profiled deviance, or REML criterion, at ``theta`` (default: current θ)."""
        if theta is not None:
            self.theta = theta
        dof = self._dof()
        return float(self.logdet() + dof * (1.0 + np.log(2.0 * np.pi * self.pwrss / dof)))

    def gradient(self, theta: ArrayLike | None = None) -> NDArray[np.floating]:
        """Analytic gradient of :meth:`objective`; single grouping factor only."""
        if theta is not None:
            self.theta = theta
        return self.solver.gradient(self.factors, self.nobs, self.REML)

    def set_reml(self, REML: bool = True) -> LinearMixedModel:
        if bool(REML) != self.REML:
            self.REML = bool(REML)
            self.fitted = False
        return self

    def fit(self, verbose: int = 0) -> LinearMixedModel:
        """Minimize :meth:`objective` over θ; a no-op when already fitted."""
        if self.fitted:
            return self
        x0 = self.theta
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

        small = (np.abs(xmin) > 0.0) & (np.abs(xmin) < _SNAP_THRESHOLD)
        if np.any(small):
            snapped = np.where(small, 0.0, xmin)
            fsnap = self.objective(snapped)
            if fsnap <= fmin + _SNAP_TOLERANCE:
                xmin, fmin = snapped, fsnap
            else:
                self.objective(xmin)

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
        """Fixed-effects estimates; a name-to-value dict when ``named``."""
        self._require_fit("fixef")
        beta = self.solver.fixef()
        if named:
            return dict(zip(self.fixed_names, beta.tolist()))
        return beta

    def ranef(
        self, uscale: bool = False, as_frame: bool = False
    ) -> list[NDArray[np.floating]] | dict[str, pd.DataFrame]:
        """Conditional modes of the random effects, one ``(levels, k)`` array per term.

        With ``uscale`` the spherical effects ``u`` are returned instead
        of ``b = Λ u``. With ``as_frame`` the result is a dict of
        DataFrames indexed by level and keyed by grouping-factor name.
        """
        self._require_fit("ranef")
        u = self.solver.spherical_re()
        res = []
        for t, f, ui in zip(self.terms, self.factors, u):
            ui = ui.reshape(t.nlevels, t.vsize)
            res.append(ui if uscale else f.scale_levels(ui))
        if not as_frame:
            return res
        return {
            key: pd.DataFrame(r, index=pd.Index(t.levels, name=t.name), columns=t.column_names)
            for key, t, r in zip(self.group_keys(), self.terms, res)
        }

    def group_keys(self) -> list[str]:
        keys: list[str] = []
        seen: dict[str, int] = {}
        for i, t in enumerate(self.terms):
            name = t.name or f"term{i}"
            count = seen.get(name, 0)
            seen[name] = count + 1
            keys.append(name if count == 0 else f"{name}.{count}")
        return keys

    def varest(self) -> float:
        return self.pwrss / self._dof()

    @property
    def sigma(self) -> float:
        self._require_fit("sigma")
        return float(np.sqrt(self.varest()))

    def vcov(self) -> NDArray[np.floating]:
        """Covariance matrix of the fixed-effects estimates."""
        self._require_fit("vcov")
        p = self.n_fixed
        if p == 0:
            return np.zeros((0, 0))
        RX = self.solver.R[self.nterms, self.nterms].data
        RXinv = linalg.solve_triangular(RX, np.eye(p), lower=False)
        return self.varest() * (RXinv @ RXinv.T)

    def stderr(self) -> NDArray[np.floating]:
        return np.sqrt(np.diag(self.vcov()))

    def var_corr(self) -> VarCorr:
        """Standard deviations and correlations of the random effects."""
        self._require_fit("var_corr")
        sigma = self.sigma
        groups = {}
        for key, t, f in zip(self.group_keys(), self.terms, self.factors):
            sd, corr = f.stddev_corr()
            groups[key] = VarCorrGroup(
                name=t.name, column_names=list(t.column_names), stddev=sigma * sd, corr=corr
            )
        return VarCorr(groups=groups, residual=sigma)

    @property
    def deviance(self) -> float:
        """Objective at the optimum: the deviance, or the REML criterion."""
        self._require_fit("deviance")
        return self.objective()

    def log_likelihood(self) -> LogLik:
        return LogLik(value=-0.5 * self.deviance, df=self.npar, nobs=self.nobs, REML=self.REML)

    def aic(self) -> float:
        return self.deviance + 2.0 * self.npar

    def bic(self) -> float:
        return self.deviance + self.npar * np.log(self.nobs)

    def dof(self) -> int:
        return self.npar

    def fitted_values(self) -> NDArray[np.floating]:
        self._require_fit("fitted values")
        mu = self.X @ self.solver.fixef()
        for t, b in zip(self.terms, self.ranef()):
            t.unscaled_re(mu, b)
        return mu

    def residuals(self) -> NDArray[np.floating]:
        return self.y - self.fitted_values()

    def is_singular(self, tol: float | None = None) -> bool:
        """True when a diagonal element of some covariance factor is (near) zero."""
        tol = self.control.boundary_tol if tol is None else tol
        lower = self.lower_bounds()
        theta = self.theta
        return bool(np.any(theta[lower == 0.0] < tol))

    def reset_theta(self) -> LinearMixedModel:
        self.theta = self._theta0
        return self

    def reweight(self, weights: ArrayLike) -> LinearMixedModel:
        """Replace the prior weights and recompute ``A`` from the weighted terms."""
        self.weights = _check_weights(weights, self.nobs)
        self.sqrtwts = np.sqrt(self.weights)
        self._refresh()
        return self

    def set_response(self, y: ArrayLike) -> LinearMixedModel:
        """Replace the response and recompute its cross-products."""
        y = np.array(y, dtype=np.float64).ravel()
        if y.shape[0] != self.nobs:
            raise DimensionMismatch(f"new response has {y.shape[0]} observations, expected {self.nobs}")
        self.y = y
        trms = self.wttrms
        X, wy = self._weighted_fixed()
        nt = self.nterms
        for i, ti in enumerate(trms):
            self.A[i, nt + 1].copy_from(ti.crossprod(wy))
        self.A[nt, nt + 1].copy_from(DenseBlock(X.T @ wy[:, None]))
        self.A[nt + 1, nt + 1].copy_from(DenseBlock(np.array([[wy @ wy]])))
        self.fitted = False
        self.solver.update(self.factors)
        return self

    def refit(self, y: ArrayLike, verbose: int = 0) -> LinearMixedModel:
        """Fit again to a new response, starting from the initial θ."""
        self.set_response(y)
        self.reset_theta()
        return self.fit(verbose=verbose)


def lmm(
    data: pd.DataFrame,
    response: str,
    fixed: Sequence[str],
    random: Sequence[tuple[str, Sequence[str]] | str],
    weights: str | None = None,
    intercept: bool = True,
    REML: bool = False,
    control: LmmControl | None = None,
) -> LinearMixedModel:
    """Build a :class:`LinearMixedModel` from a DataFrame.

    See :func:`~mixedpls.matrices.design.build_model_matrices` for the
    meaning of ``fixed``, ``random`` and ``intercept``. The returned
    model has not been fit.

    Examples
    --------
    >>> sleepstudy = load_sleepstudy()
    >>> model = lmm(sleepstudy, "Reaction", ["Days"], [("Subject", ["1", "Days"])]).fit()
    >>> model.fixef(named=True)
    """
    mm = build_model_matrices(data, response, fixed, random, weights=weights, intercept=intercept)
    return LinearMixedModel(
        mm.X,
        mm.y,
        mm.terms,
        weights=mm.weights,
        REML=REML,
        control=control,
        fixed_names=mm.fixed_names,
    )
