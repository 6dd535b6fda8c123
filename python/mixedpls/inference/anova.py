from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

from scipy import stats

from mixedpls.errors import NotFittedError

if TYPE_CHECKING:
    from mixedpls.models.glmm import GeneralizedLinearMixedModel
    from mixedpls.models.lmm import LinearMixedModel


@dataclass
class LRTResult:
    """Likelihood ratio tests between nested models, ordered by ``npar``."""

    models: list[str]
    n_obs: int
    npar: list[int]
    deviance: list[float]
    chi_sq: list[float | None]
    chi_df: list[int | None]
    p_value: list[float | None]

    def __str__(self) -> str:
        lines = ["Likelihood ratio tests:"]
        for i, name in enumerate(self.models):
            lines.append(f"  {i + 1}: {name}")
        lines.append("")
        lines.append(f"{'':8} {'npar':>6} {'deviance':>12} {'Chisq':>10} {'Df':>4} {'Pr(>Chisq)':>12}")

        for i in range(len(self.models)):
            if self.chi_sq[i] is not None:
                chi_sq = f"{self.chi_sq[i]:10.4f}"
                chi_df = f"{self.chi_df[i]:4d}"
                p_val = self.p_value[i]
                p_str = f"{p_val:12.2e}" if p_val < 0.001 else f"{p_val:12.4f}"
            else:
                chi_sq = chi_df = p_str = ""
            lines.append(
                f"{'Model ' + str(i + 1):8} {self.npar[i]:6d} {self.deviance[i]:12.4f} "
                f"{chi_sq:>10} {chi_df:>4} {p_str:>12}"
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"LRTResult(n_models={len(self.models)})"


def lrt(*models: LinearMixedModel | GeneralizedLinearMixedModel) -> LRTResult:
    """Compare fitted nested models by their deviances.

    Models are sorted by number of parameters; each is tested against
    the preceding one with a chi-squared reference distribution on the
    difference in parameter counts. Models must be fit to the same
    observations.
    """
    if len(models) < 2:
        raise ValueError("lrt requires at least 2 models to compare")
    for m in models:
        if not m.fitted:
            raise NotFittedError("lrt")

    n_obs = [m.nobs for m in models]
    if len(set(n_obs)) > 1:
        raise ValueError(
            f"Models have different numbers of observations: {n_obs}. "
            "Models must be fit to the same data for comparison."
        )
    if any(getattr(m, "REML", False) for m in models):
        warnings.warn(
            "Some models were fit with REML. Likelihood ratio tests of fixed effects "
            "require ML fits; consider set_reml(False) and refitting.",
            UserWarning,
            stacklevel=2,
        )

    ordered = sorted(models, key=lambda m: m.npar)
    npar = [m.npar for m in ordered]
    deviance = [m.deviance for m in ordered]

    chi_sq: list[float | None] = [None]
    chi_df: list[int | None] = [None]
    p_value: list[float | None] = [None]
    for i in range(1, len(ordered)):
        df_diff = npar[i] - npar[i - 1]
        if df_diff <= 0:
            chi_sq.append(None)
            chi_df.append(None)
            p_value.append(None)
            continue
        stat = max(deviance[i - 1] - deviance[i], 0.0)
        chi_sq.append(float(stat))
        chi_df.append(df_diff)
        p_value.append(float(stats.chi2.sf(stat, df_diff)))

    return LRTResult(
        models=[repr(m) for m in ordered],
        n_obs=n_obs[0],
        npar=npar,
        deviance=deviance,
        chi_sq=chi_sq,
        chi_df=chi_df,
        p_value=p_value,
    )
