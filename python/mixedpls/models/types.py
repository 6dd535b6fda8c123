from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray


@dataclass
class OptSummary:
    """Summary of the outer optimization.

    ``initial`` and ``final`` are parameter vectors; for a GLMM they hold
    β followed by θ.
    """

    initial: NDArray[np.floating]
    final: NDArray[np.floating]
    fmin: float
    feval: int
    optimizer: str
    converged: bool = False
    message: str = ""

    def __repr__(self) -> str:
        return (
            f"OptSummary(optimizer='{self.optimizer}', fmin={self.fmin:.6f}, "
            f"feval={self.feval}, converged={self.converged})"
        )


@dataclass
class LogLik:
    value: float
    df: int
    nobs: int
    REML: bool = False

    def __float__(self) -> float:
        return float(self.value)

    def __str__(self) -> str:
        reml_str = " (REML)" if self.REML else ""
        return f"'log Lik.' {self.value:.4f} (df={self.df}){reml_str}"

    def __repr__(self) -> str:
        return f"LogLik(value={self.value:.4f}, df={self.df}, nobs={self.nobs}, REML={self.REML})"


@dataclass
class VarCorrGroup:
    name: str
    column_names: list[str]
    stddev: NDArray[np.floating]
    corr: NDArray[np.floating]

    @property
    def variance(self) -> NDArray[np.floating]:
        return self.stddev**2

    @property
    def cov(self) -> NDArray[np.floating]:
        return self.corr * np.outer(self.stddev, self.stddev)


@dataclass
class VarCorr:
    """Variance components: one group per random-effects term plus the residual.

    ``residual`` is the residual standard deviation; it is 1.0 for GLMMs
    without a scale parameter.
    """

    groups: dict[str, VarCorrGroup]
    residual: float

    def __str__(self) -> str:
        lines = ["Variance components:"]
        lines.append(f" {'Groups':<11} {'Name':<12} {'Variance':>10} {'Std.Dev.':>10} {'Corr':>6}")
        for key, group in self.groups.items():
            for i, col in enumerate(group.column_names):
                grp = key if i == 0 else ""
                var = group.variance[i]
                sd = group.stddev[i]
                if i == 0:
                    lines.append(f" {grp:<11} {col:<12} {var:>10.4f} {sd:>10.4f}")
                else:
                    corr_vals = " ".join(f"{group.corr[i, j]:>6.2f}" for j in range(i))
                    lines.append(f" {grp:<11} {col:<12} {var:>10.4f} {sd:>10.4f} {corr_vals}")
        lines.append(
            f" {'Residual':<11} {'':<12} {self.residual**2:>10.4f} {self.residual:>10.4f}"
        )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"VarCorr({len(self.groups)} groups, residual={self.residual:.4f})"

    def as_dict(self) -> dict[str, dict[str, float]]:
        return {
            key: dict(zip(group.column_names, group.variance.tolist()))
            for key, group in self.groups.items()
        }
