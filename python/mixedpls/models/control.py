from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mixedpls.estimation.optimizers import ALL_OPTIMIZERS, NLOPT_OPTIMIZER_NAMES


def _validate_common_control(
    *,
    optimizer: str,
    maxiter: int,
    boundary_tol: float,
    crosstab_density: float,
    rhobeg: float,
    rhoend: float,
) -> None:
    if optimizer not in ALL_OPTIMIZERS:
        raise ValueError(
            f"Unknown optimizer '{optimizer}'. "
            f"Valid options: {', '.join(sorted(ALL_OPTIMIZERS))}"
        )

    if maxiter < 1:
        raise ValueError("maxiter must be at least 1")

    if boundary_tol < 0:
        raise ValueError("boundary_tol must be non-negative")

    if not 0.0 <= crosstab_density <= 1.0:
        raise ValueError(f"crosstab_density must lie in [0, 1], got {crosstab_density}")

    if rhobeg <= 0 or rhoend <= 0 or rhoend > rhobeg:
        raise ValueError("rhobeg and rhoend must be positive with rhoend <= rhobeg")


def _build_optimizer_options(
    *,
    optimizer: str,
    maxiter: int,
    ftol: float,
    xtol: float,
    rhobeg: float,
    rhoend: float,
    opt_ctrl: dict[str, Any],
) -> dict[str, Any]:
    options: dict[str, Any] = {"maxiter": maxiter}

    if optimizer == "bobyqa":
        options["rhobeg"] = rhobeg
        options["rhoend"] = rhoend

    if optimizer in NLOPT_OPTIMIZER_NAMES:
        options["ftol"] = ftol
        options["xtol_abs"] = xtol

    if optimizer == "L-BFGS-B":
        options["ftol"] = ftol

    if optimizer in ("Nelder-Mead", "Powell"):
        options["xatol" if optimizer == "Nelder-Mead" else "xtol"] = xtol
        options["fatol" if optimizer == "Nelder-Mead" else "ftol"] = ftol

    options.update(opt_ctrl)
    return options


@dataclass
class LmmControl:
    """Control parameters for fitting a ``LinearMixedModel``.

    Parameters
    ----------
    optimizer : str, default "bobyqa"
        Derivative-free box-constrained optimizer for θ. Options:
        - "bobyqa": Py-BOBYQA, the default
        - "nloptwrap_BOBYQA", "nloptwrap_NEWUOA", "nloptwrap_PRAXIS",
          "nloptwrap_SBPLX", "nloptwrap_COBYLA", "nloptwrap_NELDERMEAD":
          NLopt algorithms (requires nlopt)
        - "Nelder-Mead", "Powell", "L-BFGS-B", "TNC", "COBYLA": scipy
    maxiter : int, default 1000
        Iteration limit; BOBYQA and NLopt allow ``maxiter * (n + 1)``
        objective evaluations for ``n`` parameters.
    ftol : float, default 1e-12
        Relative function tolerance (NLopt and scipy optimizers).
    xtol : float, default 1e-10
        Parameter tolerance (NLopt and scipy optimizers).
    rhobeg, rhoend : float, default 0.5 and 1e-6
        Initial and final trust-region radius for BOBYQA.
    boundary_tol : float, default 1e-4
        A fit is reported singular when a diagonal element of a
        covariance factor is below this value.
    check_conv : bool, default True
        Warn with ``ConvergenceWarning`` when the optimizer reports failure.
    crosstab_density : float, default 0.5
        Two grouping factors whose level crosstab is denser than this
        are factored with dense cross blocks.
    optCtrl : dict, optional
        Extra options passed straight to the optimizer.

    Examples
    --------
    >>> ctrl = LmmControl(optimizer="Nelder-Mead", maxiter=2000)
    >>> model = LinearMixedModel(X, y, terms, control=ctrl)
    """

    optimizer: str = "bobyqa"
    maxiter: int = 1000
    ftol: float = 1e-12
    xtol: float = 1e-10
    rhobeg: float = 0.5
    rhoend: float = 1e-6
    boundary_tol: float = 1e-4
    check_conv: bool = True
    crosstab_density: float = 0.5
    optCtrl: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _validate_common_control(
            optimizer=self.optimizer,
            maxiter=self.maxiter,
            boundary_tol=self.boundary_tol,
            crosstab_density=self.crosstab_density,
            rhobeg=self.rhobeg,
            rhoend=self.rhoend,
        )

    def optimizer_options(self) -> dict[str, Any]:
        """Options dict for :func:`~mixedpls.estimation.optimizers.run_optimizer`."""
        return _build_optimizer_options(
            optimizer=self.optimizer,
            maxiter=self.maxiter,
            ftol=self.ftol,
            xtol=self.xtol,
            rhobeg=self.rhobeg,
            rhoend=self.rhoend,
            opt_ctrl=self.optCtrl,
        )

    def __repr__(self) -> str:
        return (
            f"LmmControl(optimizer='{self.optimizer}', maxiter={self.maxiter}, "
            f"crosstab_density={self.crosstab_density})"
        )


@dataclass
class GlmmControl:
    """Control parameters for fitting a ``GeneralizedLinearMixedModel``.

    Accepts the optimizer settings of :class:`LmmControl` plus the
    PIRLS settings below.

    Parameters
    ----------
    pirls_maxiter : int, default 100
        Iteration limit of the inner PIRLS loop.
    max_halvings : int, default 10
        Step-halving attempts per PIRLS iteration. Running out on the
        first iteration raises ``StepHalvingError``; later it only warns.
    pirls_tol : float, default 1e-4
        Absolute change in the Laplace deviance at which PIRLS stops.
    """

    optimizer: str = "bobyqa"
    maxiter: int = 1000
    ftol: float = 1e-12
    xtol: float = 1e-10
    rhobeg: float = 0.5
    rhoend: float = 1e-6
    boundary_tol: float = 1e-4
    check_conv: bool = True
    crosstab_density: float = 0.5
    pirls_maxiter: int = 100
    max_halvings: int = 10
    pirls_tol: float = 1e-4
    optCtrl: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.pirls_maxiter < 1:
            raise ValueError("pirls_maxiter must be at least 1")
        if self.max_halvings < 0:
            raise ValueError("max_halvings must be non-negative")
        if self.pirls_tol <= 0:
            raise ValueError("pirls_tol must be positive")
        _validate_common_control(
            optimizer=self.optimizer,
            maxiter=self.maxiter,
            boundary_tol=self.boundary_tol,
            crosstab_density=self.crosstab_density,
            rhobeg=self.rhobeg,
            rhoend=self.rhoend,
        )

    def optimizer_options(self) -> dict[str, Any]:
        return _build_optimizer_options(
            optimizer=self.optimizer,
            maxiter=self.maxiter,
            ftol=self.ftol,
            xtol=self.xtol,
            rhobeg=self.rhobeg,
            rhoend=self.rhoend,
            opt_ctrl=self.optCtrl,
        )

    def lmm_control(self) -> LmmControl:
        """Settings for the inner linear model."""
        return LmmControl(
            optimizer=self.optimizer,
            maxiter=self.maxiter,
            ftol=self.ftol,
            xtol=self.xtol,
            rhobeg=self.rhobeg,
            rhoend=self.rhoend,
            boundary_tol=self.boundary_tol,
            check_conv=self.check_conv,
            crosstab_density=self.crosstab_density,
            optCtrl=dict(self.optCtrl),
        )

    def __repr__(self) -> str:
        return (
            f"GlmmControl(optimizer='{self.optimizer}', maxiter={self.maxiter}, "
            f"pirls_maxiter={self.pirls_maxiter}, pirls_tol={self.pirls_tol})"
        )


def lmmControl(
    optimizer: str = "bobyqa",
    maxiter: int = 1000,
    ftol: float = 1e-12,
    xtol: float = 1e-10,
    rhobeg: float = 0.5,
    rhoend: float = 1e-6,
    boundary_tol: float = 1e-4,
    check_conv: bool = True,
    crosstab_density: float = 0.5,
    optCtrl: dict[str, Any] | None = None,
) -> LmmControl:
    """Create an :class:`LmmControl`; see it for parameter documentation."""
    return LmmControl(
        optimizer=optimizer,
        maxiter=maxiter,
        ftol=ftol,
        xtol=xtol,
        rhobeg=rhobeg,
        rhoend=rhoend,
        boundary_tol=boundary_tol,
        check_conv=check_conv,
        crosstab_density=crosstab_density,
        optCtrl=optCtrl or {},
    )


def glmmControl(
    optimizer: str = "bobyqa",
    maxiter: int = 1000,
    ftol: float = 1e-12,
    xtol: float = 1e-10,
    rhobeg: float = 0.5,
    rhoend: float = 1e-6,
    boundary_tol: float = 1e-4,
    check_conv: bool = True,
    crosstab_density: float = 0.5,
    pirls_maxiter: int = 100,
    max_halvings: int = 10,
    pirls_tol: float = 1e-4,
    optCtrl: dict[str, Any] | None = None,
) -> GlmmControl:
    """Create a :class:`GlmmControl`; see it for parameter documentation."""
    return GlmmControl(
        optimizer=optimizer,
        maxiter=maxiter,
        ftol=ftol,
        xtol=xtol,
        rhobeg=rhobeg,
        rhoend=rhoend,
        boundary_tol=boundary_tol,
        check_conv=check_conv,
        crosstab_density=crosstab_density,
        pirls_maxiter=pirls_maxiter,
        max_halvings=max_halvings,
        pirls_tol=pirls_tol,
        optCtrl=optCtrl or {},
    )
