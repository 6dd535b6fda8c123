from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

try:
    import pybobyqa

    _HAS_BOBYQA = True
except ImportError:
    _HAS_BOBYQA = False

try:
    import nlopt

    _HAS_NLOPT = True
except ImportError:
    _HAS_NLOPT = False


SCIPY_OPTIMIZERS = {
    "L-BFGS-B",
    "Nelder-Mead",
    "Powell",
    "TNC",
    "COBYLA",
}

_NLOPT_ALGORITHMS = {
    "nloptwrap_BOBYQA": "LN_BOBYQA",
    "nloptwrap_NEWUOA": "LN_NEWUOA_BOUND",
    "nloptwrap_PRAXIS": "LN_PRAXIS",
    "nloptwrap_SBPLX": "LN_SBPLX",
    "nloptwrap_COBYLA": "LN_COBYLA",
    "nloptwrap_NELDERMEAD": "LN_NELDERMEAD",
}

NLOPT_OPTIMIZER_NAMES = set(_NLOPT_ALGORITHMS)

ALL_OPTIMIZERS = SCIPY_OPTIMIZERS | NLOPT_OPTIMIZER_NAMES | {"bobyqa"}

# Stand-in for an infinite bound where the optimizer needs finite values.
_BIG = 1e20


def has_bobyqa() -> bool:
    return _HAS_BOBYQA


def has_nlopt() -> bool:
    return _HAS_NLOPT


def available_optimizers() -> list[str]:
    opts = list(SCIPY_OPTIMIZERS)
    if _HAS_BOBYQA:
        opts.append("bobyqa")
    if _HAS_NLOPT:
        opts.extend(NLOPT_OPTIMIZER_NAMES)
    return sorted(opts)


@dataclass
class OptimizeResult:
    """Outcome reported back by the optimizer.

    ``nfev`` counts objective evaluations; ``success`` is the
    optimizer's own verdict and is never turned into an error.
    """

    x: NDArray[np.floating]
    fun: float
    success: bool
    nfev: int
    message: str


class _Counted:
    def __init__(self, fun: Callable[[NDArray[np.floating]], float]) -> None:
        self.fun = fun
        self.nfev = 0

    def __call__(self, x: NDArray[np.floating]) -> float:
        self.nfev += 1
        return float(self.fun(np.asarray(x, dtype=np.float64)))


def _bounds_arrays(
    lower: NDArray[np.floating],
    upper: NDArray[np.floating] | None,
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    lower = np.asarray(lower, dtype=np.float64)
    if upper is None:
        upper = np.full_like(lower, np.inf)
    else:
        upper = np.asarray(upper, dtype=np.float64)
    return lower, upper


def _optimize_bobyqa(
    fun: _Counted,
    x0: NDArray[np.floating],
    lower: NDArray[np.floating],
    upper: NDArray[np.floating],
    options: dict[str, Any],
) -> OptimizeResult:
    if not _HAS_BOBYQA:
        raise ImportError(
            "pybobyqa is required for the 'bobyqa' optimizer. "
            "Install it with: pip install Py-BOBYQA"
        )

    result = pybobyqa.solve(
        fun,
        x0,
        bounds=(np.clip(lower, -_BIG, _BIG), np.clip(upper, -_BIG, _BIG)),
        maxfun=options.get("maxiter", 1000) * (len(x0) + 1),
        rhobeg=options.get("rhobeg", 0.5),
        rhoend=options.get("rhoend", 1e-6),
        seek_global_minimum=options.get("seek_global_minimum", False),
        scaling_within_bounds=False,
    )

    success = result.flag in (result.EXIT_SUCCESS, result.EXIT_SLOW_WARNING)
    x = x0 if result.x is None else np.asarray(result.x, dtype=np.float64)
    fval = float("inf") if result.f is None else float(result.f)

    return OptimizeResult(x=x, fun=fval, success=success, nfev=fun.nfev, message=result.msg)


def _optimize_nlopt(
    fun: _Counted,
    x0: NDArray[np.floating],
    lower: NDArray[np.floating],
    upper: NDArray[np.floating],
    options: dict[str, Any],
    method: str,
) -> OptimizeResult:
    if not _HAS_NLOPT:
        raise ImportError(
            f"nlopt is required for '{method}'. Install it with: pip install nlopt"
        )

    n = len(x0)
    opt = nlopt.opt(getattr(nlopt, _NLOPT_ALGORITHMS[method]), n)
    opt.set_lower_bounds(np.clip(lower, -_BIG, _BIG).tolist())
    opt.set_upper_bounds(np.clip(upper, -_BIG, _BIG).tolist())

    def nlopt_objective(x: list[float], grad: list[float]) -> float:
        return fun(np.array(x))

    opt.set_min_objective(nlopt_objective)
    opt.set_maxeval(options.get("maxiter", 1000) * (n + 1))
    opt.set_ftol_rel(options.get("ftol", 1e-12))
    opt.set_ftol_abs(options.get("ftol_abs", 1e-8))
    opt.set_xtol_abs(options.get("xtol_abs", 1e-10))

    messages = {
        nlopt.SUCCESS: "Optimization succeeded",
        nlopt.STOPVAL_REACHED: "Stopval reached",
        nlopt.FTOL_REACHED: "Ftol reached",
        nlopt.XTOL_REACHED: "Xtol reached",
        nlopt.MAXEVAL_REACHED: "Max evaluations reached",
        nlopt.MAXTIME_REACHED: "Max time reached",
        nlopt.ROUNDOFF_LIMITED: "Roundoff limited",
    }

    try:
        x_opt = opt.optimize(np.asarray(x0, dtype=np.float64).tolist())
    except nlopt.RoundoffLimited:
        return OptimizeResult(
            x=np.asarray(x0, dtype=np.float64),
            fun=float("inf"),
            success=False,
            nfev=fun.nfev,
            message=messages[nlopt.ROUNDOFF_LIMITED],
        )

    code = opt.last_optimize_result()
    return OptimizeResult(
        x=np.array(x_opt),
        fun=opt.last_optimum_value(),
        success=code > 0 and code != nlopt.MAXEVAL_REACHED,
        nfev=fun.nfev,
        message=messages.get(code, f"Unknown result code: {code}"),
    )


def _optimize_scipy(
    fun: _Counted,
    x0: NDArray[np.floating],
    method: str,
    lower: NDArray[np.floating],
    upper: NDArray[np.floating],
    options: dict[str, Any],
) -> OptimizeResult:
    bounds = [
        (lb if np.isfinite(lb) else None, ub if np.isfinite(ub) else None)
        for lb, ub in zip(lower, upper)
    ]
    scipy_options = {k: v for k, v in options.items() if k not in ("rhobeg", "rhoend")}
    result = minimize(fun, x0, method=method, bounds=bounds, options=scipy_options)

    return OptimizeResult(
        x=np.asarray(result.x, dtype=np.float64),
        fun=float(result.fun),
        success=bool(result.success),
        nfev=fun.nfev,
        message=str(getattr(result, "message", "")),
    )


def run_optimizer(
    fun: Callable[[NDArray[np.floating]], float],
    x0: NDArray[np.floating],
    method: str,
    lower: NDArray[np.floating],
    upper: NDArray[np.floating] | None = None,
    options: dict[str, Any] | None = None,
) -> OptimizeResult:
    """Minimize ``fun`` subject to box constraints.

    The objective is called strictly sequentially. Infinite bounds are
    allowed; optimizers that need finite bounds receive ``±1e20``.
    """
    options = options or {}
    x0 = np.asarray(x0, dtype=np.float64)
    lower, upper = _bounds_arrays(lower, upper)
    if lower.shape != x0.shape or upper.shape != x0.shape:
        raise ValueError(
            f"bounds of shapes {lower.shape} and {upper.shape} do not match x0 of shape {x0.shape}"
        )
    counted = _Counted(fun)

    if method.lower() == "bobyqa":
        return _optimize_bobyqa(counted, x0, lower, upper, options)
    elif method in NLOPT_OPTIMIZER_NAMES:
        return _optimize_nlopt(counted, x0, lower, upper, options, method)
    elif method in SCIPY_OPTIMIZERS:
        return _optimize_scipy(counted, x0, method, lower, upper, options)
    else:
        raise ValueError(
            f"Unknown optimizer '{method}'. "
            f"Valid options: {', '.join(sorted(ALL_OPTIMIZERS))}"
        )
