from __future__ import annotations

import warnings
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray
from scipy import linalg

from mixedpls.errors import StepHalvingError, StepHalvingWarning
from mixedpls.families.base import Family

if TYPE_CHECKING:
    from mixedpls.models.glmm import GeneralizedLinearMixedModel


def glm_irls(
    X: NDArray[np.floating],
    y: NDArray[np.floating],
    family: Family,
    wt: NDArray[np.floating],
    offset: NDArray[np.floating],
    maxiter: int = 25,
    tol: float = 1e-8,
) -> NDArray[np.floating]:
    """Fixed-effects-only GLM fit by IRLS; used for starting values of β."""
    p = X.shape[1]
    if p == 0:
        return np.zeros(0)
    mu = family.initialize(y, wt)
    eta = family.link.link(mu)
    beta = np.zeros(p)
    dev_old = np.inf
    for _ in range(maxiter):
        mu_eta = family.link.mu_eta(eta)
        z = eta - offset + (y - mu) / mu_eta
        sw = np.sqrt(wt * family.weights(eta, mu))
        beta = linalg.lstsq(X * sw[:, None], z * sw)[0]
        eta = offset + X @ beta
        mu = family.clip_mu(family.link.inverse(eta))
        dev = family.deviance(y, mu, wt)
        if abs(dev - dev_old) < tol * (abs(dev) + 0.1):
            break
        dev_old = dev
    return beta


def laplace_deviance(
    devresid: NDArray[np.floating],
    ldL2: float,
    u: list[NDArray[np.floating]],
) -> float:
    """Laplace approximation to the deviance.

    The sum of the squared deviance residuals, plus ``log |L|^2`` of
    the random-effects factor, plus the squared length of the spherical
    random effects.
    """
    return float(np.sum(devresid) + ldL2 + sum(float(np.sum(ui**2)) for ui in u))


def pirls(
    model: GeneralizedLinearMixedModel,
    maxiter: int = 100,
    max_halvings: int = 10,
    tol: float = 1e-4,
) -> float:
    """Find the conditional modes of the random effects for fixed β and θ.

    Starts from ``u = 0``. Each iteration solves the penalized least
    squares problem of the inner linear model for a new ``u``; a step
    that increases the Laplace deviance is halved toward the previous
    ``u``. Returns the Laplace deviance at the accepted ``u``.

    Raises
    ------
    StepHalvingError
        If step-halving is exhausted on the first iteration.
    """
    u, u0 = model.u, model.u0
    for ui, u0i in zip(u, u0):
        ui.fill(0.0)
        u0i.fill(0.0)
    obj0 = model.update_laplace_deviance()
    obj = obj0
    for iteration in range(1, maxiter + 1):
        model.solve_u()
        obj = model.update_laplace_deviance()
        nhalf = 0
        while obj > obj0:
            nhalf += 1
            if nhalf > max_halvings:
                if iteration < 2:
                    raise StepHalvingError(
                        f"PIRLS step-halving failed to reduce the deviance after "
                        f"{max_halvings} halvings on the first iteration"
                    )
                warnings.warn(
                    f"PIRLS step-halving exhausted at iteration {iteration}; "
                    "accepting the current random effects",
                    StepHalvingWarning,
                    stacklevel=2,
                )
                break
            for ui, u0i in zip(u, u0):
                ui += u0i
                ui *= 0.5
            obj = model.update_laplace_deviance()
        if abs(obj - obj0) < tol:
            break
        for ui, u0i in zip(u, u0):
            np.copyto(u0i, ui)
        obj0 = obj
    return obj
