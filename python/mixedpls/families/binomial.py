from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import special

from mixedpls.families.base import Family
from mixedpls.families.links import LogitLink, ProbitLink

_MU_EPS = 1e-10


class Binomial(Family):
    """Binomial proportions.

    The response is the proportion of successes and the prior weights
    are the numbers of trials; a 0/1 response with unit weights is
    Bernoulli.
    """

    name = "binomial"
    default_link = LogitLink
    valid_links = (LogitLink, ProbitLink)

    def variance(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return mu * (1.0 - mu)

    def clip_mu(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.clip(mu, _MU_EPS, 1.0 - _MU_EPS)

    def check_response(self, y: NDArray[np.floating], wt: NDArray[np.floating]) -> None:
        if np.any(y < 0) or np.any(y > 1):
            raise ValueError("binomial response must be a proportion in [0, 1]")

    def initialize(self, y: NDArray[np.floating], wt: NDArray[np.floating]) -> NDArray[np.floating]:
        return (wt * y + 0.5) / (wt + 1.0)

    def deviance_resids(
        self,
        y: NDArray[np.floating],
        mu: NDArray[np.floating],
        wt: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        mu = self.clip_mu(mu)
        return 2.0 * wt * (special.xlogy(y, y / mu) + special.xlogy(1.0 - y, (1.0 - y) / (1.0 - mu)))
