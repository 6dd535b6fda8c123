from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import special

from mixedpls.families.base import Family
from mixedpls.families.links import IdentityLink, LogLink


class Poisson(Family):
    name = "poisson"
    default_link = LogLink
    valid_links = (LogLink, IdentityLink)

    def variance(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return mu

    def check_response(self, y: NDArray[np.floating], wt: NDArray[np.floating]) -> None:
        if np.any(y < 0):
            raise ValueError("poisson response must be non-negative")

    def initialize(self, y: NDArray[np.floating], wt: NDArray[np.floating]) -> NDArray[np.floating]:
        return y + 0.1

    def deviance_resids(
        self,
        y: NDArray[np.floating],
        mu: NDArray[np.floating],
        wt: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        return 2.0 * wt * (special.xlogy(y, y / mu) - (y - mu))
