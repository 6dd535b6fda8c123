from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from mixedpls.families.base import Family
from mixedpls.families.links import IdentityLink, LogLink


class Gaussian(Family):
    name = "gaussian"
    default_link = IdentityLink
    valid_links = (IdentityLink, LogLink)

    def variance(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.ones_like(mu, dtype=np.float64)

    def deviance_resids(
        self,
        y: NDArray[np.floating],
        mu: NDArray[np.floating],
        wt: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        return wt * (y - mu) ** 2
