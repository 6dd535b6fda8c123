from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from mixedpls.families.links import Link


class Family:
    """Conditional distribution of the response in a generalized linear model."""

    name = "family"
    default_link: type[Link] = Link
    valid_links: tuple[type[Link], ...] = ()

    def __init__(self, link: Link | type[Link] | None = None) -> None:
        if link is None:
            link = self.default_link
        if isinstance(link, type):
            link = link()
        if self.valid_links and not isinstance(link, self.valid_links):
            valid = ", ".join(cls.name for cls in self.valid_links)
            raise ValueError(f"{link.name} link is not available for {self.name}; use one of {valid}")
        self.link = link

    def __repr__(self) -> str:
        return f"{type(self).__name__}(link={self.link.name})"

    def variance(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        raise NotImplementedError

    def deviance_resids(
        self,
        y: NDArray[np.floating],
        mu: NDArray[np.floating],
        wt: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """Squared deviance residuals; their sum is the deviance."""
        raise NotImplementedError

    def initialize(self, y: NDArray[np.floating], wt: NDArray[np.floating]) -> NDArray[np.floating]:
        """Starting values of the mean for IRLS."""
        return np.asarray(y, dtype=np.float64).copy()

    def check_response(self, y: NDArray[np.floating], wt: NDArray[np.floating]) -> None:
        pass

    def clip_mu(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return mu

    def weights(self, eta: NDArray[np.floating], mu: NDArray[np.floating]) -> NDArray[np.floating]:
        """IRLS working weights, before prior weights are applied."""
        return self.link.mu_eta(eta) ** 2 / self.variance(mu)

    def deviance(
        self,
        y: NDArray[np.floating],
        mu: NDArray[np.floating],
        wt: NDArray[np.floating],
    ) -> float:
        return float(np.sum(self.deviance_resids(y, mu, wt)))
