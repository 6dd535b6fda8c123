from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import special, stats

_EPS = np.finfo(np.float64).eps


class Link:
    """Link function ``eta = g(mu)``; ``mu_eta`` is ``d mu / d eta``."""

    name = "link"

    def link(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        raise NotImplementedError

    def inverse(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        raise NotImplementedError

    def mu_eta(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class IdentityLink(Link):
    name = "identity"

    def link(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.asarray(mu, dtype=np.float64)

    def inverse(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.asarray(eta, dtype=np.float64)

    def mu_eta(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.ones_like(eta, dtype=np.float64)


class LogitLink(Link):
    name = "logit"

    def link(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return special.logit(mu)

    def inverse(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return special.expit(eta)

    def mu_eta(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        mu = special.expit(eta)
        return np.maximum(mu * (1.0 - mu), _EPS)


class ProbitLink(Link):
    name = "probit"

    def link(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return special.ndtri(mu)

    def inverse(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return special.ndtr(eta)

    def mu_eta(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.maximum(stats.norm.pdf(eta), _EPS)


class LogLink(Link):
    name = "log"

    def link(self, mu: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.log(mu)

    def inverse(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.maximum(np.exp(eta), _EPS)

    def mu_eta(self, eta: NDArray[np.floating]) -> NDArray[np.floating]:
        return np.maximum(np.exp(eta), _EPS)
