from mixedpls.families.base import Family
from mixedpls.families.binomial import Binomial
from mixedpls.families.gaussian import Gaussian
from mixedpls.families.links import IdentityLink, Link, LogitLink, LogLink, ProbitLink
from mixedpls.families.poisson import Poisson

__all__ = [
    "Family",
    "Gaussian",
    "Binomial",
    "Poisson",
    "Link",
    "IdentityLink",
    "LogitLink",
    "ProbitLink",
    "LogLink",
]
