from mixedpls.estimation.laplace import glm_irls, laplace_deviance, pirls
from mixedpls.estimation.optimizers import OptimizeResult, available_optimizers, run_optimizer
from mixedpls.estimation.pls import (
    PLSDiag,
    PLSGeneral,
    PLSOne,
    PLSSolver,
    PLSTwo,
    choose_solver,
    crosstab_density,
)

__all__ = [
    "PLSSolver",
    "PLSOne",
    "PLSTwo",
    "PLSGeneral",
    "PLSDiag",
    "choose_solver",
    "crosstab_density",
    "pirls",
    "laplace_deviance",
    "glm_irls",
    "run_optimizer",
    "available_optimizers",
    "OptimizeResult",
]
