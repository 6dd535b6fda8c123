from mixedpls.models.control import GlmmControl, LmmControl, glmmControl, lmmControl
from mixedpls.models.glmm import GeneralizedLinearMixedModel, glmm
from mixedpls.models.lmm import LinearMixedModel, lmm
from mixedpls.models.types import LogLik, OptSummary, VarCorr, VarCorrGroup

__all__ = [
    "lmm",
    "LinearMixedModel",
    "glmm",
    "GeneralizedLinearMixedModel",
    "lmmControl",
    "LmmControl",
    "glmmControl",
    "GlmmControl",
    "LogLik",
    "OptSummary",
    "VarCorr",
    "VarCorrGroup",
]
