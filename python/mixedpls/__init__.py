from mixedpls import datasets, families, inference
from mixedpls.datasets import load_cbpp, load_dyestuff, load_sleepstudy
from mixedpls.errors import (
    ConvergenceWarning,
    DimensionMismatch,
    InvalidKeyError,
    NotFittedError,
    StepHalvingError,
    StepHalvingWarning,
)
from mixedpls.inference.anova import LRTResult, lrt
from mixedpls.matrices import CovarianceFactor, ReMat, remat
from mixedpls.matrices.design import ModelMatrices, build_model_matrices
from mixedpls.models.control import GlmmControl, LmmControl, glmmControl, lmmControl
from mixedpls.models.glmm import GeneralizedLinearMixedModel, glmm
from mixedpls.models.lmm import LinearMixedModel, lmm
from mixedpls.models.types import LogLik, OptSummary, VarCorr, VarCorrGroup

__version__ = "0.1.0"

__all__ = [
    "lmm",
    "LinearMixedModel",
    "lmmControl",
    "LmmControl",
    "glmm",
    "GeneralizedLinearMixedModel",
    "glmmControl",
    "GlmmControl",
    "remat",
    "ReMat",
    "CovarianceFactor",
    "build_model_matrices",
    "ModelMatrices",
    "lrt",
    "LRTResult",
    "LogLik",
    "OptSummary",
    "VarCorr",
    "VarCorrGroup",
    "DimensionMismatch",
    "InvalidKeyError",
    "NotFittedError",
    "StepHalvingError",
    "ConvergenceWarning",
    "StepHalvingWarning",
    "families",
    "datasets",
    "inference",
    "load_sleepstudy",
    "load_cbpp",
    "load_dyestuff",
    "__version__",
]
