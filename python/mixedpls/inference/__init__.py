from mixedpls.inference.anova import LRTResult, lrt

__all__ = ["lrt", "LRTResult"]
