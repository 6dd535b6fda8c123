from __future__ import annotations

from mixedpls.datasets.lme4 import load_cbpp, load_dyestuff, load_sleepstudy

__all__ = ["load_sleepstudy", "load_cbpp", "load_dyestuff"]
