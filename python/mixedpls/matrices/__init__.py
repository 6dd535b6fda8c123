from mixedpls.matrices.blocks import (
    BlockMatrix,
    DenseBlock,
    DiagonalBlock,
    HBlkDiagBlock,
    SparseBlock,
)
from mixedpls.matrices.lowertri import CovarianceFactor
from mixedpls.matrices.remat import ReMat, ScalarReMat, VectorReMat, remat

__all__ = [
    "BlockMatrix",
    "DenseBlock",
    "DiagonalBlock",
    "HBlkDiagBlock",
    "SparseBlock",
    "CovarianceFactor",
    "ReMat",
    "ScalarReMat",
    "VectorReMat",
    "remat",
]
