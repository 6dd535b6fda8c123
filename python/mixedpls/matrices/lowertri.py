from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from mixedpls.errors import DimensionMismatch, InvalidKeyError
from mixedpls.matrices.blocks import (
    Block,
    DenseBlock,
    DiagonalBlock,
    HBlkDiagBlock,
    SparseBlock,
)

_THETA_KEYS = ("theta", "θ")


class CovarianceFactor:
    """Lower-triangular relative covariance factor for one random-effects term.

    The free parameters are the lower-triangle entries taken in
    column-major order, so a ``2 x 2`` factor ``[[a, 0], [b, c]]`` has
    ``theta == [a, b, c]``. Diagonal entries are bounded below by zero.

    The factor acts on level-major blocks: for a term with ``L`` levels
    the full factor is ``kron(I_L, data)``.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("size must be at least 1")
        self.data = np.eye(size)
        cols, rows = np.triu_indices(size)
        self._rows = rows
        self._cols = cols

    @property
    def size(self) -> int:
        return self.data.shape[0]

    @property
    def n_theta(self) -> int:
        return len(self._rows)

    @property
    def theta(self) -> NDArray[np.floating]:
        return self.data[self._rows, self._cols].copy()

    @theta.setter
    def theta(self, value: NDArray[np.floating]) -> None:
        value = np.asarray(value, dtype=np.float64).ravel()
        if value.shape[0] != self.n_theta:
            raise DimensionMismatch(
                f"factor of size {self.size} needs {self.n_theta} parameters, got {value.shape[0]}"
            )
        self.data[self._rows, self._cols] = value

    def __getitem__(self, key: str) -> NDArray[np.floating]:
        if key not in _THETA_KEYS:
            raise InvalidKeyError(key, _THETA_KEYS[:1])
        return self.theta

    def __setitem__(self, key: str, value: NDArray[np.floating]) -> None:
        if key not in _THETA_KEYS:
            raise InvalidKeyError(key, _THETA_KEYS[:1])
        self.theta = value

    def lower_bounds(self) -> NDArray[np.floating]:
        return np.where(self._rows == self._cols, 0.0, -np.inf)

    def __repr__(self) -> str:
        return f"CovarianceFactor(theta={self.theta.tolist()})"

    def _levels(self, n: int) -> int:
        if n % self.size:
            raise DimensionMismatch(
                f"block dimension {n} is not a multiple of the factor size {self.size}"
            )
        return n // self.size

    def lscale(self, block: Block) -> None:
        """In-place ``block <- Λ' block``."""
        lam = self.data
        if isinstance(block, DiagonalBlock):
            if self.size != 1:
                raise DimensionMismatch(f"diagonal block cannot be scaled by a {self.size} x {self.size} factor")
            block.diag *= lam[0, 0]
        elif isinstance(block, HBlkDiagBlock):
            if block.vsize != self.size:
                raise DimensionMismatch(
                    f"block size {block.vsize} does not match factor size {self.size}"
                )
            block.arr[:] = lam.T @ block.arr
        elif isinstance(block, DenseBlock):
            nlev = self._levels(block.shape[0])
            if block.data.size == 0:
                return
            if self.size == 1:
                block.data *= lam[0, 0]
            else:
                d = block.data.reshape(nlev, self.size, -1)
                d[:] = lam.T @ d
        elif isinstance(block, SparseBlock):
            nlev = self._levels(block.shape[0])
            if self.size == 1:
                block.data.data *= lam[0, 0]
            else:
                left = sparse.kron(sparse.identity(nlev), lam.T, format="csc")
                block.data = (left @ block.data).tocsc()
        else:
            raise TypeError(f"cannot scale block of type {type(block).__name__}")

    def rscale(self, block: Block) -> None:
        """In-place ``block <- block Λ``."""
        lam = self.data
        if isinstance(block, DiagonalBlock):
            if self.size != 1:
                raise DimensionMismatch(f"diagonal block cannot be scaled by a {self.size} x {self.size} factor")
            block.diag *= lam[0, 0]
        elif isinstance(block, HBlkDiagBlock):
            if block.vsize != self.size:
                raise DimensionMismatch(
                    f"block size {block.vsize} does not match factor size {self.size}"
                )
            block.arr[:] = block.arr @ lam
        elif isinstance(block, DenseBlock):
            nlev = self._levels(block.shape[1])
            if block.data.size == 0:
                return
            if self.size == 1:
                block.data *= lam[0, 0]
            else:
                d = block.data.reshape(block.shape[0], nlev, self.size)
                d[:] = d @ lam
        elif isinstance(block, SparseBlock):
            nlev = self._levels(block.shape[1])
            if self.size == 1:
                block.data.data *= lam[0, 0]
            else:
                right = sparse.kron(sparse.identity(nlev), lam, format="csc")
                block.data = (block.data @ right).tocsc()
        else:
            raise TypeError(f"cannot scale block of type {type(block).__name__}")

    def scale_levels(self, u: NDArray[np.floating]) -> NDArray[np.floating]:
        """Map spherical effects of shape ``(levels, k)`` to ``b = Λ u``."""
        return u @ self.data.T

    def stddev_corr(self) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
        """Relative standard deviations and the correlation matrix of ``Λ Λ'``."""
        cov = self.data @ self.data.T
        sd = np.sqrt(np.diag(cov))
        if self.size == 1:
            return sd, np.ones((1, 1))
        with np.errstate(divide="ignore", invalid="ignore"):
            corr = cov / np.outer(sd, sd)
        corr[~np.isfinite(corr)] = 0.0
        np.fill_diagonal(corr, 1.0)
        return sd, corr
