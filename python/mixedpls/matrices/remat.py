from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy import sparse

from mixedpls.errors import DimensionMismatch
from mixedpls.matrices.blocks import DenseBlock, DiagonalBlock, HBlkDiagBlock, SparseBlock


class ReMat:
    """A random-effects term.

    The term stands for an implicit ``nobs x (nlevels * vsize)`` model
    matrix ``Z`` whose row ``i`` is zero except for the ``vsize`` raw
    values of observation ``i``, placed in the columns of that
    observation's level. ``Z`` is never materialized.

    Parameters
    ----------
    refs : array of int
        0-based level index of each observation.
    z : ndarray
        Raw values, shape ``(vsize, nobs)``.
    levels : array
        Sorted distinct values of the grouping factor.
    name : str
        Name of the grouping factor.
    column_names : sequence of str
        Names of the ``vsize`` random-effect columns.
    """

    def __init__(
        self,
        refs: ArrayLike,
        z: NDArray[np.floating],
        levels: ArrayLike | None = None,
        name: str = "",
        column_names: Sequence[str] | None = None,
    ) -> None:
        refs = np.asarray(refs, dtype=np.intp).ravel()
        z = np.asarray(z, dtype=np.float64)
        if z.ndim != 2:
            raise DimensionMismatch(f"raw values must be 2-d (vsize, nobs), got {z.ndim}-d")
        if z.shape[1] != refs.shape[0]:
            raise DimensionMismatch(
                f"{refs.shape[0]} group indices but {z.shape[1]} observations of raw values"
            )
        if refs.size and refs.min() < 0:
            raise ValueError("group indices must be non-negative")
        if levels is None:
            levels = np.arange(refs.max() + 1 if refs.size else 0)
        levels = np.asarray(levels)
        if refs.size and refs.max() >= len(levels):
            raise ValueError(f"group index {refs.max()} out of range for {len(levels)} levels")
        self.refs = refs
        self.z = z
        self.levels = levels
        self.name = name
        if column_names is None:
            column_names = ["(Intercept)"] if z.shape[0] == 1 else [f"z{i}" for i in range(z.shape[0])]
        if len(column_names) != z.shape[0]:
            raise DimensionMismatch(
                f"{len(column_names)} column names for {z.shape[0]} random-effect columns"
            )
        self.column_names = list(column_names)

    @property
    def nobs(self) -> int:
        return self.refs.shape[0]

    @property
    def nlevels(self) -> int:
        return len(self.levels)

    @property
    def vsize(self) -> int:
        return self.z.shape[0]

    @property
    def shape(self) -> tuple[int, int]:
        return (self.nobs, self.nlevels * self.vsize)

    def size(self) -> tuple[int, int]:
        return self.shape

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, nobs={self.nobs}, "
            f"nlevels={self.nlevels}, vsize={self.vsize})"
        )

    def _check(self, B: NDArray[np.floating], R: NDArray[np.floating], transposed: bool) -> None:
        nrow_b, nrow_r = (self.nobs, self.shape[1]) if transposed else (self.shape[1], self.nobs)
        if B.shape[0] != nrow_b or R.shape[0] != nrow_r or B.shape[1:] != R.shape[1:]:
            op = "Z'B" if transposed else "ZB"
            raise DimensionMismatch(
                f"{op} with Z of shape {self.shape}: B has shape {B.shape}, R has shape {R.shape}"
            )

    def mul_add(
        self,
        alpha: float,
        B: NDArray[np.floating],
        beta: float,
        R: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """In-place ``R := alpha * Z @ B + beta * R``; returns ``R``."""
        B = np.asarray(B, dtype=np.float64)
        self._check(B, R, transposed=False)
        tail = B.shape[1:]
        rows = B.reshape(self.nlevels, self.vsize, *tail)[self.refs]
        zt = self.z.T.reshape(self.nobs, self.vsize, *([1] * len(tail)))
        contrib = np.sum(zt * rows, axis=1)
        if beta == 0.0:
            R[...] = alpha * contrib
        else:
            R *= beta
            R += alpha * contrib
        return R

    def t_mul_add(
        self,
        alpha: float,
        B: NDArray[np.floating],
        beta: float,
        R: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """In-place ``R := alpha * Z' @ B + beta * R``; returns ``R``."""
        B = np.asarray(B, dtype=np.float64)
        self._check(B, R, transposed=True)
        tail = B.shape[1:]
        zt = self.z.T.reshape(self.nobs, self.vsize, *([1] * len(tail)))
        acc = np.zeros((self.nlevels, self.vsize, *tail))
        np.add.at(acc, self.refs, zt * B[:, None, ...])
        if beta == 0.0:
            R[...] = alpha * acc.reshape(R.shape)
        else:
            R *= beta
            R += alpha * acc.reshape(R.shape)
        return R

    def _self_crossprod(self) -> DiagonalBlock | HBlkDiagBlock:
        raise NotImplementedError

    def crossprod(
        self, other: ReMat | NDArray[np.floating]
    ) -> DiagonalBlock | HBlkDiagBlock | SparseBlock | DenseBlock:
        """Return the block ``Z' other``.

        Against itself this is diagonal (scalar term) or homogeneous
        block-diagonal (vector term); against another term it is a sparse
        matrix of co-occurring levels; against a dense matrix it is dense.
        """
        if other is self:
            return self._self_crossprod()
        if isinstance(other, ReMat):
            if other.nobs != self.nobs:
                raise DimensionMismatch(
                    f"terms {self.name!r} and {other.name!r} have {self.nobs} and "
                    f"{other.nobs} observations"
                )
            ki, kj = self.vsize, other.vsize
            rows = self.refs[:, None] * ki + np.arange(ki)
            cols = other.refs[:, None] * kj + np.arange(kj)
            rr = np.broadcast_to(rows[:, :, None], (self.nobs, ki, kj))
            cc = np.broadcast_to(cols[:, None, :], (self.nobs, ki, kj))
            vals = self.z.T[:, :, None] * other.z.T[:, None, :]
            mat = sparse.coo_matrix(
                (vals.ravel(), (rr.ravel(), cc.ravel())),
                shape=(self.shape[1], other.shape[1]),
            )
            return SparseBlock(mat.tocsc())
        dense = np.asarray(other, dtype=np.float64)
        if dense.ndim == 1:
            dense = dense[:, None]
        res = np.zeros((self.shape[1], dense.shape[1]))
        return DenseBlock(self.t_mul_add(1.0, dense, 0.0, res))

    def reweighted(self, sqrtw: NDArray[np.floating]) -> ReMat:
        """Copy of this term with rows scaled by square-root weights."""
        sqrtw = np.asarray(sqrtw, dtype=np.float64)
        if sqrtw.shape != (self.nobs,):
            raise DimensionMismatch(f"{sqrtw.shape[0]} weights for {self.nobs} observations")
        return type(self)(self.refs, self.z * sqrtw, self.levels, self.name, self.column_names)

    def unscaled_re(self, y: NDArray[np.floating], b: NDArray[np.floating]) -> NDArray[np.floating]:
        """Add ``Z b`` to ``y`` in place, ``b`` on the original scale."""
        return self.mul_add(1.0, np.asarray(b).ravel(), 1.0, y)


class ScalarReMat(ReMat):
    def __init__(
        self,
        refs: ArrayLike,
        z: NDArray[np.floating],
        levels: ArrayLike | None = None,
        name: str = "",
        column_names: Sequence[str] | None = None,
    ) -> None:
        z = np.asarray(z, dtype=np.float64)
        if z.ndim == 1:
            z = z[None, :]
        if z.shape[0] != 1:
            raise DimensionMismatch(f"scalar term needs one raw value per observation, got {z.shape[0]}")
        super().__init__(refs, z, levels, name, column_names)

    def _self_crossprod(self) -> DiagonalBlock:
        return DiagonalBlock(np.bincount(self.refs, weights=self.z[0] ** 2, minlength=self.nlevels))


class VectorReMat(ReMat):
    def _self_crossprod(self) -> HBlkDiagBlock:
        zt = self.z.T
        arr = np.zeros((self.nlevels, self.vsize, self.vsize))
        np.add.at(arr, self.refs, zt[:, :, None] * zt[:, None, :])
        return HBlkDiagBlock(arr)


def remat(
    group: ArrayLike,
    z: ArrayLike | None = None,
    name: str = "",
    column_names: Sequence[str] | None = None,
) -> ReMat:
    """Build a random-effects term from a grouping column.

    Parameters
    ----------
    group : array-like
        Grouping factor, one value per observation. Levels are the
        sorted distinct values.
    z : array-like, optional
        Raw regressors in model-matrix orientation, shape ``(nobs,)`` or
        ``(nobs, k)``. Defaults to a column of ones (random intercept).
    name : str
        Name of the grouping factor.
    column_names : sequence of str, optional
        Names of the random-effect columns.

    Returns
    -------
    ReMat
        A ``ScalarReMat`` when there is one column, else a ``VectorReMat``.
    """
    levels, refs = np.unique(np.asarray(group), return_inverse=True)
    refs = refs.ravel()
    if z is None:
        z = np.ones(refs.shape[0])
    z = np.asarray(z, dtype=np.float64)
    if z.ndim == 2 and z.shape[1] == 1:
        z = z[:, 0]
    if z.shape[0] != refs.shape[0]:
        raise DimensionMismatch(
            f"grouping factor has {refs.shape[0]} observations, raw values have {z.shape[0]}"
        )
    if z.ndim == 1:
        return ScalarReMat(refs, z, levels, name, column_names)
    if z.ndim == 2:
        return VectorReMat(refs, z.T, levels, name, column_names)
    raise DimensionMismatch(f"raw values must be 1-d or 2-d, got {z.ndim}-d")
