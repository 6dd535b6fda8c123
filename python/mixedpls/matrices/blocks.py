from __future__ import annotations

from collections.abc import Iterator

import numpy as np
from numpy.typing import NDArray
from scipy import linalg, sparse

from mixedpls.errors import DimensionMismatch


def _check_shape(expected: tuple[int, ...], actual: tuple[int, ...], what: str) -> None:
    if tuple(expected) != tuple(actual):
        raise DimensionMismatch(f"{what}: expected shape {expected}, got {actual}")


class DiagonalBlock:
    """Diagonal block, the cross-product of a scalar term with itself."""

    kind = "diagonal"

    def __init__(self, diag: NDArray[np.floating]) -> None:
        self.diag = np.array(diag, dtype=np.float64).ravel()

    @property
    def shape(self) -> tuple[int, int]:
        n = self.diag.shape[0]
        return (n, n)

    def copy(self) -> DiagonalBlock:
        return DiagonalBlock(self.diag)

    def copy_from(self, other: DiagonalBlock) -> None:
        _check_shape(self.shape, other.shape, "DiagonalBlock.copy_from")
        np.copyto(self.diag, other.diag)

    def toarray(self) -> NDArray[np.floating]:
        return np.diag(self.diag)

    def pattern(self) -> sparse.csc_matrix:
        return sparse.identity(self.diag.shape[0], format="csc")

    def scale(self, s: float) -> None:
        self.diag *= s

    def add_identity(self) -> None:
        self.diag += 1.0

    def cholesky(self) -> float:
        np.sqrt(self.diag, out=self.diag)
        return float(np.sum(np.log(self.diag)))

    def tsolve(self, target: DenseBlock | SparseBlock) -> None:
        if target.shape[0] != self.diag.shape[0]:
            raise DimensionMismatch(
                f"cannot solve {self.shape} factor against block with {target.shape[0]} rows"
            )
        if isinstance(target, DenseBlock):
            target.data /= self.diag[:, None]
        else:
            target.data = (sparse.diags(1.0 / self.diag) @ target.data).tocsc()

    def solve(self, v: NDArray[np.floating]) -> NDArray[np.floating]:
        return v / self.diag

    def subtract(self, other: NDArray[np.floating] | sparse.spmatrix) -> None:
        _check_shape(self.shape, other.shape, "DiagonalBlock.subtract")
        self.diag -= np.asarray(other.diagonal()).ravel()


class HBlkDiagBlock:
    """Homogeneous block-diagonal block: one dense ``k x k`` block per level.

    Rows and columns are level-major, so entry ``(l * k + a, l * k + b)``
    of the full matrix is ``arr[l, a, b]``.
    """

    kind = "hblkdiag"

    def __init__(self, arr: NDArray[np.floating]) -> None:
        arr = np.array(arr, dtype=np.float64)
        if arr.ndim != 3 or arr.shape[1] != arr.shape[2]:
            raise DimensionMismatch(
                f"HBlkDiagBlock requires an array of shape (levels, k, k), got {arr.shape}"
            )
        self.arr = arr

    @property
    def nlevels(self) -> int:
        return self.arr.shape[0]

    @property
    def vsize(self) -> int:
        return self.arr.shape[1]

    @property
    def shape(self) -> tuple[int, int]:
        n = self.nlevels * self.vsize
        return (n, n)

    def copy(self) -> HBlkDiagBlock:
        return HBlkDiagBlock(self.arr)

    def copy_from(self, other: HBlkDiagBlock) -> None:
        _check_shape(self.arr.shape, other.arr.shape, "HBlkDiagBlock.copy_from")
        np.copyto(self.arr, other.arr)

    def toarray(self) -> NDArray[np.floating]:
        return sparse.block_diag(list(self.arr), format="csc").toarray()

    def pattern(self) -> sparse.csc_matrix:
        k = self.vsize
        return sparse.kron(
            sparse.identity(self.nlevels, format="csc"), np.ones((k, k)), format="csc"
        )

    def add_identity(self) -> None:
        self.arr += np.eye(self.vsize)

    def cholesky(self) -> float:
        lower = np.linalg.cholesky(self.arr)
        self.arr[:] = lower.transpose(0, 2, 1)
        return float(np.sum(np.log(np.diagonal(self.arr, axis1=1, axis2=2))))

    def tsolve(self, target: DenseBlock | SparseBlock) -> None:
        if target.shape[0] != self.shape[0]:
            raise DimensionMismatch(
                f"cannot solve {self.shape} factor against block with {target.shape[0]} rows"
            )
        lower = self.arr.transpose(0, 2, 1)
        if isinstance(target, DenseBlock):
            if target.data.size == 0:
                return
            d = target.data.reshape(self.nlevels, self.vsize, -1)
            d[:] = np.linalg.solve(lower, d)
        else:
            linv = sparse.block_diag(list(np.linalg.inv(lower)), format="csc")
            target.data = (linv @ target.data).tocsc()

    def solve(self, v: NDArray[np.floating]) -> NDArray[np.floating]:
        rhs = v.reshape(self.nlevels, self.vsize, 1)
        return np.linalg.solve(self.arr, rhs).reshape(-1)

    def subtract(self, other: NDArray[np.floating] | sparse.spmatrix) -> None:
        _check_shape(self.shape, other.shape, "HBlkDiagBlock.subtract")
        k = self.vsize
        if sparse.issparse(other):
            coo = other.tocoo()
            rl, cl = coo.row // k, coo.col // k
            inblock = rl == cl
            np.subtract.at(
                self.arr,
                (rl[inblock], coo.row[inblock] % k, coo.col[inblock] % k),
                coo.data[inblock],
            )
        else:
            idx = np.arange(self.nlevels)[:, None] * k + np.arange(k)
            self.arr -= np.asarray(other)[idx[:, :, None], idx[:, None, :]]


class DenseBlock:
    kind = "dense"

    def __init__(self, data: NDArray[np.floating]) -> None:
        data = np.array(data, dtype=np.float64, order="C")
        if data.ndim != 2:
            raise DimensionMismatch(f"DenseBlock requires a 2-d array, got {data.ndim}-d")
        self.data = data

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    def copy(self) -> DenseBlock:
        return DenseBlock(self.data)

    def copy_from(self, other: Block) -> None:
        _check_shape(self.shape, other.shape, "DenseBlock.copy_from")
        if isinstance(other, DenseBlock):
            np.copyto(self.data, other.data)
        else:
            np.copyto(self.data, other.toarray())

    def toarray(self) -> NDArray[np.floating]:
        return self.data.copy()

    def pattern(self) -> sparse.csc_matrix:
        return sparse.csc_matrix(np.ones(self.shape))

    def scale(self, s: float) -> None:
        self.data *= s

    def add_identity(self) -> None:
        idx = np.arange(min(self.shape))
        self.data[idx, idx] += 1.0

    def cholesky(self) -> float:
        if self.data.size == 0:
            return 0.0
        self.data[:] = linalg.cholesky(self.data, lower=False)
        return float(np.sum(np.log(np.diag(self.data))))

    def tsolve(self, target: DenseBlock | SparseBlock) -> None:
        if target.shape[0] != self.shape[0]:
            raise DimensionMismatch(
                f"cannot solve {self.shape} factor against block with {target.shape[0]} rows"
            )
        if self.data.size == 0 or target.shape[1] == 0:
            return
        res = linalg.solve_triangular(self.data, target.toarray(), trans="T", lower=False)
        if isinstance(target, DenseBlock):
            target.data[:] = res
        else:
            target.data = sparse.csc_matrix(res)

    def solve(self, v: NDArray[np.floating]) -> NDArray[np.floating]:
        if self.data.size == 0:
            return np.array(v, dtype=np.float64)
        return linalg.solve_triangular(self.data, v, lower=False)

    def matvec(self, v: NDArray[np.floating]) -> NDArray[np.floating]:
        return self.data @ v

    def subtract(self, other: NDArray[np.floating] | sparse.spmatrix) -> None:
        _check_shape(self.shape, other.shape, "DenseBlock.subtract")
        self.data -= other.toarray() if sparse.issparse(other) else other


class SparseBlock:
    """Cross block between two different grouping factors (CSC storage)."""

    kind = "sparse"

    def __init__(self, data: sparse.spmatrix) -> None:
        self.data = sparse.csc_matrix(data, dtype=np.float64)

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    @property
    def density(self) -> float:
        n = self.shape[0] * self.shape[1]
        return self.data.nnz / n if n else 0.0

    def copy(self) -> SparseBlock:
        return SparseBlock(self.data.copy())

    def copy_from(self, other: SparseBlock) -> None:
        _check_shape(self.shape, other.shape, "SparseBlock.copy_from")
        self.data = other.data.copy()

    def toarray(self) -> NDArray[np.floating]:
        return self.data.toarray()

    def pattern(self) -> sparse.csc_matrix:
        p = self.data.copy()
        p.data[:] = 1.0
        return p

    def scale(self, s: float) -> None:
        self.data.data *= s

    def matvec(self, v: NDArray[np.floating]) -> NDArray[np.floating]:
        return self.data @ v

    def subtract(self, other: NDArray[np.floating] | sparse.spmatrix) -> None:
        _check_shape(self.shape, other.shape, "SparseBlock.subtract")
        self.data = (self.data - sparse.csc_matrix(other)).tocsc()


Block = DiagonalBlock | HBlkDiagBlock | DenseBlock | SparseBlock


def downdate(target: Block, left: DenseBlock | SparseBlock, right: DenseBlock | SparseBlock) -> None:
    """In-place ``target -= left' @ right``."""
    if left.shape[0] != right.shape[0]:
        raise DimensionMismatch(
            f"cannot form cross-product of blocks with {left.shape[0]} and {right.shape[0]} rows"
        )
    if left.shape[1] == 0 or right.shape[1] == 0:
        return
    target.subtract(left.data.T @ right.data)


def densify(block: Block, threshold: float = 0.3) -> Block:
    """Return a dense copy of a sparse block whose fill ratio exceeds ``threshold``."""
    if isinstance(block, SparseBlock) and block.density > threshold:
        return DenseBlock(block.toarray())
    return block


class BlockMatrix:
    """Symmetric matrix of blocks; only blocks ``(i, j)`` with ``i <= j`` are stored."""

    def __init__(self, nblocks: int) -> None:
        self.nblocks = nblocks
        self._blocks: dict[tuple[int, int], Block] = {}

    def _check_key(self, key: tuple[int, int]) -> tuple[int, int]:
        i, j = key
        if not (0 <= i <= j < self.nblocks):
            raise IndexError(
                f"block ({i}, {j}) is outside the upper triangle of a "
                f"{self.nblocks} x {self.nblocks} block matrix"
            )
        return i, j

    def __getitem__(self, key: tuple[int, int]) -> Block:
        return self._blocks[self._check_key(key)]

    def __setitem__(self, key: tuple[int, int], block: Block) -> None:
        self._blocks[self._check_key(key)] = block

    def __iter__(self) -> Iterator[tuple[int, int]]:
        return iter(sorted(self._blocks))

    def copy(self) -> BlockMatrix:
        res = BlockMatrix(self.nblocks)
        for key, block in self._blocks.items():
            res._blocks[key] = block.copy()
        return res

    def copy_from(self, other: BlockMatrix) -> None:
        if other.nblocks != self.nblocks:
            raise DimensionMismatch(
                f"block matrices have {self.nblocks} and {other.nblocks} blocks"
            )
        for key, block in self._blocks.items():
            block.copy_from(other[key])

    def sizes(self) -> list[int]:
        return [self[i, i].shape[0] for i in range(self.nblocks)]

    def toarray(self) -> NDArray[np.floating]:
        """Assemble the full symmetric matrix."""
        sizes = self.sizes()
        offsets = np.concatenate([[0], np.cumsum(sizes)])
        res = np.zeros((offsets[-1], offsets[-1]))
        for (i, j), block in self._blocks.items():
            rows = slice(offsets[i], offsets[i + 1])
            cols = slice(offsets[j], offsets[j + 1])
            res[rows, cols] = block.toarray()
            if i != j:
                res[cols, rows] = res[rows, cols].T
        return res
