from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from mixedpls.errors import DimensionMismatch
from mixedpls.matrices.blocks import (
    BlockMatrix,
    DenseBlock,
    DiagonalBlock,
    downdate,
)
from mixedpls.matrices.lowertri import CovarianceFactor
from mixedpls.matrices.remat import ReMat


class PLSSolver:
    """Blocked Cholesky factorization for penalized least squares.

    Blocks ``0 .. nterms - 1`` of ``A`` belong to the random-effects
    terms, block ``nterms`` to the fixed-effects matrix ``X`` and block
    ``nterms + 1`` to the response ``y``. Each call to :meth:`update`
    recomputes the upper factor ``R`` of

        [Λ'AΛ + I   Λ'Z'X   Λ'Z'y]
        [           X'X     X'y  ]
        [                   y'y  ]

    from ``A`` in place. ``R`` is allocated once and reused.

    Attributes
    ----------
    ldL2 : float
        ``log |L|^2`` of the random-effects part of the factor.
    ldRX2 : float
        ``log |RX|^2`` of the fixed-effects part of the factor.
    pwrss : float
        Penalized weighted residual sum of squares.
    """

    def __init__(self, A: BlockMatrix, vsizes: Sequence[int]) -> None:
        if A.nblocks != len(vsizes) + 2:
            raise DimensionMismatch(
                f"block matrix with {A.nblocks} blocks cannot hold {len(vsizes)} terms"
            )
        self.A = A
        self.vsizes = list(vsizes)
        self.nterms = len(vsizes)
        self.R = self._allocate()
        self.ldL2 = np.nan
        self.ldRX2 = np.nan
        self.pwrss = np.nan

    def __repr__(self) -> str:
        return f"{type(self).__name__}(nterms={self.nterms})"

    def _allocate(self) -> BlockMatrix:
        return self.A.copy()

    def _check_factors(self, factors: Sequence[CovarianceFactor]) -> None:
        if [f.size for f in factors] != self.vsizes:
            raise DimensionMismatch(
                f"factor sizes {[f.size for f in factors]} do not match term sizes {self.vsizes}"
            )

    def _scale(self, factors: Sequence[CovarianceFactor]) -> None:
        nt = self.nterms
        for i, j in self.R:
            block = self.R[i, j]
            if i < nt:
                factors[i].lscale(block)
            if j < nt:
                factors[j].rscale(block)

    def update(self, factors: Sequence[CovarianceFactor]) -> None:
        """Refactor ``R`` for the current values of the covariance factors."""
        self._check_factors(factors)
        self.R.copy_from(self.A)
        self._scale(factors)
        R, nt = self.R, self.nterms
        ldL2 = 0.0
        for j in range(nt):
            Rjj = R[j, j]
            for i in range(j):
                downdate(Rjj, R[i, j], R[i, j])
            Rjj.add_identity()
            ldL2 += 2.0 * Rjj.cholesky()
            for k in range(j + 1, nt + 2):
                Rjk = R[j, k]
                for i in range(j):
                    downdate(Rjk, R[i, j], R[i, k])
                Rjj.tsolve(Rjk)
        self.ldL2 = ldL2
        self._factor_fixed()

    def _factor_fixed(self) -> None:
        R, nt = self.R, self.nterms
        X, y = nt, nt + 1
        for i in range(nt):
            downdate(R[X, X], R[i, X], R[i, X])
            downdate(R[X, y], R[i, X], R[i, y])
            downdate(R[y, y], R[i, y], R[i, y])
        self.ldRX2 = 2.0 * R[X, X].cholesky()
        R[X, X].tsolve(R[X, y])
        downdate(R[y, y], R[X, y], R[X, y])
        self.pwrss = float(R[y, y].data[0, 0])

    def fixef(self) -> NDArray[np.floating]:
        nt = self.nterms
        return self.R[nt, nt].solve(self.R[nt, nt + 1].data[:, 0])

    def spherical_re(self, beta: NDArray[np.floating] | None = None) -> list[NDArray[np.floating]]:
        """Conditional modes ``u`` per term, by back-substitution through ``R``."""
        R, nt = self.R, self.nterms
        beta = self.fixef() if beta is None else np.asarray(beta, dtype=np.float64)
        u: list[NDArray[np.floating]] = [np.empty(0)] * nt
        for j in reversed(range(nt)):
            r = R[j, nt + 1].data[:, 0] - R[j, nt].matvec(beta)
            for k in range(j + 1, nt):
                r = r - R[j, k].matvec(u[k])
            u[j] = R[j, j].solve(r)
        return u

    def gradient(
        self, factors: Sequence[CovarianceFactor], nobs: int, reml: bool
    ) -> NDArray[np.floating]:
        raise NotImplementedError(
            f"{type(self).__name__} has no analytic gradient; "
            "it is available for models with a single grouping factor"
        )


class PLSOne(PLSSolver):
    """Single grouping factor: ``Λ'AΛ + I`` is block diagonal by level."""

    def update(self, factors: Sequence[CovarianceFactor]) -> None:
        self._check_factors(factors)
        lam = factors[0]
        R = self.R
        R.copy_from(self.A)
        R00 = R[0, 0]
        lam.lscale(R00)
        lam.rscale(R00)
        R00.add_identity()
        self.ldL2 = 2.0 * R00.cholesky()
        for c in (1, 2):
            lam.lscale(R[0, c])
            R00.tsolve(R[0, c])
        self._factor_fixed()

    def gradient(
        self, factors: Sequence[CovarianceFactor], nobs: int, reml: bool
    ) -> NDArray[np.floating]:
        """Analytic gradient of the objective at the last :meth:`update`."""
        lam = factors[0].data
        k = lam.shape[0]
        A00 = self.A[0, 0]
        arr = A00.diag[:, None, None] if isinstance(A00, DiagonalBlock) else A00.arr
        nlev = arr.shape[0]
        B = self.A[0, 1].data.reshape(nlev, k, -1)
        p = B.shape[2]
        a0y = self.A[0, 2].data.reshape(nlev, k)
        beta = self.fixef()
        u = self.spherical_re(beta)[0].reshape(nlev, k)

        M = lam.T @ arr @ lam + np.eye(k)
        T1 = np.linalg.solve(M, lam.T @ arr).sum(axis=0)
        resid = a0y - B @ beta - (arr @ (u @ lam.T)[:, :, None])[:, :, 0]
        T2 = resid.T @ u
        dof = nobs - p if reml else nobs

        cols, rows = np.triu_indices(k)
        grad = 2.0 * T1[cols, rows] - 2.0 * (dof / self.pwrss) * T2[rows, cols]
        if reml and p > 0:
            G = B - arr @ lam @ np.linalg.solve(M, lam.T @ B)
            RX = self.R[1, 1].data
            SinvGt = np.linalg.inv(RX.T @ RX) @ G.transpose(0, 2, 1)
            T3 = (lam.T @ G @ SinvGt).sum(axis=0)
            grad -= 2.0 * T3[cols, rows]
        return grad


class PLSTwo(PLSSolver):
    """Two grouping factors whose levels co-occur densely.

    The cross block ``R[0, 1]`` and the second diagonal block are held
    dense from the start.
    """

    def _allocate(self) -> BlockMatrix:
        R = self.A.copy()
        R[0, 1] = DenseBlock(R[0, 1].toarray())
        R[1, 1] = DenseBlock(R[1, 1].toarray())
        return R

    def update(self, factors: Sequence[CovarianceFactor]) -> None:
        self._check_factors(factors)
        l0, l1 = factors
        R = self.R
        R.copy_from(self.A)
        R00, R01, R11 = R[0, 0], R[0, 1], R[1, 1]

        l0.lscale(R00)
        l0.rscale(R00)
        R00.add_identity()
        ldL2 = 2.0 * R00.cholesky()
        l0.lscale(R01)
        l1.rscale(R01)
        R00.tsolve(R01)
        for c in (2, 3):
            l0.lscale(R[0, c])
            R00.tsolve(R[0, c])

        l1.lscale(R11)
        l1.rscale(R11)
        R11.add_identity()
        downdate(R11, R01, R01)
        ldL2 += 2.0 * R11.cholesky()
        for c in (2, 3):
            l1.lscale(R[1, c])
            downdate(R[1, c], R01, R[0, c])
            R11.tsolve(R[1, c])

        self.ldL2 = ldL2
        self._factor_fixed()


def _binary(p: sparse.spmatrix) -> sparse.csc_matrix:
    p = sparse.csc_matrix(p)
    p.eliminate_zeros()
    p.data[:] = 1.0
    return p


def _has_fill(pattern: sparse.spmatrix, allowed: sparse.spmatrix) -> bool:
    extra = sparse.csc_matrix(pattern - pattern.multiply(allowed))
    extra.eliminate_zeros()
    return extra.nnz > 0


class PLSGeneral(PLSSolver):
    """Arbitrary terms, factored by the blocked sweep in :meth:`PLSSolver.update`.

    At construction a symbolic factorization finds the diagonal blocks
    that would lose their diagonal or block-diagonal structure. Those
    blocks, and every block to their right in the same block row, are
    stored dense for the life of the solver.
    """

    def _expanded(self, i: int, nlev: int) -> sparse.csc_matrix:
        k = self.vsizes[i]
        return sparse.kron(sparse.identity(nlev), np.ones((k, k)), format="csc")

    def _allocate(self) -> BlockMatrix:
        R = self.A.copy()
        nt = self.nterms
        expand = [self._expanded(i, R[i, i].shape[0] // self.vsizes[i]) for i in range(nt)]
        pat = {
            (i, j): _binary(expand[i] @ R[i, j].pattern() @ expand[j])
            for i in range(nt)
            for j in range(i, nt)
        }
        for j in range(nt):
            for i in range(j):
                pat[j, j] = _binary(pat[j, j] + pat[i, j].T @ pat[i, j])
            if isinstance(R[j, j], DenseBlock) or _has_fill(pat[j, j], R[j, j].pattern()):
                for k in range(j, nt):
                    if not isinstance(R[j, k], DenseBlock):
                        R[j, k] = DenseBlock(R[j, k].toarray())
                    pat[j, k] = R[j, k].pattern()
                continue
            for k in range(j + 1, nt):
                for i in range(j):
                    pat[j, k] = pat[j, k] + pat[i, j].T @ pat[i, k]
                pat[j, k] = _binary(pat[j, k])
        return R

    def dense_rows(self) -> list[int]:
        """Block rows whose diagonal block was promoted to dense storage."""
        return [j for j in range(self.nterms) if isinstance(self.R[j, j], DenseBlock)]


class PLSDiag(PLSGeneral):
    """All terms scalar: scaling is elementwise and diagonal factors are square roots."""

    def _scale(self, factors: Sequence[CovarianceFactor]) -> None:
        nt = self.nterms
        lam = [float(f.data[0, 0]) for f in factors]
        for i, j in self.R:
            s = (lam[i] if i < nt else 1.0) * (lam[j] if j < nt else 1.0)
            if s != 1.0:
                self.R[i, j].scale(s)


def crosstab_density(t0: ReMat, t1: ReMat) -> float:
    """Fraction of level pairs of two grouping factors that co-occur."""
    if t0.nobs != t1.nobs:
        raise DimensionMismatch(f"terms have {t0.nobs} and {t1.nobs} observations")
    pairs = np.unique(t0.refs * t1.nlevels + t1.refs)
    return len(pairs) / (t0.nlevels * t1.nlevels)


def choose_solver(A: BlockMatrix, terms: Sequence[ReMat], crosstab_threshold: float = 0.5) -> PLSSolver:
    """Select the factorization variant once, from the structure of the terms."""
    vsizes = [t.vsize for t in terms]
    if len(terms) == 1:
        return PLSOne(A, vsizes)
    if len(terms) == 2 and crosstab_density(terms[0], terms[1]) > crosstab_threshold:
        return PLSTwo(A, vsizes)
    if all(k == 1 for k in vsizes):
        return PLSDiag(A, vsizes)
    return PLSGeneral(A, vsizes)
