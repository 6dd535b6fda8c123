import numpy as np
import pytest
from scipy import sparse

from mixedpls import CovarianceFactor, DimensionMismatch, InvalidKeyError
from mixedpls.matrices import DenseBlock, DiagonalBlock, HBlkDiagBlock, SparseBlock


class TestTheta:
    def test_starts_at_identity(self) -> None:
        f = CovarianceFactor(3)
        np.testing.assert_allclose(f.data, np.eye(3))
        np.testing.assert_allclose(f.theta, [1.0, 0.0, 0.0, 1.0, 0.0, 1.0])

    def test_column_major_lower_triangle(self) -> None:
        f = CovarianceFactor(2)
        f.theta = [1.0, 2.0, 3.0]
        np.testing.assert_allclose(f.data, [[1.0, 0.0], [2.0, 3.0]])

    def test_round_trip(self) -> None:
        f = CovarianceFactor(3)
        theta = np.array([0.5, -0.2, 0.1, 1.5, 0.3, 0.0])
        f["theta"] = theta
        np.testing.assert_allclose(f["θ"], theta)
        np.testing.assert_allclose(np.triu(f.data, 1), 0.0)

    def test_wrong_length(self) -> None:
        f = CovarianceFactor(2)
        with pytest.raises(DimensionMismatch):
            f.theta = [1.0, 2.0]

    def test_invalid_key(self) -> None:
        f = CovarianceFactor(1)
        with pytest.raises(InvalidKeyError, match="Valid keys: theta"):
            f["lambda"]
        with pytest.raises(KeyError):
            f["lambda"] = [1.0]

    def test_lower_bounds(self) -> None:
        f = CovarianceFactor(3)
        lb = f.lower_bounds()
        np.testing.assert_array_equal(lb == 0.0, [True, False, False, True, False, True])
        assert np.all(np.isneginf(lb[lb != 0.0]))

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError):
            CovarianceFactor(0)


class TestScaling:
    def test_scalar_diagonal(self) -> None:
        f = CovarianceFactor(1)
        f.theta = [2.0]
        block = DiagonalBlock(np.array([1.0, 3.0]))
        f.lscale(block)
        f.rscale(block)
        np.testing.assert_allclose(block.diag, [4.0, 12.0])

    def test_hblkdiag_matches_kron(self) -> None:
        rng = np.random.default_rng(10)
        f = CovarianceFactor(2)
        f.theta = [1.2, -0.4, 0.7]
        a = rng.normal(size=(3, 2, 2))
        a = a @ a.transpose(0, 2, 1)
        block = HBlkDiagBlock(a)
        full = np.kron(np.eye(3), f.data)
        expected = full.T @ block.toarray() @ full
        f.lscale(block)
        f.rscale(block)
        np.testing.assert_allclose(block.toarray(), expected)

    def test_dense_left_and_right(self) -> None:
        rng = np.random.default_rng(11)
        f = CovarianceFactor(2)
        f.theta = [0.5, 0.3, 2.0]
        full = np.kron(np.eye(2), f.data)
        data = rng.normal(size=(4, 4))
        block = DenseBlock(data)
        f.lscale(block)
        np.testing.assert_allclose(block.data, full.T @ data)
        block = DenseBlock(data)
        f.rscale(block)
        np.testing.assert_allclose(block.data, data @ full)

    def test_sparse_left(self) -> None:
        f = CovarianceFactor(2)
        f.theta = [1.0, 2.0, 3.0]
        data = sparse.random(4, 3, density=0.6, random_state=2, format="csc")
        block = SparseBlock(data)
        f.lscale(block)
        full = np.kron(np.eye(2), f.data)
        np.testing.assert_allclose(block.toarray(), full.T @ data.toarray())

    def test_zero_width_dense(self) -> None:
        f = CovarianceFactor(2)
        block = DenseBlock(np.zeros((4, 0)))
        f.lscale(block)
        assert block.shape == (4, 0)

    def test_size_mismatch(self) -> None:
        f = CovarianceFactor(2)
        with pytest.raises(DimensionMismatch):
            f.lscale(DiagonalBlock(np.ones(4)))
        with pytest.raises(DimensionMismatch):
            f.lscale(DenseBlock(np.ones((3, 1))))

    def test_scale_levels_and_stddev(self) -> None:
        f = CovarianceFactor(2)
        f.theta = [2.0, 0.0, 1.0]
        np.testing.assert_allclose(f.scale_levels(np.array([[1.0, 1.0]])), [[2.0, 1.0]])
        sd, corr = f.stddev_corr()
        np.testing.assert_allclose(sd, [2.0, 1.0])
        np.testing.assert_allclose(corr, np.eye(2))
