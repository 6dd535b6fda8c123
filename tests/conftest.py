import numpy as np
import pytest
from scipy import linalg

from mixedpls import load_dyestuff, load_sleepstudy


def _dense_z(term):
    q = term.nlevels * term.vsize
    return term.mul_add(1.0, np.eye(q), 0.0, np.zeros((term.nobs, q)))


def _dense_lambda(term, theta):
    k = term.vsize
    lam = np.zeros((k, k))
    cols, rows = np.triu_indices(k)
    lam[rows, cols] = theta
    return np.kron(np.eye(term.nlevels), lam)


def _reference_objective(X, y, terms, theta, reml=False, weights=None):
    """Profiled deviance from explicitly formed Z and Λ."""
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if weights is not None:
        sw = np.sqrt(np.asarray(weights, dtype=np.float64))
        X, y = X * sw[:, None], y * sw
    else:
        sw = None
    blocks, lams, offset = [], [], 0
    for t in terms:
        k = t.vsize * (t.vsize + 1) // 2
        Z = _dense_z(t)
        blocks.append(Z if sw is None else Z * sw[:, None])
        lams.append(_dense_lambda(t, theta[offset : offset + k]))
        offset += k
    ZL = np.hstack(blocks) @ linalg.block_diag(*lams)
    n, p = X.shape
    q = ZL.shape[1]
    L2 = ZL.T @ ZL + np.eye(q)
    M = np.block([[L2, ZL.T @ X], [X.T @ ZL, X.T @ X]])
    sol = np.linalg.solve(M, np.concatenate([ZL.T @ y, X.T @ y]))
    u, beta = sol[:q], sol[q:]
    resid = y - ZL @ u - X @ beta
    pwrss = resid @ resid + u @ u
    ldL2 = np.linalg.slogdet(L2)[1]
    val = ldL2
    dof = n
    if reml:
        S = X.T @ X - X.T @ ZL @ np.linalg.solve(L2, ZL.T @ X)
        val += np.linalg.slogdet(S)[1]
        dof = n - p
    return val + dof * (1.0 + np.log(2.0 * np.pi * pwrss / dof))


@pytest.fixture(scope="session")
def reference_objective():
    return _reference_objective


@pytest.fixture
def dyestuff():
    return load_dyestuff()


@pytest.fixture
def sleepstudy():
    return load_sleepstudy()


@pytest.fixture
def crossed_data():
    rng = np.random.default_rng(2024)
    g1 = np.repeat(np.arange(6), 8)
    g2 = np.tile(np.arange(4), 12)
    x = rng.normal(size=48)
    y = 3.0 + 0.5 * x + rng.normal(size=6)[g1] + 0.7 * rng.normal(size=4)[g2] + rng.normal(size=48)
    return {"g1": g1, "g2": g2, "x": x, "y": y}


@pytest.fixture
def nested_data():
    rng = np.random.default_rng(7)
    batch = np.repeat(np.arange(12), 4)
    site = batch // 3
    x = rng.normal(size=48)
    y = 1.0 - x + rng.normal(size=12)[batch] + rng.normal(size=4)[site] + 0.5 * rng.normal(size=48)
    return {"batch": batch, "site": site, "x": x, "y": y}
