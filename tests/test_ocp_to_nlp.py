import numpy as np
import pytest

from smoothfeedback.ocp import OCP
from smoothfeedback.ocp_to_nlp import (
    NLPSolution,
    NLPStatus,
    OCPNLP,
    nlpsol_to_ocpsol,
    ocp_nlp_structure,
    ocp_to_nlp,
    ocpsol_to_nlpsol,
)


class _RadauMesh:
    """Equally sized intervals with Legendre-Gauss-Radau collocation nodes."""

    def __init__(self, n_ivals: int, k: int) -> None:
        self._n = n_ivals
        self._k = k
        self._h = 1.0 / n_ivals
        coef = np.zeros(k + 1)
        coef[k - 1] = 1.0
        coef[k] = 1.0
        roots = np.sort(np.real(np.polynomial.legendre.legroots(coef)))
        self._s = (roots + 1.0) / 2.0
        powers = np.arange(k)
        vander = self._s[:, None] ** powers[None, :]
        self._w = np.linalg.solve(vander.T, 1.0 / (powers + 1))
        ext = np.append(self._s, 1.0)
        p = np.arange(k + 1)
        coeffs = np.linalg.inv(ext[:, None] ** p[None, :])
        vd = np.where(p > 0, p * ext[:, None] ** np.maximum(p - 1, 0), 0.0)
        self._ext = ext
        self._d = (vd @ coeffs)[:k, :].T

    def n_ivals(self):
        return self._n

    def n_colloc(self):
        return self._n * self._k

    def n_colloc_ival(self, ival):
        return self._k

    def interval_nodes(self, ival):
        return ival * self._h + self._h * self._ext

    def interval_weights(self, ival):
        return self._h * self._w

    def interval_diffmat_unscaled(self, ival):
        return 1.0 / self._h, self._d

    def all_nodes(self):
        parts = [ival * self._h + self._h * self._s for ival in range(self._n)]
        return np.append(np.concatenate(parts), 1.0)

    def all_weights(self):
        return np.concatenate([self._h * self._w for _ in range(self._n)])

    def evaluate(self, tau, values, deriv=0, extend=True):
        assert deriv == 0
        ival = int(np.clip(np.floor(tau / self._h + 1e-9), 0, self._n - 1))
        s = (tau - ival * self._h) / self._h
        nodes = self._ext if extend else self._s
        start = ival * self._k
        vals = [np.asarray(v, dtype=float) for v in values[start : start + len(nodes)]]
        result = np.zeros_like(vals[0])
        for j, (sj, vj) in enumerate(zip(nodes, vals)):
            others = np.delete(nodes, j)
            result = result + np.prod((s - others) / (sj - others)) * vj
        return result


def _theta(tf, x0, xf, q):
    return q[0]


def _f(t, x, u):
    return np.array([x[1], u[0]])


def _g(t, x, u):
    return np.array([x @ x + u @ u])


def _cr(t, x, u):
    return np.array([u[0]])


def _ce(tf, x0, xf, q):
    return np.concatenate([[tf], x0, xf])


def _make_ocp(theta=_theta):
    return OCP(
        theta=theta,
        f=_f,
        g=_g,
        cr=_cr,
        ce=_ce,
        state_dim=2,
        input_dim=1,
        crl=[-1.0],
        cru=[1.0],
        cel=[3.0, 1.0, 1.0, 0.0, 0.0],
        ceu=[6.0, 1.0, 1.0, 0.0, 0.0],
    )


@pytest.fixture
def mesh():
    return _RadauMesh(4, 5)


@pytest.fixture
def nlp(mesh):
    return ocp_to_nlp(_make_ocp(), mesh)


def _random_point(nlp, seed=3):
    rng = np.random.default_rng(seed)
    x = rng.uniform(-1.0, 1.0, nlp.n)
    x[0] = 3.0
    return x


def test_structure(mesh):
    var_beg, var_len, con_beg, con_len = ocp_nlp_structure(_make_ocp(), mesh)
    assert var_len == (1, 1, 42, 20)
    assert var_beg == (0, 1, 2, 44, 64)
    assert con_len == (40, 1, 20, 5)
    assert con_beg == (0, 40, 41, 61, 66)


def test_sizes_and_bounds(nlp, mesh):
    assert isinstance(nlp, OCPNLP)
    assert nlp.n == 64
    assert nlp.m == 66
    assert nlp.xl[0] == 0.0
    assert np.all(np.isneginf(nlp.xl[1:]))
    assert np.all(np.isposinf(nlp.xu))
    np.testing.assert_array_equal(nlp.gl[:41], 0.0)
    np.testing.assert_array_equal(nlp.gu[:41], 0.0)
    np.testing.assert_array_equal(nlp.gl[61:], [3, 1, 1, 0, 0])
    np.testing.assert_array_equal(nlp.gu[61:], [6, 1, 1, 0, 0])
    weights = mesh.all_weights()
    np.testing.assert_allclose(nlp.gl[41:61], -weights / weights.max())
    np.testing.assert_allclose(nlp.gu[41:61], weights / weights.max())


def test_objective_is_integral_variable(nlp):
    x = _random_point(nlp)
    assert nlp.f(x) == pytest.approx(x[1])
    grad = nlp.df_dx(x)
    expected = np.zeros((1, nlp.n))
    expected[0, 1] = 1.0
    np.testing.assert_allclose(grad, expected, atol=1e-8)


def test_wrong_size_raises(nlp):
    with pytest.raises(ValueError):
        nlp.g(np.zeros(nlp.n - 1))
    with pytest.raises(ValueError):
        nlp.d2g_dx2(np.zeros(nlp.n), np.zeros(nlp.m + 1))


def test_objective_hessian_upper_triangle(mesh):
    theta = lambda tf, x0, xf, q: xf @ xf + 2 * q[0] + x0[0] * q[0]  # noqa: E731
    nlp = ocp_to_nlp(_make_ocp(theta), mesh)
    x = _random_point(nlp)
    hess = nlp.d2f_dx2(x)
    xf_b = 2 + 42 - 2
    assert hess[xf_b, xf_b] == pytest.approx(2.0, abs=1e-5)
    assert hess[xf_b + 1, xf_b + 1] == pytest.approx(2.0, abs=1e-5)
    assert hess[1, 2] == pytest.approx(1.0, abs=1e-5)
    np.testing.assert_allclose(np.tril(hess, -1), 0.0)


def test_trajectory_satisfies_constraints(nlp, mesh):
    tf, x0, v0, u0 = 2.0, 3.0, -0.3, 0.1
    x = np.zeros(nlp.n)
    x[0] = tf
    nodes = mesh.all_nodes()
    for i, tau in enumerate(nodes):
        t = tf * tau
        x[2 + 2 * i : 4 + 2 * i] = [x0 + v0 * t + u0 * t * t / 2, v0 + u0 * t]
    x[44:] = u0
    g = nlp.g(x)
    np.testing.assert_allclose(g[:40], 0.0, atol=1e-8)
    assert np.all(g[41:61] >= nlp.gl[41:61] - 1e-8)
    assert np.all(g[41:61] <= nlp.gu[41:61] + 1e-8)
    np.testing.assert_allclose(g[61:], [tf, x0, v0, x0 + v0 * tf + u0 * tf * tf / 2, v0 + u0 * tf])


def test_jacobian_matches_finite_differences(nlp):
    x = _random_point(nlp)
    jac = nlp.dg_dx(x)
    assert jac.shape == (nlp.m, nlp.n)
    h = 1e-6
    for k in range(nlp.n):
        e = np.zeros(nlp.n)
        e[k] = h
        col = (nlp.g(x + e) - nlp.g(x - e)) / (2 * h)
        np.testing.assert_allclose(jac[:, k], col, atol=1e-5)


def test_hessian_matches_finite_differences(nlp):
    x = _random_point(nlp)
    lam = np.random.default_rng(7).uniform(-1.0, 1.0, nlp.m)
    hess = nlp.d2g_dx2(x, lam)
    h = 1e-3
    fd = np.zeros((nlp.n, nlp.n))
    for k in range(nlp.n):
        e = np.zeros(nlp.n)
        e[k] = h
        fd[:, k] = (lam @ nlp.dg_dx(x + e) - lam @ nlp.dg_dx(x - e)) / (2 * h)
    fd = 0.5 * (fd + fd.T)
    np.testing.assert_allclose(np.tril(hess, -1), 0.0)
    np.testing.assert_allclose(hess, np.triu(fd), atol=1e-4)


def test_solution_round_trip(nlp, mesh):
    ocp = _make_ocp()
    rng = np.random.default_rng(11)
    x = rng.uniform(-1.0, 1.0, nlp.n)
    x[0] = 4.0
    sol = NLPSolution(
        status=NLPStatus.OPTIMAL,
        x=x,
        zl=np.zeros(nlp.n),
        zu=np.zeros(nlp.n),
        lam=rng.uniform(-1.0, 1.0, nlp.m),
    )
    ocp_sol = nlpsol_to_ocpsol(ocp, mesh, sol)
    assert ocp_sol.tf == pytest.approx(4.0)
    np.testing.assert_allclose(ocp_sol.x(0.0), x[2:4])
    np.testing.assert_allclose(ocp_sol.x(4.0), x[42:44])

    copy = ocpsol_to_nlpsol(ocp, mesh, ocp_sol)
    assert copy.status is NLPStatus.UNKNOWN
    assert np.linalg.norm(copy.x - sol.x) <= 1e-8
    assert np.linalg.norm(copy.zl - sol.zl) <= 1e-8
    assert np.linalg.norm(copy.zu - sol.zu) <= 1e-8
    assert np.linalg.norm(copy.lam - sol.lam) <= 1e-8