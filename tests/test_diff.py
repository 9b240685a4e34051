import numpy as np
import pytest

from smoothfeedback.diff import dr, split_args


def test_split_args_round_trip():
    args = (2.5, np.array([1.0, -2.0, 3.0]), np.array([[4.0, 5.0], [6.0, 7.0]]))
    flat, rebuild = split_args(args)
    assert flat.size == 1 + 3 + 4
    back = rebuild(flat)
    assert back[0] == 2.5
    assert isinstance(back[0], float)
    np.testing.assert_array_equal(back[1], args[1])
    np.testing.assert_array_equal(back[2], args[2])


def test_split_args_rejects_wrong_length():
    _, rebuild = split_args((1.0, np.zeros(2)))
    with pytest.raises(ValueError):
        rebuild(np.zeros(4))


def test_order_zero_returns_value_only():
    out = dr(lambda a, b: a * b, (3.0, 4.0), order=0)
    assert len(out) == 1
    assert out[0] == 12.0


def test_invalid_order_raises():
    with pytest.raises(ValueError):
        dr(lambda a: a, (1.0,), order=3)


def test_jacobian_of_linear_map():
    rng = np.random.default_rng(1)
    a_mat = rng.uniform(-1, 1, (4, 3))
    value, jac = dr(lambda x: a_mat @ x, (rng.uniform(-1, 1, 3),), order=1)
    assert jac.shape == (4, 3)
    np.testing.assert_allclose(jac, a_mat, atol=1e-8)
    assert value.shape == (4,)


def test_jacobian_scalar_output_is_row():
    rng = np.random.default_rng(2)
    c = rng.uniform(-1, 1, 5)
    _, jac = dr(lambda x: float(c @ x), (np.zeros(5),))
    assert jac.shape == (1, 5)
    np.testing.assert_allclose(jac[0], c, atol=1e-8)


def test_jacobian_argument_ordering():
    rng = np.random.default_rng(3)
    b = rng.uniform(-1, 1, 2)
    c = rng.uniform(-1, 1, 3)

    def fn(t, x, u):
        return 7.0 * t + b @ x + c @ u

    _, jac = dr(fn, (0.3, np.ones(2), np.ones(3)))
    np.testing.assert_allclose(jac[0], np.concatenate([[7.0], b, c]), atol=1e-8)


def test_hessian_of_quadratic():
    rng = np.random.default_rng(4)
    m = rng.uniform(-1, 1, (3, 3))
    q_mat = m + m.T
    x0 = rng.uniform(-1, 1, 3)
    _, jac, hess = dr(lambda x: 0.5 * x @ q_mat @ x, (x0,), order=2)
    np.testing.assert_allclose(jac[0], q_mat @ x0, atol=1e-7)
    assert hess.shape == (3, 3)
    np.testing.assert_allclose(hess, q_mat, atol=1e-5)


def test_hessian_block_layout_for_vector_output():
    rng = np.random.default_rng(5)
    m1 = rng.uniform(-1, 1, (2, 2))
    m2 = rng.uniform(-1, 1, (2, 2))
    q1 = m1 + m1.T
    q2 = m2 + m2.T

    def fn(x):
        return np.array([0.5 * x @ q1 @ x, 0.5 * x @ q2 @ x])

    _, _, hess = dr(fn, (rng.uniform(-1, 1, 2),), order=2)
    assert hess.shape == (2, 4)
    np.testing.assert_allclose(hess, np.hstack([q1, q2]), atol=1e-5)


def test_hessian_is_symmetric_per_block():
    def fn(t, x):
        return np.array([np.sin(t) * x[0] * x[1], np.exp(x[0]) * t])

    _, _, hess = dr(fn, (0.4, np.array([0.2, -0.7])), order=2)
    for block in np.split(hess, 2, axis=1):
        np.testing.assert_allclose(block, block.T, atol=1e-6)