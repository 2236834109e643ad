"""
Extended-range scalars and matrices
"""
import math
import pickle

import numpy as np
import pytest

from ctqmc.extended import ExtendedFloat, ScaledMatrix


def test_beyond_double_range():
    big = ExtendedFloat(1e300)
    product = big * big * big
    assert product.log_abs() == pytest.approx(3 * math.log(1e300))
    assert float(product) == math.inf
    assert float(product / big / big) == pytest.approx(1e300)

    tiny = ExtendedFloat(1e-300) * ExtendedFloat(1e-300)
    assert not tiny.is_zero()
    assert tiny.log_abs() == pytest.approx(-600 * math.log(10))


def test_from_log_and_sign():
    x = ExtendedFloat.from_log(1000.0, -1)
    assert x.sign == -1
    assert x.log_abs() == pytest.approx(1000.0)
    assert ExtendedFloat.from_log(-math.inf).is_zero()
    assert float(-ExtendedFloat(2.5)) == -2.5
    assert float(abs(ExtendedFloat(-2.5))) == 2.5


def test_ordering():
    values = [-4.0, -3.0, -0.25, 0.0, 1e-200, 2.0, 3e100]
    extended = [ExtendedFloat(v) for v in values]
    assert sorted(reversed(extended)) == extended
    assert ExtendedFloat(0.0) == ExtendedFloat(0.0, 50)
    assert ExtendedFloat(3.0) > 2.0
    assert ExtendedFloat(3.0) >= ExtendedFloat(3.0)


def test_pickle():
    x = ExtendedFloat(-0.7, 4000)
    y = pickle.loads(pickle.dumps(x))
    assert y == x and y.exponent == x.exponent


def test_scaled_matrix_products():
    rng = np.random.default_rng(0)
    a = rng.normal(size=(4, 4)) * 1e5
    b = rng.normal(size=(4, 4)) * 1e-7
    A, B = ScaledMatrix(a), ScaledMatrix(b)
    assert np.allclose((A @ B).to_array(), a @ b)
    assert np.allclose(A.left_multiply(b).to_array(), b @ a)
    factors = np.array([1.0, 0.5, 0.25, 2.0])
    assert np.allclose(A.scale_rows(factors).to_array(), factors[:, None] * a)
    assert float(A.trace_with(B)) == pytest.approx(np.trace(a @ b))
    assert float(A.trace()) == pytest.approx(np.trace(a))
    assert 0.5 <= np.max(np.abs(A.matrix)) < 1.0


def test_long_product_keeps_precision():
    m = np.diag([1e-30, 2e-30])
    product = ScaledMatrix.identity(2)
    for _ in range(40):
        product = product.left_multiply(m)
    trace = product.trace()
    expected = 40 * math.log(1e-30) + math.log(1.0 + 2.0 ** 40)
    assert trace.log_abs() == pytest.approx(expected, rel=1e-12)
