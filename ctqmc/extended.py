"""
Extended-range scalars and matrices.

The local trace is a product of many propagators and easily leaves the
double range at large expansion order, so values are carried as a
normalized mantissa with a separate base-2 exponent.
"""
import math

import numpy as np


class ExtendedFloat:
    """Real number mantissa * 2**exponent with 0.5 <= |mantissa| < 1 (or mantissa == 0)."""

    __slots__ = ("mantissa", "exponent")

    def __init__(self, value=0.0, exponent=0):
        m, e = math.frexp(float(value))
        if m == 0.0:
            e, exponent = 0, 0
        self.mantissa = m
        self.exponent = int(e + exponent)

    @classmethod
    def from_log(cls, log_abs, sign=1.0):
        """Build from log|x| and the sign of x."""
        if log_abs == -math.inf or sign == 0:
            return cls(0.0)
        log2 = log_abs / math.log(2.0)
        e = math.floor(log2)
        return cls(math.copysign(2.0 ** (log2 - e), sign), e)

    @property
    def sign(self):
        if self.mantissa > 0:
            return 1
        if self.mantissa < 0:
            return -1
        return 0

    def is_zero(self):
        return self.mantissa == 0.0

    def log_abs(self):
        if self.mantissa == 0.0:
            return -math.inf
        return math.log(abs(self.mantissa)) + self.exponent * math.log(2.0)

    def __float__(self):
        try:
            return math.ldexp(self.mantissa, self.exponent)
        except OverflowError:
            return math.copysign(math.inf, self.mantissa)

    def __mul__(self, other):
        if not isinstance(other, ExtendedFloat):
            other = ExtendedFloat(other)
        return ExtendedFloat(self.mantissa * other.mantissa, self.exponent + other.exponent)

    __rmul__ = __mul__

    def __truediv__(self, other):
        if not isinstance(other, ExtendedFloat):
            other = ExtendedFloat(other)
        if other.mantissa == 0.0:
            raise ZeroDivisionError("division by an extended zero")
        return ExtendedFloat(self.mantissa / other.mantissa, self.exponent - other.exponent)

    def __neg__(self):
        return ExtendedFloat(-self.mantissa, self.exponent)

    def __abs__(self):
        return ExtendedFloat(abs(self.mantissa), self.exponent)

    def _cmp_key(self):
        # Sign first, then exponent and mantissa; mirrored for negatives.
        if self.mantissa == 0.0:
            return (0, 0, 0.0)
        if self.mantissa > 0:
            return (1, self.exponent, self.mantissa)
        return (-1, -self.exponent, self.mantissa)

    def __eq__(self, other):
        if not isinstance(other, ExtendedFloat):
            other = ExtendedFloat(other)
        return self.mantissa == other.mantissa and (self.mantissa == 0.0 or self.exponent == other.exponent)

    def __lt__(self, other):
        if not isinstance(other, ExtendedFloat):
            other = ExtendedFloat(other)
        return self._cmp_key() < other._cmp_key()

    def __le__(self, other):
        return self == other or self < other

    def __gt__(self, other):
        if not isinstance(other, ExtendedFloat):
            other = ExtendedFloat(other)
        return other < self

    def __ge__(self, other):
        return self == other or self > other

    def __hash__(self):
        return hash((self.mantissa, self.exponent))

    def __repr__(self):
        return f"ExtendedFloat({self.mantissa!r} * 2**{self.exponent})"

    def __getstate__(self):
        return (self.mantissa, self.exponent)

    def __setstate__(self, state):
        self.mantissa, self.exponent = state


class ScaledMatrix:
    """Matrix stored as matrix * 2**exponent with max|matrix| in [0.5, 1)."""

    __slots__ = ("matrix", "exponent")

    def __init__(self, matrix, exponent=0):
        self.matrix = matrix
        self.exponent = int(exponent)
        self._normalize()

    @classmethod
    def identity(cls, dim):
        return cls(np.eye(dim))

    def _normalize(self):
        peak = np.max(np.abs(self.matrix)) if self.matrix.size else 0.0
        if peak == 0.0:
            self.exponent = 0
            return
        _, e = math.frexp(peak)
        if e != 0:
            self.matrix = np.ldexp(self.matrix, -e)
            self.exponent += e

    def __matmul__(self, other):
        return ScaledMatrix(self.matrix @ other.matrix, self.exponent + other.exponent)

    def left_multiply(self, matrix):
        """matrix @ self, renormalized."""
        return ScaledMatrix(matrix @ self.matrix, self.exponent)

    def scale_rows(self, factors):
        """diag(factors) @ self, renormalized."""
        return ScaledMatrix(factors[:, None] * self.matrix, self.exponent)

    def trace(self):
        return ExtendedFloat(np.trace(self.matrix), self.exponent)

    def trace_with(self, other):
        """Tr(self @ other) without forming the product."""
        return ExtendedFloat(np.sum(self.matrix * other.matrix.T), self.exponent + other.exponent)

    def to_array(self):
        return np.ldexp(self.matrix, self.exponent)
