"""
Inverse hybridization matrix M = F^{-1} of one flavor block.

Rows of F are labelled by creation operators, columns by annihilation
operators, so rows of M belong to annihilators and columns to creators.
Proposals are pure; nothing changes until commit().
"""
import math
from dataclasses import dataclass

import numpy as np


@dataclass
class BlockUpdate:
    creators: list
    annihilators: list
    inverse: np.ndarray
    log_abs_ratio: float
    ratio_sign: int


def _move_to_end_parity(indices, n):
    """Parity of moving the (sorted) indices to the end of range(n), keeping relative order."""
    swaps = 0
    for k, i in enumerate(sorted(indices)):
        swaps += (n - 1 - i) - (len(indices) - 1 - k)
    return swaps % 2


class HybridizationBlock:
    """Creators, annihilators and the inverse matrix of one hybridization block."""

    def __init__(self, hybridization, flavors):
        self.hybridization = hybridization
        self.flavors = tuple(flavors)
        self.creators = []
        self.annihilators = []
        self.inverse = np.zeros((0, 0))
        self.log_abs_det = 0.0
        self.det_sign = 1

    @property
    def size(self):
        return len(self.creators)

    def _F(self, rows, cols):
        return self.hybridization.matrix(rows, cols)

    def propose(self, removed=(), added=()):
        """
        Return the BlockUpdate for removing/adding operators, or None when the
        new determinant vanishes (including unbalanced creator/annihilator counts).
        """
        rem_c = [op for op in removed if op.is_creation]
        rem_a = [op for op in removed if not op.is_creation]
        add_c = [op for op in added if op.is_creation]
        add_a = [op for op in added if not op.is_creation]
        if len(self.creators) - len(rem_c) + len(add_c) != len(self.annihilators) - len(rem_a) + len(add_a):
            return None

        if not rem_c and not rem_a:
            if len(add_c) == len(add_a):
                return self._insert(add_c, add_a)
        elif not add_c and not add_a:
            if len(rem_c) == len(rem_a):
                return self._remove(rem_c, rem_a)
        elif len(rem_c) == len(add_c) == 1 and not rem_a and not add_a:
            return self._replace_row(rem_c[0], add_c[0])
        elif len(rem_a) == len(add_a) == 1 and not rem_c and not add_c:
            return self._replace_column(rem_a[0], add_a[0])

        creators = [op for op in self.creators if op not in rem_c] + add_c
        annihilators = [op for op in self.annihilators if op not in rem_a] + add_a
        return self._rebuilt(creators, annihilators)

    def _insert(self, add_c, add_a):
        k = len(add_c)
        if k == 0:
            return BlockUpdate(list(self.creators), list(self.annihilators), self.inverse, 0.0, 1)
        M = self.inverse
        B = self._F(self.creators, add_a)    # (n, k)
        C = self._F(add_c, self.annihilators)  # (k, n)
        D = self._F(add_c, add_a)             # (k, k)
        MB = M @ B
        CM = C @ M
        S = D - C @ MB
        sign, logdet = np.linalg.slogdet(S)
        if sign == 0 or not np.isfinite(logdet):
            return None
        S_inv = np.linalg.inv(S)
        n = M.shape[0]
        new = np.empty((n + k, n + k))
        new[:n, :n] = M + MB @ S_inv @ CM
        new[:n, n:] = -MB @ S_inv
        new[n:, :n] = -S_inv @ CM
        new[n:, n:] = S_inv
        return BlockUpdate(self.creators + add_c, self.annihilators + add_a, new, logdet, int(sign))

    def _remove(self, rem_c, rem_a):
        n = self.size
        rows = sorted(self.creators.index(op) for op in rem_c)
        cols = sorted(self.annihilators.index(op) for op in rem_a)
        M = self.inverse
        # M rows belong to annihilators, columns to creators
        S = M[np.ix_(cols, rows)]
        sign, logdet = np.linalg.slogdet(S)
        if sign == 0 or not np.isfinite(logdet):
            return None
        if (_move_to_end_parity(rows, n) + _move_to_end_parity(cols, n)) % 2:
            sign = -sign
        keep_rows = [i for i in range(n) if i not in rows]
        keep_cols = [j for j in range(n) if j not in cols]
        P = M[np.ix_(keep_cols, keep_rows)]
        Q = M[np.ix_(keep_cols, rows)]
        R = M[np.ix_(cols, keep_rows)]
        new = P - Q @ np.linalg.solve(S, R)
        creators = [self.creators[i] for i in keep_rows]
        annihilators = [self.annihilators[j] for j in keep_cols]
        return BlockUpdate(creators, annihilators, new, logdet, int(sign))

    def _replace_row(self, old, new_op):
        # F' = F + e_i u^T
        i = self.creators.index(old)
        M = self.inverse
        u = (self._F([new_op], self.annihilators) - self._F([old], self.annihilators))[0]
        ratio = 1.0 + u @ M[:, i]
        if ratio == 0.0 or not np.isfinite(ratio):
            return None
        new = M - np.outer(M[:, i], u @ M) / ratio
        creators = list(self.creators)
        creators[i] = new_op
        return BlockUpdate(creators, list(self.annihilators), new, math.log(abs(ratio)),
                           1 if ratio > 0 else -1)

    def _replace_column(self, old, new_op):
        # F' = F + v e_j^T
        j = self.annihilators.index(old)
        M = self.inverse
        v = (self._F(self.creators, [new_op]) - self._F(self.creators, [old]))[:, 0]
        ratio = 1.0 + M[j, :] @ v
        if ratio == 0.0 or not np.isfinite(ratio):
            return None
        new = M - np.outer(M @ v, M[j, :]) / ratio
        annihilators = list(self.annihilators)
        annihilators[j] = new_op
        return BlockUpdate(list(self.creators), annihilators, new, math.log(abs(ratio)),
                           1 if ratio > 0 else -1)

    def _rebuilt(self, creators, annihilators):
        if not creators:
            return BlockUpdate([], [], np.zeros((0, 0)), -self.log_abs_det, self.det_sign)
        F = self._F(creators, annihilators)
        sign, logdet = np.linalg.slogdet(F)
        if sign == 0 or not np.isfinite(logdet):
            return None
        return BlockUpdate(creators, annihilators, np.linalg.inv(F),
                           logdet - self.log_abs_det, int(sign) * self.det_sign)

    def commit(self, update):
        self.creators = update.creators
        self.annihilators = update.annihilators
        self.inverse = update.inverse
        self.log_abs_det += update.log_abs_ratio
        self.det_sign *= update.ratio_sign

    def rebuild(self, creators, annihilators):
        """Recompute M and det F from scratch for the given labels."""
        if len(creators) != len(annihilators):
            raise ValueError(f"block {self.flavors} has {len(creators)} creators "
                             f"but {len(annihilators)} annihilators")
        self.creators = list(creators)
        self.annihilators = list(annihilators)
        if not creators:
            self.inverse = np.zeros((0, 0))
            self.log_abs_det, self.det_sign = 0.0, 1
            return
        F = self._F(self.creators, self.annihilators)
        sign, logdet = np.linalg.slogdet(F)
        if sign == 0:
            raise ValueError(f"hybridization matrix of block {self.flavors} is singular")
        self.inverse = np.linalg.inv(F)
        self.log_abs_det, self.det_sign = logdet, int(sign)

    def deviation(self):
        """Largest relative deviation of the maintained M and det from a fresh computation."""
        if not self.creators:
            return 0.0
        F = self._F(self.creators, self.annihilators)
        sign, logdet = np.linalg.slogdet(F)
        if int(sign) != self.det_sign:
            return math.inf
        fresh = np.linalg.inv(F)
        scale = max(np.max(np.abs(fresh)), 1e-300)
        return max(np.max(np.abs(fresh - self.inverse)) / scale, abs(logdet - self.log_abs_det))
