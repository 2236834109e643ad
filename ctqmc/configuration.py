"""
Monte Carlo configuration: the time-ordered operator string, the optional
worm, the per-block inverse hybridization matrices and the trace.

Updates are two-phase. try_move() evaluates a candidate without touching
the configuration and returns a Trial; commit() applies an accepted Trial.
A rejected proposal therefore leaves everything as it was.
"""
import math
from bisect import bisect_left
from dataclasses import dataclass

import numpy as np
from numba import jit

from .determinant import HybridizationBlock
from .extended import ExtendedFloat
from .operators import ConfigSpace
from .sliding_window import compute_trace


class ConfigurationInconsistencyError(RuntimeError):
    """Incrementally maintained state disagrees with a from-scratch recomputation."""


@jit(nopython=True, cache=True)
def permutation_parity(perm):
    """Parity (0 or 1) of a permutation given as an index array."""
    n = perm.shape[0]
    visited = np.zeros(n, dtype=np.bool_)
    parity = 0
    for i in range(n):
        if visited[i]:
            continue
        j = i
        length = 0
        while not visited[j]:
            visited[j] = True
            j = perm[j]
            length += 1
        parity += length - 1
    return parity % 2


def _time(op):
    return op.time


def time_ordered(operators, worm, lower, upper):
    """
    Operators (hybridized and worm) inside [lower, upper), ascending in time.
    Worm operators sharing a time keep their tuple order, earlier = later in time.
    """
    i = bisect_left(operators, lower, key=_time)
    j = bisect_left(operators, upper, key=_time)
    hyb = operators[i:j]
    if worm is None:
        return list(hyb)
    keyed = [(op.time, 0, op) for op in hyb]
    keyed.extend((op.time, -k, op) for k, op in enumerate(worm.operators) if lower <= op.time < upper)
    keyed.sort(key=lambda e: (e[0], e[1]))
    return [e[2] for e in keyed]


def permutation_sign(worm, labels):
    """
    Sign of the permutation from the reference order
    (worm..., c^dag_{b,0} c_{b,0}, c^dag_{b,1} c_{b,1}, ...) to descending time order.
    """
    times, ties = [], []
    if worm is not None:
        for k, op in enumerate(worm.operators):
            times.append(op.time)
            ties.append(-k)
    for creators, annihilators in labels:
        for c, a in zip(creators, annihilators):
            times.extend((c.time, a.time))
            ties.extend((0, 0))
    if not times:
        return 1
    order = np.lexsort((np.array(ties), np.array(times)))[::-1]
    return -1 if permutation_parity(np.ascontiguousarray(order)) else 1


class _KeepWorm:
    def __repr__(self):
        return "KEEP_WORM"


KEEP_WORM = _KeepWorm()


@dataclass(frozen=True)
class Move:
    """Candidate change: hybridized operators to remove/add and the new worm."""
    removed: tuple = ()
    added: tuple = ()
    worm: object = KEEP_WORM


@dataclass
class Trial:
    operators: list
    worm: object
    block_updates: dict
    trace: ExtendedFloat
    perm_sign: int
    log_abs_ratio: float
    sign: int


@dataclass(frozen=True)
class Snapshot:
    """Read-only view of a configuration handed to measurement."""
    operators: tuple
    worm: object
    trace: ExtendedFloat
    sign: int
    inverse_matrices: tuple
    config_space: ConfigSpace

    @property
    def expansion_order(self):
        return len(self.operators) // 2


class Configuration:
    def __init__(self, model):
        self.model = model
        self.beta = model.beta
        self.operators = []
        self.worm = None
        self.blocks = [HybridizationBlock(model.hybridization, flavors) for flavors in model.blocks]
        self.trace = compute_trace(model, [])
        self.perm_sign = 1
        self.sign = self.trace.sign

    @property
    def config_space(self):
        if self.worm is None:
            return ConfigSpace.Z_FUNCTION
        return self.worm.kind

    @property
    def expansion_order(self):
        """Number of hybridized creation/annihilation pairs."""
        return len(self.operators) // 2

    def entries(self, lower, upper):
        return time_ordered(self.operators, self.worm, lower, upper)

    def ops_in_window(self, lower, upper, op_type=None, flavors=None):
        i = bisect_left(self.operators, lower, key=_time)
        j = bisect_left(self.operators, upper, key=_time)
        return [op for op in self.operators[i:j]
                if (op_type is None or op.type == op_type) and (flavors is None or op.flavor in flavors)]

    def count_in_window(self, lower, upper, op_type, flavors):
        return len(self.ops_in_window(lower, upper, op_type, flavors))

    def _labels(self, block_updates):
        labels = []
        for b, block in enumerate(self.blocks):
            update = block_updates.get(b)
            if update is None:
                labels.append((block.creators, block.annihilators))
            else:
                labels.append((update.creators, update.annihilators))
        return labels

    def try_move(self, move, window=None):
        """
        Evaluate a move without changing the configuration.

        With a window, every changed operator must lie inside it and only the
        window part of the trace is recomputed; without one the trace is
        recomputed over [0, beta). Returns None if the new weight vanishes or
        two operators would share a time.
        """
        worm = self.worm if move.worm is KEEP_WORM else move.worm
        removed = set(move.removed)
        ops = [op for op in self.operators if op not in removed]
        if len(ops) != len(self.operators) - len(removed):
            raise ValueError("move removes operators that are not in the configuration")

        occupied = {op.time for op in ops}
        for op in move.added:
            if op.time in occupied or not 0.0 <= op.time < self.beta:
                return None
            occupied.add(op.time)
        if worm is not None:
            worm_times = worm.group_times()
            if len(set(worm_times)) != len(worm_times) or occupied.intersection(worm_times):
                return None
            if not all(0.0 <= t < self.beta for t in worm_times):
                return None
        ops.extend(move.added)
        ops.sort()

        block_updates = {}
        log_det = 0.0
        det_sign = 1
        block_of = self.model.block_of
        for b, block in enumerate(self.blocks):
            rem_b = [op for op in move.removed if block_of[op.flavor] == b]
            add_b = [op for op in move.added if block_of[op.flavor] == b]
            if rem_b or add_b:
                update = block.propose(rem_b, add_b)
                if update is None:
                    return None
                block_updates[b] = update
                log_det += update.log_abs_ratio
                det_sign *= block.det_sign * update.ratio_sign
            else:
                det_sign *= block.det_sign

        if window is None:
            trace = compute_trace(self.model, time_ordered(ops, worm, 0.0, self.beta))
        else:
            self._check_inside(move, worm, window)
            trace = window.trace(time_ordered(ops, worm, window.lower, window.upper))
        if trace.is_zero():
            return None

        perm_sign = permutation_sign(worm, self._labels(block_updates))
        log_ratio = trace.log_abs() - self.trace.log_abs() + log_det
        if math.isnan(log_ratio):
            return None
        return Trial(ops, worm, block_updates, trace, perm_sign, log_ratio,
                     perm_sign * trace.sign * det_sign)

    def _check_inside(self, move, worm, window):
        changed = list(move.removed) + list(move.added)
        if worm is not self.worm:
            old = set(self.worm.operators) if self.worm is not None else set()
            new = set(worm.operators) if worm is not None else set()
            changed.extend(old ^ new)
        for op in changed:
            if not window.contains(op.time):
                raise ValueError(f"operator at t={op.time} lies outside the window "
                                 f"[{window.lower}, {window.upper})")

    def commit(self, trial):
        self.operators = trial.operators
        self.worm = trial.worm
        for b, update in trial.block_updates.items():
            self.blocks[b].commit(update)
        self.trace = trial.trace
        self.perm_sign = trial.perm_sign
        self.sign = trial.sign

    def rebuild(self, operators, worm=None):
        """Replace the configuration and recompute M, trace and sign from scratch."""
        operators = sorted(operators)
        times = [op.time for op in operators]
        if worm is not None:
            times.extend(worm.group_times())
        if len(set(times)) != len(times):
            raise ValueError("operators must have distinct times")
        if any(not 0.0 <= t < self.beta for t in times):
            raise ValueError("operator times must lie in [0, beta)")
        self.operators = operators
        self.worm = worm
        block_of = self.model.block_of
        for b, block in enumerate(self.blocks):
            block.rebuild([op for op in operators if block_of[op.flavor] == b and op.is_creation],
                          [op for op in operators if block_of[op.flavor] == b and not op.is_creation])
        self.trace = compute_trace(self.model, self.entries(0.0, self.beta))
        self.perm_sign = permutation_sign(worm, self._labels({}))
        self.sign = self.perm_sign * self.trace.sign * math.prod(block.det_sign for block in self.blocks)

    def snapshot(self):
        return Snapshot(tuple(self.operators), self.worm, self.trace, self.sign,
                        tuple(block.inverse.copy() for block in self.blocks), self.config_space)

    def check_consistency(self, window=None, rtol=1e-8):
        """Compare the maintained state against a from-scratch recomputation."""
        if self.trace.is_zero() or math.isnan(self.trace.mantissa):
            raise ConfigurationInconsistencyError(f"invalid trace {self.trace!r}")
        if self.operators != sorted(self.operators):
            raise ConfigurationInconsistencyError("operators are not time ordered")

        fresh = compute_trace(self.model, self.entries(0.0, self.beta))
        if fresh.is_zero() or abs(float(fresh / self.trace) - 1.0) > rtol:
            raise ConfigurationInconsistencyError(f"trace {self.trace!r} differs from recomputed {fresh!r}")
        if window is not None:
            windowed = window.trace(self.entries(window.lower, window.upper))
            if windowed.is_zero() or abs(float(windowed / fresh) - 1.0) > rtol:
                raise ConfigurationInconsistencyError(
                    f"window trace {windowed!r} differs from recomputed {fresh!r}")

        for block in self.blocks:
            if sorted(block.creators + block.annihilators) != sorted(
                    op for op in self.operators if op.flavor in block.flavors):
                raise ConfigurationInconsistencyError(f"block {block.flavors} labels out of sync")
            deviation = block.deviation()
            if deviation > 1e-6:
                raise ConfigurationInconsistencyError(
                    f"inverse matrix of block {block.flavors} deviates by {deviation:.3e}")

        perm_sign = permutation_sign(self.worm, self._labels({}))
        sign = perm_sign * fresh.sign * math.prod(block.det_sign for block in self.blocks)
        if perm_sign != self.perm_sign or sign != self.sign:
            raise ConfigurationInconsistencyError("configuration sign out of sync")
