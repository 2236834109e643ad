"""
Local Metropolis-Hastings updates acting inside the sliding window:
- Pair insertion/removal (rank k, optionally flavor-diagonal)
- Single-operator time shift
- Flavor exchange between two operators of the same type

Every updater proposes through Configuration.try_move and commits only on
acceptance. The acceptance ratio is

    min(1, |w_new / w_old| * q(new -> old) / q(old -> new))

evaluated in log space.
"""
import logging
import math
from collections import deque

from .configuration import Move
from .operators import Operator, OperatorType

logger = logging.getLogger("ctqmc")


def log_falling_factorial(n, k):
    """log(n (n-1) ... (n-k+1))."""
    return math.lgamma(n + 1) - math.lgamma(n - k + 1)


def metropolis_accept(rng, log_ratio):
    if log_ratio >= 0.0:
        return True
    return rng.random() < math.exp(log_ratio)


def uniform_time(rng, window):
    """Uniform time in [window.lower, window.upper)."""
    t = window.lower + rng.random() * window.length
    if t >= window.upper:
        t = window.lower
    return t


class AcceptanceRate:
    """Rolling acceptance statistics over the most recent proposals."""

    def __init__(self, window=2000):
        self.recent = deque(maxlen=window)
        self.num_proposed = 0
        self.num_accepted = 0

    def record(self, accepted):
        self.recent.append(accepted)
        self.num_proposed += 1
        self.num_accepted += int(accepted)

    @property
    def rate(self):
        if not self.recent:
            return 0.0
        return sum(self.recent) / len(self.recent)

    @property
    def total_rate(self):
        return self.num_accepted / self.num_proposed if self.num_proposed else 0.0


class LocalUpdater:
    name = "local"

    def __init__(self):
        self.acceptance = AcceptanceRate()
        self.frozen = False

    def update(self, rng, beta, config, window, config_space):
        """Attempt one proposal. Returns True if it was accepted."""
        accepted = self._propose(rng, beta, config, window, config_space)
        self.acceptance.record(accepted)
        return accepted

    def _propose(self, rng, beta, config, window, config_space):
        raise NotImplementedError

    def _accept(self, rng, config, trial, log_factor):
        if trial is None:
            return False
        if metropolis_accept(rng, trial.log_abs_ratio + log_factor):
            config.commit(trial)
            return True
        return False

    def adapt(self, beta):
        """Tune proposal parameters; only called during thermalization."""

    def freeze(self):
        self.frozen = True

    def state(self):
        return {"frozen": self.frozen}

    def restore(self, state):
        self.frozen = state["frozen"]

    def status_string(self):
        return f"{self.name}: {self.acceptance.total_rate:.3f}"


class PairInsertionRemovalUpdater(LocalUpdater):
    """
    Insert or remove `rank` creators and `rank` annihilators at once.

    A flavor pool is drawn uniformly (a hybridization block, or a single
    flavor when diagonal). Insertion draws every flavor uniformly from the
    pool and every time uniformly in the window; removal picks a uniform
    subset of `rank` creators and of `rank` annihilators of the pool inside
    the window. With n_c, n_a the pool counts in the window after insertion:

        q_rem / q_ins = (|pool| L_w)^{2k} / (n_c!/(n_c-k)! * n_a!/(n_a-k)!)
    """

    def __init__(self, model, rank=1, diagonal=False):
        super().__init__()
        if rank < 1:
            raise ValueError("rank of pair insertion/removal must be positive")
        self.rank = rank
        self.diagonal = diagonal
        if diagonal:
            self.pools = [(f,) for f in range(model.n_flavors)]
        else:
            self.pools = [tuple(block) for block in model.blocks]
        self.name = f"{'diagonal ' if diagonal else ''}insertion/removal rank {rank}"

    def _propose(self, rng, beta, config, window, config_space):
        pool = self.pools[rng.integers(len(self.pools))]
        if rng.random() < 0.5:
            return self._insert(rng, config, window, pool)
        return self._remove(rng, config, window, pool)

    def _log_volume(self, pool, window):
        return 2 * self.rank * math.log(len(pool) * window.length)

    def _insert(self, rng, config, window, pool):
        k = self.rank
        added = []
        for op_type in (OperatorType.CREATION, OperatorType.ANNIHILATION):
            for _ in range(k):
                added.append(Operator(uniform_time(rng, window), pool[rng.integers(len(pool))], op_type))
        trial = config.try_move(Move(added=tuple(added)), window)
        if trial is None:
            return False
        n_c = config.count_in_window(window.lower, window.upper, OperatorType.CREATION, pool) + k
        n_a = config.count_in_window(window.lower, window.upper, OperatorType.ANNIHILATION, pool) + k
        log_factor = (self._log_volume(pool, window)
                      - log_falling_factorial(n_c, k) - log_falling_factorial(n_a, k))
        return self._accept(rng, config, trial, log_factor)

    def _remove(self, rng, config, window, pool):
        k = self.rank
        creators = config.ops_in_window(window.lower, window.upper, OperatorType.CREATION, pool)
        annihilators = config.ops_in_window(window.lower, window.upper, OperatorType.ANNIHILATION, pool)
        n_c, n_a = len(creators), len(annihilators)
        if n_c < k or n_a < k:
            return False
        removed = [creators[i] for i in rng.choice(n_c, k, replace=False)]
        removed += [annihilators[i] for i in rng.choice(n_a, k, replace=False)]
        trial = config.try_move(Move(removed=tuple(removed)), window)
        log_factor = (log_falling_factorial(n_c, k) + log_falling_factorial(n_a, k)
                      - self._log_volume(pool, window))
        return self._accept(rng, config, trial, log_factor)


class ShiftUpdater(LocalUpdater):
    """
    Move one operator in the window by a uniform offset in [-d, d].
    Proposals leaving the window are rejected, which keeps q symmetric.
    The step d is tuned towards a target acceptance rate during thermalization.
    """

    name = "shift"

    def __init__(self, beta, target_acceptance=0.3, initial_distance=None):
        super().__init__()
        self.target_acceptance = target_acceptance
        self.max_distance = beta / 10 if initial_distance is None else initial_distance

    def _propose(self, rng, beta, config, window, config_space):
        ops = config.ops_in_window(window.lower, window.upper)
        if not ops:
            return False
        op = ops[rng.integers(len(ops))]
        distance = min(self.max_distance, window.length)
        new_time = op.time + (2.0 * rng.random() - 1.0) * distance
        if not window.lower <= new_time < window.upper:
            return False
        trial = config.try_move(Move(removed=(op,), added=(op.moved(time=new_time),)), window)
        return self._accept(rng, config, trial, 0.0)

    def adapt(self, beta):
        if self.frozen or len(self.acceptance.recent) < 100:
            return
        if self.acceptance.rate < self.target_acceptance:
            self.max_distance *= 0.9
        else:
            self.max_distance *= 1.1
        self.max_distance = min(max(self.max_distance, 1e-4 * beta), beta)
        logger.debug("shift distance -> %.4g (acceptance %.3f)", self.max_distance, self.acceptance.rate)

    def state(self):
        return {"frozen": self.frozen, "max_distance": self.max_distance}

    def restore(self, state):
        self.frozen = state["frozen"]
        self.max_distance = state["max_distance"]


class FlavorExchangeUpdater(LocalUpdater):
    """Swap the flavors of two creators (or two annihilators) in the window."""

    name = "flavor exchange"

    def _propose(self, rng, beta, config, window, config_space):
        op_type = OperatorType.CREATION if rng.random() < 0.5 else OperatorType.ANNIHILATION
        ops = config.ops_in_window(window.lower, window.upper, op_type)
        if len(ops) < 2:
            return False
        i, j = rng.choice(len(ops), 2, replace=False)
        a, b = ops[i], ops[j]
        if a.flavor == b.flavor:
            return False
        move = Move(removed=(a, b), added=(a.moved(flavor=b.flavor), b.moved(flavor=a.flavor)))
        trial = config.try_move(move, window)
        return self._accept(rng, config, trial, 0.0)
