"""
Global updates over the whole operator string. They recompute the trace and
all determinants from scratch and are therefore run rarely, with the window
reduced to a single segment so no cached partial product goes stale.
"""
import logging

from .configuration import KEEP_WORM, Move
from .updates import LocalUpdater

logger = logging.getLogger("ctqmc")


def _check_full_window(window):
    if window.n_window != 1:
        raise ValueError("global updates require window size 1")


class GlobalShiftUpdater(LocalUpdater):
    """Shift every operator (worm included) by one random offset modulo beta."""

    name = "global shift"

    def __init__(self, model):
        super().__init__()
        self.translationally_invariant = model.translationally_invariant
        self.num_suspicious_rejections = 0

    def _propose(self, rng, beta, config, window, config_space):
        _check_full_window(window)
        if not config.operators and config.worm is None:
            return False
        shift = rng.random() * beta
        removed = tuple(config.operators)
        added = tuple(op.moved(time=(op.time + shift) % beta) for op in removed)
        worm = KEEP_WORM if config.worm is None else config.worm.shifted(shift, beta)
        trial = config.try_move(Move(removed, added, worm))
        accepted = self._accept(rng, config, trial, 0.0)
        if not accepted and self.translationally_invariant and trial is not None and trial.log_abs_ratio < -1e-6:
            self.num_suspicious_rejections += 1
            logger.warning("Global shift rejected for a translationally invariant model "
                           "(log weight ratio %.3e)", trial.log_abs_ratio)
        return accepted


class GlobalFlavorPermutationUpdater(LocalUpdater):
    """Exchange two flavor labels throughout the operator string and the worm."""

    name = "global flavor exchange"

    def __init__(self, pairs):
        super().__init__()
        self.pairs = [tuple(p) for p in pairs]
        for a, b in self.pairs:
            if a == b:
                raise ValueError(f"flavor pair ({a}, {b}) does not exchange anything")

    def _propose(self, rng, beta, config, window, config_space):
        _check_full_window(window)
        if not self.pairs:
            return False
        a, b = self.pairs[rng.integers(len(self.pairs))]
        mapping = {a: b, b: a}
        removed = tuple(op for op in config.operators if op.flavor in mapping)
        added = tuple(op.moved(flavor=mapping[op.flavor]) for op in removed)
        worm = KEEP_WORM if config.worm is None else config.worm.relabeled(mapping)
        if not removed and worm is KEEP_WORM:
            return False
        trial = config.try_move(Move(removed, added, worm))
        return self._accept(rng, config, trial, 0.0)
