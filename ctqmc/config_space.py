"""
Flat-histogram (Wang-Landau) learning of configuration-space weights.

Every visit to a space lowers its log-weight by the current modification
factor ln f. Once the visit histogram is flat (min/max above the flatness
threshold) ln f is halved and the histogram reset. Weights are relative to
Z_FUNCTION, whose weight stays 1. Learning stops at the end of
thermalization so production sampling sees fixed weights.
"""
import logging
import math

import numpy as np

from .operators import ConfigSpace

logger = logging.getLogger("ctqmc")


class FlatHistogramConfigSpace:
    def __init__(self, spaces, flatness=0.8, initial_log_factor=1.0, target_log_factor=1e-3,
                 min_visits=100):
        spaces = list(spaces)
        if ConfigSpace.Z_FUNCTION not in spaces:
            spaces.insert(0, ConfigSpace.Z_FUNCTION)
        if not 0.0 < flatness < 1.0:
            raise ValueError("flatness threshold must lie in (0, 1)")
        if initial_log_factor <= 0 or target_log_factor <= 0:
            raise ValueError("modification factors must be positive")
        self.spaces = spaces
        self.index = {space: i for i, space in enumerate(spaces)}
        self.flatness = flatness
        self.log_factor = initial_log_factor
        self.target_log_factor = target_log_factor
        self.min_visits = min_visits
        self.log_weights = np.zeros(len(spaces))
        self.histogram = np.zeros(len(spaces), dtype=np.int64)
        self.num_halvings = 0
        self.frozen = False

    def __contains__(self, space):
        return space in self.index

    def log_weight(self, space):
        return self.log_weights[self.index[space]]

    def weight(self, space):
        return math.exp(self.log_weight(space))

    def log_weight_ratio(self, to_space, from_space):
        """log(eta(to) / eta(from))."""
        return self.log_weight(to_space) - self.log_weight(from_space)

    @property
    def converged(self):
        return len(self.spaces) == 1 or self.log_factor < self.target_log_factor

    def is_flat(self):
        if self.histogram.sum() < self.min_visits * len(self.spaces):
            return False
        return self.histogram.min() >= self.flatness * self.histogram.max()

    def visit(self, space):
        """Record one step spent in space; adjusts weights unless frozen."""
        if self.frozen or len(self.spaces) == 1:
            return
        i = self.index[space]
        self.histogram[i] += 1
        self.log_weights[i] -= self.log_factor
        self.log_weights -= self.log_weights[self.index[ConfigSpace.Z_FUNCTION]]
        if self.is_flat():
            self.log_factor /= 2
            self.num_halvings += 1
            logger.debug("Flat histogram %s, ln f -> %.3e", self.histogram.tolist(), self.log_factor)
            self.histogram[:] = 0

    def finalize_thermalization(self):
        """Freeze the weights; warn if the modification factor never got below target."""
        if not self.converged:
            logger.warning(
                "Flat histogram did not converge during thermalization: ln f = %.3e > %.3e "
                "after %d halvings; continuing with the last weights %s",
                self.log_factor, self.target_log_factor, self.num_halvings, self.describe())
        self.frozen = True

    def describe(self):
        return {space.value: float(np.exp(w)) for space, w in zip(self.spaces, self.log_weights)}

    def state(self):
        return {
            "spaces": [s.value for s in self.spaces],
            "log_weights": self.log_weights.copy(),
            "histogram": self.histogram.copy(),
            "log_factor": self.log_factor,
            "num_halvings": self.num_halvings,
            "frozen": self.frozen,
        }

    def restore(self, state):
        if [s.value for s in self.spaces] != list(state["spaces"]):
            raise ValueError("checkpoint was written for different configuration spaces")
        self.log_weights = np.array(state["log_weights"], dtype=np.float64)
        self.histogram = np.array(state["histogram"], dtype=np.int64)
        self.log_factor = state["log_factor"]
        self.num_halvings = state["num_halvings"]
        self.frozen = state["frozen"]
