"""
Stock measurement consumer for configuration snapshots.

Accumulates the expansion-order histogram and average sign in Z_FUNCTION
space and the number of steps spent in every space (the space volumes that
normalize worm estimators).
"""
import numpy as np

from .operators import ConfigSpace


class UnsupportedConfigSpaceError(RuntimeError):
    """A snapshot came from a configuration space nobody registered."""


class MeasurementAccumulator:
    def __init__(self, worm_kinds=(), max_order=1024):
        self.worm_kinds = tuple(worm_kinds)
        self.order_histogram = np.zeros(max_order + 1, dtype=np.int64)
        self.sign_sum = 0.0
        self.n_z_measurements = 0
        self.space_volumes = {ConfigSpace.Z_FUNCTION: 0}
        for kind in self.worm_kinds:
            self.space_volumes[kind] = 0

    def measure(self, snapshot):
        space = snapshot.config_space
        match space:
            case ConfigSpace.Z_FUNCTION:
                order = min(snapshot.expansion_order, self.order_histogram.size - 1)
                self.order_histogram[order] += 1
                self.sign_sum += snapshot.sign
                self.n_z_measurements += 1
            case ConfigSpace.G1 | ConfigSpace.EQUAL_TIME_G1 | ConfigSpace.TWO_TIME_G2 if space in self.worm_kinds:
                pass
            case _:
                raise UnsupportedConfigSpaceError(f"no measurement registered for {space!r}")
        self.space_volumes[space] += 1

    __call__ = measure

    @property
    def average_sign(self):
        return self.sign_sum / self.n_z_measurements if self.n_z_measurements else 0.0

    def mean_expansion_order(self):
        """Mean number of hybridized pairs in Z_FUNCTION space."""
        total = self.order_histogram.sum()
        if total == 0:
            return 0.0
        orders = np.arange(self.order_histogram.size)
        return float(np.sum(orders * self.order_histogram) / total)

    def order_distribution(self):
        total = self.order_histogram.sum()
        if total == 0:
            return self.order_histogram.astype(float)
        return self.order_histogram / total

    def space_fractions(self):
        total = sum(self.space_volumes.values())
        return {space: count / total if total else 0.0 for space, count in self.space_volumes.items()}
