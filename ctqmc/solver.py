"""
Main CT-HYB sampler.
Orchestrates the configuration, the sliding window, the update registry and
the configuration-space learner.
"""
import logging
import pickle
import time

import numpy as np

from .config_space import FlatHistogramConfigSpace
from .configuration import Configuration
from .global_updates import GlobalFlavorPermutationUpdater, GlobalShiftUpdater
from .operators import ConfigSpace
from .params import SolverParams
from .sliding_window import SlidingWindow
from .updates import FlavorExchangeUpdater, PairInsertionRemovalUpdater, ShiftUpdater
from .worm_updates import WormConnector, WormInsertionRemovalUpdater, WormMoveUpdater

logger = logging.getLogger("ctqmc")


class UpdaterRegistry:
    """Every updater of a run, built once from the parameters."""

    def __init__(self, local, worm, global_updaters):
        self.local = list(local)
        self.worm = list(worm)
        self.global_updaters = list(global_updaters)

    @classmethod
    def build(cls, model, params):
        local = [PairInsertionRemovalUpdater(model, rank=k) for k in range(1, params.max_rank + 1)]
        if params.diagonal_updates:
            local.append(PairInsertionRemovalUpdater(model, rank=1, diagonal=True))
        if params.shift_updates:
            local.append(ShiftUpdater(model.beta, params.shift_target_acceptance))
        if params.flavor_exchange_updates and model.n_flavors > 1:
            local.append(FlavorExchangeUpdater())

        worm = []
        for kind in params.worm_kinds:
            worm.append(WormInsertionRemovalUpdater(model, kind))
            worm.append(WormMoveUpdater(model, kind))
        if (params.worm_connectors and ConfigSpace.G1 in params.worm_kinds
                and ConfigSpace.EQUAL_TIME_G1 in params.worm_kinds):
            worm.append(WormConnector(ConfigSpace.G1, ConfigSpace.EQUAL_TIME_G1))

        global_updaters = [GlobalShiftUpdater(model)]
        if params.flavor_pairs:
            global_updaters.append(GlobalFlavorPermutationUpdater(params.flavor_pairs))
        return cls(local, worm, global_updaters)

    def all(self):
        return self.local + self.worm + self.global_updaters

    def state(self):
        return [u.state() for u in self.all()]

    def restore(self, states):
        updaters = self.all()
        if len(states) != len(updaters):
            raise ValueError("checkpoint was written with a different set of updates")
        for updater, state in zip(updaters, states):
            updater.restore(state)


class HybridizationSolver:
    def __init__(self, model, params=None, seed=None):
        self.params = (params if params is not None else SolverParams()).validate()
        for pair in self.params.flavor_pairs:
            if not all(0 <= f < model.n_flavors for f in pair):
                raise ValueError(f"flavor pair {pair!r} out of range for {model.n_flavors} flavors")
        self.model = model
        self.beta = model.beta
        self.rng = np.random.default_rng(seed)

        self.config = Configuration(model)
        self.window = SlidingWindow(model)
        self.window.set_window_size(1, self.config)
        self.config_space = FlatHistogramConfigSpace(
            self.params.worm_kinds,
            flatness=self.params.flatness,
            initial_log_factor=self.params.initial_log_factor,
            target_log_factor=self.params.target_log_factor,
        )
        self.updaters = UpdaterRegistry.build(model, self.params)
        self._sweep_updaters = self.updaters.local + self.updaters.worm
        self.n_sweeps = 0
        self.thermalized = False

    def _update(self, updater):
        updater.update(self.rng, self.beta, self.config, self.window, self.config_space)
        if self.params.check_consistency:
            self.config.check_consistency(self.window)

    def _local_update(self):
        self._update(self._sweep_updaters[self.rng.integers(len(self._sweep_updaters))])
        self.config_space.visit(self.config.config_space)

    def _space_transitions(self):
        for updater in self.updaters.worm:
            self._update(updater)

    def global_updates(self):
        """Global moves at window size 1, bracketed by configuration-space transitions."""
        n_window = self.window.n_window
        self.window.set_window_size(1, self.config)
        self._space_transitions()
        for updater in self.updaters.global_updaters:
            self._update(updater)
        self._space_transitions()
        self.window.set_window_size(n_window, self.config)

    def _adapt_window_size(self):
        n_ops = len(self.config.operators)
        if self.config.worm is not None:
            n_ops += len(self.config.worm.operators)
        # Two segments per window
        n_window = int(round(2 * n_ops / self.params.ops_per_window))
        n_window = min(max(n_window, 1), self.params.max_window_size)
        if n_window != self.window.n_window:
            logger.debug("window size %d -> %d", self.window.n_window, n_window)
            self.window.set_window_size(n_window, self.config)

    def mc_step(self):
        """Perform one sweep: the window travels to the top and back to position 0."""
        for _ in range(self.window.num_moves_per_sweep):
            for _ in range(self.params.n_updates_per_window):
                self._local_update()
            self.window.move_to_next_position(self.config)
        if self.window.position_right_edge != 0:
            raise RuntimeError("sweep did not return the window to position 0")
        self.n_sweeps += 1

        if self.n_sweeps % self.params.global_update_interval == 0:
            self.global_updates()
        if not self.thermalized:
            for updater in self.updaters.all():
                updater.adapt(self.beta)
            self._adapt_window_size()

    def end_thermalization(self):
        """Freeze space weights and proposal tuning for production sampling."""
        self.thermalized = True
        self.config_space.finalize_thermalization()
        for updater in self.updaters.all():
            updater.freeze()
        logger.info("Thermalized after %d sweeps: %s", self.n_sweeps, self.status_string())

    def _thermalization_finished(self, elapsed):
        if self.n_sweeps < self.params.n_therm_sweeps:
            return False
        return self.params.thermalization_time is None or elapsed >= self.params.thermalization_time

    def run(self, n_sweeps=None, measure=None):
        """
        Run the simulation.

        Args:
            n_sweeps: Production sweeps after thermalization (None: until params.max_time).
            measure: Callable receiving a Snapshot after every production sweep.
        Returns:
            Number of production sweeps performed.
        """
        if n_sweeps is None and self.params.max_time is None:
            raise ValueError("either n_sweeps or params.max_time must be given")
        start = time.time()
        n_production = 0
        while n_sweeps is None or n_production < n_sweeps:
            elapsed = time.time() - start
            if self.params.max_time is not None and elapsed >= self.params.max_time:
                break
            if not self.thermalized and self._thermalization_finished(elapsed):
                self.end_thermalization()
            self.mc_step()
            if self.thermalized:
                n_production += 1
                if measure is not None:
                    measure(self.config.snapshot())
            if self.params.verbose and self.n_sweeps % 100 == 0:
                logger.info("Sweep %d: %s", self.n_sweeps, self.status_string())
        return n_production

    def status_string(self):
        rates = ", ".join(u.status_string() for u in self.updaters.all())
        return (f"order={self.config.expansion_order}, space={self.config.config_space.value}, "
                f"sign={self.config.sign}, n_window={self.window.n_window}, "
                f"weights={self.config_space.describe()}, acceptance[{rates}]")

    def save_state(self, path):
        """Write an opaque checkpoint of the sampler state."""
        state = {
            "operators": list(self.config.operators),
            "worm": self.config.worm,
            "n_window": self.window.n_window,
            "config_space": self.config_space.state(),
            "updaters": self.updaters.state(),
            "rng": self.rng.bit_generator.state,
            "n_sweeps": self.n_sweeps,
            "thermalized": self.thermalized,
        }
        with open(path, "wb") as f:
            pickle.dump(state, f)

    def load_state(self, path):
        """Resume from a checkpoint; the configuration is rebuilt from scratch."""
        with open(path, "rb") as f:
            state = pickle.load(f)
        self.config.rebuild(state["operators"], state["worm"])
        self.window.set_window_size(state["n_window"], self.config)
        self.config_space.restore(state["config_space"])
        self.updaters.restore(state["updaters"])
        self.rng.bit_generator.state = state["rng"]
        self.n_sweeps = state["n_sweeps"]
        self.thermalized = state["thermalized"]
