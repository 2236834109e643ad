"""
Updates that move between configuration spaces or relocate the worm.

Transitions into and out of a worm space carry the learned weight ratio
eta(to) / eta(from), so the time spent in each space is set by the
flat-histogram learner rather than by the bare statistical weight.
"""
import math

from .configuration import Move
from .operators import ConfigSpace, Worm, WORM_LAYOUTS, worm_num_times
from .updates import LocalUpdater, uniform_time


class WormInsertionRemovalUpdater(LocalUpdater):
    """
    Z_FUNCTION -> kind by inserting a worm with uniform flavors and times in
    the window, kind -> Z_FUNCTION by removing a worm lying in the window.

        q_rem / q_ins = F^{n_ops} L_w^{n_times}
    """

    def __init__(self, model, kind):
        super().__init__()
        self.kind = kind
        self.n_flavors = model.n_flavors
        self.n_ops = len(WORM_LAYOUTS[kind])
        self.n_times = worm_num_times(kind)
        self.name = f"worm insertion/removal {kind.value}"

    def _log_volume(self, window):
        return self.n_ops * math.log(self.n_flavors) + self.n_times * math.log(window.length)

    def _propose(self, rng, beta, config, window, config_space):
        space = config.config_space
        if space is ConfigSpace.Z_FUNCTION:
            times = [uniform_time(rng, window) for _ in range(self.n_times)]
            flavors = rng.integers(self.n_flavors, size=self.n_ops)
            worm = Worm.build(self.kind, times, flavors)
            trial = config.try_move(Move(worm=worm), window)
            log_factor = self._log_volume(window) + config_space.log_weight_ratio(self.kind, space)
            return self._accept(rng, config, trial, log_factor)
        if space is self.kind:
            if not all(window.contains(t) for t in config.worm.group_times()):
                return False
            trial = config.try_move(Move(worm=None), window)
            log_factor = -self._log_volume(window) + config_space.log_weight_ratio(ConfigSpace.Z_FUNCTION, space)
            return self._accept(rng, config, trial, log_factor)
        return False


class WormMoveUpdater(LocalUpdater):
    """Within one worm space: redraw one time group in the window, or one operator's flavor."""

    def __init__(self, model, kind):
        super().__init__()
        self.kind = kind
        self.n_flavors = model.n_flavors
        self.n_times = worm_num_times(kind)
        self.name = f"worm move {kind.value}"

    def _propose(self, rng, beta, config, window, config_space):
        worm = config.worm
        if worm is None or worm.kind is not self.kind:
            return False
        if rng.random() < 0.5:
            group = rng.integers(self.n_times)
            if not window.contains(worm.group_times()[group]):
                return False
            new = worm.with_group_time(group, uniform_time(rng, window))
        else:
            index = rng.integers(len(worm.operators))
            if not window.contains(worm.operators[index].time):
                return False
            flavor = rng.integers(self.n_flavors)
            if flavor == worm.operators[index].flavor:
                return False
            new = worm.with_flavor(index, flavor)
        trial = config.try_move(Move(worm=new), window)
        return self._accept(rng, config, trial, 0.0)


class WormConnector(LocalUpdater):
    """
    Direct G1 <-> EQUAL_TIME_G1 transition.

    Collapsing moves the creator of a G1 worm onto the annihilator's time;
    expanding draws a new creator time uniformly in the window, so

        A(G1 -> ET) = min(1, |w_ET / w_G1| eta_ET / (eta_G1 L_w)).
    """

    def __init__(self, expanded=ConfigSpace.G1, collapsed=ConfigSpace.EQUAL_TIME_G1):
        super().__init__()
        if (expanded, collapsed) != (ConfigSpace.G1, ConfigSpace.EQUAL_TIME_G1):
            raise ValueError(f"no connector between {expanded.value} and {collapsed.value}")
        self.expanded = expanded
        self.collapsed = collapsed
        self.name = f"connector {expanded.value}<->{collapsed.value}"

    def _propose(self, rng, beta, config, window, config_space):
        worm = config.worm
        space = config.config_space
        if space is self.expanded:
            t0, t1 = worm.group_times()
            if not (window.contains(t0) and window.contains(t1)):
                return False
            new = Worm.build(self.collapsed, [t0], worm.flavors)
            log_factor = config_space.log_weight_ratio(self.collapsed, space) - math.log(window.length)
        elif space is self.collapsed:
            t0 = worm.group_times()[0]
            if not window.contains(t0):
                return False
            new = Worm.build(self.expanded, [t0, uniform_time(rng, window)], worm.flavors)
            log_factor = config_space.log_weight_ratio(self.expanded, space) + math.log(window.length)
        else:
            return False
        trial = config.try_move(Move(worm=new), window)
        return self._accept(rng, config, trial, log_factor)
