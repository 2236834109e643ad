"""Solver parameters and their startup validation."""
from dataclasses import dataclass

from .operators import ConfigSpace


@dataclass
class SolverParams:
    """Update mix, window and learning controls of a run."""
    max_window_size: int = 32
    ops_per_window: float = 4.0
    n_updates_per_window: int = 10
    max_rank: int = 1
    diagonal_updates: bool = True
    shift_updates: bool = True
    flavor_exchange_updates: bool = True
    global_update_interval: int = 10
    flavor_pairs: tuple = ()
    worm_kinds: tuple = ()
    worm_connectors: bool = True
    flatness: float = 0.8
    initial_log_factor: float = 1.0
    target_log_factor: float = 1e-3
    shift_target_acceptance: float = 0.3
    n_therm_sweeps: int = 100
    thermalization_time: float = None
    max_time: float = None
    check_consistency: bool = False
    verbose: bool = False

    def validate(self):
        """Reject obviously invalid inputs before the simulation starts."""
        if self.max_window_size < 1:
            raise ValueError("max_window_size must be positive")
        if self.ops_per_window <= 0:
            raise ValueError("ops_per_window must be positive")
        if self.n_updates_per_window < 1:
            raise ValueError("n_updates_per_window must be positive")
        if self.max_rank < 1:
            raise ValueError("max_rank of joint insertion/removal must be positive")
        if self.global_update_interval < 1:
            raise ValueError("global_update_interval must be positive")
        if self.n_therm_sweeps < 0:
            raise ValueError("n_therm_sweeps must not be negative")
        if not 0.0 < self.flatness < 1.0:
            raise ValueError("flatness must lie in (0, 1)")
        if self.initial_log_factor <= 0 or self.target_log_factor <= 0:
            raise ValueError("flat histogram modification factors must be positive")
        if not 0.0 < self.shift_target_acceptance < 1.0:
            raise ValueError("shift_target_acceptance must lie in (0, 1)")
        if self.thermalization_time is not None and self.thermalization_time < 0:
            raise ValueError("thermalization_time must not be negative")
        if self.max_time is not None and self.max_time <= 0:
            raise ValueError("max_time must be positive")
        if (self.thermalization_time is not None and self.max_time is not None
                and self.thermalization_time > self.max_time):
            raise ValueError("thermalization_time exceeds max_time")
        for kind in self.worm_kinds:
            if not isinstance(kind, ConfigSpace) or not kind.is_worm:
                raise ValueError(f"{kind!r} is not a worm kind")
        if len(set(self.worm_kinds)) != len(self.worm_kinds):
            raise ValueError("worm kinds must be registered only once")
        for pair in self.flavor_pairs:
            if len(pair) != 2 or pair[0] == pair[1]:
                raise ValueError(f"invalid flavor pair {pair!r}")
        return self
