"""
Flat-histogram learning of configuration-space weights
"""
import logging
import math

import numpy as np
import pytest

from ctqmc.config_space import FlatHistogramConfigSpace
from ctqmc.operators import ConfigSpace


def run_two_space_toy(ratio, seed=0, max_steps=2_000_000):
    """
    Markov chain over {Z, G1} with bare weights 1 and ratio, reweighted by
    the learned space weights, until the modification factor converges.
    """
    rng = np.random.default_rng(seed)
    spaces = FlatHistogramConfigSpace([ConfigSpace.G1], min_visits=50)
    bare = {ConfigSpace.Z_FUNCTION: 0.0, ConfigSpace.G1: math.log(ratio)}
    current = ConfigSpace.Z_FUNCTION
    steps = 0
    while not spaces.converged and steps < max_steps:
        other = ConfigSpace.G1 if current is ConfigSpace.Z_FUNCTION else ConfigSpace.Z_FUNCTION
        log_a = bare[other] - bare[current] + spaces.log_weight_ratio(other, current)
        if log_a >= 0 or rng.random() < math.exp(log_a):
            current = other
        spaces.visit(current)
        steps += 1
    return spaces


@pytest.mark.parametrize("ratio", [4.0, 0.1])
def test_weights_converge_to_inverse_ratio(ratio):
    spaces = run_two_space_toy(ratio)
    assert spaces.converged
    assert spaces.weight(ConfigSpace.Z_FUNCTION) == pytest.approx(1.0)
    assert spaces.weight(ConfigSpace.G1) == pytest.approx(1.0 / ratio, rel=0.15)


def test_frozen_weights_do_not_move():
    spaces = run_two_space_toy(4.0)
    spaces.finalize_thermalization()
    weights = spaces.log_weights.copy()
    for _ in range(100):
        spaces.visit(ConfigSpace.G1)
    assert np.array_equal(weights, spaces.log_weights)


def test_warns_when_not_converged(caplog):
    spaces = FlatHistogramConfigSpace([ConfigSpace.G1])
    spaces.visit(ConfigSpace.G1)
    with caplog.at_level(logging.WARNING, logger="ctqmc"):
        spaces.finalize_thermalization()
    assert "did not converge" in caplog.text
    assert spaces.frozen


def test_single_space_is_trivially_converged(caplog):
    spaces = FlatHistogramConfigSpace([])
    assert spaces.converged
    with caplog.at_level(logging.WARNING, logger="ctqmc"):
        spaces.finalize_thermalization()
    assert caplog.text == ""


def test_state_round_trip():
    spaces = run_two_space_toy(4.0, max_steps=500)
    copy = FlatHistogramConfigSpace([ConfigSpace.G1], min_visits=50)
    copy.restore(spaces.state())
    assert np.array_equal(copy.log_weights, spaces.log_weights)
    assert copy.log_factor == spaces.log_factor
    other = FlatHistogramConfigSpace([ConfigSpace.EQUAL_TIME_G1])
    with pytest.raises(ValueError):
        other.restore(spaces.state())
