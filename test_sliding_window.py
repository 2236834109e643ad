"""
Windowed trace vs. trace from scratch, and window bookkeeping over a sweep
"""
import numpy as np
import pytest

from ctqmc.configuration import Configuration
from ctqmc.ed_anderson import ED_Anderson
from ctqmc.model import HybridizationFunction, ImpurityModel
from ctqmc.operators import Operator, OperatorType
from ctqmc.sliding_window import SlidingWindow, compute_trace


def two_flavor_model(beta=3.0):
    hoppings = np.array([[0.6, 0.4, 0.0, 0.0], [0.0, 0.0, 0.6, 0.4]])
    U = np.array([[0.0, 1.5], [0.0, 0.0]])
    ed = ED_Anderson(onsite=[-0.4, -0.6], bath_energies=[-0.5, 0.5, -0.5, 0.5], hoppings=hoppings, U=U)
    return ed.impurity_model(beta, n_tau=500)


def alternating_operators(rng, beta, flavor, n_pairs):
    """Creators and annihilators alternating in time, so the trace never vanishes."""
    times = np.sort(rng.random(2 * n_pairs) * beta)
    first = OperatorType.CREATION if rng.random() < 0.5 else OperatorType.ANNIHILATION
    ops = []
    for i, t in enumerate(times):
        op_type = first if i % 2 == 0 else OperatorType(1 - first)
        ops.append(Operator(float(t), flavor, op_type))
    return ops


def random_configuration(model, rng, n_pairs=4):
    config = Configuration(model)
    ops = []
    for f in range(model.n_flavors):
        ops += alternating_operators(rng, model.beta, f, n_pairs)
    config.rebuild(ops)
    return config


def full_trace(config):
    return compute_trace(config.model, config.entries(0.0, config.beta))


def test_empty_trace_is_local_partition_function():
    model = two_flavor_model()
    config = Configuration(model)
    expected = np.sum(np.exp(-model.beta * model.energies))
    assert float(config.trace) == pytest.approx(expected, rel=1e-12)
    assert config.sign == 1
    assert config.expansion_order == 0

    free = ImpurityModel(2.0, np.zeros((2, 2)), HybridizationFunction.constant(2.0, 1, 1.0))
    assert float(Configuration(free).trace) == pytest.approx(2.0)


@pytest.mark.parametrize("n_window", [1, 2, 3, 5, 8])
def test_window_trace_matches_full_trace(n_window):
    model = two_flavor_model()
    rng = np.random.default_rng(n_window)
    config = random_configuration(model, rng)
    window = SlidingWindow(model)
    window.set_window_size(n_window, config)
    reference = full_trace(config)
    for _ in range(2 * window.num_moves_per_sweep):
        windowed = window.trace(config.entries(window.lower, window.upper))
        assert float(windowed / reference) == pytest.approx(1.0, abs=1e-10)
        window.move_to_next_position(config)


def test_full_cycle_returns_to_start():
    model = two_flavor_model()
    rng = np.random.default_rng(0)
    config = random_configuration(model, rng, n_pairs=6)
    window = SlidingWindow(model)
    window.set_window_size(6, config)
    start_right, start_left, _, _, _ = window.cache_state()

    positions = []
    for _ in range(window.num_moves_per_sweep):
        window.move_to_next_position(config)
        positions.append(window.position)
    assert positions == [1, 2, 3, 4, 3, 2, 1, 0]
    assert window.position_right_edge == 0

    right, left, position, _, n_window = window.cache_state()
    assert (position, n_window) == (0, 6)
    for (m0, e0), (m1, e1) in zip(start_right + start_left, right + left):
        assert np.allclose(np.ldexp(m0, e0), np.ldexp(m1, e1), rtol=1e-12, atol=0.0)


def test_window_edges():
    model = two_flavor_model(beta=4.0)
    config = Configuration(model)
    window = SlidingWindow(model)
    window.set_window_size(1, config)
    assert (window.lower, window.upper, window.num_moves_per_sweep) == (0.0, 4.0, 1)
    window.set_window_size(4, config, position=2)
    assert (window.lower, window.upper) == (2.0, 4.0)
    assert window.contains(3.999) and not window.contains(4.0) and not window.contains(1.0)
    with pytest.raises(ValueError):
        window.set_window_size(4, config, position=3)
    with pytest.raises(ValueError):
        window.set_window_size(0, config)


def test_trace_survives_large_expansion_order():
    # Long operator string spread over many segments
    model = two_flavor_model(beta=20.0)
    rng = np.random.default_rng(5)
    config = random_configuration(model, rng, n_pairs=60)
    assert not config.trace.is_zero()
    window = SlidingWindow(model)
    window.set_window_size(16, config, position=7)
    windowed = window.trace(config.entries(window.lower, window.upper))
    assert float(windowed / config.trace) == pytest.approx(1.0, abs=1e-10)
