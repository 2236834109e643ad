"""
Local, worm and global updates: rollback on rejection, consistency after
acceptance, boundary times
"""
import numpy as np
import pytest

from ctqmc.config_space import FlatHistogramConfigSpace
from ctqmc.configuration import Configuration, Move
from ctqmc.global_updates import GlobalFlavorPermutationUpdater, GlobalShiftUpdater
from ctqmc.operators import ConfigSpace, Operator, OperatorType, Worm
from ctqmc.sliding_window import SlidingWindow
from ctqmc.updates import FlavorExchangeUpdater, PairInsertionRemovalUpdater, ShiftUpdater, log_falling_factorial
from ctqmc.worm_updates import WormConnector, WormInsertionRemovalUpdater, WormMoveUpdater
from test_sliding_window import alternating_operators, random_configuration, two_flavor_model

WORM_KINDS = (ConfigSpace.G1, ConfigSpace.EQUAL_TIME_G1, ConfigSpace.TWO_TIME_G2)


def state_of(config):
    return (list(config.operators), config.worm, config.trace, config.sign,
            [(list(b.creators), list(b.annihilators), b.inverse.copy(), b.log_abs_det, b.det_sign)
             for b in config.blocks])


def assert_same_state(a, b):
    ops_a, worm_a, trace_a, sign_a, blocks_a = a
    ops_b, worm_b, trace_b, sign_b, blocks_b = b
    assert ops_a == ops_b
    assert worm_a == worm_b
    assert trace_a == trace_b
    assert sign_a == sign_b
    for (c_a, a_a, m_a, l_a, s_a), (c_b, a_b, m_b, l_b, s_b) in zip(blocks_a, blocks_b):
        assert c_a == c_b and a_a == a_b
        assert np.array_equal(m_a, m_b)
        assert (l_a, s_a) == (l_b, s_b)


def all_updaters(model):
    updaters = [
        PairInsertionRemovalUpdater(model, rank=1),
        PairInsertionRemovalUpdater(model, rank=2),
        PairInsertionRemovalUpdater(model, rank=1, diagonal=True),
        ShiftUpdater(model.beta),
        FlavorExchangeUpdater(),
    ]
    for kind in WORM_KINDS:
        updaters += [WormInsertionRemovalUpdater(model, kind), WormMoveUpdater(model, kind)]
    updaters.append(WormConnector())
    return updaters


def test_log_falling_factorial():
    assert log_falling_factorial(5, 2) == pytest.approx(np.log(20.0))
    assert log_falling_factorial(3, 0) == pytest.approx(0.0)


def test_invalid_rank_raises():
    with pytest.raises(ValueError):
        PairInsertionRemovalUpdater(two_flavor_model(), rank=0)


def test_rejected_updates_leave_no_trace():
    model = two_flavor_model()
    rng = np.random.default_rng(1)
    config = random_configuration(model, rng, n_pairs=3)
    window = SlidingWindow(model)
    window.set_window_size(4, config)
    config_space = FlatHistogramConfigSpace(WORM_KINDS)
    updaters = all_updaters(model)

    n_rejected = n_accepted = 0
    for step in range(3000):
        before = state_of(config)
        cache = window.cache_state()
        updater = updaters[rng.integers(len(updaters))]
        if updater.update(rng, model.beta, config, window, config_space):
            n_accepted += 1
        else:
            n_rejected += 1
            assert_same_state(before, state_of(config))
            right, left, position, direction, n_window = window.cache_state()
            assert (position, direction, n_window) == cache[2:]
        if step % 20 == 19:
            window.move_to_next_position(config)
    assert n_accepted > 0 and n_rejected > 0


def test_accepted_updates_stay_consistent():
    model = two_flavor_model()
    rng = np.random.default_rng(2)
    config = random_configuration(model, rng, n_pairs=2)
    window = SlidingWindow(model)
    window.set_window_size(3, config)
    config_space = FlatHistogramConfigSpace(WORM_KINDS)
    updaters = all_updaters(model)

    for step in range(2000):
        updater = updaters[rng.integers(len(updaters))]
        if updater.update(rng, model.beta, config, window, config_space):
            config.check_consistency(window, rtol=1e-10)
        if step % 10 == 9:
            window.move_to_next_position(config)


def test_global_updates_need_full_window():
    model = two_flavor_model()
    rng = np.random.default_rng(3)
    config = random_configuration(model, rng)
    window = SlidingWindow(model)
    window.set_window_size(2, config)
    with pytest.raises(ValueError):
        GlobalShiftUpdater(model).update(rng, model.beta, config, window, None)


def test_global_updates_stay_consistent():
    model = two_flavor_model()
    rng = np.random.default_rng(4)
    config = Configuration(model)
    # Flavor 0 carries only the worm, flavor 1 only hybridized pairs
    config.rebuild(alternating_operators(rng, model.beta, 1, 3),
                   Worm.build(ConfigSpace.G1, [0.123, 1.717], [0, 0]))
    window = SlidingWindow(model)
    window.set_window_size(1, config)
    shift = GlobalShiftUpdater(model)
    exchange = GlobalFlavorPermutationUpdater([(0, 1)])
    for _ in range(50):
        for updater in (shift, exchange):
            updater.update(rng, model.beta, config, window, None)
            config.check_consistency(window, rtol=1e-10)
    assert shift.acceptance.num_accepted > 0
    assert config.worm is not None


def test_global_shift_keeps_weight_of_invariant_model():
    model = two_flavor_model()
    rng = np.random.default_rng(6)
    config = random_configuration(model, rng)
    shift = 0.37 * model.beta
    added = tuple(op.moved(time=(op.time + shift) % model.beta) for op in config.operators)
    trial = config.try_move(Move(tuple(config.operators), added))
    assert trial is not None
    # Only the interpolation of the hybridization grid breaks the invariance
    assert abs(trial.log_abs_ratio) < 1e-2


def test_insertion_at_boundaries():
    model = two_flavor_model()
    config = Configuration(model)
    window = SlidingWindow(model)
    window.set_window_size(1, config)
    last = np.nextafter(model.beta, 0.0)

    move = Move(added=(Operator(0.0, 0, OperatorType.CREATION), Operator(last, 0, OperatorType.ANNIHILATION)))
    trial = config.try_move(move, window)
    assert trial is not None
    config.commit(trial)
    config.check_consistency(window)
    assert config.expansion_order == 1

    move = Move(added=(Operator(0.0, 1, OperatorType.CREATION), Operator(1.0, 1, OperatorType.ANNIHILATION)))
    assert config.try_move(move, window) is None
    move = Move(added=(Operator(model.beta, 1, OperatorType.CREATION), Operator(1.0, 1, OperatorType.ANNIHILATION)))
    assert config.try_move(move, window) is None

    trial = config.try_move(Move(removed=tuple(config.operators)), window)
    config.commit(trial)
    config.check_consistency(window)
    assert config.expansion_order == 0


def test_changes_outside_window_raise():
    model = two_flavor_model()
    config = Configuration(model)
    window = SlidingWindow(model)
    window.set_window_size(4, config)
    move = Move(added=(Operator(0.1, 0, OperatorType.CREATION),
                       Operator(0.9 * model.beta, 0, OperatorType.ANNIHILATION)))
    with pytest.raises(ValueError):
        config.try_move(move, window)
    with pytest.raises(ValueError):
        config.try_move(Move(removed=(Operator(0.2, 0, OperatorType.CREATION),)), window)


def test_unbalanced_move_has_zero_weight():
    model = two_flavor_model()
    config = Configuration(model)
    move = Move(added=(Operator(0.2, 0, OperatorType.CREATION),))
    assert config.try_move(move) is None


def test_shift_distance_adapts():
    model = two_flavor_model()
    updater = ShiftUpdater(model.beta, target_acceptance=0.5)
    start = updater.max_distance
    for _ in range(200):
        updater.acceptance.record(False)
    updater.adapt(model.beta)
    assert updater.max_distance < start
    updater.freeze()
    distance = updater.max_distance
    updater.adapt(model.beta)
    assert updater.max_distance == distance
