from decimal import Decimal

import pytest

from dexbot.src.trading.decision_engine.models import (
    FibonacciLevels,
    SignalAction,
    SwingWindow,
)
from dexbot.src.trading.decision_engine.price_history import PriceHistory
from dexbot.src.trading.decision_engine.signals import (
    FIBONACCI,
    MEAN_REVERSION,
    MOMENTUM,
    SIGNAL_NAMES,
    FixedSelectionPolicy,
    RandomSelectionPolicy,
    SignalInputs,
    build_generators,
    fibonacci_signal,
    mean_reversion_signal,
    momentum_signal,
)

D = Decimal


def test_momentum_buys_after_breakout_from_flat_series():
    history = PriceHistory(alpha="0.2")
    for price in ("1.00", "1.00", "1.00", "1.00", "1.006"):
        history.observe(price)

    signal = momentum_signal(history.latest.price, history.ema, D("0.004"))

    assert signal.action is SignalAction.BUY


@pytest.mark.parametrize(
    "price, expected",
    [
        (D("1.01"), SignalAction.BUY),
        (D("0.99"), SignalAction.SELL),
        (D("1.003"), SignalAction.NONE),
        (D("0.997"), SignalAction.NONE),
    ],
)
def test_momentum_follows_deviation(price, expected):
    assert momentum_signal(price, D("1"), D("0.004")).action is expected


@pytest.mark.parametrize(
    "price, expected",
    [
        (D("1.01"), SignalAction.SELL),
        (D("0.99"), SignalAction.BUY),
        (D("1.0048"), SignalAction.NONE),
    ],
)
def test_mean_reversion_fades_deviation(price, expected):
    assert mean_reversion_signal(price, D("1"), D("0.006")).action is expected


def test_fibonacci_without_swing_is_none():
    signal = fibonacci_signal(D("1"), D("1"), None)

    assert signal.action is SignalAction.NONE
    assert signal.reason == "no swings yet"


def test_fibonacci_flat_range_is_none():
    swing = SwingWindow(high=D("1"), high_index=3, low=D("1"), low_index=0)

    assert fibonacci_signal(D("1"), D("0.9"), swing).action is SignalAction.NONE


def test_fibonacci_buys_uptrend_pullback():
    swing = SwingWindow(high=D("2"), high_index=5, low=D("1"), low_index=0)

    signal = fibonacci_signal(D("1.5"), D("1.4"), swing)

    assert signal.action is SignalAction.BUY


def test_fibonacci_flags_golden_pocket_pullbacks():
    swing = SwingWindow(high=D("2"), high_index=5, low=D("1"), low_index=0)

    deep = fibonacci_signal(D("1.45"), D("1.4"), swing)
    shallow = fibonacci_signal(D("1.6"), D("1.4"), swing)

    assert deep.action is SignalAction.BUY
    assert deep.reason == "Fib uptrend 38.2-61.8% (golden pocket)"
    assert shallow.action is SignalAction.BUY
    assert shallow.reason == "Fib uptrend 38.2-61.8%"


def test_fibonacci_sells_downtrend_rally():
    swing = SwingWindow(high=D("2"), high_index=0, low=D("1"), low_index=5)

    signal = fibonacci_signal(D("1.5"), D("1.6"), swing)

    assert signal.action is SignalAction.SELL


def test_fibonacci_ignores_trend_contradicted_by_ema():
    swing = SwingWindow(high=D("2"), high_index=5, low=D("1"), low_index=0)

    signal = fibonacci_signal(D("1.5"), D("1.7"), swing)

    assert signal.action is SignalAction.NONE
    assert "flat" in signal.reason


def test_fibonacci_uptrend_outside_band_is_none():
    swing = SwingWindow(high=D("2"), high_index=5, low=D("1"), low_index=0)

    assert fibonacci_signal(D("1.9"), D("1.4"), swing).action is SignalAction.NONE


def test_fibonacci_levels():
    levels = FibonacciLevels.from_swing(
        SwingWindow(high=D("2"), high_index=1, low=D("1"), low_index=0)
    )

    assert levels.down_382 == D("1.618")
    assert levels.down_500 == D("1.5")
    assert levels.down_618 == D("1.382")
    assert levels.up_382 == D("1.382")
    assert levels.up_618 == D("1.618")
    assert levels.in_golden_pocket(D("1.45"))
    assert not levels.in_golden_pocket(D("1.55"))


def test_build_generators_binds_thresholds():
    generators = build_generators(momentum_threshold=D("0.004"), mean_reversion_threshold=D("0.006"))
    inputs = SignalInputs(price=D("1.005"), ema=D("1"), swing=None)

    assert set(generators) == set(SIGNAL_NAMES)
    assert generators[MOMENTUM](inputs).action is SignalAction.BUY
    assert generators[MEAN_REVERSION](inputs).action is SignalAction.NONE
    assert generators[FIBONACCI](inputs).action is SignalAction.NONE


def test_seeded_random_selection_is_repeatable():
    first = RandomSelectionPolicy(seed=7)
    second = RandomSelectionPolicy(seed=7)

    picks = [first.choose(SIGNAL_NAMES) for _ in range(20)]

    assert picks == [second.choose(SIGNAL_NAMES) for _ in range(20)]
    assert set(picks) <= set(SIGNAL_NAMES)


def test_random_selection_requires_candidates():
    with pytest.raises(ValueError):
        RandomSelectionPolicy(seed=1).choose([])


def test_fixed_selection():
    policy = FixedSelectionPolicy(FIBONACCI)

    assert policy.choose(SIGNAL_NAMES) == FIBONACCI
    with pytest.raises(ValueError):
        policy.choose([MOMENTUM])
