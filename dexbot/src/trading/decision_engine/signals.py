"""Directional signal generators and the policy that picks one per tick."""
from __future__ import annotations

import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol, Sequence

from dexbot.src.trading.decision_engine.models import (
    FibonacciLevels,
    Signal,
    SignalAction,
    SwingWindow,
)

MOMENTUM = "momentum"
MEAN_REVERSION = "mean_reversion"
FIBONACCI = "fibonacci"
SIGNAL_NAMES = (MOMENTUM, MEAN_REVERSION, FIBONACCI)


def _deviation(price: Decimal, ema: Decimal) -> Decimal:
    return (price - ema) / ema


def _pct(value: Decimal) -> str:
    return f"{float(value) * 100:.2f}%"


def momentum_signal(price: Decimal, ema: Decimal, threshold: Decimal) -> Signal:
    """Follow the move when price pulls away from its average."""

    deviation = _deviation(price, ema)
    if deviation > threshold:
        return Signal(SignalAction.BUY, f"Momentum +{_pct(deviation)} above EMA")
    if deviation < -threshold:
        return Signal(SignalAction.SELL, f"Momentum {_pct(deviation)} below EMA")
    return Signal.none(f"Momentum deviation {_pct(deviation)} inside band")


def mean_reversion_signal(price: Decimal, ema: Decimal, threshold: Decimal) -> Signal:
    """Fade the move once the deviation exceeds ``threshold``."""

    deviation = _deviation(price, ema)
    if deviation > threshold:
        return Signal(SignalAction.SELL, f"MeanRevert: above EMA by {_pct(deviation)}")
    if deviation < -threshold:
        return Signal(SignalAction.BUY, f"MeanRevert: below EMA by {_pct(deviation)}")
    return Signal.none(f"MeanRevert deviation {_pct(deviation)} inside band")


def swing_trend(price: Decimal, ema: Decimal, swing: SwingWindow) -> str:
    if swing.high_index > swing.low_index and price >= ema:
        return "up"
    if swing.low_index > swing.high_index and price <= ema:
        return "down"
    return "flat"


def fibonacci_signal(price: Decimal, ema: Decimal, swing: Optional[SwingWindow]) -> Signal:
    """Buy uptrend pullbacks and sell downtrend rallies inside the 38.2-61.8% band."""

    if swing is None:
        return Signal.none("no swings yet")
    if swing.is_flat:
        return Signal.none("flat swing range")

    trend = swing_trend(price, ema, swing)
    levels = FibonacciLevels.from_swing(swing)
    if trend == "up" and levels.in_uptrend_band(price):
        if levels.in_golden_pocket(price):
            return Signal(SignalAction.BUY, "Fib uptrend 38.2-61.8% (golden pocket)")
        return Signal(SignalAction.BUY, "Fib uptrend 38.2-61.8%")
    if trend == "down" and levels.in_downtrend_band(price):
        return Signal(SignalAction.SELL, "Fib downtrend 38.2-61.8%")
    return Signal.none(f"no fib entry ({trend})")


@dataclass(frozen=True)
class SignalInputs:
    price: Decimal
    ema: Decimal
    swing: Optional[SwingWindow]


SignalGenerator = Callable[[SignalInputs], Signal]


def build_generators(
    *,
    momentum_threshold: Decimal,
    mean_reversion_threshold: Decimal,
) -> Dict[str, SignalGenerator]:
    """Bind thresholds to the three generators, keyed by configuration name."""

    return {
        MOMENTUM: lambda inputs: momentum_signal(inputs.price, inputs.ema, momentum_threshold),
        MEAN_REVERSION: lambda inputs: mean_reversion_signal(
            inputs.price, inputs.ema, mean_reversion_threshold
        ),
        FIBONACCI: lambda inputs: fibonacci_signal(inputs.price, inputs.ema, inputs.swing),
    }


class SignalSelectionPolicy(Protocol):
    def choose(self, names: Sequence[str]) -> str:
        ...


class RandomSelectionPolicy:
    """Uniform pick among the enabled generators; pass ``seed`` for repeatable runs."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self._random = random.Random(seed)

    def choose(self, names: Sequence[str]) -> str:
        if not names:
            raise ValueError("At least one signal generator must be enabled")
        return self._random.choice(list(names))


class FixedSelectionPolicy:
    def __init__(self, name: str) -> None:
        self.name = name

    def choose(self, names: Sequence[str]) -> str:
        if self.name not in names:
            raise ValueError(f"Signal {self.name!r} is not enabled")
        return self.name
