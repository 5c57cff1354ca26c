"""Read-only strategy simulation: sample or replay prices, run every signal once."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from dexbot.src.trading.decision_engine.arbitrage import ArbitrageEvaluator, swap_middle
from dexbot.src.trading.decision_engine.exceptions import InvalidPath, QuoteUnavailable
from dexbot.src.trading.decision_engine.models import (
    ArbitrageChain,
    Signal,
    SwingWindow,
    to_decimal,
    token_symbol,
)
from dexbot.src.trading.decision_engine.signals import SignalInputs, build_generators

logger = logging.getLogger(__name__)

FLAT_RANGE_FRACTION = 0.001
DEFAULT_SAMPLES = 24
DEFAULT_VARIATION_BPS = 120.0
DEFAULT_ARB_AMOUNTS = (Decimal("0.01"), Decimal("0.05"), Decimal("0.10"))

SOURCE_QUOTES = "quotes"
SOURCE_CSV = "csv"
SOURCE_SYNTHETIC = "synthetic"


@dataclass
class ArbitrageSimulation:
    amount: Decimal
    best: Optional[ArbitrageChain]
    candidates: List[ArbitrageChain] = field(default_factory=list)


@dataclass
class StrategySimulation:
    """Everything a simulation run computed, for logging or inspection."""

    source: str
    prices: pd.Series
    ema: pd.Series
    swing: Optional[SwingWindow]
    signals: Dict[str, Signal] = field(default_factory=dict)
    arbitrage: List[ArbitrageSimulation] = field(default_factory=list)

    @property
    def price(self) -> float:
        return float(self.prices.iloc[-1])

    @property
    def last_ema(self) -> float:
        return float(self.ema.iloc[-1])


def random_walk(
    seed_price: float,
    samples: int,
    variation_bps: float = DEFAULT_VARIATION_BPS,
    rng: Optional[np.random.Generator] = None,
) -> pd.Series:
    """Synthetic series starting at ``seed_price`` with +/- ``variation_bps`` steps."""

    if samples <= 0:
        return pd.Series([], dtype=float)
    rng = rng or np.random.default_rng()
    steps = rng.uniform(-1.0, 1.0, size=samples - 1) * (variation_bps / 10_000)
    factors = np.concatenate(([1.0], np.cumprod(1.0 + steps)))
    return pd.Series(seed_price * factors, name="price")


def load_price_csv(path: Union[str, Path], column: str = "price") -> pd.Series:
    frame = pd.read_csv(path)
    if column not in frame.columns:
        raise ValueError(f"{path} has no {column!r} column (found {list(frame.columns)})")
    prices = pd.to_numeric(frame[column], errors="coerce").dropna()
    prices = prices[prices > 0].reset_index(drop=True)
    return prices.rename("price")


def sample_prices(
    exchange: Any,
    base_token: str,
    stable_token: str,
    *,
    samples: int = DEFAULT_SAMPLES,
    interval_seconds: float = 0.3,
    sleep: Callable[[float], None] = time.sleep,
) -> pd.Series:
    values: List[float] = []
    for index in range(samples):
        quote = exchange.quote(base_token, stable_token, Decimal("1"))
        values.append(float(quote.out_amount))
        if index < samples - 1:
            sleep(interval_seconds)
    return pd.Series(values, name="price", dtype=float)


def ema_series(prices: pd.Series, alpha: float) -> pd.Series:
    return prices.ewm(alpha=alpha, adjust=False).mean()


def is_flat(prices: pd.Series, fraction: float = FLAT_RANGE_FRACTION) -> bool:
    if prices.empty:
        return True
    high = float(prices.max())
    if high == 0 or not np.isfinite(high):
        return True
    return (high - float(prices.min())) / high < fraction


def swing_from_series(prices: pd.Series, minimum_points: int = 5) -> Optional[SwingWindow]:
    """Swing of the final third of ``prices`` with indices into the whole series."""

    start = (len(prices) * 2) // 3
    tail = prices.iloc[start:].to_numpy(dtype=float)
    if len(tail) < minimum_points:
        return None
    high_index = int(np.argmax(tail))
    low_index = int(np.argmin(tail))
    return SwingWindow(
        high=to_decimal(tail[high_index]),
        high_index=start + high_index,
        low=to_decimal(tail[low_index]),
        low_index=start + low_index,
    )


def simulate_arbitrage(
    evaluator: Any,
    path: Sequence[str],
    amounts: Sequence[Decimal] = DEFAULT_ARB_AMOUNTS,
) -> List[ArbitrageSimulation]:
    """Evaluate ``path`` at each amount, keeping the best.

    Four-asset loops are also tried with their middle hops reversed.
    """

    results: List[ArbitrageSimulation] = []
    paths = [list(path)]
    if len(path) == 4:
        paths.append(swap_middle(path))
    for amount in amounts:
        candidates: List[ArbitrageChain] = []
        for candidate_path in paths:
            try:
                chain = evaluator.evaluate(candidate_path, amount)
            except (InvalidPath, QuoteUnavailable) as exc:
                logger.warning("Arbitrage simulation for %s failed: %s", candidate_path, exc)
                continue
            if chain is not None:
                candidates.append(chain)
        best = max(candidates, key=lambda chain: chain.profit_bps) if candidates else None
        results.append(ArbitrageSimulation(amount=to_decimal(amount), best=best, candidates=candidates))
        if best is not None:
            logger.info(
                "ARB (sim) %s: best %s profit %.2f bps",
                amount,
                "-".join(token_symbol(token) for token in best.path),
                float(best.profit_bps),
            )
        else:
            logger.info("ARB (sim) %s: no quotable path", amount)
    return results


def simulate_strategies(
    exchange: Any,
    *,
    base_token: str,
    stable_token: str,
    ema_alpha: float = 0.2,
    momentum_threshold: Decimal = Decimal("0.004"),
    mean_reversion_threshold: Decimal = Decimal("0.006"),
    arbitrage_path: Optional[Sequence[str]] = None,
    arbitrage_evaluator: Optional[Any] = None,
    arbitrage_amounts: Sequence[Decimal] = DEFAULT_ARB_AMOUNTS,
    prices: Optional[pd.Series] = None,
    samples: int = DEFAULT_SAMPLES,
    sample_interval: float = 0.3,
    variation_bps: float = DEFAULT_VARIATION_BPS,
    rng: Optional[np.random.Generator] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StrategySimulation:
    """Run every signal against one price series without trading.

    ``prices`` replays a prepared series; otherwise ``samples`` spot quotes
    are taken. A series whose range is under 0.1% is replaced by a random
    walk seeded from its last price so the signals have something to react to.
    """

    arbitrage: List[ArbitrageSimulation] = []
    if arbitrage_path:
        evaluator = arbitrage_evaluator or ArbitrageEvaluator(exchange)
        arbitrage = simulate_arbitrage(evaluator, arbitrage_path, arbitrage_amounts)

    if prices is not None:
        series = prices.astype(float).reset_index(drop=True)
        source = SOURCE_CSV
    else:
        series = sample_prices(
            exchange,
            base_token,
            stable_token,
            samples=samples,
            interval_seconds=sample_interval,
            sleep=sleep,
        )
        source = SOURCE_QUOTES

    if is_flat(series):
        seed = float(series.iloc[-1]) if not series.empty else 0.02
        series = random_walk(seed, max(len(series), samples), variation_bps, rng)
        source = SOURCE_SYNTHETIC
        logger.info(
            "Quotes too flat; using synthetic random walk +/-%.2f%% for signals", variation_bps / 100
        )

    ema = ema_series(series, ema_alpha)
    swing = swing_from_series(series)
    inputs = SignalInputs(
        price=to_decimal(float(series.iloc[-1])),
        ema=to_decimal(float(ema.iloc[-1])),
        swing=swing,
    )
    generators = build_generators(
        momentum_threshold=to_decimal(momentum_threshold),
        mean_reversion_threshold=to_decimal(mean_reversion_threshold),
    )
    signals = {name: generator(inputs) for name, generator in generators.items()}
    for name, signal in signals.items():
        logger.info("%s (sim): %s (%s)", name, signal.action.value, signal.reason)

    return StrategySimulation(
        source=source,
        prices=series,
        ema=ema,
        swing=swing,
        signals=signals,
        arbitrage=arbitrage,
    )
