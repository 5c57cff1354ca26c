from decimal import Decimal

import numpy as np
import pandas as pd
import pytest

from dexbot.src.trading.decision_engine.arbitrage import (
    ArbitrageEvaluator,
    FeeTierArbitrageEvaluator,
)
from dexbot.src.trading.decision_engine.models import SignalAction
from dexbot.src.trading.decision_engine.simulation import (
    SOURCE_CSV,
    SOURCE_SYNTHETIC,
    ema_series,
    is_flat,
    load_price_csv,
    random_walk,
    simulate_arbitrage,
    simulate_strategies,
    swing_from_series,
)

USDC = "GUSDC|Unit|none|none"
GALA = "GALA|Unit|none|none"
WETH = "GWETH|Unit|none|none"


def test_csv_replay_runs_every_signal(tmp_path, fake_dex):
    csv_path = tmp_path / "prices.csv"
    csv_path.write_text("timestamp,price\n1,1\n2,1\n3,1\n4,1\n5,1.006\n")

    result = simulate_strategies(
        fake_dex,
        base_token=GALA,
        stable_token=USDC,
        prices=load_price_csv(csv_path),
    )

    assert result.source == SOURCE_CSV
    assert result.price == pytest.approx(1.006)
    assert result.last_ema == pytest.approx(1.0012)
    assert result.signals["momentum"].action is SignalAction.BUY
    assert result.signals["mean_reversion"].action is SignalAction.NONE
    assert result.signals["fibonacci"].reason == "no swings yet"
    assert fake_dex.quote_calls == []


def test_flat_quotes_fall_back_to_random_walk(fake_dex, fake_sleep, recorded_sleeps):
    result = simulate_strategies(
        fake_dex,
        base_token=GALA,
        stable_token=USDC,
        samples=5,
        sample_interval=0.3,
        rng=np.random.default_rng(1),
        sleep=fake_sleep,
    )

    assert result.source == SOURCE_SYNTHETIC
    assert len(result.prices) == 5
    assert result.prices.iloc[0] == pytest.approx(0.02)
    assert recorded_sleeps == [0.3] * 4
    assert set(result.signals) == {"momentum", "mean_reversion", "fibonacci"}


def test_csv_without_price_column(tmp_path):
    csv_path = tmp_path / "prices.csv"
    csv_path.write_text("close\n1\n")

    with pytest.raises(ValueError):
        load_price_csv(csv_path)


def test_csv_drops_unusable_rows(tmp_path):
    csv_path = tmp_path / "prices.csv"
    csv_path.write_text("price\n1.5\nbad\n0\n2.5\n")

    assert load_price_csv(csv_path).tolist() == [1.5, 2.5]


def test_arbitrage_simulation_keeps_most_profitable_direction(make_dex):
    dex = make_dex(
        quotes={
            (USDC, GALA): Decimal("50"),
            (GALA, WETH): Decimal("0.0001"),
            (WETH, USDC): Decimal("205"),
            (USDC, WETH): Decimal("0.004"),
            (WETH, GALA): Decimal("10000"),
            (GALA, USDC): Decimal("0.02"),
        }
    )

    (result,) = simulate_arbitrage(ArbitrageEvaluator(dex), [USDC, GALA, WETH, USDC], [Decimal("3")])

    assert len(result.candidates) == 2
    assert result.best.path == (USDC, GALA, WETH, USDC)
    assert result.best.profit_bps == Decimal("250")


def test_arbitrage_simulation_of_fee_tier_round_trip(make_dex):
    dex = make_dex()
    dex.set_tier_rate(GALA, WETH, 500, Decimal("0.0001"))
    dex.set_tier_rate(WETH, GALA, 3000, Decimal("10200"))

    (result,) = simulate_arbitrage(
        FeeTierArbitrageEvaluator(dex, fee_tiers=[500, 3000]), [GALA, WETH, GALA], [Decimal("100")]
    )

    assert len(result.candidates) == 1
    assert result.best.profit_bps == Decimal("200")
    assert [leg.fee_tier for leg in result.best.legs] == [500, 3000]


def test_arbitrage_simulation_without_quotes(make_dex):
    (result,) = simulate_arbitrage(
        ArbitrageEvaluator(make_dex()), [USDC, GALA, WETH, USDC], [Decimal("1")]
    )

    assert result.best is None
    assert result.candidates == []


def test_random_walk_is_bounded_and_seeded():
    walk = random_walk(2.0, 10, variation_bps=120, rng=np.random.default_rng(7))
    again = random_walk(2.0, 10, variation_bps=120, rng=np.random.default_rng(7))

    assert len(walk) == 10
    assert walk.iloc[0] == 2.0
    ratios = (walk / walk.shift(1)).dropna()
    assert ((ratios - 1).abs() <= 0.012 + 1e-12).all()
    assert walk.tolist() == again.tolist()
    assert random_walk(2.0, 0).empty


def test_ema_series_matches_recursive_update():
    ema = ema_series(pd.Series([1.0, 2.0, 4.0]), alpha=0.5)

    assert ema.tolist() == [1.0, 1.5, 2.75]


def test_flatness_threshold():
    assert is_flat(pd.Series([1.0, 1.0005]))
    assert not is_flat(pd.Series([1.0, 1.002]))
    assert is_flat(pd.Series([], dtype=float))


def test_swing_uses_last_third_of_series():
    prices = pd.Series([9.0] * 10 + [1.0, 3.0, 2.0, 5.0, 4.0])

    swing = swing_from_series(prices)

    assert swing.high == Decimal("5")
    assert swing.high_index == 13
    assert swing.low == Decimal("1")
    assert swing.low_index == 10
