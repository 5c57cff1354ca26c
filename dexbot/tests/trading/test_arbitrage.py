from decimal import Decimal

import pytest

from dexbot.src.trading.decision_engine.arbitrage import (
    ArbitrageEvaluator,
    FeeTierArbitrageEvaluator,
    swap_middle,
)
from dexbot.src.trading.decision_engine.exceptions import InvalidPath
from dexbot.src.trading.decision_engine.executor import ExecutionCoordinator
from dexbot.src.trading.decision_engine.models import (
    CONFIRMED_VIA_WAIT,
    SIMULATED,
    UNCONFIRMED,
    ArbitrageChain,
    ArbitrageLeg,
    PollingPolicy,
    RoundTrip,
)

USDC = "GUSDC|Unit|none|none"
GALA = "GALA|Unit|none|none"
WETH = "GWETH|Unit|none|none"
PATH = [USDC, GALA, WETH, USDC]


def _fixed(value):
    return lambda amount: Decimal(value)


@pytest.fixture
def triangle_dex(make_dex):
    """3 USDC -> 150 GALA -> 0.015 WETH -> 3.075 USDC."""

    return make_dex(
        quotes={
            (USDC, GALA): Decimal("50"),
            (GALA, WETH): Decimal("0.0001"),
            (WETH, USDC): Decimal("205"),
        },
        balances={"GUSDC": Decimal("100")},
    )


def test_end_to_end_profit_from_hop_outputs(make_dex):
    dex = make_dex(
        quotes={
            (USDC, GALA): _fixed("6"),
            (GALA, WETH): _fixed("0.002"),
            (WETH, USDC): _fixed("3.05"),
        }
    )
    evaluator = ArbitrageEvaluator(dex, min_profit_bps=30)

    chain = evaluator.evaluate(PATH, 3)

    assert chain is not None
    assert round(float(chain.profit_bps), 1) == 166.7
    assert chain.actionable
    assert [leg.amount_in for leg in chain.legs] == [Decimal("3"), Decimal("6"), Decimal("0.002")]
    assert chain.final_amount == Decimal("3.05")
    assert chain.path == (USDC, GALA, WETH, USDC)


def test_hops_feed_previous_output(triangle_dex):
    ArbitrageEvaluator(triangle_dex).evaluate(PATH, Decimal("3"))

    amounts = [amount for _, _, amount in triangle_dex.quote_calls]
    assert amounts == [Decimal("3"), Decimal("150"), Decimal("0.0150")]


def test_below_threshold_is_not_actionable(triangle_dex):
    chain = ArbitrageEvaluator(triangle_dex, min_profit_bps=500).evaluate(PATH, 3)

    assert chain is not None
    assert chain.profit_bps == Decimal("250")
    assert not chain.actionable


def test_open_path_is_rejected(triangle_dex):
    with pytest.raises(InvalidPath):
        ArbitrageEvaluator(triangle_dex).evaluate([USDC, GALA, WETH, GALA], 3)
    with pytest.raises(InvalidPath):
        ArbitrageEvaluator(triangle_dex).evaluate([USDC, GALA, USDC], 3)


def test_missing_quote_returns_none_without_partial_chain(triangle_dex):
    del triangle_dex.quotes[(GALA, WETH)]

    assert ArbitrageEvaluator(triangle_dex).evaluate(PATH, 3) is None
    assert [(t_in, t_out) for t_in, t_out, _ in triangle_dex.quote_calls] == [
        (USDC, GALA),
        (GALA, WETH),
    ]


def test_zero_output_returns_none(triangle_dex):
    triangle_dex.set_rate(WETH, USDC, _fixed("0"))

    assert ArbitrageEvaluator(triangle_dex).evaluate(PATH, 3) is None


def test_profit_bps_of_half_percent():
    legs = (
        ArbitrageLeg(USDC, GALA, Decimal("100"), Decimal("5000"), 3000),
        ArbitrageLeg(GALA, WETH, Decimal("5000"), Decimal("0.5"), 3000),
        ArbitrageLeg(WETH, USDC, Decimal("0.5"), Decimal("100.5"), 3000),
    )

    chain = ArbitrageChain(legs=legs, start_amount=Decimal("100"))

    assert chain.profit_bps == Decimal("50")


def test_chain_requires_linked_closed_legs():
    with pytest.raises(InvalidPath):
        ArbitrageChain(
            legs=(
                ArbitrageLeg(USDC, GALA, Decimal("1"), Decimal("1"), 3000),
                ArbitrageLeg(WETH, GALA, Decimal("1"), Decimal("1"), 3000),
                ArbitrageLeg(GALA, USDC, Decimal("1"), Decimal("1"), 3000),
            ),
            start_amount=Decimal("1"),
        )


def test_swap_middle_reverses_loop():
    assert swap_middle(PATH) == [USDC, WETH, GALA, USDC]


def test_execute_replays_each_leg_in_dry_run(triangle_dex):
    evaluator = ArbitrageEvaluator(triangle_dex, min_profit_bps=30)
    chain = evaluator.evaluate(PATH, 3)
    coordinator = ExecutionCoordinator(triangle_dex, wallet="eth|0xabc", dry_run=True)

    outcomes = evaluator.execute(chain, coordinator)

    assert [outcome.confirmed_via for outcome in outcomes] == [SIMULATED] * 3
    assert [outcome.intent.exact_in for outcome in outcomes] == ["3", "150", "0.015"]
    assert triangle_dex.swaps == []


def test_execute_submits_all_legs_when_confirmed(triangle_dex):
    evaluator = ArbitrageEvaluator(triangle_dex)
    chain = evaluator.evaluate(PATH, 3)
    coordinator = ExecutionCoordinator(triangle_dex, wallet="eth|0xabc", dry_run=False)

    outcomes = evaluator.execute(chain, coordinator)

    assert [outcome.confirmed_via for outcome in outcomes] == [CONFIRMED_VIA_WAIT] * 3
    assert [swap["token_in"] for swap in triangle_dex.swaps] == [USDC, GALA, WETH]
    assert triangle_dex.balances["GUSDC"] == Decimal("100.075")


def test_execute_stops_after_unsettled_leg(triangle_dex, fake_sleep):
    triangle_dex.swap_behaviour = "timeout"
    evaluator = ArbitrageEvaluator(triangle_dex)
    chain = evaluator.evaluate(PATH, 3)
    coordinator = ExecutionCoordinator(
        triangle_dex,
        wallet="eth|0xabc",
        dry_run=False,
        polling=PollingPolicy(interval_seconds=1, max_attempts=2),
        sleep=fake_sleep,
    )

    outcomes = evaluator.execute(chain, coordinator)

    assert len(outcomes) == 1
    assert outcomes[0].confirmed_via == UNCONFIRMED
    assert len(triangle_dex.swaps) == 1


@pytest.fixture
def tiered_dex(make_dex):
    """GALA/WETH pools on three fee tiers; 500 out then 3000 back returns 102 GALA per 100."""

    dex = make_dex(balances={"GALA": Decimal("200")})
    dex.set_tier_rate(GALA, WETH, 500, Decimal("0.0001"))
    dex.set_tier_rate(GALA, WETH, 3000, Decimal("0.000099"))
    dex.set_tier_rate(WETH, GALA, 500, Decimal("10100"))
    dex.set_tier_rate(WETH, GALA, 3000, Decimal("10200"))
    dex.set_tier_rate(WETH, GALA, 10000, Decimal("10050"))
    return dex


def test_fee_tier_round_trip_picks_best_tier_pair(tiered_dex):
    trip = FeeTierArbitrageEvaluator(tiered_dex, min_profit_bps=30).evaluate([GALA, WETH, GALA], 100)

    assert isinstance(trip, RoundTrip)
    assert [leg.fee_tier for leg in trip.legs] == [500, 3000]
    assert trip.final_amount == Decimal("102")
    assert trip.profit_bps == Decimal("200")
    assert trip.actionable
    assert trip.path == (GALA, WETH, GALA)


def test_fee_tier_round_trip_never_reuses_the_outbound_tier(make_dex):
    dex = make_dex()
    dex.set_tier_rate(GALA, WETH, 500, Decimal("0.0001"))
    dex.set_tier_rate(WETH, GALA, 500, Decimal("20000"))

    assert FeeTierArbitrageEvaluator(dex).evaluate([GALA, WETH, GALA], 100) is None
    assert 10000 in dex.quoted_tiers


@pytest.mark.parametrize("path", [[GALA, WETH], [GALA, WETH, USDC], PATH])
def test_fee_tier_round_trip_rejects_other_paths(tiered_dex, path):
    with pytest.raises(InvalidPath):
        FeeTierArbitrageEvaluator(tiered_dex).evaluate(path, 100)


def test_round_trip_requires_two_tiers():
    with pytest.raises(InvalidPath):
        RoundTrip(
            legs=(
                ArbitrageLeg(GALA, WETH, Decimal("1"), Decimal("1"), 3000),
                ArbitrageLeg(WETH, GALA, Decimal("1"), Decimal("1"), 3000),
            ),
            start_amount=Decimal("1"),
        )


def test_fee_tier_execute_returns_slippage_floor_on_second_tier(tiered_dex):
    evaluator = FeeTierArbitrageEvaluator(tiered_dex)
    trip = evaluator.evaluate([GALA, WETH, GALA], 100)
    coordinator = ExecutionCoordinator(tiered_dex, wallet="eth|0xabc", dry_run=True, slippage_bps=50)

    outcomes = evaluator.execute(trip, coordinator)

    assert [outcome.confirmed_via for outcome in outcomes] == [SIMULATED] * 2
    assert [outcome.intent.fee_tier for outcome in outcomes] == [500, 3000]
    assert outcomes[0].intent.min_out == "0.00995"
    assert outcomes[1].intent.exact_in == "0.00995"
    assert tiered_dex.quoted_tiers[-2:] == [500, 3000]


def test_fee_tier_execute_submits_both_legs_on_their_tiers(tiered_dex):
    evaluator = FeeTierArbitrageEvaluator(tiered_dex)
    trip = evaluator.evaluate([GALA, WETH, GALA], 100)
    coordinator = ExecutionCoordinator(tiered_dex, wallet="eth|0xabc", dry_run=False)

    outcomes = evaluator.execute(trip, coordinator)

    assert [outcome.confirmed_via for outcome in outcomes] == [CONFIRMED_VIA_WAIT] * 2
    assert [swap["fee_tier"] for swap in tiered_dex.swaps] == [500, 3000]
    assert tiered_dex.balances["GALA"] == Decimal("201.49")


def test_fee_tier_execute_stops_when_first_leg_is_unsettled(tiered_dex, fake_sleep):
    tiered_dex.swap_behaviour = "timeout"
    evaluator = FeeTierArbitrageEvaluator(tiered_dex)
    trip = evaluator.evaluate([GALA, WETH, GALA], 100)
    coordinator = ExecutionCoordinator(
        tiered_dex,
        wallet="eth|0xabc",
        dry_run=False,
        polling=PollingPolicy(interval_seconds=1, max_attempts=1),
        sleep=fake_sleep,
    )

    outcomes = evaluator.execute(trip, coordinator)

    assert len(outcomes) == 1
    assert len(tiered_dex.swaps) == 1
