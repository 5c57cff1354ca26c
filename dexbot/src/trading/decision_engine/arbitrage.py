"""Arbitrage evaluation against the quoting provider: triangular loops and fee-tier round trips."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple

from dexbot.src.trading.decision_engine.exceptions import InvalidPath, QuoteUnavailable
from dexbot.src.trading.decision_engine.models import (
    ZERO,
    ArbitrageChain,
    ArbitrageLeg,
    RoundTrip,
    TradeDirection,
    TradeOutcome,
    decimal_to_str,
    to_decimal,
    token_symbol,
)

if TYPE_CHECKING:
    from dexbot.src.trading.decision_engine.executor import ExecutionCoordinator

logger = logging.getLogger(__name__)

DEFAULT_FEE_TIERS: Tuple[int, ...] = (500, 3000, 10000)


def swap_middle(path: Sequence[str]) -> List[str]:
    """Return ``[A, C, B, A]`` for ``[A, B, C, A]``: the same loop walked backwards."""

    if len(path) != 4:
        raise InvalidPath(f"Arbitrage path needs 4 assets, got {len(path)}")
    return [path[0], path[2], path[1], path[3]]


class ArbitrageEvaluator:
    """Simulates a closed three-hop loop through the quoting provider."""

    def __init__(self, exchange: Any, *, min_profit_bps: Decimal | float | str = Decimal("30")) -> None:
        self.exchange = exchange
        self.min_profit_bps = to_decimal(min_profit_bps)

    def evaluate(
        self,
        path: Sequence[str],
        start_amount: Decimal | float | str,
    ) -> Optional[ArbitrageChain]:
        """Quote ``path`` hop by hop, feeding each output into the next hop.

        Raises :class:`InvalidPath` unless ``path`` is four assets starting and
        ending on the same one. Returns ``None`` when any hop has no usable
        quote; a partial chain is never returned.
        """

        if len(path) != 4:
            raise InvalidPath(f"Arbitrage path needs 4 assets, got {len(path)}")
        if path[0] != path[-1]:
            raise InvalidPath(
                f"Arbitrage path must start and end with the same asset ({path[0]} != {path[-1]})"
            )

        start = to_decimal(start_amount)
        amount = start
        legs: List[ArbitrageLeg] = []
        for token_in, token_out in zip(path, path[1:]):
            try:
                quote = self.exchange.quote(token_in, token_out, amount)
            except QuoteUnavailable as exc:
                logger.info(
                    "Arbitrage hop %s -> %s unavailable: %s",
                    token_symbol(token_in),
                    token_symbol(token_out),
                    exc,
                )
                return None
            if quote is None or quote.out_amount is None or quote.out_amount <= ZERO:
                logger.info(
                    "Arbitrage hop %s -> %s returned no output",
                    token_symbol(token_in),
                    token_symbol(token_out),
                )
                return None
            legs.append(
                ArbitrageLeg(
                    token_in=token_in,
                    token_out=token_out,
                    amount_in=amount,
                    amount_out=quote.out_amount,
                    fee_tier=quote.fee_tier,
                )
            )
            logger.debug(
                "Arbitrage hop %s %s -> %s %s (fee %s)",
                decimal_to_str(amount),
                token_symbol(token_in),
                decimal_to_str(quote.out_amount),
                token_symbol(token_out),
                quote.fee_tier,
            )
            amount = quote.out_amount

        chain = ArbitrageChain(
            legs=tuple(legs),
            start_amount=start,
            min_profit_bps=self.min_profit_bps,
        )
        logger.info(
            "Arbitrage %s start %s final %s profit %.2f bps (min %s)",
            "-".join(token_symbol(token) for token in chain.path),
            decimal_to_str(chain.start_amount),
            decimal_to_str(chain.final_amount),
            float(chain.profit_bps),
            decimal_to_str(self.min_profit_bps),
        )
        return chain

    def execute(
        self,
        chain: ArbitrageChain,
        coordinator: "ExecutionCoordinator",
    ) -> List[TradeOutcome]:
        """Replay the evaluated hops as three independent submissions.

        Each hop is re-quoted by the coordinator right before it is sent. The
        replay stops at the first hop that does not settle, leaving the wallet
        holding that hop's input asset.
        """

        outcomes: List[TradeOutcome] = []
        for index, leg in enumerate(chain.legs, start=1):
            outcome = coordinator.trade(
                TradeDirection.SELL if index == len(chain.legs) else TradeDirection.BUY,
                leg.token_in,
                leg.token_out,
                leg.amount_in,
            )
            outcomes.append(outcome)
            if not outcome.settled:
                logger.warning(
                    "Arbitrage leg %d (%s -> %s) did not settle; skipping remaining legs",
                    index,
                    token_symbol(leg.token_in),
                    token_symbol(leg.token_out),
                )
                break
        return outcomes


class FeeTierArbitrageEvaluator:
    """Prices ``A -> B -> A`` through two different fee-tier pools of one pair.

    Every outbound tier is paired with every other inbound tier; the pairing
    that returns the most ``A`` wins.
    """

    def __init__(
        self,
        exchange: Any,
        *,
        fee_tiers: Sequence[int] = DEFAULT_FEE_TIERS,
        min_profit_bps: Decimal | float | str = Decimal("30"),
    ) -> None:
        self.exchange = exchange
        self.fee_tiers = tuple(int(tier) for tier in fee_tiers)
        self.min_profit_bps = to_decimal(min_profit_bps)

    def _leg(
        self, token_in: str, token_out: str, amount: Decimal, fee_tier: int
    ) -> Optional[ArbitrageLeg]:
        try:
            quote = self.exchange.quote(token_in, token_out, amount, fee_tier)
        except QuoteUnavailable as exc:
            logger.debug(
                "No %s -> %s quote on fee tier %d: %s",
                token_symbol(token_in),
                token_symbol(token_out),
                fee_tier,
                exc,
            )
            return None
        if quote is None or quote.out_amount is None or quote.out_amount <= ZERO:
            return None
        return ArbitrageLeg(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount,
            amount_out=quote.out_amount,
            fee_tier=fee_tier,
        )

    def evaluate(
        self,
        path: Sequence[str],
        start_amount: Decimal | float | str,
    ) -> Optional[RoundTrip]:
        if len(path) != 3:
            raise InvalidPath(f"Fee-tier round trip needs 3 assets, got {len(path)}")
        if path[0] != path[-1]:
            raise InvalidPath(
                f"Round trip must start and end with the same asset ({path[0]} != {path[-1]})"
            )

        token_a, token_b = path[0], path[1]
        start = to_decimal(start_amount)
        best: Optional[RoundTrip] = None
        for fee_out in self.fee_tiers:
            outbound = self._leg(token_a, token_b, start, fee_out)
            if outbound is None:
                continue
            for fee_back in self.fee_tiers:
                if fee_back == fee_out:
                    continue
                inbound = self._leg(token_b, token_a, outbound.amount_out, fee_back)
                if inbound is None:
                    continue
                if best is None or inbound.amount_out > best.final_amount:
                    best = RoundTrip(
                        legs=(outbound, inbound),
                        start_amount=start,
                        min_profit_bps=self.min_profit_bps,
                    )

        if best is None:
            logger.info(
                "No fee-tier round trip quotable for %s/%s",
                token_symbol(token_a),
                token_symbol(token_b),
            )
            return None
        logger.info(
            "Round trip %s via %d/%d start %s final %s profit %.2f bps (min %s)",
            "-".join(token_symbol(token) for token in best.path),
            best.legs[0].fee_tier,
            best.legs[1].fee_tier,
            decimal_to_str(best.start_amount),
            decimal_to_str(best.final_amount),
            float(best.profit_bps),
            decimal_to_str(self.min_profit_bps),
        )
        return best

    def execute(
        self,
        trip: RoundTrip,
        coordinator: "ExecutionCoordinator",
    ) -> List[TradeOutcome]:
        """Trade the outbound leg, then send its ``min_out`` back on the inbound tier.

        Leg two is re-quoted on its own tier and only runs once leg one settled.
        """

        outbound, inbound = trip.legs
        first = coordinator.trade(
            TradeDirection.BUY,
            outbound.token_in,
            outbound.token_out,
            outbound.amount_in,
            fee_tier=outbound.fee_tier,
        )
        outcomes = [first]
        if not first.settled:
            logger.warning(
                "Round trip leg 1 (%s -> %s) did not settle; not returning",
                token_symbol(outbound.token_in),
                token_symbol(outbound.token_out),
            )
            return outcomes
        outcomes.append(
            coordinator.trade(
                TradeDirection.SELL,
                inbound.token_in,
                inbound.token_out,
                first.intent.min_out_amount,
                fee_tier=inbound.fee_tier,
            )
        )
        return outcomes
