"""Bounded-slippage trade submission with a balance-diff confirmation fallback."""
from __future__ import annotations

import logging
import time
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, Optional

from dexbot.src.trading.decision_engine.exceptions import DecisionEngineError, SubmitError
from dexbot.src.trading.decision_engine.exchange import fetch_balances
from dexbot.src.trading.decision_engine.models import (
    BPS_DENOMINATOR,
    CONFIRMED_VIA_BALANCE_POLL,
    CONFIRMED_VIA_WAIT,
    SIMULATED,
    UNCONFIRMED,
    ZERO,
    PollingPolicy,
    TradeDirection,
    TradeIntent,
    TradeOutcome,
    decimal_to_str,
    to_decimal,
    token_symbol,
)

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.00000001")

Balances = Dict[str, Decimal]


def apply_slippage(expected_out: Decimal, slippage_bps: Decimal) -> Decimal:
    """Return the minimum acceptable output for ``expected_out``."""

    floor = expected_out * (Decimal("1") - slippage_bps / BPS_DENOMINATOR)
    return max(floor, ZERO).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


class ExecutionCoordinator:
    """Runs a trade through ``Planned -> Submitted -> Confirmed | Polling``.

    Submission failures propagate as :class:`SubmitError`. A failed or timed
    out confirmation wait falls back to polling wallet balances; when the
    polling window closes without a matching delta the outcome is reported as
    unconfirmed and the trade is never resubmitted.
    """

    def __init__(
        self,
        exchange: Any,
        *,
        wallet: str,
        slippage_bps: Decimal | float | str = Decimal("50"),
        dry_run: bool = True,
        confirmation_timeout: float = 180.0,
        polling: Optional[PollingPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.exchange = exchange
        self.wallet = wallet
        self.slippage_bps = to_decimal(slippage_bps)
        self.dry_run = dry_run
        self.confirmation_timeout = float(confirmation_timeout)
        self.polling = polling or PollingPolicy()
        self._sleep = sleep

    def balances(self) -> Balances:
        return fetch_balances(self.exchange, self.wallet)

    def plan(
        self,
        direction: TradeDirection,
        token_in: str,
        token_out: str,
        amount_in: Decimal | float | str,
        fee_tier: Optional[int] = None,
    ) -> TradeIntent:
        """Re-quote ``amount_in`` (on ``fee_tier`` when given) and derive the slippage floor."""

        exact_in = to_decimal(amount_in).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)
        if fee_tier is None:
            quote = self.exchange.quote(token_in, token_out, exact_in)
        else:
            quote = self.exchange.quote(token_in, token_out, exact_in, fee_tier)
        intent = TradeIntent(
            direction=direction,
            token_in=token_in,
            token_out=token_out,
            exact_in=decimal_to_str(exact_in),
            min_out=decimal_to_str(apply_slippage(quote.out_amount, self.slippage_bps)),
            fee_tier=quote.fee_tier,
            expected_out=quote.out_amount,
        )
        logger.info(
            "%s plan: expect %s %s (slippage %s bps)",
            intent.describe(),
            decimal_to_str(quote.out_amount),
            token_symbol(token_out),
            decimal_to_str(self.slippage_bps),
        )
        return intent

    def trade(
        self,
        direction: TradeDirection,
        token_in: str,
        token_out: str,
        amount_in: Decimal | float | str,
        fee_tier: Optional[int] = None,
    ) -> TradeOutcome:
        return self.execute(self.plan(direction, token_in, token_out, amount_in, fee_tier))

    def execute(self, intent: TradeIntent) -> TradeOutcome:
        if self.dry_run:
            logger.info("DRY RUN %s", intent.describe())
            return TradeOutcome(
                intent=intent,
                confirmed=False,
                confirmed_via=SIMULATED,
                amount_in=intent.exact_in_amount,
                amount_out=intent.expected_out,
            )

        before = self._snapshot()
        pending = self.exchange.submit_swap(
            intent.token_in,
            intent.token_out,
            intent.fee_tier,
            intent.exact_in,
            intent.min_out,
            self.wallet,
        )
        tx_id = getattr(pending, "tx_id", None)

        started = time.perf_counter()
        try:
            receipt = pending.wait(self.confirmation_timeout)
        except SubmitError as exc:
            logger.warning("Confirmation for %s failed: %s", intent.describe(), exc)
        except DecisionEngineError as exc:
            logger.warning(
                "Confirmation wait for %s gave up after %.1fs: %s",
                intent.describe(),
                time.perf_counter() - started,
                exc,
            )
        except Exception as exc:
            logger.warning(
                "Confirmation wait for %s broke (%s: %s); checking balances",
                intent.describe(),
                type(exc).__name__,
                exc,
            )
        else:
            logger.info(
                "%s confirmed: tx %s hash %s", intent.describe(), receipt.tx_id, receipt.hash
            )
            return TradeOutcome(
                intent=intent,
                confirmed=True,
                confirmed_via=CONFIRMED_VIA_WAIT,
                tx_id=receipt.tx_id or tx_id,
                hash=receipt.hash,
                amount_in=intent.exact_in_amount,
                amount_out=intent.expected_out,
            )

        return self._confirm_by_balances(intent, before, tx_id)

    def _snapshot(self) -> Optional[Balances]:
        try:
            return self.balances()
        except DecisionEngineError as exc:
            logger.warning("Balance snapshot unavailable: %s", exc)
            return None

    def _settled(self, intent: TradeIntent, before: Balances, after: Balances) -> bool:
        spent_symbol = token_symbol(intent.token_in)
        bought_symbol = token_symbol(intent.token_out)
        spent = before.get(spent_symbol, ZERO) - after.get(spent_symbol, ZERO)
        bought = after.get(bought_symbol, ZERO) - before.get(bought_symbol, ZERO)
        return spent >= intent.exact_in_amount - self.polling.epsilon and bought > ZERO

    def _confirm_by_balances(
        self,
        intent: TradeIntent,
        before: Optional[Balances],
        tx_id: Optional[str],
    ) -> TradeOutcome:
        if before is None:
            before = self._snapshot()
        if before is None:
            logger.warning("Cannot confirm %s by balances: no snapshot", intent.describe())
            return TradeOutcome(intent=intent, confirmed=False, confirmed_via=UNCONFIRMED, tx_id=tx_id)

        spent_symbol = token_symbol(intent.token_in)
        bought_symbol = token_symbol(intent.token_out)
        for attempt in range(1, self.polling.max_attempts + 1):
            self._sleep(self.polling.interval_seconds)
            try:
                after = self.balances()
            except DecisionEngineError as exc:
                logger.debug("Balance poll %d failed: %s", attempt, exc)
                continue

            logger.debug(
                "Balance poll %d/%d: %s %s -> %s, %s %s -> %s",
                attempt,
                self.polling.max_attempts,
                spent_symbol,
                decimal_to_str(before.get(spent_symbol, ZERO)),
                decimal_to_str(after.get(spent_symbol, ZERO)),
                bought_symbol,
                decimal_to_str(before.get(bought_symbol, ZERO)),
                decimal_to_str(after.get(bought_symbol, ZERO)),
            )
            if self._settled(intent, before, after):
                received = after.get(bought_symbol, ZERO) - before.get(bought_symbol, ZERO)
                logger.info(
                    "%s confirmed by balance change (%s %s received)",
                    intent.describe(),
                    decimal_to_str(received),
                    bought_symbol,
                )
                return TradeOutcome(
                    intent=intent,
                    confirmed=True,
                    confirmed_via=CONFIRMED_VIA_BALANCE_POLL,
                    tx_id=tx_id,
                    amount_in=intent.exact_in_amount,
                    amount_out=received,
                )

        logger.warning(
            "%s UNCONFIRMED after %d balance polls (tx %s); it may still settle, not resubmitting",
            intent.describe(),
            self.polling.max_attempts,
            tx_id,
        )
        return TradeOutcome(intent=intent, confirmed=False, confirmed_via=UNCONFIRMED, tx_id=tx_id)
