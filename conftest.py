from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from dexbot.src.trading.decision_engine.exceptions import (
    ConfirmationTimeout,
    DecisionEngineError,
    QuoteUnavailable,
    SubmitError,
)
from dexbot.src.trading.decision_engine.models import (
    AssetBalance,
    Quote,
    SwapReceipt,
    token_symbol,
)

USDC = "GUSDC|Unit|none|none"
GALA = "GALA|Unit|none|none"
WETH = "GWETH|Unit|none|none"

QuoteRule = Union[Decimal, Callable[[Decimal], Optional[Decimal]]]
TierKey = Tuple[str, str, int]


class FakePendingSwap:
    def __init__(self, dex: "FakeDex", swap: Dict[str, object], behaviour: str) -> None:
        self.dex = dex
        self.swap = swap
        self.behaviour = behaviour
        self.tx_id = swap["tx_id"]
        self.wait_calls: List[float] = []

    def wait(self, timeout: float) -> SwapReceipt:
        self.wait_calls.append(timeout)
        if self.behaviour == "confirm":
            self.dex.settle(self.swap)
            return SwapReceipt(tx_id=self.tx_id, hash=f"0x{self.tx_id}")
        if self.behaviour == "timeout_then_settle":
            self.dex.settle(self.swap)
        if self.behaviour == "crash_then_settle":
            self.dex.settle(self.swap)
            raise RuntimeError("event socket closed")
        raise ConfirmationTimeout(f"{self.tx_id} timed out after {timeout}s")


class FakeDex:
    """In-memory quoting, swap and balance provider."""

    def __init__(
        self,
        quotes: Optional[Dict[Tuple[str, str], QuoteRule]] = None,
        balances: Optional[Dict[str, Decimal]] = None,
        *,
        fee_tier: int = 3000,
    ) -> None:
        self.quotes: Dict[Tuple[str, str], QuoteRule] = dict(quotes or {})
        self.tier_quotes: Dict[TierKey, QuoteRule] = {}
        self.balances: Dict[str, Decimal] = {
            symbol: Decimal(str(value)) for symbol, value in (balances or {}).items()
        }
        self.fee_tier = fee_tier
        self.swap_behaviour = "confirm"
        self.submit_error: Optional[str] = None
        self.balance_error: Optional[str] = None
        self.quote_calls: List[Tuple[str, str, Decimal]] = []
        self.quoted_tiers: List[Optional[int]] = []
        self.swaps: List[Dict[str, object]] = []
        self.pending: List[FakePendingSwap] = []
        self.asset_calls: List[Tuple[str, int, int]] = []
        self.closed = False

    def set_rate(self, token_in: str, token_out: str, rule: QuoteRule) -> None:
        self.quotes[(token_in, token_out)] = rule

    def set_tier_rate(self, token_in: str, token_out: str, fee_tier: int, rule: QuoteRule) -> None:
        self.tier_quotes[(token_in, token_out, fee_tier)] = rule

    def quote(self, token_in, token_out, amount_in, fee_tier=None) -> Quote:
        amount = Decimal(str(amount_in))
        self.quote_calls.append((token_in, token_out, amount))
        self.quoted_tiers.append(fee_tier)
        if amount <= 0:
            raise QuoteUnavailable("non-positive amount")
        if fee_tier is not None and self.tier_quotes:
            rule = self.tier_quotes.get((token_in, token_out, fee_tier))
            if rule is None:
                raise QuoteUnavailable(f"no {fee_tier} pool for {token_symbol(token_in)}->{token_symbol(token_out)}")
            out = rule(amount) if callable(rule) else amount * rule
            return Quote(out_amount=Decimal(str(out)), fee_tier=fee_tier)
        rule = self.quotes.get((token_in, token_out))
        if rule is None:
            raise QuoteUnavailable(f"no pool for {token_symbol(token_in)}->{token_symbol(token_out)}")
        out = rule(amount) if callable(rule) else amount * rule
        if out is None:
            raise QuoteUnavailable("no liquidity")
        return Quote(out_amount=Decimal(str(out)), fee_tier=self.fee_tier)

    def submit_swap(self, token_in, token_out, fee_tier, exact_in, min_out, wallet):
        if self.submit_error:
            raise SubmitError(self.submit_error)
        expected = self.quote(token_in, token_out, Decimal(exact_in), fee_tier).out_amount
        swap = {
            "tx_id": f"tx-{len(self.swaps) + 1}",
            "token_in": token_in,
            "token_out": token_out,
            "fee_tier": fee_tier,
            "exact_in": exact_in,
            "min_out": min_out,
            "wallet": wallet,
            "received": expected,
        }
        self.swaps.append(swap)
        pending = FakePendingSwap(self, swap, self.swap_behaviour)
        self.pending.append(pending)
        return pending

    def settle(self, swap: Dict[str, object]) -> None:
        spent = token_symbol(str(swap["token_in"]))
        bought = token_symbol(str(swap["token_out"]))
        self.balances[spent] = self.balances.get(spent, Decimal("0")) - Decimal(str(swap["exact_in"]))
        self.balances[bought] = self.balances.get(bought, Decimal("0")) + Decimal(str(swap["received"]))

    def fetch_assets(self, wallet: str, page: int, limit: int) -> List[AssetBalance]:
        self.asset_calls.append((wallet, page, limit))
        if self.balance_error:
            raise DecisionEngineError(self.balance_error)
        entries = [AssetBalance(symbol, quantity) for symbol, quantity in self.balances.items()]
        start = (page - 1) * limit
        return entries[start:start + limit]

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_dex() -> FakeDex:
    """GALA trades at 0.02 USDC; the wallet holds 100 USDC and 10 GALA."""

    return FakeDex(
        quotes={
            (GALA, USDC): Decimal("0.02"),
            (USDC, GALA): Decimal("50"),
        },
        balances={"GUSDC": Decimal("100"), "GALA": Decimal("10")},
    )


@pytest.fixture
def recorded_sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps) -> Callable[[float], None]:
    return recorded_sleeps.append


@pytest.fixture
def make_dex() -> Callable[..., FakeDex]:
    return FakeDex
