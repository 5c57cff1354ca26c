"""Data models used by the trading decision engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from dexbot.src.trading.decision_engine.exceptions import InvalidPath

BPS_DENOMINATOR = Decimal("10000")
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Convert ``value`` to :class:`Decimal` going through ``str`` for floats."""

    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Cannot interpret {value!r} as a decimal amount") from exc


def decimal_to_str(value: Decimal) -> str:
    """Render ``value`` as a plain (non-exponent) decimal string."""

    text = format(to_decimal(value), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def token_symbol(token_id: str) -> str:
    """Return the balance symbol for a provider token class key.

    ``GUSDC|Unit|none|none`` is held as ``GUSDC`` in wallet balances and in
    the position ledger. Plain symbols are returned upper-cased.
    """

    return token_id.split("|", 1)[0].strip().upper()


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SignalAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    NONE = "none"


@dataclass(frozen=True)
class PricePoint:
    """A single sampled price. Immutable once recorded."""

    timestamp_ms: int
    price: Decimal


@dataclass(frozen=True)
class SwingWindow:
    """Highest and lowest price of a lookback window with their series indices."""

    high: Decimal
    high_index: int
    low: Decimal
    low_index: int

    @property
    def range(self) -> Decimal:
        return self.high - self.low

    @property
    def is_flat(self) -> bool:
        return self.high == self.low


@dataclass(frozen=True)
class FibonacciLevels:
    """Retracement levels of a swing.

    ``down_*`` levels are measured down from the swing high and are used to
    find pullback entries in an uptrend. ``up_*`` levels are measured up from
    the swing low and mark relief rallies in a downtrend.
    """

    down_382: Decimal
    down_500: Decimal
    down_618: Decimal
    up_382: Decimal
    up_500: Decimal
    up_618: Decimal

    @classmethod
    def from_swing(cls, swing: SwingWindow) -> "FibonacciLevels":
        span = swing.range
        return cls(
            down_382=swing.high - span * Decimal("0.382"),
            down_500=swing.high - span * Decimal("0.5"),
            down_618=swing.high - span * Decimal("0.618"),
            up_382=swing.low + span * Decimal("0.382"),
            up_500=swing.low + span * Decimal("0.5"),
            up_618=swing.low + span * Decimal("0.618"),
        )

    def in_uptrend_band(self, price: Decimal) -> bool:
        return self.down_618 <= price <= self.down_382

    def in_downtrend_band(self, price: Decimal) -> bool:
        return self.up_382 <= price <= self.up_618

    def in_golden_pocket(self, price: Decimal) -> bool:
        return self.down_618 <= price <= self.down_500


@dataclass(frozen=True)
class Signal:
    """Directional recommendation emitted by a signal generator."""

    action: SignalAction
    reason: str = ""

    @classmethod
    def none(cls, reason: str = "") -> "Signal":
        return cls(SignalAction.NONE, reason)


@dataclass(frozen=True)
class Quote:
    """Output amount and pool fee tier returned by the quoting provider."""

    out_amount: Decimal
    fee_tier: int


@dataclass(frozen=True)
class AssetBalance:
    symbol: str
    quantity: Decimal


@dataclass(frozen=True)
class ArbitrageLeg:
    """One simulated hop of an arbitrage loop."""

    token_in: str
    token_out: str
    amount_in: Decimal
    amount_out: Decimal
    fee_tier: int


@dataclass(frozen=True)
class ArbitrageChain:
    """Three linked legs that start and end in the same asset."""

    leg_count: ClassVar[int] = 3

    legs: Tuple[ArbitrageLeg, ...]
    start_amount: Decimal
    min_profit_bps: Decimal = ZERO

    def __post_init__(self) -> None:
        if len(self.legs) != self.leg_count:
            raise InvalidPath(
                f"{type(self).__name__} needs exactly {self.leg_count} legs, got {len(self.legs)}"
            )
        for previous, current in zip(self.legs, self.legs[1:]):
            if previous.token_out != current.token_in:
                raise InvalidPath(
                    f"Leg {previous.token_in}->{previous.token_out} does not feed "
                    f"{current.token_in}->{current.token_out}"
                )
        if self.legs[-1].token_out != self.legs[0].token_in:
            raise InvalidPath("Arbitrage chain must return to its starting asset")

    @property
    def final_amount(self) -> Decimal:
        return self.legs[-1].amount_out

    @property
    def profit(self) -> Decimal:
        return self.final_amount - self.start_amount

    @property
    def profit_bps(self) -> Decimal:
        if self.start_amount == 0:
            return ZERO
        return self.profit / self.start_amount * BPS_DENOMINATOR

    @property
    def actionable(self) -> bool:
        return self.profit_bps >= self.min_profit_bps

    @property
    def path(self) -> Tuple[str, ...]:
        return tuple(leg.token_in for leg in self.legs) + (self.legs[-1].token_out,)


@dataclass(frozen=True)
class RoundTrip(ArbitrageChain):
    """A -> B on one fee tier, then B -> A on another."""

    leg_count: ClassVar[int] = 2

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.legs[0].fee_tier == self.legs[1].fee_tier:
            raise InvalidPath("A round trip must switch fee tiers between legs")


@dataclass
class Position:
    """Units held and total cost spent acquiring them for one asset."""

    units_held: Decimal = ZERO
    cost_basis_total: Decimal = ZERO

    @property
    def is_open(self) -> bool:
        return self.units_held > 0 and self.cost_basis_total > 0


@dataclass(frozen=True)
class SellDecision:
    allowed: bool
    reason: str
    threshold: Optional[Decimal] = None


@dataclass(frozen=True)
class TradeIntent:
    """A fully planned trade. Built fresh per decision, never mutated."""

    direction: TradeDirection
    token_in: str
    token_out: str
    exact_in: str
    min_out: str
    fee_tier: int
    expected_out: Decimal = ZERO

    @property
    def exact_in_amount(self) -> Decimal:
        return Decimal(self.exact_in)

    @property
    def min_out_amount(self) -> Decimal:
        return Decimal(self.min_out)

    def describe(self) -> str:
        return (
            f"{self.direction.value.upper()} {self.exact_in} {token_symbol(self.token_in)}"
            f" -> {token_symbol(self.token_out)} (min {self.min_out}, fee {self.fee_tier})"
        )


@dataclass(frozen=True)
class SwapReceipt:
    tx_id: Optional[str]
    hash: Optional[str] = None


CONFIRMED_VIA_WAIT = "wait"
CONFIRMED_VIA_BALANCE_POLL = "balance-poll"
UNCONFIRMED = "unconfirmed"
SIMULATED = "simulated"


@dataclass(frozen=True)
class TradeOutcome:
    """Result of running a :class:`TradeIntent` through the execution coordinator."""

    intent: TradeIntent
    confirmed: bool
    confirmed_via: str
    tx_id: Optional[str] = None
    hash: Optional[str] = None
    amount_in: Optional[Decimal] = None
    amount_out: Optional[Decimal] = None

    @property
    def simulated(self) -> bool:
        return self.confirmed_via == SIMULATED

    @property
    def settled(self) -> bool:
        """``True`` when downstream state may treat the trade as done."""

        return self.confirmed or self.simulated


@dataclass(frozen=True)
class PollingPolicy:
    """How the balance-diff fallback polls after a failed confirmation wait."""

    interval_seconds: float = 5.0
    max_attempts: int = 6
    epsilon: Decimal = Decimal("0.001")


@dataclass(frozen=True)
class GasReserveSettings:
    """Minimum balance of the fee-paying asset and the stable notional used to refill it."""

    min_reserve: Decimal = Decimal("2")
    top_up_usd: Decimal = Decimal("1")


@dataclass
class TickReport:
    """Summary of what a single tick observed and did."""

    started_at: float
    price: Optional[Decimal] = None
    ema: Optional[Decimal] = None
    gas_topped_up: Optional[bool] = None
    sell_decisions: Dict[str, SellDecision] = field(default_factory=dict)
    arbitrage: Optional[ArbitrageChain] = None
    signal_name: Optional[str] = None
    signal: Optional[Signal] = None
    outcomes: List[TradeOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def traded(self) -> bool:
        return any(outcome.settled for outcome in self.outcomes)
