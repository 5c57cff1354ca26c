"""One trading cycle (``TickOrchestrator``) and the loop that repeats it."""
from __future__ import annotations

import asyncio
import logging
import random
import signal
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TypeVar

from dexbot.src.trading.decision_engine.arbitrage import (
    ArbitrageEvaluator,
    FeeTierArbitrageEvaluator,
)
from dexbot.src.trading.decision_engine.config import (
    ARB_MODE_FEE_TIER,
    TICK_MODE_EXCLUSIVE,
    TICK_MODES,
    BotSettings,
    enabled_signal_names,
)
from dexbot.src.trading.decision_engine.exceptions import (
    DecisionEngineError,
    InsufficientBalance,
)
from dexbot.src.trading.decision_engine.executor import ExecutionCoordinator
from dexbot.src.trading.decision_engine.gas_reserve import GasReserveGuard
from dexbot.src.trading.decision_engine.ledger import (
    InMemoryLedgerStore,
    JsonLedgerStore,
    LedgerStore,
    PositionLedger,
)
from dexbot.src.trading.decision_engine.models import (
    ZERO,
    SignalAction,
    TickReport,
    TradeDirection,
    TradeOutcome,
    decimal_to_str,
    to_decimal,
    token_symbol,
)
from dexbot.src.trading.decision_engine.price_history import (
    PriceHistory,
    load_history,
    save_history,
)
from dexbot.src.trading.decision_engine.signals import (
    RandomSelectionPolicy,
    SignalGenerator,
    SignalInputs,
    SignalSelectionPolicy,
    build_generators,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ARB_BALANCE_FRACTION = Decimal("0.9")


def resolve_stable(balances: Mapping[str, Decimal], candidates: Sequence[str]) -> Optional[str]:
    """Pick the stable token to trade against from what the wallet holds.

    The first candidate with a positive balance wins, then the first one the
    wallet lists at all. ``None`` when the wallet lists none of them.
    """

    for token in candidates:
        if balances.get(token_symbol(token), ZERO) > ZERO:
            return token
    for token in candidates:
        if token_symbol(token) in balances:
            return token
    return None


class TickOrchestrator:
    """Sequences price -> gas reserve -> sells -> arbitrage -> one signal.

    Every stage runs behind its own error boundary, so a failing stage is
    recorded on the :class:`TickReport` without stopping the stages after
    it. In ``exclusive`` mode a stage that settles a trade ends the tick.
    """

    def __init__(
        self,
        *,
        exchange: Any,
        coordinator: ExecutionCoordinator,
        history: PriceHistory,
        ledger: PositionLedger,
        generators: Dict[str, SignalGenerator],
        selection: SignalSelectionPolicy,
        base_token: str,
        stable_token: str,
        trade_notional: Decimal | float | str,
        tracked_assets: Sequence[str] = (),
        gas_guard: Optional[GasReserveGuard] = None,
        arbitrage: Optional[Any] = None,
        arbitrage_path: Optional[Sequence[str]] = None,
        arbitrage_start: Decimal | float | str = Decimal("3"),
        tick_mode: str = TICK_MODE_EXCLUSIVE,
        state_path: Optional[str] = None,
        buy_tokens: Sequence[str] = (),
        rotation_minutes: float = 10.0,
        stable_candidates: Sequence[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if tick_mode not in TICK_MODES:
            raise ValueError(f"tick_mode must be one of {list(TICK_MODES)}")
        self.exchange = exchange
        self.coordinator = coordinator
        self.history = history
        self.ledger = ledger
        self.generators = dict(generators)
        self.selection = selection
        self.base_token = base_token
        self.stable_token = stable_token
        self.trade_notional = to_decimal(trade_notional)
        self.tracked_assets = list(tracked_assets) or [base_token]
        self.gas_guard = gas_guard
        self.arbitrage = arbitrage
        self.arbitrage_path = list(arbitrage_path) if arbitrage_path else None
        self.arbitrage_start = to_decimal(arbitrage_start)
        self.tick_mode = tick_mode
        self.state_path = state_path
        self.buy_tokens = list(buy_tokens) or [base_token]
        self.rotation_seconds = max(float(rotation_minutes), 0.0) * 60.0
        self.stable_candidates = list(stable_candidates)
        self._clock = clock

    @property
    def exclusive(self) -> bool:
        return self.tick_mode == TICK_MODE_EXCLUSIVE

    def _stage(self, report: TickReport, name: str, action: Callable[[], T]) -> Optional[T]:
        try:
            return action()
        except DecisionEngineError as exc:
            logger.warning("%s skipped: %s", name, exc)
            report.errors.append(f"{name}: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error during %s", name)
            report.errors.append(f"{name}: {exc!r}")
        return None

    def run_tick(self) -> TickReport:
        report = TickReport(started_at=time.time())

        price = self._stage(report, "price", self._sample_price)
        if price is None:
            return report
        report.price = price
        report.ema = self.history.ema
        logger.info(
            "Price %s %s/%s (EMA %s)",
            decimal_to_str(price),
            token_symbol(self.stable_token),
            token_symbol(self.base_token),
            decimal_to_str(report.ema) if report.ema is not None else "n/a",
        )

        balances = self._stage(report, "balances", self.coordinator.balances)
        if balances is not None and self.stable_candidates:
            self._use_stable(resolve_stable(balances, self.stable_candidates))

        if self.gas_guard is not None and balances is not None:
            topped_up = self._stage(
                report, "gas reserve", lambda: self.gas_guard.ensure_reserve(balances)
            )
            report.gas_topped_up = topped_up
            if topped_up:
                balances = self._stage(report, "balances", self.coordinator.balances) or balances

        if balances is not None:
            for asset in self.tracked_assets:
                self._stage(
                    report,
                    f"sell {token_symbol(asset)}",
                    lambda: self._attempt_sell(report, asset, balances),
                )
            if self.exclusive and report.traded:
                return report

        if self.arbitrage is not None and self.arbitrage_path:
            self._stage(report, "arbitrage", lambda: self._attempt_arbitrage(report, balances))
            if self.exclusive and report.traded:
                return report

        self._stage(report, "signal", lambda: self._run_signal(report, price, balances))
        return report

    def _use_stable(self, token: Optional[str]) -> None:
        if token is None or token == self.stable_token:
            return
        logger.info(
            "Switching stable %s -> %s", token_symbol(self.stable_token), token_symbol(token)
        )
        self.stable_token = token
        if self.gas_guard is not None:
            self.gas_guard.stable_token = token

    def next_buy_token(self) -> str:
        """The buy target for the current rotation slot of the wall clock."""

        if len(self.buy_tokens) == 1 or self.rotation_seconds <= 0:
            return self.buy_tokens[0]
        slot = int(self._clock() // self.rotation_seconds)
        return self.buy_tokens[slot % len(self.buy_tokens)]

    def _sample_price(self) -> Decimal:
        quote = self.exchange.quote(self.base_token, self.stable_token, Decimal("1"))
        self.history.observe(quote.out_amount)
        if self.state_path:
            save_history(self.state_path, self.history)
        return quote.out_amount

    def _sellable(self, asset: str, balance: Decimal) -> Decimal:
        if self.gas_guard is not None and self.gas_guard.is_gas_asset(asset):
            return self.gas_guard.sellable(balance)
        return balance

    def _attempt_sell(self, report: TickReport, asset: str, balances: Dict[str, Decimal]) -> None:
        token = self._token_for(asset)
        symbol = token_symbol(token)
        quantity = self._sellable(token, balances.get(symbol, ZERO))

        position = self.ledger.position(symbol)
        if not position.is_open or quantity <= ZERO:
            decision = self.ledger.evaluate_sell(symbol, quantity, ZERO)
        else:
            proceeds = self.exchange.quote(token, self.stable_token, quantity).out_amount
            decision = self.ledger.evaluate_sell(symbol, quantity, proceeds)
        report.sell_decisions[symbol] = decision
        logger.info("Sell check %s: %s", symbol, decision.reason)
        if not decision.allowed:
            return

        outcome = self.coordinator.trade(TradeDirection.SELL, token, self.stable_token, quantity)
        report.outcomes.append(outcome)
        if outcome.settled:
            self.ledger.clear_position(symbol)

    def _attempt_arbitrage(
        self, report: TickReport, balances: Optional[Dict[str, Decimal]]
    ) -> None:
        start_symbol = token_symbol(self.arbitrage_path[0])
        if balances is not None:
            available = balances.get(start_symbol, ZERO)
            if available <= self.arbitrage_start * ARB_BALANCE_FRACTION:
                raise InsufficientBalance(
                    f"{decimal_to_str(available)} {start_symbol} is not enough for a "
                    f"{decimal_to_str(self.arbitrage_start)} arbitrage"
                )

        chain = self.arbitrage.evaluate(self.arbitrage_path, self.arbitrage_start)
        report.arbitrage = chain
        if chain is None or not chain.actionable:
            return
        logger.info(
            "Executing arbitrage %s (%.2f bps)",
            "-".join(token_symbol(token) for token in chain.path),
            float(chain.profit_bps),
        )
        report.outcomes.extend(self.arbitrage.execute(chain, self.coordinator))

    def _run_signal(
        self,
        report: TickReport,
        price: Decimal,
        balances: Optional[Dict[str, Decimal]],
    ) -> Optional[TradeOutcome]:
        name = self.selection.choose(list(self.generators))
        ema = self.history.ema if self.history.ema is not None else price
        signal_result = self.generators[name](
            SignalInputs(price=price, ema=ema, swing=self.history.swing_window())
        )
        report.signal_name = name
        report.signal = signal_result
        logger.info("Signal %s: %s (%s)", name, signal_result.action.value, signal_result.reason)

        if signal_result.action is SignalAction.BUY:
            return self._signal_buy(report, balances)
        if signal_result.action is SignalAction.SELL:
            return self._signal_sell(report, price, balances)
        return None

    def _signal_buy(
        self, report: TickReport, balances: Optional[Dict[str, Decimal]]
    ) -> TradeOutcome:
        stable_symbol = token_symbol(self.stable_token)
        if balances is not None and balances.get(stable_symbol, ZERO) < self.trade_notional:
            raise InsufficientBalance(
                f"Need {decimal_to_str(self.trade_notional)} {stable_symbol}, have "
                f"{decimal_to_str(balances.get(stable_symbol, ZERO))}"
            )
        target = self.next_buy_token()
        outcome = self.coordinator.trade(
            TradeDirection.BUY, self.stable_token, target, self.trade_notional
        )
        report.outcomes.append(outcome)
        if outcome.settled and outcome.amount_out is not None:
            self.ledger.record_buy(
                token_symbol(target),
                outcome.amount_out,
                outcome.amount_in if outcome.amount_in is not None else self.trade_notional,
            )
        return outcome

    def _signal_sell(
        self,
        report: TickReport,
        price: Decimal,
        balances: Optional[Dict[str, Decimal]],
    ) -> Optional[TradeOutcome]:
        amount = self.trade_notional / price
        base_symbol = token_symbol(self.base_token)
        if balances is not None:
            available = self._sellable(self.base_token, balances.get(base_symbol, ZERO))
            amount = min(amount, available)
        if amount <= ZERO:
            raise InsufficientBalance(f"No sellable {base_symbol} above the reserve")
        outcome = self.coordinator.trade(
            TradeDirection.SELL, self.base_token, self.stable_token, amount
        )
        report.outcomes.append(outcome)
        return outcome

    def _token_for(self, asset: str) -> str:
        if "|" in asset:
            return asset
        for token in (self.base_token, self.stable_token):
            if token_symbol(token) == asset.upper():
                return token
        if self.arbitrage_path:
            for token in self.arbitrage_path:
                if token_symbol(token) == asset.upper():
                    return token
        return asset


class TickScheduler:
    """Runs ticks one after another with ``interval + uniform(0, jitter)`` pauses.

    :meth:`stop` (wired to SIGINT/SIGTERM by :meth:`install_signal_handlers`)
    prevents the next tick from starting; a tick already running completes.
    """

    def __init__(
        self,
        run_tick: Callable[[], Any],
        *,
        interval_seconds: float,
        jitter_seconds: float = 0.0,
        initial_jitter: bool = True,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.run_tick = run_tick
        self.interval_seconds = max(float(interval_seconds), 0.0)
        self.jitter_seconds = max(float(jitter_seconds), 0.0)
        self.initial_jitter = initial_jitter
        self._rng = rng or random.Random()
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self.ticks_run = 0

    def _jitter(self) -> float:
        if self.jitter_seconds <= 0:
            return 0.0
        return self._rng.uniform(0, self.jitter_seconds)

    def stop(self) -> None:
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_requested

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - non-unix loops
                logger.debug("Signal handler for %s not supported", signum)

    def _on_signal(self, signum: int) -> None:
        logger.info("Received signal %s; stopping after the current tick", signum)
        self.stop()

    async def _pause(self, seconds: float) -> None:
        assert self._stop_event is not None
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self, max_ticks: Optional[int] = None) -> int:
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        if self.initial_jitter:
            await self._pause(self._jitter())

        while not self._stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_tick)
            except Exception:
                logger.exception("Tick failed")
            self.ticks_run += 1
            if max_ticks is not None and self.ticks_run >= max_ticks:
                break
            delay = self.interval_seconds + self._jitter()
            logger.info("Next tick in %.0fs", delay)
            await self._pause(delay)

        logger.info("Scheduler stopped after %d tick(s)", self.ticks_run)
        return self.ticks_run


def build_arbitrage_evaluator(settings: BotSettings, exchange: Any) -> Any:
    if settings.arbitrage.mode == ARB_MODE_FEE_TIER:
        return FeeTierArbitrageEvaluator(
            exchange,
            fee_tiers=settings.arbitrage.fee_tiers,
            min_profit_bps=settings.arbitrage.min_profit_bps,
        )
    return ArbitrageEvaluator(exchange, min_profit_bps=settings.arbitrage.min_profit_bps)


def build_orchestrator(
    settings: BotSettings,
    exchange: Any,
    *,
    ledger_store: Optional[LedgerStore] = None,
    selection: Optional[SignalSelectionPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> TickOrchestrator:
    """Wire every component from ``settings`` around ``exchange``."""

    coordinator = ExecutionCoordinator(
        exchange,
        wallet=settings.wallet or "",
        slippage_bps=settings.slippage_bps,
        dry_run=settings.dry_run,
        confirmation_timeout=settings.confirmation_timeout,
        polling=settings.polling,
        sleep=sleep,
    )
    if ledger_store is None:
        ledger_store = (
            JsonLedgerStore(settings.ledger_path) if settings.ledger_path else InMemoryLedgerStore()
        )
    ledger = PositionLedger(
        ledger_store,
        min_profit_bps=settings.min_profit_bps,
        profit_buffer_bps=settings.profit_buffer_bps,
    )
    history = PriceHistory(
        alpha=settings.signals.ema_alpha,
        swing_lookback=settings.signals.fib_lookback,
    )
    if settings.state_path:
        load_history(settings.state_path, history)
    all_generators = build_generators(
        momentum_threshold=settings.signals.momentum_threshold,
        mean_reversion_threshold=settings.signals.mean_reversion_threshold,
    )
    generators = {name: all_generators[name] for name in enabled_signal_names(settings)}
    gas_guard = GasReserveGuard(
        coordinator,
        gas_token=settings.token_key(settings.gas_token),
        stable_token=settings.token_key(settings.stable_token),
        settings=settings.gas,
    )
    arbitrage = None
    if settings.arbitrage.enabled:
        arbitrage = build_arbitrage_evaluator(settings, exchange)

    return TickOrchestrator(
        exchange=exchange,
        coordinator=coordinator,
        history=history,
        ledger=ledger,
        generators=generators,
        selection=selection or RandomSelectionPolicy(settings.signals.seed),
        base_token=settings.token_key(settings.base_token),
        stable_token=settings.token_key(settings.stable_token),
        trade_notional=settings.trade_notional,
        tracked_assets=[settings.token_key(asset) for asset in settings.tracked_assets],
        gas_guard=gas_guard,
        arbitrage=arbitrage,
        arbitrage_path=settings.arbitrage_path_keys if settings.arbitrage.enabled else None,
        arbitrage_start=settings.arbitrage.start_usd,
        tick_mode=settings.tick_mode,
        state_path=settings.state_path,
        buy_tokens=settings.buy_token_keys,
        rotation_minutes=settings.buy_rotation_minutes,
        stable_candidates=settings.stable_candidate_keys,
    )
