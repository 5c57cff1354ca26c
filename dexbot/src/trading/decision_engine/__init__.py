"""Decision and execution core of the DEX trading bot."""
from dexbot.src.trading.decision_engine.arbitrage import (
    ArbitrageEvaluator,
    FeeTierArbitrageEvaluator,
)
from dexbot.src.trading.decision_engine.config import BotSettings, load_settings
from dexbot.src.trading.decision_engine.exceptions import (
    ConfigurationError,
    ConfirmationTimeout,
    DecisionEngineError,
    InsufficientBalance,
    InvalidPath,
    PersistenceWriteFailure,
    QuoteUnavailable,
    SubmitError,
)
from dexbot.src.trading.decision_engine.exchange import (
    DexConnection,
    PendingSwap,
    WalletSigner,
    fetch_balances,
)
from dexbot.src.trading.decision_engine.executor import ExecutionCoordinator
from dexbot.src.trading.decision_engine.gas_reserve import GasReserveGuard
from dexbot.src.trading.decision_engine.ledger import (
    InMemoryLedgerStore,
    JsonLedgerStore,
    PositionLedger,
)
from dexbot.src.trading.decision_engine.models import (
    ArbitrageChain,
    ArbitrageLeg,
    PollingPolicy,
    Position,
    Quote,
    RoundTrip,
    Signal,
    SignalAction,
    TickReport,
    TradeDirection,
    TradeIntent,
    TradeOutcome,
)
from dexbot.src.trading.decision_engine.orchestrator import (
    TickOrchestrator,
    TickScheduler,
    build_arbitrage_evaluator,
    build_orchestrator,
    resolve_stable,
)
from dexbot.src.trading.decision_engine.price_history import PriceHistory
from dexbot.src.trading.decision_engine.signals import (
    FixedSelectionPolicy,
    RandomSelectionPolicy,
)
from dexbot.src.trading.decision_engine.simulation import simulate_strategies

__all__ = [
    "ArbitrageChain",
    "ArbitrageEvaluator",
    "ArbitrageLeg",
    "BotSettings",
    "ConfigurationError",
    "ConfirmationTimeout",
    "DecisionEngineError",
    "DexConnection",
    "ExecutionCoordinator",
    "FeeTierArbitrageEvaluator",
    "FixedSelectionPolicy",
    "GasReserveGuard",
    "InMemoryLedgerStore",
    "InsufficientBalance",
    "InvalidPath",
    "JsonLedgerStore",
    "PendingSwap",
    "PersistenceWriteFailure",
    "PollingPolicy",
    "Position",
    "PositionLedger",
    "PriceHistory",
    "Quote",
    "QuoteUnavailable",
    "RandomSelectionPolicy",
    "RoundTrip",
    "Signal",
    "SignalAction",
    "SubmitError",
    "TickOrchestrator",
    "TickReport",
    "TickScheduler",
    "TradeDirection",
    "TradeIntent",
    "TradeOutcome",
    "WalletSigner",
    "build_arbitrage_evaluator",
    "build_orchestrator",
    "fetch_balances",
    "load_settings",
    "resolve_stable",
    "simulate_strategies",
]
