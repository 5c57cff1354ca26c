from dexbot.src.trading.decision_engine import (
    DexConnection,
    ExecutionCoordinator,
    PositionLedger,
    TickOrchestrator,
)
