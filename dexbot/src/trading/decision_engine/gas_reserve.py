"""Keeps a minimum balance of the fee-paying asset in the wallet."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Optional

from dexbot.src.trading.decision_engine.exceptions import InsufficientBalance
from dexbot.src.trading.decision_engine.models import (
    ZERO,
    GasReserveSettings,
    TradeDirection,
    decimal_to_str,
    to_decimal,
    token_symbol,
)

if TYPE_CHECKING:
    from dexbot.src.trading.decision_engine.executor import ExecutionCoordinator

logger = logging.getLogger(__name__)


class GasReserveGuard:
    """Tops up ``gas_token`` from ``stable_token`` and clamps sells of it."""

    def __init__(
        self,
        coordinator: "ExecutionCoordinator",
        *,
        gas_token: str,
        stable_token: str,
        settings: Optional[GasReserveSettings] = None,
    ) -> None:
        self.coordinator = coordinator
        self.gas_token = gas_token
        self.stable_token = stable_token
        self.settings = settings or GasReserveSettings()

    @property
    def gas_symbol(self) -> str:
        return token_symbol(self.gas_token)

    def is_gas_asset(self, token: str) -> bool:
        return token_symbol(token) == self.gas_symbol

    def sellable(self, balance: Decimal | float | str) -> Decimal:
        """Quantity above the reserve; never negative."""

        return max(ZERO, to_decimal(balance) - self.settings.min_reserve)

    def ensure_reserve(self, balances: Optional[Dict[str, Decimal]] = None) -> bool:
        """Buy gas with a fixed stable notional when below the reserve.

        Returns ``True`` when a top-up trade settled. Raises
        :class:`InsufficientBalance` when the stable balance cannot fund it.
        """

        if balances is None:
            balances = self.coordinator.balances()
        gas_balance = balances.get(self.gas_symbol, ZERO)
        if gas_balance >= self.settings.min_reserve:
            logger.debug(
                "Gas reserve ok: %s %s (min %s)",
                decimal_to_str(gas_balance),
                self.gas_symbol,
                decimal_to_str(self.settings.min_reserve),
            )
            return False

        stable_symbol = token_symbol(self.stable_token)
        stable_balance = balances.get(stable_symbol, ZERO)
        if stable_balance < self.settings.top_up_usd:
            raise InsufficientBalance(
                f"Gas reserve low ({decimal_to_str(gas_balance)} {self.gas_symbol}) and only "
                f"{decimal_to_str(stable_balance)} {stable_symbol} available for a "
                f"{decimal_to_str(self.settings.top_up_usd)} top-up"
            )

        logger.info(
            "Gas reserve low: %s %s < %s, topping up with %s %s",
            decimal_to_str(gas_balance),
            self.gas_symbol,
            decimal_to_str(self.settings.min_reserve),
            decimal_to_str(self.settings.top_up_usd),
            stable_symbol,
        )
        outcome = self.coordinator.trade(
            TradeDirection.BUY,
            self.stable_token,
            self.gas_token,
            self.settings.top_up_usd,
        )
        if not outcome.settled:
            logger.warning("Gas top-up did not confirm (%s)", outcome.confirmed_via)
        return outcome.settled
