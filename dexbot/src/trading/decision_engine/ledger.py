"""Cost-basis position ledger and the stores that persist it."""
from __future__ import annotations

import json
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from dexbot.src.trading.decision_engine.exceptions import PersistenceWriteFailure
from dexbot.src.trading.decision_engine.models import (
    BPS_DENOMINATOR,
    ZERO,
    Position,
    SellDecision,
    decimal_to_str,
    to_decimal,
)

logger = logging.getLogger(__name__)

Ledger = Dict[str, Position]


class LedgerStore(Protocol):
    def load(self) -> Ledger:
        ...

    def save(self, ledger: Ledger) -> None:
        ...


class InMemoryLedgerStore:
    """Keeps a serialised copy in memory; handy for dry runs and tests."""

    def __init__(self, initial: Optional[Ledger] = None) -> None:
        self._data: Dict[str, Dict[str, str]] = {}
        self.saves = 0
        if initial:
            self.save(initial)

    def load(self) -> Ledger:
        return {
            symbol.upper(): Position(Decimal(entry["units"]), Decimal(entry["cost_usdt"]))
            for symbol, entry in self._data.items()
        }

    def save(self, ledger: Ledger) -> None:
        self._data = {
            symbol.upper(): {
                "units": decimal_to_str(position.units_held),
                "cost_usdt": decimal_to_str(position.cost_basis_total),
            }
            for symbol, position in ledger.items()
        }
        self.saves += 1


class JsonLedgerStore:
    """Ledger persisted as ``{symbol: {"units": n, "cost_usdt": n}}``."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def load(self) -> Ledger:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Unable to read ledger %s, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ledger %s is not a JSON object, starting empty", self.path)
            return {}

        ledger: Ledger = {}
        for symbol, entry in raw.items():
            if not isinstance(entry, dict):
                continue
            try:
                units = to_decimal(entry.get("units", 0))
                cost = to_decimal(entry.get("cost_usdt", 0))
            except ValueError:
                logger.warning("Skipping malformed ledger entry for %s: %r", symbol, entry)
                continue
            ledger[str(symbol).upper()] = Position(max(units, ZERO), max(cost, ZERO))
        return ledger

    def save(self, ledger: Ledger) -> None:
        payload = {
            symbol.upper(): {
                "units": float(position.units_held),
                "cost_usdt": float(position.cost_basis_total),
            }
            for symbol, position in ledger.items()
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceWriteFailure(f"Could not write ledger {self.path}: {exc}") from exc


class PositionLedger:
    """Per-asset units and cost basis that gate full-balance sells.

    A sell is allowed only when the quoted proceeds cover the accumulated
    cost plus ``min_profit_bps + profit_buffer_bps``. Every state change is
    written to the store; a failed write is logged and the in-memory state
    stays authoritative until the next successful save.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        min_profit_bps: Decimal | float | str = Decimal("10"),
        profit_buffer_bps: Decimal | float | str = Decimal("0"),
    ) -> None:
        self.store = store
        self.min_profit_bps = to_decimal(min_profit_bps)
        self.profit_buffer_bps = to_decimal(profit_buffer_bps)
        self._positions: Ledger = dict(store.load())
        self.dirty = False

    def position(self, asset: str) -> Position:
        existing = self._positions.get(asset.upper())
        if existing is None:
            return Position()
        return Position(existing.units_held, existing.cost_basis_total)

    def positions(self) -> Ledger:
        return {symbol: self.position(symbol) for symbol in self._positions}

    def record_buy(
        self,
        asset: str,
        units_acquired: Decimal | float | str,
        cost_spent: Decimal | float | str,
    ) -> Position:
        units = to_decimal(units_acquired)
        cost = to_decimal(cost_spent)
        if units < ZERO or cost < ZERO:
            raise ValueError("Bought units and cost must be non-negative")

        key = asset.upper()
        position = self._positions.setdefault(key, Position())
        position.units_held += units
        position.cost_basis_total += cost
        logger.info(
            "Ledger %s: +%s units for %s (now %s units, cost %s)",
            key,
            decimal_to_str(units),
            decimal_to_str(cost),
            decimal_to_str(position.units_held),
            decimal_to_str(position.cost_basis_total),
        )
        self._persist()
        return self.position(key)

    def sell_threshold(self, asset: str) -> Decimal:
        position = self.position(asset)
        margin = (self.min_profit_bps + self.profit_buffer_bps) / BPS_DENOMINATOR
        return position.cost_basis_total * (Decimal("1") + margin)

    def evaluate_sell(
        self,
        asset: str,
        on_chain_quantity: Decimal | float | str,
        quoted_proceeds: Decimal | float | str,
    ) -> SellDecision:
        position = self.position(asset)
        if not position.is_open:
            return SellDecision(False, f"no tracked position for {asset.upper()}")
        if to_decimal(on_chain_quantity) <= ZERO:
            return SellDecision(False, f"no {asset.upper()} balance to sell")

        threshold = self.sell_threshold(asset)
        proceeds = to_decimal(quoted_proceeds)
        if proceeds >= threshold:
            return SellDecision(
                True,
                f"proceeds {decimal_to_str(proceeds)} >= threshold {decimal_to_str(threshold)}",
                threshold,
            )
        return SellDecision(
            False,
            f"proceeds {decimal_to_str(proceeds)} below threshold {decimal_to_str(threshold)}",
            threshold,
        )

    def clear_position(self, asset: str) -> None:
        key = asset.upper()
        self._positions[key] = Position(ZERO, ZERO)
        logger.info("Ledger %s cleared after realised sell", key)
        self._persist()

    def flush(self) -> bool:
        """Retry a save that previously failed. Returns ``True`` when nothing is pending."""

        if self.dirty:
            self._persist()
        return not self.dirty

    def _persist(self) -> None:
        try:
            self.store.save(self.positions())
        except PersistenceWriteFailure as exc:
            self.dirty = True
            logger.warning("Ledger not persisted, keeping in-memory state: %s", exc)
        else:
            self.dirty = False
