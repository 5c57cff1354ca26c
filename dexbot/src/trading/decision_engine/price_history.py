"""Sliding window of sampled prices with a running exponential moving average."""
from __future__ import annotations

import json
import logging
import time
from collections import deque
from decimal import Decimal
from pathlib import Path
from typing import Callable, Deque, Iterable, List, Optional, Union

from dexbot.src.trading.decision_engine.models import PricePoint, SwingWindow, to_decimal

logger = logging.getLogger(__name__)

MIN_CAPACITY = 400
MIN_SWING_POINTS = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


def ema_update(previous: Optional[Decimal], price: Decimal, alpha: Decimal) -> Decimal:
    """Return ``alpha * price + (1 - alpha) * previous``, seeding with ``price``."""

    if previous is None:
        return price
    return alpha * price + (Decimal("1") - alpha) * previous


class PriceHistory:
    """Bounded price series plus EMA state owned by the tick loop.

    Capacity is three times the swing lookback and never less than
    ``MIN_CAPACITY`` points; the oldest points are evicted first.
    """

    def __init__(
        self,
        *,
        alpha: Decimal | float | str = Decimal("0.2"),
        swing_lookback: int = 96,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        alpha_value = to_decimal(alpha)
        if not Decimal("0") < alpha_value <= Decimal("1"):
            raise ValueError("alpha must be within (0, 1]")
        if swing_lookback <= 0:
            raise ValueError("swing_lookback must be positive")
        self.alpha = alpha_value
        self.swing_lookback = int(swing_lookback)
        self.capacity = max(3 * self.swing_lookback, MIN_CAPACITY)
        self._clock = clock
        self._points: Deque[PricePoint] = deque(maxlen=self.capacity)
        self._ema: Optional[Decimal] = None

    @property
    def ema(self) -> Optional[Decimal]:
        return self._ema

    @property
    def points(self) -> List[PricePoint]:
        return list(self._points)

    @property
    def latest(self) -> Optional[PricePoint]:
        return self._points[-1] if self._points else None

    def __len__(self) -> int:
        return len(self._points)

    def observe(self, price: Decimal | float | str) -> None:
        value = to_decimal(price)
        self._points.append(PricePoint(timestamp_ms=int(self._clock()), price=value))
        self._ema = ema_update(self._ema, value, self.alpha)

    def restore(self, points: Iterable[PricePoint], ema: Optional[Decimal]) -> None:
        """Reload a previously persisted series without recomputing the EMA."""

        self._points.clear()
        self._points.extend(points)
        self._ema = ema

    def swing_window(self, lookback: Optional[int] = None) -> Optional[SwingWindow]:
        """Locate the swing high and low of the last ``lookback`` points.

        Indices are positions within the whole retained series. The first
        occurrence wins on ties. Returns ``None`` with fewer than
        ``MIN_SWING_POINTS`` points in the window.
        """

        window = lookback or self.swing_lookback
        points = list(self._points)[-window:]
        if len(points) < MIN_SWING_POINTS:
            return None

        base = len(self._points) - len(points)
        high = low = points[0].price
        high_index = low_index = 0
        for index, point in enumerate(points):
            if point.price > high:
                high, high_index = point.price, index
            if point.price < low:
                low, low_index = point.price, index

        return SwingWindow(
            high=high,
            high_index=base + high_index,
            low=low,
            low_index=base + low_index,
        )


def save_history(path: Union[str, Path], history: PriceHistory) -> bool:
    """Write the series and EMA as ``{"ema": n, "prices": [{"t": ms, "p": n}]}``."""

    payload = {
        "ema": float(history.ema) if history.ema is not None else None,
        "prices": [{"t": point.timestamp_ms, "p": float(point.price)} for point in history.points],
    }
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(payload))
    except OSError as exc:
        logger.warning("Unable to save price history to %s: %s", target, exc)
        return False
    return True


def load_history(path: Union[str, Path], history: PriceHistory) -> bool:
    """Restore ``history`` from :func:`save_history` output if the file exists."""

    source = Path(path)
    if not source.exists():
        return False
    try:
        raw = json.loads(source.read_text())
        points = [
            PricePoint(timestamp_ms=int(entry["t"]), price=to_decimal(entry["p"]))
            for entry in raw.get("prices") or []
        ]
        ema = raw.get("ema")
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("Ignoring unreadable price history %s: %s", source, exc)
        return False
    history.restore(points, to_decimal(ema) if ema is not None else None)
    logger.info("Restored %d price points from %s", len(history), source)
    return True
