import bisect
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from api.metrics import metrics
from config.settings import WindowSettings
from errors import DuplicateTickError, InvalidTickError, StaleTickError
from ingest.tick import Tick


logger = logging.getLogger(__name__)

ZERO = Decimal(0)


@dataclass(frozen=True)
class Position:
    entry_price: Decimal
    quantity: Decimal


class WindowState:
    """Rolling per-symbol state for volatility, drawdown and P&L.

    ``prices`` holds the volatility window with running sums kept alongside,
    so mean and variance are O(1) to derive. ``peaks`` is a monotonic max
    deque over the drawdown lookback and ``drawdowns`` a monotonic min deque
    of the drawdown observed at each tick against the lookback peak of its
    time. ``lookback`` keeps the raw lookback entries in time order; it is
    only read when a late tick forces the drawdown deques to be rebuilt.
    """

    def __init__(self, symbol: str, settings: WindowSettings):
        self.symbol = symbol
        self.volatility_window = timedelta(seconds=settings.volatility_s)
        self.drawdown_window = timedelta(seconds=settings.drawdown_s)
        self.tolerance = timedelta(seconds=settings.max_out_of_order_s)

        self.prices: Deque[Tuple[datetime, Decimal]] = deque()
        self.price_sum = ZERO
        self.price_sq_sum = ZERO

        self.lookback: Deque[Tuple[datetime, Decimal]] = deque()
        self.peaks: Deque[Tuple[datetime, Decimal]] = deque()
        self.drawdowns: Deque[Tuple[datetime, float]] = deque()

        self._recent_keys: Deque[datetime] = deque()
        self._recent_key_set: Set[datetime] = set()

        self.position: Optional[Position] = None
        self.latest_time: Optional[datetime] = None
        self.latest_price: Optional[Decimal] = None
        self.applied_count = 0
        self.late_count = 0

    # -- queries -----------------------------------------------------------

    @property
    def window_points(self) -> int:
        return len(self.prices)

    def has_seen(self, tick_time: datetime) -> bool:
        return tick_time in self._recent_key_set

    def is_stale(self, tick_time: datetime) -> bool:
        return self.latest_time is not None and tick_time < self.latest_time - self.tolerance

    def mean(self) -> Optional[Decimal]:
        if not self.prices:
            return None
        return self.price_sum / len(self.prices)

    def variance(self) -> Optional[Decimal]:
        n = len(self.prices)
        if n < 2:
            return None
        mean = self.price_sum / n
        var = self.price_sq_sum / n - mean * mean
        return var if var > ZERO else ZERO

    def volatility_pct(self) -> Optional[float]:
        var = self.variance()
        if var is None:
            return None
        mean = self.mean()
        if not mean:
            return None
        return float(var.sqrt() / mean * 100)

    def max_drawdown_pct(self) -> float:
        if not self.drawdowns:
            return 0.0
        return min(0.0, self.drawdowns[0][1] * 100.0)

    def peak(self) -> Optional[Decimal]:
        return self.peaks[0][1] if self.peaks else None

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'latest_time': self.latest_time.isoformat() if self.latest_time else None,
            'latest_price': str(self.latest_price) if self.latest_price is not None else None,
            'window_points': self.window_points,
            'price_sum': str(self.price_sum),
            'price_sq_sum': str(self.price_sq_sum),
            'peak': str(self.peak()) if self.peaks else None,
            'volatility_pct': self.volatility_pct(),
            'max_drawdown_pct': self.max_drawdown_pct(),
        }

    # -- mutation ----------------------------------------------------------

    def apply(self, tick: Tick) -> bool:
        """Fold a validated tick into the windows. Returns False for late ticks."""
        self._remember(tick.time)
        self.applied_count += 1
        if self.latest_time is None or tick.time >= self.latest_time:
            self.latest_time = tick.time
            self.latest_price = tick.price
            self._append_price(tick.time, tick.price)
            self.lookback.append((tick.time, tick.price))
            self._evict_lookback()
            self._push_drawdown(tick.time, tick.price)
            return True

        self.late_count += 1
        if tick.time >= self.latest_time - self.volatility_window:
            bisect.insort(self.prices, (tick.time, tick.price))
            self.price_sum += tick.price
            self.price_sq_sum += tick.price * tick.price
        if tick.time >= self.latest_time - self.drawdown_window:
            bisect.insort(self.lookback, (tick.time, tick.price))
            self.rebuild_drawdowns()
        return False

    def rebuild_drawdowns(self) -> None:
        self.peaks.clear()
        self.drawdowns.clear()
        for entry_time, price in self.lookback:
            self._push_drawdown(entry_time, price)

    def reset_sums(self, price_sum: Decimal, price_sq_sum: Decimal) -> None:
        self.price_sum = price_sum
        self.price_sq_sum = price_sq_sum

    def _remember(self, tick_time: datetime) -> None:
        self._recent_keys.append(tick_time)
        self._recent_key_set.add(tick_time)
        latest = max(tick_time, self.latest_time) if self.latest_time else tick_time
        cutoff = latest - self.tolerance
        while self._recent_keys and self._recent_keys[0] < cutoff:
            self._recent_key_set.discard(self._recent_keys.popleft())

    def _append_price(self, tick_time: datetime, price: Decimal) -> None:
        self.prices.append((tick_time, price))
        self.price_sum += price
        self.price_sq_sum += price * price
        cutoff = tick_time - self.volatility_window
        while self.prices and self.prices[0][0] < cutoff:
            _, old = self.prices.popleft()
            self.price_sum -= old
            self.price_sq_sum -= old * old

    def _evict_lookback(self) -> None:
        cutoff = self.latest_time - self.drawdown_window
        while self.lookback and self.lookback[0][0] < cutoff:
            self.lookback.popleft()

    def _push_drawdown(self, tick_time: datetime, price: Decimal) -> None:
        cutoff = tick_time - self.drawdown_window
        peaks = self.peaks
        while peaks and peaks[0][0] < cutoff:
            peaks.popleft()
        while peaks and peaks[-1][1] <= price:
            peaks.pop()
        peaks.append((tick_time, price))
        peak = peaks[0][1]
        drawdown = float((price - peak) / peak)

        drawdowns = self.drawdowns
        while drawdowns and drawdowns[0][0] < cutoff:
            drawdowns.popleft()
        while drawdowns and drawdowns[-1][1] >= drawdown:
            drawdowns.pop()
        drawdowns.append((tick_time, drawdown))


class WindowStateManager:
    """Owns the WindowState of every symbol routed to one worker."""

    def __init__(self, settings: WindowSettings):
        self.settings = settings
        self._states: Dict[str, WindowState] = {}
        self.resync_count = 0

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._states

    def symbols(self) -> List[str]:
        return list(self._states)

    def get(self, symbol: str) -> Optional[WindowState]:
        return self._states.get(symbol)

    def reconfigure(self, settings: WindowSettings) -> None:
        """New window sizes apply to symbols first seen after the swap."""
        self.settings = settings

    def _state_for(self, symbol: str) -> WindowState:
        state = self._states.get(symbol)
        if state is None:
            state = WindowState(symbol, self.settings)
            self._states[symbol] = state
        return state

    def set_position(self, symbol: str, position: Optional[Position]) -> None:
        self._state_for(symbol).position = position

    def update(self, tick: Tick) -> WindowState:
        if tick.price <= ZERO:
            raise InvalidTickError(
                f"non-positive price {tick.price} for {tick.symbol}",
                symbol=tick.symbol,
                time=tick.time,
            )
        if tick.volume < ZERO:
            raise InvalidTickError(
                f"negative volume {tick.volume} for {tick.symbol}",
                symbol=tick.symbol,
                time=tick.time,
            )

        state = self._state_for(tick.symbol)
        if state.is_stale(tick.time):
            lag = (state.latest_time - tick.time).total_seconds()
            raise StaleTickError(
                f"tick for {tick.symbol} at {tick.time.isoformat()} is {lag:.3f}s behind latest",
                symbol=tick.symbol,
                time=tick.time,
                lag_s=lag,
            )
        if state.has_seen(tick.time):
            raise DuplicateTickError(
                f"duplicate tick for {tick.symbol} at {tick.time.isoformat()}",
                symbol=tick.symbol,
                time=tick.time,
            )

        state.apply(tick)
        interval = self.settings.resync_interval
        if interval and state.applied_count % interval == 0:
            self.resync(state)
        return state

    def resync(self, state: WindowState) -> bool:
        """Recompute the running sums exactly; replace them if drift exceeds tolerance."""
        prices = [price for _, price in state.prices]
        exact_sum = _decimal_sum(prices)
        exact_sq_sum = _decimal_sum(p * p for p in prices)
        incremental = state.variance()
        if len(prices) < 2 or incremental is None:
            drifted = exact_sum != state.price_sum
        else:
            exact_var = float(np.var(np.array([float(p) for p in prices], dtype=float)))
            drift = abs(float(incremental) - exact_var)
            drifted = drift > self.settings.resync_tolerance * max(1.0, exact_var)
        if drifted:
            logger.warning(
                "Window sums for %s drifted; re-synced from %d entries (sum %s -> %s)",
                state.symbol,
                len(prices),
                state.price_sum,
                exact_sum,
            )
            metrics.record_window_resync(state.symbol)
            state.reset_sums(exact_sum, exact_sq_sum)
            self.resync_count += 1
        return drifted


def _decimal_sum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for value in values:
        total += value
    return total
