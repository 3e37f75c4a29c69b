from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from analytics.window_state import WindowState


@dataclass(frozen=True)
class MetricsSnapshot:
    symbol: str
    volatility_pct: Optional[float]
    max_drawdown_pct: float
    unrealized_pnl: Optional[Decimal]
    computed_at: datetime
    price: Optional[Decimal] = None
    window_points: int = 0
    volatility_window_s: Optional[float] = None
    drawdown_window_s: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'volatility_pct': self.volatility_pct,
            'max_drawdown_pct': self.max_drawdown_pct,
            'unrealized_pnl': str(self.unrealized_pnl) if self.unrealized_pnl is not None else None,
            'timestamp': self.computed_at.isoformat(),
        }


def unrealized_pnl(state: WindowState) -> Optional[Decimal]:
    position = state.position
    if position is None or state.latest_price is None:
        return None
    return (state.latest_price - position.entry_price) * position.quantity


def compute(state: WindowState) -> MetricsSnapshot:
    """Derive a snapshot from window state. Pure; absent data maps to None."""
    return MetricsSnapshot(
        symbol=state.symbol,
        volatility_pct=state.volatility_pct(),
        max_drawdown_pct=state.max_drawdown_pct(),
        unrealized_pnl=unrealized_pnl(state),
        computed_at=state.latest_time,
        price=state.latest_price,
        window_points=state.window_points,
        volatility_window_s=state.volatility_window.total_seconds(),
        drawdown_window_s=state.drawdown_window.total_seconds(),
    )
