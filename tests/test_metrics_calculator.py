import sys
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from analytics.metrics_calculator import compute
from analytics.window_state import Position, WindowStateManager
from tests.fixtures import T0, make_settings, make_tick, price_series


def _state(prices, position=None):
    manager = WindowStateManager(make_settings().windows)
    if position is not None:
        manager.set_position('BTCUSDT', position)
    state = None
    for tick in price_series(prices):
        state = manager.update(tick)
    return state


def test_snapshot_fields():
    snapshot = compute(_state([100, 120, 90, 110]))
    assert snapshot.symbol == 'BTCUSDT'
    assert snapshot.max_drawdown_pct == pytest.approx(-25.0)
    assert snapshot.volatility_pct is not None and snapshot.volatility_pct > 0
    assert snapshot.unrealized_pnl is None
    assert snapshot.price == Decimal('110')
    assert snapshot.computed_at == T0.replace(second=3)
    assert snapshot.window_points == 4


def test_single_tick_snapshot_has_null_volatility():
    snapshot = compute(_state([100]))
    assert snapshot.volatility_pct is None
    assert snapshot.max_drawdown_pct == 0.0


def test_unrealized_pnl_is_exact_decimal():
    position = Position(entry_price=Decimal('100.10'), quantity=Decimal('3'))
    snapshot = compute(_state([100.2, 100.3], position=position))
    assert isinstance(snapshot.unrealized_pnl, Decimal)
    assert snapshot.unrealized_pnl == Decimal('0.60')


def test_short_position_loses_when_price_rises():
    position = Position(entry_price=Decimal('50'), quantity=Decimal('-10'))
    snapshot = compute(_state([50, 55], position=position))
    assert snapshot.unrealized_pnl == Decimal('-50')


def test_position_cleared_means_no_pnl():
    manager = WindowStateManager(make_settings().windows)
    manager.set_position('BTCUSDT', Position(Decimal('10'), Decimal('1')))
    manager.update(make_tick(12))
    manager.set_position('BTCUSDT', None)
    assert compute(manager.get('BTCUSDT')).unrealized_pnl is None


def test_to_dict_payload():
    position = Position(entry_price=Decimal('100'), quantity=Decimal('2'))
    payload = compute(_state([100, 101], position=position)).to_dict()
    assert set(payload) == {'symbol', 'volatility_pct', 'max_drawdown_pct', 'unrealized_pnl', 'timestamp'}
    assert payload['unrealized_pnl'] == '2'
    assert payload['timestamp'].startswith('2026-03-02T14:30:01')
