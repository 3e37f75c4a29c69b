import sys
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from analytics.window_state import WindowStateManager
from errors import DuplicateTickError, InvalidTickError, StaleTickError
from tests.fixtures import make_settings, make_tick, price_series


def _manager(**windows):
    return WindowStateManager(make_settings(windows=windows).windows)


def _apply(manager, ticks):
    state = None
    for tick in ticks:
        state = manager.update(tick)
    return state


def test_volatility_undefined_below_two_points():
    manager = _manager()
    state = manager.update(make_tick(100))
    assert state.volatility_pct() is None
    state = manager.update(make_tick(100, 1))
    assert state.volatility_pct() == 0.0


def test_volatility_population_stddev_over_mean():
    manager = _manager()
    state = _apply(manager, price_series([100, 101, 99, 102, 98]))
    # population variance 2, mean 100
    assert state.volatility_pct() == pytest.approx(1.41421356, rel=1e-6)
    assert state.window_points == 5


def test_volatility_window_evicts_by_tick_time():
    manager = _manager(volatility_s=30)
    manager.update(make_tick(100, 0))
    state = manager.update(make_tick(110, 30))
    # boundary entry at exactly now - window is kept
    assert state.window_points == 2
    state = manager.update(make_tick(120, 31))
    assert state.window_points == 2
    assert [p for _, p in state.prices] == [Decimal('110'), Decimal('120')]
    assert state.price_sum == Decimal('230')
    assert state.price_sq_sum == Decimal('110') ** 2 + Decimal('120') ** 2


def test_single_survivor_after_gap_has_no_volatility():
    manager = _manager(volatility_s=30)
    _apply(manager, price_series([100, 105, 95]))
    state = manager.update(make_tick(101, 120))
    assert state.window_points == 1
    assert state.volatility_pct() is None


def test_max_drawdown_peak_to_trough():
    manager = _manager()
    state = _apply(manager, price_series([100, 120, 90, 110]))
    assert state.max_drawdown_pct() == pytest.approx(-25.0)


def test_monotonic_increase_has_zero_drawdown():
    manager = _manager()
    state = _apply(manager, price_series([100, 100.5, 101, 103, 110, 111]))
    assert state.max_drawdown_pct() == 0.0


def test_drawdown_never_positive():
    manager = _manager()
    prices = [100, 97, 104, 88, 91, 120, 119, 60, 75]
    for tick in price_series(prices):
        state = manager.update(tick)
        assert state.max_drawdown_pct() <= 0.0


def test_drawdown_lookback_expires_old_peak():
    manager = _manager(drawdown_s=300)
    _apply(manager, price_series([120, 90]))
    state = manager.update(make_tick(100, 400))
    assert state.peak() == Decimal('100')
    assert state.max_drawdown_pct() == 0.0


def test_drawdown_uses_peak_of_its_time():
    manager = _manager(drawdown_s=10)
    manager.update(make_tick(200, 0))
    manager.update(make_tick(150, 5))
    # 200 has left the lookback; the 150 observation (-25%) has too
    state = manager.update(make_tick(140, 16))
    assert state.peak() == Decimal('140')
    assert state.max_drawdown_pct() == 0.0


def test_duplicate_tick_is_idempotent():
    manager = _manager()
    ticks = price_series([100, 101, 99])
    _apply(manager, ticks)
    before = manager.get('BTCUSDT').to_dict()
    with pytest.raises(DuplicateTickError):
        manager.update(ticks[-1])
    with pytest.raises(DuplicateTickError):
        manager.update(ticks[1])
    assert manager.get('BTCUSDT').to_dict() == before


def test_non_positive_price_rejected_without_state():
    manager = _manager()
    with pytest.raises(InvalidTickError):
        manager.update(make_tick(0))
    with pytest.raises(InvalidTickError):
        manager.update(make_tick(-5, 1))
    assert manager.get('BTCUSDT') is None


def test_negative_volume_rejected():
    manager = _manager()
    manager.update(make_tick(100))
    with pytest.raises(InvalidTickError):
        manager.update(make_tick(100, 1, volume='-1'))
    assert manager.get('BTCUSDT').window_points == 1


def test_stale_tick_excluded():
    manager = _manager(max_out_of_order_s=5)
    manager.update(make_tick(100, 10))
    with pytest.raises(StaleTickError) as excinfo:
        manager.update(make_tick(150, 4))
    assert excinfo.value.lag_s == pytest.approx(6.0)
    assert manager.get('BTCUSDT').window_points == 1


def test_late_tick_within_tolerance_matches_in_order():
    in_order = _manager()
    expected = _apply(in_order, price_series([100, 120, 90, 110]))

    shuffled = _manager()
    ticks = price_series([100, 120, 90, 110])
    state = _apply(shuffled, [ticks[0], ticks[1], ticks[3], ticks[2]])

    assert state.late_count == 1
    assert state.max_drawdown_pct() == pytest.approx(expected.max_drawdown_pct())
    assert state.volatility_pct() == pytest.approx(expected.volatility_pct())
    assert [p for _, p in state.prices] == [p for _, p in expected.prices]
    assert state.latest_price == Decimal('110')


def test_resync_restores_drifted_sums():
    manager = _manager()
    state = _apply(manager, price_series([100, 101, 99, 102, 98]))
    state.price_sum += Decimal('3')
    assert manager.resync(state) is True
    assert state.price_sum == Decimal('500')
    assert state.volatility_pct() == pytest.approx(1.41421356, rel=1e-6)
    assert manager.resync(state) is False


def test_periodic_resync_runs_on_interval():
    manager = _manager(resync_interval=4)
    state = _apply(manager, price_series([100, 101, 99]))
    state.price_sq_sum += Decimal('50')
    manager.update(make_tick(102, 3))
    assert manager.resync_count == 1
    assert state.variance() == Decimal('1.25')


def test_symbols_are_independent():
    manager = _manager()
    _apply(manager, price_series([100, 120, 90], symbol='AAA'))
    _apply(manager, price_series([50, 51, 52], symbol='BBB'))
    assert manager.get('AAA').max_drawdown_pct() == pytest.approx(-25.0)
    assert manager.get('BBB').max_drawdown_pct() == 0.0
    assert sorted(manager.symbols()) == ['AAA', 'BBB']
