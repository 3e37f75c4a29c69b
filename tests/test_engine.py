import asyncio
import sys
from datetime import timedelta
from decimal import Decimal

sys.path.insert(0, '.')

import pytest

from alerting.types import AlertMetric, RearmPolicy
from api.alerts import AlertPublisher
from errors import ConfigurationError
from main import MarketWatcher
from storage.memory import InMemoryStore
from tests.fixtures import FOREVER, T0, FlakyStore, make_config, make_settings, make_tick, store_ticks


def _event(price, seconds: float, symbol: str = 'BTCUSDT'):
    return {
        'time': (T0 + timedelta(seconds=seconds)).isoformat(),
        'symbol': symbol,
        'price': str(price),
        'volume': '0.5',
        'source': 'test',
    }


def _watcher(store=None, **overrides):
    publisher = AlertPublisher(None)
    published = []
    publisher.subscribe_alerts(published.append)
    watcher = MarketWatcher(
        make_settings(**overrides),
        store=store or InMemoryStore(),
        publisher=publisher,
        clock=lambda: T0 + timedelta(hours=1),
    )
    return watcher, published


async def _feed(watcher, events):
    await watcher.start()
    await watcher.submit_many(events)
    await watcher.drain()
    await watcher.publisher.drain(timeout=1)


def test_volatility_alert_fires_once_then_cools_down():
    watcher, published = _watcher()

    async def _go():
        await _feed(watcher, [_event(100, 0), _event(111, 1)])
        first = watcher.latest_snapshot('BTCUSDT')
        await _feed(watcher, [_event(89, 10)])
        second = watcher.latest_snapshot('BTCUSDT')
        await watcher.stop()
        return first, second

    first, second = asyncio.run(_go())
    assert first.volatility_pct == pytest.approx(5.2133, abs=1e-3)
    assert second.volatility_pct == pytest.approx(8.9815, abs=1e-3)

    volatility = [p for p in published if p['metric'] == AlertMetric.VOLATILITY.value]
    assert len(volatility) == 1
    assert volatility[0]['severity'] == 'warning'
    assert volatility[0]['created_at'] == (T0 + timedelta(seconds=1)).isoformat()

    # 111 -> 89 is a separate drawdown breach
    drawdown = [p for p in published if p['metric'] == AlertMetric.DRAWDOWN.value]
    assert len(drawdown) == 1
    assert drawdown[0]['severity'] == 'critical'

    assert len(watcher.store.alerts) == 2
    assert len(store_ticks(watcher.store, 'BTCUSDT')) == 3


def test_snapshot_persisted_as_latest_per_symbol():
    watcher, _ = _watcher()

    async def _go():
        await _feed(watcher, [_event(100, 0), _event(101, 1), _event(50, 2, symbol='ETHUSDT')])
        await watcher.stop()

    asyncio.run(_go())
    assert watcher.store.snapshots['BTCUSDT'].price == Decimal('101')
    assert watcher.store.snapshots['ETHUSDT'].volatility_pct is None


def test_malformed_event_rejected_before_routing():
    watcher, _ = _watcher()

    async def _go():
        await watcher.start()
        accepted = await watcher.submit({'symbol': 'BTCUSDT', 'price': 'abc', 'time': T0.isoformat()})
        missing = await watcher.submit({'price': '100', 'time': T0.isoformat()})
        await watcher.stop()
        return accepted, missing

    assert asyncio.run(_go()) == (False, False)
    assert watcher.store.ticks == {}


def test_invalid_price_archived_but_excluded():
    watcher, published = _watcher()

    async def _go():
        await _feed(watcher, [_event(100, 0), _event(-3, 1), _event(100, 2)])
        status = watcher.health_status()
        await watcher.stop()
        return status

    status = asyncio.run(_go())
    assert status['rejected_ticks']['invalid'] == 1
    assert watcher.latest_snapshot('BTCUSDT').window_points == 2
    assert watcher.latest_snapshot('BTCUSDT').volatility_pct == 0.0
    assert len(store_ticks(watcher.store, 'BTCUSDT')) == 3
    assert published == []


def test_duplicate_and_stale_ticks_counted():
    watcher, _ = _watcher()

    async def _go():
        await _feed(watcher, [_event(100, 10), _event(100, 10), _event(120, 1)])
        status = watcher.health_status()
        await watcher.stop()
        return status

    status = asyncio.run(_go())
    assert status['rejected_ticks']['duplicate'] == 1
    assert status['rejected_ticks']['stale'] == 1
    assert watcher.latest_snapshot('BTCUSDT').window_points == 1


def test_symbols_do_not_share_state():
    watcher, published = _watcher()

    async def _go():
        events = []
        for i, (a, b) in enumerate(zip([100, 111, 89], [50, 50, 50])):
            events.append(_event(a, i, symbol='AAA'))
            events.append(_event(b, i, symbol='BBB'))
        await _feed(watcher, events)
        await watcher.stop()

    asyncio.run(_go())
    assert watcher.latest_snapshot('BBB').volatility_pct == 0.0
    assert watcher.latest_snapshot('BBB').max_drawdown_pct == 0.0
    assert watcher.latest_snapshot('AAA').max_drawdown_pct < -19
    assert {p['symbol'] for p in published} == {'AAA'}


def test_alert_store_outage_publishes_live_only():
    store = FlakyStore(alert_failures=FOREVER)
    watcher, published = _watcher(store=store)

    async def _go():
        await _feed(watcher, [_event(100, 0), _event(111, 1)])
        status = watcher.health_status()
        await watcher.stop()
        return status

    status = asyncio.run(_go())
    assert len(published) == 1
    assert published[0]['details']['persisted'] is False
    assert status['status'] == 'degraded'
    assert status['persistence']['unpersisted_alerts'] == 1
    # live metrics keep flowing while alert persistence is down
    assert watcher.latest_snapshot('BTCUSDT').volatility_pct > 5


def test_submit_after_stop_is_refused():
    watcher, _ = _watcher()

    async def _go():
        await watcher.start()
        await watcher.stop()
        return await watcher.submit(make_tick(100))

    assert asyncio.run(_go()) is False


def test_invalid_reload_keeps_running_settings():
    watcher, _ = _watcher()
    original = watcher.settings
    bad = make_config(alerts={'rearm_policy': 'sometimes'})
    with pytest.raises(ConfigurationError):
        watcher.reload(bad)
    assert watcher.settings is original

    good = make_config(alerts={'rearm_policy': 'time', 'cooldown_s': 60})
    watcher.reload(good)
    assert watcher.settings.alerts.rearm_policy is RearmPolicy.TIME
    for worker in watcher.workers:
        assert worker.alerts.settings.cooldown_s == 60


def test_configured_position_yields_pnl():
    watcher, published = _watcher(positions={'BTCUSDT': {'entry_price': 100, 'quantity': 2}})

    async def _go():
        await _feed(watcher, [_event(100, 0), _event(100.5, 1)])
        await watcher.stop()

    asyncio.run(_go())
    assert watcher.latest_snapshot('BTCUSDT').unrealized_pnl == Decimal('1.0')
    assert watcher.latest_snapshot('ETHUSDT') is None


def test_set_position_at_runtime():
    watcher, _ = _watcher()

    async def _go():
        await watcher.start()
        watcher.set_position('BTCUSDT', 110, -1)
        await watcher.submit_many([_event(100, 0)])
        await watcher.drain()
        await watcher.stop()

    asyncio.run(_go())
    assert watcher.latest_snapshot('BTCUSDT').unrealized_pnl == Decimal('10')


def test_replay_after_ingest():
    watcher, _ = _watcher()

    async def _go():
        await _feed(watcher, [_event(100 + i, i * 5) for i in range(6)])
        await watcher.writer.flush_all(drain=True)
        result = await watcher.replay('BTCUSDT', T0 + timedelta(seconds=10), 5)
        await watcher.stop()
        return result

    result = asyncio.run(_go())
    assert [str(t.price) for t in result.ticks] == ['101', '102', '103']


def test_shutdown_keeps_alert_interrupted_mid_retry():
    store = FlakyStore(alert_failures=FOREVER)
    watcher, published = _watcher(
        store=store,
        engine={'shutdown_timeout_s': 0.3},
        persistence={'alert_max_attempts': 10, 'alert_retry_base_s': 0.2, 'alert_retry_max_s': 0.2},
    )

    async def _go():
        await watcher.start()
        await watcher.submit_many([_event(100, 0), _event(111, 1), _event(112, 2)])
        await watcher.stop()

    asyncio.run(_go())
    assert store.alert_attempts >= 1
    assert store.alerts == {}
    assert len(watcher.writer.unpersisted_alerts) == 1
    assert len(published) == 1
    assert published[0]['alert_id'] == watcher.writer.unpersisted_alerts[0].alert_id
    assert published[0]['details']['persisted'] is False
    # 112@2 was still queued when the worker was cancelled
    assert len(store_ticks(store, 'BTCUSDT')) == 3
    assert watcher.health.degraded


def test_health_reports_active_alert_slots():
    watcher, _ = _watcher()

    async def _go():
        await _feed(watcher, [_event(100, 0), _event(111, 1), _event(50, 0, symbol='ETHUSDT')])
        status = watcher.health_status()
        await watcher.stop()
        return status

    slots = asyncio.run(_go())['alert_slots']
    assert [(s['symbol'], s['metric'], s['state']) for s in slots] == [('BTCUSDT', 'volatility', 'cooldown')]
    assert slots[0]['last_severity'] == 'warning'


def test_alert_reports_window_its_symbol_was_built_with():
    watcher, published = _watcher()

    async def _go():
        await _feed(watcher, [_event(100, 0, symbol='AAA')])
        watcher.reload(make_config(windows={'volatility_s': 60}))
        await _feed(watcher, [_event(111, 1, symbol='AAA'), _event(100, 0, symbol='BBB'), _event(111, 1, symbol='BBB')])
        await watcher.stop()

    asyncio.run(_go())
    windows = {p['symbol']: p['details']['window_seconds'] for p in published if p['metric'] == 'volatility'}
    assert windows == {'AAA': 30.0, 'BBB': 60.0}
