import copy
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from alerting.types import AlertRecord
from analytics.metrics_calculator import MetricsSnapshot
from config.settings import EngineSettings, load_settings
from errors import PersistenceError
from ingest.tick import Tick
from storage.memory import InMemoryStore


T0 = datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)

BASE_CONFIG: Dict = {
    'engine': {
        'worker_count': 2,
        'queue_maxsize': 1000,
        'compute_every_n_ticks': 1,
        'shutdown_timeout_s': 5,
    },
    'windows': {
        'volatility_s': 30,
        'drawdown_s': 300,
        'max_out_of_order_s': 5,
        'resync_interval': 1000,
        'resync_tolerance': 1e-9,
    },
    'alerts': {
        'cooldown_s': 300,
        'rearm_policy': 'hysteresis',
        'thresholds': {
            'volatility': {'warning': 5.0, 'critical': 10.0},
            'drawdown': {'warning': -5.0, 'critical': -10.0},
            'pnl': {'warning': -1000, 'critical': -5000},
        },
    },
    'persistence': {
        'batch_size': 100,
        'flush_interval_s': 0.05,
        'max_pending_batches': 10,
        'tick_max_retries': 2,
        'alert_max_attempts': 3,
        'alert_retry_base_s': 0,
        'alert_retry_max_s': 0,
    },
    'storage': {'backend': 'memory'},
    'retention': {'ticks_days': 7, 'alerts_days': 30, 'interval_s': 3600},
    'replay': {'query_timeout_s': 2, 'max_window_s': 86400},
}


def make_config(**overrides) -> Dict:
    """BASE_CONFIG with per-section overrides merged one level deep."""
    cfg = copy.deepcopy(BASE_CONFIG)
    for section, values in overrides.items():
        if isinstance(values, dict) and isinstance(cfg.get(section), dict):
            cfg[section].update(values)
        else:
            cfg[section] = values
    return cfg


def make_settings(**overrides) -> EngineSettings:
    return load_settings(make_config(**overrides))


def make_tick(price, seconds: float = 0.0, symbol: str = 'BTCUSDT', volume='1',
              start: datetime = T0) -> Tick:
    return Tick(
        symbol=symbol,
        time=start + timedelta(seconds=seconds),
        price=Decimal(str(price)),
        volume=Decimal(str(volume)),
        source='test',
    )


def price_series(prices: Iterable, symbol: str = 'BTCUSDT', spacing_s: float = 1.0,
                 start: datetime = T0) -> List[Tick]:
    return [make_tick(p, i * spacing_s, symbol=symbol, start=start) for i, p in enumerate(prices)]


def make_snapshot(seconds: float = 0.0, volatility=None, drawdown: float = 0.0, pnl=None,
                  symbol: str = 'BTCUSDT') -> MetricsSnapshot:
    return MetricsSnapshot(
        symbol=symbol,
        volatility_pct=volatility,
        max_drawdown_pct=drawdown,
        unrealized_pnl=Decimal(str(pnl)) if pnl is not None else None,
        computed_at=T0 + timedelta(seconds=seconds),
        price=Decimal('100'),
        window_points=10,
    )


class FlakyStore(InMemoryStore):
    """InMemoryStore whose writes fail a set number of times (or forever)."""

    def __init__(self, tick_failures: int = 0, alert_failures: int = 0,
                 snapshot_failures: int = 0):
        super().__init__()
        self.tick_failures = tick_failures
        self.alert_failures = alert_failures
        self.snapshot_failures = snapshot_failures
        self.tick_attempts = 0
        self.alert_attempts = 0

    async def insert_ticks(self, ticks):
        self.tick_attempts += 1
        if self.tick_failures:
            self.tick_failures -= 1
            raise PersistenceError("tick store unavailable")
        return await super().insert_ticks(ticks)

    async def insert_alert(self, record: AlertRecord):
        self.alert_attempts += 1
        if self.alert_failures:
            self.alert_failures -= 1
            raise PersistenceError("alert store unavailable")
        await super().insert_alert(record)

    async def upsert_snapshots(self, snapshots):
        if self.snapshot_failures:
            self.snapshot_failures -= 1
            raise PersistenceError("snapshot store unavailable")
        await super().upsert_snapshots(snapshots)


FOREVER = 10 ** 9


def store_ticks(store: InMemoryStore, symbol: str) -> List[Tick]:
    book = store.ticks.get(symbol) or {}
    return list(book.values())


def alerts_for(records: Iterable[AlertRecord], metric=None, symbol: Optional[str] = None) -> List[AlertRecord]:
    return [
        r for r in records
        if (metric is None or r.metric is metric) and (symbol is None or r.symbol == symbol)
    ]
