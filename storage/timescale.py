import json
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import asyncpg

from alerting.types import AlertMetric, AlertRecord, Severity
from analytics.metrics_calculator import MetricsSnapshot
from analytics.window_state import Position
from errors import PersistenceError
from ingest.tick import Tick
from storage.base import EventStore


logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / 'schema.sql'

# Failures that mean "the store is unavailable", as opposed to programming errors
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, ConnectionError)


def _numeric(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _rows_affected(status: str) -> int:
    try:
        return int(status.split()[-1])
    except (AttributeError, ValueError, IndexError):
        return 0


class TimescaleStore(EventStore):
    def __init__(self, storage_cfg: Mapping[str, Any]):
        self.storage_cfg = dict(storage_cfg or {})
        self.pool: Optional[asyncpg.pool.Pool] = None

    async def initialize(self) -> None:
        if self.pool is not None:
            return
        cfg = self.storage_cfg
        try:
            if cfg.get('dsn'):
                self.pool = await asyncpg.create_pool(
                    dsn=cfg['dsn'],
                    min_size=int(cfg.get('min_pool_size', 2)),
                    max_size=int(cfg.get('max_pool_size', 10)),
                )
            else:
                self.pool = await asyncpg.create_pool(
                    host=cfg.get('host'),
                    port=int(cfg.get('port', 5432)),
                    database=cfg.get('database'),
                    user=cfg.get('user'),
                    password=cfg.get('password'),
                    min_size=int(cfg.get('min_pool_size', 2)),
                    max_size=int(cfg.get('max_pool_size', 10)),
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"Unable to open TimescaleDB pool: {exc}") from exc
        if cfg.get('apply_schema'):
            await self.apply_schema()

    async def apply_schema(self) -> None:
        sql = SCHEMA_PATH.read_text()
        async with self.pool.acquire() as conn:
            await conn.execute(sql)
        logger.info("Applied schema from %s", SCHEMA_PATH)

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> asyncpg.pool.Pool:
        if self.pool is None:
            raise PersistenceError("TimescaleStore used before initialize()")
        return self.pool

    async def insert_ticks(self, ticks: Sequence[Tick]) -> int:
        if not ticks:
            return 0
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                # Single statement: the status line counts only rows that survived ON CONFLICT
                status = await conn.execute(
                    '''INSERT INTO market_events (time, symbol, price, volume, source)
                       SELECT * FROM unnest($1::timestamptz[], $2::text[], $3::numeric[],
                                            $4::numeric[], $5::text[])
                       ON CONFLICT (symbol, time) DO NOTHING''',
                    [t.time for t in ticks],
                    [t.symbol for t in ticks],
                    [t.price for t in ticks],
                    [t.volume for t in ticks],
                    [t.source for t in ticks],
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"tick batch insert failed: {exc}") from exc
        return _rows_affected(status)

    async def insert_alert(self, record: AlertRecord) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    '''INSERT INTO alert_logs
                       (alert_id, symbol, metric, threshold, trigger_value, severity, created_at, details)
                       VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8::jsonb)
                       ON CONFLICT (alert_id) DO NOTHING''',
                    record.alert_id,
                    record.symbol,
                    record.metric.value,
                    _numeric(record.threshold),
                    _numeric(record.trigger_value),
                    record.severity.value,
                    record.created_at,
                    json.dumps(record.details, default=str),
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"alert insert failed for {record.alert_id}: {exc}") from exc

    async def upsert_snapshots(self, snapshots: Sequence[MetricsSnapshot]) -> None:
        if not snapshots:
            return
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.executemany(
                    '''INSERT INTO metrics_latest
                       (symbol, volatility_pct, max_drawdown_pct, unrealized_pnl, updated_at)
                       VALUES ($1, $2, $3, $4, $5)
                       ON CONFLICT (symbol) DO UPDATE SET
                           volatility_pct = EXCLUDED.volatility_pct,
                           max_drawdown_pct = EXCLUDED.max_drawdown_pct,
                           unrealized_pnl = EXCLUDED.unrealized_pnl,
                           updated_at = EXCLUDED.updated_at''',
                    [
                        (
                            s.symbol,
                            _numeric(s.volatility_pct),
                            _numeric(s.max_drawdown_pct),
                            s.unrealized_pnl,
                            s.computed_at,
                        )
                        for s in snapshots
                    ]
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"metrics_latest upsert failed: {exc}") from exc

    async def fetch_ticks(self, symbol: str, start: datetime, end: datetime) -> List[Tick]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT time, symbol, price, volume, source
                    FROM market_events
                    WHERE symbol = $1 AND time >= $2 AND time <= $3
                    ORDER BY time
                    """,
                    symbol,
                    start,
                    end,
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"replay scan failed for {symbol}: {exc}") from exc
        return [
            Tick(
                symbol=r['symbol'],
                time=r['time'],
                price=r['price'],
                volume=r['volume'],
                source=r['source'],
            )
            for r in rows
        ]

    async def earliest_tick_time(self, symbol: str) -> Optional[datetime]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetchval(
                    'SELECT MIN(time) FROM market_events WHERE symbol = $1',
                    symbol,
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"retention lookup failed for {symbol}: {exc}") from exc

    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    '''SELECT alert_id, symbol, metric, threshold, trigger_value, severity, created_at, details
                       FROM alert_logs WHERE alert_id = $1::uuid''',
                    str(alert_id),
                )
        except asyncpg.DataError:
            # Not a UUID, so it cannot name a stored alert
            return None
        except STORE_ERRORS as exc:
            raise PersistenceError(f"alert lookup failed for {alert_id}: {exc}") from exc
        if row is None:
            return None
        details = row['details']
        if isinstance(details, str):
            details = json.loads(details)
        return AlertRecord(
            alert_id=str(row['alert_id']),
            symbol=row['symbol'],
            metric=AlertMetric(row['metric']),
            threshold=float(row['threshold']),
            trigger_value=float(row['trigger_value']),
            severity=Severity(row['severity']),
            created_at=row['created_at'],
            details=details or {},
        )

    async def purge_ticks_before(self, cutoff: datetime) -> int:
        return await self._purge('DELETE FROM market_events WHERE time < $1', cutoff)

    async def purge_alerts_before(self, cutoff: datetime) -> int:
        return await self._purge('DELETE FROM alert_logs WHERE created_at < $1', cutoff)

    async def _purge(self, sql: str, cutoff: datetime) -> int:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                status = await conn.execute(sql, cutoff)
        except STORE_ERRORS as exc:
            raise PersistenceError(f"retention purge failed: {exc}") from exc
        return _rows_affected(status)

    async def load_positions(self) -> Dict[str, Position]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT symbol,
                           SUM(quantity) AS quantity,
                           SUM(quantity * entry_price) / NULLIF(SUM(quantity), 0) AS entry_price
                    FROM portfolio_positions
                    GROUP BY symbol
                    """
                )
        except STORE_ERRORS as exc:
            raise PersistenceError(f"position load failed: {exc}") from exc
        positions = {}
        for r in rows:
            if r['entry_price'] is None or r['quantity'] is None:
                continue
            positions[r['symbol']] = Position(entry_price=r['entry_price'], quantity=r['quantity'])
        return positions
