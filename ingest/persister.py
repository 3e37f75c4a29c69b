import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional

from alerting.types import AlertRecord
from analytics.metrics_calculator import MetricsSnapshot
from api.metrics import metrics
from config.settings import PersistenceSettings
from errors import PersistenceError
from ingest.tick import Tick
from monitoring.health import HealthStatus
from storage.base import EventStore


logger = logging.getLogger(__name__)

TICK_ARCHIVAL = 'tick_archival'
ALERT_PERSISTENCE = 'alert_persistence'
SNAPSHOT_PERSISTENCE = 'snapshot_persistence'


@dataclass
class TickBatch:
    ticks: List[Tick]
    attempts: int = 0


class PersistenceWriter:
    """Batches raw ticks into the durable store and writes alerts synchronously.

    Tick archival is best effort: appends never await the store, sealed
    batches queue up to ``max_pending_batches`` (oldest dropped first) and a
    batch is dropped after ``tick_max_retries`` failed retries. Alert writes
    are awaited one by one with exponential backoff up to
    ``alert_max_attempts``; an alert that still fails is kept for
    reconciliation and reported back as unpersisted.
    """

    def __init__(self, store: EventStore, settings: PersistenceSettings,
                 health: Optional[HealthStatus] = None):
        self.store = store
        self.settings = settings
        self.health = health or HealthStatus()

        self.tick_buffer: List[Tick] = []
        self.pending_batches: Deque[TickBatch] = deque()
        self.snapshot_buffer: Dict[str, MetricsSnapshot] = {}
        self.unpersisted_alerts: List[AlertRecord] = []

        self.dropped_batches = 0
        self.running = False
        self._auto_task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._flush_lock = asyncio.Lock()

    # -- ticks -------------------------------------------------------------

    def append_tick(self, tick: Tick) -> None:
        self.tick_buffer.append(tick)
        if len(self.tick_buffer) >= self.settings.batch_size:
            self._seal()

    def append_ticks(self, batch: Iterable[Tick]) -> None:
        for tick in batch:
            self.append_tick(tick)

    def _seal(self) -> None:
        if not self.tick_buffer:
            return
        batch = TickBatch(self.tick_buffer)
        self.tick_buffer = []
        if len(self.pending_batches) >= self.settings.max_pending_batches:
            dropped = self.pending_batches.popleft()
            self.dropped_batches += 1
            metrics.record_batch_dropped('queue_full')
            logger.warning(
                "Tick archival queue full (%d batches); dropped oldest batch of %d ticks",
                self.settings.max_pending_batches,
                len(dropped.ticks),
            )
        self.pending_batches.append(batch)
        metrics.update_queue_depth('tick_batches', len(self.pending_batches))
        self._wakeup.set()

    async def flush_ticks(self, drain: bool = False) -> None:
        """Write pending batches in order.

        Without ``drain`` a failing batch stays at the head and is retried on
        the next cycle. With ``drain`` retries run back to back until every
        batch is written or dropped.
        """
        self._seal()
        while self.pending_batches:
            batch = self.pending_batches[0]
            if await self._write_batch(batch):
                self.pending_batches.popleft()
                continue
            if batch.attempts > self.settings.tick_max_retries:
                self.pending_batches.popleft()
                self.dropped_batches += 1
                metrics.record_batch_dropped('retries_exhausted')
                logger.error(
                    "Dropping tick batch of %d ticks after %d failed attempts",
                    len(batch.ticks),
                    batch.attempts,
                )
                continue
            if not drain:
                break
        metrics.update_queue_depth('tick_batches', len(self.pending_batches))

    async def _write_batch(self, batch: TickBatch) -> bool:
        try:
            written = await self.store.insert_ticks(batch.ticks)
        except PersistenceError as exc:
            batch.attempts += 1
            metrics.record_persistence_failure('ticks')
            self.health.mark_degraded(TICK_ARCHIVAL)
            logger.warning(
                "Tick batch write failed (attempt %d of %d): %s",
                batch.attempts,
                self.settings.tick_max_retries + 1,
                exc,
            )
            return False
        metrics.record_ticks_archived(written)
        self.health.clear(TICK_ARCHIVAL)
        return True

    # -- snapshots ---------------------------------------------------------

    def append_snapshot(self, snapshot: MetricsSnapshot) -> None:
        self.snapshot_buffer[snapshot.symbol] = snapshot

    async def flush_snapshots(self) -> None:
        if not self.snapshot_buffer:
            return
        snapshots = list(self.snapshot_buffer.values())
        self.snapshot_buffer.clear()
        try:
            await self.store.upsert_snapshots(snapshots)
        except PersistenceError as exc:
            metrics.record_persistence_failure('snapshots')
            self.health.mark_degraded(SNAPSHOT_PERSISTENCE)
            logger.warning("Snapshot upsert failed: %s", exc)
            for snapshot in snapshots:
                self.snapshot_buffer.setdefault(snapshot.symbol, snapshot)
            return
        self.health.clear(SNAPSHOT_PERSISTENCE)

    # -- alerts ------------------------------------------------------------

    def _alert_backoff(self, attempt: int) -> float:
        delay = self.settings.alert_retry_base_s * (2 ** (attempt - 1))
        return min(delay, self.settings.alert_retry_max_s)

    async def append_alert(self, record: AlertRecord) -> bool:
        """Write one alert immediately. Returns False once the attempt cap is hit."""
        attempts = self.settings.alert_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self.store.insert_alert(record)
            except PersistenceError as exc:
                metrics.record_persistence_failure('alerts')
                logger.warning(
                    "Alert %s write failed (attempt %d of %d): %s",
                    record.alert_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._alert_backoff(attempt))
                continue
            if not self.unpersisted_alerts:
                self.health.clear(ALERT_PERSISTENCE)
            return True

        logger.error(
            "Alert %s for %s/%s not persisted after %d attempts; flagged for reconciliation",
            record.alert_id,
            record.symbol,
            record.metric.value,
            attempts,
        )
        self.defer_alert(record)
        return False

    def defer_alert(self, record: AlertRecord) -> None:
        """Hold an alert whose write was abandoned until the next reconciliation pass."""
        if record not in self.unpersisted_alerts:
            self.unpersisted_alerts.append(record)
        self.health.mark_degraded(ALERT_PERSISTENCE)
        metrics.record_alert_unpersisted()

    async def reconcile_unpersisted(self) -> int:
        if not self.unpersisted_alerts:
            return 0
        remaining: List[AlertRecord] = []
        written = 0
        for record in self.unpersisted_alerts:
            try:
                await self.store.insert_alert(record)
            except PersistenceError as exc:
                logger.debug("Reconciliation of alert %s still failing: %s", record.alert_id, exc)
                remaining.append(record)
                continue
            written += 1
        self.unpersisted_alerts = remaining
        if written:
            logger.info("Reconciled %d unpersisted alerts", written)
        if not remaining:
            self.health.clear(ALERT_PERSISTENCE)
        return written

    # -- lifecycle ---------------------------------------------------------

    async def flush_all(self, drain: bool = False) -> None:
        async with self._flush_lock:
            await self.flush_ticks(drain=drain)
            await self.flush_snapshots()
            await self.reconcile_unpersisted()

    async def auto_flush_loop(self):
        self.running = True
        while self.running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.settings.flush_interval_s)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            self._wakeup.clear()
            try:
                await self.flush_all()
            except asyncio.CancelledError:
                break

    async def start(self):
        if self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop())

    async def stop(self, timeout: Optional[float] = None):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        try:
            await asyncio.wait_for(self.flush_all(drain=True), timeout=timeout)
        except asyncio.TimeoutError:
            pending = sum(len(b.ticks) for b in self.pending_batches) + len(self.tick_buffer)
            logger.error("Shutdown flush timed out with %d ticks unwritten", pending)

    def stats(self) -> Dict:
        return {
            'buffered_ticks': len(self.tick_buffer),
            'pending_batches': len(self.pending_batches),
            'dropped_batches': self.dropped_batches,
            'unpersisted_alerts': len(self.unpersisted_alerts),
        }
