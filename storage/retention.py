import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from api.metrics import metrics
from config.settings import RetentionSettings
from errors import PersistenceError
from storage.base import EventStore


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetentionPolicy:
    """Background time-based deletion of ticks and alerts.

    Ticks and alerts age out on independent horizons. Retention is never
    enforced per write; it runs every ``interval_s`` and on demand.
    """

    def __init__(self, store: EventStore, settings: RetentionSettings,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def tick_horizon(self) -> timedelta:
        return timedelta(days=self.settings.ticks_days)

    @property
    def alert_horizon(self) -> timedelta:
        return timedelta(days=self.settings.alerts_days)

    def tick_cutoff(self) -> datetime:
        return self.clock() - self.tick_horizon

    def alert_cutoff(self) -> datetime:
        return self.clock() - self.alert_horizon

    async def run_once(self) -> Dict[str, int]:
        ticks = await self.store.purge_ticks_before(self.tick_cutoff())
        alerts = await self.store.purge_alerts_before(self.alert_cutoff())
        metrics.record_retention_purge('market_events', ticks)
        metrics.record_retention_purge('alert_logs', alerts)
        if ticks or alerts:
            logger.info("Retention removed %d ticks and %d alerts", ticks, alerts)
        return {'ticks': ticks, 'alerts': alerts}

    async def _loop(self):
        self.running = True
        while self.running:
            try:
                await self.run_once()
            except PersistenceError as exc:
                logger.error("Retention pass failed: %s", exc)
            try:
                await asyncio.sleep(self.settings.interval_s)
            except asyncio.CancelledError:
                break

    async def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
