import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from analytics.metrics_calculator import MetricsSnapshot
from analytics.window_state import Position
from api.alerts import AlertPublisher
from api.metrics import metrics, start_metrics_server
from config import config, load_settings
from config.settings import EngineSettings
from errors import ConfigurationError, InvalidTickError, PersistenceError
from ingest.feed import JsonLinesFeed
from ingest.persister import PersistenceWriter
from ingest.tick import Tick, parse_tick
from monitoring.async_utils import cancel_tasks, run_with_timeout
from monitoring.health import HealthStatus
from monitoring.logging_utils import setup_logging
from orchestration.persistence import PersistenceCoordinator
from orchestration.services import SymbolWorker, TickRouter
from replay.query_engine import ReplayQueryEngine, ReplayResult
from storage.base import EventStore
from storage.retention import RetentionPolicy


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_store(settings: EngineSettings) -> EventStore:
    if settings.storage_backend == 'memory':
        from storage.memory import InMemoryStore
        return InMemoryStore()
    from storage.timescale import TimescaleStore
    return TimescaleStore(settings.storage)


class MarketWatcher:
    """Wire the symbol workers, persistence, replay and retention into one engine."""

    def __init__(self, settings: Optional[EngineSettings] = None, store: Optional[EventStore] = None,
                 publisher: Optional[AlertPublisher] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings or load_settings(config)
        self.store = store or build_store(self.settings)
        self.health = HealthStatus()
        self.writer = PersistenceWriter(self.store, self.settings.persistence, self.health)
        self.publisher = publisher or AlertPublisher(self.settings.alerts.webhook_url)
        self.coordinator = PersistenceCoordinator(self.writer, self.publisher)

        self.workers: List[SymbolWorker] = [
            SymbolWorker(i, self.settings, self.coordinator)
            for i in range(self.settings.worker_count)
        ]
        self.router = TickRouter(self.workers)
        self.replay_engine = ReplayQueryEngine(
            self.store, self.settings.replay, self.settings.retention, clock=clock
        )
        self.retention = RetentionPolicy(self.store, self.settings.retention, clock=clock)

        self.accepting = False
        self.running = False
        self._worker_tasks: List[asyncio.Task] = []

    async def initialize(self):
        await self.store.initialize()
        positions: Dict[str, Position] = {}
        try:
            positions.update(await self.store.load_positions())
        except PersistenceError as exc:
            logger.warning("Position load failed, P&L unavailable until positions are set: %s", exc)
            self.health.mark_degraded('position_load')
        for symbol, raw in self.settings.positions.items():
            positions[symbol] = Position(entry_price=raw['entry_price'], quantity=raw['quantity'])
        for symbol, position in positions.items():
            self.router.worker_for(symbol).set_position(symbol, position)
        if positions:
            logger.info("Loaded positions for %d symbols", len(positions))

    async def start(self):
        if self.running:
            return
        await self.initialize()
        await self.writer.start()
        await self.retention.start()
        self._worker_tasks = [
            asyncio.create_task(worker.run(), name=worker.name) for worker in self.workers
        ]
        self.running = True
        self.accepting = True
        logger.info("Market watcher started with %d workers", len(self.workers))

    async def submit(self, event: Union[Tick, Dict[str, Any]]) -> bool:
        """Queue one tick (or raw inbound event) for its symbol's worker."""
        if not self.accepting:
            logger.warning("Tick rejected: engine is not accepting input")
            return False
        if isinstance(event, Tick):
            tick = event
        else:
            try:
                tick = parse_tick(event)
            except InvalidTickError as exc:
                metrics.record_rejected('malformed')
                logger.warning("Malformed tick event dropped: %s", exc)
                return False
        await self.router.route(tick)
        return True

    async def submit_many(self, events: Iterable[Union[Tick, Dict[str, Any]]]) -> int:
        accepted = 0
        for event in events:
            if await self.submit(event):
                accepted += 1
        return accepted

    async def drain(self) -> None:
        """Wait until every queued tick has been fully processed."""
        await self.router.join()

    async def run_feed(self, feed) -> None:
        async for event in feed:
            if not self.accepting:
                break
            await self.submit(event)

    def set_position(self, symbol: str, entry_price, quantity) -> None:
        position = None
        if entry_price is not None and quantity is not None:
            position = Position(entry_price=Decimal(str(entry_price)), quantity=Decimal(str(quantity)))
        self.router.worker_for(symbol).set_position(symbol, position)

    def latest_snapshot(self, symbol: str) -> Optional[MetricsSnapshot]:
        return self.router.worker_for(symbol).latest.get(symbol)

    def reload(self, source: Any = None) -> EngineSettings:
        """Validate a fresh configuration and swap it in; the old one stays on error."""
        if source is None:
            config.reload()
            source = config
        new_settings = load_settings(source)
        self.settings = new_settings
        for worker in self.workers:
            worker.apply_settings(new_settings)
        logger.info("Configuration reloaded")
        return new_settings

    async def replay(self, symbol: str, center_time: datetime, window_seconds: float) -> ReplayResult:
        return await self.replay_engine.replay(symbol, center_time, window_seconds)

    async def replay_alert(self, alert_id: str, window_seconds: float) -> ReplayResult:
        return await self.replay_engine.replay_alert(alert_id, window_seconds)

    def health_status(self) -> Dict:
        rejected: Dict[str, int] = {}
        for worker in self.workers:
            for reason, count in worker.rejected.items():
                rejected[reason] = rejected.get(reason, 0) + count
        return self.health.to_dict({
            'accepting': self.accepting,
            'persistence': self.writer.stats(),
            'rejected_ticks': rejected,
            'queued_ticks': sum(w.queue.qsize() for w in self.workers),
            'alert_slots': [slot for w in self.workers for slot in w.alerts.get_slots(active_only=True)],
        })

    async def stop(self):
        if not self.running:
            return
        self.accepting = False
        timeout = self.settings.shutdown_timeout_s
        await run_with_timeout(self.drain(), timeout, "Worker queue drain")
        await cancel_tasks(self._worker_tasks)
        self._worker_tasks = []
        unprocessed = 0
        for worker in self.workers:
            for tick in worker.take_pending():
                self.coordinator.archive_tick(tick)
                unprocessed += 1
        if unprocessed:
            logger.warning("Archived %d queued ticks that were not processed before shutdown", unprocessed)
        await self.writer.stop(timeout=timeout)
        await self.publisher.drain(timeout=timeout)
        await self.retention.stop()
        await self.store.close()
        self.running = False
        logger.info("Market watcher stopped (%s)", self.health.status)


async def main():
    settings = load_settings(config)
    watcher = MarketWatcher(settings)

    monitoring_cfg = config.get('monitoring') or {}
    if monitoring_cfg.get('prometheus_port'):
        start_metrics_server(int(monitoring_cfg['prometheus_port']))

    feed_cfg = config.get('feed') or {}
    feed = JsonLinesFeed(feed_cfg.get('path'))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, feed.stop)
        except NotImplementedError:
            pass

    await watcher.start()
    try:
        await watcher.run_feed(feed)
    finally:
        await watcher.stop()

if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(main())
    except ConfigurationError as exc:
        logger.critical("Refusing to start: %s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("System shutting down on interrupt")
