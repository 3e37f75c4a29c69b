import asyncio
import logging
import time
import zlib
from typing import Dict, List, Optional, TYPE_CHECKING

from alerting.alert_engine import AlertEngine
from analytics.metrics_calculator import MetricsSnapshot, compute
from analytics.window_state import Position, WindowStateManager
from api.metrics import metrics
from config.settings import EngineSettings
from errors import DuplicateTickError, InvalidTickError, StaleTickError
from ingest.tick import Tick

if TYPE_CHECKING:
    from orchestration.persistence import PersistenceCoordinator


logger = logging.getLogger(__name__)


class SymbolWorker:
    """Processes ticks for one symbol partition strictly in arrival order.

    Window state, alert slots and latest snapshots belong to this worker
    alone, so nothing here is locked. Each tick is applied to completion
    before the next is taken from the queue.
    """

    def __init__(self, worker_id: int, settings: EngineSettings, coordinator: 'PersistenceCoordinator'):
        self.worker_id = worker_id
        self.coordinator = coordinator
        self.compute_every = settings.compute_every_n_ticks
        self.windows = WindowStateManager(settings.windows)
        self.alerts = AlertEngine(settings.alerts, settings.windows, sink=coordinator)
        self.latest: Dict[str, MetricsSnapshot] = {}
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=settings.queue_maxsize)
        self._applied: Dict[str, int] = {}
        self.rejected: Dict[str, int] = {'invalid': 0, 'duplicate': 0, 'stale': 0}

    @property
    def name(self) -> str:
        return f"worker-{self.worker_id}"

    def apply_settings(self, settings: EngineSettings) -> None:
        self.compute_every = settings.compute_every_n_ticks
        self.windows.reconfigure(settings.windows)
        self.alerts.reconfigure(settings.alerts, settings.windows)

    def set_position(self, symbol: str, position: Optional[Position]) -> None:
        self.windows.set_position(symbol, position)

    def _reject(self, reason: str) -> None:
        self.rejected[reason] += 1
        metrics.record_rejected(reason)

    async def process_tick(self, tick: Tick) -> Optional[MetricsSnapshot]:
        started = time.perf_counter()
        self.coordinator.archive_tick(tick)
        try:
            state = self.windows.update(tick)
        except DuplicateTickError:
            self._reject('duplicate')
            logger.debug("Ignored duplicate tick %s @ %s", tick.symbol, tick.time.isoformat())
            return None
        except InvalidTickError as exc:
            self._reject('invalid')
            logger.warning("Rejected tick %s @ %s: %s", tick.symbol, tick.time.isoformat(), exc)
            return None
        except StaleTickError as exc:
            self._reject('stale')
            logger.info("Stale tick %s @ %s excluded from aggregates (%.3fs late)",
                        tick.symbol, tick.time.isoformat(), exc.lag_s)
            return None

        applied = self._applied.get(tick.symbol, 0) + 1
        self._applied[tick.symbol] = applied
        if applied % self.compute_every:
            metrics.record_tick(tick.symbol, time.perf_counter() - started)
            return None

        snapshot = compute(state)
        self.latest[tick.symbol] = snapshot
        await self.coordinator.record_snapshot(snapshot)
        await self.alerts.process(snapshot)
        metrics.record_tick(tick.symbol, time.perf_counter() - started)
        return snapshot

    async def run(self):
        while True:
            tick = await self.queue.get()
            try:
                await self.process_tick(tick)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s failed on tick %s @ %s", self.name, tick.symbol, tick.time)
            finally:
                self.queue.task_done()
                metrics.update_queue_depth(self.name, self.queue.qsize())

    def take_pending(self) -> List[Tick]:
        """Empty the queue without processing; used once the worker task is gone."""
        pending: List[Tick] = []
        while True:
            try:
                pending.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
            self.queue.task_done()
        return pending


class TickRouter:
    """Stable symbol -> worker partitioning."""

    def __init__(self, workers: List[SymbolWorker]):
        if not workers:
            raise ValueError("TickRouter needs at least one worker")
        self.workers = workers

    def worker_for(self, symbol: str) -> SymbolWorker:
        return self.workers[zlib.crc32(symbol.encode('utf-8')) % len(self.workers)]

    async def route(self, tick: Tick) -> None:
        await self.worker_for(tick.symbol).queue.put(tick)

    async def join(self) -> None:
        await asyncio.gather(*(w.queue.join() for w in self.workers))
