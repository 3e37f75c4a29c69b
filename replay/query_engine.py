import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from api.metrics import metrics
from config.settings import ReplaySettings, RetentionSettings
from errors import NotFoundError, PersistenceError
from ingest.tick import Tick, parse_time
from storage.base import EventStore


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReplayResult:
    symbol: str
    start: datetime
    end: datetime
    ticks: List[Tick] = field(default_factory=list)
    alert_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'alert_id': self.alert_id,
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'ticks': [t.to_dict() for t in self.ticks],
        }


class ReplayQueryEngine:
    """Read-only range scans of archived ticks around a point in time.

    Works purely off the durable store, never the live windows. A range that
    no retained data covers raises ``NotFoundError`` so callers can tell
    expired history apart from a quiet market.
    """

    def __init__(self, store: EventStore, settings: ReplaySettings,
                 retention: RetentionSettings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self.retention = retention
        self.clock = clock

    def bounds(self, center_time: datetime, window_seconds: float):
        if window_seconds is None or window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")
        if window_seconds > self.settings.max_window_s:
            raise ValueError(
                f"window_seconds {window_seconds} exceeds the {self.settings.max_window_s}s limit"
            )
        delta = timedelta(seconds=window_seconds)
        return center_time - delta, center_time + delta

    async def replay(self, symbol: str, center_time: datetime, window_seconds: float) -> ReplayResult:
        start, end = self.bounds(center_time, window_seconds)
        started = time.perf_counter()
        try:
            ticks = await asyncio.wait_for(
                self._scan(symbol, start, end),
                timeout=self.settings.query_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                f"replay for {symbol} exceeded {self.settings.query_timeout_s}s"
            ) from exc
        finally:
            metrics.record_replay_latency(time.perf_counter() - started)
        return ReplayResult(symbol=symbol, start=start, end=end, ticks=ticks)

    async def replay_alert(self, alert_id: str, window_seconds: float) -> ReplayResult:
        record = await self.store.get_alert(alert_id)
        if record is None:
            metrics.record_replay_not_found()
            raise NotFoundError(f"alert {alert_id} not found")
        result = await self.replay(record.symbol, record.created_at, window_seconds)
        result.alert_id = record.alert_id
        return result

    async def replay_request(self, request: Dict[str, Any]) -> ReplayResult:
        """Serve ``{symbol, alert_id | center_time, window_seconds}``."""
        window_seconds = float(request.get('window_seconds', 0))
        alert_id = request.get('alert_id')
        if alert_id:
            return await self.replay_alert(alert_id, window_seconds)
        symbol = request.get('symbol')
        center = request.get('center_time')
        if not symbol or center is None:
            raise ValueError("replay request needs alert_id, or symbol and center_time")
        return await self.replay(symbol, parse_time(center), window_seconds)

    async def _scan(self, symbol: str, start: datetime, end: datetime) -> List[Tick]:
        horizon = self.clock() - timedelta(days=self.retention.ticks_days)
        if end < horizon:
            metrics.record_replay_not_found()
            raise NotFoundError(
                f"{symbol} data for {start.isoformat()}..{end.isoformat()} is past the "
                f"{self.retention.ticks_days:g}-day retention horizon"
            )
        earliest = await self.store.earliest_tick_time(symbol)
        if earliest is None or end < earliest:
            metrics.record_replay_not_found()
            raise NotFoundError(f"no retained {symbol} data covers {start.isoformat()}..{end.isoformat()}")

        ticks = await self.store.fetch_ticks(symbol, start, end)
        # The store keys on (symbol, time); keep the guarantee even for stores that don't
        unique: List[Tick] = []
        last_time = None
        for tick in sorted(ticks, key=lambda t: t.time):
            if tick.time == last_time:
                continue
            unique.append(tick)
            last_time = tick.time
        logger.debug("Replay %s %s..%s returned %d ticks", symbol, start, end, len(unique))
        return unique
