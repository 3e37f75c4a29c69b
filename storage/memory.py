from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sortedcontainers import SortedDict

from alerting.types import AlertRecord
from analytics.metrics_calculator import MetricsSnapshot
from analytics.window_state import Position
from storage.base import EventStore
from ingest.tick import Tick


class InMemoryStore(EventStore):
    """Process-local store used for dry runs and tests.

    Ticks are indexed per symbol in a SortedDict keyed by time, which gives
    the same (symbol, time) uniqueness and ordered range scans as the
    hypertable.
    """

    def __init__(self, positions: Optional[Dict[str, Position]] = None):
        self.ticks: Dict[str, SortedDict] = {}
        self.alerts: Dict[str, AlertRecord] = {}
        self.snapshots: Dict[str, MetricsSnapshot] = {}
        self.positions: Dict[str, Position] = dict(positions or {})

    async def insert_ticks(self, ticks: Sequence[Tick]) -> int:
        written = 0
        for tick in ticks:
            book = self.ticks.setdefault(tick.symbol, SortedDict())
            if tick.time in book:
                continue
            book[tick.time] = tick
            written += 1
        return written

    async def insert_alert(self, record: AlertRecord) -> None:
        self.alerts[record.alert_id] = record

    async def upsert_snapshots(self, snapshots: Sequence[MetricsSnapshot]) -> None:
        for snapshot in snapshots:
            self.snapshots[snapshot.symbol] = snapshot

    async def fetch_ticks(self, symbol: str, start: datetime, end: datetime) -> List[Tick]:
        book = self.ticks.get(symbol)
        if not book:
            return []
        return [book[key] for key in book.irange(start, end)]

    async def earliest_tick_time(self, symbol: str) -> Optional[datetime]:
        book = self.ticks.get(symbol)
        if not book:
            return None
        return book.peekitem(0)[0]

    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        return self.alerts.get(str(alert_id))

    async def purge_ticks_before(self, cutoff: datetime) -> int:
        removed = 0
        for symbol in list(self.ticks):
            book = self.ticks[symbol]
            stale = list(book.irange(maximum=cutoff, inclusive=(True, False)))
            for key in stale:
                del book[key]
            removed += len(stale)
            if not book:
                del self.ticks[symbol]
        return removed

    async def purge_alerts_before(self, cutoff: datetime) -> int:
        stale = [alert_id for alert_id, record in self.alerts.items() if record.created_at < cutoff]
        for alert_id in stale:
            del self.alerts[alert_id]
        return len(stale)

    async def load_positions(self) -> Dict[str, Position]:
        return dict(self.positions)
