from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from alerting.types import AlertRecord
from analytics.metrics_calculator import MetricsSnapshot
from analytics.window_state import Position
from ingest.tick import Tick


class EventStore(ABC):
    """Durable, time-ordered store for raw ticks, alerts and latest snapshots.

    Implementations must tolerate one append-mostly writer running alongside
    concurrent replay readers. Write methods raise ``PersistenceError`` on
    failure; retry policy belongs to the caller.
    """

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def insert_ticks(self, ticks: Sequence[Tick]) -> int:
        """Insert ticks, ignoring (symbol, time) keys already stored. Returns rows written."""

    @abstractmethod
    async def insert_alert(self, record: AlertRecord) -> None:
        pass

    @abstractmethod
    async def upsert_snapshots(self, snapshots: Sequence[MetricsSnapshot]) -> None:
        pass

    @abstractmethod
    async def fetch_ticks(self, symbol: str, start: datetime, end: datetime) -> List[Tick]:
        """Ticks with ``start <= time <= end``, ascending by time."""

    @abstractmethod
    async def earliest_tick_time(self, symbol: str) -> Optional[datetime]:
        pass

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        pass

    @abstractmethod
    async def purge_ticks_before(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def purge_alerts_before(self, cutoff: datetime) -> int:
        pass

    async def load_positions(self) -> Dict[str, Position]:
        return {}
