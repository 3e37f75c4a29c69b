import asyncio
import logging
from typing import TYPE_CHECKING

from alerting.types import AlertRecord
from analytics.metrics_calculator import MetricsSnapshot
from api.metrics import metrics
from ingest.tick import Tick

if TYPE_CHECKING:
    from api.alerts import AlertPublisher
    from ingest.persister import PersistenceWriter


logger = logging.getLogger(__name__)


class PersistenceCoordinator:
    """Side effects of the live path: archival, snapshot publication and alert dispatch.

    Alerts are persisted first (awaited, with the writer's retry policy) and
    only then handed to the publisher. Publication is asynchronous and its
    failure never undoes the durable record.
    """

    def __init__(self, writer: 'PersistenceWriter', publisher: 'AlertPublisher'):
        self.writer = writer
        self.publisher = publisher

    def archive_tick(self, tick: Tick) -> None:
        self.writer.append_tick(tick)

    async def record_snapshot(self, snapshot: MetricsSnapshot) -> None:
        self.writer.append_snapshot(snapshot)
        metrics.update_snapshot(snapshot)
        await self.publisher.publish_snapshot(snapshot.to_dict())

    async def dispatch_alert(self, record: AlertRecord) -> bool:
        try:
            persisted = await self.writer.append_alert(record)
        except asyncio.CancelledError:
            # Shutdown interrupted the retries; keep the alert for the final flush
            self.writer.defer_alert(record)
            self._publish(record, persisted=False)
            raise
        self._publish(record, persisted)
        return persisted

    def _publish(self, record: AlertRecord, persisted: bool) -> None:
        payload = record.to_dict()
        if not persisted:
            payload['details']['persisted'] = False
            logger.warning("Publishing alert %s live-only; durable write abandoned", record.alert_id)
        self.publisher.publish_alert(payload)
