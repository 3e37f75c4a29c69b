import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import aiohttp

from api.metrics import metrics


logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class AlertPublisher:
    """Fan-out of alert and snapshot payloads to in-process subscribers and a webhook.

    Publishing is fire-and-forget relative to the caller: ``publish_alert``
    schedules delivery on the running loop and returns immediately. Delivery
    failures are logged and counted, never raised back into the live path.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout_s: float = 5.0):
        # Treat empty or placeholder URLs as disabled
        if webhook_url and 'your-webhook-url' not in str(webhook_url):
            self.webhook_url = webhook_url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s
        self._alert_subscribers: List[Subscriber] = []
        self._snapshot_subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe_alerts(self, callback: Subscriber) -> None:
        self._alert_subscribers.append(callback)

    def subscribe_snapshots(self, callback: Subscriber) -> None:
        self._snapshot_subscribers.append(callback)

    def publish_alert(self, payload: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._deliver_alert(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def publish_snapshot(self, payload: Dict[str, Any]) -> None:
        for callback in list(self._snapshot_subscribers):
            await self._call(callback, payload, 'snapshot_subscriber')

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._pending:
            return
        done, pending = await asyncio.wait(list(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("[Alert] %d notifications still pending at shutdown were cancelled", len(pending))

    async def _deliver_alert(self, payload: Dict[str, Any]) -> None:
        for callback in list(self._alert_subscribers):
            await self._call(callback, payload, 'subscriber')
        await self.send_webhook(payload)

    async def _call(self, callback: Subscriber, payload: Dict[str, Any], channel: str) -> None:
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            metrics.record_publish_failure(channel)
            logger.error("[Alert] %s delivery failed: %s", channel, exc)

    async def send_webhook(self, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s %s value=%s threshold=%s",
                str(payload.get('severity', 'warning')).upper(),
                payload.get('symbol'),
                payload.get('metric'),
                payload.get('trigger_value'),
                payload.get('threshold'),
            )
            return

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        metrics.record_publish_failure('webhook')
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            metrics.record_publish_failure('webhook')
            logger.error("[Alert] Webhook error: %s", e)
