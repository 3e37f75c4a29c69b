import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from alerting.types import AlertMetric, AlertRecord, AlertState, Severity
from api.metrics import metrics
from config.settings import AlertSettings, WindowSettings
from analytics.metrics_calculator import MetricsSnapshot


logger = logging.getLogger(__name__)


@dataclass
class AlertSlot:
    symbol: str
    metric: AlertMetric
    state: AlertState = AlertState.QUIET
    last_alert_time: Optional[datetime] = None
    last_severity: Optional[Severity] = None
    suppressed_count: int = 0

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'metric': self.metric.value,
            'state': self.state.value,
            'last_alert_time': self.last_alert_time.isoformat() if self.last_alert_time else None,
            'last_severity': self.last_severity.value if self.last_severity else None,
            'suppressed_count': self.suppressed_count,
        }


from .alert_states import CooldownState, QuietState


def _or_default(value, default):
    return default if value is None else value


def metric_value(snapshot: MetricsSnapshot, metric: AlertMetric):
    if metric is AlertMetric.VOLATILITY:
        return snapshot.volatility_pct
    if metric is AlertMetric.DRAWDOWN:
        return snapshot.max_drawdown_pct
    return snapshot.unrealized_pnl


class AlertEngine:
    """Per (symbol, metric) QUIET -> TRIGGERED -> COOLDOWN -> QUIET state machine.

    Time is the snapshot's tick time, so replayed or backfilled streams see
    the same cooldown behaviour as live ones. The engine is owned by a single
    symbol worker; slots are never shared across workers.
    """

    def __init__(self, settings: AlertSettings, window_settings: WindowSettings, sink=None):
        self.settings = settings
        self.window_settings = window_settings
        self.sink = sink
        self.slots: Dict[Tuple[str, AlertMetric], AlertSlot] = {}

        self.state_map = {
            AlertState.QUIET: QuietState,
            AlertState.COOLDOWN: CooldownState,
        }

    def reconfigure(self, settings: AlertSettings, window_settings: Optional[WindowSettings] = None) -> None:
        self.settings = settings
        if window_settings is not None:
            self.window_settings = window_settings

    def slot(self, symbol: str, metric: AlertMetric) -> AlertSlot:
        key = (symbol, metric)
        slot = self.slots.get(key)
        if slot is None:
            slot = AlertSlot(symbol=symbol, metric=metric)
            self.slots[key] = slot
        return slot

    def evaluate(self, snapshot: MetricsSnapshot) -> List[AlertRecord]:
        """Advance every metric's state machine for one snapshot; return new alerts."""
        records: List[AlertRecord] = []
        if snapshot.computed_at is None:
            return records
        for metric in AlertMetric:
            threshold = self.settings.threshold(metric)
            if threshold is None or not threshold.enabled:
                continue
            value = metric_value(snapshot, metric)
            severity = threshold.severity_for(value)
            slot = self.slot(snapshot.symbol, metric)
            processor = self.state_map[slot.state](slot, self)
            record = processor.process(snapshot, value, severity)
            if record is not None:
                records.append(record)
        return records

    async def process(self, snapshot: MetricsSnapshot) -> List[AlertRecord]:
        records = self.evaluate(snapshot)
        if self.sink is not None:
            for record in records:
                await self.sink.dispatch_alert(record)
        return records

    def _trigger(self, slot: AlertSlot, snapshot: MetricsSnapshot, value, severity: Severity) -> AlertRecord:
        threshold = self.settings.threshold(slot.metric)
        record = AlertRecord(
            symbol=slot.symbol,
            metric=slot.metric,
            threshold=threshold.level_for(severity),
            trigger_value=float(value) if isinstance(value, Decimal) else value,
            severity=severity,
            created_at=snapshot.computed_at,
            details=self._details(slot.metric, snapshot),
        )
        slot.last_alert_time = snapshot.computed_at
        slot.last_severity = severity
        slot.suppressed_count = 0
        slot.state = AlertState.COOLDOWN
        self._emit_transition(slot, AlertState.TRIGGERED, AlertState.COOLDOWN)
        metrics.record_alert(slot.metric.value, severity.value)
        logger.info(
            "Alert %s %s %s: value=%s threshold=%s",
            record.alert_id,
            slot.symbol,
            slot.metric.value,
            record.trigger_value,
            record.threshold,
        )
        return record

    def _suppress(self, slot: AlertSlot, severity: Severity) -> None:
        slot.suppressed_count += 1
        metrics.record_alert_suppressed(slot.metric.value)
        logger.debug(
            "Suppressed %s %s breach (%s) during cooldown, %d suppressed so far",
            slot.symbol,
            slot.metric.value,
            severity.value,
            slot.suppressed_count,
        )

    def _emit_transition(self, slot: AlertSlot, from_state: AlertState, to_state: AlertState) -> None:
        logger.debug("%s/%s: %s -> %s", slot.symbol, slot.metric.value, from_state.value, to_state.value)

    def _details(self, metric: AlertMetric, snapshot: MetricsSnapshot) -> Dict:
        threshold = self.settings.threshold(metric)
        details = {
            'direction': threshold.direction,
            'rearm_policy': self.settings.rearm_policy.value,
            'cooldown_s': self.settings.cooldown_s,
            'price': str(snapshot.price) if snapshot.price is not None else None,
        }
        # Symbols keep the window sizes they were created with across a reload
        if metric is AlertMetric.VOLATILITY:
            details['window_seconds'] = _or_default(snapshot.volatility_window_s, self.window_settings.volatility_s)
            details['window_points'] = snapshot.window_points
        elif metric is AlertMetric.DRAWDOWN:
            details['window_seconds'] = _or_default(snapshot.drawdown_window_s, self.window_settings.drawdown_s)
        return details

    def get_slots(self, active_only: bool = False) -> List[Dict]:
        return [
            slot.to_dict() for slot in self.slots.values()
            if not active_only or slot.state is not AlertState.QUIET
        ]
