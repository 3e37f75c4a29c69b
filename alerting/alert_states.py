from __future__ import annotations
from typing import TYPE_CHECKING, Optional
from abc import ABC, abstractmethod

from alerting.types import AlertRecord, AlertState, RearmPolicy, Severity

if TYPE_CHECKING:
    from analytics.metrics_calculator import MetricsSnapshot
    from .alert_engine import AlertEngine, AlertSlot


class AlertStateProcessor(ABC):
    def __init__(self, slot: AlertSlot, engine: AlertEngine):
        self.slot = slot
        self.engine = engine

    @abstractmethod
    def process(self, snapshot: MetricsSnapshot, value, severity: Optional[Severity]) -> Optional[AlertRecord]:
        pass


class QuietState(AlertStateProcessor):
    def process(self, snapshot, value, severity):
        if severity is None:
            return None
        self.slot.state = AlertState.TRIGGERED
        return self.engine._trigger(self.slot, snapshot, value, severity)


class CooldownState(AlertStateProcessor):
    def process(self, snapshot, value, severity):
        slot = self.slot
        elapsed = (snapshot.computed_at - slot.last_alert_time).total_seconds()
        if elapsed < self.engine.settings.cooldown_s:
            if severity is not None:
                self.engine._suppress(slot, severity)
            return None

        if severity is not None and self.engine.settings.rearm_policy is RearmPolicy.HYSTERESIS:
            # Still breaching: stay in cooldown until the metric comes back
            self.engine._suppress(slot, severity)
            return None

        slot.state = AlertState.QUIET
        self.engine._emit_transition(slot, AlertState.COOLDOWN, AlertState.QUIET)
        if severity is None:
            return None
        return QuietState(slot, self.engine).process(snapshot, value, severity)
