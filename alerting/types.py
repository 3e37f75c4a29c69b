from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union
import uuid


class AlertMetric(Enum):
    VOLATILITY = "volatility"
    DRAWDOWN = "drawdown"
    PNL = "pnl"


class Severity(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertState(Enum):
    QUIET = "quiet"
    TRIGGERED = "triggered"
    COOLDOWN = "cooldown"


class RearmPolicy(Enum):
    HYSTERESIS = "hysteresis"
    TIME = "time"


ABOVE = 'above'
BELOW = 'below'

DEFAULT_DIRECTIONS = {
    AlertMetric.VOLATILITY: ABOVE,
    AlertMetric.DRAWDOWN: BELOW,
    AlertMetric.PNL: BELOW,
}

Number = Union[float, Decimal]


@dataclass(frozen=True)
class MetricThreshold:
    metric: AlertMetric
    warning: float
    critical: float
    direction: str = ABOVE
    enabled: bool = True

    def is_breached(self, value: Optional[Number], level: float) -> bool:
        if value is None:
            return False
        if self.direction == ABOVE:
            return float(value) >= level
        return float(value) <= level

    def severity_for(self, value: Optional[Number]) -> Optional[Severity]:
        """Highest severity whose threshold the value breaches, or None."""
        if not self.enabled or value is None:
            return None
        if self.is_breached(value, self.critical):
            return Severity.CRITICAL
        if self.is_breached(value, self.warning):
            return Severity.WARNING
        return None

    def level_for(self, severity: Severity) -> float:
        return self.critical if severity is Severity.CRITICAL else self.warning


@dataclass(frozen=True)
class AlertRecord:
    symbol: str
    metric: AlertMetric
    threshold: float
    trigger_value: float
    severity: Severity
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'alert_id': self.alert_id,
            'symbol': self.symbol,
            'metric': self.metric.value,
            'threshold': self.threshold,
            'trigger_value': self.trigger_value,
            'severity': self.severity.value,
            'created_at': self.created_at.isoformat(),
            'details': dict(self.details),
        }
