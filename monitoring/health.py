import logging
import time
from typing import Dict, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)

OK = 'ok'
DEGRADED = 'degraded'


class HealthStatus:
    """Engine-level health flag fed by persistence outcomes.

    Each failing concern registers a reason; the engine is degraded while any
    reason is active. Live metrics and alerts keep running either way.
    """

    def __init__(self):
        self._reasons: Dict[str, float] = {}
        metrics.mark_health(True)

    @property
    def status(self) -> str:
        return DEGRADED if self._reasons else OK

    @property
    def degraded(self) -> bool:
        return bool(self._reasons)

    def mark_degraded(self, reason: str) -> None:
        if reason not in self._reasons:
            logger.warning("Engine degraded: %s", reason)
            self._reasons[reason] = time.time()
        metrics.mark_health(False, reason)

    def clear(self, reason: str) -> None:
        if self._reasons.pop(reason, None) is not None:
            logger.info("Engine recovered from %s", reason)
        if not self._reasons:
            metrics.mark_health(True)

    def to_dict(self, extra: Optional[Dict] = None) -> Dict:
        payload = {
            'status': self.status,
            'reasons': sorted(self._reasons),
            'degraded_since': min(self._reasons.values()) if self._reasons else None,
        }
        if extra:
            payload.update(extra)
        return payload
