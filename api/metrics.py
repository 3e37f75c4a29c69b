import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False


def _monitoring_cfg():
    return config.get('monitoring') or {}


def _get_port_scan_limit() -> int:
    try:
        return int(_monitoring_cfg().get('prometheus_port_scan', 0) or 0)
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = _monitoring_cfg().get('metrics_port_file')
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.ticks_processed = Counter('ticks_processed_total', 'Ticks folded into window state', ['symbol'])
        self.ticks_rejected = Counter('ticks_rejected_total', 'Ticks excluded from aggregates', ['reason'])
        self.tick_latency = Histogram('tick_processing_latency_seconds', 'Time to apply one tick end to end')

        self.volatility = Gauge('volatility_pct', 'Rolling volatility percentage', ['symbol'])
        self.max_drawdown = Gauge('max_drawdown_pct', 'Max drawdown percentage over the lookback', ['symbol'])
        self.unrealized_pnl = Gauge('unrealized_pnl', 'Mark-to-market unrealized P&L', ['symbol'])
        self.last_price = Gauge('last_price', 'Latest tick price', ['symbol'])
        self.window_resyncs = Counter('window_resyncs_total', 'Running-sum re-syncs after drift', ['symbol'])

        self.alerts_emitted = Counter('alerts_emitted_total', 'Alerts emitted', ['metric', 'severity'])
        self.alerts_suppressed = Counter('alerts_suppressed_total', 'Breaches suppressed by cooldown', ['metric'])
        self.alerts_unpersisted = Counter('alerts_unpersisted_total', 'Alerts published without a durable record')
        self.publish_failures = Counter('alert_publish_failures_total', 'Alert notification failures', ['channel'])

        self.persistence_failures = Counter('persistence_failures_total', 'Durable write failures', ['kind'])
        self.batches_dropped = Counter('tick_batches_dropped_total', 'Tick batches dropped', ['reason'])
        self.ticks_archived = Counter('ticks_archived_total', 'Ticks written to the durable store')
        self.queue_depth = Gauge('queue_depth', 'Internal buffer depth', ['buffer'])

        self.health = Gauge('engine_healthy', 'Engine health flag (1 ok, 0 degraded)')
        self.degradation_events = Counter('degradation_events_total', 'Health degradation events', ['reason'])

        self.replay_latency = Histogram('replay_query_latency_seconds', 'Replay query latency')
        self.replay_not_found = Counter('replay_not_found_total', 'Replay queries outside retained history')
        self.retention_purged = Counter('retention_purged_rows_total', 'Rows removed by retention', ['table'])

    def record_tick(self, symbol: str, latency_seconds: Optional[float] = None):
        self.ticks_processed.labels(symbol=symbol).inc()
        if latency_seconds is not None:
            self.tick_latency.observe(latency_seconds)

    def record_rejected(self, reason: str):
        self.ticks_rejected.labels(reason=reason).inc()

    def update_snapshot(self, snapshot):
        symbol = snapshot.symbol
        if snapshot.volatility_pct is not None:
            self.volatility.labels(symbol=symbol).set(snapshot.volatility_pct)
        self.max_drawdown.labels(symbol=symbol).set(snapshot.max_drawdown_pct)
        if snapshot.unrealized_pnl is not None:
            self.unrealized_pnl.labels(symbol=symbol).set(float(snapshot.unrealized_pnl))
        if snapshot.price is not None:
            self.last_price.labels(symbol=symbol).set(float(snapshot.price))

    def record_window_resync(self, symbol: str):
        self.window_resyncs.labels(symbol=symbol).inc()

    def record_alert(self, metric: str, severity: str):
        self.alerts_emitted.labels(metric=metric, severity=severity).inc()

    def record_alert_suppressed(self, metric: str):
        self.alerts_suppressed.labels(metric=metric).inc()

    def record_alert_unpersisted(self):
        self.alerts_unpersisted.inc()

    def record_publish_failure(self, channel: str):
        self.publish_failures.labels(channel=channel).inc()

    def record_persistence_failure(self, kind: str):
        self.persistence_failures.labels(kind=kind).inc()

    def record_batch_dropped(self, reason: str):
        self.batches_dropped.labels(reason=reason).inc()

    def record_ticks_archived(self, count: int):
        self.ticks_archived.inc(count)

    def update_queue_depth(self, name: str, depth: int):
        self.queue_depth.labels(buffer=name).set(depth)

    def mark_health(self, healthy: bool, reason: Optional[str] = None):
        self.health.set(1 if healthy else 0)
        if not healthy and reason:
            self.degradation_events.labels(reason=reason).inc()

    def record_replay_latency(self, latency_seconds: float):
        self.replay_latency.observe(latency_seconds)

    def record_replay_not_found(self):
        self.replay_not_found.inc()

    def record_retention_purge(self, table: str, rows: int):
        if rows:
            self.retention_purged.labels(table=table).inc(rows)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
