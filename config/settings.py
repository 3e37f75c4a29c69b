"""Immutable engine settings built once from the YAML configuration.

The loader validates every section the engine depends on and raises
``ConfigurationError`` instead of falling back to undefined alerting behaviour.
A reload builds a fresh ``EngineSettings`` which the engine swaps in whole.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from alerting.types import (
    ABOVE,
    BELOW,
    DEFAULT_DIRECTIONS,
    AlertMetric,
    MetricThreshold,
    RearmPolicy,
)
from config.utils import get_config_section
from errors import ConfigurationError


@dataclass(frozen=True)
class WindowSettings:
    volatility_s: float = 30.0
    drawdown_s: float = 300.0
    max_out_of_order_s: float = 5.0
    resync_interval: int = 1000
    resync_tolerance: float = 1e-9


@dataclass(frozen=True)
class AlertSettings:
    thresholds: Mapping[AlertMetric, MetricThreshold]
    cooldown_s: float = 300.0
    rearm_policy: RearmPolicy = RearmPolicy.HYSTERESIS
    webhook_url: Optional[str] = None

    def threshold(self, metric: AlertMetric) -> Optional[MetricThreshold]:
        return self.thresholds.get(metric)


@dataclass(frozen=True)
class PersistenceSettings:
    batch_size: int = 500
    flush_interval_s: float = 1.0
    max_pending_batches: int = 50
    tick_max_retries: int = 3
    alert_max_attempts: int = 10
    alert_retry_base_s: float = 0.5
    alert_retry_max_s: float = 30.0


@dataclass(frozen=True)
class RetentionSettings:
    ticks_days: float = 7.0
    alerts_days: float = 30.0
    interval_s: float = 3600.0


@dataclass(frozen=True)
class ReplaySettings:
    query_timeout_s: float = 5.0
    max_window_s: float = 86400.0


@dataclass(frozen=True)
class EngineSettings:
    alerts: AlertSettings
    windows: WindowSettings = field(default_factory=WindowSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    replay: ReplaySettings = field(default_factory=ReplaySettings)
    worker_count: int = 4
    queue_maxsize: int = 10000
    compute_every_n_ticks: int = 1
    shutdown_timeout_s: float = 10.0
    storage_backend: str = 'timescale'
    storage: Mapping[str, Any] = field(default_factory=dict)
    positions: Mapping[str, Mapping[str, Decimal]] = field(default_factory=dict)


def _number(section: Dict, name: str, key: str, default: Any, cast=float,
            minimum: Optional[float] = 0.0, strict: bool = True) -> Any:
    raw = section.get(key, default)
    try:
        value = cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name}.{key} must be numeric, got {raw!r}") from exc
    if minimum is not None:
        if strict and value <= minimum:
            raise ConfigurationError(f"{name}.{key} must be > {minimum}, got {value}")
        if not strict and value < minimum:
            raise ConfigurationError(f"{name}.{key} must be >= {minimum}, got {value}")
    return value


def _build_threshold(metric: AlertMetric, raw: Any) -> MetricThreshold:
    name = f"alerts.thresholds.{metric.value}"
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{name} is missing or not a mapping")
    enabled = bool(raw.get('enabled', True))
    direction = raw.get('direction', DEFAULT_DIRECTIONS[metric])
    if direction not in (ABOVE, BELOW):
        raise ConfigurationError(f"{name}.direction must be '{ABOVE}' or '{BELOW}', got {direction!r}")
    if not enabled:
        return MetricThreshold(metric, 0.0, 0.0, direction, enabled=False)
    for level in ('warning', 'critical'):
        if raw.get(level) is None:
            raise ConfigurationError(f"{name}.{level} is required")
    warning = _number(raw, name, 'warning', None, minimum=None)
    critical = _number(raw, name, 'critical', None, minimum=None)
    if direction == ABOVE and critical < warning:
        raise ConfigurationError(f"{name}: critical ({critical}) must be >= warning ({warning})")
    if direction == BELOW and critical > warning:
        raise ConfigurationError(f"{name}: critical ({critical}) must be <= warning ({warning})")
    return MetricThreshold(metric, warning, critical, direction)


def _build_alerts(section: Dict) -> AlertSettings:
    thresholds_raw = section.get('thresholds')
    if not isinstance(thresholds_raw, dict):
        raise ConfigurationError("alerts.thresholds section is required")
    unknown = set(thresholds_raw) - {m.value for m in AlertMetric}
    if unknown:
        raise ConfigurationError(f"Unknown alert metrics configured: {sorted(unknown)}")
    thresholds = {
        metric: _build_threshold(metric, thresholds_raw.get(metric.value))
        for metric in AlertMetric
    }
    policy_raw = section.get('rearm_policy', RearmPolicy.HYSTERESIS.value)
    try:
        policy = RearmPolicy(policy_raw)
    except ValueError as exc:
        raise ConfigurationError(f"alerts.rearm_policy must be one of "
                                 f"{[p.value for p in RearmPolicy]}, got {policy_raw!r}") from exc
    webhook = section.get('webhook_url')
    if isinstance(webhook, str) and (not webhook or webhook.startswith('${')):
        webhook = None
    return AlertSettings(
        thresholds=MappingProxyType(thresholds),
        cooldown_s=_number(section, 'alerts', 'cooldown_s', 300.0, minimum=0.0, strict=False),
        rearm_policy=policy,
        webhook_url=webhook,
    )


def _build_positions(section: Dict) -> Mapping[str, Mapping[str, Decimal]]:
    positions = {}
    for symbol, raw in (section or {}).items():
        if not isinstance(raw, dict):
            raise ConfigurationError(f"positions.{symbol} must be a mapping")
        try:
            entry_price = Decimal(str(raw['entry_price']))
            quantity = Decimal(str(raw['quantity']))
        except (KeyError, InvalidOperation) as exc:
            raise ConfigurationError(f"positions.{symbol} needs numeric entry_price and quantity") from exc
        if entry_price <= 0:
            raise ConfigurationError(f"positions.{symbol}.entry_price must be > 0")
        positions[symbol] = MappingProxyType({'entry_price': entry_price, 'quantity': quantity})
    return MappingProxyType(positions)


def load_settings(source: Any = None) -> EngineSettings:
    """Validate configuration into an ``EngineSettings``; raises ``ConfigurationError``."""
    if source is None:
        from config.config_loader import config as source

    alerts_cfg = get_config_section(source, 'alerts')
    if not alerts_cfg:
        raise ConfigurationError("alerts section is required")
    engine_cfg = get_config_section(source, 'engine')
    windows_cfg = get_config_section(source, 'windows')
    persistence_cfg = get_config_section(source, 'persistence')
    retention_cfg = get_config_section(source, 'retention')
    replay_cfg = get_config_section(source, 'replay')
    storage_cfg = get_config_section(source, 'storage')

    windows = WindowSettings(
        volatility_s=_number(windows_cfg, 'windows', 'volatility_s', 30.0),
        drawdown_s=_number(windows_cfg, 'windows', 'drawdown_s', 300.0),
        max_out_of_order_s=_number(windows_cfg, 'windows', 'max_out_of_order_s', 5.0, strict=False),
        resync_interval=_number(windows_cfg, 'windows', 'resync_interval', 1000, cast=int),
        resync_tolerance=_number(windows_cfg, 'windows', 'resync_tolerance', 1e-9, strict=False),
    )
    persistence = PersistenceSettings(
        batch_size=_number(persistence_cfg, 'persistence', 'batch_size', 500, cast=int),
        flush_interval_s=_number(persistence_cfg, 'persistence', 'flush_interval_s', 1.0),
        max_pending_batches=_number(persistence_cfg, 'persistence', 'max_pending_batches', 50, cast=int),
        tick_max_retries=_number(persistence_cfg, 'persistence', 'tick_max_retries', 3, cast=int, strict=False),
        alert_max_attempts=_number(persistence_cfg, 'persistence', 'alert_max_attempts', 10, cast=int),
        alert_retry_base_s=_number(persistence_cfg, 'persistence', 'alert_retry_base_s', 0.5, strict=False),
        alert_retry_max_s=_number(persistence_cfg, 'persistence', 'alert_retry_max_s', 30.0, strict=False),
    )
    retention = RetentionSettings(
        ticks_days=_number(retention_cfg, 'retention', 'ticks_days', 7.0),
        alerts_days=_number(retention_cfg, 'retention', 'alerts_days', 30.0),
        interval_s=_number(retention_cfg, 'retention', 'interval_s', 3600.0),
    )
    replay = ReplaySettings(
        query_timeout_s=_number(replay_cfg, 'replay', 'query_timeout_s', 5.0),
        max_window_s=_number(replay_cfg, 'replay', 'max_window_s', 86400.0),
    )
    backend = storage_cfg.get('backend', 'timescale')
    if backend not in ('timescale', 'memory'):
        raise ConfigurationError(f"storage.backend must be 'timescale' or 'memory', got {backend!r}")

    return EngineSettings(
        alerts=_build_alerts(alerts_cfg),
        windows=windows,
        persistence=persistence,
        retention=retention,
        replay=replay,
        worker_count=_number(engine_cfg, 'engine', 'worker_count', 4, cast=int),
        queue_maxsize=_number(engine_cfg, 'engine', 'queue_maxsize', 10000, cast=int, strict=False),
        compute_every_n_ticks=_number(engine_cfg, 'engine', 'compute_every_n_ticks', 1, cast=int),
        shutdown_timeout_s=_number(engine_cfg, 'engine', 'shutdown_timeout_s', 10.0),
        storage_backend=backend,
        storage=MappingProxyType(dict(storage_cfg)),
        positions=_build_positions(get_config_section(source, 'positions')),
    )
