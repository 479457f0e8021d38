from __future__ import annotations

import datetime as dt
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from engine.time_machine import now as engine_now

IST = dt.timezone(dt.timedelta(hours=5, minutes=30), name="Asia/Kolkata")

_LOGGER = logging.getLogger("engine.config")
_OPTION_TYPES = {"CE", "PE"}


def _canonical_config() -> Path:
    return Path(os.getenv("APP_CONFIG_PATH", "config/app.yml"))


def _read_config_payload(path: Optional[Path] = None) -> Dict[str, Any]:
    cfg_path = path or _canonical_config()
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config {cfg_path} not found")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config {cfg_path} must contain a mapping at the top level")
    _LOGGER.debug("Loaded config %s", cfg_path)
    return data


def parse_time_of_day(value: str | dt.time) -> dt.time:
    if isinstance(value, dt.time):
        return value
    value = str(value).strip()
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return dt.datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid HH:MM[:SS] time string: {value}")


def _parse_option_type(value: Any, default: str) -> str:
    text = str(value or default).strip().upper()
    if text not in _OPTION_TYPES:
        raise ValueError(f"Option type must be CE or PE; got {value!r}")
    return text


def _read_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    text = value.strip()
    return text or None


@dataclass(frozen=True)
class OptionsConfig:
    underlying: str = "NIFTY"
    exchange: str = "NFO"
    strike_step: int = 50
    strikes_each_side: int = 3
    lot_size: int = 75
    delta_threshold: float = 0.6
    risk_free_rate: float = 0.065
    expiry_buffer_days: int = 5
    default_volatility: float = 0.15
    iv_max_iterations: int = 20
    iv_min: float = 0.01
    iv_max: float = 2.0
    bearish_option_type: str = "CE"

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "OptionsConfig":
        lot_size = int(payload.get("lot_size", 75))
        if lot_size <= 0:
            raise ValueError(f"options.lot_size must be positive; got {lot_size}")
        step = int(payload.get("strike_step", 50))
        if step <= 0:
            raise ValueError(f"options.strike_step must be positive; got {step}")
        return OptionsConfig(
            underlying=str(payload.get("underlying", "NIFTY")).upper(),
            exchange=str(payload.get("exchange", "NFO")).upper(),
            strike_step=step,
            strikes_each_side=int(payload.get("strikes_each_side", 3)),
            lot_size=lot_size,
            delta_threshold=float(payload.get("delta_threshold", 0.6)),
            risk_free_rate=float(payload.get("risk_free_rate", 0.065)),
            expiry_buffer_days=int(payload.get("expiry_buffer_days", 5)),
            default_volatility=float(payload.get("default_volatility", 0.15)),
            iv_max_iterations=int(payload.get("iv_max_iterations", 20)),
            iv_min=float(payload.get("iv_min", 0.01)),
            iv_max=float(payload.get("iv_max", 2.0)),
            bearish_option_type=_parse_option_type(payload.get("bearish_option_type"), "CE"),
        )


@dataclass(frozen=True)
class ConfirmationPolicy:
    max_wait_seconds: float = 60.0
    poll_interval: float = 2.0
    max_attempts: int = 30
    partial_fill_acceptable: bool = True
    partial_fill_threshold: float = 0.8

    @staticmethod
    def from_dict(payload: Mapping[str, Any], base: Optional["ConfirmationPolicy"] = None) -> "ConfirmationPolicy":
        base = base or ConfirmationPolicy()
        return ConfirmationPolicy(
            max_wait_seconds=float(payload.get("max_wait_seconds", base.max_wait_seconds)),
            poll_interval=max(float(payload.get("poll_interval", base.poll_interval)), 0.0),
            max_attempts=max(int(payload.get("max_attempts", base.max_attempts)), 1),
            partial_fill_acceptable=bool(payload.get("partial_fill_acceptable", base.partial_fill_acceptable)),
            partial_fill_threshold=float(payload.get("partial_fill_threshold", base.partial_fill_threshold)),
        )


def _default_order_type_policies() -> Dict[str, ConfirmationPolicy]:
    return {
        "MARKET": ConfirmationPolicy(max_wait_seconds=30.0, poll_interval=1.5, max_attempts=20),
        "LIMIT": ConfirmationPolicy(max_wait_seconds=300.0, poll_interval=5.0, max_attempts=60),
    }


@dataclass(frozen=True)
class ConfirmationConfig:
    default: ConfirmationPolicy = field(default_factory=ConfirmationPolicy)
    by_order_type: Dict[str, ConfirmationPolicy] = field(default_factory=_default_order_type_policies)
    error_backoff_cap: float = 10.0

    def policy_for(self, order_type: str) -> ConfirmationPolicy:
        return self.by_order_type.get(str(order_type or "").upper(), self.default)

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "ConfirmationConfig":
        default = ConfirmationPolicy.from_dict(payload.get("default", {}))
        policies = _default_order_type_policies()
        for order_type, raw in (payload.get("order_types") or {}).items():
            key = str(order_type).upper()
            policies[key] = ConfirmationPolicy.from_dict(raw or {}, policies.get(key, default))
        return ConfirmationConfig(
            default=default,
            by_order_type=policies,
            error_backoff_cap=float(payload.get("error_backoff_cap", 10.0)),
        )


@dataclass(frozen=True)
class SchedulerConfig:
    default_exit_time: dt.time = dt.time(15, 15)
    health_check_interval: float = 30.0
    stall_threshold_seconds: float = 300.0
    version: str = "2.0.0"

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "SchedulerConfig":
        return SchedulerConfig(
            default_exit_time=parse_time_of_day(payload.get("default_exit_time", "15:15")),
            health_check_interval=float(payload.get("health_check_interval", 30.0)),
            stall_threshold_seconds=float(payload.get("stall_threshold_seconds", 300.0)),
            version=str(payload.get("version", "2.0.0")),
        )


@dataclass(frozen=True)
class MonitorConfig:
    interval_seconds: float = 30.0
    max_order_age_seconds: float = 3600.0
    batch_size: int = 10

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "MonitorConfig":
        return MonitorConfig(
            interval_seconds=float(payload.get("interval_seconds", 30.0)),
            max_order_age_seconds=float(payload.get("max_order_age_seconds", 3600.0)),
            batch_size=max(int(payload.get("batch_size", 10)), 1),
        )


@dataclass(frozen=True)
class ReconciliationConfig:
    dry_run: bool = True
    interval_seconds: float = 0.0

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "ReconciliationConfig":
        return ReconciliationConfig(
            dry_run=bool(payload.get("dry_run", True)),
            interval_seconds=float(payload.get("interval_seconds", 0.0)),
        )


@dataclass(frozen=True)
class LedgerConfig:
    retention_days: int = 30
    product: str = "MIS"

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "LedgerConfig":
        return LedgerConfig(
            retention_days=int(payload.get("retention_days", 30)),
            product=str(payload.get("product", "MIS")).upper(),
        )


@dataclass(frozen=True)
class RateLimitConfig:
    rate_per_sec: float
    burst: int


@dataclass(frozen=True)
class BrokerRateLimits:
    orders: RateLimitConfig
    quotes: RateLimitConfig
    history: RateLimitConfig


def _build_rate_limit(payload: Mapping[str, Any], fallback_rate: float, fallback_burst: int) -> RateLimitConfig:
    rate = float(payload.get("rate_per_sec", fallback_rate))
    burst = int(payload.get("burst", fallback_burst))
    return RateLimitConfig(rate_per_sec=max(rate, 0.1), burst=max(burst, 1))


def _rate_limits(payload: Mapping[str, Any]) -> BrokerRateLimits:
    # Kite REST limits: 10 orders/s, 1 quote/s, 3 req/s for everything else.
    return BrokerRateLimits(
        orders=_build_rate_limit(payload.get("orders", {}), 10.0, 10),
        quotes=_build_rate_limit(payload.get("quotes", {}), 1.0, 1),
        history=_build_rate_limit(payload.get("history", {}), 3.0, 3),
    )


@dataclass(frozen=True)
class BrokerConfig:
    rest_timeout: float = 7.0
    retries: int = 3
    retry_backoff: float = 0.5
    rate_limits: BrokerRateLimits = field(default_factory=lambda: _rate_limits({}))

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "BrokerConfig":
        return BrokerConfig(
            rest_timeout=float(payload.get("rest_timeout", 7.0)),
            retries=max(int(payload.get("retries", 3)), 1),
            retry_backoff=float(payload.get("retry_backoff", 0.5)),
            rate_limits=_rate_limits(payload.get("rate_limits", {})),
        )


@dataclass(frozen=True)
class AlertConfig:
    throttle_seconds: float = 30.0
    min_level: str = "WARN"

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "AlertConfig":
        return AlertConfig(
            throttle_seconds=float(payload.get("throttle_seconds", 30.0)),
            min_level=str(payload.get("min_level", "WARN")).upper(),
        )


@dataclass(frozen=True)
class TelemetryConfig:
    log_level: str = "INFO"
    log_file: Optional[str] = None
    metrics_port: Optional[int] = None

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "TelemetryConfig":
        port_raw = _read_env("METRICS_PORT") or payload.get("metrics_port")
        return TelemetryConfig(
            log_level=str(payload.get("log_level", "INFO")).upper(),
            log_file=payload.get("log_file") or None,
            metrics_port=int(port_raw) if port_raw else None,
        )


@dataclass(frozen=True)
class SecretsConfig:
    kite_api_key: Optional[str] = None
    kite_api_secret: Optional[str] = None
    kite_access_token: Optional[str] = None

    @staticmethod
    def from_env() -> "SecretsConfig":
        return SecretsConfig(
            kite_api_key=_read_env("KITE_API_KEY"),
            kite_api_secret=_read_env("KITE_API_SECRET"),
            kite_access_token=_read_env("KITE_ACCESS_TOKEN"),
        )


@dataclass(frozen=True)
class EngineConfig:
    run_id: str
    persistence_path: Path
    options: OptionsConfig = field(default_factory=OptionsConfig)
    confirmation: ConfirmationConfig = field(default_factory=ConfirmationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "EngineConfig":
        run_id = str(raw.get("run_id") or f"run-{engine_now(IST).strftime('%Y%m%d')}")
        return EngineConfig(
            run_id=run_id,
            persistence_path=Path(raw.get("persistence_path", "engine_state.sqlite")),
            options=OptionsConfig.from_dict(raw.get("options", {}) or {}),
            confirmation=ConfirmationConfig.from_dict(raw.get("confirmation", {}) or {}),
            scheduler=SchedulerConfig.from_dict(raw.get("scheduler", {}) or {}),
            monitor=MonitorConfig.from_dict(raw.get("monitor", {}) or {}),
            reconciliation=ReconciliationConfig.from_dict(raw.get("reconciliation", {}) or {}),
            ledger=LedgerConfig.from_dict(raw.get("ledger", {}) or {}),
            broker=BrokerConfig.from_dict(raw.get("broker", {}) or {}),
            alerts=AlertConfig.from_dict(raw.get("alerts", {}) or {}),
            telemetry=TelemetryConfig.from_dict(raw.get("telemetry", {}) or {}),
            secrets=SecretsConfig.from_env(),
        )

    @staticmethod
    def load(path: Optional[str | Path] = None) -> "EngineConfig":
        cfg_path = Path(path) if path else None
        raw = _read_config_payload(cfg_path)
        return EngineConfig.from_dict(raw)


__all__ = [
    "AlertConfig",
    "BrokerConfig",
    "BrokerRateLimits",
    "ConfirmationConfig",
    "ConfirmationPolicy",
    "EngineConfig",
    "IST",
    "LedgerConfig",
    "MonitorConfig",
    "OptionsConfig",
    "RateLimitConfig",
    "ReconciliationConfig",
    "SchedulerConfig",
    "SecretsConfig",
    "TelemetryConfig",
    "parse_time_of_day",
]
