from __future__ import annotations

import logging
import os
import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

_LATENCY_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
_CONFIRM_BUCKETS_MS = (250, 500, 1000, 2000, 5000, 10000, 30000, 60000, 120000, 300000)


class EngineMetrics:
    """Prometheus collectors for order confirmation, positions and the exit scheduler."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry
        kw = {"registry": registry} if registry is not None else {}
        self.engine_up = Gauge("engine_up", "Engine up status", **kw)
        self.heartbeat_ts = Gauge("heartbeat_ts", "Unix timestamp of last heartbeat", **kw)
        self.orders_placed_total = Counter("orders_placed_total", "Orders accepted by the broker", ["side"], **kw)
        self.orders_confirmed_total = Counter("orders_confirmed_total", "Orders confirmed filled", **kw)
        self.orders_pending_total = Counter("orders_pending_total", "Orders handed to background monitoring", **kw)
        self.orders_failed_total = Counter("orders_failed_total", "Orders failed or rejected", ["reason"], **kw)
        self.confirmation_polls_total = Counter("confirmation_polls_total", "Order status polls", **kw)
        self.confirmation_latency_ms = Histogram(
            "confirmation_latency_ms",
            "Placement to terminal confirmation latency",
            buckets=_CONFIRM_BUCKETS_MS,
            **kw,
        )
        self.broker_latency_ms = Histogram(
            "broker_latency_ms",
            "Broker REST call latency",
            ["action"],
            buckets=_LATENCY_BUCKETS_MS,
            **kw,
        )
        self.rest_retries_total = Counter("rest_retries_total", "Broker REST retries", ["endpoint"], **kw)
        self.auth_failures_total = Counter("auth_failures_total", "Broker authentication failures", **kw)
        self.ratelimit_tokens = Gauge("ratelimit_tokens", "Remaining rate-limit tokens", ["endpoint"], **kw)
        self.positions_open = Gauge("positions_open", "Open or partial positions in the ledger", **kw)
        self.position_events_total = Counter("position_events_total", "Ledger position events", ["event"], **kw)
        self.scheduled_exits_armed = Gauge("scheduled_exits_armed", "Armed in-memory exit timers", **kw)
        self.auto_exits_total = Counter("auto_exits_total", "Auto-exit executions by outcome", ["outcome"], **kw)
        self.scheduler_restarts_total = Counter("scheduler_restarts_total", "Scheduler restarts with pending exits", **kw)
        self.stalled_exits_total = Counter("stalled_exits_total", "EXECUTING exits force-failed as stalled", **kw)
        self.reconciliation_results_total = Counter(
            "reconciliation_results_total",
            "Reconciliation recommendations",
            ["action"],
            **kw,
        )
        self.monitor_cycles_total = Counter("monitor_cycles_total", "Pending-order monitor cycles", **kw)

    def beat(self) -> None:
        self.heartbeat_ts.set(time.time())

    def inc_orders_placed(self, side: str) -> None:
        self.orders_placed_total.labels(side=side.upper()).inc()

    def inc_orders_confirmed(self) -> None:
        self.orders_confirmed_total.inc()

    def inc_orders_pending(self) -> None:
        self.orders_pending_total.inc()

    def inc_orders_failed(self, reason: str) -> None:
        self.orders_failed_total.labels(reason=reason).inc()

    def inc_confirmation_poll(self) -> None:
        self.confirmation_polls_total.inc()

    def observe_confirmation_ms(self, ms: float) -> None:
        self.confirmation_latency_ms.observe(max(ms, 0.0))

    def observe_broker_latency(self, action: str, ms: float) -> None:
        self.broker_latency_ms.labels(action=action).observe(max(ms, 0.0))

    def inc_rest_retry(self, endpoint: str) -> None:
        self.rest_retries_total.labels(endpoint=endpoint).inc()

    def inc_auth_failure(self) -> None:
        self.auth_failures_total.inc()

    def set_ratelimit_tokens(self, endpoint: str, tokens: float) -> None:
        self.ratelimit_tokens.labels(endpoint=endpoint).set(tokens)

    def set_open_positions(self, count: int) -> None:
        self.positions_open.set(count)

    def inc_position_event(self, event: str) -> None:
        self.position_events_total.labels(event=event).inc()

    def set_armed_exits(self, count: int) -> None:
        self.scheduled_exits_armed.set(count)

    def inc_auto_exit(self, outcome: str) -> None:
        self.auto_exits_total.labels(outcome=outcome).inc()

    def inc_scheduler_restart(self) -> None:
        self.scheduler_restarts_total.inc()

    def inc_stalled_exit(self) -> None:
        self.stalled_exits_total.inc()

    def inc_reconciliation(self, action: str) -> None:
        self.reconciliation_results_total.labels(action=action).inc()

    def inc_monitor_cycle(self) -> None:
        self.monitor_cycles_total.inc()


_GLOBAL_METRICS: Optional[EngineMetrics] = None


def bind_global_metrics(metrics: Optional[EngineMetrics]) -> None:
    global _GLOBAL_METRICS
    _GLOBAL_METRICS = metrics


def global_metrics() -> Optional[EngineMetrics]:
    return _GLOBAL_METRICS


def inc_orders_failed(reason: str) -> None:
    meter = _GLOBAL_METRICS
    if meter:
        meter.inc_orders_failed(reason)


def inc_reconciliation(action: str) -> None:
    meter = _GLOBAL_METRICS
    if meter:
        meter.inc_reconciliation(action)


def start_http_server_if_available(port: Optional[int] = None) -> bool:
    if not port:
        logging.getLogger("metrics").info("metrics port not configured; exporter disabled")
        return False
    addr = os.getenv("METRICS_HOST", "0.0.0.0")
    start_http_server(port, addr=addr)
    return True


__all__ = [
    "EngineMetrics",
    "bind_global_metrics",
    "global_metrics",
    "inc_orders_failed",
    "inc_reconciliation",
    "start_http_server_if_available",
]
