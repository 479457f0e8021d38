import pytest
import requests
from prometheus_client import CollectorRegistry

import engine.alerts as alerts
import engine.metrics as metrics
from engine.alerts import AlertService


def test_metrics_record_into_registry() -> None:
    registry = CollectorRegistry()
    meter = metrics.EngineMetrics(registry)
    meter.engine_up.set(1)
    meter.inc_orders_placed("buy")
    meter.inc_orders_placed("BUY")
    meter.inc_auto_exit("COMPLETED")
    meter.set_armed_exits(3)
    meter.observe_confirmation_ms(-5)
    meter.beat()
    assert registry.get_sample_value("engine_up") == 1
    assert registry.get_sample_value("orders_placed_total", {"side": "BUY"}) == 2
    assert registry.get_sample_value("auto_exits_total", {"outcome": "COMPLETED"}) == 1
    assert registry.get_sample_value("scheduled_exits_armed") == 3
    assert registry.get_sample_value("confirmation_latency_ms_sum") == 0
    assert registry.get_sample_value("heartbeat_ts") > 0


def test_global_helpers_are_noop_until_bound(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(metrics, "_GLOBAL_METRICS", None)
    metrics.inc_orders_failed("REJECTED")
    registry = CollectorRegistry()
    metrics.bind_global_metrics(metrics.EngineMetrics(registry))
    metrics.inc_orders_failed("REJECTED")
    metrics.inc_reconciliation("KEEP_OPEN")
    assert registry.get_sample_value("orders_failed_total", {"reason": "REJECTED"}) == 1
    assert registry.get_sample_value("reconciliation_results_total", {"action": "KEEP_OPEN"}) == 1


def test_exporter_disabled_without_port() -> None:
    assert metrics.start_http_server_if_available(None) is False
    assert metrics.start_http_server_if_available(0) is False


def test_alert_service_throttles_per_title(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = []

    def fake_transport(url, data):
        sent.append((url, data))

    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://example.com/hook")
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    service = AlertService(throttle_seconds=5.0, transport=fake_transport)
    assert service.notify("CRIT", "Auto-exit failed", "P1", tags=["scheduler"])
    assert not service.notify("CRIT", "Auto-exit failed", "P1 again")
    assert service.notify("ERROR", "Kite session needs re-authorization", "token expired")
    service._last_sent["Auto-exit failed"] -= service.throttle_seconds
    assert service.notify("WARN", "Auto-exit failed", "P2")
    assert len(sent) == 3
    url, payload = sent[0]
    assert url == "https://example.com/hook"
    assert payload["text"].startswith("*Auto-exit failed* (CRIT)")
    assert payload["attachments"] == [{"text": "scheduler"}]


def test_alert_service_respects_min_level_and_channels(monkeypatch: pytest.MonkeyPatch) -> None:
    sent = []
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "abc")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
    service = AlertService(throttle_seconds=0.0, min_level="ERROR", transport=lambda url, data: sent.append((url, data)))
    assert not service.notify("WARN", "Reconciliation", "mismatch")
    assert service.notify("CRITICAL", "Emergency stop", "2 exits cancelled", tags=["ops"])
    [(url, payload)] = sent
    assert url == "https://api.telegram.org/botabc/sendMessage"
    assert payload["chat_id"] == "42"
    assert payload["text"].endswith("Tags: ops")


def test_alert_delivery_failure_is_not_raised(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(url, data):
        raise requests.ConnectionError("no route")

    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://example.com/hook")
    service = AlertService(transport=broken)
    assert service.notify("ERROR", "Title", "Body") is False


def test_notify_incident_without_channels(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.setattr(alerts, "_DEFAULT_SERVICE", None)
    assert alerts.notify_incident("CRIT", "Nothing configured", "dropped") is False
    service = alerts.configure_alerts(throttle_seconds=1.0, min_level="INFO")
    assert not service.has_channels
