"""
Tests for Prometheus metrics and webhook alerting.

Tests cover:
- Tick and lifecycle metrics recorded by the state machine
- Alert severity filter, rate limiting, batching and formats
- Bus-driven alerts
"""

import json

import httpx
import pytest
from prometheus_client import CollectorRegistry

from lpbot.core.event_bus import EventBus, EventType
from lpbot.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from lpbot.monitoring.metrics_rich import RichMetrics, start_metrics_server
from lpbot.orchestrator import InstanceStateMachine

from conftest import build_harness

WEBHOOK = "https://hooks.example.test/lpbot"


def recording_client(status=200):
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(status)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


def alert(alert_type=AlertType.STOP_LOSS, severity=AlertSeverity.CRITICAL, instance_id="i1"):
    return Alert(alert_type=alert_type, severity=severity, title="t", message="m", instance_id=instance_id)


# ─────────────────────────────────────────────────────────────────────────────
# Metrics
# ─────────────────────────────────────────────────────────────────────────────


class TestMetrics:

    @pytest.mark.asyncio
    async def test_machine_records_metrics(self):
        h = build_harness()
        registry = CollectorRegistry()
        metrics = RichMetrics(registry)
        machine = InstanceStateMachine(h.record, h.executor, h.snapshots, h.retry, metrics=metrics)

        await machine.start()
        await machine.tick()
        await machine.shutdown()

        labels = {"instance": "inst-1"}
        assert registry.get_sample_value("lp_ticks_total", labels) == 1.0
        assert registry.get_sample_value("lp_active_bin", labels) == 1000.0
        assert registry.get_sample_value("lp_status_changes_total", {"to_state": "ACTIVE"}) == 1.0
        assert registry.get_sample_value("lp_tick_latency_ms_count", labels) == 1.0

    def test_separate_registries_do_not_clash(self):
        RichMetrics(CollectorRegistry())
        RichMetrics(CollectorRegistry())

    def test_server_disabled_on_port_zero(self):
        assert not start_metrics_server(RichMetrics(), 0)


# ─────────────────────────────────────────────────────────────────────────────
# Alerting
# ─────────────────────────────────────────────────────────────────────────────


class TestAlerting:

    @pytest.mark.asyncio
    async def test_delivers_generic_payload(self):
        client, requests = recording_client()
        manager = AlertManager(AlertConfig(webhook_url=WEBHOOK, batch_window_ms=0), client=client)
        assert await manager.send_alert(alert())
        await manager.flush()
        assert requests[0]["type"] == "STOP_LOSS"
        assert requests[0]["instance_id"] == "i1"
        assert manager.get_stats()["delivered"] == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_disabled_without_webhook(self):
        manager = AlertManager(AlertConfig(webhook_url=None))
        assert not await manager.send_alert(alert())

    @pytest.mark.asyncio
    async def test_below_min_severity(self):
        client, _ = recording_client()
        manager = AlertManager(AlertConfig(webhook_url=WEBHOOK, batch_window_ms=0), client=client)
        assert not await manager.send_alert(alert(severity=AlertSeverity.INFO))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rate_limited_per_type_and_instance(self):
        client, _ = recording_client()
        manager = AlertManager(AlertConfig(webhook_url=WEBHOOK, batch_window_ms=0), client=client)
        assert await manager.send_alert(alert())
        assert not await manager.send_alert(alert())
        assert await manager.send_alert(alert(instance_id="i2"))
        assert await manager.send_alert(alert(alert_type=AlertType.INSTANCE_ERROR))
        await manager.flush()
        assert manager.get_stats()["rate_limited"] == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_slack_batch(self):
        client, requests = recording_client()
        config = AlertConfig(webhook_url=WEBHOOK, webhook_type="slack", batch_window_ms=0)
        manager = AlertManager(config, client=client)
        await manager.send_alert(alert())
        await manager.send_alert(alert(instance_id="i2"))
        await manager.flush()
        assert len(requests) == 1
        attachments = requests[0]["attachments"]
        assert len(attachments) == 2
        assert attachments[0]["color"] == "#FF0000"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stop_loss_event_raises_alert(self):
        client, requests = recording_client()
        manager = AlertManager(AlertConfig(webhook_url=WEBHOOK, batch_window_ms=0), client=client)
        bus = EventBus()
        manager.attach(bus)

        await bus.emit(EventType.STOPLOSS_TRIGGERED, instance_id="i1", action="CLOSE", reasoning=["loss 9%"])
        await bus.emit(EventType.INSTANCE_STATUS_CHANGED, instance_id="i1", to_state="ACTIVE")
        await bus.drain()
        await manager.flush()

        assert len(requests) == 1
        assert requests[0]["severity"] == "CRITICAL"
        assert requests[0]["title"] == "Stop-loss triggered: full exit"
        assert requests[0]["message"] == "loss 9%"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_transition_raises_alert(self):
        client, requests = recording_client()
        manager = AlertManager(AlertConfig(webhook_url=WEBHOOK, batch_window_ms=0), client=client)
        bus = EventBus()
        manager.attach(bus)
        await bus.emit(EventType.INSTANCE_STATUS_CHANGED, instance_id="i1", to_state="ERROR", reason="stop: rpc error")
        await bus.drain()
        await manager.flush()
        assert requests[0]["type"] == "INSTANCE_ERROR"
        assert requests[0]["message"] == "stop: rpc error"
        await client.aclose()
